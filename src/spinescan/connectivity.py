from __future__ import annotations

import logging
from typing import Callable

from .app_logging import log_with_fields

ConnectivityListener = Callable[[bool], None]


class ConnectivityMonitor:
    def __init__(self, connected: bool = True, logger: logging.Logger | None = None) -> None:
        self._connected = connected
        self._listeners: list[ConnectivityListener] = []
        self.logger = logger or logging.getLogger("spinescan.connectivity")

    @property
    def connected(self) -> bool:
        return self._connected

    def add_listener(self, listener: ConnectivityListener) -> None:
        self._listeners.append(listener)

    def set_connected(self, connected: bool) -> None:
        """Record the platform's reachability; listeners hear only about changes."""
        if connected == self._connected:
            return
        self._connected = connected
        log_with_fields(
            self.logger,
            logging.INFO,
            "connectivity_restored" if connected else "connectivity_lost",
        )
        for listener in self._listeners:
            listener(connected)
