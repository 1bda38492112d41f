from __future__ import annotations

import logging
from typing import Protocol

from .app_logging import log_with_fields
from .models import BookRecord, CatalogDecision
from .store import Store
from .utils import short_id

INSERTED = "inserted"
DUPLICATE = "duplicate"


class Catalog(Protocol):
    async def add_books(self, job_id: str, books: list[BookRecord]) -> list[CatalogDecision]:
        ...


class StoreCatalog:
    """Catalog backed by the local sqlite store.

    A book whose ISBN is already saved is kept as `pending_review` instead of
    being inserted a second time.
    """

    def __init__(self, store: Store, logger: logging.Logger | None = None) -> None:
        self.store = store
        self.logger = logger or logging.getLogger("spinescan.catalog")

    async def add_books(self, job_id: str, books: list[BookRecord]) -> list[CatalogDecision]:
        decisions: list[CatalogDecision] = []
        for book in books:
            existing = self.store.find_book_by_isbn(book.isbn) if book.isbn else None
            if existing is not None:
                book_id = self.store.insert_book(job_id, book, status="pending_review", duplicate_of=existing)
                decisions.append(CatalogDecision(book, DUPLICATE, book_id=book_id, duplicate_of=existing))
            else:
                book_id = self.store.insert_book(job_id, book)
                decisions.append(CatalogDecision(book, INSERTED, book_id=book_id))

        log_with_fields(
            self.logger,
            logging.INFO,
            "catalog_books_added",
            job_id=short_id(job_id),
            inserted=sum(1 for d in decisions if d.action == INSERTED),
            duplicates=sum(1 for d in decisions if d.action == DUPLICATE),
        )
        return decisions
