from pathlib import Path
from tempfile import TemporaryDirectory
import json
import logging
import unittest

from spinescan.app_logging import JsonFormatter, log_with_fields
from spinescan.models import ScanJob
from spinescan.observers import LoggingObserver
from spinescan.utils import load_or_create_device_id, sha256_bytes, short_id


class UtilsTest(unittest.TestCase):
    def test_sha256_bytes(self) -> None:
        self.assertEqual(
            sha256_bytes(b"abc"),
            "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad",
        )

    def test_short_id(self) -> None:
        self.assertEqual(short_id("0123456789abcdef"), "01234567")
        self.assertEqual(short_id(None), "-")

    def test_device_id_is_persisted(self) -> None:
        with TemporaryDirectory() as temp_dir:
            path = Path(temp_dir) / "state" / "device_id"
            first = load_or_create_device_id(path)
            self.assertEqual(load_or_create_device_id(path), first)
            self.assertEqual(path.read_text(encoding="utf-8").strip(), first)


class JsonLoggingTest(unittest.TestCase):
    def test_fields_are_merged_into_the_json_line(self) -> None:
        records: list[logging.LogRecord] = []

        class Capture(logging.Handler):
            def emit(self, record: logging.LogRecord) -> None:
                records.append(record)

        logger = logging.getLogger("spinescan.test.utils")
        logger.propagate = False
        logger.setLevel(logging.INFO)
        logger.addHandler(Capture())
        log_with_fields(logger, logging.WARNING, "job_rate_limited", job_id="abc", cooldown_seconds=2.0)

        payload = json.loads(JsonFormatter().format(records[0]))
        self.assertEqual(payload["message"], "job_rate_limited")
        self.assertEqual(payload["level"], "WARNING")
        self.assertEqual(payload["job_id"], "abc")
        self.assertEqual(payload["cooldown_seconds"], 2.0)
        self.assertNotIn("exception", payload)

    def test_logging_observer_reports_progress_text(self) -> None:
        records: list[logging.LogRecord] = []

        class Capture(logging.Handler):
            def emit(self, record: logging.LogRecord) -> None:
                records.append(record)

        logger = logging.getLogger("spinescan.test.observer")
        logger.propagate = False
        logger.setLevel(logging.INFO)
        logger.addHandler(Capture())
        job = ScanJob(payload=b"spine")
        job.set_progress("Reading spines")
        LoggingObserver(logger).job_updated(job.snapshot())

        payload = json.loads(JsonFormatter().format(records[0]))
        self.assertEqual(payload["message"], "job_updated")
        self.assertEqual(payload["state"], "created")
        self.assertEqual(payload["progress"], "Reading spines")


if __name__ == "__main__":
    unittest.main()
