from __future__ import annotations

import json
import sqlite3
from pathlib import Path
from typing import Any

from .models import BookRecord, OfflineEntry
from .utils import utc_now_iso


def _row_to_entry(row: sqlite3.Row) -> OfflineEntry:
    return OfflineEntry(
        entry_id=row["entry_id"],
        payload=bytes(row["payload"]),
        enqueued_at=row["enqueued_at"],
    )


class Store:
    def __init__(self, db_path: Path | str) -> None:
        self.db_path = db_path
        self.conn = sqlite3.connect(str(db_path))
        self.conn.row_factory = sqlite3.Row

    def close(self) -> None:
        self.conn.close()

    def init_schema(self) -> None:
        self.conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS offline_entries (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                entry_id TEXT NOT NULL UNIQUE,
                payload BLOB NOT NULL,
                payload_size INTEGER NOT NULL,
                enqueued_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS books (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                job_id TEXT NOT NULL,
                title TEXT NOT NULL,
                author TEXT NOT NULL,
                isbn TEXT,
                status TEXT NOT NULL,
                duplicate_of INTEGER,
                added_at TEXT NOT NULL,
                raw_json TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS job_events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                job_id TEXT NOT NULL,
                event_type TEXT NOT NULL,
                timestamp TEXT NOT NULL,
                details_json TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_books_isbn ON books(isbn);
            CREATE INDEX IF NOT EXISTS idx_job_events_job_timestamp
                ON job_events(job_id, timestamp);
            """
        )
        self.conn.commit()

    def add_event(self, job_id: str, event_type: str, details: dict[str, Any] | None = None) -> None:
        self.conn.execute(
            """
            INSERT INTO job_events(job_id, event_type, timestamp, details_json)
            VALUES (?, ?, ?, ?)
            """,
            (job_id, event_type, utc_now_iso(), json.dumps(details or {}, sort_keys=True)),
        )
        self.conn.commit()

    def list_events(self, limit: int = 20) -> list[dict[str, Any]]:
        rows = self.conn.execute(
            "SELECT job_id, event_type, timestamp, details_json FROM job_events ORDER BY id DESC LIMIT ?",
            (limit,),
        ).fetchall()
        return [
            {
                "job_id": row["job_id"],
                "event_type": row["event_type"],
                "timestamp": row["timestamp"],
                "details": json.loads(row["details_json"]),
            }
            for row in rows
        ]

    def insert_offline_entry(self, entry_id: str, payload: bytes) -> OfflineEntry:
        now = utc_now_iso()
        self.conn.execute(
            """
            INSERT INTO offline_entries(entry_id, payload, payload_size, enqueued_at)
            VALUES (?, ?, ?, ?)
            """,
            (entry_id, sqlite3.Binary(payload), len(payload), now),
        )
        self.conn.commit()
        return OfflineEntry(entry_id=entry_id, payload=payload, enqueued_at=now)

    def get_offline_entry(self, entry_id: str) -> OfflineEntry | None:
        row = self.conn.execute(
            "SELECT entry_id, payload, enqueued_at FROM offline_entries WHERE entry_id = ?",
            (entry_id,),
        ).fetchone()
        if row is None:
            return None
        return _row_to_entry(row)

    def list_offline_entries(self) -> list[OfflineEntry]:
        rows = self.conn.execute(
            "SELECT entry_id, payload, enqueued_at FROM offline_entries ORDER BY seq"
        ).fetchall()
        return [_row_to_entry(row) for row in rows]

    def delete_offline_entry(self, entry_id: str) -> bool:
        cursor = self.conn.execute("DELETE FROM offline_entries WHERE entry_id = ?", (entry_id,))
        self.conn.commit()
        return cursor.rowcount > 0

    def count_offline_entries(self) -> int:
        row = self.conn.execute("SELECT COUNT(*) AS count FROM offline_entries").fetchone()
        return int(row["count"])

    def find_book_by_isbn(self, isbn: str) -> int | None:
        row = self.conn.execute(
            "SELECT id FROM books WHERE isbn = ? AND status = 'saved' ORDER BY id LIMIT 1",
            (isbn,),
        ).fetchone()
        if row is None:
            return None
        return int(row["id"])

    def insert_book(
        self,
        job_id: str,
        book: BookRecord,
        *,
        status: str = "saved",
        duplicate_of: int | None = None,
    ) -> int:
        cursor = self.conn.execute(
            """
            INSERT INTO books(job_id, title, author, isbn, status, duplicate_of, added_at, raw_json)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                job_id,
                book.title,
                book.author,
                book.isbn,
                status,
                duplicate_of,
                utc_now_iso(),
                json.dumps(book.raw, sort_keys=True),
            ),
        )
        self.conn.commit()
        return int(cursor.lastrowid)

    def list_books(self) -> list[dict[str, Any]]:
        rows = self.conn.execute(
            """
            SELECT id, job_id, title, author, isbn, status, duplicate_of, added_at
            FROM books
            ORDER BY id
            """
        ).fetchall()
        return [dict(row) for row in rows]

    def summary_counts(self) -> dict[str, int]:
        rows = self.conn.execute("SELECT status, COUNT(*) AS count FROM books GROUP BY status").fetchall()
        output = {"saved": 0, "pending_review": 0}
        for row in rows:
            output[str(row["status"])] = int(row["count"])
        output["offline"] = self.count_offline_entries()
        return output
