from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from .app_logging import log_with_fields, setup_logger
from .config import AppConfig, ensure_local_paths, load_config
from .connectivity import ConnectivityMonitor
from .models import JobState, ScanJob
from .observers import LoggingObserver
from .offline import DrainSummary, OfflineQueue
from .pipeline import ScanPipeline
from .service import ScanService
from .store import Store
from .utils import load_or_create_device_id, short_id


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="spinescan", description="Book spine scan pipeline client")
    parser.add_argument("--config", required=True, help="Path to spinescan YAML config")
    subparsers = parser.add_subparsers(dest="command", required=True)

    scan = subparsers.add_parser("scan", help="Scan spine images and catalog the books found")
    scan.add_argument("images", nargs="+", type=Path, help="Image files to submit")
    scan.add_argument(
        "--offline",
        action="store_true",
        help="Capture into the offline queue instead of uploading",
    )
    subparsers.add_parser("drain", help="Upload everything waiting in the offline queue")
    subparsers.add_parser("offline", help="List offline queue entries")

    discard = subparsers.add_parser("discard", help="Remove one offline queue entry")
    discard.add_argument("--entry-id", required=True, help="Offline entry id to discard")

    subparsers.add_parser("status", help="Show offline queue, catalog and recent job events")
    subparsers.add_parser("books", help="List cataloged books")
    return parser


def _open_runtime(config: AppConfig) -> tuple[Store, logging.Logger]:
    ensure_local_paths(config)
    logger = setup_logger(config.paths.log)
    store = Store(config.paths.db)
    store.init_schema()
    return store, logger


def _open_pipeline(
    config: AppConfig,
    store: Store,
    logger: logging.Logger,
    *,
    connected: bool = True,
) -> tuple[ScanService, ScanPipeline]:
    device_id = config.api.device_id or load_or_create_device_id(config.paths.device_id)
    service = ScanService.from_config(config, device_id, logger)
    pipeline = ScanPipeline(
        config,
        service,
        store,
        logger,
        connectivity=ConnectivityMonitor(connected=connected, logger=logger),
        observers=[LoggingObserver(logger)],
    )
    return service, pipeline


def _describe(job: ScanJob) -> str:
    if job.state is JobState.DONE:
        detail = f"{len(job.books)} book(s)"
    elif job.state is JobState.ERROR:
        detail = job.error_detail or "failed"
    else:
        detail = job.progress_message or ""
    return f"{short_id(job.id)}  {job.state.value:12} {detail}".rstrip()


async def _scan(
    config: AppConfig,
    store: Store,
    logger: logging.Logger,
    payloads: list[bytes],
    offline: bool,
) -> list[ScanJob]:
    service, pipeline = _open_pipeline(config, store, logger, connected=not offline)
    try:
        jobs = [await pipeline.submit(payload) for payload in payloads]
        await pipeline.wait_idle()
        return jobs
    finally:
        await pipeline.aclose()
        await service.aclose()


async def _drain(config: AppConfig, store: Store, logger: logging.Logger) -> tuple[DrainSummary, list[ScanJob]]:
    service, pipeline = _open_pipeline(config, store, logger)
    try:
        await pipeline.restore()
        summary = await pipeline.drain_offline()
        await pipeline.wait_idle()
        return summary, pipeline.jobs
    finally:
        await pipeline.aclose()
        await service.aclose()


def cmd_scan(config: AppConfig, images: list[Path], *, offline: bool = False) -> int:
    missing = [str(path) for path in images if not path.is_file()]
    if missing:
        print(f"image not found: {', '.join(missing)}", file=sys.stderr)
        return 2

    payloads = [path.read_bytes() for path in images]
    store, logger = _open_runtime(config)
    try:
        jobs = asyncio.run(_scan(config, store, logger, payloads, offline))
    except KeyboardInterrupt:
        log_with_fields(logger, logging.INFO, "shutdown", reason="keyboard_interrupt")
        return 0
    finally:
        store.close()

    for path, job in zip(images, jobs):
        print(f"{path.name}: {_describe(job)}")
        for book in job.books:
            isbn = f" [{book.isbn}]" if book.isbn else ""
            print(f"    {book.title} - {book.author}{isbn}")
    return 1 if any(job.state is JobState.ERROR for job in jobs) else 0


def cmd_drain(config: AppConfig) -> int:
    store, logger = _open_runtime(config)
    try:
        summary, jobs = asyncio.run(_drain(config, store, logger))
    except KeyboardInterrupt:
        log_with_fields(logger, logging.INFO, "shutdown", reason="keyboard_interrupt")
        return 0
    finally:
        store.close()

    for job in jobs:
        print(_describe(job))
    print(
        f"drained: attempted={summary.attempted} done={summary.done} failed={summary.failed} "
        f"deferred={summary.deferred} remaining={summary.remaining}"
    )
    return 1 if summary.failed else 0


def cmd_offline(config: AppConfig) -> int:
    ensure_local_paths(config)
    store = Store(config.paths.db)
    try:
        store.init_schema()
        entries = store.list_offline_entries()
        if not entries:
            print("(offline queue is empty)")
        for entry in entries:
            print(f"{entry.entry_id}  {entry.enqueued_at}  {len(entry.payload)} bytes")
        return 0
    finally:
        store.close()


def cmd_discard(config: AppConfig, entry_id: str) -> int:
    ensure_local_paths(config)
    store = Store(config.paths.db)
    try:
        store.init_schema()
        if not asyncio.run(OfflineQueue(store).remove(entry_id)):
            print(f"offline entry not found: {entry_id}", file=sys.stderr)
            return 2
        store.add_event(entry_id, "offline_discarded", {"entry_id": entry_id})
        print(f"discarded {entry_id}")
        return 0
    finally:
        store.close()


def cmd_status(config: AppConfig) -> int:
    ensure_local_paths(config)
    store = Store(config.paths.db)
    try:
        store.init_schema()
        counts = store.summary_counts()
        print("Catalog:")
        for key in ["saved", "pending_review"]:
            print(f"  {key:15} {counts.get(key, 0)}")
        print(f"\nOffline queue: {counts['offline']}")

        print("\nRecent job events:")
        events = store.list_events(limit=20)
        if not events:
            print("  (no job events yet)")
        for event in events:
            message = event["details"].get("message")
            suffix = f" {message}" if message else ""
            print(f"  {event['timestamp']} {short_id(event['job_id'])} {event['event_type']}{suffix}")
        return 0
    finally:
        store.close()


def cmd_books(config: AppConfig) -> int:
    ensure_local_paths(config)
    store = Store(config.paths.db)
    try:
        store.init_schema()
        books = store.list_books()
        if not books:
            print("(no books cataloged yet)")
        for row in books:
            isbn = f" [{row['isbn']}]" if row["isbn"] else ""
            flag = f"  (duplicate of #{row['duplicate_of']}, needs review)" if row["status"] == "pending_review" else ""
            print(f"#{row['id']} {row['title']} - {row['author']}{isbn}{flag}")
        return 0
    finally:
        store.close()


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    config = load_config(args.config)

    if args.command == "scan":
        return cmd_scan(config, list(args.images), offline=bool(args.offline))
    if args.command == "drain":
        return cmd_drain(config)
    if args.command == "offline":
        return cmd_offline(config)
    if args.command == "discard":
        return cmd_discard(config, args.entry_id)
    if args.command == "status":
        return cmd_status(config)
    if args.command == "books":
        return cmd_books(config)
    parser.error(f"Unknown command: {args.command}")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
