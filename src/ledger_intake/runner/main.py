"""
CLI main entry point.
"""

import argparse
import asyncio
import logging
import sys
from dataclasses import dataclass
from pathlib import Path

from ..cloud.service import CloudExtractionService
from ..config import Config, create_default_config, load_config
from ..errors import LedgerIntakeError
from ..events import EventEmitter
from ..extractors import ExtractionStrategySelector, OnDeviceExtractor, SourceFile
from ..extractors.classifier import classify_file
from ..schemas.transactions import ImportFileType, ImportResult
from ..services.connectivity import ConnectivityMonitor
from ..services.import_history import CommitTotals, ImportHistoryService
from ..services.ledger import SQLiteLedger
from ..services.offline_queue import OfflineQueueService
from ..services.orchestrator import ImportOrchestrator
from ..state_store import StateStore

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False) -> None:
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.DEBUG if verbose else logging.WARNING)


def create_cli() -> argparse.ArgumentParser:
    """Create CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="ledger-intake",
        description="Import receipts, statements and backups into a personal ledger",
    )

    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=Path("config.yaml"),
        help="Path to config file (default: config.yaml)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # import command
    import_parser = subparsers.add_parser(
        "import", help="Extract transactions from files and preview them"
    )
    import_parser.add_argument(
        "files",
        nargs="+",
        type=Path,
        help="Files to import; several photos are merged as one receipt",
    )
    import_parser.add_argument(
        "--commit",
        action="store_true",
        help="Write the selected transactions to the ledger",
    )
    import_parser.add_argument(
        "--include-duplicates",
        action="store_true",
        help="Re-select transactions flagged as duplicates before committing",
    )

    # queue command
    queue_parser = subparsers.add_parser("queue", help="Inspect and drain the offline queue")
    queue_sub = queue_parser.add_subparsers(dest="queue_command", help="Queue action")
    queue_sub.add_parser("status", help="Show queue statistics and recent sync log")
    queue_sub.add_parser("sync", help="Drain the queue now")
    clear_parser = queue_sub.add_parser("clear", help="Remove queue items")
    clear_parser.add_argument(
        "which",
        choices=["completed", "failed", "all"],
        help="Which items to remove",
    )
    prune_parser = queue_sub.add_parser("prune-logs", help="Delete old sync log entries")
    prune_parser.add_argument(
        "--days",
        type=int,
        default=None,
        help="Keep entries newer than this many days (default: from config)",
    )
    add_parser = queue_sub.add_parser("add-image", help="Queue a receipt photo for later")
    add_parser.add_argument("file", type=Path, help="Image file")

    # history command
    history_parser = subparsers.add_parser("history", help="Show recent imports")
    history_parser.add_argument(
        "--limit",
        type=int,
        default=20,
        help="Maximum records to show (default: 20)",
    )

    # init-config command
    subparsers.add_parser("init-config", help="Write a default config file")

    return parser


@dataclass
class Pipeline:
    """Wired-up components sharing one event emitter and state store."""

    store: StateStore
    events: EventEmitter
    connectivity: ConnectivityMonitor
    queue: OfflineQueueService
    history: ImportHistoryService
    orchestrator: ImportOrchestrator


def build_pipeline(config: Config) -> Pipeline:
    store = StateStore(config.state_db_path)
    events = EventEmitter()
    connectivity = ConnectivityMonitor(config.connectivity, events)
    ledger = SQLiteLedger(store, config.user_id)
    cloud = CloudExtractionService(config, connectivity)
    local = OnDeviceExtractor(config=config.ocr) if config.ocr.enabled else None
    selector = ExtractionStrategySelector(
        config.ai,
        local=local,
        cloud=cloud,
        connectivity=connectivity,
        events=events,
        timeouts=config.timeouts,
    )
    queue = OfflineQueueService(
        store,
        ledger,
        connectivity,
        events=events,
        max_retry_count=config.queue.max_retry_count,
    )
    history = ImportHistoryService(store, config.user_id)
    orchestrator = ImportOrchestrator(
        config,
        ledger,
        selector=selector,
        cloud=cloud,
        history=history,
        queue=queue,
        events=events,
    )
    return Pipeline(store, events, connectivity, queue, history, orchestrator)


def print_preview(result: ImportResult) -> None:
    print(f"\n📄 {result.file_name} ({result.file_type.value}, {result.file_size} bytes)")
    print("=" * 60)
    for txn in result.transactions:
        mark = "✓" if txn.selected else " "
        sign = "+" if txn.type.value == "income" else "-"
        date_text = txn.date.isoformat() if txn.date else "----------"
        line = (
            f"  [{mark}] {date_text}  {sign}{txn.amount:>10.2f} {txn.currency}  "
            f"{txn.description[:30]:<30}  {txn.suggested_category_id} ({txn.category_confidence:.0%})"
        )
        if txn.is_duplicate:
            line += f"  ⚠️ duplicate of {txn.duplicate_of}"
        print(line)

    if result.multi_image_metadata:
        meta = result.multi_image_metadata
        print(f"\n  🖼️  {meta.total_images} images, {meta.items_merged} overlapping items merged")
    for warning in result.warnings:
        print(f"  ⚠️  {warning.message}")
    print(f"\n  Transactions: {len(result.transactions)}  Confidence: {result.confidence:.0%}")


def print_totals(totals: CommitTotals) -> None:
    print("\n📊 Commit summary")
    print("=" * 40)
    print(f"  Imported:             {totals.success_count}")
    print(f"  Errors:               {totals.error_count}")
    print(f"  Skipped:              {totals.skipped_count}")
    print(f"  Duplicates skipped:   {totals.duplicates_skipped}")
    print(f"  Total income:         {totals.total_income:.2f}")
    print(f"  Total expenses:       {totals.total_expenses:.2f}")
    for error in totals.errors:
        print(f"   - row {error.row}: {error.message} ({error.original_value})")


async def _import_files(
    pipeline: Pipeline, files: list[Path], commit: bool, include_duplicates: bool
) -> int:
    await pipeline.connectivity.probe()
    sources = [SourceFile.from_path(path) for path in files]

    # Several photos are one receipt; anything else is imported file by file
    all_images = all(
        classify_file(s.name, s.mime_type) == ImportFileType.RECEIPT_IMAGE for s in sources
    )
    if len(sources) > 1 and all_images:
        results = [await pipeline.orchestrator.import_images(sources)]
    else:
        results = [await pipeline.orchestrator.import_file(s) for s in sources]

    exit_code = 0
    for result in results:
        if include_duplicates:
            result.transactions = [
                t.with_selection(True) if t.is_duplicate else t for t in result.transactions
            ]
        print_preview(result)

        if commit:
            totals = await pipeline.orchestrator.confirm_import(result)
            print_totals(totals)
            if totals.error_count:
                exit_code = 1

    if not commit:
        print("\nℹ️  Preview only. Re-run with --commit to write to the ledger.")
    return exit_code


def cmd_import(config: Config, files: list[Path], commit: bool, include_duplicates: bool) -> int:
    """Import files and optionally commit them."""
    for path in files:
        if not path.is_file():
            print(f"❌ File not found: {path}")
            return 1

    print(f"📥 Importing {len(files)} file(s)...")
    pipeline = build_pipeline(config)
    try:
        return asyncio.run(_import_files(pipeline, files, commit, include_duplicates))
    except LedgerIntakeError as e:
        print(f"❌ {e}")
        return 1


async def _sync_queue(pipeline: Pipeline) -> int:
    online = await pipeline.connectivity.probe()
    if not online:
        print("⚠️  Offline; nothing synced")
        return 1

    outcome = await pipeline.queue.sync_queue()
    if outcome.skipped:
        print("⚠️  A sync is already running")
        return 1

    # Photos handed off by the drain are extracted in the background
    await pipeline.orchestrator.wait_for_background()

    print(f"✓ Synced: {outcome.success} committed, {outcome.failed} failed")
    if outcome.handed_off:
        processed = pipeline.orchestrator.queued_results
        print(f"  🖼️  {outcome.handed_off} photo(s) handed off, {len(processed)} extracted")
        for image_id, result in processed.items():
            print(f"   - {image_id}: {len(result.transactions)} transaction(s) ready for review")
    return 0


def cmd_queue(config: Config, args: argparse.Namespace) -> int:
    """Offline queue maintenance."""
    pipeline = build_pipeline(config)
    queue = pipeline.queue

    try:
        if args.queue_command == "status":
            stats = queue.get_stats()
            print("\n📊 Offline Queue")
            print("=" * 40)
            print(f"  Pending images:         {stats.pending_images}")
            print(f"  Pending transactions:   {stats.pending_transactions}")
            print(f"  Failed items:           {stats.failed_items}")
            print(f"  Last sync:              {stats.last_sync_time or 'never'}")
            entries = queue.get_sync_log(limit=10)
            if entries:
                print("\n  Recent sync log:")
                for entry in entries:
                    detail = f" {entry.details}" if entry.details else ""
                    print(f"   {entry.timestamp}  {entry.action}{detail}")
            print()
            return 0

        if args.queue_command == "sync":
            return asyncio.run(_sync_queue(pipeline))

        if args.queue_command == "clear":
            if args.which == "completed":
                count = queue.clear_completed()
            elif args.which == "failed":
                count = queue.clear_failed()
            else:
                count = queue.clear_all()
            print(f"✓ Removed {count} {args.which} queue item(s)")
            return 0

        if args.queue_command == "prune-logs":
            days = args.days if args.days is not None else config.queue.log_retention_days
            count = queue.clear_old_logs(days)
            print(f"✓ Pruned {count} sync log entries older than {days} days")
            return 0

        if args.queue_command == "add-image":
            if not args.file.is_file():
                print(f"❌ File not found: {args.file}")
                return 1
            source = SourceFile.from_path(args.file)
            image_id = asyncio.run(queue.queue_image(source.data, source.name, source.mime_type))
            print(f"✓ Queued {source.name} as {image_id}")
            return 0
    except LedgerIntakeError as e:
        print(f"❌ {e}")
        return 1

    print("❌ Missing queue action (status, sync, clear, prune-logs, add-image)")
    return 1


def cmd_history(config: Config, limit: int) -> int:
    """Show recent import-history records."""
    store = StateStore(config.state_db_path)
    records = ImportHistoryService(store, config.user_id).recent(limit)

    if not records:
        print("No imports yet")
        return 0

    print("\n📜 Import History")
    print("=" * 60)
    for record in records:
        icon = {"completed": "✓", "failed": "❌"}.get(record.status.value, "…")
        print(
            f"  {icon} {record.created_at}  {record.file_name}  "
            f"{record.imported_count}/{record.transaction_count} imported, "
            f"{record.error_count} errors, {record.duplicates_skipped} duplicates skipped"
        )
    print()
    return 0


def cmd_init_config(config_path: Path) -> int:
    """Write the default config file."""
    if config_path.exists():
        print(f"⚠️  {config_path} already exists; not overwriting")
        return 1
    create_default_config(config_path)
    print(f"✓ Wrote default config to {config_path}")
    return 0


def main(args: list[str] | None = None) -> int:
    """Main entry point."""
    parser = create_cli()
    parsed = parser.parse_args(args)

    setup_logging(parsed.verbose)

    if not parsed.command:
        parser.print_help()
        return 1

    if parsed.command == "init-config":
        return cmd_init_config(parsed.config)

    # Load config
    try:
        config = load_config(parsed.config)
    except Exception as e:
        print(f"❌ Failed to load config: {e}")
        return 1

    problems = config.validate()
    if problems:
        print("❌ Invalid configuration:")
        for problem in problems:
            print(f"   - {problem}")
        return 1

    # Route to command
    if parsed.command == "import":
        return cmd_import(config, parsed.files, parsed.commit, parsed.include_duplicates)
    elif parsed.command == "queue":
        return cmd_queue(config, parsed)
    elif parsed.command == "history":
        return cmd_history(config, parsed.limit)
    else:
        parser.print_help()
        return 1


if __name__ == "__main__":
    sys.exit(main())
