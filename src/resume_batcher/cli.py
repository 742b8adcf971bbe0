import argparse
import logging
import mimetypes
import sys
from pathlib import Path

from tqdm import tqdm

from .config import resolve_config
from .exceptions import CapacityExceeded, PersistenceError, ValidationError
from .queue.models import PRIORITY_ORDER, DocumentPayload
from .queue.sqlite_backend import SQLiteSnapshotStore
from .queue.work_queue import WorkQueue

TEXT_SUFFIXES = {".txt", ".md", ".csv"}


def _open_queue(db_path):
    config = resolve_config()
    store = SQLiteSnapshotStore(db_path or config.storage.db_path, keep=config.storage.keep_snapshots)
    return WorkQueue(config.queue, store=store)


def _read_document(path: Path) -> DocumentPayload:
    if path.suffix.lower() in TEXT_SUFFIXES:
        return DocumentPayload(
            filename=path.name,
            text=path.read_text(encoding="utf-8", errors="replace"),
            mime_type="text/plain",
        )
    mime_type, _ = mimetypes.guess_type(path.name)
    return DocumentPayload(
        filename=path.name,
        content=path.read_bytes(),
        mime_type=mime_type or "application/octet-stream",
    )


def _print_status(queue: WorkQueue) -> None:
    status = queue.get_status()
    stats = status["statistics"]
    print("=" * 60)
    print("QUEUE STATUS")
    print("=" * 60)
    for priority, count in status["queues"].items():
        print(f"{priority.capitalize() + ':':<22}{count}")
    print(f"{'Total queued:':<22}{status['total_queued']}")
    print(f"{'Completed (total):':<22}{stats['total_completed']}")
    print(f"{'Failed (total):':<22}{stats['total_failed']}")
    print(f"{'Retried (total):':<22}{stats['total_retried']}")
    print("=" * 60)


def main():
    parser = argparse.ArgumentParser(
        prog="resume-batcher", description="Token-budget batch processing queue"
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    subparsers = parser.add_subparsers(dest="command", help="Subcommands")

    # QUEUE
    queue_parser = subparsers.add_parser("queue", help="Inspect and edit the stored queue")
    queue_subparsers = queue_parser.add_subparsers(dest="queue_command", help="Queue commands")

    status_parser = queue_subparsers.add_parser("status", help="Show queue status")
    status_parser.add_argument("--db", type=str, help="Snapshot database path")

    details_parser = queue_subparsers.add_parser("details", help="List queued items")
    details_parser.add_argument("--db", type=str, help="Snapshot database path")
    details_parser.add_argument(
        "--priority", choices=[p.value for p in PRIORITY_ORDER], help="Only this tier"
    )

    enqueue_parser = queue_subparsers.add_parser("enqueue", help="Add documents to the queue")
    enqueue_parser.add_argument("files", nargs="+", help="Documents to queue")
    enqueue_parser.add_argument("--db", type=str, help="Snapshot database path")
    enqueue_parser.add_argument(
        "--priority", choices=[p.value for p in PRIORITY_ORDER], default="normal", help="Tier"
    )
    enqueue_parser.add_argument("--context", type=str, default="", help="Shared job description")
    enqueue_parser.add_argument(
        "--context-file", type=str, help="Read the shared job description from a file"
    )

    purge_parser = queue_subparsers.add_parser("purge", help="Drop every stored snapshot")
    purge_parser.add_argument("--db", type=str, help="Snapshot database path")

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command != "queue":
        parser.print_help()
        return

    try:
        if args.queue_command == "status":
            _print_status(_open_queue(args.db))

        elif args.queue_command == "details":
            queue = _open_queue(args.db)
            queued = queue.get_queue_details(status="queued", priority=args.priority)["queued"]
            if not queued:
                print("No queued items.")
            for item in queued:
                print(f"{item['id']}  {item['priority']:<7} retries={item['retries']}  {item['filename']}")

        elif args.queue_command == "enqueue":
            context = args.context
            if args.context_file:
                context = Path(args.context_file).read_text(encoding="utf-8")

            documents = []
            for name in tqdm(args.files, desc="Reading documents", unit="file"):
                path = Path(name)
                if not path.is_file():
                    print(f"❌ Not a file: {path}")
                    sys.exit(1)
                documents.append(_read_document(path))

            queue = _open_queue(args.db)
            ids = queue.enqueue(documents, priority=args.priority, context=context, source="cli")
            if not queue.persist():
                print("❌ Could not save the queue snapshot.")
                sys.exit(1)
            print(f"✅ Queued {len(ids)} document(s), skipped {len(documents) - len(ids)} duplicate(s).")

        elif args.queue_command == "purge":
            queue = _open_queue(args.db)
            dropped = queue.queued_count()
            queue.store.clear()
            print(f"✅ Purged stored queue ({dropped} queued item(s) dropped).")

        else:
            queue_parser.print_help()

    except (CapacityExceeded, ValidationError, PersistenceError) as e:
        print(f"❌ {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
