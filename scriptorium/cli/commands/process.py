"""Interactive processing CLI commands."""

import threading

from tqdm import tqdm

from scriptorium.batch.store import JobStateStore
from scriptorium.errors import ConfigError
from scriptorium.interactive.inference import PageStageHandler
from scriptorium.interactive.processor import InteractiveProcessor, ProcessingReport
from scriptorium.interactive.progress import ProgressUpdate
from scriptorium.library.db import LibraryDB
from scriptorium.library.models import Stage
from scriptorium.library.selector import WorkSelector


def _run_with_interrupt(processor: InteractiveProcessor, page_ids: list[str]) -> ProcessingReport:
    """Run in a worker thread so Ctrl-C can request a cooperative stop."""
    cancel_event = threading.Event()
    result = {}

    def target():
        result["report"] = processor.run(page_ids, cancel_event)

    worker = threading.Thread(target=target, daemon=True)
    worker.start()
    try:
        while worker.is_alive():
            worker.join(timeout=0.5)
    except KeyboardInterrupt:
        print("\nStopping after in-flight pages finish...")
        cancel_event.set()
        worker.join()
    return result["report"]


def cmd_process(args):
    """Run a stage synchronously over selected pages."""
    settings = args.settings
    stage = Stage.parse(args.stage)

    db = LibraryDB(settings.db_path)
    jobs = JobStateStore(settings.db_path)
    try:
        if args.pages:
            page_ids = list(args.pages)
        elif args.book:
            page_ids = [p.id for p in WorkSelector(db, jobs).pages_needing(stage, book_id=args.book)]
        else:
            print("Error: pass --pages or --book")
            return 1

        if args.limit:
            page_ids = page_ids[: args.limit]
        if not page_ids:
            print(f"Nothing to process for {stage.value}")
            return 0

        try:
            handler = PageStageHandler(settings, db, stage)
        except ConfigError as e:
            print(f"Error: {e}")
            return 1

        pbar = tqdm(total=len(page_ids), unit="page", desc=stage.value)

        def on_progress(update: ProgressUpdate):
            pbar.n = update.processed
            pbar.set_postfix(failed=update.failed)
            pbar.refresh()

        processor = InteractiveProcessor.from_settings(settings, handler, progress=on_progress, concurrency=args.concurrency)
        report = _run_with_interrupt(processor, page_ids)

        if report.failed_ids and args.retry_failed and not report.cancelled:
            print(f"\nRetrying {len(report.failed_ids)} failed pages...")
            pbar.reset(total=len(report.failed_ids))
            report = _run_with_interrupt(processor, report.failed_ids)
        pbar.close()
    finally:
        db.close()
        jobs.close()

    print(report.banner)
    for page_id in report.failed_ids:
        error = next((o.error for o in report.outcomes if o.item_id == page_id), None)
        print(f"  ✗ {page_id}: {error}")
    return 0 if not report.failed_ids else 1


def setup_process_commands(subparsers):
    """Setup interactive processing subcommands."""
    process_parser = subparsers.add_parser("process", help="Process pages now, without the batch queue")
    process_parser.add_argument("--stage", required=True, help="Stage to run (ocr, translate, summary)")
    process_parser.add_argument("--pages", nargs="+", help="Explicit page ids")
    process_parser.add_argument("--book", help="Process every page of this book that needs the stage")
    process_parser.add_argument("--limit", type=int, default=None, help="Process at most this many pages")
    process_parser.add_argument("--concurrency", type=int, default=None, help="Pages processed in parallel")
    process_parser.add_argument("--retry-failed", action="store_true", help="Run failed pages once more at the end")
    process_parser.set_defaults(func=cmd_process)
