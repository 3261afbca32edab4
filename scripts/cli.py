"""CLI entry point for the Inbox Triage pipeline, index and API."""

from __future__ import annotations

import argparse
import logging
import sys
import threading
from datetime import UTC, datetime

from inbox_triage.classify.batcher import ClassificationBatcher
from inbox_triage.classify.oracle import OpenAIOracle
from inbox_triage.config.settings import InboxTriageSettings
from inbox_triage.core.models import Category, MailRecord, PipelineProgress, SearchFilter
from inbox_triage.pipeline.orchestrator import TriagePipeline
from inbox_triage.storage.index import MessageIndex


def setup_logging(level: str) -> None:
    """Configure logging with timestamp and module info."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def on_progress(progress: PipelineProgress) -> None:
    """Print progress updates to stdout."""
    print(
        f"[{progress.state}] "
        f"fetched={progress.records_fetched} "
        f"indexed={progress.records_indexed} "
        f"classified={progress.records_classified} "
        f"notified={progress.notifications_sent} "
        f"last_uid={progress.last_seen_uid}",
        end="\r",
        flush=True,
    )


def _positive_int(value: str) -> int:
    number = int(value)
    if number <= 0:
        raise argparse.ArgumentTypeError(f"must be positive, got {value}")
    return number


def _non_negative_int(value: str) -> int:
    number = int(value)
    if number < 0:
        raise argparse.ArgumentTypeError(f"must be non-negative, got {value}")
    return number


def build_parser() -> argparse.ArgumentParser:
    """Argument parser for all subcommands."""
    parser = argparse.ArgumentParser(
        description="Inbox Triage - Sync, categorize, index and notify on incoming mail"
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # watch command
    subparsers.add_parser("watch", help="Backfill, then watch the mailbox for new mail")

    # run-once command
    once_parser = subparsers.add_parser(
        "run-once", help="Fetch a date window, categorize, index and notify, then exit"
    )
    once_parser.add_argument(
        "--days", type=_non_negative_int, default=None, help="Lookback window in days"
    )

    # serve command
    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API")
    serve_parser.add_argument("--host", default=None, help="Bind host (default: from settings)")
    serve_parser.add_argument(
        "--port", type=_positive_int, default=None, help="Bind port (default: from settings)"
    )
    serve_parser.add_argument(
        "--watch",
        action="store_true",
        help="Also run the mailbox watcher in a background thread",
    )

    # search command
    search_parser = subparsers.add_parser("search", help="Search the local index")
    search_parser.add_argument("query", nargs="?", default=None, help="Free-text query")
    search_parser.add_argument("--folder", help="Exact folder name")
    search_parser.add_argument("--category", help="Assigned category, e.g. 'Interested'")
    search_parser.add_argument("--size", type=_positive_int, default=20, help="Page size")
    search_parser.add_argument("--page", type=_non_negative_int, default=0, help="Page number")

    # stats command
    subparsers.add_parser("stats", help="Show index statistics")

    # categorize command
    categorize_parser = subparsers.add_parser(
        "categorize", help="Categorize one ad-hoc message"
    )
    categorize_parser.add_argument("--subject", default="", help="Message subject")
    categorize_parser.add_argument("--body", default="", help="Message body")
    categorize_parser.add_argument("--from", dest="sender", default="", help="Sender")
    categorize_parser.add_argument(
        "--rules-only",
        action="store_true",
        dest="rules_only",
        help="Skip the oracle and use the rule engine",
    )

    return parser


def _serve(args: argparse.Namespace, settings: InboxTriageSettings) -> None:
    import uvicorn

    from inbox_triage.api.app import create_app

    index = MessageIndex(settings.database_path)
    index.connect()
    pipeline: TriagePipeline | None = None
    if args.watch:
        pipeline = TriagePipeline(settings=settings, index=index)
        threading.Thread(target=pipeline.run_forever, name="watcher", daemon=True).start()

    app = create_app(settings, index, pipeline=pipeline)
    try:
        uvicorn.run(
            app,
            host=args.host or settings.api_host,
            port=args.port or settings.api_port,
            log_level=settings.log_level.lower(),
        )
    finally:
        if pipeline is not None:
            pipeline.close()
        else:
            index.close()


def _print_hits(index: MessageIndex, search_filter: SearchFilter) -> None:
    result = index.search(search_filter)
    print(f"\n{result.total} match(es) in {result.took_ms}ms\n")
    for hit in result.hits:
        category = hit["ai_category"] or "-"
        print(f"  {hit['uid']:>8}  {hit['date'][:16]}  {category:16s} {hit['subject']}")


def main() -> None:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args()
    if not args.command:
        parser.print_help()
        sys.exit(1)

    settings = InboxTriageSettings()
    setup_logging(settings.log_level)

    try:
        if args.command == "watch":
            pipeline = TriagePipeline(settings=settings, on_progress=on_progress)
            try:
                pipeline.run_forever()
            finally:
                pipeline.close()

        elif args.command == "run-once":
            pipeline = TriagePipeline(settings=settings, on_progress=on_progress)
            try:
                progress = pipeline.run_once(since_days=args.days)
            finally:
                pipeline.close()
            print(f"\n\nComplete: {progress}")

        elif args.command == "serve":
            _serve(args, settings)

        elif args.command == "search":
            category = Category.parse(args.category) if args.category else None
            with MessageIndex(settings.database_path) as index:
                _print_hits(
                    index,
                    SearchFilter(
                        query=args.query,
                        folder=args.folder,
                        category=category,
                        size=args.size,
                        offset=args.page * args.size,
                    ),
                )

        elif args.command == "stats":
            with MessageIndex(settings.database_path) as index:
                stats = index.stats()
                categories = index.category_stats()
            print(f"\nTotal documents: {stats['total']} (unread: {stats['unread']})")
            print("\nBy folder:")
            for folder, count in sorted(stats["by_folder"].items()):
                print(f"  {folder}: {count}")
            print("\nBy category:")
            for name, count in sorted(categories["by_category"].items()):
                print(f"  {name}: {count}")
            print(f"  (unclassified): {categories['unclassified']}")

        elif args.command == "categorize":
            oracle = None if args.rules_only else OpenAIOracle.from_settings(settings)
            batcher = ClassificationBatcher.from_settings(settings, oracle)
            record = MailRecord(
                uid=1,
                sender=args.sender,
                to="",
                subject=args.subject,
                date=datetime.now(UTC),
                folder="",
                account=settings.account,
                body=args.body,
            )
            result = batcher.classify_batch([record])[0]
            print(f"\nCategory:   {result.category.value}")
            print(f"Confidence: {result.confidence:.2f}")
            print(f"Method:     {result.method.value}")
            print(f"Reasoning:  {result.reasoning}")

    except KeyboardInterrupt:
        print("\n\nInterrupted by user")
        sys.exit(130)
    except Exception as e:
        print(f"\nError: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
