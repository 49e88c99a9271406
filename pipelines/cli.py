"""Command-line interface for the DocSage pipeline.

Usage:
    docsage scrape [--source NAME | --url URL ...] [--use-browser]
    docsage chunk
    docsage embed [--limit N]
    docsage full [--source NAME | --url URL ...] [--limit N]
    docsage reconcile [--repair]
    docsage retry
    docsage reset-index --yes
    docsage stats
    docsage check
    docsage ask "How do refunds work?" [--session ID]

Exit status is 0 on success and 1 when a stage fails outright. Individual
pages or chunks that fail are reported but do not change the exit status.
"""

import argparse
import asyncio
import contextlib
import json
import logging
import signal
import sys
from typing import List, Optional

from config.factory import ServiceContainer
from config.settings import AppConfig
from observability.logging import setup_logging
from observability.metrics import render_metrics
from services.shared.results import BatchResult
from sources.loader import SourceLoader

logger = logging.getLogger(__name__)


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


def _print_batch(stage: str, result: BatchResult) -> None:
    print(f"{stage}: {result.success_count} succeeded, {result.failure_count} failed, "
          f"{len(result.skipped)} skipped{' (cancelled)' if result.cancelled else ''}")
    for failure in result.failed:
        print(f"  failed {failure.item}: {failure.error_type}: {failure.error}")


def resolve_urls(args, config: AppConfig):
    """URLs and browser preference for scrape/full, from --url or a source file."""
    if args.url:
        return list(dict.fromkeys(args.url)), set(), args.use_browser

    loader = SourceLoader(config.pipeline.sources_dir)
    source_name = args.source or config.pipeline.source
    source = loader.load_source_config(source_name)
    if source is None:
        raise ValueError(f"Unknown or invalid source: {source_name}")
    if not source.enabled:
        raise ValueError(f"Source is disabled: {source_name}")
    return source.urls, set(source.browser_urls), args.use_browser or source.use_browser


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="docsage", description="DocSage documentation pipeline")
    parser.add_argument("--log-level", default=None, help="Log level (default: LOG_LEVEL or INFO)")
    parser.add_argument("--json-logs", action="store_true", help="Emit JSON log lines")
    parser.add_argument("--metrics", action="store_true", help="Print Prometheus metrics when done")

    subparsers = parser.add_subparsers(dest="command", required=True)

    for name, help_text in (
        ("scrape", "Fetch and store pages"),
        ("full", "Scrape, chunk and embed"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("--source", help="Source definition name (default: PIPELINE_SOURCE)")
        sub.add_argument("--url", action="append", help="URL to scrape; repeatable, overrides --source")
        sub.add_argument("--use-browser", action="store_true", help="Render every page in a browser")
        if name == "full":
            sub.add_argument("--limit", type=int, help="Maximum chunks to embed")

    subparsers.add_parser("chunk", help="Segment pending documents")

    embed = subparsers.add_parser("embed", help="Embed pending chunks")
    embed.add_argument("--limit", type=int, help="Maximum chunks to embed (default: EMBED_LIMIT)")

    reconcile = subparsers.add_parser("reconcile", help="Audit chunk status against the vector index")
    reconcile.add_argument("--repair", action="store_true", help="Fix the disagreements found")

    subparsers.add_parser("retry", help="Return failed documents and chunks to pending")

    reset = subparsers.add_parser("reset-index", help="Delete every vector and re-queue embedded chunks")
    reset.add_argument("--yes", action="store_true", help="Confirm the reset")

    subparsers.add_parser("stats", help="Show document, chunk and vector counts")
    subparsers.add_parser("check", help="Test the embedding and language model connections")

    ask = subparsers.add_parser("ask", help="Ask a question against the indexed documentation")
    ask.add_argument("question")
    ask.add_argument("--session", help="Continue an existing conversation")
    ask.add_argument("--top-k", type=int)
    ask.add_argument("--min-score", type=float)
    ask.add_argument("--no-enrichment", action="store_true")

    return parser


async def run_command(args, container: ServiceContainer, cancel_event: asyncio.Event) -> int:
    config = container.config
    command = args.command

    if command in ("scrape", "full"):
        urls, browser_urls, use_browser = resolve_urls(args, config)
        container.scraper.browser_urls.update(browser_urls)
        result = await container.scraper.scrape_urls(urls, use_browser=use_browser, cancel_event=cancel_event)
        _print_batch("scrape", result)
        if command == "scrape" or cancel_event.is_set():
            return 0

    if command in ("chunk", "full"):
        result = await container.indexer.ingest_pending(cancel_event=cancel_event)
        _print_batch("chunk", result)
        if command == "chunk" or cancel_event.is_set():
            return 0

    if command in ("embed", "full"):
        limit = args.limit or config.pipeline.embed_limit
        result = await container.indexer.embed_pending(limit=limit, cancel_event=cancel_event)
        _print_batch("embed", result)
        if command == "full":
            _print_json(await container.indexer.stats())
        return 0

    if command == "reconcile":
        report = await container.indexer.reconcile(repair=args.repair)
        _print_json(report.to_dict())
        return 0

    if command == "retry":
        _print_json(await container.indexer.retry_failed())
        return 0

    if command == "reset-index":
        removed = await container.indexer.clear_index()
        print(f"Removed {removed} vectors")
        return 0

    if command == "stats":
        _print_json(await container.indexer.stats())
        return 0

    if command == "check":
        checks = {
            "embedding": await container.embedder.test_connection(),
            "llm": await container.llm.test_connection()
        }
        _print_json(checks)
        return 0 if all(checks.values()) else 1

    if command == "ask":
        response = await container.chat.ask(
            args.question,
            session_id=args.session,
            top_k=args.top_k,
            min_score=args.min_score,
            use_enrichment=not args.no_enrichment
        )
        print(response.response)
        if response.sources:
            print("\nSources:")
            for number, source in enumerate(response.sources, start=1):
                print(f"  [{number}] {source['title']} ({source['score']:.3f}) {source['url']}")
        print(f"\nSession: {response.session_id}")
        return 0 if response.success else 1

    raise ValueError(f"Unknown command: {command}")


async def _main_async(args, config: AppConfig, container: Optional[ServiceContainer] = None) -> int:
    container = container or ServiceContainer(config)
    cancel_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    with contextlib.suppress(NotImplementedError):
        loop.add_signal_handler(signal.SIGINT, cancel_event.set)

    needs_embedder = args.command in ("embed", "full", "ask", "check")
    try:
        await container.open(
            embedder=needs_embedder,
            llm=args.command in ("ask", "check"),
            enrichment=args.command == "ask"
        )
        return await run_command(args, container, cancel_event)
    finally:
        await container.close()
        with contextlib.suppress(NotImplementedError):
            loop.remove_signal_handler(signal.SIGINT)


def main(argv: Optional[List[str]] = None, container: Optional[ServiceContainer] = None) -> int:
    """Entry point; returns the process exit status."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "reset-index" and not args.yes:
        parser.error("reset-index deletes every vector; pass --yes to confirm")

    config = container.config if container is not None else AppConfig.from_env()
    setup_logging(
        level=args.log_level or config.logging.level,
        log_file=config.logging.log_file,
        use_json=args.json_logs or config.logging.use_json
    )

    try:
        status = asyncio.run(_main_async(args, config, container))
    except KeyboardInterrupt:
        logger.warning("Interrupted")
        status = 1
    except Exception as e:
        logger.error(f"{args.command} failed: {type(e).__name__}: {e}", exc_info=True)
        status = 1

    if args.metrics:
        print(render_metrics())
    return status


def run() -> None:
    sys.exit(main())


if __name__ == "__main__":
    run()
