#!/usr/bin/env python3
"""
Command-line interface for the certification crawler
====================================================
Three sub-commands:

    crawl    collect new products from the site into the local store
    status   compare the local store against the live site
    gaps     report missing local pageIds (``--collect`` re-crawls them)

Configuration is layered: built-in defaults, then ``--config`` JSON, then
``CERTCRAWLER_*`` environment variables (a ``.env`` file is honoured), then
command-line flags.

Run with: python -m certcrawler <command> [options]
"""

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path

from dotenv import load_dotenv

# Search the project root first, then the CWD
_env_path = Path(__file__).resolve().parent.parent / '.env'
if _env_path.exists():
    load_dotenv(_env_path)
else:
    load_dotenv()

from .config import CrawlerConfig
from .errors import ConfigError, StorageError
from .gaps import format_site_ranges
from .orchestrator import CrawlOrchestrator
from .progress import LoggingObserver
from .storage import JsonRecordStore

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s | %(levelname)s | %(message)s',
    datefmt='%H:%M:%S'
)
logger = logging.getLogger(__name__)


def _install_stop_handler(orchestrator: CrawlOrchestrator) -> None:
    """First Ctrl+C asks the session to stop gracefully."""
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, orchestrator.stop_crawling)
    except (NotImplementedError, RuntimeError):
        # Windows event loops do not support signal handlers
        pass


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

async def _cmd_crawl(orchestrator: CrawlOrchestrator) -> int:
    _install_stop_handler(orchestrator)
    ok = await orchestrator.start_crawling()
    if orchestrator.last_validation is not None and not orchestrator.last_validation.is_consistent:
        print(f"  Consistency: {orchestrator.last_validation.summary()}")
    return 0 if ok else 1


async def _cmd_status(orchestrator: CrawlOrchestrator) -> int:
    summary = await orchestrator.check_crawling_status()
    print("\n" + "=" * 60)
    print("  CRAWL STATUS")
    print("=" * 60)
    if summary.error:
        print(f"  Error: {summary.error}")
        print("=" * 60)
        return 1
    print(f"  Store products:      {summary.db_product_count}")
    print(f"  Store updated:       {summary.db_last_updated or 'never'}")
    print(f"  Site pages:          {summary.site_total_pages}")
    print(f"  Site products:       {summary.site_product_count}")
    print(f"  Last page products:  {summary.last_page_product_count}")
    print(f"  Difference:          {summary.diff}")
    print("-" * 60)
    print(f"  Needs crawling:      {'yes' if summary.need_crawling else 'no'}")
    if summary.selected_page_count:
        rng = summary.crawling_range
        print(f"  Next range:          {rng.start_page}~{rng.end_page} ({summary.selected_page_count} pages)")
        print(f"  Estimated products:  {summary.estimated_product_count}")
        print(f"  Estimated time:      {summary.estimated_total_time_ms / 1000:.0f} s")
    print("=" * 60)
    return 0


async def _cmd_gaps(orchestrator: CrawlOrchestrator, collect: bool) -> int:
    detection, site = await orchestrator.detect_gaps()
    print("\n" + detection.format_report())
    if detection.missing_page_ids:
        print(f"  Site pages: {format_site_ranges(detection.missing_page_ids, site.total_pages)}")
    if not collect or not detection.missing_page_ids:
        return 0

    _install_stop_handler(orchestrator)
    result = await orchestrator.collect_gaps(detection, site)
    if result is None:
        return 1
    print(f"\n  Gap collection: {result.processed_ranges}/{result.total_ranges} ranges, "
          f"{result.collected} records added")
    for label, error in result.failed_ranges:
        print(f"    {label}: {error}")
    return 0 if result.success else 1


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='certcrawler',
        description='Certified product catalogue crawler',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m certcrawler status
  python -m certcrawler crawl --limit 10
  python -m certcrawler crawl --type browser --headed
  python -m certcrawler gaps --collect
        """
    )
    parser.add_argument('--config', type=str, metavar='PATH', help='JSON configuration file')
    parser.add_argument('--verbose', '-v', action='store_true', help='Enable debug logging')

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument('--type', choices=['http', 'browser'], help='Fetch strategy (default: http)')
    common.add_argument('--limit', type=int, help='Maximum site pages per run (0 = unlimited)')
    common.add_argument('--concurrency', type=int, help='List pass concurrency')
    common.add_argument('--detail-concurrency', type=int, help='Detail pass concurrency')
    common.add_argument('--headed', action='store_true', help='Show the browser window')
    common.add_argument('--store', type=str, metavar='PATH', help='Local JSON store path')
    common.add_argument('--output-dir', type=str, metavar='DIR', help='Directory for JSON snapshots')
    common.add_argument('--no-save', action='store_true', help='Do not write results to the store')

    sub = parser.add_subparsers(dest='command')
    sub.add_parser('crawl', parents=[common], help='Collect new products')
    sub.add_parser('status', parents=[common], help='Compare the store against the site')
    gaps = sub.add_parser('gaps', parents=[common], help='Detect missing pageIds')
    gaps.add_argument('--collect', action='store_true', help='Re-crawl the detected gaps')
    return parser


def run_cli_with_args(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 2
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        cfg = CrawlerConfig.from_cli_args(args)
    except ConfigError as e:
        logger.error(f"[CONFIG] {e}")
        return 2
    cfg.log_summary()

    orchestrator = CrawlOrchestrator(cfg, JsonRecordStore(cfg.store_path), LoggingObserver())
    try:
        if args.command == 'crawl':
            return asyncio.run(_cmd_crawl(orchestrator))
        if args.command == 'status':
            return asyncio.run(_cmd_status(orchestrator))
        return asyncio.run(_cmd_gaps(orchestrator, args.collect))
    except StorageError as e:
        logger.error(f"[STORE] {e}")
        return 1
    except KeyboardInterrupt:
        print("\n\nInterrupted by user")
        return 130


if __name__ == '__main__':
    sys.exit(run_cli_with_args())
