"""
Certified Product Catalogue Crawler
Incremental crawler for a paginated, newest-first product certification listing.

CLI Usage:
    python -m certcrawler <command> [options]

    Commands:
        crawl           Collect new products into the local store
        status          Compare the local store against the live site
        gaps            Report missing pageIds (--collect to re-crawl them)

    Options:
        --type          Fetch strategy: http or browser (default: http)
        --limit         Maximum site pages per run (default: 10)
        --concurrency   List pass concurrency (default: 16)
        --store         Local JSON store path
        --output-dir    Directory for JSON snapshots
        --no-save       Do not write results to the store
"""

from .config import CrawlerConfig
from .errors import (
    CrawlerError,
    ConfigError,
    PageOperationError,
    PageTimeoutError,
    PageAbortedError,
    StorageError,
)
from .models import (
    Stage,
    TaskStatus,
    ListRecord,
    DetailRecord,
    CrawlingRange,
    GapRange,
    CrawlProgress,
    StatusSummary,
    TotalPagesInfo,
)
from .pool import CancelToken, ConcurrencyPool
from .progress import CrawlObserver, CallbackObserver, LoggingObserver
from .state import CrawlerState
from .storage import RecordStore, JsonRecordStore
from .strategies import PageFetchClient, HttpFetchClient, BrowserFetchClient, create_fetch_client
from .gaps import GapDetector, GapBatchProcessor, coalesce_gap_ranges, format_site_ranges
from .orchestrator import CrawlOrchestrator

__all__ = [
    'CrawlerConfig',
    'CrawlOrchestrator',
    'CrawlerState',
    # Errors
    'CrawlerError',
    'ConfigError',
    'PageOperationError',
    'PageTimeoutError',
    'PageAbortedError',
    'StorageError',
    # Data model
    'Stage',
    'TaskStatus',
    'ListRecord',
    'DetailRecord',
    'CrawlingRange',
    'GapRange',
    'CrawlProgress',
    'StatusSummary',
    'TotalPagesInfo',
    # Concurrency
    'CancelToken',
    'ConcurrencyPool',
    # Observers
    'CrawlObserver',
    'CallbackObserver',
    'LoggingObserver',
    # Fetch strategies and storage
    'PageFetchClient',
    'HttpFetchClient',
    'BrowserFetchClient',
    'create_fetch_client',
    'RecordStore',
    'JsonRecordStore',
    # Gap tooling
    'GapDetector',
    'GapBatchProcessor',
    'coalesce_gap_ranges',
    'format_site_ranges',
]

__version__ = '1.0.0'
