"""
Crawler Errors
==============
Exception hierarchy shared by the fetch clients, the worker pool and the
orchestrator.

Per-page and per-item errors are captured into the failure ledger by the
collectors.  The orchestrator raises ``CriticalFailureError`` once a pass
crosses the critical failure ratio.
"""

from typing import Optional


class CrawlerError(Exception):
    """Base class for all crawler errors."""


class ConfigError(CrawlerError):
    """Invalid configuration value."""


class PageOperationError(CrawlerError):
    """
    A single page or document operation failed.

    Args:
        message: Human readable description
        page_number: Site page number the operation targeted (if any)
        attempt: Attempt number the failure happened on (if known)
    """

    def __init__(
        self,
        message: str,
        page_number: Optional[int] = None,
        attempt: Optional[int] = None,
    ):
        super().__init__(message)
        self.page_number = page_number
        self.attempt = attempt


class PageTimeoutError(PageOperationError):
    """The operation did not finish within its timeout."""


class PageAbortedError(PageOperationError):
    """The operation observed the cancel token and stopped."""


class PageNavigationError(PageOperationError):
    """Navigation or HTTP fetch failed (bad status, connection error)."""


class PageContentExtractionError(PageOperationError):
    """The document was fetched but expected content was missing."""


class PageInitializationError(PageOperationError):
    """The fetch client could not be initialized."""


class DetailFetchError(PageOperationError):
    """A product detail document could not be fetched or parsed."""

    def __init__(self, message: str, url: str = "", attempt: Optional[int] = None):
        super().__init__(message, attempt=attempt)
        self.url = url


class CriticalFailureError(CrawlerError):
    """Too many pages or items failed for the run to be trusted."""


class StorageError(CrawlerError):
    """The record store could not be read or written."""
