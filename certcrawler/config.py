"""
Crawler Configuration
=====================
Single source of truth for all crawler defaults and runtime limits.

Every subsystem (collectors, fetch clients, gap processing, CLI) reads from
one ``CrawlerConfig``.  Values are layered, lowest precedence first:

  1. ``_DEFAULTS`` below
  2. a JSON config file (``CrawlerConfig.load``)
  3. ``CERTCRAWLER_*`` environment variables (``.env`` is loaded by the CLI)
  4. CLI flags (``CrawlerConfig.from_cli_args``)
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional

from .errors import ConfigError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Canonical defaults
# ---------------------------------------------------------------------------
_DEFAULTS = {
    # Timeouts (ms)
    "page_timeout_ms": 20000,
    "product_detail_timeout_ms": 20000,
    # Concurrency per phase
    "initial_concurrency": 16,
    "detail_concurrency": 16,
    "retry_concurrency": 9,
    # Randomized delay applied to every request (ms)
    "min_request_delay_ms": 100,
    "max_request_delay_ms": 2200,
    # Retry rounds
    "retry_start": 2,                # attempt number of the first retry round
    "product_list_retry_count": 9,
    "product_detail_retry_count": 9,
    "backoff_base_ms": 1000,
    "backoff_max_ms": 30000,
    # Site shape
    "products_per_page": 12,
    "page_range_limit": 10,          # 0 = unlimited
    # Batched list collection
    "batch_size": 30,
    "batch_delay_ms": 2000,
    "enable_batch_processing": True,
    # Strategy
    "crawler_type": "http",          # "http" | "browser"
    "headless": True,
    "user_agent": None,              # None = rotate built-in agents
    # Policy
    "critical_failure_ratio": 0.3,
    "gap_batch_max_pages": 5,
    "cache_ttl_ms": 300000,
    # Persistence
    "auto_add_to_local_db": True,
    "store_path": "certcrawler-products.json",
    "output_dir": None,              # None = no JSON snapshots
    # Target
    "base_url": "https://csa-iot.org/csa-iot_products/",
    "matter_filter_url": (
        "https://csa-iot.org/csa-iot_products/"
        "?p_keywords=&p_type%5B%5D=14&p_program_type%5B%5D=1049"
        "&p_certificate=&p_family=&p_firmware_ver="
    ),
}

_CRAWLER_TYPES = ("http", "browser")

_ENV_PREFIX = "CERTCRAWLER_"


@dataclass
class CrawlerConfig:
    """
    Configuration consumed by every crawler subsystem.

    Populate via:
      - ``CrawlerConfig()``                  → all defaults
      - ``CrawlerConfig(page_range_limit=3)`` → override one value
      - ``CrawlerConfig.load("cfg.json")``   → file merged over defaults
      - ``CrawlerConfig.from_cli_args(ns)``  → from argparse Namespace
    """

    # ---- Timeouts ----
    page_timeout_ms: int = _DEFAULTS["page_timeout_ms"]
    product_detail_timeout_ms: int = _DEFAULTS["product_detail_timeout_ms"]

    # ---- Concurrency ----
    initial_concurrency: int = _DEFAULTS["initial_concurrency"]
    detail_concurrency: int = _DEFAULTS["detail_concurrency"]
    retry_concurrency: int = _DEFAULTS["retry_concurrency"]

    # ---- Request pacing ----
    min_request_delay_ms: int = _DEFAULTS["min_request_delay_ms"]
    max_request_delay_ms: int = _DEFAULTS["max_request_delay_ms"]

    # ---- Retry ----
    retry_start: int = _DEFAULTS["retry_start"]
    product_list_retry_count: int = _DEFAULTS["product_list_retry_count"]
    product_detail_retry_count: int = _DEFAULTS["product_detail_retry_count"]
    backoff_base_ms: int = _DEFAULTS["backoff_base_ms"]
    backoff_max_ms: int = _DEFAULTS["backoff_max_ms"]

    # ---- Site shape ----
    products_per_page: int = _DEFAULTS["products_per_page"]
    page_range_limit: int = _DEFAULTS["page_range_limit"]

    # ---- Batching ----
    batch_size: int = _DEFAULTS["batch_size"]
    batch_delay_ms: int = _DEFAULTS["batch_delay_ms"]
    enable_batch_processing: bool = _DEFAULTS["enable_batch_processing"]

    # ---- Strategy ----
    crawler_type: str = _DEFAULTS["crawler_type"]
    headless: bool = _DEFAULTS["headless"]
    user_agent: Optional[str] = _DEFAULTS["user_agent"]

    # ---- Policy ----
    critical_failure_ratio: float = _DEFAULTS["critical_failure_ratio"]
    gap_batch_max_pages: int = _DEFAULTS["gap_batch_max_pages"]
    cache_ttl_ms: int = _DEFAULTS["cache_ttl_ms"]

    # ---- Persistence ----
    auto_add_to_local_db: bool = _DEFAULTS["auto_add_to_local_db"]
    store_path: str = _DEFAULTS["store_path"]
    output_dir: Optional[str] = _DEFAULTS["output_dir"]

    # ---- Target ----
    base_url: str = _DEFAULTS["base_url"]
    matter_filter_url: str = _DEFAULTS["matter_filter_url"]

    # -----------------------------------------------------------------------
    # Derived values
    # -----------------------------------------------------------------------
    @property
    def list_max_attempt(self) -> int:
        return self.retry_start + self.product_list_retry_count - 1

    @property
    def detail_max_attempt(self) -> int:
        return self.retry_start + self.product_detail_retry_count - 1

    def page_url(self, page_number: int) -> str:
        """URL of one site listing page."""
        return f"{self.matter_filter_url}&paged={page_number}"

    # -----------------------------------------------------------------------
    # Factory helpers
    # -----------------------------------------------------------------------
    @classmethod
    def load(cls, path: Optional[str] = None, use_env: bool = True) -> "CrawlerConfig":
        """Build config from defaults, an optional JSON file and the environment."""
        values: Dict[str, Any] = {}
        if path:
            file_path = Path(path)
            if file_path.exists():
                with open(file_path, "r", encoding="utf-8") as f:
                    values.update(_known_keys(json.load(f), source=str(file_path)))
            else:
                logger.warning(f"[CONFIG] File not found, using defaults: {file_path}")
        if use_env:
            values.update(_from_environment())
        return cls(**values).validate()

    @classmethod
    def from_cli_args(cls, args, base: Optional["CrawlerConfig"] = None) -> "CrawlerConfig":
        """Apply argparse overrides (``__main__.py``) on top of ``base``."""
        cfg = base or cls.load(getattr(args, "config", None))
        overrides: Dict[str, Any] = {}
        mapping = {
            "type": "crawler_type",
            "limit": "page_range_limit",
            "concurrency": "initial_concurrency",
            "detail_concurrency": "detail_concurrency",
            "store": "store_path",
            "output_dir": "output_dir",
        }
        for arg_name, field_name in mapping.items():
            value = getattr(args, arg_name, None)
            if value is not None:
                overrides[field_name] = value
        if getattr(args, "headed", False):
            overrides["headless"] = False
        if getattr(args, "no_save", False):
            overrides["auto_add_to_local_db"] = False
        return replace(cfg, **overrides).validate()

    # -----------------------------------------------------------------------
    # Validation
    # -----------------------------------------------------------------------
    def validate(self) -> "CrawlerConfig":
        """Clamp numeric values into their supported ranges.

        Raises:
            ConfigError: for an unknown crawler type
        """
        if self.crawler_type not in _CRAWLER_TYPES:
            raise ConfigError(
                f"Unknown crawler type {self.crawler_type!r} "
                f"(expected one of {', '.join(_CRAWLER_TYPES)})"
            )
        self.initial_concurrency = max(1, self.initial_concurrency)
        self.detail_concurrency = max(1, self.detail_concurrency)
        self.retry_concurrency = max(1, self.retry_concurrency)
        self.product_list_retry_count = min(20, max(1, self.product_list_retry_count))
        self.product_detail_retry_count = min(20, max(1, self.product_detail_retry_count))
        self.retry_start = max(1, self.retry_start)
        self.products_per_page = min(100, max(1, self.products_per_page))
        self.page_range_limit = max(0, self.page_range_limit)
        self.batch_size = max(1, self.batch_size)
        self.gap_batch_max_pages = max(1, self.gap_batch_max_pages)
        self.min_request_delay_ms = max(0, self.min_request_delay_ms)
        if self.max_request_delay_ms < self.min_request_delay_ms:
            self.max_request_delay_ms = self.min_request_delay_ms
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    def log_summary(self) -> None:
        """Log the effective configuration."""
        logger.info("[CONFIG] Effective crawler configuration:")
        logger.info(f"  strategy={self.crawler_type} headless={self.headless}")
        logger.info(
            f"  concurrency list={self.initial_concurrency} "
            f"detail={self.detail_concurrency} retry={self.retry_concurrency}"
        )
        logger.info(
            f"  timeouts page={self.page_timeout_ms}ms "
            f"detail={self.product_detail_timeout_ms}ms"
        )
        logger.info(
            f"  delay={self.min_request_delay_ms}-{self.max_request_delay_ms}ms "
            f"retries list={self.product_list_retry_count} "
            f"detail={self.product_detail_retry_count} (start={self.retry_start})"
        )
        logger.info(
            f"  products_per_page={self.products_per_page} "
            f"page_range_limit={self.page_range_limit or 'unlimited'}"
        )
        logger.info(f"  store={self.store_path} auto_save={self.auto_add_to_local_db}")


# ---------------------------------------------------------------------------
# Source helpers
# ---------------------------------------------------------------------------

def _known_keys(data: Dict[str, Any], source: str) -> Dict[str, Any]:
    known = {f.name for f in fields(CrawlerConfig)}
    result = {}
    for key, value in data.items():
        if key in known:
            result[key] = value
        else:
            logger.warning(f"[CONFIG] Ignoring unknown key {key!r} in {source}")
    return result


def _coerce(raw: str, default: Any) -> Any:
    if isinstance(default, bool):
        return raw.strip().lower() in ("1", "true", "yes", "on")
    if isinstance(default, int):
        return int(raw)
    if isinstance(default, float):
        return float(raw)
    return raw


def _from_environment() -> Dict[str, Any]:
    """Read ``CERTCRAWLER_<FIELD>`` overrides from the environment."""
    values: Dict[str, Any] = {}
    for name, default in _DEFAULTS.items():
        raw = os.environ.get(_ENV_PREFIX + name.upper())
        if raw is None or raw == "":
            continue
        try:
            values[name] = _coerce(raw, default)
        except ValueError:
            raise ConfigError(f"Invalid value for {_ENV_PREFIX}{name.upper()}: {raw!r}")
    return values
