"""
Persistence Boundary
====================
The crawler hands deduplicated records to a ``RecordStore`` and reads back
a few summary facts for range computation and gap detection.  It never owns
a schema.

``JsonRecordStore`` is the shipped implementation: one JSON document keyed
by product url, rewritten atomically on every save.
"""

from __future__ import annotations

import json
import logging
import os
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set

from .errors import StorageError
from .models import DetailRecord, SaveResult

logger = logging.getLogger(__name__)


class RecordStore(ABC):
    """What the crawler needs from a product store."""

    @abstractmethod
    def product_count(self) -> int:
        ...

    @abstractmethod
    def max_page_id(self) -> int:
        """Highest stored page_id, or -1 when the store is empty."""

    @abstractmethod
    def last_updated(self) -> Optional[str]:
        ...

    @abstractmethod
    def record_positions(self) -> Dict[int, Set[int]]:
        """page_id → stored index_in_page values."""

    @abstractmethod
    def save_products(self, records: List[DetailRecord]) -> SaveResult:
        ...


class JsonRecordStore(RecordStore):
    """
    File-backed store.

    Usage::

        store = JsonRecordStore("products.json")
        result = store.save_products(details)
        print(result.added, result.updated)
    """

    def __init__(self, path: str):
        self.path = Path(path)
        self._products: Optional[Dict[str, dict]] = None
        self._updated_at: Optional[str] = None

    def _load(self) -> Dict[str, dict]:
        if self._products is not None:
            return self._products
        self._products = {}
        if not self.path.exists():
            return self._products
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as exc:
            raise StorageError(f"Cannot read store {self.path}: {exc}") from exc
        for item in data.get("products", []):
            if item.get("url"):
                self._products[item["url"]] = item
        self._updated_at = data.get("updated_at")
        logger.info(f"[STORE] Loaded {len(self._products)} products from {self.path}")
        return self._products

    def product_count(self) -> int:
        return len(self._load())

    def max_page_id(self) -> int:
        products = self._load()
        if not products:
            return -1
        return max(int(p.get("page_id", -1)) for p in products.values())

    def last_updated(self) -> Optional[str]:
        self._load()
        return self._updated_at

    def record_positions(self) -> Dict[int, Set[int]]:
        positions: Dict[int, Set[int]] = {}
        for product in self._load().values():
            positions.setdefault(int(product["page_id"]), set()).add(int(product["index_in_page"]))
        return positions

    def products(self) -> List[DetailRecord]:
        return [DetailRecord.from_dict(p) for p in self._load().values()]

    def save_products(self, records: List[DetailRecord]) -> SaveResult:
        """Merge ``records`` by url; memory only changes once the file is written."""
        products = dict(self._load())
        result = SaveResult()
        for record in records:
            data = record.to_dict()
            existing = products.get(record.url)
            if existing is None:
                result.added += 1
            elif existing == data:
                result.unchanged += 1
                continue
            else:
                result.updated += 1
            products[record.url] = data

        if result.added or result.updated:
            updated_at = datetime.now(timezone.utc).isoformat()
            self._write(products, updated_at)
            self._products = products
            self._updated_at = updated_at
        logger.info(
            f"[STORE] Saved {len(records)} records: added={result.added} "
            f"updated={result.updated} unchanged={result.unchanged}"
        )
        return result

    def _write(self, products: Dict[str, dict], updated_at: str) -> None:
        payload = {
            "updated_at": updated_at,
            "products": sorted(
                products.values(), key=lambda p: (p["page_id"], p["index_in_page"])
            ),
        }
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2, ensure_ascii=False)
            os.replace(tmp_path, self.path)
        except OSError as exc:
            raise StorageError(f"Cannot write store {self.path}: {exc}") from exc


def write_snapshot(records: Iterable, output_dir: Optional[str], prefix: str) -> Optional[str]:
    """
    Dump records to ``<output_dir>/<prefix>-<timestamp>.json``.

    Best-effort: failures are logged and ``None`` is returned.
    """
    if not output_dir:
        return None
    timestamp = datetime.now().strftime("%Y%m%d-%H%M%S")
    path = Path(output_dir) / f"{prefix}-{timestamp}.json"
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        data = [r.to_dict() for r in records]
        with open(path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
    except (OSError, TypeError, ValueError) as e:
        logger.warning(f"[SNAPSHOT] Could not write {path}: {e}")
        return None
    logger.info(f"[SNAPSHOT] Wrote {path}")
    return str(path.absolute())
