"""
Post-pass Reconciliation
========================
Deduplication into canonical order, and a diagnostic cross-check between
the list and detail result sets.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Tuple

from .models import DetailRecord, ListRecord

logger = logging.getLogger(__name__)

_COMPARED_FIELDS = ("model", "manufacturer", "certificate_id", "page_id", "index_in_page")


def dedupe_list_records(records: Iterable[ListRecord]) -> List[ListRecord]:
    """Unique by (page_id, index_in_page), later wins; newest page first."""
    unique: Dict[Tuple[int, int], ListRecord] = {}
    for record in records:
        unique[record.key] = record
    return sorted(unique.values(), key=lambda r: (-r.page_id, r.index_in_page))


def dedupe_detail_records(records: Iterable[DetailRecord]) -> List[DetailRecord]:
    """Unique by url, later wins; oldest page first."""
    unique: Dict[str, DetailRecord] = {}
    for record in records:
        unique[record.url] = record
    return sorted(unique.values(), key=lambda r: (r.page_id, r.index_in_page, r.url))


@dataclass
class FieldMismatch:
    url: str
    field: str
    list_value: object
    detail_value: object


@dataclass
class ConsistencyReport:
    missing_in_list: List[str] = field(default_factory=list)
    missing_in_detail: List[str] = field(default_factory=list)
    mismatches: List[FieldMismatch] = field(default_factory=list)

    @property
    def is_consistent(self) -> bool:
        return not (self.missing_in_list or self.missing_in_detail or self.mismatches)

    def summary(self) -> str:
        return (
            f"missing_in_list={len(self.missing_in_list)} "
            f"missing_in_detail={len(self.missing_in_detail)} "
            f"mismatches={len(self.mismatches)}"
        )


def _present(value) -> bool:
    return value is not None and value != ""


def validate_consistency(
    list_records: Iterable[ListRecord],
    detail_records: Iterable[DetailRecord],
) -> ConsistencyReport:
    """
    Cross-reference list and detail records by url.

    Diagnostic only: the report is logged and surfaced, never used to block
    persistence.  Field mismatches are only flagged when both sides have a
    non-empty value.
    """
    by_url_list = {r.url: r for r in list_records}
    by_url_detail = {r.url: r for r in detail_records}
    report = ConsistencyReport()

    for url in by_url_detail:
        if url not in by_url_list:
            report.missing_in_list.append(url)
    for url, list_record in by_url_list.items():
        detail = by_url_detail.get(url)
        if detail is None:
            report.missing_in_detail.append(url)
            continue
        for name in _COMPARED_FIELDS:
            list_value = getattr(list_record, name)
            detail_value = getattr(detail, name)
            if _present(list_value) and _present(detail_value) and list_value != detail_value:
                report.mismatches.append(FieldMismatch(url, name, list_value, detail_value))

    if report.is_consistent:
        logger.info("[VALIDATE] List and detail results are consistent")
    else:
        logger.warning(f"[VALIDATE] Inconsistencies found: {report.summary()}")
    return report
