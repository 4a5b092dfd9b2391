"""
Crawler Data Model
==================
Records produced by the list and detail passes, plus the bookkeeping
types shared by the state machine, gap tooling and status queries.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

DETAIL_ID_NAMESPACE = "csa-matter"


class Stage(str, Enum):
    """Session stages, in the order the orchestrator walks them."""
    PREPARATION = "preparation"
    LIST_INIT = "productList:init"
    LIST_FETCHING = "productList:fetching"
    LIST_PROCESSING = "productList:processing"
    DETAIL_INIT = "productDetail:init"
    DETAIL_FETCHING = "productDetail:fetching"
    DETAIL_PROCESSING = "productDetail:processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (Stage.COMPLETED, Stage.FAILED)


_STAGE_ORDER = list(Stage)


def stage_index(stage: Stage) -> int:
    # COMPLETED and FAILED share the terminal rank
    if stage is Stage.FAILED:
        return _STAGE_ORDER.index(Stage.COMPLETED)
    return _STAGE_ORDER.index(stage)


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RawListing:
    """One product card as it appears on a site listing page."""
    url: str
    site_index_in_page: int
    manufacturer: Optional[str] = None
    model: Optional[str] = None
    certificate_id: Optional[str] = None


@dataclass(frozen=True)
class ListRecord:
    """A product located in the dense local (page_id, index_in_page) space."""
    url: str
    page_id: int
    index_in_page: int
    manufacturer: Optional[str] = None
    model: Optional[str] = None
    certificate_id: Optional[str] = None

    @property
    def key(self) -> Tuple[int, int]:
        return (self.page_id, self.index_in_page)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class DetailRecord:
    """Full product record; identity is ``url``."""
    url: str
    page_id: int
    index_in_page: int
    id: str = ""
    manufacturer: Optional[str] = None
    model: Optional[str] = None
    device_type: Optional[str] = None
    certificate_id: Optional[str] = None
    certification_date: Optional[str] = None
    software_version: Optional[str] = None
    hardware_version: Optional[str] = None
    firmware_version: Optional[str] = None
    vid: Optional[str] = None
    pid: Optional[str] = None
    family_sku: Optional[str] = None
    family_variant_sku: Optional[str] = None
    family_id: Optional[str] = None
    tis_trp_tested: Optional[str] = None
    specification_version: Optional[str] = None
    transport_interface: Optional[str] = None
    primary_device_type_id: Optional[str] = None
    application_categories: Tuple[str, ...] = ()

    @classmethod
    def from_list_record(cls, base: ListRecord, delta: Dict[str, Any]) -> "DetailRecord":
        """Overlay an extracted detail delta on a list record."""
        values: Dict[str, Any] = dict(base.to_dict())
        values.update(delta)
        values["id"] = make_detail_id(base.page_id, base.index_in_page)
        if "application_categories" in values:
            values["application_categories"] = tuple(values["application_categories"] or ())
        known = cls.__dataclass_fields__
        return cls(**{k: v for k, v in values.items() if k in known})

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["application_categories"] = list(self.application_categories)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DetailRecord":
        known = cls.__dataclass_fields__
        values = {k: v for k, v in data.items() if k in known}
        values["application_categories"] = tuple(values.get("application_categories") or ())
        return cls(**values)


def make_detail_id(page_id: int, index_in_page: int) -> str:
    return f"{DETAIL_ID_NAMESPACE}-{page_id}-{index_in_page}"


# ---------------------------------------------------------------------------
# Bookkeeping
# ---------------------------------------------------------------------------

class TaskStatus(str, Enum):
    WAITING = "waiting"
    ATTEMPTING = "attempting"
    SUCCESS = "success"
    FAILED = "failed"
    INCOMPLETE = "incomplete"
    STOPPED = "stopped"


@dataclass
class PageStatus:
    """Status of one site page (or one detail url) across attempts."""
    page_number: Any
    status: TaskStatus = TaskStatus.WAITING
    attempt: int = 0
    start_time: Optional[float] = None
    end_time: Optional[float] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class TotalPagesInfo:
    total_pages: int
    last_page_count: int


@dataclass(frozen=True)
class CrawlingRange:
    """Site page interval, walked from ``start_page`` down to ``end_page``."""
    start_page: int
    end_page: int

    @property
    def page_count(self) -> int:
        if self.start_page < self.end_page or self.end_page <= 0:
            return 0
        return self.start_page - self.end_page + 1

    def pages(self) -> List[int]:
        """Site page numbers in dispatch order (newest first)."""
        if self.page_count == 0:
            return []
        return list(range(self.start_page, self.end_page - 1, -1))


@dataclass
class GapRange:
    """A contiguous site-page interval covering some missing local pageIds."""
    start_page: int
    end_page: int
    missing_page_ids: List[int] = field(default_factory=list)
    estimated_records: int = 0

    @property
    def page_count(self) -> int:
        return abs(self.start_page - self.end_page) + 1

    def label(self) -> str:
        if self.start_page == self.end_page:
            return str(self.start_page)
        return f"{self.start_page}~{self.end_page}"


@dataclass
class CrawlProgress:
    """One progress snapshot handed to observers."""
    stage: Stage = Stage.PREPARATION
    status: str = "idle"
    current: int = 0
    total: int = 0
    percentage: float = 0.0
    current_step: str = ""
    elapsed_time: float = 0.0
    remaining_time: Optional[float] = None
    processed_items: int = 0
    new_items: int = 0
    updated_items: int = 0
    message: str = ""
    critical_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["stage"] = self.stage.value
        return data


@dataclass(frozen=True)
class FailureEntry:
    """One failed page number or url with its per-attempt error history."""
    id: Any
    errors: Tuple[str, ...] = ()


@dataclass
class SaveResult:
    added: int = 0
    updated: int = 0
    unchanged: int = 0
    failed: int = 0

    @property
    def total(self) -> int:
        return self.added + self.updated + self.unchanged + self.failed


@dataclass
class StatusSummary:
    """Read-only comparison of the local store against the site."""
    db_last_updated: Optional[str] = None
    db_product_count: int = 0
    site_total_pages: int = 0
    site_product_count: int = 0
    last_page_product_count: int = 0
    diff: int = 0
    need_crawling: bool = False
    crawling_range: CrawlingRange = CrawlingRange(0, 0)
    selected_page_count: int = 0
    estimated_product_count: int = 0
    estimated_total_time_ms: int = 0
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["crawling_range"] = {
            "start_page": self.crawling_range.start_page,
            "end_page": self.crawling_range.end_page,
        }
        return data
