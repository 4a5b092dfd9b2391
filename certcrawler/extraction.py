"""
Document Extraction
===================
Typed field extraction over a parsed ``BeautifulSoup`` document.

Both fetch strategies hand their HTML to ``parse_document`` and then call the
same functions below, so browser and HTTP crawls produce identical records.

Site DOM shape:
- listing pages: ``div.post-feed article`` cards, newest first
- pagination:    ``div.pagination-wrapper > nav > div > a > span``
- detail pages:  ``.product-certificates-table`` key/value rows and
                 ``.entry-product-details div ul li`` label/value items
"""

from __future__ import annotations

import logging
import re
from datetime import date
from typing import Any, Dict, List, Optional

from bs4 import BeautifulSoup

from .models import ListRecord, RawListing

logger = logging.getLogger(__name__)

# Best-available HTML parser for BeautifulSoup
try:
    import lxml  # noqa: F401
    _BS_PARSER = "lxml"
except ImportError:
    _BS_PARSER = "html.parser"

DEFAULT_DEVICE_TYPE = "Matter Device"
UNKNOWN_MANUFACTURER = "Unknown"
UNKNOWN_PRODUCT = "Unknown Product"

KNOWN_MANUFACTURERS = (
    "Govee", "Philips", "Samsung", "Apple", "Google", "Amazon", "Aqara", "LG",
    "IKEA", "Belkin", "Eve", "Nanoleaf", "GE", "Cync", "Tapo", "TP-Link",
    "Signify", "Haier", "WiZ",
)

DEVICE_TYPE_KEYWORDS = (
    "Light Bulb", "Smart Switch", "Door Lock", "Thermostat", "Motion Sensor",
    "Smart Plug", "Hub", "Gateway", "Camera", "Smoke Detector", "Outlet",
    "Light", "Door", "Window", "Sensor", "Speaker", "Display",
)

_CERT_ID_RE = re.compile(r"([A-Za-z0-9-]+\d+-[A-Za-z0-9-]+)")
_DATE_RE = re.compile(
    r"(\d{1,2}/\d{1,2}/\d{2,4})|(\d{4}-\d{1,2}-\d{1,2})|([A-Za-z]+\s+\d{1,2},?\s+\d{4})"
)
_VERSION_RE = re.compile(r"v?\d+(?:\.\d+)+")
_HEX_ID_RE = re.compile(r"0x[0-9A-Fa-f]+|\b\d{4,6}\b")
_CERT_PREFIX_RE = re.compile(r"^\s*Certificate\s+ID\s*:\s*", re.IGNORECASE)

# Table row label (lowercase substring) → field, first match wins
_TABLE_FIELDS = (
    ("certification id", "certificate_id"),
    ("certification date", "certification_date"),
    ("software version", "software_version"),
    ("hardware version", "hardware_version"),
    ("vid", "vid"),
    ("pid", "pid"),
    ("family sku", "family_sku"),
    ("family variant sku", "family_variant_sku"),
    ("firmware version", "firmware_version"),
    ("family id", "family_id"),
    ("specification version", "specification_version"),
    ("transport interface", "transport_interface"),
    ("primary device type id", "primary_device_type_id"),
)

_ADDITIONAL_FIELDS = (
    "family_sku", "family_variant_sku", "family_id", "tis_trp_tested",
    "specification_version", "transport_interface", "primary_device_type_id",
)


def parse_document(html: str) -> BeautifulSoup:
    return BeautifulSoup(html, _BS_PARSER)


def _text(el) -> str:
    if el is None:
        return ""
    return el.get_text(" ", strip=True)


# ---------------------------------------------------------------------------
# Listing pages
# ---------------------------------------------------------------------------

def extract_total_pages(soup: BeautifulSoup) -> int:
    """Largest page number in the pagination widget (0 if none)."""
    highest = 0
    for span in soup.select("div.pagination-wrapper > nav > div > a > span"):
        value = _text(span).replace(",", "")
        if value.isdigit():
            highest = max(highest, int(value))
    return highest


def count_list_items(soup: BeautifulSoup) -> int:
    return len(soup.select("div.post-feed article"))


def extract_list_items(soup: BeautifulSoup) -> List[RawListing]:
    """
    Read the product cards of one listing page.

    Cards are read oldest first (reverse DOM order) so ``site_index_in_page``
    counts from the bottom of the page.  Cards without a link are skipped
    but keep their slot in the numbering.
    """
    articles = soup.select("div.post-feed article")
    items: List[RawListing] = []
    for index, article in enumerate(reversed(articles)):
        link = article.select_one("a[href]")
        url = link["href"].strip() if link else ""
        if not url:
            logger.debug(f"[EXTRACT] Card {index} has no link, skipping")
            continue

        certificate_id = None
        cert_el = article.select_one("p.entry-certificate-id")
        if cert_el is not None:
            certificate_id = _CERT_PREFIX_RE.sub("", _text(cert_el)) or None
        else:
            certificate_id = _text(article.select_one("span.entry-cert-id")) or None

        items.append(RawListing(
            url=url,
            site_index_in_page=index,
            manufacturer=_text(article.select_one("p.entry-company.notranslate")) or None,
            model=_text(article.select_one("h3.entry-title")) or None,
            certificate_id=certificate_id,
        ))
    return items


# ---------------------------------------------------------------------------
# Detail pages
# ---------------------------------------------------------------------------

def _details_from_table(soup: BeautifulSoup) -> Dict[str, str]:
    details: Dict[str, str] = {}
    table = soup.select_one(".product-certificates-table")
    if table is None:
        return details
    for row in table.select("tr"):
        cells = row.find_all("td")
        if len(cells) < 2:
            continue
        key = _text(cells[0]).lower()
        value = _text(cells[1])
        if not value:
            continue
        if "tis" in key and "trp tested" in key:
            details["tis_trp_tested"] = value
            continue
        for needle, name in _TABLE_FIELDS:
            if needle in key:
                details[name] = value
                break
        else:
            if "device type" in key or "product type" in key:
                details["device_type"] = value
    return details


def _list_label_field(label: str) -> Optional[str]:
    if label == "manufacturer" or "company" in label:
        return "manufacturer"
    if label == "vendor id" or "vid" in label:
        return "vid"
    if label == "product id" or "pid" in label:
        return "pid"
    exact = {
        "family sku": "family_sku",
        "family variant sku": "family_variant_sku",
        "firmware version": "firmware_version",
        "hardware version": "hardware_version",
        "family id": "family_id",
        "transport interface": "transport_interface",
    }
    if label in exact:
        return exact[label]
    if label == "certificate id" or "certification id" in label:
        return "certificate_id"
    if label == "certified date" or "certification date" in label:
        return "certification_date"
    if "tis" in label or "trp" in label:
        return "tis_trp_tested"
    if label == "specification version" or "spec version" in label:
        return "specification_version"
    if "primary device" in label:
        return "primary_device_type_id"
    if label == "device type" or "product type" in label or "category" in label:
        return "device_type"
    return None


def _details_from_list(soup: BeautifulSoup) -> Dict[str, str]:
    details: Dict[str, str] = {}
    for item in soup.select(".entry-product-details div ul li"):
        label = item.select_one("span.label")
        value = item.select_one("span.value")
        if label is None or value is None:
            continue
        value_text = _text(value)
        if not value_text:
            continue
        name = _list_label_field(_text(label).lower())
        if name:
            details[name] = value_text
    return details


def _detail_lines(soup: BeautifulSoup) -> List[str]:
    return [li.get_text(" ", strip=True) for li in soup.select("div.entry-product-details > div > ul li")]


def _after_colon(text: str) -> str:
    parts = text.split(":", 1)
    return parts[1].strip() if len(parts) > 1 else ""


def _scan_lines(lines: List[str], keywords, pattern: Optional[re.Pattern] = None) -> str:
    """First labelled line value: regex match if given, else text after the colon."""
    for line in lines:
        lower = line.lower()
        if not any(k in lower for k in keywords):
            continue
        if pattern is not None:
            match = pattern.search(_after_colon(line) or line)
            if match:
                return match.group(0)
        value = _after_colon(line)
        if value:
            return value
    return ""


def _resolve_manufacturer(soup, details, base: ListRecord, title: str, lines: List[str]) -> str:
    manufacturer = details.get("manufacturer") or base.manufacturer or ""
    if not manufacturer:
        lower_title = title.lower()
        for brand in KNOWN_MANUFACTURERS:
            if brand.lower() in lower_title:
                manufacturer = brand
                break
    if not manufacturer:
        manufacturer = _text(soup.select_one(".company-info")) or _text(soup.select_one(".manufacturer"))
    if not manufacturer:
        manufacturer = _scan_lines(lines, ("manufacturer", "company"))
    return manufacturer or UNKNOWN_MANUFACTURER


def _resolve_device_type(soup, details, title: str) -> str:
    device_type = details.get("device_type") or DEFAULT_DEVICE_TYPE
    if device_type == DEFAULT_DEVICE_TYPE:
        category = _text(soup.select_one(".category-link"))
        if category:
            device_type = category
    if device_type == DEFAULT_DEVICE_TYPE:
        body = soup.body or soup
        page_text = body.get_text(" ", strip=True).lower()
        lower_title = title.lower()
        for keyword in DEVICE_TYPE_KEYWORDS:
            needle = keyword.lower()
            if needle in page_text or needle in lower_title:
                device_type = keyword
                break
    return device_type


def _application_categories(soup: BeautifulSoup, device_type: str) -> List[str]:
    categories: List[str] = []
    for heading in soup.find_all("h3"):
        if "Application Categories" in _text(heading):
            parent = heading.parent
            if parent is not None:
                categories = [_text(li) for li in parent.select("ul li") if _text(li)]
            break
    return categories or [device_type or DEFAULT_DEVICE_TYPE]


def extract_product_details(soup: BeautifulSoup, base: ListRecord) -> Dict[str, Any]:
    """
    Extract the detail delta for one product page.

    Table values are defaults and list values override them.  Fields that
    end up equal to the base record's value are left out of the delta.

    Args:
        soup: Parsed detail page
        base: The list record the page was reached from

    Returns:
        Field name → value, ready for ``DetailRecord.from_list_record``
    """
    title = _text(soup.select_one("h1.entry-title")) or _text(soup.select_one("h1")) or UNKNOWN_PRODUCT
    details = _details_from_table(soup)
    details.update(_details_from_list(soup))
    lines = _detail_lines(soup)

    fields: Dict[str, Any] = {}

    model = base.model
    if title != UNKNOWN_PRODUCT and title != model:
        model = title
    fields["model"] = model

    fields["manufacturer"] = _resolve_manufacturer(soup, details, base, title, lines)
    fields["device_type"] = _resolve_device_type(soup, details, title)

    certificate_id = details.get("certificate_id") or base.certificate_id or ""
    if not certificate_id:
        certificate_id = _scan_lines(lines, ("certification", "certificate", "cert id"), _CERT_ID_RE)
    fields["certificate_id"] = certificate_id

    certification_date = details.get("certification_date") or _scan_lines(lines, ("date",), _DATE_RE)
    fields["certification_date"] = certification_date or date.today().isoformat()

    software_version = details.get("firmware_version") or details.get("software_version") or ""
    if not software_version:
        software_version = _scan_lines(lines, ("software", "firmware"), _VERSION_RE)
    hardware_version = details.get("hardware_version") or ""
    if not hardware_version:
        hardware_version = _scan_lines(lines, ("hardware",), _VERSION_RE)
    fields["software_version"] = software_version
    fields["hardware_version"] = hardware_version
    fields["firmware_version"] = details.get("firmware_version") or software_version

    fields["vid"] = details.get("vid") or _scan_lines(lines, ("vendor id", "vid"), _HEX_ID_RE)
    fields["pid"] = details.get("pid") or _scan_lines(lines, ("product id", "pid"), _HEX_ID_RE)

    for name in _ADDITIONAL_FIELDS:
        fields[name] = details.get(name, "")

    fields["application_categories"] = _application_categories(soup, fields["device_type"])

    for name in ("manufacturer", "model", "certificate_id"):
        if fields.get(name) and fields[name] == getattr(base, name):
            del fields[name]
    return fields
