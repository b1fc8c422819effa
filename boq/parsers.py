"""Spreadsheet parsing for BoQ uploads and price-list imports.

Supports Excel (every sheet) and CSV. Header rows are located by fuzzy
matching cells against known column names, because real bills rarely put
the header on the first row or spell it the same way twice.
"""
from __future__ import annotations

import io
import logging
import math
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

import pandas as pd
from rapidfuzz import fuzz, process

from config.construction_terms import HEADER_ALIASES, NON_ITEM_PREFIXES

from .errors import ValidationError
from .schemas import InquiryItem, PriceListEntry

logger = logging.getLogger(__name__)

HEADER_SEARCH_ROWS = 10
HEADER_MATCH_CUTOFF = 88

_NON_ITEM_RE = [re.compile(p, re.IGNORECASE) for p in NON_ITEM_PREFIXES]

PRICE_LIST_ALIASES = {
    "description": HEADER_ALIASES["description"],
    "rate": HEADER_ALIASES["rate"],
    "unit": HEADER_ALIASES["unit"],
    "code": ["code", "item code", "ref", "reference"],
    "category": ["category", "trade", "section"],
    "keywords": ["keywords", "tags"],
}


class FileType(str, Enum):
    """Supported file types."""
    CSV = "csv"
    EXCEL = "excel"
    UNKNOWN = "unknown"


class ParseError(ValidationError):
    """Raised when an uploaded spreadsheet cannot be used."""
    default_message = "Could not read the uploaded file"


@dataclass
class HeaderLayout:
    """Column positions found in a sheet's header row."""
    row: int
    columns: dict[str, int]

    def get(self, name: str) -> int | None:
        return self.columns.get(name)


def detect_file_type(filename: str, content: bytes | None = None) -> FileType:
    """Detect file type from filename or content.

    Args:
        filename: Original filename
        content: Optional file content for magic number detection

    Returns:
        Detected FileType
    """
    filename_lower = filename.lower()

    if filename_lower.endswith('.csv'):
        return FileType.CSV
    elif filename_lower.endswith(('.xls', '.xlsx', '.xlsm')):
        return FileType.EXCEL

    # Magic number detection if content provided
    if content and content.startswith(b'PK\x03\x04'):  # ZIP/Office
        return FileType.EXCEL

    return FileType.UNKNOWN


def is_non_item(description: str | None) -> bool:
    """True for headings, subtotals and other rows that are not priceable work."""
    if not description:
        return True
    text = description.strip().lower()
    if len(text) <= 2:
        return True
    return any(p.search(text) for p in _NON_ITEM_RE)


def _cell_text(value) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and math.isnan(value):
        return ""
    return str(value).strip()


def _to_float(value) -> float | None:
    text = _cell_text(value).replace(",", "")
    if not text:
        return None
    try:
        number = float(text)
    except ValueError:
        return None
    return None if math.isnan(number) else number


def _match_header(cell: str, aliases: dict[str, list[str]]) -> str | None:
    """Column name a header cell refers to, if any."""
    # "Rate (£)" / "Qty." → "rate" / "qty"
    text = re.sub(r"\(.*?\)", " ", cell.lower())
    text = " ".join(re.sub(r"[^a-z ]", " ", text).split())
    if not text:
        return None
    for name, names in aliases.items():
        if text in names:
            return name
    candidates = {alias: name for name, names in aliases.items() for alias in names}
    best = process.extractOne(text, list(candidates), scorer=fuzz.ratio, score_cutoff=HEADER_MATCH_CUTOFF)
    return candidates[best[0]] if best else None


def find_header(
    df: pd.DataFrame,
    aliases: dict[str, list[str]],
    required: tuple[str, ...],
) -> HeaderLayout | None:
    """Search the first rows of a sheet for a row naming all required columns."""
    for row_idx in range(min(HEADER_SEARCH_ROWS, len(df))):
        columns: dict[str, int] = {}
        for col_idx, value in enumerate(df.iloc[row_idx].tolist()):
            name = _match_header(_cell_text(value), aliases)
            if name is not None and name not in columns:
                columns[name] = col_idx
        if all(name in columns for name in required):
            return HeaderLayout(row=row_idx, columns=columns)
    return None


def read_sheets(content: bytes, filename: str) -> dict[str, pd.DataFrame]:
    """Read every sheet as raw cells (no header inference).

    Raises:
        ParseError: If the file type is unsupported or unreadable
    """
    file_type = detect_file_type(filename, content)
    try:
        if file_type == FileType.CSV:
            df = pd.read_csv(io.BytesIO(content), header=None, dtype=object, encoding='utf-8')
            return {Path(filename).stem or "Sheet1": df}
        elif file_type == FileType.EXCEL:
            return pd.read_excel(io.BytesIO(content), sheet_name=None, header=None, dtype=object)
    except Exception as e:
        logger.error(f"Failed to read {filename}: {e}")
        raise ParseError(f"Failed to read {filename}") from e
    raise ParseError(f"Unsupported file type: {filename}")


def extract_items(df: pd.DataFrame, layout: HeaderLayout, sheet_name: str) -> list[InquiryItem]:
    """BoQ rows below the header that still need a rate."""
    desc_col = layout.columns["description"]
    rate_col = layout.columns["rate"]
    qty_col = layout.get("quantity")
    unit_col = layout.get("unit")

    items = []
    for row_idx in range(layout.row + 1, len(df)):
        row = df.iloc[row_idx]
        description = _cell_text(row.iloc[desc_col])
        if not description or is_non_item(description):
            continue
        if qty_col is not None and not _cell_text(row.iloc[qty_col]):
            continue
        # Already priced
        if _cell_text(row.iloc[rate_col]):
            continue

        unit = _cell_text(row.iloc[unit_col]) if unit_col is not None else ""
        items.append(InquiryItem(
            description=description,
            unit=unit or None,
            quantity=_to_float(row.iloc[qty_col]) if qty_col is not None else None,
            sheet_name=sheet_name,
            row_index=row_idx,
        ))
    return items


def parse_boq(filename: str, content: bytes) -> list[InquiryItem]:
    """Parse an uploaded BoQ into the items that need pricing.

    Args:
        filename: Original filename (drives format detection)
        content: Raw file bytes

    Returns:
        Items in sheet order, then row order

    Raises:
        ParseError: If no sheet has a usable header and at least one item
    """
    items: list[InquiryItem] = []
    for sheet_name, df in read_sheets(content, filename).items():
        if df.empty:
            continue
        layout = find_header(df, HEADER_ALIASES, required=("description", "rate"))
        if layout is None:
            logger.info(f"Skipping sheet '{sheet_name}' - no valid headers found")
            continue
        found = extract_items(df, layout, str(sheet_name))
        logger.info(f"Found {len(found)} items in sheet '{sheet_name}'")
        items.extend(found)

    if not items:
        raise ParseError(f"No valid BoQ data found in {filename}")
    return items


def parse_price_list(filename: str, content: bytes) -> list[PriceListEntry]:
    """Parse a catalog spreadsheet: description and rate required per row.

    Rows without a description or a numeric rate are skipped.
    """
    entries: list[PriceListEntry] = []
    for sheet_name, df in read_sheets(content, filename).items():
        if df.empty:
            continue
        layout = find_header(df, PRICE_LIST_ALIASES, required=("description", "rate"))
        if layout is None:
            continue

        def cell(row, name: str) -> str:
            col = layout.get(name)
            return _cell_text(row.iloc[col]) if col is not None else ""

        for row_idx in range(layout.row + 1, len(df)):
            row = df.iloc[row_idx]
            description = cell(row, "description")
            rate = _to_float(cell(row, "rate"))
            if not description or rate is None:
                continue
            keywords = tuple(k.strip() for k in cell(row, "keywords").split(",") if k.strip())
            entries.append(PriceListEntry(
                description=description,
                rate=rate,
                code=cell(row, "code") or None,
                category=cell(row, "category") or None,
                unit=cell(row, "unit") or None,
                keywords=keywords,
            ))
        logger.info(f"Read {len(entries)} price items through sheet '{sheet_name}'")

    if not entries:
        raise ParseError(f"No price items found in {filename}")
    return entries


def load_price_list_file(path: str | Path) -> list[PriceListEntry]:
    """Read a catalog spreadsheet or CSV from disk."""
    path = Path(path)
    try:
        content = path.read_bytes()
    except OSError as e:
        raise ParseError(f"Cannot open {path.name}") from e
    return parse_price_list(path.name, content)
