"""Parse kingdom export workbooks into normalized player rows.

Export files are named ``<kingdom>_<YYYYMMDD>_<HHMM>utc.xlsx`` and carry one
worksheet of player stats in a fixed 39-column layout with a single header row.
Nothing here touches the database.
"""
from __future__ import annotations

import logging
import re
import zipfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from io import BytesIO
from typing import Any, Optional

from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException

import config
from tracker.services.errors import (
    DuplicatePlayerRows,
    InvalidFilenameFormat,
    InvalidWorkbook,
    NoPlayerRows,
    WorksheetNotFound,
)

logger = logging.getLogger("realm.parser")

FILENAME_RE = re.compile(r"^(\d+)_(\d{8})_(\d{4})utc\.(xlsx|xls)$", re.IGNORECASE)
FILENAME_EXAMPLE = "671_YYYYMMDD_HHMMutc.xlsx"

# 1-based worksheet column for each field
COLUMN_MAP = {
    "lord_id": 1,
    "name": 2,
    "division": 3,
    "alliance_id": 4,
    "alliance_tag": 5,
    "current_power": 6,
    "power": 7,
    "merits": 8,
    "units_killed": 9,
    "units_dead": 10,
    "units_healed": 11,
    "t1_kill_count": 12,
    "t2_kill_count": 13,
    "t3_kill_count": 14,
    "t4_kill_count": 15,
    "t5_kill_count": 16,
    "building_power": 17,
    "hero_power": 18,
    "legion_power": 19,
    "tech_power": 20,
    "victories": 21,
    "defeats": 22,
    "city_sieges": 23,
    "scouted": 24,
    "helps_given": 25,
    "gold": 26,
    "gold_spent": 27,
    "wood": 28,
    "wood_spent": 29,
    "ore": 30,
    "ore_spent": 31,
    "mana": 32,
    "mana_spent": 33,
    "gems": 34,
    "gems_spent": 35,
    "resources_given": 36,
    "resources_given_count": 37,
    "city_level": 38,
    "faction": 39,
}

OPTIONAL_STRING_FIELDS = ("alliance_id", "alliance_tag", "faction")
INT_FIELDS = (
    "division",
    "victories",
    "defeats",
    "city_sieges",
    "scouted",
    "helps_given",
    "resources_given_count",
    "city_level",
)
BIG_FIELDS = tuple(
    f for f in COLUMN_MAP if f not in ("lord_id", "name") + OPTIONAL_STRING_FIELDS + INT_FIELDS
)

_LEADING_INT_RE = re.compile(r"^\s*([+-]?\d+)")
_DECIMAL_RE = re.compile(r"^-?\d+(\.\d+)?$")


@dataclass(frozen=True)
class UploadFileInfo:
    kingdom: str
    timestamp: datetime  # timezone-aware UTC
    filename: str


@dataclass
class ExtractResult:
    rows: list[dict] = field(default_factory=list)
    skipped_rows: int = 0


@dataclass
class ParsedUpload:
    info: UploadFileInfo
    rows: list[dict]
    skipped_rows: int
    sheet_name: str


def parse_filename(filename: str) -> UploadFileInfo:
    """Extract kingdom id and UTC capture time from e.g. ``671_20250810_2040utc.xlsx``."""
    m = FILENAME_RE.match(filename or "")
    if not m:
        raise InvalidFilenameFormat(
            f"Invalid filename format. Expected: {FILENAME_EXAMPLE}", filename=filename
        )
    kingdom, date_str, time_str = m.group(1), m.group(2), m.group(3)
    try:
        timestamp = datetime(
            int(date_str[0:4]),
            int(date_str[4:6]),
            int(date_str[6:8]),
            int(time_str[0:2]),
            int(time_str[2:4]),
            tzinfo=timezone.utc,
        )
    except ValueError as e:
        raise InvalidFilenameFormat(
            f"Invalid date or time in filename: {e}", filename=filename
        ) from e
    return UploadFileInfo(kingdom=kingdom, timestamp=timestamp, filename=filename)


def load_workbook_bytes(content: bytes):
    """Open workbook content read-only. Raises InvalidWorkbook for anything openpyxl rejects."""
    try:
        return load_workbook(BytesIO(content), read_only=True, data_only=True)
    except (InvalidFileException, zipfile.BadZipFile, KeyError, OSError, ValueError) as e:
        # Legacy binary .xls content lands here too
        raise InvalidWorkbook(f"Cannot read workbook: {e}") from e


def find_data_worksheet(workbook, kingdom: str, fallback_names: Optional[list[str]] = None):
    """Return the worksheet holding player rows.

    Tried in order: a sheet named after the kingdom id, each fallback name,
    then the third sheet (exports usually put the table there).
    """
    if fallback_names is None:
        fallback_names = config.FALLBACK_SHEET_NAMES
    names = workbook.sheetnames
    for candidate in [kingdom, *fallback_names]:
        if candidate in names:
            return workbook[candidate]
    if len(workbook.worksheets) > 2:
        return workbook.worksheets[2]
    raise WorksheetNotFound(
        f"Cannot find data worksheet. Looked for: {', '.join([kingdom, *fallback_names])}",
        available_sheets=list(names),
    )


def _cell(row: tuple, field_name: str) -> Any:
    idx = COLUMN_MAP[field_name] - 1
    return row[idx] if idx < len(row) else None


def _cell_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def _clean_int(value: Any) -> int:
    """Parse an integer counter, ignoring thousands separators. Unparseable -> 0."""
    if value is None or isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        try:
            return int(value)
        except (OverflowError, ValueError):
            return 0
    m = _LEADING_INT_RE.match(str(value).replace(",", ""))
    return int(m.group(1)) if m else 0


def _clean_big(value: Any) -> str:
    """Keep a large count as a decimal string, ignoring thousands separators. Unparseable -> "0"."""
    if value is None or isinstance(value, bool):
        return "0"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if value != value or value in (float("inf"), float("-inf")):
            return "0"
        return str(int(value)) if value.is_integer() else str(value)
    text = str(value).replace(",", "").replace(" ", "").strip()
    return text if _DECIMAL_RE.match(text) else "0"


def normalize_row(row: tuple) -> Optional[dict]:
    """Map one worksheet row to record fields. Returns None for rows without a lord id."""
    lord_id = _cell_text(_cell(row, "lord_id"))
    if not lord_id:
        return None
    record = {"lord_id": lord_id, "name": _cell_text(_cell(row, "name"))}
    for f in OPTIONAL_STRING_FIELDS:
        record[f] = _cell_text(_cell(row, f)) or None
    for f in INT_FIELDS:
        record[f] = _clean_int(_cell(row, f))
    for f in BIG_FIELDS:
        record[f] = _clean_big(_cell(row, f))
    return record


def extract_player_rows(worksheet) -> ExtractResult:
    """Normalize every data row after the header.

    Blank-id rows are counted as skipped. A lord id repeated within one sheet
    raises DuplicatePlayerRows; an empty sheet raises NoPlayerRows.
    """
    result = ExtractResult()
    first_row_for_id: dict[str, int] = {}
    duplicates: dict[str, list[int]] = {}
    for row_number, row in enumerate(worksheet.iter_rows(min_row=2, values_only=True), start=2):
        record = normalize_row(row)
        if record is None:
            result.skipped_rows += 1
            continue
        lord_id = record["lord_id"]
        if lord_id in first_row_for_id:
            duplicates.setdefault(lord_id, [first_row_for_id[lord_id]]).append(row_number)
            continue
        first_row_for_id[lord_id] = row_number
        result.rows.append(record)

    if duplicates:
        sample = ", ".join(f"{k} (rows {', '.join(map(str, v))})" for k, v in list(duplicates.items())[:5])
        raise DuplicatePlayerRows(
            f"Duplicate lord ids in upload: {sample}", duplicates=duplicates
        )
    if not result.rows:
        raise NoPlayerRows("No valid player data found in Excel file")
    logger.info("Extracted %d players (%d blank rows skipped)", len(result.rows), result.skipped_rows)
    return result


def parse_upload(filename: str, content: bytes) -> ParsedUpload:
    """Run filename parsing, worksheet lookup and row normalization for one upload."""
    info = parse_filename(filename)
    workbook = load_workbook_bytes(content)
    try:
        worksheet = find_data_worksheet(workbook, info.kingdom)
        extracted = extract_player_rows(worksheet)
        sheet_name = worksheet.title
    finally:
        workbook.close()
    logger.info(
        "Parsed %s: kingdom=%s timestamp=%s sheet=%s rows=%d",
        filename, info.kingdom, info.timestamp.isoformat(), sheet_name, len(extracted.rows),
    )
    return ParsedUpload(
        info=info, rows=extracted.rows, skipped_rows=extracted.skipped_rows, sheet_name=sheet_name
    )
