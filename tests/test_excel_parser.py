"""Tests for filename parsing, worksheet lookup and row normalization."""
import time
from datetime import datetime, timezone

import pytest
from openpyxl import Workbook

from conftest import build_workbook, player_cells
from tracker.services.errors import (
    DuplicatePlayerRows,
    InvalidFilenameFormat,
    InvalidWorkbook,
    NoPlayerRows,
    WorksheetNotFound,
)
from tracker.services.excel_parser import (
    BIG_FIELDS,
    INT_FIELDS,
    extract_player_rows,
    find_data_worksheet,
    load_workbook_bytes,
    normalize_row,
    parse_filename,
    parse_upload,
)


def test_parse_filename():
    info = parse_filename("671_20250810_2040utc.xlsx")
    assert info.kingdom == "671"
    assert info.timestamp == datetime(2025, 8, 10, 20, 40, tzinfo=timezone.utc)
    assert info.filename == "671_20250810_2040utc.xlsx"


def test_parse_filename_accepts_xls_and_uppercase():
    assert parse_filename("12_20240101_0000UTC.XLS").kingdom == "12"


def test_parse_filename_ignores_local_timezone(monkeypatch):
    """Capture time is the same UTC instant whatever TZ the server runs in."""
    if not hasattr(time, "tzset"):
        pytest.skip("tzset not available")
    expected = datetime(2025, 8, 10, 20, 40, tzinfo=timezone.utc)
    for tz in ("UTC", "America/Los_Angeles", "Asia/Tokyo"):
        monkeypatch.setenv("TZ", tz)
        time.tzset()
        assert parse_filename("671_20250810_2040utc.xlsx").timestamp == expected
    monkeypatch.delenv("TZ", raising=False)
    time.tzset()


@pytest.mark.parametrize(
    "name",
    [
        "export.xlsx",
        "671_2025081_2040utc.xlsx",
        "671_20250810_2040.xlsx",
        "671_20250810_2040utc.csv",
        "x671_20250810_2040utc.xlsx",
        "671_20251310_2040utc.xlsx",  # month 13
        "671_20250810_2561utc.xlsx",  # hour 25
        "",
    ],
)
def test_parse_filename_rejects(name):
    with pytest.raises(InvalidFilenameFormat):
        parse_filename(name)


def test_load_workbook_rejects_garbage():
    with pytest.raises(InvalidWorkbook):
        load_workbook_bytes(b"not a workbook at all")


def _workbook(*titles):
    wb = Workbook()
    wb.remove(wb.active)
    for t in titles:
        wb.create_sheet(t)
    return wb


def test_find_worksheet_prefers_kingdom_name():
    wb = _workbook("Summary", "Data", "1024")
    assert find_data_worksheet(wb, "1024", ["Data"]).title == "1024"


def test_find_worksheet_uses_fallback_names_in_order():
    wb = _workbook("Summary", "Data", "671")
    assert find_data_worksheet(wb, "999", ["671", "Data"]).title == "671"
    assert find_data_worksheet(wb, "999", ["Data"]).title == "Data"


def test_find_worksheet_falls_back_to_third_sheet():
    wb = _workbook("Cover", "Notes", "Players")
    assert find_data_worksheet(wb, "999", ["Data"]).title == "Players"


def test_find_worksheet_not_found():
    wb = _workbook("Cover", "Notes")
    with pytest.raises(WorksheetNotFound) as exc:
        find_data_worksheet(wb, "999", ["Data"])
    assert exc.value.details["available_sheets"] == ["Cover", "Notes"]


def test_normalize_row_types():
    cells = player_cells(
        "1001",
        "  Alice  ",
        alliance="PLAC",
        power="1,234,567,890,123,456,789",
        victories="1,234",
        defeats="n/a",
        gold=12345678901234.0,
        units_killed=None,
    )
    row = normalize_row(tuple(cells))
    assert row["lord_id"] == "1001"
    assert row["name"] == "Alice"
    assert row["alliance_tag"] == "PLAC"
    assert row["current_power"] == "1234567890123456789"
    assert row["victories"] == 1234
    assert row["defeats"] == 0
    assert row["gold"] == "12345678901234"
    assert row["units_killed"] == "0"
    assert row["division"] == 2
    assert set(INT_FIELDS) <= set(row) and set(BIG_FIELDS) <= set(row)


def test_normalize_row_empty_optionals_become_none():
    cells = player_cells("1001", "Alice", alliance=None, faction="  ")
    row = normalize_row(tuple(cells))
    assert row["alliance_tag"] is None
    assert row["alliance_id"] is None
    assert row["faction"] is None


def test_normalize_row_numeric_lord_id_and_short_row():
    row = normalize_row((123456.0, "Bob"))
    assert row["lord_id"] == "123456"
    assert row["current_power"] == "0"
    assert row["city_level"] == 0
    assert row["faction"] is None


def test_normalize_row_blank_id():
    assert normalize_row((None, "ghost")) is None
    assert normalize_row(("   ", "ghost")) is None


def test_parse_upload_counts_rows_and_skips_blanks():
    rows = [
        player_cells("1", "A"),
        player_cells("2", "B"),
        [None, "ghost row"] + [None] * 37,
        player_cells("3", "C"),
    ]
    content = build_workbook(rows, sheet_name="671")
    parsed = parse_upload("671_20250810_2040utc.xlsx", content)
    assert [r["lord_id"] for r in parsed.rows] == ["1", "2", "3"]
    assert parsed.skipped_rows == 1
    assert parsed.sheet_name == "671"
    assert parsed.info.kingdom == "671"


def test_parse_upload_third_sheet_fallback():
    content = build_workbook([player_cells("1", "A")], sheet_name="Players", leading_sheets=("Cover", "Notes"))
    parsed = parse_upload("42_20250810_2040utc.xlsx", content)
    assert parsed.sheet_name == "Players"
    assert len(parsed.rows) == 1


def test_duplicate_lord_ids_rejected():
    content = build_workbook([player_cells("1", "A"), player_cells("2", "B"), player_cells("1", "A2")])
    with pytest.raises(DuplicatePlayerRows) as exc:
        parse_upload("671_20250810_2040utc.xlsx", content)
    assert exc.value.details["duplicates"] == {"1": [2, 4]}


def test_header_only_sheet_has_no_rows():
    content = build_workbook([])
    wb = load_workbook_bytes(content)
    try:
        with pytest.raises(NoPlayerRows):
            extract_player_rows(find_data_worksheet(wb, "671"))
    finally:
        wb.close()
