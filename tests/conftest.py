"""Pytest configuration and fixtures for the realm tracker."""
import os

# Set test env BEFORE any imports that use config
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["INITIAL_ADMIN_PASSWORD"] = "testpass123"
os.environ["INITIAL_ADMIN_USERNAME"] = "admin"
os.environ["INGEST_BATCH_SIZE"] = "3"

from io import BytesIO

import pytest
from httpx import ASGITransport, AsyncClient
from openpyxl import Workbook

from tracker.models import init_db
from tracker.models.base import drop_db
from tracker.services.excel_parser import COLUMN_MAP, ParsedUpload, normalize_row, parse_filename
from web.api.main import app

XLSX_MIME = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


def player_cells(lord_id, name, alliance="PLAC", power=50_000_000, **fields) -> list:
    """One 39-column export row. Unlisted numeric columns get small placeholder values."""
    values = {
        "lord_id": lord_id,
        "name": name,
        "division": 2,
        "alliance_id": f"{alliance}-id" if alliance else None,
        "alliance_tag": alliance,
        "current_power": power,
        "power": power,
        "merits": 1000,
        "city_level": 25,
        "faction": "Dragon",
    }
    values.update(fields)
    cells = [None] * len(COLUMN_MAP)
    for field_name, col in COLUMN_MAP.items():
        cells[col - 1] = values.get(field_name, 0)
    return cells


def build_workbook(rows, sheet_name="671", leading_sheets=()) -> bytes:
    """Serialize an export workbook with a header row and the given data rows."""
    wb = Workbook()
    wb.remove(wb.active)
    for title in leading_sheets:
        wb.create_sheet(title).append(["summary"])
    ws = wb.create_sheet(sheet_name)
    ws.append(list(COLUMN_MAP))
    for row in rows:
        ws.append(list(row))
    buf = BytesIO()
    wb.save(buf)
    return buf.getvalue()


def parsed_upload(filename, rows) -> ParsedUpload:
    """ParsedUpload built directly from row cells, bypassing the workbook."""
    return ParsedUpload(
        info=parse_filename(filename),
        rows=[normalize_row(tuple(r)) for r in rows],
        skipped_rows=0,
        sheet_name="671",
    )


@pytest.fixture(autouse=True)
async def _reset_db():
    """Start every test from empty tables (ASGI lifespan doesn't run with httpx)."""
    await drop_db()
    await init_db()


@pytest.fixture
async def client():
    """Async HTTP client for testing the API."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac


@pytest.fixture
async def auth_headers(client):
    """Login as admin and return Authorization headers for protected endpoints."""
    r = await client.post(
        "/api/auth/login",
        json={"username": "admin", "password": "testpass123"},
    )
    assert r.status_code == 200, f"Login failed: {r.text}"
    token = r.json()["access_token"]
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
async def viewer_headers(client, auth_headers):
    """Create a viewer account and return its Authorization headers."""
    r = await client.post(
        "/api/auth/users",
        json={"username": "viewer", "password": "viewpass", "role": "viewer"},
        headers=auth_headers,
    )
    assert r.status_code == 200, r.text
    r = await client.post("/api/auth/login", json={"username": "viewer", "password": "viewpass"})
    return {"Authorization": f"Bearer {r.json()['access_token']}"}
