"""Tests for basic API functionality."""
import pytest

import config
from conftest import XLSX_MIME, build_workbook, player_cells

T_MINUS_10 = "671_20250731_2040utc.xlsx"
T0 = "671_20250810_2040utc.xlsx"


async def _upload(client, headers, filename, rows):
    return await client.post(
        "/api/data/upload",
        files={"file": (filename, build_workbook(rows), XLSX_MIME)},
        headers=headers,
    )


@pytest.mark.asyncio
async def test_health(client):
    """Health endpoint returns ok."""
    r = await client.get("/api/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_login_invalid(client):
    r = await client.post("/api/auth/login", json={"username": "admin", "password": "wrong"})
    assert r.status_code == 401


@pytest.mark.asyncio
async def test_me(client, auth_headers):
    r = await client.get("/api/auth/me", headers=auth_headers)
    assert r.status_code == 200
    assert r.json() == {"username": "admin", "role": "admin"}


@pytest.mark.asyncio
async def test_create_user_rejects_unknown_role(client, auth_headers):
    r = await client.post(
        "/api/auth/users",
        json={"username": "x", "password": "y", "role": "owner"},
        headers=auth_headers,
    )
    assert r.status_code == 400


@pytest.mark.asyncio
async def test_upload_requires_auth(client):
    r = await client.post(
        "/api/data/upload",
        files={"file": (T0, build_workbook([player_cells("1", "A")]), XLSX_MIME)},
    )
    assert r.status_code == 401


@pytest.mark.asyncio
async def test_upload_requires_admin(client, viewer_headers):
    r = await _upload(client, viewer_headers, T0, [player_cells("1", "A")])
    assert r.status_code == 403


@pytest.mark.asyncio
async def test_upload_success(client, auth_headers):
    rows = [player_cells(str(i), f"P{i}") for i in range(1, 8)]
    r = await _upload(client, auth_headers, T0, rows)
    assert r.status_code == 200, r.text
    data = r.json()
    assert data["kingdom"] == "671"
    assert data["timestamp"].startswith("2025-08-10T20:40:00")
    assert data["rows_processed"] == 7
    assert data["skipped_rows"] == 0
    assert data["name_changes"] == 0
    assert data["players_marked_left"] == []
    assert data["message"] == "Successfully processed 7 players"


@pytest.mark.asyncio
async def test_upload_invalid_filename(client, auth_headers):
    r = await _upload(client, auth_headers, "export.xlsx", [player_cells("1", "A")])
    assert r.status_code == 400
    assert "filename" in r.json()["detail"]["message"].lower()

    r = await client.get("/api/data/upload", headers=auth_headers)
    assert r.json() == []


@pytest.mark.asyncio
async def test_upload_missing_worksheet(client, auth_headers):
    r = await client.post(
        "/api/data/upload",
        files={"file": ("999_20250810_2040utc.xlsx", build_workbook([], sheet_name="Other"), XLSX_MIME)},
        headers=auth_headers,
    )
    assert r.status_code == 400
    assert r.json()["detail"]["available_sheets"] == ["Other"]


@pytest.mark.asyncio
async def test_upload_not_a_workbook(client, auth_headers):
    r = await client.post(
        "/api/data/upload",
        files={"file": (T0, b"plain text", XLSX_MIME)},
        headers=auth_headers,
    )
    assert r.status_code == 400


@pytest.mark.asyncio
async def test_upload_duplicate_ids(client, auth_headers):
    r = await _upload(client, auth_headers, T0, [player_cells("1", "A"), player_cells("1", "B")])
    assert r.status_code == 400
    assert r.json()["detail"]["duplicates"] == {"1": [2, 3]}


@pytest.mark.asyncio
async def test_upload_history(client, auth_headers):
    await _upload(client, auth_headers, T0, [player_cells("1", "A")])
    r = await client.get("/api/data/upload", headers=auth_headers)
    assert r.status_code == 200
    items = r.json()
    assert len(items) == 1
    assert items[0]["filename"] == T0
    assert items[0]["status"] == "COMPLETED"
    assert items[0]["rows_processed"] == 1
    assert items[0]["uploaded_by"] == "admin"

    r = await client.get("/api/data/upload", params={"status": "FAILED"}, headers=auth_headers)
    assert r.json() == []
    r = await client.get("/api/data/upload", params={"status": "BOGUS"}, headers=auth_headers)
    assert r.status_code == 400


@pytest.mark.asyncio
async def test_list_snapshots(client, auth_headers):
    await _upload(client, auth_headers, T_MINUS_10, [player_cells("1", "A"), player_cells("2", "B")])
    await _upload(client, auth_headers, T0, [player_cells("1", "A")])

    r = await client.get("/api/data/snapshots")
    assert r.status_code == 200
    data = r.json()
    assert [s["filename"] for s in data] == [T0, T_MINUS_10]
    assert [s["player_count"] for s in data] == [1, 2]

    r = await client.get("/api/data/snapshots", params={"kingdom": "42"})
    assert r.json() == []


@pytest.mark.asyncio
async def test_player_profile(client, auth_headers):
    await _upload(client, auth_headers, T_MINUS_10, [player_cells("1", "OldName", alliance="PLAC")])
    await _upload(client, auth_headers, T0, [player_cells("1", "NewName", alliance="ZERG")])

    r = await client.get("/api/data/players/1")
    assert r.status_code == 200
    data = r.json()
    assert data["current_name"] == "NewName"
    assert data["has_left_realm"] is False
    assert data["last_seen_at"].startswith("2025-08-10T20:40:00")
    assert [(n["old_name"], n["new_name"]) for n in data["name_history"]] == [("OldName", "NewName")]
    assert [(a["old_alliance"], a["new_alliance"]) for a in data["alliance_history"]] == [("PLAC", "ZERG")]
    assert [s["name"] for s in data["snapshots"]] == ["NewName", "OldName"]
    assert data["snapshots"][0]["timestamp"].startswith("2025-08-10T20:40:00")
    assert data["snapshots"][0]["current_power"] == "50000000"


@pytest.mark.asyncio
async def test_player_not_found(client):
    r = await client.get("/api/data/players/404404")
    assert r.status_code == 404


@pytest.mark.asyncio
async def test_changes_feed_and_departures(client, auth_headers):
    await _upload(client, auth_headers, T_MINUS_10, [player_cells("1", "Whale"), player_cells("2", "B")])
    r = await _upload(client, auth_headers, T0, [player_cells("2", "B2")])
    assert r.json()["players_marked_left"] == ["1"]

    r = await client.get("/api/changes")
    assert r.status_code == 200
    data = r.json()
    assert [n["new_name"] for n in data["name_changes"]] == ["B2"]
    assert data["alliance_changes"] == []

    r = await client.get("/api/data/players/1")
    assert r.json()["has_left_realm"] is True


@pytest.mark.asyncio
async def test_rebuild_realm_status(client, auth_headers, viewer_headers):
    r = await client.post("/api/admin/realm-status/rebuild", headers=viewer_headers)
    assert r.status_code == 403

    await _upload(client, auth_headers, T0, [player_cells("1", "A")])
    r = await client.post("/api/admin/realm-status/rebuild", headers=auth_headers)
    assert r.status_code == 200
    data = r.json()
    assert data["reference_time"].startswith("2025-08-10T20:40:00")
    assert data["players_checked"] == 1
    assert data["marked_left"] == []


@pytest.mark.asyncio
async def test_left_realm_list(client, auth_headers):
    await _upload(client, auth_headers, T_MINUS_10, [
        player_cells("1", "Whale", alliance="PLAC", power=80_000_000),
        player_cells("2", "Stays"),
        player_cells("3", "Minnow", power=1_000_000),
    ])
    await _upload(client, auth_headers, T0, [player_cells("2", "Stays")])

    r = await client.get("/api/players/left-realm")
    assert r.status_code == 200
    data = r.json()
    assert data["total"] == 1
    assert data["reference_time"].startswith("2025-08-10T20:40:00")
    [whale] = data["players"]
    assert whale["lord_id"] == "1"
    assert whale["current_name"] == "Whale"
    assert whale["left_realm_at"].startswith("2025-08-10T20:40:00")
    assert whale["days_gone"] == 10
    assert whale["last_known"]["alliance_tag"] == "PLAC"
    assert whale["last_known"]["current_power"] == "80000000"
    assert whale["last_known"]["snapshot_timestamp"].startswith("2025-07-31T20:40:00")

    r = await client.get("/api/players/left-realm", params={"offset": 1})
    assert r.json()["players"] == []


@pytest.mark.asyncio
async def test_left_realm_empty_ledger(client):
    r = await client.get("/api/players/left-realm")
    assert r.status_code == 200
    assert r.json() == {"reference_time": None, "days_ago": 30, "total": 0, "players": []}


@pytest.mark.asyncio
async def test_upload_too_large(client, auth_headers, monkeypatch):
    monkeypatch.setattr(config, "MAX_UPLOAD_BYTES", 100)
    r = await _upload(client, auth_headers, T0, [player_cells("1", "A")])
    assert r.status_code == 413

    r = await client.get("/api/data/upload", headers=auth_headers)
    assert r.json() == []
