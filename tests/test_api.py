from __future__ import annotations

import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

APP_DIR = Path(__file__).resolve().parents[1] / "app"
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

import api  # noqa: E402

from conftest import VENUE  # noqa: E402

HEADERS = {"X-Actor": "manager"}


@pytest.fixture()
def client(session, directory, settings, notifier):
    api.app.dependency_overrides[api.get_db] = lambda: session
    api.app.dependency_overrides[api.get_directory] = lambda: directory
    api.app.dependency_overrides[api.get_settings] = lambda: settings
    api.app.dependency_overrides[api.get_notifier] = lambda: notifier
    yield TestClient(api.app)
    api.app.dependency_overrides.clear()


def _create(client, **extra):
    payload = {"venue_id": VENUE, "start_date": "2025-01-06"}
    payload.update(extra)
    response = client.post("/api/v1/rosters", json=payload, headers=HEADERS)
    assert response.status_code == 201
    return response.json()


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_create_and_fetch_roster(client):
    created = _create(client, name="Opening week")
    response = client.get(f"/api/v1/rosters/{created['id']}")
    assert response.status_code == 200
    body = response.json()
    assert body["name"] == "Opening week"
    assert body["status"] == "draft"
    assert body["version_number"] == 1
    assert body["shifts"] == []
    assert body["legacy_parent_id"] is None


def test_missing_actor_is_forbidden(client):
    response = client.post("/api/v1/rosters", json={"venue_id": VENUE, "start_date": "2025-01-06"})
    assert response.status_code == 403
    assert response.json()["error"]["kind"] == "permission"


def test_unknown_roster_is_404(client):
    response = client.get("/api/v1/rosters/404")
    assert response.status_code == 404
    assert response.json()["error"]["roster_id"] == 404


def test_publish_without_assignments_is_400(client):
    roster = _create(client)
    response = client.post(f"/api/v1/rosters/{roster['id']}/publish", headers=HEADERS)
    assert response.status_code == 400
    assert response.json()["error"] == {"kind": "validation", "message": "no assigned shifts", "roster_id": roster["id"]}


def test_full_flow_over_http(client, notifier):
    roster = _create(client)
    shift = client.post(
        f"/api/v1/rosters/{roster['id']}/shifts",
        json={"user_id": 1, "date": "2025-01-07", "start_time": "09:00", "end_time": "17:00"},
        headers=HEADERS,
    )
    assert shift.status_code == 201

    published = client.post(f"/api/v1/rosters/{roster['id']}/publish", headers=HEADERS).json()
    assert published["status"] == "published" and published["is_active"] is True
    assert [item["user_id"] for item in notifier.sent] == [1]

    copy = client.post(f"/api/v1/rosters/{roster['id']}/copy", json={}, headers=HEADERS)
    assert copy.status_code == 201
    assert copy.json()["version_number"] == 2

    diff = client.get("/api/v1/rosters/compare", params={"base": roster["id"], "other": copy.json()["id"]}).json()
    assert diff["summary"]["total_changes"] == 0

    chain = client.get(f"/api/v1/chains/{roster['chain_id']}").json()
    assert chain["summary"]["active_version_number"] == 1
    assert chain["summary"]["has_draft"] is True

    archived = client.post(f"/api/v1/rosters/{roster['id']}/archive", headers=HEADERS)
    assert archived.status_code == 200
    again = client.post(f"/api/v1/rosters/{roster['id']}/archive", headers=HEADERS)
    assert again.status_code == 409
    assert again.json()["error"]["kind"] == "invalid_state"

    events = client.get(f"/api/v1/chains/{roster['chain_id']}/history").json()
    assert events[0]["action"] == "created"


def test_copy_to_occupied_week_conflicts(client):
    source = _create(client)
    client.post(
        f"/api/v1/rosters/{source['id']}/shifts",
        json={"user_id": 1, "date": "2025-01-06", "start_time": "09:00", "end_time": "17:00"},
        headers=HEADERS,
    )
    blocker = _create(client, start_date="2025-01-13")

    response = client.post(
        f"/api/v1/rosters/{source['id']}/copy", json={"target_week_start": "2025-01-13"}, headers=HEADERS
    )
    assert response.status_code == 409
    assert response.json()["error"]["conflicting_roster_id"] == blocker["id"]


def test_reconcile_and_resolve(client):
    response = client.post(
        "/api/v1/reconcile",
        json={
            "venue_id": VENUE,
            "week_start": "2025-01-06",
            "records": [
                {"staffNameText": "John Doe", "date": "2025-01-06", "startTime": "9:00", "endTime": "17:00"},
                {"staffNameText": "Zed", "dayLabel": "Tue", "startTime": "10am", "endTime": "4pm"},
            ],
        },
        headers=HEADERS,
    )
    assert response.status_code == 201
    result = response.json()
    assert (result["auto_matched_count"], result["unmatched_count"]) == (1, 1)

    roster = client.get(f"/api/v1/rosters/{result['draft_roster_id']}").json()
    entry = roster["unmatched_entries"][0]
    resolved = client.post(f"/api/v1/unmatched/{entry['id']}/resolve", json={"user_id": 3}, headers=HEADERS)
    assert resolved.status_code == 200
    assert resolved.json()["user_id"] == 3
    assert resolved.json()["start_time"] == "10:00"


def test_merge_preview_and_apply(client):
    week = [
        {"staffNameText": "John Doe", "date": "2025-01-06", "startTime": "09:00", "endTime": "17:00"},
        {"staffNameText": "Mia Chen", "date": "2025-01-07", "startTime": "09:00", "endTime": "17:00"},
    ]
    created = client.post(
        "/api/v1/reconcile", json={"venue_id": VENUE, "week_start": "2025-01-06", "records": week}, headers=HEADERS
    ).json()
    roster_id = created["draft_roster_id"]
    upload = [
        {"staffNameText": "John Doe", "date": "2025-01-06", "startTime": "09:00", "endTime": "15:00"},
        {"staffNameText": "Jane Doering", "date": "2025-01-08", "startTime": "12:00", "endTime": "20:00"},
    ]

    preview = client.post(f"/api/v1/rosters/{roster_id}/merge/preview", json={"records": upload})
    assert preview.status_code == 200
    body = preview.json()
    assert body["summary"]["update_count"] == 1
    assert body["to_update"][0]["changes"] == ["End time: 17:00 -> 15:00"]

    stale = client.post(
        f"/api/v1/rosters/{roster_id}/merge",
        json={"records": upload, "expected_revision": body["revision"] + 1},
        headers=HEADERS,
    )
    assert stale.status_code == 409

    applied = client.post(
        f"/api/v1/rosters/{roster_id}/merge",
        json={"records": upload, "remove": True, "expected_revision": body["revision"]},
        headers=HEADERS,
    )
    assert applied.status_code == 200
    assert applied.json()["added_count"] == 1
    assert applied.json()["removed_count"] == 1

    roster = client.get(f"/api/v1/rosters/{roster_id}").json()
    assert sorted(shift["user_id"] for shift in roster["shifts"]) == [1, 2]
    assert roster["revision"] == body["revision"] + 1
