from __future__ import annotations

import inspect

import pytest
from fastapi.testclient import TestClient

from conftest import FakeCatalog, FakeRadarr, FakeSonarr, make_item
from maintainarr import jobs
from maintainarr.api import routes
from maintainarr.core import deleter
from maintainarr.core.models import ReviewStatus
from maintainarr.main import create_app


@pytest.fixture
def client(config, monkeypatch):
    catalog = FakeCatalog([[
        make_item("a", play_count=0, file_size=5 * 1024 ** 3),
        make_item("b", play_count=2),
        make_item("c", play_count=0, file_size=1024 ** 3),
    ]])
    monkeypatch.setattr(jobs, "get_catalog", lambda: catalog)
    monkeypatch.setattr(deleter, "RadarrService", lambda: FakeRadarr())
    monkeypatch.setattr(deleter, "SonarrService", lambda: FakeSonarr())
    app = create_app(config, database_url="sqlite://", start_background_scheduler=False)
    with TestClient(app) as test_client:
        yield test_client


def create_rule(client, **overrides):
    payload = {
        "name": "Never watched",
        "media_type": "MOVIE",
        "criteria": {"neverWatched": True},
    }
    payload.update(overrides)
    response = client.post("/api/rules", json=payload)
    assert response.status_code == 201, response.text
    return response.json()


def scan_and_list(client, rule_id):
    response = client.post(f"/api/rules/{rule_id}/scan")
    assert response.status_code == 202
    scan_id = response.json()["scan_id"]
    candidates = client.get("/api/candidates", params={"scan_id": scan_id}).json()
    return scan_id, candidates


def test_rule_crud(client):
    rule = create_rule(client, schedule="30 4 * * *", description="cleanup")
    assert rule["criteria"] == {"neverWatched": True, "operator": "AND"}
    assert rule["next_run_at"] is not None

    listed = client.get("/api/rules").json()
    assert [r["id"] for r in listed] == [rule["id"]]
    assert listed[0]["scan_count"] == 0

    updated = client.patch(f"/api/rules/{rule['id']}", json={"enabled": False, "schedule": None}).json()
    assert updated["enabled"] is False
    assert updated["schedule"] is None
    assert updated["next_run_at"] is None
    assert updated["description"] == "cleanup"

    deleted = client.delete(f"/api/rules/{rule['id']}")
    assert deleted.status_code == 200
    assert client.get(f"/api/rules/{rule['id']}").status_code == 404


def test_invalid_rule_input_is_422(client):
    bad_criteria = client.post("/api/rules", json={
        "name": "bad", "media_type": "MOVIE", "criteria": {"maxRating": 50},
    })
    bad_schedule = client.post("/api/rules", json={
        "name": "bad", "media_type": "MOVIE", "criteria": {"neverWatched": True}, "schedule": "every day",
    })
    bad_media = client.post("/api/rules", json={
        "name": "bad", "media_type": "PODCAST", "criteria": {"neverWatched": True},
    })

    assert bad_criteria.status_code == 422
    assert bad_criteria.json()["errors"][0]["loc"] == "maxRating"
    assert bad_schedule.status_code == 422
    assert bad_media.status_code == 422


def test_manual_scan_flags_candidates(client):
    rule = create_rule(client)

    scan_id, page = scan_and_list(client, rule["id"])

    scan = client.get(f"/api/scans/{scan_id}").json()
    assert scan["status"] == "COMPLETED"
    assert (scan["items_scanned"], scan["items_flagged"]) == (3, 2)
    assert page["total"] == 2
    assert {c["plex_rating_key"] for c in page["items"]} == {"a", "c"}

    rules = client.get("/api/rules").json()
    assert rules[0]["latest_scan"]["id"] == scan_id
    assert rules[0]["scan_count"] == 1


def test_scan_of_unknown_or_disabled_rule(client):
    rule = create_rule(client, enabled=False)

    assert client.post("/api/rules/999/scan").status_code == 404
    assert client.post(f"/api/rules/{rule['id']}/scan").status_code == 409
    assert client.get("/api/scans/999").status_code == 404


def test_review_flow_and_double_approval_conflict(client):
    rule = create_rule(client)
    _, page = scan_and_list(client, rule["id"])
    first, second = [c["id"] for c in page["items"]]

    approved = client.post(f"/api/candidates/{first}/approve", json={"reviewer": "alice"})
    again = client.post(f"/api/candidates/{first}/approve", json={"reviewer": "bob"})
    rejected = client.post(f"/api/candidates/{second}/reject")

    assert approved.status_code == 200
    assert approved.json()["review_status"] == "APPROVED"
    assert again.status_code == 409
    assert rejected.json()["review_status"] == "REJECTED"
    assert client.post("/api/candidates/999/approve").status_code == 404


def test_bulk_review_outcomes(client):
    rule = create_rule(client)
    _, page = scan_and_list(client, rule["id"])
    ids = [c["id"] for c in page["items"]]
    client.post(f"/api/candidates/{ids[0]}/reject")

    response = client.post("/api/candidates/bulk-approve", json={"candidate_ids": ids + [999]})

    body = response.json()
    assert (body["succeeded"], body["failed"]) == (1, 2)
    statuses = {r["candidate_id"]: r["status"] for r in body["results"]}
    assert statuses == {ids[0]: "conflict", ids[1]: "ok", 999: "not_found"}


def test_delete_endpoint_and_history(client):
    rule = create_rule(client)
    _, page = scan_and_list(client, rule["id"])
    candidate = page["items"][0]
    client.post(f"/api/candidates/{candidate['id']}/approve")

    # Pas de radarr_id ni tmdb_id: échec attribué au candidat
    failed = client.post("/api/candidates/delete", json={"candidate_ids": [candidate["id"]]}).json()
    assert (failed["success"], failed["failed"]) == (0, 1)
    assert client.get(f"/api/candidates/{candidate['id']}").json()["deletion_error"]

    stats = client.get("/api/stats").json()
    assert stats["candidates"]["APPROVED"] == 1
    assert stats["potential_space_savings_bytes"] > 0
    assert stats["rules"] == {"total": 1, "enabled": 1, "disabled": 0}
    assert client.get("/api/deletions").json()["total"] == 0


def test_auto_delete_rule_deletes_after_scan(client, monkeypatch):
    rule = create_rule(client, action_type="AUTO_DELETE")
    catalog = FakeCatalog([[make_item("z", play_count=0, radarr_id=90)]])
    monkeypatch.setattr(jobs, "get_catalog", lambda: catalog)

    scan_id, page = scan_and_list(client, rule["id"])

    assert page["items"][0]["review_status"] == ReviewStatus.DELETED.value
    history = client.get("/api/deletions").json()
    assert history["total"] == 1
    assert history["items"][0]["deleted_by"] == "auto-delete"
    assert history["items"][0]["rule_names"] == ["Never watched"]

    stats = client.get("/api/deletions/stats").json()
    assert stats["total_deletions"] == 1
    assert stats["deletions_this_month"] == 1
    assert stats["by_deleted_by"] == [{"deleted_by": "auto-delete", "count": 1}]
    assert stats["by_media_type"] == [{"media_type": "MOVIE", "count": 1}]


def test_deletion_stats_route_filters_and_validates_range(client):
    stats = client.get("/api/deletions/stats", params={"start": "2020-01-01T00:00:00Z", "end": "2020-12-31T00:00:00Z"})
    assert stats.status_code == 200
    assert stats.json()["total_deletions"] == 0

    inverted = client.get("/api/deletions/stats", params={"start": "2021-01-01T00:00:00", "end": "2020-01-01T00:00:00"})
    assert inverted.status_code == 422


def test_preview_uses_the_shared_evaluator(client):
    response = client.post("/api/rules/preview", json={
        "criteria": {"neverWatched": True, "minFileSize": {"value": 2, "unit": "GB"}},
    })

    body = response.json()
    assert body["evaluated"] == 3
    assert body["matched"] == 1
    assert [r["plex_rating_key"] for r in body["results"] if r["matches"]] == ["a"]


def test_preview_with_explicit_items(client):
    response = client.post("/api/rules/preview", json={
        "criteria": {"maxQuality": "HD"},
        "items": [
            {"plex_rating_key": "1", "title": "Old", "quality": "sd"},
            {"plex_rating_key": "2", "title": "New", "quality": "4k"},
        ],
    })

    assert [r["matches"] for r in response.json()["results"]] == [True, False]


def test_preview_handler_runs_in_the_threadpool():
    # plexapi est bloquant: pas sur la boucle d'événements
    assert not inspect.iscoroutinefunction(routes.preview_rule)

def test_rule_with_nested_condition_groups_scans(client):
    criteria = {
        "type": "group",
        "operator": "OR",
        "conditions": [
            {"type": "condition", "field": "playCount", "operator": "greaterThan", "value": 1},
            {"type": "group", "operator": "AND", "conditions": [
                {"type": "condition", "field": "neverWatched", "operator": "equals", "value": True},
                {"type": "condition", "field": "fileSize", "operator": "lessThan", "value": 2, "valueUnit": "GB"},
            ]},
        ],
    }
    rule = create_rule(client, criteria=criteria)
    assert rule["criteria"] == criteria

    _, page = scan_and_list(client, rule["id"])

    assert sorted(c["plex_rating_key"] for c in page["items"]) == ["b", "c"]

    bad = client.post("/api/rules", json={
        "name": "bad", "media_type": "MOVIE",
        "criteria": {"type": "group", "conditions": [{"type": "condition", "field": "tags", "operator": "between"}]},
    })
    assert bad.status_code == 422
    assert bad.json()["errors"][0]["loc"] == "conditions.0.operator"


def test_rule_fields_list_operators(client):
    fields = {f["key"]: f for f in client.get("/api/rules/fields").json()["fields"]}
    assert "containsAll" in fields["tags"]["operators"]
    assert fields["addedAt"]["type"] == "date"


def test_config_hides_api_keys(client):
    body = client.get("/api/config").json()
    assert body["radarr"] == {"url": "http://radarr:7878", "add_import_exclusion": False}
    assert "api_key" not in str(body)
