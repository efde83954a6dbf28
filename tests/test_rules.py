from __future__ import annotations

from datetime import datetime

import pytest

from conftest import make_candidate, make_rule, make_scan
from maintainarr.core import rules
from maintainarr.core.errors import ConflictError, CriteriaValidationError, RuleNotFoundError, RuleValidationError
from maintainarr.core.models import ActionType, MediaType, ScanStatus
from maintainarr.core.schedule import next_occurrence, validate_cron
from maintainarr.db.models import MaintenanceCandidate, MaintenanceDeletionLog, MaintenanceScan


def test_next_occurrence_is_strictly_after_start():
    start = datetime(2026, 3, 10, 3, 0, 0)

    assert next_occurrence("0 3 * * *", start) == datetime(2026, 3, 11, 3, 0, 0)
    assert next_occurrence("*/15 * * * *", datetime(2026, 3, 10, 3, 7, 30)) == datetime(2026, 3, 10, 3, 15, 0)


def test_next_occurrence_honours_timezone():
    # 03:00 à Paris en hiver = 02:00 UTC
    assert next_occurrence("0 3 * * *", datetime(2026, 1, 10, 12, 0), "Europe/Paris") == datetime(2026, 1, 11, 2, 0)


def test_validate_cron():
    assert validate_cron("  ") is None
    assert validate_cron(None) is None
    assert validate_cron(" 0 4 * * 1 ") == "0 4 * * 1"
    with pytest.raises(RuleValidationError):
        validate_cron("61 * * * *")


def test_create_rule_normalises_criteria(db):
    rule = rules.create_rule(db, {
        "name": "  Big old files ",
        "media_type": "MOVIE",
        "criteria": {"min_file_size": {"value": 10, "unit": "GB"}, "operator": "OR"},
        "schedule": "0 2 * * *",
    })

    assert rule.name == "Big old files"
    assert rule.criteria == {"minFileSize": {"value": 10.0, "unit": "GB"}, "operator": "OR"}
    assert rule.action_type == ActionType.FLAG_FOR_REVIEW
    assert rule.next_run_at is not None


def test_create_rule_rejects_bad_input(db):
    with pytest.raises(CriteriaValidationError):
        rules.create_rule(db, {"name": "x", "media_type": "MOVIE", "criteria": {"bogus": True}})
    with pytest.raises(RuleValidationError):
        rules.create_rule(db, {"name": " ", "media_type": "MOVIE", "criteria": {"neverWatched": True}})
    with pytest.raises(RuleValidationError):
        rules.create_rule(db, {"name": "x", "media_type": "BOOK", "criteria": {"neverWatched": True}})


def test_update_rule_is_partial(db):
    rule = make_rule(db, description="keep me")

    updated = rules.update_rule(db, rule.id, {"action_type": "AUTO_DELETE", "media_type": MediaType.EPISODE})

    assert updated.action_type == ActionType.AUTO_DELETE
    assert updated.media_type == MediaType.EPISODE
    assert updated.description == "keep me"
    with pytest.raises(RuleValidationError):
        rules.update_rule(db, rule.id, {"colour": "blue"})
    with pytest.raises(RuleNotFoundError):
        rules.update_rule(db, 999, {"name": "x"})


def test_disabling_rule_clears_next_run(db):
    rule = rules.create_rule(db, {
        "name": "nightly", "media_type": "MOVIE", "criteria": {"neverWatched": True}, "schedule": "0 1 * * *",
    })

    updated = rules.update_rule(db, rule.id, {"enabled": False})

    assert updated.next_run_at is None
    assert updated.schedule == "0 1 * * *"


def test_delete_rule_removes_candidates_and_scans_but_keeps_history(db):
    rule = make_rule(db)
    other = make_rule(db, name="Other")
    scan = make_scan(db, rule)
    make_candidate(db, rule, scan)
    make_candidate(db, rule, scan)
    kept = make_candidate(db, other, make_scan(db, other))
    db.add(MaintenanceDeletionLog(
        candidate_id=999, media_type=MediaType.MOVIE, title="Gone", deleted_by="alice",
        deleted_from="Radarr", rule_names=[rule.name],
    ))
    db.commit()

    result = rules.delete_rule(db, rule.id)

    assert result == {"rule_id": rule.id, "scans_deleted": 1, "candidates_deleted": 2}
    assert db.query(MaintenanceScan).filter(MaintenanceScan.rule_id == rule.id).count() == 0
    assert [c.id for c in db.query(MaintenanceCandidate).all()] == [kept.id]
    assert db.query(MaintenanceDeletionLog).count() == 1
    with pytest.raises(RuleNotFoundError):
        rules.get_rule(db, rule.id)


def test_delete_rule_refused_while_scanning(db):
    rule = make_rule(db)
    make_scan(db, rule, status=ScanStatus.RUNNING)

    with pytest.raises(ConflictError):
        rules.delete_rule(db, rule.id)


def test_list_rules_reports_latest_scan(db):
    rule = make_rule(db)
    make_scan(db, rule)
    latest = make_scan(db, rule, status=ScanStatus.FAILED)
    idle = make_rule(db, name="Idle")

    summaries = {s.rule.id: s for s in rules.list_rules(db)}

    assert summaries[rule.id].latest_scan.id == latest.id
    assert summaries[rule.id].scan_count == 2
    assert summaries[idle.id].latest_scan is None
    assert summaries[idle.id].scan_count == 0
