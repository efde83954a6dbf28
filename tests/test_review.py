from __future__ import annotations

import pytest

from conftest import make_candidate, make_rule, make_scan
from maintainarr.core.errors import CandidateNotFoundError, InvalidTransitionError
from maintainarr.core.models import ActionType, ReviewStatus
from maintainarr.core.review import ReviewWorkflow


@pytest.fixture
def rule(db):
    return make_rule(db)


@pytest.fixture
def scan(db, rule):
    return make_scan(db, rule)


def test_approve_sets_review_fields(db, rule, scan):
    candidate = make_candidate(db, rule, scan)

    approved = ReviewWorkflow(db).approve(candidate.id, "alice", note="old and unwatched")

    assert approved.review_status == ReviewStatus.APPROVED
    assert approved.reviewed_by == "alice"
    assert approved.review_note == "old and unwatched"
    assert approved.reviewed_at is not None


def test_second_approval_is_a_conflict(db, rule, scan):
    candidate = make_candidate(db, rule, scan)
    workflow = ReviewWorkflow(db)
    workflow.approve(candidate.id, "alice")

    with pytest.raises(InvalidTransitionError) as exc_info:
        workflow.approve(candidate.id, "bob")

    assert exc_info.value.current_status == "APPROVED"
    db.refresh(candidate)
    assert candidate.reviewed_by == "alice"


def test_rejected_candidate_cannot_be_approved(db, rule, scan):
    candidate = make_candidate(db, rule, scan)
    workflow = ReviewWorkflow(db)
    workflow.reject(candidate.id, "alice", note="keep it")

    with pytest.raises(InvalidTransitionError):
        workflow.approve(candidate.id, "alice")
    db.refresh(candidate)
    assert candidate.review_status == ReviewStatus.REJECTED


def test_missing_candidate_is_not_found(db):
    with pytest.raises(CandidateNotFoundError):
        ReviewWorkflow(db).approve(12345, "alice")


def test_approving_auto_delete_candidate_enqueues_it(db):
    auto_rule = make_rule(db, action_type=ActionType.AUTO_DELETE)
    candidate = make_candidate(db, auto_rule, make_scan(db, auto_rule))
    queued = []

    ReviewWorkflow(db, enqueue_deletion=queued.append).approve(candidate.id, "alice")

    assert queued == [[candidate.id]]


def test_approving_flag_candidate_does_not_enqueue(db, rule, scan):
    candidate = make_candidate(db, rule, scan)
    queued = []

    ReviewWorkflow(db, enqueue_deletion=queued.append).approve(candidate.id, "alice")

    assert queued == []


def test_bulk_approve_reports_each_outcome(db, rule, scan):
    pending = make_candidate(db, rule, scan)
    rejected = make_candidate(db, rule, scan, review_status=ReviewStatus.REJECTED)

    result = ReviewWorkflow(db).bulk_approve([pending.id, rejected.id, 999, pending.id], "alice")

    outcomes = {o.candidate_id: o.status for o in result.outcomes}
    assert outcomes == {pending.id: "ok", rejected.id: "conflict", 999: "not_found"}
    assert (result.succeeded, result.failed) == (1, 2)
    db.refresh(rejected)
    assert rejected.review_status == ReviewStatus.REJECTED


def test_bulk_reject(db, rule, scan):
    first = make_candidate(db, rule, scan)
    second = make_candidate(db, rule, scan)

    result = ReviewWorkflow(db).bulk_reject([first.id, second.id], "alice", note="seasonal")

    assert result.succeeded == 2
    for candidate in (first, second):
        db.refresh(candidate)
        assert candidate.review_status == ReviewStatus.REJECTED
        assert candidate.review_note == "seasonal"


def test_bulk_approve_enqueues_auto_delete_batch_once(db):
    auto_rule = make_rule(db, action_type=ActionType.AUTO_DELETE)
    scan = make_scan(db, auto_rule)
    ids = [make_candidate(db, auto_rule, scan).id for _ in range(3)]
    queued = []

    ReviewWorkflow(db, enqueue_deletion=queued.append).bulk_approve(ids, "alice")

    assert queued == [ids]
