"""
Tests: Submission pipeline: rules → reservation → record, with
compensation when the record cannot be written.
"""

import pytest
from sqlalchemy.exc import OperationalError

from velotrace.core.exceptions import (
    NotFoundError,
    PartialFailureError,
    TransientContentionError,
    ValidationError,
)
from velotrace.models import db as _db
from velotrace.models.submission import SubmissionRecord
from velotrace.services import quota_ledger, submission_history, submission_service
from velotrace.services.submission_history import UserHistory
from velotrace.services.submission_service import (
    STATUS_ACCEPTED,
    STATUS_ACCEPTED_WITH_WARNINGS,
    STATUS_BLOCKED,
    STATUS_QUOTA_EXCEEDED,
)


def _counter(qid, route_id):
    _db.session.expire_all()
    return quota_ledger.get_entry(qid, route_id).current_completions


def _set_limit(qid, route_id, limit):
    quota_ledger.update_entry(quota_ledger.get_entry(qid, route_id).id, completion_limit=limit)


def _fail_append(*args, **kwargs):
    raise OperationalError("INSERT INTO submission_records", {}, Exception("disk I/O error"))


# ── Happy path ───────────────────────────────────────────────────────────────


def test_accepted_submission_reserves_and_records(tracked):
    result = submission_service.submit("u-1", tracked, "resp-1", route_id="route-1",
                                       device_type="mobile")

    assert result.status == STATUS_ACCEPTED
    assert result.accepted
    assert result.record.route_name == "Cycling Route No. 1"
    assert result.record.device_type == "mobile"
    assert result.record.is_duplicate is False
    assert result.record.requires_review is False
    assert _counter(tracked, "route-1") == 1


def test_submission_without_route_skips_ledger(tracked):
    result = submission_service.submit("u-1", tracked, "resp-1")

    assert result.status == STATUS_ACCEPTED
    assert result.record.route_id is None
    assert sum(e.current_completions for e in quota_ledger.list_entries(tracked)) == 0


def test_warned_submission_is_flagged_for_review(tracked, make_rule):
    make_rule("route_submission_limit", enforcement="warn", warning_message="Again?")
    submission_service.submit("u-1", tracked, "resp-1", route_id="route-1-2")

    result = submission_service.submit("u-1", tracked, "resp-2", route_id="route-1-2")

    assert result.status == STATUS_ACCEPTED_WITH_WARNINGS
    assert result.decision.messages == ["Again?"]
    assert result.record.requires_review is True
    assert result.record.is_duplicate is True
    assert _counter(tracked, "route-1-2") == 2


# ── Refusals ─────────────────────────────────────────────────────────────────


def test_blocked_submission_writes_nothing(tracked, make_rule):
    make_rule("route_submission_limit", error_message="Already submitted")
    submission_service.submit("u-1", tracked, "resp-1", route_id="route-1")

    result = submission_service.submit("u-1", tracked, "resp-2", route_id="route-1")

    assert result.status == STATUS_BLOCKED
    assert not result.accepted
    assert result.decision.messages == ["Already submitted"]
    assert _counter(tracked, "route-1") == 1
    assert SubmissionRecord.query.count() == 1


@pytest.fixture()
def stale_first_history(monkeypatch):
    """The pipeline's first history read misses the user's existing records."""
    real = submission_history.get_user_history
    calls = []

    def _history(user_id, questionnaire_id, now=None):
        calls.append(user_id)
        if len(calls) == 1:
            return UserHistory.empty(user_id, questionnaire_id)
        return real(user_id, questionnaire_id, now=now)

    def _arm():
        calls.clear()
        monkeypatch.setattr(submission_history, "get_user_history", _history)

    return _arm


def test_claimed_slot_blocks_submit_with_stale_history(tracked, make_rule, stale_first_history):
    make_rule("route_submission_limit", error_message="Already submitted")
    submission_service.submit("u-1", tracked, "resp-1", route_id="route-1")
    stale_first_history()

    result = submission_service.submit("u-1", tracked, "resp-2", route_id="route-1")

    assert result.status == STATUS_BLOCKED
    assert result.decision.messages == ["Already submitted"]
    assert result.decision.level == "block"
    assert _counter(tracked, "route-1") == 1
    assert SubmissionRecord.query.count() == 1


def test_lost_slot_moves_to_next_free_one(tracked, make_rule, stale_first_history):
    make_rule("route_submission_limit", {"maxSubmissionsPerRoute": 2}, error_message="Limit reached")
    submission_service.submit("u-1", tracked, "resp-1", route_id="route-1")
    stale_first_history()

    result = submission_service.submit("u-1", tracked, "resp-2", route_id="route-1")

    assert result.status == STATUS_ACCEPTED
    assert result.record.claim_slot == 2
    assert result.record.is_duplicate is True
    assert _counter(tracked, "route-1") == 2


def test_warn_only_limit_leaves_claim_slot_empty(tracked, make_rule):
    make_rule("route_submission_limit", enforcement="warn", warning_message="Again?")

    result = submission_service.submit("u-1", tracked, "resp-1", route_id="route-1")

    assert result.record.claim_slot is None


def test_full_route_returns_fresh_availability(tracked):
    _set_limit(tracked, "route-shitou", 1)
    submission_service.submit("u-1", tracked, "resp-1", route_id="route-shitou")

    result = submission_service.submit("u-2", tracked, "resp-2", route_id="route-shitou")

    assert result.status == STATUS_QUOTA_EXCEEDED
    assert result.record is None
    assert result.availability is not None
    assert len(result.availability.available) == 33
    assert SubmissionRecord.query.filter_by(user_id="u-2").count() == 0
    assert result.to_dict()["availability"]["counts"]["available"] == 33


def test_completion_rule_blocks_before_reserving(tracked, make_rule):
    make_rule("route_completion_limit", enforcement="hide", error_message="Full")
    _set_limit(tracked, "route-shitou", 1)
    quota_ledger.try_reserve(tracked, "route-shitou")

    result = submission_service.submit("u-2", tracked, "resp-2", route_id="route-shitou")

    assert result.status == STATUS_BLOCKED
    assert result.decision.level == "hide"


def test_untracked_route_is_not_found(tracked):
    with pytest.raises(NotFoundError):
        submission_service.submit("u-1", tracked, "resp-1", route_id="route-nowhere")


def test_missing_identifiers_rejected(tracked):
    with pytest.raises(ValidationError) as exc:
        submission_service.submit("u-1", tracked, "", route_id="route-1")
    assert "response_id" in exc.value.details


def test_unknown_source_rejected_before_reserving(tracked):
    with pytest.raises(ValidationError):
        submission_service.submit("u-1", tracked, "resp-1", route_id="route-1",
                                  submission_source="carrier-pigeon")
    assert _counter(tracked, "route-1") == 0


# ── Partial failure & compensation ───────────────────────────────────────────


def test_failed_append_releases_reservation(tracked, monkeypatch):
    monkeypatch.setattr(submission_history, "append_submission", _fail_append)

    with pytest.raises(PartialFailureError) as exc:
        submission_service.submit("u-1", tracked, "resp-1", route_id="route-1")

    assert exc.value.compensated is True
    assert isinstance(exc.value.cause, OperationalError)
    assert _counter(tracked, "route-1") == 0


def test_failed_compensation_leaks_until_reconciled(tracked, monkeypatch):
    def _busy(qid, route_id):
        raise TransientContentionError(qid, route_id, 5)

    monkeypatch.setattr(submission_history, "append_submission", _fail_append)
    monkeypatch.setattr(quota_ledger, "release", _busy)

    with pytest.raises(PartialFailureError) as exc:
        submission_service.submit("u-1", tracked, "resp-1", route_id="route-1")
    assert exc.value.compensated is False

    monkeypatch.undo()
    assert _counter(tracked, "route-1") == 1

    report = quota_ledger.reconcile(tracked, grace_seconds=0)
    assert report["adjusted"] == [{"route_id": "route-1", "from": 1, "to": 0}]
    assert _counter(tracked, "route-1") == 0


def test_failed_append_without_route_propagates(tracked, monkeypatch):
    monkeypatch.setattr(submission_history, "append_submission", _fail_append)
    with pytest.raises(OperationalError):
        submission_service.submit("u-1", tracked, "resp-1")
