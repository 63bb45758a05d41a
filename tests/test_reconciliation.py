"""
Tests: Quota Ledger reconciliation of leaked reservations.
"""

from velotrace.models import db as _db
from velotrace.services import quota_ledger, submission_history


def _counter(qid, route_id):
    _db.session.expire_all()
    return quota_ledger.get_entry(qid, route_id).current_completions


def _leak(qid, route_id, times=1):
    for _ in range(times):
        quota_ledger.try_reserve(qid, route_id)


def test_matching_counters_are_left_alone(tracked):
    quota_ledger.try_reserve(tracked, "route-1")
    submission_history.append_submission("u-1", tracked, "r-1", route_id="route-1")

    report = quota_ledger.reconcile(tracked, grace_seconds=0)

    assert report["checked"] == 33
    assert report["adjusted"] == []
    assert _counter(tracked, "route-1") == 1


def test_leaked_slots_are_freed(tracked):
    _leak(tracked, "route-1-5", times=3)
    submission_history.append_submission("u-1", tracked, "r-1", route_id="route-1-5")

    report = quota_ledger.reconcile(tracked, grace_seconds=0)

    assert report["adjusted"] == [{"route_id": "route-1-5", "from": 3, "to": 1}]
    assert _counter(tracked, "route-1-5") == 1


def test_recent_reservations_are_inside_grace_window(tracked):
    _leak(tracked, "route-1-5")

    report = quota_ledger.reconcile(tracked, grace_seconds=3600)

    assert report["adjusted"] == []
    assert report["skipped_recent"][0]["route_id"] == "route-1-5"
    assert _counter(tracked, "route-1-5") == 1


def test_dry_run_reports_without_writing(tracked):
    _leak(tracked, "route-gamalan", times=2)

    report = quota_ledger.reconcile(tracked, grace_seconds=0, dry_run=True)

    assert report["dry_run"] is True
    assert report["adjusted"] == [{"route_id": "route-gamalan", "from": 2, "to": 0}]
    assert _counter(tracked, "route-gamalan") == 2


def test_counters_are_never_raised(tracked):
    submission_history.append_submission("u-1", tracked, "r-1", route_id="route-gamalan")
    submission_history.append_submission("u-2", tracked, "r-2", route_id="route-gamalan")

    report = quota_ledger.reconcile(tracked, grace_seconds=0)

    assert report["under_counted"] == [{"route_id": "route-gamalan", "current": 0, "recorded": 2}]
    assert _counter(tracked, "route-gamalan") == 0


def test_grace_window_defaults_to_config(app, tracked, monkeypatch):
    monkeypatch.setitem(app.config, "RECONCILE_GRACE_SECONDS", 0)
    _leak(tracked, "route-1")

    assert quota_ledger.reconcile(tracked)["adjusted"][0]["to"] == 0
