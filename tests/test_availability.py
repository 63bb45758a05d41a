"""
Tests: Route Availability Classifier and pre-flight validation.
"""

from velotrace.services import availability, cache_service, quota_ledger, route_catalog, submission_history
from velotrace.services.quota_ledger import ReservationOutcome


# ── Helpers ──────────────────────────────────────────────────────────────────


def _fill(qid, route_id):
    while quota_ledger.try_reserve(qid, route_id) is ReservationOutcome.RESERVED:
        pass


def _submitted(user_id, qid, route_id):
    submission_history.append_submission(user_id, qid, f"resp-{user_id}-{route_id}", route_id=route_id)


# ── Classification ───────────────────────────────────────────────────────────


def test_no_rules_everything_available(tracked, catalog):
    result = availability.classify(catalog, tracked, "u-1")

    assert len(result.available) == 33
    assert result.restricted == result.warnings == result.hidden == []


def test_full_route_is_hidden_with_quota_full_type(tracked, catalog, make_rule):
    make_rule("route_completion_limit", enforcement="hide", error_message="Route is full")
    quota_ledger.update_entry(quota_ledger.get_entry(tracked, "route-taijiang").id, completion_limit=1)
    _fill(tracked, "route-taijiang")

    result = availability.classify(catalog, tracked, "u-1")

    hidden = {r["route_id"]: r for r in result.hidden}
    assert list(hidden) == ["route-taijiang"]
    assert hidden["route-taijiang"]["type"] == "quota_full"
    assert hidden["route-taijiang"]["reason"] == "Route is full"
    assert len(result.available) == 32


def test_hide_beats_warn_whatever_the_order(tracked, catalog, make_rule):
    make_rule("route_submission_limit", enforcement="warn", warning_message="You did this already")
    make_rule("route_submission_limit", enforcement="hide", error_message="Completed")
    _submitted("u-1", tracked, "route-1-3")

    result = availability.classify(catalog, tracked, "u-1")

    assert result.bucket_of("route-1-3") == "hidden"
    assert result.hidden[0]["type"] == "user_submitted"
    assert result.warnings == []


def test_duplicate_prevention_is_per_questionnaire_and_route(tracked, catalog, make_rule):
    make_rule("route_submission_limit", error_message="Already submitted")
    quota_ledger.initialize_tracking("Q2", catalog)
    _submitted("u-1", tracked, "route-1")

    q1 = availability.classify(catalog, tracked, "u-1")
    q2 = availability.classify(catalog, "Q2", "u-1")
    other_user = availability.classify(catalog, tracked, "u-2")

    assert q1.bucket_of("route-1") == "restricted"
    assert q1.restricted[0]["reason"] == "Already submitted"
    assert q1.restricted[0]["submission_count"] == 1
    assert q1.bucket_of("route-1-1") == "available"
    assert q2.bucket_of("route-1") == "available"
    assert other_user.bucket_of("route-1") == "available"


def test_warn_bucket_carries_message(tracked, catalog, make_rule):
    make_rule("route_submission_limit", enforcement="warn", warning_message="Heads up")
    _submitted("u-1", tracked, "route-dapengbay")

    result = availability.classify(catalog, tracked, "u-1")

    assert result.bucket_of("route-dapengbay") == "warnings"
    assert result.warnings[0]["warning"] == "Heads up"


def test_role_restriction_restricts_every_route(tracked, catalog, make_rule):
    make_rule("user_role_restriction", {"requiredUserRole": ["member"]}, error_message="Members only")

    guest = availability.classify(catalog, tracked, "u-1", user_role="guest")
    member = availability.classify(catalog, tracked, "u-1", user_role="member")

    assert len(guest.restricted) == 33
    assert len(member.available) == 33


def test_classify_defaults_to_catalog_and_includes_quota(tracked, catalog):
    result = availability.classify(None, tracked, "u-1")
    route_1 = next(r for r in result.available if r["route_id"] == "route-1")

    assert route_1["completion_limit"] == 70
    assert route_1["remaining_quota"] == 70


def test_classify_accepts_catalog_dicts(tracked):
    routes = [route_catalog.route_to_dict(r) for r in route_catalog.list_routes(category="loop-alternative")]
    result = availability.classify(routes, tracked, "u-1")
    assert len(result.available) == 3


# ── Pre-flight validation ────────────────────────────────────────────────────


def test_validate_without_rules_can_submit(tracked):
    result = availability.validate_submission("u-1", tracked, "route-1")
    assert result.can_submit and result.is_valid
    assert result.errors == [] and result.warnings == []


def test_validate_reads_fresh_snapshot(tracked, make_rule):
    make_rule("route_completion_limit", error_message="Route is full")
    entry = quota_ledger.get_entry(tracked, "route-1-1")
    quota_ledger.update_entry(entry.id, completion_limit=1)

    quota_ledger.try_reserve(tracked, "route-1-1")
    stale = quota_ledger.get_snapshot(tracked, use_cache=False)
    stale["route-1-1"]["current_completions"] = 0
    cache_service.set_cached_snapshot(tracked, stale)

    result = availability.validate_submission("u-1", tracked, "route-1-1")
    assert result.can_submit is False
    assert result.errors == ["Route is full"]


def test_validate_returns_warnings_but_can_submit(tracked, make_rule):
    make_rule("route_submission_limit", enforcement="warn", warning_message="Duplicate")
    _submitted("u-1", tracked, "route-1")

    result = availability.validate_submission("u-1", tracked, "route-1")
    assert result.can_submit is True
    assert result.warnings == ["Duplicate"]
    assert result.to_dict()["level"] == "warn"


# ── Routes without a ledger entry ────────────────────────────────────────────


def test_untracked_route_is_restricted_not_available(tracked, catalog):
    extra = {"route_id": "route-pop-up", "name": "Pop-up Route", "category": "other"}
    routes = [route_catalog.route_to_dict(r) for r in catalog] + [extra]

    result = availability.classify(routes, tracked, "u-1")

    assert result.bucket_of("route-pop-up") == "restricted"
    untracked = next(r for r in result.restricted if r["route_id"] == "route-pop-up")
    assert untracked["reason"] == availability.UNTRACKED_REASON
    assert "remaining_quota" not in untracked
    assert len(result.available) == 33


def test_questionnaire_without_tracking_restricts_every_route(catalog):
    result = availability.classify(catalog, "Q-untracked", "u-1")

    assert result.available == []
    assert len(result.restricted) == 33


def test_validate_untracked_route_cannot_submit(tracked):
    result = availability.validate_submission("u-1", tracked, "route-nowhere")

    assert result.can_submit is False
    assert result.errors == [availability.UNTRACKED_REASON]
