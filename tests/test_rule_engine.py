"""
Tests: Validation Rule Engine: parsing, per-rule semantics, aggregation,
fail-open / fail-closed handling and rule administration.

Evaluation tests build contexts in memory; only the administration tests
touch the database.
"""

from datetime import datetime, timedelta, timezone

import pytest

from velotrace.core.exceptions import NotFoundError, RuleConfigError, ValidationError
from velotrace.services import rule_engine
from velotrace.services.rule_engine import (
    EvaluationContext,
    Outcome,
    RouteCompletionLimitRule,
    TimeCooldownRule,
    evaluate,
    parse_rule,
)
from velotrace.services.submission_history import UserHistory

NOW = datetime(2026, 5, 1, 12, 0, tzinfo=timezone.utc)


# ── Helpers ──────────────────────────────────────────────────────────────────


def _rule(type_, config=None, enforcement="block", error="Blocked", warning=None, **extra):
    data = {"type": type_, "config": config or {}, "enforcement": enforcement,
            "error_message": error, "warning_message": warning, "is_active": True}
    data.update(extra)
    return data


def _ctx(route_id="r-1", counts=None, latest=None, last_24h=0, snapshot=None, role=None):
    history = UserHistory(
        user_id="u-1",
        questionnaire_id="Q1",
        route_counts=counts or {},
        latest_submission_at=latest,
        submissions_last_24h=last_24h,
        total=sum((counts or {}).values()),
    )
    if snapshot is None:
        snapshot = {"r-1": {"current_completions": 0, "completion_limit": 2, "is_active": True}}
    return EvaluationContext(
        user_id="u-1",
        questionnaire_id="Q1",
        route_id=route_id,
        user_history=history,
        ledger_snapshot=snapshot,
        user_role=role,
        now=NOW,
    )


def _full():
    return {"r-1": {"current_completions": 2, "completion_limit": 2, "is_active": True}}


# ── Parsing ──────────────────────────────────────────────────────────────────


def test_parse_builds_typed_variant():
    rule = parse_rule(_rule("time_cooldown", {"cooldownPeriod": 60000, "maxSubmissionsPerDay": 3}))
    assert isinstance(rule, TimeCooldownRule)
    assert rule.cooldown == timedelta(minutes=1)
    assert rule.max_per_day == 3


def test_parse_completion_limit_defaults():
    rule = parse_rule(_rule("route_completion_limit"))
    assert isinstance(rule, RouteCompletionLimitRule)
    assert rule.enforce is True
    assert rule.limit_override is None


@pytest.mark.parametrize("raw", [
    _rule("no_such_rule"),
    _rule("route_completion_limit", enforcement="shout"),
    _rule("time_cooldown", {}),
    _rule("time_cooldown", {"cooldownPeriod": "soon"}),
    _rule("route_submission_limit", {"maxSubmissionsPerRoute": 0}),
    _rule("user_role_restriction", {"requiredUserRole": []}),
])
def test_parse_rejects_malformed_rules(raw):
    with pytest.raises(RuleConfigError):
        parse_rule(raw)


# ── Rule semantics ───────────────────────────────────────────────────────────


def test_no_rules_allows():
    decision = evaluate([], _ctx())
    assert decision.outcome == Outcome.ALLOW
    assert decision.level == "allow"
    assert decision.messages == []


def test_completion_limit_blocks_full_route():
    decision = evaluate([_rule("route_completion_limit", error="Route full")], _ctx(snapshot=_full()))
    assert decision.outcome == Outcome.BLOCK
    assert decision.messages == ["Route full"]


def test_completion_limit_allows_route_with_room():
    assert evaluate([_rule("route_completion_limit")], _ctx()).outcome == Outcome.ALLOW


def test_completion_limit_ignores_untracked_route():
    assert evaluate([_rule("route_completion_limit")], _ctx(route_id="elsewhere")).outcome == Outcome.ALLOW


def test_completion_limit_override_and_disable():
    ctx = _ctx(snapshot={"r-1": {"current_completions": 1, "completion_limit": 5, "is_active": True}})
    assert evaluate([_rule("route_completion_limit", {"routeCompletionLimit": 1})], ctx).outcome == Outcome.BLOCK
    assert evaluate([_rule("route_completion_limit", {"routeCompletionLimit": 1,
                                                      "enforceCompletionLimit": False})], ctx).outcome == Outcome.ALLOW


def test_completion_limit_blocks_deactivated_route():
    ctx = _ctx(snapshot={"r-1": {"current_completions": 0, "completion_limit": 5, "is_active": False}})
    assert evaluate([_rule("route_completion_limit")], ctx).outcome == Outcome.BLOCK


def test_submission_limit_is_per_route():
    rules = [_rule("route_submission_limit", {"maxSubmissionsPerRoute": 1}, error="Already done")]

    assert evaluate(rules, _ctx(counts={"r-1": 1})).outcome == Outcome.BLOCK
    assert evaluate(rules, _ctx(counts={"r-2": 1})).outcome == Outcome.ALLOW


def test_submission_limit_allowed_routes():
    rules = [_rule("route_submission_limit", {"allowedRoutes": ["r-2"]})]
    assert evaluate(rules, _ctx()).outcome == Outcome.BLOCK
    assert evaluate(rules, _ctx(route_id="r-2")).outcome == Outcome.ALLOW


def test_cooldown_blocks_inside_window():
    rules = [_rule("time_cooldown", {"cooldownPeriod": 3_600_000}, error="Slow down")]

    assert evaluate(rules, _ctx(latest=NOW - timedelta(minutes=30))).outcome == Outcome.BLOCK
    assert evaluate(rules, _ctx(latest=NOW - timedelta(hours=2))).outcome == Outcome.ALLOW
    assert evaluate(rules, _ctx()).outcome == Outcome.ALLOW


def test_cooldown_daily_cap():
    rules = [_rule("time_cooldown", {"cooldownPeriod": 1000, "maxSubmissionsPerDay": 2})]
    ctx = _ctx(latest=NOW - timedelta(hours=3), last_24h=2)
    assert evaluate(rules, ctx).outcome == Outcome.BLOCK


def test_role_restriction():
    rules = [_rule("user_role_restriction", {"requiredUserRole": ["cyclist", "admin"]})]

    assert evaluate(rules, _ctx(role="cyclist")).outcome == Outcome.ALLOW
    assert evaluate(rules, _ctx(role="guest")).outcome == Outcome.BLOCK
    assert evaluate(rules, _ctx(role=None)).outcome == Outcome.BLOCK


# ── Aggregation ──────────────────────────────────────────────────────────────


def test_warn_collects_every_warning_message():
    rules = [
        _rule("route_submission_limit", enforcement="warn", warning="Duplicate route"),
        _rule("time_cooldown", {"cooldownPeriod": 3_600_000}, enforcement="warn", warning="Too soon"),
    ]
    decision = evaluate(rules, _ctx(counts={"r-1": 1}, latest=NOW - timedelta(minutes=5)))

    assert decision.outcome == Outcome.WARN
    assert decision.level == "warn"
    assert decision.messages == ["Duplicate route", "Too soon"]
    assert decision.allowed


def test_block_short_circuits():
    rules = [
        _rule("route_completion_limit", error="Full"),
        _rule("user_role_restriction", {"requiredUserRole": ["x"]}, error="Role"),
    ]
    decision = evaluate(rules, _ctx(snapshot=_full()))

    assert decision.outcome == Outcome.BLOCK
    assert decision.messages == ["Full"]
    assert len(decision.verdicts) == 1


def test_exhaustive_reports_strictest_level_regardless_of_order():
    rules = [
        _rule("route_submission_limit", error="Already done"),
        _rule("route_completion_limit", enforcement="hide", error="Full"),
    ]
    ctx = _ctx(counts={"r-1": 1}, snapshot=_full())

    short = evaluate(rules, ctx)
    full = evaluate(rules, ctx, exhaustive=True)

    assert short.level == "block"
    assert full.level == "hide"
    assert full.messages == ["Already done", "Full"]


def test_block_beats_warn():
    rules = [
        _rule("route_submission_limit", enforcement="warn", warning="Dup"),
        _rule("user_role_restriction", {"requiredUserRole": ["x"]}, error="Role"),
    ]
    decision = evaluate(rules, _ctx(counts={"r-1": 1}))
    assert decision.outcome == Outcome.BLOCK
    assert decision.messages == ["Role"]
    assert decision.warnings == ["Dup"]


def test_inactive_rules_are_skipped():
    rules = [_rule("route_completion_limit", is_active=False)]
    assert evaluate(rules, _ctx(snapshot=_full())).outcome == Outcome.ALLOW


# ── Failure policy ───────────────────────────────────────────────────────────


def test_malformed_rule_fails_open_by_default(caplog):
    rules = [_rule("mystery_rule"), _rule("time_cooldown", {})]
    decision = evaluate(rules, _ctx())

    assert decision.outcome == Outcome.ALLOW
    assert "fail-open" in caplog.text


def test_malformed_rule_fails_closed_when_configured(app, monkeypatch):
    monkeypatch.setitem(app.config, "RULE_FAILURE_POLICY", "closed")
    decision = evaluate([_rule("mystery_rule")], _ctx())

    assert decision.outcome == Outcome.BLOCK
    assert decision.messages


def test_explicit_policy_overrides_config():
    decision = evaluate([_rule("mystery_rule")], _ctx(), failure_policy="closed")
    assert decision.outcome == Outcome.BLOCK


# ── Rule administration ──────────────────────────────────────────────────────


def test_create_rule_appends_in_declared_order():
    first = rule_engine.create_rule("Q1", _rule("route_completion_limit", error="Full"))
    second = rule_engine.create_rule("Q1", _rule("route_submission_limit", error="Dup"))

    assert [r.id for r in rule_engine.load_rules("Q1")] == [first.id, second.id]
    assert second.position == first.position + 1


def test_create_rule_validates_payload():
    with pytest.raises(ValidationError):
        rule_engine.create_rule("Q1", _rule("time_cooldown", {"cooldownPeriod": -5}))
    with pytest.raises(ValidationError):
        rule_engine.create_rule("Q1", _rule("route_completion_limit", error=""))
    assert rule_engine.list_rules("Q1") == []


def test_update_rule_revalidates_merged_rule():
    rule = rule_engine.create_rule("Q1", _rule("time_cooldown", {"cooldownPeriod": 1000}))

    updated = rule_engine.update_rule("Q1", rule.id, {"enforcement": "warn", "is_active": False})
    assert updated.enforcement == "warn"
    assert rule_engine.load_rules("Q1") == []

    with pytest.raises(ValidationError):
        rule_engine.update_rule("Q1", rule.id, {"config": {}})


def test_rule_scoped_to_questionnaire():
    rule = rule_engine.create_rule("Q1", _rule("route_completion_limit"))
    with pytest.raises(NotFoundError):
        rule_engine.delete_rule("Q2", rule.id)

    rule_engine.delete_rule("Q1", rule.id)
    assert rule_engine.list_rules("Q1") == []


def test_update_rule_clears_error_message_of_warn_rule():
    rule = rule_engine.create_rule("Q1", _rule("route_submission_limit", enforcement="warn",
                                               error=None, warning="Again?"))
    assert rule.error_message == ""

    updated = rule_engine.update_rule("Q1", rule.id, {"error_message": None})
    assert updated.error_message == ""


@pytest.mark.parametrize("change", [
    {"position": "first"},
    {"position": -1},
    {"position": True},
    {"is_active": "yes"},
    {"error_message": ["Blocked"]},
])
def test_update_rule_rejects_badly_typed_fields(change):
    rule = rule_engine.create_rule("Q1", _rule("route_completion_limit"))

    with pytest.raises(ValidationError):
        rule_engine.update_rule("Q1", rule.id, change)


def test_update_rule_keeps_position_when_cleared():
    rule = rule_engine.create_rule("Q1", _rule("route_completion_limit", position=4))
    updated = rule_engine.update_rule("Q1", rule.id, {"position": None})
    assert updated.position == 4


# ── Claim limits ─────────────────────────────────────────────────────────────


def test_claim_limit_picks_tightest_blocking_rule():
    rules = [
        _rule("route_submission_limit", {"maxSubmissionsPerRoute": 3}, error="Three"),
        _rule("route_submission_limit", {"maxSubmissionsPerRoute": 2}, enforcement="hide", error="Two"),
        _rule("route_submission_limit", enforcement="warn", warning="Warn only"),
        _rule("route_completion_limit"),
    ]

    cap = rule_engine.claim_limit(rules, "r-1")

    assert cap.max_per_route == 2
    assert cap.meta.error_message == "Two"


def test_claim_limit_ignores_warn_inactive_and_other_routes():
    rules = [
        _rule("route_submission_limit", enforcement="warn", warning="Again?"),
        _rule("route_submission_limit", is_active=False),
        _rule("route_submission_limit", {"allowedRoutes": ["r-2"]}),
        _rule("route_submission_limit", {"maxSubmissionsPerRoute": "x"}),
    ]

    assert rule_engine.claim_limit(rules, "r-1") is None
    assert rule_engine.claim_limit([_rule("route_submission_limit")], None) is None


def test_blocked_by_builds_block_decision():
    rule = rule_engine.parse_rule(_rule("route_submission_limit", enforcement="hide", error="Taken"))

    decision = rule_engine.blocked_by(rule)

    assert decision.outcome == Outcome.BLOCK
    assert decision.level == "hide"
    assert decision.messages == ["Taken"]
