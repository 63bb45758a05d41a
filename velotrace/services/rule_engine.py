"""
Validation Rule Engine.

Evaluates a questionnaire's configured rules against one candidate
submission (user × route) and returns a Decision.

Rules are stored as data (ValidationRule rows) and parsed into a closed
set of typed variants; a single dispatch table maps each variant to its
check function, so adding a rule *instance* never needs a deploy while
adding a rule *type* means adding a variant plus its check.

Usage:
    from velotrace.services.rule_engine import EvaluationContext, evaluate
    decision = evaluate(rules, ctx)
    # -> Decision(outcome="block", level="hide", messages=[...])
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Union

from flask import current_app, has_app_context

from velotrace.core.exceptions import NotFoundError, RuleConfigError, ValidationError
from velotrace.models import db
from velotrace.models.validation_rule import VALID_ENFORCEMENTS, VALID_RULE_TYPES, ValidationRule
from velotrace.services.submission_history import UserHistory
from velotrace.utils.helpers import utcnow

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════════════
# Enums & Data Classes
# ═════════════════════════════════════════════════════════════════════════════

class Outcome(str, Enum):
    ALLOW = "allow"
    WARN = "warn"
    BLOCK = "block"


class Enforcement(str, Enum):
    BLOCK = "block"
    WARN = "warn"
    HIDE = "hide"


# Total order used for tie-breaks: hide > block > warn > allow
STRICTNESS: dict[str, int] = {
    "allow": 0,
    "warn": 1,
    "block": 2,
    "hide": 3,
}

_DEFAULT_WARNING = "You have already submitted for this route"
_MISCONFIGURED_MESSAGE = "Submissions are temporarily unavailable for this route"


@dataclass(frozen=True)
class RuleMeta:
    """Fields every rule variant carries."""
    rule_id: int | None
    enforcement: Enforcement
    error_message: str
    warning_message: str | None = None


@dataclass(frozen=True)
class RouteCompletionLimitRule:
    """Fires when the route's ledger entry is full or deactivated."""
    meta: RuleMeta
    limit_override: int | None = None
    enforce: bool = True
    type: str = "route_completion_limit"


@dataclass(frozen=True)
class RouteSubmissionLimitRule:
    """Fires when the user already holds maxSubmissionsPerRoute records for the route."""
    meta: RuleMeta
    max_per_route: int = 1
    allowed_routes: frozenset[str] | None = None
    type: str = "route_submission_limit"


@dataclass(frozen=True)
class TimeCooldownRule:
    """Fires when the user's latest submission is inside the cooldown window."""
    meta: RuleMeta
    cooldown: timedelta
    max_per_day: int | None = None
    type: str = "time_cooldown"


@dataclass(frozen=True)
class UserRoleRestrictionRule:
    """Fires when the user's role is not one of the required roles."""
    meta: RuleMeta
    required_roles: frozenset[str]
    type: str = "user_role_restriction"


Rule = Union[
    RouteCompletionLimitRule,
    RouteSubmissionLimitRule,
    TimeCooldownRule,
    UserRoleRestrictionRule,
]


@dataclass
class EvaluationContext:
    """Everything a rule may look at. Built once per (user, route)."""
    user_id: str
    questionnaire_id: str
    route_id: str | None
    user_history: UserHistory
    ledger_snapshot: dict[str, dict]
    user_role: str | None = None
    now: datetime = field(default_factory=utcnow)


@dataclass
class RuleVerdict:
    """One fired rule."""
    rule_id: int | None
    rule_type: str
    outcome: Outcome
    level: str
    message: str

    def to_dict(self) -> dict:
        return {
            "rule_id": self.rule_id,
            "rule_type": self.rule_type,
            "outcome": self.outcome.value,
            "level": self.level,
            "message": self.message,
        }


@dataclass
class Decision:
    """Aggregate result of evaluating a questionnaire's rules."""
    outcome: Outcome
    level: str = "allow"
    messages: list[str] = field(default_factory=list)
    verdicts: list[RuleVerdict] = field(default_factory=list)

    @property
    def allowed(self) -> bool:
        return self.outcome != Outcome.BLOCK

    @property
    def warnings(self) -> list[str]:
        return [v.message for v in self.verdicts if v.outcome == Outcome.WARN]

    @property
    def errors(self) -> list[str]:
        return [v.message for v in self.verdicts if v.outcome == Outcome.BLOCK]

    def to_dict(self) -> dict:
        return {
            "outcome": self.outcome.value,
            "level": self.level,
            "messages": list(self.messages),
            "verdicts": [v.to_dict() for v in self.verdicts],
        }


# ═════════════════════════════════════════════════════════════════════════════
# Parsing: rule rows / dicts → typed variants
# ═════════════════════════════════════════════════════════════════════════════

def _field(raw, name, default=None):
    if isinstance(raw, dict):
        return raw.get(name, default)
    return getattr(raw, name, default)


def _positive_int(value, rule_type, name, rule_id, *, required=False):
    if value is None:
        if required:
            raise RuleConfigError(rule_type, f"config.{name} is required", rule_id)
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise RuleConfigError(rule_type, f"config.{name} must be a positive integer", rule_id)
    return value


def _parse_completion_limit(meta: RuleMeta, cfg: dict) -> RouteCompletionLimitRule:
    override = cfg.get("routeCompletionLimit")
    if override is not None and (isinstance(override, bool) or not isinstance(override, int) or override < 0):
        raise RuleConfigError("route_completion_limit",
                              "config.routeCompletionLimit must be a non-negative integer", meta.rule_id)
    enforce = cfg.get("enforceCompletionLimit", True)
    if not isinstance(enforce, bool):
        raise RuleConfigError("route_completion_limit",
                              "config.enforceCompletionLimit must be a boolean", meta.rule_id)
    return RouteCompletionLimitRule(meta=meta, limit_override=override, enforce=enforce)


def _parse_submission_limit(meta: RuleMeta, cfg: dict) -> RouteSubmissionLimitRule:
    max_per_route = _positive_int(cfg.get("maxSubmissionsPerRoute"),
                                  "route_submission_limit", "maxSubmissionsPerRoute", meta.rule_id) or 1
    allowed = cfg.get("allowedRoutes")
    if allowed is not None:
        if not isinstance(allowed, list) or not all(isinstance(r, str) for r in allowed):
            raise RuleConfigError("route_submission_limit",
                                  "config.allowedRoutes must be a list of route ids", meta.rule_id)
        allowed = frozenset(allowed)
    return RouteSubmissionLimitRule(meta=meta, max_per_route=max_per_route, allowed_routes=allowed)


def _parse_cooldown(meta: RuleMeta, cfg: dict) -> TimeCooldownRule:
    period_ms = _positive_int(cfg.get("cooldownPeriod"), "time_cooldown",
                              "cooldownPeriod", meta.rule_id, required=True)
    max_per_day = _positive_int(cfg.get("maxSubmissionsPerDay"), "time_cooldown",
                                "maxSubmissionsPerDay", meta.rule_id)
    return TimeCooldownRule(meta=meta, cooldown=timedelta(milliseconds=period_ms), max_per_day=max_per_day)


def _parse_role_restriction(meta: RuleMeta, cfg: dict) -> UserRoleRestrictionRule:
    roles = cfg.get("requiredUserRole")
    if isinstance(roles, str):
        roles = [roles]
    if not roles or not isinstance(roles, list) or not all(isinstance(r, str) and r for r in roles):
        raise RuleConfigError("user_role_restriction",
                              "config.requiredUserRole must be a non-empty list of roles", meta.rule_id)
    return UserRoleRestrictionRule(meta=meta, required_roles=frozenset(roles))


_PARSERS = {
    "route_completion_limit": _parse_completion_limit,
    "route_submission_limit": _parse_submission_limit,
    "time_cooldown": _parse_cooldown,
    "user_role_restriction": _parse_role_restriction,
}

_RULE_CLASSES = (
    RouteCompletionLimitRule,
    RouteSubmissionLimitRule,
    TimeCooldownRule,
    UserRoleRestrictionRule,
)


def parse_rule(raw: ValidationRule | dict) -> Rule:
    """Turn a ValidationRule row (or its dict form) into a typed rule.

    Raises:
        RuleConfigError for an unknown type, enforcement or bad config.
    """
    rule_id = _field(raw, "id")
    rule_type = _field(raw, "type")
    parser = _PARSERS.get(rule_type)
    if parser is None:
        raise RuleConfigError(rule_type, "unknown rule type", rule_id)

    enforcement = _field(raw, "enforcement", "block")
    if enforcement not in VALID_ENFORCEMENTS:
        raise RuleConfigError(rule_type, f"unknown enforcement '{enforcement}'", rule_id)

    cfg = _field(raw, "config") or {}
    if not isinstance(cfg, dict):
        raise RuleConfigError(rule_type, "config must be an object", rule_id)

    meta = RuleMeta(
        rule_id=rule_id,
        enforcement=Enforcement(enforcement),
        error_message=_field(raw, "error_message") or "",
        warning_message=_field(raw, "warning_message"),
    )
    return parser(meta, cfg)


# ═════════════════════════════════════════════════════════════════════════════
# Rule checks: one per variant; each returns True when the rule fires
# ═════════════════════════════════════════════════════════════════════════════

def _check_completion_limit(rule: RouteCompletionLimitRule, ctx: EvaluationContext) -> bool:
    if not rule.enforce or ctx.route_id is None:
        return False
    entry = ctx.ledger_snapshot.get(ctx.route_id)
    if entry is None:
        return False
    if not entry.get("is_active", True):
        return True
    limit = rule.limit_override if rule.limit_override is not None else entry["completion_limit"]
    return entry["current_completions"] >= limit


def _check_submission_limit(rule: RouteSubmissionLimitRule, ctx: EvaluationContext) -> bool:
    if ctx.route_id is None:
        return False
    if rule.allowed_routes is not None and ctx.route_id not in rule.allowed_routes:
        return True
    return ctx.user_history.count_for(ctx.route_id) >= rule.max_per_route


def _check_cooldown(rule: TimeCooldownRule, ctx: EvaluationContext) -> bool:
    latest = ctx.user_history.latest_submission_at
    if latest is not None and ctx.now - latest < rule.cooldown:
        return True
    if rule.max_per_day is not None and ctx.user_history.submissions_last_24h >= rule.max_per_day:
        return True
    return False


def _check_role(rule: UserRoleRestrictionRule, ctx: EvaluationContext) -> bool:
    return ctx.user_role not in rule.required_roles


_CHECKS = {
    RouteCompletionLimitRule: _check_completion_limit,
    RouteSubmissionLimitRule: _check_submission_limit,
    TimeCooldownRule: _check_cooldown,
    UserRoleRestrictionRule: _check_role,
}


def _verdict_for(rule: Rule) -> RuleVerdict:
    meta = rule.meta
    if meta.enforcement == Enforcement.WARN:
        message = meta.warning_message or meta.error_message or _DEFAULT_WARNING
        outcome = Outcome.WARN
    else:
        message = meta.error_message or meta.warning_message or _MISCONFIGURED_MESSAGE
        outcome = Outcome.BLOCK
    return RuleVerdict(
        rule_id=meta.rule_id,
        rule_type=rule.type,
        outcome=outcome,
        level=meta.enforcement.value,
        message=message,
    )


# ═════════════════════════════════════════════════════════════════════════════
# Public API
# ═════════════════════════════════════════════════════════════════════════════

def _failure_policy(policy: str | None) -> str:
    if policy:
        return policy
    if has_app_context():
        return current_app.config.get("RULE_FAILURE_POLICY", "open")
    return "open"


def _is_active(rule: Any) -> bool:
    if isinstance(rule, _RULE_CLASSES):
        return True
    return bool(_field(rule, "is_active", True))


def evaluate(
    rules: list,
    context: EvaluationContext,
    *,
    exhaustive: bool = False,
    failure_policy: str | None = None,
) -> Decision:
    """Evaluate active rules in declared order.

    Args:
        rules: ValidationRule rows, rule dicts or parsed rule variants,
               already in declared order.
        context: The candidate submission.
        exhaustive: Keep evaluating after the first block. The availability
               classifier needs this so the strictest level wins no matter
               where the hide rule sits in the list.
        failure_policy: "open" or "closed"; defaults to RULE_FAILURE_POLICY.

    Returns:
        Decision: block if any rule blocked, else warn if any warned,
        else allow. ``level`` is the strictest enforcement that fired.
    """
    policy = _failure_policy(failure_policy)
    verdicts: list[RuleVerdict] = []

    for raw in rules:
        if not _is_active(raw):
            continue
        try:
            rule = raw if isinstance(raw, _RULE_CLASSES) else parse_rule(raw)
        except RuleConfigError as exc:
            if policy == "closed":
                logger.error("Malformed rule blocks submission (fail-closed): %s", exc,
                             extra={"questionnaire_id": context.questionnaire_id})
                verdicts.append(RuleVerdict(
                    rule_id=exc.rule_id, rule_type=str(exc.rule_type),
                    outcome=Outcome.BLOCK, level="block", message=_MISCONFIGURED_MESSAGE,
                ))
                if not exhaustive:
                    break
            else:
                logger.warning("Malformed rule skipped (fail-open): %s", exc,
                               extra={"questionnaire_id": context.questionnaire_id})
            continue

        if not _CHECKS[type(rule)](rule, context):
            continue
        verdict = _verdict_for(rule)
        verdicts.append(verdict)
        if verdict.outcome == Outcome.BLOCK and not exhaustive:
            break

    blocks = [v for v in verdicts if v.outcome == Outcome.BLOCK]
    warns = [v for v in verdicts if v.outcome == Outcome.WARN]
    level = max((v.level for v in verdicts), key=STRICTNESS.__getitem__, default="allow")

    if blocks:
        return Decision(Outcome.BLOCK, level, [v.message for v in blocks], verdicts)
    if warns:
        return Decision(Outcome.WARN, level, [v.message for v in warns], verdicts)
    return Decision(Outcome.ALLOW, level, [], verdicts)


def claim_limit(rules: list, route_id: str | None) -> RouteSubmissionLimitRule | None:
    """The tightest blocking per-route submission limit covering ``route_id``.

    Warn rules never cap claims. Malformed rules are skipped here; under
    the fail-closed policy ``evaluate`` has already refused the submission.
    """
    if route_id is None:
        return None
    tightest = None
    for raw in rules:
        if not _is_active(raw):
            continue
        try:
            rule = raw if isinstance(raw, _RULE_CLASSES) else parse_rule(raw)
        except RuleConfigError:
            continue
        if not isinstance(rule, RouteSubmissionLimitRule) or rule.meta.enforcement == Enforcement.WARN:
            continue
        if rule.allowed_routes is not None and route_id not in rule.allowed_routes:
            continue
        if tightest is None or rule.max_per_route < tightest.max_per_route:
            tightest = rule
    return tightest


def blocked_by(rule: Rule) -> Decision:
    """Decision for a submission refused by ``rule`` outside ``evaluate``."""
    verdict = _verdict_for(rule)
    return Decision(Outcome.BLOCK, verdict.level, [verdict.message], [verdict])


def load_rules(questionnaire_id: str, active_only: bool = True) -> list[ValidationRule]:
    """Rules for a questionnaire in declared order (position, then id)."""
    query = ValidationRule.query.filter_by(questionnaire_id=questionnaire_id)
    if active_only:
        query = query.filter_by(is_active=True)
    return query.order_by(ValidationRule.position, ValidationRule.id).all()


# ═════════════════════════════════════════════════════════════════════════════
# Rule administration
# ═════════════════════════════════════════════════════════════════════════════

_EDITABLE_FIELDS = ("type", "config", "enforcement", "error_message",
                    "warning_message", "position", "is_active")


def _check_payload(data: dict) -> None:
    """Validate a would-be rule so bad data never reaches the engine or the store.

    Normalizes a missing ``error_message`` to "" in place.
    """
    if data.get("type") not in VALID_RULE_TYPES:
        raise ValidationError(
            f"Invalid rule type '{data.get('type')}'",
            details={"type": sorted(VALID_RULE_TYPES)},
        )
    if data.get("enforcement", "block") not in VALID_ENFORCEMENTS:
        raise ValidationError(
            f"Invalid enforcement '{data.get('enforcement')}'",
            details={"enforcement": sorted(VALID_ENFORCEMENTS)},
        )
    if data.get("error_message") is None:
        data["error_message"] = ""
    if not isinstance(data["error_message"], str):
        raise ValidationError("error_message must be a string", details={"error_message": "invalid"})
    if data.get("enforcement", "block") != "warn" and not (data.get("error_message") or "").strip():
        raise ValidationError("error_message is required for block/hide rules",
                              details={"error_message": "required"})
    position = data.get("position")
    if position is not None and (isinstance(position, bool) or not isinstance(position, int) or position < 0):
        raise ValidationError("position must be a non-negative integer", details={"position": position})
    if "is_active" in data and not isinstance(data["is_active"], bool):
        raise ValidationError("is_active must be a boolean", details={"is_active": data["is_active"]})
    try:
        parse_rule(data)
    except RuleConfigError as exc:
        raise ValidationError(str(exc), details={"config": data.get("config")}) from exc


def list_rules(questionnaire_id: str) -> list[ValidationRule]:
    return load_rules(questionnaire_id, active_only=False)


def get_rule(questionnaire_id: str, rule_id: int) -> ValidationRule:
    rule = db.session.get(ValidationRule, rule_id)
    if rule is None or rule.questionnaire_id != questionnaire_id:
        raise NotFoundError(resource="ValidationRule", resource_id=rule_id)
    return rule


def create_rule(questionnaire_id: str, data: dict) -> ValidationRule:
    """Validate and store a new rule; appended after existing rules by default."""
    payload = {k: data[k] for k in _EDITABLE_FIELDS if k in data}
    payload.setdefault("config", {})
    payload.setdefault("enforcement", "block")
    _check_payload(payload)

    if payload.get("position") is None:
        last = (
            db.session.query(db.func.max(ValidationRule.position))
            .filter(ValidationRule.questionnaire_id == questionnaire_id)
            .scalar()
        )
        payload["position"] = 0 if last is None else last + 1

    rule = ValidationRule(questionnaire_id=questionnaire_id, **payload)
    db.session.add(rule)
    db.session.commit()
    logger.info("Rule %s created (%s/%s)", rule.id, rule.type, rule.enforcement,
                extra={"questionnaire_id": questionnaire_id})
    return rule


def update_rule(questionnaire_id: str, rule_id: int, data: dict) -> ValidationRule:
    rule = get_rule(questionnaire_id, rule_id)
    merged = {k: getattr(rule, k) for k in _EDITABLE_FIELDS}
    merged.update({k: data[k] for k in _EDITABLE_FIELDS if k in data})
    if merged.get("position") is None:
        merged["position"] = rule.position
    merged["id"] = rule.id
    _check_payload(merged)

    for key in _EDITABLE_FIELDS:
        setattr(rule, key, merged[key])
    db.session.commit()
    logger.info("Rule %s updated", rule.id, extra={"questionnaire_id": questionnaire_id})
    return rule


def delete_rule(questionnaire_id: str, rule_id: int) -> None:
    rule = get_rule(questionnaire_id, rule_id)
    db.session.delete(rule)
    db.session.commit()
    logger.info("Rule %s deleted", rule_id, extra={"questionnaire_id": questionnaire_id})
