"""
Route Availability Classifier.

Buckets every route of a questionnaire into available / restricted /
warnings / hidden for one user, by running the rule engine exhaustively
per route and taking the strictest level that fired:

    hide  → hidden      (type: quota_full | user_submitted | restricted)
    block → restricted  (reason = the rule's error message)
    warn  → warnings    (warning = the rule's warning message)
    allow → available

A route with no ledger entry for the questionnaire is restricted outright,
since a submission to it would be refused as not found.

Classifications are user-specific and computed per request; only the
ledger snapshot underneath may come from the short-TTL cache.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from velotrace.models.route import Route
from velotrace.services import quota_ledger, route_catalog
from velotrace.services.rule_engine import (
    Decision,
    EvaluationContext,
    Outcome,
    evaluate,
    load_rules,
)
from velotrace.services.submission_history import get_user_history
from velotrace.utils.helpers import utcnow

logger = logging.getLogger(__name__)

_HIDE_TYPES = {
    "route_completion_limit": "quota_full",
    "route_submission_limit": "user_submitted",
}

UNTRACKED_REASON = "Route is not tracked for this questionnaire"


@dataclass
class RouteAvailability:
    available: list[dict] = field(default_factory=list)
    restricted: list[dict] = field(default_factory=list)
    warnings: list[dict] = field(default_factory=list)
    hidden: list[dict] = field(default_factory=list)

    def bucket_of(self, route_id: str) -> str | None:
        for name in ("available", "restricted", "warnings", "hidden"):
            if any(r["route_id"] == route_id for r in getattr(self, name)):
                return name
        return None

    def to_dict(self) -> dict:
        return {
            "available": self.available,
            "restricted": self.restricted,
            "warnings": self.warnings,
            "hidden": self.hidden,
            "counts": {
                "available": len(self.available),
                "restricted": len(self.restricted),
                "warnings": len(self.warnings),
                "hidden": len(self.hidden),
            },
        }


@dataclass
class ValidationResult:
    can_submit: bool
    is_valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    decision: Decision | None = None

    def to_dict(self) -> dict:
        return {
            "can_submit": self.can_submit,
            "is_valid": self.is_valid,
            "errors": self.errors,
            "warnings": self.warnings,
            "level": self.decision.level if self.decision else "allow",
        }


def _route_info(route, snapshot: dict) -> dict:
    if isinstance(route, Route):
        info = {"route_id": route.route_id, "name": route.name, "category": route.category}
    else:
        info = {
            "route_id": route.get("route_id") or route.get("id"),
            "name": route.get("name"),
            "category": route.get("category"),
        }
    entry = snapshot.get(info["route_id"])
    if entry is not None:
        info["current_completions"] = entry["current_completions"]
        info["completion_limit"] = entry["completion_limit"]
        info["remaining_quota"] = max(0, entry["completion_limit"] - entry["current_completions"])
    return info


def _hide_type(decision: Decision) -> str:
    for verdict in decision.verdicts:
        if verdict.level == "hide":
            return _HIDE_TYPES.get(verdict.rule_type, "restricted")
    return "restricted"


def _hide_reason(decision: Decision) -> str:
    for verdict in decision.verdicts:
        if verdict.level == "hide":
            return verdict.message
    return decision.messages[0] if decision.messages else ""


def classify(
    routes,
    questionnaire_id: str,
    user_id: str,
    user_role: str | None = None,
    *,
    rules: list | None = None,
    use_cache: bool = True,
) -> RouteAvailability:
    """Classify ``routes`` for one user.

    Args:
        routes: Route rows or catalog dicts. None means the whole catalog.
        rules: Pre-loaded rules; loaded from the store when omitted.
        use_cache: Allow a cached (seconds-stale) ledger snapshot.
    """
    if routes is None:
        routes = route_catalog.list_routes()
    if rules is None:
        rules = load_rules(questionnaire_id)

    now = utcnow()
    snapshot = quota_ledger.get_snapshot(questionnaire_id, use_cache=use_cache)
    history = get_user_history(user_id, questionnaire_id, now=now)
    result = RouteAvailability()

    for route in routes:
        info = _route_info(route, snapshot)
        if info["route_id"] not in snapshot:
            info.update(reason=UNTRACKED_REASON, submission_count=history.count_for(info["route_id"]))
            result.restricted.append(info)
            continue
        if not rules:
            result.available.append(info)
            continue

        ctx = EvaluationContext(
            user_id=user_id,
            questionnaire_id=questionnaire_id,
            route_id=info["route_id"],
            user_history=history,
            ledger_snapshot=snapshot,
            user_role=user_role,
            now=now,
        )
        decision = evaluate(rules, ctx, exhaustive=True)

        if decision.level == "hide":
            info.update(reason=_hide_reason(decision), type=_hide_type(decision))
            result.hidden.append(info)
        elif decision.outcome == Outcome.BLOCK:
            info.update(reason=decision.messages[0],
                        submission_count=history.count_for(info["route_id"]))
            result.restricted.append(info)
        elif decision.outcome == Outcome.WARN:
            info["warning"] = decision.messages[0]
            result.warnings.append(info)
        else:
            result.available.append(info)

    logger.debug(
        "Classified %d route(s): available=%d restricted=%d warnings=%d hidden=%d",
        len(routes), len(result.available), len(result.restricted),
        len(result.warnings), len(result.hidden),
        extra={"questionnaire_id": questionnaire_id, "user_id": user_id},
    )
    return result


def validate_submission(
    user_id: str,
    questionnaire_id: str,
    route_id: str | None = None,
    user_role: str | None = None,
    *,
    rules: list | None = None,
) -> ValidationResult:
    """Pre-flight check for one (user, route) against a fresh ledger read."""
    snapshot = quota_ledger.get_snapshot(questionnaire_id, use_cache=False)
    if route_id is not None and route_id not in snapshot:
        return ValidationResult(can_submit=False, is_valid=False, errors=[UNTRACKED_REASON])
    if rules is None:
        rules = load_rules(questionnaire_id)
    if not rules:
        return ValidationResult(can_submit=True, is_valid=True)

    now = utcnow()
    ctx = EvaluationContext(
        user_id=user_id,
        questionnaire_id=questionnaire_id,
        route_id=route_id,
        user_history=get_user_history(user_id, questionnaire_id, now=now),
        ledger_snapshot=snapshot,
        user_role=user_role,
        now=now,
    )
    decision = evaluate(rules, ctx)
    errors = decision.errors
    return ValidationResult(
        can_submit=not errors,
        is_valid=not errors,
        errors=errors,
        warnings=decision.warnings,
        decision=decision,
    )
