"""
Submission pipeline.

    evaluate rules → try_reserve → append SubmissionRecord
                                 ↳ append failed → release (compensate)

The rule decision is taken against a fresh (uncached) ledger snapshot; the
reservation itself is still the only authority on capacity, so a route
that fills up between the two steps comes back as ``quota_exceeded`` with
a re-computed availability for the user to pick another route.

Duplicate prevention does not rely on the history read alone: under a
blocking per-route submission limit the record claims a numbered slot.
Concurrent submits from the same user cannot share a slot, so once the
limit's slots are taken the remaining ones release their reservation
and come back ``blocked``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from velotrace.core.exceptions import (
    NotFoundError,
    PartialFailureError,
    TransientContentionError,
    ValidationError,
)
from velotrace.models import db
from velotrace.models.submission import VALID_SUBMISSION_SOURCES, SubmissionRecord
from velotrace.services import availability, quota_ledger, submission_history
from velotrace.services.quota_ledger import ReservationOutcome
from velotrace.services.rule_engine import (
    Decision,
    EvaluationContext,
    Outcome,
    blocked_by,
    claim_limit,
    evaluate,
    load_rules,
)
from velotrace.utils.helpers import utcnow

logger = logging.getLogger(__name__)

STATUS_ACCEPTED = "accepted"
STATUS_ACCEPTED_WITH_WARNINGS = "accepted_with_warnings"
STATUS_BLOCKED = "blocked"
STATUS_QUOTA_EXCEEDED = "quota_exceeded"


@dataclass
class SubmissionResult:
    status: str
    decision: Decision
    record: SubmissionRecord | None = None
    availability: availability.RouteAvailability | None = None

    @property
    def accepted(self) -> bool:
        return self.status in (STATUS_ACCEPTED, STATUS_ACCEPTED_WITH_WARNINGS)

    def to_dict(self) -> dict:
        data = {
            "status": self.status,
            "decision": self.decision.to_dict(),
            "submission": self.record.to_dict() if self.record else None,
        }
        if self.availability is not None:
            data["availability"] = self.availability.to_dict()
        return data


def _compensate(questionnaire_id: str, route_id: str) -> bool:
    try:
        quota_ledger.release(questionnaire_id, route_id)
        return True
    except (TransientContentionError, NotFoundError, SQLAlchemyError):
        logger.exception(
            "Compensating release failed; slot leaked until reconciliation",
            extra={"questionnaire_id": questionnaire_id, "route_id": route_id},
        )
        return False


def _append_claiming(user_id, questionnaire_id, response_id, fields, cap_rule, held):
    """Append the record, taking the next free claim slot under ``cap_rule``.

    ``held`` is the user's record count for the route as last read. A slot
    lost to a concurrent submit is retried at the next one until the cap
    is reached; then None is returned and nothing is written.
    """
    if cap_rule is None:
        return submission_history.append_submission(
            user_id, questionnaire_id, response_id, is_duplicate=held > 0, **fields)

    while held < cap_rule.max_per_route:
        try:
            return submission_history.append_submission(
                user_id, questionnaire_id, response_id,
                is_duplicate=held > 0, claim_slot=held + 1, **fields)
        except IntegrityError:
            db.session.rollback()
            recount = submission_history.get_user_history(user_id, questionnaire_id).count_for(
                fields["route_id"])
            if recount <= held:
                raise
            held = recount
    return None


def submit(
    user_id: str,
    questionnaire_id: str,
    response_id: str,
    route_id: str | None = None,
    user_role: str | None = None,
    **metadata,
) -> SubmissionResult:
    """Run one questionnaire submission through rules, ledger and history.

    Args:
        metadata: device_type, submission_source, ip_address,
                  is_test_submission, passed to the SubmissionRecord.

    Returns:
        SubmissionResult with status accepted / accepted_with_warnings /
        blocked / quota_exceeded.

    Raises:
        ValidationError: missing identifiers.
        NotFoundError: the route has no ledger entry for the questionnaire.
        TransientContentionError: reservation retry budget exhausted.
        PartialFailureError: slot reserved but the record append failed.
    """
    missing = [name for name, value in (("user_id", user_id),
                                        ("questionnaire_id", questionnaire_id),
                                        ("response_id", response_id)) if not value]
    if missing:
        raise ValidationError("Missing required fields",
                              details={name: "required" for name in missing})

    source = metadata.get("submission_source") or "web"
    if source not in VALID_SUBMISSION_SOURCES:
        raise ValidationError(f"Invalid submission_source '{source}'",
                              details={"submission_source": sorted(VALID_SUBMISSION_SOURCES)})

    log_extra = {"questionnaire_id": questionnaire_id, "route_id": route_id, "user_id": user_id}
    rules = load_rules(questionnaire_id)
    now = utcnow()
    history = submission_history.get_user_history(user_id, questionnaire_id, now=now)

    entry = quota_ledger.get_entry(questionnaire_id, route_id) if route_id else None
    if route_id and entry is None:
        raise NotFoundError(resource="QuotaLedgerEntry", resource_id=f"{questionnaire_id}/{route_id}")
    route_name = entry.route_name if entry else None

    ctx = EvaluationContext(
        user_id=user_id,
        questionnaire_id=questionnaire_id,
        route_id=route_id,
        user_history=history,
        ledger_snapshot=quota_ledger.get_snapshot(questionnaire_id, use_cache=False),
        user_role=user_role,
        now=now,
    )
    decision = evaluate(rules, ctx)

    if decision.outcome == Outcome.BLOCK:
        logger.info("Submission blocked by rules: %s", "; ".join(decision.messages),
                    extra={**log_extra, "outcome": STATUS_BLOCKED})
        return SubmissionResult(STATUS_BLOCKED, decision)

    if route_id:
        outcome = quota_ledger.try_reserve(questionnaire_id, route_id, user_id=user_id)
        if outcome is ReservationOutcome.NOT_FOUND:
            raise NotFoundError(resource="QuotaLedgerEntry", resource_id=f"{questionnaire_id}/{route_id}")
        if outcome is ReservationOutcome.QUOTA_EXCEEDED:
            routes = availability.classify(None, questionnaire_id, user_id, user_role,
                                           rules=rules, use_cache=False)
            return SubmissionResult(STATUS_QUOTA_EXCEEDED, decision, availability=routes)

    fields = {
        "route_id": route_id,
        "route_name": route_name,
        "is_test_submission": bool(metadata.get("is_test_submission", False)),
        "requires_review": decision.outcome == Outcome.WARN,
        "device_type": metadata.get("device_type"),
        "submission_source": source,
        "ip_address": metadata.get("ip_address"),
    }
    cap_rule = claim_limit(rules, route_id)
    try:
        record = _append_claiming(user_id, questionnaire_id, response_id, fields,
                                  cap_rule, held=history.count_for(route_id))
    except SQLAlchemyError as exc:
        db.session.rollback()
        if not route_id:
            raise
        compensated = _compensate(questionnaire_id, route_id)
        logger.error("Submission record append failed after reservation",
                     extra={**log_extra, "outcome": "partial_failure"})
        raise PartialFailureError(questionnaire_id, route_id, compensated, cause=exc) from exc

    if record is None:
        _compensate(questionnaire_id, route_id)
        logger.info("Route claimed by a concurrent submit from the same user",
                    extra={**log_extra, "outcome": STATUS_BLOCKED})
        return SubmissionResult(STATUS_BLOCKED, blocked_by(cap_rule))

    status = STATUS_ACCEPTED_WITH_WARNINGS if decision.outcome == Outcome.WARN else STATUS_ACCEPTED
    logger.info("Submission %s", status, extra={**log_extra, "outcome": status})
    return SubmissionResult(status, decision, record=record)
