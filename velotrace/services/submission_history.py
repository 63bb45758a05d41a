"""
Submission History Index.

Append-only store of accepted submissions plus the per-user history view
the rule engine uses for duplicate and cooldown checks. Records are
partitioned by user, so there is no cross-user contention here.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy import select

from velotrace.core.exceptions import ValidationError
from velotrace.models import db
from velotrace.models.submission import VALID_SUBMISSION_SOURCES, SubmissionRecord
from velotrace.utils.helpers import as_utc, utcnow

logger = logging.getLogger(__name__)


@dataclass
class UserHistory:
    """One user's accepted submissions for one questionnaire."""
    user_id: str
    questionnaire_id: str
    route_counts: dict[str, int] = field(default_factory=dict)
    last_by_route: dict[str, datetime] = field(default_factory=dict)
    latest_submission_at: datetime | None = None
    submissions_last_24h: int = 0
    total: int = 0

    def count_for(self, route_id: str | None) -> int:
        if route_id is None:
            return 0
        return self.route_counts.get(route_id, 0)

    @classmethod
    def empty(cls, user_id: str, questionnaire_id: str) -> "UserHistory":
        return cls(user_id=user_id, questionnaire_id=questionnaire_id)


def append_submission(
    user_id: str,
    questionnaire_id: str,
    response_id: str,
    route_id: str | None = None,
    route_name: str | None = None,
    *,
    is_duplicate: bool = False,
    is_test_submission: bool = False,
    requires_review: bool = False,
    device_type: str | None = None,
    submission_source: str = "web",
    ip_address: str | None = None,
    claim_slot: int | None = None,
    commit: bool = True,
) -> SubmissionRecord:
    """Append one SubmissionRecord. Records are never updated afterwards.

    Raises:
        IntegrityError on commit when ``claim_slot`` is already taken for
        (user, questionnaire, route).
    """
    if not user_id or not questionnaire_id or not response_id:
        raise ValidationError(
            "user_id, questionnaire_id and response_id are required",
            details={k: "required" for k, v in (
                ("user_id", user_id), ("questionnaire_id", questionnaire_id),
                ("response_id", response_id)) if not v},
        )
    if submission_source not in VALID_SUBMISSION_SOURCES:
        raise ValidationError(
            f"Invalid submission_source '{submission_source}'",
            details={"submission_source": sorted(VALID_SUBMISSION_SOURCES)},
        )

    record = SubmissionRecord(
        user_id=user_id,
        questionnaire_id=questionnaire_id,
        route_id=route_id,
        route_name=route_name,
        response_id=response_id,
        submitted_at=utcnow(),
        is_duplicate=is_duplicate,
        is_test_submission=is_test_submission,
        requires_review=requires_review,
        device_type=device_type,
        submission_source=submission_source,
        ip_address=ip_address,
        claim_slot=claim_slot,
    )
    db.session.add(record)
    if commit:
        db.session.commit()
    return record


def _records_for(user_id: str, questionnaire_id: str) -> list[SubmissionRecord]:
    return list(db.session.execute(
        select(SubmissionRecord)
        .where(
            SubmissionRecord.user_id == user_id,
            SubmissionRecord.questionnaire_id == questionnaire_id,
        )
        .order_by(SubmissionRecord.submitted_at.desc(), SubmissionRecord.id.desc())
    ).scalars())


def get_user_history(user_id: str, questionnaire_id: str, now: datetime | None = None) -> UserHistory:
    """Build the history view for (user, questionnaire)."""
    now = now or utcnow()
    day_ago = now - timedelta(hours=24)
    history = UserHistory.empty(user_id, questionnaire_id)

    for record in _records_for(user_id, questionnaire_id):
        submitted = as_utc(record.submitted_at)
        history.total += 1
        if history.latest_submission_at is None or submitted > history.latest_submission_at:
            history.latest_submission_at = submitted
        if submitted >= day_ago:
            history.submissions_last_24h += 1
        if record.route_id:
            history.route_counts[record.route_id] = history.route_counts.get(record.route_id, 0) + 1
            last = history.last_by_route.get(record.route_id)
            if last is None or submitted > last:
                history.last_by_route[record.route_id] = submitted
    return history


def get_user_route_submissions(user_id: str, questionnaire_id: str) -> list[dict]:
    """[{route_id, submission_count, last_submitted_at}] for one user."""
    history = get_user_history(user_id, questionnaire_id)
    return [
        {
            "route_id": route_id,
            "submission_count": count,
            "last_submitted_at": history.last_by_route[route_id].isoformat(),
        }
        for route_id, count in history.route_counts.items()
    ]


def list_user_submissions(user_id: str, questionnaire_id: str | None = None) -> list[SubmissionRecord]:
    """All records for a user, newest first (profile history page)."""
    query = SubmissionRecord.query.filter_by(user_id=user_id)
    if questionnaire_id:
        query = query.filter_by(questionnaire_id=questionnaire_id)
    return query.order_by(SubmissionRecord.submitted_at.desc(), SubmissionRecord.id.desc()).all()
