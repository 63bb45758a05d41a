"""
Aggregation & Reporting: read-only views over the quota ledger.

Everything here is recomputed from QuotaLedgerEntry / SubmissionRecord on
each call; nothing is persisted and nothing takes part in the
reservation transaction.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from sqlalchemy import func, select

from velotrace.models import db
from velotrace.models.quota import QuotaLedgerEntry
from velotrace.models.route import CATEGORY_DISPLAY_NAMES, CATEGORY_ORDER
from velotrace.models.submission import SubmissionRecord
from velotrace.utils.helpers import as_utc

logger = logging.getLogger(__name__)


@dataclass
class CategoryQuotaSummary:
    category: str
    category_name: str
    total_routes: int = 0
    total_limit: int = 0
    total_completions: int = 0
    total_remaining: int = 0
    routes: list[dict] = field(default_factory=list)

    @property
    def completion_percentage(self) -> int:
        if not self.total_limit:
            return 0
        return round(self.total_completions / self.total_limit * 100)

    def to_dict(self) -> dict:
        return {
            "category": self.category,
            "category_name": self.category_name,
            "total_routes": self.total_routes,
            "total_limit": self.total_limit,
            "total_completions": self.total_completions,
            "total_remaining": self.total_remaining,
            "completion_percentage": self.completion_percentage,
            "routes": self.routes,
        }


def _category_rank(category: str) -> int:
    try:
        return CATEGORY_ORDER.index(category)
    except ValueError:
        return len(CATEGORY_ORDER)


def summarize(questionnaire_id: str, include_inactive: bool = False) -> list[CategoryQuotaSummary]:
    """Per-category rollup of a questionnaire's ledger, in category order.

    Only categories with at least one entry are returned.
    """
    query = QuotaLedgerEntry.query.filter_by(questionnaire_id=questionnaire_id)
    if not include_inactive:
        query = query.filter_by(is_active=True)

    summaries: dict[str, CategoryQuotaSummary] = {}
    for entry in query.order_by(QuotaLedgerEntry.id).all():
        summary = summaries.get(entry.category)
        if summary is None:
            summary = summaries[entry.category] = CategoryQuotaSummary(
                category=entry.category,
                category_name=CATEGORY_DISPLAY_NAMES.get(entry.category, entry.category),
            )
        summary.total_routes += 1
        summary.total_limit += entry.completion_limit
        summary.total_completions += entry.current_completions
        summary.total_remaining += entry.remaining_quota
        summary.routes.append(entry.to_dict())

    return sorted(summaries.values(), key=lambda s: _category_rank(s.category))


def questionnaire_totals(questionnaire_id: str) -> dict:
    """Questionnaire-level rollup across every active category."""
    summaries = summarize(questionnaire_id)
    total_limit = sum(s.total_limit for s in summaries)
    total_completions = sum(s.total_completions for s in summaries)
    return {
        "questionnaire_id": questionnaire_id,
        "total_routes": sum(s.total_routes for s in summaries),
        "total_limit": total_limit,
        "total_completions": total_completions,
        "total_remaining": sum(s.total_remaining for s in summaries),
        "completion_percentage": round(total_completions / total_limit * 100) if total_limit else 0,
    }


def route_quotas(questionnaire_id: str) -> list[dict]:
    """Active RouteQuotaInfo views for one questionnaire."""
    entries = (
        QuotaLedgerEntry.query
        .filter_by(questionnaire_id=questionnaire_id, is_active=True)
        .order_by(QuotaLedgerEntry.id)
        .all()
    )
    return [e.to_dict() for e in entries]


def admin_route_quotas(questionnaire_id: str | None = None) -> list[dict]:
    """Every entry, active or not, optionally limited to one questionnaire."""
    query = QuotaLedgerEntry.query
    if questionnaire_id:
        query = query.filter_by(questionnaire_id=questionnaire_id)
    return [e.to_dict() for e in query.order_by(QuotaLedgerEntry.questionnaire_id,
                                                QuotaLedgerEntry.id).all()]


def submission_statistics(questionnaire_id: str | None = None) -> list[dict]:
    """Per (questionnaire, route) submission counts from SubmissionRecord."""
    stmt = (
        select(
            SubmissionRecord.questionnaire_id,
            SubmissionRecord.route_id,
            func.count(SubmissionRecord.id),
            func.count(func.distinct(SubmissionRecord.user_id)),
            func.max(SubmissionRecord.submitted_at),
        )
        .where(SubmissionRecord.route_id.isnot(None))
        .group_by(SubmissionRecord.questionnaire_id, SubmissionRecord.route_id)
        .order_by(SubmissionRecord.questionnaire_id, SubmissionRecord.route_id)
    )
    if questionnaire_id:
        stmt = stmt.where(SubmissionRecord.questionnaire_id == questionnaire_id)

    stats = []
    for qid, route_id, total, users, last in db.session.execute(stmt).all():
        last = as_utc(last)
        stats.append({
            "questionnaire_id": qid,
            "route_id": route_id,
            "total_submissions": total,
            "unique_users": users,
            "last_submission_at": last.isoformat() if last else None,
        })
    return stats
