"""
Quota Ledger model.

One QuotaLedgerEntry per (questionnaire_id, route_id). The counter is
owned by velotrace.services.quota_ledger: nothing else writes
current_completions. Every mutation bumps ``version`` so that the ledger's
conditional UPDATE can detect a concurrent writer.

Business rules:
- 0 <= current_completions <= completion_limit, also under concurrency.
- Entries are created once by initialize_tracking() and never deleted;
  admins deactivate them instead.
- total_submissions / unique_users are informational only.
"""

from datetime import datetime, timezone

from velotrace.models import db


class QuotaLedgerEntry(db.Model):
    """Completion counter for one route under one questionnaire."""
    __tablename__ = "quota_ledger_entries"

    id = db.Column(db.Integer, primary_key=True)
    questionnaire_id = db.Column(db.String(100), nullable=False)
    route_id = db.Column(db.String(100), nullable=False)

    # Snapshotted from the route catalog at initialization
    route_name = db.Column(db.String(200), nullable=False)
    category = db.Column(db.String(30), nullable=False)

    current_completions = db.Column(db.Integer, nullable=False, default=0)
    completion_limit = db.Column(db.Integer, nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    version = db.Column(db.Integer, nullable=False, default=0)

    # Metadata
    total_submissions = db.Column(db.Integer, nullable=False, default=0)
    unique_users = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    last_updated = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        db.UniqueConstraint("questionnaire_id", "route_id", name="uq_ledger_questionnaire_route"),
        db.CheckConstraint("current_completions >= 0", name="ck_ledger_completions_non_negative"),
        db.CheckConstraint("completion_limit >= 0", name="ck_ledger_limit_non_negative"),
        db.Index("ix_ledger_questionnaire_active", "questionnaire_id", "is_active"),
    )

    @property
    def remaining_quota(self) -> int:
        return max(0, self.completion_limit - self.current_completions)

    @property
    def is_full(self) -> bool:
        return self.current_completions >= self.completion_limit

    @property
    def completion_percentage(self) -> int:
        if not self.completion_limit:
            return 0
        return round(self.current_completions / self.completion_limit * 100)

    def snapshot(self) -> dict:
        """The fields the rule engine reads; safe to cache and JSON-encode."""
        return {
            "current_completions": self.current_completions,
            "completion_limit": self.completion_limit,
            "is_active": bool(self.is_active),
        }

    def to_dict(self):
        return {
            "id": self.id,
            "questionnaire_id": self.questionnaire_id,
            "route_id": self.route_id,
            "route_name": self.route_name,
            "category": self.category,
            "current_completions": self.current_completions,
            "completion_limit": self.completion_limit,
            "remaining_quota": self.remaining_quota,
            "is_full": self.is_full,
            "completion_percentage": self.completion_percentage,
            "is_active": self.is_active,
            "version": self.version,
            "last_updated": self.last_updated.isoformat() if self.last_updated else None,
            "metadata": {
                "total_submissions": self.total_submissions,
                "unique_users": self.unique_users,
            },
        }

    def __repr__(self):
        return (
            f"<QuotaLedgerEntry {self.questionnaire_id}/{self.route_id} "
            f"{self.current_completions}/{self.completion_limit}>"
        )
