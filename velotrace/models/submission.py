"""
Submission history model.

SubmissionRecord is APPEND-ONLY: one row per accepted questionnaire
submission, never updated or deleted. A user's history for a
questionnaire is reconstructed by querying on (user_id, questionnaire_id).

While a blocking per-route submission limit applies, each record takes
the next ``claim_slot`` (1, 2, ...) for its (user, questionnaire, route);
the unique constraint lets exactly one of several concurrent submits
claim a given slot. Records outside such a limit leave it NULL.
"""

from datetime import datetime, timezone

from velotrace.models import db

VALID_SUBMISSION_SOURCES = frozenset({"web", "mobile", "admin"})


class SubmissionRecord(db.Model):
    """Immutable record of one accepted submission."""
    __tablename__ = "submission_records"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(128), nullable=False)
    questionnaire_id = db.Column(db.String(100), nullable=False)
    route_id = db.Column(db.String(100), nullable=True)  # NULL when route tracking is off
    route_name = db.Column(db.String(200), nullable=True)
    response_id = db.Column(db.String(128), nullable=False)
    submitted_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    # Validation flags
    is_duplicate = db.Column(db.Boolean, nullable=False, default=False)
    is_test_submission = db.Column(db.Boolean, nullable=False, default=False)
    requires_review = db.Column(db.Boolean, nullable=False, default=False)

    # Request metadata (fraud review only)
    device_type = db.Column(db.String(20), nullable=True)
    submission_source = db.Column(db.String(20), nullable=False, default="web")
    ip_address = db.Column(db.String(45), nullable=True)

    claim_slot = db.Column(db.Integer, nullable=True)

    __table_args__ = (
        db.Index("ix_submission_user_questionnaire", "user_id", "questionnaire_id"),
        db.Index("ix_submission_questionnaire_route", "questionnaire_id", "route_id"),
        db.UniqueConstraint("user_id", "questionnaire_id", "route_id", "claim_slot",
                            name="uq_submission_claim_slot"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "questionnaire_id": self.questionnaire_id,
            "route_id": self.route_id,
            "route_name": self.route_name,
            "response_id": self.response_id,
            "submitted_at": self.submitted_at.isoformat() if self.submitted_at else None,
            "validation_flags": {
                "is_duplicate": self.is_duplicate,
                "is_test_submission": self.is_test_submission,
                "requires_review": self.requires_review,
            },
            "metadata": {
                "device_type": self.device_type,
                "submission_source": self.submission_source,
                "ip_address": self.ip_address,
            },
        }

    def __repr__(self):
        return f"<SubmissionRecord {self.id} {self.user_id} {self.questionnaire_id}/{self.route_id}>"
