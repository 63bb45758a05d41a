"""
Validation rule configuration model.

Rules are data: each row configures one rule instance for a questionnaire.
``position`` is the declared order the rule engine iterates in. The
``config`` JSON is typed per rule type and parsed by
velotrace.services.rule_engine.parse_rule().
"""

from datetime import datetime, timezone

from velotrace.models import db

VALID_RULE_TYPES = frozenset({
    "route_completion_limit",
    "route_submission_limit",
    "time_cooldown",
    "user_role_restriction",
})

VALID_ENFORCEMENTS = frozenset({"block", "warn", "hide"})


class ValidationRule(db.Model):
    """One configured rule instance for a questionnaire."""
    __tablename__ = "validation_rules"

    id = db.Column(db.Integer, primary_key=True)
    questionnaire_id = db.Column(db.String(100), nullable=False, index=True)
    position = db.Column(db.Integer, nullable=False, default=0)
    type = db.Column(db.String(40), nullable=False)
    config = db.Column(db.JSON, nullable=False, default=dict)
    enforcement = db.Column(db.String(10), nullable=False, default="block")
    error_message = db.Column(db.Text, nullable=False, default="")
    warning_message = db.Column(db.Text, nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        db.Index("ix_validation_rules_questionnaire_position", "questionnaire_id", "position"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "questionnaire_id": self.questionnaire_id,
            "position": self.position,
            "type": self.type,
            "config": self.config or {},
            "enforcement": self.enforcement,
            "error_message": self.error_message,
            "warning_message": self.warning_message,
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<ValidationRule {self.id} {self.type}/{self.enforcement}>"
