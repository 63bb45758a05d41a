"""create_route_quota_tables

Create `routes`, `quota_ledger_entries`, `submission_records` and
`validation_rules` for route-completion quota tracking.

Revision ID: 5e1a7c0d2b94
Revises:
Create Date: 2026-10-16 09:00:00.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = "5e1a7c0d2b94"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing_tables = set(inspector.get_table_names())

    if "routes" not in existing_tables:
        op.create_table(
            "routes",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("route_id", sa.String(length=100), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("category", sa.String(length=30), nullable=False),
            sa.Column("completion_limit", sa.Integer(), nullable=True),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("route_id"),
        )
        op.create_index("ix_routes_category", "routes", ["category"])

    if "quota_ledger_entries" not in existing_tables:
        op.create_table(
            "quota_ledger_entries",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("questionnaire_id", sa.String(length=100), nullable=False),
            sa.Column("route_id", sa.String(length=100), nullable=False),
            sa.Column("route_name", sa.String(length=200), nullable=False),
            sa.Column("category", sa.String(length=30), nullable=False),
            sa.Column("current_completions", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("completion_limit", sa.Integer(), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("total_submissions", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("unique_users", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("last_updated", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("questionnaire_id", "route_id", name="uq_ledger_questionnaire_route"),
            sa.CheckConstraint("current_completions >= 0", name="ck_ledger_completions_non_negative"),
            sa.CheckConstraint("completion_limit >= 0", name="ck_ledger_limit_non_negative"),
        )
        op.create_index("ix_ledger_questionnaire_active", "quota_ledger_entries",
                        ["questionnaire_id", "is_active"])

    if "submission_records" not in existing_tables:
        op.create_table(
            "submission_records",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("user_id", sa.String(length=128), nullable=False),
            sa.Column("questionnaire_id", sa.String(length=100), nullable=False),
            sa.Column("route_id", sa.String(length=100), nullable=True),
            sa.Column("route_name", sa.String(length=200), nullable=True),
            sa.Column("response_id", sa.String(length=128), nullable=False),
            sa.Column("submitted_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("is_duplicate", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("is_test_submission", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("requires_review", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("device_type", sa.String(length=20), nullable=True),
            sa.Column("submission_source", sa.String(length=20), nullable=False, server_default="web"),
            sa.Column("ip_address", sa.String(length=45), nullable=True),
            sa.Column("claim_slot", sa.Integer(), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("user_id", "questionnaire_id", "route_id", "claim_slot",
                                name="uq_submission_claim_slot"),
        )
        op.create_index("ix_submission_user_questionnaire", "submission_records",
                        ["user_id", "questionnaire_id"])
        op.create_index("ix_submission_questionnaire_route", "submission_records",
                        ["questionnaire_id", "route_id"])

    if "validation_rules" not in existing_tables:
        op.create_table(
            "validation_rules",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("questionnaire_id", sa.String(length=100), nullable=False),
            sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("type", sa.String(length=40), nullable=False),
            sa.Column("config", sa.JSON(), nullable=False),
            sa.Column("enforcement", sa.String(length=10), nullable=False, server_default="block"),
            sa.Column("error_message", sa.Text(), nullable=False),
            sa.Column("warning_message", sa.Text(), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_validation_rules_questionnaire_id", "validation_rules", ["questionnaire_id"])
        op.create_index("ix_validation_rules_questionnaire_position", "validation_rules",
                        ["questionnaire_id", "position"])


def downgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing_tables = set(inspector.get_table_names())

    if "validation_rules" in existing_tables:
        op.drop_index("ix_validation_rules_questionnaire_position", table_name="validation_rules")
        op.drop_index("ix_validation_rules_questionnaire_id", table_name="validation_rules")
        op.drop_table("validation_rules")
    if "submission_records" in existing_tables:
        op.drop_index("ix_submission_questionnaire_route", table_name="submission_records")
        op.drop_index("ix_submission_user_questionnaire", table_name="submission_records")
        op.drop_table("submission_records")
    if "quota_ledger_entries" in existing_tables:
        op.drop_index("ix_ledger_questionnaire_active", table_name="quota_ledger_entries")
        op.drop_table("quota_ledger_entries")
    if "routes" in existing_tables:
        op.drop_index("ix_routes_category", table_name="routes")
        op.drop_table("routes")
