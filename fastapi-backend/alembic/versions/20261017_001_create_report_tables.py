"""
Create profiles, reports and status_audits tables

Revision ID: 20261017_001_create_report_tables
Revises:
Create Date: 2026-10-17 00:00:00.000000
"""

from alembic import op
import sqlalchemy as sa

revision = "20261017_001_create_report_tables"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "profiles",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("email", sa.String(), nullable=False, unique=True),
        sa.Column("full_name", sa.String(), nullable=True),
        sa.Column("password_hash", sa.String(), nullable=True),
        sa.Column("role", sa.String(), nullable=False, server_default="reporter"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "role IN ('reporter', 'administrator', 'agent')", name="ck_profiles_role"
        ),
    )
    op.create_index("ix_profiles_email", "profiles", ["email"])

    op.create_table(
        "reports",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("category", sa.String(), nullable=False),
        sa.Column("description", sa.String(), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=True),
        sa.Column("lat", sa.Float(), nullable=True),
        sa.Column("lng", sa.Float(), nullable=True),
        sa.Column("address", sa.String(), nullable=True),
        sa.Column("photo_urls", sa.JSON(), nullable=False),
        sa.Column("user_id", sa.String(), sa.ForeignKey("profiles.id"), nullable=True),
        sa.Column("contact", sa.String(), nullable=True),
        sa.Column("agent_id", sa.String(), sa.ForeignKey("profiles.id"), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="submitted"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "status IN ('submitted', 'admin_received', 'assigned_agent', 'agent_received', 'resolved')",
            name="ck_reports_status",
        ),
        # Agent-owned states always carry an agent.
        sa.CheckConstraint(
            "agent_id IS NOT NULL OR status IN ('submitted', 'admin_received')",
            name="ck_reports_agent_owned",
        ),
    )
    op.create_index("ix_reports_category", "reports", ["category"])
    op.create_index("ix_reports_status", "reports", ["status"])
    op.create_index("ix_reports_user_id", "reports", ["user_id"])
    op.create_index("ix_reports_agent_id", "reports", ["agent_id"])

    op.create_table(
        "status_audits",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("report_id", sa.String(), sa.ForeignKey("reports.id", ondelete="CASCADE"), nullable=False),
        sa.Column("old_status", sa.String(), nullable=False),
        sa.Column("new_status", sa.String(), nullable=False),
        sa.Column("agent_id", sa.String(), nullable=True),
        sa.Column("actor_id", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_status_audits_report_id", "status_audits", ["report_id"])


def downgrade():
    op.drop_index("ix_status_audits_report_id", table_name="status_audits")
    op.drop_table("status_audits")
    for name in ("ix_reports_agent_id", "ix_reports_user_id", "ix_reports_status", "ix_reports_category"):
        op.drop_index(name, table_name="reports")
    op.drop_table("reports")
    op.drop_index("ix_profiles_email", table_name="profiles")
    op.drop_table("profiles")
