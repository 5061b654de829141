"""Completion records with pending certificate tracking.

Revision ID: 20260101_02_course_completions
Revises: 20260101_01_initial_session_schema
Create Date: 2026-01-01 09:30:00.000000
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op


# revision identifiers, used by Alembic.
revision = "20260101_02_course_completions"
down_revision = "20260101_01_initial_session_schema"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "course_completions",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("user_id", sa.String(length=36), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("course_id", sa.String(length=128), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("certificate_issued_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("user_id", "course_id", name="uq_course_completion"),
    )
    op.create_index(
        "ix_course_completions_pending",
        "course_completions",
        ["certificate_issued_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_course_completions_pending", table_name="course_completions")
    op.drop_table("course_completions")
