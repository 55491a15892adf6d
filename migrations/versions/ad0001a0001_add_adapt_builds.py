"""add adapt_builds table for build records

Revision ID: ad0001a0001
Revises:
Create Date: 2026-10-19
"""
from __future__ import annotations

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "ad0001a0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "adapt_builds",
        sa.Column("id", sa.String(length=26), primary_key=True),
        sa.Column("action", sa.String(length=16), nullable=False),
        sa.Column("course_id", sa.String(length=64), nullable=False),
        sa.Column("location", sa.Text(), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_by", sa.String(length=64), nullable=False),
        sa.Column("versions", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_adapt_builds_course_id", "adapt_builds", ["course_id"])
    op.create_index("ix_adapt_builds_expires_at", "adapt_builds", ["expires_at"])
    op.create_index("ix_adapt_builds_course_action", "adapt_builds", ["course_id", "action"])


def downgrade() -> None:
    op.drop_index("ix_adapt_builds_course_action", table_name="adapt_builds")
    op.drop_index("ix_adapt_builds_expires_at", table_name="adapt_builds")
    op.drop_index("ix_adapt_builds_course_id", table_name="adapt_builds")
    op.drop_table("adapt_builds")
