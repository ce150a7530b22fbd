"""Analyses and queries tables.

Revision ID: 0001
Revises: None
Create Date: 2026-10-19 09:00:00+00:00

Tables:
  analyses (with the in-flight single-flight index), queries
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

IN_FLIGHT_FILTER = sa.text("status IN ('queued', 'running')")


def upgrade() -> None:
    # --- analyses ---
    op.create_table(
        "analyses",
        sa.Column("id", sa.String(32), nullable=False),
        sa.Column("organization", sa.String(), nullable=False),
        sa.Column("kind", sa.String(), server_default="custom", nullable=False),
        sa.Column("target_key", sa.String(), nullable=False),
        sa.Column("status", sa.String(16), server_default="queued", nullable=False),
        sa.Column("params", sa.JSON(), nullable=True),
        sa.Column("query_ids", sa.JSON(), nullable=False),
        sa.Column("result", sa.JSON(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("started_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("finished_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_analyses_organization", "analyses", ["organization"])
    op.create_index("ix_analyses_target_key", "analyses", ["target_key"])
    op.create_index(
        "uq_analyses_in_flight_target",
        "analyses",
        ["organization", "target_key"],
        unique=True,
        postgresql_where=IN_FLIGHT_FILTER,
        sqlite_where=IN_FLIGHT_FILTER,
    )

    # --- queries ---
    op.create_table(
        "queries",
        sa.Column("id", sa.String(32), nullable=False),
        sa.Column("organization", sa.String(), nullable=False),
        sa.Column("analysis_id", sa.String(32), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("sql", sa.Text(), nullable=False),
        sa.Column("status", sa.String(16), server_default="running", nullable=False),
        sa.Column("external_handle", sa.String(), nullable=True),
        sa.Column("raw_result", sa.JSON(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("error_kind", sa.String(32), nullable=True),
        sa.Column(
            "started_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column("finished_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["analysis_id"], ["analyses.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_queries_organization", "queries", ["organization"])
    op.create_index("ix_queries_analysis_id", "queries", ["analysis_id"])


def downgrade() -> None:
    op.drop_index("ix_queries_analysis_id", table_name="queries")
    op.drop_index("ix_queries_organization", table_name="queries")
    op.drop_table("queries")
    op.drop_index("uq_analyses_in_flight_target", table_name="analyses")
    op.drop_index("ix_analyses_target_key", table_name="analyses")
    op.drop_index("ix_analyses_organization", table_name="analyses")
    op.drop_table("analyses")
