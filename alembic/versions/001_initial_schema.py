"""Initial schema: jobs and scheduler leases

Revision ID: 001
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import JSONB

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSONType = sa.JSON().with_variant(JSONB(), "postgresql")


def upgrade() -> None:
    # Check if tables already exist and skip if so
    conn = op.get_bind()
    inspector = sa.inspect(conn)
    existing_tables = inspector.get_table_names()

    if "jobs" in existing_tables:
        return

    # Create jobs table
    op.create_table(
        "jobs",
        sa.Column("id", sa.Text, primary_key=True),
        sa.Column("pipeline_type", sa.Text, nullable=False),
        sa.Column("status", sa.Text, nullable=False),
        sa.Column("step", sa.Text),
        sa.Column("metadata", JSONType, nullable=False),
        sa.Column("history", JSONType, nullable=False),
        sa.Column("error_message", sa.Text),
        sa.Column("parent_job_id", sa.Text),
        sa.Column("version", sa.Integer, nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
    )
    op.create_index("idx_jobs_type_status", "jobs", ["pipeline_type", "status"])
    op.create_index("idx_jobs_updated_at", "jobs", ["updated_at"])
    op.create_index("idx_jobs_parent_job_id", "jobs", ["parent_job_id"])

    # Create scheduler_leases table
    op.create_table(
        "scheduler_leases",
        sa.Column("name", sa.Text, primary_key=True),
        sa.Column("holder", sa.Text),
        sa.Column("expires_at", sa.DateTime),
    )


def downgrade() -> None:
    op.drop_table("scheduler_leases")
    op.drop_index("idx_jobs_parent_job_id", table_name="jobs")
    op.drop_index("idx_jobs_updated_at", table_name="jobs")
    op.drop_index("idx_jobs_type_status", table_name="jobs")
    op.drop_table("jobs")
