"""create scheduler tables

Revision ID: 4c1e7a9d2b30
Revises:
Create Date: 2026-10-19 10:12:41.518230

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "4c1e7a9d2b30"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "scheduled_jobs",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("job_key", sa.String(length=128), nullable=False),
        sa.Column("job_type", sa.String(length=32), nullable=False, server_default="coded"),
        sa.Column("display_name", sa.String(length=256), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("schedule", sa.String(length=128), nullable=False),
        sa.Column("timezone", sa.String(length=64), nullable=False, server_default="Asia/Tehran"),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("config", sa.Text(), nullable=True),
        sa.Column("last_run_at", sa.BigInteger(), nullable=True),
        sa.Column("next_run_at", sa.BigInteger(), nullable=True),
        sa.Column("created_at", sa.BigInteger(), nullable=False),
        sa.Column("updated_at", sa.BigInteger(), nullable=False),
    )
    op.create_index("ix_scheduled_jobs_name", "scheduled_jobs", ["name"], unique=True)
    op.create_index("ix_scheduled_jobs_next_run_at", "scheduled_jobs", ["next_run_at"])

    op.create_table(
        "job_executions",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column(
            "job_id",
            sa.String(length=36),
            sa.ForeignKey("scheduled_jobs.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("started_at", sa.BigInteger(), nullable=False),
        sa.Column("completed_at", sa.BigInteger(), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("result", sa.Text(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("users_affected", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("metadata", sa.Text(), nullable=True),
    )
    op.create_index("ix_job_executions_job_id", "job_executions", ["job_id"])
    op.create_index("ix_job_executions_started_at", "job_executions", ["started_at"])

    op.create_table(
        "scheduled_job_target_users",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column(
            "job_id",
            sa.String(length=36),
            sa.ForeignKey("scheduled_jobs.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("telegram_user_id", sa.String(length=64), nullable=False),
        sa.Column("mode", sa.String(length=16), nullable=False, server_default="include"),
        sa.UniqueConstraint("job_id", "telegram_user_id", "mode", name="uq_target_user_job_user_mode"),
    )
    op.create_index("ix_scheduled_job_target_users_job_id", "scheduled_job_target_users", ["job_id"])

    op.create_table(
        "scheduled_job_target_packs",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column(
            "job_id",
            sa.String(length=36),
            sa.ForeignKey("scheduled_jobs.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("pack_id", sa.String(length=64), nullable=False),
        sa.Column("mode", sa.String(length=16), nullable=False, server_default="include"),
        sa.UniqueConstraint("job_id", "pack_id", name="uq_target_pack_job_pack"),
    )
    op.create_index("ix_scheduled_job_target_packs_job_id", "scheduled_job_target_packs", ["job_id"])

    op.create_table(
        "user_pack_assignments",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("telegram_user_id", sa.String(length=64), nullable=False),
        sa.Column("pack_id", sa.String(length=64), nullable=False),
        sa.UniqueConstraint("telegram_user_id", "pack_id", name="uq_user_pack"),
    )
    op.create_index("ix_user_pack_assignments_telegram_user_id", "user_pack_assignments", ["telegram_user_id"])
    op.create_index("ix_user_pack_assignments_pack_id", "user_pack_assignments", ["pack_id"])


def downgrade() -> None:
    op.drop_index("ix_user_pack_assignments_pack_id", table_name="user_pack_assignments")
    op.drop_index("ix_user_pack_assignments_telegram_user_id", table_name="user_pack_assignments")
    op.drop_table("user_pack_assignments")

    op.drop_index("ix_scheduled_job_target_packs_job_id", table_name="scheduled_job_target_packs")
    op.drop_table("scheduled_job_target_packs")

    op.drop_index("ix_scheduled_job_target_users_job_id", table_name="scheduled_job_target_users")
    op.drop_table("scheduled_job_target_users")

    op.drop_index("ix_job_executions_started_at", table_name="job_executions")
    op.drop_index("ix_job_executions_job_id", table_name="job_executions")
    op.drop_table("job_executions")

    op.drop_index("ix_scheduled_jobs_next_run_at", table_name="scheduled_jobs")
    op.drop_index("ix_scheduled_jobs_name", table_name="scheduled_jobs")
    op.drop_table("scheduled_jobs")
