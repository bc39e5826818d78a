"""sms nudges: opt-in columns, send ledger, dead letters

Revision ID: 20261001_01
Revises: None
Create Date: 2026-10-01
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "20261001_01"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # users / daily_tasks belong to the profile and planner services; only the
    # flags this service reads are added here.
    op.add_column(
        "users",
        sa.Column("sms_opt_in", sa.Boolean(), nullable=False, server_default=sa.true()),
    )
    op.add_column(
        "users",
        sa.Column("timezone", sa.String(length=50), nullable=True, server_default="America/Los_Angeles"),
    )
    op.create_index("ix_users_phone", "users", ["phone"])

    op.create_table(
        "send_records",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("job_id", sa.String(length=36), nullable=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("message_type", sa.String(length=32), nullable=False),
        sa.Column("local_day", sa.Date(), nullable=False),
        sa.Column("message_body", sa.Text(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="queued"),
        sa.Column("provider_message_id", sa.String(length=100), nullable=True),
        sa.Column("error_detail", sa.Text(), nullable=True),
        sa.Column("attempt", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("bypass_guard", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), server_default=sa.func.now()),
        sa.Column("sent_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("delivered_at", sa.TIMESTAMP(timezone=True), nullable=True),
    )
    op.create_index(
        "uq_send_records_user_type_day",
        "send_records",
        ["user_id", "message_type", "local_day"],
        unique=True,
        postgresql_where=sa.text("status <> 'failed' AND NOT bypass_guard"),
    )
    op.create_index("ix_send_records_provider_message_id", "send_records", ["provider_message_id"])
    op.create_index("ix_send_records_job_id", "send_records", ["job_id"])
    op.create_index("ix_send_records_user_type_day", "send_records", ["user_id", "message_type", "local_day"])

    op.create_table(
        "dead_letter_jobs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("job_id", sa.String(length=36), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("message_type", sa.String(length=32), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("error_detail", sa.Text(), nullable=True),
        sa.Column("failed_at", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("expires_at", sa.TIMESTAMP(timezone=True), nullable=False),
    )
    op.create_index("ix_dead_letter_jobs_job_id", "dead_letter_jobs", ["job_id"])
    op.create_index("ix_dead_letter_jobs_expires_at", "dead_letter_jobs", ["expires_at"])


def downgrade() -> None:
    op.drop_index("ix_dead_letter_jobs_expires_at", table_name="dead_letter_jobs")
    op.drop_index("ix_dead_letter_jobs_job_id", table_name="dead_letter_jobs")
    op.drop_table("dead_letter_jobs")
    op.drop_index("ix_send_records_user_type_day", table_name="send_records")
    op.drop_index("ix_send_records_provider_message_id", table_name="send_records")
    op.drop_index("ix_send_records_job_id", table_name="send_records")
    op.drop_index("uq_send_records_user_type_day", table_name="send_records")
    op.drop_table("send_records")
    op.drop_index("ix_users_phone", table_name="users")
    op.drop_column("users", "timezone")
    op.drop_column("users", "sms_opt_in")
