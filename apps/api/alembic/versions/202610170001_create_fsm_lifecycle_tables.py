"""create fsm lifecycle tables

Revision ID: 202610170001
Revises:
Create Date: 2026-10-17 09:00:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610170001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


REQUEST_STATUSES = (
    "pending",
    "assessment_scheduled",
    "assessment_today",
    "assessment_overdue",
    "assessment_completed",
    "converted",
    "archived",
)
QUOTE_STATUSES = ("draft", "pending_approval", "sent", "follow_up", "approved", "converted", "lost")
JOB_STATUSES = (
    "won",
    "scheduled",
    "ready_for_yard",
    "picking",
    "staged",
    "loaded",
    "in_progress",
    "completed",
    "invoiced",
)
INVOICE_STATUSES = ("draft", "sent", "past_due", "paid", "bad_debt")


def _status_check(statuses: tuple[str, ...], name: str) -> sa.CheckConstraint:
    allowed = ", ".join(f"'{value}'" for value in statuses)
    return sa.CheckConstraint(f"status IN ({allowed})", name=name)


def _status_columns() -> list[sa.Column]:
    return [
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("status_changed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("row_version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "fsm_service_request",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("request_number", sa.String(length=64), nullable=False),
        sa.Column("client_name", sa.String(length=255), nullable=True),
        sa.Column("contact_phone", sa.String(length=64), nullable=True),
        sa.Column("contact_email", sa.String(length=255), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("requires_assessment", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("assessment_scheduled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("assessment_completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("archived_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("converted_to_quote_id", sa.Uuid(), nullable=True),
        sa.Column("converted_to_job_id", sa.Uuid(), nullable=True),
        *_status_columns(),
        _status_check(REQUEST_STATUSES, "ck_fsm_service_request_status"),
        sa.UniqueConstraint("request_number", name="uq_fsm_service_request_number"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_fsm_service_request_status", "fsm_service_request", ["status"])

    op.create_table(
        "fsm_quote",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("quote_number", sa.String(length=64), nullable=False),
        sa.Column("request_id", sa.Uuid(), nullable=True),
        sa.Column("total", sa.Numeric(18, 2), nullable=False, server_default="0"),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("valid_until", sa.Date(), nullable=True),
        sa.Column("client_approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("lost_reason", sa.Text(), nullable=True),
        sa.Column("approval_status", sa.String(length=16), nullable=True),
        sa.Column("archived_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("converted_to_job_id", sa.Uuid(), nullable=True),
        *_status_columns(),
        _status_check(QUOTE_STATUSES, "ck_fsm_quote_status"),
        sa.UniqueConstraint("quote_number", name="uq_fsm_quote_number"),
        sa.CheckConstraint(
            "approval_status IS NULL OR approval_status IN ('pending', 'approved', 'rejected')",
            name="ck_fsm_quote_approval_status",
        ),
        sa.ForeignKeyConstraint(["request_id"], ["fsm_service_request.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_fsm_quote_request", "fsm_quote", ["request_id"])
    op.create_index("ix_fsm_quote_status", "fsm_quote", ["status"])

    op.create_table(
        "fsm_job",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("job_number", sa.String(length=64), nullable=False),
        sa.Column("quote_id", sa.Uuid(), nullable=True),
        sa.Column("request_id", sa.Uuid(), nullable=True),
        sa.Column("scheduled_date", sa.Date(), nullable=True),
        sa.Column("assigned_crew_id", sa.Uuid(), nullable=True),
        sa.Column("ready_for_yard_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("picking_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("staging_completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("loaded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("work_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("work_completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("invoiced_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("invoice_id", sa.Uuid(), nullable=True),
        *_status_columns(),
        _status_check(JOB_STATUSES, "ck_fsm_job_status"),
        sa.UniqueConstraint("job_number", name="uq_fsm_job_number"),
        sa.ForeignKeyConstraint(["quote_id"], ["fsm_quote.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["request_id"], ["fsm_service_request.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_fsm_job_quote", "fsm_job", ["quote_id"])
    op.create_index("ix_fsm_job_request", "fsm_job", ["request_id"])

    op.create_table(
        "fsm_invoice",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("invoice_number", sa.String(length=64), nullable=False),
        sa.Column("job_id", sa.Uuid(), nullable=True),
        sa.Column("total", sa.Numeric(18, 2), nullable=False, server_default="0"),
        sa.Column("amount_paid", sa.Numeric(18, 2), nullable=False, server_default="0"),
        sa.Column("balance_due", sa.Numeric(18, 2), nullable=False, server_default="0"),
        sa.Column("due_date", sa.Date(), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("archived_at", sa.DateTime(timezone=True), nullable=True),
        *_status_columns(),
        _status_check(INVOICE_STATUSES, "ck_fsm_invoice_status"),
        sa.UniqueConstraint("invoice_number", name="uq_fsm_invoice_number"),
        sa.ForeignKeyConstraint(["job_id"], ["fsm_job.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_fsm_invoice_job", "fsm_invoice", ["job_id"])
    op.create_index("ix_fsm_invoice_status_due", "fsm_invoice", ["status", "due_date"])

    op.create_table(
        "fsm_payment",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("invoice_id", sa.Uuid(), nullable=False),
        sa.Column("amount", sa.Numeric(18, 2), nullable=False),
        sa.Column("payment_method", sa.String(length=32), nullable=False, server_default="other"),
        sa.Column("reference", sa.String(length=128), nullable=True),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "payment_method IN ('card', 'check', 'cash', 'ach', 'other')",
            name="ck_fsm_payment_method",
        ),
        sa.ForeignKeyConstraint(["invoice_id"], ["fsm_invoice.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_fsm_payment_invoice", "fsm_payment", ["invoice_id"])

    op.create_table(
        "fsm_status_history",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("entity_type", sa.String(length=16), nullable=False),
        sa.Column("entity_id", sa.Uuid(), nullable=False),
        sa.Column("from_status", sa.String(length=32), nullable=True),
        sa.Column("to_status", sa.String(length=32), nullable=False),
        sa.Column("changed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("changed_by", sa.String(length=128), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("correlation_id", sa.String(length=128), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_fsm_status_history_entity",
        "fsm_status_history",
        ["entity_type", "entity_id", "changed_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_fsm_status_history_entity", table_name="fsm_status_history")
    op.drop_table("fsm_status_history")
    op.drop_index("ix_fsm_payment_invoice", table_name="fsm_payment")
    op.drop_table("fsm_payment")
    op.drop_index("ix_fsm_invoice_status_due", table_name="fsm_invoice")
    op.drop_index("ix_fsm_invoice_job", table_name="fsm_invoice")
    op.drop_table("fsm_invoice")
    op.drop_index("ix_fsm_job_request", table_name="fsm_job")
    op.drop_index("ix_fsm_job_quote", table_name="fsm_job")
    op.drop_table("fsm_job")
    op.drop_index("ix_fsm_quote_status", table_name="fsm_quote")
    op.drop_index("ix_fsm_quote_request", table_name="fsm_quote")
    op.drop_table("fsm_quote")
    op.drop_index("ix_fsm_service_request_status", table_name="fsm_service_request")
    op.drop_table("fsm_service_request")
