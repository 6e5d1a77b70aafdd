from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import ClassVar

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    event,
)
from sqlalchemy.orm import Mapped, mapped_column

from fieldops.core.database import Base
from fieldops.lifecycle.derivation import invoice_balance
from fieldops.lifecycle.statuses import INVOICE_STATUSES, JOB_STATUSES, QUOTE_STATUSES, REQUEST_STATUSES


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _status_check(statuses: tuple[str, ...], name: str) -> CheckConstraint:
    allowed = ", ".join(f"'{value}'" for value in statuses)
    return CheckConstraint(f"status IN ({allowed})", name=name)


class TrackedEntityMixin:
    """Columns and hooks shared by every entity whose status is derived from its facts."""

    entity_type: ClassVar[str]

    status: Mapped[str] = mapped_column(String(32), nullable=False, active_history=True)
    status_changed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    def refresh_derived_fields(self) -> None:
        """Recompute stored projections other than status before derivation runs."""


class ServiceRequest(TrackedEntityMixin, Base):
    __tablename__ = "fsm_service_request"
    entity_type = "request"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    request_number: Mapped[str] = mapped_column(String(64), nullable=False)
    client_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    contact_phone: Mapped[str | None] = mapped_column(String(64), nullable=True)
    contact_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    requires_assessment: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    assessment_scheduled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    assessment_completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    archived_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    converted_to_quote_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    converted_to_job_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    row_version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": row_version}
    __table_args__ = (
        _status_check(REQUEST_STATUSES, "ck_fsm_service_request_status"),
        UniqueConstraint("request_number", name="uq_fsm_service_request_number"),
        Index("ix_fsm_service_request_status", "status"),
    )


class Quote(TrackedEntityMixin, Base):
    __tablename__ = "fsm_quote"
    entity_type = "quote"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    quote_number: Mapped[str] = mapped_column(String(64), nullable=False)
    request_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("fsm_service_request.id", ondelete="RESTRICT"),
        nullable=True,
    )
    total: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False, default=Decimal("0"))
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    valid_until: Mapped[date | None] = mapped_column(Date(), nullable=True)
    client_approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    lost_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    approval_status: Mapped[str | None] = mapped_column(String(16), nullable=True)
    archived_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    converted_to_job_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    row_version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": row_version}
    __table_args__ = (
        _status_check(QUOTE_STATUSES, "ck_fsm_quote_status"),
        UniqueConstraint("quote_number", name="uq_fsm_quote_number"),
        CheckConstraint(
            "approval_status IS NULL OR approval_status IN ('pending', 'approved', 'rejected')",
            name="ck_fsm_quote_approval_status",
        ),
        Index("ix_fsm_quote_request", "request_id"),
        Index("ix_fsm_quote_status", "status"),
    )


class Job(TrackedEntityMixin, Base):
    __tablename__ = "fsm_job"
    entity_type = "job"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    job_number: Mapped[str] = mapped_column(String(64), nullable=False)
    quote_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("fsm_quote.id", ondelete="RESTRICT"),
        nullable=True,
    )
    request_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("fsm_service_request.id", ondelete="RESTRICT"),
        nullable=True,
    )
    scheduled_date: Mapped[date | None] = mapped_column(Date(), nullable=True)
    assigned_crew_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    ready_for_yard_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    picking_started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    staging_completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    loaded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    work_started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    work_completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    invoiced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    invoice_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    row_version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": row_version}
    __table_args__ = (
        _status_check(JOB_STATUSES, "ck_fsm_job_status"),
        UniqueConstraint("job_number", name="uq_fsm_job_number"),
        Index("ix_fsm_job_quote", "quote_id"),
        Index("ix_fsm_job_request", "request_id"),
    )


class Invoice(TrackedEntityMixin, Base):
    __tablename__ = "fsm_invoice"
    entity_type = "invoice"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    invoice_number: Mapped[str] = mapped_column(String(64), nullable=False)
    job_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("fsm_job.id", ondelete="RESTRICT"),
        nullable=True,
    )
    total: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False, default=Decimal("0"))
    amount_paid: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False, default=Decimal("0"))
    balance_due: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False, default=Decimal("0"))
    due_date: Mapped[date | None] = mapped_column(Date(), nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    archived_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    row_version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": row_version}
    __table_args__ = (
        _status_check(INVOICE_STATUSES, "ck_fsm_invoice_status"),
        UniqueConstraint("invoice_number", name="uq_fsm_invoice_number"),
        Index("ix_fsm_invoice_job", "job_id"),
        Index("ix_fsm_invoice_status_due", "status", "due_date"),
    )

    def refresh_derived_fields(self) -> None:
        balance = invoice_balance(self)
        if self.balance_due is None or Decimal(self.balance_due) != balance:
            self.balance_due = balance


class Payment(Base):
    __tablename__ = "fsm_payment"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    invoice_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("fsm_invoice.id", ondelete="RESTRICT"),
        nullable=False,
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    payment_method: Mapped[str] = mapped_column(String(32), nullable=False, default="other")
    reference: Mapped[str | None] = mapped_column(String(128), nullable=True)
    received_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint(
            "payment_method IN ('card', 'check', 'cash', 'ach', 'other')",
            name="ck_fsm_payment_method",
        ),
        Index("ix_fsm_payment_invoice", "invoice_id"),
    )


class HistoryImmutableError(Exception):
    """Raised when code attempts to rewrite or remove a status history row."""


class StatusHistoryRecord(Base):
    __tablename__ = "fsm_status_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entity_type: Mapped[str] = mapped_column(String(16), nullable=False)
    entity_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    from_status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    to_status: Mapped[str] = mapped_column(String(32), nullable=False)
    changed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    changed_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    correlation_id: Mapped[str | None] = mapped_column(String(128), nullable=True)

    __table_args__ = (
        Index("ix_fsm_status_history_entity", "entity_type", "entity_id", "changed_at"),
    )


TRACKED_MODELS: dict[str, type[TrackedEntityMixin]] = {
    model.entity_type: model for model in (ServiceRequest, Quote, Job, Invoice)
}


@event.listens_for(StatusHistoryRecord, "before_update")
def _refuse_history_update(mapper, connection, target: StatusHistoryRecord) -> None:  # type: ignore[no-untyped-def]
    raise HistoryImmutableError(f"status history row {target.id} is append-only")


@event.listens_for(StatusHistoryRecord, "before_delete")
def _refuse_history_delete(mapper, connection, target: StatusHistoryRecord) -> None:  # type: ignore[no-untyped-def]
    raise HistoryImmutableError(f"status history row {target.id} is append-only")
