from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, ClassVar, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

from fieldops.lifecycle.statuses import InvoiceStatus, JobStatus, QuoteStatus, RequestStatus, status_label


PaymentMethod = Literal["card", "check", "cash", "ach", "other"]
ApprovalStatus = Literal["pending", "approved", "rejected"]


class FactsModel(BaseModel):
    """Write bodies carry facts only; a ``status`` key is dropped on parse."""

    model_config = ConfigDict(extra="ignore")


class VersionedUpdate(FactsModel):
    row_version: int | None = Field(default=None, ge=1)


class StatusReadModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    entity_type: ClassVar[str]

    status: str
    status_label: str | None = None
    status_changed_at: datetime | None
    row_version: int
    created_at: datetime
    updated_at: datetime

    @model_validator(mode="after")
    def _fill_status_label(self) -> Any:
        self.status_label = status_label(self.entity_type, self.status)
        return self


class ServiceRequestCreate(FactsModel):
    client_name: str | None = Field(default=None, max_length=255)
    contact_phone: str | None = Field(default=None, max_length=64)
    contact_email: str | None = Field(default=None, max_length=255)
    description: str | None = None
    requires_assessment: bool = True
    assessment_scheduled_at: datetime | None = None
    assessment_completed_at: datetime | None = None
    archived_at: datetime | None = None


class ServiceRequestUpdate(VersionedUpdate):
    client_name: str | None = Field(default=None, max_length=255)
    contact_phone: str | None = Field(default=None, max_length=64)
    contact_email: str | None = Field(default=None, max_length=255)
    description: str | None = None
    requires_assessment: bool | None = None
    assessment_scheduled_at: datetime | None = None
    assessment_completed_at: datetime | None = None
    archived_at: datetime | None = None


class ServiceRequestRead(StatusReadModel):
    entity_type: ClassVar[str] = "request"

    id: UUID
    request_number: str
    client_name: str | None
    contact_phone: str | None
    contact_email: str | None
    description: str | None
    requires_assessment: bool
    assessment_scheduled_at: datetime | None
    assessment_completed_at: datetime | None
    archived_at: datetime | None
    converted_to_quote_id: UUID | None
    converted_to_job_id: UUID | None
    status: RequestStatus | str


class QuoteCreate(FactsModel):
    request_id: UUID | None = None
    total: Decimal = Field(default=Decimal("0"), ge=Decimal("0"))
    sent_at: datetime | None = None
    valid_until: date | None = None
    client_approved_at: datetime | None = None
    lost_reason: str | None = None
    approval_status: ApprovalStatus | None = None
    archived_at: datetime | None = None


class QuoteUpdate(VersionedUpdate):
    total: Decimal | None = Field(default=None, ge=Decimal("0"))
    sent_at: datetime | None = None
    valid_until: date | None = None
    client_approved_at: datetime | None = None
    lost_reason: str | None = None
    approval_status: ApprovalStatus | None = None
    archived_at: datetime | None = None


class QuoteRead(StatusReadModel):
    entity_type: ClassVar[str] = "quote"

    id: UUID
    quote_number: str
    request_id: UUID | None
    total: Decimal | str
    sent_at: datetime | None
    valid_until: date | None
    client_approved_at: datetime | None
    lost_reason: str | None
    approval_status: str | None
    archived_at: datetime | None
    converted_to_job_id: UUID | None
    status: QuoteStatus | str


class JobCreate(FactsModel):
    quote_id: UUID | None = None
    request_id: UUID | None = None
    scheduled_date: date | None = None
    assigned_crew_id: UUID | None = None
    ready_for_yard_at: datetime | None = None
    picking_started_at: datetime | None = None
    staging_completed_at: datetime | None = None
    loaded_at: datetime | None = None
    work_started_at: datetime | None = None
    work_completed_at: datetime | None = None


class JobUpdate(VersionedUpdate):
    scheduled_date: date | None = None
    assigned_crew_id: UUID | None = None
    ready_for_yard_at: datetime | None = None
    picking_started_at: datetime | None = None
    staging_completed_at: datetime | None = None
    loaded_at: datetime | None = None
    work_started_at: datetime | None = None
    work_completed_at: datetime | None = None


class JobRead(StatusReadModel):
    entity_type: ClassVar[str] = "job"

    id: UUID
    job_number: str
    quote_id: UUID | None
    request_id: UUID | None
    scheduled_date: date | None
    assigned_crew_id: UUID | None
    ready_for_yard_at: datetime | None
    picking_started_at: datetime | None
    staging_completed_at: datetime | None
    loaded_at: datetime | None
    work_started_at: datetime | None
    work_completed_at: datetime | None
    invoiced_at: datetime | None
    invoice_id: UUID | None
    status: JobStatus | str


class InvoiceCreate(FactsModel):
    job_id: UUID | None = None
    total: Decimal = Field(default=Decimal("0"), ge=Decimal("0"))
    due_date: date | None = None
    sent_at: datetime | None = None
    archived_at: datetime | None = None


class InvoiceUpdate(VersionedUpdate):
    total: Decimal | None = Field(default=None, ge=Decimal("0"))
    due_date: date | None = None
    sent_at: datetime | None = None
    archived_at: datetime | None = None


class InvoiceRead(StatusReadModel):
    entity_type: ClassVar[str] = "invoice"

    id: UUID
    invoice_number: str
    job_id: UUID | None
    total: Decimal | str
    amount_paid: Decimal | str
    balance_due: Decimal | str
    due_date: date | None
    sent_at: datetime | None
    archived_at: datetime | None
    status: InvoiceStatus | str


class PaymentCreate(BaseModel):
    amount: Decimal = Field(gt=Decimal("0"))
    payment_method: PaymentMethod = "other"
    reference: str | None = Field(default=None, max_length=128)
    received_at: datetime | None = None


class PaymentUpdate(BaseModel):
    invoice_id: UUID | None = None
    amount: Decimal | None = Field(default=None, gt=Decimal("0"))
    payment_method: PaymentMethod | None = None
    reference: str | None = Field(default=None, max_length=128)
    received_at: datetime | None = None


class PaymentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    invoice_id: UUID
    amount: Decimal | str
    payment_method: str
    reference: str | None
    received_at: datetime | None
    created_at: datetime
    updated_at: datetime


class StatusHistoryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    entity_type: str
    entity_id: UUID
    from_status: str | None
    to_status: str
    changed_at: datetime
    changed_by: str | None
    notes: str | None
    correlation_id: str | None


class RefreshChangeRead(BaseModel):
    entity_type: str
    entity_id: UUID
    old_status: str | None
    new_status: str


class RefreshFailureRead(BaseModel):
    entity_type: str
    entity_id: UUID
    error: str


class RefreshReportRead(BaseModel):
    examined: int
    changed: list[RefreshChangeRead] = Field(default_factory=list)
    failed: list[RefreshFailureRead] = Field(default_factory=list)
