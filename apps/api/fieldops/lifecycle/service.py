from __future__ import annotations

import uuid
from collections.abc import Callable
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, TypeVar

from fastapi import HTTPException, status
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from fieldops.lifecycle import cascade
from fieldops.lifecycle.history import list_history
from fieldops.lifecycle.models import TRACKED_MODELS, Invoice, Job, Payment, Quote, ServiceRequest
from fieldops.lifecycle.payments import recalculate_invoice_payments
from fieldops.lifecycle.refresher import rederive_all, refresh_time_based_statuses
from fieldops.lifecycle.schemas import (
    InvoiceCreate,
    InvoiceRead,
    InvoiceUpdate,
    JobCreate,
    JobRead,
    JobUpdate,
    PaymentCreate,
    PaymentRead,
    PaymentUpdate,
    QuoteCreate,
    QuoteRead,
    QuoteUpdate,
    RefreshReportRead,
    ServiceRequestCreate,
    ServiceRequestRead,
    ServiceRequestUpdate,
    StatusHistoryRead,
    VersionedUpdate,
)
from fieldops.lifecycle.unit_of_work import WriteConflictError, run_in_transaction


T = TypeVar("T")
ModelT = TypeVar("ModelT")

# Starlette renamed the 422 constant; the code itself is stable.
HTTP_UNPROCESSABLE = 422


@dataclass(slots=True)
class LifecycleService:
    """Write and read interface over the lifecycle entities.

    Callers supply facts only. Status, conversion pointers, ``invoiced_at`` and
    ``amount_paid`` are owned by the derivation gate, the cascade links and the
    payment aggregator respectively.
    """

    # -- service requests ----------------------------------------------------

    def create_request(self, session: Session, payload: ServiceRequestCreate, actor: str | None = None) -> ServiceRequestRead:
        def work(db: Session) -> uuid.UUID:
            request = ServiceRequest(
                request_number=self._next_number(db, ServiceRequest, "REQ"),
                **payload.model_dump(),
            )
            db.add(request)
            db.flush()
            return request.id

        return self.get_request(session, self._run(session, work, actor, retry_unique=True))

    def update_request(
        self,
        session: Session,
        request_id: uuid.UUID,
        payload: ServiceRequestUpdate,
        actor: str | None = None,
    ) -> ServiceRequestRead:
        def work(db: Session) -> uuid.UUID:
            request = self._load_for_update(db, ServiceRequest, request_id, "request")
            self._apply_update(request, payload)
            db.flush()
            return request.id

        return self.get_request(session, self._run(session, work, actor))

    def get_request(self, session: Session, request_id: uuid.UUID) -> ServiceRequestRead:
        return ServiceRequestRead.model_validate(self._get_or_404(session, ServiceRequest, request_id, "request"))

    # -- quotes ----------------------------------------------------------------

    def create_quote(self, session: Session, payload: QuoteCreate, actor: str | None = None) -> QuoteRead:
        def work(db: Session) -> uuid.UUID:
            if payload.request_id is not None:
                self._require_reference(db, ServiceRequest, payload.request_id, "request")
            quote = Quote(quote_number=self._next_number(db, Quote, "QUO"), **payload.model_dump())
            db.add(quote)
            db.flush()
            cascade.link_quote_to_request(db, quote)
            return quote.id

        return self.get_quote(session, self._run(session, work, actor, retry_unique=True))

    def update_quote(self, session: Session, quote_id: uuid.UUID, payload: QuoteUpdate, actor: str | None = None) -> QuoteRead:
        def work(db: Session) -> uuid.UUID:
            quote = self._load_for_update(db, Quote, quote_id, "quote")
            self._apply_update(quote, payload)
            db.flush()
            return quote.id

        return self.get_quote(session, self._run(session, work, actor))

    def get_quote(self, session: Session, quote_id: uuid.UUID) -> QuoteRead:
        return QuoteRead.model_validate(self._get_or_404(session, Quote, quote_id, "quote"))

    # -- jobs --------------------------------------------------------------------

    def create_job(self, session: Session, payload: JobCreate, actor: str | None = None) -> JobRead:
        def work(db: Session) -> uuid.UUID:
            values = payload.model_dump()
            if payload.quote_id is not None:
                quote = self._require_reference(db, Quote, payload.quote_id, "quote")
                if values["request_id"] is None:
                    values["request_id"] = quote.request_id
            if payload.request_id is not None:
                self._require_reference(db, ServiceRequest, payload.request_id, "request")
            job = Job(job_number=self._next_number(db, Job, "JOB"), **values)
            db.add(job)
            db.flush()
            cascade.link_job_upstream(db, job)
            return job.id

        return self.get_job(session, self._run(session, work, actor, retry_unique=True))

    def update_job(self, session: Session, job_id: uuid.UUID, payload: JobUpdate, actor: str | None = None) -> JobRead:
        def work(db: Session) -> uuid.UUID:
            job = self._load_for_update(db, Job, job_id, "job")
            self._apply_update(job, payload)
            db.flush()
            return job.id

        return self.get_job(session, self._run(session, work, actor))

    def get_job(self, session: Session, job_id: uuid.UUID) -> JobRead:
        return JobRead.model_validate(self._get_or_404(session, Job, job_id, "job"))

    # -- invoices ----------------------------------------------------------------

    def create_invoice(self, session: Session, payload: InvoiceCreate, actor: str | None = None) -> InvoiceRead:
        def work(db: Session) -> uuid.UUID:
            if payload.job_id is not None:
                self._require_reference(db, Job, payload.job_id, "job")
            invoice = Invoice(
                invoice_number=self._next_number(db, Invoice, "INV"),
                amount_paid=Decimal("0"),
                **payload.model_dump(),
            )
            db.add(invoice)
            db.flush()
            cascade.link_invoice_to_job(db, invoice)
            return invoice.id

        return self.get_invoice(session, self._run(session, work, actor, retry_unique=True))

    def update_invoice(
        self,
        session: Session,
        invoice_id: uuid.UUID,
        payload: InvoiceUpdate,
        actor: str | None = None,
    ) -> InvoiceRead:
        def work(db: Session) -> uuid.UUID:
            invoice = self._load_for_update(db, Invoice, invoice_id, "invoice")
            self._apply_update(invoice, payload)
            db.flush()
            return invoice.id

        return self.get_invoice(session, self._run(session, work, actor))

    def get_invoice(self, session: Session, invoice_id: uuid.UUID) -> InvoiceRead:
        return InvoiceRead.model_validate(self._get_or_404(session, Invoice, invoice_id, "invoice"))

    # -- payments ----------------------------------------------------------------

    def create_payment(
        self,
        session: Session,
        invoice_id: uuid.UUID,
        payload: PaymentCreate,
        actor: str | None = None,
    ) -> PaymentRead:
        def work(db: Session) -> uuid.UUID:
            self._get_or_404(db, Invoice, invoice_id, "invoice")
            payment = Payment(invoice_id=invoice_id, **payload.model_dump())
            db.add(payment)
            db.flush()
            recalculate_invoice_payments(db, invoice_id)
            return payment.id

        return self.get_payment(session, self._run(session, work, actor))

    def update_payment(
        self,
        session: Session,
        payment_id: uuid.UUID,
        payload: PaymentUpdate,
        actor: str | None = None,
    ) -> PaymentRead:
        def work(db: Session) -> uuid.UUID:
            payment = self._get_or_404(db, Payment, payment_id, "payment", for_update=True)
            previous_invoice_id = payment.invoice_id
            changes = payload.model_dump(exclude_unset=True)
            if changes.get("invoice_id") is None:
                changes.pop("invoice_id", None)
            else:
                self._require_reference(db, Invoice, changes["invoice_id"], "invoice")
            for field, value in changes.items():
                setattr(payment, field, value)
            db.flush()
            recalculate_invoice_payments(db, payment.invoice_id)
            if payment.invoice_id != previous_invoice_id:
                recalculate_invoice_payments(db, previous_invoice_id)
            return payment.id

        return self.get_payment(session, self._run(session, work, actor))

    def delete_payment(self, session: Session, payment_id: uuid.UUID, actor: str | None = None) -> None:
        def work(db: Session) -> None:
            payment = self._get_or_404(db, Payment, payment_id, "payment", for_update=True)
            invoice_id = payment.invoice_id
            db.delete(payment)
            db.flush()
            recalculate_invoice_payments(db, invoice_id)

        self._run(session, work, actor)

    def get_payment(self, session: Session, payment_id: uuid.UUID) -> PaymentRead:
        return PaymentRead.model_validate(self._get_or_404(session, Payment, payment_id, "payment"))

    def list_payments(self, session: Session, invoice_id: uuid.UUID) -> list[PaymentRead]:
        self._get_or_404(session, Invoice, invoice_id, "invoice")
        rows = session.scalars(
            select(Payment).where(Payment.invoice_id == invoice_id).order_by(Payment.created_at.asc(), Payment.id.asc())
        )
        return [PaymentRead.model_validate(row) for row in rows]

    # -- history and maintenance ---------------------------------------------------

    def get_history(self, session: Session, entity_type: str, entity_id: uuid.UUID) -> list[StatusHistoryRead]:
        model = TRACKED_MODELS.get(entity_type)
        if model is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"unknown entity type: {entity_type}")
        self._get_or_404(session, model, entity_id, entity_type)
        return [StatusHistoryRead.model_validate(row) for row in list_history(session, entity_type, entity_id)]

    def refresh_statuses(self, session: Session, actor: str | None = None) -> RefreshReportRead:
        report = refresh_time_based_statuses(session, changed_by=actor)
        return RefreshReportRead.model_validate(report.to_dict())

    def rederive(self, session: Session, actor: str | None = None) -> RefreshReportRead:
        report = rederive_all(session, changed_by=actor)
        return RefreshReportRead.model_validate(report.to_dict())

    # -- helpers -------------------------------------------------------------------

    @staticmethod
    def _run(session: Session, work: Callable[[Session], T], actor: str | None, retry_unique: bool = False) -> T:
        try:
            return run_in_transaction(session, work, changed_by=actor, retry_unique=retry_unique)
        except WriteConflictError as exc:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
        except IntegrityError:
            raise HTTPException(status_code=HTTP_UNPROCESSABLE, detail="write violates a data constraint")

    @staticmethod
    def _get_or_404(session: Session, model: type[ModelT], entity_id: uuid.UUID, label: str, for_update: bool = False) -> ModelT:
        entity = session.get(model, entity_id, with_for_update=for_update)
        if entity is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"{label} not found")
        return entity

    def _load_for_update(self, session: Session, model: type[ModelT], entity_id: uuid.UUID, label: str) -> ModelT:
        return self._get_or_404(session, model, entity_id, label, for_update=True)

    @staticmethod
    def _require_reference(session: Session, model: type[ModelT], entity_id: uuid.UUID, label: str) -> ModelT:
        entity = session.get(model, entity_id)
        if entity is None:
            raise HTTPException(status_code=HTTP_UNPROCESSABLE, detail=f"{label} {entity_id} does not exist")
        return entity

    @staticmethod
    def _apply_update(entity: Any, payload: VersionedUpdate) -> None:
        if payload.row_version is not None and payload.row_version != entity.row_version:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="row_version conflict")
        changes: dict[str, Any] = payload.model_dump(exclude_unset=True, exclude={"row_version"})
        for field, value in changes.items():
            setattr(entity, field, value)

    @staticmethod
    def _next_number(session: Session, model: type[Any], prefix: str) -> str:
        counter = session.scalar(select(func.count()).select_from(model)) or 0
        return f"{prefix}-{counter + 1:06d}"


lifecycle_service = LifecycleService()
