from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Response, status
from sqlalchemy.orm import Session

from fieldops.core.auth import AuthUser, get_current_user
from fieldops.core.database import get_db
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
)
from fieldops.lifecycle.service import lifecycle_service


router = APIRouter(prefix="/fsm", tags=["lifecycle"])
maintenance_router = APIRouter(prefix="/fsm/maintenance", tags=["maintenance"])


@router.post("/requests", response_model=ServiceRequestRead, status_code=status.HTTP_201_CREATED)
def create_request(
    payload: ServiceRequestCreate,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> ServiceRequestRead:
    return lifecycle_service.create_request(db, payload, actor=user.actor_id)


@router.get("/requests/{request_id}", response_model=ServiceRequestRead)
def get_request(request_id: uuid.UUID, db: Session = Depends(get_db)) -> ServiceRequestRead:
    return lifecycle_service.get_request(db, request_id)


@router.patch("/requests/{request_id}", response_model=ServiceRequestRead)
def update_request(
    request_id: uuid.UUID,
    payload: ServiceRequestUpdate,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> ServiceRequestRead:
    return lifecycle_service.update_request(db, request_id, payload, actor=user.actor_id)


@router.post("/quotes", response_model=QuoteRead, status_code=status.HTTP_201_CREATED)
def create_quote(
    payload: QuoteCreate,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> QuoteRead:
    return lifecycle_service.create_quote(db, payload, actor=user.actor_id)


@router.get("/quotes/{quote_id}", response_model=QuoteRead)
def get_quote(quote_id: uuid.UUID, db: Session = Depends(get_db)) -> QuoteRead:
    return lifecycle_service.get_quote(db, quote_id)


@router.patch("/quotes/{quote_id}", response_model=QuoteRead)
def update_quote(
    quote_id: uuid.UUID,
    payload: QuoteUpdate,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> QuoteRead:
    return lifecycle_service.update_quote(db, quote_id, payload, actor=user.actor_id)


@router.post("/jobs", response_model=JobRead, status_code=status.HTTP_201_CREATED)
def create_job(
    payload: JobCreate,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> JobRead:
    return lifecycle_service.create_job(db, payload, actor=user.actor_id)


@router.get("/jobs/{job_id}", response_model=JobRead)
def get_job(job_id: uuid.UUID, db: Session = Depends(get_db)) -> JobRead:
    return lifecycle_service.get_job(db, job_id)


@router.patch("/jobs/{job_id}", response_model=JobRead)
def update_job(
    job_id: uuid.UUID,
    payload: JobUpdate,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> JobRead:
    return lifecycle_service.update_job(db, job_id, payload, actor=user.actor_id)


@router.post("/invoices", response_model=InvoiceRead, status_code=status.HTTP_201_CREATED)
def create_invoice(
    payload: InvoiceCreate,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> InvoiceRead:
    return lifecycle_service.create_invoice(db, payload, actor=user.actor_id)


@router.get("/invoices/{invoice_id}", response_model=InvoiceRead)
def get_invoice(invoice_id: uuid.UUID, db: Session = Depends(get_db)) -> InvoiceRead:
    return lifecycle_service.get_invoice(db, invoice_id)


@router.patch("/invoices/{invoice_id}", response_model=InvoiceRead)
def update_invoice(
    invoice_id: uuid.UUID,
    payload: InvoiceUpdate,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> InvoiceRead:
    return lifecycle_service.update_invoice(db, invoice_id, payload, actor=user.actor_id)


@router.post("/invoices/{invoice_id}/payments", response_model=PaymentRead, status_code=status.HTTP_201_CREATED)
def create_payment(
    invoice_id: uuid.UUID,
    payload: PaymentCreate,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> PaymentRead:
    return lifecycle_service.create_payment(db, invoice_id, payload, actor=user.actor_id)


@router.get("/invoices/{invoice_id}/payments", response_model=list[PaymentRead])
def list_payments(invoice_id: uuid.UUID, db: Session = Depends(get_db)) -> list[PaymentRead]:
    return lifecycle_service.list_payments(db, invoice_id)


@router.patch("/payments/{payment_id}", response_model=PaymentRead)
def update_payment(
    payment_id: uuid.UUID,
    payload: PaymentUpdate,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> PaymentRead:
    return lifecycle_service.update_payment(db, payment_id, payload, actor=user.actor_id)


@router.delete("/payments/{payment_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_payment(
    payment_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> Response:
    lifecycle_service.delete_payment(db, payment_id, actor=user.actor_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/{entity_type}/{entity_id}/history", response_model=list[StatusHistoryRead])
def get_history(entity_type: str, entity_id: uuid.UUID, db: Session = Depends(get_db)) -> list[StatusHistoryRead]:
    return lifecycle_service.get_history(db, _singular(entity_type), entity_id)


@maintenance_router.post("/refresh-statuses", response_model=RefreshReportRead)
def refresh_statuses(
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> RefreshReportRead:
    return lifecycle_service.refresh_statuses(db, actor=user.actor_id)


@maintenance_router.post("/rederive", response_model=RefreshReportRead)
def rederive(
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> RefreshReportRead:
    return lifecycle_service.rederive(db, actor=user.actor_id)


def _singular(entity_type: str) -> str:
    # Accept both the collection path segment and the entity type tag.
    return entity_type[:-1] if entity_type.endswith("s") else entity_type
