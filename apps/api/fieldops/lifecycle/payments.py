from __future__ import annotations

import uuid
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from fieldops.lifecycle.derivation import amount
from fieldops.lifecycle.gate import rederive
from fieldops.lifecycle.models import Invoice, Payment

_CENT = Decimal("0.01")


def sum_payments(session: Session, invoice_id: uuid.UUID) -> Decimal:
    total = session.scalar(
        select(func.coalesce(func.sum(Payment.amount), 0)).where(Payment.invoice_id == invoice_id)
    )
    return amount(total).quantize(_CENT)


def recalculate_invoice_payments(session: Session, invoice_id: uuid.UUID) -> Invoice:
    """Rebuild ``amount_paid`` from every payment of the invoice and re-derive it.

    Pending payment changes are flushed first so the sum sees them.
    """
    session.flush()
    invoice = session.get(Invoice, invoice_id, with_for_update=True)
    if invoice is None:
        raise LookupError(f"invoice {invoice_id} not found")
    paid = sum_payments(session, invoice_id)
    if amount(invoice.amount_paid) != paid:
        invoice.amount_paid = paid
    rederive(session, invoice)
    return invoice
