from __future__ import annotations

import logging
import uuid
from typing import Any

from sqlalchemy import update
from sqlalchemy.orm import Session

from fieldops.lifecycle.gate import StatusTransition, rederive
from fieldops.lifecycle.models import Invoice, Job, Quote, ServiceRequest, TrackedEntityMixin
from fieldops.lifecycle.unit_of_work import get_write_context
from fieldops.metrics import observe_cascade_link
from fieldops.otel import get_tracer


logger = logging.getLogger("fieldops.lifecycle.cascade")
tracer = get_tracer("fieldops.lifecycle.cascade")


def _link(
    session: Session,
    *,
    link: str,
    model: type[TrackedEntityMixin],
    upstream_id: uuid.UUID,
    downstream_id: uuid.UUID,
    values: dict[str, Any],
    guards: tuple[Any, ...],
) -> StatusTransition | None:
    """Set an upstream pointer only if it is still empty, then re-derive that row.

    The guarded UPDATE bypasses the ORM unit of work, so it never re-enters the
    propagator; losing the race to an earlier writer touches zero rows and is a
    silent no-op.
    """
    context = get_write_context(session)
    with tracer.start_as_current_span(f"fsm.cascade.{link}") as span:
        span.set_attribute("fsm.link", link)
        span.set_attribute("fsm.upstream_id", str(upstream_id))
        span.set_attribute("fsm.downstream_id", str(downstream_id))

        stmt = (
            update(model)
            .where(model.id == upstream_id, *guards)
            .values(**values, updated_at=context.now)
            .execution_options(synchronize_session=False)
        )
        result = session.execute(stmt)
        extra = {"link": link, "upstream_id": str(upstream_id), "downstream_id": str(downstream_id)}
        if result.rowcount == 0:
            span.set_attribute("fsm.outcome", "skipped")
            observe_cascade_link(link, "skipped")
            logger.debug("cascade.skipped", extra=extra)
            return None

        upstream = session.get(model, upstream_id, populate_existing=True, with_for_update=True)
        if upstream is None:
            raise LookupError(f"{model.entity_type} {upstream_id} vanished after link update")
        transition = rederive(session, upstream)
        span.set_attribute("fsm.outcome", "linked")
        observe_cascade_link(link, "linked")
        logger.info("cascade.linked", extra=extra)
        return transition


def link_quote_to_request(session: Session, quote: Quote) -> StatusTransition | None:
    if quote.request_id is None:
        return None
    return _link(
        session,
        link="quote_to_request",
        model=ServiceRequest,
        upstream_id=quote.request_id,
        downstream_id=quote.id,
        values={"converted_to_quote_id": quote.id},
        guards=(ServiceRequest.converted_to_quote_id.is_(None),),
    )


def link_job_upstream(session: Session, job: Job) -> StatusTransition | None:
    if job.quote_id is not None:
        return _link(
            session,
            link="job_to_quote",
            model=Quote,
            upstream_id=job.quote_id,
            downstream_id=job.id,
            values={"converted_to_job_id": job.id},
            guards=(Quote.converted_to_job_id.is_(None),),
        )
    if job.request_id is not None:
        # A request already converted to a quote keeps that conversion.
        return _link(
            session,
            link="job_to_request",
            model=ServiceRequest,
            upstream_id=job.request_id,
            downstream_id=job.id,
            values={"converted_to_job_id": job.id},
            guards=(
                ServiceRequest.converted_to_job_id.is_(None),
                ServiceRequest.converted_to_quote_id.is_(None),
            ),
        )
    return None


def link_invoice_to_job(session: Session, invoice: Invoice) -> StatusTransition | None:
    if invoice.job_id is None:
        return None
    context = get_write_context(session)
    return _link(
        session,
        link="invoice_to_job",
        model=Job,
        upstream_id=invoice.job_id,
        downstream_id=invoice.id,
        values={"invoice_id": invoice.id, "invoiced_at": context.now},
        guards=(Job.invoice_id.is_(None),),
    )


def propagate_creation(session: Session, entity: TrackedEntityMixin) -> StatusTransition | None:
    """Run the upstream link for a freshly inserted downstream entity."""
    if isinstance(entity, Quote):
        return link_quote_to_request(session, entity)
    if isinstance(entity, Job):
        return link_job_upstream(session, entity)
    if isinstance(entity, Invoice):
        return link_invoice_to_job(session, entity)
    return None
