from __future__ import annotations

from typing import Literal, get_args

EntityType = Literal["request", "quote", "job", "invoice"]

ENTITY_TYPES: tuple[str, ...] = ("request", "quote", "job", "invoice")

RequestStatus = Literal[
    "pending",
    "assessment_scheduled",
    "assessment_today",
    "assessment_overdue",
    "assessment_completed",
    "converted",
    "archived",
]
QuoteStatus = Literal["draft", "pending_approval", "sent", "follow_up", "approved", "converted", "lost"]
JobStatus = Literal[
    "won",
    "scheduled",
    "ready_for_yard",
    "picking",
    "staged",
    "loaded",
    "in_progress",
    "completed",
    "invoiced",
]
InvoiceStatus = Literal["draft", "sent", "past_due", "paid", "bad_debt"]

REQUEST_STATUSES: tuple[str, ...] = get_args(RequestStatus)
QUOTE_STATUSES: tuple[str, ...] = get_args(QuoteStatus)
JOB_STATUSES: tuple[str, ...] = get_args(JobStatus)
INVOICE_STATUSES: tuple[str, ...] = get_args(InvoiceStatus)

STATUSES_BY_ENTITY_TYPE: dict[str, tuple[str, ...]] = {
    "request": REQUEST_STATUSES,
    "quote": QUOTE_STATUSES,
    "job": JOB_STATUSES,
    "invoice": INVOICE_STATUSES,
}

STATUS_LABELS: dict[str, dict[str, str]] = {
    "request": {
        "pending": "Pending",
        "assessment_scheduled": "Assessment Scheduled",
        "assessment_today": "Assessment Today",
        "assessment_overdue": "Assessment Overdue",
        "assessment_completed": "Assessment Completed",
        "converted": "Converted",
        "archived": "Archived",
    },
    "quote": {
        "draft": "Draft",
        "pending_approval": "Pending Approval",
        "sent": "Sent",
        "follow_up": "Follow-up Needed",
        "approved": "Approved",
        "converted": "Converted to Job",
        "lost": "Lost",
    },
    "job": {
        "won": "Won",
        "scheduled": "Scheduled",
        "ready_for_yard": "Ready for Yard",
        "picking": "Picking",
        "staged": "Staged",
        "loaded": "Loaded",
        "in_progress": "In Progress",
        "completed": "Completed",
        "invoiced": "Invoiced",
    },
    "invoice": {
        "draft": "Draft",
        "sent": "Sent",
        "past_due": "Past Due",
        "paid": "Paid",
        "bad_debt": "Bad Debt",
    },
}


def status_label(entity_type: str, status: str | None) -> str | None:
    if status is None:
        return None
    return STATUS_LABELS.get(entity_type, {}).get(status, status)
