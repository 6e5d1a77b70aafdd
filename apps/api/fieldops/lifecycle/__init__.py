from fieldops.lifecycle import gate, history
from fieldops.lifecycle.models import Invoice, Job, Payment, Quote, ServiceRequest, StatusHistoryRecord

__all__ = [
    "Invoice",
    "Job",
    "Payment",
    "Quote",
    "ServiceRequest",
    "StatusHistoryRecord",
    "gate",
    "history",
]
