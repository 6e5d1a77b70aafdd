from __future__ import annotations

import uuid
import warnings
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from fastapi import HTTPException
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from fieldops.lifecycle.models import ServiceRequest
from fieldops.lifecycle.service import LifecycleService, lifecycle_service


def _post(client: TestClient, path: str, body: dict, **kwargs) -> dict:
    response = client.post(path, json=body, **kwargs)
    assert response.status_code == 201, response.text
    return response.json()


def test_create_request_ignores_status_in_body(client: TestClient) -> None:
    created = _post(client, "/fsm/requests", {"client_name": "Harbor Deli", "status": "converted"})

    assert created["status"] == "pending"
    assert created["status_label"] == "Pending"
    assert created["request_number"] == "REQ-000001"
    assert created["row_version"] == 1

    fetched = client.get(f"/fsm/requests/{created['id']}")
    assert fetched.status_code == 200
    assert fetched.json()["client_name"] == "Harbor Deli"


def test_patch_facts_rederives_status_and_records_history(client: TestClient) -> None:
    created = _post(client, "/fsm/requests", {"client_name": "Harbor Deli"})

    response = client.patch(
        f"/fsm/requests/{created['id']}",
        json={"row_version": 1, "assessment_completed_at": "2026-10-17T15:00:00Z", "status": "archived"},
        headers={"X-Correlation-Id": "corr-api-1"},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "assessment_completed"
    assert body["row_version"] == 2
    assert response.headers["x-correlation-id"] == "corr-api-1"

    history = client.get(f"/fsm/requests/{created['id']}/history")
    assert history.status_code == 200
    rows = history.json()
    assert [(row["from_status"], row["to_status"]) for row in rows] == [("pending", "assessment_completed")]
    assert rows[0]["changed_by"] == "dispatcher-1"
    assert rows[0]["correlation_id"] == "corr-api-1"


def test_stale_row_version_is_rejected(client: TestClient) -> None:
    created = _post(client, "/fsm/requests", {"client_name": "Harbor Deli"})

    response = client.patch(f"/fsm/requests/{created['id']}", json={"row_version": 7, "description": "late edit"})

    assert response.status_code == 409
    assert response.json()["detail"] == "row_version conflict"
    assert client.get(f"/fsm/requests/{created['id']}").json()["description"] is None


def test_missing_entities_return_404(client: TestClient) -> None:
    missing = uuid.uuid4()

    assert client.get(f"/fsm/requests/{missing}").status_code == 404
    assert client.get(f"/fsm/quotes/{missing}").status_code == 404
    assert client.patch(f"/fsm/jobs/{missing}", json={"loaded_at": "2026-10-17T15:00:00Z"}).status_code == 404
    assert client.get(f"/fsm/invoices/{missing}/payments").status_code == 404
    assert client.get(f"/fsm/widgets/{missing}/history").status_code == 404


def test_unknown_upstream_reference_is_unprocessable(client: TestClient) -> None:
    response = client.post("/fsm/quotes", json={"request_id": str(uuid.uuid4()), "total": "100"})

    assert response.status_code == 422


def test_chain_of_creates_converts_every_upstream(client: TestClient) -> None:
    request = _post(client, "/fsm/requests", {"client_name": "Harbor Deli"})
    quote = _post(
        client,
        "/fsm/quotes",
        {"request_id": request["id"], "total": "500", "client_approved_at": "2026-10-17T15:00:00Z"},
    )
    job = _post(client, "/fsm/jobs", {"quote_id": quote["id"], "work_completed_at": "2026-10-18T15:00:00Z"})
    invoice = _post(client, "/fsm/invoices", {"job_id": job["id"], "total": "500"})

    assert job["request_id"] == request["id"]
    assert client.get(f"/fsm/requests/{request['id']}").json()["status"] == "converted"
    assert client.get(f"/fsm/quotes/{quote['id']}").json()["converted_to_job_id"] == job["id"]
    job_after = client.get(f"/fsm/jobs/{job['id']}").json()
    assert job_after["status"] == "invoiced"
    assert job_after["invoice_id"] == invoice["id"]
    assert job_after["invoiced_at"] is not None
    assert invoice["status"] == "draft"
    assert Decimal(invoice["balance_due"]) == Decimal("500")


def test_payment_endpoints_keep_invoice_balance_current(client: TestClient) -> None:
    invoice = _post(
        client,
        "/fsm/invoices",
        {"total": "500", "sent_at": "2026-10-17T15:00:00Z", "due_date": "2099-01-01"},
    )
    payment = _post(client, f"/fsm/invoices/{invoice['id']}/payments", {"amount": "200", "payment_method": "check"})

    partial = client.get(f"/fsm/invoices/{invoice['id']}").json()
    assert Decimal(partial["amount_paid"]) == Decimal("200")
    assert Decimal(partial["balance_due"]) == Decimal("300")
    assert partial["status"] == "sent"

    updated = client.patch(f"/fsm/payments/{payment['id']}", json={"amount": "500"})
    assert updated.status_code == 200
    assert client.get(f"/fsm/invoices/{invoice['id']}").json()["status"] == "paid"

    listed = client.get(f"/fsm/invoices/{invoice['id']}/payments")
    assert [row["id"] for row in listed.json()] == [payment["id"]]

    deleted = client.delete(f"/fsm/payments/{payment['id']}")
    assert deleted.status_code == 204
    reopened = client.get(f"/fsm/invoices/{invoice['id']}").json()
    assert reopened["status"] == "sent"
    assert Decimal(reopened["amount_paid"]) == Decimal("0")

    history = client.get(f"/fsm/invoices/{invoice['id']}/history").json()
    assert [(row["from_status"], row["to_status"]) for row in history] == [("sent", "paid"), ("paid", "sent")]


def test_payment_must_be_positive(client: TestClient) -> None:
    invoice = _post(client, "/fsm/invoices", {"total": "500"})

    response = client.post(f"/fsm/invoices/{invoice['id']}/payments", json={"amount": "0"})

    assert response.status_code == 422


def test_refresh_endpoint_leaves_current_rows_alone(client: TestClient) -> None:
    sent_at = datetime.now(timezone.utc) - timedelta(days=10)
    quote = _post(client, "/fsm/quotes", {"total": "100", "sent_at": sent_at.isoformat()})
    assert quote["status"] == "follow_up"
    upcoming = _post(
        client,
        "/fsm/requests",
        {"assessment_scheduled_at": (datetime.now(timezone.utc) + timedelta(days=3)).isoformat()},
    )
    assert upcoming["status"] == "assessment_scheduled"

    response = client.post("/fsm/maintenance/refresh-statuses")

    assert response.status_code == 200
    assert response.json() == {"examined": 1, "changed": [], "failed": []}


def test_rederive_endpoint_examines_every_row(client: TestClient) -> None:
    _post(client, "/fsm/requests", {"client_name": "Harbor Deli"})
    _post(client, "/fsm/jobs", {})

    response = client.post("/fsm/maintenance/rederive")

    assert response.status_code == 200
    body = response.json()
    assert body["examined"] == 2
    assert body["changed"] == []
    assert body["failed"] == []


def test_number_taken_by_another_writer_is_reallocated(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    first = _post(client, "/fsm/requests", {"client_name": "Harbor Deli"})
    real_next_number = LifecycleService._next_number
    handed_out: list[str] = []

    # The first allocation repeats a number that is already committed.
    def racing_next_number(session: Session, model: type, prefix: str) -> str:
        number = first["request_number"] if not handed_out else real_next_number(session, model, prefix)
        handed_out.append(number)
        return number

    monkeypatch.setattr(LifecycleService, "_next_number", staticmethod(racing_next_number))

    second = _post(client, "/fsm/requests", {"client_name": "Pier Cafe"})

    assert handed_out == ["REQ-000001", "REQ-000002"]
    assert second["request_number"] == "REQ-000002"
    assert client.get(f"/fsm/requests/{second['id']}").json()["client_name"] == "Pier Cafe"


def test_missing_reference_is_422_without_deprecation_warnings(db_session: Session) -> None:
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        with pytest.raises(HTTPException) as excinfo:
            lifecycle_service._require_reference(db_session, ServiceRequest, uuid.uuid4(), "request")

    assert excinfo.value.status_code == 422
    assert [str(w.message) for w in caught if issubclass(w.category, DeprecationWarning)] == []
