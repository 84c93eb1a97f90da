import json
import threading
from decimal import Decimal

import pytest

from billsync.app.config import settings
from billsync.app.errors import InvalidSignature, NotFoundError, ValidationError
from billsync.app.routers import webhooks
from billsync.app.security import compute_webhook_signature
from billsync.app.storefront import client
from billsync.tests.fakes import FakeDB, fake_get_conn, invoice_number

SECRET = "whsec-test"


def _setup(monkeypatch, secret=SECRET):
    db = FakeDB()
    db.add_integration("c1", webhook_secret=secret)
    monkeypatch.setattr(webhooks, "get_conn", fake_get_conn(db))
    monkeypatch.setattr(client, "notify_invoice", lambda *_args, **_kwargs: client.NotifyResult(success=True))
    return db


def _body(event_type="order.created", data=None, company_id="c1"):
    return json.dumps({"company_id": company_id, "event_type": event_type, "data": data or {}}).encode("utf-8")


def _order_body(order_id="5001"):
    return _body(
        data={
            "order": {
                "id": order_id,
                "order_number": f"WEB-{order_id}",
                "customer": {"id": "cu-1", "name": "Jane"},
                "items": [{"sku": "A", "quantity": 1, "price": "20"}],
                "total_amount": "20",
            }
        }
    )


def _sign(body: bytes) -> str:
    return compute_webhook_signature(SECRET, body)


def test_signed_order_is_invoiced_and_logged(monkeypatch):
    db = _setup(monkeypatch)
    item = db.add_item("c1", "A", "3")
    body = _order_body()

    status, content = webhooks.handle_delivery(body, _sign(body))

    assert status == 200
    assert content["success"] is True
    assert content["data"]["invoice_number"] == invoice_number(1)
    [event] = db.rows("webhook_events")
    assert event["status"] == "completed"
    assert event["event_type"] == "order.created"
    assert event["response_data"]["data"]["invoice_id"] == content["data"]["invoice_id"]
    assert event["processed_at"] is not None
    assert db.stock_of(item["id"]) == Decimal("2")


def test_bad_signature_is_recorded_and_rejected(monkeypatch):
    db = _setup(monkeypatch)
    db.add_item("c1", "A", "3")
    body = _order_body()

    with pytest.raises(InvalidSignature):
        webhooks.handle_delivery(body, "0" * 64)
    with pytest.raises(InvalidSignature):
        webhooks.handle_delivery(body, None)

    events = db.rows("webhook_events")
    assert [e["status"] for e in events] == ["failed", "failed"]
    assert events[1]["error_message"] == "missing webhook signature"
    assert db.rows("sales_documents") == []


def test_unsigned_delivery_accepted_only_without_secret(monkeypatch):
    db = _setup(monkeypatch, secret=None)
    status, _ = webhooks.handle_delivery(_body("customer.created", {"customer": {"id": "9", "name": "Bo"}}), None)
    assert status == 200

    monkeypatch.setattr(settings, "webhook_require_signature", True)
    with pytest.raises(InvalidSignature):
        webhooks.handle_delivery(_body("customer.created", {"customer": {"id": "9", "name": "Bo"}}), None)
    assert [e["status"] for e in db.rows("webhook_events")] == ["completed", "failed"]


def test_redelivery_returns_first_response_without_reprocessing(monkeypatch):
    db = _setup(monkeypatch)
    item = db.add_item("c1", "A", "3")
    body = _order_body()

    _, first = webhooks.handle_delivery(body, _sign(body), "evt-1")
    status, again = webhooks.handle_delivery(body, _sign(body), "evt-1")

    assert status == 200
    assert again["data"] == first["data"]
    assert again["duplicate_of"]
    assert len(db.rows("sales_documents")) == 1
    assert db.stock_of(item["id"]) == Decimal("2")
    assert [e["status"] for e in db.rows("webhook_events")] == ["completed", "completed"]


def test_same_body_without_delivery_id_is_deduplicated_by_hash(monkeypatch):
    db = _setup(monkeypatch)
    body = _body("customer.created", {"customer": {"id": "9", "name": "Bo"}})
    webhooks.handle_delivery(body, _sign(body))
    _, again = webhooks.handle_delivery(body, _sign(body))
    assert "duplicate_of" in again
    assert len(db.rows("customers")) == 1


def test_failed_handler_result_is_a_400(monkeypatch):
    db = _setup(monkeypatch)
    body = _body("product.updated", {"product": {"id": "nope"}})

    status, content = webhooks.handle_delivery(body, _sign(body))

    assert status == 400
    assert content == {"success": False, "error": "Product not found: nope", "data": {}}
    [event] = db.rows("webhook_events")
    assert event["status"] == "failed"
    assert event["error_message"] == "Product not found: nope"


def test_processing_error_marks_event_failed(monkeypatch):
    db = _setup(monkeypatch)
    body = _body("order.created", {"order": {"items": []}})

    with pytest.raises(ValidationError):
        webhooks.handle_delivery(body, _sign(body))

    [event] = db.rows("webhook_events")
    assert event["status"] == "failed"
    assert "order event requires" in event["error_message"]
    assert db.rows("sales_documents") == []


def test_unknown_integration_and_bad_envelopes(monkeypatch):
    db = _setup(monkeypatch)
    with pytest.raises(NotFoundError):
        webhooks.handle_delivery(_body(company_id="c2"), None)
    with pytest.raises(ValidationError) as exc_info:
        webhooks.handle_delivery(json.dumps({"event_type": "order.created"}).encode(), None)
    assert exc_info.value.message == "Company ID and event type are required"
    with pytest.raises(ValidationError):
        webhooks.handle_delivery(b"not json", None)
    assert db.rows("webhook_events") == []


def test_end_to_end_order_scenario(monkeypatch):
    db = FakeDB()
    db.add_integration("C1")
    a1 = db.add_item("C1", "A1", "10")
    notified = []
    monkeypatch.setattr(webhooks, "get_conn", fake_get_conn(db))
    monkeypatch.setattr(
        client,
        "notify_invoice",
        lambda integ, order_id, payload: notified.append((order_id, payload)) or client.NotifyResult(success=True),
    )
    body = json.dumps(
        {
            "company_id": "C1",
            "event_type": "order.created",
            "data": {
                "order": {
                    "id": "EXT-1",
                    "order_number": "O-100",
                    "items": [{"sku": "A1", "quantity": 2, "price": 50}],
                    "subtotal": 100,
                    "total_amount": 118,
                }
            },
        }
    ).encode("utf-8")

    status, content = webhooks.handle_delivery(body, None)

    assert status == 200
    [invoice] = db.rows("sales_documents")
    assert invoice["document_number"] == content["data"]["invoice_number"] == invoice_number(1)
    assert invoice["external_order_id"] == "EXT-1"
    assert len(db.rows("sales_document_items", document_id=invoice["id"])) == 1
    [movement] = db.movements_for(a1["id"])
    assert (movement["movement_type"], movement["quantity"], movement["stock_after"]) == ("out", Decimal("2"), Decimal("8"))
    assert [order_id for order_id, _ in notified] == ["EXT-1"]

    replay_status, _ = webhooks.handle_delivery(body, None)

    assert replay_status == 200
    assert len(db.rows("sales_documents")) == 1
    assert len(db.rows("sales_document_items")) == 1
    assert len(db.rows("inventory_movements")) == 1
    assert len(notified) == 1


def test_concurrent_identical_deliveries_create_one_invoice(monkeypatch):
    db = _setup(monkeypatch)
    item = db.add_item("c1", "A", "3")
    notified = []
    monkeypatch.setattr(
        client,
        "notify_invoice",
        lambda integ, order_id, payload: notified.append(order_id) or client.NotifyResult(success=True),
    )
    body = _order_body()
    results = []
    errors = []
    start = threading.Barrier(6)

    def deliver():
        start.wait()
        try:
            results.append(webhooks.handle_delivery(body, _sign(body)))
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=deliver) for _ in range(6)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert [status for status, _ in results] == [200] * 6
    assert {content["data"]["invoice_number"] for _, content in results} == {invoice_number(1)}
    assert len(db.rows("sales_documents")) == 1
    assert len(db.rows("sales_document_items")) == 1
    assert db.stock_of(item["id"]) == Decimal("2")
    assert notified == ["5001"]
    assert [e["status"] for e in db.rows("webhook_events")] == ["completed"] * 6
