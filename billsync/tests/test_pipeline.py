from decimal import Decimal

import pytest
from psycopg import errors as pg_errors

from billsync.app import invoices, sequences
from billsync.app.errors import ValidationError
from billsync.app.storefront import client, pipeline
from billsync.tests.fakes import FakeDB, invoice_number


def _setup(monkeypatch, notify_ok=True):
    db = FakeDB()
    integration = db.add_integration("c1")
    sent = []

    def fake_notify(integ, external_order_id, payload):
        # The invoice must already be visible when the storefront hears about it.
        assert db.one("sales_documents", id=payload["invoice_id"]) is not None
        sent.append((external_order_id, payload))
        return client.NotifyResult(success=notify_ok, status=200 if notify_ok else 503)

    monkeypatch.setattr(client, "notify_invoice", fake_notify)
    return db, integration, sent


def _order(order_id="1001", items=None, **extra):
    order = {
        "id": order_id,
        "order_number": f"SO-{order_id}",
        "customer": {"id": "cust-1", "name": "Jane", "email": "jane@example.test"},
        "items": items or [],
    }
    order.update(extra)
    return {"order": order}


def test_order_created_invoices_now_and_flags_shortages(monkeypatch):
    db, integration, sent = _setup(monkeypatch)
    a = db.add_item("c1", "A", "10")
    b = db.add_item("c1", "B", "1")
    svc = db.add_item("c1", "SVC", "0", track_inventory=False)
    data = _order(
        items=[
            {"sku": "A", "quantity": 2, "price": "100", "tax_rate": 18},
            {"sku": "B", "quantity": 3, "price": "10"},
            {"sku": "GHOST", "quantity": 1, "price": "5"},
            {"sku": "SVC", "quantity": 1, "price": "50"},
        ],
        subtotal="280",
        tax_amount="36",
        total_amount="316",
    )

    result = pipeline.process_event(db.connect(), integration, "order.created", data)

    assert result.success is True
    assert result.data["invoice_number"] == invoice_number(1)
    assert result.data["items_processed"] == 3
    assert result.data["inventory_warnings"] == [
        "Insufficient stock for B: Available 1, Required 3",
        "Item not found: GHOST",
    ]
    assert result.data["storefront_notified"] is True

    invoice = db.one("sales_documents", id=result.data["invoice_id"])
    assert invoice["external_order_id"] == "1001"
    assert invoice["total_amount"] == Decimal("316.00")
    assert invoice["source"] == "storefront"
    assert invoice["notes"] == "Auto-generated from storefront order: SO-1001"
    assert len(db.rows("sales_document_items", document_id=invoice["id"])) == 3

    assert db.stock_of(a["id"]) == Decimal("8")
    assert db.stock_of(b["id"]) == Decimal("1")
    assert db.stock_of(svc["id"]) == Decimal("0")
    assert db.movements_for(b["id"]) == []

    [(order_id, payload)] = sent
    assert order_id == "1001"
    assert payload["invoice_number"] == invoice_number(1)
    assert payload["invoice_status"] == "generated"
    assert payload["invoice_url"].endswith(f"/sales/invoices/{invoice['id']}")
    assert payload["invoice_amount"] == Decimal("316.00")


def test_order_totals_are_computed_when_absent(monkeypatch):
    db, integration, _ = _setup(monkeypatch)
    db.add_item("c1", "A", "10")
    data = _order(items=[{"sku": "A", "quantity": 2, "price": "50", "tax_rate": 18}])
    result = pipeline.process_event(db.connect(), integration, "order.confirmed", data)
    invoice = db.one("sales_documents", id=result.data["invoice_id"])
    assert (invoice["subtotal"], invoice["tax_amount"], invoice["total_amount"]) == (
        Decimal("100.00"),
        Decimal("18.00"),
        Decimal("118.00"),
    )
    line = db.one("sales_document_items", document_id=invoice["id"])
    assert line["total_amount"] == Decimal("118.00")


def test_guest_orders_share_one_walk_in_customer(monkeypatch):
    db, integration, _ = _setup(monkeypatch)
    conn = db.connect()
    for order_id in ("g-1", "g-2"):
        data = _order(order_id)
        del data["order"]["customer"]
        assert pipeline.process_event(conn, integration, "order.created", data).success is True

    [guest] = db.rows("customers")
    assert (guest["customer_code"], guest["name"]) == ("SF-guest", "Storefront guest")
    assert {d["customer_id"] for d in db.rows("sales_documents")} == {guest["id"]}


def test_replayed_order_is_a_duplicate_and_changes_nothing(monkeypatch):
    db, integration, sent = _setup(monkeypatch)
    a = db.add_item("c1", "A", "10")
    data = _order(items=[{"sku": "A", "quantity": 4, "price": "1"}])
    conn = db.connect()

    first = pipeline.process_event(conn, integration, "order.created", data)
    second = pipeline.process_event(conn, integration, "order.created", data)

    assert second.success is True
    assert second.data == {
        "invoice_id": first.data["invoice_id"],
        "invoice_number": first.data["invoice_number"],
        "duplicate": True,
    }
    assert len(db.rows("sales_documents", external_order_id="1001")) == 1
    assert db.stock_of(a["id"]) == Decimal("6")
    assert len(sent) == 1
    assert len(db.rows("document_sequences")) == 1
    assert db.one("document_sequences")["current_number"] == 2


def test_cancellation_reverses_only_lines_that_moved_stock(monkeypatch):
    db, integration, _ = _setup(monkeypatch)
    a = db.add_item("c1", "A", "10")
    b = db.add_item("c1", "B", "0")
    c = db.add_item("c1", "C", "5")
    conn = db.connect()
    created = pipeline.process_event(
        conn,
        integration,
        "order.created",
        _order(
            items=[
                {"sku": "A", "quantity": 2, "price": "1"},
                {"sku": "B", "quantity": 1, "price": "1"},
                {"sku": "C", "quantity": 1, "price": "1"},
            ]
        ),
    )
    assert created.data["items_processed"] == 3
    assert len(created.data["inventory_warnings"]) == 1

    cancelled = pipeline.process_event(conn, integration, "order.cancelled", {"order": {"id": "1001"}})

    assert cancelled.data == {
        "invoice_id": created.data["invoice_id"],
        "action": "cancelled_and_reversed",
        "movements_reversed": 2,
    }
    assert db.one("sales_documents", id=created.data["invoice_id"])["status"] == "cancelled"
    assert [db.stock_of(i["id"]) for i in (a, b, c)] == [Decimal("10"), Decimal("0"), Decimal("5")]

    again = pipeline.process_event(conn, integration, "order.cancelled", {"order": {"id": "1001"}})
    assert again.message == "No invoice found for this order"
    assert again.data == {"action": "none"}
    assert len(db.rows("inventory_movements")) == 4


def test_failing_line_rolls_back_to_its_savepoint(monkeypatch):
    db, integration, _ = _setup(monkeypatch)
    a = db.add_item("c1", "A", "10")
    bad = db.add_item("c1", "BAD", "10")
    real_insert_line = invoices.insert_invoice_line

    def flaky_insert_line(cur, document_id, line):
        row = real_insert_line(cur, document_id, line)
        if line["item_code"] == "BAD":
            raise pg_errors.CheckViolation("sales_document_items_quantity_check")
        return row

    monkeypatch.setattr(invoices, "insert_invoice_line", flaky_insert_line)
    result = pipeline.process_event(
        db.connect(),
        integration,
        "order.created",
        _order(items=[{"sku": "BAD", "quantity": 1, "price": "1"}, {"sku": "A", "quantity": 1, "price": "1"}]),
    )

    assert result.success is True
    assert result.data["items_processed"] == 1
    assert result.data["inventory_warnings"] == ["Error processing BAD: sales_document_items_quantity_check"]
    assert [l["item_code"] for l in db.rows("sales_document_items")] == ["A"]
    assert db.stock_of(bad["id"]) == Decimal("10")
    assert db.stock_of(a["id"]) == Decimal("9")


def test_malformed_events_write_nothing(monkeypatch):
    db, integration, sent = _setup(monkeypatch)
    conn = db.connect()
    with pytest.raises(ValidationError):
        pipeline.process_event(conn, integration, "order.refunded", {})
    with pytest.raises(ValidationError):
        pipeline.process_event(conn, integration, "order.created", {"order": {"items": []}})
    assert db.rows("sales_documents") == []
    assert sent == []


def test_notify_failure_does_not_fail_the_invoice(monkeypatch):
    db, integration, sent = _setup(monkeypatch, notify_ok=False)
    result = pipeline.process_event(db.connect(), integration, "order.created", _order())
    assert result.success is True
    assert result.data["storefront_notified"] is False
    assert len(db.rows("sales_documents")) == 1
    assert len(sent) == 1


def test_payment_updates_paid_and_balance(monkeypatch):
    db, integration, _ = _setup(monkeypatch)
    conn = db.connect()
    created = pipeline.process_event(conn, integration, "order.created", _order(total_amount="300"))

    first = pipeline.process_event(
        conn, integration, "order.payment_updated", {"order_id": "1001", "payment_status": "partial", "amount": 100}
    )
    second = pipeline.process_event(
        conn, integration, "order.payment_updated", {"order_id": "1001", "payment_status": "Partial", "amount": "50"}
    )
    assert (first.data["paid_amount"], second.data["paid_amount"]) == (Decimal("100.00"), Decimal("150.00"))
    assert second.data["balance_amount"] == Decimal("150.00")

    paid = pipeline.process_event(conn, integration, "order.payment_updated", {"order_id": "1001", "payment_status": "paid"})
    invoice = db.one("sales_documents", id=created.data["invoice_id"])
    assert paid.data["balance_amount"] == Decimal("0.00")
    assert (invoice["payment_status"], invoice["paid_amount"]) == ("paid", Decimal("300.00"))

    missing = pipeline.process_event(conn, integration, "order.payment_updated", {"order_id": "x", "payment_status": "paid"})
    assert missing.success is False
    assert missing.error == "Order not found: x"
    with pytest.raises(ValidationError):
        pipeline.process_event(conn, integration, "order.payment_updated", {"order_id": "1001", "payment_status": "refunded"})


def test_stock_change_applies_difference(monkeypatch):
    db, integration, _ = _setup(monkeypatch)
    item = db.add_item("c1", "A", "12", external_product_id="p-1")
    conn = db.connect()

    reported = pipeline.process_event(
        conn, integration, "product.stock_changed", {"product_id": "p-1", "old_stock": 10, "new_stock": 15}
    )
    assert reported.data["difference"] == Decimal("5")
    assert db.stock_of(item["id"]) == Decimal("17")

    baseline = pipeline.process_event(conn, integration, "product.stock_changed", {"product_id": "p-1", "new_stock": 20})
    assert baseline.data["difference"] == Decimal("3")
    assert db.stock_of(item["id"]) == Decimal("20")

    negative = pipeline.process_event(conn, integration, "product.stock_changed", {"product_id": "p-1", "new_stock": -1})
    assert negative.success is False
    assert db.stock_of(item["id"]) == Decimal("20")

    unknown = pipeline.process_event(conn, integration, "product.stock_changed", {"product_id": "p-9", "new_stock": 1})
    assert unknown.error == "Product not found: p-9"


def test_product_and_customer_events(monkeypatch):
    db, integration, _ = _setup(monkeypatch)
    item = db.add_item("c1", "A", "1", external_product_id="p-1")
    conn = db.connect()

    updated = pipeline.process_event(conn, integration, "product.updated", {"product": {"id": "p-1", "name": "Apple"}})
    assert updated.message == "Product updated: Apple"
    assert db.one("items", id=item["id"])["item_name"] == "Apple"

    missing = pipeline.process_event(conn, integration, "product.updated", {"product": {"id": "p-2"}})
    assert (missing.success, missing.error) == (False, "Product not found: p-2")

    created = pipeline.process_event(conn, integration, "customer.created", {"customer": {"id": "c-7", "name": "Zed"}})
    changed = pipeline.process_event(conn, integration, "customer.updated", {"customer": {"id": "c-7", "name": "Zed B"}})
    assert created.data["action"] == "created"
    assert changed.data == {"customer_id": created.data["customer_id"], "action": "updated"}
    assert db.one("customers", id=created.data["customer_id"])["name"] == "Zed B"


def test_invoice_numbers_do_not_collide_across_financial_years(monkeypatch):
    db, integration, _ = _setup(monkeypatch)
    conn = db.connect()
    monkeypatch.setattr(sequences, "current_financial_year", lambda today=None: "2026-27")
    first = pipeline.process_event(conn, integration, "order.created", _order("y-1"))
    monkeypatch.setattr(sequences, "current_financial_year", lambda today=None: "2027-28")
    second = pipeline.process_event(conn, integration, "order.created", _order("y-2"))

    assert (first.data["invoice_number"], second.data["invoice_number"]) == ("INV-0001/26-27", "INV-0001/27-28")
    assert len(db.rows("sales_documents")) == 2


def test_unparseable_quantity_is_a_warning_not_one_unit(monkeypatch):
    db, integration, _ = _setup(monkeypatch)
    a = db.add_item("c1", "A", "10")
    b = db.add_item("c1", "B", "10")
    data = _order(
        items=[
            {"sku": "A", "quantity": "two", "price": "5"},
            {"sku": "B", "price": "5"},
        ]
    )

    result = pipeline.process_event(db.connect(), integration, "order.created", data)

    assert result.data["inventory_warnings"] == ["Invalid quantity for A: two"]
    assert result.data["items_processed"] == 1
    [line] = db.rows("sales_document_items")
    assert (line["item_code"], line["quantity"]) == ("B", Decimal("1"))
    assert db.stock_of(a["id"]) == Decimal("10")
    assert db.stock_of(b["id"]) == Decimal("9")
    invoice = db.one("sales_documents", id=result.data["invoice_id"])
    # Computed totals leave the rejected line out too.
    assert invoice["total_amount"] == Decimal("5.00")


def test_missing_tax_amount_is_derived_from_totals(monkeypatch):
    db, integration, _ = _setup(monkeypatch)
    result = pipeline.process_event(
        db.connect(), integration, "order.created", _order(subtotal=100, total_amount=118)
    )
    invoice = db.one("sales_documents", id=result.data["invoice_id"])
    assert (invoice["subtotal"], invoice["tax_amount"], invoice["total_amount"]) == (
        Decimal("100.00"),
        Decimal("18.00"),
        Decimal("118.00"),
    )
    no_total = pipeline.process_event(
        db.connect(), integration, "order.created", _order("1002", subtotal="50", tax_amount="9")
    )
    assert db.one("sales_documents", id=no_total.data["invoice_id"])["total_amount"] == Decimal("59.00")


def test_payment_updates_take_the_order_lock(monkeypatch):
    db, integration, _ = _setup(monkeypatch)
    conn = db.connect()
    pipeline.process_event(conn, integration, "order.created", _order(total_amount="100"))
    db.advisory_keys.clear()

    pipeline.process_event(
        conn, integration, "order.payment_updated", {"order_id": "1001", "payment_status": "partial", "amount": 10}
    )

    assert db.advisory_keys == ["sales_documents:c1:1001"]
