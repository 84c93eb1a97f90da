import json
from decimal import Decimal

import pytest
from fastapi import Request
from psycopg import errors as pg_errors

from billsync.app import inventory_ledger, main
from billsync.app.errors import InsufficientStock, NotFoundError, ValidationError
from billsync.app.routers import document_numbering, inventory
from billsync.app.sequences import current_financial_year, financial_year_tag
from billsync.tests.fakes import FakeDB, fake_get_conn


def _request(path="/x"):
    return Request({"type": "http", "method": "POST", "path": path, "headers": [], "query_string": b""})


def test_numbering_settings_roundtrip(monkeypatch):
    db = FakeDB()
    monkeypatch.setattr(document_numbering, "get_conn", fake_get_conn(db))

    saved = document_numbering.save_document_numbering(
        document_numbering.SequencesIn(
            company_id="c1",
            sequences=[{"document_type": "invoice", "prefix": "S/", "padding_zeros": 5, "current_number": 12}],
        )
    )
    assert saved["success"] is True
    assert saved["financial_year"] == current_financial_year()

    preview = document_numbering.get_document_numbering("c1", action="preview", document_type="invoice")
    assert preview["data"]["preview"] == f"S/00012/{financial_year_tag(current_financial_year())}"
    listed = document_numbering.get_document_numbering("c1")["data"]
    assert {r["document_type"]: r["saved"] for r in listed}["invoice"] is True

    with pytest.raises(ValidationError):
        document_numbering.get_document_numbering("c1", action="preview")
    with pytest.raises(ValidationError):
        document_numbering.save_document_numbering(document_numbering.SequencesIn(company_id="c1", sequences=[]))


def test_item_stock_movements_route(monkeypatch):
    db = FakeDB()
    item = db.add_item("c1", "A", "10")
    with db.connect() as conn, conn.cursor() as cur:
        inventory_ledger.apply(cur, "c1", item["id"], -4, {"reference_type": "sales_document", "reference_id": "d"})
    monkeypatch.setattr(inventory, "get_conn", fake_get_conn(db))

    out = inventory.item_stock_movements(item["id"], "c1", page=1, limit=50)

    assert out["item"]["current_stock"] == Decimal("6")
    assert out["statistics"]["total_out"] == Decimal("4")
    assert out["pagination"]["total_records"] == 1
    with pytest.raises(NotFoundError):
        inventory.item_stock_movements("missing", "c1", page=1, limit=50)

    listed = inventory.list_stock_movements("c1", movement_type="out", page=1, limit=50)
    assert [m["item_code"] for m in listed["data"]] == ["A"]


def test_domain_errors_map_to_their_status_codes():
    resp = main._billsync_error(_request(), ValidationError("bad", details={"row": Decimal("1.5")}))
    assert resp.status_code == 400
    assert json.loads(resp.body) == {"success": False, "error": "bad", "details": {"row": 1.5}}
    assert main._billsync_error(_request(), NotFoundError("x")).status_code == 404
    assert main._billsync_error(_request(), InsufficientStock("A", 1, 2)).status_code == 409


def test_database_errors_map_to_client_errors():
    assert main._unique_violation(_request(), pg_errors.UniqueViolation("dup")).status_code == 409
    assert main._check_violation(_request(), pg_errors.CheckViolation("neg")).status_code == 400
    resp = main._database_error(_request(), pg_errors.DeadlockDetected("deadlock"))
    assert resp.status_code == 500
    assert json.loads(resp.body)["error"] == "database error"


def test_health_reports_database_state(monkeypatch):
    monkeypatch.setattr(main, "get_conn", fake_get_conn(FakeDB()))
    out = main.health(_request("/health"))
    assert (out["status"], out["db"], out["service"]) == ("ok", "ok", "billsync")

    def broken():
        raise OSError("connection refused")

    monkeypatch.setattr(main, "get_conn", broken)
    resp = main.health(_request("/health"))
    assert resp.status_code == 503
    assert json.loads(resp.body)["db"] == "down"
