"""
Bulk invoice create / update / cancel.

Every row runs in its own transaction: one row failing (bad reference, a write
error) is reported in `failed` and never rolls back its siblings. Each call
ends with one `bulk_operation_logs` row summarising the counts.
"""
import json
from datetime import date
from typing import Optional

import psycopg

from . import inventory_ledger, invoices, sequences
from .amounts import invoice_totals, line_amounts, to_decimal
from .config import settings
from .errors import BillsyncError, InsufficientStock, NotFoundError, ReferentialError, ValidationError
from .logs import json_log
from .validation import EDITABLE_INVOICE_STATUSES, PAYMENT_STATUSES


def _check_batch_size(rows, cap: int, noun: str, what: str) -> None:
    if not isinstance(rows, list) or not rows:
        raise ValidationError(f"At least one {noun} is required")
    if len(rows) > cap:
        raise ValidationError(f"Maximum {cap} invoices allowed per bulk {what}")


def _load_reference_data(cur, company_id: str) -> tuple[dict, dict]:
    cur.execute(
        """
        SELECT id, name, email, gstin, billing_address, shipping_address
        FROM customers
        WHERE company_id = %s AND status = 'active'
        """,
        (company_id,),
    )
    customers = {str(r["id"]): r for r in cur.fetchall()}
    cur.execute(
        """
        SELECT id, item_code, item_name, selling_price, hsn_sac_code, track_inventory
        FROM items
        WHERE company_id = %s AND is_active = true
        """,
        (company_id,),
    )
    items = {str(r["id"]): r for r in cur.fetchall()}
    return customers, items


def _row_errors(invoice: dict, customers: dict, items: dict) -> list[str]:
    errors: list[str] = []
    customer_id = invoice.get("customer_id")
    if not customer_id:
        errors.append("Customer ID is required")
    elif str(customer_id) not in customers:
        errors.append("Customer not found")

    lines = invoice.get("items")
    if not isinstance(lines, list) or not lines:
        errors.append("Items are required")
        return errors
    for j, line in enumerate(lines, start=1):
        if not isinstance(line, dict):
            errors.append(f"Item {j}: Invalid line")
            continue
        if not line.get("item_id") or str(line["item_id"]) not in items:
            errors.append(f"Item {j}: Invalid item ID")
        if to_decimal(line.get("quantity")) <= 0:
            errors.append(f"Item {j}: Invalid quantity")
        if to_decimal(line.get("rate")) <= 0:
            errors.append(f"Item {j}: Invalid rate")
    return errors


def validate_batch(cur, company_id: str, invoices_in: list[dict]) -> dict:
    """Read-only: loads customers and items once, then checks every row."""
    customers, items = _load_reference_data(cur, company_id)
    valid: list[dict] = []
    errors: list[dict] = []
    for row, invoice in enumerate(invoices_in, start=1):
        invoice = invoice if isinstance(invoice, dict) else {}
        row_errors = _row_errors(invoice, customers, items)
        if row_errors:
            errors.append({"row": row, "customer_id": invoice.get("customer_id"), "errors": row_errors})
        else:
            valid.append({"row": row, "invoice": invoice, "customer": customers[str(invoice["customer_id"])]})
    return {
        "valid_invoices": valid,
        "errors": errors,
        "summary": {"total": len(invoices_in), "valid": len(valid), "errors": len(errors)},
    }


def _load_active_item(cur, company_id: str, item_id: str) -> dict:
    cur.execute(
        """
        SELECT id, item_code, item_name, hsn_sac_code, track_inventory
        FROM items
        WHERE company_id = %s AND id = %s AND is_active = true
        """,
        (company_id, item_id),
    )
    item = cur.fetchone()
    if not item:
        raise ReferentialError(f"item {item_id} is no longer available")
    return item


def _create_row(cur, company_id: str, entry: dict) -> dict:
    invoice, customer = entry["invoice"], entry["customer"]

    lines = []
    for line in invoice["items"]:
        item = _load_active_item(cur, company_id, str(line["item_id"]))
        quantity = to_decimal(line["quantity"])
        rate = to_decimal(line["rate"])
        tax_rate = line.get("tax_rate")
        tax_rate = settings.default_tax_rate if tax_rate in (None, "") else to_decimal(tax_rate)
        lines.append(
            {
                "item": item,
                "item_id": item["id"],
                "item_code": item["item_code"],
                "item_name": line.get("item_name") or item["item_name"],
                "description": line.get("description"),
                "quantity": quantity,
                "unit_name": line.get("unit_name"),
                "rate": rate,
                "discount_percentage": to_decimal(line.get("discount_percentage")),
                "tax_rate": tax_rate,
                "hsn_sac_code": item.get("hsn_sac_code"),
                **line_amounts(
                    quantity,
                    rate,
                    discount_pct=line.get("discount_percentage"),
                    discount_amount=line.get("discount_amount"),
                    tax_rate=tax_rate,
                ),
            }
        )
    totals = invoice_totals(lines)

    document_number = sequences.allocate(cur, company_id, "invoice")
    created = invoices.insert_invoice(
        cur,
        company_id,
        {
            "document_number": document_number,
            "document_date": invoice.get("document_date") or date.today().isoformat(),
            "due_date": invoice.get("due_date"),
            "customer_id": customer["id"],
            "customer_name": customer["name"],
            "customer_gstin": customer.get("gstin"),
            "billing_address": invoice.get("billing_address") or customer.get("billing_address"),
            "shipping_address": invoice.get("shipping_address") or customer.get("shipping_address"),
            "payment_status": "unpaid",
            "notes": invoice.get("notes"),
            "source": "bulk",
            **totals,
        },
    )

    reference = {
        "reference_type": "sales_document",
        "reference_id": str(created["id"]),
        "reference_number": document_number,
    }
    warnings: list[str] = []
    for line in lines:
        invoices.insert_invoice_line(cur, created["id"], line)
        if not line["item"].get("track_inventory"):
            continue
        try:
            inventory_ledger.apply(
                cur,
                company_id,
                line["item_id"],
                -line["quantity"],
                reference,
                notes=f"Bulk invoice: {document_number}",
            )
        except InsufficientStock as e:
            warnings.append(e.message)

    return {
        "row": entry["row"],
        "invoice_id": created["id"],
        "document_number": document_number,
        "customer_name": customer["name"],
        "total_amount": totals["total_amount"],
        "inventory_warnings": warnings,
    }


def log_bulk_operation(cur, company_id: str, operation_type: str, details: dict) -> None:
    cur.execute(
        """
        INSERT INTO bulk_operation_logs (id, company_id, operation_type, details)
        VALUES (gen_random_uuid(), %s, %s, %s::jsonb)
        """,
        (company_id, operation_type, json.dumps(details, default=str)),
    )


def _finish(conn, company_id: str, operation_type: str, details: dict) -> None:
    with conn.transaction():
        with conn.cursor() as cur:
            log_bulk_operation(cur, company_id, operation_type, details)
    json_log("info", "bulk.completed", company_id=company_id, operation=operation_type, **details)


def create_batch(
    conn,
    company_id: str,
    invoices_in: list[dict],
    *,
    validate_only: bool = False,
    all_or_nothing: bool = False,
) -> dict:
    """
    Rows that fail validation are reported as failed and the rest are created,
    unless `all_or_nothing` is set, in which case any validation error rejects
    the whole batch before anything is written.
    """
    _check_batch_size(invoices_in, settings.bulk_max_rows, "invoice", "operation")

    with conn.transaction():
        with conn.cursor() as cur:
            report = validate_batch(cur, company_id, invoices_in)
    if validate_only:
        return {"validation_only": True, "validation": report}
    if all_or_nothing and report["errors"]:
        raise ValidationError("Validation failed", details={"validation": report})

    successful: list[dict] = []
    failed: list[dict] = [
        {
            "row": e["row"],
            "customer_id": e["customer_id"],
            "error": str(ReferentialError("; ".join(e["errors"]))),
        }
        for e in report["errors"]
    ]
    for entry in report["valid_invoices"]:
        try:
            with conn.transaction():
                with conn.cursor() as cur:
                    successful.append(_create_row(cur, company_id, entry))
        except (BillsyncError, psycopg.Error) as e:
            failed.append({"row": entry["row"], "customer_id": entry["customer"]["id"], "error": str(e)})
    failed.sort(key=lambda f: f["row"])

    _finish(
        conn,
        company_id,
        "bulk_create",
        {"total_requested": len(invoices_in), "successful": len(successful), "failed": len(failed)},
    )
    return {
        "successful": successful,
        "failed": failed,
        "validation": report,
        "summary": {
            "total_processed": len(invoices_in),
            "successful": len(successful),
            "failed": len(failed),
        },
    }


def _clean_updates(updates: Optional[dict]) -> dict:
    fields = {k: v for k, v in (updates or {}).items() if k in invoices.UPDATABLE_FIELDS}
    if not fields:
        raise ValidationError("No valid update fields provided")
    if "status" in fields:
        fields["status"] = str(fields["status"] or "").strip().lower()
        if fields["status"] not in EDITABLE_INVOICE_STATUSES:
            raise ValidationError(f"status must be one of {', '.join(EDITABLE_INVOICE_STATUSES)}")
    if "payment_status" in fields:
        fields["payment_status"] = str(fields["payment_status"] or "").strip().lower()
        if fields["payment_status"] not in PAYMENT_STATUSES:
            raise ValidationError(f"payment_status must be one of {', '.join(PAYMENT_STATUSES)}")
    return fields


def update_batch(conn, company_id: str, invoice_ids: list, updates: dict) -> dict:
    _check_batch_size(invoice_ids, settings.bulk_max_rows, "invoice ID", "operation")
    fields = _clean_updates(updates)

    successful: list[dict] = []
    failed: list[dict] = []
    for invoice_id in invoice_ids:
        try:
            with conn.transaction():
                with conn.cursor() as cur:
                    current = invoices.get_invoice(cur, company_id, invoice_id, for_update=True)
                    if not current:
                        raise NotFoundError("Invoice not found")
                    if current["status"] == "cancelled":
                        raise ValidationError("Cannot update a cancelled invoice")
                    row = invoices.update_invoice_fields(cur, company_id, invoice_id, fields)
        except (BillsyncError, psycopg.Error) as e:
            failed.append({"invoice_id": invoice_id, "error": str(e)})
            continue
        successful.append({"invoice_id": row["id"], "document_number": row["document_number"]})

    _finish(
        conn,
        company_id,
        "bulk_update",
        {
            "total_requested": len(invoice_ids),
            "successful": len(successful),
            "failed": len(failed),
            "updates": fields,
        },
    )
    return {"successful": successful, "failed": failed}


def _cancel_one(cur, company_id: str, invoice_id: str, reason: str, reverse_inventory: bool) -> dict:
    invoice = invoices.get_invoice(cur, company_id, invoice_id, for_update=True)
    if not invoice:
        raise NotFoundError("Invoice not found")
    if invoice["status"] == "cancelled":
        return {
            "invoice_id": invoice["id"],
            "document_number": invoice["document_number"],
            "already_cancelled": True,
            "movements_reversed": 0,
        }
    if invoices.has_payment_allocations(cur, invoice["id"]):
        raise ValidationError("Cannot delete invoice with existing payments")

    reversed_count = 0
    if reverse_inventory:
        reversal = inventory_ledger.reverse(
            cur,
            company_id,
            "sales_document",
            str(invoice["id"]),
            reference_number=f"BULK-DEL-{invoice['document_number']}",
            notes=f"Bulk deletion: {reason}",
        )
        reversed_count = len(reversal["reversed"])
    invoices.cancel_invoice(cur, company_id, invoice["id"], f"Bulk cancellation: {reason}")
    return {
        "invoice_id": invoice["id"],
        "document_number": invoice["document_number"],
        "already_cancelled": False,
        "movements_reversed": reversed_count,
    }


def delete_batch(
    conn,
    company_id: str,
    invoice_ids: list,
    *,
    reason: str = "Bulk deletion",
    reverse_inventory: bool = True,
) -> dict:
    """Logical delete: invoices are cancelled, never removed."""
    _check_batch_size(invoice_ids, settings.bulk_delete_max_rows, "invoice ID", "deletion")
    reason = (reason or "").strip() or "Bulk deletion"

    successful: list[dict] = []
    failed: list[dict] = []
    for invoice_id in invoice_ids:
        try:
            with conn.transaction():
                with conn.cursor() as cur:
                    successful.append(_cancel_one(cur, company_id, invoice_id, reason, reverse_inventory))
        except (BillsyncError, psycopg.Error) as e:
            failed.append({"invoice_id": invoice_id, "error": str(e)})

    _finish(
        conn,
        company_id,
        "bulk_delete",
        {
            "total_requested": len(invoice_ids),
            "successful": len(successful),
            "failed": len(failed),
            "reason": reason,
            "reverse_inventory": reverse_inventory,
        },
    )
    return {"successful": successful, "failed": failed}
