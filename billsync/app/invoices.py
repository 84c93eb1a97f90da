import json
from typing import Optional

INVOICE_COLUMNS = """
    id, company_id, document_type, document_number, document_date, customer_id, customer_name,
    subtotal, tax_amount, total_amount, paid_amount, balance_amount, status, payment_status, notes,
    terms_conditions, source, external_order_id, external_order_number, created_at
"""
UPDATABLE_FIELDS = ("status", "payment_status", "notes", "terms_conditions")


def lock_order_key(cur, company_id: str, external_order_id: str) -> None:
    # Transaction-scoped: concurrent deliveries of one order queue here until
    # the first one commits its invoice.
    cur.execute(
        "SELECT pg_advisory_xact_lock(hashtext(%s))",
        (f"sales_documents:{company_id}:{external_order_id}",),
    )


def find_active_invoice_for_order(cur, company_id: str, external_order_id: str) -> Optional[dict]:
    cur.execute(
        f"""
        SELECT {INVOICE_COLUMNS}
        FROM sales_documents
        WHERE company_id = %s AND document_type = 'invoice' AND external_order_id = %s
          AND status <> 'cancelled'
        ORDER BY created_at DESC
        LIMIT 1
        """,
        (company_id, str(external_order_id)),
    )
    return cur.fetchone()


def insert_invoice(cur, company_id: str, header: dict) -> dict:
    total = header.get("total_amount") or 0
    cur.execute(
        f"""
        INSERT INTO sales_documents
          (id, company_id, document_type, document_number, document_date, due_date, customer_id,
           customer_name, customer_gstin, billing_address, shipping_address, subtotal, tax_amount,
           total_amount, paid_amount, balance_amount, status, payment_status, notes, source,
           external_order_id, external_order_number)
        VALUES
          (gen_random_uuid(), %s, 'invoice', %s, %s, %s, %s, %s, %s, %s::jsonb, %s::jsonb, %s, %s,
           %s, 0, %s, 'confirmed', %s, %s, %s, %s, %s)
        RETURNING {INVOICE_COLUMNS}
        """,
        (
            company_id,
            header["document_number"],
            header["document_date"],
            header.get("due_date"),
            header.get("customer_id"),
            header.get("customer_name"),
            header.get("customer_gstin"),
            json.dumps(header.get("billing_address") or {}),
            json.dumps(header.get("shipping_address") or {}),
            header.get("subtotal") or 0,
            header.get("tax_amount") or 0,
            total,
            total,
            header.get("payment_status") or "unpaid",
            header.get("notes"),
            header.get("source") or "manual",
            header.get("external_order_id"),
            header.get("external_order_number"),
        ),
    )
    return cur.fetchone()


def insert_invoice_line(cur, document_id: str, line: dict) -> dict:
    cur.execute(
        """
        INSERT INTO sales_document_items
          (id, document_id, item_id, item_code, item_name, description, quantity, unit_name, rate,
           discount_percentage, discount_amount, taxable_amount, tax_rate, tax_amount, total_amount,
           hsn_sac_code)
        VALUES
          (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        RETURNING id, document_id, item_id, item_code, quantity, rate, total_amount
        """,
        (
            document_id,
            line.get("item_id"),
            line.get("item_code"),
            line.get("item_name"),
            line.get("description"),
            line["quantity"],
            line.get("unit_name") or "PCS",
            line.get("rate") or 0,
            line.get("discount_percentage") or 0,
            line.get("discount_amount") or 0,
            line.get("taxable_amount") or 0,
            line.get("tax_rate") or 0,
            line.get("tax_amount") or 0,
            line.get("total_amount") or 0,
            line.get("hsn_sac_code"),
        ),
    )
    return cur.fetchone()


def get_invoice(cur, company_id: str, invoice_id: str, *, for_update: bool = False) -> Optional[dict]:
    sql = f"""
        SELECT {INVOICE_COLUMNS}
        FROM sales_documents
        WHERE company_id = %s AND id = %s AND document_type = 'invoice'
    """
    if for_update:
        sql += " FOR UPDATE"
    cur.execute(sql, (company_id, invoice_id))
    return cur.fetchone()


def cancel_invoice(cur, company_id: str, invoice_id: str, note: str) -> bool:
    cur.execute(
        """
        UPDATE sales_documents
        SET status = 'cancelled',
            notes = concat_ws(E'\\n', notes, %s),
            updated_at = now()
        WHERE company_id = %s AND id = %s AND status <> 'cancelled'
        RETURNING id
        """,
        (note, company_id, invoice_id),
    )
    return cur.fetchone() is not None


def has_payment_allocations(cur, invoice_id: str) -> bool:
    cur.execute(
        "SELECT id FROM payment_allocations WHERE sales_document_id = %s LIMIT 1",
        (invoice_id,),
    )
    return cur.fetchone() is not None


def update_invoice_fields(cur, company_id: str, invoice_id: str, fields: dict) -> Optional[dict]:
    cols = [c for c in UPDATABLE_FIELDS if c in fields]
    if not cols:
        return None
    assignments = ", ".join([f"{c} = %s" for c in cols])
    cur.execute(
        f"""
        UPDATE sales_documents
        SET {assignments}, updated_at = now()
        WHERE company_id = %s AND id = %s AND document_type = 'invoice'
        RETURNING id, document_number
        """,
        [fields[c] for c in cols] + [company_id, invoice_id],
    )
    return cur.fetchone()


def set_payment_state(cur, company_id: str, invoice_id: str, payment_status: str, paid_amount, balance_amount, note: str) -> dict:
    cur.execute(
        """
        UPDATE sales_documents
        SET payment_status = %s,
            paid_amount = %s,
            balance_amount = %s,
            notes = concat_ws(E'\\n', notes, %s),
            updated_at = now()
        WHERE company_id = %s AND id = %s
        RETURNING id, document_number, payment_status, paid_amount, balance_amount
        """,
        (payment_status, paid_amount, balance_amount, note, company_id, invoice_id),
    )
    return cur.fetchone()
