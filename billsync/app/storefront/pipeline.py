"""
Storefront event -> billing state.

Each handler runs inside one database transaction opened by process_event().
Order lines get their own savepoint so a failing line is reported as a warning
while the rest of the invoice commits ("invoice now, flag shortage"). The
outbound notification goes out only after the transaction has committed.
"""
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Optional

import psycopg

from .. import inventory_ledger, invoices, sequences
from ..amounts import invoice_totals, line_amounts, q_money, to_decimal
from ..config import settings
from ..errors import BillsyncError, InsufficientStock, ValidationError
from ..resolver import resolve_customer, resolve_item, update_item_from_product
from ..validation import PAYMENT_STATUSES
from . import client

ORDER_REFERENCE_TYPE = "sales_document"
# Orders placed without an account are billed to one shared walk-in customer.
GUEST_CUSTOMER = {"id": "guest", "name": "Storefront guest"}


@dataclass
class EventResult:
    success: bool
    message: str = ""
    data: dict = field(default_factory=dict)
    error: Optional[str] = None
    # Pending outbound call, sent by process_event() after commit.
    notification: Optional[dict] = None

    def as_response(self) -> dict:
        if self.success:
            return {"success": True, "message": self.message, "data": self.data}
        return {"success": False, "error": self.error, "data": self.data}


def _order_payload(data: dict) -> dict:
    order = (data or {}).get("order")
    if not isinstance(order, dict) or not order.get("id"):
        raise ValidationError("order event requires data.order with an id")
    return order


def _line_quantity(order_item: dict) -> Optional[Decimal]:
    # Missing means one unit; anything unparseable or non-positive is rejected.
    raw = order_item.get("quantity")
    if raw is None or raw == "":
        return Decimal("1")
    if isinstance(raw, bool):
        return None
    try:
        quantity = Decimal(str(raw).strip())
    except (InvalidOperation, ValueError):
        return None
    if not quantity.is_finite() or quantity <= 0:
        return None
    return quantity


def _present(v) -> bool:
    return v not in (None, "")


def _order_totals(order: dict) -> dict:
    keys = ("subtotal", "tax_amount", "total_amount")
    if not any(_present(order.get(k)) for k in keys):
        lines = []
        for it in order.get("items") or []:
            quantity = _line_quantity(it)
            if quantity is None:
                continue
            lines.append(
                line_amounts(
                    quantity,
                    it.get("price"),
                    discount_pct=it.get("discount_percent"),
                    discount_amount=it.get("discount_amount"),
                    tax_rate=it.get("tax_rate"),
                )
            )
        return invoice_totals(lines)

    subtotal, tax, total = (order.get(k) for k in keys)
    # Fill in whichever one of the three the storefront left out.
    if not _present(tax) and _present(subtotal) and _present(total):
        tax = q_money(total) - q_money(subtotal)
    elif not _present(subtotal) and _present(tax) and _present(total):
        subtotal = q_money(total) - q_money(tax)
    elif not _present(total) and _present(subtotal):
        total = q_money(subtotal) + q_money(tax)
    return {"subtotal": q_money(subtotal), "tax_amount": q_money(tax), "total_amount": q_money(total)}


def _invoice_line(item: dict, order_item: dict, quantity) -> dict:
    amounts = line_amounts(
        quantity,
        order_item.get("price"),
        discount_pct=order_item.get("discount_percent"),
        discount_amount=order_item.get("discount_amount"),
        tax_rate=order_item.get("tax_rate"),
    )
    if order_item.get("line_total") not in (None, ""):
        amounts["taxable_amount"] = amounts["total_amount"] = q_money(order_item["line_total"])
    if order_item.get("tax_amount") not in (None, ""):
        amounts["tax_amount"] = q_money(order_item["tax_amount"])
    return {
        "item_id": item["id"],
        "item_code": item.get("item_code"),
        "item_name": order_item.get("name") or item.get("item_name"),
        "description": order_item.get("description"),
        "quantity": quantity,
        "unit_name": order_item.get("unit") or "PCS",
        "rate": to_decimal(order_item.get("price")),
        "discount_percentage": to_decimal(order_item.get("discount_percent")),
        "tax_rate": to_decimal(order_item.get("tax_rate")),
        "hsn_sac_code": item.get("hsn_sac_code"),
        **amounts,
    }


def create_invoice_for_order(cur, integration: dict, data: dict) -> EventResult:
    order = _order_payload(data)
    company_id = integration["company_id"]
    order_id = str(order["id"])
    order_number = order.get("order_number") or order_id

    # Check and insert under one lock so concurrent redeliveries can't both pass.
    invoices.lock_order_key(cur, company_id, order_id)
    existing = invoices.find_active_invoice_for_order(cur, company_id, order_id)
    if existing:
        return EventResult(
            success=True,
            message=f"Order already processed as invoice {existing['document_number']}",
            data={
                "invoice_id": existing["id"],
                "invoice_number": existing["document_number"],
                "duplicate": True,
            },
        )

    customer = resolve_customer(cur, company_id, order.get("customer") or GUEST_CUSTOMER).entity
    document_number = sequences.allocate(cur, company_id, "invoice")
    totals = _order_totals(order)

    invoice = invoices.insert_invoice(
        cur,
        company_id,
        {
            "document_number": document_number,
            "document_date": order.get("order_date") or date.today().isoformat(),
            "customer_id": customer["id"],
            "customer_name": customer.get("name"),
            "customer_gstin": customer.get("gstin"),
            "billing_address": order.get("billing_address") or customer.get("billing_address"),
            "shipping_address": order.get("shipping_address") or customer.get("shipping_address"),
            "payment_status": order.get("payment_status") or "unpaid",
            "notes": f"Auto-generated from storefront order: {order_number}",
            "source": "storefront",
            "external_order_id": order_id,
            "external_order_number": order.get("order_number"),
            **totals,
        },
    )
    reference = {
        "reference_type": ORDER_REFERENCE_TYPE,
        "reference_id": str(invoice["id"]),
        "reference_number": document_number,
    }

    processed: list[dict] = []
    warnings: list[str] = []
    for order_item in order.get("items") or []:
        label = order_item.get("sku") or order_item.get("product_id") or "?"
        try:
            with cur.connection.transaction():
                found = resolve_item(cur, company_id, order_item.get("product_id"), order_item.get("sku"))
                if not found:
                    warnings.append(f"Item not found: {label}")
                    continue
                item = found.entity
                quantity = _line_quantity(order_item)
                if quantity is None:
                    warnings.append(f"Invalid quantity for {label}: {order_item.get('quantity')}")
                    continue
                line = _invoice_line(item, order_item, quantity)
                invoices.insert_invoice_line(cur, invoice["id"], line)
                deducted = False
                if item.get("track_inventory"):
                    try:
                        inventory_ledger.apply(
                            cur,
                            company_id,
                            item["id"],
                            -quantity,
                            reference,
                            notes=f"Storefront order: {order_number}",
                        )
                        deducted = True
                    except InsufficientStock as e:
                        warnings.append(e.message)
                processed.append(
                    {
                        "item_code": item.get("item_code"),
                        "quantity": quantity,
                        "amount": line["total_amount"],
                        "stock_deducted": deducted,
                    }
                )
        except (BillsyncError, psycopg.Error) as e:
            warnings.append(f"Error processing {label}: {e}")

    return EventResult(
        success=True,
        message=f"Invoice {document_number} created successfully for order {order_number}",
        data={
            "invoice_id": invoice["id"],
            "invoice_number": document_number,
            "customer_id": customer["id"],
            "items_processed": len(processed),
            "inventory_warnings": warnings,
        },
        notification={
            "external_order_id": order_id,
            "payload": {
                "invoice_id": invoice["id"],
                "invoice_number": document_number,
                "invoice_date": invoice.get("document_date"),
                "invoice_amount": totals["total_amount"],
                "invoice_status": "generated",
                "invoice_url": f"{settings.app_url}/sales/invoices/{invoice['id']}",
                "items_processed": len(processed),
                "inventory_warnings": warnings,
            },
        },
    )


def cancel_order(cur, integration: dict, data: dict) -> EventResult:
    order = _order_payload(data)
    company_id = integration["company_id"]
    order_id = str(order["id"])
    order_number = order.get("order_number") or order_id

    invoices.lock_order_key(cur, company_id, order_id)
    invoice = invoices.find_active_invoice_for_order(cur, company_id, order_id)
    if not invoice:
        return EventResult(success=True, message="No invoice found for this order", data={"action": "none"})

    invoices.cancel_invoice(
        cur,
        company_id,
        invoice["id"],
        f"Cancelled from storefront on {datetime.now(timezone.utc).isoformat()}",
    )
    # Only lines that actually moved stock have movements to compensate.
    reversal = inventory_ledger.reverse(
        cur,
        company_id,
        ORDER_REFERENCE_TYPE,
        str(invoice["id"]),
        reference_number=invoice["document_number"],
        notes=f"Reversed due to storefront order cancellation: {order_number}",
    )
    return EventResult(
        success=True,
        message=f"Invoice {invoice['document_number']} cancelled and inventory reversed",
        data={
            "invoice_id": invoice["id"],
            "action": "cancelled_and_reversed",
            "movements_reversed": len(reversal["reversed"]),
        },
    )


def handle_customer_changed(cur, integration: dict, data: dict) -> EventResult:
    customer = (data or {}).get("customer")
    if not isinstance(customer, dict):
        raise ValidationError("customer event requires data.customer")
    res = resolve_customer(cur, integration["company_id"], customer, force_update=True)
    return EventResult(
        success=True,
        message=f"Customer {res.action}: {res.entity.get('name')}",
        data={"customer_id": res.id, "action": res.action},
    )


def handle_product_updated(cur, integration: dict, data: dict) -> EventResult:
    product = (data or {}).get("product")
    if not isinstance(product, dict) or not product.get("id"):
        raise ValidationError("product event requires data.product with an id")
    res = update_item_from_product(cur, integration["company_id"], product)
    if not res:
        return EventResult(success=False, error=f"Product not found: {product['id']}")
    return EventResult(
        success=True,
        message=f"Product updated: {res.entity.get('item_name')}",
        data={"item_id": res.id},
    )


def handle_stock_changed(cur, integration: dict, data: dict) -> EventResult:
    data = data or {}
    product_id = data.get("product_id")
    if not product_id or data.get("new_stock") in (None, ""):
        raise ValidationError("stock event requires product_id and new_stock")
    company_id = integration["company_id"]
    found = resolve_item(cur, company_id, product_id=product_id)
    if not found:
        return EventResult(success=False, error=f"Product not found: {product_id}")
    item = found.entity

    # No baseline reported: the ledger reconciles against current_stock under the item lock.
    reported_old = data.get("old_stock")
    old_stock = None if reported_old in (None, "") else reported_old
    try:
        movement = inventory_ledger.adjust(
            cur,
            company_id,
            item["id"],
            old_stock,
            data["new_stock"],
            {
                "reference_type": "storefront_sync",
                "reference_id": None,
                "reference_number": f"SF-STOCK-{product_id}",
            },
            notes=f"Storefront stock adjustment: {data.get('reason') or 'Unknown reason'}",
        )
    except InsufficientStock as e:
        return EventResult(success=False, error=e.message, data={"item_id": item["id"]})

    if old_stock is None:
        old_stock = movement["stock_before"] if movement else to_decimal(data["new_stock"])
    difference = to_decimal(data["new_stock"]) - to_decimal(old_stock)
    return EventResult(
        success=True,
        message=f"Stock updated for {item.get('item_code')}: {old_stock} -> {data['new_stock']}",
        data={
            "item_id": item["id"],
            "old_stock": old_stock,
            "new_stock": data["new_stock"],
            "difference": difference,
            "movement_id": movement["id"] if movement else None,
        },
    )


def handle_payment_updated(cur, integration: dict, data: dict) -> EventResult:
    data = data or {}
    order_id = data.get("order_id")
    payment_status = str(data.get("payment_status") or "").strip().lower()
    if not order_id or payment_status not in PAYMENT_STATUSES:
        raise ValidationError("payment event requires order_id and a valid payment_status")
    company_id = integration["company_id"]
    # paid_amount is read and rewritten under the order lock.
    invoices.lock_order_key(cur, company_id, str(order_id))
    invoice = invoices.find_active_invoice_for_order(cur, company_id, str(order_id))
    if not invoice:
        return EventResult(success=False, error=f"Order not found: {order_id}")

    total = to_decimal(invoice["total_amount"])
    paid = to_decimal(invoice.get("paid_amount"))
    amount = to_decimal(data.get("amount"))
    if payment_status == "paid":
        paid = amount or total
    elif payment_status == "partial":
        paid = paid + amount
    elif payment_status == "unpaid":
        paid = 0
    paid = q_money(paid)
    balance = q_money(total - paid)

    row = invoices.set_payment_state(
        cur,
        company_id,
        invoice["id"],
        payment_status,
        paid,
        balance,
        f"Payment {payment_status} via {data.get('payment_method') or 'COD'} on {data.get('payment_date') or date.today().isoformat()}",
    )
    return EventResult(
        success=True,
        message=f"Payment status updated to {payment_status}",
        data={
            "invoice_id": row["id"],
            "document_number": row["document_number"],
            "payment_status": payment_status,
            "paid_amount": paid,
            "balance_amount": balance,
        },
    )


EVENT_HANDLERS: dict[str, Callable[[Any, dict, dict], EventResult]] = {
    "order.created": create_invoice_for_order,
    "order.confirmed": create_invoice_for_order,
    "order.cancelled": cancel_order,
    "order.payment_updated": handle_payment_updated,
    "customer.created": handle_customer_changed,
    "customer.updated": handle_customer_changed,
    "product.updated": handle_product_updated,
    "product.stock_changed": handle_stock_changed,
}


def send_notification(integration: dict, result: EventResult) -> None:
    if not result.notification:
        return
    outcome = client.notify_invoice(
        integration,
        result.notification["external_order_id"],
        result.notification["payload"],
    )
    result.data["storefront_notified"] = outcome.success


def process_event(conn, integration: dict, event_type: str, data: dict) -> EventResult:
    handler = EVENT_HANDLERS.get(event_type)
    if handler is None:
        raise ValidationError(f"Unknown event type: {event_type}")
    with conn.transaction():
        with conn.cursor() as cur:
            result = handler(cur, integration, data)
    # The allocated number and the invoice are durable before anyone outside sees them.
    conn.commit()
    send_notification(integration, result)
    return result
