"""
Append-only inventory movement ledger.

Every write locks the item row first (SELECT ... FOR UPDATE), so stock_before is
always the item's current_stock at the instant the movement is appended and
concurrent deductions against one item serialize. History is never edited: a
cancellation appends a compensating movement that points at the one it undoes.
"""
from datetime import date
from decimal import Decimal
from typing import Optional

from .amounts import to_decimal
from .errors import InsufficientStock, NotFoundError, ValidationError

MOVEMENT_COLUMNS = """
    id, company_id, item_id, item_code, movement_type, quantity, reference_type, reference_id,
    reference_number, stock_before, stock_after, movement_date, notes, reverses_movement_id, created_at
"""


def movement_delta(m: dict) -> Decimal:
    return to_decimal(m["stock_after"]) - to_decimal(m["stock_before"])


def _lock_item(cur, company_id: str, item_id: str) -> dict:
    cur.execute(
        """
        SELECT id, item_code, current_stock, available_stock, track_inventory
        FROM items
        WHERE company_id = %s AND id = %s
        FOR UPDATE
        """,
        (company_id, item_id),
    )
    item = cur.fetchone()
    if not item:
        raise NotFoundError(f"item not found: {item_id}")
    return item


def _append(
    cur,
    company_id: str,
    item: dict,
    movement_type: str,
    delta: Decimal,
    reference: dict,
    notes: Optional[str],
    movement_date: Optional[date],
    reverses_movement_id: Optional[str] = None,
) -> dict:
    before = to_decimal(item["current_stock"])
    after = before + delta
    cur.execute(
        f"""
        INSERT INTO inventory_movements
          (id, company_id, item_id, item_code, movement_type, quantity, reference_type, reference_id,
           reference_number, stock_before, stock_after, movement_date, notes, reverses_movement_id)
        VALUES
          (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        RETURNING {MOVEMENT_COLUMNS}
        """,
        (
            company_id,
            item["id"],
            item.get("item_code"),
            movement_type,
            abs(delta),
            reference.get("reference_type"),
            reference.get("reference_id"),
            reference.get("reference_number"),
            before,
            after,
            movement_date or date.today(),
            notes,
            reverses_movement_id,
        ),
    )
    movement = cur.fetchone()
    cur.execute(
        """
        UPDATE items
        SET current_stock = %s,
            available_stock = COALESCE(available_stock, %s) + %s,
            updated_at = now()
        WHERE company_id = %s AND id = %s
        """,
        (after, before, delta, company_id, item["id"]),
    )
    return movement


def apply(
    cur,
    company_id: str,
    item_id: str,
    delta,
    reference: dict,
    *,
    movement_type: Optional[str] = None,
    notes: Optional[str] = None,
    movement_date: Optional[date] = None,
) -> dict:
    """
    Record a signed stock change (negative for outbound) and update the item.

    Raises InsufficientStock, without writing anything, when the item tracks
    inventory and the change would take current_stock below zero. Callers on
    the invoice paths turn that into a line warning.
    """
    delta = to_decimal(delta)
    if delta == 0:
        raise ValidationError("movement quantity must be non-zero")
    if movement_type is None:
        movement_type = "in" if delta > 0 else "out"
    elif (movement_type == "in" and delta < 0) or (movement_type == "out" and delta > 0):
        raise ValidationError(f"movement_type {movement_type} does not match sign of {delta}")

    item = _lock_item(cur, company_id, item_id)
    before = to_decimal(item["current_stock"])
    if item.get("track_inventory") and before + delta < 0:
        raise InsufficientStock(item.get("item_code") or str(item_id), before, -delta)
    return _append(cur, company_id, item, movement_type, delta, reference, notes, movement_date)


def adjust(
    cur,
    company_id: str,
    item_id: str,
    old_stock,
    new_stock,
    reference: dict,
    *,
    notes: Optional[str] = None,
) -> Optional[dict]:
    # Apply the reported difference instead of overwriting current_stock.
    # Without a reported baseline, current_stock is read under the item lock.
    if old_stock is None:
        old_stock = _lock_item(cur, company_id, item_id)["current_stock"]
    delta = to_decimal(new_stock) - to_decimal(old_stock)
    if delta == 0:
        return None
    return apply(cur, company_id, item_id, delta, reference, movement_type="adjustment", notes=notes)


def reverse(
    cur,
    company_id: str,
    reference_type: str,
    reference_id: str,
    *,
    reversal_reference_type: Optional[str] = None,
    reference_number: Optional[str] = None,
    notes: Optional[str] = None,
) -> dict:
    """
    Append one compensating movement for every movement recorded against the
    reference that has not been compensated yet. Calling it again is a no-op.
    """
    cur.execute(
        f"""
        SELECT {MOVEMENT_COLUMNS}
        FROM inventory_movements
        WHERE company_id = %s AND reference_type = %s AND reference_id = %s
          AND reverses_movement_id IS NULL
        ORDER BY created_at, id
        """,
        (company_id, reference_type, str(reference_id)),
    )
    originals = cur.fetchall()
    reversal_ref = {
        "reference_type": reversal_reference_type or f"{reference_type}_cancellation",
        "reference_id": str(reference_id),
        "reference_number": reference_number,
    }

    created: list[dict] = []
    skipped = 0
    for m in originals:
        item = _lock_item(cur, company_id, m["item_id"])
        # Checked under the item lock so two concurrent reversals can't both append.
        cur.execute(
            "SELECT id FROM inventory_movements WHERE reverses_movement_id = %s",
            (m["id"],),
        )
        if cur.fetchone():
            skipped += 1
            continue
        delta = -movement_delta(m)
        if m["movement_type"] == "adjustment":
            movement_type = "adjustment"
        else:
            movement_type = "in" if delta > 0 else "out"
        created.append(
            _append(
                cur,
                company_id,
                item,
                movement_type,
                delta,
                {**reversal_ref, "reference_number": reference_number or m.get("reference_number")},
                notes,
                None,
                reverses_movement_id=m["id"],
            )
        )
    return {"reversed": created, "already_reversed": skipped}


def list_movements(
    cur,
    company_id: str,
    *,
    item_id: Optional[str] = None,
    movement_type: Optional[str] = None,
    reference_type: Optional[str] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    page: int = 1,
    limit: int = 50,
) -> dict:
    page = max(1, int(page or 1))
    limit = max(1, min(100, int(limit or 50)))

    where = " WHERE company_id = %s"
    params: list = [company_id]
    if item_id:
        where += " AND item_id = %s"
        params.append(item_id)
    if movement_type:
        where += " AND movement_type = %s"
        params.append(movement_type)
    if reference_type:
        where += " AND reference_type = %s"
        params.append(reference_type)
    if date_from:
        where += " AND movement_date >= %s"
        params.append(date_from)
    if date_to:
        where += " AND movement_date <= %s"
        params.append(date_to)

    cur.execute(
        """
        SELECT COUNT(*) AS total,
               COALESCE(SUM(quantity) FILTER (WHERE movement_type = 'in'), 0) AS total_in,
               COALESCE(SUM(quantity) FILTER (WHERE movement_type = 'out'), 0) AS total_out,
               COUNT(*) FILTER (WHERE movement_type = 'adjustment') AS total_adjustments
        FROM inventory_movements
        """ + where,
        params,
    )
    stats = cur.fetchone()
    cur.execute(
        f"SELECT {MOVEMENT_COLUMNS} FROM inventory_movements"
        + where
        + " ORDER BY movement_date DESC, created_at DESC LIMIT %s OFFSET %s",
        params + [limit, (page - 1) * limit],
    )
    rows = cur.fetchall()
    total = int(stats["total"] or 0)
    total_pages = (total + limit - 1) // limit
    return {
        "data": rows,
        "statistics": {
            "total_movements": total,
            "total_in": stats["total_in"],
            "total_out": stats["total_out"],
            "total_adjustments": int(stats["total_adjustments"] or 0),
        },
        "pagination": {
            "current_page": page,
            "total_pages": total_pages,
            "total_records": total,
            "per_page": limit,
            "has_next_page": page < total_pages,
            "has_prev_page": page > 1,
        },
    }
