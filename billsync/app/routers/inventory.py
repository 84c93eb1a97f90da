from datetime import date
from typing import Optional

from fastapi import APIRouter, Query

from .. import inventory_ledger
from ..db import get_conn
from ..errors import NotFoundError
from ..validation import MovementType

router = APIRouter(tags=["inventory"])


@router.get("/inventory/movements")
def list_stock_movements(
    company_id: str,
    item_id: Optional[str] = None,
    movement_type: Optional[MovementType] = None,
    reference_type: Optional[str] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
):
    with get_conn() as conn:
        with conn.cursor() as cur:
            out = inventory_ledger.list_movements(
                cur,
                company_id,
                item_id=item_id,
                movement_type=movement_type,
                reference_type=reference_type,
                date_from=date_from,
                date_to=date_to,
                page=page,
                limit=limit,
            )
    return {"success": True, **out}


@router.get("/items/{item_id}/stock-movements")
def item_stock_movements(
    item_id: str,
    company_id: str,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
):
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT id, item_code, item_name, current_stock, available_stock, track_inventory
                FROM items
                WHERE company_id = %s AND id = %s
                """,
                (company_id, item_id),
            )
            item = cur.fetchone()
            if not item:
                raise NotFoundError("item not found")
            out = inventory_ledger.list_movements(cur, company_id, item_id=item_id, page=page, limit=limit)
    return {"success": True, "item": item, **out}
