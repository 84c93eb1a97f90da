from typing import Any, Optional

from fastapi import APIRouter, Response
from pydantic import BaseModel

from .. import bulk_invoices
from ..db import get_conn

router = APIRouter(prefix="/sales/invoices/bulk", tags=["sales"])


class BulkCreateIn(BaseModel):
    company_id: str
    invoices: list[dict[str, Any]]
    validate_only: bool = False
    all_or_nothing: bool = False


class BulkUpdateIn(BaseModel):
    company_id: str
    invoice_ids: list[str]
    updates: dict[str, Any]


class BulkDeleteIn(BaseModel):
    company_id: str
    invoice_ids: list[str]
    reason: Optional[str] = "Bulk deletion"
    reverse_inventory: bool = True


@router.post("", status_code=201)
def bulk_create_invoices(data: BulkCreateIn, response: Response):
    with get_conn() as conn:
        result = bulk_invoices.create_batch(
            conn,
            data.company_id,
            data.invoices,
            validate_only=data.validate_only,
            all_or_nothing=data.all_or_nothing,
        )
    if data.validate_only:
        response.status_code = 200
        return {"success": True, "validation_only": True, "data": result["validation"]}

    ok = not result["failed"]
    response.status_code = 201 if ok else 207
    return {
        "success": ok,
        "message": f"Bulk creation completed: {len(result['successful'])} created, {len(result['failed'])} failed",
        "data": result,
    }


@router.put("")
def bulk_update_invoices(data: BulkUpdateIn, response: Response):
    with get_conn() as conn:
        result = bulk_invoices.update_batch(conn, data.company_id, data.invoice_ids, data.updates)
    ok = not result["failed"]
    response.status_code = 200 if ok else 207
    return {
        "success": ok,
        "message": f"Bulk update completed: {len(result['successful'])} updated, {len(result['failed'])} failed",
        "data": result,
    }


@router.delete("")
def bulk_delete_invoices(data: BulkDeleteIn, response: Response):
    with get_conn() as conn:
        result = bulk_invoices.delete_batch(
            conn,
            data.company_id,
            data.invoice_ids,
            reason=data.reason or "Bulk deletion",
            reverse_inventory=data.reverse_inventory,
        )
    ok = not result["failed"]
    response.status_code = 200 if ok else 207
    return {
        "success": ok,
        "message": f"Bulk deletion completed: {len(result['successful'])} cancelled, {len(result['failed'])} failed",
        "data": result,
    }
