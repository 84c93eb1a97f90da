from typing import Optional

from fastapi import APIRouter
from pydantic import BaseModel

from ..db import get_conn
from ..errors import ExternalNotifyError, NotFoundError, ValidationError
from ..logs import json_log
from ..storefront import client
from ..storefront import integrations as store
from ..storefront.client import StorefrontAPIError

router = APIRouter(prefix="/integrations/storefront", tags=["storefront"])


class IntegrationIn(BaseModel):
    company_id: str
    api_url: Optional[str] = None
    api_key: Optional[str] = None
    webhook_secret: Optional[str] = None
    is_active: Optional[bool] = None


class CompanyIn(BaseModel):
    company_id: str


def _require_valid(api_url: Optional[str], api_key: Optional[str]) -> None:
    errors = store.validate_api_config(api_url, api_key)
    if errors:
        raise ValidationError("Validation failed", details=errors)


def _require_connection(api_url: str, api_key: str) -> None:
    result = client.check_connection({"api_url": api_url, "api_key": api_key})
    if not result.success:
        raise ValidationError("API connection test failed", details=result.error)


def _require_integration(cur, company_id: str) -> dict:
    row = store.get_integration(cur, company_id)
    if not row:
        raise NotFoundError("storefront integration not found")
    return row


@router.get("/config")
def get_config(company_id: str):
    with get_conn() as conn:
        with conn.cursor() as cur:
            row = store.get_integration(cur, company_id)
    if not row:
        return {
            "success": True,
            "data": {
                "company_id": company_id,
                "configured": False,
                "is_active": False,
                "status": "not_configured",
                "api_url": "",
                "api_key": "",
                "webhook_secret": "",
                "webhook_path": store.WEBHOOK_PATH,
            },
        }
    data = store.public_view(row)
    data.update({"configured": True, "status": "connected" if row["is_active"] else "disabled"})
    return {"success": True, "data": data}


@router.post("/config", status_code=201)
def create_config(data: IntegrationIn):
    _require_valid(data.api_url, data.api_key)
    with get_conn() as conn:
        with conn.cursor() as cur:
            if store.get_integration(cur, data.company_id):
                raise ValidationError("storefront integration already exists; use PUT to update")
            _require_connection(data.api_url, data.api_key)
            row = store.create_integration(
                cur,
                data.company_id,
                api_url=data.api_url,
                api_key=data.api_key,
                webhook_secret=data.webhook_secret,
            )
    json_log("info", "integration.created", company_id=data.company_id, integration_id=row["id"])
    return {"success": True, "message": "storefront integration created", "data": store.public_view(row)}


@router.put("/config")
def update_config(data: IntegrationIn):
    with get_conn() as conn:
        with conn.cursor() as cur:
            existing = _require_integration(cur, data.company_id)
            api_url = data.api_url or existing["api_url"]
            api_key = data.api_key or existing["api_key"]
            if api_url != existing["api_url"] or api_key != existing["api_key"]:
                _require_valid(api_url, api_key)
                _require_connection(api_url, api_key)
            row = store.update_integration(
                cur,
                existing,
                {
                    "api_url": data.api_url,
                    "api_key": data.api_key,
                    "webhook_secret": data.webhook_secret,
                    "is_active": data.is_active,
                },
            )
    json_log("info", "integration.updated", company_id=data.company_id, integration_id=row["id"], is_active=row["is_active"])
    return {"success": True, "message": "storefront integration updated", "data": store.public_view(row)}


@router.delete("/config")
def delete_config(company_id: str):
    with get_conn() as conn:
        with conn.cursor() as cur:
            existing = _require_integration(cur, company_id)
            row = store.deactivate_integration(cur, existing["id"])
    json_log("info", "integration.deactivated", company_id=company_id, integration_id=row["id"])
    return {"success": True, "message": "storefront integration deactivated", "data": store.public_view(row)}


@router.post("/config/test")
def check_config(data: IntegrationIn):
    """Check credentials against the storefront. Missing fields fall back to the stored configuration."""
    api_url, api_key = data.api_url, data.api_key
    if not (api_url and api_key):
        with get_conn() as conn:
            with conn.cursor() as cur:
                existing = _require_integration(cur, data.company_id)
        api_url = api_url or existing["api_url"]
        api_key = api_key or existing["api_key"]
    _require_valid(api_url, api_key)
    result = client.check_connection({"api_url": api_url, "api_key": api_key})
    if not result.success:
        json_log("warning", "integration.test.failed", company_id=data.company_id, error=result.error)
        return {"success": False, "error": result.error, "status": result.status}
    return {"success": True, "data": result.data}


def _active_catalog(cur, company_id: str) -> list[dict]:
    cur.execute(
        """
        SELECT id, item_code, item_name, description, category, hsn_sac_code, selling_price, external_product_id
        FROM items
        WHERE company_id = %s AND is_active = true
        ORDER BY item_code
        """,
        (company_id,),
    )
    return cur.fetchall()


def _push(integration: dict, push, kind: str, payload: list[dict]):
    if not payload:
        return {"success": True, "message": f"No {kind} to push", "data": {"synced_count": 0}}
    try:
        result = push(integration, payload)
    except StorefrontAPIError as e:
        raise ExternalNotifyError(str(e), details={"status": e.status}) from e
    except ValueError as e:
        raise ExternalNotifyError(f"invalid JSON from storefront: {e}") from e
    json_log("info", f"storefront.push.{kind}", company_id=integration["company_id"], count=len(payload))
    data = result.get("data") if isinstance(result, dict) else result
    return {"success": True, "message": f"{len(payload)} {kind} pushed to storefront", "data": data}


@router.post("/push-products")
def push_products(data: CompanyIn):
    with get_conn() as conn:
        with conn.cursor() as cur:
            integration = store.get_active_integration(cur, data.company_id)
            items = _active_catalog(cur, data.company_id)
    products = [
        {
            "id": item["id"],
            "product_id": item["external_product_id"],
            "sku": item["item_code"],
            "name": item["item_name"],
            "description": item["description"],
            "category": item["category"],
            "hsn_sac_code": item["hsn_sac_code"],
            "price": item["selling_price"],
            "status": "active",
        }
        for item in items
    ]
    return _push(integration, client.push_products, "products", products)


@router.post("/push-pricing")
def push_pricing(data: CompanyIn):
    with get_conn() as conn:
        with conn.cursor() as cur:
            integration = store.get_active_integration(cur, data.company_id)
            items = _active_catalog(cur, data.company_id)
    pricing = [
        {
            "id": item["id"],
            "product_id": item["external_product_id"],
            "sku": item["item_code"],
            "selling_price": item["selling_price"],
        }
        for item in items
    ]
    return _push(integration, client.push_pricing, "pricing", pricing)
