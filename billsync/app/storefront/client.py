"""
HTTP client for the storefront platform: pulls collections for sync runs, pushes
catalog data and reports invoice numbers back. Plain urllib, JSON in and out.
"""
import json
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from typing import Any, Optional

from ..config import settings
from ..errors import ExternalNotifyError
from ..logs import json_log


class StorefrontAPIError(RuntimeError):
    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


@dataclass
class NotifyResult:
    success: bool
    status: Optional[int] = None
    data: Any = None
    error: Optional[str] = None


def _base_url(integration: dict) -> str:
    url = (integration.get("api_url") or "").strip().rstrip("/")
    if not url:
        raise StorefrontAPIError("storefront api_url not configured")
    return url


def _http_json(integration: dict, path: str, method: str = "GET", body: Optional[dict] = None) -> Any:
    url = _base_url(integration) + path
    data = json.dumps(body, default=str).encode("utf-8") if body is not None else None
    req = urllib.request.Request(
        url,
        data=data,
        headers={
            "Authorization": f"Bearer {integration.get('api_key') or ''}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        },
        method=method,
    )
    try:
        with urllib.request.urlopen(req, timeout=settings.storefront_timeout_seconds) as resp:
            raw = resp.read().decode("utf-8")
    except urllib.error.HTTPError as e:
        detail = e.read().decode("utf-8", errors="replace") if hasattr(e, "read") else str(e)
        raise StorefrontAPIError(f"storefront API error: {e.code} {detail[:200]}", status=e.code) from e
    except urllib.error.URLError as e:
        raise StorefrontAPIError(f"storefront unreachable: {e.reason}") from e
    return json.loads(raw) if raw.strip() else None


def fetch_collection(integration: dict, path: str) -> list[dict]:
    payload = _http_json(integration, path)
    # The platform wraps lists as {"data": [...]} but older endpoints return bare lists.
    if isinstance(payload, dict):
        payload = payload.get("data")
    if not isinstance(payload, list):
        raise StorefrontAPIError(f"unexpected response shape from {path}")
    return payload


def push_stock(integration: dict, product_id: str, quantity) -> Any:
    return _http_json(
        integration,
        "/api/products/stock",
        "PUT",
        {"product_id": product_id, "stock_quantity": quantity, "updated_by": "billsync"},
    )


def push_products(integration: dict, products: list[dict]) -> Any:
    return _http_json(integration, "/api/sync/products", "POST", {"products": products})


def push_pricing(integration: dict, pricing: list[dict]) -> Any:
    return _http_json(integration, "/api/sync/pricing", "POST", {"pricing": pricing})


def check_connection(integration: dict) -> NotifyResult:
    """Hit the storefront health endpoint with the given credentials."""
    try:
        data = _http_json(integration, "/api/health")
    except StorefrontAPIError as e:
        return NotifyResult(success=False, status=e.status, error=str(e))
    except ValueError as e:
        return NotifyResult(success=False, error=f"invalid JSON from storefront: {e}")
    return NotifyResult(success=True, status=200, data=data)


def _put_invoice(integration: dict, external_order_id: str, payload: dict) -> Any:
    path = f"/api/orders/{urllib.parse.quote(str(external_order_id), safe='')}/invoice"
    try:
        return _http_json(integration, path, "PUT", payload)
    except StorefrontAPIError as e:
        raise ExternalNotifyError(str(e), details={"status": e.status}) from e
    except ValueError as e:
        raise ExternalNotifyError(f"invalid JSON from storefront: {e}") from e


def notify_invoice(integration: dict, external_order_id: str, payload: dict) -> NotifyResult:
    """
    Best effort: a failure is logged and reported in the result, never raised,
    so the inbound webhook or sync record still succeeds.
    """
    try:
        data = _put_invoice(integration, external_order_id, payload)
    except ExternalNotifyError as e:
        json_log(
            "warning",
            "storefront.notify.failed",
            company_id=integration.get("company_id"),
            external_order_id=external_order_id,
            error=e.message,
        )
        return NotifyResult(success=False, status=(e.details or {}).get("status"), error=e.message)
    return NotifyResult(success=True, status=200, data=data)
