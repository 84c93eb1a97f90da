import secrets
import urllib.parse
from typing import Optional

from ..config import settings
from ..errors import NotFoundError

_COLUMNS = "id, company_id, integration_type, is_active, webhook_secret, api_url, api_key, created_at, updated_at"
MIN_API_KEY_LENGTH = 10
WEBHOOK_PATH = "/integrations/storefront/webhook"


def get_active_integration(cur, company_id: str, integration_type: Optional[str] = None) -> dict:
    cur.execute(
        """
        SELECT id, company_id, integration_type, webhook_secret, api_url, api_key
        FROM integrations
        WHERE company_id = %s AND integration_type = %s AND is_active = true
        ORDER BY created_at DESC
        LIMIT 1
        """,
        (company_id, integration_type or settings.integration_type),
    )
    row = cur.fetchone()
    if not row:
        raise NotFoundError("storefront integration not found or inactive")
    return row


def get_integration(cur, company_id: str, integration_type: Optional[str] = None) -> Optional[dict]:
    """Latest configuration for the company, active or not."""
    cur.execute(
        f"""
        SELECT {_COLUMNS}
        FROM integrations
        WHERE company_id = %s AND integration_type = %s
        ORDER BY created_at DESC
        LIMIT 1
        """,
        (company_id, integration_type or settings.integration_type),
    )
    return cur.fetchone()


def validate_api_config(api_url: Optional[str], api_key: Optional[str]) -> list[str]:
    errors: list[str] = []
    url = (api_url or "").strip()
    if not url:
        errors.append("API URL is required")
    else:
        parsed = urllib.parse.urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            errors.append("API URL must be a valid URL")
    key = api_key or ""
    if not key:
        errors.append("API Key is required")
    elif len(key) < MIN_API_KEY_LENGTH:
        errors.append(f"API Key must be at least {MIN_API_KEY_LENGTH} characters")
    return errors


def mask_secret(value: Optional[str], *, keep: int = 4) -> str:
    if not value:
        return ""
    tail = value[-keep:] if keep and len(value) > keep else ""
    return "********" + tail


def public_view(row: dict) -> dict:
    out = dict(row)
    out["api_key"] = mask_secret(row.get("api_key"))
    out["webhook_secret"] = mask_secret(row.get("webhook_secret"), keep=0)
    out["webhook_path"] = WEBHOOK_PATH
    return out


def create_integration(
    cur,
    company_id: str,
    *,
    api_url: str,
    api_key: str,
    webhook_secret: Optional[str] = None,
    integration_type: Optional[str] = None,
) -> dict:
    cur.execute(
        f"""
        INSERT INTO integrations (company_id, integration_type, is_active, webhook_secret, api_url, api_key)
        VALUES (%s, %s, true, %s, %s, %s)
        RETURNING {_COLUMNS}
        """,
        (
            company_id,
            integration_type or settings.integration_type,
            webhook_secret or secrets.token_hex(32),
            api_url.strip().rstrip("/"),
            api_key,
        ),
    )
    return cur.fetchone()


def update_integration(cur, existing: dict, changes: dict) -> dict:
    """
    Apply the provided fields on top of the stored row. A blank webhook secret
    keeps the current one.
    """
    merged = {**existing, **{k: v for k, v in changes.items() if v not in (None, "")}}
    if changes.get("api_url"):
        merged["api_url"] = changes["api_url"].strip().rstrip("/")
    if not merged.get("webhook_secret"):
        merged["webhook_secret"] = secrets.token_hex(32)
    cur.execute(
        f"""
        UPDATE integrations
        SET api_url = %s, api_key = %s, webhook_secret = %s, is_active = %s, updated_at = now()
        WHERE id = %s
        RETURNING {_COLUMNS}
        """,
        (merged["api_url"], merged["api_key"], merged["webhook_secret"], bool(merged["is_active"]), existing["id"]),
    )
    return cur.fetchone()


def deactivate_integration(cur, integration_id: str) -> dict:
    # Webhook events and sync runs keep pointing at the row.
    cur.execute(
        f"""
        UPDATE integrations
        SET is_active = false, updated_at = now()
        WHERE id = %s
        RETURNING {_COLUMNS}
        """,
        (integration_id,),
    )
    return cur.fetchone()
