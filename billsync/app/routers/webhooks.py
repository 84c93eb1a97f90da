import json
from typing import Optional

from fastapi import APIRouter, Header, Request, Response
from fastapi.concurrency import run_in_threadpool

from ..config import settings
from ..db import get_conn
from ..errors import BillsyncError, InvalidSignature, ValidationError
from ..logs import json_log
from ..security import event_key_for, verify_webhook_signature
from ..storefront import pipeline, webhook_events
from ..storefront.integrations import get_active_integration

router = APIRouter(prefix="/integrations/storefront", tags=["storefront"])

SIGNATURE_HEADER = "X-Storefront-Signature"
EVENT_ID_HEADER = "X-Storefront-Event-Id"


def _parse_body(raw_body: bytes) -> tuple[str, str, dict]:
    try:
        body = json.loads(raw_body or b"{}")
    except ValueError as e:
        raise ValidationError("request body must be JSON") from e
    if not isinstance(body, dict):
        raise ValidationError("request body must be a JSON object")
    company_id = str(body.get("company_id") or "").strip()
    event_type = str(body.get("event_type") or "").strip()
    if not company_id or not event_type:
        raise ValidationError("Company ID and event type are required")
    data = body.get("data")
    return company_id, event_type, data if isinstance(data, dict) else {}


def _finish(conn, event_id: str, status: str, *, response: Optional[dict] = None, error: Optional[str] = None) -> None:
    with conn.transaction():
        with conn.cursor() as cur:
            webhook_events.finish(cur, event_id, status, response=response, error_message=error)


def handle_delivery(raw_body: bytes, signature: Optional[str], event_id_header: Optional[str] = None) -> tuple[int, dict]:
    """
    One webhook delivery, end to end. Returns (status_code, body).

    The event row is committed as 'received' first so that every delivery,
    including rejected ones, leaves an audit record. Processing runs in its
    own transaction and the terminal status is written afterwards.
    """
    company_id, event_type, data = _parse_body(raw_body)
    event_key = event_key_for(raw_body, event_id_header)

    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                integration = get_active_integration(cur, company_id)
                event_id = webhook_events.record_received(
                    cur, company_id, integration["id"], event_type, event_key, data
                )
        json_log("info", "webhook.received", company_id=company_id, event_type=event_type, event_id=event_id)

        try:
            verify_webhook_signature(
                integration.get("webhook_secret"),
                raw_body,
                signature,
                required=settings.webhook_require_signature,
            )
        except InvalidSignature as e:
            _finish(conn, event_id, "failed", error=e.message)
            json_log("warning", "webhook.rejected", company_id=company_id, event_id=event_id, error=e.message)
            raise

        with conn.transaction():
            with conn.cursor() as cur:
                duplicate = webhook_events.find_completed_duplicate(cur, company_id, event_key, exclude_id=event_id)
                if not duplicate:
                    webhook_events.mark_processing(cur, event_id)
        if duplicate:
            # Redelivery of an event we already completed: answer as before, do nothing.
            content = {**(duplicate.get("response_data") or {}), "duplicate_of": str(duplicate["id"])}
            _finish(conn, event_id, "completed", response=content)
            json_log("info", "webhook.completed", company_id=company_id, event_id=event_id, duplicate_of=duplicate["id"])
            return 200, content

        try:
            result = pipeline.process_event(conn, integration, event_type, data)
        except BillsyncError as e:
            conn.rollback()
            _finish(conn, event_id, "failed", error=e.message)
            json_log("warning", "webhook.failed", company_id=company_id, event_id=event_id, error=e.message)
            raise
        except Exception as e:
            conn.rollback()
            _finish(conn, event_id, "failed", error=str(e))
            json_log("error", "webhook.failed", company_id=company_id, event_id=event_id, error=str(e))
            raise

        content = result.as_response()
        _finish(
            conn,
            event_id,
            "completed" if result.success else "failed",
            response=content,
            error=result.error,
        )
        json_log(
            "info" if result.success else "warning",
            "webhook.completed" if result.success else "webhook.failed",
            company_id=company_id,
            event_type=event_type,
            event_id=event_id,
            error=result.error,
        )
        return (200 if result.success else 400), content


@router.post("/webhook")
async def storefront_webhook(
    request: Request,
    response: Response,
    x_storefront_signature: Optional[str] = Header(None, alias=SIGNATURE_HEADER),
    x_storefront_event_id: Optional[str] = Header(None, alias=EVENT_ID_HEADER),
):
    # The signature covers the exact bytes sent, so read them before any parsing.
    raw_body = await request.body()
    status_code, content = await run_in_threadpool(
        handle_delivery, raw_body, x_storefront_signature, x_storefront_event_id
    )
    response.status_code = status_code
    return content
