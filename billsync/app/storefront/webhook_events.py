"""
Durable audit trail for inbound webhooks.

received -> processing -> completed | failed. The terminal update only matches
rows that are not terminal yet, so a second finish() is a no-op.
"""
import json
from typing import Optional


def record_received(cur, company_id: str, integration_id: Optional[str], event_type: str, event_key: str, body: dict) -> str:
    cur.execute(
        """
        INSERT INTO webhook_events
          (id, company_id, integration_id, event_type, event_key, event_data, status, received_at)
        VALUES
          (gen_random_uuid(), %s, %s, %s, %s, %s::jsonb, 'received', now())
        RETURNING id
        """,
        (company_id, integration_id, event_type, event_key, json.dumps(body, default=str)),
    )
    return cur.fetchone()["id"]


def mark_processing(cur, event_id: str) -> None:
    cur.execute(
        "UPDATE webhook_events SET status = 'processing' WHERE id = %s AND status = 'received'",
        (event_id,),
    )


def finish(cur, event_id: str, status: str, response: Optional[dict] = None, error_message: Optional[str] = None) -> bool:
    cur.execute(
        """
        UPDATE webhook_events
        SET status = %s,
            response_data = %s::jsonb,
            error_message = %s,
            processed_at = now()
        WHERE id = %s AND status IN ('received', 'processing')
        RETURNING id
        """,
        (status, json.dumps(response, default=str) if response is not None else None, error_message, event_id),
    )
    return cur.fetchone() is not None


def find_completed_duplicate(cur, company_id: str, event_key: str, exclude_id: Optional[str] = None) -> Optional[dict]:
    cur.execute(
        """
        SELECT id, response_data
        FROM webhook_events
        WHERE company_id = %s AND event_key = %s AND status = 'completed' AND id <> %s
        ORDER BY processed_at
        LIMIT 1
        """,
        (company_id, event_key, exclude_id or "00000000-0000-0000-0000-000000000000"),
    )
    return cur.fetchone()
