from typing import Optional

from fastapi import APIRouter
from pydantic import BaseModel

from ..db import get_conn
from ..logs import json_log
from ..storefront.integrations import get_active_integration
from ..storefront.sync_runs import create_sync_run, get_sync_runs
from ..validation import SyncType

router = APIRouter(prefix="/integrations/storefront", tags=["storefront"])


class SyncTriggerIn(BaseModel):
    company_id: str
    sync_type: SyncType
    manual: bool = False


@router.post("/sync")
def trigger_sync(data: SyncTriggerIn):
    """Queue a run and return immediately; the sync worker picks it up."""
    with get_conn() as conn:
        with conn.cursor() as cur:
            integration = get_active_integration(cur, data.company_id)
            run = create_sync_run(cur, data.company_id, integration["id"], data.sync_type, manual=data.manual)
    json_log("info", "sync.queued", company_id=data.company_id, sync_id=run["id"], sync_type=data.sync_type)
    return {
        "success": True,
        "message": f"{data.sync_type} sync started",
        "sync_id": run["id"],
        "status": run["status"],
    }


@router.get("/sync")
def sync_status(company_id: str, sync_id: Optional[str] = None):
    with get_conn() as conn:
        with conn.cursor() as cur:
            data = get_sync_runs(cur, company_id, sync_id)
    return {"success": True, "data": data}
