import time
import uuid
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from psycopg import errors as pg_errors
import psycopg

from .config import settings
from .db import close_pools, get_conn
from .errors import BillsyncError
from .logs import json_log
from .routers.bulk_invoices import router as bulk_invoices_router
from .routers.document_numbering import router as document_numbering_router
from .routers.integrations import router as integrations_router
from .routers.inventory import router as inventory_router
from .routers.sync import router as sync_router
from .routers.webhooks import router as webhooks_router

app = FastAPI(title="Billsync API", version=settings.api_version)
STARTED_AT_UTC = datetime.now(timezone.utc)


def _current_request_id(req: Request) -> str:
    return getattr(req.state, "request_id", "") or req.headers.get("x-request-id") or "startup"


def _error_content(message: str, exc: Exception) -> dict:
    content = {"success": False, "error": message}
    if settings.env in {"local", "dev"}:
        content["details"] = str(exc)
    return content


@app.exception_handler(BillsyncError)
def _billsync_error(_req: Request, exc: BillsyncError):
    content = {"success": False, "error": exc.message}
    if exc.details is not None:
        content["details"] = exc.details
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(content))


# Map common DB constraint errors to 4xx so clients get actionable responses
# instead of generic 500s.
@app.exception_handler(pg_errors.ForeignKeyViolation)
def _foreign_key_violation(_req: Request, exc: Exception):
    return JSONResponse(status_code=400, content=_error_content("invalid reference", exc))


@app.exception_handler(pg_errors.UniqueViolation)
def _unique_violation(_req: Request, exc: Exception):
    return JSONResponse(status_code=409, content=_error_content("conflict", exc))


@app.exception_handler(pg_errors.CheckViolation)
def _check_violation(_req: Request, exc: Exception):
    return JSONResponse(status_code=400, content=_error_content("constraint violation", exc))


@app.exception_handler(pg_errors.InvalidTextRepresentation)
def _invalid_text_representation(_req: Request, exc: Exception):
    # e.g. a malformed uuid in company_id
    return JSONResponse(status_code=400, content=_error_content("invalid value", exc))


@app.exception_handler(psycopg.Error)
def _database_error(req: Request, exc: Exception):
    rid = _current_request_id(req)
    json_log("error", "http.request.db_error", request_id=rid, path=req.url.path, error=str(exc))
    content = _error_content("database error", exc)
    content["request_id"] = rid
    return JSONResponse(status_code=500, content=content)


@app.exception_handler(RequestValidationError)
def _request_validation_error(_req: Request, exc: Exception):
    content = {"success": False, "error": "validation failed"}
    if hasattr(exc, "errors"):
        content["errors"] = jsonable_encoder(exc.errors())
    return JSONResponse(status_code=422, content=content)


@app.exception_handler(Exception)
def _unhandled_exception(req: Request, exc: Exception):
    rid = _current_request_id(req)
    json_log(
        "error",
        "http.request.unhandled",
        request_id=rid,
        method=req.method,
        path=req.url.path,
        error=str(exc),
    )
    content = _error_content("Internal server error", exc)
    content["request_id"] = rid
    return JSONResponse(status_code=500, content=content)


# Correlation id + basic structured request logging.
@app.middleware("http")
async def _request_logging(request: Request, call_next):
    rid = (request.headers.get("X-Request-Id") or "").strip() or uuid.uuid4().hex
    request.state.request_id = rid
    started = time.time()
    path = request.url.path
    method = request.method
    client_ip = request.client.host if request.client else None

    try:
        response = await call_next(request)
    except Exception as exc:
        json_log(
            "error",
            "http.request.error",
            request_id=rid,
            method=method,
            path=path,
            client_ip=client_ip,
            duration_ms=int((time.time() - started) * 1000),
            error=str(exc),
        )
        raise

    response.headers["X-Request-Id"] = rid
    response.headers["X-Content-Type-Options"] = "nosniff"
    if not path.startswith("/health"):
        json_log(
            "info",
            "http.request",
            request_id=rid,
            method=method,
            path=path,
            status_code=response.status_code,
            client_ip=client_ip,
            duration_ms=int((time.time() - started) * 1000),
        )
    return response


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(webhooks_router)
app.include_router(sync_router)
app.include_router(integrations_router)
app.include_router(bulk_invoices_router)
app.include_router(document_numbering_router)
app.include_router(inventory_router)


@app.on_event("startup")
def _startup():
    try:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT 1 AS ok")
                cur.fetchone()
        json_log("info", "startup.db_connected", env=settings.env, version=settings.api_version)
    except Exception as exc:
        json_log("warning", "startup.db_probe_failed", env=settings.env, error=str(exc))


@app.on_event("shutdown")
def _shutdown():
    close_pools()


def _db_health():
    try:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT 1 AS ok")
                cur.fetchone()
        return True, None
    except Exception as exc:
        return False, str(exc)


@app.get("/health")
def health(req: Request):
    request_id = _current_request_id(req)
    ok, err = _db_health()
    content = {
        "status": "ok" if ok else "degraded",
        "env": settings.env,
        "db": "ok" if ok else "down",
        "service": "billsync",
        "version": settings.api_version,
        "started_at": STARTED_AT_UTC.isoformat(),
        "request_id": request_id,
    }
    if not ok:
        if settings.env in {"local", "dev"}:
            content["error"] = err
        return JSONResponse(status_code=503, content=content)
    return content


@app.get("/health/live")
def health_live(req: Request):
    return {
        "status": "ok",
        "env": settings.env,
        "service": "billsync",
        "request_id": _current_request_id(req),
    }
