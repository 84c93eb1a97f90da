"""
Pull-side synchronisation with the storefront.

The trigger endpoint only inserts a `sync_runs` row (status 'running',
claimed_at NULL) and returns its id. A worker claims unclaimed rows with
FOR UPDATE SKIP LOCKED, runs them record by record (each record in its own
transaction, failures counted and summarised) and finishes the row exactly once.
"""
import json
from typing import Callable, Optional

from ..amounts import to_decimal
from ..config import settings
from ..errors import NotFoundError
from ..inventory_ledger import adjust, apply
from ..logs import json_log
from ..resolver import resolve_customer, upsert_item_from_product
from . import client, pipeline
from .integrations import get_active_integration

RUN_COLUMNS = """
    id, company_id, integration_id, sync_type, status, manual, started_at, claimed_at, completed_at,
    duration_seconds, records_processed, errors, result_summary, error_message
"""
RECENT_RUNS_LIMIT = 10

PRODUCTS_PATH = "/api/products"
CUSTOMERS_PATH = "/api/customers"
ORDERS_PATH = "/api/orders?status=confirmed"


class SyncTally:
    def __init__(self, summary_limit: Optional[int] = None):
        self.processed = 0
        self.errors = 0
        self.summary: list[str] = []
        self._limit = settings.sync_summary_limit if summary_limit is None else summary_limit

    def _note(self, line: str) -> None:
        if len(self.summary) < self._limit:
            self.summary.append(line)

    def ok(self, line: str) -> None:
        self.processed += 1
        self._note(line)

    def skip(self, line: str) -> None:
        self._note(line)

    def fail(self, line: str) -> None:
        self.errors += 1
        self._note(line)


def create_sync_run(cur, company_id: str, integration_id: str, sync_type: str, *, manual: bool = False) -> dict:
    cur.execute(
        f"""
        INSERT INTO sync_runs (id, company_id, integration_id, sync_type, status, manual)
        VALUES (gen_random_uuid(), %s, %s, %s, 'running', %s)
        RETURNING {RUN_COLUMNS}
        """,
        (company_id, integration_id, sync_type, bool(manual)),
    )
    return cur.fetchone()


def get_sync_runs(cur, company_id: str, sync_id: Optional[str] = None):
    if sync_id:
        cur.execute(
            f"SELECT {RUN_COLUMNS} FROM sync_runs WHERE company_id = %s AND id = %s",
            (company_id, sync_id),
        )
        row = cur.fetchone()
        if not row:
            raise NotFoundError("sync run not found")
        return row
    cur.execute(
        f"""
        SELECT {RUN_COLUMNS}
        FROM sync_runs
        WHERE company_id = %s
        ORDER BY started_at DESC
        LIMIT %s
        """,
        (company_id, RECENT_RUNS_LIMIT),
    )
    return cur.fetchall()


def claim_next_run(conn) -> Optional[dict]:
    with conn.transaction():
        with conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT {RUN_COLUMNS}
                FROM sync_runs
                WHERE status = 'running' AND claimed_at IS NULL
                ORDER BY started_at ASC
                FOR UPDATE SKIP LOCKED
                LIMIT 1
                """
            )
            run = cur.fetchone()
            if not run:
                return None
            cur.execute(
                f"UPDATE sync_runs SET claimed_at = now() WHERE id = %s RETURNING {RUN_COLUMNS}",
                (run["id"],),
            )
            return cur.fetchone()


def finish_run(
    cur,
    run_id: str,
    status: str,
    *,
    tally: Optional[SyncTally] = None,
    error_message: Optional[str] = None,
) -> Optional[dict]:
    # Guarded on status so a run is finalised exactly once.
    cur.execute(
        f"""
        UPDATE sync_runs
        SET status = %s,
            completed_at = now(),
            duration_seconds = GREATEST(0, EXTRACT(EPOCH FROM (now() - started_at)))::int,
            records_processed = %s,
            errors = %s,
            result_summary = %s::jsonb,
            error_message = %s
        WHERE id = %s AND status = 'running'
        RETURNING {RUN_COLUMNS}
        """,
        (
            status,
            tally.processed if tally else 0,
            tally.errors if tally else 0,
            json.dumps(tally.summary if tally else []),
            error_message,
            run_id,
        ),
    )
    return cur.fetchone()


def _record_failed(integration: dict, kind: str, label, error: Exception) -> None:
    json_log(
        "warning",
        "sync.record.failed",
        company_id=integration.get("company_id"),
        sync_type=kind,
        record=label,
        error=str(error),
    )


def sync_products(conn, integration: dict) -> SyncTally:
    tally = SyncTally()
    company_id = integration["company_id"]
    for product in client.fetch_collection(integration, PRODUCTS_PATH):
        label = product.get("name") or product.get("sku") or product.get("id")
        try:
            with conn.transaction():
                with conn.cursor() as cur:
                    res = upsert_item_from_product(cur, company_id, product)
                    stock = product.get("stock_quantity")
                    if stock not in (None, ""):
                        reference = {
                            "reference_type": "storefront_sync",
                            "reference_id": None,
                            "reference_number": f"SF-PRODUCT-{product.get('id')}",
                        }
                        if res.action == "created":
                            if to_decimal(stock) > 0:
                                apply(cur, company_id, res.id, stock, reference, notes="Opening stock from storefront")
                        else:
                            adjust(
                                cur,
                                company_id,
                                res.id,
                                res.entity["current_stock"],
                                stock,
                                reference,
                                notes="Stock reconciled from storefront product sync",
                            )
        except Exception as e:
            tally.fail(f"Error: {label} - {e}")
            _record_failed(integration, "products", label, e)
            continue
        tally.ok(f"{'Created' if res.action == 'created' else 'Updated'}: {label}")
    return tally


def sync_customers(conn, integration: dict) -> SyncTally:
    tally = SyncTally()
    company_id = integration["company_id"]
    for customer in client.fetch_collection(integration, CUSTOMERS_PATH):
        label = customer.get("name") or customer.get("email") or customer.get("id")
        try:
            with conn.transaction():
                with conn.cursor() as cur:
                    res = resolve_customer(cur, company_id, customer, force_update=True)
        except Exception as e:
            tally.fail(f"Error: {label} - {e}")
            _record_failed(integration, "customers", label, e)
            continue
        tally.ok(f"{'Created' if res.action == 'created' else 'Updated'}: {res.entity.get('name')}")
    return tally


def sync_orders(conn, integration: dict) -> SyncTally:
    tally = SyncTally()
    for order in client.fetch_collection(integration, ORDERS_PATH):
        label = order.get("order_number") or order.get("id")
        try:
            # Same path as an order.created webhook, so idempotency and notification match.
            result = pipeline.process_event(conn, integration, "order.created", {"order": order})
        except Exception as e:
            tally.fail(f"Error: Order {label} - {e}")
            _record_failed(integration, "orders", label, e)
            continue
        if result.data.get("duplicate"):
            tally.skip(f"Skipped: Order {label} already processed as {result.data['invoice_number']}")
        else:
            tally.ok(f"Created invoice {result.data['invoice_number']} for order {label}")
    return tally


def sync_inventory(conn, integration: dict) -> SyncTally:
    tally = SyncTally()
    with conn.transaction():
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT id, item_code, current_stock, external_product_id
                FROM items
                WHERE company_id = %s AND external_product_id IS NOT NULL
                ORDER BY item_code
                """,
                (integration["company_id"],),
            )
            items = cur.fetchall()
    for item in items:
        try:
            client.push_stock(integration, item["external_product_id"], item["current_stock"])
        except Exception as e:
            tally.fail(f"Error: {item['item_code']} - {e}")
            _record_failed(integration, "inventory", item["item_code"], e)
            continue
        tally.ok(f"Updated stock for {item['item_code']}: {item['current_stock']}")
    return tally


SYNC_RUNNERS: dict[str, Callable[[object, dict], SyncTally]] = {
    "products": sync_products,
    "customers": sync_customers,
    "orders": sync_orders,
    "inventory": sync_inventory,
}


def run_sync(conn, run: dict) -> Optional[dict]:
    """
    Execute a claimed run and finalise it. Record-level errors are counted in
    the tally; anything that stops the run itself (storefront unreachable,
    integration gone) marks the run failed. Returns the finished row, or None
    when another worker already finalised it.
    """
    company_id = run["company_id"]
    json_log("info", "sync.started", company_id=company_id, sync_id=run["id"], sync_type=run["sync_type"])
    try:
        runner = SYNC_RUNNERS.get(run["sync_type"])
        if runner is None:
            raise ValueError(f"Unknown sync type: {run['sync_type']}")
        with conn.transaction():
            with conn.cursor() as cur:
                integration = get_active_integration(cur, company_id)
        tally = runner(conn, integration)
    except Exception as e:
        conn.rollback()
        with conn.transaction():
            with conn.cursor() as cur:
                finished = finish_run(cur, run["id"], "failed", error_message=str(e))
        json_log("error", "sync.failed", company_id=company_id, sync_id=run["id"], error=str(e))
        return finished

    with conn.transaction():
        with conn.cursor() as cur:
            finished = finish_run(cur, run["id"], "completed", tally=tally)
    json_log(
        "info",
        "sync.completed",
        company_id=company_id,
        sync_id=run["id"],
        sync_type=run["sync_type"],
        processed=tally.processed,
        errors=tally.errors,
    )
    return finished
