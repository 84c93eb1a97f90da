#!/usr/bin/env python3
"""
Detached runner for storefront sync runs.

The API only queues a `sync_runs` row; this worker claims queued runs
(FOR UPDATE SKIP LOCKED, so several workers can run side by side) and
executes them.

  python3 -m billsync.workers.sync_worker --once
  python3 -m billsync.workers.sync_worker --sleep 2
"""
import argparse
import sys
import time
import traceback

import psycopg
from psycopg.rows import dict_row

from billsync.app.config import settings
from billsync.app.logs import json_log
from billsync.app.storefront.sync_runs import claim_next_run, run_sync


def process_pending_runs(conn, limit: int = 5) -> int:
    ran = 0
    for _ in range(max(1, int(limit or 1))):
        run = claim_next_run(conn)
        if not run:
            break
        try:
            run_sync(conn, run)
        except Exception as ex:
            # run_sync finalises the run itself; this only guards the loop.
            json_log("error", "worker.sync.error", sync_id=run["id"], error=str(ex))
            traceback.print_exc(file=sys.stderr)
            conn.rollback()
        ran += 1
    return ran


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--db", default=settings.db_url)
    parser.add_argument("--limit", type=int, default=5, help="Max runs per pass")
    parser.add_argument("--sleep", type=float, default=2.0)
    parser.add_argument("--once", action="store_true", help="Run a single pass and exit")
    args = parser.parse_args()

    while True:
        did_work = False
        try:
            with psycopg.connect(args.db, row_factory=dict_row) as conn:
                did_work = process_pending_runs(conn, args.limit) > 0
        except psycopg.OperationalError as ex:
            # Database restarts must not kill the worker; retry on the next pass.
            json_log("error", "worker.sync.error", error=str(ex))

        if args.once:
            break

        time.sleep(0 if did_work else args.sleep)


if __name__ == "__main__":
    main()
