#!/usr/bin/env python
"""
Reconciliation Worker

Background process that re-syncs jobs from Square bookings on a fixed
interval (yesterday 00:00 through tomorrow 23:59:59 UTC). Use this or an
external cron hitting GET /api/cron/reconcile, not both.

Run with:
    python worker.py

Or with environment:
    RECONCILE_INTERVAL_MINUTES=5 python worker.py
    python worker.py --once --dry-run
"""

import argparse
import os
import sys
import time
import logging
import signal
import uuid

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.interval import IntervalTrigger

from app.config import settings
from app.database import SessionLocal, create_tables
from app.services.errors import UpstreamError
from app.services.field_provenance import FieldProvenanceMerger
from app.services.job_store import JobStore
from app.services.job_sync import JobSyncService
from app.services.reconciliation import ReconciliationEngine, get_time_range_with_buffer
from app.services.square_client import get_square_clients
from app.utils.logging_config import setup_logging, set_request_context, clear_request_context

logger = logging.getLogger("worker")

scheduler = None


def signal_handler(signum, frame):
    """Handle shutdown signals gracefully"""
    logger.info("Received shutdown signal, finishing current run...")
    if scheduler is not None and scheduler.running:
        scheduler.shutdown(wait=True)


def run_reconciliation(dry_run: bool = False):
    """One reconciliation pass with its own session"""
    request_id = f"worker-{uuid.uuid4().hex[:8]}"
    set_request_context(request_id, "reconciliation")
    start_time = time.time()

    clients = get_square_clients()
    db = SessionLocal()
    try:
        store = JobStore(db)
        merger = FieldProvenanceMerger(
            clients.customers,
            clients.catalog,
            customer_cache_hours=settings.customer_cache_hours
        )
        engine = ReconciliationEngine(
            clients.bookings,
            JobSyncService(store, merger, request_id=request_id),
            max_pages=settings.reconcile_max_pages,
            page_size=settings.reconcile_page_size,
            request_id=request_id
        )
        start_at_min, start_at_max = get_time_range_with_buffer()
        summary = engine.run(
            start_at_min,
            start_at_max,
            location_id=settings.square_location_id or None,
            dry_run=dry_run
        )
        logger.info(
            f"[{request_id}] created={summary.created} updated={summary.updated} "
            f"cancelled={summary.cancelled} errors={len(summary.errors)} | "
            f"{time.time() - start_time:.2f}s"
        )
        return summary

    except UpstreamError as e:
        # Next tick retries; the API stays up
        logger.error(f"[{request_id}] Reconciliation aborted: {e.message}")
        return None

    finally:
        db.close()
        clear_request_context()


def run_worker(dry_run: bool = False):
    global scheduler

    interval = settings.reconcile_interval_minutes
    logger.info("=" * 50)
    logger.info("Starting Reconciliation Worker")
    logger.info(f"Interval: {interval} min | dry_run={dry_run}")
    logger.info("=" * 50)

    scheduler = BlockingScheduler(timezone="UTC")
    scheduler.add_job(
        run_reconciliation,
        IntervalTrigger(minutes=interval),
        kwargs={"dry_run": dry_run},
        id="reconcile_bookings",
        max_instances=1,
        coalesce=True,
    )

    # First pass immediately, then on the interval
    run_reconciliation(dry_run=dry_run)
    scheduler.start()

    logger.info("Worker shutdown complete")


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Square booking reconciliation worker")
    parser.add_argument("--once", action="store_true", help="Run a single pass and exit")
    parser.add_argument("--dry-run", action="store_true", help="Count changes without writing")
    return parser.parse_args(argv)


if __name__ == "__main__":
    args = parse_args()
    setup_logging(settings.log_level, json_format=settings.log_json, include_uvicorn=False)
    create_tables()

    # Register signal handlers for graceful shutdown
    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        if args.once:
            run_reconciliation(dry_run=args.dry_run)
        else:
            run_worker(dry_run=args.dry_run)
    except (KeyboardInterrupt, SystemExit):
        logger.info("Worker interrupted")
    except Exception as e:
        logger.critical(f"Worker crashed: {e}")
        sys.exit(1)
