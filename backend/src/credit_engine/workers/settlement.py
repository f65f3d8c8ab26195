"""
Background sweeps for settlement.

- Reconciliation: purchases stuck in processing past the grace period are
  re-queried with their provider and settled or failed.
- Invoice backfill: completed purchases whose invoice generation failed get
  their invoice.

Each item runs in its own savepoint, so one bad purchase never blocks the
rest of the batch.

Usage (with ARQ):
    arq credit_engine.workers.settlement.WorkerSettings
"""
from datetime import timedelta

import structlog
from arq import cron
from arq.connections import RedisSettings

from credit_engine.adapters.registry import get_channel_registry
from credit_engine.config import settings
from credit_engine.database import AsyncSessionLocal
from credit_engine.services.invoice_service import InvoiceService
from credit_engine.services.purchase_service import PurchaseService

logger = structlog.get_logger(__name__)

BATCH_SIZE = 100


async def reconcile_stale_purchases(ctx: dict) -> dict[str, int]:
    """
    Re-query providers for purchases stuck in processing.

    Args:
        ctx: ARQ context

    Returns:
        Counts by outcome
    """
    grace_period = timedelta(minutes=settings.settlement_grace_period_minutes)
    async with AsyncSessionLocal() as db:
        try:
            service = PurchaseService(db, channels=ctx.get("channels") or get_channel_registry())
            summary = await service.reconcile_stale(grace_period, limit=BATCH_SIZE)
            await db.commit()
        except Exception as e:
            await db.rollback()
            logger.exception("reconcile_stale_purchases_failed", exc_info=e)
            raise

    logger.info("reconcile_stale_purchases_completed", **summary)
    return summary


async def backfill_invoices(ctx: dict) -> dict[str, int]:
    """
    Generate invoices missing for completed purchases.

    Args:
        ctx: ARQ context

    Returns:
        Number of invoices generated
    """
    async with AsyncSessionLocal() as db:
        try:
            generated = await InvoiceService(db).backfill_missing_invoices(limit=BATCH_SIZE)
            await db.commit()
        except Exception as e:
            await db.rollback()
            logger.exception("backfill_invoices_failed", exc_info=e)
            raise

    return {"generated": generated}


async def startup(ctx: dict) -> None:
    ctx["channels"] = get_channel_registry()
    logger.info("settlement_worker_started")


class WorkerSettings:
    """
    ARQ worker settings for settlement sweeps.

    Schedule:
    - Reconciliation: every 5 minutes
    - Invoice backfill: every 15 minutes
    """

    functions = [reconcile_stale_purchases, backfill_invoices]

    cron_jobs = [
        cron(reconcile_stale_purchases, minute=set(range(0, 60, 5)), timeout=240, unique=True),
        cron(backfill_invoices, minute=set(range(0, 60, 15)), timeout=600, unique=True),
    ]

    on_startup = startup
    redis_settings = RedisSettings.from_dsn(str(settings.arq_redis_url))

    # Job retention
    keep_result = 86400

    max_jobs = 10
