"""
backend/betsettle/workers/settlement_scheduler.py

Purpose:
    Drives settlement. The schedule itself is durable (wagers.schedule), so
    a single interval tick picks up every due wager, with bounded
    concurrency. For punctuality the scheduler also keeps one in-memory
    `date` job per armed wager, replaced on every re-arm; losing those jobs
    on restart is harmless because the tick and the recovery sweep cover
    them.

Dependencies:
    - apscheduler
    - betsettle.services.settlement_service
    - betsettle.services.wager_store
"""

import asyncio
import logging
from datetime import datetime

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from betsettle.config import settings
from betsettle.services import settlement_service, wager_store
from betsettle.utils import ensure_utc, utcnow

logger = logging.getLogger("betsettle.settlement_scheduler")

scheduler = AsyncIOScheduler(timezone="UTC")

TICK_JOB_ID = "settlement_tick"
SWEEP_JOB_ID = "recovery_sweep"


def _job_id(wager_id: str) -> str:
    return f"settle:{wager_id}"


def arm(wager_id: str, run_at: datetime) -> None:
    """Schedule an evaluation of `wager_id` at `run_at`. No-op while the scheduler is stopped."""
    if not scheduler.running:
        return
    scheduler.add_job(
        _fire,
        "date",
        run_date=ensure_utc(run_at),
        args=[wager_id],
        id=_job_id(wager_id),
        replace_existing=True,
        misfire_grace_time=None,
    )


async def _fire(wager_id: str) -> None:
    try:
        await settlement_service.evaluate_wager(wager_id)
    except Exception:
        logger.exception("Armed settlement for wager %s failed", wager_id)


async def evaluate_many(wager_ids: list, concurrency: int | None = None) -> dict[str, int]:
    """Evaluate wagers with at most `concurrency` in flight. Returns outcome counts."""
    semaphore = asyncio.Semaphore(concurrency or settings.SETTLEMENT_WORKER_CONCURRENCY)
    counts: dict[str, int] = {}

    async def _one(wager_id) -> None:
        async with semaphore:
            try:
                result = await settlement_service.evaluate_wager(wager_id)
                outcome = result["outcome"]
            except Exception:
                logger.exception("Settlement of wager %s failed", wager_id)
                outcome = "failed"
            counts[outcome] = counts.get(outcome, 0) + 1

    await asyncio.gather(*(_one(wid) for wid in wager_ids))
    return counts


async def run_settlement_tick() -> dict[str, int]:
    """Evaluate every pending wager whose next check is due and that nobody holds a lease on."""
    due = await wager_store.find_due_wager_ids(utcnow(), settings.SETTLEMENT_BATCH_SIZE)
    if not due:
        return {}
    counts = await evaluate_many(due)
    logger.info("Settlement tick: %d due wagers, outcomes %s", len(due), counts)
    return counts


def start_scheduler() -> None:
    from betsettle.workers.recovery_sweep import run_periodic_sweep

    scheduler.add_job(
        run_settlement_tick,
        "interval",
        seconds=settings.SETTLEMENT_TICK_SECONDS,
        id=TICK_JOB_ID,
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    if settings.RECOVERY_SWEEP_INTERVAL_MINUTES > 0:
        scheduler.add_job(
            run_periodic_sweep,
            "interval",
            minutes=settings.RECOVERY_SWEEP_INTERVAL_MINUTES,
            id=SWEEP_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
    if not scheduler.running:
        scheduler.start()
    logger.info(
        "Settlement scheduler started (tick=%ss, sweep=%smin)",
        settings.SETTLEMENT_TICK_SECONDS, settings.RECOVERY_SWEEP_INTERVAL_MINUTES,
    )


def stop_scheduler() -> None:
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Settlement scheduler stopped")
