"""
backend/betsettle/workers/recovery_sweep.py

Purpose:
    Startup (and low-frequency) reconciliation after downtime or crashes:
      1. pending wagers past their estimated resolution are re-armed and
         evaluated as if their timer had just fired;
      2. terminal wagers whose payout credit was never confirmed get it
         applied (idempotent per wager);
      3. stake debits without a stored wager are returned to the owner.
    Running the sweep any number of times never double-credits.

Dependencies:
    - betsettle.services.wager_store
    - betsettle.services.ledger_service
    - betsettle.services.settlement_service
    - betsettle.workers.settlement_scheduler
"""

import logging
from datetime import timedelta

from betsettle.config import settings
from betsettle.services import ledger_service, settlement_service, wager_store
from betsettle.services.audit_service import SYSTEM_ACTOR, log_audit
from betsettle.utils import ensure_utc, utcnow
from betsettle.workers._state import set_synced
from betsettle.workers.settlement_scheduler import evaluate_many

logger = logging.getLogger("betsettle.recovery_sweep")

_WORKER_ID = "recovery_sweep"


async def _recover_overdue(force: bool) -> tuple[int, dict[str, int]]:
    now = utcnow()
    overdue = await wager_store.find_overdue_pending(now)
    to_evaluate = []
    for wager in overdue:
        schedule = wager.get("schedule") or {}
        next_check_at = schedule.get("next_check_at")
        # The periodic run leaves backoff in place; startup re-checks everything.
        if not force and next_check_at is not None and ensure_utc(next_check_at) > now:
            continue
        if await wager_store.rearm(wager["_id"], now):
            to_evaluate.append(wager["_id"])
    if not to_evaluate:
        return 0, {}
    return len(to_evaluate), await evaluate_many(to_evaluate)


async def _recover_payouts() -> int:
    applied = 0
    for wager in await wager_store.find_unapplied_payouts():
        if await settlement_service.apply_payout(wager):
            applied += 1
            logger.warning(
                "Recovered unapplied payout: wager=%s owner=%s amount=%.2f",
                wager["_id"], wager["owner_id"], wager["payout"],
            )
    return applied


async def _reconcile_orphan_stakes() -> int:
    cutoff = utcnow() - timedelta(minutes=settings.ORPHAN_STAKE_GRACE_MINUTES)
    reversed_count = 0
    for entry in await ledger_service.find_unconfirmed_stakes(cutoff):
        wager_id = entry["wager_id"]
        owner_id = entry["owner_id"]
        if await wager_store.exists(wager_id):
            await ledger_service.confirm_stake(wager_id)
            continue
        if not await ledger_service.is_applied(owner_id, ledger_service.stake_key(wager_id)):
            await ledger_service.void_stake_intent(wager_id)
            continue

        stake = abs(entry["amount"])
        await ledger_service.reverse_stake(
            owner_id, wager_id, stake, "Stake returned: wager was never stored",
        )
        reversed_count += 1
        logger.error("Orphan stake reversed: wager=%s owner=%s amount=%.2f", wager_id, owner_id, stake)
        await log_audit(
            actor_id=SYSTEM_ACTOR,
            target_id=wager_id,
            action="ORPHAN_STAKE_REVERSED",
            metadata={"owner_id": owner_id, "amount": stake},
        )
    return reversed_count


async def run_recovery_sweep(force: bool = True) -> dict:
    """Run all three recovery passes. Returns a summary of what was done."""
    rearmed, outcomes = await _recover_overdue(force)
    payouts = await _recover_payouts()
    orphans = await _reconcile_orphan_stakes()

    summary = {
        "rearmed": rearmed,
        "outcomes": outcomes,
        "payouts_applied": payouts,
        "orphan_stakes_reversed": orphans,
    }
    await set_synced(_WORKER_ID, **summary)
    if rearmed or payouts or orphans:
        logger.info("Recovery sweep: %s", summary)
    else:
        logger.debug("Recovery sweep: nothing to recover")
    return summary


async def run_periodic_sweep() -> None:
    try:
        await run_recovery_sweep(force=False)
    except Exception:
        logger.exception("Periodic recovery sweep failed")
