"""
backend/betsettle/services/settlement_service.py

Purpose:
    The settlement trigger. Claims a pending wager (per-wager lease), fetches
    the results of its unresolved fixtures, runs the outcome calculators and
    the combination resolver, then performs the single terminal transition
    and the idempotent ledger credit. Anything short of a decision is a
    reschedule; exhausting the retry horizon moves the wager to `error` for
    manual review without touching the balance.

Dependencies:
    - betsettle.services.wager_store
    - betsettle.services.ledger_service
    - betsettle.services.outcome_calculators
    - betsettle.services.combination_resolver
    - betsettle.services.fixture_result_service
"""

from __future__ import annotations

import asyncio
import logging
import os
import socket
import uuid
from datetime import datetime, timedelta
from typing import Any

from bson import ObjectId

from betsettle.config import settings
from betsettle.models.fixture import FixtureResult
from betsettle.models.ledger import LedgerEntryType
from betsettle.models.wager import TERMINAL_STATUSES, LegStatus, SettlementDecision, WagerStatus
from betsettle.services import combination_resolver, ledger_service, outcome_calculators, wager_store
from betsettle.services.audit_service import SYSTEM_ACTOR, log_audit
from betsettle.services.errors import SettlementError, TransientFetchFailure, WagerNotFound
from betsettle.services.fixture_result_service import get_gateway
from betsettle.utils import ensure_utc, utcnow

logger = logging.getLogger("betsettle.settlement_service")

_PROCESS_ID = f"{socket.gethostname()}:{os.getpid()}"
_MAX_TRANSIENT_DELAY_MINUTES = 60


def _new_lease_owner() -> str:
    return f"{_PROCESS_ID}:{uuid.uuid4().hex[:8]}"


async def evaluate_wager(wager_id: str | ObjectId) -> dict[str, Any]:
    """Run one settlement attempt for a wager.

    Safe to call any number of times, concurrently: a terminal wager is a
    no-op (apart from finishing an unconfirmed payout credit) and a wager
    already being evaluated elsewhere is left alone.
    """
    oid = wager_store.to_object_id(wager_id)
    if oid is None:
        raise WagerNotFound("Wager not found.")

    lease_owner = _new_lease_owner()
    claimed = await wager_store.claim_for_evaluation(
        oid, lease_owner, settings.SETTLEMENT_LEASE_SECONDS,
    )
    if claimed is None:
        wager = await wager_store.get_wager(oid)
        if wager is None:
            raise WagerNotFound("Wager not found.")
        if wager["status"] in TERMINAL_STATUSES:
            if wager.get("payout_applied") is False:
                await apply_payout(wager)
            return _result(wager, "already_settled")
        return _result(wager, "in_progress")

    try:
        return await _evaluate_claimed(claimed, lease_owner)
    except Exception as exc:
        logger.exception("Settlement attempt failed for wager %s", oid)
        return await _reschedule(
            claimed, lease_owner, legs=None, transient=True, error=f"Unexpected error: {exc}",
        )


def _result(wager: dict, outcome: str, **extra: Any) -> dict[str, Any]:
    return {
        "wager_id": str(wager["_id"]),
        "status": wager["status"],
        "payout": wager.get("payout"),
        "outcome": outcome,
        **extra,
    }


async def _fetch_results(fixture_ids: list[str]) -> tuple[dict[str, FixtureResult], list[str]]:
    """Fetch every fixture concurrently. Returns (results, errors); failed fixtures are absent."""
    gateway = get_gateway()
    fetched = await asyncio.gather(
        *(gateway.get_result(fid) for fid in fixture_ids),
        return_exceptions=True,
    )
    results: dict[str, FixtureResult] = {}
    errors: list[str] = []
    for fixture_id, outcome in zip(fixture_ids, fetched):
        if isinstance(outcome, FixtureResult):
            results[fixture_id] = outcome
        elif isinstance(outcome, TransientFetchFailure):
            errors.append(str(outcome))
        elif isinstance(outcome, BaseException):
            logger.warning("Result fetch for fixture %s failed: %r", fixture_id, outcome)
            errors.append(f"Fixture {fixture_id}: {outcome!r}")
    return results, errors


async def _evaluate_claimed(wager: dict, lease_owner: str) -> dict[str, Any]:
    legs = [dict(leg) for leg in wager["legs"]]
    unresolved = sorted({
        leg["fixture_id"] for leg in legs if leg.get("leg_state") == LegStatus.pending.value
    })
    results, fetch_errors = await _fetch_results(unresolved)

    for leg in legs:
        if leg.get("leg_state") != LegStatus.pending.value:
            continue
        result = results.get(leg["fixture_id"])
        if result is None:
            continue
        outcome = outcome_calculators.evaluate(leg, result)
        leg["leg_state"] = outcome.status.value
        leg["reason"] = outcome.reason if outcome.status != LegStatus.pending else None

    decision = combination_resolver.resolve(
        [leg["leg_state"] for leg in legs], wager["stake"], wager["combined_odds"],
    )
    if decision.ready:
        return await _settle(wager, lease_owner, decision, legs)

    if fetch_errors:
        return await _reschedule(
            wager, lease_owner, legs=legs, transient=True, error="; ".join(fetch_errors),
        )
    return await _reschedule(wager, lease_owner, legs=legs, transient=False, error=decision.reason)


def _next_delay(attempts: int, transient: bool) -> timedelta:
    if transient:
        minutes = settings.SETTLEMENT_TRANSIENT_RETRY_MINUTES * (2 ** min(max(attempts - 1, 0), 6))
        return timedelta(minutes=min(minutes, _MAX_TRANSIENT_DELAY_MINUTES))
    return timedelta(minutes=settings.SETTLEMENT_NOT_FINISHED_RETRY_MINUTES)


def retry_horizon(wager: dict) -> datetime:
    return ensure_utc(wager["estimated_resolution_at"]) + timedelta(hours=settings.SETTLEMENT_MAX_WAIT_HOURS)


async def _reschedule(
    wager: dict, lease_owner: str, *, legs: list[dict] | None, transient: bool, error: str | None,
) -> dict[str, Any]:
    now = utcnow()
    attempts = int((wager.get("schedule") or {}).get("attempts", 0))
    horizon = retry_horizon(wager)

    if attempts >= settings.SETTLEMENT_MAX_ATTEMPTS or now >= horizon:
        return await _move_to_error(
            wager, lease_owner, legs=legs,
            error=SettlementError(
                f"Retries exhausted after {attempts} attempts: {error or 'fixture not finished'}"
            ),
        )

    next_check_at = min(now + _next_delay(attempts, transient), horizon)
    released = await wager_store.release_and_reschedule(
        wager["_id"], lease_owner, next_check_at, legs=legs, last_error=error,
    )
    if not released:
        logger.warning("Lease lost before rescheduling wager %s", wager["_id"])
        return _result(wager, "lease_lost")

    from betsettle.workers.settlement_scheduler import arm
    arm(str(wager["_id"]), next_check_at)

    if transient:
        logger.warning(
            "Wager %s rescheduled after transient failure (attempt %d): %s",
            wager["_id"], attempts, error,
        )
    else:
        logger.info(
            "Wager %s not ready (attempt %d): %s; next check %s",
            wager["_id"], attempts, error, next_check_at.isoformat(),
        )
    return _result(wager, "rescheduled", next_check_at=next_check_at, reason=error)


async def _move_to_error(
    wager: dict, lease_owner: str, *, legs: list[dict] | None, error: SettlementError,
) -> dict[str, Any]:
    reason = str(error)
    settled = await wager_store.transition_terminal(
        wager["_id"], lease_owner,
        status=WagerStatus.error, payout=0.0, reason=reason, legs=legs,
    )
    if settled is None:
        logger.warning("Lease lost before moving wager %s to manual review", wager["_id"])
        return _result(wager, "lease_lost")

    logger.error(
        "Wager %s moved to manual review (owner=%s stake=%.2f): %s",
        wager["_id"], wager["owner_id"], wager["stake"], reason,
    )
    await ledger_service.release_wager_keys(wager["owner_id"], str(wager["_id"]))
    await log_audit(
        actor_id=SYSTEM_ACTOR,
        target_id=str(wager["_id"]),
        action="WAGER_MANUAL_REVIEW",
        metadata={"owner_id": wager["owner_id"], "stake": wager["stake"], "reason": reason},
    )
    return _result(settled, "error", reason=reason)


async def _settle(
    wager: dict, lease_owner: str, decision: SettlementDecision, legs: list[dict],
) -> dict[str, Any]:
    settled = await wager_store.transition_terminal(
        wager["_id"], lease_owner,
        status=decision.status, payout=decision.payout, reason=decision.reason, legs=legs,
    )
    if settled is None:
        logger.warning("Lease lost before settling wager %s", wager["_id"])
        return _result(wager, "lease_lost")

    if decision.payout > 0:
        await apply_payout(settled)
    else:
        await ledger_service.release_wager_keys(settled["owner_id"], str(settled["_id"]))

    logger.info(
        "Wager settled: id=%s owner=%s status=%s payout=%.2f (%s)",
        settled["_id"], settled["owner_id"], decision.status.value, decision.payout, decision.reason,
    )
    await log_audit(
        actor_id=SYSTEM_ACTOR,
        target_id=str(settled["_id"]),
        action="WAGER_SETTLED",
        metadata={
            "owner_id": settled["owner_id"],
            "status": decision.status.value,
            "payout": decision.payout,
        },
    )
    return _result(settled, "settled", reason=decision.reason)


async def apply_payout(wager: dict) -> bool:
    """Credit a terminal wager's payout exactly once, then confirm it on the wager.

    Keyed by wager id, so calling it again after a crash is harmless.
    """
    wager_key = str(wager["_id"])
    entry_type = LedgerEntryType.PAYOUT if wager["status"] == WagerStatus.won.value else LedgerEntryType.REFUND
    applied = await ledger_service.credit(
        wager["owner_id"],
        wager["payout"],
        key=ledger_service.payout_key(wager_key),
        wager_id=wager_key,
        description=f"{entry_type.value.title()} for {wager['wager_type']} wager: {wager.get('reason') or ''}".strip(),
        entry_type=entry_type,
    )
    await wager_store.mark_payout_applied(wager["_id"])
    await ledger_service.release_wager_keys(wager["owner_id"], wager_key)
    return applied
