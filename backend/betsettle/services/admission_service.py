"""
backend/betsettle/services/admission_service.py

Purpose:
    Wager admission: validates legs and stake, rejects conflicting wagers,
    reserves the stake on the owner's balance and stores the wager in
    `pending` with its settlement schedule armed.

    Placements of one owner are serialized by an in-process lock; the unique
    partial index on (owner_id, legs.conflict_key) covers concurrent
    processes. Admission never partially applies: a debit whose wager insert
    fails is reversed before the error propagates.

Dependencies:
    - betsettle.services.ledger_service
    - betsettle.services.wager_store
    - betsettle.workers.settlement_scheduler
"""

import asyncio
import logging
import math
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from functools import reduce
from operator import mul
from typing import Any

from bson import ObjectId
from pymongo.errors import DuplicateKeyError

from betsettle.config import settings
from betsettle.models.wager import LegStatus, ScheduleState, WagerStatus, WagerType
from betsettle.services import ledger_service, wager_store
from betsettle.services.errors import ConflictingWager, InsufficientBalance, InvalidLeg
from betsettle.utils import ensure_utc, round_money, utcnow

logger = logging.getLogger("betsettle.admission_service")

_owner_locks: dict[str, asyncio.Lock] = {}
_owner_lock_users: dict[str, int] = {}


@asynccontextmanager
async def _owner_lock(owner_id: str):
    """Serialize one owner's placements. The lock is dropped once nobody holds or waits on it."""
    lock = _owner_locks.setdefault(owner_id, asyncio.Lock())
    _owner_lock_users[owner_id] = _owner_lock_users.get(owner_id, 0) + 1
    try:
        async with lock:
            yield
    finally:
        _owner_lock_users[owner_id] -= 1
        if not _owner_lock_users[owner_id]:
            del _owner_lock_users[owner_id]
            del _owner_locks[owner_id]


def estimated_resolution_from_kickoff(kickoff: datetime) -> datetime:
    """Kickoff plus the configured buffer (125 minutes for football)."""
    return ensure_utc(kickoff) + timedelta(minutes=settings.RESOLUTION_BUFFER_MINUTES)


def conflict_key(fixture_id: str, market_id: str) -> str:
    return f"{fixture_id}:{market_id}"


def _as_number(value: Any, field: str) -> float:
    if isinstance(value, bool):
        raise InvalidLeg(f"{field} must be a number.")
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise InvalidLeg(f"{field} must be a number.")
    if not math.isfinite(number):
        raise InvalidLeg(f"{field} must be a finite number.")
    return number


def _validate_stake(stake: Any) -> float:
    try:
        value = _as_number(stake, "Stake")
    except InvalidLeg:
        raise InvalidLeg("Stake must be a positive number.")
    if value <= 0:
        raise InvalidLeg("Stake must be a positive number.")
    return round_money(value)


def _validate_legs(legs: list[dict]) -> list[dict]:
    """Check leg shape and odds and return the stored leg documents.

    Market ids are not checked against the calculator registry. A market
    without a calculator is admitted and its leg later settles as refunded,
    never as lost or won.
    """
    if not legs:
        raise InvalidLeg("At least one leg is required.")
    if len(legs) > settings.COMBINATION_MAX_LEGS:
        raise InvalidLeg(f"A combination may have at most {settings.COMBINATION_MAX_LEGS} legs.")
    if 1 < len(legs) < settings.COMBINATION_MIN_LEGS:
        raise InvalidLeg(f"A combination needs at least {settings.COMBINATION_MIN_LEGS} legs.")

    fixtures_seen: set[str] = set()
    normalized: list[dict] = []
    for index, leg in enumerate(legs, start=1):
        fixture_id = str(leg.get("fixture_id") or "").strip()
        market_id = str(leg.get("market_id") or "").strip()
        selector = str(leg.get("outcome_selector") or "").strip()
        label = str(leg.get("selection_label") or "").strip() or None
        if not fixture_id:
            raise InvalidLeg(f"Leg {index}: fixture_id is required.")
        if not market_id:
            raise InvalidLeg(f"Leg {index}: market_id is required.")
        if not selector:
            raise InvalidLeg(f"Leg {index}: outcome_selector is required.")

        odds = _as_number(leg.get("odds"), f"Leg {index} odds")
        if odds < 1.0:
            raise InvalidLeg(f"Leg {index}: odds must be at least 1.0.")

        if fixture_id in fixtures_seen:
            raise InvalidLeg("A wager may not reference the same fixture twice.")
        fixtures_seen.add(fixture_id)

        normalized.append({
            "fixture_id": fixture_id,
            "market_id": market_id,
            "outcome_selector": selector,
            "selection_label": label,
            "odds": round(odds, 2),
            "leg_state": LegStatus.pending.value,
            "reason": None,
            "conflict_key": conflict_key(fixture_id, market_id),
        })
    return normalized


async def _check_conflicts(owner_id: str, legs: list[dict]) -> None:
    keys = [leg["conflict_key"] for leg in legs]
    conflicts = await wager_store.find_pending_conflicts(owner_id, keys)
    if conflicts:
        raise ConflictingWager(
            "You already have a pending wager on this market for this fixture."
        )


async def place_wager(
    owner_id: str,
    legs: list[dict],
    stake: float,
    estimated_resolution_at: datetime,
) -> dict:
    """Validate, reserve the stake and store a pending wager. Returns the wager document.

    Raises InvalidLeg, ConflictingWager or InsufficientBalance with no side effects.
    """
    normalized_legs = _validate_legs(legs)
    stake = _validate_stake(stake)

    now = utcnow()
    if not isinstance(estimated_resolution_at, datetime):
        raise InvalidLeg("estimated_resolution_at is required.")
    resolution_at = ensure_utc(estimated_resolution_at)
    if resolution_at <= now:
        raise InvalidLeg("Estimated resolution time must be in the future.")

    wager_type = WagerType.single if len(normalized_legs) == 1 else WagerType.combination
    combined_odds = reduce(mul, (leg["odds"] for leg in normalized_legs), 1.0)

    async with _owner_lock(owner_id):
        # Combinations are only checked for internal fixture duplication.
        if wager_type == WagerType.single:
            await _check_conflicts(owner_id, normalized_legs)

        account = await ledger_service.open_account(owner_id)
        if account.get("balance", 0.0) < stake:
            raise InsufficientBalance("Insufficient balance.")

        wager_id = ObjectId()
        wager_key = str(wager_id)
        await ledger_service.record_stake_intent(owner_id, wager_key, stake)
        try:
            await ledger_service.debit(
                owner_id,
                stake,
                key=ledger_service.stake_key(wager_key),
                wager_id=wager_key,
                description=f"Stake for {wager_type.value} wager ({len(normalized_legs)} legs)",
            )
        except InsufficientBalance:
            await ledger_service.void_stake_intent(wager_key)
            raise

        wager_doc = {
            "_id": wager_id,
            "owner_id": owner_id,
            "wager_type": wager_type.value,
            "legs": normalized_legs,
            "stake": stake,
            "combined_odds": round(combined_odds, 4),
            "potential_payout": round_money(stake * combined_odds),
            "status": WagerStatus.pending.value,
            "payout": None,
            "payout_applied": None,
            "reason": None,
            "estimated_resolution_at": resolution_at,
            "schedule": {
                "state": ScheduleState.armed.value,
                "next_check_at": resolution_at,
                "attempts": 0,
                "lease_until": None,
                "lease_owner": None,
                "last_error": None,
            },
            "created_at": now,
            "settled_at": None,
        }

        try:
            await wager_store.insert_wager(wager_doc)
        except DuplicateKeyError:
            await ledger_service.reverse_stake(
                owner_id, wager_key, stake, "Stake returned: conflicting wager",
            )
            raise ConflictingWager(
                "You already have a pending wager on this market for this fixture."
            )
        except Exception:
            await ledger_service.reverse_stake(
                owner_id, wager_key, stake, "Stake returned: wager could not be stored",
            )
            raise

        await ledger_service.confirm_stake(wager_key)

    from betsettle.workers.settlement_scheduler import arm
    arm(wager_key, resolution_at)

    logger.info(
        "Wager placed: owner=%s type=%s legs=%d stake=%.2f combined_odds=%.2f resolves_at=%s",
        owner_id, wager_type.value, len(normalized_legs), stake, combined_odds,
        resolution_at.isoformat(),
    )
    return wager_doc
