"""
backend/betsettle/services/wager_store.py

Purpose:
    Persistence access layer for wager documents. Every state change after
    admission is a compare-and-set on (status, schedule lease), so a wager
    transitions out of `pending` exactly once and is never evaluated by two
    workers at the same time.

Dependencies:
    - betsettle.database
    - betsettle.models.wager
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any

from bson import ObjectId
from bson.errors import InvalidId

import betsettle.database as _db
from betsettle.models.wager import ScheduleState, WagerStatus
from betsettle.utils import utcnow

logger = logging.getLogger("betsettle.wager_store")


def to_object_id(wager_id: str | ObjectId) -> ObjectId | None:
    if isinstance(wager_id, ObjectId):
        return wager_id
    try:
        return ObjectId(wager_id)
    except (InvalidId, TypeError):
        return None


async def insert_wager(wager_doc: dict) -> dict:
    """Insert a new pending wager. `_id` is pre-allocated by admission."""
    await _db.db.wagers.insert_one(wager_doc)
    return wager_doc


async def get_wager(wager_id: str | ObjectId) -> dict | None:
    oid = to_object_id(wager_id)
    if oid is None:
        return None
    return await _db.db.wagers.find_one({"_id": oid})


async def exists(wager_id: str | ObjectId) -> bool:
    oid = to_object_id(wager_id)
    if oid is None:
        return False
    return await _db.db.wagers.find_one({"_id": oid}, {"_id": 1}) is not None


async def list_owner_wagers(owner_id: str, limit: int = 50, skip: int = 0) -> list[dict]:
    return await _db.db.wagers.find(
        {"owner_id": owner_id},
    ).sort("created_at", -1).skip(skip).limit(limit).to_list(length=limit)


async def find_pending_conflicts(owner_id: str, conflict_keys: list[str]) -> list[dict]:
    """Pending wagers of the owner that share a (fixture, market) pair with the given keys."""
    return await _db.db.wagers.find(
        {
            "owner_id": owner_id,
            "status": WagerStatus.pending.value,
            "legs.conflict_key": {"$in": conflict_keys},
        },
        {"legs.conflict_key": 1},
    ).to_list(length=100)


# ---------- Scheduler support ----------

async def find_due_wager_ids(now: datetime, limit: int) -> list[ObjectId]:
    """Pending wagers whose check time has come and that nobody holds a live lease on."""
    docs = await _db.db.wagers.find(
        {
            "status": WagerStatus.pending.value,
            "schedule.next_check_at": {"$lte": now},
            "$or": [
                {"schedule.lease_until": None},
                {"schedule.lease_until": {"$lte": now}},
            ],
        },
        {"_id": 1},
    ).sort("schedule.next_check_at", 1).limit(limit).to_list(length=limit)
    return [d["_id"] for d in docs]


async def find_overdue_pending(now: datetime, limit: int = 5000) -> list[dict]:
    """Recovery scan: pending wagers whose estimated resolution time has passed."""
    return await _db.db.wagers.find(
        {
            "status": WagerStatus.pending.value,
            "estimated_resolution_at": {"$lte": now},
        },
        {"_id": 1, "schedule": 1, "estimated_resolution_at": 1},
    ).to_list(length=limit)


async def find_unapplied_payouts(limit: int = 5000) -> list[dict]:
    """Terminal wagers whose ledger credit was not confirmed (crash between the two writes)."""
    return await _db.db.wagers.find(
        {
            "status": {"$in": [WagerStatus.won.value, WagerStatus.refunded.value]},
            "payout_applied": False,
        },
    ).to_list(length=limit)


async def claim_for_evaluation(
    wager_id: ObjectId, lease_owner: str, lease_seconds: int,
) -> dict | None:
    """Armed -> Evaluating. Returns the claimed wager, or None if it is terminal or leased."""
    now = utcnow()
    return await _db.db.wagers.find_one_and_update(
        {
            "_id": wager_id,
            "status": WagerStatus.pending.value,
            "$or": [
                {"schedule.lease_until": None},
                {"schedule.lease_until": {"$lte": now}},
            ],
        },
        {
            "$set": {
                "schedule.state": ScheduleState.evaluating.value,
                "schedule.lease_until": now + timedelta(seconds=lease_seconds),
                "schedule.lease_owner": lease_owner,
            },
            "$inc": {"schedule.attempts": 1},
        },
        return_document=True,
    )


async def release_and_reschedule(
    wager_id: ObjectId, lease_owner: str, next_check_at: datetime,
    *, legs: list[dict] | None = None, last_error: str | None = None,
) -> bool:
    """Evaluating -> Armed with a later check time. Persists resolved legs so far."""
    update: dict[str, Any] = {
        "schedule.state": ScheduleState.armed.value,
        "schedule.next_check_at": next_check_at,
        "schedule.lease_until": None,
        "schedule.lease_owner": None,
        "schedule.last_error": last_error,
    }
    if legs is not None:
        update["legs"] = legs
    result = await _db.db.wagers.update_one(
        {
            "_id": wager_id,
            "status": WagerStatus.pending.value,
            "schedule.lease_owner": lease_owner,
        },
        {"$set": update},
    )
    return result.modified_count == 1


async def rearm(wager_id: ObjectId, next_check_at: datetime) -> bool:
    """Recovery: make a pending, unleased wager due at `next_check_at`."""
    now = utcnow()
    result = await _db.db.wagers.update_one(
        {
            "_id": wager_id,
            "status": WagerStatus.pending.value,
            "$or": [
                {"schedule.lease_until": None},
                {"schedule.lease_until": {"$lte": now}},
            ],
        },
        {"$set": {
            "schedule.state": ScheduleState.armed.value,
            "schedule.next_check_at": next_check_at,
        }},
    )
    return result.modified_count == 1


async def transition_terminal(
    wager_id: ObjectId, lease_owner: str | None, *,
    status: WagerStatus, payout: float, reason: str,
    legs: list[dict] | None = None,
) -> dict | None:
    """The one pending -> terminal transition. Returns None when someone else already settled it.

    Payout-bearing states are written with payout_applied=False; the ledger
    credit and `mark_payout_applied` follow.
    """
    now = utcnow()
    query: dict[str, Any] = {"_id": wager_id, "status": WagerStatus.pending.value}
    if lease_owner is not None:
        query["schedule.lease_owner"] = lease_owner
    update: dict[str, Any] = {
        "status": status.value,
        "payout": payout,
        "reason": reason,
        "settled_at": now,
        "payout_applied": False if payout > 0 else None,
        "schedule.state": ScheduleState.settled.value,
        "schedule.lease_until": None,
        "schedule.lease_owner": None,
    }
    if legs is not None:
        update["legs"] = legs
    return await _db.db.wagers.find_one_and_update(
        query,
        {"$set": update},
        return_document=True,
    )


async def mark_payout_applied(wager_id: ObjectId) -> None:
    await _db.db.wagers.update_one(
        {"_id": wager_id, "payout_applied": False},
        {"$set": {"payout_applied": True}},
    )
