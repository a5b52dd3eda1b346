"""
backend/betsettle/database.py

Purpose:
    MongoDB connection bootstrap and index management for wagers, accounts
    and the ledger audit trail.

Dependencies:
    - motor.motor_asyncio
    - pymongo
    - betsettle.config
"""

import logging

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo.errors import DuplicateKeyError, OperationFailure

from betsettle.config import settings

client: AsyncIOMotorClient = None
db: AsyncIOMotorDatabase = None

logger = logging.getLogger("betsettle.database")


async def connect_db() -> None:
    global client, db
    client = AsyncIOMotorClient(
        settings.MONGO_URI,
        maxPoolSize=25,
        minPoolSize=5,
    )
    db = client[settings.MONGO_DB]
    await _ensure_indexes()


async def close_db() -> None:
    global client
    if client:
        client.close()


async def _ensure_indexes() -> None:
    """Create indexes on startup. Idempotent, safe to run repeatedly."""

    # ---- Wagers ----

    await db.wagers.create_index([("owner_id", 1), ("status", 1)])
    await db.wagers.create_index([("owner_id", 1), ("created_at", -1)])
    # Recovery sweep scan
    await db.wagers.create_index([("status", 1), ("estimated_resolution_at", 1)])
    # Scheduler tick: due + unleased
    await db.wagers.create_index([("status", 1), ("schedule.next_check_at", 1)])
    # Terminal wagers whose payout credit has not been confirmed
    await db.wagers.create_index(
        [("status", 1), ("payout_applied", 1)],
        partialFilterExpression={"payout_applied": False},
    )
    # Conflicting single placements across processes: one pending single per
    # (owner, fixture, market). Multikey on legs.conflict_key.
    try:
        await db.wagers.create_index(
            [("owner_id", 1), ("legs.conflict_key", 1)],
            unique=True,
            name="wagers_pending_single_conflict",
            partialFilterExpression={"status": "pending", "wager_type": "single"},
        )
    except (DuplicateKeyError, OperationFailure) as exc:
        logger.warning(
            "Skipped pending-single conflict index due to existing duplicates: %s",
            exc,
        )

    # ---- Ledger ----

    await db.ledger_entries.create_index("key", unique=True)
    await db.ledger_entries.create_index([("owner_id", 1), ("created_at", -1)])
    await db.ledger_entries.create_index([("type", 1), ("created_at", 1)])
    await db.ledger_entries.create_index("wager_id")

    # ---- Audit Logs ----

    await db.audit_logs.create_index([("action", 1), ("timestamp", -1)])
    await db.audit_logs.create_index([("target_id", 1), ("timestamp", -1)])
    await db.audit_logs.create_index("timestamp")
