"""Immutable audit logging for settlement operations.

All audit entries are insert-only. This module exposes NO update or delete
operations on the audit_logs collection. Wagers moved to manual review are
surfaced here and in the error log.
"""

import logging
from typing import Optional

import betsettle.database as _db
from betsettle.utils import utcnow

logger = logging.getLogger("betsettle.audit")

SYSTEM_ACTOR = "SYSTEM"


async def log_audit(
    *,
    actor_id: str,
    target_id: str,
    action: str,
    metadata: Optional[dict] = None,
) -> None:
    """Write an immutable audit record to the audit_logs collection.

    Args:
        actor_id: Who performed the action (owner id or "SYSTEM").
        target_id: What was affected (wager id, owner id).
        action: Action identifier, e.g. "WAGER_SETTLED", "WAGER_MANUAL_REVIEW".
        metadata: Optional dict with extra context.
    """
    doc = {
        "timestamp": utcnow(),
        "actor_id": actor_id,
        "target_id": target_id,
        "action": action,
        "metadata": metadata or {},
    }

    try:
        await _db.db.audit_logs.insert_one(doc)
    except Exception:
        # Audit logging must never crash settlement
        logger.exception("Failed to write audit log: action=%s target=%s", action, target_id)
