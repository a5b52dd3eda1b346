"""Last-run bookkeeping for background workers, kept in the `worker_state` collection.

Survives restarts; /health reports the last recovery sweep from here.
"""

from datetime import datetime

import betsettle.database as _db
from betsettle.utils import utcnow


async def get_synced_at(worker_id: str) -> datetime | None:
    doc = await _db.db.worker_state.find_one({"_id": worker_id})
    return doc["synced_at"] if doc else None


async def set_synced(worker_id: str, **summary) -> None:
    """Stamp a worker run, keeping the run summary next to the timestamp."""
    fields = {"synced_at": utcnow()}
    if summary:
        fields["last_run"] = summary
    await _db.db.worker_state.update_one({"_id": worker_id}, {"$set": fields}, upsert=True)
