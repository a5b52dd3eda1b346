"""Ledger: atomic, idempotent balance movements on owner accounts.

Every movement is one single-document update on the account. The filter
requires the movement's idempotency key to be absent from
`applied_ledger_keys` (and, for debits, `balance >= amount`); the update
increments the balance and records the key. Replaying a movement matches
nothing and is a no-op, so settlement can retry credits until applied.

Keys only stay on the account while their wager is open. Once a wager is
done, `release_wager_keys` pulls them again and the applied entry in
`ledger_entries` (unique per key) keeps replays out.
"""

import logging
from typing import Optional

from bson import ObjectId
from pymongo.errors import DuplicateKeyError

import betsettle.database as _db
from betsettle.config import settings
from betsettle.models.ledger import LedgerEntryType
from betsettle.services.errors import AccountNotFound, InsufficientBalance
from betsettle.utils import round_money, utcnow

logger = logging.getLogger("betsettle.ledger_service")

_RECORDED_STATES = ["applied", "confirmed", "reversed"]


def stake_key(wager_id: str) -> str:
    return f"stake:{wager_id}"


def stake_reversal_key(wager_id: str) -> str:
    return f"stake_reversal:{wager_id}"


def payout_key(wager_id: str) -> str:
    return f"payout:{wager_id}"


def account_id(owner_id: str):
    """Accounts created by the auth layer use ObjectIds; plain string ids pass through."""
    return ObjectId(owner_id) if ObjectId.is_valid(owner_id) else owner_id


async def open_account(owner_id: str, initial_balance: Optional[float] = None) -> dict:
    """Get the owner's account or create it with the default balance."""
    acc_id = account_id(owner_id)
    account = await _db.db.users.find_one({"_id": acc_id})
    if account:
        return account

    balance = round_money(
        settings.DEFAULT_INITIAL_BALANCE if initial_balance is None else initial_balance
    )
    now = utcnow()
    account = {
        "_id": acc_id,
        "balance": balance,
        "applied_ledger_keys": [],
        "created_at": now,
        "updated_at": now,
    }
    try:
        await _db.db.users.insert_one(account)
    except DuplicateKeyError:
        # Opened concurrently
        return await _db.db.users.find_one({"_id": acc_id})

    logger.info("Account opened: owner=%s balance=%.2f", owner_id, balance)
    return account


async def get_balance(owner_id: str) -> float:
    account = await _db.db.users.find_one({"_id": account_id(owner_id)}, {"balance": 1})
    if not account:
        raise AccountNotFound("Account not found.")
    return account.get("balance", 0.0)


async def _recorded(key: str) -> bool:
    """True once the movement for `key` has been applied and logged."""
    entry = await _db.db.ledger_entries.find_one(
        {"key": key, "state": {"$in": _RECORDED_STATES}},
        {"_id": 1},
    )
    return entry is not None


async def is_applied(owner_id: str, key: str) -> bool:
    hit = await _db.db.users.find_one(
        {"_id": account_id(owner_id), "applied_ledger_keys": key},
        {"_id": 1},
    )
    return hit is not None or await _recorded(key)


async def release_wager_keys(owner_id: str, wager_id: str) -> None:
    """Drop a finished wager's keys from the account; its ledger entries still block replays."""
    keys = [stake_key(wager_id), stake_reversal_key(wager_id), payout_key(wager_id)]
    await _db.db.users.update_one(
        {"_id": account_id(owner_id)},
        {"$pull": {"applied_ledger_keys": {"$in": keys}}},
    )


async def record_stake_intent(owner_id: str, wager_id: str, stake: float) -> None:
    """Write the stake entry before the debit so an interrupted admission can be reconciled."""
    await _db.db.ledger_entries.update_one(
        {"key": stake_key(wager_id)},
        {"$setOnInsert": {
            "key": stake_key(wager_id),
            "owner_id": owner_id,
            "type": LedgerEntryType.STAKE.value,
            "amount": -round_money(stake),
            "balance_after": None,
            "wager_id": wager_id,
            "description": f"Stake for wager {wager_id}",
            "state": "intent",
            "created_at": utcnow(),
        }},
        upsert=True,
    )


async def confirm_stake(wager_id: str) -> None:
    await _db.db.ledger_entries.update_one(
        {"key": stake_key(wager_id)},
        {"$set": {"state": "confirmed"}},
    )


async def void_stake_intent(wager_id: str) -> None:
    """The debit never happened (e.g. insufficient balance); close the intent."""
    await _db.db.ledger_entries.update_one(
        {"key": stake_key(wager_id), "state": "intent"},
        {"$set": {"state": "void"}},
    )


async def reverse_stake(owner_id: str, wager_id: str, stake: float, description: str) -> bool:
    """Return a stake whose wager was never stored. Idempotent per wager."""
    applied = await credit(
        owner_id,
        stake,
        key=stake_reversal_key(wager_id),
        wager_id=wager_id,
        description=description,
        entry_type=LedgerEntryType.STAKE_REVERSAL,
    )
    await _db.db.ledger_entries.update_one(
        {"key": stake_key(wager_id)},
        {"$set": {"state": "reversed"}},
    )
    await release_wager_keys(owner_id, wager_id)
    return applied


async def find_unconfirmed_stakes(older_than, limit: int = 1000) -> list[dict]:
    """Stake entries whose admission never confirmed a stored wager."""
    return await _db.db.ledger_entries.find(
        {
            "type": LedgerEntryType.STAKE.value,
            "state": {"$in": ["intent", "applied"]},
            "created_at": {"$lte": older_than},
        },
    ).to_list(length=limit)


async def debit(
    owner_id: str, amount: float, *, key: str, wager_id: str, description: str,
    entry_type: LedgerEntryType = LedgerEntryType.STAKE,
) -> float:
    """Atomically debit `amount`. Returns the balance after the debit.

    Rejects with InsufficientBalance inside the same update that would apply
    it, so two concurrent debits can never overdraw the account.
    """
    amount = round_money(amount)
    acc_id = account_id(owner_id)
    if await _recorded(key):
        logger.debug("Debit %s already applied", key)
        return await get_balance(owner_id)
    account = await _db.db.users.find_one_and_update(
        {
            "_id": acc_id,
            "balance": {"$gte": amount},
            "applied_ledger_keys": {"$ne": key},
        },
        {
            "$inc": {"balance": -amount},
            "$push": {"applied_ledger_keys": key},
            "$set": {"updated_at": utcnow()},
        },
        return_document=True,
    )
    if not account:
        existing = await _db.db.users.find_one({"_id": acc_id}, {"balance": 1})
        if not existing:
            raise AccountNotFound("Account not found.")
        if await is_applied(owner_id, key):
            logger.debug("Debit %s already applied", key)
            return existing["balance"]
        raise InsufficientBalance("Insufficient balance.")

    await _log_entry(
        key=key,
        owner_id=owner_id,
        entry_type=entry_type,
        amount=-amount,
        balance_after=account["balance"],
        wager_id=wager_id,
        description=description,
    )
    return account["balance"]


async def credit(
    owner_id: str, amount: float, *, key: str, wager_id: str, description: str,
    entry_type: LedgerEntryType = LedgerEntryType.PAYOUT,
) -> bool:
    """Credit `amount` exactly once per key. Returns False if the key was already applied."""
    amount = round_money(amount)
    acc_id = account_id(owner_id)
    if await _recorded(key):
        if not await _db.db.users.find_one({"_id": acc_id}, {"_id": 1}):
            raise AccountNotFound("Account not found.")
        logger.debug("Credit %s already applied", key)
        return False
    account = await _db.db.users.find_one_and_update(
        {"_id": acc_id, "applied_ledger_keys": {"$ne": key}},
        {
            "$inc": {"balance": amount},
            "$push": {"applied_ledger_keys": key},
            "$set": {"updated_at": utcnow()},
        },
        return_document=True,
    )
    if not account:
        if not await _db.db.users.find_one({"_id": acc_id}, {"_id": 1}):
            raise AccountNotFound("Account not found.")
        logger.debug("Credit %s already applied", key)
        return False

    await _log_entry(
        key=key,
        owner_id=owner_id,
        entry_type=entry_type,
        amount=amount,
        balance_after=account["balance"],
        wager_id=wager_id,
        description=description,
    )
    return True


async def get_ledger_entries(owner_id: str, limit: int = 50, skip: int = 0) -> list[dict]:
    """Balance movement history for an owner, newest first."""
    return await _db.db.ledger_entries.find(
        {"owner_id": owner_id},
    ).sort("created_at", -1).skip(skip).limit(limit).to_list(length=limit)


async def _log_entry(
    *, key: str, owner_id: str, entry_type: LedgerEntryType, amount: float,
    balance_after: float, wager_id: Optional[str], description: str,
) -> None:
    """Upsert the audit entry for an applied movement (stake intents get completed here)."""
    await _db.db.ledger_entries.update_one(
        {"key": key},
        {
            "$set": {
                "amount": amount,
                "balance_after": balance_after,
                "state": "applied",
            },
            "$setOnInsert": {
                "key": key,
                "owner_id": owner_id,
                "type": entry_type.value,
                "wager_id": wager_id,
                "description": description,
                "created_at": utcnow(),
            },
        },
        upsert=True,
    )
