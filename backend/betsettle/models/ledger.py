"""Ledger models: account balance movements and their audit trail."""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel


class LedgerEntryType(str, Enum):
    STAKE = "STAKE"                    # Debit at admission
    STAKE_REVERSAL = "STAKE_REVERSAL"  # Admission rolled back / orphaned stake returned
    PAYOUT = "PAYOUT"                  # Won wager credit
    REFUND = "REFUND"                  # Refunded wager credit (stake returned)


class LedgerEntryInDB(BaseModel):
    """Immutable audit record for every balance movement.

    `key` is the idempotency key, e.g. "stake:<wager_id>" or "payout:<wager_id>".
    """
    key: str
    owner_id: str
    type: LedgerEntryType
    amount: float  # positive = credit, negative = debit
    balance_after: float
    wager_id: Optional[str] = None
    description: str
    created_at: datetime


class BalanceResponse(BaseModel):
    owner_id: str
    balance: float
