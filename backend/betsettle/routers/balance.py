"""Balance endpoints: current balance and movement history."""

from fastapi import APIRouter, Depends, Query

from betsettle.models.ledger import BalanceResponse
from betsettle.services import ledger_service
from betsettle.services.auth_service import get_current_owner_id

router = APIRouter(prefix="/api/balance", tags=["balance"])


@router.get("", response_model=BalanceResponse)
async def get_balance(owner_id: str = Depends(get_current_owner_id)):
    """Current balance (the account is opened on first access)."""
    account = await ledger_service.open_account(owner_id)
    return BalanceResponse(owner_id=owner_id, balance=account["balance"])


@router.get("/history")
async def get_history(
    limit: int = Query(50, ge=1, le=200),
    skip: int = Query(0, ge=0),
    owner_id: str = Depends(get_current_owner_id),
):
    """Ledger entries for the caller, newest first."""
    entries = await ledger_service.get_ledger_entries(owner_id, limit=limit, skip=skip)
    return [
        {
            "key": e["key"],
            "type": e["type"],
            "amount": e["amount"],
            "balance_after": e.get("balance_after"),
            "wager_id": e.get("wager_id"),
            "description": e.get("description", ""),
            "state": e.get("state"),
            "created_at": e["created_at"],
        }
        for e in entries
    ]
