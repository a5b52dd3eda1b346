"""Wager endpoints: place, list, inspect and settle on demand."""

from fastapi import APIRouter, Depends, Query, status

from betsettle.models.wager import WagerCreate, WagerResponse, wager_to_response
from betsettle.services import admission_service, settlement_service, wager_store
from betsettle.services.auth_service import get_current_owner_id
from betsettle.services.errors import WagerNotFound

router = APIRouter(prefix="/api/wagers", tags=["wagers"])


async def _get_owned_wager(wager_id: str, owner_id: str) -> dict:
    wager = await wager_store.get_wager(wager_id)
    if not wager or wager["owner_id"] != owner_id:
        raise WagerNotFound("Wager not found.")
    return wager


@router.post("", response_model=WagerResponse, status_code=status.HTTP_201_CREATED)
async def place_wager(body: WagerCreate, owner_id: str = Depends(get_current_owner_id)):
    """Place a single (one leg) or combination (2+ legs) wager."""
    wager = await admission_service.place_wager(
        owner_id,
        [leg.model_dump() for leg in body.legs],
        body.stake,
        body.estimated_resolution_at,
    )
    return wager_to_response(wager)


@router.get("", response_model=list[WagerResponse])
async def list_wagers(
    limit: int = Query(50, ge=1, le=200),
    skip: int = Query(0, ge=0),
    owner_id: str = Depends(get_current_owner_id),
):
    """The caller's wagers, newest first."""
    wagers = await wager_store.list_owner_wagers(owner_id, limit=limit, skip=skip)
    return [wager_to_response(w) for w in wagers]


@router.get("/{wager_id}", response_model=WagerResponse)
async def get_wager(wager_id: str, owner_id: str = Depends(get_current_owner_id)):
    return wager_to_response(await _get_owned_wager(wager_id, owner_id))


@router.post("/{wager_id}/evaluate")
async def evaluate_wager(wager_id: str, owner_id: str = Depends(get_current_owner_id)):
    """Run the settlement trigger now. Idempotent on settled wagers."""
    wager = await _get_owned_wager(wager_id, owner_id)
    result = await settlement_service.evaluate_wager(wager["_id"])
    return {
        "wager_id": result["wager_id"],
        "status": result["status"],
        "payout": result["payout"],
        "outcome": result["outcome"],
    }
