"""Wager models: persisted wager documents, legs, request bodies and settlement results."""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


# ---------- States ----------

class WagerStatus(str, Enum):
    pending = "pending"
    won = "won"
    lost = "lost"
    refunded = "refunded"
    error = "error"          # Manual review; balance is not touched again


TERMINAL_STATUSES = (
    WagerStatus.won.value,
    WagerStatus.lost.value,
    WagerStatus.refunded.value,
    WagerStatus.error.value,
)


class LegStatus(str, Enum):
    pending = "pending"      # Fixture not finished yet
    won = "won"
    lost = "lost"
    refunded = "refunded"


class WagerType(str, Enum):
    single = "single"
    combination = "combination"


class ScheduleState(str, Enum):
    armed = "armed"
    evaluating = "evaluating"
    settled = "settled"


# ---------- Persisted documents ----------

class LegInDB(BaseModel):
    """One selection inside a wager. Owned by exactly one wager."""
    fixture_id: str
    market_id: str
    outcome_selector: str                 # "Home", "Over 2.5", "Aldosivi - 2 Goals", player name ...
    selection_label: Optional[str] = None  # Goalscorer kind: "First" | "Last" | "Anytime"
    odds: float
    leg_state: LegStatus = LegStatus.pending
    reason: Optional[str] = None          # Calculator explanation once resolved
    conflict_key: str                     # "<fixture_id>:<market_id>"


class ScheduleInDB(BaseModel):
    """Durable scheduler entry embedded in the wager document."""
    state: ScheduleState = ScheduleState.armed
    next_check_at: datetime
    attempts: int = 0
    lease_until: Optional[datetime] = None
    lease_owner: Optional[str] = None
    last_error: Optional[str] = None


class WagerInDB(BaseModel):
    """Full wager document as stored in MongoDB."""
    owner_id: str
    wager_type: WagerType
    legs: list[LegInDB]
    stake: float
    combined_odds: float                  # Product of all leg odds at admission
    potential_payout: float               # stake * combined_odds
    status: WagerStatus = WagerStatus.pending
    payout: Optional[float] = None        # Set on terminal transition; 0 for lost
    payout_applied: Optional[bool] = None  # False between terminal write and ledger credit
    reason: Optional[str] = None
    estimated_resolution_at: datetime
    schedule: ScheduleInDB
    created_at: datetime
    settled_at: Optional[datetime] = None


# ---------- Request / response ----------

class LegCreate(BaseModel):
    fixture_id: str
    market_id: str
    outcome_selector: str
    selection_label: Optional[str] = None
    odds: float


class WagerCreate(BaseModel):
    """Request body for placing a wager (one leg = single, 2+ legs = combination)."""
    legs: list[LegCreate] = Field(min_length=1)
    stake: float
    estimated_resolution_at: datetime


class LegResponse(BaseModel):
    fixture_id: str
    market_id: str
    outcome_selector: str
    selection_label: Optional[str] = None
    odds: float
    leg_state: str
    reason: Optional[str] = None


class WagerResponse(BaseModel):
    id: str
    wager_type: str
    legs: list[LegResponse]
    stake: float
    combined_odds: float
    potential_payout: float
    status: str
    payout: Optional[float] = None
    reason: Optional[str] = None
    estimated_resolution_at: datetime
    created_at: datetime
    settled_at: Optional[datetime] = None


def wager_to_response(wager: dict) -> WagerResponse:
    return WagerResponse(
        id=str(wager["_id"]),
        wager_type=wager["wager_type"],
        legs=[
            LegResponse(
                fixture_id=leg["fixture_id"],
                market_id=leg["market_id"],
                outcome_selector=leg["outcome_selector"],
                selection_label=leg.get("selection_label"),
                odds=leg["odds"],
                leg_state=leg.get("leg_state", LegStatus.pending.value),
                reason=leg.get("reason"),
            )
            for leg in wager["legs"]
        ],
        stake=wager["stake"],
        combined_odds=wager["combined_odds"],
        potential_payout=wager["potential_payout"],
        status=wager["status"],
        payout=wager.get("payout"),
        reason=wager.get("reason"),
        estimated_resolution_at=wager["estimated_resolution_at"],
        created_at=wager["created_at"],
        settled_at=wager.get("settled_at"),
    )


# ---------- Settlement values ----------

class LegOutcome(BaseModel):
    """Result of one outcome calculator run. `pending` means the fixture is not finished."""
    status: LegStatus
    reason: str = ""


class SettlementDecision(BaseModel):
    """Terminal decision for a whole wager. `ready=False` means reschedule."""
    ready: bool
    status: Optional[WagerStatus] = None
    payout: float = 0.0
    reason: str = ""
