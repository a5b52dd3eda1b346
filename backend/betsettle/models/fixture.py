"""
backend/betsettle/models/fixture.py

Purpose:
    Normalized fixture result contract returned by result gateways and
    consumed by the outcome calculators.
"""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field


class PeriodScore(BaseModel):
    home: int
    away: int


class FixtureEvent(BaseModel):
    """A match event. Only goals matter for settlement."""
    type: str                            # "goal" | "own_goal" | "penalty" | "card" | ...
    player_name: Optional[str] = None
    participant: Optional[str] = None    # "home" | "away"
    minute: Optional[int] = None
    extra_minute: Optional[int] = None   # Stoppage time, 90+2 is minute=90 extra_minute=2


class FixtureResult(BaseModel):
    """Authoritative once `finished` is True; partial and untrusted otherwise."""
    fixture_id: str
    finished: bool
    state: str = ""                      # Provider state code, e.g. "NS", "INPLAY_1ST_HALF", "FT"
    home_goals: Optional[int] = None
    away_goals: Optional[int] = None
    first_half: Optional[PeriodScore] = None
    second_half: Optional[PeriodScore] = None
    home_team: Optional[str] = None
    away_team: Optional[str] = None
    events: Optional[list[FixtureEvent]] = Field(default=None)

    def has_score(self) -> bool:
        return self.home_goals is not None and self.away_goals is not None
