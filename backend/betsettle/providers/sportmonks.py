"""
backend/betsettle/providers/sportmonks.py

Purpose:
    Sportmonks v3 fixture result gateway. Fetches one fixture with scores,
    state, participants and events and normalizes it into a FixtureResult.

Dependencies:
    - betsettle.config
    - betsettle.providers.http_client
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from betsettle.config import settings
from betsettle.models.fixture import FixtureEvent, FixtureResult, PeriodScore
from betsettle.providers.base import BaseResultGateway
from betsettle.providers.http_client import CircuitOpenError, ResilientClient
from betsettle.services.errors import TransientFetchFailure

logger = logging.getLogger("betsettle.sportmonks")

# state ids: 5 = FT, 7 = AET, 8 = FT_PEN
_FINISHED_STATE_IDS = {5, 7, 8}
_FINISHED_STATES = {"FT", "AET", "FT_PEN"}
# Never played: settled without a score (legs refund).
_VOID_STATES = {"CANCELLED", "ABANDONED", "DELETED", "AWARDED"}

_EVENT_TYPES = {
    14: "goal",
    15: "own_goal",
    16: "penalty",
    17: "missed_penalty",
}
_EVENT_DEVELOPER_NAMES = {
    "GOAL": "goal",
    "OWNGOAL": "own_goal",
    "PENALTY": "penalty",
    "MISSED_PENALTY": "missed_penalty",
}


class SportmonksResultGateway(BaseResultGateway):
    """HTTP adapter for Sportmonks fixture results."""

    name = "sportmonks"

    def __init__(self, client: ResilientClient | None = None) -> None:
        self._client = client or ResilientClient(
            "sportmonks",
            timeout=settings.FIXTURE_FETCH_TIMEOUT_SECONDS,
            max_retries=settings.FIXTURE_FETCH_MAX_RETRIES,
        )

    @property
    def circuit_open(self) -> bool:
        return self._client.circuit.is_open

    def _build_url(self, path: str) -> str:
        base = str(settings.SPORTMONKS_BASE_URL or "").rstrip("/")
        if not base:
            raise ValueError("SPORTMONKS_BASE_URL is missing.")
        return f"{base}/{path.lstrip('/')}"

    def _auth_token(self) -> str:
        api_key = str(settings.SM_API_KEY or "").strip()
        if not api_key:
            raise ValueError("SM_API_KEY is missing.")
        return api_key

    async def get_result(self, fixture_id: str) -> FixtureResult:
        url = self._build_url(f"football/fixtures/{fixture_id}")
        try:
            response = await self._client.get(
                url,
                params={"include": "scores;state;participants;events"},
                headers={"Authorization": self._auth_token()},
            )
        except (httpx.HTTPError, CircuitOpenError) as exc:
            raise TransientFetchFailure(f"Fixture {fixture_id}: {exc}") from exc

        if response.status_code != 200:
            # 404 included: an unknown fixture is never settled as a loss.
            raise TransientFetchFailure(f"Fixture {fixture_id}: HTTP {response.status_code}")

        try:
            payload = response.json()
        except ValueError as exc:
            raise TransientFetchFailure(f"Fixture {fixture_id}: invalid JSON") from exc

        data = (payload or {}).get("data")
        if not isinstance(data, dict):
            raise TransientFetchFailure(f"Fixture {fixture_id}: empty payload")
        return parse_fixture(fixture_id, data)


def _state_code(state: dict[str, Any]) -> str:
    return str(state.get("developer_name") or state.get("state") or "").upper()


def _participants_by_location(data: dict[str, Any]) -> dict[str, dict[str, Any]]:
    located: dict[str, dict[str, Any]] = {}
    for participant in data.get("participants") or []:
        location = ((participant.get("meta") or {}).get("location") or "").lower()
        if location in ("home", "away"):
            located[location] = participant
    return located


def _scores_by_description(data: dict[str, Any]) -> dict[str, dict[str, int]]:
    """{"CURRENT": {"home": 2, "away": 1}, "1ST_HALF": {...}, ...}"""
    out: dict[str, dict[str, int]] = {}
    for row in data.get("scores") or []:
        score = row.get("score") or {}
        side = (score.get("participant") or row.get("participant") or "").lower()
        goals = score.get("goals")
        description = str(row.get("description") or "").upper()
        if side not in ("home", "away") or goals is None or not description:
            continue
        out.setdefault(description, {})[side] = int(goals)
    return out


def _period(scores: dict[str, dict[str, int]], key: str) -> PeriodScore | None:
    row = scores.get(key) or {}
    if "home" in row and "away" in row:
        return PeriodScore(home=row["home"], away=row["away"])
    return None


def _event_type(event: dict[str, Any]) -> str:
    type_info = event.get("type")
    if isinstance(type_info, dict) and type_info.get("developer_name"):
        name = str(type_info["developer_name"]).upper()
        return _EVENT_DEVELOPER_NAMES.get(name, name.lower())
    return _EVENT_TYPES.get(event.get("type_id"), "other")


def parse_fixture(fixture_id: str, data: dict[str, Any]) -> FixtureResult:
    """Normalize a Sportmonks fixture payload.

    Full-time goals use the end of regular time ("2ND_HALF") when present,
    falling back to "CURRENT".
    """
    state = data.get("state") or {}
    code = _state_code(state)
    state_id = state.get("id", data.get("state_id"))
    is_void = code in _VOID_STATES
    finished = is_void or code in _FINISHED_STATES or state_id in _FINISHED_STATE_IDS

    located = _participants_by_location(data)
    home_id = (located.get("home") or {}).get("id")
    away_id = (located.get("away") or {}).get("id")

    scores = _scores_by_description(data)
    fulltime = None if is_void else (_period(scores, "2ND_HALF") or _period(scores, "CURRENT"))
    first_half = None if is_void else _period(scores, "1ST_HALF")
    second_half = None if is_void else _period(scores, "2ND_HALF_ONLY")
    if second_half is None and fulltime is not None and first_half is not None:
        second_half = PeriodScore(
            home=fulltime.home - first_half.home,
            away=fulltime.away - first_half.away,
        )

    events = None
    if "events" in data and not is_void:
        events = []
        for event in data.get("events") or []:
            participant_id = event.get("participant_id")
            participant = "home" if participant_id == home_id else "away" if participant_id == away_id else None
            events.append(FixtureEvent(
                type=_event_type(event),
                player_name=event.get("player_name"),
                participant=participant,
                minute=event.get("minute"),
                extra_minute=event.get("extra_minute"),
            ))

    return FixtureResult(
        fixture_id=str(fixture_id),
        finished=finished,
        state=code,
        home_goals=fulltime.home if fulltime else None,
        away_goals=fulltime.away if fulltime else None,
        first_half=first_half,
        second_half=second_half,
        home_team=(located.get("home") or {}).get("name"),
        away_team=(located.get("away") or {}).get("name"),
        events=events,
    )
