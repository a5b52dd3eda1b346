"""
backend/betsettle/services/outcome_calculators.py

Purpose:
    Outcome calculator registry. One pure calculator per market family maps
    (leg, fixture result) to a LegOutcome. No I/O, deterministic for the
    same fixture result.

    Missing coverage is never a loss: a market without a calculator, a
    selection that cannot be read, missing score data and calculator
    exceptions all resolve to `refunded` with a reason.

Dependencies:
    - betsettle.models.fixture
    - betsettle.models.wager
"""

from __future__ import annotations

import logging
import re
from typing import Callable, Optional

from betsettle.models.fixture import FixtureEvent, FixtureResult, PeriodScore
from betsettle.models.wager import LegOutcome, LegStatus
from betsettle.services.errors import UnsupportedMarket

logger = logging.getLogger("betsettle.outcome_calculators")

Calculator = Callable[[dict, FixtureResult], LegOutcome]

HOME = "HOME"
DRAW = "DRAW"
AWAY = "AWAY"

_HOME_TOKENS = {"1", "home", "home win", "w1"}
_DRAW_TOKENS = {"x", "draw", "tie"}
_AWAY_TOKENS = {"2", "away", "away win", "w2"}
_YES_TOKENS = {"yes", "y", "true"}
_NO_TOKENS = {"no", "n", "false"}

_GOAL_COUNT_RE = re.compile(r"(\d+)\s*(\+)?\s*goals?\b", re.IGNORECASE)
_BARE_COUNT_RE = re.compile(r"^\s*(\d+)\s*(\+)?\s*$")
_SCORER_LABEL_RE = re.compile(r"^\s*(first|last|anytime)\b\s*(?:goalscorer)?\s*[-:]\s*(.+)$", re.IGNORECASE)
_TOTALS_RE = re.compile(r"\b(over|under)\s*([0-9]+(?:\.[0-9]+)?)", re.IGNORECASE)

_COUNTED_GOAL_TYPES = {"goal", "penalty"}

_registry: dict[str, Calculator] = {}
_market_families: dict[str, str] = {}


def register(family: str, *market_ids: str) -> Callable[[Calculator], Calculator]:
    """Register a calculator under a family name and the market ids that dispatch to it."""
    def decorator(func: Calculator) -> Calculator:
        _registry[family] = func
        for market_id in (family, *market_ids):
            _market_families[_normalize_market_id(market_id)] = family
        return func
    return decorator


def _normalize_market_id(market_id) -> str:
    return str(market_id).strip().upper()


def market_family(market_id) -> Optional[str]:
    return _market_families.get(_normalize_market_id(market_id))


def is_supported(market_id) -> bool:
    return market_family(market_id) is not None


def get_calculator(market_id) -> Calculator:
    family = market_family(market_id)
    if family is None:
        raise UnsupportedMarket(f"No calculator for market {market_id}")
    return _registry[family]


def evaluate(leg: dict, result: FixtureResult) -> LegOutcome:
    """Evaluate one leg against its fixture result.

    Returns a `pending` outcome while the fixture is not finished; the caller
    must not treat that as terminal.
    """
    if not result.finished:
        return LegOutcome(status=LegStatus.pending, reason=f"Fixture {result.fixture_id} not finished")

    try:
        calculator = get_calculator(leg["market_id"])
    except UnsupportedMarket:
        return _refund(f"Unsupported market {leg['market_id']}")

    try:
        return calculator(leg, result)
    except Exception as exc:
        logger.exception(
            "Calculator failed for market=%s fixture=%s", leg.get("market_id"), result.fixture_id,
        )
        return _refund(f"Calculator error: {exc}")


# ---------- Helpers ----------

def _won(reason: str) -> LegOutcome:
    return LegOutcome(status=LegStatus.won, reason=reason)


def _lost(reason: str) -> LegOutcome:
    return LegOutcome(status=LegStatus.lost, reason=reason)


def _refund(reason: str) -> LegOutcome:
    return LegOutcome(status=LegStatus.refunded, reason=reason)


def _decide(is_winning: bool, reason: str) -> LegOutcome:
    return _won(reason) if is_winning else _lost(reason)


def _selector(leg: dict) -> str:
    return str(leg.get("outcome_selector") or "").strip()


def _actual_result(home: int, away: int) -> str:
    if home > away:
        return HOME
    if home < away:
        return AWAY
    return DRAW


def normalize_result_pick(selector: str, result: FixtureResult) -> Optional[str]:
    """Map a 1X2-style selection ("Home", "1", "X", team name ...) to HOME/DRAW/AWAY."""
    token = selector.strip().casefold()
    if not token:
        return None
    if token in _HOME_TOKENS:
        return HOME
    if token in _DRAW_TOKENS:
        return DRAW
    if token in _AWAY_TOKENS:
        return AWAY
    if result.home_team and token == result.home_team.strip().casefold():
        return HOME
    if result.away_team and token == result.away_team.strip().casefold():
        return AWAY
    return None


def normalize_yes_no(selector: str) -> Optional[bool]:
    token = selector.strip().casefold()
    if token in _YES_TOKENS:
        return True
    if token in _NO_TOKENS:
        return False
    return None


def parse_goal_count(selector: str) -> Optional[int]:
    """Extract the exact goal count from labels like "Aldosivi - 2 Goals" or "1".

    Open-ended labels ("3+ Goals") have no exact count and yield None.
    """
    match = _GOAL_COUNT_RE.search(selector) or _BARE_COUNT_RE.match(selector)
    if not match or match.group(2):
        return None
    return int(match.group(1))


def _no_score(result: FixtureResult) -> LegOutcome:
    return _refund(f"No final score for fixture {result.fixture_id}")


def _goal_events(events: list[FixtureEvent]) -> list[FixtureEvent]:
    counted = [e for e in events if (e.type or "").casefold() in _COUNTED_GOAL_TYPES]
    # Stable: ties keep provider order, events without a minute go last.
    return sorted(
        counted,
        key=lambda e: (e.minute if e.minute is not None else 10_000, e.extra_minute or 0),
    )


def _same_player(a: Optional[str], b: str) -> bool:
    return bool(a) and a.strip().casefold() == b.strip().casefold()


# ---------- Calculators ----------

@register("1X2", "1", "FULLTIME_RESULT", "MATCH_RESULT")
def match_result(leg: dict, result: FixtureResult) -> LegOutcome:
    if not result.has_score():
        return _no_score(result)
    pick = normalize_result_pick(_selector(leg), result)
    if pick is None:
        return _refund(f"Invalid selection '{_selector(leg)}'")
    actual = _actual_result(result.home_goals, result.away_goals)
    return _decide(
        pick == actual,
        f"Fulltime result: {result.home_goals}-{result.away_goals} ({actual})",
    )


@register("DNB", "10", "DRAW_NO_BET")
def draw_no_bet(leg: dict, result: FixtureResult) -> LegOutcome:
    if not result.has_score():
        return _no_score(result)
    actual = _actual_result(result.home_goals, result.away_goals)
    if actual == DRAW:
        return _refund(f"Draw No Bet: match drawn {result.home_goals}-{result.away_goals}, stake returned")
    pick = normalize_result_pick(_selector(leg), result)
    if pick not in (HOME, AWAY):
        return _refund(f"Invalid selection '{_selector(leg)}'")
    return _decide(
        pick == actual,
        f"Draw No Bet: {result.home_goals}-{result.away_goals} ({actual})",
    )


@register("BTTS", "14", "BOTH_TEAMS_TO_SCORE")
def both_teams_to_score(leg: dict, result: FixtureResult) -> LegOutcome:
    if not result.has_score():
        return _no_score(result)
    wants_yes = normalize_yes_no(_selector(leg))
    if wants_yes is None:
        return _refund(f"Invalid selection '{_selector(leg)}'")
    both_scored = result.home_goals > 0 and result.away_goals > 0
    return _decide(
        both_scored == wants_yes,
        f"Both Teams To Score: {'Yes' if both_scored else 'No'} ({result.home_goals}-{result.away_goals})",
    )


def _team_exact_goals(leg: dict, result: FixtureResult, *, home: bool) -> LegOutcome:
    if not result.has_score():
        return _no_score(result)
    wanted = parse_goal_count(_selector(leg))
    if wanted is None:
        return _refund(f"Could not extract goal count from selection '{_selector(leg)}'")
    actual = result.home_goals if home else result.away_goals
    side = "Home" if home else "Away"
    return _decide(actual == wanted, f"{side} Team Exact Goals: {actual} (selection: {wanted})")


@register("HOME_EXACT_GOALS", "18", "HOME_TEAM_EXACT_GOALS")
def home_team_exact_goals(leg: dict, result: FixtureResult) -> LegOutcome:
    return _team_exact_goals(leg, result, home=True)


@register("AWAY_EXACT_GOALS", "19", "AWAY_TEAM_EXACT_GOALS")
def away_team_exact_goals(leg: dict, result: FixtureResult) -> LegOutcome:
    return _team_exact_goals(leg, result, home=False)


@register("ODD_EVEN", "44")
def odd_even(leg: dict, result: FixtureResult) -> LegOutcome:
    if not result.has_score():
        return _no_score(result)
    selection = _selector(leg).casefold()
    if selection not in ("odd", "even"):
        return _refund(f"Invalid selection '{_selector(leg)}'")
    total = result.home_goals + result.away_goals
    actual = "even" if total % 2 == 0 else "odd"
    return _decide(
        selection == actual,
        f"Odd/Even Goals: {total} goals ({actual.title()}) - Score: {result.home_goals}-{result.away_goals}",
    )


@register("TOTALS", "8", "80", "OVER_UNDER", "GOALS_OVER_UNDER")
def goals_over_under(leg: dict, result: FixtureResult) -> LegOutcome:
    if not result.has_score():
        return _no_score(result)
    match = _TOTALS_RE.search(_selector(leg))
    if not match:
        return _refund(f"Invalid selection '{_selector(leg)}'")
    side = match.group(1).casefold()
    line = float(match.group(2))
    if (line * 2) != int(line * 2):
        # Quarter (split) lines settle half/half; not offered.
        return _refund(f"Unsupported line {line}")
    total = result.home_goals + result.away_goals
    if total == line:
        return _refund(f"Push: {total} goals on line {line}")
    actual = "over" if total > line else "under"
    return _decide(side == actual, f"Goals Over/Under {line}: {total} goals ({actual})")


def _half_exact_goals(leg: dict, result: FixtureResult, period: Optional[PeriodScore], label: str) -> LegOutcome:
    if period is None:
        return _refund(f"No {label} score for fixture {result.fixture_id}")
    wanted = parse_goal_count(_selector(leg))
    if wanted is None:
        return _refund(f"Could not extract goal count from selection '{_selector(leg)}'")
    actual = period.home + period.away
    return _decide(actual == wanted, f"{label.title()} Exact Goals: {actual} (selection: {wanted})")


@register("FIRST_HALF_EXACT_GOALS", "33")
def first_half_exact_goals(leg: dict, result: FixtureResult) -> LegOutcome:
    return _half_exact_goals(leg, result, result.first_half, "first half")


@register("SECOND_HALF_EXACT_GOALS", "38")
def second_half_exact_goals(leg: dict, result: FixtureResult) -> LegOutcome:
    return _half_exact_goals(leg, result, result.second_half, "second half")


def _win_both_halves(leg: dict, result: FixtureResult, *, home: bool) -> LegOutcome:
    if result.first_half is None or result.second_half is None:
        return _refund(f"No half-time scores for fixture {result.fixture_id}")
    wants_yes = normalize_yes_no(_selector(leg))
    if wants_yes is None:
        return _refund(f"Invalid selection '{_selector(leg)}'")
    halves = (result.first_half, result.second_half)
    if home:
        won_both = all(h.home > h.away for h in halves)
    else:
        won_both = all(h.away > h.home for h in halves)
    side = "Home" if home else "Away"
    return _decide(
        won_both == wants_yes,
        f"{side} Team Win Both Halves: {'Yes' if won_both else 'No'} "
        f"({result.first_half.home}-{result.first_half.away}, {result.second_half.home}-{result.second_half.away})",
    )


@register("HOME_WIN_BOTH_HALVES", "41", "HOME_TEAM_WIN_BOTH_HALVES")
def home_win_both_halves(leg: dict, result: FixtureResult) -> LegOutcome:
    return _win_both_halves(leg, result, home=True)


@register("AWAY_WIN_BOTH_HALVES", "39", "AWAY_TEAM_WIN_BOTH_HALVES")
def away_win_both_halves(leg: dict, result: FixtureResult) -> LegOutcome:
    return _win_both_halves(leg, result, home=False)


def _clean_sheet(leg: dict, result: FixtureResult, *, home: bool) -> LegOutcome:
    if not result.has_score():
        return _no_score(result)
    wants_yes = normalize_yes_no(_selector(leg))
    if wants_yes is None:
        return _refund(f"Invalid selection '{_selector(leg)}'")
    conceded = result.away_goals if home else result.home_goals
    kept = conceded == 0
    side = "Home" if home else "Away"
    return _decide(
        kept == wants_yes,
        f"Clean Sheet {side}: {'Yes' if kept else 'No'} ({result.home_goals}-{result.away_goals})",
    )


@register("CLEAN_SHEET_HOME", "50")
def clean_sheet_home(leg: dict, result: FixtureResult) -> LegOutcome:
    return _clean_sheet(leg, result, home=True)


@register("CLEAN_SHEET_AWAY", "51")
def clean_sheet_away(leg: dict, result: FixtureResult) -> LegOutcome:
    return _clean_sheet(leg, result, home=False)


def _scorer_outcome(which: str, player: str, result: FixtureResult) -> LegOutcome:
    """Settle a first / last / anytime goalscorer pick. Own goals never count."""
    label = f"{which.title()} Goalscorer"
    if result.events is None:
        return _refund(f"No match events for fixture {result.fixture_id}")
    if not player:
        return _refund("Invalid selection ''")
    goals = _goal_events(result.events)
    if player.casefold() == "no goalscorer":
        return _decide(not goals, f"{label}: {len(goals)} goals scored")
    if which == "anytime":
        scored = sum(1 for e in goals if _same_player(e.player_name, player))
        return _decide(scored > 0, f"{label}: {player} scored {scored}")
    if not goals:
        return _lost(f"{label}: no goals scored")
    scorer = goals[0] if which == "first" else goals[-1]
    return _decide(_same_player(scorer.player_name, player), f"{label}: {scorer.player_name or 'unknown'}")


@register("ANYTIME_GOALSCORER")
def anytime_goalscorer(leg: dict, result: FixtureResult) -> LegOutcome:
    return _scorer_outcome("anytime", _selector(leg), result)


@register("FIRST_GOALSCORER")
def first_goalscorer(leg: dict, result: FixtureResult) -> LegOutcome:
    return _scorer_outcome("first", _selector(leg), result)


@register("LAST_GOALSCORER")
def last_goalscorer(leg: dict, result: FixtureResult) -> LegOutcome:
    return _scorer_outcome("last", _selector(leg), result)


@register("GOALSCORERS", "90")
def goalscorers(leg: dict, result: FixtureResult) -> LegOutcome:
    """Combined goalscorer market: the pick is First, Last or Anytime for a player.

    The kind comes from `selection_label` when the leg carries one (selector is
    then the player), otherwise from a "First - Player" style selector.
    """
    label = str(leg.get("selection_label") or "").strip().casefold().removesuffix(" goalscorer")
    player = _selector(leg)
    if not label:
        match = _SCORER_LABEL_RE.match(player)
        if not match:
            return _refund(f"Invalid selection '{player}'")
        label, player = match.group(1).casefold(), match.group(2).strip()
    if label not in ("first", "last", "anytime"):
        return _refund(f"Invalid goalscorer label '{leg.get('selection_label')}'")
    return _scorer_outcome(label, player, result)
