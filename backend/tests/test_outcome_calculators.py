"""
backend/tests/test_outcome_calculators.py

Purpose:
    Market rules of the outcome calculator registry, including the refund
    fallbacks for unsupported markets, unreadable selections and missing data.
"""

from __future__ import annotations

import pytest

from betsettle.models.fixture import FixtureEvent, FixtureResult, PeriodScore
from betsettle.models.wager import LegStatus
from betsettle.services import outcome_calculators
from betsettle.services.errors import UnsupportedMarket
from conftest import finished, leg, not_finished


def _status(market_id, selector, result) -> LegStatus:
    return outcome_calculators.evaluate(leg(result.fixture_id, market_id, selector), result).status


# ---------- Registry ----------

def test_unfinished_fixture_stays_pending():
    outcome = outcome_calculators.evaluate(leg(1), not_finished(1))
    assert outcome.status == LegStatus.pending


def test_unsupported_market_is_refunded_never_lost():
    outcome = outcome_calculators.evaluate(leg(1, "CORNERS_ASIAN_HANDICAP", "Over 9.5"), finished(1, 0, 3))

    assert outcome.status == LegStatus.refunded
    assert "Unsupported market" in outcome.reason


def test_get_calculator_raises_for_unknown_market():
    with pytest.raises(UnsupportedMarket):
        outcome_calculators.get_calculator("NOT_A_MARKET")


def test_market_ids_are_case_insensitive_and_numeric_aliases_dispatch():
    assert outcome_calculators.market_family("1x2") == "1X2"
    assert outcome_calculators.market_family("10") == "DNB"
    assert outcome_calculators.market_family(14) == "BTTS"
    assert outcome_calculators.is_supported("odd_even")


def test_calculator_exception_becomes_refund(monkeypatch):
    def _boom(_leg, _result):
        raise RuntimeError("bad feed")

    monkeypatch.setitem(outcome_calculators._registry, "BTTS", _boom)
    outcome = outcome_calculators.evaluate(leg(1, "BTTS", "Yes"), finished(1, 1, 1))

    assert outcome.status == LegStatus.refunded
    assert "bad feed" in outcome.reason


def test_missing_score_is_refunded():
    result = FixtureResult(fixture_id="9", finished=True, state="CANCELLED")
    outcome = outcome_calculators.evaluate(leg(9, "1X2", "Home"), result)

    assert outcome.status == LegStatus.refunded
    assert "No final score" in outcome.reason


# ---------- Required markets ----------

@pytest.mark.parametrize(
    "selector,home,away,expected",
    [
        ("Home", 2, 1, LegStatus.won),
        ("1", 2, 1, LegStatus.won),
        ("Draw", 1, 1, LegStatus.won),
        ("X", 0, 0, LegStatus.won),
        ("Away", 0, 3, LegStatus.won),
        ("Home", 1, 1, LegStatus.lost),
        ("Draw", 2, 0, LegStatus.lost),
    ],
)
def test_match_result(selector, home, away, expected):
    assert _status("1X2", selector, finished(1, home, away)) == expected


def test_match_result_accepts_team_names():
    result = finished(1, 0, 2, home_team="Aldosivi", away_team="Boca Juniors")
    assert _status("1X2", "Boca Juniors", result) == LegStatus.won
    assert _status("1X2", "aldosivi", result) == LegStatus.lost


def test_match_result_unreadable_selection_is_refunded():
    assert _status("1X2", "Somebody", finished(1, 1, 0)) == LegStatus.refunded


@pytest.mark.parametrize(
    "selector,home,away,expected",
    [
        ("Home", 2, 0, LegStatus.won),
        ("Away", 2, 0, LegStatus.lost),
        ("Home", 1, 1, LegStatus.refunded),
        ("Away", 0, 0, LegStatus.refunded),
    ],
)
def test_draw_no_bet(selector, home, away, expected):
    assert _status("DNB", selector, finished(1, home, away)) == expected


@pytest.mark.parametrize(
    "selector,home,away,expected",
    [
        ("Yes", 1, 1, LegStatus.won),
        ("Yes", 2, 0, LegStatus.lost),
        ("No", 0, 0, LegStatus.won),
        ("No", 3, 1, LegStatus.lost),
    ],
)
def test_both_teams_to_score(selector, home, away, expected):
    assert _status("BTTS", selector, finished(1, home, away)) == expected


def test_team_exact_goals_reads_count_from_label():
    result = finished(1, 2, 0)
    assert _status("18", "Aldosivi - 2 Goals", result) == LegStatus.won
    assert _status("18", "Aldosivi - 1 Goal", result) == LegStatus.lost
    assert _status("19", "Boca - 0 Goals", result) == LegStatus.won


def test_team_exact_goals_without_count_is_refunded():
    assert _status("HOME_EXACT_GOALS", "Lots", finished(1, 2, 0)) == LegStatus.refunded


def test_team_exact_goals_open_ended_label_is_not_an_exact_count():
    outcome = outcome_calculators.evaluate(leg(1, "HOME_EXACT_GOALS", "Aldosivi - 3+ Goals"), finished(1, 4, 0))

    assert outcome.status == LegStatus.refunded
    assert "Could not extract goal count" in outcome.reason
    assert _status("33", "2+ Goals", finished(1, 3, 1, first_half=PeriodScore(home=2, away=1))) == LegStatus.refunded


@pytest.mark.parametrize(
    "selector,home,away,expected",
    [
        ("Odd", 2, 1, LegStatus.won),
        ("Even", 2, 1, LegStatus.lost),
        ("Even", 0, 0, LegStatus.won),
    ],
)
def test_odd_even(selector, home, away, expected):
    assert _status("ODD_EVEN", selector, finished(1, home, away)) == expected


# ---------- Additional markets ----------

def test_totals_over_under_and_push():
    assert _status("TOTALS", "Over 2.5", finished(1, 2, 1)) == LegStatus.won
    assert _status("TOTALS", "Under 2.5", finished(1, 2, 1)) == LegStatus.lost
    assert _status("80", "Over 3", finished(1, 2, 1)) == LegStatus.refunded
    assert _status("80", "Over 2.25", finished(1, 2, 1)) == LegStatus.refunded


def test_legacy_totals_market_id_settles():
    assert _status("8", "Over 2.5", finished(1, 2, 1)) == LegStatus.won
    assert _status("8", "Over 2.5", finished(1, 1, 0)) == LegStatus.lost


def test_half_exact_goals_need_period_scores():
    result = finished(1, 3, 1, first_half=PeriodScore(home=1, away=0), second_half=PeriodScore(home=2, away=1))
    assert _status("33", "1 Goal", result) == LegStatus.won
    assert _status("38", "3 Goals", result) == LegStatus.won
    assert _status("38", "2 Goals", result) == LegStatus.lost
    assert _status("33", "1 Goal", finished(1, 3, 1)) == LegStatus.refunded


def test_win_both_halves():
    result = finished(1, 3, 1, first_half=PeriodScore(home=1, away=0), second_half=PeriodScore(home=2, away=1))
    assert _status("41", "Yes", result) == LegStatus.won
    assert _status("39", "Yes", result) == LegStatus.lost
    assert _status("39", "No", result) == LegStatus.won


def test_clean_sheet():
    assert _status("CLEAN_SHEET_HOME", "Yes", finished(1, 2, 0)) == LegStatus.won
    assert _status("CLEAN_SHEET_AWAY", "Yes", finished(1, 2, 0)) == LegStatus.lost
    assert _status("51", "No", finished(1, 2, 0)) == LegStatus.won


def test_goalscorer_markets_ignore_own_goals():
    events = [
        FixtureEvent(type="own_goal", player_name="Defender", participant="away", minute=3),
        FixtureEvent(type="goal", player_name="Striker", participant="home", minute=40),
        FixtureEvent(type="penalty", player_name="Winger", participant="away", minute=12),
        FixtureEvent(type="card", player_name="Striker", participant="home", minute=50),
    ]
    result = finished(1, 2, 1, events=events)

    assert _status("ANYTIME_GOALSCORER", "striker", result) == LegStatus.won
    assert _status("ANYTIME_GOALSCORER", "Defender", result) == LegStatus.lost
    assert _status("FIRST_GOALSCORER", "Winger", result) == LegStatus.won
    assert _status("FIRST_GOALSCORER", "Striker", result) == LegStatus.lost
    assert _status("FIRST_GOALSCORER", "No Goalscorer", result) == LegStatus.lost


def test_goalscorer_without_events_is_refunded():
    assert _status("ANYTIME_GOALSCORER", "Striker", finished(1, 1, 0)) == LegStatus.refunded


def test_no_goalscorer_wins_on_goalless_draw():
    assert _status("FIRST_GOALSCORER", "No Goalscorer", finished(1, 0, 0, events=[])) == LegStatus.won


def _late_winner_events() -> list[FixtureEvent]:
    return [
        FixtureEvent(type="goal", player_name="Striker", participant="home", minute=30),
        FixtureEvent(type="goal", player_name="Sub", participant="home", minute=90, extra_minute=2),
        FixtureEvent(type="goal", player_name="Winger", participant="away", minute=90),
        FixtureEvent(type="own_goal", player_name="Defender", participant="home", minute=95),
    ]


def test_last_goalscorer_orders_by_stoppage_time():
    result = finished(1, 2, 2, events=_late_winner_events())

    assert _status("LAST_GOALSCORER", "Sub", result) == LegStatus.won
    assert _status("LAST_GOALSCORER", "Winger", result) == LegStatus.lost
    assert _status("LAST_GOALSCORER", "Defender", result) == LegStatus.lost


def test_first_half_stoppage_goal_precedes_second_half_goal():
    events = [
        FixtureEvent(type="goal", player_name="Early", participant="home", minute=46),
        FixtureEvent(type="goal", player_name="Late", participant="away", minute=45, extra_minute=3),
    ]
    result = finished(1, 1, 1, events=events)

    assert _status("FIRST_GOALSCORER", "Late", result) == LegStatus.won
    assert _status("LAST_GOALSCORER", "Early", result) == LegStatus.won


@pytest.mark.parametrize(
    "label,player,expected",
    [
        ("First", "Striker", LegStatus.won),
        ("Last", "Sub", LegStatus.won),
        ("Last", "Striker", LegStatus.lost),
        ("Anytime", "Winger", LegStatus.won),
        ("Anytime", "Nobody", LegStatus.lost),
        ("Second", "Striker", LegStatus.refunded),
    ],
)
def test_goalscorers_market_reads_label(label, player, expected):
    result = finished(1, 2, 2, events=_late_winner_events())
    goalscorer_leg = dict(leg(1, "90", player), selection_label=label)

    assert outcome_calculators.evaluate(goalscorer_leg, result).status == expected


def test_goalscorers_market_reads_label_from_selector():
    result = finished(1, 2, 2, events=_late_winner_events())

    assert _status("90", "Last - Sub", result) == LegStatus.won
    assert _status("90", "First: Sub", result) == LegStatus.lost
    assert _status("GOALSCORERS", "Anytime Goalscorer - winger", result) == LegStatus.won
    assert _status("90", "Sub", result) == LegStatus.refunded


def test_parse_goal_count():
    assert outcome_calculators.parse_goal_count("Aldosivi - 2 Goals") == 2
    assert outcome_calculators.parse_goal_count("3+ Goals") is None
    assert outcome_calculators.parse_goal_count("1") == 1
    assert outcome_calculators.parse_goal_count("Many") is None
