"""Combination resolver: aggregates per-leg outcomes into one settlement decision.

Priority, applied in this order:
    1. any lost leg        -> lost, payout 0 (even if other legs are still pending)
    2. any pending leg     -> not ready, reschedule
    3. any refunded leg    -> refunded, payout = stake (whole wager voided)
    4. every leg won       -> won, payout = stake * combined odds

A single-leg wager goes through the same rules, so the wager-level state is
always a pure function of its leg states.
"""

from betsettle.models.wager import LegStatus, SettlementDecision, WagerStatus
from betsettle.utils import round_money


def resolve(leg_states: list[LegStatus | str], stake: float, combined_odds: float) -> SettlementDecision:
    states = [LegStatus(s) for s in leg_states]
    if not states:
        return SettlementDecision(ready=False, reason="Wager has no legs")

    lost = sum(1 for s in states if s == LegStatus.lost)
    if lost:
        return SettlementDecision(
            ready=True,
            status=WagerStatus.lost,
            payout=0.0,
            reason=f"{lost} of {len(states)} legs lost",
        )

    pending = sum(1 for s in states if s == LegStatus.pending)
    if pending:
        return SettlementDecision(
            ready=False,
            reason=f"{pending} of {len(states)} legs not finished",
        )

    refunded = sum(1 for s in states if s == LegStatus.refunded)
    if refunded:
        return SettlementDecision(
            ready=True,
            status=WagerStatus.refunded,
            payout=round_money(stake),
            reason=f"{refunded} of {len(states)} legs void, stake returned",
        )

    return SettlementDecision(
        ready=True,
        status=WagerStatus.won,
        payout=round_money(stake * combined_odds),
        reason=f"All {len(states)} legs won",
    )
