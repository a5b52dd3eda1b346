"""
backend/betsettle/services/errors.py

Purpose:
    Typed domain errors for admission and settlement. Admission errors are
    returned synchronously to the caller; settlement errors are recovered
    inside the pipeline and never reach a client.
"""

from fastapi import status


class WagerError(Exception):
    """Base class for errors that map onto an HTTP response."""

    code = "WAGER_ERROR"
    http_status = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidLeg(WagerError):
    """Bad market, selection, odds or fixture reference. Rejected with no side effects."""

    code = "INVALID_LEG"


class InsufficientBalance(WagerError):
    code = "INSUFFICIENT_BALANCE"


class ConflictingWager(WagerError):
    """Owner already holds a pending wager on the same (fixture, market)."""

    code = "CONFLICTING_WAGER"
    http_status = status.HTTP_409_CONFLICT


class WagerNotFound(WagerError):
    code = "WAGER_NOT_FOUND"
    http_status = status.HTTP_404_NOT_FOUND


class AccountNotFound(WagerError):
    code = "ACCOUNT_NOT_FOUND"
    http_status = status.HTTP_404_NOT_FOUND


class TransientFetchFailure(Exception):
    """Fixture result could not be fetched (network, timeout, provider error).

    Never means "finished" or "lost": the wager is rescheduled.
    """


class UnsupportedMarket(Exception):
    """No calculator is registered for a market. Settled as a leg refund."""


class SettlementError(Exception):
    """Retries exhausted or unexpected pipeline failure. Wager moves to `error`."""
