"""Loan lifecycle states derived from the on-chain user state."""

from enum import Enum

from llamalend.protocols.base import UserPosition


class LoanState(Enum):
    NO_LOAN = "no_loan"
    HEALTHY = "healthy"
    SOFT_LIQUIDATION = "soft_liquidation"
    # A fully repaid or liquidated loan reads back as NO_LOAN on chain;
    # previews use CLOSED for operations that would clear all debt.
    CLOSED = "closed"


def classify(position: UserPosition) -> LoanState:
    if not position.has_loan:
        return LoanState.NO_LOAN
    if position.in_soft_liquidation:
        return LoanState.SOFT_LIQUIDATION
    return LoanState.HEALTHY


def allows_band_changes(state: LoanState) -> bool:
    """borrow_more / add_collateral / remove_collateral need a healthy loan."""
    return state == LoanState.HEALTHY
