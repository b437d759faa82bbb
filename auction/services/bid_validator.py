"""Bid validation. Pure: reads its arguments, raises on the first broken rule, mutates nothing."""
from __future__ import annotations

from typing import Optional, Protocol

from auction.errors import BidRejectedError, BudgetError, ResourceNotFoundError, StateConflictError, ValidationError


class AuctionState(Protocol):
    status: str
    tournament_id: int
    bid_amount: int


class TeamState(Protocol):
    tournament_id: int
    remaining_budget: int


def validate_bid(
    auction: AuctionState,
    team: Optional[TeamState],
    amount: int,
    base_price: int,
    bid_count: int,
) -> None:
    """Decide whether ``team`` may bid ``amount`` on ``auction``.

    Checks, in order: the auction is active, the team resolves within the
    auction's tournament, the amount is a positive int, the team can afford it,
    and the amount is at least ``base_price`` for the opening bid or strictly
    above the current bid afterwards. There is no ceiling beyond the team's
    remaining budget.
    """
    if auction.status != "active":
        raise StateConflictError("Auction is not active for bidding", "AuctionNotActive")
    if team is None or team.tournament_id != auction.tournament_id:
        raise ResourceNotFoundError("Team not found", "TeamNotFound")
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValidationError("Bid amount must be a positive whole number", "InvalidAmount")
    if team.remaining_budget < amount:
        raise BudgetError("Insufficient budget", "InsufficientBudget")
    if bid_count == 0:
        if amount < base_price:
            raise BidRejectedError("Bid must be at least the base price", "BelowBasePrice")
    elif amount <= auction.bid_amount:
        raise BidRejectedError("Bid must be higher than current bid", "BidTooLow")
