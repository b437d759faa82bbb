"""Typed views of auction state returned by the services and published to observers.

Ids are always plain ints; related objects are never embedded.
"""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict


class BidView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    team_id: int
    amount: int
    created_at: datetime


class AuctionView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    tournament_id: int
    player_id: int
    player_name: Optional[str] = None
    status: str
    base_price: int
    bid_amount: int
    current_bidder_id: Optional[int] = None
    winner_id: Optional[int] = None
    final_amount: Optional[int] = None
    version: int
    created_at: datetime
    completed_at: Optional[datetime] = None
    bids: list[BidView] = []


class AuctionResult(BaseModel):
    """Lightweight settlement summary for viewer animations."""

    auction_id: int
    player_id: int
    status: str  # sold, unsold
    winner_id: Optional[int] = None
    winner_name: Optional[str] = None
    final_amount: Optional[int] = None


class ParticipationView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    player_id: int
    tournament_id: int
    name: Optional[str] = None
    status: str
    base_price: int
    price: Optional[int] = None
    team_id: Optional[int] = None
    category: Optional[str] = None
    previous_year_team: Optional[str] = None


class TeamView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    tournament_id: int
    name: str
    owner: str
    color: str
    budget: int
    remaining_budget: int
    player_ids: list[int] = []
    spent: int = 0


class MarkUnsoldResult(BaseModel):
    participation: ParticipationView
    team: Optional[TeamView] = None


def auction_view(auction, player_name: Optional[str] = None) -> AuctionView:
    """Build an AuctionView from an Auction row whose bids are loaded."""
    view = AuctionView.model_validate(auction)
    if player_name is not None:
        view.player_name = player_name
    return view


def participation_view(participation, name: Optional[str] = None) -> ParticipationView:
    view = ParticipationView.model_validate(participation)
    if name is not None:
        view.name = name
    return view


def team_view(team, player_ids: list[int]) -> TeamView:
    view = TeamView.model_validate(team)
    view.player_ids = sorted(player_ids)
    view.spent = team.budget - team.remaining_budget
    return view
