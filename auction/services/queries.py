"""Read-only lookups for viewers and the administration screens. No locks taken."""
from __future__ import annotations

from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from auction.errors import ResourceNotFoundError, ValidationError
from auction.models import Auction, Participation, Player, Team, TeamPlayer
from auction.models.auction import AUCTION_STATUSES
from auction.schemas import (
    AuctionView,
    ParticipationView,
    TeamView,
    auction_view,
    participation_view,
    team_view,
)


async def _player_names(session: AsyncSession, player_ids: set[int]) -> dict[int, str]:
    if not player_ids:
        return {}
    result = await session.execute(select(Player.id, Player.name).where(Player.id.in_(player_ids)))
    return {pid: name for pid, name in result.fetchall()}


async def load_auction(session: AsyncSession, auction_id: int) -> Optional[Auction]:
    """Auction with its bids loaded (fresh from the database)."""
    result = await session.execute(
        select(Auction)
        .where(Auction.id == auction_id)
        .options(selectinload(Auction.bids))
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def current_auction(session: AsyncSession, tournament_id: int) -> Optional[AuctionView]:
    """The tournament's active auction, or None."""
    result = await session.execute(
        select(Auction)
        .where(Auction.tournament_id == tournament_id, Auction.status == "active")
        .options(selectinload(Auction.bids))
    )
    auction = result.scalar_one_or_none()
    if not auction:
        return None
    names = await _player_names(session, {auction.player_id})
    return auction_view(auction, names.get(auction.player_id))


async def get_auction(session: AsyncSession, auction_id: int) -> AuctionView:
    auction = await load_auction(session, auction_id)
    if not auction:
        raise ResourceNotFoundError("Auction not found", "AuctionNotFound")
    names = await _player_names(session, {auction.player_id})
    return auction_view(auction, names.get(auction.player_id))


async def auction_history(
    session: AsyncSession, tournament_id: Optional[int] = None, status: Optional[str] = None
) -> list[AuctionView]:
    """Auctions newest first, optionally filtered by tournament and status."""
    if status and status not in AUCTION_STATUSES:
        raise ValidationError(f"Unknown auction status '{status}'", "InvalidStatus")
    query = select(Auction).options(selectinload(Auction.bids)).order_by(Auction.id.desc())
    if tournament_id is not None:
        query = query.where(Auction.tournament_id == tournament_id)
    if status:
        query = query.where(Auction.status == status)
    result = await session.execute(query)
    auctions = result.scalars().all()
    names = await _player_names(session, {a.player_id for a in auctions})
    return [auction_view(a, names.get(a.player_id)) for a in auctions]


async def team_summary(session: AsyncSession, team: Team) -> TeamView:
    result = await session.execute(select(TeamPlayer.player_id).where(TeamPlayer.team_id == team.id))
    return team_view(team, [row[0] for row in result.fetchall()])


async def list_teams(session: AsyncSession, tournament_id: int) -> list[TeamView]:
    """Teams with roster ids and amount spent."""
    teams_result = await session.execute(
        select(Team).where(Team.tournament_id == tournament_id).order_by(Team.id)
    )
    teams = teams_result.scalars().all()
    if not teams:
        return []
    roster_result = await session.execute(
        select(TeamPlayer.team_id, TeamPlayer.player_id).where(TeamPlayer.team_id.in_([t.id for t in teams]))
    )
    rosters: dict[int, list[int]] = {t.id: [] for t in teams}
    for team_id, player_id in roster_result.fetchall():
        rosters[team_id].append(player_id)
    return [team_view(t, rosters[t.id]) for t in teams]


async def list_participations(
    session: AsyncSession,
    tournament_id: int,
    status: Optional[str] = None,
    category: Optional[str] = None,
    team_id: Optional[int] = None,
) -> list[ParticipationView]:
    query = (
        select(Participation, Player.name)
        .join(Player, Player.id == Participation.player_id)
        .where(Participation.tournament_id == tournament_id)
        .order_by(Participation.id)
    )
    if status:
        query = query.where(Participation.status == status)
    if category:
        query = query.where(Participation.category == category)
    if team_id is not None:
        query = query.where(Participation.team_id == team_id)
    result = await session.execute(query)
    return [participation_view(p, name) for p, name in result.all()]


async def get_participation(session: AsyncSession, player_id: int, tournament_id: int) -> ParticipationView:
    result = await session.execute(
        select(Participation, Player.name)
        .join(Player, Player.id == Participation.player_id)
        .where(Participation.player_id == player_id, Participation.tournament_id == tournament_id)
    )
    row = result.first()
    if not row:
        raise ResourceNotFoundError("Player participation not found", "ParticipationNotFound")
    return participation_view(row[0], row[1])
