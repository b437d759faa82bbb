"""Team budget ledger: remaining purse and roster.

Functions mutate ORM objects inside the caller's session and never commit;
the auction state machine owns the transaction.
"""
from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from auction.errors import BudgetError, ResourceNotFoundError, StateConflictError, ValidationError
from auction.models import Auction, Team, TeamPlayer

logger = logging.getLogger("auction.ledger")


async def get_team(session: AsyncSession, team_id: int, tournament_id: Optional[int] = None) -> Team:
    """Load a team, optionally requiring it to belong to a tournament. Raises TeamNotFound."""
    team = await session.get(Team, team_id)
    if not team or (tournament_id is not None and team.tournament_id != tournament_id):
        raise ResourceNotFoundError("Team not found", "TeamNotFound")
    return team


def debit(team: Team, amount: int) -> None:
    """Take amount out of the team's remaining budget. Never goes negative."""
    if amount <= 0:
        raise ValidationError("Amount must be positive", "InvalidAmount")
    if team.remaining_budget < amount:
        raise BudgetError(f"{team.name} has insufficient budget", "InsufficientBudget")
    team.remaining_budget -= amount


def credit(team: Team, amount: int) -> None:
    """Refund amount to the team.

    Not clamped to ``team.budget``: a sale price edited downward between sale and
    refund can leave remaining_budget above the ceiling. Logged, not corrected.
    """
    if amount <= 0:
        raise ValidationError("Amount must be positive", "InvalidAmount")
    team.remaining_budget += amount
    if team.remaining_budget > team.budget:
        logger.warning(
            "Refund of %d pushed team %s remaining budget to %d, above budget %d",
            amount, team.id, team.remaining_budget, team.budget,
        )


async def roster(session: AsyncSession, team_id: int) -> list[int]:
    """Player ids currently owned by the team."""
    result = await session.execute(select(TeamPlayer.player_id).where(TeamPlayer.team_id == team_id))
    return [row[0] for row in result.fetchall()]


async def add_player(session: AsyncSession, team: Team, player_id: int) -> None:
    existing = await session.execute(
        select(TeamPlayer).where(TeamPlayer.team_id == team.id, TeamPlayer.player_id == player_id)
    )
    if existing.scalar_one_or_none():
        return
    session.add(TeamPlayer(team_id=team.id, player_id=player_id))


async def remove_player(session: AsyncSession, team: Team, player_id: int) -> bool:
    """Remove player from the roster. Returns False if the player was not on it."""
    result = await session.execute(
        delete(TeamPlayer).where(TeamPlayer.team_id == team.id, TeamPlayer.player_id == player_id)
    )
    return bool(result.rowcount)


async def reset_budgets(session: AsyncSession, tournament_id: int) -> None:
    """Refill every team's purse to its budget and empty every roster in the tournament."""
    result = await session.execute(select(Team).where(Team.tournament_id == tournament_id))
    teams = result.scalars().all()
    if not teams:
        return
    await session.execute(delete(TeamPlayer).where(TeamPlayer.team_id.in_([t.id for t in teams])))
    for team in teams:
        team.remaining_budget = team.budget


def set_budget(team: Team, budget: int) -> None:
    """Change the budget ceiling, keeping what the team has already spent.

    remaining_budget becomes ``budget - spent``. A budget below the amount
    spent is rejected.
    """
    if budget < 0:
        raise ValidationError("Budget must be zero or more", "InvalidAmount")
    spent = team.budget - team.remaining_budget
    if budget < spent:
        raise BudgetError(f"{team.name} has already spent {spent}", "BudgetBelowSpent")
    team.budget = budget
    team.remaining_budget = budget - spent


async def remove_team(session: AsyncSession, team: Team) -> None:
    """Delete a team that owns no players and is not the leading bidder on the table."""
    if await roster(session, team.id):
        raise StateConflictError("Mark the team's players unsold before deleting it", "TeamHasPlayers")
    leading = await session.execute(
        select(Auction.id).where(Auction.current_bidder_id == team.id, Auction.status == "active")
    )
    if leading.scalar_one_or_none() is not None:
        raise StateConflictError("Team is the leading bidder in the current auction", "AuctionInProgress")
    await session.delete(team)
