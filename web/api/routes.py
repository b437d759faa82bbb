"""API routes for tournament administration: tournaments, teams, player pool, corrections."""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict, field_validator
from sqlalchemy import delete, func, select

from auction.models import Team, Tournament, User
from auction.models.base import async_session_factory
from auction.schemas import MarkUnsoldResult, ParticipationView, TeamView, team_view
from auction.services import participation_ledger, queries, team_ledger
from auction.services.authorization import CallerIdentity
from auction.services.state_machine import auction_state_machine
from web.auth import require_caller, require_master_user, require_tournament_operator, require_user

logger = logging.getLogger("auction.api")

router = APIRouter(prefix="/api", tags=["tournaments"])


# --- Pydantic schemas ---


class TournamentCreate(BaseModel):
    name: str
    budget: int = 0  # default purse for teams created without one
    max_teams: int = 8
    status: str = "upcoming"

    @field_validator("budget", "max_teams")
    @classmethod
    def non_negative(cls, v):
        if v < 0:
            raise ValueError("must be zero or more")
        return v


class TournamentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    budget: int
    max_teams: int
    status: str


class TournamentUpdate(BaseModel):
    name: Optional[str] = None
    budget: Optional[int] = None  # applies to teams created afterwards
    max_teams: Optional[int] = None
    status: Optional[str] = None

    @field_validator("budget", "max_teams")
    @classmethod
    def non_negative(cls, v):
        if v is not None and v < 0:
            raise ValueError("must be zero or more")
        return v


class TeamCreate(BaseModel):
    name: str
    owner: str = ""
    color: str = "#10B981"
    budget: Optional[int] = None  # defaults to the tournament purse

    @field_validator("budget")
    @classmethod
    def non_negative(cls, v):
        if v is not None and v < 0:
            raise ValueError("must be zero or more")
        return v


class TeamUpdate(BaseModel):
    name: Optional[str] = None
    owner: Optional[str] = None
    color: Optional[str] = None
    budget: Optional[int] = None  # spent amount is kept; remaining follows


class PlayerRegister(BaseModel):
    player_id: Optional[int] = None  # reuse an existing player instead of matching by name
    name: Optional[str] = None
    photo: Optional[str] = None
    age: Optional[int] = None
    primary_role: Optional[str] = None
    batting_style: Optional[str] = None
    bowling_style: Optional[str] = None
    base_price: int = 0
    category: Optional[str] = None
    previous_year_team: Optional[str] = None


class ParticipationPatch(BaseModel):
    base_price: Optional[int] = None
    category: Optional[str] = None
    previous_year_team: Optional[str] = None


class RevertUnsoldRequest(BaseModel):
    category: Optional[str] = None  # only this category; all unsold players when omitted


async def _get_tournament(session, tournament_id: int) -> Tournament:
    t = await session.get(Tournament, tournament_id)
    if not t:
        raise HTTPException(404, "Tournament not found")
    return t


# --- Tournaments ---


@router.post("/tournaments", response_model=TournamentResponse, status_code=201)
async def create_tournament(body: TournamentCreate, master: User = Depends(require_master_user)):
    """Create a tournament (master only)."""
    async with async_session_factory() as session:
        t = Tournament(name=body.name.strip(), budget=body.budget, max_teams=body.max_teams, status=body.status)
        session.add(t)
        await session.commit()
        await session.refresh(t)
        logger.info("Tournament %s '%s' created by %s", t.id, t.name, master.username)
        return TournamentResponse.model_validate(t)


@router.get("/tournaments", response_model=list[TournamentResponse])
async def list_tournaments():
    """List tournaments, newest first."""
    async with async_session_factory() as session:
        result = await session.execute(select(Tournament).order_by(Tournament.id.desc()))
        return [TournamentResponse.model_validate(t) for t in result.scalars().all()]


@router.get("/tournaments/{tournament_id}", response_model=TournamentResponse)
async def get_tournament(tournament_id: int):
    async with async_session_factory() as session:
        return TournamentResponse.model_validate(await _get_tournament(session, tournament_id))


@router.patch("/tournaments/{tournament_id}", response_model=TournamentResponse)
async def update_tournament(
    tournament_id: int, body: TournamentUpdate, master: User = Depends(require_master_user)
):
    """Edit name, default purse, team limit or status (master only). Existing team budgets are untouched."""
    changes = body.model_dump(exclude_unset=True, exclude_none=True)
    async with async_session_factory() as session:
        t = await _get_tournament(session, tournament_id)
        if "max_teams" in changes:
            count = await session.execute(
                select(func.count()).select_from(Team).where(Team.tournament_id == tournament_id)
            )
            if changes["max_teams"] < count.scalar_one():
                raise HTTPException(400, "Tournament already has more teams than that")
        if "name" in changes:
            changes["name"] = changes["name"].strip()
        for key, value in changes.items():
            setattr(t, key, value)
        await session.commit()
        await session.refresh(t)
        return TournamentResponse.model_validate(t)


@router.delete("/tournaments/{tournament_id}")
async def delete_tournament(tournament_id: int, master: User = Depends(require_master_user)):
    """Delete a tournament with its teams, participations and auctions. Auctioneers bound to it go too."""
    async with auction_state_machine.lock(tournament_id):
        async with async_session_factory() as session:
            t = await _get_tournament(session, tournament_id)
            await session.execute(delete(User).where(User.tournament_id == tournament_id))
            await session.delete(t)
            await session.commit()
    logger.info("Tournament %s deleted by %s", tournament_id, master.username)
    return {"ok": True}


# --- Teams ---


@router.post("/tournaments/{tournament_id}/teams", response_model=TeamView, status_code=201)
async def create_team(tournament_id: int, body: TeamCreate, user: User = Depends(require_user)):
    """Add a team. Its remaining budget starts at its full budget."""
    require_tournament_operator(user, tournament_id)
    async with async_session_factory() as session:
        t = await _get_tournament(session, tournament_id)
        count = await session.execute(select(func.count()).select_from(Team).where(Team.tournament_id == tournament_id))
        if count.scalar_one() >= t.max_teams:
            raise HTTPException(400, f"Tournament already has {t.max_teams} teams")
        budget = body.budget if body.budget is not None else t.budget
        team = Team(
            tournament_id=tournament_id,
            name=body.name.strip(),
            owner=body.owner,
            color=body.color,
            budget=budget,
            remaining_budget=budget,
        )
        session.add(team)
        await session.commit()
        await session.refresh(team)
        return team_view(team, [])


@router.get("/tournaments/{tournament_id}/teams", response_model=list[TeamView])
async def list_teams(tournament_id: int):
    """Teams with remaining budget, amount spent and roster player ids."""
    async with async_session_factory() as session:
        await _get_tournament(session, tournament_id)
        return await queries.list_teams(session, tournament_id)


@router.patch("/tournaments/{tournament_id}/teams/{team_id}", response_model=TeamView)
async def update_team(tournament_id: int, team_id: int, body: TeamUpdate, user: User = Depends(require_user)):
    """Edit name, owner, color or budget. A new budget keeps the amount already spent."""
    require_tournament_operator(user, tournament_id)
    changes = body.model_dump(exclude_unset=True, exclude_none=True)
    async with auction_state_machine.lock(tournament_id):
        async with async_session_factory() as session:
            team = await team_ledger.get_team(session, team_id, tournament_id)
            if "budget" in changes:
                team_ledger.set_budget(team, changes.pop("budget"))
            if "name" in changes:
                changes["name"] = changes["name"].strip()
            for key, value in changes.items():
                setattr(team, key, value)
            await session.commit()
            view = await queries.team_summary(session, team)
    auction_state_machine.publish_team_update(tournament_id, view)
    return view


@router.delete("/tournaments/{tournament_id}/teams/{team_id}")
async def delete_team(tournament_id: int, team_id: int, user: User = Depends(require_user)):
    """Delete a team. Rejected while it still owns players."""
    require_tournament_operator(user, tournament_id)
    async with auction_state_machine.lock(tournament_id):
        async with async_session_factory() as session:
            team = await team_ledger.get_team(session, team_id, tournament_id)
            await team_ledger.remove_team(session, team)
            await session.commit()
    logger.info("Team %s deleted from tournament %s by %s", team_id, tournament_id, user.username)
    return {"ok": True}


# --- Player pool ---


@router.post("/tournaments/{tournament_id}/players", response_model=ParticipationView, status_code=201)
async def register_player(tournament_id: int, body: PlayerRegister, user: User = Depends(require_user)):
    """Enter a player into the tournament's pool as available."""
    require_tournament_operator(user, tournament_id)
    data = body.model_dump()
    player_data = {k: data[k] for k in participation_ledger.PLAYER_FIELDS if data.get(k) is not None}
    participation_data = {k: data[k] for k in participation_ledger.PATCHABLE_FIELDS if data.get(k) is not None}
    async with async_session_factory() as session:
        await _get_tournament(session, tournament_id)
        participation = await participation_ledger.register_player(
            session, tournament_id, player_data, participation_data, player_id=body.player_id
        )
        player_id = participation.player_id
        await session.commit()
        return await queries.get_participation(session, player_id, tournament_id)


@router.get("/tournaments/{tournament_id}/players", response_model=list[ParticipationView])
async def list_players(
    tournament_id: int,
    status: Optional[str] = None,
    category: Optional[str] = None,
    team_id: Optional[int] = None,
):
    """Player pool, optionally filtered by status, category or owning team."""
    async with async_session_factory() as session:
        await _get_tournament(session, tournament_id)
        return await queries.list_participations(session, tournament_id, status, category, team_id)


@router.get("/tournaments/{tournament_id}/players/{player_id}", response_model=ParticipationView)
async def get_player(tournament_id: int, player_id: int):
    async with async_session_factory() as session:
        return await queries.get_participation(session, player_id, tournament_id)


@router.patch("/tournaments/{tournament_id}/players/{player_id}", response_model=ParticipationView)
async def update_player(
    tournament_id: int, player_id: int, body: ParticipationPatch, user: User = Depends(require_user)
):
    """Change base price, category or previous-year team. Creates the participation if missing."""
    require_tournament_operator(user, tournament_id)
    patch = body.model_dump(exclude_unset=True)
    async with async_session_factory() as session:
        await _get_tournament(session, tournament_id)
        await participation_ledger.upsert(session, player_id, tournament_id, patch)
        await session.commit()
        return await queries.get_participation(session, player_id, tournament_id)


@router.delete("/tournaments/{tournament_id}/players/{player_id}")
async def remove_player(tournament_id: int, player_id: int, user: User = Depends(require_user)):
    """Take a player out of the pool. Sold players must be marked unsold first."""
    require_tournament_operator(user, tournament_id)
    async with auction_state_machine.lock(tournament_id):
        async with async_session_factory() as session:
            player_deleted = await participation_ledger.remove_participation(session, player_id, tournament_id)
            await session.commit()
    return {"ok": True, "player_deleted": player_deleted}


# --- Corrections ---


@router.post("/tournaments/{tournament_id}/players/revert-unsold")
async def revert_unsold(
    tournament_id: int,
    body: Optional[RevertUnsoldRequest] = None,
    caller: CallerIdentity = Depends(require_caller),
):
    """Return unsold players to the pool for another round."""
    category = body.category if body else None
    moved = await auction_state_machine.revert_unsold(caller, tournament_id, category=category)
    return {"ok": True, "reverted": moved}


@router.post("/tournaments/{tournament_id}/players/{player_id}/mark-unsold", response_model=MarkUnsoldResult)
async def mark_unsold(tournament_id: int, player_id: int, caller: CallerIdentity = Depends(require_caller)):
    """Undo a sale: refund the team, drop the player from its roster, back to available."""
    return await auction_state_machine.mark_unsold(caller, player_id, tournament_id)
