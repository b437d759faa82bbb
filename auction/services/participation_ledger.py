"""Participation ledger: a player's status, owner and price within one tournament.

Status moves only through settlement (sold, failed sale), the mark-unsold
correction, the bulk revert, and the tournament reset. Functions here work
inside the caller's session and never commit.
"""
from __future__ import annotations

import logging
from typing import Any, Iterable, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from auction.errors import ResourceNotFoundError, StateConflictError, ValidationError
from auction.models import Auction, Participation, Player
from auction.models.player import PARTICIPATION_STATUSES

logger = logging.getLogger("auction.ledger")

# Fields a caller may patch; status, team and price belong to settlement
PATCHABLE_FIELDS = ("base_price", "category", "previous_year_team")
PLAYER_FIELDS = ("name", "photo", "age", "primary_role", "batting_style", "bowling_style")


def normalize_name(value: str) -> str:
    """Trim and collapse inner whitespace."""
    return " ".join((value or "").split())


async def get(session: AsyncSession, player_id: int, tournament_id: int) -> Optional[Participation]:
    result = await session.execute(
        select(Participation).where(
            Participation.player_id == player_id,
            Participation.tournament_id == tournament_id,
        )
    )
    return result.scalar_one_or_none()


async def require(session: AsyncSession, player_id: int, tournament_id: int) -> Participation:
    participation = await get(session, player_id, tournament_id)
    if not participation:
        raise ResourceNotFoundError("Player participation not found", "ParticipationNotFound")
    return participation


def _apply_patch(participation: Participation, patch: dict[str, Any]) -> None:
    for key, value in patch.items():
        if key not in PATCHABLE_FIELDS:
            raise ValidationError(f"Field '{key}' cannot be changed here", "FieldNotPatchable")
        if key == "base_price" and (value is None or value < 0):
            raise ValidationError("Base price must be zero or more", "InvalidAmount")
        setattr(participation, key, value)


async def upsert(
    session: AsyncSession, player_id: int, tournament_id: int, patch: dict[str, Any]
) -> Participation:
    """Create an available participation if missing, then apply the patch."""
    participation = await get(session, player_id, tournament_id)
    if participation is None:
        if await session.get(Player, player_id) is None:
            raise ResourceNotFoundError("Player not found", "PlayerNotFound")
        participation = Participation(player_id=player_id, tournament_id=tournament_id, status="available")
        session.add(participation)
    _apply_patch(participation, patch)
    return participation


async def find_player_by_name(session: AsyncSession, name: str) -> Optional[Player]:
    normalized = normalize_name(name)
    if not normalized:
        return None
    result = await session.execute(
        select(Player).where(func.lower(Player.name) == normalized.lower()).order_by(Player.id).limit(1)
    )
    return result.scalar_one_or_none()


async def register_player(
    session: AsyncSession,
    tournament_id: int,
    player_data: dict[str, Any],
    participation_data: dict[str, Any],
    player_id: Optional[int] = None,
) -> Participation:
    """Enter a player into a tournament.

    Reuses the global Player given by ``player_id`` or matched by name
    (case-insensitive, whitespace-normalized); otherwise creates one.
    Raises DuplicateParticipation if the player is already in the tournament.
    """
    if "name" in player_data:
        player_data = {**player_data, "name": normalize_name(player_data["name"])}
    photo = player_data.get("photo")
    if photo and photo.startswith("data:"):
        raise ValidationError("Inline base64 images are not supported; upload the image and send its URL", "InvalidPhoto")

    player = None
    if player_id is not None:
        player = await session.get(Player, player_id)
        if not player:
            raise ResourceNotFoundError("Existing player not found", "PlayerNotFound")
    elif player_data.get("name"):
        player = await find_player_by_name(session, player_data["name"])
    else:
        raise ValidationError("Player name is required", "MissingField")

    if player is None:
        player = Player(**{k: v for k, v in player_data.items() if k in PLAYER_FIELDS})
        session.add(player)
        await session.flush()
    else:
        for key, value in player_data.items():
            if key in PLAYER_FIELDS and value is not None:
                setattr(player, key, value)

    if await get(session, player.id, tournament_id):
        raise StateConflictError("Player already exists in this tournament", "DuplicateParticipation")
    participation = Participation(player_id=player.id, tournament_id=tournament_id, status="available")
    _apply_patch(participation, participation_data)
    session.add(participation)
    try:
        await session.flush()
    except IntegrityError as e:
        raise StateConflictError("Player already exists in this tournament", "DuplicateParticipation") from e
    return participation


async def remove_participation(session: AsyncSession, player_id: int, tournament_id: int) -> bool:
    """Remove a player from a tournament. Deletes the Player too when no other tournament references it.

    Returns True if the Player itself was deleted.
    """
    participation = await require(session, player_id, tournament_id)
    if participation.status == "sold":
        raise StateConflictError("Mark the player unsold before removing them", "PlayerSold")
    on_table = await session.execute(
        select(Auction.id).where(Auction.participation_id == participation.id, Auction.status == "active")
    )
    if on_table.scalar_one_or_none() is not None:
        raise StateConflictError("Player is currently being auctioned", "AuctionInProgress")
    await session.delete(participation)
    await session.flush()
    remaining = await session.execute(
        select(func.count()).select_from(Participation).where(Participation.player_id == player_id)
    )
    if remaining.scalar_one() == 0:
        player = await session.get(Player, player_id)
        if player:
            await session.delete(player)
            return True
    return False


def mark_sold(participation: Participation, team_id: int, price: int) -> None:
    participation.status = "sold"
    participation.team_id = team_id
    participation.price = price


def mark_failed_sale(participation: Participation) -> str:
    """available -> unsold, unsold -> unsold1; unsold1 stays. Returns the new status."""
    if participation.status == "available":
        participation.status = "unsold"
    elif participation.status == "unsold":
        participation.status = "unsold1"
    elif participation.status != "unsold1":
        raise StateConflictError(
            f"Cannot record a failed sale for a {participation.status} player", "PlayerNotEligible"
        )
    return participation.status


def clear_sale(participation: Participation) -> None:
    """Back to the pool with no owner or price."""
    participation.status = "available"
    participation.team_id = None
    participation.price = None


async def bulk_transition(
    session: AsyncSession,
    tournament_id: int,
    from_statuses: Iterable[str],
    to_status: str,
    category: Optional[str] = None,
) -> int:
    """Move every participation in ``from_statuses`` to ``to_status``. Returns rows changed."""
    from_statuses = list(from_statuses)
    for status in [*from_statuses, to_status]:
        if status not in PARTICIPATION_STATUSES:
            raise ValidationError(f"Unknown status '{status}'", "InvalidStatus")
    if "sold" in from_statuses or to_status == "sold":
        raise ValidationError("Sold players only change through settlement", "InvalidStatus")
    stmt = update(Participation).where(
        Participation.tournament_id == tournament_id,
        Participation.status.in_(from_statuses),
    )
    if category:
        stmt = stmt.where(Participation.category == category)
    result = await session.execute(stmt.values(status=to_status))
    return result.rowcount or 0


async def reset_tournament(session: AsyncSession, tournament_id: int) -> None:
    """Every participation back to available with no team or price."""
    await session.execute(
        update(Participation)
        .where(Participation.tournament_id == tournament_id)
        .values(status="available", team_id=None, price=None)
    )
