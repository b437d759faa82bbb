"""Caller identity and tournament-scoped role checks for auction operations."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from auction.errors import AuthorizationError

# Roles allowed to drive the auction (start, bid, complete, reset, corrections)
OPERATOR_ROLES = ("master", "auctioneer")


@dataclass(frozen=True)
class CallerIdentity:
    """Who is calling. Auctioneers carry the one tournament they are bound to."""

    username: str
    role: str
    tournament_id: Optional[int] = None

    @classmethod
    def from_user(cls, user) -> "CallerIdentity":
        return cls(username=user.username, role=user.role, tournament_id=user.tournament_id)


def authorize(caller: Optional[CallerIdentity], tournament_id: int, roles: tuple[str, ...] = OPERATOR_ROLES) -> None:
    """Raise AuthorizationError unless caller has one of roles and, if an auctioneer, is bound to tournament_id."""
    if caller is None or caller.role not in roles:
        raise AuthorizationError("Forbidden: insufficient role", "InsufficientRole")
    if caller.role == "auctioneer" and caller.tournament_id != tournament_id:
        raise AuthorizationError(
            "Forbidden: you can only act on your assigned tournament", "TournamentMismatch"
        )
