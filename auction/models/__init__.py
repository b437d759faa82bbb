"""Database models."""
from auction.models.base import Base, init_db
from auction.models.tournament import Tournament
from auction.models.team import Team, TeamPlayer
from auction.models.player import Participation, Player
from auction.models.auction import Auction, AuctionBid
from auction.models.user import User  # noqa: F401 - for metadata

__all__ = [
    "Base",
    "Tournament",
    "Team",
    "TeamPlayer",
    "Player",
    "Participation",
    "Auction",
    "AuctionBid",
    "User",
    "init_db",
]
