"""Team and roster models."""
from __future__ import annotations

from sqlalchemy import CheckConstraint, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from auction.models.base import Base


class Team(Base):
    """Bidding team. Belongs to exactly one tournament."""

    __tablename__ = "teams"
    __table_args__ = (
        CheckConstraint("remaining_budget >= 0", name="ck_teams_remaining_budget_non_negative"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tournament_id: Mapped[int] = mapped_column(
        ForeignKey("tournaments.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    owner: Mapped[str] = mapped_column(String(128), nullable=False, default="")
    color: Mapped[str] = mapped_column(String(16), nullable=False, default="#10B981")
    budget: Mapped[int] = mapped_column(Integer, nullable=False)  # fixed ceiling
    remaining_budget: Mapped[int] = mapped_column(Integer, nullable=False)  # settlement-owned

    tournament: Mapped["Tournament"] = relationship("Tournament", back_populates="teams")
    roster = relationship(
        "TeamPlayer", back_populates="team", cascade="all, delete-orphan"
    )


class TeamPlayer(Base):
    """Roster entry: a player currently owned by a team."""

    __tablename__ = "team_players"
    __table_args__ = (UniqueConstraint("team_id", "player_id", name="uq_team_players_team_player"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    team_id: Mapped[int] = mapped_column(ForeignKey("teams.id", ondelete="CASCADE"), nullable=False, index=True)
    player_id: Mapped[int] = mapped_column(ForeignKey("players.id", ondelete="CASCADE"), nullable=False)

    team: Mapped["Team"] = relationship("Team", back_populates="roster")
