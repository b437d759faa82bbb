"""Player and per-tournament participation models."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from auction.models.base import Base

# available -> in pool, sold -> bought, unsold -> first failed sale, unsold1 -> second failed sale
PARTICIPATION_STATUSES = ("available", "unsold", "unsold1", "sold")
ELIGIBLE_STATUSES = ("available", "unsold", "unsold1")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Player(Base):
    """Global player identity, shared by every tournament the player takes part in."""

    __tablename__ = "players"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    photo: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)  # hosted image URL
    age: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    primary_role: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)  # Batsman, Bowler, All-rounder
    batting_style: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    bowling_style: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)

    participations = relationship(
        "Participation", back_populates="player", cascade="all, delete-orphan", passive_deletes=True
    )


class Participation(Base):
    """A player's entry in one tournament: the auctionable unit."""

    __tablename__ = "participations"
    __table_args__ = (
        UniqueConstraint("player_id", "tournament_id", name="uq_participations_player_tournament"),
        Index("ix_participations_tournament_status", "tournament_id", "status"),
        Index("ix_participations_tournament_status_category", "tournament_id", "status", "category"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    player_id: Mapped[int] = mapped_column(ForeignKey("players.id", ondelete="CASCADE"), nullable=False)
    tournament_id: Mapped[int] = mapped_column(ForeignKey("tournaments.id", ondelete="CASCADE"), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="available")
    base_price: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    price: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)  # set only when sold
    team_id: Mapped[Optional[int]] = mapped_column(ForeignKey("teams.id", ondelete="SET NULL"), nullable=True)  # set only when sold
    category: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)  # draft bucket, e.g. "A+"
    previous_year_team: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    player: Mapped["Player"] = relationship("Player", back_populates="participations")
    tournament: Mapped["Tournament"] = relationship("Tournament", back_populates="participations")
