"""Tournament model."""
from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from auction.models.base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Tournament(Base):
    """Tournament whose teams draft players through live auctions."""

    __tablename__ = "tournaments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    budget: Mapped[int] = mapped_column(Integer, nullable=False, default=0)  # default purse for new teams
    max_teams: Mapped[int] = mapped_column(Integer, nullable=False, default=8)
    status: Mapped[str] = mapped_column(String(32), default="upcoming")  # upcoming, ongoing, completed
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    teams = relationship(
        "Team", back_populates="tournament", cascade="all, delete-orphan", passive_deletes=True
    )
    participations = relationship(
        "Participation", back_populates="tournament", cascade="all, delete-orphan", passive_deletes=True
    )
    auctions = relationship(
        "Auction", back_populates="tournament", cascade="all, delete-orphan", passive_deletes=True
    )
