"""Auction and bid models."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from auction.models.base import Base

AUCTION_STATUSES = ("open", "active", "sold", "unsold")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Auction(Base):
    """One attempt to sell a participation. Read-only once sold or unsold."""

    __tablename__ = "auctions"
    __table_args__ = (
        # At most one item on the table per tournament
        Index(
            "uq_auctions_one_active_per_tournament",
            "tournament_id",
            unique=True,
            sqlite_where=text("status = 'active'"),
            postgresql_where=text("status = 'active'"),
        ),
        Index("ix_auctions_tournament_status", "tournament_id", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tournament_id: Mapped[int] = mapped_column(ForeignKey("tournaments.id", ondelete="CASCADE"), nullable=False)
    player_id: Mapped[int] = mapped_column(ForeignKey("players.id", ondelete="CASCADE"), nullable=False)
    participation_id: Mapped[int] = mapped_column(
        ForeignKey("participations.id", ondelete="CASCADE"), nullable=False
    )
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="open")
    base_price: Mapped[int] = mapped_column(Integer, nullable=False)  # snapshot at start
    bid_amount: Mapped[int] = mapped_column(Integer, nullable=False)  # current highest bid
    current_bidder_id: Mapped[Optional[int]] = mapped_column(ForeignKey("teams.id", ondelete="SET NULL"), nullable=True)
    winner_id: Mapped[Optional[int]] = mapped_column(ForeignKey("teams.id", ondelete="SET NULL"), nullable=True)
    final_amount: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)  # bumped on every mutation
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # UPDATE/DELETE carry "WHERE version = <loaded>"; a stale write raises StaleDataError
    __mapper_args__ = {"version_id_col": version}

    tournament: Mapped["Tournament"] = relationship("Tournament", back_populates="auctions")
    player: Mapped["Player"] = relationship("Player")
    bids = relationship(
        "AuctionBid",
        back_populates="auction",
        cascade="all, delete-orphan",
        order_by="AuctionBid.seq",
    )


class AuctionBid(Base):
    """Accepted bid. Rows are only ever appended."""

    __tablename__ = "auction_bids"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    auction_id: Mapped[int] = mapped_column(ForeignKey("auctions.id", ondelete="CASCADE"), nullable=False, index=True)
    team_id: Mapped[int] = mapped_column(ForeignKey("teams.id", ondelete="CASCADE"), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    seq: Mapped[int] = mapped_column(Integer, nullable=False)  # 0-based position in the bid sequence
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    auction: Mapped["Auction"] = relationship("Auction", back_populates="bids")
