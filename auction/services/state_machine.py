"""Auction state machine: start, bid, settle, reset, and the corrections around them.

One tournament has at most one active auction. Every mutation of a tournament's
auction slot runs under that tournament's lock and inside a single database
transaction, so a bid can never validate against a stale current bid and a
settlement either moves budget, ownership and auction status together or not at all.
The auction row's version column backs this up at the storage level, together
with the partial unique index on active auctions.

Observers are notified only after a commit succeeds.
"""
from __future__ import annotations

import asyncio
import logging
import weakref
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

import config
from auction.errors import (
    AuctionError,
    PersistenceError,
    ResourceNotFoundError,
    StateConflictError,
    ValidationError,
    parse_id,
)
from auction.models import Auction, AuctionBid, Participation, Player, Team, Tournament
from auction.models.base import async_session_factory
from auction.models.player import ELIGIBLE_STATUSES
from auction.schemas import AuctionResult, AuctionView, MarkUnsoldResult, TeamView, auction_view, participation_view
from auction.services import participation_ledger, queries, team_ledger
from auction.services.authorization import CallerIdentity, authorize
from auction.services.bid_validator import validate_bid
from auction.services.notifications import (
    NotificationBus,
    auction_result_topic,
    auction_update_topic,
    notification_bus,
    team_update_topic,
)

logger = logging.getLogger("auction.engine")

# One automatic retry when another writer bumped the auction version first
CONFLICT_RETRIES = 1


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConcurrentModification(StateConflictError):
    default_code = "ConcurrentModification"


class AuctionStateMachine:
    """Owns the active-auction lifecycle for every tournament served by this process."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] = async_session_factory,
        bus: NotificationBus = notification_bus,
        settlement_retries: int = config.SETTLEMENT_RETRIES,
    ):
        self._session_factory = session_factory
        self._bus = bus
        self._settlement_retries = settlement_retries
        # Dropped automatically once no coroutine holds or waits on a lock
        self._locks: weakref.WeakValueDictionary[int, asyncio.Lock] = weakref.WeakValueDictionary()

    # --- plumbing ---

    def lock(self, tournament_id: int) -> asyncio.Lock:
        """Lock serializing every mutation of one tournament's auction slot."""
        lock = self._locks.get(tournament_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[tournament_id] = lock
        return lock

    @asynccontextmanager
    async def _transaction(self, action: str) -> AsyncIterator[AsyncSession]:
        """Session whose changes are committed on success and rolled back on any error."""
        async with self._session_factory() as session:
            try:
                yield session
                await session.commit()
            except AuctionError:
                await session.rollback()
                raise
            except StaleDataError as e:
                await session.rollback()
                raise ConcurrentModification(
                    "Auction changed while the request was being processed", "ConcurrentModification"
                ) from e
            except SQLAlchemyError as e:
                await session.rollback()
                logger.exception("%s failed; rolled back", action)
                raise PersistenceError(f"Could not save {action}; no changes were made") from e

    async def _tournament_of_auction(self, auction_id: int) -> int:
        async with self._session_factory() as session:
            result = await session.execute(select(Auction.tournament_id).where(Auction.id == auction_id))
            tournament_id = result.scalar_one_or_none()
        if tournament_id is None:
            raise ResourceNotFoundError("Auction not found", "AuctionNotFound")
        return tournament_id

    @staticmethod
    async def _require_tournament(session: AsyncSession, tournament_id: int) -> Tournament:
        tournament = await session.get(Tournament, tournament_id)
        if not tournament:
            raise ResourceNotFoundError("Tournament not found", "TournamentNotFound")
        return tournament

    @staticmethod
    async def _player_name(session: AsyncSession, player_id: int) -> Optional[str]:
        player = await session.get(Player, player_id)
        return player.name if player else None

    def _publish_update(self, tournament_id: int, view: Optional[AuctionView]) -> None:
        payload = view.model_dump(mode="json") if view is not None else None
        self._bus.publish(auction_update_topic(tournament_id), payload)

    def publish_team_update(self, tournament_id: int, view: TeamView) -> None:
        """Tell observers about a team change made outside settlement, once it is committed."""
        self._bus.publish(team_update_topic(tournament_id), view.model_dump(mode="json"))

    # --- operations ---

    async def start(self, caller: Optional[CallerIdentity], player_id, tournament_id) -> AuctionView:
        """Put a player on the table. The opening bid amount is their base price."""
        player_id = parse_id(player_id, "InvalidPlayerId", "player id")
        tournament_id = parse_id(tournament_id, "InvalidTournamentId", "tournament id")
        authorize(caller, tournament_id)

        async with self.lock(tournament_id):
            async with self._transaction("auction start") as session:
                await self._require_tournament(session, tournament_id)
                participation = await participation_ledger.get(session, player_id, tournament_id)
                if participation is None or participation.status not in ELIGIBLE_STATUSES:
                    raise StateConflictError("Player is not available for auction", "PlayerNotEligible")
                active = await session.execute(
                    select(Auction.id).where(Auction.tournament_id == tournament_id, Auction.status == "active")
                )
                if active.scalar_one_or_none() is not None:
                    raise StateConflictError("Another auction is already in progress", "AuctionInProgress")

                auction = Auction(
                    tournament_id=tournament_id,
                    player_id=player_id,
                    participation_id=participation.id,
                    status="active",
                    base_price=participation.base_price,
                    bid_amount=participation.base_price,
                    current_bidder_id=None,
                    winner_id=None,
                    final_amount=None,
                    created_at=_utcnow(),
                    completed_at=None,
                    bids=[],
                )
                session.add(auction)
                try:
                    await session.flush()
                except IntegrityError as e:
                    raise StateConflictError("Another auction is already in progress", "AuctionInProgress") from e
                view = auction_view(auction, await self._player_name(session, player_id))

        logger.info(
            "Auction %s started: player %s in tournament %s at %d", view.id, player_id, tournament_id, view.bid_amount
        )
        self._publish_update(tournament_id, view)
        return view

    async def bid(self, caller: Optional[CallerIdentity], auction_id, team_id, amount) -> AuctionView:
        """Record a bid. On rejection nothing changes and the specific error is raised."""
        auction_id = parse_id(auction_id, "InvalidAuctionId", "auction id")
        team_id = parse_id(team_id, "InvalidTeamId", "team id")
        tournament_id = await self._tournament_of_auction(auction_id)
        authorize(caller, tournament_id)

        async with self.lock(tournament_id):
            attempt = 0
            while True:
                try:
                    view = await self._apply_bid(auction_id, team_id, amount)
                    break
                except ConcurrentModification:
                    if attempt >= CONFLICT_RETRIES:
                        raise
                    attempt += 1
                    logger.info("Bid on auction %s hit a concurrent update; re-validating", auction_id)

        logger.info("Bid accepted on auction %s: team %s bid %d", auction_id, team_id, amount)
        self._publish_update(tournament_id, view)
        return view

    async def _apply_bid(self, auction_id: int, team_id: int, amount) -> AuctionView:
        async with self._transaction(f"bid on auction {auction_id}") as session:
            auction = await queries.load_auction(session, auction_id)
            if auction is None:
                raise ResourceNotFoundError("Auction not found", "AuctionNotFound")
            team = await session.get(Team, team_id)
            validate_bid(auction, team, amount, auction.base_price, len(auction.bids))

            auction.bids.append(
                AuctionBid(team_id=team.id, amount=amount, seq=len(auction.bids), created_at=_utcnow())
            )
            auction.bid_amount = amount
            auction.current_bidder_id = team.id
            await session.flush()
            return auction_view(auction, await self._player_name(session, auction.player_id))

    async def complete(
        self,
        caller: Optional[CallerIdentity],
        auction_id,
        winner_id=None,
        final_amount: Optional[int] = None,
    ) -> AuctionView:
        """Settle the auction: sold to ``winner_id`` or, with no winner, unsold.

        Sold: winner debited by ``final_amount`` (default: current bid), player added
        to the winner's roster, participation marked sold. Unsold: participation moves
        available -> unsold -> unsold1. Team, participation and auction commit together.
        """
        auction_id = parse_id(auction_id, "InvalidAuctionId", "auction id")
        if winner_id is not None:
            winner_id = parse_id(winner_id, "InvalidTeamId", "winner id")
        if final_amount is not None and (
            isinstance(final_amount, bool) or not isinstance(final_amount, int) or final_amount <= 0
        ):
            raise ValidationError("Final amount must be a positive whole number", "InvalidAmount")
        tournament_id = await self._tournament_of_auction(auction_id)
        authorize(caller, tournament_id)

        async with self.lock(tournament_id):
            attempt = 0
            while True:
                try:
                    view, result, team_payload = await self._settle(auction_id, winner_id, final_amount)
                    break
                except (PersistenceError, ConcurrentModification) as e:
                    limit = self._settlement_retries if isinstance(e, PersistenceError) else CONFLICT_RETRIES
                    if attempt >= limit:
                        raise
                    attempt += 1
                    logger.warning("Settlement of auction %s failed (%s); retrying", auction_id, e.code)

        if result.status == "sold":
            logger.info(
                "Auction %s settled: player %s sold to team %s for %d",
                auction_id, result.player_id, result.winner_id, result.final_amount,
            )
        else:
            logger.info("Auction %s settled: player %s unsold", auction_id, result.player_id)
        self._publish_update(tournament_id, view)
        self._bus.publish(auction_result_topic(tournament_id), result.model_dump(mode="json"))
        if team_payload is not None:
            self._bus.publish(team_update_topic(tournament_id), team_payload)
        return view

    async def _settle(self, auction_id: int, winner_id: Optional[int], final_amount: Optional[int]):
        async with self._transaction(f"settlement of auction {auction_id}") as session:
            auction = await queries.load_auction(session, auction_id)
            if auction is None:
                raise ResourceNotFoundError("Auction not found", "AuctionNotFound")
            if auction.status != "active":
                raise StateConflictError("Auction is already completed", "AuctionAlreadyComplete")
            participation = await session.get(Participation, auction.participation_id)
            if participation is None:
                raise ResourceNotFoundError("Player participation not found", "ParticipationNotFound")

            team_payload = None
            if winner_id is not None:
                team = await team_ledger.get_team(session, winner_id, auction.tournament_id)
                sale_amount = final_amount if final_amount is not None else auction.bid_amount
                if participation.status not in ELIGIBLE_STATUSES:
                    raise StateConflictError("Player is not available for auction", "PlayerNotEligible")
                team_ledger.debit(team, sale_amount)
                await team_ledger.add_player(session, team, auction.player_id)
                participation_ledger.mark_sold(participation, team.id, sale_amount)
                auction.status = "sold"
                auction.winner_id = team.id
                auction.final_amount = sale_amount
                auction.bid_amount = sale_amount
                result = AuctionResult(
                    auction_id=auction.id,
                    player_id=auction.player_id,
                    status="sold",
                    winner_id=team.id,
                    winner_name=team.name,
                    final_amount=sale_amount,
                )
            else:
                team = None
                participation_ledger.mark_failed_sale(participation)
                auction.status = "unsold"
                result = AuctionResult(auction_id=auction.id, player_id=auction.player_id, status="unsold")
            auction.completed_at = _utcnow()
            await session.flush()

            if team is not None:
                team_payload = (await queries.team_summary(session, team)).model_dump(mode="json")
            view = auction_view(auction, await self._player_name(session, auction.player_id))
            return view, result, team_payload

    async def reset(self, caller: Optional[CallerIdentity], tournament_id) -> None:
        """Restart the draft: drop every auction, return every player to the pool, refill every purse."""
        tournament_id = parse_id(tournament_id, "InvalidTournamentId", "tournament id")
        authorize(caller, tournament_id)

        async with self.lock(tournament_id):
            async with self._transaction(f"reset of tournament {tournament_id}") as session:
                await self._require_tournament(session, tournament_id)
                auction_ids = select(Auction.id).where(Auction.tournament_id == tournament_id)
                await session.execute(delete(AuctionBid).where(AuctionBid.auction_id.in_(auction_ids)))
                await session.execute(delete(Auction).where(Auction.tournament_id == tournament_id))
                await participation_ledger.reset_tournament(session, tournament_id)
                await team_ledger.reset_budgets(session, tournament_id)

        logger.info("Tournament %s auction reset by %s", tournament_id, caller.username)
        self._publish_update(tournament_id, None)

    async def cancel(self, caller: Optional[CallerIdentity], auction_id) -> int:
        """Release an abandoned active auction without settling it. Returns the tournament id."""
        auction_id = parse_id(auction_id, "InvalidAuctionId", "auction id")
        tournament_id = await self._tournament_of_auction(auction_id)
        authorize(caller, tournament_id)

        async with self.lock(tournament_id):
            async with self._transaction(f"cancellation of auction {auction_id}") as session:
                auction = await queries.load_auction(session, auction_id)
                if auction is None:
                    raise ResourceNotFoundError("Auction not found", "AuctionNotFound")
                if auction.status != "active":
                    raise StateConflictError("Auction is already completed", "AuctionAlreadyComplete")
                await session.delete(auction)

        logger.info("Auction %s cancelled by %s", auction_id, caller.username)
        self._publish_update(tournament_id, None)
        return tournament_id

    async def mark_unsold(self, caller: Optional[CallerIdentity], player_id, tournament_id) -> MarkUnsoldResult:
        """Reverse a sale: refund the recorded price, drop the player from the roster, back to available."""
        player_id = parse_id(player_id, "InvalidPlayerId", "player id")
        tournament_id = parse_id(tournament_id, "InvalidTournamentId", "tournament id")
        authorize(caller, tournament_id)

        async with self.lock(tournament_id):
            async with self._transaction(f"mark-unsold of player {player_id}") as session:
                participation = await participation_ledger.require(session, player_id, tournament_id)
                on_table = await session.execute(
                    select(Auction.id).where(
                        Auction.participation_id == participation.id, Auction.status == "active"
                    )
                )
                if on_table.scalar_one_or_none() is not None:
                    raise StateConflictError("Player is currently being auctioned", "AuctionInProgress")

                team = None
                refund = participation.price or 0
                if participation.team_id is not None:
                    team = await session.get(Team, participation.team_id)
                if team is not None:
                    if refund > 0:
                        team_ledger.credit(team, refund)
                    await team_ledger.remove_player(session, team, player_id)
                participation_ledger.clear_sale(participation)
                await session.flush()

                team_summary = await queries.team_summary(session, team) if team is not None else None
                result = MarkUnsoldResult(
                    participation=participation_view(participation, await self._player_name(session, player_id)),
                    team=team_summary,
                )

        logger.info(
            "Player %s in tournament %s marked unsold; refunded %d to team %s",
            player_id, tournament_id, refund if team is not None else 0, team.id if team is not None else None,
        )
        if result.team is not None:
            self.publish_team_update(tournament_id, result.team)
        return result

    async def revert_unsold(self, caller: Optional[CallerIdentity], tournament_id, category: Optional[str] = None) -> int:
        """Return unsold and unsold1 players (optionally one category) to the pool. Returns how many moved."""
        tournament_id = parse_id(tournament_id, "InvalidTournamentId", "tournament id")
        authorize(caller, tournament_id)

        async with self.lock(tournament_id):
            async with self._transaction(f"unsold revert in tournament {tournament_id}") as session:
                await self._require_tournament(session, tournament_id)
                moved = await participation_ledger.bulk_transition(
                    session, tournament_id, ("unsold", "unsold1"), "available", category=category
                )

        logger.info(
            "Reverted %d unsold player(s) in tournament %s (category=%s)", moved, tournament_id, category or "all"
        )
        return moved


auction_state_machine = AuctionStateMachine()
