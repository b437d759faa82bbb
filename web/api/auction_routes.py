"""Live auction API: current state, history, operator actions, and the viewer feed."""
from __future__ import annotations

import asyncio
import logging
from typing import Optional, Union

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from pydantic import BaseModel

from auction.models.base import async_session_factory
from auction.schemas import AuctionView
from auction.services import queries
from auction.services.authorization import CallerIdentity
from auction.services.notifications import auction_update_topic, notification_bus, tournament_topics
from auction.services.state_machine import auction_state_machine
from web.auth import require_caller

logger = logging.getLogger("auction.api")

router = APIRouter(prefix="/api/auctions", tags=["auctions"])


class StartAuctionRequest(BaseModel):
    player_id: Union[int, str]
    tournament_id: Union[int, str]


class BidRequest(BaseModel):
    auction_id: Union[int, str]
    team_id: Union[int, str]
    amount: int


class CompleteAuctionRequest(BaseModel):
    auction_id: Union[int, str]
    winner_id: Optional[Union[int, str]] = None  # omit for unsold
    final_amount: Optional[int] = None  # defaults to the current bid


@router.get("/current", response_model=Optional[AuctionView])
async def current_auction(tournament_id: int):
    """The tournament's active auction, or null."""
    async with async_session_factory() as session:
        return await queries.current_auction(session, tournament_id)


@router.get("", response_model=list[AuctionView])
async def auction_history(tournament_id: Optional[int] = None, status: Optional[str] = None):
    """Auctions newest first. Filter with ?tournament_id= and ?status=sold|unsold|active."""
    async with async_session_factory() as session:
        return await queries.auction_history(session, tournament_id, status)


@router.get("/{auction_id}", response_model=AuctionView)
async def get_auction(auction_id: int):
    async with async_session_factory() as session:
        return await queries.get_auction(session, auction_id)


@router.post("", response_model=AuctionView, status_code=201)
async def start_auction(body: StartAuctionRequest, caller: CallerIdentity = Depends(require_caller)):
    """Put a player on the table at their base price."""
    return await auction_state_machine.start(caller, body.player_id, body.tournament_id)


@router.post("/bid", response_model=AuctionView)
async def place_bid(body: BidRequest, caller: CallerIdentity = Depends(require_caller)):
    return await auction_state_machine.bid(caller, body.auction_id, body.team_id, body.amount)


@router.post("/complete", response_model=AuctionView)
async def complete_auction(body: CompleteAuctionRequest, caller: CallerIdentity = Depends(require_caller)):
    """Sell to winner_id, or record a failed sale when no winner is given."""
    return await auction_state_machine.complete(caller, body.auction_id, body.winner_id, body.final_amount)


@router.post("/reset/{tournament_id}")
async def reset_auction(tournament_id: int, caller: CallerIdentity = Depends(require_caller)):
    """Delete every auction, return every player to the pool and refill every purse."""
    await auction_state_machine.reset(caller, tournament_id)
    return {"ok": True}


@router.post("/{auction_id}/cancel")
async def cancel_auction(auction_id: int, caller: CallerIdentity = Depends(require_caller)):
    """Release an active auction without selling the player."""
    tournament_id = await auction_state_machine.cancel(caller, auction_id)
    return {"ok": True, "tournament_id": tournament_id}


@router.websocket("/ws/{tournament_id}")
async def auction_feed(websocket: WebSocket, tournament_id: int):
    """Push auction updates, results and team changes for one tournament.

    Each message is ``{"topic": ..., "payload": ...}``. The current auction is sent
    first so a late joiner does not wait for the next change.
    """
    await websocket.accept()
    subscription = notification_bus.subscribe(*tournament_topics(tournament_id))

    async def forward():
        async for topic, payload in subscription:
            await websocket.send_json({"topic": topic, "payload": payload})

    forwarder = None
    try:
        async with async_session_factory() as session:
            current = await queries.current_auction(session, tournament_id)
        await websocket.send_json({
            "topic": auction_update_topic(tournament_id),
            "payload": current.model_dump(mode="json") if current else None,
        })
        forwarder = asyncio.create_task(forward())
        # Viewers send nothing; this only waits for the disconnect
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.debug("Viewer left the feed of tournament %s", tournament_id)
    finally:
        if forwarder is not None:
            forwarder.cancel()
        subscription.close()
