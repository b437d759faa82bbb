"""Tests for the auction state machine: lifecycle, settlement, corrections, concurrency."""
import asyncio

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from auction.errors import (
    AuthorizationError,
    BidRejectedError,
    BudgetError,
    PersistenceError,
    ResourceNotFoundError,
    StateConflictError,
    ValidationError,
)
from auction.models import Auction, AuctionBid, Team, TeamPlayer
from auction.models.base import async_session_factory
from auction.services import participation_ledger, queries
from auction.services.authorization import CallerIdentity
from auction.services.notifications import tournament_topics
from auction.services.state_machine import AuctionStateMachine


async def _participation(player_id, tournament_id):
    async with async_session_factory() as session:
        return await queries.get_participation(session, player_id, tournament_id)


async def _team(team_id):
    async with async_session_factory() as session:
        team = await session.get(Team, team_id)
        return await queries.team_summary(session, team)


async def _active_count(tournament_id):
    async with async_session_factory() as session:
        result = await session.execute(
            select(func.count()).select_from(Auction).where(
                Auction.tournament_id == tournament_id, Auction.status == "active"
            )
        )
        return result.scalar_one()


@pytest.fixture
async def setup(make_tournament, make_team, make_player):
    """One tournament, two teams with 500000 each, one player with base price 100000."""
    tid = await make_tournament(budget=500000)
    t1 = await make_team(tid, "Mumbai Indians", 500000)
    t2 = await make_team(tid, "Delhi Capitals", 500000)
    pid = await make_player(tid, "Hardik Pandya", base_price=100000)
    return tid, t1, t2, pid


# --- start ---


@pytest.mark.asyncio
async def test_start_opens_at_base_price(machine, master, setup):
    tid, _, _, pid = setup
    view = await machine.start(master, pid, tid)
    assert view.status == "active"
    assert view.bid_amount == 100000
    assert view.current_bidder_id is None
    assert view.player_name == "Hardik Pandya"
    assert view.bids == []


@pytest.mark.asyncio
async def test_only_one_active_auction_per_tournament(machine, master, setup, make_player):
    tid, _, _, pid = setup
    other = await make_player(tid, "Jasprit Bumrah", base_price=200000)
    await machine.start(master, pid, tid)
    with pytest.raises(StateConflictError) as exc:
        await machine.start(master, other, tid)
    assert exc.value.code == "AuctionInProgress"
    assert await _active_count(tid) == 1


@pytest.mark.asyncio
async def test_concurrent_starts_leave_one_active(machine, master, setup, make_player):
    tid, _, _, pid = setup
    other = await make_player(tid, "Jasprit Bumrah", base_price=200000)
    results = await asyncio.gather(
        machine.start(master, pid, tid), machine.start(master, other, tid), return_exceptions=True
    )
    errors = [r for r in results if isinstance(r, Exception)]
    assert len(errors) == 1
    assert errors[0].code == "AuctionInProgress"
    assert await _active_count(tid) == 1


@pytest.mark.asyncio
async def test_start_rejects_sold_player(machine, master, setup):
    tid, t1, _, pid = setup
    auction = await machine.start(master, pid, tid)
    await machine.complete(master, auction.id, winner_id=t1)
    with pytest.raises(StateConflictError) as exc:
        await machine.start(master, pid, tid)
    assert exc.value.code == "PlayerNotEligible"


@pytest.mark.asyncio
async def test_start_rejects_player_not_in_tournament(machine, master, setup, make_tournament, make_player):
    tid, _, _, _ = setup
    other_tid = await make_tournament("Other Cup")
    outsider = await make_player(other_tid, "Kane Williamson")
    with pytest.raises(StateConflictError) as exc:
        await machine.start(master, outsider, tid)
    assert exc.value.code == "PlayerNotEligible"


@pytest.mark.asyncio
async def test_malformed_ids_rejected(machine, master, setup):
    tid, _, _, _ = setup
    with pytest.raises(ValidationError) as exc:
        await machine.start(master, "abc", tid)
    assert exc.value.code == "InvalidPlayerId"
    with pytest.raises(ValidationError):
        await machine.bid(master, -1, 1, 100)


@pytest.mark.asyncio
async def test_string_ids_accepted(machine, master, setup):
    tid, _, _, pid = setup
    view = await machine.start(master, str(pid), str(tid))
    assert view.player_id == pid


# --- bid ---


@pytest.mark.asyncio
async def test_bid_base_price_and_strict_increase(machine, master, setup):
    """Opening bid below base price fails, at base price passes, repeating it fails."""
    tid, t1, t2, pid = setup
    auction = await machine.start(master, pid, tid)

    with pytest.raises(BidRejectedError) as exc:
        await machine.bid(master, auction.id, t1, 50000)
    assert exc.value.code == "BelowBasePrice"

    view = await machine.bid(master, auction.id, t1, 100000)
    assert view.bid_amount == 100000
    assert view.current_bidder_id == t1

    with pytest.raises(BidRejectedError) as exc:
        await machine.bid(master, auction.id, t2, 100000)
    assert exc.value.code == "BidTooLow"

    view = await machine.bid(master, auction.id, t2, 120000)
    assert [(b.team_id, b.amount) for b in view.bids] == [(t1, 100000), (t2, 120000)]


@pytest.mark.asyncio
async def test_bid_over_budget_leaves_team_untouched(machine, master, make_tournament, make_team, make_player):
    tid = await make_tournament()
    team_id = await make_team(tid, "Rajasthan Royals", 200000)
    pid = await make_player(tid, "Jos Buttler", base_price=100000)
    auction = await machine.start(master, pid, tid)

    with pytest.raises(BudgetError) as exc:
        await machine.bid(master, auction.id, team_id, 250000)
    assert exc.value.code == "InsufficientBudget"
    assert (await _team(team_id)).remaining_budget == 200000
    current = await machine.bid(master, auction.id, team_id, 200000)
    assert current.bid_amount == 200000


@pytest.mark.asyncio
async def test_bid_does_not_move_budget(machine, master, setup):
    tid, t1, _, pid = setup
    auction = await machine.start(master, pid, tid)
    await machine.bid(master, auction.id, t1, 300000)
    assert (await _team(t1)).remaining_budget == 500000


@pytest.mark.asyncio
async def test_bid_from_other_tournament_team_not_found(machine, master, setup, make_tournament, make_team):
    tid, _, _, pid = setup
    other_tid = await make_tournament("Other Cup")
    outsider = await make_team(other_tid, "Outsiders", 900000)
    auction = await machine.start(master, pid, tid)
    with pytest.raises(ResourceNotFoundError) as exc:
        await machine.bid(master, auction.id, outsider, 150000)
    assert exc.value.code == "TeamNotFound"


@pytest.mark.asyncio
async def test_bid_on_missing_auction(machine, master, setup):
    with pytest.raises(ResourceNotFoundError) as exc:
        await machine.bid(master, 9999, setup[1], 150000)
    assert exc.value.code == "AuctionNotFound"


@pytest.mark.asyncio
async def test_bid_on_completed_auction_rejected(machine, master, setup):
    tid, t1, t2, pid = setup
    auction = await machine.start(master, pid, tid)
    await machine.complete(master, auction.id)
    with pytest.raises(StateConflictError) as exc:
        await machine.bid(master, auction.id, t2, 200000)
    assert exc.value.code == "AuctionNotActive"


@pytest.mark.asyncio
async def test_concurrent_equal_bids_one_wins(machine, master, setup):
    """Two teams bid the same amount at once: exactly one is accepted, the other sees BidTooLow."""
    tid, t1, t2, pid = setup
    auction = await machine.start(master, pid, tid)
    await machine.bid(master, auction.id, t1, 100000)

    results = await asyncio.gather(
        machine.bid(master, auction.id, t1, 150000),
        machine.bid(master, auction.id, t2, 150000),
        return_exceptions=True,
    )
    accepted = [r for r in results if not isinstance(r, Exception)]
    rejected = [r for r in results if isinstance(r, Exception)]
    assert len(accepted) == 1 and len(rejected) == 1
    assert isinstance(rejected[0], BidRejectedError)
    assert rejected[0].code == "BidTooLow"

    async with async_session_factory() as session:
        current = await queries.get_auction(session, auction.id)
    assert current.bid_amount == 150000
    assert len(current.bids) == 2


@pytest.mark.asyncio
async def test_equal_bids_through_separate_engines_one_wins(machine, master, bus, setup):
    """Two engines with their own locks share one database; the auction version picks the winner."""
    tid, t1, t2, pid = setup
    other = AuctionStateMachine(async_session_factory, bus, settlement_retries=1)
    auction = await machine.start(master, pid, tid)
    await machine.bid(master, auction.id, t1, 100000)

    results = await asyncio.gather(
        machine.bid(master, auction.id, t1, 200000),
        other.bid(master, auction.id, t2, 200000),
        return_exceptions=True,
    )
    accepted = [r for r in results if not isinstance(r, Exception)]
    rejected = [r for r in results if isinstance(r, Exception)]
    assert len(accepted) == 1 and len(rejected) == 1
    assert isinstance(rejected[0], BidRejectedError)
    assert rejected[0].code == "BidTooLow"

    async with async_session_factory() as session:
        current = await queries.get_auction(session, auction.id)
    assert [b.amount for b in current.bids] == [100000, 200000]
    assert current.bid_amount == 200000
    assert current.current_bidder_id == accepted[0].current_bidder_id


@pytest.mark.asyncio
async def test_bid_amounts_strictly_increase_under_load(machine, master, setup):
    tid, t1, t2, pid = setup
    auction = await machine.start(master, pid, tid)
    amounts = [100000 + 10000 * i for i in range(10)]
    await asyncio.gather(
        *(machine.bid(master, auction.id, t1 if i % 2 else t2, a) for i, a in enumerate(amounts)),
        return_exceptions=True,
    )
    async with async_session_factory() as session:
        current = await queries.get_auction(session, auction.id)
    recorded = [b.amount for b in current.bids]
    assert recorded == sorted(set(recorded))
    assert current.bid_amount == recorded[-1]


# --- complete ---


@pytest.mark.asyncio
async def test_complete_sold_moves_budget_and_roster(machine, master, setup):
    tid, t1, _, pid = setup
    auction = await machine.start(master, pid, tid)
    view = await machine.complete(master, auction.id, winner_id=t1, final_amount=150000)

    assert view.status == "sold"
    assert view.winner_id == t1
    assert view.final_amount == 150000
    team = await _team(t1)
    assert team.remaining_budget == 350000
    assert team.player_ids == [pid]
    assert team.spent == 150000
    participation = await _participation(pid, tid)
    assert participation.status == "sold"
    assert participation.team_id == t1
    assert participation.price == 150000
    assert await _active_count(tid) == 0


@pytest.mark.asyncio
async def test_complete_defaults_to_current_bid(machine, master, setup):
    tid, t1, t2, pid = setup
    auction = await machine.start(master, pid, tid)
    await machine.bid(master, auction.id, t1, 100000)
    await machine.bid(master, auction.id, t2, 180000)
    view = await machine.complete(master, auction.id, winner_id=t2)
    assert view.final_amount == 180000
    assert (await _team(t2)).remaining_budget == 320000


@pytest.mark.asyncio
async def test_complete_unsold_progression(machine, master, setup):
    """available -> unsold -> unsold1 across auctions; a third failure stays unsold1."""
    tid, _, _, pid = setup
    for expected in ("unsold", "unsold1", "unsold1"):
        auction = await machine.start(master, pid, tid)
        view = await machine.complete(master, auction.id)
        assert view.status == "unsold"
        assert (await _participation(pid, tid)).status == expected


@pytest.mark.asyncio
async def test_complete_twice_rejected(machine, master, setup):
    tid, t1, _, pid = setup
    auction = await machine.start(master, pid, tid)
    await machine.complete(master, auction.id, winner_id=t1)
    with pytest.raises(StateConflictError) as exc:
        await machine.complete(master, auction.id, winner_id=t1)
    assert exc.value.code == "AuctionAlreadyComplete"
    assert (await _team(t1)).remaining_budget == 400000


@pytest.mark.asyncio
async def test_complete_winner_cannot_afford(machine, master, setup):
    tid, t1, _, pid = setup
    auction = await machine.start(master, pid, tid)
    with pytest.raises(BudgetError):
        await machine.complete(master, auction.id, winner_id=t1, final_amount=600000)
    assert (await _team(t1)).remaining_budget == 500000
    assert (await _participation(pid, tid)).status == "available"
    assert await _active_count(tid) == 1


@pytest.mark.asyncio
async def test_complete_rejects_bad_final_amount(machine, master, setup):
    tid, t1, _, pid = setup
    auction = await machine.start(master, pid, tid)
    with pytest.raises(ValidationError):
        await machine.complete(master, auction.id, winner_id=t1, final_amount=0)


@pytest.mark.asyncio
async def test_settlement_failure_changes_nothing(machine, master, setup, monkeypatch):
    """A storage failure mid-settlement rolls back the debit and roster insert too."""
    tid, t1, _, pid = setup
    auction = await machine.start(master, pid, tid)
    await machine.bid(master, auction.id, t1, 150000)
    calls = []

    def failing_mark_sold(participation, team_id, price):
        calls.append(team_id)
        raise OperationalError("UPDATE participations", {}, Exception("disk I/O error"))

    monkeypatch.setattr(participation_ledger, "mark_sold", failing_mark_sold)
    with pytest.raises(PersistenceError):
        await machine.complete(master, auction.id, winner_id=t1)

    assert len(calls) == 2  # first attempt plus one retry
    team = await _team(t1)
    assert team.remaining_budget == 500000
    assert team.player_ids == []
    assert (await _participation(pid, tid)).status == "available"
    async with async_session_factory() as session:
        current = await queries.get_auction(session, auction.id)
    assert current.status == "active"
    assert current.bid_amount == 150000


@pytest.mark.asyncio
async def test_settlement_retried_after_transient_failure(machine, master, setup, monkeypatch):
    tid, t1, _, pid = setup
    auction = await machine.start(master, pid, tid)
    real_mark_sold = participation_ledger.mark_sold
    failures = []

    def flaky_mark_sold(participation, team_id, price):
        if not failures:
            failures.append(True)
            raise OperationalError("UPDATE participations", {}, Exception("database is locked"))
        real_mark_sold(participation, team_id, price)

    monkeypatch.setattr(participation_ledger, "mark_sold", flaky_mark_sold)
    view = await machine.complete(master, auction.id, winner_id=t1, final_amount=120000)
    assert view.status == "sold"
    team = await _team(t1)
    assert team.remaining_budget == 380000
    assert team.player_ids == [pid]


# --- corrections ---


@pytest.mark.asyncio
async def test_mark_unsold_refunds_recorded_price(machine, master, setup):
    tid, t1, _, pid = setup
    auction = await machine.start(master, pid, tid)
    await machine.complete(master, auction.id, winner_id=t1, final_amount=150000)

    result = await machine.mark_unsold(master, pid, tid)
    assert result.participation.status == "available"
    assert result.participation.team_id is None
    assert result.participation.price is None
    assert result.team.remaining_budget == 500000
    assert result.team.player_ids == []
    # The player can go back on the table
    again = await machine.start(master, pid, tid)
    assert again.status == "active"


@pytest.mark.asyncio
async def test_mark_unsold_refund_is_not_clamped(machine, master, setup):
    """A price raised after the sale is refunded in full, leaving remaining above budget."""
    tid, t1, _, pid = setup
    auction = await machine.start(master, pid, tid)
    await machine.complete(master, auction.id, winner_id=t1, final_amount=150000)
    async with async_session_factory() as session:
        participation = await participation_ledger.require(session, pid, tid)
        participation.price = 200000
        await session.commit()

    result = await machine.mark_unsold(master, pid, tid)
    assert result.team.remaining_budget == 550000


@pytest.mark.asyncio
async def test_mark_unsold_on_available_player_is_harmless(machine, master, setup):
    tid, t1, _, pid = setup
    result = await machine.mark_unsold(master, pid, tid)
    assert result.team is None
    assert result.participation.status == "available"
    assert (await _team(t1)).remaining_budget == 500000


@pytest.mark.asyncio
async def test_mark_unsold_while_on_table_rejected(machine, master, setup):
    tid, _, _, pid = setup
    await machine.start(master, pid, tid)
    with pytest.raises(StateConflictError) as exc:
        await machine.mark_unsold(master, pid, tid)
    assert exc.value.code == "AuctionInProgress"


@pytest.mark.asyncio
async def test_revert_unsold_by_category(machine, master, make_tournament, make_player):
    tid = await make_tournament()
    a = await make_player(tid, "Player A", 100, category="A")
    b = await make_player(tid, "Player B", 100, category="B")
    for pid in (a, b):
        auction = await machine.start(master, pid, tid)
        await machine.complete(master, auction.id)

    assert await machine.revert_unsold(master, tid, category="A") == 1
    assert (await _participation(a, tid)).status == "available"
    assert (await _participation(b, tid)).status == "unsold"
    assert await machine.revert_unsold(master, tid) == 1
    assert (await _participation(b, tid)).status == "available"


@pytest.mark.asyncio
async def test_reset_restores_everything_and_is_idempotent(machine, master, setup, make_player):
    tid, t1, t2, pid = setup
    other = await make_player(tid, "Rashid Khan", base_price=100000)
    auction = await machine.start(master, pid, tid)
    await machine.complete(master, auction.id, winner_id=t1, final_amount=250000)
    auction = await machine.start(master, other, tid)
    await machine.complete(master, auction.id)

    await machine.reset(master, tid)
    await machine.reset(master, tid)

    for team_id in (t1, t2):
        team = await _team(team_id)
        assert team.remaining_budget == 500000
        assert team.player_ids == []
    for player_id in (pid, other):
        participation = await _participation(player_id, tid)
        assert participation.status == "available"
        assert participation.team_id is None
    async with async_session_factory() as session:
        assert (await session.execute(select(func.count()).select_from(Auction))).scalar_one() == 0
        assert (await session.execute(select(func.count()).select_from(AuctionBid))).scalar_one() == 0
        assert (await session.execute(select(func.count()).select_from(TeamPlayer))).scalar_one() == 0


@pytest.mark.asyncio
async def test_budget_conserved_across_sales(machine, master, setup, make_player):
    """remaining + sum of prices of owned players == budget for every team."""
    tid, t1, t2, _ = setup
    prices = {t1: [120000, 90000], t2: [200000]}
    n = 0
    for team_id, amounts in prices.items():
        for amount in amounts:
            n += 1
            pid = await make_player(tid, f"Player {n}", base_price=50000)
            auction = await machine.start(master, pid, tid)
            await machine.complete(master, auction.id, winner_id=team_id, final_amount=amount)

    async with async_session_factory() as session:
        for team_id in (t1, t2):
            owned = await queries.list_participations(session, tid, status="sold", team_id=team_id)
            team = await session.get(Team, team_id)
            assert team.remaining_budget + sum(p.price for p in owned) == team.budget


@pytest.mark.asyncio
async def test_cancel_releases_table(machine, master, setup, make_player):
    tid, t1, _, pid = setup
    auction = await machine.start(master, pid, tid)
    await machine.bid(master, auction.id, t1, 150000)
    assert await machine.cancel(master, auction.id) == tid
    assert await _active_count(tid) == 0
    assert (await _participation(pid, tid)).status == "available"
    assert (await _team(t1)).remaining_budget == 500000
    with pytest.raises(ResourceNotFoundError):
        await machine.cancel(master, auction.id)


# --- authorization ---


@pytest.mark.asyncio
async def test_auctioneer_bound_to_other_tournament_rejected(machine, setup, make_tournament):
    tid, _, _, pid = setup
    other_tid = await make_tournament("Other Cup")
    caller = CallerIdentity(username="ravi", role="auctioneer", tournament_id=other_tid)
    with pytest.raises(AuthorizationError) as exc:
        await machine.start(caller, pid, tid)
    assert exc.value.code == "TournamentMismatch"
    assert await _active_count(tid) == 0


@pytest.mark.asyncio
async def test_viewer_cannot_drive_auction(machine, setup):
    tid, _, _, pid = setup
    with pytest.raises(AuthorizationError) as exc:
        await machine.start(CallerIdentity(username="fan", role="viewer"), pid, tid)
    assert exc.value.code == "InsufficientRole"


@pytest.mark.asyncio
async def test_bound_auctioneer_runs_full_flow(machine, setup):
    tid, t1, _, pid = setup
    caller = CallerIdentity(username="ravi", role="auctioneer", tournament_id=tid)
    auction = await machine.start(caller, pid, tid)
    await machine.bid(caller, auction.id, t1, 100000)
    view = await machine.complete(caller, auction.id, winner_id=t1)
    assert view.status == "sold"


# --- notifications ---


@pytest.mark.asyncio
async def test_notifications_follow_commits(machine, master, bus, setup):
    tid, t1, _, pid = setup
    sub = bus.subscribe(*tournament_topics(tid))

    auction = await machine.start(master, pid, tid)
    topic, payload = sub.get_nowait()
    assert topic == f"auction_update_{tid}"
    assert payload["status"] == "active"

    with pytest.raises(BidRejectedError):
        await machine.bid(master, auction.id, t1, 1)
    with pytest.raises(asyncio.QueueEmpty):
        sub.get_nowait()

    await machine.bid(master, auction.id, t1, 100000)
    assert sub.get_nowait()[1]["bid_amount"] == 100000

    await machine.complete(master, auction.id, winner_id=t1)
    topics = [sub.get_nowait() for _ in range(3)]
    assert [t for t, _ in topics] == [f"auction_update_{tid}", f"auction_result_{tid}", f"team_update_{tid}"]
    assert topics[1][1]["winner_name"] == "Mumbai Indians"
    assert topics[2][1]["remaining_budget"] == 400000

    await machine.reset(master, tid)
    assert sub.get_nowait() == (f"auction_update_{tid}", None)
