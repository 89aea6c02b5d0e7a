"""
Matchmaking queue tests: pairing by rating proximity, tolerance expansion over
wait time, the accept/decline protocol and queue housekeeping.
"""

from datetime import timedelta

import pytest

from rounds.database.models import Match, MatchStatus, MatchmakingQueueEntry
from rounds.services.notifications import Topics
from rounds.services.queue_sweeper import QueueSweeper
from rounds.utils.exceptions import (
    ActiveMatchExistsError, AlreadySearchingError, InvalidStateError, NotQueuedError,
    PlayerNotFoundError
)

from conftest import T0


def seconds(n):
    return T0 + timedelta(seconds=n)


# =============================================================================
# Candidate ranking
# =============================================================================

class TestRanking:

    def entry(self, player_id, rating, waited):
        return MatchmakingQueueEntry(
            player_id=player_id,
            player_rating=rating,
            enqueued_at=T0 - timedelta(seconds=waited)
        )

    def test_expansion_bonus(self, matchmaking_ops):
        assert matchmaking_ops.expansion_bonus(0) == 0
        assert matchmaking_ops.expansion_bonus(30) == pytest.approx(50)
        assert matchmaking_ops.expansion_bonus(60) == pytest.approx(100)

    def test_closest_adjusted_gap_first(self, matchmaking_ops):
        ranked = matchmaking_ops.rank_candidates(1500, [
            self.entry("far", 1900, 0),
            self.entry("near", 1550, 0),
            self.entry("patient", 1800, 180),
        ], T0)
        assert [c.player_id for _, c in ranked] == ["patient", "near", "far"]
        assert ranked[0][0] == pytest.approx(0)  # 300 - 300
        assert ranked[1][0] == pytest.approx(50)
        assert ranked[2][0] == pytest.approx(400)

    def test_ties_broken_by_enqueue_time(self, matchmaking_ops):
        # 100 - 50 and 50 - 0 both adjust to 50
        ranked = matchmaking_ops.rank_candidates(1500, [
            self.entry("later", 1550, 0),
            self.entry("earlier", 1600, 30),
        ], T0)
        assert ranked[0][0] == pytest.approx(ranked[1][0])
        assert [c.player_id for _, c in ranked] == ["earlier", "later"]

    def test_negative_adjusted_gap_kept(self, matchmaking_ops):
        ranked = matchmaking_ops.rank_candidates(1500, [self.entry("veteran", 1510, 300)], T0)
        assert ranked[0][0] == pytest.approx(10 - 500)


# =============================================================================
# Queue membership
# =============================================================================

class TestEnqueue:

    async def test_enqueue_creates_searching_entry(self, matchmaking_ops, make_player):
        await make_player("alice", rating=1480)
        entry = await matchmaking_ops.enqueue("alice", now=T0)
        assert entry.match_found is False
        assert entry.player_rating == 1480
        assert entry.enqueued_at == T0
        assert await matchmaking_ops.get_queue_size() == 1

    async def test_enqueue_replaces_searching_entry(self, matchmaking_ops, make_player):
        await make_player("alice")
        await matchmaking_ops.enqueue("alice", now=T0)
        await matchmaking_ops.enqueue("alice", now=seconds(45))

        entry = await matchmaking_ops.get_queue_entry("alice")
        assert entry.enqueued_at == seconds(45)
        assert await matchmaking_ops.get_queue_size() == 1

    async def test_enqueue_unknown_player(self, matchmaking_ops):
        with pytest.raises(PlayerNotFoundError):
            await matchmaking_ops.enqueue("ghost")

    async def test_enqueue_with_active_match(self, matchmaking_ops, match_ops, make_player):
        await make_player("alice")
        await make_player("bob")
        await match_ops.create_match("alice", "bob")
        with pytest.raises(ActiveMatchExistsError):
            await matchmaking_ops.enqueue("alice")

    async def test_enqueue_while_paired(self, matchmaking_ops, make_player):
        await make_player("alice")
        await make_player("bob")
        await matchmaking_ops.enqueue("alice", now=T0)
        await matchmaking_ops.enqueue("bob", now=T0)
        match = await matchmaking_ops.find_match("alice", now=T0)
        assert match is not None

        with pytest.raises(AlreadySearchingError):
            await matchmaking_ops.enqueue("alice", now=T0)

    async def test_cancel(self, matchmaking_ops, make_player):
        await make_player("alice")
        await matchmaking_ops.enqueue("alice", now=T0)
        assert await matchmaking_ops.cancel("alice") is True
        assert await matchmaking_ops.get_queue_entry("alice") is None

    async def test_cancel_without_entry_is_noop(self, matchmaking_ops):
        assert await matchmaking_ops.cancel("nobody") is False


# =============================================================================
# Pairing
# =============================================================================

class TestFindMatch:

    async def test_equal_ratings_pair_immediately(self, matchmaking_ops, make_player):
        await make_player("alice", rating=1500)
        await make_player("bob", rating=1500)
        await matchmaking_ops.enqueue("alice", now=T0)
        await matchmaking_ops.enqueue("bob", now=T0)

        match = await matchmaking_ops.find_match("alice", now=T0)

        assert match is not None
        assert match.status == MatchStatus.PENDING
        assert {match.player1_id, match.player2_id} == {"alice", "bob"}
        for pid in ("alice", "bob"):
            entry = await matchmaking_ops.get_queue_entry(pid)
            assert entry.match_found is True
            assert entry.match_id == match.id
            assert entry.matched_at == T0

        again = await matchmaking_ops.find_match("bob", now=T0)
        assert again.id == match.id

    async def test_wide_gap_waits_for_expansion(self, matchmaking_ops, make_player):
        await make_player("alice", rating=1500)
        await make_player("carol", rating=2000)
        await matchmaking_ops.enqueue("carol", now=T0)
        await matchmaking_ops.enqueue("alice", now=T0)

        assert await matchmaking_ops.find_match("alice", now=T0) is None
        assert await matchmaking_ops.find_match("alice", now=seconds(30)) is None
        assert await matchmaking_ops.find_match("alice", now=seconds(59)) is None

        match = await matchmaking_ops.find_match("alice", now=seconds(60))
        assert match is not None
        assert {match.player1_id, match.player2_id} == {"alice", "carol"}

    async def test_no_candidates(self, matchmaking_ops, make_player):
        await make_player("alice")
        await matchmaking_ops.enqueue("alice", now=T0)
        assert await matchmaking_ops.find_match("alice", now=T0) is None
        entry = await matchmaking_ops.get_queue_entry("alice")
        assert entry.match_found is False

    async def test_not_queued(self, matchmaking_ops, make_player):
        await make_player("alice")
        with pytest.raises(NotQueuedError):
            await matchmaking_ops.find_match("alice")

    async def test_closest_candidate_wins(self, matchmaking_ops, make_player):
        await make_player("alice", rating=1500)
        await make_player("near", rating=1540)
        await make_player("far", rating=1700)
        for pid in ("far", "near", "alice"):
            await matchmaking_ops.enqueue(pid, now=T0)

        match = await matchmaking_ops.find_match("alice", now=T0)
        assert match.opponent_id("alice") == "near"

    async def test_longest_waiting_wins_on_equal_rating(self, matchmaking_ops, make_player):
        await make_player("alice", rating=1500)
        await make_player("first", rating=1500)
        await make_player("second", rating=1500)
        await matchmaking_ops.enqueue("first", now=T0)
        await matchmaking_ops.enqueue("second", now=seconds(1))
        await matchmaking_ops.enqueue("alice", now=seconds(1))

        match = await matchmaking_ops.find_match("alice", now=seconds(1))
        assert match.opponent_id("alice") == "first"

    async def test_paired_players_are_not_candidates(self, matchmaking_ops, make_player):
        for pid in ("alice", "bob", "carol"):
            await make_player(pid)
            await matchmaking_ops.enqueue(pid, now=T0)

        first = await matchmaking_ops.find_match("alice", now=T0)
        taken = {first.player1_id, first.player2_id}
        leftover = ({"alice", "bob", "carol"} - taken).pop()
        assert await matchmaking_ops.find_match(leftover, now=T0) is None

    async def test_pairing_events(self, matchmaking_ops, make_player, recorder):
        await make_player("alice")
        await make_player("bob")
        await matchmaking_ops.enqueue("alice", now=T0)
        await matchmaking_ops.enqueue("bob", now=T0)
        await matchmaking_ops.find_match("alice", now=T0)

        topics = [e.topic for e in recorder]
        assert topics == [Topics.QUEUE_JOINED, Topics.QUEUE_JOINED, Topics.QUEUE_MATCHED, Topics.MATCH_CREATED]


# =============================================================================
# Accept / decline
# =============================================================================

class TestAcceptance:

    async def paired(self, matchmaking_ops, make_player):
        await make_player("alice")
        await make_player("bob")
        await matchmaking_ops.enqueue("alice", now=T0)
        await matchmaking_ops.enqueue("bob", now=T0)
        return await matchmaking_ops.find_match("alice", now=T0)

    async def test_both_accept_starts_match(self, matchmaking_ops, match_ops, make_player):
        match = await self.paired(matchmaking_ops, make_player)

        first = await matchmaking_ops.accept_match("alice", match.id)
        assert first.started is False
        entry = await matchmaking_ops.get_queue_entry("alice")
        assert entry.match_accepted is True

        second = await matchmaking_ops.accept_match("bob", match.id)
        assert second.started is True
        assert second.match.status == MatchStatus.IN_PROGRESS

        assert await matchmaking_ops.get_queue_size() == 0
        stored = await match_ops.get_match(match.id)
        assert stored.status == MatchStatus.IN_PROGRESS

    async def test_accept_wrong_match(self, matchmaking_ops, make_player):
        await self.paired(matchmaking_ops, make_player)
        with pytest.raises(NotQueuedError):
            await matchmaking_ops.accept_match("alice", "some-other-match")

    async def test_decline_requeues_opponent(self, matchmaking_ops, match_ops, make_player):
        match = await self.paired(matchmaking_ops, make_player)

        await matchmaking_ops.decline_match("bob", match.id)

        assert await matchmaking_ops.get_queue_entry("bob") is None
        alice = await matchmaking_ops.get_queue_entry("alice")
        assert alice.match_found is False
        assert alice.match_id is None
        assert alice.enqueued_at == T0
        stored = await match_ops.get_match(match.id)
        assert stored.status == MatchStatus.CANCELLED

    async def test_decline_after_start_rejected(self, matchmaking_ops, make_player):
        match = await self.paired(matchmaking_ops, make_player)
        await matchmaking_ops.accept_match("alice", match.id)
        await matchmaking_ops.accept_match("bob", match.id)
        with pytest.raises(NotQueuedError):
            await matchmaking_ops.decline_match("alice", match.id)

    async def test_accept_cancelled_match_rejected(self, matchmaking_ops, match_ops, make_player, db):
        match = await self.paired(matchmaking_ops, make_player)
        # Cancel behind the queue's back, leaving both entries paired
        async with db.transaction() as session:
            stored = await session.get(Match, match.id)
            stored.status = MatchStatus.CANCELLED
        with pytest.raises(InvalidStateError):
            await matchmaking_ops.accept_match("alice", match.id)

    async def test_cancel_while_paired_releases_opponent(self, matchmaking_ops, match_ops, make_player):
        match = await self.paired(matchmaking_ops, make_player)

        assert await matchmaking_ops.cancel("alice") is True

        stored = await match_ops.get_match(match.id)
        assert stored.status == MatchStatus.CANCELLED
        bob = await matchmaking_ops.get_queue_entry("bob")
        assert bob.match_found is False


# =============================================================================
# Housekeeping
# =============================================================================

class TestExpiry:

    async def test_searching_entries_expire(self, matchmaking_ops, make_player):
        await make_player("alice")
        await make_player("bob")
        await matchmaking_ops.enqueue("alice", now=T0)
        await matchmaking_ops.enqueue("bob", now=seconds(200))

        sweep = await matchmaking_ops.expire_stale_entries(now=seconds(301))

        assert sweep.expired_player_ids == ["alice"]
        assert await matchmaking_ops.get_queue_entry("alice") is None
        assert await matchmaking_ops.get_queue_entry("bob") is not None

    async def test_unanswered_pairing_is_unwound(self, matchmaking_ops, match_ops, make_player):
        await make_player("alice")
        await make_player("bob")
        await matchmaking_ops.enqueue("alice", now=T0)
        await matchmaking_ops.enqueue("bob", now=T0)
        match = await matchmaking_ops.find_match("alice", now=T0)
        await matchmaking_ops.accept_match("alice", match.id)

        quiet = await matchmaking_ops.expire_stale_entries(now=seconds(30))
        assert not quiet.changed

        sweep = await matchmaking_ops.expire_stale_entries(now=seconds(61))

        assert sweep.cancelled_match_ids == [match.id]
        assert sweep.requeued_player_ids == ["alice"]
        assert sweep.expired_player_ids == ["bob"]
        stored = await match_ops.get_match(match.id)
        assert stored.status == MatchStatus.CANCELLED
        alice = await matchmaking_ops.get_queue_entry("alice")
        assert alice.match_found is False
        assert alice.enqueued_at == seconds(61)
        assert await matchmaking_ops.get_queue_entry("bob") is None

    async def test_sweeper_run_once(self, matchmaking_ops, make_player, recorder):
        await make_player("alice")
        await matchmaking_ops.enqueue("alice", now=T0)
        sweeper = QueueSweeper(matchmaking_ops, interval=0.01)

        sweep = await sweeper.run_once(now=seconds(400))

        assert sweep.expired_player_ids == ["alice"]
        assert recorder[-1].topic == Topics.QUEUE_EXPIRED

    async def test_sweeper_start_stop(self, matchmaking_ops):
        sweeper = QueueSweeper(matchmaking_ops, interval=0.01)
        sweeper.start()
        assert sweeper.is_running
        await sweeper.stop()
        assert not sweeper.is_running
