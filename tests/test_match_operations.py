"""
Match lifecycle and settlement tests against an in-memory database.
"""

import pytest

from rounds.database.models import MatchStatus
from rounds.operations.match_operations import CourseSelection
from rounds.services.notifications import Topics
from rounds.utils.exceptions import (
    ActiveMatchExistsError, InvalidScoresError, InvalidStateError, MatchNotFoundError,
    NotParticipantError, PlayerNotFoundError, ValidationError
)

PEBBLE = CourseSelection(
    course_id="pebble-beach",
    course_name="Pebble Beach Golf Links",
    tee_name="Blue",
    tee_rating=74.9,
    tee_slope=144
)


# =============================================================================
# Creation
# =============================================================================

class TestCreateMatch:

    async def test_create_match(self, match_ops, make_player):
        await make_player("alice", display_name="Alice")
        await make_player("bob", display_name="Bob")

        match = await match_ops.create_match("alice", "bob", PEBBLE)

        assert match.status == MatchStatus.PENDING
        assert match.player1_name == "Alice"
        assert match.player2_name == "Bob"
        assert match.course_name == "Pebble Beach Golf Links"
        assert match.selected_tee == "Blue"
        assert match.tee_slope == 144
        assert match.winner_id is None
        assert match.opponent_id("alice") == "bob"

        stored = await match_ops.get_match(match.id)
        assert stored.course_id == "pebble-beach"

    async def test_cannot_play_yourself(self, match_ops, make_player):
        await make_player("alice")
        with pytest.raises(ValidationError):
            await match_ops.create_match("alice", "alice")

    async def test_unknown_player(self, match_ops, make_player):
        await make_player("alice")
        with pytest.raises(PlayerNotFoundError):
            await match_ops.create_match("alice", "ghost")

    async def test_one_active_match_per_player(self, match_ops, make_player):
        for pid in ("alice", "bob", "carol"):
            await make_player(pid)
        first = await match_ops.create_match("alice", "bob")

        with pytest.raises(ActiveMatchExistsError):
            await match_ops.create_match("carol", "alice")

        await match_ops.cancel_match(first.id)
        second = await match_ops.create_match("carol", "alice")
        assert second.status == MatchStatus.PENDING

    async def test_set_course_after_creation(self, match_ops, make_player):
        await make_player("alice")
        await make_player("bob")
        match = await match_ops.create_match("alice", "bob")
        assert match.course_name is None

        updated = await match_ops.set_course(match.id, PEBBLE)
        assert updated.course_name == "Pebble Beach Golf Links"
        assert updated.tee_rating == pytest.approx(74.9)


# =============================================================================
# Settlement
# =============================================================================

class TestSubmitScores:

    async def test_settlement_updates_both_players(self, match_ops, player_ops, make_player):
        await make_player("alice")
        await make_player("bob")
        match = await match_ops.create_match("alice", "bob")
        await match_ops.start_match(match.id)

        settlement = await match_ops.submit_scores(match.id, 72, 75)

        assert settlement.winner_id == "alice"
        assert settlement.loser_id == "bob"
        assert settlement.elo_change == 16

        alice = await player_ops.get_player("alice")
        bob = await player_ops.get_player("bob")
        assert alice.rating == 1516
        assert bob.rating == 1484
        assert (alice.matches_played, alice.matches_won, alice.matches_lost) == (1, 1, 0)
        assert (bob.matches_played, bob.matches_won, bob.matches_lost) == (1, 0, 1)

        stored = await match_ops.get_match(match.id)
        assert stored.status == MatchStatus.COMPLETED
        assert stored.winner_id == "alice"
        assert stored.elo_change == 16
        assert stored.player_score("bob") == 75
        assert stored.end_time is not None
        assert stored.is_complete
        assert stored.loser_id == "bob"
        assert stored.duration_minutes >= 0

    async def test_pending_match_can_be_settled(self, match_ops, make_player):
        await make_player("alice")
        await make_player("bob")
        match = await match_ops.create_match("alice", "bob")
        settlement = await match_ops.submit_scores(match.id, 80, 78)
        assert settlement.winner_id == "bob"

    async def test_resubmission_does_not_double_apply(self, match_ops, player_ops, make_player):
        await make_player("alice")
        await make_player("bob")
        match = await match_ops.create_match("alice", "bob")
        await match_ops.submit_scores(match.id, 70, 73)

        with pytest.raises(InvalidStateError):
            await match_ops.submit_scores(match.id, 70, 73)

        alice = await player_ops.get_player("alice")
        assert alice.matches_played == 1
        assert alice.rating == 1516

    async def test_zero_sum_exchange(self, match_ops, player_ops, make_player):
        await make_player("alice", rating=1720)
        await make_player("bob", rating=1310)
        match = await match_ops.create_match("alice", "bob")
        await match_ops.submit_scores(match.id, 85, 79)

        alice = await player_ops.get_player("alice")
        bob = await player_ops.get_player("bob")
        assert (alice.rating - 1720) == -(bob.rating - 1310)
        assert bob.rating > 1310

    async def test_rating_floor(self, match_ops, player_ops, make_player):
        await make_player("alice", rating=100)
        await make_player("bob", rating=100)
        match = await match_ops.create_match("alice", "bob")
        await match_ops.submit_scores(match.id, 90, 95)

        bob = await player_ops.get_player("bob")
        assert bob.rating == 100
        assert bob.matches_lost == 1

    async def test_invalid_scores_leave_everything_untouched(self, match_ops, player_ops, make_player):
        await make_player("alice")
        await make_player("bob")
        match = await match_ops.create_match("alice", "bob")

        with pytest.raises(InvalidScoresError):
            await match_ops.submit_scores(match.id, 72, 72)
        with pytest.raises(InvalidScoresError):
            await match_ops.submit_scores(match.id, -3, 72)

        stored = await match_ops.get_match(match.id)
        assert stored.status == MatchStatus.PENDING
        alice = await player_ops.get_player("alice")
        assert alice.matches_played == 0

    async def test_only_players_may_submit(self, match_ops, make_player):
        for pid in ("alice", "bob", "mallory"):
            await make_player(pid)
        match = await match_ops.create_match("alice", "bob")
        with pytest.raises(NotParticipantError):
            await match_ops.submit_scores(match.id, 72, 75, submitted_by="mallory")

    async def test_unknown_match(self, match_ops):
        with pytest.raises(MatchNotFoundError):
            await match_ops.submit_scores("missing", 72, 75)

    async def test_completion_event_published(self, match_ops, make_player, recorder):
        await make_player("alice")
        await make_player("bob")
        match = await match_ops.create_match("alice", "bob")
        await match_ops.submit_scores(match.id, 72, 75)

        topics = [e.topic for e in recorder]
        assert topics == [Topics.MATCH_CREATED, Topics.MATCH_COMPLETED]
        assert recorder[-1].payload['winner_id'] == "alice"


# =============================================================================
# Cancellation and queries
# =============================================================================

class TestCancelAndQueries:

    async def test_cancel_then_submit_rejected(self, match_ops, make_player):
        await make_player("alice")
        await make_player("bob")
        match = await match_ops.create_match("alice", "bob")
        cancelled = await match_ops.cancel_match(match.id)
        assert cancelled.status == MatchStatus.CANCELLED

        with pytest.raises(InvalidStateError):
            await match_ops.submit_scores(match.id, 72, 75)
        with pytest.raises(InvalidStateError):
            await match_ops.cancel_match(match.id)

    async def test_start_only_from_pending(self, match_ops, make_player):
        await make_player("alice")
        await make_player("bob")
        match = await match_ops.create_match("alice", "bob")
        await match_ops.start_match(match.id)
        with pytest.raises(InvalidStateError):
            await match_ops.start_match(match.id)

    async def test_active_match_lookup(self, match_ops, make_player):
        await make_player("alice")
        await make_player("bob")
        assert await match_ops.get_active_match("alice") is None

        match = await match_ops.create_match("alice", "bob")
        active = await match_ops.get_active_match("bob")
        assert active.id == match.id

        await match_ops.submit_scores(match.id, 70, 71)
        assert await match_ops.get_active_match("alice") is None

    async def test_recent_matches_newest_first(self, match_ops, make_player):
        for pid in ("alice", "bob", "carol"):
            await make_player(pid)
        first = await match_ops.create_match("alice", "bob")
        await match_ops.submit_scores(first.id, 70, 71)
        second = await match_ops.create_match("alice", "carol")
        await match_ops.submit_scores(second.id, 75, 71)

        recent = await match_ops.get_recent_matches("alice")
        assert [m.id for m in recent] == [second.id, first.id]
        assert len(await match_ops.get_recent_matches("alice", limit=1)) == 1
        assert [m.id for m in await match_ops.get_recent_matches("bob")] == [first.id]
