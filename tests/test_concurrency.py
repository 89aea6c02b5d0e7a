"""
Concurrent writers against a file-backed database. Each call runs on its own
pooled connection; the version checks must leave exactly one winner and the
losers must fail with the same error a sequential caller would get.
"""

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import func, or_, select

from rounds.database.models import ACTIVE_MATCH_STATUSES, Match, MatchStatus, Player
from rounds.operations.match_operations import MatchOperations
from rounds.operations.matchmaking_operations import MatchmakingOperations
from rounds.operations.tournament_operations import TournamentOperations
from rounds.utils.exceptions import ActiveMatchExistsError, TournamentFullError

from conftest import T0


async def add_players(database, *player_ids, rating=1500):
    async with database.transaction() as session:
        for player_id in player_ids:
            session.add(Player(id=player_id, display_name=player_id.title(), rating=rating))


async def active_match_count(database, player_id):
    async with database.get_session() as session:
        result = await session.execute(
            select(func.count()).select_from(Match)
            .where(or_(Match.player1_id == player_id, Match.player2_id == player_id))
            .where(Match.status.in_(ACTIVE_MATCH_STATUSES))
        )
        return result.scalar_one()


def split(results):
    successes = [r for r in results if not isinstance(r, BaseException)]
    failures = [r for r in results if isinstance(r, BaseException)]
    return successes, failures


@pytest.fixture
def match_ops(file_db):
    return MatchOperations(file_db)


@pytest.fixture
def matchmaking_ops(file_db, match_ops):
    return MatchmakingOperations(file_db, match_ops=match_ops)


@pytest.fixture
def tournament_ops(file_db):
    return TournamentOperations(file_db)


# =============================================================================
# Matches
# =============================================================================

class TestConcurrentMatches:

    async def test_one_active_match_per_player(self, file_db, match_ops):
        await add_players(file_db, "alice", "bob", "carol")

        results = await asyncio.gather(
            match_ops.create_match("alice", "bob"),
            match_ops.create_match("alice", "carol"),
            return_exceptions=True
        )

        successes, failures = split(results)
        assert len(successes) == 1
        assert len(failures) == 1
        assert isinstance(failures[0], ActiveMatchExistsError)
        assert await active_match_count(file_db, "alice") == 1

    async def test_settlement_applies_once(self, file_db, match_ops):
        await add_players(file_db, "alice", "bob")
        match = await match_ops.create_match("alice", "bob")

        results = await asyncio.gather(
            match_ops.submit_scores(match.id, 70, 74),
            match_ops.submit_scores(match.id, 70, 74),
            return_exceptions=True
        )

        successes, _ = split(results)
        assert len(successes) == 1
        async with file_db.get_session() as session:
            alice = await session.get(Player, "alice")
        assert alice.matches_played == 1
        assert alice.rating == 1517


# =============================================================================
# Matchmaking
# =============================================================================

class TestConcurrentMatchmaking:

    async def test_candidate_is_paired_once(self, file_db, matchmaking_ops):
        await add_players(file_db, "alice", "bob", "carol")
        await matchmaking_ops.enqueue("carol", now=T0)
        await matchmaking_ops.enqueue("alice", now=T0 + timedelta(seconds=1))
        await matchmaking_ops.enqueue("bob", now=T0 + timedelta(seconds=2))
        now = T0 + timedelta(seconds=10)

        results = await asyncio.gather(
            matchmaking_ops.find_match("alice", now=now),
            matchmaking_ops.find_match("bob", now=now)
        )

        matches = [m for m in results if m is not None]
        assert len(matches) == 1
        assert matches[0].has_player("carol")
        assert await active_match_count(file_db, "carol") == 1
        assert await matchmaking_ops.get_queue_size(searching_only=True) == 1

    async def test_simultaneous_accepts_start_the_match(self, file_db, matchmaking_ops, match_ops):
        await add_players(file_db, "alice", "bob")
        await matchmaking_ops.enqueue("alice", now=T0)
        await matchmaking_ops.enqueue("bob", now=T0)
        match = await matchmaking_ops.find_match("alice", now=T0)

        results = await asyncio.gather(
            matchmaking_ops.accept_match("alice", match.id),
            matchmaking_ops.accept_match("bob", match.id)
        )

        assert sorted(r.started for r in results) == [False, True]
        stored = await match_ops.get_match(match.id)
        assert stored.status == MatchStatus.IN_PROGRESS
        assert stored.accepted_count == 2
        assert await matchmaking_ops.get_queue_size() == 0


# =============================================================================
# Tournaments
# =============================================================================

class TestConcurrentRegistration:

    async def test_last_seat_goes_to_one_player(self, file_db, tournament_ops):
        await add_players(file_db, "host", "p1", "p2", "p3")
        tournament = await tournament_ops.create_tournament("Club Cup", "host", "stroke", max_players=2)
        await tournament_ops.join(tournament.id, "p1")

        results = await asyncio.gather(
            tournament_ops.join(tournament.id, "p2"),
            tournament_ops.join(tournament.id, "p3"),
            return_exceptions=True
        )

        successes, failures = split(results)
        assert len(successes) == 1
        assert len(failures) == 1
        assert isinstance(failures[0], TournamentFullError)
        stored = await tournament_ops.get_tournament(tournament.id)
        assert len(stored.participants) == 2
        assert stored.participants[0] == "p1"
