"""
Shared fixtures: an in-memory database per test and small factories for the
entities most tests start from.
"""

from datetime import datetime

import pytest

from rounds.database.database import Database
from rounds.database.models import Player
from rounds.operations.match_operations import MatchOperations
from rounds.operations.matchmaking_operations import MatchmakingOperations
from rounds.operations.player_operations import PlayerOperations
from rounds.operations.tournament_operations import TournamentOperations
from rounds.services.notifications import NotificationHub

T0 = datetime(2026, 1, 1, 12, 0, 0)


@pytest.fixture
async def db():
    database = Database('sqlite+aiosqlite:///:memory:')
    await database.initialize()
    yield database
    await database.close()


@pytest.fixture
def hub():
    return NotificationHub()


@pytest.fixture
def player_ops(db, hub):
    return PlayerOperations(db, hub)


@pytest.fixture
def match_ops(db, hub):
    return MatchOperations(db, hub)


@pytest.fixture
def matchmaking_ops(db, hub, match_ops):
    return MatchmakingOperations(db, hub, match_ops=match_ops)


@pytest.fixture
def tournament_ops(db, hub):
    return TournamentOperations(db, hub)


@pytest.fixture
def make_player(db):
    """Insert a player directly and return it"""
    async def _make(player_id: str, rating: int = 1500, display_name: str = None,
                    matches_played: int = 0) -> Player:
        async with db.transaction() as session:
            player = Player(
                id=player_id,
                email=f"{player_id}@example.com",
                display_name=display_name or player_id.title(),
                rating=rating,
                matches_played=matches_played,
                matches_won=0,
                matches_lost=0
            )
            session.add(player)
        return player
    return _make


@pytest.fixture
def recorder(hub):
    """Collects every published event"""
    events = []
    hub.subscribe(events.append)
    return events


@pytest.fixture
async def file_db(tmp_path):
    """File-backed database with a real connection pool, so concurrent
    transactions run on separate connections"""
    database = Database(f"sqlite+aiosqlite:///{tmp_path / 'rounds.db'}")
    await database.initialize()
    yield database
    await database.close()
