"""
Player Operations Module

Business logic for Player records: identity-provider registration, profile
reads, leaderboard and search.

Key functionality:
- get_or_create_player(): Atomic identity → Player conversion
- get_player() / get_players(): typed lookups that fail with PlayerNotFoundError
- update_profile(): display name and email edits
- get_leaderboard() / search_players(): ordered, limited listings
"""

from dataclasses import dataclass
from typing import List, Optional
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from rounds.config import Config
from rounds.constants import PaginationConstants
from rounds.database.models import Player, utc_now
from rounds.services.base import BaseService
from rounds.services.notifications import Topics
from rounds.utils.exceptions import PlayerNotFoundError, ValidationError
from rounds.utils.logger import setup_logger

logger = setup_logger(__name__)


@dataclass
class PlayerIdentity:
    """Authenticated user as supplied by the identity provider"""
    user_id: str
    email: str = ''
    display_name: Optional[str] = None

    @property
    def resolved_name(self) -> str:
        return self.display_name or self.email or 'Unknown'


class PlayerOperations(BaseService):
    """
    Business logic operations for Player management.

    The identity provider's user id is trusted as the Player primary key.
    """

    def __init__(self, database, notifier=None):
        super().__init__(database, notifier)
        self.logger = logger

    async def get_or_create_player(
        self,
        identity: PlayerIdentity,
        update_activity: bool = True,
        session: Optional[AsyncSession] = None
    ) -> Player:
        """
        Get existing Player or create a new one from an authenticated identity.

        Features:
        - Idempotent: Safe to call on every sign-in
        - New players start at Config.STARTING_RATING with an empty record

        Args:
            identity: Identity provider data
            update_activity: Whether to update last_active on an existing player

        Returns:
            Player: Existing or newly created Player record

        Raises:
            ValidationError: If the identity has no user id
        """
        if not identity.user_id:
            raise ValidationError("Identity has no user id", "Sign in again to continue.")

        async def _get_or_create(s: AsyncSession) -> Player:
            player = await s.get(Player, identity.user_id)
            if player:
                self.logger.debug(f"Found existing Player {player.id}")
                if update_activity:
                    player.last_active = utc_now()
                return player

            now = utc_now()
            player = Player(
                id=identity.user_id,
                email=identity.email or '',
                display_name=identity.resolved_name,
                rating=Config.STARTING_RATING,
                matches_played=0,
                matches_won=0,
                matches_lost=0,
                created_at=now,
                last_active=now
            )
            s.add(player)
            await s.flush()
            self.logger.info(f"Created Player {player.id} ({player.display_name}) at rating {player.rating}")
            return player

        return await self._in_transaction(_get_or_create, "get_or_create_player", session)

    async def get_player(self, player_id: str, session: Optional[AsyncSession] = None) -> Player:
        """
        Raises:
            PlayerNotFoundError: If no player has this id
        """
        async with self._get_session_context(session) as s:
            return await self._load(s, Player, player_id, PlayerNotFoundError)

    async def get_players(self, player_ids: List[str], session: Optional[AsyncSession] = None) -> List[Player]:
        """
        Fetch several players, preserving the order of player_ids.

        Raises:
            PlayerNotFoundError: For the first id that does not exist
        """
        if not player_ids:
            return []
        async with self._get_session_context(session) as s:
            result = await s.execute(select(Player).where(Player.id.in_(player_ids)))
            by_id = {player.id: player for player in result.scalars().all()}
        missing = [pid for pid in player_ids if pid not in by_id]
        if missing:
            raise PlayerNotFoundError(missing[0])
        return [by_id[pid] for pid in player_ids]

    async def update_profile(self, player_id: str, display_name: Optional[str] = None,
                             email: Optional[str] = None) -> Player:
        """
        Update editable profile fields. Match records keep the name they were
        created with.

        Raises:
            ValidationError: If the new display name is blank
            PlayerNotFoundError: If no player has this id
        """
        name = None
        if display_name is not None:
            name = display_name.strip()
            if not name:
                raise ValidationError("Display name is blank", "Display name cannot be empty.")

        async def _update(s: AsyncSession) -> Player:
            player = await self._load(s, Player, player_id, PlayerNotFoundError)
            if name is not None:
                player.display_name = name
            if email is not None:
                player.email = email
            player.last_active = utc_now()
            return player

        player = await self.db.run_transaction(_update, operation="update_profile")
        self.logger.info(f"Updated profile for Player {player.id}")
        await self._publish(Topics.PLAYER_UPDATED, player.id, {'display_name': player.display_name})
        return player

    async def get_leaderboard(self, limit: int = PaginationConstants.LEADERBOARD_LIMIT) -> List[Player]:
        """Get the top players by rating, ties broken by wins"""
        async with self.db.get_session() as session:
            result = await session.execute(
                select(Player)
                .order_by(Player.rating.desc(), Player.matches_won.desc(), Player.display_name)
                .limit(limit)
            )
            return list(result.scalars().all())

    async def search_players(self, query: str, limit: int = PaginationConstants.SEARCH_LIMIT) -> List[Player]:
        """Prefix search on display name"""
        query = (query or '').strip()
        if not query:
            return []
        async with self.db.get_session() as session:
            result = await session.execute(
                select(Player)
                .where(Player.display_name.startswith(query, autoescape=True))
                .order_by(Player.display_name)
                .limit(limit)
            )
            return list(result.scalars().all())
