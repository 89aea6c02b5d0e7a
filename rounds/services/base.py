"""
Base service class for the Rounds core.

Provides transactional session handling, typed entity loading and change
notification for every operations class.
"""

from contextlib import asynccontextmanager
from typing import Any, Callable, Dict, Optional, Type
from sqlalchemy.ext.asyncio import AsyncSession

from rounds.database.database import Database
from rounds.services.notifications import ChangeEvent, NotificationHub
from rounds.utils.exceptions import DecodingError, NotFoundError
from rounds.utils.logger import setup_logger

logger = setup_logger(__name__)


class BaseService:
    """Base class for all services with async database session management."""

    def __init__(self, database: Database, notifier: Optional[NotificationHub] = None):
        """
        Initialize base service.

        Args:
            database: Database instance for persistence
            notifier: Optional hub that receives change events after commit
        """
        self.db = database
        self.notifier = notifier
        self.logger = logger

    @asynccontextmanager
    async def _get_session_context(self, session: Optional[AsyncSession] = None):
        """
        Provides a read session. Uses the provided session if available,
        otherwise creates and manages a new session.
        """
        if session:
            yield session
        else:
            async with self.db.get_session() as new_session:
                yield new_session

    async def _in_transaction(self, func: Callable, operation: str,
                              session: Optional[AsyncSession] = None) -> Any:
        """Run func inside the caller's session, or in a retried transaction of its own"""
        if session:
            return await func(session)
        return await self.db.run_transaction(func, operation=operation)

    async def _load(self, session: AsyncSession, model: Type, entity_id: str,
                    not_found: Callable[[str], NotFoundError]) -> Any:
        """
        Load an entity by primary key.

        Raises:
            NotFoundError: Subclass built by not_found when the row is missing
            DecodingError: When the stored row does not fit the entity shape
        """
        try:
            entity = await session.get(model, entity_id)
        except (LookupError, ValueError) as e:
            raise DecodingError(model.__name__, entity_id, str(e)) from e
        if entity is None:
            raise not_found(entity_id)
        return entity

    async def _publish(self, topic: str, entity_id: str, payload: Optional[Dict[str, Any]] = None):
        """Send a change event if a notifier is attached. Call only after commit."""
        if self.notifier is None:
            return
        await self.notifier.publish(ChangeEvent(topic=topic, entity_id=entity_id, payload=payload or {}))
