"""
Change notification channel.

Operations publish a ChangeEvent after their transaction commits; the
presentation layer subscribes instead of observing mutable service state.
"""

import inspect
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from rounds.database.models import utc_now
from rounds.utils.logger import setup_logger

logger = setup_logger(__name__)

ALL_TOPICS = '*'


class Topics:
    MATCH_CREATED = 'match.created'
    MATCH_STARTED = 'match.started'
    MATCH_COMPLETED = 'match.completed'
    MATCH_CANCELLED = 'match.cancelled'
    QUEUE_JOINED = 'queue.joined'
    QUEUE_LEFT = 'queue.left'
    QUEUE_MATCHED = 'queue.matched'
    QUEUE_EXPIRED = 'queue.expired'
    PLAYER_UPDATED = 'player.updated'
    TOURNAMENT_CREATED = 'tournament.created'
    TOURNAMENT_UPDATED = 'tournament.updated'
    TOURNAMENT_STARTED = 'tournament.started'
    TOURNAMENT_COMPLETED = 'tournament.completed'
    TOURNAMENT_CANCELLED = 'tournament.cancelled'
    TOURNAMENT_DELETED = 'tournament.deleted'


@dataclass
class ChangeEvent:
    topic: str
    entity_id: str
    payload: Dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=utc_now)


Listener = Callable[[ChangeEvent], Any]


class NotificationHub:
    """In-process publish/subscribe hub; listeners may be sync or async callables."""

    def __init__(self):
        self._listeners: Dict[str, List[Listener]] = defaultdict(list)

    def subscribe(self, listener: Listener, topic: Optional[str] = None) -> Callable[[], None]:
        """
        Register a listener for one topic, or for every topic when topic is None.

        Returns:
            Callable that removes the listener
        """
        key = topic or ALL_TOPICS
        self._listeners[key].append(listener)

        def unsubscribe():
            if listener in self._listeners[key]:
                self._listeners[key].remove(listener)

        return unsubscribe

    def listener_count(self, topic: Optional[str] = None) -> int:
        return len(self._listeners.get(topic or ALL_TOPICS, []))

    async def publish(self, event: ChangeEvent) -> int:
        """
        Deliver an event to topic listeners, then to catch-all listeners.

        A failing listener is logged and skipped; the change it reports has
        already been committed.

        Returns:
            Number of listeners that handled the event
        """
        listeners = list(self._listeners.get(event.topic, [])) + list(self._listeners.get(ALL_TOPICS, []))

        delivered = 0
        for listener in listeners:
            try:
                result = listener(event)
                if inspect.isawaitable(result):
                    await result
                delivered += 1
            except Exception as e:
                logger.error(f"Listener {listener!r} failed for {event.topic} ({event.entity_id}): {e}", exc_info=True)
        return delivered
