"""
Matchmaking Operations Module

Rating-proximity queue with tolerance that widens with wait time.

Queue protocol:
- enqueue() creates or replaces a searching entry
- find_match() pairs the caller with the closest candidate and marks both
  entries matched to a new pending match
- accept_match() / decline_match() resolve the pairing; when both players
  accept, the match starts and both entries are removed
- expire_stale_entries() drops searching entries past the maximum queue time
  and unwinds pairings nobody answered within the accept window

Every entry mutation happens in a transaction keyed by the entry's version, so
one player can never be paired twice by concurrent scans.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence, Tuple
from sqlalchemy import select, func, or_
from sqlalchemy.ext.asyncio import AsyncSession

from rounds.config import Config
from rounds.constants import MatchmakingConstants
from rounds.database.models import (
    Match, MatchStatus, MatchmakingQueueEntry, Player, ACTIVE_MATCH_STATUSES,
    to_naive_utc, utc_now
)
from rounds.operations.match_operations import MatchOperations
from rounds.services.base import BaseService
from rounds.services.notifications import Topics
from rounds.utils.exceptions import (
    ActiveMatchExistsError, AlreadySearchingError, InvalidStateError, MatchNotFoundError,
    NotQueuedError, PlayerNotFoundError
)
from rounds.utils.logger import setup_logger

logger = setup_logger(__name__)


@dataclass
class MatchAcceptanceResult:
    """Result of a player accepting a proposed match"""
    match: Match
    player_id: str
    started: bool  # True once both players have accepted


@dataclass
class SweepResult:
    """What a single housekeeping pass changed"""
    expired_player_ids: List[str] = field(default_factory=list)
    cancelled_match_ids: List[str] = field(default_factory=list)
    requeued_player_ids: List[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.expired_player_ids or self.cancelled_match_ids or self.requeued_player_ids)


class MatchmakingOperations(BaseService):
    """Business logic for the matchmaking queue"""

    def __init__(self, database, notifier=None, match_ops: Optional[MatchOperations] = None):
        super().__init__(database, notifier)
        self.logger = logger
        self.match_ops = match_ops or MatchOperations(database, notifier)
        self.max_rating_difference = Config.MATCHMAKING_MAX_RATING_DIFFERENCE
        self.expansion_rate = Config.MATCHMAKING_EXPANSION_RATE
        self.expansion_interval = Config.MATCHMAKING_EXPANSION_INTERVAL_SECONDS
        self.max_queue_seconds = Config.MATCHMAKING_MAX_QUEUE_SECONDS
        self.accept_timeout_seconds = Config.MATCHMAKING_ACCEPT_TIMEOUT_SECONDS

    # ------------------------------------------------------------------
    # Candidate ranking
    # ------------------------------------------------------------------

    def expansion_bonus(self, seconds_waited: float) -> float:
        """Rating points of tolerance earned by waiting"""
        return (seconds_waited / self.expansion_interval) * self.expansion_rate

    def rank_candidates(
        self,
        player_rating: float,
        candidates: Sequence[MatchmakingQueueEntry],
        now: datetime
    ) -> List[Tuple[float, MatchmakingQueueEntry]]:
        """
        Order candidates by adjusted rating gap, earliest enqueue first on ties.

        The adjusted gap is the raw rating gap minus the candidate's expansion
        bonus; negative values are kept.
        """
        ranked = []
        for candidate in candidates:
            gap = abs(candidate.player_rating - player_rating)
            adjusted = gap - self.expansion_bonus(candidate.seconds_waited(now))
            ranked.append((adjusted, candidate))
        ranked.sort(key=lambda item: (item[0], item[1].enqueued_at))
        return ranked

    async def _players_with_active_matches(self, session: AsyncSession, player_ids: List[str]) -> set:
        if not player_ids:
            return set()
        result = await session.execute(
            select(Match.player1_id, Match.player2_id)
            .where(Match.status.in_(ACTIVE_MATCH_STATUSES))
            .where(or_(Match.player1_id.in_(player_ids), Match.player2_id.in_(player_ids)))
        )
        busy = set()
        for player1_id, player2_id in result.all():
            busy.add(player1_id)
            busy.add(player2_id)
        return busy

    # ------------------------------------------------------------------
    # Queue membership
    # ------------------------------------------------------------------

    async def enqueue(self, player_id: str, now: Optional[datetime] = None) -> MatchmakingQueueEntry:
        """
        Start searching, replacing any searching entry the player already has.

        Raises:
            PlayerNotFoundError: Unknown player
            ActiveMatchExistsError: Player already has a pending or in-progress match
            AlreadySearchingError: Player's entry is already paired with a match
        """
        now = to_naive_utc(now) or utc_now()

        async def _enqueue(s: AsyncSession) -> MatchmakingQueueEntry:
            player = await self._load(s, Player, player_id, PlayerNotFoundError)
            entry = await s.get(MatchmakingQueueEntry, player.id)
            if entry is not None and entry.match_found:
                raise AlreadySearchingError(player.id)
            active = await self.match_ops.find_active_match(s, player.id)
            if active:
                raise ActiveMatchExistsError(player.id, active.id)

            if entry is None:
                entry = MatchmakingQueueEntry(player_id=player.id)
                s.add(entry)

            entry.player_name = player.display_name
            entry.player_rating = player.rating
            entry.enqueued_at = now
            entry.reset_pairing()
            player.last_active = now
            await s.flush()
            return entry

        entry = await self.db.run_transaction(_enqueue, operation="enqueue")
        self.logger.info(f"Player {player_id} joined matchmaking at rating {entry.player_rating}")
        await self._publish(Topics.QUEUE_JOINED, player_id, {'rating': entry.player_rating})
        return entry

    async def cancel(self, player_id: str) -> bool:
        """
        Leave the queue. A pending match the entry was paired with is cancelled
        and the opponent goes back to searching.

        Returns:
            False when the player had no entry
        """
        async def _cancel(s: AsyncSession) -> Tuple[bool, Optional[str]]:
            entry = await s.get(MatchmakingQueueEntry, player_id)
            if entry is None:
                return False, None

            cancelled_match_id = None
            if entry.match_found and entry.match_id:
                match = await s.get(Match, entry.match_id)
                if match and match.status == MatchStatus.PENDING:
                    await self._unwind_pairing(s, match, leaving_player_id=player_id)
                    cancelled_match_id = match.id
            await s.delete(entry)
            return True, cancelled_match_id

        removed, cancelled_match_id = await self.db.run_transaction(_cancel, operation="cancel_queue")
        if not removed:
            return False

        self.logger.info(f"Player {player_id} left matchmaking")
        await self._publish(Topics.QUEUE_LEFT, player_id)
        if cancelled_match_id:
            await self._publish(Topics.MATCH_CANCELLED, cancelled_match_id, {'reason': 'player_left_queue'})
        return True

    async def get_queue_entry(self, player_id: str) -> Optional[MatchmakingQueueEntry]:
        async with self.db.get_session() as session:
            return await session.get(MatchmakingQueueEntry, player_id)

    async def get_queue_size(self, searching_only: bool = False) -> int:
        async with self.db.get_session() as session:
            query = select(func.count()).select_from(MatchmakingQueueEntry)
            if searching_only:
                query = query.where(MatchmakingQueueEntry.match_found.is_(False))
            result = await session.execute(query)
            return result.scalar_one()

    # ------------------------------------------------------------------
    # Pairing
    # ------------------------------------------------------------------

    async def find_match(self, player_id: str, now: Optional[datetime] = None) -> Optional[Match]:
        """
        Pair the player with the closest eligible candidate.

        No eligible candidate is not an error: the player stays queued and the
        call returns None. A player whose entry is already paired gets that
        match back.

        Raises:
            NotQueuedError: Player has no queue entry
        """
        now = to_naive_utc(now) or utc_now()

        async def _find(s: AsyncSession) -> Tuple[Optional[Match], bool]:
            entry = await s.get(MatchmakingQueueEntry, player_id)
            if entry is None:
                raise NotQueuedError(player_id)
            if entry.match_found and entry.match_id:
                return await s.get(Match, entry.match_id), False

            result = await s.execute(
                select(MatchmakingQueueEntry)
                .where(MatchmakingQueueEntry.match_found.is_(False))
                .where(MatchmakingQueueEntry.player_id != player_id)
                .order_by(MatchmakingQueueEntry.enqueued_at)
                .limit(MatchmakingConstants.MAX_CANDIDATES_SCANNED)
            )
            candidates = list(result.scalars().all())
            busy = await self._players_with_active_matches(s, [c.player_id for c in candidates])
            candidates = [c for c in candidates if c.player_id not in busy]

            ranked = self.rank_candidates(entry.player_rating, candidates, now)
            if not ranked:
                return None, False
            best_gap, best = ranked[0]
            if best_gap > self.max_rating_difference:
                self.logger.debug(
                    f"No match for {player_id}: closest adjusted gap {best_gap:.0f} "
                    f"exceeds {self.max_rating_difference:.0f}"
                )
                return None, False

            player = await self._load(s, Player, player_id, PlayerNotFoundError)
            opponent = await self._load(s, Player, best.player_id, PlayerNotFoundError)
            match = self.match_ops.build_match(player, opponent)
            s.add(match)
            for paired_player in (player, opponent):
                paired_player.last_active = now

            for paired in (entry, best):
                paired.match_found = True
                paired.match_id = match.id
                paired.matched_at = now
                paired.match_accepted = False
            await s.flush()
            return match, True

        match, created = await self.db.run_transaction(_find, operation="find_match")
        if match and created:
            self.logger.info(f"Paired {match.player1_id} with {match.player2_id} in match {match.id}")
            await self._publish(Topics.QUEUE_MATCHED, match.id, {
                'players': [match.player1_id, match.player2_id]
            })
            await self._publish(Topics.MATCH_CREATED, match.id, {
                'players': [match.player1_id, match.player2_id]
            })
        return match

    async def accept_match(self, player_id: str, match_id: str) -> MatchAcceptanceResult:
        """
        Confirm a proposed match. The match starts when both players have accepted.

        Raises:
            NotQueuedError: Player has no entry paired with this match
            MatchNotFoundError: Match no longer exists
            InvalidStateError: Match is no longer pending
        """
        async def _accept(s: AsyncSession) -> MatchAcceptanceResult:
            entry = await self._paired_entry(s, player_id, match_id)
            match = await self._load(s, Match, match_id, MatchNotFoundError)
            if match.status != MatchStatus.PENDING:
                raise InvalidStateError("Match", match.id, match.status.value, "accept")

            entry.match_accepted = True
            # Writing the match row makes simultaneous accepts collide on its version
            match.accepted_count = (match.accepted_count or 0) + 1
            peer = await s.get(MatchmakingQueueEntry, match.opponent_id(player_id))
            if peer is None or not peer.match_accepted or peer.match_id != match.id:
                return MatchAcceptanceResult(match=match, player_id=player_id, started=False)

            match.status = MatchStatus.IN_PROGRESS
            match.start_time = utc_now()
            await s.delete(entry)
            await s.delete(peer)
            return MatchAcceptanceResult(match=match, player_id=player_id, started=True)

        result = await self.db.run_transaction(_accept, operation="accept_match")
        if result.started:
            self.logger.info(f"Both players accepted match {match_id}, match started")
            await self._publish(Topics.MATCH_STARTED, match_id)
        else:
            self.logger.info(f"Player {player_id} accepted match {match_id}, waiting for opponent")
        return result

    async def decline_match(self, player_id: str, match_id: str) -> Match:
        """
        Reject a proposed match. The match is cancelled, the decliner leaves the
        queue and the opponent resumes searching with their original wait time.

        Raises:
            NotQueuedError, MatchNotFoundError, InvalidStateError
        """
        async def _decline(s: AsyncSession) -> Match:
            entry = await self._paired_entry(s, player_id, match_id)
            match = await self._load(s, Match, match_id, MatchNotFoundError)
            if match.status != MatchStatus.PENDING:
                raise InvalidStateError("Match", match.id, match.status.value, "decline")
            await self._unwind_pairing(s, match, leaving_player_id=player_id)
            await s.delete(entry)
            return match

        match = await self.db.run_transaction(_decline, operation="decline_match")
        self.logger.info(f"Player {player_id} declined match {match_id}")
        await self._publish(Topics.MATCH_CANCELLED, match.id, {'reason': 'declined', 'declined_by': player_id})
        return match

    async def _paired_entry(self, session: AsyncSession, player_id: str, match_id: str) -> MatchmakingQueueEntry:
        entry = await session.get(MatchmakingQueueEntry, player_id)
        if entry is None or not entry.match_found or entry.match_id != match_id:
            raise NotQueuedError(player_id)
        return entry

    async def _unwind_pairing(self, session: AsyncSession, match: Match, leaving_player_id: str):
        """Cancel a pending queue match and return the other player to searching"""
        match.status = MatchStatus.CANCELLED
        match.end_time = utc_now()
        peer = await session.get(MatchmakingQueueEntry, match.opponent_id(leaving_player_id))
        if peer and peer.match_id == match.id:
            peer.reset_pairing()

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    async def expire_stale_entries(self, now: Optional[datetime] = None) -> SweepResult:
        """
        Enforce the maximum queue time and the accept window.

        - Searching entries older than the maximum queue time are removed.
        - Pairings not fully accepted within the accept window are cancelled;
          players who had accepted go back to searching with a fresh wait,
          the others are removed.
        """
        now = to_naive_utc(now) or utc_now()
        queue_cutoff = now - timedelta(seconds=self.max_queue_seconds)
        accept_cutoff = now - timedelta(seconds=self.accept_timeout_seconds)

        async def _sweep(s: AsyncSession) -> SweepResult:
            sweep = SweepResult()

            result = await s.execute(
                select(MatchmakingQueueEntry)
                .where(MatchmakingQueueEntry.match_found.is_(False))
                .where(MatchmakingQueueEntry.enqueued_at < queue_cutoff)
            )
            for entry in result.scalars().all():
                sweep.expired_player_ids.append(entry.player_id)
                await s.delete(entry)

            result = await s.execute(
                select(MatchmakingQueueEntry)
                .where(MatchmakingQueueEntry.match_found.is_(True))
                .where(MatchmakingQueueEntry.matched_at < accept_cutoff)
            )
            by_match: Dict[str, List[MatchmakingQueueEntry]] = {}
            for entry in result.scalars().all():
                by_match.setdefault(entry.match_id, []).append(entry)

            for match_id, entries in by_match.items():
                match = await s.get(Match, match_id) if match_id else None
                if match and match.status == MatchStatus.PENDING:
                    match.status = MatchStatus.CANCELLED
                    match.end_time = now
                    sweep.cancelled_match_ids.append(match.id)
                for entry in entries:
                    if entry.match_accepted and match is not None and match.id in sweep.cancelled_match_ids:
                        entry.reset_pairing()
                        entry.enqueued_at = now
                        sweep.requeued_player_ids.append(entry.player_id)
                    else:
                        sweep.expired_player_ids.append(entry.player_id)
                        await s.delete(entry)
            return sweep

        sweep = await self.db.run_transaction(_sweep, operation="expire_stale_entries")
        if sweep.changed:
            self.logger.info(
                f"Queue sweep: {len(sweep.expired_player_ids)} expired, "
                f"{len(sweep.cancelled_match_ids)} matches cancelled, "
                f"{len(sweep.requeued_player_ids)} requeued"
            )
        for expired_id in sweep.expired_player_ids:
            await self._publish(Topics.QUEUE_EXPIRED, expired_id)
        for cancelled_id in sweep.cancelled_match_ids:
            await self._publish(Topics.MATCH_CANCELLED, cancelled_id, {'reason': 'accept_timeout'})
        return sweep
