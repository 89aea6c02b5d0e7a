"""
Match Operations Module

Lifecycle of head-to-head matches: creation, course selection, start,
score submission with rating settlement, and cancellation.

Settlement reads both players and the match, applies the rating exchange and
both players' records, and completes the match inside one transaction. A
concurrent writer on any of the three rows bumps its version and the whole
settlement is retried from a fresh read, so a re-submission after completion
fails validation instead of applying the delta twice.
"""

from dataclasses import dataclass
from typing import List, Optional
from sqlalchemy import select, or_
from sqlalchemy.ext.asyncio import AsyncSession

from rounds.constants import PaginationConstants
from rounds.database.models import (
    Match, MatchStatus, MatchmakingQueueEntry, Player, ACTIVE_MATCH_STATUSES, new_id, utc_now
)
from rounds.operations.elo_service import EloService, EloCalculationResult, PlayerRatingData
from rounds.services.base import BaseService
from rounds.services.notifications import Topics
from rounds.utils.exceptions import (
    ActiveMatchExistsError, InvalidStateError, MatchNotFoundError, NotParticipantError,
    PlayerNotFoundError, ValidationError
)
from rounds.utils.logger import setup_logger

logger = setup_logger(__name__)


@dataclass
class CourseSelection:
    """Opaque course data supplied by the course provider"""
    course_id: Optional[str] = None
    course_name: Optional[str] = None
    tee_name: Optional[str] = None
    tee_rating: Optional[float] = None
    tee_slope: Optional[int] = None


@dataclass
class MatchSettlement:
    """Outcome of a score submission"""
    match: Match
    winner_id: str
    loser_id: str
    elo_change: int
    winner_result: EloCalculationResult
    loser_result: EloCalculationResult


class MatchOperations(BaseService):
    """Business logic for the head-to-head match lifecycle"""

    def __init__(self, database, notifier=None):
        super().__init__(database, notifier)
        self.logger = logger

    async def find_active_match(self, session: AsyncSession, player_id: str) -> Optional[Match]:
        """Pending or in-progress match for a player, read inside the caller's session"""
        result = await session.execute(
            select(Match)
            .where(or_(Match.player1_id == player_id, Match.player2_id == player_id))
            .where(Match.status.in_(ACTIVE_MATCH_STATUSES))
            .order_by(Match.date.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def create_match(
        self,
        player1_id: str,
        player2_id: str,
        course: Optional[CourseSelection] = None,
        tournament_id: Optional[str] = None,
        session: Optional[AsyncSession] = None
    ) -> Match:
        """
        Create a pending match between two players.

        Any searching queue entries for either player are removed; a player
        can hold at most one active match.

        Raises:
            ValidationError: If both ids are the same player
            PlayerNotFoundError: If either player does not exist
            ActiveMatchExistsError: If either player already has an active match
        """
        if player1_id == player2_id:
            raise ValidationError(
                f"Cannot create a match between {player1_id} and themselves",
                "You cannot play a match against yourself."
            )

        async def _create(s: AsyncSession) -> Match:
            player1 = await self._load(s, Player, player1_id, PlayerNotFoundError)
            player2 = await self._load(s, Player, player2_id, PlayerNotFoundError)

            for player in (player1, player2):
                active = await self.find_active_match(s, player.id)
                if active:
                    raise ActiveMatchExistsError(player.id, active.id)

            match = self.build_match(player1, player2, course, tournament_id)
            s.add(match)

            # Both player rows are written so a concurrent create for either
            # player fails its version check and re-reads the active match
            for player in (player1, player2):
                player.last_active = match.date
                entry = await s.get(MatchmakingQueueEntry, player.id)
                if entry and not entry.match_found:
                    await s.delete(entry)

            await s.flush()
            return match

        match = await self._in_transaction(_create, "create_match", session)
        self.logger.info(f"Created match {match.id}: {player1_id} vs {player2_id}")
        if session is None:
            await self._publish(Topics.MATCH_CREATED, match.id, {'players': [player1_id, player2_id]})
        return match

    def build_match(self, player1: Player, player2: Player,
                    course: Optional[CourseSelection] = None,
                    tournament_id: Optional[str] = None) -> Match:
        """Transient match row; the caller adds it to a session"""
        course = course or CourseSelection()
        now = utc_now()
        return Match(
            id=new_id(),
            player1_id=player1.id,
            player2_id=player2.id,
            player1_name=player1.display_name,
            player2_name=player2.display_name,
            course_id=course.course_id,
            course_name=course.course_name,
            selected_tee=course.tee_name,
            tee_rating=course.tee_rating,
            tee_slope=course.tee_slope,
            date=now,
            start_time=now,
            status=MatchStatus.PENDING,
            tournament_id=tournament_id
        )

    async def set_course(self, match_id: str, course: CourseSelection) -> Match:
        """
        Attach course details to a match that has not finished.

        Raises:
            MatchNotFoundError, InvalidStateError
        """
        async def _set_course(s: AsyncSession) -> Match:
            match = await self._load(s, Match, match_id, MatchNotFoundError)
            if not match.is_active:
                raise InvalidStateError("Match", match.id, match.status.value, "change course")
            match.course_id = course.course_id
            match.course_name = course.course_name
            match.selected_tee = course.tee_name
            match.tee_rating = course.tee_rating
            match.tee_slope = course.tee_slope
            return match

        return await self.db.run_transaction(_set_course, operation="set_course")

    async def start_match(self, match_id: str, session: Optional[AsyncSession] = None) -> Match:
        """
        Move a pending match to in progress.

        Raises:
            MatchNotFoundError, InvalidStateError
        """
        async def _start(s: AsyncSession) -> Match:
            match = await self._load(s, Match, match_id, MatchNotFoundError)
            if match.status != MatchStatus.PENDING:
                raise InvalidStateError("Match", match.id, match.status.value, "start")
            match.status = MatchStatus.IN_PROGRESS
            match.start_time = utc_now()
            return match

        match = await self._in_transaction(_start, "start_match", session)
        self.logger.info(f"Match {match.id} started")
        if session is None:
            await self._publish(Topics.MATCH_STARTED, match.id)
        return match

    async def submit_scores(
        self,
        match_id: str,
        player1_score: int,
        player2_score: int,
        submitted_by: Optional[str] = None
    ) -> MatchSettlement:
        """
        Record final scores and settle ratings atomically.

        Lower score wins. Both players' ratings and records and the match row
        are written in one transaction or not at all.

        Args:
            match_id: Match to settle
            player1_score: Strokes for player 1
            player2_score: Strokes for player 2
            submitted_by: Submitting player; must be one of the two players when given

        Returns:
            MatchSettlement with the completed match and both rating results

        Raises:
            InvalidScoresError: Missing, negative, non-integer or tied scores
            MatchNotFoundError: Unknown match
            NotParticipantError: Submitter is not in the match
            InvalidStateError: Match already completed or cancelled
            ConflictError: Concurrent writers kept winning
        """
        EloService.validate_scores(player1_score, player2_score)

        async def _settle(s: AsyncSession) -> MatchSettlement:
            match = await self._load(s, Match, match_id, MatchNotFoundError)
            if submitted_by and not match.has_player(submitted_by):
                raise NotParticipantError(submitted_by, match.id)
            if not match.is_active:
                raise InvalidStateError("Match", match.id, match.status.value, "submit scores")

            winner_id, loser_id = EloService.determine_winner(
                match.player1_id, match.player2_id, player1_score, player2_score
            )
            winner = await self._load(s, Player, winner_id, PlayerNotFoundError)
            loser = await self._load(s, Player, loser_id, PlayerNotFoundError)

            winner_result, loser_result = EloService.settle_match(
                PlayerRatingData(winner.id, winner.rating, winner.matches_played),
                PlayerRatingData(loser.id, loser.rating, loser.matches_played),
                score_differential=abs(player1_score - player2_score)
            )

            now = utc_now()
            winner.rating = winner_result.new_rating
            winner.matches_played += 1
            winner.matches_won += 1
            winner.last_active = now

            loser.rating = loser_result.new_rating
            loser.matches_played += 1
            loser.matches_lost += 1
            loser.last_active = now

            match.player1_score = player1_score
            match.player2_score = player2_score
            match.winner_id = winner_id
            match.elo_change = winner_result.rating_change_unclamped
            match.end_time = now
            match.status = MatchStatus.COMPLETED

            return MatchSettlement(
                match=match,
                winner_id=winner_id,
                loser_id=loser_id,
                elo_change=winner_result.rating_change_unclamped,
                winner_result=winner_result,
                loser_result=loser_result
            )

        settlement = await self.db.run_transaction(_settle, operation="submit_scores")
        self.logger.info(
            f"Match {match_id} completed: winner {settlement.winner_id} "
            f"({settlement.winner_result.old_rating} -> {settlement.winner_result.new_rating}), "
            f"loser {settlement.loser_id} "
            f"({settlement.loser_result.old_rating} -> {settlement.loser_result.new_rating})"
        )
        await self._publish(Topics.MATCH_COMPLETED, match_id, {
            'winner_id': settlement.winner_id,
            'loser_id': settlement.loser_id,
            'elo_change': settlement.elo_change
        })
        return settlement

    async def cancel_match(self, match_id: str, requested_by: Optional[str] = None,
                           session: Optional[AsyncSession] = None) -> Match:
        """
        Cancel a pending or in-progress match. Queue entries paired to it are removed.

        Raises:
            MatchNotFoundError, NotParticipantError, InvalidStateError
        """
        async def _cancel(s: AsyncSession) -> Match:
            match = await self._load(s, Match, match_id, MatchNotFoundError)
            if requested_by and not match.has_player(requested_by):
                raise NotParticipantError(requested_by, match.id)
            if not match.is_active:
                raise InvalidStateError("Match", match.id, match.status.value, "cancel")
            match.status = MatchStatus.CANCELLED
            match.end_time = utc_now()

            result = await s.execute(
                select(MatchmakingQueueEntry).where(MatchmakingQueueEntry.match_id == match.id)
            )
            for entry in result.scalars().all():
                await s.delete(entry)
            return match

        match = await self._in_transaction(_cancel, "cancel_match", session)
        self.logger.info(f"Match {match.id} cancelled")
        if session is None:
            await self._publish(Topics.MATCH_CANCELLED, match.id)
        return match

    async def get_match(self, match_id: str, session: Optional[AsyncSession] = None) -> Match:
        async with self._get_session_context(session) as s:
            return await self._load(s, Match, match_id, MatchNotFoundError)

    async def get_active_match(self, player_id: str) -> Optional[Match]:
        async with self.db.get_session() as session:
            return await self.find_active_match(session, player_id)

    async def get_recent_matches(self, player_id: str,
                                 limit: int = PaginationConstants.RECENT_MATCHES_LIMIT) -> List[Match]:
        """A player's matches, newest first"""
        async with self.db.get_session() as session:
            result = await session.execute(
                select(Match)
                .where(or_(Match.player1_id == player_id, Match.player2_id == player_id))
                .order_by(Match.date.desc())
                .limit(limit)
            )
            return list(result.scalars().all())
