"""
Tournament Operations Module

Registration, bracket start, result submission and completion for
tournaments. A tournament owns its participant list, rounds and matches; every
mutation reads the whole aggregate, validates, writes, and bumps updated_at so
concurrent writers on the same tournament conflict on its version and retry.

Key functionality:
- create_tournament() / update_tournament() / delete_tournament()
- join() / withdraw(): registration with capacity and duplicate checks
- start(): generates the bracket for the tournament's format
- submit_tournament_match_result(): records a result, advances winners and
  completes the tournament once every match is completed
- get_standings() / get_champion()
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Union
from sqlalchemy import select, or_
from sqlalchemy.ext.asyncio import AsyncSession

from rounds.constants import TournamentConstants
from rounds.database.models import (
    MatchStatus, Player, RoundStatus, Tournament, TournamentFormat, TournamentParticipant,
    TournamentStatus, ELIMINATION_FORMATS, UNSUPPORTED_FORMATS, new_id, to_naive_utc, utc_now
)
from rounds.operations.elo_service import EloService
from rounds.services.base import BaseService
from rounds.services.notifications import Topics
from rounds.utils import bracket
from rounds.utils.exceptions import (
    AlreadyRegisteredError, InvalidStateError, MatchNotFoundError, NotEnoughPlayersError,
    NotFoundError, PlayerNotFoundError, RegistrationClosedError, RoundNotFoundError,
    TournamentFullError, TournamentNotFoundError, TournamentStartedError, UnauthorizedError,
    UnsupportedFormatError, ValidationError
)
from rounds.utils.logger import setup_logger

logger = setup_logger(__name__)

# Detail fields editable while a tournament is in registration
EDITABLE_FIELDS = (
    'name', 'description', 'start_date', 'end_date', 'venue', 'location', 'time_zone',
    'par', 'yardage', 'purse', 'entry_fee', 'prize_pool', 'rules', 'min_players', 'max_players'
)
DATE_FIELDS = ('start_date', 'end_date')
REQUIRED_FIELDS = ('name', 'min_players', 'max_players')


@dataclass
class StandingEntry:
    """One participant's record across a tournament's decided matches"""
    player_id: str
    wins: int = 0
    losses: int = 0
    byes: int = 0

    @property
    def matches_played(self) -> int:
        return self.wins + self.losses


@dataclass
class TournamentResultOutcome:
    """Result of submitting a tournament match"""
    tournament: Tournament
    match_id: str
    winner_id: str
    round_completed: bool
    tournament_completed: bool


def parse_format(value: Union[str, TournamentFormat]) -> TournamentFormat:
    """
    Raises:
        UnsupportedFormatError: For unknown format names
    """
    if isinstance(value, TournamentFormat):
        return value
    try:
        return TournamentFormat(value)
    except ValueError:
        raise UnsupportedFormatError(str(value))


class TournamentOperations(BaseService):
    """Business logic for tournaments"""

    def __init__(self, database, notifier=None):
        super().__init__(database, notifier)
        self.logger = logger

    def _check_creator(self, tournament: Tournament, requested_by: Optional[str], operation: str):
        if requested_by and requested_by != tournament.creator_id:
            raise UnauthorizedError(requested_by, f"{operation} tournament {tournament.id}")

    def _validate_capacity(self, min_players: int, max_players: int):
        if min_players < TournamentConstants.DEFAULT_MIN_PLAYERS:
            raise ValidationError(
                f"min_players {min_players} below {TournamentConstants.DEFAULT_MIN_PLAYERS}",
                f"A tournament needs at least {TournamentConstants.DEFAULT_MIN_PLAYERS} players."
            )
        if max_players < min_players:
            raise ValidationError(
                f"max_players {max_players} below min_players {min_players}",
                "Maximum players cannot be lower than minimum players."
            )

    # ------------------------------------------------------------------
    # Creation and lookup
    # ------------------------------------------------------------------

    async def create_tournament(
        self,
        name: str,
        creator_id: str,
        tournament_format: Union[str, TournamentFormat],
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        min_players: int = TournamentConstants.DEFAULT_MIN_PLAYERS,
        max_players: int = TournamentConstants.DEFAULT_MAX_PLAYERS,
        **details: Any
    ) -> Tournament:
        """
        Create a tournament in registration.

        Args:
            name: Display name
            creator_id: Player who owns the tournament
            tournament_format: Format value or name
            start_date / end_date: Schedule, naive or aware
            min_players / max_players: Registration bounds
            **details: description, venue, location, time_zone, par, yardage,
                purse, entry_fee, prize_pool, rules

        Raises:
            ValidationError: Blank name, bad capacity or unknown detail field
            UnsupportedFormatError: Format without a bracket generator
            PlayerNotFoundError: Unknown creator
        """
        fmt = parse_format(tournament_format)
        if fmt in UNSUPPORTED_FORMATS:
            raise UnsupportedFormatError(fmt.value)
        if not (name or '').strip():
            raise ValidationError("Tournament name is blank", "Tournament name cannot be empty.")
        self._validate_capacity(min_players, max_players)
        unknown = set(details) - set(EDITABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown tournament fields: {sorted(unknown)}", "Unknown tournament fields.")
        rules = list(details.pop('rules', None) or [])

        async def _create(s: AsyncSession) -> Tournament:
            await self._load(s, Player, creator_id, PlayerNotFoundError)
            now = utc_now()
            tournament = Tournament(
                id=new_id(),
                name=name.strip(),
                format=fmt,
                status=TournamentStatus.REGISTRATION,
                creator_id=creator_id,
                start_date=to_naive_utc(start_date),
                end_date=to_naive_utc(end_date),
                min_players=min_players,
                max_players=max_players,
                rules=rules,
                created_at=now,
                updated_at=now,
                participant_links=[],
                rounds=[],
                **details
            )
            s.add(tournament)
            await s.flush()
            return tournament

        tournament = await self.db.run_transaction(_create, operation="create_tournament")
        self.logger.info(f"Created tournament {tournament.id} '{tournament.name}' ({fmt.value}) by {creator_id}")
        await self._publish(Topics.TOURNAMENT_CREATED, tournament.id, {'name': tournament.name})
        return tournament

    async def get_tournament(self, tournament_id: str, session: Optional[AsyncSession] = None) -> Tournament:
        async with self._get_session_context(session) as s:
            return await self._load(s, Tournament, tournament_id, TournamentNotFoundError)

    async def list_tournaments(self, status: Optional[TournamentStatus] = None) -> List[Tournament]:
        """All tournaments, optionally filtered by status, soonest first"""
        async with self.db.get_session() as session:
            query = select(Tournament)
            if status is not None:
                query = query.where(Tournament.status == status)
            query = query.order_by(Tournament.start_date, Tournament.created_at)
            result = await session.execute(query)
            return list(result.scalars().all())

    async def list_open_tournaments(self) -> List[Tournament]:
        """Tournaments still accepting registrations"""
        return await self.list_tournaments(TournamentStatus.REGISTRATION)

    async def get_player_tournaments(self, player_id: str) -> List[Tournament]:
        """Tournaments a player created or joined"""
        async with self.db.get_session() as session:
            joined = select(TournamentParticipant.tournament_id).where(
                TournamentParticipant.player_id == player_id
            )
            result = await session.execute(
                select(Tournament)
                .where(or_(Tournament.creator_id == player_id, Tournament.id.in_(joined)))
                .order_by(Tournament.start_date, Tournament.created_at)
            )
            return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Editing
    # ------------------------------------------------------------------

    async def update_tournament(self, tournament_id: str, requested_by: Optional[str] = None,
                                **changes: Any) -> Tournament:
        """
        Edit tournament details during registration.

        None for a required field (name, min_players, max_players) leaves it
        unchanged.

        Raises:
            TournamentNotFoundError, UnauthorizedError, TournamentStartedError,
            ValidationError
        """
        unknown = set(changes) - set(EDITABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown tournament fields: {sorted(unknown)}", "Unknown tournament fields.")
        changes = {
            key: value for key, value in changes.items()
            if not (key in REQUIRED_FIELDS and value is None)
        }
        if 'name' in changes:
            changes['name'] = (changes['name'] or '').strip()
            if not changes['name']:
                raise ValidationError("Tournament name is blank", "Tournament name cannot be empty.")

        async def _update(s: AsyncSession) -> Tournament:
            tournament = await self._load(s, Tournament, tournament_id, TournamentNotFoundError)
            self._check_creator(tournament, requested_by, "update")
            if tournament.status != TournamentStatus.REGISTRATION:
                raise TournamentStartedError(tournament.id)

            min_players = changes.get('min_players', tournament.min_players)
            max_players = changes.get('max_players', tournament.max_players)
            self._validate_capacity(min_players, max_players)
            if max_players < len(tournament.participant_links):
                raise ValidationError(
                    f"max_players {max_players} below current registrations",
                    "More players are already registered than the new maximum."
                )

            for key, value in changes.items():
                if key in DATE_FIELDS:
                    value = to_naive_utc(value)
                elif key == 'rules':
                    value = list(value or [])
                setattr(tournament, key, value)
            tournament.touch()
            return tournament

        tournament = await self.db.run_transaction(_update, operation="update_tournament")
        self.logger.info(f"Updated tournament {tournament.id}: {sorted(changes)}")
        await self._publish(Topics.TOURNAMENT_UPDATED, tournament.id, {'fields': sorted(changes)})
        return tournament

    async def delete_tournament(self, tournament_id: str, requested_by: Optional[str] = None) -> None:
        """
        Remove a tournament with its participants, rounds and matches.

        Raises:
            TournamentNotFoundError, UnauthorizedError
        """
        async def _delete(s: AsyncSession):
            tournament = await self._load(s, Tournament, tournament_id, TournamentNotFoundError)
            self._check_creator(tournament, requested_by, "delete")
            await s.delete(tournament)

        await self.db.run_transaction(_delete, operation="delete_tournament")
        self.logger.info(f"Deleted tournament {tournament_id}")
        await self._publish(Topics.TOURNAMENT_DELETED, tournament_id)

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    async def join(self, tournament_id: str, player_id: str) -> Tournament:
        """
        Register a player.

        Raises:
            TournamentNotFoundError: Unknown tournament
            RegistrationClosedError: Tournament is not in registration
            AlreadyRegisteredError: Player is already a participant
            TournamentFullError: Participant count has reached max_players
            PlayerNotFoundError: Unknown player
        """
        async def _join(s: AsyncSession) -> Tournament:
            tournament = await self._load(s, Tournament, tournament_id, TournamentNotFoundError)
            if tournament.status != TournamentStatus.REGISTRATION:
                raise RegistrationClosedError(tournament.id, tournament.status.value)
            if player_id in tournament.participants:
                raise AlreadyRegisteredError(tournament.id, player_id)
            if tournament.is_full:
                raise TournamentFullError(tournament.id, tournament.max_players)
            await self._load(s, Player, player_id, PlayerNotFoundError)

            now = utc_now()
            position = max((link.position for link in tournament.participant_links), default=0) + 1
            tournament.participant_links.append(TournamentParticipant(
                player_id=player_id,
                position=position,
                joined_at=now
            ))
            tournament.touch(now)
            await s.flush()
            return tournament

        tournament = await self.db.run_transaction(_join, operation="join_tournament")
        self.logger.info(
            f"Player {player_id} joined tournament {tournament_id} "
            f"({len(tournament.participant_links)}/{tournament.max_players})"
        )
        await self._publish(Topics.TOURNAMENT_UPDATED, tournament_id, {'joined': player_id})
        return tournament

    async def withdraw(self, tournament_id: str, player_id: str) -> Tournament:
        """
        Remove a player's registration.

        Raises:
            TournamentNotFoundError: Unknown tournament
            TournamentStartedError: Tournament is no longer in registration
            NotFoundError: Player is not a participant
        """
        async def _withdraw(s: AsyncSession) -> Tournament:
            tournament = await self._load(s, Tournament, tournament_id, TournamentNotFoundError)
            if tournament.status != TournamentStatus.REGISTRATION:
                raise TournamentStartedError(tournament.id)
            link = next((p for p in tournament.participant_links if p.player_id == player_id), None)
            if link is None:
                raise NotFoundError("Participant", player_id)
            tournament.participant_links.remove(link)
            tournament.touch()
            await s.flush()
            return tournament

        tournament = await self.db.run_transaction(_withdraw, operation="withdraw_tournament")
        self.logger.info(f"Player {player_id} withdrew from tournament {tournament_id}")
        await self._publish(Topics.TOURNAMENT_UPDATED, tournament_id, {'withdrew': player_id})
        return tournament

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, tournament_id: str, requested_by: Optional[str] = None) -> Tournament:
        """
        Close registration and generate the bracket.

        Raises:
            TournamentNotFoundError, UnauthorizedError, TournamentStartedError,
            NotEnoughPlayersError, UnsupportedFormatError
        """
        async def _start(s: AsyncSession) -> Tournament:
            tournament = await self._load(s, Tournament, tournament_id, TournamentNotFoundError)
            self._check_creator(tournament, requested_by, "start")
            if tournament.status != TournamentStatus.REGISTRATION:
                raise TournamentStartedError(tournament.id)
            participants = tournament.participants
            if len(participants) < tournament.min_players:
                raise NotEnoughPlayersError(tournament.id, len(participants), tournament.min_players)

            now = utc_now()
            rounds = bracket.generate_bracket(participants, tournament.format)
            bracket.open_bracket(rounds, tournament.format, now)
            tournament.rounds = rounds
            tournament.status = TournamentStatus.IN_PROGRESS
            tournament.touch(now)
            await s.flush()
            return tournament

        tournament = await self.db.run_transaction(_start, operation="start_tournament")
        match_count = sum(len(r.matches) for r in tournament.rounds)
        self.logger.info(
            f"Tournament {tournament.id} started: {len(tournament.participants)} players, "
            f"{len(tournament.rounds)} rounds, {match_count} matches"
        )
        await self._publish(Topics.TOURNAMENT_STARTED, tournament.id, {
            'rounds': len(tournament.rounds),
            'matches': match_count
        })
        return tournament

    async def cancel(self, tournament_id: str, requested_by: Optional[str] = None) -> Tournament:
        """
        Cancel a tournament that has not completed. Undecided matches and
        unfinished rounds are cancelled; decided results stay.

        Raises:
            TournamentNotFoundError, UnauthorizedError, InvalidStateError
        """
        async def _cancel(s: AsyncSession) -> Tournament:
            tournament = await self._load(s, Tournament, tournament_id, TournamentNotFoundError)
            self._check_creator(tournament, requested_by, "cancel")
            if tournament.status in (TournamentStatus.COMPLETED, TournamentStatus.CANCELLED):
                raise InvalidStateError("Tournament", tournament.id, tournament.status.value, "cancel")

            now = utc_now()
            for tournament_round in tournament.rounds:
                for match in tournament_round.matches:
                    if match.status in (MatchStatus.PENDING, MatchStatus.IN_PROGRESS):
                        match.status = MatchStatus.CANCELLED
                        match.completed_at = now
                if tournament_round.status != RoundStatus.COMPLETED:
                    tournament_round.status = RoundStatus.CANCELLED
            tournament.status = TournamentStatus.CANCELLED
            tournament.touch(now)
            return tournament

        tournament = await self.db.run_transaction(_cancel, operation="cancel_tournament")
        self.logger.info(f"Tournament {tournament.id} cancelled")
        await self._publish(Topics.TOURNAMENT_CANCELLED, tournament.id)
        return tournament

    async def submit_tournament_match_result(
        self,
        tournament_id: str,
        round_id: str,
        match_id: str,
        player1_score: int,
        player2_score: int,
        requested_by: Optional[str] = None
    ) -> TournamentResultOutcome:
        """
        Record a tournament match result and progress the bracket.

        Lower score wins. After the match completes, round statuses are
        recomputed, elimination winners are packed into the next round, byes
        there are resolved, and the tournament completes exactly when every
        match of every round is completed.

        Raises:
            InvalidScoresError: Missing, negative or tied scores
            TournamentNotFoundError / RoundNotFoundError / MatchNotFoundError
            UnauthorizedError: Requester is neither the creator nor a player in the match
            InvalidStateError: Tournament not in progress, match already decided,
                or match still waiting for a player
        """
        EloService.validate_scores(player1_score, player2_score)

        async def _submit(s: AsyncSession) -> TournamentResultOutcome:
            tournament = await self._load(s, Tournament, tournament_id, TournamentNotFoundError)
            if tournament.status != TournamentStatus.IN_PROGRESS:
                raise InvalidStateError("Tournament", tournament.id, tournament.status.value, "submit results")

            tournament_round = tournament.find_round(round_id)
            if tournament_round is None:
                raise RoundNotFoundError(round_id)
            match = tournament_round.find_match(match_id)
            if match is None:
                raise MatchNotFoundError(match_id)

            if requested_by and requested_by != tournament.creator_id and not match.has_player(requested_by):
                raise UnauthorizedError(requested_by, f"submit result for match {match.id}")
            if match.status != MatchStatus.PENDING:
                raise InvalidStateError("Match", match.id, match.status.value, "submit result")
            if match.is_bye:
                raise InvalidStateError("Match", match.id, "waiting for players", "submit result")

            winner_id, _ = EloService.determine_winner(
                match.player1_id, match.player2_id, player1_score, player2_score
            )
            now = utc_now()
            match.player1_score = player1_score
            match.player2_score = player2_score
            match.winner_id = winner_id
            match.status = MatchStatus.COMPLETED
            match.completed_at = now

            all_complete = bracket.progress_bracket(tournament.rounds, tournament.format, now)
            if all_complete:
                tournament.status = TournamentStatus.COMPLETED
            tournament.touch(now)
            await s.flush()

            return TournamentResultOutcome(
                tournament=tournament,
                match_id=match.id,
                winner_id=winner_id,
                round_completed=tournament_round.status == RoundStatus.COMPLETED,
                tournament_completed=all_complete
            )

        outcome = await self.db.run_transaction(_submit, operation="submit_tournament_match_result")
        self.logger.info(f"Tournament {tournament_id} match {match_id} won by {outcome.winner_id}")
        await self._publish(Topics.TOURNAMENT_UPDATED, tournament_id, {
            'match_id': match_id,
            'winner_id': outcome.winner_id
        })
        if outcome.tournament_completed:
            self.logger.info(f"Tournament {tournament_id} completed")
            await self._publish(Topics.TOURNAMENT_COMPLETED, tournament_id, {
                'champion': self.champion_of(outcome.tournament)
            })
        return outcome

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------

    def standings_of(self, tournament: Tournament) -> List[StandingEntry]:
        """Wins descending, then losses ascending, then registration order"""
        entries: Dict[str, StandingEntry] = {
            player_id: StandingEntry(player_id) for player_id in tournament.participants
        }
        for tournament_round in tournament.rounds:
            for match in tournament_round.matches:
                if match.status != MatchStatus.COMPLETED or not match.winner_id:
                    continue
                winner = entries.setdefault(match.winner_id, StandingEntry(match.winner_id))
                if match.is_bye:
                    winner.byes += 1
                    continue
                winner.wins += 1
                loser_id = match.loser_id
                entries.setdefault(loser_id, StandingEntry(loser_id)).losses += 1

        order = {player_id: index for index, player_id in enumerate(tournament.participants)}
        return sorted(
            entries.values(),
            key=lambda e: (-e.wins, e.losses, order.get(e.player_id, len(order)))
        )

    def champion_of(self, tournament: Tournament) -> Optional[str]:
        if tournament.format in ELIMINATION_FORMATS:
            return bracket.find_final_winner(tournament.rounds)
        if tournament.status != TournamentStatus.COMPLETED:
            return None
        standings = self.standings_of(tournament)
        return standings[0].player_id if standings else None

    async def get_standings(self, tournament_id: str) -> List[StandingEntry]:
        tournament = await self.get_tournament(tournament_id)
        return self.standings_of(tournament)

    async def get_champion(self, tournament_id: str) -> Optional[str]:
        """Winner of the final for elimination formats, standings leader otherwise"""
        tournament = await self.get_tournament(tournament_id)
        return self.champion_of(tournament)
