from sqlalchemy import (
    Column, Integer, String, DateTime, Boolean, Text, Float, JSON,
    ForeignKey, Enum as SQLEnum, UniqueConstraint
)
from sqlalchemy.orm import declarative_base, relationship
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, List
import uuid

from rounds.config import Config
from rounds.constants import RatingConstants, TournamentConstants

Base = declarative_base()


def utc_now() -> datetime:
    """Current time as naive UTC, the form every timestamp column stores"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalise an aware datetime to naive UTC; naive values are assumed UTC already"""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


class MatchStatus(Enum):
    """Status of a head-to-head match or a tournament match"""
    PENDING = "pending"          # Created, waiting to be played
    IN_PROGRESS = "in_progress"  # Both players confirmed, round under way
    COMPLETED = "completed"      # Scores recorded and winner decided
    CANCELLED = "cancelled"      # Abandoned before scores were entered

ACTIVE_MATCH_STATUSES = (MatchStatus.PENDING, MatchStatus.IN_PROGRESS)

class RoundStatus(Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

class TournamentStatus(Enum):
    REGISTRATION = "registration"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

class TournamentFormat(Enum):
    STROKE = "stroke"
    MATCH = "match"
    TEAM = "team"
    SINGLE_ELIMINATION = "single_elimination"
    DOUBLE_ELIMINATION = "double_elimination"
    ROUND_ROBIN = "round_robin"
    SWISS = "swiss"

ELIMINATION_FORMATS = (TournamentFormat.SINGLE_ELIMINATION, TournamentFormat.MATCH)
UNSUPPORTED_FORMATS = (TournamentFormat.DOUBLE_ELIMINATION, TournamentFormat.SWISS)


class Player(Base):
    __tablename__ = 'players'

    # Identity provider user id is the primary key
    id = Column(String(128), primary_key=True)
    email = Column(String(255), nullable=False, default='')
    display_name = Column(String(100), nullable=False, index=True)

    # Rating and record
    rating = Column(Integer, nullable=False, default=Config.STARTING_RATING, index=True)
    matches_played = Column(Integer, nullable=False, default=0)
    matches_won = Column(Integer, nullable=False, default=0)
    matches_lost = Column(Integer, nullable=False, default=0)

    # Metadata
    created_at = Column(DateTime, default=utc_now)
    last_active = Column(DateTime, default=utc_now)

    # Optimistic concurrency
    version = Column(Integer, nullable=False)
    __mapper_args__ = {'version_id_col': version}

    @property
    def win_rate(self) -> float:
        if not self.matches_played:
            return 0.0
        return (self.matches_won / self.matches_played) * 100

    @property
    def is_provisional(self) -> bool:
        return (self.matches_played or 0) < RatingConstants.PROVISIONAL_MATCH_COUNT

    def __repr__(self):
        return f"<Player(id='{self.id}', display_name='{self.display_name}', rating={self.rating})>"


class Match(Base):
    """
    A single head-to-head golf match between two players.

    Player names and course details are denormalised for read convenience;
    lower score wins.
    """
    __tablename__ = 'matches'

    id = Column(String(36), primary_key=True, default=new_id)

    # Players
    player1_id = Column(String(128), ForeignKey('players.id'), nullable=False, index=True)
    player2_id = Column(String(128), ForeignKey('players.id'), nullable=False, index=True)
    player1_name = Column(String(100), nullable=False, default='')
    player2_name = Column(String(100), nullable=False, default='')

    # Course (chosen at setup, or after pairing for queue matches)
    course_id = Column(String(64), nullable=True)
    course_name = Column(String(200), nullable=True)
    selected_tee = Column(String(100), nullable=True)
    tee_rating = Column(Float, nullable=True)
    tee_slope = Column(Integer, nullable=True)

    # Results
    player1_score = Column(Integer, nullable=True)
    player2_score = Column(Integer, nullable=True)
    winner_id = Column(String(128), nullable=True)
    elo_change = Column(Integer, nullable=True)  # Points moved from loser to winner

    # Timing
    date = Column(DateTime, default=utc_now, index=True)
    start_time = Column(DateTime, default=utc_now)
    end_time = Column(DateTime, nullable=True)

    status = Column(SQLEnum(MatchStatus), nullable=False, default=MatchStatus.PENDING, index=True)
    accepted_count = Column(Integer, nullable=False, default=0)  # Queue acceptances while pending

    # Optional tournament link
    tournament_id = Column(String(36), nullable=True, index=True)
    tournament_match_id = Column(String(36), nullable=True)

    version = Column(Integer, nullable=False)
    __mapper_args__ = {'version_id_col': version}

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_MATCH_STATUSES

    @property
    def is_complete(self) -> bool:
        return self.status == MatchStatus.COMPLETED

    @property
    def loser_id(self) -> Optional[str]:
        if not self.winner_id:
            return None
        return self.opponent_id(self.winner_id)

    @property
    def duration_minutes(self) -> Optional[float]:
        if not self.start_time or not self.end_time:
            return None
        return (self.end_time - self.start_time).total_seconds() / 60

    def has_player(self, player_id: str) -> bool:
        return player_id in (self.player1_id, self.player2_id)

    def player_score(self, player_id: str) -> Optional[int]:
        if player_id == self.player1_id:
            return self.player1_score
        if player_id == self.player2_id:
            return self.player2_score
        return None

    def opponent_id(self, player_id: str) -> Optional[str]:
        if player_id == self.player1_id:
            return self.player2_id
        if player_id == self.player2_id:
            return self.player1_id
        return None

    def __repr__(self):
        return f"<Match(id='{self.id}', status={self.status.value}, winner='{self.winner_id}')>"


class MatchmakingQueueEntry(Base):
    """One live matchmaking entry per player, keyed by player id"""
    __tablename__ = 'matchmaking_queue'

    player_id = Column(String(128), ForeignKey('players.id'), primary_key=True)
    player_name = Column(String(100), nullable=False, default='')
    player_rating = Column(Float, nullable=False)  # Snapshot at enqueue time
    enqueued_at = Column(DateTime, nullable=False, default=utc_now, index=True)

    # Pairing state
    match_found = Column(Boolean, nullable=False, default=False, index=True)
    match_id = Column(String(36), nullable=True)
    matched_at = Column(DateTime, nullable=True)
    match_accepted = Column(Boolean, nullable=False, default=False)

    version = Column(Integer, nullable=False)
    __mapper_args__ = {'version_id_col': version}

    def seconds_waited(self, now: datetime) -> float:
        return max(0.0, (now - self.enqueued_at).total_seconds())

    def reset_pairing(self):
        """Return the entry to the searching state"""
        self.match_found = False
        self.match_id = None
        self.matched_at = None
        self.match_accepted = False

    def __repr__(self):
        return f"<MatchmakingQueueEntry(player_id='{self.player_id}', rating={self.player_rating}, match_found={self.match_found})>"


class Tournament(Base):
    __tablename__ = 'tournaments'

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(200), nullable=False)
    description = Column(Text, default='')

    # Schedule and venue
    start_date = Column(DateTime, nullable=True, index=True)
    end_date = Column(DateTime, nullable=True)
    venue = Column(String(200), default='')
    location = Column(String(200), default='')
    time_zone = Column(String(64), default='')
    par = Column(Integer, default=0)
    yardage = Column(Integer, default=0)
    purse = Column(Float, default=0.0)

    # Configuration
    format = Column(SQLEnum(TournamentFormat), nullable=False)
    status = Column(SQLEnum(TournamentStatus), nullable=False, default=TournamentStatus.REGISTRATION, index=True)
    creator_id = Column(String(128), ForeignKey('players.id'), nullable=False)
    min_players = Column(Integer, nullable=False, default=TournamentConstants.DEFAULT_MIN_PLAYERS)
    max_players = Column(Integer, nullable=False, default=TournamentConstants.DEFAULT_MAX_PLAYERS)
    entry_fee = Column(Integer, nullable=True)
    prize_pool = Column(Float, nullable=True)
    rules = Column(JSON, nullable=False, default=list)  # List of rule strings

    # Metadata
    created_at = Column(DateTime, default=utc_now)
    updated_at = Column(DateTime, default=utc_now)

    version = Column(Integer, nullable=False)
    __mapper_args__ = {'version_id_col': version}

    # Owned children
    participant_links = relationship(
        "TournamentParticipant",
        back_populates="tournament",
        cascade="all, delete-orphan",
        order_by="TournamentParticipant.position",
        lazy="selectin"
    )
    rounds = relationship(
        "TournamentRound",
        back_populates="tournament",
        cascade="all, delete-orphan",
        order_by="TournamentRound.round_number",
        lazy="selectin"
    )

    @property
    def participants(self) -> List[str]:
        """Participant ids in registration order"""
        return [link.player_id for link in self.participant_links]

    @property
    def is_full(self) -> bool:
        return len(self.participant_links) >= self.max_players

    def touch(self, now: Optional[datetime] = None):
        """Bump updated_at; also forces the version check on the aggregate root"""
        self.updated_at = now or utc_now()

    def find_round(self, round_id: str) -> Optional['TournamentRound']:
        return next((r for r in self.rounds if r.id == round_id), None)

    def __repr__(self):
        return f"<Tournament(id='{self.id}', name='{self.name}', status={self.status.value})>"


class TournamentParticipant(Base):
    __tablename__ = 'tournament_participants'

    id = Column(Integer, primary_key=True)
    tournament_id = Column(String(36), ForeignKey('tournaments.id'), nullable=False, index=True)
    player_id = Column(String(128), ForeignKey('players.id'), nullable=False, index=True)
    position = Column(Integer, nullable=False)  # Registration order, used for seeding
    joined_at = Column(DateTime, default=utc_now)

    tournament = relationship("Tournament", back_populates="participant_links")

    __table_args__ = (UniqueConstraint('tournament_id', 'player_id'),)

    def __repr__(self):
        return f"<TournamentParticipant(tournament_id='{self.tournament_id}', player_id='{self.player_id}')>"


class TournamentRound(Base):
    __tablename__ = 'tournament_rounds'

    id = Column(String(36), primary_key=True, default=new_id)
    tournament_id = Column(String(36), ForeignKey('tournaments.id'), nullable=False, index=True)
    round_number = Column(Integer, nullable=False)  # 1-based
    status = Column(SQLEnum(RoundStatus), nullable=False, default=RoundStatus.PENDING)

    tournament = relationship("Tournament", back_populates="rounds")
    matches = relationship(
        "TournamentMatch",
        back_populates="round",
        cascade="all, delete-orphan",
        order_by="TournamentMatch.match_number",
        lazy="selectin"
    )

    @property
    def is_complete(self) -> bool:
        return all(m.status == MatchStatus.COMPLETED for m in self.matches)

    def find_match(self, match_id: str) -> Optional['TournamentMatch']:
        return next((m for m in self.matches if m.id == match_id), None)

    def __repr__(self):
        return f"<TournamentRound(number={self.round_number}, status={self.status.value}, matches={len(self.matches)})>"


class TournamentMatch(Base):
    __tablename__ = 'tournament_matches'

    id = Column(String(36), primary_key=True, default=new_id)
    round_id = Column(String(36), ForeignKey('tournament_rounds.id'), nullable=False, index=True)

    # Empty string marks a bye or a slot still waiting for a winner
    player1_id = Column(String(128), nullable=False, default=TournamentConstants.BYE)
    player2_id = Column(String(128), nullable=False, default=TournamentConstants.BYE)
    player1_score = Column(Integer, nullable=True)
    player2_score = Column(Integer, nullable=True)
    winner_id = Column(String(128), nullable=True)

    match_number = Column(Integer, nullable=False)  # Unique within the tournament
    status = Column(SQLEnum(MatchStatus), nullable=False, default=MatchStatus.PENDING)
    completed_at = Column(DateTime, nullable=True)

    round = relationship("TournamentRound", back_populates="matches")

    @property
    def players(self) -> List[str]:
        return [p for p in (self.player1_id, self.player2_id) if p]

    @property
    def is_bye(self) -> bool:
        return len(self.players) < 2

    @property
    def loser_id(self) -> Optional[str]:
        if not self.winner_id or self.is_bye:
            return None
        return self.player2_id if self.winner_id == self.player1_id else self.player1_id

    def has_player(self, player_id: str) -> bool:
        return bool(player_id) and player_id in (self.player1_id, self.player2_id)

    def __repr__(self):
        return f"<TournamentMatch(number={self.match_number}, '{self.player1_id}' vs '{self.player2_id}', status={self.status.value})>"
