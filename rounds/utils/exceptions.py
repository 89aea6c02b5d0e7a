"""
Custom exceptions for the Rounds core with caller-facing error messages.
"""

class RoundsError(Exception):
    """Base exception for all core errors."""
    def __init__(self, message: str, user_message: str = None):
        super().__init__(message)
        self.user_message = user_message or message

# ============================================================================
# Validation errors (caller-correctable, never retried)
# ============================================================================

class ValidationError(RoundsError):
    """Raised when a request fails a business rule."""
    pass

class AlreadyRegisteredError(ValidationError):
    """Raised when a player joins a tournament twice."""
    def __init__(self, tournament_id: str, player_id: str):
        super().__init__(
            f"Player {player_id} already registered for tournament {tournament_id}",
            "You are already registered for this tournament."
        )

class TournamentFullError(ValidationError):
    """Raised when a tournament has reached max_players."""
    def __init__(self, tournament_id: str, max_players: int):
        super().__init__(
            f"Tournament {tournament_id} is full ({max_players} players)",
            "Tournament is full."
        )

class RegistrationClosedError(ValidationError):
    """Raised when joining a tournament that is not in registration."""
    def __init__(self, tournament_id: str, status: str):
        super().__init__(
            f"Tournament {tournament_id} registration is closed (status: {status})",
            "Tournament registration is closed."
        )

class TournamentStartedError(ValidationError):
    """Raised when withdrawing from or editing a tournament that has left registration."""
    def __init__(self, tournament_id: str):
        super().__init__(
            f"Tournament {tournament_id} has already started",
            "Tournament has already started."
        )

class NotEnoughPlayersError(ValidationError):
    """Raised when starting a tournament below min_players."""
    def __init__(self, tournament_id: str, count: int, min_players: int):
        super().__init__(
            f"Tournament {tournament_id} has {count} players, needs {min_players}",
            "Not enough players to start the tournament."
        )

class AlreadySearchingError(ValidationError):
    """Raised when a player re-enters matchmaking while already paired."""
    def __init__(self, player_id: str):
        super().__init__(
            f"Player {player_id} already has a paired queue entry",
            "A match has already been found for you. Accept or decline it first."
        )

class ActiveMatchExistsError(ValidationError):
    """Raised when a player already has a pending or in-progress match."""
    def __init__(self, player_id: str, match_id: str):
        super().__init__(
            f"Player {player_id} already has active match {match_id}",
            "You already have an active match."
        )

class InvalidScoresError(ValidationError):
    """Raised when submitted scores are unusable."""
    def __init__(self, reason: str):
        super().__init__(f"Invalid scores: {reason}", reason)

class InvalidStateError(ValidationError):
    """Raised when an entity is in the wrong state for an operation."""
    def __init__(self, entity: str, entity_id: str, state: str, operation: str):
        super().__init__(
            f"{entity} {entity_id} is {state}, cannot {operation}",
            f"This {entity.lower()} is {state} and cannot be changed that way."
        )

class UnsupportedFormatError(ValidationError):
    """Raised when a tournament format has no bracket generator."""
    def __init__(self, format_name: str):
        super().__init__(
            f"Tournament format '{format_name}' is not supported",
            f"The {format_name} format is not available yet."
        )

class NotQueuedError(ValidationError):
    """Raised when a matchmaking operation needs a queue entry that does not exist."""
    def __init__(self, player_id: str):
        super().__init__(
            f"Player {player_id} is not in the matchmaking queue",
            "You are not searching for a match."
        )

class NotParticipantError(ValidationError):
    """Raised when a player acts on a match they are not part of."""
    def __init__(self, player_id: str, match_id: str):
        super().__init__(
            f"Player {player_id} is not a participant of match {match_id}",
            "You are not part of this match."
        )

# ============================================================================
# Not-found errors
# ============================================================================

class NotFoundError(RoundsError):
    """Raised when a referenced entity does not exist."""
    def __init__(self, entity: str, entity_id: str):
        super().__init__(f"{entity} {entity_id} not found", f"{entity} not found.")
        self.entity_id = entity_id

class TournamentNotFoundError(NotFoundError):
    def __init__(self, tournament_id: str):
        super().__init__("Tournament", tournament_id)

class MatchNotFoundError(NotFoundError):
    def __init__(self, match_id: str):
        super().__init__("Match", match_id)

class PlayerNotFoundError(NotFoundError):
    def __init__(self, player_id: str):
        super().__init__("Player", player_id)

class RoundNotFoundError(NotFoundError):
    def __init__(self, round_id: str):
        super().__init__("Round", round_id)

# ============================================================================
# Conflict, integrity and authorization errors
# ============================================================================

class ConflictError(RoundsError):
    """Raised when optimistic concurrency retries are exhausted."""
    def __init__(self, operation: str, attempts: int):
        super().__init__(
            f"Transaction failed for {operation} after {attempts} attempts",
            "Something changed while saving. Please try again."
        )

class DecodingError(RoundsError):
    """Raised when a stored record cannot be read back into its entity shape."""
    def __init__(self, entity: str, entity_id: str, details: str):
        super().__init__(
            f"Could not decode {entity} {entity_id}: {details}",
            "Stored data is corrupted. Please contact support."
        )

class UnauthorizedError(RoundsError):
    """Raised when a player attempts an operation reserved to someone else."""
    def __init__(self, player_id: str, operation: str):
        super().__init__(
            f"Player {player_id} is not allowed to {operation}",
            "You are not allowed to do that."
        )
