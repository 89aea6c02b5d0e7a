"""
Core-wide constants for the Rounds matchmaking and ranking engine.

Tunable values live in Config; the values here are fixed by the rating model,
the matchmaking protocol or the bracket formats.
"""

class RatingConstants:
    """Constants related to Elo calculations."""
    
    # Logistic curve scale used by the expected score formula
    RATING_SCALE = 400
    
    # Divisor turning a stroke differential into a K-factor bonus fraction
    DIFFERENTIAL_DIVISOR = 100
    
    # Experience regimes (only used with Config.ELO_EXPERIENCE_K_FACTOR)
    K_FACTOR_PROVISIONAL = 40  # Fewer than PROVISIONAL_MATCH_COUNT matches
    K_FACTOR_STANDARD = 32
    K_FACTOR_ESTABLISHED = 24  # ESTABLISHED_MATCH_COUNT matches or more
    PROVISIONAL_MATCH_COUNT = 10
    ESTABLISHED_MATCH_COUNT = 30

class MatchmakingConstants:
    """Constants for the matchmaking queue."""
    
    # Upper bound on entries scanned by a single find_match call
    MAX_CANDIDATES_SCANNED = 500

class TournamentConstants:
    """Constants for tournament brackets."""
    
    # Empty player slot: bye in round one, undecided slot in later rounds
    BYE = ""
    
    # Registration limits
    DEFAULT_MIN_PLAYERS = 2
    DEFAULT_MAX_PLAYERS = 64

class PaginationConstants:
    """Constants for listings."""
    
    LEADERBOARD_LIMIT = 100
    SEARCH_LIMIT = 20
    RECENT_MATCHES_LIMIT = 10
