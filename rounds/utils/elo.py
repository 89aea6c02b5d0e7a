import math
from typing import Optional, Tuple

from rounds.config import Config
from rounds.constants import RatingConstants

class EloCalculator:
    """Handles Elo rating calculations for head-to-head golf matches"""

    @staticmethod
    def calculate_expected_score(rating_a: float, rating_b: float) -> float:
        """
        Calculate the expected score for player A against player B

        Args:
            rating_a: Player A's current rating
            rating_b: Player B's current rating

        Returns:
            Expected score (0.0 to 1.0) for player A
        """
        return 1 / (1 + math.pow(10, (rating_b - rating_a) / RatingConstants.RATING_SCALE))

    @staticmethod
    def get_k_factor(matches_played: Optional[int] = None) -> float:
        """
        Get the base K-factor for a player

        The experience regimes only apply when Config.ELO_EXPERIENCE_K_FACTOR
        is enabled; otherwise every player uses Config.ELO_BASE_K_FACTOR.

        Args:
            matches_played: Number of matches the player has played

        Returns:
            Base K-factor before any score differential bonus
        """
        if not Config.ELO_EXPERIENCE_K_FACTOR or matches_played is None:
            return Config.ELO_BASE_K_FACTOR
        if matches_played < RatingConstants.PROVISIONAL_MATCH_COUNT:
            return RatingConstants.K_FACTOR_PROVISIONAL
        if matches_played < RatingConstants.ESTABLISHED_MATCH_COUNT:
            return RatingConstants.K_FACTOR_STANDARD
        return RatingConstants.K_FACTOR_ESTABLISHED

    @staticmethod
    def get_match_k_factor(winner_matches: Optional[int] = None,
                           loser_matches: Optional[int] = None) -> float:
        """
        Get the shared base K-factor for a pairing.

        Both players use the same K so that the exchange stays zero-sum; the
        less experienced player's regime wins.
        """
        return max(
            EloCalculator.get_k_factor(winner_matches),
            EloCalculator.get_k_factor(loser_matches)
        )

    @staticmethod
    def adjust_k_factor(base_k: float, score_differential: float) -> float:
        """
        Apply the score differential bonus to a base K-factor

        Args:
            base_k: K-factor before bonus
            score_differential: Absolute stroke difference between the players

        Returns:
            base_k * (1 + min(differential / 100, max bonus))
        """
        differential = max(0.0, float(score_differential))
        bonus = min(differential / RatingConstants.DIFFERENTIAL_DIVISOR, Config.ELO_MAX_DIFFERENTIAL_BONUS)
        return base_k * (1 + bonus)

    @staticmethod
    def round_rating_change(value: float) -> int:
        """Round half away from zero so identical inputs always round the same way"""
        if value >= 0:
            return int(math.floor(value + 0.5))
        return -int(math.floor(-value + 0.5))

    @staticmethod
    def calculate_rating_delta(winner_rating: float, loser_rating: float,
                               score_differential: float = 0,
                               base_k: Optional[float] = None) -> int:
        """
        Calculate how many points the winner takes from the loser

        Args:
            winner_rating: Winner's rating before the match
            loser_rating: Loser's rating before the match
            score_differential: Absolute stroke difference
            base_k: Base K-factor (defaults to Config.ELO_BASE_K_FACTOR)

        Returns:
            Non-negative integer delta
        """
        if base_k is None:
            base_k = Config.ELO_BASE_K_FACTOR
        expected_winner = EloCalculator.calculate_expected_score(winner_rating, loser_rating)
        adjusted_k = EloCalculator.adjust_k_factor(base_k, score_differential)
        return EloCalculator.round_rating_change(adjusted_k * (1 - expected_winner))

    @staticmethod
    def apply_floor(rating: float) -> int:
        """Clamp a rating to the configured floor"""
        return int(max(Config.ELO_RATING_FLOOR, rating))

    @staticmethod
    def calculate_new_ratings(winner_rating: int, loser_rating: int,
                              delta: int) -> Tuple[int, int]:
        """
        Apply a delta to both ratings

        Returns:
            Tuple of (winner_new_rating, loser_new_rating), loser clamped to the floor
        """
        return (
            EloCalculator.apply_floor(winner_rating + delta),
            EloCalculator.apply_floor(loser_rating - delta)
        )
