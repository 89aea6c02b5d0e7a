"""
Elo Service Module

Rating settlement for head-to-head golf matches. Pure functions only: the
caller reads both players, asks for a settlement and writes the result in the
same transaction.

Key functionality:
- calculate_rating_delta(): points the winner takes from the loser
- settle_match(): full before/after breakdown for both players
- determine_winner(): lower score wins, ties rejected
- validate_scores(): reject non-integer or negative scores
"""

from dataclasses import dataclass
from typing import Tuple

from rounds.utils.elo import EloCalculator
from rounds.utils.exceptions import InvalidScoresError


@dataclass
class PlayerRatingData:
    """Snapshot of the fields settlement needs from a player"""
    player_id: str
    rating: int
    matches_played: int = 0


@dataclass
class EloCalculationResult:
    """Result of an Elo calculation for one player"""
    player_id: str
    old_rating: int
    new_rating: int
    rating_change: int  # new_rating - old_rating, after the floor
    k_factor: float
    expected_score: float
    actual_score: float
    rating_change_unclamped: int = 0

    @property
    def was_clamped(self) -> bool:
        """True when the rating floor absorbed part of the change"""
        return self.rating_change != self.rating_change_unclamped


class EloService:
    """
    Rating settlement for two-player matches.

    The winner always scores 1; the stroke margin only scales K. The delta is
    rounded once and applied with opposite signs, so the exchange is zero-sum
    unless the loser hits the rating floor.
    """

    @staticmethod
    def calculate_rating_delta(winner_rating: float, loser_rating: float,
                               score_differential: float = 0) -> int:
        """
        Calculate the rating delta for a settled match.

        Args:
            winner_rating: Winner's rating before the match
            loser_rating: Loser's rating before the match
            score_differential: Absolute stroke difference

        Returns:
            Points the winner gains and the loser gives up
        """
        return EloCalculator.calculate_rating_delta(winner_rating, loser_rating, score_differential)

    @staticmethod
    def settle_match(winner: PlayerRatingData, loser: PlayerRatingData,
                     score_differential: float = 0) -> Tuple[EloCalculationResult, EloCalculationResult]:
        """
        Settle a match between a winner and a loser.

        Returns:
            Tuple of (winner_result, loser_result)
        """
        base_k = EloCalculator.get_match_k_factor(winner.matches_played, loser.matches_played)
        k_factor = EloCalculator.adjust_k_factor(base_k, score_differential)
        expected_winner = EloCalculator.calculate_expected_score(winner.rating, loser.rating)
        delta = EloCalculator.calculate_rating_delta(
            winner.rating, loser.rating, score_differential, base_k=base_k
        )
        winner_new, loser_new = EloCalculator.calculate_new_ratings(winner.rating, loser.rating, delta)

        return (
            EloCalculationResult(
                player_id=winner.player_id,
                old_rating=winner.rating,
                new_rating=winner_new,
                rating_change=winner_new - winner.rating,
                k_factor=k_factor,
                expected_score=expected_winner,
                actual_score=1.0,
                rating_change_unclamped=delta
            ),
            EloCalculationResult(
                player_id=loser.player_id,
                old_rating=loser.rating,
                new_rating=loser_new,
                rating_change=loser_new - loser.rating,
                k_factor=k_factor,
                expected_score=1.0 - expected_winner,
                actual_score=0.0,
                rating_change_unclamped=-delta
            )
        )

    @staticmethod
    def validate_scores(player1_score, player2_score) -> None:
        """
        Raises:
            InvalidScoresError: If a score is missing, not an integer or negative
        """
        for label, score in (("player 1", player1_score), ("player 2", player2_score)):
            if score is None:
                raise InvalidScoresError(f"Score for {label} is missing.")
            if isinstance(score, bool) or not isinstance(score, int):
                raise InvalidScoresError(f"Score for {label} must be a whole number of strokes.")
            if score < 0:
                raise InvalidScoresError(f"Score for {label} cannot be negative.")

    @staticmethod
    def determine_winner(player1_id: str, player2_id: str,
                         player1_score: int, player2_score: int) -> Tuple[str, str]:
        """
        Golf convention: the lower score wins.

        Returns:
            Tuple of (winner_id, loser_id)

        Raises:
            InvalidScoresError: On invalid or tied scores
        """
        EloService.validate_scores(player1_score, player2_score)
        if player1_score == player2_score:
            raise InvalidScoresError("Scores are tied. Settle the tie with a playoff before submitting.")
        if player1_score < player2_score:
            return player1_id, player2_id
        return player2_id, player1_id
