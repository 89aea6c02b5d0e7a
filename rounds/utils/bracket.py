"""
Bracket generation and progression for tournaments.

Pure functions over transient TournamentRound / TournamentMatch objects: they
never touch a session, so the same code builds brackets for persistence and
for unit tests.

Formats:
- single_elimination / match: power-of-two bracket with byes in round one
- round_robin: circle method, every pair meets exactly once
- stroke / team: one round with a single first-vs-last pairing
- double_elimination / swiss: rejected with UnsupportedFormatError
"""

import math
from datetime import datetime
from typing import List, Optional, Sequence

from rounds.constants import TournamentConstants
from rounds.database.models import (
    TournamentRound, TournamentMatch, TournamentFormat, MatchStatus, RoundStatus,
    ELIMINATION_FORMATS, UNSUPPORTED_FORMATS, new_id, utc_now
)
from rounds.utils.exceptions import NotEnoughPlayersError, UnsupportedFormatError

BYE = TournamentConstants.BYE


def _new_match(player1_id: str, player2_id: str, match_number: int) -> TournamentMatch:
    return TournamentMatch(
        id=new_id(),
        player1_id=player1_id,
        player2_id=player2_id,
        match_number=match_number,
        status=MatchStatus.PENDING
    )


def _new_round(round_number: int, matches: List[TournamentMatch]) -> TournamentRound:
    return TournamentRound(
        id=new_id(),
        round_number=round_number,
        matches=matches,
        status=RoundStatus.PENDING
    )


def generate_bracket(participants: Sequence[str], tournament_format: TournamentFormat) -> List[TournamentRound]:
    """
    Build the ordered rounds for a participant list.

    Args:
        participants: Player ids in seeding order
        tournament_format: Format selector

    Returns:
        Rounds numbered from 1, match numbers assigned sequentially across
        the whole bracket starting at 1

    Raises:
        UnsupportedFormatError: For formats with no generator
        NotEnoughPlayersError: For fewer than two participants
    """
    if tournament_format in UNSUPPORTED_FORMATS:
        raise UnsupportedFormatError(tournament_format.value)
    if len(participants) < 2:
        raise NotEnoughPlayersError("bracket", len(participants), 2)

    players = list(participants)
    if tournament_format in ELIMINATION_FORMATS:
        return generate_single_elimination(players)
    if tournament_format == TournamentFormat.ROUND_ROBIN:
        return generate_round_robin(players)
    return generate_single_pairing(players)


def generate_single_elimination(players: List[str]) -> List[TournamentRound]:
    num_players = len(players)
    num_rounds = math.ceil(math.log2(num_players))
    total_slots = 2 ** num_rounds
    num_byes = total_slots - num_players

    remaining = list(players)
    match_number = 1
    rounds = []

    first_round = []
    for _ in range(num_players // 2 + num_byes):
        player1 = remaining.pop(0) if remaining else BYE
        player2 = remaining.pop(0) if remaining else BYE
        first_round.append(_new_match(player1, player2, match_number))
        match_number += 1
    rounds.append(_new_round(1, first_round))

    # Later rounds start empty and are filled as winners advance
    for round_number in range(2, num_rounds + 1):
        matches = []
        for _ in range(2 ** (num_rounds - round_number)):
            matches.append(_new_match(BYE, BYE, match_number))
            match_number += 1
        rounds.append(_new_round(round_number, matches))

    return rounds


def generate_round_robin(players: List[str]) -> List[TournamentRound]:
    """
    Circle method: the first seat stays fixed, the others rotate one place
    after every round. An odd roster gets a phantom seat whose pairings are
    skipped, so each player sits out exactly one round.
    """
    seats: List[Optional[str]] = list(players)
    if len(seats) % 2:
        seats.append(None)

    num_seats = len(seats)
    match_number = 1
    rounds = []

    for round_number in range(1, num_seats):
        matches = []
        for i in range(num_seats // 2):
            player1 = seats[i]
            player2 = seats[num_seats - 1 - i]
            if player1 is None or player2 is None:
                continue
            matches.append(_new_match(player1, player2, match_number))
            match_number += 1
        rounds.append(_new_round(round_number, matches))
        seats = [seats[0], seats[-1]] + seats[1:-1]

    return rounds


def generate_single_pairing(players: List[str]) -> List[TournamentRound]:
    """Stroke and team placeholder: one round, first seed against last seed"""
    return [_new_round(1, [_new_match(players[0], players[-1], 1)])]


def resolve_byes(tournament_round: TournamentRound, now: Optional[datetime] = None) -> List[TournamentMatch]:
    """
    Complete every undecided match that cannot be played.

    A match with one player is a walkover for that player; a match with no
    players is completed without a winner. Only call this once every slot of
    the round is final.

    Returns:
        Matches that were resolved
    """
    now = now or utc_now()
    resolved = []
    for match in tournament_round.matches:
        if match.status != MatchStatus.PENDING or not match.is_bye:
            continue
        players = match.players
        match.winner_id = players[0] if players else None
        match.status = MatchStatus.COMPLETED
        match.completed_at = now
        resolved.append(match)
    return resolved


def advance_winners(current_round: TournamentRound, next_round: TournamentRound) -> List[str]:
    """
    Pack the winners of a completed round into the next round's slots.

    Winners 2i and 2i+1 (in match order, skipping matches without a winner)
    fill player1/player2 of next-round match i.

    Returns:
        Ordered winner ids that were placed
    """
    winners = [m.winner_id for m in current_round.matches if m.winner_id]
    for i, match in enumerate(next_round.matches):
        if match.status != MatchStatus.PENDING:
            continue
        if i * 2 < len(winners):
            match.player1_id = winners[i * 2]
        if i * 2 + 1 < len(winners):
            match.player2_id = winners[i * 2 + 1]
    return winners


def refresh_round_status(tournament_round: TournamentRound, playable: bool = False) -> RoundStatus:
    """
    Recompute a round's status from its matches.

    Completed iff every match is completed; otherwise in progress once any
    match has been decided or the round is marked playable.
    """
    if tournament_round.status == RoundStatus.CANCELLED:
        return tournament_round.status
    if tournament_round.matches and tournament_round.is_complete:
        tournament_round.status = RoundStatus.COMPLETED
    elif playable or tournament_round.status == RoundStatus.IN_PROGRESS or any(
        m.status == MatchStatus.COMPLETED for m in tournament_round.matches
    ):
        tournament_round.status = RoundStatus.IN_PROGRESS
    return tournament_round.status


def open_bracket(rounds: List[TournamentRound], tournament_format: TournamentFormat,
                 now: Optional[datetime] = None) -> None:
    """
    Prepare freshly generated rounds for play.

    Elimination formats resolve round-one byes and open round one; every other
    format opens all of its rounds at once.
    """
    now = now or utc_now()
    if tournament_format in ELIMINATION_FORMATS:
        resolve_byes(rounds[0], now)
        refresh_round_status(rounds[0], playable=True)
        progress_bracket(rounds, tournament_format, now)
    else:
        for tournament_round in rounds:
            refresh_round_status(tournament_round, playable=True)


def progress_bracket(rounds: List[TournamentRound], tournament_format: TournamentFormat,
                     now: Optional[datetime] = None) -> bool:
    """
    Bring round statuses up to date and move elimination winners forward.

    Safe to call after every result: advancing is idempotent and a round is
    only seeded once the round before it is completed.

    Returns:
        True when every round is completed
    """
    now = now or utc_now()
    ordered = sorted(rounds, key=lambda r: r.round_number)
    for index, tournament_round in enumerate(ordered):
        refresh_round_status(tournament_round)
        if tournament_format not in ELIMINATION_FORMATS:
            continue
        if tournament_round.status != RoundStatus.COMPLETED or index + 1 >= len(ordered):
            continue
        next_round = ordered[index + 1]
        advance_winners(tournament_round, next_round)
        resolve_byes(next_round, now)
        refresh_round_status(next_round, playable=True)

    return bool(ordered) and all(r.status == RoundStatus.COMPLETED for r in ordered)


def find_final_winner(rounds: List[TournamentRound]) -> Optional[str]:
    """Winner of the last round's only match, if decided"""
    if not rounds:
        return None
    final_round = max(rounds, key=lambda r: r.round_number)
    if len(final_round.matches) != 1:
        return None
    return final_round.matches[0].winner_id
