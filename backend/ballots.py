"""Ballot submission.

A voter casts exactly one full ballot: one candidate for every contested
position, written together with the ``has_voted`` flip in a single store
transaction.
"""

import logging
from collections.abc import Mapping

from errors import AlreadyVoted, InvalidBallot
from models import BallotEntry

logger = logging.getLogger(__name__)


def selections_from_votes(votes):
    """Translate the HTTP ``votes`` list into a ``{position: candidate_id}`` mapping."""
    if not isinstance(votes, list) or not votes:
        raise InvalidBallot("votes must be a non-empty list", constraint="malformed_votes")

    selections = {}
    for item in votes:
        if not isinstance(item, Mapping):
            raise InvalidBallot("each vote must be an object", constraint="malformed_votes")
        position = item.get("position")
        candidate_id = item.get("candidateId", item.get("candidate_id"))
        if not isinstance(position, str) or not position.strip() or candidate_id is None:
            raise InvalidBallot("each vote needs a position and a candidateId", constraint="malformed_votes")
        if position in selections:
            raise InvalidBallot("position selected more than once", constraint="duplicate_position", position=position)
        selections[position] = candidate_id
    return selections


def _as_candidate_id(value):
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdecimal():
        return int(value.strip())
    return None


def validate_selections(selections, candidates):
    """Check a ballot against the current candidates and return its entries.

    ``candidates`` maps candidate id to ``Candidate`` for the active ballot;
    its distinct positions form the Position Set.
    """
    if not isinstance(selections, Mapping):
        raise InvalidBallot("selections must map position to candidate", constraint="not_a_mapping")

    position_set = {c.position for c in candidates.values()}
    if not position_set:
        raise InvalidBallot("there are no open positions", constraint="no_open_positions")

    chosen = set(selections)
    missing = sorted(position_set - chosen)
    if missing:
        raise InvalidBallot("ballot is missing positions", constraint="missing_positions", positions=missing)
    extra = sorted(chosen - position_set, key=str)
    if extra:
        raise InvalidBallot("ballot contains unknown positions", constraint="extra_positions", positions=extra)

    entries = []
    for position in sorted(selections):
        raw_id = selections[position]
        candidate = candidates.get(_as_candidate_id(raw_id))
        if candidate is None:
            raise InvalidBallot(
                "candidate does not exist", constraint="unknown_candidate", position=position, candidateId=raw_id
            )
        if candidate.position != position:
            raise InvalidBallot(
                "candidate is not running for this position",
                constraint="position_mismatch",
                position=position,
                candidateId=candidate.id,
            )
        entries.append(BallotEntry(position=position, candidate_id=candidate.id))
    return entries


def submit_ballot(store, voter_id, selections):
    try:
        with store.transaction() as tx:
            if tx.lock_voter(voter_id):
                raise AlreadyVoted(voter_id)
            entries = validate_selections(selections, tx.active_candidates())
            tx.insert_votes(voter_id, entries)
            tx.mark_voted(voter_id)
    except AlreadyVoted:
        logger.info("Rejected duplicate ballot from voter %s", voter_id)
        raise
    except InvalidBallot as exc:
        logger.info("Rejected ballot from voter %s: %s", voter_id, exc.constraint)
        raise

    logger.info("Accepted ballot from voter %s with %d entries", voter_id, len(entries))
    return entries
