"""
Vote casting and vote status checks.

A vote is one ledger entry plus one heart on the team, committed together by
the store. The duplicate lookup done here only produces a friendly error early;
the store's unique constraints are what keep a racing second vote out.
"""
import asyncio
import logging
from typing import Optional

from prometheus_client import Counter

from services.shared import (
    ANONYMOUS_AUTHOR,
    Comment,
    Team,
    UNKNOWN_TEAM_NAME,
    UNKNOWN_TEAM_TITLE,
    VoteRecord,
    VoteStatus,
    VotedTeam,
    get_current_timestamp,
    validate_vote_comment,
    validate_voter_identity,
)

from .config import settings
from .errors import (
    DuplicateVote,
    TeamNotFound,
    TransientWriteConflict,
    ValidationError,
    VotingClosed,
)
from .store import ContestStore

logger = logging.getLogger(__name__)

# Prometheus metrics
votes_cast = Counter(
    "contest_votes_cast_total",
    "Total number of votes recorded",
    ["team_id"]
)
vote_errors = Counter(
    "contest_vote_errors_total",
    "Total number of rejected or failed votes",
    ["error_type"]
)
vote_retries = Counter(
    "contest_vote_retries_total",
    "Total number of vote transactions retried after a write conflict"
)


class VoteService:
    """Orchestrates the vote ledger and the team tally."""

    def __init__(self, store: ContestStore):
        self.store = store

    async def check_status(self, voter_identity: str, origin_address: str) -> VoteStatus:
        """
        Report whether this voter already voted, and for which team.

        Matches on identity OR origin across all teams. When both signals point
        at different votes, the most recently inserted vote wins. Only a missing
        identity is rejected; an identity too long to have been recorded still
        gets an answer from the origin match.
        """
        if not voter_identity or not voter_identity.strip():
            raise ValidationError("Voter identity is required")

        vote = await self.store.find_vote(voter_identity, origin_address)
        if vote is None:
            return VoteStatus(has_voted=False)

        return VoteStatus(has_voted=True, voted_team=await self._voted_team(vote.team_id))

    async def cast_vote(
        self,
        team_id: str,
        voter_identity: str,
        origin_address: str,
        comment: Optional[str] = None
    ) -> Team:
        """
        Cast one heart vote for a team.

        Args:
            team_id: External id of the team
            voter_identity: Opaque token persisted by the client
            origin_address: Network origin of the request
            comment: Optional free text appended to the team's comments

        Returns:
            The team after the increment

        Raises:
            ValidationError, VotingClosed, TeamNotFound, DuplicateVote,
            TransientWriteConflict (after retries), StoreUnavailable
        """
        is_valid, error = validate_voter_identity(voter_identity)
        if is_valid:
            is_valid, error = validate_vote_comment(comment)
        if not is_valid:
            vote_errors.labels(error_type="validation").inc()
            raise ValidationError(error)

        comment_text = comment.strip() if comment and comment.strip() else None

        voting = await self.store.get_voting_settings()
        if not voting.is_voting_open:
            vote_errors.labels(error_type="voting_closed").inc()
            raise VotingClosed()

        if await self.store.get_team(team_id) is None:
            vote_errors.labels(error_type="team_not_found").inc()
            raise TeamNotFound(team_id)

        existing = await self.store.find_vote(voter_identity, origin_address)
        if existing is not None:
            logger.warning(
                f"Duplicate vote rejected: team_id={team_id}, "
                f"already voted for team_id={existing.team_id}"
            )
            vote_errors.labels(error_type="duplicate").inc()
            raise DuplicateVote(await self._voted_team(existing.team_id))

        attempt = 0
        while True:
            attempt += 1
            now = get_current_timestamp()
            record = VoteRecord(
                team_id=team_id,
                voter_identity=voter_identity,
                origin_address=origin_address,
                comment=comment_text,
                timestamp=now
            )
            entry = None
            if comment_text:
                entry = Comment(
                    text=comment_text,
                    timestamp=now,
                    author=ANONYMOUS_AUTHOR,
                    origin_address=origin_address
                )

            try:
                team = await self.store.record_vote(record, entry)
                break
            except DuplicateVote as e:
                vote_errors.labels(error_type="duplicate").inc()
                if e.voted_team is None:
                    status = await self.check_status(voter_identity, origin_address)
                    raise DuplicateVote(status.voted_team) from e
                raise
            except TransientWriteConflict:
                if attempt > settings.VOTE_MAX_RETRIES:
                    vote_errors.labels(error_type="write_conflict").inc()
                    logger.error(f"Vote for team_id={team_id} failed after {attempt} attempts")
                    raise
                vote_retries.inc()
                logger.warning(f"Write conflict on vote for team_id={team_id}, retrying (attempt {attempt})")
                await asyncio.sleep(settings.VOTE_RETRY_DELAY_SECONDS * attempt)

        votes_cast.labels(team_id=team_id).inc()
        logger.info(f"Vote recorded: team_id={team_id}, hearts={team.hearts}")
        return team

    async def _voted_team(self, team_id: str) -> VotedTeam:
        team = await self.store.get_team(team_id)
        if team is None:
            return VotedTeam(id=team_id, name=UNKNOWN_TEAM_NAME, title=UNKNOWN_TEAM_TITLE)
        return VotedTeam(id=team.id, name=team.name, title=team.title)
