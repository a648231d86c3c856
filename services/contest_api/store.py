"""
Storage interface shared by the PostgreSQL and in-process backends.

Every method is a single round trip from the caller's point of view. Methods
that write more than one record apply all of their changes atomically.
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Tuple

from services.shared import ChatMessage, ChatScope, Comment, Team, VoteRecord, VotingSettings

from .config import settings


class ContestStore(ABC):
    """Persistence operations used by the vote, chat and team services."""

    @abstractmethod
    async def initialize(self) -> None:
        """Connect and create the schema if needed."""

    @abstractmethod
    async def close(self) -> None:
        """Release connections."""

    @abstractmethod
    async def check_health(self) -> bool:
        """Return True when the store answers queries."""

    # Teams

    @abstractmethod
    async def create_team(self, team: Team) -> Team:
        """Insert a team. Raises TeamAlreadyExists on a duplicate id."""

    @abstractmethod
    async def get_team(self, team_id: str) -> Optional[Team]:
        """Fetch one team by its external id."""

    @abstractmethod
    async def list_teams(self) -> List[Team]:
        """All teams ranked by hearts descending, ties in creation order."""

    @abstractmethod
    async def update_team(self, team_id: str, changes: Mapping[str, Any]) -> Optional[Team]:
        """
        Apply descriptive, status or editing_allowed changes.

        Returns:
            The updated team, or None if it does not exist
        """

    @abstractmethod
    async def list_teams_by_sort_order(self) -> List[Team]:
        """All teams by sort_order ascending, ties in creation order."""

    @abstractmethod
    async def set_team_order(self, positions: Mapping[str, int]) -> int:
        """
        Set sort_order for many teams in one transaction.

        Ids that match no team are ignored.

        Returns:
            Number of teams updated
        """

    @abstractmethod
    async def delete_all_teams(self) -> int:
        """Remove every team together with its ledger entries."""

    # Vote ledger and tally

    @abstractmethod
    async def find_vote(self, voter_identity: str, origin_address: str) -> Optional[VoteRecord]:
        """
        Most recently inserted ledger entry matching identity OR origin on any team.
        """

    @abstractmethod
    async def record_vote(self, vote: VoteRecord, comment: Optional[Comment]) -> Team:
        """
        Insert the ledger entry, add one heart and append the comment atomically.

        Raises:
            DuplicateVote: The voter (identity or origin) already has a vote
            TeamNotFound: The team does not exist
            TransientWriteConflict: The transaction lost a race; nothing was written
            StoreUnavailable: The store could not be reached
        """

    @abstractmethod
    async def reset_votes(self) -> Tuple[int, int]:
        """
        Delete the ledger and zero every tally in one transaction.

        Returns:
            Tuple of (votes_deleted, teams_updated)
        """

    @abstractmethod
    async def reconcile_tallies(self) -> Dict[str, Tuple[int, int]]:
        """
        Re-derive hearts from ledger counts.

        Returns:
            Mapping of drifted team_id to (stored_hearts, ledger_count)
        """

    # Chat log

    @abstractmethod
    async def add_chat_message(self, message: ChatMessage) -> ChatMessage:
        """Append a message; the store assigns timestamp and sequence."""

    @abstractmethod
    async def list_chat_messages(
        self,
        scope: ChatScope,
        since: Optional[datetime],
        limit: int
    ) -> List[ChatMessage]:
        """Newest `limit` messages of the scope (after `since`), oldest first."""

    @abstractmethod
    async def purge_chat(self, scope: ChatScope) -> int:
        """Delete every message of the scope and return the count."""

    @abstractmethod
    async def chat_stats(self, scope: ChatScope) -> Dict[str, Any]:
        """Message count plus the oldest and newest message of the scope."""

    # Voting window

    @abstractmethod
    async def get_voting_settings(self) -> VotingSettings:
        """Current voting window; open by default."""

    @abstractmethod
    async def set_voting_open(self, is_open: bool) -> VotingSettings:
        """Open or close voting."""


def create_store() -> ContestStore:
    """Build the backend selected by STORAGE_BACKEND."""
    if settings.STORAGE_BACKEND == "memory":
        from .memory import MemoryStore
        return MemoryStore()

    from .database import Database
    return Database()
