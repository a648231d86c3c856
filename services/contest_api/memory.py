"""
In-process store for tests and single-process demos.

All state lives in one object and every operation runs under one asyncio lock,
which gives each call the same all-or-nothing behaviour as a PostgreSQL
transaction within a single event loop.
"""
import asyncio
import copy
import itertools
import logging
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Tuple

from services.shared import (
    ChatMessage,
    ChatScope,
    Comment,
    EDITABLE_TEAM_FIELDS,
    Team,
    VoteRecord,
    VotingSettings,
    ensure_utc,
    get_current_timestamp,
)

from .errors import DuplicateVote, TeamAlreadyExists, TeamNotFound
from .store import ContestStore

logger = logging.getLogger(__name__)

UPDATABLE_TEAM_FIELDS = set(EDITABLE_TEAM_FIELDS) | {"status", "editing_allowed"}


class MemoryStore(ContestStore):
    """Dictionary-backed implementation of ContestStore."""

    def __init__(self):
        self.lock = asyncio.Lock()
        self._reset_state()

    def _reset_state(self):
        self.teams: Dict[str, Team] = {}
        self.team_order: Dict[str, int] = {}
        self.votes: List[VoteRecord] = []
        self.messages: List[ChatMessage] = []
        self.voting_settings = VotingSettings(
            is_voting_open=True,
            opened_at=get_current_timestamp(),
            updated_at=get_current_timestamp()
        )
        self._sequence = itertools.count(1)
        self._last_message_time: Optional[datetime] = None

    async def initialize(self):
        """Start from an empty store bound to the running event loop."""
        self.lock = asyncio.Lock()
        self._reset_state()
        logger.info("In-memory store initialized")

    async def close(self):
        logger.info("In-memory store closed")

    async def check_health(self) -> bool:
        return True

    # Teams

    async def create_team(self, team: Team) -> Team:
        async with self.lock:
            if team.id in self.teams:
                raise TeamAlreadyExists(team.id)
            now = get_current_timestamp()
            stored = copy.deepcopy(team)
            stored.hearts = 0
            stored.comments = []
            stored.created_at = now
            stored.updated_at = now
            self.teams[team.id] = stored
            self.team_order[team.id] = next(self._sequence)
            return copy.deepcopy(stored)

    async def get_team(self, team_id: str) -> Optional[Team]:
        async with self.lock:
            team = self.teams.get(team_id)
            return copy.deepcopy(team) if team else None

    async def list_teams(self) -> List[Team]:
        async with self.lock:
            ranked = sorted(
                self.teams.values(),
                key=lambda t: (-t.hearts, self.team_order[t.id])
            )
            return copy.deepcopy(ranked)

    async def update_team(self, team_id: str, changes: Mapping[str, Any]) -> Optional[Team]:
        async with self.lock:
            team = self.teams.get(team_id)
            if team is None:
                return None
            for name, value in changes.items():
                if name not in UPDATABLE_TEAM_FIELDS:
                    continue
                if name in ("members", "technologies"):
                    value = list(value or [])
                setattr(team, name, value)
            team.updated_at = get_current_timestamp()
            return copy.deepcopy(team)

    async def list_teams_by_sort_order(self) -> List[Team]:
        async with self.lock:
            ordered = sorted(
                self.teams.values(),
                key=lambda t: (t.sort_order, self.team_order[t.id])
            )
            return copy.deepcopy(ordered)

    async def set_team_order(self, positions: Mapping[str, int]) -> int:
        async with self.lock:
            now = get_current_timestamp()
            updated = 0
            for team_id, sort_order in positions.items():
                team = self.teams.get(team_id)
                if team is None:
                    continue
                team.sort_order = sort_order
                team.updated_at = now
                updated += 1
            return updated

    async def delete_all_teams(self) -> int:
        async with self.lock:
            count = len(self.teams)
            self.teams.clear()
            self.team_order.clear()
            self.votes.clear()
            return count

    # Vote ledger and tally

    def _latest_vote(self, voter_identity: str, origin_address: str) -> Optional[VoteRecord]:
        for vote in reversed(self.votes):
            if vote.voter_identity == voter_identity or vote.origin_address == origin_address:
                return vote
        return None

    async def find_vote(self, voter_identity: str, origin_address: str) -> Optional[VoteRecord]:
        async with self.lock:
            vote = self._latest_vote(voter_identity, origin_address)
            return copy.deepcopy(vote) if vote else None

    async def record_vote(self, vote: VoteRecord, comment: Optional[Comment]) -> Team:
        async with self.lock:
            team = self.teams.get(vote.team_id)
            if team is None:
                raise TeamNotFound(vote.team_id)
            if self._latest_vote(vote.voter_identity, vote.origin_address) is not None:
                raise DuplicateVote()

            stored = copy.deepcopy(vote)
            stored.timestamp = get_current_timestamp()
            stored.sequence = next(self._sequence)
            self.votes.append(stored)

            team.hearts += 1
            if comment is not None:
                team.comments.append(copy.deepcopy(comment))
            team.updated_at = stored.timestamp
            return copy.deepcopy(team)

    async def reset_votes(self) -> Tuple[int, int]:
        async with self.lock:
            deleted = len(self.votes)
            self.votes.clear()
            now = get_current_timestamp()
            for team in self.teams.values():
                team.hearts = 0
                team.comments = []
                team.updated_at = now
            return deleted, len(self.teams)

    async def reconcile_tallies(self) -> Dict[str, Tuple[int, int]]:
        async with self.lock:
            counts: Dict[str, int] = {team_id: 0 for team_id in self.teams}
            for vote in self.votes:
                if vote.team_id in counts:
                    counts[vote.team_id] += 1

            drifted = {}
            for team_id, actual in counts.items():
                team = self.teams[team_id]
                if team.hearts != actual:
                    drifted[team_id] = (team.hearts, actual)
                    team.hearts = actual
                    team.updated_at = get_current_timestamp()
            return drifted

    # Chat log

    def _scope_messages(self, scope: ChatScope) -> List[ChatMessage]:
        return [m for m in self.messages if m.scope == scope]

    async def add_chat_message(self, message: ChatMessage) -> ChatMessage:
        async with self.lock:
            stored = copy.deepcopy(message)
            now = get_current_timestamp()
            # Timestamps never go backwards within the log
            if self._last_message_time is not None and now < self._last_message_time:
                now = self._last_message_time
            self._last_message_time = now
            stored.timestamp = now
            stored.sequence = next(self._sequence)
            self.messages.append(stored)
            return copy.deepcopy(stored)

    async def list_chat_messages(
        self,
        scope: ChatScope,
        since: Optional[datetime],
        limit: int
    ) -> List[ChatMessage]:
        async with self.lock:
            messages = self._scope_messages(scope)
            if since is not None:
                since = ensure_utc(since)
                messages = [m for m in messages if m.timestamp > since]
            messages.sort(key=lambda m: (m.timestamp, m.sequence))
            return copy.deepcopy(messages[-limit:]) if limit > 0 else []

    async def purge_chat(self, scope: ChatScope) -> int:
        async with self.lock:
            kept = [m for m in self.messages if m.scope != scope]
            deleted = len(self.messages) - len(kept)
            self.messages = kept
            return deleted

    async def chat_stats(self, scope: ChatScope) -> Dict[str, Any]:
        async with self.lock:
            messages = sorted(self._scope_messages(scope), key=lambda m: (m.timestamp, m.sequence))
            return {
                "total_messages": len(messages),
                "oldest": copy.deepcopy(messages[0]) if messages else None,
                "newest": copy.deepcopy(messages[-1]) if messages else None,
            }

    # Voting window

    async def get_voting_settings(self) -> VotingSettings:
        async with self.lock:
            return copy.deepcopy(self.voting_settings)

    async def set_voting_open(self, is_open: bool) -> VotingSettings:
        async with self.lock:
            now = get_current_timestamp()
            current = self.voting_settings
            current.is_voting_open = is_open
            if is_open:
                current.opened_at = now
                current.closed_at = None
            else:
                current.closed_at = now
            current.updated_at = now
            return copy.deepcopy(current)
