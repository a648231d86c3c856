"""
Shared data models and utilities for the contest voting service.

This module contains:
- Team, VoteRecord, ChatMessage: records exchanged between the API and the stores
- ChatScope: addressing for the global and per-team chat logs
- Input validation helpers shared by the services and the CLI scripts
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Dict, Any, List, Mapping, Tuple


class TeamStatus(str, Enum):
    """Presentation state of a team."""
    UPCOMING = "upcoming"
    LIVE = "live"
    ENDED = "ended"


# Field limits
MAX_MESSAGE_LENGTH = 500
MAX_AUTHOR_LENGTH = 50
MAX_COMMENT_LENGTH = 500
MAX_IDENTITY_LENGTH = 128

ANONYMOUS_AUTHOR = "anonymous"
UNKNOWN_TEAM_NAME = "Unknown team"
UNKNOWN_TEAM_TITLE = "Unknown"

# Descriptive team fields that may be edited after creation
EDITABLE_TEAM_FIELDS = (
    "name",
    "title",
    "description",
    "challenge",
    "approach",
    "members",
    "technologies",
    "scratch_url",
    "image_url",
)
REQUIRED_TEAM_FIELDS = ("name", "title", "description")
NULLABLE_TEAM_FIELDS = ("scratch_url", "image_url")


def get_current_timestamp() -> datetime:
    """
    Get current UTC time as a timezone-aware datetime.

    Returns:
        datetime: Current time in UTC
    """
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        return ensure_utc(value)
    return ensure_utc(datetime.fromisoformat(str(value).replace("Z", "+00:00")))


@dataclass
class Comment:
    """A comment attached to a team when a vote carries text."""
    text: str
    timestamp: datetime
    author: str = ANONYMOUS_AUTHOR
    origin_address: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-safe dictionary (stored in the team document)."""
        return {
            "text": self.text,
            "timestamp": self.timestamp.isoformat(),
            "author": self.author,
            "origin_address": self.origin_address,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Comment":
        """Create Comment from a stored dictionary."""
        return cls(
            text=data["text"],
            timestamp=_parse_timestamp(data["timestamp"]),
            author=data.get("author") or ANONYMOUS_AUTHOR,
            origin_address=data.get("origin_address"),
        )


@dataclass
class Team:
    """
    A competing team and its denormalized tally.

    Attributes:
        id: Stable external key (not the storage row sequence)
        hearts: Number of ledger votes referencing this team
        comments: Comments appended by votes, oldest first
        status: Presentation state (upcoming, live, ended)
        editing_allowed: Whether non-admins may edit the descriptive fields
        sort_order: Position in the admin team list, ties in creation order
    """
    id: str
    name: str
    title: str
    description: str = ""
    challenge: str = ""
    approach: str = ""
    members: List[str] = field(default_factory=list)
    technologies: List[str] = field(default_factory=list)
    scratch_url: Optional[str] = None
    image_url: Optional[str] = None
    hearts: int = 0
    comments: List[Comment] = field(default_factory=list)
    status: str = TeamStatus.UPCOMING.value
    editing_allowed: bool = False
    sort_order: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for API responses."""
        return {
            "id": self.id,
            "name": self.name,
            "title": self.title,
            "description": self.description,
            "challenge": self.challenge,
            "approach": self.approach,
            "members": list(self.members),
            "technologies": list(self.technologies),
            "scratch_url": self.scratch_url,
            "image_url": self.image_url,
            "hearts": self.hearts,
            "comments": [comment.to_dict() for comment in self.comments],
            "status": self.status,
            "editing_allowed": self.editing_allowed,
            "sort_order": self.sort_order,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class VoteRecord:
    """
    One ledger entry.

    Unique per (team_id, origin_address) and per (team_id, voter_identity).
    `sequence` is assigned by the store and reflects insertion order.
    """
    team_id: str
    voter_identity: str
    origin_address: str
    comment: Optional[str] = None
    timestamp: Optional[datetime] = None
    sequence: Optional[int] = None


@dataclass
class VotedTeam:
    """Summary of the team a voter already voted for."""
    id: str
    name: str
    title: str

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "title": self.title}


@dataclass
class VoteStatus:
    """Result of a vote status check."""
    has_voted: bool
    voted_team: Optional[VotedTeam] = None


@dataclass(frozen=True)
class ChatScope:
    """Either the global chat log (team_id is None) or one team's log."""
    team_id: Optional[str] = None

    @classmethod
    def global_scope(cls) -> "ChatScope":
        return cls(None)

    @classmethod
    def for_team(cls, team_id: str) -> "ChatScope":
        return cls(team_id)

    @property
    def is_global(self) -> bool:
        return self.team_id is None

    def __str__(self) -> str:
        return "global" if self.team_id is None else f"team:{self.team_id}"


@dataclass
class ChatMessage:
    """A chat message; created once and never mutated."""
    scope: ChatScope
    text: str
    author_label: str
    origin_address: str
    author_identity: Optional[str] = None
    timestamp: Optional[datetime] = None
    sequence: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for API responses."""
        return {
            "id": self.sequence,
            "team_id": self.scope.team_id,
            "text": self.text,
            "author_label": self.author_label,
            "timestamp": self.timestamp,
        }


@dataclass
class VotingSettings:
    """Whether votes are currently accepted."""
    is_voting_open: bool = True
    opened_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


def validate_voter_identity(voter_identity: Optional[str]) -> Tuple[bool, Optional[str]]:
    """
    Validate an opaque voter identity token.

    Returns:
        tuple: (is_valid, error_message)
    """
    if not voter_identity or not voter_identity.strip():
        return False, "Voter identity is required"
    if len(voter_identity) > MAX_IDENTITY_LENGTH:
        return False, f"Voter identity must be at most {MAX_IDENTITY_LENGTH} characters"
    return True, None


def validate_vote_comment(comment: Optional[str]) -> Tuple[bool, Optional[str]]:
    """Validate the optional free-text comment sent with a vote."""
    if comment is not None and len(comment) > MAX_COMMENT_LENGTH:
        return False, f"Comment must be at most {MAX_COMMENT_LENGTH} characters"
    return True, None


def validate_chat_message(text: Optional[str], author_label: Optional[str]) -> Tuple[bool, Optional[str]]:
    """
    Validate chat message text and author label.

    Returns:
        tuple: (is_valid, error_message)
    """
    if not text or not text.strip():
        return False, "Message text is required"
    if len(text) > MAX_MESSAGE_LENGTH:
        return False, f"Message must be at most {MAX_MESSAGE_LENGTH} characters"
    if not author_label or not author_label.strip():
        return False, "Author name is required"
    if len(author_label) > MAX_AUTHOR_LENGTH:
        return False, f"Author name must be at most {MAX_AUTHOR_LENGTH} characters"
    return True, None


def validate_team_status(status: Optional[str]) -> bool:
    """Check that status is one of upcoming, live, ended."""
    return status in [s.value for s in TeamStatus]


def get_origin_address(headers: Mapping[str, str], client_host: Optional[str] = None) -> str:
    """
    Resolve the network origin of a request.

    Uses the first X-Forwarded-For entry, then X-Real-IP, then the socket peer.

    Args:
        headers: Request headers (case-insensitive mapping)
        client_host: Peer address reported by the server, if any

    Returns:
        str: Origin address, or "unknown"
    """
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = headers.get("x-real-ip")
    if real_ip and real_ip.strip():
        return real_ip.strip()
    return client_host or "unknown"
