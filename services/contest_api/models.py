"""Pydantic models for request/response validation."""
from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from services.shared import ChatMessage, Team, TeamStatus, VotingSettings


class CastVoteRequest(BaseModel):
    """Vote submission request model."""

    voter_identity: str = Field(..., description="Opaque voter token persisted by the client")
    comment: Optional[str] = Field(default=None, description="Optional comment (max 500 characters)")

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "voter_identity": "client-k3j2h1g9f8d-lx2p9q",
            "comment": "Great idea, loved the demo!"
        }
    })


class VoteStatusRequest(BaseModel):
    """Vote status request model."""

    voter_identity: str = Field(..., description="Opaque voter token persisted by the client")


class VotedTeamResponse(BaseModel):
    id: str
    name: str
    title: str


class VoteStatusResponse(BaseModel):
    """Vote status response model."""

    has_voted: bool = Field(..., description="Whether this voter already voted")
    voted_team: Optional[VotedTeamResponse] = Field(default=None, description="Team voted for")

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "has_voted": True,
            "voted_team": {"id": "team-1", "name": "Team Alpha", "title": "Smart Garden"}
        }
    })


class CommentResponse(BaseModel):
    text: str
    timestamp: datetime
    author: str


class TeamResponse(BaseModel):
    """Team response model."""

    id: str
    name: str
    title: str
    description: str
    challenge: str
    approach: str
    members: List[str]
    technologies: List[str]
    scratch_url: Optional[str] = None
    image_url: Optional[str] = None
    hearts: int
    comments: List[CommentResponse]
    status: str
    editing_allowed: bool
    sort_order: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_team(cls, team: Team) -> "TeamResponse":
        return cls(**team.to_dict())


class CastVoteResponse(BaseModel):
    """Vote submission response model."""

    status: str = Field(default="accepted", description="Status of the submission")
    message: str = Field(default="Vote recorded successfully", description="Response message")
    team: TeamResponse


class TeamCreateRequest(BaseModel):
    """Team creation request model (admin)."""

    id: str = Field(..., description="Stable external team id")
    name: str
    title: str
    description: str
    challenge: str = ""
    approach: str = ""
    members: List[str] = Field(default_factory=list)
    technologies: List[str] = Field(default_factory=list)
    scratch_url: Optional[str] = None
    image_url: Optional[str] = None
    editing_allowed: bool = False
    sort_order: int = 0
    editing_allowed: bool = False

    @field_validator("id")
    @classmethod
    def validate_id(cls, v):
        """Validate team id is not empty."""
        if not v or not v.strip():
            raise ValueError("Team id cannot be empty")
        return v.strip()

    def to_team(self) -> Team:
        return Team(**self.model_dump())


class TeamUpdateRequest(BaseModel):
    """Editable descriptive fields; omitted fields are left unchanged."""

    name: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    challenge: Optional[str] = None
    approach: Optional[str] = None
    members: Optional[List[str]] = None
    technologies: Optional[List[str]] = None
    scratch_url: Optional[str] = None
    image_url: Optional[str] = None


class TeamStatusUpdate(BaseModel):
    status: str = Field(..., description="upcoming, live or ended")


class EditPermissionUpdate(BaseModel):
    editing_allowed: bool


class TeamOrderEntry(BaseModel):
    id: str
    sort_order: int


class TeamOrderUpdate(BaseModel):
    """Bulk team ordering request (admin)."""

    order: List[TeamOrderEntry] = Field(..., description="New sort positions by team id")

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "order": [
                {"id": "team-2", "sort_order": 0},
                {"id": "team-1", "sort_order": 1}
            ]
        }
    })


class TeamOrderResponse(BaseModel):
    updated_count: int


class ChatMessageRequest(BaseModel):
    """Chat message submission model."""

    text: str = Field(..., description="Message text (max 500 characters)")
    author_label: str = Field(..., description="Display name (max 50 characters)")
    author_identity: Optional[str] = Field(default=None, description="Signed-in user, if any")


class ChatMessageResponse(BaseModel):
    id: int
    team_id: Optional[str] = None
    text: str
    author_label: str
    timestamp: datetime

    @classmethod
    def from_message(cls, message: ChatMessage) -> "ChatMessageResponse":
        return cls(**message.to_dict())


class ChatListResponse(BaseModel):
    """Chat messages, oldest first."""

    data: List[ChatMessageResponse]
    count: int


class ChatStatsResponse(BaseModel):
    total_messages: int
    oldest: Optional[ChatMessageResponse] = None
    newest: Optional[ChatMessageResponse] = None
    can_reset: bool


class PurgeResponse(BaseModel):
    deleted_count: int


class ResetVotesResponse(BaseModel):
    votes_deleted: int
    teams_updated: int


class DeleteTeamsResponse(BaseModel):
    deleted_count: int


class TallyDrift(BaseModel):
    team_id: str
    stored_hearts: int
    ledger_count: int


class ReconcileResponse(BaseModel):
    repaired: List[TallyDrift]


class VotingSettingsResponse(BaseModel):
    is_voting_open: bool
    opened_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None

    @classmethod
    def from_settings(cls, voting: VotingSettings) -> "VotingSettingsResponse":
        return cls(
            is_voting_open=voting.is_voting_open,
            opened_at=voting.opened_at,
            closed_at=voting.closed_at
        )


class VotingSettingsUpdate(BaseModel):
    is_voting_open: bool


class HealthResponse(BaseModel):
    """Health check response model."""

    status: Literal["healthy", "unhealthy"] = Field(..., description="Overall health status")
    services: dict = Field(..., description="Status of individual services")
    timestamp: datetime = Field(..., description="Health check timestamp")


class ErrorResponse(BaseModel):
    """Error response model."""

    error: str = Field(..., description="Error type")
    message: str = Field(..., description="Error message")
    details: dict = Field(default_factory=dict, description="Additional error details")

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "error": "DuplicateVote",
            "message": "Already voted",
            "details": {"voted_team": {"id": "team-1", "name": "Team Alpha", "title": "Smart Garden"}}
        }
    })
