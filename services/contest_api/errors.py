"""Error taxonomy for the contest voting API."""
from typing import Any, Dict, Optional

from services.shared import VotedTeam


class ContestError(Exception):
    """Base class for errors reported to API callers."""

    status_code = 500
    error = "ContestError"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.error, "message": self.message, "details": self.details}


class TeamNotFound(ContestError):
    status_code = 404
    error = "TeamNotFound"

    def __init__(self, team_id: str):
        super().__init__(f"Team {team_id} not found", {"team_id": team_id})
        self.team_id = team_id


class DuplicateVote(ContestError):
    """The voter already has a qualifying ledger entry. Never retried."""

    status_code = 409
    error = "DuplicateVote"

    def __init__(self, voted_team: Optional[VotedTeam] = None):
        super().__init__("Already voted")
        self.voted_team = voted_team
        if voted_team is not None:
            self.details = {"voted_team": voted_team.to_dict()}


class ValidationError(ContestError):
    status_code = 400
    error = "ValidationError"


class VotingClosed(ContestError):
    status_code = 403
    error = "VotingClosed"

    def __init__(self):
        super().__init__("Voting is closed")


class EditingNotAllowed(ContestError):
    status_code = 403
    error = "EditingNotAllowed"

    def __init__(self, team_id: str):
        super().__init__(f"Editing is disabled for team {team_id}", {"team_id": team_id})


class AdminRequired(ContestError):
    status_code = 403
    error = "AdminRequired"

    def __init__(self):
        super().__init__("Administrator access required")


class TeamAlreadyExists(ContestError):
    status_code = 409
    error = "TeamAlreadyExists"

    def __init__(self, team_id: str):
        super().__init__(f"Team {team_id} already exists", {"team_id": team_id})


class StoreUnavailable(ContestError):
    """The store could not be reached. Safe to retry the whole operation."""

    status_code = 503
    error = "StoreUnavailable"


class TransientWriteConflict(ContestError):
    """A write lost a serialization race. Safe to retry the whole operation."""

    status_code = 503
    error = "TransientWriteConflict"
