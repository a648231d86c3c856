"""Team ranking reads and administrator team management."""
import logging
from typing import Any, Dict, List, Mapping, Sequence, Tuple

from services.shared import (
    EDITABLE_TEAM_FIELDS,
    NULLABLE_TEAM_FIELDS,
    REQUIRED_TEAM_FIELDS,
    Team,
    TeamStatus,
    VotingSettings,
    validate_team_status,
)

from .errors import EditingNotAllowed, TeamNotFound, ValidationError
from .store import ContestStore

logger = logging.getLogger(__name__)

STATUS_CHOICES = ", ".join(s.value for s in TeamStatus)


def _check_required(fields: Mapping[str, Any]):
    for name in REQUIRED_TEAM_FIELDS:
        if name in fields and not (fields[name] or "").strip():
            raise ValidationError(f"Field '{name}' must not be empty")


def _check_not_null(fields: Mapping[str, Any]):
    """Only the link fields may be cleared with null."""
    for name, value in fields.items():
        if value is None and name not in NULLABLE_TEAM_FIELDS:
            raise ValidationError(f"Field '{name}' must not be null")


class TeamService:
    """Team lifecycle. Tallies are only read here, except for bulk reset and reconcile."""

    def __init__(self, store: ContestStore):
        self.store = store

    async def list_teams(self) -> List[Team]:
        """Teams ranked by hearts, ties in creation order."""
        return await self.store.list_teams()

    async def get_team(self, team_id: str) -> Team:
        team = await self.store.get_team(team_id)
        if team is None:
            raise TeamNotFound(team_id)
        return team

    async def create_team(self, team: Team) -> Team:
        if not team.id or not team.id.strip():
            raise ValidationError("Team id is required")
        _check_required({name: getattr(team, name) for name in REQUIRED_TEAM_FIELDS})
        if not validate_team_status(team.status):
            raise ValidationError(f"Status must be one of: {STATUS_CHOICES}")

        created = await self.store.create_team(team)
        logger.info(f"Team created: team_id={created.id}, name={created.name}")
        return created

    async def update_team(self, team_id: str, changes: Mapping[str, Any], is_admin: bool) -> Team:
        """
        Edit descriptive fields.

        Admins may always edit; everyone else only while editing is allowed
        for the team.
        """
        team = await self.get_team(team_id)
        if not is_admin and not team.editing_allowed:
            raise EditingNotAllowed(team_id)

        fields = {name: value for name, value in changes.items() if name in EDITABLE_TEAM_FIELDS}
        _check_not_null(fields)
        _check_required(fields)

        updated = await self.store.update_team(team_id, fields)
        if updated is None:
            raise TeamNotFound(team_id)
        logger.info(f"Team updated: team_id={team_id}, fields={sorted(fields)}")
        return updated

    async def set_status(self, team_id: str, status: str) -> Team:
        if not validate_team_status(status):
            raise ValidationError(f"Status must be one of: {STATUS_CHOICES}")
        updated = await self.store.update_team(team_id, {"status": status})
        if updated is None:
            raise TeamNotFound(team_id)
        logger.info(f"Team status changed: team_id={team_id}, status={status}")
        return updated

    async def set_editing_allowed(self, team_id: str, allowed: bool) -> Team:
        updated = await self.store.update_team(team_id, {"editing_allowed": allowed})
        if updated is None:
            raise TeamNotFound(team_id)
        logger.info(f"Team editing {'enabled' if allowed else 'disabled'}: team_id={team_id}")
        return updated

    async def list_teams_by_sort_order(self) -> List[Team]:
        """Admin view: teams by sort_order, ties in creation order."""
        return await self.store.list_teams_by_sort_order()

    async def set_order(self, order: Sequence[Tuple[str, int]]) -> int:
        """
        Assign sort positions in bulk.

        Args:
            order: (team_id, sort_order) pairs; ids that match no team are skipped

        Returns:
            Number of teams updated
        """
        positions: Dict[str, int] = {}
        for team_id, sort_order in order:
            if not team_id or not team_id.strip():
                raise ValidationError("Team id is required")
            if isinstance(sort_order, bool) or not isinstance(sort_order, int):
                raise ValidationError(f"sort_order for team '{team_id}' must be an integer")
            if team_id in positions:
                raise ValidationError(f"Team '{team_id}' appears more than once")
            positions[team_id] = sort_order

        updated = await self.store.set_team_order(positions)
        logger.info(f"Team order updated: requested={len(positions)}, updated={updated}")
        return updated

    async def reset_votes(self) -> Tuple[int, int]:
        """Clear the ledger and zero all tallies together."""
        votes_deleted, teams_updated = await self.store.reset_votes()
        logger.info(f"Votes reset: votes_deleted={votes_deleted}, teams_updated={teams_updated}")
        return votes_deleted, teams_updated

    async def delete_all_teams(self) -> int:
        deleted = await self.store.delete_all_teams()
        logger.info(f"All teams deleted: count={deleted}")
        return deleted

    async def reconcile_tallies(self) -> Dict[str, Tuple[int, int]]:
        drifted = await self.store.reconcile_tallies()
        for team_id, (stored, actual) in drifted.items():
            logger.warning(f"Tally repaired: team_id={team_id}, hearts {stored} -> {actual}")
        return drifted

    async def get_voting_settings(self) -> VotingSettings:
        return await self.store.get_voting_settings()

    async def set_voting_open(self, is_open: bool) -> VotingSettings:
        voting = await self.store.set_voting_open(is_open)
        logger.info(f"Voting {'opened' if is_open else 'closed'}")
        return voting
