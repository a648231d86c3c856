"""
Shared records and helpers for the contest voting service.

This package contains common code used by the API and the CLI scripts:
- Data records (Team, VoteRecord, ChatMessage, ChatScope)
- Validation functions
- Origin address resolution
"""

from .models import (
    TeamStatus,
    Comment,
    Team,
    VoteRecord,
    VotedTeam,
    VoteStatus,
    ChatScope,
    ChatMessage,
    VotingSettings,
    get_current_timestamp,
    ensure_utc,
    get_origin_address,
    validate_voter_identity,
    validate_vote_comment,
    validate_chat_message,
    validate_team_status,
    ANONYMOUS_AUTHOR,
    EDITABLE_TEAM_FIELDS,
    REQUIRED_TEAM_FIELDS,
    NULLABLE_TEAM_FIELDS,
    MAX_MESSAGE_LENGTH,
    MAX_AUTHOR_LENGTH,
    MAX_COMMENT_LENGTH,
    MAX_IDENTITY_LENGTH,
    UNKNOWN_TEAM_NAME,
    UNKNOWN_TEAM_TITLE,
)

__all__ = [
    'TeamStatus',
    'Comment',
    'Team',
    'VoteRecord',
    'VotedTeam',
    'VoteStatus',
    'ChatScope',
    'ChatMessage',
    'VotingSettings',
    'get_current_timestamp',
    'ensure_utc',
    'get_origin_address',
    'validate_voter_identity',
    'validate_vote_comment',
    'validate_chat_message',
    'validate_team_status',
    'ANONYMOUS_AUTHOR',
    'EDITABLE_TEAM_FIELDS',
    'REQUIRED_TEAM_FIELDS',
    'NULLABLE_TEAM_FIELDS',
    'MAX_MESSAGE_LENGTH',
    'MAX_AUTHOR_LENGTH',
    'MAX_COMMENT_LENGTH',
    'MAX_IDENTITY_LENGTH',
    'UNKNOWN_TEAM_NAME',
    'UNKNOWN_TEAM_TITLE',
]

__version__ = '1.0.0'
