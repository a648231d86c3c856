"""Global and per-team chat logs read by polling."""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from prometheus_client import Counter

from services.shared import ChatMessage, ChatScope, ensure_utc, validate_chat_message

from .config import settings
from .errors import TeamNotFound, ValidationError
from .store import ContestStore

logger = logging.getLogger(__name__)

chat_messages_posted = Counter(
    "contest_chat_messages_total",
    "Total number of chat messages posted",
    ["scope_type"]
)
chat_purges = Counter(
    "contest_chat_purges_total",
    "Total number of chat purges",
    ["scope_type"]
)


def _scope_type(scope: ChatScope) -> str:
    return "global" if scope.is_global else "team"


class ChatService:
    """Append-only chat logs with bounded, restartable reads."""

    def __init__(self, store: ContestStore):
        self.store = store

    async def post_message(
        self,
        scope: ChatScope,
        text: str,
        author_label: str,
        origin_address: str,
        author_identity: Optional[str] = None
    ) -> ChatMessage:
        """
        Append a message to a chat log.

        The store assigns the timestamp; text and author are stored trimmed.
        """
        is_valid, error = validate_chat_message(text, author_label)
        if not is_valid:
            raise ValidationError(error)

        if not scope.is_global and await self.store.get_team(scope.team_id) is None:
            raise TeamNotFound(scope.team_id)

        message = await self.store.add_chat_message(ChatMessage(
            scope=scope,
            text=text.strip(),
            author_label=author_label.strip(),
            origin_address=origin_address,
            author_identity=author_identity
        ))

        chat_messages_posted.labels(scope_type=_scope_type(scope)).inc()
        logger.info(
            f"Chat message posted: scope={scope}, id={message.sequence}, "
            f"length={len(message.text)}"
        )
        return message

    async def list_messages(
        self,
        scope: ChatScope,
        since: Optional[datetime] = None,
        limit: Optional[int] = None
    ) -> List[ChatMessage]:
        """
        Read a chat log oldest-first.

        Without `since` this is the initial load (latest `limit` messages).
        With `since` only messages strictly newer than it are returned.
        """
        if limit is None:
            limit = settings.CHAT_DEFAULT_LIMIT
        if limit < 1:
            raise ValidationError("Limit must be at least 1")
        limit = min(limit, settings.CHAT_MAX_LIMIT)

        messages = await self.store.list_chat_messages(scope, ensure_utc(since), limit)
        logger.debug(f"Chat messages fetched: scope={scope}, count={len(messages)}")
        return messages

    async def purge_all(self, scope: ChatScope) -> int:
        """Delete every message in the scope. Irreversible."""
        deleted = await self.store.purge_chat(scope)
        chat_purges.labels(scope_type=_scope_type(scope)).inc()
        logger.info(f"Chat purged: scope={scope}, deleted_count={deleted}")
        return deleted

    async def stats(self, scope: ChatScope) -> Dict[str, Any]:
        stats = await self.store.chat_stats(scope)
        stats["can_reset"] = stats["total_messages"] > 0
        return stats
