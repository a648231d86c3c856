"""Tests for the global and per-team chat logs."""

import asyncio
from datetime import timedelta

import pytest

from services.contest_api.errors import TeamNotFound, ValidationError
from services.shared import MAX_AUTHOR_LENGTH, MAX_MESSAGE_LENGTH, ChatScope

GLOBAL = ChatScope.global_scope()


async def post_many(chat_service, scope, count, prefix="msg"):
    posted = []
    for i in range(count):
        posted.append(await chat_service.post_message(scope, f"{prefix} {i}", "Ana", "10.0.0.1"))
    return posted


@pytest.mark.asyncio
class TestPostMessage:
    """Tests for posting chat messages."""

    async def test_post_global(self, store, chat_service):
        message = await chat_service.post_message(GLOBAL, "  hello  ", " Ana ", "10.0.0.1")

        assert message.text == "hello"
        assert message.author_label == "Ana"
        assert message.scope.is_global
        assert message.timestamp is not None
        assert message.sequence is not None

    async def test_message_length_boundary(self, store, chat_service):
        """Test: 500 characters is accepted, 501 is rejected."""
        message = await chat_service.post_message(GLOBAL, "x" * MAX_MESSAGE_LENGTH, "Ana", "10.0.0.1")
        assert len(message.text) == MAX_MESSAGE_LENGTH

        with pytest.raises(ValidationError):
            await chat_service.post_message(GLOBAL, "x" * (MAX_MESSAGE_LENGTH + 1), "Ana", "10.0.0.1")

        stats = await chat_service.stats(GLOBAL)
        assert stats["total_messages"] == 1

    @pytest.mark.parametrize("text", ["", "   ", "\n\t"])
    async def test_blank_text_rejected(self, store, chat_service, text):
        with pytest.raises(ValidationError):
            await chat_service.post_message(GLOBAL, text, "Ana", "10.0.0.1")

    async def test_author_label_rules(self, store, chat_service):
        with pytest.raises(ValidationError):
            await chat_service.post_message(GLOBAL, "hi", "   ", "10.0.0.1")
        with pytest.raises(ValidationError):
            await chat_service.post_message(GLOBAL, "hi", "a" * (MAX_AUTHOR_LENGTH + 1), "10.0.0.1")

        message = await chat_service.post_message(GLOBAL, "hi", "a" * MAX_AUTHOR_LENGTH, "10.0.0.1")
        assert len(message.author_label) == MAX_AUTHOR_LENGTH

    async def test_team_scope_requires_team(self, seeded_store, chat_service):
        with pytest.raises(TeamNotFound):
            await chat_service.post_message(ChatScope.for_team("missing"), "hi", "Ana", "10.0.0.1")

        message = await chat_service.post_message(ChatScope.for_team("team-1"), "hi", "Ana", "10.0.0.1")
        assert message.scope.team_id == "team-1"

    async def test_author_identity_kept(self, store, chat_service):
        message = await chat_service.post_message(GLOBAL, "hi", "Ana", "10.0.0.1", author_identity="user-42")
        assert message.author_identity == "user-42"


@pytest.mark.asyncio
class TestListMessages:
    """Tests for polling reads."""

    async def test_initial_load_returns_latest_oldest_first(self, store, chat_service):
        await post_many(chat_service, GLOBAL, 5)

        messages = await chat_service.list_messages(GLOBAL, limit=3)

        assert [m.text for m in messages] == ["msg 2", "msg 3", "msg 4"]

    async def test_since_is_strict(self, store, chat_service):
        """Test: only messages newer than `since` are returned, oldest first."""
        posted = await post_many(chat_service, GLOBAL, 3)
        t0 = posted[0].timestamp
        await asyncio.sleep(0.001)
        later = await post_many(chat_service, GLOBAL, 2, prefix="later")

        messages = await chat_service.list_messages(GLOBAL, since=later[0].timestamp - timedelta(microseconds=1), limit=50)
        assert [m.text for m in messages] == ["later 0", "later 1"]

        messages = await chat_service.list_messages(GLOBAL, since=t0, limit=50)
        assert all(m.timestamp > t0 for m in messages)
        assert len(messages) <= 50
        timestamps = [m.timestamp for m in messages]
        assert timestamps == sorted(timestamps)

    async def test_since_after_newest_returns_nothing(self, store, chat_service):
        posted = await post_many(chat_service, GLOBAL, 2)
        assert await chat_service.list_messages(GLOBAL, since=posted[-1].timestamp) == []

    async def test_naive_since_is_utc(self, store, chat_service):
        posted = await post_many(chat_service, GLOBAL, 1)
        naive = (posted[0].timestamp - timedelta(seconds=1)).replace(tzinfo=None)

        messages = await chat_service.list_messages(GLOBAL, since=naive)
        assert len(messages) == 1

    async def test_limit_is_clamped(self, store, chat_service):
        await post_many(chat_service, GLOBAL, 105)

        messages = await chat_service.list_messages(GLOBAL, limit=500)
        assert len(messages) == 100
        assert messages[-1].text == "msg 104"

    async def test_default_limit(self, store, chat_service):
        await post_many(chat_service, GLOBAL, 60)
        assert len(await chat_service.list_messages(GLOBAL)) == 50

    @pytest.mark.parametrize("limit", [0, -1])
    async def test_limit_below_one_rejected(self, store, chat_service, limit):
        with pytest.raises(ValidationError):
            await chat_service.list_messages(GLOBAL, limit=limit)

    async def test_scopes_are_separate(self, seeded_store, chat_service):
        await chat_service.post_message(GLOBAL, "global", "Ana", "10.0.0.1")
        await chat_service.post_message(ChatScope.for_team("team-1"), "alpha", "Ana", "10.0.0.1")

        assert [m.text for m in await chat_service.list_messages(GLOBAL)] == ["global"]
        assert [m.text for m in await chat_service.list_messages(ChatScope.for_team("team-1"))] == ["alpha"]
        assert await chat_service.list_messages(ChatScope.for_team("team-2")) == []


@pytest.mark.asyncio
class TestPurge:
    """Tests for purging and chat statistics."""

    async def test_purge_team_scope_leaves_others(self, seeded_store, chat_service):
        """Test: purging team-1 removes only team-1's messages."""
        team_1 = ChatScope.for_team("team-1")
        team_2 = ChatScope.for_team("team-2")
        await post_many(chat_service, team_1, 3)
        await post_many(chat_service, team_2, 2)
        await post_many(chat_service, GLOBAL, 1)

        deleted, team_2_messages = await asyncio.gather(
            chat_service.purge_all(team_1),
            chat_service.list_messages(team_2)
        )

        assert deleted == 3
        assert len(team_2_messages) == 2
        assert await chat_service.list_messages(team_1) == []
        assert len(await chat_service.list_messages(team_2)) == 2
        assert len(await chat_service.list_messages(GLOBAL)) == 1

    async def test_purge_empty_scope(self, store, chat_service):
        assert await chat_service.purge_all(GLOBAL) == 0

    async def test_stats(self, store, chat_service):
        empty = await chat_service.stats(GLOBAL)
        assert empty == {"total_messages": 0, "oldest": None, "newest": None, "can_reset": False}

        await post_many(chat_service, GLOBAL, 3)
        stats = await chat_service.stats(GLOBAL)

        assert stats["total_messages"] == 3
        assert stats["oldest"].text == "msg 0"
        assert stats["newest"].text == "msg 2"
        assert stats["can_reset"] is True
