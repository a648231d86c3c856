"""Tests for the shared records and validation helpers."""

from datetime import datetime, timedelta, timezone

import pytest

from services.shared import (
    ChatScope,
    Comment,
    MAX_AUTHOR_LENGTH,
    MAX_MESSAGE_LENGTH,
    ensure_utc,
    get_origin_address,
    validate_chat_message,
    validate_team_status,
    validate_vote_comment,
    validate_voter_identity,
)


class TestOriginAddress:
    """Tests for request origin resolution."""

    def test_first_forwarded_entry(self):
        headers = {"x-forwarded-for": "203.0.113.5, 10.0.0.1, 10.0.0.2"}
        assert get_origin_address(headers, "127.0.0.1") == "203.0.113.5"

    def test_real_ip_fallback(self):
        assert get_origin_address({"x-real-ip": " 198.51.100.7 "}, "127.0.0.1") == "198.51.100.7"

    def test_empty_forwarded_falls_through(self):
        assert get_origin_address({"x-forwarded-for": " , 10.0.0.1"}, "127.0.0.1") == "127.0.0.1"

    def test_peer_then_unknown(self):
        assert get_origin_address({}, "127.0.0.1") == "127.0.0.1"
        assert get_origin_address({}, None) == "unknown"


class TestValidators:
    """Tests for input validation helpers."""

    def test_voter_identity(self):
        assert validate_voter_identity("client-abc") == (True, None)
        assert validate_voter_identity("")[0] is False
        assert validate_voter_identity(None)[0] is False
        assert validate_voter_identity("x" * 129)[0] is False

    def test_vote_comment(self):
        assert validate_vote_comment(None) == (True, None)
        assert validate_vote_comment("x" * 500)[0] is True
        assert validate_vote_comment("x" * 501)[0] is False

    @pytest.mark.parametrize(
        "text,author,valid",
        [
            ("hello", "Ana", True),
            ("x" * MAX_MESSAGE_LENGTH, "Ana", True),
            ("x" * (MAX_MESSAGE_LENGTH + 1), "Ana", False),
            ("   ", "Ana", False),
            ("hello", "", False),
            ("hello", "a" * (MAX_AUTHOR_LENGTH + 1), False),
        ]
    )
    def test_chat_message(self, text, author, valid):
        is_valid, error = validate_chat_message(text, author)
        assert is_valid is valid
        assert (error is None) is valid

    def test_team_status(self):
        assert validate_team_status("live")
        assert not validate_team_status("paused")
        assert not validate_team_status(None)


class TestRecords:
    """Tests for record helpers."""

    def test_ensure_utc(self):
        naive = datetime(2025, 5, 1, 12, 0)
        assert ensure_utc(naive) == datetime(2025, 5, 1, 12, 0, tzinfo=timezone.utc)

        offset = datetime(2025, 5, 1, 14, 0, tzinfo=timezone(timedelta(hours=2)))
        assert ensure_utc(offset).hour == 12
        assert ensure_utc(None) is None

    def test_comment_from_stored_dict(self):
        stored = Comment(
            text="nice",
            timestamp=datetime(2025, 5, 1, 12, 0, tzinfo=timezone.utc),
            origin_address="10.0.0.1"
        ).to_dict()

        comment = Comment.from_dict(stored)
        assert comment.timestamp == datetime(2025, 5, 1, 12, 0, tzinfo=timezone.utc)
        assert comment.author == "anonymous"

        legacy = Comment.from_dict({"text": "old", "timestamp": "2025-05-01T12:00:00Z"})
        assert legacy.timestamp.tzinfo is not None
        assert legacy.origin_address is None

    def test_chat_scope(self):
        assert ChatScope.global_scope().is_global
        assert str(ChatScope.global_scope()) == "global"
        assert str(ChatScope.for_team("team-1")) == "team:team-1"
        assert ChatScope.for_team("team-1") == ChatScope("team-1")
