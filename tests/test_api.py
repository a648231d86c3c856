"""API tests for the contest voting endpoints.

Tests the HTTP surface end to end against the in-process store: status codes,
error bodies, origin resolution and the admin gate.
"""

from datetime import datetime, timedelta, timezone

import httpx
import pytest

API = "/api/v1"


def at(origin: str) -> dict:
    """Headers placing the request at a given network origin."""
    return {"X-Forwarded-For": origin}


@pytest.mark.asyncio
class TestVoteEndpoints:
    """Tests for casting votes and checking vote status."""

    async def test_cast_vote(self, api_client: httpx.AsyncClient, api_teams):
        response = await api_client.post(
            f"{API}/teams/team-1/vote",
            json={"voter_identity": "v1", "comment": "great idea"},
            headers=at("10.0.0.1")
        )

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "accepted"
        assert data["team"]["hearts"] == 1
        assert data["team"]["comments"][0]["text"] == "great idea"
        assert data["team"]["comments"][0]["author"] == "anonymous"
        assert "origin_address" not in data["team"]["comments"][0]

    async def test_second_vote_conflicts(self, api_client: httpx.AsyncClient, api_teams):
        """Test: a voter's vote for another team returns 409 naming the first team."""
        await api_client.post(f"{API}/teams/team-1/vote", json={"voter_identity": "v1"}, headers=at("10.0.0.1"))

        response = await api_client.post(
            f"{API}/teams/team-2/vote",
            json={"voter_identity": "v1"},
            headers=at("10.0.0.1")
        )

        assert response.status_code == 409
        body = response.json()
        assert body["error"] == "DuplicateVote"
        assert body["message"] == "Already voted"
        assert body["details"]["voted_team"] == {"id": "team-1", "name": "Team Alpha", "title": "Smart Garden"}

    async def test_shared_origin_conflicts(self, api_client: httpx.AsyncClient, api_teams):
        await api_client.post(f"{API}/teams/team-1/vote", json={"voter_identity": "v1"}, headers=at("203.0.113.5"))

        response = await api_client.post(
            f"{API}/teams/team-1/vote",
            json={"voter_identity": "v2"},
            headers=at("203.0.113.5, 10.0.0.1")
        )
        assert response.status_code == 409

    async def test_real_ip_header_used(self, api_client: httpx.AsyncClient, api_teams):
        await api_client.post(f"{API}/teams/team-1/vote", json={"voter_identity": "v1"}, headers={"X-Real-IP": "198.51.100.7"})

        response = await api_client.post(
            f"{API}/vote-status",
            json={"voter_identity": "someone-else"},
            headers={"X-Real-IP": "198.51.100.7"}
        )
        assert response.json()["has_voted"] is True

    async def test_unknown_team(self, api_client: httpx.AsyncClient, api_teams):
        response = await api_client.post(f"{API}/teams/nope/vote", json={"voter_identity": "v1"}, headers=at("10.0.0.1"))

        assert response.status_code == 404
        assert response.json()["error"] == "TeamNotFound"

    async def test_invalid_identity(self, api_client: httpx.AsyncClient, api_teams):
        response = await api_client.post(f"{API}/teams/team-1/vote", json={"voter_identity": "  "}, headers=at("10.0.0.1"))

        assert response.status_code == 400
        assert response.json()["error"] == "ValidationError"

    async def test_missing_identity_is_shape_error(self, api_client: httpx.AsyncClient, api_teams):
        response = await api_client.post(f"{API}/teams/team-1/vote", json={}, headers=at("10.0.0.1"))
        assert response.status_code == 422

    async def test_vote_status(self, api_client: httpx.AsyncClient, api_teams):
        response = await api_client.post(f"{API}/vote-status", json={"voter_identity": "v1"}, headers=at("10.0.0.1"))
        assert response.status_code == 200
        assert response.json() == {"has_voted": False, "voted_team": None}

        await api_client.post(f"{API}/teams/team-2/vote", json={"voter_identity": "v1"}, headers=at("10.0.0.1"))

        first = await api_client.post(f"{API}/vote-status", json={"voter_identity": "v1"}, headers=at("10.0.0.9"))
        second = await api_client.post(f"{API}/vote-status", json={"voter_identity": "v1"}, headers=at("10.0.0.9"))
        assert first.json() == second.json()
        assert first.json()["voted_team"]["id"] == "team-2"

    async def test_voting_closed(self, api_client: httpx.AsyncClient, api_teams, admin_headers):
        response = await api_client.put(
            f"{API}/admin/voting-settings",
            json={"is_voting_open": False},
            headers=admin_headers
        )
        assert response.status_code == 200
        assert response.json()["is_voting_open"] is False

        public = await api_client.get(f"{API}/voting-settings")
        assert public.json()["is_voting_open"] is False

        response = await api_client.post(f"{API}/teams/team-1/vote", json={"voter_identity": "v1"}, headers=at("10.0.0.1"))
        assert response.status_code == 403
        assert response.json()["error"] == "VotingClosed"


@pytest.mark.asyncio
class TestChatEndpoints:
    """Tests for the chat endpoints."""

    async def test_post_and_list_global(self, api_client: httpx.AsyncClient):
        response = await api_client.post(f"{API}/chat", json={"text": "hello", "author_label": "Ana"}, headers=at("10.0.0.1"))

        assert response.status_code == 201
        message = response.json()
        assert message["text"] == "hello"
        assert message["team_id"] is None

        response = await api_client.get(f"{API}/chat")
        assert response.status_code == 200
        data = response.json()
        assert data["count"] == 1
        assert data["data"][0]["id"] == message["id"]

    async def test_poll_with_since(self, api_client: httpx.AsyncClient):
        first = await api_client.post(f"{API}/chat", json={"text": "one", "author_label": "Ana"})
        since = first.json()["timestamp"]
        await api_client.post(f"{API}/chat", json={"text": "two", "author_label": "Ben"})

        response = await api_client.get(f"{API}/chat", params={"since": since, "limit": 50})

        texts = [m["text"] for m in response.json()["data"]]
        assert "one" not in texts
        assert texts[-1] == "two"

    async def test_message_too_long(self, api_client: httpx.AsyncClient):
        response = await api_client.post(f"{API}/chat", json={"text": "x" * 501, "author_label": "Ana"})

        assert response.status_code == 400
        assert response.json()["error"] == "ValidationError"

        response = await api_client.post(f"{API}/chat", json={"text": "x" * 500, "author_label": "Ana"})
        assert response.status_code == 201

    async def test_invalid_limit(self, api_client: httpx.AsyncClient):
        response = await api_client.get(f"{API}/chat", params={"limit": 0})
        assert response.status_code == 400

    async def test_naive_since_accepted(self, api_client: httpx.AsyncClient):
        await api_client.post(f"{API}/chat", json={"text": "hello", "author_label": "Ana"})
        since = (datetime.now(timezone.utc) - timedelta(minutes=5)).replace(tzinfo=None).isoformat()

        response = await api_client.get(f"{API}/chat", params={"since": since})
        assert response.json()["count"] == 1

    async def test_team_chat(self, api_client: httpx.AsyncClient, api_teams):
        response = await api_client.post(f"{API}/teams/team-1/chat", json={"text": "go alpha", "author_label": "Ana"})
        assert response.status_code == 201
        assert response.json()["team_id"] == "team-1"

        response = await api_client.post(f"{API}/teams/missing/chat", json={"text": "hi", "author_label": "Ana"})
        assert response.status_code == 404

        assert (await api_client.get(f"{API}/teams/team-1/chat")).json()["count"] == 1
        assert (await api_client.get(f"{API}/teams/team-2/chat")).json()["count"] == 0
        assert (await api_client.get(f"{API}/chat")).json()["count"] == 0

    async def test_purge_requires_admin(self, api_client: httpx.AsyncClient, api_teams, admin_headers):
        await api_client.post(f"{API}/teams/team-1/chat", json={"text": "a", "author_label": "Ana"})
        await api_client.post(f"{API}/teams/team-2/chat", json={"text": "b", "author_label": "Ana"})

        response = await api_client.delete(f"{API}/teams/team-1/chat")
        assert response.status_code == 403
        assert response.json()["error"] == "AdminRequired"

        response = await api_client.delete(f"{API}/teams/team-1/chat", headers={"X-Admin-Token": "wrong"})
        assert response.status_code == 403

        response = await api_client.delete(f"{API}/teams/team-1/chat", headers=admin_headers)
        assert response.status_code == 200
        assert response.json() == {"deleted_count": 1}

        assert (await api_client.get(f"{API}/teams/team-2/chat")).json()["count"] == 1

    async def test_stats(self, api_client: httpx.AsyncClient, admin_headers):
        response = await api_client.get(f"{API}/chat/stats")
        assert response.json()["total_messages"] == 0
        assert response.json()["can_reset"] is False

        await api_client.post(f"{API}/chat", json={"text": "a", "author_label": "Ana"})
        await api_client.post(f"{API}/chat", json={"text": "b", "author_label": "Ana"})

        stats = (await api_client.get(f"{API}/chat/stats")).json()
        assert stats["total_messages"] == 2
        assert stats["oldest"]["text"] == "a"
        assert stats["newest"]["text"] == "b"

        response = await api_client.delete(f"{API}/chat", headers=admin_headers)
        assert response.json() == {"deleted_count": 2}


@pytest.mark.asyncio
class TestTeamEndpoints:
    """Tests for team reads, edits and admin operations."""

    async def test_list_and_get(self, api_client: httpx.AsyncClient, api_teams):
        await api_client.post(f"{API}/teams/team-2/vote", json={"voter_identity": "v1"}, headers=at("10.0.0.1"))

        teams = (await api_client.get(f"{API}/teams")).json()
        assert [t["id"] for t in teams] == ["team-2", "team-1", "team-3"]

        response = await api_client.get(f"{API}/teams/team-2")
        assert response.status_code == 200
        assert response.json()["hearts"] == 1

        assert (await api_client.get(f"{API}/teams/missing")).status_code == 404

    async def test_admin_create_requires_token(self, api_client: httpx.AsyncClient):
        payload = {"id": "t9", "name": "N", "title": "T", "description": "D"}
        response = await api_client.post(f"{API}/admin/teams", json=payload)
        assert response.status_code == 403

    async def test_duplicate_team(self, api_client: httpx.AsyncClient, api_teams, admin_headers):
        payload = {"id": "team-1", "name": "N", "title": "T", "description": "D"}
        response = await api_client.post(f"{API}/admin/teams", json=payload, headers=admin_headers)

        assert response.status_code == 409
        assert response.json()["error"] == "TeamAlreadyExists"

    async def test_edit_gate(self, api_client: httpx.AsyncClient, api_teams, admin_headers):
        response = await api_client.put(f"{API}/teams/team-1", json={"title": "New"})
        assert response.status_code == 403
        assert response.json()["error"] == "EditingNotAllowed"

        response = await api_client.put(f"{API}/teams/team-1", json={"title": "New"}, headers=admin_headers)
        assert response.status_code == 200
        assert response.json()["title"] == "New"

        response = await api_client.put(f"{API}/teams/team-3", json={"members": ["Dee"]})
        assert response.status_code == 200
        assert response.json()["members"] == ["Dee"]

    async def test_edit_null_field_rejected(self, api_client: httpx.AsyncClient, api_teams, admin_headers):
        """Test: null for a text field is a 400 and the team list keeps working."""
        response = await api_client.put(f"{API}/teams/team-3", json={"challenge": None})
        assert response.status_code == 400
        assert response.json()["error"] == "ValidationError"

        response = await api_client.put(f"{API}/teams/team-1", json={"approach": None}, headers=admin_headers)
        assert response.status_code == 400

        assert (await api_client.get(f"{API}/teams")).status_code == 200
        response = await api_client.get(f"{API}/teams/team-3")
        assert response.status_code == 200
        assert response.json()["challenge"] is not None

        response = await api_client.put(f"{API}/teams/team-3", json={"image_url": None})
        assert response.status_code == 200
        assert response.json()["image_url"] is None

    async def test_status_and_edit_permission(self, api_client: httpx.AsyncClient, api_teams, admin_headers):
        response = await api_client.put(f"{API}/teams/team-1/status", json={"status": "live"}, headers=admin_headers)
        assert response.json()["status"] == "live"

        response = await api_client.put(f"{API}/teams/team-1/status", json={"status": "paused"}, headers=admin_headers)
        assert response.status_code == 400

        response = await api_client.put(
            f"{API}/teams/team-1/edit-permission",
            json={"editing_allowed": True},
            headers=admin_headers
        )
        assert response.json()["editing_allowed"] is True

    async def test_reset_votes(self, api_client: httpx.AsyncClient, api_teams, admin_headers):
        await api_client.post(f"{API}/teams/team-1/vote", json={"voter_identity": "v1"}, headers=at("10.0.0.1"))

        assert (await api_client.post(f"{API}/admin/reset-votes")).status_code == 403

        response = await api_client.post(f"{API}/admin/reset-votes", headers=admin_headers)
        assert response.json() == {"votes_deleted": 1, "teams_updated": 3}
        assert (await api_client.get(f"{API}/teams/team-1")).json()["hearts"] == 0

    async def test_reconcile(self, api_client: httpx.AsyncClient, api_teams, admin_headers):
        from services.contest_api.main import database

        await api_client.post(f"{API}/teams/team-1/vote", json={"voter_identity": "v1"}, headers=at("10.0.0.1"))
        database.teams["team-1"].hearts = 5

        response = await api_client.post(f"{API}/admin/reconcile-tallies", headers=admin_headers)

        assert response.status_code == 200
        assert response.json() == {"repaired": [{"team_id": "team-1", "stored_hearts": 5, "ledger_count": 1}]}

    async def test_team_order(self, api_client: httpx.AsyncClient, api_teams, admin_headers):
        await api_client.post(f"{API}/teams/team-2/vote", json={"voter_identity": "v1"}, headers=at("10.0.0.1"))
        body = {"order": [{"id": "team-3", "sort_order": 0}, {"id": "team-1", "sort_order": 1},
                          {"id": "missing", "sort_order": 2}]}

        assert (await api_client.put(f"{API}/admin/teams/order", json=body)).status_code == 403

        response = await api_client.put(f"{API}/admin/teams/order", json=body, headers=admin_headers)
        assert response.status_code == 200
        assert response.json() == {"updated_count": 2}

        response = await api_client.get(f"{API}/admin/teams", headers=admin_headers)
        assert response.status_code == 200
        assert [(t["id"], t["sort_order"]) for t in response.json()] == [
            ("team-2", 0), ("team-3", 0), ("team-1", 1)
        ]

        # Public ranking stays by hearts
        teams = (await api_client.get(f"{API}/teams")).json()
        assert [t["id"] for t in teams] == ["team-2", "team-1", "team-3"]

    async def test_team_order_rejects_bad_input(self, api_client: httpx.AsyncClient, api_teams, admin_headers):
        assert (await api_client.get(f"{API}/admin/teams")).status_code == 403

        response = await api_client.put(f"{API}/admin/teams/order", json={}, headers=admin_headers)
        assert response.status_code == 422

        body = {"order": [{"id": "team-1", "sort_order": 1}, {"id": "team-1", "sort_order": 2}]}
        response = await api_client.put(f"{API}/admin/teams/order", json=body, headers=admin_headers)
        assert response.status_code == 400
        assert response.json()["error"] == "ValidationError"

    async def test_delete_all_teams(self, api_client: httpx.AsyncClient, api_teams, admin_headers):
        response = await api_client.delete(f"{API}/admin/teams", headers=admin_headers)

        assert response.json() == {"deleted_count": 3}
        assert (await api_client.get(f"{API}/teams")).json() == []


@pytest.mark.asyncio
class TestOperationalEndpoints:
    """Tests for health, metrics and root."""

    async def test_health(self, api_client: httpx.AsyncClient):
        response = await api_client.get(f"{API}/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["services"] == {"memory": "connected"}

    async def test_metrics(self, api_client: httpx.AsyncClient, api_teams):
        await api_client.post(f"{API}/teams/team-1/vote", json={"voter_identity": "v1"}, headers=at("10.0.0.1"))

        response = await api_client.get("/metrics")
        assert response.status_code == 200
        assert "contest_votes_cast_total" in response.text
        assert "http_request_duration_seconds" in response.text

    async def test_root(self, api_client: httpx.AsyncClient):
        response = await api_client.get("/")
        assert response.json()["service"] == "contest-api"
