"""PostgreSQL database connection and queries."""
import asyncio
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Tuple

import asyncpg

from services.shared import (
    ChatMessage,
    ChatScope,
    Comment,
    EDITABLE_TEAM_FIELDS,
    Team,
    VoteRecord,
    VotingSettings,
    ensure_utc,
)

from .config import settings
from .errors import (
    DuplicateVote,
    StoreUnavailable,
    TeamAlreadyExists,
    TeamNotFound,
    TransientWriteConflict,
    ValidationError,
)
from .store import ContestStore

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS teams (
    seq BIGSERIAL PRIMARY KEY,
    id TEXT NOT NULL UNIQUE,
    name TEXT NOT NULL,
    title TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    challenge TEXT NOT NULL DEFAULT '',
    approach TEXT NOT NULL DEFAULT '',
    members JSONB NOT NULL DEFAULT '[]',
    technologies JSONB NOT NULL DEFAULT '[]',
    scratch_url TEXT,
    image_url TEXT,
    hearts INTEGER NOT NULL DEFAULT 0 CHECK (hearts >= 0),
    comments JSONB NOT NULL DEFAULT '[]',
    status TEXT NOT NULL DEFAULT 'upcoming'
        CHECK (status IN ('upcoming', 'live', 'ended')),
    editing_allowed BOOLEAN NOT NULL DEFAULT FALSE,
    sort_order INTEGER NOT NULL DEFAULT 0,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
ALTER TABLE teams ADD COLUMN IF NOT EXISTS sort_order INTEGER NOT NULL DEFAULT 0;

CREATE TABLE IF NOT EXISTS votes (
    seq BIGSERIAL PRIMARY KEY,
    team_id TEXT NOT NULL REFERENCES teams(id) ON DELETE CASCADE,
    voter_identity TEXT NOT NULL,
    origin_address TEXT NOT NULL,
    comment TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    CONSTRAINT uq_votes_team_origin UNIQUE (team_id, origin_address),
    CONSTRAINT uq_votes_team_voter UNIQUE (team_id, voter_identity)
);
CREATE INDEX IF NOT EXISTS idx_votes_voter_identity ON votes (voter_identity);
CREATE INDEX IF NOT EXISTS idx_votes_origin_address ON votes (origin_address);

CREATE TABLE IF NOT EXISTS chat_messages (
    seq BIGSERIAL PRIMARY KEY,
    team_id TEXT,
    text VARCHAR(500) NOT NULL,
    author_label VARCHAR(50) NOT NULL,
    author_identity TEXT,
    origin_address TEXT NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT clock_timestamp()
);
CREATE INDEX IF NOT EXISTS idx_chat_messages_scope_time
    ON chat_messages (team_id, created_at DESC, seq DESC);

CREATE TABLE IF NOT EXISTS voting_settings (
    id SMALLINT PRIMARY KEY DEFAULT 1 CHECK (id = 1),
    is_voting_open BOOLEAN NOT NULL DEFAULT TRUE,
    opened_at TIMESTAMPTZ DEFAULT NOW(),
    closed_at TIMESTAMPTZ,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
INSERT INTO voting_settings (id) VALUES (1) ON CONFLICT (id) DO NOTHING;
"""

# Advisory lock namespaces (first key of pg_advisory_xact_lock(int, int))
VOTER_LOCK_NAMESPACE = 1
ORIGIN_LOCK_NAMESPACE = 2

CONNECTION_ERRORS = (
    asyncpg.exceptions.PostgresConnectionError,
    asyncpg.exceptions.InterfaceError,
    asyncio.TimeoutError,
    OSError,
)
CONFLICT_ERRORS = (
    asyncpg.exceptions.SerializationError,
    asyncpg.exceptions.DeadlockDetectedError,
)

UPDATABLE_TEAM_COLUMNS = set(EDITABLE_TEAM_FIELDS) | {"status", "editing_allowed"}


def _scope_filter(scope: ChatScope, args: list) -> str:
    """SQL predicate selecting one chat scope; appends its parameter to args."""
    if scope.is_global:
        return "team_id IS NULL"
    args.append(scope.team_id)
    return f"team_id = ${len(args)}"


def _row_to_team(row: asyncpg.Record) -> Team:
    return Team(
        id=row["id"],
        name=row["name"],
        title=row["title"],
        description=row["description"],
        challenge=row["challenge"],
        approach=row["approach"],
        members=list(row["members"] or []),
        technologies=list(row["technologies"] or []),
        scratch_url=row["scratch_url"],
        image_url=row["image_url"],
        hearts=row["hearts"],
        comments=[Comment.from_dict(c) for c in (row["comments"] or [])],
        status=row["status"],
        editing_allowed=row["editing_allowed"],
        sort_order=row["sort_order"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_vote(row: asyncpg.Record) -> VoteRecord:
    return VoteRecord(
        team_id=row["team_id"],
        voter_identity=row["voter_identity"],
        origin_address=row["origin_address"],
        comment=row["comment"],
        timestamp=row["created_at"],
        sequence=row["seq"],
    )


def _row_to_message(row: asyncpg.Record) -> ChatMessage:
    return ChatMessage(
        scope=ChatScope(row["team_id"]),
        text=row["text"],
        author_label=row["author_label"],
        origin_address=row["origin_address"],
        author_identity=row["author_identity"],
        timestamp=row["created_at"],
        sequence=row["seq"],
    )


def _row_to_settings(row: asyncpg.Record) -> VotingSettings:
    return VotingSettings(
        is_voting_open=row["is_voting_open"],
        opened_at=row["opened_at"],
        closed_at=row["closed_at"],
        updated_at=row["updated_at"],
    )


def _affected_rows(status: str) -> int:
    """Row count from a command tag such as 'DELETE 3'."""
    try:
        return int(status.split()[-1])
    except (ValueError, IndexError):
        return 0


class Database(ContestStore):
    """Async PostgreSQL database manager."""

    def __init__(self, dsn: Optional[str] = None):
        self.dsn = dsn or settings.postgres_dsn
        self.pool: Optional[asyncpg.Pool] = None

    @staticmethod
    async def _init_connection(conn: asyncpg.Connection):
        """Decode JSONB columns to Python objects."""
        await conn.set_type_codec(
            "jsonb",
            encoder=json.dumps,
            decoder=json.loads,
            schema="pg_catalog"
        )

    async def initialize(self):
        """Initialize database connection pool and schema."""
        try:
            self.pool = await asyncpg.create_pool(
                self.dsn,
                min_size=settings.POSTGRES_POOL_MIN_SIZE,
                max_size=settings.POSTGRES_POOL_MAX_SIZE,
                command_timeout=settings.POSTGRES_COMMAND_TIMEOUT,
                init=self._init_connection
            )
            logger.info("PostgreSQL connection pool initialized successfully")

            async with self.pool.acquire() as conn:
                await conn.execute(SCHEMA)
                logger.info("PostgreSQL schema verified")

        except Exception as e:
            logger.error(f"Failed to initialize PostgreSQL connection pool: {e}")
            raise

    @asynccontextmanager
    async def _acquire(self) -> AsyncIterator[asyncpg.Connection]:
        """Acquire a pooled connection, translating infrastructure errors."""
        if self.pool is None:
            raise StoreUnavailable("Database pool is not initialized")
        try:
            async with self.pool.acquire() as conn:
                yield conn
        except CONFLICT_ERRORS as e:
            logger.warning(f"Transaction conflict, rolled back: {e}")
            raise TransientWriteConflict("Write conflict, please retry") from e
        except CONNECTION_ERRORS as e:
            logger.error(f"PostgreSQL unavailable: {e}")
            raise StoreUnavailable("Database unavailable") from e

    async def check_health(self) -> bool:
        """
        Check PostgreSQL connection health.

        Returns:
            bool: True if healthy, False otherwise
        """
        try:
            if not self.pool:
                return False
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
                return True
        except Exception as e:
            logger.error(f"PostgreSQL health check failed: {e}")
            return False

    async def close(self):
        """Close database connection pool."""
        try:
            if self.pool:
                await self.pool.close()
                logger.info("PostgreSQL connection pool closed successfully")
        except Exception as e:
            logger.error(f"Error closing PostgreSQL connection pool: {e}")

    # Teams

    async def create_team(self, team: Team) -> Team:
        query = """
            INSERT INTO teams
            (id, name, title, description, challenge, approach, members,
             technologies, scratch_url, image_url, status, editing_allowed,
             sort_order)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13)
            RETURNING *
        """
        async with self._acquire() as conn:
            try:
                row = await conn.fetchrow(
                    query,
                    team.id, team.name, team.title, team.description,
                    team.challenge, team.approach, list(team.members),
                    list(team.technologies), team.scratch_url, team.image_url,
                    team.status, team.editing_allowed, team.sort_order
                )
            except asyncpg.exceptions.UniqueViolationError as e:
                raise TeamAlreadyExists(team.id) from e
        return _row_to_team(row)

    async def get_team(self, team_id: str) -> Optional[Team]:
        async with self._acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM teams WHERE id = $1", team_id)
        return _row_to_team(row) if row else None

    async def list_teams(self) -> List[Team]:
        async with self._acquire() as conn:
            rows = await conn.fetch("SELECT * FROM teams ORDER BY hearts DESC, seq ASC")
        return [_row_to_team(row) for row in rows]

    async def update_team(self, team_id: str, changes: Mapping[str, Any]) -> Optional[Team]:
        columns = [name for name in changes if name in UPDATABLE_TEAM_COLUMNS]
        if not columns:
            return await self.get_team(team_id)

        args: list = [team_id]
        assignments = []
        for name in columns:
            value = changes[name]
            if name in ("members", "technologies"):
                value = list(value or [])
            args.append(value)
            assignments.append(f"{name} = ${len(args)}")

        query = f"""
            UPDATE teams
            SET {", ".join(assignments)}, updated_at = NOW()
            WHERE id = $1
            RETURNING *
        """
        async with self._acquire() as conn:
            try:
                row = await conn.fetchrow(query, *args)
            except asyncpg.exceptions.NotNullViolationError as e:
                raise ValidationError(f"Field '{e.column_name}' must not be null") from e
        return _row_to_team(row) if row else None

    async def list_teams_by_sort_order(self) -> List[Team]:
        async with self._acquire() as conn:
            rows = await conn.fetch("SELECT * FROM teams ORDER BY sort_order ASC, seq ASC")
        return [_row_to_team(row) for row in rows]

    async def set_team_order(self, positions: Mapping[str, int]) -> int:
        if not positions:
            return 0

        query = """
            UPDATE teams
            SET sort_order = o.sort_order, updated_at = NOW()
            FROM unnest($1::text[], $2::int[]) AS o(id, sort_order)
            WHERE teams.id = o.id
        """
        async with self._acquire() as conn:
            status = await conn.execute(query, list(positions), list(positions.values()))
        return _affected_rows(status)

    async def delete_all_teams(self) -> int:
        async with self._acquire() as conn:
            status = await conn.execute("DELETE FROM teams")
        return _affected_rows(status)

    # Vote ledger and tally

    async def find_vote(self, voter_identity: str, origin_address: str) -> Optional[VoteRecord]:
        query = """
            SELECT * FROM votes
            WHERE voter_identity = $1 OR origin_address = $2
            ORDER BY seq DESC
            LIMIT 1
        """
        async with self._acquire() as conn:
            row = await conn.fetchrow(query, voter_identity, origin_address)
        return _row_to_vote(row) if row else None

    async def record_vote(self, vote: VoteRecord, comment: Optional[Comment]) -> Team:
        """
        Record a vote as one transaction.

        Advisory locks on the voter identity and the origin serialize votes from
        the same voter across teams; the per-team unique constraints reject any
        insert that still races past the check.
        """
        new_comments = [comment.to_dict()] if comment else []

        async with self._acquire() as conn:
            try:
                async with conn.transaction():
                    await conn.execute(
                        "SELECT pg_advisory_xact_lock($1, hashtext($2))",
                        VOTER_LOCK_NAMESPACE, vote.voter_identity
                    )
                    await conn.execute(
                        "SELECT pg_advisory_xact_lock($1, hashtext($2))",
                        ORIGIN_LOCK_NAMESPACE, vote.origin_address
                    )

                    existing = await conn.fetchval(
                        """
                        SELECT team_id FROM votes
                        WHERE voter_identity = $1 OR origin_address = $2
                        LIMIT 1
                        """,
                        vote.voter_identity, vote.origin_address
                    )
                    if existing is not None:
                        raise DuplicateVote()

                    await conn.execute(
                        """
                        INSERT INTO votes (team_id, voter_identity, origin_address, comment)
                        VALUES ($1, $2, $3, $4)
                        """,
                        vote.team_id, vote.voter_identity, vote.origin_address, vote.comment
                    )

                    row = await conn.fetchrow(
                        """
                        UPDATE teams
                        SET hearts = hearts + 1,
                            comments = comments || $2::jsonb,
                            updated_at = NOW()
                        WHERE id = $1
                        RETURNING *
                        """,
                        vote.team_id, new_comments
                    )
                    if row is None:
                        raise TeamNotFound(vote.team_id)

            except asyncpg.exceptions.UniqueViolationError as e:
                logger.warning(
                    f"Unique constraint rejected vote: team_id={vote.team_id}, "
                    f"constraint={e.constraint_name}"
                )
                raise DuplicateVote() from e
            except asyncpg.exceptions.ForeignKeyViolationError as e:
                raise TeamNotFound(vote.team_id) from e

        return _row_to_team(row)

    async def reset_votes(self) -> Tuple[int, int]:
        async with self._acquire() as conn:
            async with conn.transaction():
                deleted = await conn.execute("DELETE FROM votes")
                updated = await conn.execute(
                    """
                    UPDATE teams
                    SET hearts = 0, comments = '[]'::jsonb, updated_at = NOW()
                    """
                )
        return _affected_rows(deleted), _affected_rows(updated)

    async def reconcile_tallies(self) -> Dict[str, Tuple[int, int]]:
        query = """
            WITH counts AS (
                SELECT t.id, t.hearts AS stored, COUNT(v.seq)::int AS actual
                FROM teams t
                LEFT JOIN votes v ON v.team_id = t.id
                GROUP BY t.id, t.hearts
            )
            UPDATE teams
            SET hearts = counts.actual, updated_at = NOW()
            FROM counts
            WHERE teams.id = counts.id AND teams.hearts <> counts.actual
            RETURNING teams.id, counts.stored, counts.actual
        """
        async with self._acquire() as conn:
            async with conn.transaction():
                # Blocks new ledger inserts until the counts are written back
                await conn.execute("LOCK TABLE votes IN SHARE MODE")
                rows = await conn.fetch(query)
        return {row["id"]: (row["stored"], row["actual"]) for row in rows}

    # Chat log

    async def add_chat_message(self, message: ChatMessage) -> ChatMessage:
        query = """
            INSERT INTO chat_messages
            (team_id, text, author_label, author_identity, origin_address)
            VALUES ($1, $2, $3, $4, $5)
            RETURNING *
        """
        async with self._acquire() as conn:
            row = await conn.fetchrow(
                query,
                message.scope.team_id, message.text, message.author_label,
                message.author_identity, message.origin_address
            )
        return _row_to_message(row)

    async def list_chat_messages(
        self,
        scope: ChatScope,
        since: Optional[datetime],
        limit: int
    ) -> List[ChatMessage]:
        args: list = []
        conditions = [_scope_filter(scope, args)]
        if since is not None:
            args.append(ensure_utc(since))
            conditions.append(f"created_at > ${len(args)}")
        args.append(limit)

        query = f"""
            SELECT * FROM chat_messages
            WHERE {" AND ".join(conditions)}
            ORDER BY created_at DESC, seq DESC
            LIMIT ${len(args)}
        """
        async with self._acquire() as conn:
            rows = await conn.fetch(query, *args)
        return [_row_to_message(row) for row in reversed(rows)]

    async def purge_chat(self, scope: ChatScope) -> int:
        args: list = []
        query = f"DELETE FROM chat_messages WHERE {_scope_filter(scope, args)}"
        async with self._acquire() as conn:
            status = await conn.execute(query, *args)
        return _affected_rows(status)

    async def chat_stats(self, scope: ChatScope) -> Dict[str, Any]:
        args: list = []
        where = _scope_filter(scope, args)
        async with self._acquire() as conn:
            total = await conn.fetchval(f"SELECT COUNT(*) FROM chat_messages WHERE {where}", *args)
            oldest = await conn.fetchrow(
                f"SELECT * FROM chat_messages WHERE {where} ORDER BY created_at ASC, seq ASC LIMIT 1",
                *args
            )
            newest = await conn.fetchrow(
                f"SELECT * FROM chat_messages WHERE {where} ORDER BY created_at DESC, seq DESC LIMIT 1",
                *args
            )
        return {
            "total_messages": total,
            "oldest": _row_to_message(oldest) if oldest else None,
            "newest": _row_to_message(newest) if newest else None,
        }

    # Voting window

    async def get_voting_settings(self) -> VotingSettings:
        async with self._acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM voting_settings WHERE id = 1")
            if row is None:
                row = await conn.fetchrow(
                    """
                    INSERT INTO voting_settings (id) VALUES (1)
                    ON CONFLICT (id) DO UPDATE SET id = EXCLUDED.id
                    RETURNING *
                    """
                )
        return _row_to_settings(row)

    async def set_voting_open(self, is_open: bool) -> VotingSettings:
        async with self._acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    "INSERT INTO voting_settings (id) VALUES (1) ON CONFLICT (id) DO NOTHING"
                )
                row = await conn.fetchrow(
                    """
                    UPDATE voting_settings
                    SET is_voting_open = $1,
                        opened_at = CASE WHEN $1 THEN NOW() ELSE opened_at END,
                        closed_at = CASE WHEN $1 THEN NULL ELSE NOW() END,
                        updated_at = NOW()
                    WHERE id = 1
                    RETURNING *
                    """,
                    is_open
                )
        return _row_to_settings(row)
