"""Pytest fixtures for integration tests.

Fixtures connect to the PostgreSQL database named by the POSTGRES_*
environment variables, create the schema and empty the contest tables before
each test. When no database is reachable the tests are skipped.
"""

import os
from typing import AsyncGenerator, Generator

import psycopg2
import pytest

from services.contest_api.database import Database


def postgres_params() -> dict:
    return {
        "host": os.getenv("POSTGRES_HOST", "localhost"),
        "port": int(os.getenv("POSTGRES_PORT", "5432")),
        "dbname": os.getenv("POSTGRES_DB", "contest_db"),
        "user": os.getenv("POSTGRES_USER", "contest_user"),
        "password": os.getenv("POSTGRES_PASSWORD", "contest_pass"),
    }


def postgres_dsn() -> str:
    params = postgres_params()
    return (
        f"postgresql://{params['user']}:{params['password']}"
        f"@{params['host']}:{params['port']}/{params['dbname']}"
    )


@pytest.fixture
async def pg_store() -> AsyncGenerator[Database, None]:
    """PostgreSQL store with empty contest tables.

    Skips the test when the database cannot be reached.
    """
    database = Database(postgres_dsn())
    try:
        await database.initialize()
    except Exception as e:
        pytest.skip(f"PostgreSQL not available: {e}")

    async with database.pool.acquire() as conn:
        await conn.execute("TRUNCATE votes, chat_messages, teams RESTART IDENTITY CASCADE")
        await conn.execute(
            "UPDATE voting_settings SET is_voting_open = TRUE, closed_at = NULL WHERE id = 1"
        )

    yield database

    await database.close()


@pytest.fixture
async def pg_teams(pg_store: Database, sample_teams) -> Database:
    """PostgreSQL store holding the sample teams."""
    for team in sample_teams:
        await pg_store.create_team(team)
    return pg_store


@pytest.fixture
def postgres_connection(pg_store: Database) -> Generator:
    """psycopg2 connection for the CLI scripts and direct assertions."""
    conn = psycopg2.connect(**postgres_params())
    yield conn
    conn.close()

