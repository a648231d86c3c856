"""Integration tests against a real PostgreSQL database.

These tests exercise the asyncpg store directly: the vote transaction, the
per-team unique constraints, advisory locking under concurrency, chat reads
and the tally recovery sweep.

All tests require a reachable PostgreSQL (see POSTGRES_* variables) and are
skipped otherwise.
"""
