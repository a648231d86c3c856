#!/usr/bin/env python3
"""
Check team heart tallies against the vote ledger.

Every team's hearts must equal the number of votes recorded for it. This
script reports teams where the two have drifted (for example after manual
edits to the database) and, with --fix, rewrites hearts from the ledger
while new votes are blocked.

Usage:
    python scripts/reconcile_tallies.py [--fix]

Exit status is 1 when drift was found and left unrepaired.
"""

import argparse
import os
import sys
from typing import Iterable, List, Optional, Sequence, Tuple

import psycopg2
from dotenv import load_dotenv

load_dotenv()

COUNTS_QUERY = """
    SELECT t.id, t.hearts, COUNT(v.seq)::int
    FROM teams t
    LEFT JOIN votes v ON v.team_id = t.id
    GROUP BY t.id, t.hearts, t.seq
    ORDER BY t.seq
"""

# (team_id, stored_hearts, ledger_count)
Drift = Tuple[str, int, int]


def find_drift(rows: Iterable[Sequence]) -> List[Drift]:
    """
    Select the teams whose stored hearts differ from their ledger count.

    Args:
        rows: (team_id, hearts, ledger_count) tuples

    Returns:
        list: The drifted rows, in input order
    """
    return [(team_id, hearts, count) for team_id, hearts, count in rows if hearts != count]


def format_drift(drift: List[Drift]) -> str:
    if not drift:
        return "All tallies match the vote ledger"
    lines = [f"{len(drift)} team(s) drifted:"]
    for team_id, hearts, count in drift:
        lines.append(f"  {team_id}: hearts={hearts}, votes={count} ({count - hearts:+d})")
    return "\n".join(lines)


class TallyReconciler:
    """Compare and repair tallies over a psycopg2 connection."""

    def __init__(self, conn):
        self.conn = conn

    def check(self) -> List[Drift]:
        with self.conn.cursor() as cursor:
            cursor.execute(COUNTS_QUERY)
            rows = cursor.fetchall()
        self.conn.rollback()
        return find_drift(rows)

    def repair(self) -> List[Drift]:
        """Recount and rewrite hearts in one transaction holding a share lock on votes."""
        try:
            with self.conn.cursor() as cursor:
                cursor.execute("LOCK TABLE votes IN SHARE MODE")
                cursor.execute(COUNTS_QUERY)
                drift = find_drift(cursor.fetchall())
                for team_id, _, count in drift:
                    cursor.execute(
                        "UPDATE teams SET hearts = %s, updated_at = NOW() WHERE id = %s",
                        (count, team_id)
                    )
            self.conn.commit()
        except psycopg2.Error:
            self.conn.rollback()
            raise
        return drift


def connect(
    host: str,
    port: int,
    dbname: str,
    user: str,
    password: Optional[str]
):
    try:
        return psycopg2.connect(host=host, port=port, dbname=dbname, user=user, password=password)
    except psycopg2.OperationalError as e:
        print(f"✗ Failed to connect to PostgreSQL: {e}", file=sys.stderr)
        sys.exit(1)


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description='Check team tallies against the vote ledger')
    parser.add_argument('--host', default=os.getenv('POSTGRES_HOST', 'localhost'))
    parser.add_argument('--port', type=int, default=int(os.getenv('POSTGRES_PORT', 5432)))
    parser.add_argument('--dbname', default=os.getenv('POSTGRES_DB', 'contest_db'))
    parser.add_argument('--user', default=os.getenv('POSTGRES_USER', 'contest_user'))
    parser.add_argument('--password', default=os.getenv('POSTGRES_PASSWORD', 'contest_pass'))
    parser.add_argument(
        '--fix',
        action='store_true',
        help='Rewrite drifted hearts from the ledger counts'
    )

    args = parser.parse_args()

    conn = connect(args.host, args.port, args.dbname, args.user, args.password)
    reconciler = TallyReconciler(conn)

    try:
        if args.fix:
            drift = reconciler.repair()
            print(format_drift(drift))
            if drift:
                print(f"✓ Repaired {len(drift)} team(s)")
        else:
            drift = reconciler.check()
            print(format_drift(drift))
            if drift:
                print("Run with --fix to repair")
                sys.exit(1)
    except psycopg2.Error as e:
        print(f"✗ Database error: {e}", file=sys.stderr)
        sys.exit(1)
    finally:
        conn.close()


if __name__ == '__main__':
    main()
