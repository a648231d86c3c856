#!/usr/bin/env python3
"""
Seed contest teams into PostgreSQL.

Reads a JSON file holding either a list of teams or {"teams": [...]} and
inserts each team. Existing teams are skipped unless --update is given, in
which case their descriptive fields are overwritten. Hearts, comments and
votes are never touched.

Usage:
    python scripts/load_teams.py teams.json [--update] [--create-schema]

Environment Variables:
    POSTGRES_HOST: PostgreSQL host (default: localhost)
    POSTGRES_PORT: PostgreSQL port (default: 5432)
    POSTGRES_DB: Database name (default: contest_db)
    POSTGRES_USER: Database user (default: contest_user)
    POSTGRES_PASSWORD: Database password (default: contest_pass)
"""

import argparse
import json
import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import psycopg2
from dotenv import load_dotenv
from psycopg2.extras import Json
from tqdm import tqdm

from services.shared import REQUIRED_TEAM_FIELDS, TeamStatus, validate_team_status

load_dotenv()

TEXT_FIELDS = ("challenge", "approach")
LIST_FIELDS = ("members", "technologies")
URL_FIELDS = ("scratch_url", "image_url")


def read_teams(path: Path) -> List[Dict[str, Any]]:
    """
    Read raw team entries from a JSON file.

    Args:
        path: File holding a list of teams or {"teams": [...]}

    Returns:
        list: Raw team dictionaries

    Raises:
        ValueError: If the file has neither shape
    """
    with open(path, 'r', encoding='utf-8') as f:
        data = json.load(f)

    if isinstance(data, list):
        return data
    if isinstance(data, dict) and isinstance(data.get('teams'), list):
        return data['teams']
    raise ValueError(f"Unexpected JSON format in {path}: expected a list or a dict with 'teams' key")


def _as_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [item.strip() for item in value.split(',') if item.strip()]
    return [str(item).strip() for item in value if str(item).strip()]


def normalize_team(entry: Dict[str, Any]) -> Dict[str, Any]:
    """
    Turn a raw entry into the column values of one teams row.

    Members and technologies may be given as lists or comma-separated strings.

    Raises:
        ValueError: If the id or a required field is missing, or the status is invalid
    """
    if not isinstance(entry, dict):
        raise ValueError(f"Team entry must be an object, got {type(entry).__name__}")

    team_id = str(entry.get('id') or '').strip()
    if not team_id:
        raise ValueError("Team entry has no id")

    team = {'id': team_id}
    for name in REQUIRED_TEAM_FIELDS:
        value = str(entry.get(name) or '').strip()
        if not value:
            raise ValueError(f"Team {team_id}: field '{name}' is required")
        team[name] = value

    for name in TEXT_FIELDS:
        team[name] = str(entry.get(name) or '').strip()
    for name in LIST_FIELDS:
        team[name] = _as_list(entry.get(name))
    for name in URL_FIELDS:
        team[name] = entry.get(name) or None

    status = entry.get('status') or TeamStatus.UPCOMING.value
    if not validate_team_status(status):
        raise ValueError(f"Team {team_id}: invalid status '{status}'")
    team['status'] = status
    team['editing_allowed'] = bool(entry.get('editing_allowed', False))

    return team


class TeamLoader:
    """Insert teams into PostgreSQL."""

    def __init__(
        self,
        host: str = 'localhost',
        port: int = 5432,
        dbname: str = 'contest_db',
        user: str = 'contest_user',
        password: Optional[str] = None
    ):
        self.conn_params = {
            'host': host,
            'port': port,
            'dbname': dbname,
            'user': user,
            'password': password
        }
        self.conn = None

    def connect(self) -> bool:
        """
        Connect to PostgreSQL.

        Returns:
            bool: True if connection successful
        """
        try:
            self.conn = psycopg2.connect(**self.conn_params)
            print(f"✓ Connected to PostgreSQL at {self.conn_params['host']}:{self.conn_params['port']}")
            return True
        except psycopg2.OperationalError as e:
            print(f"✗ Failed to connect to PostgreSQL: {e}", file=sys.stderr)
            return False

    def create_schema(self):
        """Create the contest tables if they do not exist yet."""
        from services.contest_api.database import SCHEMA

        with self.conn.cursor() as cursor:
            cursor.execute(SCHEMA)
        self.conn.commit()
        print("✓ Schema verified")

    def load(self, teams: List[Dict[str, Any]], update_existing: bool = False) -> Dict[str, int]:
        """
        Insert normalized teams, one transaction per team.

        Args:
            teams: Output of normalize_team
            update_existing: Overwrite descriptive fields of teams that already exist

        Returns:
            dict: Counts of inserted, updated, skipped and failed teams
        """
        if not self.conn:
            raise RuntimeError("Not connected to PostgreSQL. Call connect() first.")

        stats = {'inserted': 0, 'updated': 0, 'skipped': 0, 'errors': 0}

        if update_existing:
            conflict = """
                ON CONFLICT (id) DO UPDATE SET
                    name = EXCLUDED.name,
                    title = EXCLUDED.title,
                    description = EXCLUDED.description,
                    challenge = EXCLUDED.challenge,
                    approach = EXCLUDED.approach,
                    members = EXCLUDED.members,
                    technologies = EXCLUDED.technologies,
                    scratch_url = EXCLUDED.scratch_url,
                    image_url = EXCLUDED.image_url,
                    status = EXCLUDED.status,
                    editing_allowed = EXCLUDED.editing_allowed,
                    updated_at = NOW()
            """
        else:
            conflict = "ON CONFLICT (id) DO NOTHING"

        query = f"""
            INSERT INTO teams
            (id, name, title, description, challenge, approach, members,
             technologies, scratch_url, image_url, status, editing_allowed)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            {conflict}
            RETURNING (xmax = 0) AS inserted
        """

        for team in tqdm(teams, desc="Loading teams", unit="teams"):
            try:
                with self.conn.cursor() as cursor:
                    cursor.execute(query, (
                        team['id'], team['name'], team['title'], team['description'],
                        team['challenge'], team['approach'], Json(team['members']),
                        Json(team['technologies']), team['scratch_url'], team['image_url'],
                        team['status'], team['editing_allowed']
                    ))
                    row = cursor.fetchone()
                self.conn.commit()
            except psycopg2.Error as e:
                self.conn.rollback()
                print(f"\n✗ Error loading team {team['id']}: {e}", file=sys.stderr)
                stats['errors'] += 1
                continue

            if row is None:
                stats['skipped'] += 1
            elif row[0]:
                stats['inserted'] += 1
            else:
                stats['updated'] += 1

        return stats

    def close(self):
        if self.conn:
            self.conn.close()


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description='Seed contest teams into PostgreSQL')
    parser.add_argument('teams_file', type=Path, help='JSON file with the teams')
    parser.add_argument(
        '--host',
        default=os.getenv('POSTGRES_HOST', 'localhost'),
        help='PostgreSQL host (default: localhost)'
    )
    parser.add_argument(
        '--port',
        type=int,
        default=int(os.getenv('POSTGRES_PORT', 5432)),
        help='PostgreSQL port (default: 5432)'
    )
    parser.add_argument('--dbname', default=os.getenv('POSTGRES_DB', 'contest_db'))
    parser.add_argument('--user', default=os.getenv('POSTGRES_USER', 'contest_user'))
    parser.add_argument('--password', default=os.getenv('POSTGRES_PASSWORD', 'contest_pass'))
    parser.add_argument(
        '--update',
        action='store_true',
        help='Overwrite descriptive fields of existing teams'
    )
    parser.add_argument(
        '--create-schema',
        action='store_true',
        help='Create the contest tables before loading'
    )

    args = parser.parse_args()

    try:
        teams = [normalize_team(entry) for entry in read_teams(args.teams_file)]
    except (OSError, ValueError) as e:
        print(f"✗ {e}", file=sys.stderr)
        sys.exit(1)

    print(f"Found {len(teams)} team(s) in {args.teams_file}")

    loader = TeamLoader(
        host=args.host,
        port=args.port,
        dbname=args.dbname,
        user=args.user,
        password=args.password
    )
    if not loader.connect():
        sys.exit(1)

    try:
        if args.create_schema:
            loader.create_schema()
        stats = loader.load(teams, update_existing=args.update)

        print(f"\n✓ Load complete!")
        print(f"  Inserted: {stats['inserted']}")
        print(f"  Updated: {stats['updated']}")
        print(f"  Skipped (already present): {stats['skipped']}")
        if stats['errors'] > 0:
            print(f"  Errors: {stats['errors']}")
            sys.exit(1)

    except KeyboardInterrupt:
        print("\n\n✗ Load interrupted by user", file=sys.stderr)
        sys.exit(1)
    finally:
        loader.close()


if __name__ == '__main__':
    main()
