#!/usr/bin/env python3
"""Apply the SQL files under sql/ to the configured PostgreSQL database.

Usage:
    DATABASE_URL=postgresql://localhost:5432/kranos_gym python scripts/migrate.py

Files run in name order, each in its own transaction. The schema files are
idempotent (CREATE ... IF NOT EXISTS, ON CONFLICT DO NOTHING), so re-running
is safe.
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

import psycopg

ROOT = Path(__file__).resolve().parent.parent
SQL_DIR = ROOT / "sql"


def apply_migrations(dsn: str, sql_dir: Path = SQL_DIR) -> list[str]:
    applied: list[str] = []
    with psycopg.connect(dsn) as conn:
        for path in sorted(sql_dir.glob("*.sql")):
            with conn.transaction():
                conn.execute(path.read_text())
            applied.append(path.name)
            print(f"applied {path.name}")
    return applied


def main():
    parser = argparse.ArgumentParser(description="Install the auth schema")
    parser.add_argument(
        "--database-url",
        default=os.environ.get("DATABASE_URL"),
        help="PostgreSQL connection string (or set DATABASE_URL env var)",
    )
    args = parser.parse_args()
    if not args.database_url:
        print("Error: --database-url or DATABASE_URL environment variable required")
        sys.exit(1)
    try:
        apply_migrations(args.database_url)
    except psycopg.Error as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
