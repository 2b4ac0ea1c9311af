#!/usr/bin/env python3
"""Manual run of the legacy SQLite -> Postgres redemption copy.

The app only attempts the copy once. Use this after fixing whatever made a
``failed`` run fail: ``--force`` clears the flag record first.
"""

import argparse
import json
import os
import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from cents_per_point.db import Database, is_postgres_url, parse_database_config
from cents_per_point.db_migrations import apply_migrations
from cents_per_point.legacy_migration import (
    FLAG_FILENAME,
    FileFlagStore,
    MigrationStatus,
    default_legacy_paths,
    migrate_from_sqlite,
)


def resolve_sqlite_paths(data_dir):
    env_path = os.environ.get("SQLITE_PATH", "").strip()
    if env_path:
        return [Path(env_path)]
    return default_legacy_paths(data_dir)


def main():
    parser = argparse.ArgumentParser(description="Copy legacy SQLite redemptions into Postgres")
    parser.add_argument("--data-dir", default=os.environ.get("DATA_DIR", "instance/data"), help="Directory holding the migration flag file")
    parser.add_argument("--force", action="store_true", help="Clear an existing flag record before migrating")
    args = parser.parse_args()

    database_url = os.environ.get("DATABASE_URL", "").strip()
    if not database_url:
        raise SystemExit("DATABASE_URL is required and must point to Postgres")
    if not is_postgres_url(database_url):
        raise SystemExit("DATABASE_URL must start with postgres:// or postgresql://")

    flag_store = FileFlagStore(Path(args.data_dir) / FLAG_FILENAME)
    previous = flag_store.load()
    if previous is not None:
        if not args.force:
            raise SystemExit(
                f"Migration already recorded as '{previous.status_text}' in {flag_store.path}. "
                "Rerun with --force to clear it."
            )
        print(f"Clearing previous flag record ({previous.status_text})")
        flag_store.clear()

    database = Database(parse_database_config(None, database_url))
    print("Applying schema migrations...")
    apply_migrations(database.config)

    state = migrate_from_sqlite(database, flag_store, resolve_sqlite_paths(args.data_dir))
    print(json.dumps(state.to_dict(), indent=2))
    if state.status is MigrationStatus.FAILED:
        raise SystemExit(1)


if __name__ == "__main__":
    main()
