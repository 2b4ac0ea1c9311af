#!/usr/bin/env python3
import argparse
import json
import os
import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from cents_per_point.db import parse_database_config
from cents_per_point.db_migrations import apply_migrations, get_db_health
from cents_per_point.legacy_migration import FLAG_FILENAME, FileFlagStore, get_migration_status


def main():
    parser = argparse.ArgumentParser(description="Check and print DB schema health and legacy migration status")
    parser.add_argument("db_path", nargs="?", default="instance/cents_per_point.sqlite", help="Path to SQLite DB (ignored when DATABASE_URL is postgres)")
    parser.add_argument("--data-dir", default=os.environ.get("DATA_DIR", "instance/data"), help="Directory holding the migration flag file")
    parser.add_argument("--migrate", action="store_true", help="Apply migrations before checking")
    args = parser.parse_args()

    config = parse_database_config(args.db_path)
    if args.migrate:
        apply_migrations(config)

    report = {
        "schema": get_db_health(config),
        "legacy_migration": get_migration_status(FileFlagStore(Path(args.data_dir) / FLAG_FILENAME)),
    }
    print(json.dumps(report, indent=2, sort_keys=True))


if __name__ == "__main__":
    main()
