import argparse
import json
import logging
from datetime import datetime, timezone

from .db import connect_db, parse_database_config


logger = logging.getLogger(__name__)

REQUIRED_TABLES = {
    "trips": {
        "columns": {"id", "name", "description", "image", "start_date", "end_date", "created_at", "updated_at"},
        "indexes": set(),
    },
    "redemptions": {
        "columns": {
            "id",
            "date",
            "source",
            "points",
            "value",
            "taxes",
            "notes",
            "is_travel_credit",
            "trip_id",
            "created_at",
            "updated_at",
        },
        "indexes": {
            "idx_redemptions_date",
            "idx_redemptions_source",
            "idx_redemptions_trip_id",
        },
    },
}


def backend_name(conn):
    return getattr(conn, "backend", "sqlite")


def table_exists(conn, name):
    if backend_name(conn) == "postgres":
        row = conn.execute(
            "SELECT 1 FROM information_schema.tables WHERE table_schema = current_schema() AND table_name = ?",
            (name,),
        ).fetchone()
        return row is not None

    row = conn.execute("SELECT 1 FROM sqlite_master WHERE type='table' AND name = ?", (name,)).fetchone()
    return row is not None


def column_exists(conn, table, column):
    if not table_exists(conn, table):
        return False
    return column in get_table_columns(conn, table)


def index_exists(conn, index_name):
    if backend_name(conn) == "postgres":
        row = conn.execute(
            "SELECT 1 FROM pg_indexes WHERE schemaname = current_schema() AND indexname = ?",
            (index_name,),
        ).fetchone()
        return row is not None

    row = conn.execute("SELECT 1 FROM sqlite_master WHERE type='index' AND name = ?", (index_name,)).fetchone()
    return row is not None


def add_column_if_missing(conn, table, col_def_sql):
    column = col_def_sql.split()[0]
    if backend_name(conn) == "postgres":
        conn.execute(f"ALTER TABLE {table} ADD COLUMN IF NOT EXISTS {col_def_sql}")
    elif not column_exists(conn, table, column):
        conn.execute(f"ALTER TABLE {table} ADD COLUMN {col_def_sql}")


def create_index_if_missing(conn, index_name, create_sql):
    if not index_exists(conn, index_name):
        conn.execute(create_sql)


def ensure_table(conn, create_sql):
    if backend_name(conn) == "postgres":
        create_sql = create_sql.replace("INTEGER PRIMARY KEY AUTOINCREMENT", "SERIAL PRIMARY KEY")
    conn.execute(create_sql)


def get_table_columns(conn, table):
    if backend_name(conn) == "postgres":
        rows = conn.execute(
            "SELECT column_name FROM information_schema.columns WHERE table_schema = current_schema() AND table_name = ? ORDER BY ordinal_position",
            (table,),
        ).fetchall()
        return {row[0] for row in rows}

    rows = conn.execute(f"PRAGMA table_info({table})").fetchall()
    return {row[1] for row in rows}


def migration_001(conn):
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS trips (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name VARCHAR(255) NOT NULL,
            description TEXT,
            image TEXT,
            start_date DATE,
            end_date DATE,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
        """,
    )
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS redemptions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            date DATE NOT NULL,
            source VARCHAR(255) NOT NULL,
            points INTEGER NOT NULL DEFAULT 0 CHECK(points >= 0),
            value NUMERIC(10,2) NOT NULL DEFAULT 0,
            taxes NUMERIC(10,2) DEFAULT 0,
            notes TEXT,
            is_travel_credit BOOLEAN DEFAULT FALSE,
            trip_id INTEGER REFERENCES trips (id),
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
        """,
    )


def migration_002(conn):
    # Stores created before trips and travel credits existed.
    for col_def in [
        "taxes NUMERIC(10,2) DEFAULT 0",
        "notes TEXT",
        "is_travel_credit BOOLEAN DEFAULT FALSE",
        "trip_id INTEGER REFERENCES trips (id)",
        "created_at TIMESTAMP",
        "updated_at TIMESTAMP",
    ]:
        add_column_if_missing(conn, "redemptions", col_def)

    for col_def in [
        "description TEXT",
        "image TEXT",
        "start_date DATE",
        "end_date DATE",
        "created_at TIMESTAMP",
        "updated_at TIMESTAMP",
    ]:
        add_column_if_missing(conn, "trips", col_def)

    conn.execute("UPDATE redemptions SET taxes = 0 WHERE taxes IS NULL")
    conn.execute("UPDATE redemptions SET is_travel_credit = FALSE WHERE is_travel_credit IS NULL")


def migration_003(conn):
    create_index_if_missing(
        conn,
        "idx_redemptions_date",
        "CREATE INDEX idx_redemptions_date ON redemptions(date)",
    )
    create_index_if_missing(
        conn,
        "idx_redemptions_source",
        "CREATE INDEX idx_redemptions_source ON redemptions(source)",
    )
    create_index_if_missing(
        conn,
        "idx_redemptions_trip_id",
        "CREATE INDEX idx_redemptions_trip_id ON redemptions(trip_id)",
    )


MIGRATIONS = [
    (1, migration_001),
    (2, migration_002),
    (3, migration_003),
]


def _ensure_schema_version_table(conn):
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_version (
            version INTEGER PRIMARY KEY,
            applied_at TEXT NOT NULL
        )
        """
    )


def current_schema_version(conn):
    _ensure_schema_version_table(conn)
    row = conn.execute("SELECT MAX(version) AS version FROM schema_version").fetchone()
    return int(row[0] or 0)


def validate_required_schema(conn):
    health = inspect_db_health(conn)
    if health["missing_tables"] or any(health["missing_columns"].values()) or health["missing_indexes"]:
        raise RuntimeError(
            "Schema invariants failed after migrations. "
            f"Missing tables={health['missing_tables']}, missing columns={health['missing_columns']}, "
            f"missing indexes={health['missing_indexes']}"
        )


def _apply(conn, version, migration_fn, record_version):
    try:
        migration_fn(conn)
        if record_version:
            conn.execute(
                "INSERT INTO schema_version(version, applied_at) VALUES (?, ?)",
                (version, datetime.now(timezone.utc).isoformat(timespec="seconds")),
            )
        conn.commit()
    except Exception:
        conn.rollback()
        raise


def _run_migrations(conn):
    _ensure_schema_version_table(conn)
    conn.commit()

    applied_versions = {
        row[0] for row in conn.execute("SELECT version FROM schema_version").fetchall()
    }

    for version, migration_fn in MIGRATIONS:
        if version in applied_versions:
            continue
        logger.info("Applying schema migration %03d", version)
        _apply(conn, version, migration_fn, record_version=True)

    if not inspect_db_health(conn)["ok"]:
        # Every step only creates what is missing, so replaying them repairs drift.
        logger.warning("Schema incomplete after versioned migrations; re-applying all steps")
        for version, migration_fn in MIGRATIONS:
            _apply(conn, version, migration_fn, record_version=False)

    validate_required_schema(conn)


def apply_migrations(db_or_config_or_path):
    if hasattr(db_or_config_or_path, "execute"):
        _run_migrations(db_or_config_or_path)
        return

    config = db_or_config_or_path if isinstance(db_or_config_or_path, dict) else parse_database_config(db_or_config_or_path)
    conn = connect_db(config)
    try:
        _run_migrations(conn)
    finally:
        conn.close()


def inspect_db_health(conn):
    _ensure_schema_version_table(conn)
    missing_tables = []
    missing_columns = {}
    missing_indexes = []

    for table_name, table_spec in REQUIRED_TABLES.items():
        if not table_exists(conn, table_name):
            missing_tables.append(table_name)
            missing_columns[table_name] = sorted(table_spec["columns"])
            missing_indexes.extend(sorted(table_spec["indexes"]))
            continue

        table_cols = get_table_columns(conn, table_name)
        absent_cols = sorted(col for col in table_spec["columns"] if col not in table_cols)
        missing_columns[table_name] = absent_cols

        for idx in sorted(table_spec["indexes"]):
            if not index_exists(conn, idx):
                missing_indexes.append(idx)

    return {
        "ok": not missing_tables and not any(missing_columns.values()) and not missing_indexes,
        "schema_version": current_schema_version(conn),
        "missing_tables": missing_tables,
        "missing_columns": missing_columns,
        "missing_indexes": sorted(set(missing_indexes)),
    }


def get_db_health(db_config_or_path):
    config = db_config_or_path if isinstance(db_config_or_path, dict) else parse_database_config(db_config_or_path)
    conn = connect_db(config)
    try:
        return inspect_db_health(conn)
    finally:
        conn.close()


def main():
    parser = argparse.ArgumentParser(description="Check Cents Per Point DB schema health")
    parser.add_argument("db_path", help="Path to SQLite DB file")
    args = parser.parse_args()
    print(json.dumps(get_db_health(args.db_path), indent=2, sort_keys=True))


if __name__ == "__main__":
    main()
