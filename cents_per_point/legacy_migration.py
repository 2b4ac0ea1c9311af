"""One-time copy of redemptions from the legacy SQLite file into the store.

Whether the copy has been attempted is remembered in a JSON flag record.
Once any outcome is recorded the copy is never tried again automatically;
clearing the record (see ``scripts/migrate_legacy.py``) is the only way to
re-run it.
"""

import enum
import json
import logging
import shutil
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from .db import DB_ERRORS


logger = logging.getLogger(__name__)

FLAG_FILENAME = ".migrated"
LEGACY_FILENAME = "database.sqlite"
BACKUP_SUFFIX = ".backup"


class MigrationStatus(str, enum.Enum):
    PENDING = "pending"
    NO_SQLITE_FOUND = "no_sqlite_found"
    EMPTY_SQLITE = "empty_sqlite"
    SKIPPED_EXISTING_DATA = "skipped_existing_data"
    COMPLETED = "completed"
    FAILED = "failed"


_OPTIONAL_KEYS = [
    ("migrated_count", "migratedCount"),
    ("existing_count", "existingCount"),
    ("message", "message"),
    ("error", "error"),
    ("source", "source"),
    ("target", "target"),
    ("sqlite_location", "sqliteLocation"),
    ("backup_location", "backupLocation"),
]


@dataclass
class MigrationState:
    status: MigrationStatus
    timestamp: str = None
    migrated_count: int = None
    existing_count: int = None
    message: str = None
    error: str = None
    source: str = None
    target: str = None
    sqlite_location: str = None
    backup_location: str = None

    def __post_init__(self):
        if self.status is not None:
            self.status = MigrationStatus(self.status)

    @property
    def status_text(self):
        return self.status.value if self.status is not None else "unknown"

    def to_dict(self):
        data = {"timestamp": self.timestamp, "status": self.status.value if self.status is not None else None}
        for attr, key in _OPTIONAL_KEYS:
            value = getattr(self, attr)
            if value is not None:
                data[key] = value
        return data

    @classmethod
    def from_dict(cls, data):
        kwargs = {attr: data.get(key) for attr, key in _OPTIONAL_KEYS}
        raw_status = data.get("status")
        try:
            status = MigrationStatus(raw_status) if raw_status is not None else None
        except (ValueError, TypeError):
            status = MigrationStatus.FAILED
            kwargs["error"] = kwargs["error"] or f"Unrecognized migration status {raw_status!r}"
        return cls(status=status, timestamp=data.get("timestamp"), **kwargs)


class FileFlagStore:
    """Flag record kept as pretty-printed JSON on disk."""

    def __init__(self, path):
        self.path = Path(path)

    def load(self):
        if not self.path.exists():
            return None
        content = self.path.read_text(encoding="utf-8", errors="replace").strip()
        try:
            data = json.loads(content)
        except ValueError:
            # Very old flags held a bare timestamp.
            return MigrationState(status=MigrationStatus.COMPLETED, timestamp=content)
        if isinstance(data, (int, float, str)) and not isinstance(data, bool):
            return MigrationState(status=MigrationStatus.COMPLETED, timestamp=str(data))
        if not isinstance(data, dict):
            return MigrationState(
                status=MigrationStatus.FAILED,
                error=f"Unrecognized migration flag record in {self.path}: {content[:200]}",
            )
        return MigrationState.from_dict(data)

    def save(self, state):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(state.to_dict(), indent=2), encoding="utf-8")

    def clear(self):
        if self.path.exists():
            self.path.unlink()


class MemoryFlagStore:
    def __init__(self, state=None):
        self.state = state

    def load(self):
        return self.state

    def save(self, state):
        self.state = state

    def clear(self):
        self.state = None


def default_legacy_paths(data_dir):
    return [
        Path(data_dir) / LEGACY_FILENAME,
        Path("/app/data") / LEGACY_FILENAME,
        Path("data") / LEGACY_FILENAME,
    ]


def find_legacy_database(candidate_paths):
    for candidate in candidate_paths:
        path = Path(candidate)
        if path.is_file():
            return path
    return None


def read_legacy_redemptions(sqlite_path):
    conn = sqlite3.connect(f"{Path(sqlite_path).resolve().as_uri()}?mode=ro", uri=True)
    conn.row_factory = sqlite3.Row
    try:
        return conn.execute("SELECT * FROM redemptions ORDER BY id").fetchall()
    finally:
        conn.close()


def legacy_flag(value):
    return value in (1, True, "1", "true", "TRUE", "True")


def legacy_row_params(row):
    columns = set(row.keys())

    def pick(name, default=None):
        if name not in columns or row[name] is None:
            return default
        return row[name]

    return (
        pick("date"),
        pick("source"),
        pick("points", 0),
        pick("value", 0),
        pick("taxes", 0),
        pick("notes", ""),
        legacy_flag(pick("is_travel_credit", False)),
    )


def count_redemptions(conn):
    row = conn.execute("SELECT COUNT(*) AS count FROM redemptions").fetchone()
    return int(row[0])


def get_migration_status(flag_store):
    try:
        state = flag_store.load()
    except (OSError, ValueError, AttributeError) as exc:
        return {"status": "unknown", "error": str(exc)}
    if state is None:
        return {"status": MigrationStatus.PENDING.value, "message": "Migration not yet attempted"}
    return state.to_dict()


def _record(flag_store, state):
    state.timestamp = state.timestamp or datetime.now(timezone.utc).isoformat()
    try:
        flag_store.save(state)
    except OSError:
        logger.exception("Failed to write migration flag (status=%s)", state.status_text)
    return state


def migrate_from_sqlite(database, flag_store, candidate_paths):
    """Copy legacy redemptions into ``database`` once; never raises.

    Returns the ``MigrationState`` that was recorded, or the previously
    recorded one when the migration had already been attempted.
    """
    existing = flag_store.load()
    if existing is not None:
        logger.info("Legacy migration already attempted (status=%s), skipping", existing.status_text)
        return existing

    sqlite_path = find_legacy_database(candidate_paths)
    if sqlite_path is None:
        logger.info("No legacy SQLite database found, starting fresh")
        return _record(
            flag_store,
            MigrationState(status=MigrationStatus.NO_SQLITE_FOUND, message=f"Started fresh with {database.location}"),
        )

    logger.info("Legacy SQLite database found at %s, starting migration", sqlite_path)
    try:
        legacy_rows = read_legacy_redemptions(sqlite_path)
    except sqlite3.Error as exc:
        logger.error("Could not read legacy database %s: %s", sqlite_path, exc)
        return _record(
            flag_store,
            MigrationState(status=MigrationStatus.FAILED, error=str(exc), sqlite_location=str(sqlite_path)),
        )

    if not legacy_rows:
        logger.info("Legacy database is empty, nothing to migrate")
        return _record(
            flag_store,
            MigrationState(
                status=MigrationStatus.EMPTY_SQLITE,
                message="SQLite database was empty",
                sqlite_location=str(sqlite_path),
            ),
        )

    try:
        conn = database.connect()
    except DB_ERRORS as exc:
        logger.error("Could not connect to target store for legacy migration: %s", exc)
        return _record(
            flag_store,
            MigrationState(status=MigrationStatus.FAILED, error=str(exc), sqlite_location=str(sqlite_path)),
        )

    try:
        conn.begin()
        existing_count = count_redemptions(conn)
        if existing_count > 0:
            conn.rollback()
            logger.warning("Target store already has %s redemptions, skipping legacy migration", existing_count)
            return _record(
                flag_store,
                MigrationState(
                    status=MigrationStatus.SKIPPED_EXISTING_DATA,
                    existing_count=existing_count,
                    message=f"Target store already had {existing_count} redemptions",
                    sqlite_location=str(sqlite_path),
                ),
            )

        for row in legacy_rows:
            conn.execute(
                "INSERT INTO redemptions (date, source, points, value, taxes, notes, is_travel_credit) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                legacy_row_params(row),
            )
        conn.commit()
        verified = count_redemptions(conn)
    except DB_ERRORS as exc:
        conn.rollback()
        logger.error("Legacy migration failed, manual migration may be required: %s", exc)
        return _record(
            flag_store,
            MigrationState(status=MigrationStatus.FAILED, error=str(exc), sqlite_location=str(sqlite_path)),
        )
    finally:
        conn.close()

    migrated = len(legacy_rows)
    logger.info("Migrated %s redemptions (%s now in store)", migrated, verified)

    backup_path = sqlite_path.with_name(sqlite_path.name + BACKUP_SUFFIX)
    try:
        shutil.copy2(sqlite_path, backup_path)
        logger.info("Legacy database backup created: %s", backup_path)
    except OSError:
        logger.exception("Could not back up legacy database %s", sqlite_path)
        backup_path = None

    return _record(
        flag_store,
        MigrationState(
            status=MigrationStatus.COMPLETED,
            migrated_count=migrated,
            source="sqlite",
            target=database.location,
            sqlite_location=str(sqlite_path),
            backup_location=str(backup_path) if backup_path else None,
        ),
    )
