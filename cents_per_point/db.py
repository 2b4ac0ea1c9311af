import os
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from urllib.parse import quote, urlparse

import psycopg
from psycopg.rows import tuple_row


DB_ERRORS = (sqlite3.Error, psycopg.Error)


class CompatRow:
    def __init__(self, columns, values):
        self._columns = tuple(columns)
        self._values = tuple(values)
        self._lookup = {name: idx for idx, name in enumerate(self._columns)}

    def __getitem__(self, key):
        if isinstance(key, str):
            return self._values[self._lookup[key]]
        return self._values[key]

    def __iter__(self):
        return iter(self._values)

    def __len__(self):
        return len(self._values)

    def keys(self):
        return list(self._columns)


class CompatCursor:
    def __init__(self, cursor):
        self._cursor = cursor

    @property
    def rowcount(self):
        return getattr(self._cursor, "rowcount", -1)

    @property
    def description(self):
        return self._cursor.description

    def fetchone(self):
        row = self._cursor.fetchone()
        return self._adapt_row(row)

    def fetchall(self):
        return [self._adapt_row(row) for row in self._cursor.fetchall()]

    def _adapt_row(self, row):
        if row is None:
            return None
        if isinstance(row, sqlite3.Row):
            return row
        columns = [col.name if hasattr(col, "name") else col[0] for col in (self.description or [])]
        return CompatRow(columns, row)


class CompatConnection:
    def __init__(self, conn, backend):
        self._conn = conn
        self.backend = backend

    def execute(self, sql, params=None):
        rewritten_sql, rewritten_params = rewrite_sql(self.backend, sql, params)
        cur = self._conn.execute(rewritten_sql, rewritten_params or ())
        return CompatCursor(cur)

    def begin(self):
        # psycopg opens a transaction implicitly on the first statement.
        if self.backend == "sqlite" and not self._conn.in_transaction:
            self._conn.execute("BEGIN")

    @contextmanager
    def savepoint(self, name):
        self.execute(f"SAVEPOINT {name}")
        try:
            yield
        except DB_ERRORS:
            self.execute(f"ROLLBACK TO SAVEPOINT {name}")
            self.execute(f"RELEASE SAVEPOINT {name}")
            raise
        self.execute(f"RELEASE SAVEPOINT {name}")

    def close(self):
        self._conn.close()

    def commit(self):
        self._conn.commit()

    def rollback(self):
        self._conn.rollback()


def is_postgres_url(value):
    return bool(value) and (value.startswith("postgresql://") or value.startswith("postgres://"))


def _convert_qmark_placeholders(sql):
    pieces = sql.split("?")
    if len(pieces) == 1:
        return sql
    return "%s".join(pieces)


def rewrite_sql(backend, sql, params):
    rewritten_sql = sql
    rewritten_params = params

    if backend == "postgres":
        if "last_insert_rowid()" in rewritten_sql:
            rewritten_sql = rewritten_sql.replace("last_insert_rowid()", "lastval()")
        if "?" in rewritten_sql:
            rewritten_sql = _convert_qmark_placeholders(rewritten_sql)

        if rewritten_params is None:
            rewritten_params = ()
        elif not isinstance(rewritten_params, (tuple, list, dict)):
            rewritten_params = (rewritten_params,)

    return rewritten_sql, rewritten_params


def database_url_from_env(environ=None):
    environ = os.environ if environ is None else environ
    db_url = environ.get("DATABASE_URL", "").strip()
    if db_url:
        return db_url

    host = environ.get("DB_HOST", "").strip()
    if not host:
        return ""
    user = quote(environ.get("DB_USER", "postgres"), safe="")
    password = quote(environ.get("DB_PASSWORD", "password"), safe="")
    port = environ.get("DB_PORT", "5432")
    name = environ.get("DB_NAME", "cpp_database")
    return f"postgresql://{user}:{password}@{host}:{port}/{name}"


def parse_database_config(database_path=None, database_url=None):
    db_url = (database_url if database_url is not None else database_url_from_env()).strip()
    if is_postgres_url(db_url):
        parsed = urlparse(db_url)
        db_name = parsed.path.lstrip("/") or "postgres"
        return {
            "backend": "postgres",
            "database_url": db_url,
            "database_name": db_name,
            "database_path": database_path,
        }

    return {
        "backend": "sqlite",
        "database_url": None,
        "database_name": Path(database_path).name if database_path else "sqlite",
        "database_path": database_path,
    }


def connect_db(config):
    backend = config["backend"]
    if backend == "postgres":
        conn = psycopg.connect(config["database_url"], row_factory=tuple_row)
        return CompatConnection(conn, backend="postgres")

    db_path = config["database_path"]
    if db_path:
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute("PRAGMA busy_timeout = 5000")
    return CompatConnection(conn, backend="sqlite")


class Database:
    """Relational store handle shared by the app, startup tasks and scripts.

    Connections are opened per unit of work and never held across requests.
    """

    def __init__(self, config):
        self.config = dict(config)

    @property
    def backend(self):
        return self.config["backend"]

    @property
    def location(self):
        if self.backend == "postgres":
            return "postgresql"
        return self.config["database_path"] or "sqlite"

    def connect(self):
        return connect_db(self.config)

    @contextmanager
    def connection(self):
        conn = self.connect()
        try:
            yield conn
        finally:
            conn.close()
