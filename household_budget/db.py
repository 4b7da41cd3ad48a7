import os
import re
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from urllib.parse import urlparse

try:
    import psycopg
    from psycopg.rows import tuple_row
except ImportError:  # pragma: no cover - dependency optional for sqlite-only environments
    psycopg = None
    tuple_row = None

from .validators import PersistenceError


DEFAULT_TIMEOUT_SECONDS = 5
POSTGRES_URL_PREFIXES = ("postgresql://", "postgres://")

DB_ERRORS = (sqlite3.Error,) if psycopg is None else (sqlite3.Error, psycopg.Error)

TABLE_INFO_RE = re.compile(r"\s*PRAGMA\s+table_info\(([^)]+)\)", re.IGNORECASE)
# Quoted literals are matched first so a "?" inside one is left alone.
QMARK_RE = re.compile(r"('(?:[^']|'')*'|\"(?:[^\"]|\"\")*\")|\?")
POSTGRES_COLUMNS_SQL = (
    "SELECT column_name AS name "
    "FROM information_schema.columns "
    "WHERE table_schema = current_schema() AND table_name = %s "
    "ORDER BY ordinal_position"
)


@contextmanager
def database_errors():
    """Re-raise driver errors as ``PersistenceError``."""
    try:
        yield
    except DB_ERRORS as exc:
        raise PersistenceError(str(exc)) from exc


class ResultRow:
    """Postgres row readable by column name or position, like ``sqlite3.Row``."""

    __slots__ = ("_columns", "_values")

    def __init__(self, columns, values):
        self._columns = {name: idx for idx, name in enumerate(columns)}
        self._values = tuple(values)

    def __getitem__(self, key):
        if isinstance(key, str):
            return self._values[self._columns[key]]
        return self._values[key]

    def __iter__(self):
        return iter(self._values)

    def __len__(self):
        return len(self._values)

    def keys(self):
        return list(self._columns)

    def get(self, key, default=None):
        if key in self._columns:
            return self[key]
        return default


class CompatCursor:
    def __init__(self, cursor):
        self._cursor = cursor

    @property
    def rowcount(self):
        return getattr(self._cursor, "rowcount", -1)

    def _columns(self):
        return [getattr(col, "name", None) or col[0] for col in (self._cursor.description or [])]

    def _wrap(self, row):
        if row is None or isinstance(row, sqlite3.Row):
            return row
        return ResultRow(self._columns(), row)

    def fetchone(self):
        with database_errors():
            row = self._cursor.fetchone()
        return self._wrap(row)

    def fetchall(self):
        with database_errors():
            rows = self._cursor.fetchall()
        return [self._wrap(row) for row in rows]


class CompatConnection:
    """One SQLite or Postgres connection speaking qmark SQL.

    Used as a context manager it commits on success and rolls back on error.
    Unlike ``sqlite3.Connection`` it never closes the connection on exit.
    """

    def __init__(self, conn, backend):
        self._conn = conn
        self.backend = backend

    def execute(self, sql, params=None):
        sql, params = rewrite_sql(self.backend, sql, params)
        with database_errors():
            return CompatCursor(self._conn.execute(sql, params or ()))

    def commit(self):
        with database_errors():
            self._conn.commit()

    def rollback(self):
        self._conn.rollback()

    def close(self):
        self._conn.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        if exc_type is None:
            self.commit()
        else:
            self.rollback()
        return False


def is_postgres_url(value):
    return bool(value) and value.startswith(POSTGRES_URL_PREFIXES)


def qmark_to_format(sql):
    return QMARK_RE.sub(lambda match: match.group(1) or "%s", sql)


def rewrite_sql(backend, sql, params):
    if backend != "postgres":
        return sql, params

    table_info = TABLE_INFO_RE.match(sql)
    if table_info:
        return POSTGRES_COLUMNS_SQL, (table_info.group(1).strip().strip("'\""),)

    if "?" in sql:
        sql = qmark_to_format(sql)
    if params is None:
        params = ()
    elif not isinstance(params, (tuple, list, dict)):
        params = (params,)
    return sql, params


def parse_database_config(database_path=None, timeout=DEFAULT_TIMEOUT_SECONDS, database_url=None):
    if database_url is None:
        database_url = os.environ.get("DATABASE_URL", "")
    database_url = database_url.strip()

    config = {
        "backend": "sqlite",
        "database_url": None,
        "database_name": Path(database_path).name if database_path else "sqlite",
        "database_path": database_path,
        "timeout": timeout,
    }
    if is_postgres_url(database_url):
        config.update(
            backend="postgres",
            database_url=database_url,
            database_name=urlparse(database_url).path.lstrip("/") or "postgres",
        )
    return config


def _connect_postgres(config, timeout):
    if psycopg is None:
        raise RuntimeError("psycopg is required when DATABASE_URL points to Postgres")
    with database_errors():
        conn = psycopg.connect(
            config["database_url"],
            row_factory=tuple_row,
            connect_timeout=int(timeout),
            options=f"-c statement_timeout={int(timeout * 1000)}",
        )
    return CompatConnection(conn, backend="postgres")


def _connect_sqlite(config, timeout):
    db_path = config["database_path"]
    if db_path:
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path, timeout=timeout)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute(f"PRAGMA busy_timeout = {int(timeout * 1000)}")
    return CompatConnection(conn, backend="sqlite")


def connect_db(config):
    timeout = config.get("timeout") or DEFAULT_TIMEOUT_SECONDS
    if config["backend"] == "postgres":
        return _connect_postgres(config, timeout)
    return _connect_sqlite(config, timeout)
