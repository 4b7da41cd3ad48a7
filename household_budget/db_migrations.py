import argparse
import json
import sys
from datetime import datetime, timezone

from .db import connect_db, parse_database_config
from .validators import DatabaseInitError


REQUIRED_COLUMNS = {
    "households": {"id", "name", "pin_hash", "timezone", "auto_rollover_budget", "created_at"},
    "categories": {"id", "household_id", "name", "color", "created_at"},
    "transactions": {
        "id",
        "household_id",
        "category_id",
        "amount_cents",
        "description",
        "date",
        "type",
        "created_at",
        "updated_at",
    },
    "monthly_budgets": {"id", "household_id", "category_id", "month", "budgeted_cents", "created_at"},
    "category_keywords": {"id", "household_id", "category_id", "keyword", "created_at"},
    "merchant_patterns": {"id", "household_id", "merchant_name", "category_id", "last_used_at"},
    "auth_attempts": {"ip_address", "attempt_count", "last_attempt_at", "lockout_until"},
    "idempotency_keys": {"key", "household_id", "result_json", "created_at", "expires_at"},
    "import_staging": {"import_id", "household_id", "state_json", "created_at", "updated_at"},
}

# (index name, table, indexed columns)
INDEXES = [
    ("idx_categories_household", "categories", "household_id"),
    ("idx_transactions_household", "transactions", "household_id"),
    ("idx_transactions_category", "transactions", "category_id"),
    ("idx_transactions_date", "transactions", "date"),
    ("idx_transactions_household_date_amount", "transactions", "household_id, date, amount_cents"),
    ("idx_monthly_budgets_household_month", "monthly_budgets", "household_id, month"),
    ("idx_category_keywords_household", "category_keywords", "household_id"),
    ("idx_merchant_patterns_household", "merchant_patterns", "household_id"),
    ("idx_idempotency_keys_expires", "idempotency_keys", "expires_at"),
    ("idx_import_staging_created_at", "import_staging", "created_at"),
]

CATALOG_SQL = {
    "sqlite": {
        "table": "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?",
        "index": "SELECT 1 FROM sqlite_master WHERE type = 'index' AND name = ?",
    },
    "postgres": {
        "table": "SELECT 1 FROM information_schema.tables WHERE table_schema = current_schema() AND table_name = ?",
        "index": "SELECT 1 FROM pg_indexes WHERE schemaname = current_schema() AND indexname = ?",
    },
}


def backend_name(conn):
    return getattr(conn, "backend", "sqlite")


def _catalog_has(conn, kind, name):
    return conn.execute(CATALOG_SQL[backend_name(conn)][kind], (name,)).fetchone() is not None


def table_exists(conn, name):
    return _catalog_has(conn, "table", name)


def index_exists(conn, name):
    return _catalog_has(conn, "index", name)


def get_table_columns(conn, table):
    # On Postgres the connection rewrites this PRAGMA into an information_schema query.
    rows = conn.execute(f"PRAGMA table_info({table})").fetchall()
    name_position = 0 if backend_name(conn) == "postgres" else 1
    return {row[name_position] for row in rows}


def add_column_if_missing(conn, table, column_sql):
    if backend_name(conn) == "postgres":
        conn.execute(f"ALTER TABLE {table} ADD COLUMN IF NOT EXISTS {column_sql}")
        return
    column = column_sql.split()[0]
    if table_exists(conn, table) and column not in get_table_columns(conn, table):
        conn.execute(f"ALTER TABLE {table} ADD COLUMN {column_sql}")


def migration_001(conn):
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS households (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL DEFAULT 'My Household',
            pin_hash TEXT NOT NULL,
            created_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS categories (
            id TEXT PRIMARY KEY,
            household_id TEXT NOT NULL,
            name TEXT NOT NULL,
            color TEXT NOT NULL DEFAULT '#6366f1',
            created_at TEXT NOT NULL,
            FOREIGN KEY (household_id) REFERENCES households (id) ON DELETE CASCADE
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS transactions (
            id TEXT PRIMARY KEY,
            household_id TEXT NOT NULL,
            category_id TEXT,
            amount_cents BIGINT NOT NULL,
            description TEXT,
            date TEXT NOT NULL,
            type TEXT NOT NULL DEFAULT 'expense',
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            FOREIGN KEY (household_id) REFERENCES households (id) ON DELETE CASCADE,
            FOREIGN KEY (category_id) REFERENCES categories (id) ON DELETE SET NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS monthly_budgets (
            id TEXT PRIMARY KEY,
            household_id TEXT NOT NULL,
            category_id TEXT NOT NULL,
            month TEXT NOT NULL,
            budgeted_cents BIGINT NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            UNIQUE(household_id, category_id, month),
            FOREIGN KEY (household_id) REFERENCES households (id) ON DELETE CASCADE,
            FOREIGN KEY (category_id) REFERENCES categories (id) ON DELETE CASCADE
        )
        """
    )


def migration_002(conn):
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS category_keywords (
            id TEXT PRIMARY KEY,
            household_id TEXT NOT NULL,
            category_id TEXT NOT NULL,
            keyword TEXT NOT NULL,
            created_at TEXT NOT NULL,
            UNIQUE(category_id, keyword),
            FOREIGN KEY (household_id) REFERENCES households (id) ON DELETE CASCADE,
            FOREIGN KEY (category_id) REFERENCES categories (id) ON DELETE CASCADE
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS merchant_patterns (
            id TEXT PRIMARY KEY,
            household_id TEXT NOT NULL,
            merchant_name TEXT NOT NULL,
            category_id TEXT NOT NULL,
            last_used_at TEXT NOT NULL,
            UNIQUE(household_id, merchant_name, category_id),
            FOREIGN KEY (household_id) REFERENCES households (id) ON DELETE CASCADE,
            FOREIGN KEY (category_id) REFERENCES categories (id) ON DELETE CASCADE
        )
        """
    )


def migration_003(conn):
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS auth_attempts (
            ip_address TEXT PRIMARY KEY,
            attempt_count INTEGER NOT NULL DEFAULT 0,
            last_attempt_at TEXT NOT NULL,
            lockout_until TEXT
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS idempotency_keys (
            key TEXT PRIMARY KEY,
            household_id TEXT NOT NULL,
            result_json TEXT NOT NULL,
            created_at TEXT NOT NULL,
            expires_at TEXT NOT NULL,
            FOREIGN KEY (household_id) REFERENCES households (id) ON DELETE CASCADE
        )
        """
    )


def migration_004(conn):
    add_column_if_missing(conn, "households", "timezone TEXT NOT NULL DEFAULT 'UTC'")
    add_column_if_missing(conn, "households", "auto_rollover_budget INTEGER NOT NULL DEFAULT 0")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS import_staging (
            import_id TEXT PRIMARY KEY,
            household_id TEXT NOT NULL,
            state_json TEXT NOT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            FOREIGN KEY (household_id) REFERENCES households (id) ON DELETE CASCADE
        )
        """
    )


def migration_005(conn):
    for index_name, table, columns in INDEXES:
        conn.execute(f"CREATE INDEX IF NOT EXISTS {index_name} ON {table}({columns})")


MIGRATIONS = [
    (1, migration_001),
    (2, migration_002),
    (3, migration_003),
    (4, migration_004),
    (5, migration_005),
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


def applied_versions(conn):
    _ensure_schema_version_table(conn)
    return {int(row[0]) for row in conn.execute("SELECT version FROM schema_version").fetchall()}


def current_schema_version(conn):
    return max(applied_versions(conn), default=0)


def _run_migrations(conn):
    done = applied_versions(conn)
    for version, migration in MIGRATIONS:
        if version in done:
            continue
        try:
            migration(conn)
            conn.execute(
                "INSERT INTO schema_version (version, applied_at) VALUES (?, ?)",
                (version, datetime.now(timezone.utc).isoformat(timespec="seconds")),
            )
        except Exception:
            conn.rollback()
            raise
        conn.commit()

    health = inspect_db_health(conn)
    if not health["ok"]:
        raise DatabaseInitError(
            "Schema check failed after migrations: "
            f"tables={health['missing_tables']} columns={health['missing_columns']} "
            f"indexes={health['missing_indexes']}"
        )


def _open(db_config_or_path):
    config = db_config_or_path if isinstance(db_config_or_path, dict) else parse_database_config(db_config_or_path)
    return connect_db(config)


def apply_migrations(db_or_config_or_path):
    """Bring a database up to the latest schema version.

    Accepts an open connection (left open), a config dict from
    ``parse_database_config`` or a SQLite path.
    """
    if hasattr(db_or_config_or_path, "execute"):
        _run_migrations(db_or_config_or_path)
        return

    conn = _open(db_or_config_or_path)
    try:
        _run_migrations(conn)
    finally:
        conn.close()


def inspect_db_health(conn):
    missing_tables = []
    missing_columns = {}
    present_tables = set()
    for table, columns in REQUIRED_COLUMNS.items():
        if table_exists(conn, table):
            present_tables.add(table)
            missing_columns[table] = sorted(columns - get_table_columns(conn, table))
        else:
            missing_tables.append(table)
            missing_columns[table] = sorted(columns)

    missing_indexes = sorted(
        name for name, table, _ in INDEXES if table not in present_tables or not index_exists(conn, name)
    )
    return {
        "ok": not missing_tables and not any(missing_columns.values()) and not missing_indexes,
        "schema_version": current_schema_version(conn),
        "missing_tables": missing_tables,
        "missing_columns": missing_columns,
        "missing_indexes": missing_indexes,
    }


def get_db_health(db_config_or_path):
    conn = _open(db_config_or_path)
    try:
        return inspect_db_health(conn)
    finally:
        conn.close()


def main(argv=None):
    parser = argparse.ArgumentParser(description="Apply household budget migrations and report schema health")
    parser.add_argument("db_path", help="Path to SQLite DB file (ignored when DATABASE_URL points to Postgres)")
    args = parser.parse_args(argv)
    apply_migrations(args.db_path)
    health = get_db_health(args.db_path)
    print(json.dumps(health, indent=2, sort_keys=True))
    return 0 if health["ok"] else 1


if __name__ == "__main__":
    sys.exit(main())
