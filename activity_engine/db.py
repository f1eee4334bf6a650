import sqlite3
from typing import Iterable

try:
    import psycopg2
    import psycopg2.extras
except ImportError:  # pragma: no cover - optional dependency for postgres
    psycopg2 = None

from flask import current_app, g


class Database:
    def __init__(self, backend: str, connection):
        self.backend = backend
        self._conn = connection

    def execute(self, sql: str, params: Iterable | None = None):
        if self.backend == "postgres":
            cursor = self._conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
            if params:
                sql = _convert_qmark_to_pg(sql)
                cursor.execute(sql, list(params))
            else:
                cursor.execute(sql)
            return cursor
        return self._conn.execute(sql, params or ())

    def commit(self):
        self._conn.commit()

    def rollback(self):
        self._conn.rollback()

    def close(self):
        self._conn.close()


def _convert_qmark_to_pg(sql: str) -> str:
    return sql.replace("?", "%s")


def is_integrity_error(exc: BaseException) -> bool:
    if isinstance(exc, sqlite3.IntegrityError):
        return True
    return psycopg2 is not None and isinstance(exc, psycopg2.IntegrityError)


def connect_database(db_path: str) -> Database:
    if db_path.lower().startswith("postgres"):
        if psycopg2 is None:
            raise RuntimeError("psycopg2 is not installed.")
        conn = psycopg2.connect(db_path)
        conn.autocommit = True
        return Database("postgres", conn)

    # Rebuild workers open their own connection per app context.
    conn = sqlite3.connect(db_path, timeout=30.0, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    return Database("sqlite", conn)


def get_db():
    if "db" not in g:
        db_path = current_app.config["DB_PATH"]
        g.db = connect_database(db_path)
    return g.db


def get_read_db():
    if "db_read" not in g:
        db_path = current_app.config.get("DATABASE_READ_URL") or current_app.config["DB_PATH"]
        g.db_read = connect_database(db_path)
    return g.db_read


def close_db(_error=None):
    db = g.pop("db", None)
    if db is not None:
        db.close()
    db_read = g.pop("db_read", None)
    if db_read is not None:
        db_read.close()


SOURCE_TABLES = (
    "organizations",
    "products",
    "opportunities",
    "opportunity_stage_changes",
    "interactions",
    "product_principals",
    "distributor_relationships",
    "contacts",
)

SNAPSHOT_TABLES = (
    "pa_snapshot_versions",
    "pa_current_snapshot",
)


_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS organizations (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        is_principal INTEGER NOT NULL DEFAULT 0,
        is_distributor INTEGER NOT NULL DEFAULT 0,
        city TEXT,
        state_province TEXT,
        country TEXT,
        created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
        updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
        deleted_at TEXT,
        CONSTRAINT organizations_principal_distributor_exclusive CHECK (
            NOT (is_principal = 1 AND is_distributor = 1)
        )
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS products (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        category TEXT,
        sku TEXT,
        is_active INTEGER NOT NULL DEFAULT 1,
        created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
        deleted_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS opportunities (
        id TEXT PRIMARY KEY,
        name TEXT,
        principal_id TEXT,
        organization_id TEXT,
        product_id TEXT,
        stage TEXT NOT NULL DEFAULT 'New Lead',
        probability_percent REAL,
        is_won INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
        updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
        deleted_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS opportunity_stage_changes (
        id TEXT PRIMARY KEY,
        opportunity_id TEXT NOT NULL,
        from_stage TEXT,
        to_stage TEXT NOT NULL,
        changed_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS interactions (
        id TEXT PRIMARY KEY,
        principal_id TEXT,
        organization_id TEXT,
        opportunity_id TEXT,
        type TEXT NOT NULL DEFAULT 'EMAIL',
        subject TEXT,
        interaction_date TEXT NOT NULL,
        follow_up_required INTEGER NOT NULL DEFAULT 0,
        follow_up_date TEXT,
        created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
        deleted_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS contacts (
        id TEXT PRIMARY KEY,
        organization_id TEXT NOT NULL,
        first_name TEXT NOT NULL DEFAULT '',
        last_name TEXT NOT NULL DEFAULT '',
        email TEXT,
        created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
        updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
        deleted_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS product_principals (
        id TEXT PRIMARY KEY,
        product_id TEXT NOT NULL,
        principal_id TEXT NOT NULL,
        is_primary_principal INTEGER NOT NULL DEFAULT 0,
        exclusive_rights INTEGER NOT NULL DEFAULT 0,
        contract_start_date TEXT,
        contract_end_date TEXT,
        added_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
        removed_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS distributor_relationships (
        id TEXT PRIMARY KEY,
        principal_id TEXT NOT NULL,
        distributor_id TEXT NOT NULL,
        metadata_json TEXT NOT NULL DEFAULT '{}',
        created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
        deleted_at TEXT,
        UNIQUE (principal_id, distributor_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS pa_snapshot_versions (
        principal_id TEXT NOT NULL,
        version INTEGER NOT NULL,
        built_at TEXT NOT NULL,
        payload_json TEXT NOT NULL,
        created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
        PRIMARY KEY (principal_id, version)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS pa_current_snapshot (
        principal_id TEXT PRIMARY KEY,
        version INTEGER NOT NULL,
        updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_organizations_principal ON organizations (is_principal, deleted_at)",
    "CREATE INDEX IF NOT EXISTS ix_opportunities_principal ON opportunities (principal_id, deleted_at)",
    "CREATE INDEX IF NOT EXISTS ix_opportunity_stage_changes_opportunity ON opportunity_stage_changes (opportunity_id, changed_at)",
    "CREATE INDEX IF NOT EXISTS ix_interactions_principal_date ON interactions (principal_id, interaction_date)",
    "CREATE INDEX IF NOT EXISTS ix_product_principals_principal ON product_principals (principal_id, removed_at)",
    "CREATE INDEX IF NOT EXISTS ix_distributor_relationships_principal ON distributor_relationships (principal_id)",
    "CREATE INDEX IF NOT EXISTS ix_contacts_organization ON contacts (organization_id, deleted_at)",
    "CREATE INDEX IF NOT EXISTS ix_interactions_follow_up ON interactions (principal_id, follow_up_required, follow_up_date)",
)


def init_db():
    db = get_db()
    for statement in _SCHEMA_STATEMENTS:
        db.execute(statement)
    db.commit()


def table_exists(db: Database, table: str) -> bool:
    if db.backend == "postgres":
        row = db.execute(
            """
            SELECT 1 AS found
            FROM information_schema.tables
            WHERE table_schema = 'public' AND table_name = ?
            """,
            (table,),
        ).fetchone()
        return row is not None
    row = db.execute(
        "SELECT name FROM sqlite_master WHERE type = 'table' AND name = ?",
        (table,),
    ).fetchone()
    return row is not None
