"""Database schema and migration logic for fittrack SQLite storage.

Contains:
- Schema DDL (SCHEMA)
- Schema version tracking (SCHEMA_VERSION)
- Table allowlist (ALLOWED_TABLES, validate_table_name)
- Database initialization (init_db)
- Schema migration (migrate_schema)
"""

import logging
import os
import sqlite3
from pathlib import Path

logger = logging.getLogger(__name__)

# Schema version for migrations
SCHEMA_VERSION = 4  # v4: PR uniqueness per exercise covers active rows only

# Allowed table names for SQL queries (security: prevents SQL injection via table names)
ALLOWED_TABLES = frozenset(
    {
        "workout_sessions",
        "exercise_logs",
        "sets",
        "workout_templates",
        "template_exercises",
        "custom_exercises",
        "personal_records",
        "body_measurements",
        "pending_deletions",
        "sync_meta",
        "schema_version",
    }
)


def validate_table_name(table: str) -> str:
    """Validate table name against allowlist to prevent SQL injection.

    Raises:
        ValueError: If table name is not in allowlist
    """
    if table not in ALLOWED_TABLES:
        raise ValueError(f"Invalid table name: {table}")
    return table


SCHEMA = """
-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

-- Workout sessions (header)
CREATE TABLE IF NOT EXISTS workout_sessions (
    id TEXT PRIMARY KEY,
    owner_id TEXT,
    template_id TEXT,
    template_name TEXT,
    started_at TEXT NOT NULL,
    completed_at TEXT,
    duration_seconds INTEGER,
    total_volume REAL,
    -- Sync metadata
    synced_at TEXT,
    deleted INTEGER DEFAULT 0,
    deleted_at TEXT
);

-- Exercise logs, owned by a session
CREATE TABLE IF NOT EXISTS exercise_logs (
    id TEXT PRIMARY KEY,
    session_id TEXT NOT NULL,
    exercise_id TEXT NOT NULL,
    exercise_name TEXT,
    completed_at TEXT,
    position INTEGER DEFAULT 0,
    FOREIGN KEY (session_id) REFERENCES workout_sessions(id) ON DELETE CASCADE
);
CREATE INDEX IF NOT EXISTS idx_exercise_logs_session ON exercise_logs(session_id);

-- Sets, owned by an exercise log
CREATE TABLE IF NOT EXISTS sets (
    id TEXT PRIMARY KEY,
    exercise_log_id TEXT NOT NULL,
    set_number INTEGER NOT NULL,
    weight REAL NOT NULL,
    reps INTEGER NOT NULL,
    rpe REAL,
    is_pr INTEGER DEFAULT 0,
    logged_at TEXT NOT NULL,
    FOREIGN KEY (exercise_log_id) REFERENCES exercise_logs(id) ON DELETE CASCADE
);
CREATE INDEX IF NOT EXISTS idx_sets_log ON sets(exercise_log_id);

-- Workout templates
CREATE TABLE IF NOT EXISTS workout_templates (
    id TEXT PRIMARY KEY,
    owner_id TEXT,
    name TEXT NOT NULL,
    is_preset INTEGER DEFAULT 0,
    created_at TEXT,
    updated_at TEXT,
    synced_at TEXT,
    deleted INTEGER DEFAULT 0,
    deleted_at TEXT
);

CREATE TABLE IF NOT EXISTS template_exercises (
    id TEXT PRIMARY KEY,
    template_id TEXT NOT NULL,
    exercise_id TEXT NOT NULL,
    display_order INTEGER DEFAULT 0,
    FOREIGN KEY (template_id) REFERENCES workout_templates(id) ON DELETE CASCADE
);
CREATE INDEX IF NOT EXISTS idx_template_exercises_template ON template_exercises(template_id);

-- Custom exercises (name uniqueness among active rows is enforced in code)
CREATE TABLE IF NOT EXISTS custom_exercises (
    id TEXT PRIMARY KEY,
    owner_id TEXT,
    name TEXT NOT NULL,
    category TEXT,
    equipment TEXT,
    description TEXT,
    image_url TEXT,
    created_at TEXT,
    updated_at TEXT,
    synced_at TEXT,
    deleted INTEGER DEFAULT 0,
    deleted_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_custom_exercises_name ON custom_exercises(owner_id, name COLLATE NOCASE);

-- Personal records: one active row per exercise, tombstones may linger
CREATE TABLE IF NOT EXISTS personal_records (
    id TEXT PRIMARY KEY,
    owner_id TEXT,
    exercise_id TEXT NOT NULL,
    exercise_name TEXT,
    weight REAL NOT NULL,
    reps INTEGER NOT NULL,
    achieved_at TEXT NOT NULL,
    session_id TEXT,
    synced_at TEXT,
    deleted INTEGER DEFAULT 0,
    deleted_at TEXT
);
CREATE UNIQUE INDEX IF NOT EXISTS idx_personal_records_active_exercise
    ON personal_records(exercise_id) WHERE deleted = 0;

-- Body measurements (deletions tracked in pending_deletions, not by flag)
CREATE TABLE IF NOT EXISTS body_measurements (
    id TEXT PRIMARY KEY,
    owner_id TEXT,
    weight REAL,
    chest REAL,
    waist REAL,
    hips REAL,
    left_arm REAL,
    right_arm REAL,
    left_thigh REAL,
    right_thigh REAL,
    notes TEXT,
    measured_at TEXT NOT NULL,
    synced_at TEXT,
    deleted INTEGER DEFAULT 0,
    deleted_at TEXT
);

-- Deletions awaiting remote acknowledgement, for kinds without tombstones
CREATE TABLE IF NOT EXISTS pending_deletions (
    table_name TEXT NOT NULL,
    record_id TEXT NOT NULL,
    deleted_at TEXT NOT NULL,
    PRIMARY KEY (table_name, record_id)
);

-- Sync metadata (last-synced-at markers, etc.)
CREATE TABLE IF NOT EXISTS sync_meta (
    key TEXT PRIMARY KEY,
    value TEXT,
    updated_at TEXT
);
"""


def init_db(conn: sqlite3.Connection, db_path: Path) -> None:
    """Initialize the database schema.

    Args:
        conn: Database connection.
        db_path: Path to the database file (for permissions).
    """
    # First, run migrations if needed (before executing full schema)
    migrate_schema(conn)

    # Now execute full schema (CREATE TABLE IF NOT EXISTS is safe)
    conn.executescript(SCHEMA)

    row = conn.execute("SELECT version FROM schema_version LIMIT 1").fetchone()
    if row is None:
        conn.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
    else:
        conn.execute("UPDATE schema_version SET version = ?", (SCHEMA_VERSION,))

    conn.commit()

    # Set secure file permissions (owner read/write only)
    try:
        os.chmod(db_path, 0o600)
    except OSError as e:
        logger.warning(f"Could not set secure permissions: {e}")


def migrate_schema(conn: sqlite3.Connection) -> None:
    """Run schema migrations for existing databases.

    Databases created before sync support lack the sync envelope columns;
    add them so every collection can be reconciled.
    """
    tables = conn.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()
    table_names = {t[0] for t in tables}

    if "workout_sessions" not in table_names:
        # Fresh database, no migration needed
        return

    def get_columns(table: str) -> set:
        validate_table_name(table)
        cols = conn.execute(f"PRAGMA table_info({table})").fetchall()
        return {c[1] for c in cols}

    migrations = []
    for table in (
        "workout_sessions",
        "workout_templates",
        "custom_exercises",
        "personal_records",
        "body_measurements",
    ):
        if table not in table_names:
            continue
        cols = get_columns(table)
        if "synced_at" not in cols:
            migrations.append(f"ALTER TABLE {table} ADD COLUMN synced_at TEXT")
        if "deleted" not in cols:
            migrations.append(f"ALTER TABLE {table} ADD COLUMN deleted INTEGER DEFAULT 0")
        if "deleted_at" not in cols:
            migrations.append(f"ALTER TABLE {table} ADD COLUMN deleted_at TEXT")

    if "sets" in table_names and "rpe" not in get_columns("sets"):
        migrations.append("ALTER TABLE sets ADD COLUMN rpe REAL")
    if "custom_exercises" in table_names and "image_url" not in get_columns("custom_exercises"):
        migrations.append("ALTER TABLE custom_exercises ADD COLUMN image_url TEXT")

    for migration in migrations:
        try:
            conn.execute(migration)
            logger.info(f"Migration: {migration}")
        except sqlite3.OperationalError as e:
            if "duplicate column" not in str(e).lower():
                logger.warning(f"Migration failed: {e}")

    # v4: drop the table-level UNIQUE(exercise_id), which also blocked tombstones
    if "personal_records" in table_names:
        unique_constraints = [
            row for row in conn.execute("PRAGMA index_list(personal_records)").fetchall()
            if row[3] == "u"
        ]
        if unique_constraints:
            conn.execute("ALTER TABLE personal_records RENAME TO personal_records_old")
            conn.execute("""
                CREATE TABLE personal_records (
                    id TEXT PRIMARY KEY,
                    owner_id TEXT,
                    exercise_id TEXT NOT NULL,
                    exercise_name TEXT,
                    weight REAL NOT NULL,
                    reps INTEGER NOT NULL,
                    achieved_at TEXT NOT NULL,
                    session_id TEXT,
                    synced_at TEXT,
                    deleted INTEGER DEFAULT 0,
                    deleted_at TEXT
                )
            """)
            conn.execute("""
                INSERT INTO personal_records
                    (id, owner_id, exercise_id, exercise_name, weight, reps, achieved_at,
                     session_id, synced_at, deleted, deleted_at)
                SELECT id, owner_id, exercise_id, exercise_name, weight, reps, achieved_at,
                       session_id, synced_at, deleted, deleted_at
                FROM personal_records_old
            """)
            conn.execute("DROP TABLE personal_records_old")
            logger.info("Migrated personal_records to per-exercise uniqueness on active rows")
