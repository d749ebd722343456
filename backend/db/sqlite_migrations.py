"""Database schema creation and versioning.

All CREATE TABLE statements for the board mirror and audit log.
Uses IF NOT EXISTS for idempotent runs.
"""
from __future__ import annotations

import logging

import aiosqlite

logger = logging.getLogger("projectflow.db")

SCHEMA_VERSION = 4

_TABLES = """
-- ── Schema version tracking ────────────────────────────────────────
CREATE TABLE IF NOT EXISTS schema_version (
    version   INTEGER NOT NULL,
    applied   TEXT NOT NULL DEFAULT (datetime('now'))
);

-- ── 1. App installations ───────────────────────────────────────────
CREATE TABLE IF NOT EXISTS installations (
    installation_id INTEGER PRIMARY KEY,
    account_login   TEXT NOT NULL,
    account_type    TEXT NOT NULL DEFAULT 'Organization',
    tier            TEXT NOT NULL DEFAULT 'free',
    settings_json   TEXT DEFAULT '{}',
    created_at      TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at      TEXT NOT NULL DEFAULT (datetime('now'))
);

-- ── 2. Tracked planning boards ─────────────────────────────────────
CREATE TABLE IF NOT EXISTS projects (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    installation_id INTEGER NOT NULL,
    owner           TEXT NOT NULL,
    repo            TEXT DEFAULT '',
    project_number  INTEGER NOT NULL,
    node_id         TEXT DEFAULT '',
    settings_json   TEXT DEFAULT '{}',
    created_at      TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at      TEXT NOT NULL DEFAULT (datetime('now')),
    UNIQUE(owner, project_number)
);

CREATE INDEX IF NOT EXISTS idx_projects_node ON projects(installation_id, node_id);

-- ── 3. Board items (mirrored issues) ───────────────────────────────
CREATE TABLE IF NOT EXISTS work_items (
    owner             TEXT NOT NULL,
    project_number    INTEGER NOT NULL,
    id                TEXT NOT NULL,
    repo              TEXT NOT NULL DEFAULT '',
    number            INTEGER NOT NULL DEFAULT 0,
    title             TEXT DEFAULT '',
    estimate          REAL,
    confidence        REAL,
    start_date        TEXT,
    target_date       TEXT,
    start_pinned      INTEGER DEFAULT 0,
    target_pinned     INTEGER DEFAULT 0,
    closed            INTEGER DEFAULT 0,
    actual_end_date   TEXT,
    milestone_id      TEXT,
    baseline_start    TEXT,
    baseline_target   TEXT,
    cyclic            INTEGER DEFAULT 0,
    milestone_overrun INTEGER DEFAULT 0,
    percent_complete  REAL,
    content_node_id   TEXT DEFAULT '',
    updated_at        TEXT NOT NULL,
    PRIMARY KEY (owner, project_number, id)
);

CREATE INDEX IF NOT EXISTS idx_work_items_issue ON work_items(owner, repo, number);

CREATE TABLE IF NOT EXISTS dependency_edges (
    owner          TEXT NOT NULL,
    project_number INTEGER NOT NULL,
    blocker_id     TEXT NOT NULL,
    blocked_id     TEXT NOT NULL,
    PRIMARY KEY (owner, project_number, blocker_id, blocked_id)
);

CREATE TABLE IF NOT EXISTS milestones (
    owner          TEXT NOT NULL,
    project_number INTEGER NOT NULL,
    id             TEXT NOT NULL,
    title          TEXT DEFAULT '',
    due_date       TEXT,
    PRIMARY KEY (owner, project_number, id)
);

-- ── 4. Calendar ────────────────────────────────────────────────────
CREATE TABLE IF NOT EXISTS holidays (
    installation_id INTEGER NOT NULL,
    date            TEXT NOT NULL,
    name            TEXT DEFAULT '',
    recurring       INTEGER DEFAULT 0,
    PRIMARY KEY (installation_id, date)
);

-- ── 5. Audit log ───────────────────────────────────────────────────
CREATE TABLE IF NOT EXISTS audit_log (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    installation_id INTEGER,
    owner           TEXT NOT NULL,
    project_number  INTEGER NOT NULL,
    action          TEXT NOT NULL,
    details_json    TEXT DEFAULT '{}',
    created_at      TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_audit_project ON audit_log(owner, project_number, created_at DESC);
"""


async def _column_exists(db: aiosqlite.Connection, table: str, column: str) -> bool:
    async with db.execute(f"PRAGMA table_info({table})") as cur:
        rows = await cur.fetchall()
    return any(row[1] == column for row in rows)


async def _ensure_column(db: aiosqlite.Connection, table: str, column: str, definition: str) -> None:
    if await _column_exists(db, table, column):
        return
    await db.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")


async def run_migrations(db: aiosqlite.Connection) -> None:
    """Create all tables. Idempotent."""
    try:
        async with db.execute("SELECT MAX(version) FROM schema_version") as cur:
            row = await cur.fetchone()
            current_version = row[0] if row and row[0] else 0
    except aiosqlite.OperationalError:
        current_version = 0

    if current_version >= SCHEMA_VERSION:
        logger.info("Schema is up to date (version %s)", current_version)
        return

    logger.info("Running migrations: %s → %s", current_version, SCHEMA_VERSION)

    await db.executescript(_TABLES)

    # Explicit table upgrades for databases created before baselines, derived flags and node ids.
    await _ensure_column(db, "work_items", "baseline_start", "TEXT")
    await _ensure_column(db, "work_items", "baseline_target", "TEXT")
    await _ensure_column(db, "work_items", "milestone_overrun", "INTEGER DEFAULT 0")
    await _ensure_column(db, "work_items", "percent_complete", "REAL")
    await _ensure_column(db, "work_items", "content_node_id", "TEXT DEFAULT ''")
    await db.execute(
        "CREATE INDEX IF NOT EXISTS idx_work_items_node ON work_items(owner, project_number, content_node_id)"
    )

    await db.execute(
        "INSERT INTO schema_version (version) VALUES (?)",
        (SCHEMA_VERSION,),
    )
    await db.commit()
    logger.info("Migrations complete, schema version %s", SCHEMA_VERSION)
