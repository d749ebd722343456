"""PostgreSQL schema creation and versioning."""
from __future__ import annotations

import logging

import asyncpg

logger = logging.getLogger("projectflow.db")

SCHEMA_VERSION = 4

_TABLES = """
CREATE TABLE IF NOT EXISTS schema_version (
    version   INTEGER NOT NULL,
    applied   TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS installations (
    installation_id BIGINT PRIMARY KEY,
    account_login   TEXT NOT NULL,
    account_type    TEXT NOT NULL DEFAULT 'Organization',
    tier            TEXT NOT NULL DEFAULT 'free',
    settings_json   TEXT DEFAULT '{}',
    created_at      TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at      TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS projects (
    id              BIGSERIAL PRIMARY KEY,
    installation_id BIGINT NOT NULL,
    owner           TEXT NOT NULL,
    repo            TEXT DEFAULT '',
    project_number  INTEGER NOT NULL,
    node_id         TEXT DEFAULT '',
    settings_json   TEXT DEFAULT '{}',
    created_at      TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at      TIMESTAMPTZ NOT NULL DEFAULT now(),
    UNIQUE(owner, project_number)
);

CREATE INDEX IF NOT EXISTS idx_projects_node ON projects(installation_id, node_id);

CREATE TABLE IF NOT EXISTS work_items (
    owner             TEXT NOT NULL,
    project_number    INTEGER NOT NULL,
    id                TEXT NOT NULL,
    repo              TEXT NOT NULL DEFAULT '',
    number            INTEGER NOT NULL DEFAULT 0,
    title             TEXT DEFAULT '',
    estimate          DOUBLE PRECISION,
    confidence        DOUBLE PRECISION,
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
    percent_complete  DOUBLE PRECISION,
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

CREATE TABLE IF NOT EXISTS holidays (
    installation_id BIGINT NOT NULL,
    date            TEXT NOT NULL,
    name            TEXT DEFAULT '',
    recurring       INTEGER DEFAULT 0,
    PRIMARY KEY (installation_id, date)
);

CREATE TABLE IF NOT EXISTS audit_log (
    id              BIGSERIAL PRIMARY KEY,
    installation_id BIGINT,
    owner           TEXT NOT NULL,
    project_number  INTEGER NOT NULL,
    action          TEXT NOT NULL,
    details_json    TEXT DEFAULT '{}',
    created_at      TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_audit_project ON audit_log(owner, project_number, created_at DESC);
"""


async def run_migrations(pool: asyncpg.Pool) -> None:
    """Create all tables. Idempotent."""
    async with pool.acquire() as conn:
        await conn.execute(_TABLES)
        current_version = await conn.fetchval("SELECT MAX(version) FROM schema_version") or 0
        if current_version >= SCHEMA_VERSION:
            logger.info("Schema is up to date (version %s)", current_version)
            return
        logger.info("Running migrations: %s → %s", current_version, SCHEMA_VERSION)
        await conn.execute("ALTER TABLE work_items ADD COLUMN IF NOT EXISTS baseline_start TEXT")
        await conn.execute("ALTER TABLE work_items ADD COLUMN IF NOT EXISTS baseline_target TEXT")
        await conn.execute("ALTER TABLE work_items ADD COLUMN IF NOT EXISTS milestone_overrun INTEGER DEFAULT 0")
        await conn.execute("ALTER TABLE work_items ADD COLUMN IF NOT EXISTS percent_complete DOUBLE PRECISION")
        await conn.execute("ALTER TABLE work_items ADD COLUMN IF NOT EXISTS content_node_id TEXT DEFAULT ''")
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_work_items_node ON work_items(owner, project_number, content_node_id)"
        )
        await conn.execute("INSERT INTO schema_version (version) VALUES ($1)", SCHEMA_VERSION)
    logger.info("Migrations complete, schema version %s", SCHEMA_VERSION)
