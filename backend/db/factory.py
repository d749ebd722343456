"""Repository factory to abstract DB backend (SQLite vs Postgres)."""
from __future__ import annotations

from typing import Any
import aiosqlite

from backend.db.repositories.audit import SqliteAuditRepository
from backend.db.repositories.projects import SqliteProjectRepository
from backend.db.repositories.work_items import SqliteWorkItemRepository


def get_project_repository(db: Any):
    if isinstance(db, aiosqlite.Connection):
        return SqliteProjectRepository(db)
    from backend.db.repositories.postgres.projects import PostgresProjectRepository
    return PostgresProjectRepository(db)


def get_work_item_repository(db: Any):
    if isinstance(db, aiosqlite.Connection):
        return SqliteWorkItemRepository(db)
    from backend.db.repositories.postgres.work_items import PostgresWorkItemRepository
    return PostgresWorkItemRepository(db)


def get_audit_repository(db: Any):
    if isinstance(db, aiosqlite.Connection):
        return SqliteAuditRepository(db)
    from backend.db.repositories.postgres.audit import PostgresAuditRepository
    return PostgresAuditRepository(db)
