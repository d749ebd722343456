"""SQLite implementation of AuditRepository."""
from __future__ import annotations

import json
from datetime import datetime, timezone

import aiosqlite

from backend.db.connection import sqlite_transaction


class SqliteAuditRepository:
    """SQLite-backed audit trail of recalculations and board writes."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def log(
        self,
        owner: str,
        project_number: int,
        action: str,
        details: dict,
        installation_id: int | None = None,
    ) -> None:
        async with sqlite_transaction(self.db):
            await self.db.execute(
                """INSERT INTO audit_log (installation_id, owner, project_number, action, details_json, created_at)
                VALUES (?, ?, ?, ?, ?, ?)""",
                (
                    installation_id,
                    owner,
                    project_number,
                    action,
                    json.dumps(details),
                    datetime.now(timezone.utc).isoformat(),
                ),
            )

    async def list_recent(self, owner: str, project_number: int, limit: int = 100) -> list[dict]:
        async with self.db.execute(
            """SELECT * FROM audit_log WHERE owner = ? AND project_number = ?
            ORDER BY created_at DESC, id DESC LIMIT ?""",
            (owner, project_number, limit),
        ) as cur:
            rows = [dict(r) for r in await cur.fetchall()]
        for row in rows:
            row["details"] = json.loads(row.get("details_json") or "{}")
        return rows
