"""PostgreSQL implementation of AuditRepository."""
from __future__ import annotations

import json
from datetime import datetime, timezone

import asyncpg


class PostgresAuditRepository:
    def __init__(self, db: asyncpg.Pool):
        self.db = db

    async def log(
        self,
        owner: str,
        project_number: int,
        action: str,
        details: dict,
        installation_id: int | None = None,
    ) -> None:
        await self.db.execute(
            """INSERT INTO audit_log (installation_id, owner, project_number, action, details_json, created_at)
            VALUES ($1, $2, $3, $4, $5, $6)""",
            installation_id,
            owner,
            project_number,
            action,
            json.dumps(details),
            datetime.now(timezone.utc).isoformat(),
        )

    async def list_recent(self, owner: str, project_number: int, limit: int = 100) -> list[dict]:
        rows = await self.db.fetch(
            """SELECT * FROM audit_log WHERE owner = $1 AND project_number = $2
            ORDER BY created_at DESC, id DESC LIMIT $3""",
            owner, project_number, limit,
        )
        result = [dict(r) for r in rows]
        for row in result:
            row["details"] = json.loads(row.get("details_json") or "{}")
        return result
