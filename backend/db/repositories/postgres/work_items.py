"""PostgreSQL implementation of WorkItemRepository."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import asyncpg

from backend.db.repositories.work_items import FIELD_COLUMNS, ISSUE_COLUMNS, column_value, item_params


class PostgresWorkItemRepository:
    """PostgreSQL-backed board item storage."""

    def __init__(self, db: asyncpg.Pool):
        self.db = db

    async def upsert_item(self, owner: str, project_number: int, item: dict) -> None:
        query = """
            INSERT INTO work_items (
                owner, project_number, id, repo, number, title,
                estimate, confidence, start_date, target_date,
                start_pinned, target_pinned, closed, actual_end_date,
                milestone_id, baseline_start, baseline_target,
                cyclic, milestone_overrun, percent_complete, content_node_id, updated_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15, $16, $17, $18, $19, $20, $21, $22)
            ON CONFLICT(owner, project_number, id) DO UPDATE SET
                repo=EXCLUDED.repo, number=EXCLUDED.number, title=EXCLUDED.title,
                estimate=EXCLUDED.estimate, confidence=EXCLUDED.confidence,
                start_date=EXCLUDED.start_date, target_date=EXCLUDED.target_date,
                start_pinned=EXCLUDED.start_pinned, target_pinned=EXCLUDED.target_pinned,
                closed=EXCLUDED.closed, actual_end_date=EXCLUDED.actual_end_date,
                milestone_id=EXCLUDED.milestone_id,
                baseline_start=EXCLUDED.baseline_start, baseline_target=EXCLUDED.baseline_target,
                cyclic=EXCLUDED.cyclic, milestone_overrun=EXCLUDED.milestone_overrun,
                percent_complete=EXCLUDED.percent_complete, content_node_id=EXCLUDED.content_node_id,
                updated_at=EXCLUDED.updated_at
        """
        await self.db.execute(query, *item_params(owner, project_number, item))

    async def get_item(self, owner: str, project_number: int, item_id: str) -> dict | None:
        row = await self.db.fetchrow(
            "SELECT * FROM work_items WHERE owner = $1 AND project_number = $2 AND id = $3",
            owner, project_number, item_id,
        )
        return dict(row) if row else None

    async def find_item_by_node_id(self, owner: str, project_number: int, node_id: str) -> dict | None:
        if not node_id:
            return None
        row = await self.db.fetchrow(
            "SELECT * FROM work_items WHERE owner = $1 AND project_number = $2 AND content_node_id = $3",
            owner, project_number, node_id,
        )
        return dict(row) if row else None

    async def list_items(self, owner: str, project_number: int) -> list[dict]:
        rows = await self.db.fetch(
            "SELECT * FROM work_items WHERE owner = $1 AND project_number = $2 ORDER BY repo, number, id",
            owner, project_number,
        )
        return [dict(r) for r in rows]

    async def add_edge(self, owner: str, project_number: int, blocker_id: str, blocked_id: str) -> None:
        await self.db.execute(
            """INSERT INTO dependency_edges (owner, project_number, blocker_id, blocked_id)
            VALUES ($1, $2, $3, $4) ON CONFLICT DO NOTHING""",
            owner, project_number, blocker_id, blocked_id,
        )

    async def list_edges(self, owner: str, project_number: int) -> list[dict]:
        rows = await self.db.fetch(
            """SELECT blocker_id, blocked_id FROM dependency_edges
            WHERE owner = $1 AND project_number = $2 ORDER BY blocker_id, blocked_id""",
            owner, project_number,
        )
        return [dict(r) for r in rows]

    async def upsert_milestone(
        self,
        owner: str,
        project_number: int,
        milestone_id: str,
        title: str = "",
        due_date: str | None = None,
    ) -> None:
        await self.db.execute(
            """INSERT INTO milestones (owner, project_number, id, title, due_date) VALUES ($1, $2, $3, $4, $5)
            ON CONFLICT(owner, project_number, id) DO UPDATE SET
                title=EXCLUDED.title, due_date=EXCLUDED.due_date
            """,
            owner, project_number, milestone_id, title, due_date,
        )

    async def list_milestones(self, owner: str, project_number: int) -> list[dict]:
        rows = await self.db.fetch(
            "SELECT id, title, due_date FROM milestones WHERE owner = $1 AND project_number = $2 ORDER BY id",
            owner, project_number,
        )
        return [dict(r) for r in rows]

    async def apply_field_updates(self, owner: str, project_number: int, updates: list[dict]) -> int:
        for update in updates:
            if update["field"] not in FIELD_COLUMNS:
                raise ValueError(f"Field {update['field']!r} is not writable")

        now = datetime.now(timezone.utc).isoformat()
        touched = 0
        async with self.db.acquire() as conn:
            async with conn.transaction():
                for update in updates:
                    column = FIELD_COLUMNS[update["field"]]
                    status = await conn.execute(
                        f"UPDATE work_items SET {column} = $1, updated_at = $2 "
                        "WHERE owner = $3 AND project_number = $4 AND id = $5",
                        column_value(update["field"], update.get("value")),
                        now, owner, project_number, update["itemId"],
                    )
                    # asyncpg returns the command tag, e.g. "UPDATE 1"
                    touched += int(status.rsplit(" ", 1)[-1] or 0)
        return touched

    async def find_projects_with_item(self, owner: str, repo: str, number: int) -> list[int]:
        rows = await self.db.fetch(
            """SELECT DISTINCT project_number FROM work_items
            WHERE lower(owner) = lower($1) AND repo = $2 AND number = $3 ORDER BY project_number""",
            owner, repo, number,
        )
        return [int(r["project_number"]) for r in rows]

    async def update_issue(self, owner: str, repo: str, number: int, fields: dict[str, Any]) -> int:
        unknown = set(fields) - set(ISSUE_COLUMNS)
        if unknown:
            raise ValueError(f"Fields {sorted(unknown)} are not issue-level fields")
        if not fields:
            return 0
        assignments = ", ".join(f"{ISSUE_COLUMNS[name]} = ${idx}" for idx, name in enumerate(fields, start=1))
        params = [column_value(name, value) if name != "title" else value for name, value in fields.items()]
        base = len(params)
        params.extend([datetime.now(timezone.utc).isoformat(), owner, repo, number])
        status = await self.db.execute(
            f"UPDATE work_items SET {assignments}, updated_at = ${base + 1} "
            f"WHERE lower(owner) = lower(${base + 2}) AND repo = ${base + 3} AND number = ${base + 4}",
            *params,
        )
        return int(status.rsplit(" ", 1)[-1] or 0)
