"""SQLite implementation of WorkItemRepository.

Stores the mirrored board: items, dependency edges and milestones, keyed by
(owner, project_number).
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import aiosqlite

from backend.db.connection import sqlite_transaction

# Board field name -> column. Only these fields may be written back.
FIELD_COLUMNS = {
    "startDate": "start_date",
    "targetDate": "target_date",
    "actualEndDate": "actual_end_date",
    "baselineStart": "baseline_start",
    "baselineTarget": "baseline_target",
    "cyclic": "cyclic",
    "milestoneOverrun": "milestone_overrun",
}
_BOOL_FIELDS = {"cyclic", "milestoneOverrun", "closed"}

# Issue-level fields mirrored from GitHub webhooks, applied to every board holding the issue.
ISSUE_COLUMNS = {
    "title": "title",
    "estimate": "estimate",
    "closed": "closed",
    "actualEndDate": "actual_end_date",
    "milestoneId": "milestone_id",
}


def column_value(field: str, value: Any) -> Any:
    if field in _BOOL_FIELDS:
        return 1 if value else 0
    if field == "estimate":
        return None if value is None else float(value)
    if value is None or value == "":
        return None
    return str(value)


def item_params(owner: str, project_number: int, item: dict) -> tuple:
    now = datetime.now(timezone.utc).isoformat()
    return (
        owner,
        project_number,
        item["id"],
        item.get("repo", ""),
        int(item.get("number") or 0),
        item.get("title", ""),
        item.get("estimate"),
        item.get("confidence"),
        column_value("startDate", item.get("startDate")),
        column_value("targetDate", item.get("targetDate")),
        1 if item.get("startPinned") else 0,
        1 if item.get("targetPinned") else 0,
        1 if item.get("closed") else 0,
        column_value("actualEndDate", item.get("actualEndDate")),
        item.get("milestoneId"),
        column_value("baselineStart", item.get("baselineStart")),
        column_value("baselineTarget", item.get("baselineTarget")),
        1 if item.get("cyclic") else 0,
        1 if item.get("milestoneOverrun") else 0,
        item.get("percentComplete"),
        item.get("nodeId") or "",
        now,
    )


class SqliteWorkItemRepository:
    """SQLite-backed board item storage."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def upsert_item(self, owner: str, project_number: int, item: dict) -> None:
        async with sqlite_transaction(self.db):
            await self.db.execute(
                """INSERT INTO work_items (
                    owner, project_number, id, repo, number, title,
                    estimate, confidence, start_date, target_date,
                    start_pinned, target_pinned, closed, actual_end_date,
                    milestone_id, baseline_start, baseline_target,
                    cyclic, milestone_overrun, percent_complete, content_node_id, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(owner, project_number, id) DO UPDATE SET
                    repo=excluded.repo, number=excluded.number, title=excluded.title,
                    estimate=excluded.estimate, confidence=excluded.confidence,
                    start_date=excluded.start_date, target_date=excluded.target_date,
                    start_pinned=excluded.start_pinned, target_pinned=excluded.target_pinned,
                    closed=excluded.closed, actual_end_date=excluded.actual_end_date,
                    milestone_id=excluded.milestone_id,
                    baseline_start=excluded.baseline_start, baseline_target=excluded.baseline_target,
                    cyclic=excluded.cyclic, milestone_overrun=excluded.milestone_overrun,
                percent_complete=excluded.percent_complete, content_node_id=excluded.content_node_id,
                    updated_at=excluded.updated_at
                """,
                item_params(owner, project_number, item),
            )

    async def get_item(self, owner: str, project_number: int, item_id: str) -> dict | None:
        async with self.db.execute(
            "SELECT * FROM work_items WHERE owner = ? AND project_number = ? AND id = ?",
            (owner, project_number, item_id),
        ) as cur:
            row = await cur.fetchone()
            return dict(row) if row else None

    async def find_item_by_node_id(self, owner: str, project_number: int, node_id: str) -> dict | None:
        if not node_id:
            return None
        async with self.db.execute(
            "SELECT * FROM work_items WHERE owner = ? AND project_number = ? AND content_node_id = ?",
            (owner, project_number, node_id),
        ) as cur:
            row = await cur.fetchone()
            return dict(row) if row else None

    async def list_items(self, owner: str, project_number: int) -> list[dict]:
        async with self.db.execute(
            "SELECT * FROM work_items WHERE owner = ? AND project_number = ? ORDER BY repo, number, id",
            (owner, project_number),
        ) as cur:
            return [dict(r) for r in await cur.fetchall()]

    async def add_edge(self, owner: str, project_number: int, blocker_id: str, blocked_id: str) -> None:
        async with sqlite_transaction(self.db):
            await self.db.execute(
                """INSERT OR IGNORE INTO dependency_edges (owner, project_number, blocker_id, blocked_id)
                VALUES (?, ?, ?, ?)""",
                (owner, project_number, blocker_id, blocked_id),
            )

    async def list_edges(self, owner: str, project_number: int) -> list[dict]:
        async with self.db.execute(
            """SELECT blocker_id, blocked_id FROM dependency_edges
            WHERE owner = ? AND project_number = ? ORDER BY blocker_id, blocked_id""",
            (owner, project_number),
        ) as cur:
            return [dict(r) for r in await cur.fetchall()]

    async def upsert_milestone(
        self,
        owner: str,
        project_number: int,
        milestone_id: str,
        title: str = "",
        due_date: str | None = None,
    ) -> None:
        async with sqlite_transaction(self.db):
            await self.db.execute(
                """INSERT INTO milestones (owner, project_number, id, title, due_date) VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(owner, project_number, id) DO UPDATE SET
                    title=excluded.title, due_date=excluded.due_date
                """,
                (owner, project_number, milestone_id, title, due_date),
            )

    async def list_milestones(self, owner: str, project_number: int) -> list[dict]:
        async with self.db.execute(
            "SELECT id, title, due_date FROM milestones WHERE owner = ? AND project_number = ? ORDER BY id",
            (owner, project_number),
        ) as cur:
            return [dict(r) for r in await cur.fetchall()]

    async def apply_field_updates(self, owner: str, project_number: int, updates: list[dict]) -> int:
        """Write a batch of field updates in one transaction. Returns rows touched."""
        for update in updates:
            if update["field"] not in FIELD_COLUMNS:
                raise ValueError(f"Field {update['field']!r} is not writable")

        now = datetime.now(timezone.utc).isoformat()
        touched = 0
        async with sqlite_transaction(self.db):
            for update in updates:
                column = FIELD_COLUMNS[update["field"]]
                cur = await self.db.execute(
                    f"UPDATE work_items SET {column} = ?, updated_at = ? "
                    "WHERE owner = ? AND project_number = ? AND id = ?",
                    (column_value(update["field"], update.get("value")), now, owner, project_number, update["itemId"]),
                )
                touched += cur.rowcount
        return touched

    async def find_projects_with_item(self, owner: str, repo: str, number: int) -> list[int]:
        async with self.db.execute(
            """SELECT DISTINCT project_number FROM work_items
            WHERE lower(owner) = lower(?) AND repo = ? AND number = ? ORDER BY project_number""",
            (owner, repo, number),
        ) as cur:
            return [int(r[0]) for r in await cur.fetchall()]

    async def update_issue(self, owner: str, repo: str, number: int, fields: dict[str, Any]) -> int:
        """Apply issue-level fields to every board row for `repo#number`. Returns rows touched."""
        unknown = set(fields) - set(ISSUE_COLUMNS)
        if unknown:
            raise ValueError(f"Fields {sorted(unknown)} are not issue-level fields")
        if not fields:
            return 0
        assignments = ", ".join(f"{ISSUE_COLUMNS[name]} = ?" for name in fields)
        params = [column_value(name, value) if name != "title" else value for name, value in fields.items()]
        params.extend([datetime.now(timezone.utc).isoformat(), owner, repo, number])
        async with sqlite_transaction(self.db):
            cur = await self.db.execute(
                f"UPDATE work_items SET {assignments}, updated_at = ? "
                "WHERE lower(owner) = lower(?) AND repo = ? AND number = ?",
                params,
            )
        return cur.rowcount
