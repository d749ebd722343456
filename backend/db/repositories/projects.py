"""SQLite implementation of ProjectRepository (installations, boards, holidays)."""
from __future__ import annotations

import json

import aiosqlite

from backend.db.connection import sqlite_transaction


def _with_settings(row: aiosqlite.Row | None) -> dict | None:
    if row is None:
        return None
    data = dict(row)
    try:
        data["settings"] = json.loads(data.get("settings_json") or "{}")
    except json.JSONDecodeError:
        data["settings"] = {}
    return data


class SqliteProjectRepository:
    """SQLite-backed installation and tracked-project storage."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def upsert_installation(
        self,
        installation_id: int,
        account_login: str,
        account_type: str = "Organization",
        tier: str = "free",
        settings: dict | None = None,
    ) -> None:
        async with sqlite_transaction(self.db):
            await self.db.execute(
                """INSERT INTO installations (installation_id, account_login, account_type, tier, settings_json)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(installation_id) DO UPDATE SET
                    account_login=excluded.account_login,
                    account_type=excluded.account_type,
                    tier=excluded.tier,
                    settings_json=excluded.settings_json,
                    updated_at=datetime('now')
                """,
                (installation_id, account_login, account_type, tier, json.dumps(settings or {})),
            )

    async def get_installation(self, installation_id: int) -> dict | None:
        async with self.db.execute(
            "SELECT * FROM installations WHERE installation_id = ?", (installation_id,)
        ) as cur:
            return _with_settings(await cur.fetchone())

    async def upsert_project(
        self,
        installation_id: int,
        owner: str,
        project_number: int,
        repo: str = "",
        node_id: str = "",
    ) -> None:
        async with sqlite_transaction(self.db):
            await self.db.execute(
                """INSERT INTO projects (installation_id, owner, repo, project_number, node_id)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(owner, project_number) DO UPDATE SET
                    installation_id=excluded.installation_id,
                    repo=excluded.repo,
                    node_id=excluded.node_id,
                    updated_at=datetime('now')
                """,
                (installation_id, owner, repo, project_number, node_id),
            )

    async def get_project(self, owner: str, project_number: int) -> dict | None:
        async with self.db.execute(
            """SELECT p.*, COALESCE(i.tier, 'free') AS tier
            FROM projects p LEFT JOIN installations i ON i.installation_id = p.installation_id
            WHERE lower(p.owner) = lower(?) AND p.project_number = ?""",
            (owner, project_number),
        ) as cur:
            return _with_settings(await cur.fetchone())

    async def list_by_owner(self, owner: str) -> list[dict]:
        async with self.db.execute(
            "SELECT * FROM projects WHERE lower(owner) = lower(?) ORDER BY project_number",
            (owner,),
        ) as cur:
            return [_with_settings(r) for r in await cur.fetchall()]

    async def get_by_node_id(self, installation_id: int, node_id: str) -> dict | None:
        async with self.db.execute(
            "SELECT * FROM projects WHERE installation_id = ? AND node_id = ?",
            (installation_id, node_id),
        ) as cur:
            return _with_settings(await cur.fetchone())

    async def list_holidays(self, installation_id: int) -> list[dict]:
        async with self.db.execute(
            "SELECT date, name, recurring FROM holidays WHERE installation_id = ? ORDER BY date",
            (installation_id,),
        ) as cur:
            return [dict(r) for r in await cur.fetchall()]

    async def add_holiday(self, installation_id: int, date: str, name: str = "", recurring: bool = False) -> None:
        async with sqlite_transaction(self.db):
            await self.db.execute(
                """INSERT INTO holidays (installation_id, date, name, recurring) VALUES (?, ?, ?, ?)
                ON CONFLICT(installation_id, date) DO UPDATE SET
                    name=excluded.name, recurring=excluded.recurring
                """,
                (installation_id, date, name, 1 if recurring else 0),
            )
