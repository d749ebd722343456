"""PostgreSQL implementation of ProjectRepository."""
from __future__ import annotations

import json

import asyncpg


def _with_settings(row) -> dict | None:
    if row is None:
        return None
    data = dict(row)
    try:
        data["settings"] = json.loads(data.get("settings_json") or "{}")
    except json.JSONDecodeError:
        data["settings"] = {}
    return data


class PostgresProjectRepository:
    """PostgreSQL-backed installation and tracked-project storage."""

    def __init__(self, db: asyncpg.Pool):
        self.db = db

    async def upsert_installation(
        self,
        installation_id: int,
        account_login: str,
        account_type: str = "Organization",
        tier: str = "free",
        settings: dict | None = None,
    ) -> None:
        await self.db.execute(
            """INSERT INTO installations (installation_id, account_login, account_type, tier, settings_json)
            VALUES ($1, $2, $3, $4, $5)
            ON CONFLICT(installation_id) DO UPDATE SET
                account_login=EXCLUDED.account_login,
                account_type=EXCLUDED.account_type,
                tier=EXCLUDED.tier,
                settings_json=EXCLUDED.settings_json,
                updated_at=now()
            """,
            installation_id, account_login, account_type, tier, json.dumps(settings or {}),
        )

    async def get_installation(self, installation_id: int) -> dict | None:
        row = await self.db.fetchrow("SELECT * FROM installations WHERE installation_id = $1", installation_id)
        return _with_settings(row)

    async def upsert_project(
        self,
        installation_id: int,
        owner: str,
        project_number: int,
        repo: str = "",
        node_id: str = "",
    ) -> None:
        await self.db.execute(
            """INSERT INTO projects (installation_id, owner, repo, project_number, node_id)
            VALUES ($1, $2, $3, $4, $5)
            ON CONFLICT(owner, project_number) DO UPDATE SET
                installation_id=EXCLUDED.installation_id,
                repo=EXCLUDED.repo,
                node_id=EXCLUDED.node_id,
                updated_at=now()
            """,
            installation_id, owner, repo, project_number, node_id,
        )

    async def get_project(self, owner: str, project_number: int) -> dict | None:
        row = await self.db.fetchrow(
            """SELECT p.*, COALESCE(i.tier, 'free') AS tier
            FROM projects p LEFT JOIN installations i ON i.installation_id = p.installation_id
            WHERE lower(p.owner) = lower($1) AND p.project_number = $2""",
            owner, project_number,
        )
        return _with_settings(row)

    async def list_by_owner(self, owner: str) -> list[dict]:
        rows = await self.db.fetch(
            "SELECT * FROM projects WHERE lower(owner) = lower($1) ORDER BY project_number",
            owner,
        )
        return [_with_settings(r) for r in rows]

    async def get_by_node_id(self, installation_id: int, node_id: str) -> dict | None:
        row = await self.db.fetchrow(
            "SELECT * FROM projects WHERE installation_id = $1 AND node_id = $2",
            installation_id, node_id,
        )
        return _with_settings(row)

    async def list_holidays(self, installation_id: int) -> list[dict]:
        rows = await self.db.fetch(
            "SELECT date, name, recurring FROM holidays WHERE installation_id = $1 ORDER BY date",
            installation_id,
        )
        return [dict(r) for r in rows]

    async def add_holiday(self, installation_id: int, date: str, name: str = "", recurring: bool = False) -> None:
        await self.db.execute(
            """INSERT INTO holidays (installation_id, date, name, recurring) VALUES ($1, $2, $3, $4)
            ON CONFLICT(installation_id, date) DO UPDATE SET
                name=EXCLUDED.name, recurring=EXCLUDED.recurring
            """,
            installation_id, date, name, 1 if recurring else 0,
        )
