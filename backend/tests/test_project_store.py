import unittest
from datetime import date

import aiosqlite

from backend.db.sqlite_migrations import run_migrations
from backend.models import FieldUpdate, Milestone, RunSummary, TrackedProject
from backend.scheduling.coordinator import RunCoordinator
from backend.scheduling.errors import ProjectNotFoundError
from backend.services.plan_settings import DEFAULT_ESTIMATE_DAYS
from backend.services.project_store import ProjectStore

SETTINGS = {
    "plans": {"free": {"maxTrackedIssues": 2}, "pro": {"maxTrackedIssues": 0}},
    "estimateDays": dict(DEFAULT_ESTIMATE_DAYS),
    "calendar": {"workingDaysOnly": False, "weekendDays": [5, 6]},
}


class ProjectStoreTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.db = await aiosqlite.connect(":memory:")
        self.db.row_factory = aiosqlite.Row
        await run_migrations(self.db)
        self.store = ProjectStore(self.db, settings=SETTINGS, today=lambda: date(2024, 1, 1))
        await self.store.projects.upsert_installation(10, "Acme", tier="free")
        await self.store.track_project(TrackedProject(installationId=10, owner="Acme", projectNumber=1, nodeId="PVT_1"))
        await self.store.upsert_item("Acme", 1, {"id": "web#1", "repo": "web", "number": 1, "estimate": "size: M"})
        await self.store.upsert_item("acme", 1, {"id": "web#2", "repo": "web", "number": 2, "estimate": 3,
                                                 "confidence": 50, "milestoneId": "m1"})
        await self.store.work_items.add_edge("acme", 1, "web#1", "web#2")
        await self.store.upsert_milestone("acme", 1, Milestone(id="m1", title="Beta", dueDate=date(2024, 2, 1)))

    async def asyncTearDown(self) -> None:
        await self.db.close()

    async def test_snapshot_maps_rows_into_models(self) -> None:
        snapshot = await self.store.get_project_snapshot("ACME", 1)

        self.assertEqual([i.id for i in snapshot.items], ["web#1", "web#2"])
        self.assertEqual(snapshot.items[0].estimate, 10)
        self.assertEqual(snapshot.items[1].confidence, 50)
        self.assertEqual(snapshot.edges[0].blockerId, "web#1")
        self.assertEqual(snapshot.milestones[0].dueDate, date(2024, 2, 1))
        self.assertEqual(snapshot.cap, 2)
        self.assertFalse(snapshot.workingDaysOnly)

    async def test_paid_tier_is_unlimited_and_installation_calendar_applies(self) -> None:
        await self.store.projects.upsert_installation(
            10, "Acme", tier="pro", settings={"workingDaysOnly": True, "weekendDays": [4, 5]}
        )
        await self.store.projects.add_holiday(10, "2023-07-04", "Independence Day", recurring=True)
        snapshot = await self.store.get_project_snapshot("acme", 1)

        self.assertIsNone(snapshot.cap)
        self.assertTrue(snapshot.workingDaysOnly)
        self.assertEqual(snapshot.weekendDays, [4, 5])
        self.assertEqual(snapshot.holidays, [date(2023, 7, 4), date(2024, 7, 4), date(2025, 7, 4)])

    async def test_board_node_ids_resolve_to_item_ids(self) -> None:
        await self.store.upsert_item(
            "acme", 1, {"id": "web#3", "repo": "web", "number": 3, "nodeId": "PVTI_3", "percentComplete": 40}
        )
        self.assertEqual(await self.store.find_item_id("Acme", 1, "PVTI_3"), "web#3")
        self.assertIsNone(await self.store.find_item_id("acme", 1, "PVTI_missing"))
        self.assertIsNone(await self.store.find_item_id("acme", 1, ""))

        snapshot = await self.store.get_project_snapshot("acme", 1)
        self.assertEqual(snapshot.items[2].percentComplete, 40)

    async def test_unknown_project_raises_not_found(self) -> None:
        with self.assertRaises(ProjectNotFoundError):
            await self.store.get_project_snapshot("acme", 99)

    async def test_write_back_and_audit(self) -> None:
        await self.store.apply_field_updates("Acme", 1, [
            FieldUpdate(itemId="web#1", field="startDate", value="2024-01-01"),
            FieldUpdate(itemId="web#2", field="milestoneOverrun", value=True),
        ])
        await self.store.log_run_summary("Acme", 1, RunSummary(runId="RUN-1", itemsProcessed=2))

        snapshot = await self.store.get_project_snapshot("acme", 1)
        self.assertEqual(snapshot.items[0].startDate, date(2024, 1, 1))
        self.assertTrue(snapshot.items[1].milestoneOverrun)
        entries = await self.store.audit.list_recent("acme", 1)
        self.assertEqual(entries[0]["details"]["runId"], "RUN-1")

    async def test_issue_updates_resolve_size_labels(self) -> None:
        touched = await self.store.update_issue("acme", "web", 2, {"estimate": "XL", "closed": True})
        self.assertEqual(touched, 1)
        snapshot = await self.store.get_project_snapshot("acme", 1)
        self.assertEqual(snapshot.items[1].estimate, 25)
        self.assertTrue(snapshot.items[1].closed)

    async def test_recalculation_through_store_is_idempotent(self) -> None:
        coordinator = RunCoordinator(self.store, self.store, self.store, today=lambda: date(2024, 1, 1))
        first = await coordinator.recalculate_project("Acme", 1)
        second = await coordinator.recalculate_project("acme", 1)

        fields = {(u.itemId, u.field): u.value for u in first.updates}
        self.assertEqual(fields[("web#1", "targetDate")], "2024-01-11")
        self.assertEqual(fields[("web#2", "startDate")], "2024-01-11")
        self.assertEqual(fields[("web#2", "targetDate")], "2024-01-17")
        self.assertEqual(second.updates, [])

    async def test_risk_report_uses_stored_dates(self) -> None:
        await self.store.apply_field_updates("acme", 1, [
            FieldUpdate(itemId="web#1", field="startDate", value="2023-12-01"),
            FieldUpdate(itemId="web#1", field="targetDate", value="2023-12-20"),
        ])
        report = await self.store.get_risks("Acme", 1)

        by_id = {item.itemId: item for item in report.items}
        self.assertEqual(report.items[0].itemId, "web#1")
        self.assertEqual([r.type for r in by_id["web#1"].risks], ["overdue"])
        self.assertEqual(by_id["web#2"].risks[0].type, "noTargetDate")
        self.assertEqual(by_id["web#2"].risks[1].blockingItems, ["web#1"])

    async def test_baseline_is_captured_once_and_variance_reported(self) -> None:
        coordinator = RunCoordinator(self.store, self.store, self.store, today=lambda: date(2024, 1, 1))
        await coordinator.recalculate_project("acme", 1)

        captured = await self.store.capture_baseline("acme", 1)
        self.assertEqual(len(captured), 4)
        self.assertEqual(await self.store.capture_baseline("acme", 1), [])

        await self.store.apply_field_updates("acme", 1, [
            FieldUpdate(itemId="web#2", field="targetDate", value="2024-01-20"),
        ])
        report = await self.store.get_variance("acme", 1)
        by_id = {item.itemId: item for item in report.items}
        self.assertEqual(by_id["web#1"].status, "onTrack")
        self.assertEqual(by_id["web#2"].status, "behind")
        self.assertEqual(by_id["web#2"].variance, 3)
        self.assertEqual(report.summary.behind, 1)
        self.assertEqual(report.summary.onTrack, 1)


if __name__ == "__main__":
    unittest.main()
