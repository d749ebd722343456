import types
import unittest

from fastapi import HTTPException

from backend.models import (
    FieldUpdate,
    RiskReport,
    RiskSummary,
    RunResult,
    TrackedProject,
    VarianceReport,
    VarianceSummary,
)
from backend.routers import projects as projects_router
from backend.routers import runs as runs_router
from backend.routers import webhooks as webhooks_router
from backend.scheduling.errors import InvariantViolation, ProjectNotFoundError, TransientCollaboratorError
from backend.services.webhook_events import WebhookOutcome


class _FakeCoordinator:
    def __init__(self, result: RunResult | None = None, error: Exception | None = None) -> None:
        self.result = result or RunResult(runId="RUN-1", owner="acme", projectNumber=1)
        self.error = error
        self.calls: list[tuple] = []

    async def recalculate_project(self, owner, project_number, *, trigger="api"):
        self.calls.append((owner, project_number, trigger))
        if self.error:
            raise self.error
        return self.result

    async def list_runs(self, limit=20):
        return [{"id": "RUN-1", "status": "completed"}][:limit]

    async def get_run(self, run_id):
        if run_id == "RUN-404":
            return None
        return {"id": run_id, "status": "completed"}

    async def get_observability_snapshot(self):
        return {"policy": "coalesce", "activeRunCount": 0, "busyProjects": []}


class _FakeWorkItems:
    def __init__(self) -> None:
        self.edges: list[tuple] = []

    async def add_edge(self, owner, project_number, blocker_id, blocked_id):
        self.edges.append((owner, project_number, blocker_id, blocked_id))


class _FakeStore:
    def __init__(self) -> None:
        self.work_items = _FakeWorkItems()
        self.tracked: list[TrackedProject] = []
        self.items: list[dict] = []
        self.milestones: list = []

    async def track_project(self, project):
        self.tracked.append(project)

    async def upsert_item(self, owner, project_number, item):
        if "id" not in item:
            raise ValueError("item id is required")
        self.items.append(item)

    async def upsert_milestone(self, owner, project_number, milestone):
        self.milestones.append(milestone)

    async def capture_baseline(self, owner, project_number):
        if project_number == 99:
            raise ProjectNotFoundError(owner, project_number)
        return [FieldUpdate(itemId="web#1", field="baselineStart", value="2024-01-01")]

    async def get_variance(self, owner, project_number):
        return VarianceReport(summary=VarianceSummary(noBaseline=2))

    async def get_risks(self, owner, project_number):
        if project_number == 99:
            raise ProjectNotFoundError(owner, project_number)
        return RiskReport(summary=RiskSummary(total=3, highestScore=50))


class _FakeWebhookRouter:
    def __init__(self) -> None:
        self.events: list[tuple] = []

    async def handle(self, event, payload):
        self.events.append((event, payload))
        if event == "issues" and payload.get("action") == "boom":
            raise TransientCollaboratorError("snapshot fetch", "acme", 1)
        return WebhookOutcome(event=event, action=payload.get("action", ""), decision="recalculated")


def _request(**state):
    return types.SimpleNamespace(app=types.SimpleNamespace(state=types.SimpleNamespace(**state)))


class _JsonRequest:
    def __init__(self, payload, **state) -> None:
        self._payload = payload
        self.app = types.SimpleNamespace(state=types.SimpleNamespace(**state))

    async def json(self):
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload


class ProjectsRouterTests(unittest.IsolatedAsyncioTestCase):
    async def test_recalculate_returns_run_result(self) -> None:
        coordinator = _FakeCoordinator()
        result = await projects_router.recalculate_project(_request(coordinator=coordinator), "Acme", 1)
        self.assertEqual(result.runId, "RUN-1")
        self.assertEqual(coordinator.calls, [("Acme", 1, "api")])

    async def test_recalculate_maps_errors_to_status_codes(self) -> None:
        cases = [
            (TransientCollaboratorError("snapshot fetch", "acme", 1), 503),
            (ProjectNotFoundError("acme", 1), 404),
            (InvariantViolation("negative estimate"), 500),
        ]
        for error, status in cases:
            with self.subTest(status=status):
                request = _request(coordinator=_FakeCoordinator(error=error))
                with self.assertRaises(HTTPException) as ctx:
                    await projects_router.recalculate_project(request, "acme", 1)
                self.assertEqual(ctx.exception.status_code, status)

    async def test_busy_run_is_a_conflict(self) -> None:
        coordinator = _FakeCoordinator(result=RunResult(status="busy", owner="acme", projectNumber=1))
        with self.assertRaises(HTTPException) as ctx:
            await projects_router.recalculate_project(_request(coordinator=coordinator), "acme", 1)
        self.assertEqual(ctx.exception.status_code, 409)

    async def test_missing_coordinator_is_unavailable(self) -> None:
        with self.assertRaises(HTTPException) as ctx:
            await projects_router.recalculate_project(_request(), "acme", 1)
        self.assertEqual(ctx.exception.status_code, 503)

    async def test_baseline_and_variance(self) -> None:
        request = _request(store=_FakeStore())
        baseline = await projects_router.capture_baseline(request, "acme", 1)
        self.assertEqual(baseline["fieldsSet"], 1)
        self.assertEqual(baseline["updates"][0]["field"], "baselineStart")

        report = await projects_router.get_variance(request, "acme", 1)
        self.assertEqual(report.summary.noBaseline, 2)

        with self.assertRaises(HTTPException) as ctx:
            await projects_router.capture_baseline(request, "acme", 99)
        self.assertEqual(ctx.exception.status_code, 404)

    async def test_risk_report(self) -> None:
        request = _request(store=_FakeStore())
        report = await projects_router.get_risks(request, "acme", 1)
        self.assertEqual(report.summary.highestScore, 50)

        with self.assertRaises(HTTPException) as ctx:
            await projects_router.get_risks(request, "acme", 99)
        self.assertEqual(ctx.exception.status_code, 404)

    async def test_board_sync_and_tracking(self) -> None:
        store = _FakeStore()
        request = _request(store=store)
        project = TrackedProject(installationId=10, owner="acme", projectNumber=1)
        await projects_router.track_project(request, project)
        body = projects_router.BoardSyncRequest(
            items=[{"id": "web#1", "repo": "web", "number": 1}],
            edges=[{"blockerId": "web#1", "blockedId": "web#2"}],
        )
        response = await projects_router.sync_board(request, "Acme", 1, body)

        self.assertEqual(store.tracked, [project])
        self.assertEqual(response["items"], 1)
        self.assertEqual(store.work_items.edges, [("acme", 1, "web#1", "web#2")])

        with self.assertRaises(HTTPException) as ctx:
            await projects_router.sync_board(request, "acme", 1, projects_router.BoardSyncRequest(items=[{"repo": "web"}]))
        self.assertEqual(ctx.exception.status_code, 400)


class RunsRouterTests(unittest.IsolatedAsyncioTestCase):
    async def test_list_and_get_runs(self) -> None:
        request = _request(coordinator=_FakeCoordinator())
        listing = await runs_router.list_runs(request, limit=5)
        self.assertEqual(listing["count"], 1)
        self.assertEqual((await runs_router.get_run(request, "RUN-1"))["id"], "RUN-1")
        self.assertEqual((await runs_router.get_run_status(request))["policy"], "coalesce")

        with self.assertRaises(HTTPException) as ctx:
            await runs_router.get_run(request, "RUN-404")
        self.assertEqual(ctx.exception.status_code, 404)


class WebhooksRouterTests(unittest.IsolatedAsyncioTestCase):
    async def test_delivery_is_routed(self) -> None:
        handler = _FakeWebhookRouter()
        request = _JsonRequest({"action": "edited"}, webhook_router=handler)
        response = await webhooks_router.receive_github_event(request, "issues", "delivery-1")
        self.assertTrue(response["received"])
        self.assertEqual(response["decision"], "recalculated")
        self.assertEqual(handler.events, [("issues", {"action": "edited"})])

    async def test_invalid_json_is_rejected(self) -> None:
        request = _JsonRequest(ValueError("bad json"), webhook_router=_FakeWebhookRouter())
        with self.assertRaises(HTTPException) as ctx:
            await webhooks_router.receive_github_event(request, "issues", "delivery-2")
        self.assertEqual(ctx.exception.status_code, 400)

    async def test_transient_failure_is_unavailable(self) -> None:
        request = _JsonRequest({"action": "boom"}, webhook_router=_FakeWebhookRouter())
        with self.assertRaises(HTTPException) as ctx:
            await webhooks_router.receive_github_event(request, "issues", "delivery-3")
        self.assertEqual(ctx.exception.status_code, 503)


if __name__ == "__main__":
    unittest.main()
