"""Per-project recalculation coordinator.

Runs are serialized per (owner, project number) through a single slot table.
While a run is in flight, further triggers for the same project are either
coalesced into one pending follow-up run or rejected as busy. Different
projects run independently.
"""
from __future__ import annotations

import asyncio
import copy
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Callable, Optional, Protocol

from backend import config
from backend.date_utils import ScheduleCalendar, format_date, utc_today
from backend.models import FieldUpdate, ProjectSnapshot, RunResult, RunSummary
from backend.observability import record_recalculation, record_warning, start_span
from backend.scheduling.cycles import find_cyclic_components
from backend.scheduling.emitter import EchoGuard, emit_changes
from backend.scheduling.errors import SchedulingError, TransientCollaboratorError
from backend.scheduling.graph import build_project_graph
from backend.scheduling.propagation import propagate

logger = logging.getLogger("projectflow.scheduling")

POLICY_COALESCE = "coalesce"
POLICY_REJECT = "reject"


class SnapshotProvider(Protocol):
    async def get_project_snapshot(self, owner: str, project_number: int) -> ProjectSnapshot: ...

    async def find_projects_for_item(self, owner: str, repo: str, item_number: int) -> list[int]: ...


class WriteBackSink(Protocol):
    async def apply_field_updates(self, owner: str, project_number: int, updates: list[FieldUpdate]) -> None: ...


class AuditSink(Protocol):
    async def log_run_summary(self, owner: str, project_number: int, summary: RunSummary) -> None: ...


@dataclass(frozen=True)
class ProjectKey:
    owner: str
    project_number: int

    @classmethod
    def of(cls, owner: str, project_number: int) -> "ProjectKey":
        return cls(owner.strip().lower(), int(project_number))

    def __str__(self) -> str:
        return f"{self.owner}/{self.project_number}"


@dataclass
class RecalculationRun:
    run_id: str
    key: ProjectKey
    sequence: int
    trigger: str
    snapshot: Optional[ProjectSnapshot] = None
    updates: list[FieldUpdate] = field(default_factory=list)
    summary: Optional[RunSummary] = None
    cyclic_ids: set[str] = field(default_factory=set)
    cap_truncated: bool = False
    skipped_count: int = 0


@dataclass
class _ProjectSlot:
    running: bool = False
    follow_up: Optional[asyncio.Future] = None
    follow_up_trigger: str = ""
    next_sequence: int = 0
    last_written_sequence: int = -1
    # Items closed since the last run started; their actualEndDate is stamped in the next batch.
    closed_items: set[str] = field(default_factory=set)


def compute_run(
    snapshot: ProjectSnapshot,
    *,
    today: date,
    run_id: str = "",
    trigger: str = "api",
) -> tuple[list[FieldUpdate], RunSummary, set[str]]:
    """Pure recalculation over one snapshot: graph, cycles, propagation, diff."""
    graph = build_project_graph(snapshot.items, snapshot.edges, cap=snapshot.cap)
    cyclic_ids, cycle_warnings = find_cyclic_components(graph)
    calendar = ScheduleCalendar(
        working_days_only=snapshot.workingDaysOnly,
        weekend_days=snapshot.weekendDays,
        holidays=snapshot.holidays,
    )
    schedule = propagate(graph, cyclic_ids, snapshot.milestones, today=today, calendar=calendar)
    updates, summary = emit_changes(
        graph,
        cyclic_ids,
        schedule,
        run_id=run_id,
        trigger=trigger,
        extra_warnings=cycle_warnings,
    )
    return updates, summary, cyclic_ids


class RunCoordinator:
    """Admits, serializes and executes recalculation runs."""

    def __init__(
        self,
        snapshots: SnapshotProvider,
        writer: WriteBackSink,
        audit: AuditSink,
        *,
        policy: str | None = None,
        echo_guard: EchoGuard | None = None,
        today: Callable[[], date] = utc_today,
        max_history: int | None = None,
    ):
        policy = (policy or config.CONCURRENCY_POLICY or POLICY_COALESCE).strip().lower()
        if policy not in {POLICY_COALESCE, POLICY_REJECT}:
            raise ValueError(f"Unknown concurrency policy: {policy}")
        self.policy = policy
        self.snapshots = snapshots
        self.writer = writer
        self.audit = audit
        self.echo_guard = echo_guard
        self._today = today
        self._table_lock = asyncio.Lock()
        self._slots: dict[ProjectKey, _ProjectSlot] = {}
        self._background: set[asyncio.Task] = set()
        self._history_lock = asyncio.Lock()
        self._runs: dict[str, dict[str, Any]] = {}
        self._run_order: list[str] = []
        self._active_run_ids: set[str] = set()
        self._max_history = max(1, int(max_history or config.MAX_RUN_HISTORY))

    # ── Trigger surface ─────────────────────────────────────────────

    async def recalculate_project(self, owner: str, project_number: int, *, trigger: str = "api") -> RunResult:
        return await self._submit(ProjectKey.of(owner, project_number), trigger)

    async def on_item_closed(self, owner: str, repo: str, item_number: int) -> list[RunResult]:
        """Recalculate every tracked project holding the item, stamping its close date in the same batch."""
        item_id = f"{repo}#{int(item_number)}"
        try:
            project_numbers = await self.snapshots.find_projects_for_item(owner, repo, int(item_number))
        except SchedulingError:
            raise
        except Exception as exc:
            raise TransientCollaboratorError("project lookup", owner, 0, exc) from exc

        results: list[RunResult] = []
        for project_number in project_numbers:
            key = ProjectKey.of(owner, project_number)
            results.append(await self._submit(key, "item_closed", closed_item=item_id))
        return results

    async def _submit(self, key: ProjectKey, trigger: str, *, closed_item: str | None = None) -> RunResult:
        waiter: asyncio.Future | None = None
        async with self._table_lock:
            slot = self._slots.setdefault(key, _ProjectSlot())
            if slot.running:
                if self.policy == POLICY_REJECT:
                    logger.info("Recalculation for %s rejected: run in flight (trigger=%s)", key, trigger)
                    return RunResult(status="busy", owner=key.owner, projectNumber=key.project_number)
                if closed_item:
                    slot.closed_items.add(closed_item)
                if slot.follow_up is None:
                    slot.follow_up = asyncio.get_running_loop().create_future()
                    slot.follow_up_trigger = trigger
                    logger.info("Recalculation for %s queued as follow-up (trigger=%s)", key, trigger)
                else:
                    logger.debug("Recalculation for %s coalesced into pending follow-up", key)
                waiter = slot.follow_up
            else:
                if closed_item:
                    slot.closed_items.add(closed_item)
                slot.running = True

        if waiter is not None:
            return await asyncio.shield(waiter)

        try:
            return await self._execute(key, slot, trigger)
        finally:
            await self._release(key, slot)

    async def close(self) -> None:
        """Wait for follow-up runs spawned in the background."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ── Run execution ───────────────────────────────────────────────

    async def _release(self, key: ProjectKey, slot: _ProjectSlot) -> None:
        async with self._table_lock:
            if slot.follow_up is None:
                slot.running = False
                if self._slots.get(key) is slot:
                    del self._slots[key]
                return
            future, trigger = slot.follow_up, slot.follow_up_trigger
            slot.follow_up = None
            slot.follow_up_trigger = ""
        task = asyncio.create_task(self._run_follow_up(key, slot, future, trigger))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _run_follow_up(self, key: ProjectKey, slot: _ProjectSlot, future: asyncio.Future, trigger: str) -> None:
        try:
            result = await self._execute(key, slot, trigger)
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as exc:  # noqa: BLE001
            if not future.done():
                future.set_exception(exc)
                # Mark observed so callers that went away do not trigger "never retrieved" noise.
                future.exception()
        else:
            if not future.done():
                future.set_result(result)
        finally:
            await self._release(key, slot)

    async def _execute(self, key: ProjectKey, slot: _ProjectSlot, trigger: str) -> RunResult:
        async with self._table_lock:
            sequence = slot.next_sequence
            slot.next_sequence += 1
            closed_ids, slot.closed_items = slot.closed_items, set()
        run = RecalculationRun(run_id=f"RUN-{uuid.uuid4()}", key=key, sequence=sequence, trigger=trigger)
        await self._start_history(run)
        t0 = time.monotonic()
        status = "failed"
        try:
            with start_span("projectflow.recalculate", {"project": str(key), "trigger": trigger}):
                run.snapshot = await self._fetch_snapshot(key)
                stamps = self._stamp_closed_items(run.snapshot, closed_ids)
                updates, run.summary, run.cyclic_ids = compute_run(
                    run.snapshot,
                    today=self._today(),
                    run_id=run.run_id,
                    trigger=trigger,
                )
                run.updates = stamps + updates
                run.summary.updatesEmitted = len(run.updates)
                run.cap_truncated = run.summary.capTruncated
                run.skipped_count = run.summary.itemsSkippedByCap

                # Writes land in run-start order. The slot already serializes runs per key,
                # so this only trips if runs for one key overlap.
                async with self._table_lock:
                    stale = run.sequence < slot.last_written_sequence
                    if stale:
                        slot.closed_items |= closed_ids
                if stale:
                    status = "superseded"
                    logger.info("Discarding writes of superseded run %s for %s", run.run_id, key)
                else:
                    if run.updates:
                        await self._write(key, run.updates)
                    async with self._table_lock:
                        slot.last_written_sequence = max(slot.last_written_sequence, run.sequence)
                    status = "completed"
        except Exception as exc:
            status = "failed"
            async with self._table_lock:
                slot.closed_items |= closed_ids
            await self._finish_history(run, status=status, error=str(exc))
            raise
        finally:
            record_recalculation(status, (time.monotonic() - t0) * 1000, project_id=str(key))

        await self._finish_history(run, status=status)
        await self._log_summary(key, run.summary)
        for warning in run.summary.warnings:
            record_warning(warning.kind, project_id=str(key))
        written = run.updates if status == "completed" else []
        logger.info(
            "Recalculation %s for %s: %d processed, %d skipped by cap, %d cyclic, %d updates",
            run.run_id,
            key,
            run.summary.itemsProcessed,
            run.summary.itemsSkippedByCap,
            len(run.summary.cyclicItems),
            len(written),
        )
        return RunResult(
            status=status,
            runId=run.run_id,
            owner=key.owner,
            projectNumber=key.project_number,
            updates=written,
            summary=run.summary,
        )

    def _stamp_closed_items(self, snapshot: ProjectSnapshot, closed_ids: set[str]) -> list[FieldUpdate]:
        """Set today's date as actualEndDate on newly closed items, in the snapshot and as updates."""
        if not closed_ids:
            return []
        today = self._today()
        stamps: list[FieldUpdate] = []
        items = []
        for item in snapshot.items:
            if item.id in closed_ids and item.closed and not item.actualEndDate:
                item = item.model_copy(update={"actualEndDate": today})
                stamps.append(FieldUpdate(itemId=item.id, field="actualEndDate", value=format_date(today)))
                logger.info("Set actual end date for %s", item.id)
            items.append(item)
        snapshot.items = items
        return stamps

    async def _fetch_snapshot(self, key: ProjectKey) -> ProjectSnapshot:
        try:
            return await self.snapshots.get_project_snapshot(key.owner, key.project_number)
        except SchedulingError:
            raise
        except Exception as exc:
            logger.error("Snapshot fetch failed for %s: %s", key, exc)
            raise TransientCollaboratorError("snapshot fetch", key.owner, key.project_number, exc) from exc

    async def _write(self, key: ProjectKey, updates: list[FieldUpdate]) -> None:
        try:
            await self.writer.apply_field_updates(key.owner, key.project_number, updates)
        except SchedulingError:
            raise
        except Exception as exc:
            logger.error("Write-back failed for %s: %s", key, exc)
            raise TransientCollaboratorError("write-back", key.owner, key.project_number, exc) from exc
        if self.echo_guard is not None:
            self.echo_guard.record(key.owner, key.project_number, updates)

    async def _log_summary(self, key: ProjectKey, summary: RunSummary) -> None:
        try:
            await self.audit.log_run_summary(key.owner, key.project_number, summary)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Audit log failed for %s: %s", key, exc)

    # ── Run history ─────────────────────────────────────────────────

    async def _start_history(self, run: RecalculationRun) -> None:
        now = datetime.now(timezone.utc).isoformat()
        payload = {
            "id": run.run_id,
            "owner": run.key.owner,
            "projectNumber": run.key.project_number,
            "sequence": run.sequence,
            "trigger": run.trigger,
            "status": "running",
            "startedAt": now,
            "finishedAt": "",
            "durationMs": 0,
            "summary": {},
            "updates": 0,
            "error": "",
        }
        async with self._history_lock:
            self._runs[run.run_id] = payload
            self._run_order.insert(0, run.run_id)
            self._active_run_ids.add(run.run_id)
            if len(self._run_order) > self._max_history:
                stale_ids = self._run_order[self._max_history :]
                self._run_order = self._run_order[: self._max_history]
                for stale_id in stale_ids:
                    self._runs.pop(stale_id, None)
                    self._active_run_ids.discard(stale_id)
        logger.info("Run started [%s] %s (trigger=%s)", run.run_id, run.key, run.trigger)

    async def _finish_history(self, run: RecalculationRun, *, status: str, error: str = "") -> None:
        now = datetime.now(timezone.utc)
        async with self._history_lock:
            payload = self._runs.get(run.run_id)
            self._active_run_ids.discard(run.run_id)
            if not payload:
                return
            payload["status"] = status
            payload["finishedAt"] = now.isoformat()
            payload["error"] = error
            payload["updates"] = len(run.updates) if status == "completed" else 0
            if run.summary is not None:
                payload["summary"] = run.summary.model_dump(mode="json")
            try:
                started_at = datetime.fromisoformat(payload["startedAt"])
                payload["durationMs"] = max(0, int((now - started_at).total_seconds() * 1000))
            except ValueError:
                payload["durationMs"] = 0
        if status == "failed":
            logger.error("Run failed [%s]: %s", run.run_id, error)
        else:
            logger.info("Run finished [%s] status=%s", run.run_id, status)

    async def list_runs(self, limit: int = 20) -> list[dict[str, Any]]:
        """Return latest run snapshots, newest first."""
        async with self._history_lock:
            run_ids = self._run_order[: max(1, limit)]
            return [copy.deepcopy(self._runs[run_id]) for run_id in run_ids if run_id in self._runs]

    async def get_run(self, run_id: str) -> dict[str, Any] | None:
        async with self._history_lock:
            run = self._runs.get(run_id)
            return copy.deepcopy(run) if run else None

    async def get_observability_snapshot(self) -> dict[str, Any]:
        async with self._history_lock:
            active = [
                copy.deepcopy(self._runs[run_id])
                for run_id in self._run_order
                if run_id in self._active_run_ids and run_id in self._runs
            ]
        async with self._table_lock:
            busy = sorted(str(key) for key, slot in self._slots.items() if slot.running)
            pending = sorted(str(key) for key, slot in self._slots.items() if slot.follow_up is not None)
        return {
            "policy": self.policy,
            "activeRunCount": len(active),
            "activeRuns": active,
            "busyProjects": busy,
            "pendingFollowUps": pending,
            "trackedRunCount": len(self._runs),
        }
