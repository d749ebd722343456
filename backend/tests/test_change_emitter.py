import unittest
from datetime import date

from backend.models import DependencyEdge, FieldUpdate, WorkItem
from backend.scheduling.cycles import find_cyclic_components
from backend.scheduling.emitter import EchoGuard, emit_changes
from backend.scheduling.graph import build_project_graph
from backend.scheduling.propagation import propagate


class _Clock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


def _run(items, edges=(), cap=None):
    graph = build_project_graph(list(items), list(edges), cap=cap)
    cyclic, cycle_warnings = find_cyclic_components(graph)
    schedule = propagate(graph, cyclic, [], today=date(2024, 1, 1))
    return emit_changes(graph, cyclic, schedule, run_id="RUN-1", trigger="test", extra_warnings=cycle_warnings)


class EmitChangesTests(unittest.TestCase):
    def test_unchanged_dates_are_not_emitted(self) -> None:
        items = [
            WorkItem(id="web#1", repo="web", number=1, estimate=2,
                     startDate=date(2024, 1, 1), targetDate=date(2024, 1, 3)),
        ]
        updates, summary = _run(items)
        self.assertEqual(updates, [])
        self.assertEqual(summary.runId, "RUN-1")
        self.assertEqual(summary.trigger, "test")

    def test_item_leaving_a_cycle_clears_its_flag(self) -> None:
        items = [WorkItem(id="web#1", repo="web", number=1, startDate=date(2024, 1, 1), cyclic=True)]
        updates, _ = _run(items)
        self.assertEqual([(u.itemId, u.field, u.value) for u in updates], [("web#1", "cyclic", False)])

    def test_summary_collects_warnings_in_pipeline_order(self) -> None:
        items = [
            WorkItem(id="web#1", repo="web", number=1),
            WorkItem(id="web#2", repo="web", number=2),
            WorkItem(id="web#3", repo="web", number=3, estimate=1, confidence=0),
        ]
        edges = [
            DependencyEdge(blockerId="web#1", blockedId="web#9"),
            DependencyEdge(blockerId="web#1", blockedId="web#2"),
            DependencyEdge(blockerId="web#2", blockedId="web#1"),
        ]
        _, summary = _run(items, edges)
        self.assertEqual([w.kind for w in summary.warnings], ["dangling_edge", "cycle", "zero_confidence"])
        self.assertEqual(summary.droppedEdges, 1)
        self.assertEqual(summary.cyclicItems, ["web#1", "web#2"])
        self.assertEqual(summary.zeroConfidenceItems, ["web#3"])


class EchoGuardTests(unittest.TestCase):
    def setUp(self) -> None:
        self.clock = _Clock()
        self.guard = EchoGuard(ttl_seconds=5, max_projects=2, clock=self.clock)
        self.guard.record("Acme", 7, [
            FieldUpdate(itemId="web#1", field="startDate", value="2024-01-02"),
            FieldUpdate(itemId="web#1", field="cyclic", value=True),
        ])

    def test_matching_write_is_an_echo(self) -> None:
        self.assertTrue(self.guard.is_echo("acme", 7, field="startDate", value="2024-01-02"))
        self.assertTrue(self.guard.is_echo("ACME", 7, item_id="web#1", field="cyclic", value=True))
        self.assertTrue(self.guard.is_echo("acme", 7))

    def test_different_value_or_project_is_not_an_echo(self) -> None:
        self.assertFalse(self.guard.is_echo("acme", 7, field="startDate", value="2024-01-03"))
        self.assertFalse(self.guard.is_echo("acme", 8, field="startDate"))
        self.assertFalse(self.guard.is_echo("acme", 7, field="targetDate"))

    def test_writes_expire_after_ttl(self) -> None:
        self.clock.now += 6
        self.assertFalse(self.guard.is_echo("acme", 7, field="startDate"))

    def test_oldest_project_is_evicted(self) -> None:
        self.guard.record("acme", 8, [FieldUpdate(itemId="web#2", field="targetDate", value="2024-02-01")])
        self.guard.record("acme", 9, [FieldUpdate(itemId="web#3", field="targetDate", value="2024-02-01")])
        self.assertFalse(self.guard.is_echo("acme", 7))
        self.assertTrue(self.guard.is_echo("acme", 9, field="targetDate"))


if __name__ == "__main__":
    unittest.main()
