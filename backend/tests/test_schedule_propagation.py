import unittest
from datetime import date

from backend.date_utils import ScheduleCalendar
from backend.models import DependencyEdge, Milestone, ProjectSnapshot, WorkItem
from backend.scheduling.coordinator import compute_run
from backend.scheduling.errors import InvariantViolation
from backend.scheduling.graph import build_project_graph
from backend.scheduling.propagation import effective_duration, propagate, topological_order

TODAY = date(2024, 1, 1)  # Monday


def _item(number: int, **kwargs) -> WorkItem:
    return WorkItem(id=f"web#{number}", repo="web", number=number, **kwargs)


def _edge(blocker: int, blocked: int) -> DependencyEdge:
    return DependencyEdge(blockerId=f"web#{blocker}", blockedId=f"web#{blocked}")


def _fields(updates) -> dict[tuple[str, str], object]:
    return {(u.itemId, u.field): u.value for u in updates}


def _apply(snapshot: ProjectSnapshot, updates) -> ProjectSnapshot:
    by_item: dict[str, dict] = {}
    for update in updates:
        by_item.setdefault(update.itemId, {})[update.field] = update.value
    items = [
        WorkItem.model_validate({**item.model_dump(), **by_item.get(item.id, {})})
        for item in snapshot.items
    ]
    return snapshot.model_copy(update={"items": items})


class ComputeRunScenarioTests(unittest.TestCase):
    def test_blocked_item_starts_when_blocker_finishes(self) -> None:
        snapshot = ProjectSnapshot(
            items=[_item(1, estimate=5, confidence=100), _item(2, estimate=3, confidence=50)],
            edges=[_edge(1, 2)],
        )
        updates, summary, cyclic = compute_run(snapshot, today=TODAY)

        fields = _fields(updates)
        self.assertEqual(fields[("web#1", "startDate")], "2024-01-01")
        self.assertEqual(fields[("web#1", "targetDate")], "2024-01-06")
        self.assertEqual(fields[("web#2", "startDate")], "2024-01-06")
        self.assertEqual(fields[("web#2", "targetDate")], "2024-01-12")
        self.assertEqual(len(updates), 4)
        self.assertEqual(cyclic, set())
        self.assertEqual(summary.itemsProcessed, 2)
        self.assertEqual(summary.updatesEmitted, 4)

    def test_mutual_dependency_flags_both_and_leaves_dates(self) -> None:
        snapshot = ProjectSnapshot(
            items=[
                _item(3, estimate=2, startDate=date(2024, 2, 1), targetDate=date(2024, 2, 3)),
                _item(4, estimate=2, startDate=date(2024, 2, 5), targetDate=date(2024, 2, 7)),
            ],
            edges=[_edge(3, 4), _edge(4, 3)],
        )
        updates, summary, cyclic = compute_run(snapshot, today=TODAY)

        self.assertEqual(cyclic, {"web#3", "web#4"})
        self.assertEqual({(u.itemId, u.field, u.value) for u in updates}, {
            ("web#3", "cyclic", True),
            ("web#4", "cyclic", True),
        })
        self.assertEqual(summary.cyclicItems, ["web#3", "web#4"])
        self.assertEqual([w.kind for w in summary.warnings], ["cycle"])

    def test_successor_of_cycle_starts_after_cyclic_target(self) -> None:
        snapshot = ProjectSnapshot(
            items=[
                _item(1, startDate=date(2024, 2, 1), targetDate=date(2024, 2, 10)),
                _item(2, startDate=date(2024, 2, 1), targetDate=date(2024, 2, 4)),
                _item(3, estimate=1),
            ],
            edges=[_edge(1, 2), _edge(2, 1), _edge(1, 3), _edge(2, 3)],
        )
        updates, _, _ = compute_run(snapshot, today=TODAY)
        fields = _fields(updates)
        self.assertEqual(fields[("web#3", "startDate")], "2024-02-10")
        self.assertEqual(fields[("web#3", "targetDate")], "2024-02-11")

    def test_recomputing_after_applying_updates_emits_nothing(self) -> None:
        snapshot = ProjectSnapshot(
            items=[
                _item(1, estimate=4, confidence=80),
                _item(2, estimate=2),
                _item(3, estimate=1, confidence=0),
                _item(4, estimate=3, milestoneId="m1"),
            ],
            edges=[_edge(1, 2), _edge(2, 3), _edge(1, 4)],
            milestones=[Milestone(id="m1", dueDate=date(2024, 1, 3))],
        )
        first, _, _ = compute_run(snapshot, today=TODAY)
        self.assertTrue(first)

        second, summary, _ = compute_run(_apply(snapshot, first), today=TODAY)
        self.assertEqual(second, [])
        self.assertEqual(summary.updatesEmitted, 0)

    def test_pinned_start_is_kept_and_fed_to_successors(self) -> None:
        snapshot = ProjectSnapshot(
            items=[
                _item(1, estimate=2, startDate=date(2024, 3, 1), startPinned=True),
                _item(2, estimate=1),
            ],
            edges=[_edge(1, 2)],
        )
        updates, _, _ = compute_run(snapshot, today=TODAY)
        fields = _fields(updates)
        self.assertNotIn(("web#1", "startDate"), fields)
        self.assertEqual(fields[("web#1", "targetDate")], "2024-03-03")
        self.assertEqual(fields[("web#2", "startDate")], "2024-03-03")

    def test_pinned_target_is_never_overwritten(self) -> None:
        snapshot = ProjectSnapshot(
            items=[
                _item(1, estimate=10, targetDate=date(2024, 1, 4), targetPinned=True),
                _item(2, estimate=1),
            ],
            edges=[_edge(1, 2)],
        )
        updates, _, _ = compute_run(snapshot, today=TODAY)
        fields = _fields(updates)
        self.assertNotIn(("web#1", "targetDate"), fields)
        self.assertEqual(fields[("web#2", "startDate")], "2024-01-04")

    def test_closed_item_hands_off_actual_end_date(self) -> None:
        snapshot = ProjectSnapshot(
            items=[
                _item(1, estimate=5, closed=True, startDate=date(2023, 12, 1), actualEndDate=date(2024, 1, 10)),
                _item(2, estimate=2),
            ],
            edges=[_edge(1, 2)],
        )
        updates, _, _ = compute_run(snapshot, today=TODAY)
        fields = _fields(updates)
        self.assertFalse(any(item_id == "web#1" for item_id, _ in fields))
        self.assertEqual(fields[("web#2", "startDate")], "2024-01-10")

    def test_capped_items_are_untouched_and_counted(self) -> None:
        snapshot = ProjectSnapshot(
            items=[_item(n, estimate=1) for n in (1, 2, 3)],
            edges=[_edge(2, 3)],
            cap=2,
        )
        updates, summary, _ = compute_run(snapshot, today=TODAY)
        self.assertFalse(any(u.itemId == "web#3" for u in updates))
        self.assertEqual(summary.itemsSkippedByCap, 1)
        self.assertTrue(summary.capTruncated)
        self.assertEqual(summary.itemsTotal, 3)

    def test_zero_confidence_is_flagged_and_bounded(self) -> None:
        snapshot = ProjectSnapshot(items=[_item(1, estimate=1, confidence=0)])
        updates, summary, _ = compute_run(snapshot, today=TODAY)
        self.assertEqual(_fields(updates)[("web#1", "targetDate")], "2024-04-10")
        self.assertEqual(summary.zeroConfidenceItems, ["web#1"])
        self.assertIn("zero_confidence", [w.kind for w in summary.warnings])

    def test_milestone_overrun_sets_flag(self) -> None:
        snapshot = ProjectSnapshot(
            items=[_item(1, estimate=5, milestoneId="m1")],
            milestones=[Milestone(id="m1", dueDate=date(2024, 1, 3))],
        )
        updates, summary, _ = compute_run(snapshot, today=TODAY)
        self.assertIs(_fields(updates)[("web#1", "milestoneOverrun")], True)
        self.assertEqual(summary.milestoneOverruns, ["web#1"])

    def test_unscheduled_item_keeps_target_and_passes_start(self) -> None:
        snapshot = ProjectSnapshot(
            items=[_item(1, startDate=date(2024, 1, 5)), _item(2, estimate=1)],
            edges=[_edge(1, 2)],
        )
        updates, _, _ = compute_run(snapshot, today=TODAY)
        fields = _fields(updates)
        self.assertNotIn(("web#1", "targetDate"), fields)
        self.assertEqual(fields[("web#2", "startDate")], "2024-01-05")

    def test_unscheduled_blocker_with_stored_target_holds_back_successor(self) -> None:
        snapshot = ProjectSnapshot(
            items=[
                _item(1, startDate=date(2024, 1, 5), targetDate=date(2024, 2, 1)),
                _item(2, estimate=1),
            ],
            edges=[_edge(1, 2)],
        )
        updates, _, _ = compute_run(snapshot, today=TODAY)
        after = {item.id: item for item in _apply(snapshot, updates).items}

        self.assertEqual(after["web#1"].targetDate, date(2024, 2, 1))
        self.assertEqual(after["web#2"].startDate, date(2024, 2, 1))
        self.assertGreaterEqual(after["web#2"].startDate, after["web#1"].targetDate)

    def test_negative_estimate_is_an_invariant_violation(self) -> None:
        snapshot = ProjectSnapshot(items=[_item(1, estimate=-1)])
        with self.assertRaises(InvariantViolation):
            compute_run(snapshot, today=TODAY)

    def test_working_days_skip_weekends_and_holidays(self) -> None:
        snapshot = ProjectSnapshot(
            items=[_item(1, estimate=2, startDate=date(2024, 1, 6))],  # Saturday
            workingDaysOnly=True,
            holidays=[date(2024, 1, 9)],
        )
        updates, _, _ = compute_run(snapshot, today=TODAY)
        fields = _fields(updates)
        self.assertEqual(fields[("web#1", "startDate")], "2024-01-08")
        self.assertEqual(fields[("web#1", "targetDate")], "2024-01-11")


class PropagationUnitTests(unittest.TestCase):
    def test_effective_duration_stretches_by_confidence(self) -> None:
        self.assertEqual(effective_duration(_item(1, estimate=3, confidence=50)), (6.0, False))
        self.assertEqual(effective_duration(_item(1, estimate=3)), (3.0, False))
        self.assertEqual(effective_duration(_item(1)), (None, False))
        self.assertEqual(effective_duration(_item(1, estimate=2, confidence=0)), (200.0, True))

    def test_topological_order_breaks_ties_by_stable_order(self) -> None:
        graph = build_project_graph(
            [_item(n) for n in (1, 2, 3, 4)],
            [_edge(4, 1), _edge(3, 2)],
        )
        self.assertEqual(topological_order(graph, set()), ["web#3", "web#2", "web#4", "web#1"])

    def test_fractional_durations_round_up_to_whole_days(self) -> None:
        graph = build_project_graph([_item(1, estimate=1, confidence=75)], [])
        result = propagate(graph, set(), [], today=TODAY, calendar=ScheduleCalendar())
        self.assertEqual(result.schedules["web#1"].target, date(2024, 1, 3))


if __name__ == "__main__":
    unittest.main()
