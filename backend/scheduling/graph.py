"""Project graph construction from a storage snapshot.

Applies the plan cap on a stable item order and filters the raw dependency
references: self-edges and edges to unknown items are dropped with a warning,
duplicates collapse, and edges touching capped-out items are dropped silently.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field

import networkx as nx

from backend.models import DataQualityWarning, DependencyEdge, WorkItem
from backend.scheduling.errors import InvariantViolation

logger = logging.getLogger("projectflow.scheduling")


@dataclass
class ProjectGraph:
    """Items and dependency adjacency for one recalculation run."""

    items: dict[str, WorkItem]
    order: list[str]
    successors: dict[str, list[str]]
    predecessors: dict[str, list[str]]
    digraph: nx.DiGraph = field(default_factory=nx.DiGraph)
    skipped_ids: list[str] = field(default_factory=list)
    total_items: int = 0
    dropped_edges: int = 0
    warnings: list[DataQualityWarning] = field(default_factory=list)

    def __post_init__(self) -> None:
        self._positions = {item_id: idx for idx, item_id in enumerate(self.order)}

    @property
    def cap_truncated(self) -> bool:
        return bool(self.skipped_ids)

    def position(self, item_id: str) -> int:
        return self._positions[item_id]

    def edges(self) -> list[tuple[str, str]]:
        return [(blocker, blocked) for blocker in self.order for blocked in self.successors[blocker]]


def build_project_graph(
    items: list[WorkItem],
    edges: list[DependencyEdge],
    *,
    cap: int | None = None,
) -> ProjectGraph:
    if cap is not None and cap <= 0:
        raise InvariantViolation(f"Tracked-item cap must be positive, got {cap}")

    unique: dict[str, WorkItem] = {}
    for item in items:
        if item.id in unique:
            logger.warning("Duplicate work item %s in snapshot; keeping first occurrence", item.id)
            continue
        unique[item.id] = item

    ordered = sorted(unique.values(), key=lambda item: item.sort_key)
    included = ordered if cap is None else ordered[:cap]
    skipped = [] if cap is None else [item.id for item in ordered[cap:]]
    if skipped:
        logger.warning(
            "Tracked-item cap reached: processing %d of %d items (%d skipped)",
            len(included),
            len(ordered),
            len(skipped),
        )

    order = [item.id for item in included]
    included_ids = set(order)
    skipped_ids = set(skipped)
    successors: dict[str, list[str]] = {item_id: [] for item_id in order}
    predecessors: dict[str, list[str]] = {item_id: [] for item_id in order}
    warnings: list[DataQualityWarning] = []
    digraph = nx.DiGraph()
    digraph.add_nodes_from(order)
    dropped = 0

    for edge in edges:
        blocker, blocked = edge.blockerId, edge.blockedId
        if blocker == blocked:
            dropped += 1
            logger.warning("Dropping self-dependency on %s", blocker)
            warnings.append(
                DataQualityWarning(
                    kind="self_edge",
                    itemIds=[blocker],
                    message=f"{blocker} is listed as blocking itself",
                )
            )
            continue
        if digraph.has_edge(blocker, blocked):
            continue
        if blocker not in included_ids or blocked not in included_ids:
            dropped += 1
            unknown = [x for x in (blocker, blocked) if x not in included_ids and x not in skipped_ids]
            if unknown:
                logger.warning("Dropping dangling edge %s -> %s (unknown: %s)", blocker, blocked, ", ".join(unknown))
                warnings.append(
                    DataQualityWarning(
                        kind="dangling_edge",
                        itemIds=[blocker, blocked],
                        message=f"Edge {blocker} -> {blocked} references items outside this project",
                    )
                )
            continue
        digraph.add_edge(blocker, blocked)
        successors[blocker].append(blocked)
        predecessors[blocked].append(blocker)

    return ProjectGraph(
        items={item.id: item for item in included},
        order=order,
        successors=successors,
        predecessors=predecessors,
        digraph=digraph,
        skipped_ids=skipped,
        total_items=len(ordered),
        dropped_edges=dropped,
        warnings=warnings,
    )
