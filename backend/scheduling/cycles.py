"""Dependency-cycle detection (strongly connected components)."""
from __future__ import annotations

import logging

import networkx as nx

from backend.models import DataQualityWarning
from backend.scheduling.graph import ProjectGraph

logger = logging.getLogger("projectflow.scheduling")


def strongly_connected_components(graph: ProjectGraph) -> list[list[str]]:
    """All strongly connected components, members in stable item order."""
    return [sorted(component, key=graph.position) for component in nx.strongly_connected_components(graph.digraph)]


def find_cyclic_components(graph: ProjectGraph) -> tuple[set[str], list[DataQualityWarning]]:
    """Return ids of items inside a dependency cycle and one warning per cycle."""
    cyclic: set[str] = set()
    warnings: list[DataQualityWarning] = []
    components = [c for c in strongly_connected_components(graph) if len(c) > 1]
    components.sort(key=lambda c: graph.position(c[0]))
    for component in components:
        cyclic.update(component)
        logger.warning("Dependency cycle detected: %s", " -> ".join(component))
        warnings.append(
            DataQualityWarning(
                kind="cycle",
                itemIds=component,
                message=f"Dependency cycle between {len(component)} items; dates left unchanged",
            )
        )
    return cyclic, warnings
