from __future__ import annotations

"""Path planning over the workflow graph, preferring reliable edges."""

from dataclasses import dataclass
from typing import Dict, List, Optional

import networkx as nx

from .errors import PlanningError
from .graph import WorkflowGraph


@dataclass
class PlannedStep:
    edge_id: int
    selector: str
    from_label: str
    to_label: str
    action_type: str


class PathFinder:
    def __init__(self, excluded_edges: Optional[set] = None) -> None:
        self.excluded_edges = excluded_edges or set()

    def find_path(self, G: WorkflowGraph, start_label: str, goal_label: str) -> List[PlannedStep]:
        """Return the planned steps from ``start_label`` to ``goal_label``.

        Edges are weighted by unreliability so that among equally long routes
        the one with higher-confidence selectors wins. Each step carries the
        edge's current ``best_selector``.
        """
        src, dst = G.node_id(start_label), G.node_id(goal_label)
        if src is None or dst is None:
            missing = start_label if src is None else goal_label
            raise PlanningError(f"state {missing!r} is not in the graph")
        if src == dst:
            return []

        g = G.to_networkx()

        def weight(u: int, v: int, data: Dict[int, dict]) -> Optional[float]:
            costs = [G.edge_cost(k) for k in data if k not in self.excluded_edges]
            return min(costs) if costs else None

        try:
            node_path = nx.shortest_path(g, src, dst, weight=weight)
        except nx.NetworkXNoPath:
            raise PlanningError(f"no path from {start_label!r} to {goal_label!r}") from None

        steps: List[PlannedStep] = []
        for u, v in zip(node_path, node_path[1:]):
            candidates = [k for k in g.get_edge_data(u, v) if k not in self.excluded_edges]
            # pick the cheapest parallel edge deterministically
            edge_id = min(candidates, key=lambda k: (G.edge_cost(k), k))
            edge = G.edge(edge_id)
            steps.append(
                PlannedStep(
                    edge_id=edge_id,
                    selector=G.best_selector(edge_id) or "",
                    from_label=G.node(u).label,
                    to_label=G.node(v).label,
                    action_type=edge.action_type,
                )
            )
        return steps
