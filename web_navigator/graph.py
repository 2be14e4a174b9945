from __future__ import annotations

"""Workflow graph: the persistent map of states and actions with learned confidence.

Nodes and edges live in id-indexed arenas and are linked through a networkx
``MultiDiGraph`` keyed by the same integer ids, so retry cycles never create
reference cycles between Python objects.

Updates to a single edge (``record_attempt`` / ``record_recovery``) are
optimistic: the new counters are computed from a snapshot and committed under
the edge's lock only if its revision did not move in between. A conflict is
retried internally and never reaches the caller. Reads need no locking.
"""

import itertools
import logging
import threading
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

import networkx as nx

from .errors import GraphConcurrencyConflict, GraphError

logger = logging.getLogger(__name__)

UNPROVEN_PRIOR = 0.5
GRAPH_SCHEMA_VERSION = 1


class ChangeLevel(IntEnum):
    NONE = 0
    PATCH = 1  # confidence-only updates
    MINOR = 2  # new nodes, edges, alternative selectors, recovery strategies
    MAJOR = 3  # removed nodes / edges


@dataclass(frozen=True, order=True)
class GraphVersion:
    major: int = 0
    minor: int = 0
    patch: int = 0

    def bump(self, level: ChangeLevel) -> "GraphVersion":
        if level == ChangeLevel.MAJOR:
            return GraphVersion(self.major + 1, 0, 0)
        if level == ChangeLevel.MINOR:
            return GraphVersion(self.major, self.minor + 1, 0)
        if level == ChangeLevel.PATCH:
            return GraphVersion(self.major, self.minor, self.patch + 1)
        return self

    @classmethod
    def parse(cls, text: str) -> "GraphVersion":
        major, minor, patch = (int(p) for p in text.split("."))
        return cls(major, minor, patch)

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}.{self.patch}"


@dataclass
class SelectorStats:
    selector: str
    attempts: int = 0
    successes: int = 0
    last_success_seq: int = 0  # 0 = never succeeded

    @property
    def proven(self) -> bool:
        return self.attempts > 0

    @property
    def confidence(self) -> float:
        if not self.attempts:
            return UNPROVEN_PRIOR
        return self.successes / self.attempts


@dataclass
class RecoveryStrategy:
    """Ordered remediation steps for one error kind on one edge."""

    error_kind: str
    steps: Tuple[str, ...]
    attempts: int = 0
    successes: int = 0

    @property
    def confidence(self) -> float:
        if not self.attempts:
            return UNPROVEN_PRIOR
        return self.successes / self.attempts


@dataclass
class WorkflowNode:
    node_id: int
    label: str
    # verification signal: url_contains / url_pattern / title_contains / selector
    signal: Dict[str, str] = field(default_factory=dict)


@dataclass
class WorkflowEdge:
    edge_id: int
    from_id: int
    to_id: int
    action_type: str
    value: Optional[str] = None  # text for "type", url for "navigate"
    max_iterations: Optional[int] = None
    selectors: Dict[str, SelectorStats] = field(default_factory=dict)
    recoveries: Dict[str, List[RecoveryStrategy]] = field(default_factory=dict)
    revision: int = field(default=0, repr=False)
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    @property
    def attempts(self) -> int:
        return sum(s.attempts for s in self.selectors.values())


def _selector_rank(item: Tuple[int, SelectorStats]):
    index, s = item
    # proven first, then confidence, attempts, recency of success, insertion order
    return (not s.proven, -s.confidence, -s.attempts, -s.last_success_seq, index)


class WorkflowGraph:
    """Versioned state/action graph for one workflow."""

    def __init__(
        self,
        workflow_id: str,
        cycle_bound: Optional[int] = None,
        max_commit_retries: int = 8,
    ) -> None:
        self.workflow_id = workflow_id
        self.cycle_bound = cycle_bound
        self.version = GraphVersion()
        self.tested_sessions: int = 0
        self.max_commit_retries = max_commit_retries
        self._g: nx.MultiDiGraph = nx.MultiDiGraph()
        self._nodes: Dict[int, WorkflowNode] = {}
        self._edges: Dict[int, WorkflowEdge] = {}
        self._labels: Dict[str, int] = {}
        self._node_ids = itertools.count(1)
        self._edge_ids = itertools.count(1)
        self._success_seq = 0
        self._seq_lock = threading.Lock()
        self._struct_lock = threading.RLock()
        self._pending = ChangeLevel.NONE

    # --- node helpers -----------------------------------------------------
    def add_node(self, label: str, signal: Optional[Dict[str, str]] = None) -> int:
        """Return the id of the node labelled ``label``, creating it if needed."""
        with self._struct_lock:
            existing = self._labels.get(label)
            if existing is not None:
                if signal and not self._nodes[existing].signal:
                    self._nodes[existing].signal = dict(signal)
                return existing
            node_id = next(self._node_ids)
            self._nodes[node_id] = WorkflowNode(node_id, label, dict(signal or {}))
            self._labels[label] = node_id
            self._g.add_node(node_id)
            self._note(ChangeLevel.MINOR)
            logger.debug("Added node %s (%s)", node_id, label)
            return node_id

    def node(self, node_id: int) -> WorkflowNode:
        try:
            return self._nodes[node_id]
        except KeyError:
            raise GraphError(f"unknown node {node_id}") from None

    def node_id(self, label: str) -> Optional[int]:
        return self._labels.get(label)

    def has_label(self, label: str) -> bool:
        return label in self._labels

    def nodes(self) -> List[WorkflowNode]:
        return list(self._nodes.values())

    def remove_node(self, node_id: int) -> None:
        with self._struct_lock:
            node = self.node(node_id)
            for edge_id in [e.edge_id for e in self._edges.values() if node_id in (e.from_id, e.to_id)]:
                self.remove_edge(edge_id)
            self._g.remove_node(node_id)
            del self._nodes[node_id]
            del self._labels[node.label]
            self._note(ChangeLevel.MAJOR)

    # --- edge helpers -----------------------------------------------------
    def add_edge(
        self,
        from_id: int,
        to_id: int,
        selector: str,
        action_type: str,
        value: Optional[str] = None,
        max_iterations: Optional[int] = None,
    ) -> int:
        """Add an edge, or ``selector`` as an alternative on the existing edge."""
        with self._struct_lock:
            self.node(from_id)
            self.node(to_id)
            edge_id = self.find_edge(from_id, to_id, action_type)
            if edge_id is not None:
                edge = self._edges[edge_id]
                if selector not in edge.selectors:
                    with edge.lock:
                        edge.selectors[selector] = SelectorStats(selector)
                        edge.revision += 1
                    self._note(ChangeLevel.MINOR)
                    logger.debug("Edge %s gained alternative selector %r", edge_id, selector)
                return edge_id

            closes_cycle = from_id == to_id or nx.has_path(self._g, to_id, from_id)
            bound = max_iterations
            if closes_cycle and bound is None:
                bound = self.cycle_bound
                if bound is None:
                    raise GraphError(
                        f"edge {self.node(from_id).label} -> {self.node(to_id).label} "
                        "closes a cycle without an iteration bound"
                    )
            edge_id = next(self._edge_ids)
            self._edges[edge_id] = WorkflowEdge(
                edge_id=edge_id,
                from_id=from_id,
                to_id=to_id,
                action_type=action_type,
                value=value,
                max_iterations=bound,
                selectors={selector: SelectorStats(selector)},
            )
            self._g.add_edge(from_id, to_id, key=edge_id)
            self._note(ChangeLevel.MINOR)
            logger.debug("Added edge %s: %s -> %s (%s)", edge_id, from_id, to_id, action_type)
            return edge_id

    def edge(self, edge_id: int) -> WorkflowEdge:
        try:
            return self._edges[edge_id]
        except KeyError:
            raise GraphError(f"unknown edge {edge_id}") from None

    def edges(self) -> List[WorkflowEdge]:
        return list(self._edges.values())

    def find_edge(self, from_id: int, to_id: int, action_type: str) -> Optional[int]:
        data = self._g.get_edge_data(from_id, to_id) or {}
        for key in sorted(data):
            if self._edges[key].action_type == action_type:
                return key
        return None

    def edges_from(self, node_id: int) -> List[WorkflowEdge]:
        return [self._edges[k] for _, _, k in self._g.out_edges(node_id, keys=True)]

    def remove_edge(self, edge_id: int) -> None:
        with self._struct_lock:
            edge = self.edge(edge_id)
            self._g.remove_edge(edge.from_id, edge.to_id, key=edge_id)
            del self._edges[edge_id]
            self._note(ChangeLevel.MAJOR)

    # --- learning updates -------------------------------------------------
    def record_attempt(self, edge_id: int, selector: str, success: bool) -> SelectorStats:
        """Count one traversal attempt of ``selector`` on ``edge_id``."""
        edge = self.edge(edge_id)
        if selector not in edge.selectors:
            self.add_edge(edge.from_id, edge.to_id, selector, edge.action_type)

        def compute():
            cur = edge.selectors[selector]
            attempts = cur.attempts + 1
            successes = cur.successes + (1 if success else 0)

            def apply():
                cur.attempts = attempts
                cur.successes = successes
                if success:
                    cur.last_success_seq = self._next_success_seq()
                return cur

            return apply

        stats = self._commit(edge, compute)
        self._note(ChangeLevel.PATCH)
        return stats

    def record_recovery(
        self, edge_id: int, error_kind: str, steps: Tuple[str, ...] | List[str], outcome: bool
    ) -> RecoveryStrategy:
        """Count one use of a remediation sequence for ``error_kind`` on an edge."""
        edge = self.edge(edge_id)
        steps = tuple(steps)
        created = False

        def compute():
            nonlocal created
            strategy = next(
                (r for r in edge.recoveries.get(error_kind, []) if r.steps == steps), None
            )
            created = strategy is None
            attempts = (strategy.attempts if strategy else 0) + 1
            successes = (strategy.successes if strategy else 0) + (1 if outcome else 0)

            def apply():
                target = strategy
                if target is None:
                    target = RecoveryStrategy(error_kind, steps)
                    edge.recoveries.setdefault(error_kind, []).append(target)
                target.attempts = attempts
                target.successes = successes
                return target

            return apply

        strategy = self._commit(edge, compute)
        self._note(ChangeLevel.MINOR if created else ChangeLevel.PATCH)
        return strategy

    def absorb_selector_counts(
        self, edge_id: int, selector: str, attempts: int, successes: int, last_success_seq: int = 0
    ) -> None:
        """Add another graph's counters for ``selector`` onto this edge.

        ``last_success_seq`` keeps the source's recency; the later of the two wins.
        """
        if not attempts:
            return
        edge = self.edge(edge_id)

        def compute():
            cur = edge.selectors[selector]
            total_attempts = cur.attempts + attempts
            total_successes = cur.successes + successes

            def apply():
                cur.attempts = total_attempts
                cur.successes = total_successes
                if successes and last_success_seq > cur.last_success_seq:
                    cur.last_success_seq = last_success_seq
                    self._advance_success_seq(last_success_seq)
                return cur

            return apply

        self._commit(edge, compute)
        self._note(ChangeLevel.PATCH)

    def absorb_recovery_counts(
        self, edge_id: int, error_kind: str, steps: Tuple[str, ...], attempts: int, successes: int
    ) -> None:
        edge = self.edge(edge_id)
        steps = tuple(steps)
        created = False

        def compute():
            nonlocal created
            strategy = next(
                (r for r in edge.recoveries.get(error_kind, []) if r.steps == steps), None
            )
            created = strategy is None

            def apply():
                target = strategy
                if target is None:
                    target = RecoveryStrategy(error_kind, steps)
                    edge.recoveries.setdefault(error_kind, []).append(target)
                target.attempts += attempts
                target.successes += successes
                return target

            return apply

        self._commit(edge, compute)
        self._note(ChangeLevel.MINOR if created else ChangeLevel.PATCH)

    def _commit(self, edge: WorkflowEdge, compute: Callable[[], Callable[[], Any]]) -> Any:
        for _ in range(self.max_commit_retries):
            seen = edge.revision
            apply = compute()
            try:
                with edge.lock:
                    if edge.revision != seen:
                        raise GraphConcurrencyConflict(f"edge {edge.edge_id} moved")
                    result = apply()
                    edge.revision += 1
                    return result
            except GraphConcurrencyConflict:
                logger.debug("Conflict committing edge %s, retrying", edge.edge_id)
        # contention did not clear: compute and apply under the lock
        with edge.lock:
            result = compute()()
            edge.revision += 1
            return result

    # --- queries ----------------------------------------------------------
    def ranked_selectors(self, edge_id: int) -> List[SelectorStats]:
        edge = self.edge(edge_id)
        ranked = sorted(enumerate(list(edge.selectors.values())), key=_selector_rank)
        return [s for _, s in ranked]

    def best_selector(self, edge_id: int) -> Optional[str]:
        ranked = self.ranked_selectors(edge_id)
        return ranked[0].selector if ranked else None

    def ranked_recoveries(self, edge_id: int, error_kind: str) -> List[RecoveryStrategy]:
        strategies = list(self.edge(edge_id).recoveries.get(error_kind, []))
        return sorted(strategies, key=lambda r: (-r.confidence, -r.successes))

    def edge_cost(self, edge_id: int) -> float:
        """Path weight: reliable edges are cheaper."""
        ranked = self.ranked_selectors(edge_id)
        best = ranked[0].confidence if ranked else 0.0
        return 1.0 + (1.0 - best)

    def cycles_are_bounded(self) -> bool:
        simple = nx.DiGraph()
        for e in self._edges.values():
            bounded = simple.has_edge(e.from_id, e.to_id) and simple[e.from_id][e.to_id]["bounded"]
            simple.add_edge(e.from_id, e.to_id, bounded=bounded or e.max_iterations is not None)
        for cycle in nx.simple_cycles(simple):
            pairs = zip(cycle, cycle[1:] + cycle[:1])
            if not any(simple[u][v]["bounded"] for u, v in pairs):
                return False
        return True

    def to_networkx(self) -> nx.MultiDiGraph:
        return self._g

    def _next_success_seq(self) -> int:
        with self._seq_lock:
            self._success_seq += 1
            return self._success_seq

    def _advance_success_seq(self, seq: int) -> None:
        with self._seq_lock:
            self._success_seq = max(self._success_seq, seq)

    # --- versioning -------------------------------------------------------
    def _note(self, level: ChangeLevel) -> None:
        with self._struct_lock:
            if level > self._pending:
                self._pending = level

    def note_change(self, level: ChangeLevel) -> None:
        self._note(level)

    def count_tested_session(self) -> int:
        with self._struct_lock:
            self.tested_sessions += 1
            return self.tested_sessions

    @property
    def pending_change(self) -> ChangeLevel:
        return self._pending

    def commit_version(self) -> GraphVersion:
        """Bump the version once for the most significant pending change."""
        with self._struct_lock:
            if self._pending != ChangeLevel.NONE:
                self.version = self.version.bump(self._pending)
                logger.info("Graph %s now at version %s", self.workflow_id, self.version)
            self._pending = ChangeLevel.NONE
            return self.version

    # --- inspection -------------------------------------------------------
    def confidence_report(self) -> List[Dict[str, Any]]:
        report = []
        for e in self._edges.values():
            report.append(
                {
                    "edge_id": e.edge_id,
                    "from": self._nodes[e.from_id].label,
                    "to": self._nodes[e.to_id].label,
                    "action_type": e.action_type,
                    "best_selector": self.best_selector(e.edge_id),
                    "selectors": [
                        {
                            "selector": s.selector,
                            "attempts": s.attempts,
                            "successes": s.successes,
                            "confidence": round(s.confidence, 4),
                        }
                        for s in self.ranked_selectors(e.edge_id)
                    ],
                }
            )
        return report

    # --- persistence ------------------------------------------------------
    def to_json(self) -> Dict[str, Any]:
        return {
            "schema_version": GRAPH_SCHEMA_VERSION,
            "workflow_id": self.workflow_id,
            "version": str(self.version),
            "tested_sessions": self.tested_sessions,
            "cycle_bound": self.cycle_bound,
            "nodes": [
                {"id": n.node_id, "label": n.label, "signal": n.signal}
                for n in self._nodes.values()
            ],
            "edges": [
                {
                    "id": e.edge_id,
                    "from": e.from_id,
                    "to": e.to_id,
                    "action_type": e.action_type,
                    "value": e.value,
                    "max_iterations": e.max_iterations,
                    "selectors": [
                        {
                            "selector": s.selector,
                            "attempts": s.attempts,
                            "successes": s.successes,
                            "confidence": s.confidence,
                            "last_success_seq": s.last_success_seq,
                        }
                        for s in e.selectors.values()
                    ],
                    "recovery_strategies": {
                        kind: [
                            {"steps": list(r.steps), "attempts": r.attempts, "successes": r.successes}
                            for r in strategies
                        ]
                        for kind, strategies in e.recoveries.items()
                    },
                }
                for e in self._edges.values()
            ],
        }

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "WorkflowGraph":
        G = cls(data["workflow_id"], cycle_bound=data.get("cycle_bound"))
        G.version = GraphVersion.parse(data.get("version", "0.0.0"))
        G.tested_sessions = int(data.get("tested_sessions", 0))
        for meta in data.get("nodes", []):
            node = WorkflowNode(int(meta["id"]), meta["label"], dict(meta.get("signal") or {}))
            G._nodes[node.node_id] = node
            G._labels[node.label] = node.node_id
            G._g.add_node(node.node_id)
        for meta in data.get("edges", []):
            src, dst = int(meta["from"]), int(meta["to"])
            if src not in G._nodes or dst not in G._nodes:
                raise GraphError(f"edge {meta['id']} references an unknown node")
            edge = WorkflowEdge(
                edge_id=int(meta["id"]),
                from_id=src,
                to_id=dst,
                action_type=meta["action_type"],
                value=meta.get("value"),
                max_iterations=meta.get("max_iterations"),
            )
            for s in meta.get("selectors", []):
                edge.selectors[s["selector"]] = SelectorStats(
                    s["selector"], int(s["attempts"]), int(s["successes"]), int(s.get("last_success_seq", 0))
                )
            for kind, strategies in (meta.get("recovery_strategies") or {}).items():
                edge.recoveries[kind] = [
                    RecoveryStrategy(kind, tuple(r["steps"]), int(r["attempts"]), int(r["successes"]))
                    for r in strategies
                ]
            G._edges[edge.edge_id] = edge
            G._g.add_edge(src, dst, key=edge.edge_id)
        G._node_ids = itertools.count(max(G._nodes, default=0) + 1)
        G._edge_ids = itertools.count(max(G._edges, default=0) + 1)
        G._success_seq = max((s.last_success_seq for _, s in G.iter_selector_stats()), default=0)
        if not G.cycles_are_bounded():
            raise GraphError("graph contains a cycle without an iteration bound")
        return G

    def iter_selector_stats(self) -> Iterator[Tuple[WorkflowEdge, SelectorStats]]:
        for e in self._edges.values():
            for s in e.selectors.values():
                yield e, s
