from __future__ import annotations

"""Graph learning: turns finished sessions into confidence updates.

``GraphLearner.learn`` walks the frame pairs of a session. Every actionable
frame followed by another frame is one traversal attempt on the edge implied by
the recorded action; the attempt succeeded when the next frame shows the
expected state. ``merge_graphs`` combines two graphs of the same workflow by
summing their counters.
"""

import logging
import threading
from dataclasses import dataclass
from typing import List, Optional, Set

import networkx as nx

from .errors import GraphError, LearnError
from .frames import Frame, RecoveryTag
from .graph import ChangeLevel, WorkflowGraph
from .session import Session

logger = logging.getLogger(__name__)


@dataclass
class Transition:
    frame_id: int
    from_label: str
    target_label: Optional[str]  # expected state, or observed one when none was expected
    observed_label: Optional[str]
    action_type: str
    selector: str
    recovery: Optional[RecoveryTag]

    @property
    def success(self) -> bool:
        return self.target_label is not None and self.observed_label == self.target_label


class GraphLearner:
    """Applies session evidence to a ``WorkflowGraph``.

    All recorded attempts carry equal weight. Learning into a shared graph is
    serialized by ``_lock``; per-edge counters are additionally protected by the
    graph itself.
    """

    def __init__(self, cycle_bound: Optional[int] = None) -> None:
        self.cycle_bound = cycle_bound
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    def learn(self, session: Session, G: WorkflowGraph) -> WorkflowGraph:
        if session.workflow_id != G.workflow_id:
            raise LearnError(
                f"session {session.session_id} belongs to {session.workflow_id!r}, "
                f"graph is {G.workflow_id!r}"
            )
        transitions = self.transitions(session)
        with self._lock:
            # validate before touching the graph so a failed reconcile leaves it intact
            start = self._start_label(session)
            self._reconcile(G, start, transitions)

            if start is not None and not G.nodes():
                G.add_node(start)
            for t in transitions:
                self._apply(G, t)
            G.count_tested_session()
            version = G.commit_version()
        logger.info(
            "Learned session %s (%s): %d transitions, graph %s at %s",
            session.session_id,
            session.outcome.value if session.outcome else "open",
            len(transitions),
            G.workflow_id,
            version,
        )
        return G

    def transitions(self, session: Session) -> List[Transition]:
        frames = self._without_recaptures(session.frames)
        out: List[Transition] = []
        for cur, nxt in zip(frames, frames[1:]):
            action = cur.action
            if action is None:
                continue
            from_label = action.from_state or cur.state
            if from_label is None:
                logger.debug("Frame %s has no state label, skipping its transition", cur.frame_id)
                continue
            out.append(
                Transition(
                    frame_id=cur.frame_id,
                    from_label=from_label,
                    target_label=action.expected_state or nxt.state,
                    observed_label=nxt.state,
                    action_type=action.action_type,
                    selector=action.target or "",
                    recovery=action.recovery,
                )
            )
        return out

    # ------------------------------------------------------------------
    def _without_recaptures(self, frames: List[Frame]) -> List[Frame]:
        """Drop duplicate frames that merely re-record the previous frame.

        A duplicate frame repeating the previous frame's untagged action (or
        carrying no action after a frame without one) is the same attempt
        captured twice and must not count again.
        """
        kept: List[Frame] = []
        for f in frames:
            if f.duplicate and kept:
                prev = kept[-1]
                if f.action is None and prev.action is None:
                    continue
                if f.action is not None and f.action == prev.action and f.action.recovery is None:
                    continue
            kept.append(f)
        return kept

    def _start_label(self, session: Session) -> Optional[str]:
        labels = session.state_labels()
        return labels[0] if labels else None

    def _reconcile(self, G: WorkflowGraph, start: Optional[str], transitions: List[Transition]) -> None:
        known: Set[str] = {n.label for n in G.nodes()}
        if not known and start is not None:
            known.add(start)

        scratch = nx.DiGraph()
        scratch.add_nodes_from(known)
        for e in G.edges():
            scratch.add_edge(G.node(e.from_id).label, G.node(e.to_id).label)

        pending_failures: List[Transition] = []
        for t in transitions:
            if t.from_label not in known:
                raise LearnError(
                    f"frame {t.frame_id} starts from unknown state {t.from_label!r} "
                    "with no path from known states"
                )
            if t.target_label is None:
                continue
            if t.success:
                self._check_new_edge(G, scratch, t)
                known.add(t.target_label)
            else:
                pending_failures.append(t)

        unknown = sorted({t.target_label for t in pending_failures} - known)
        if unknown:
            raise LearnError(f"session expects states never observed and not in graph: {unknown}")
        for t in pending_failures:
            self._check_new_edge(G, scratch, t)

    def _check_new_edge(self, G: WorkflowGraph, scratch: nx.DiGraph, t: Transition) -> None:
        src, dst = t.from_label, t.target_label
        src_id, dst_id = G.node_id(src), G.node_id(dst)
        if src_id is not None and dst_id is not None and G.find_edge(src_id, dst_id, t.action_type) is not None:
            return
        closes = dst in scratch and (dst == src or nx.has_path(scratch, dst, src))
        if closes and self._bound_for(G) is None:
            raise LearnError(
                f"transition {src!r} -> {dst!r} closes a cycle and no iteration bound is configured"
            )
        scratch.add_edge(src, dst)

    def _bound_for(self, G: WorkflowGraph) -> Optional[int]:
        return G.cycle_bound if G.cycle_bound is not None else self.cycle_bound

    def _apply(self, G: WorkflowGraph, t: Transition) -> None:
        if t.target_label is None:
            return
        src = G.add_node(t.from_label)
        dst = G.add_node(t.target_label)
        edge_id = G.find_edge(src, dst, t.action_type)
        if edge_id is None or t.selector not in G.edge(edge_id).selectors:
            bound = None
            if edge_id is None and (src == dst or nx.has_path(G.to_networkx(), dst, src)):
                bound = self._bound_for(G)
            edge_id = G.add_edge(src, dst, t.selector, t.action_type, max_iterations=bound)
        G.record_attempt(edge_id, t.selector, t.success)

        if t.recovery is not None:
            kind, steps = t.recovery.error_kind, tuple(t.recovery.steps)
            exists = any(r.steps == steps for r in G.edge(edge_id).recoveries.get(kind, []))
            if t.success or exists:
                G.record_recovery(edge_id, kind, steps, t.success)


# ------------------------------------------------------------------
# merging ------------------------------------------------------------

def merge_graphs(a: WorkflowGraph, b: WorkflowGraph) -> WorkflowGraph:
    """Merge two graphs of the same workflow into a new graph.

    Attempt/success counters of matching edge+selector pairs are summed, so the
    better-evidenced side dominates. Selectors and recovery strategies are
    unioned. The result starts from the larger source version and is bumped
    once for the most significant change relative to that source.
    """
    if a.workflow_id != b.workflow_id:
        raise GraphError(f"cannot merge {a.workflow_id!r} with {b.workflow_id!r}")
    base, other = (a, b) if a.version >= b.version else (b, a)
    M = WorkflowGraph.from_json(base.to_json())
    if M.cycle_bound is None:
        M.cycle_bound = other.cycle_bound

    for node in other.nodes():
        M.add_node(node.label, node.signal)
    for e in other.edges():
        src = M.add_node(other.node(e.from_id).label)
        dst = M.add_node(other.node(e.to_id).label)
        edge_id: Optional[int] = None
        for s in e.selectors.values():
            edge_id = M.add_edge(src, dst, s.selector, e.action_type, e.value, e.max_iterations)
            M.absorb_selector_counts(edge_id, s.selector, s.attempts, s.successes, s.last_success_seq)
        if edge_id is None:
            continue
        merged = M.edge(edge_id)
        if merged.max_iterations is None and e.max_iterations is not None:
            merged.max_iterations = e.max_iterations
        for kind, strategies in e.recoveries.items():
            for r in strategies:
                M.absorb_recovery_counts(edge_id, kind, r.steps, r.attempts, r.successes)

    M.tested_sessions = a.tested_sessions + b.tested_sessions
    if M.pending_change == ChangeLevel.NONE and other.tested_sessions:
        M.note_change(ChangeLevel.PATCH)
    M.commit_version()
    return M

