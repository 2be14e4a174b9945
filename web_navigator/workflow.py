from __future__ import annotations

"""Workflow definitions used to seed a graph before its first learned run."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .graph import WorkflowGraph


@dataclass
class StepSpec:
    from_state: str
    to_state: str
    action_type: str
    selector: str
    value: Optional[str] = None
    alternatives: List[str] = field(default_factory=list)
    max_iterations: Optional[int] = None


@dataclass
class WorkflowDefinition:
    workflow_id: str
    start_state: str
    goal_state: str
    steps: List[StepSpec] = field(default_factory=list)
    signals: Dict[str, Dict[str, str]] = field(default_factory=dict)
    start_url: Optional[str] = None

    def seed(self, G: WorkflowGraph) -> WorkflowGraph:
        """Add the declared states and actions to ``G``. Safe to repeat."""
        G.add_node(self.start_state, self.signals.get(self.start_state))
        for step in self.steps:
            src = G.add_node(step.from_state, self.signals.get(step.from_state))
            dst = G.add_node(step.to_state, self.signals.get(step.to_state))
            edge_id = None
            for selector in [step.selector, *step.alternatives]:
                edge_id = G.add_edge(
                    src, dst, selector, step.action_type, step.value, step.max_iterations
                )
            if edge_id is not None and step.value is not None and G.edge(edge_id).value is None:
                G.edge(edge_id).value = step.value
        G.add_node(self.goal_state, self.signals.get(self.goal_state))
        return G

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "WorkflowDefinition":
        return cls(
            workflow_id=data["workflow_id"],
            start_state=data["start_state"],
            goal_state=data["goal_state"],
            steps=[StepSpec(**s) for s in data.get("steps", [])],
            signals={k: dict(v) for k, v in (data.get("signals") or {}).items()},
            start_url=data.get("start_url"),
        )
