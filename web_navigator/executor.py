from __future__ import annotations

"""Workflow executor: the live plan → act → capture → verify → recover loop.

State machine::

    IDLE -> PLANNING -> EXECUTING(step) -> SUCCEEDED
                              |
                              +-> RECOVERING(step) -> EXECUTING | FAILED
                              +-> CANCELLED

Every step captures a frame carrying the action about to be issued, issues the
action through the automation capability, waits for the page to settle and
verifies the target state. The finished session, whatever its outcome, is
persisted and handed to the learner.
"""

import asyncio
import logging
import os
import time
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Tuple

from .automation import ActionResult, BrowserAutomation
from .capture import capture_frame
from .config import NavigatorConfig
from .errors import (
    CaptureConnectionError,
    LearnError,
    NavigatorError,
    PlanningError,
    RecoveryExhausted,
    StepFailure,
)
from .events import (
    EventEmitter,
    RecoveryAttempted,
    StepCompleted,
    StepFailed,
    StepStarted,
    WorkflowFinished,
)
from .frames import ActionInfo, Frame, RecoveryTag
from .graph import WorkflowGraph, WorkflowNode
from .hashing import FrameDeduplicator
from .learner import GraphLearner
from .path_finder import PathFinder, PlannedStep
from .session import Session, SessionOutcome, SessionRecorder
from .state_matcher import StateMatcher
from .storage import GraphStore, SessionStore, safe_name
from .workflow import WorkflowDefinition

logger = logging.getLogger(__name__)


class ExecutorState(str, Enum):
    IDLE = "idle"
    PLANNING = "planning"
    EXECUTING = "executing"
    RECOVERING = "recovering"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class ExecutionResult:
    """What a caller learns about a run: outcome and failure context, no confidence numbers."""

    outcome: SessionOutcome
    session: Session
    last_successful_node: Optional[str] = None
    failing_step: Optional[int] = None
    error_kind: Optional[str] = None
    learned: bool = False

    @property
    def succeeded(self) -> bool:
        return self.outcome == SessionOutcome.SUCCESS


@dataclass
class _Run:
    G: WorkflowGraph
    recorder: SessionRecorder
    artifact_dir: str
    current: Optional[str] = None
    last_ok: Optional[str] = None
    step_no: int = 0
    prev_frame: Optional[Frame] = None
    traversals: Counter = field(default_factory=Counter)
    outcome: Optional[SessionOutcome] = None
    error_kind: Optional[str] = None
    failing_step: Optional[int] = None


class WorkflowExecutor:
    """Drives one automation handle through a workflow, one step at a time.

    Several executors may run concurrently against the same ``WorkflowGraph``;
    each must own its own ``BrowserAutomation``.
    """

    def __init__(
        self,
        automation: BrowserAutomation,
        config: Optional[NavigatorConfig] = None,
        graph_store: Optional[GraphStore] = None,
        session_store: Optional[SessionStore] = None,
        learner: Optional[GraphLearner] = None,
        matcher: Optional[StateMatcher] = None,
        events: Optional[EventEmitter] = None,
    ) -> None:
        self.automation = automation
        self.config = config or NavigatorConfig()
        self.graph_store = graph_store
        self.session_store = session_store
        self.learner = learner or GraphLearner(cycle_bound=self.config.cycle_bound)
        self.matcher = matcher or StateMatcher(use_llm=False)
        self.events = events or EventEmitter()
        self.state = ExecutorState.IDLE
        self._cancel = asyncio.Event()
        self._dedup = FrameDeduplicator(prune_artifacts=self.config.prune_duplicate_artifacts)

    def cancel(self) -> None:
        """Request cancellation; honoured at the next step boundary."""
        self._cancel.set()

    # ------------------------------------------------------------------
    async def run(
        self,
        workflow_id: str,
        goal_state: Optional[str] = None,
        start_state: Optional[str] = None,
        definition: Optional[WorkflowDefinition] = None,
        graph: Optional[WorkflowGraph] = None,
    ) -> ExecutionResult:
        self.state = ExecutorState.PLANNING
        self._cancel.clear()
        recorder = SessionRecorder(workflow_id)
        G = graph or self._load_graph(workflow_id, definition)
        goal = goal_state or (definition.goal_state if definition else None)
        run = _Run(
            G=G,
            recorder=recorder,
            artifact_dir=os.path.join(
                self.config.artifact_root, safe_name(workflow_id), recorder.session_id
            ),
        )
        logger.info("Starting workflow %s (session %s)", workflow_id, recorder.session_id)

        try:
            await asyncio.wait_for(
                self._drive(run, goal, start_state or (definition.start_state if definition else None), definition),
                timeout=self.config.workflow_timeout_s,
            )
        except asyncio.TimeoutError:
            logger.warning("Workflow %s exceeded %ss, aborting", workflow_id, self.config.workflow_timeout_s)
            self._fail(run, "workflow_timeout")
        except asyncio.CancelledError:
            run.outcome = SessionOutcome.CANCELLED
            self._finish(run, definition)
            raise
        except CaptureConnectionError as exc:
            logger.error("Lost connection to the page: %s", exc)
            self._fail(run, "connection")
        except PlanningError as exc:
            logger.error("Planning failed: %s", exc)
            self._fail(run, "no_path")
        return self._finish(run, definition)

    def _load_graph(self, workflow_id: str, definition: Optional[WorkflowDefinition]) -> WorkflowGraph:
        G = None
        if self.graph_store is not None:
            try:
                G = self.graph_store.load(workflow_id)
            except (NavigatorError, OSError, KeyError, ValueError):
                logger.exception("Stored graph for %s is unreadable, starting without it", workflow_id)
        if G is None:
            G = WorkflowGraph(workflow_id, cycle_bound=self.config.cycle_bound)
        if definition is not None:
            definition.seed(G)
        return G

    async def _drive(
        self,
        run: _Run,
        goal: Optional[str],
        start: Optional[str],
        definition: Optional[WorkflowDefinition],
    ) -> None:
        G = run.G
        if definition is not None and definition.start_url:
            await self.automation.navigate(definition.start_url)
            await self.automation.wait_for_settle(self.config.settle_timeout_s)
        if start is None:
            start = await self.matcher.identify(self.automation, G)
        if start is None or goal is None:
            raise PlanningError("start or goal state unknown")
        if not G.has_label(goal):
            raise PlanningError(f"goal state {goal!r} is not in the graph")
        run.current = run.last_ok = start
        finder = PathFinder()

        while run.current != goal:
            if self._cancel.is_set():
                logger.info("Cancelled before step %d", run.step_no + 1)
                run.outcome = SessionOutcome.CANCELLED
                await self._capture_terminal(run)
                return
            if run.current is None:
                logger.error("Page matches no known state after step %d", run.step_no)
                self._fail(run, "unknown_state", run.step_no)
                await self._capture_terminal(run)
                return

            self.state = ExecutorState.PLANNING
            plan = finder.find_path(G, run.current, goal)
            step = plan[0]
            run.step_no += 1
            run.traversals[step.edge_id] += 1
            bound = G.edge(step.edge_id).max_iterations or self.config.max_edge_traversals
            if run.traversals[step.edge_id] > bound:
                logger.warning("Edge %s traversed more than %d times", step.edge_id, bound)
                self._fail(run, "iteration_bound", run.step_no)
                await self._capture_terminal(run)
                return

            self.state = ExecutorState.EXECUTING
            self.events.emit(
                StepStarted(run.recorder.session_id, run.step_no, step.edge_id, step.from_label, step.to_label, step.selector)
            )
            t0 = time.monotonic()
            try:
                landed = await self._execute_step(run, step)
            except RecoveryExhausted as exc:
                logger.error("Step %d failed: %s", run.step_no, exc)
                self._fail(run, exc.error_kind, run.step_no)
                await self._capture_terminal(run)
                return
            if landed == step.to_label:
                run.last_ok = landed
                self.events.emit(
                    StepCompleted(
                        run.recorder.session_id, run.step_no, step.edge_id, int((time.monotonic() - t0) * 1000)
                    )
                )
            else:
                logger.info("Deviated to %s while heading for %s, re-planning", landed, step.to_label)
            run.current = landed

        run.outcome = SessionOutcome.SUCCESS
        await self._capture_terminal(run)

    # ------------------------------------------------------------------
    async def _execute_step(self, run: _Run, step: PlannedStep) -> Optional[str]:
        """Return the state label reached. Raises ``RecoveryExhausted``."""
        G = run.G
        error_kind, landed = await self._attempt(run, step, step.selector)
        if error_kind is None or self._deviated(landed, step):
            return landed

        self.state = ExecutorState.RECOVERING
        self.events.emit(StepFailed(run.recorder.session_id, run.step_no, step.edge_id, error_kind))
        tried = {step.selector}
        for steps, selector in self._recovery_plan(G, step, error_kind):
            if selector in tried and not any(not s.startswith("selector:") for s in steps):
                continue
            tried.add(selector)
            tag = RecoveryTag(error_kind=error_kind, steps=steps)
            result, landed = await self._attempt(run, step, selector, tag)
            succeeded = result is None
            last = run.recorder.last_frame
            if last is not None:
                run.recorder.record_recovery(last.frame_id, step.edge_id, error_kind, steps, succeeded)
            self.events.emit(
                RecoveryAttempted(run.recorder.session_id, run.step_no, step.edge_id, error_kind, steps, succeeded)
            )
            if succeeded or self._deviated(landed, step):
                self.state = ExecutorState.EXECUTING
                return landed
        raise RecoveryExhausted(step.edge_id, error_kind)

    def _recovery_plan(self, G: WorkflowGraph, step: PlannedStep, error_kind: str) -> List[Tuple[Tuple[str, ...], str]]:
        """Recorded strategies by success rate, then alternative selectors, then a plain wait."""
        plan: List[Tuple[Tuple[str, ...], str]] = []
        for strategy in G.ranked_recoveries(step.edge_id, error_kind):
            plan.append((strategy.steps, _selector_in(strategy.steps) or step.selector))
        for stats in G.ranked_selectors(step.edge_id):
            if stats.selector != step.selector:
                plan.append(((f"selector:{stats.selector}",), stats.selector))
        wait = (f"wait:{self.config.retry_wait_ms}",)
        if self.config.retry_wait_ms and all(steps != wait for steps, _ in plan):
            plan.append((wait, step.selector))
        return plan

    def _deviated(self, landed: Optional[str], step: PlannedStep) -> bool:
        return landed is not None and landed not in (step.from_label, step.to_label)

    async def _attempt(
        self,
        run: _Run,
        step: PlannedStep,
        selector: str,
        recovery: Optional[RecoveryTag] = None,
    ) -> Tuple[Optional[str], Optional[str]]:
        """One capture + action + verify. Returns ``(error_kind, landed_state)``."""
        G = run.G
        edge = G.edge(step.edge_id)
        action = ActionInfo(
            action_type=edge.action_type,
            intent=f"{edge.action_type} {step.from_label} -> {step.to_label}",
            target=selector,
            from_state=step.from_label,
            expected_state=step.to_label,
            edge_id=step.edge_id,
            recovery=recovery,
        )
        try:
            await self._capture(run, action)
        except asyncio.TimeoutError:
            logger.warning("Capture timed out before step %d", run.step_no)
            return "capture_timeout", run.current

        for remedy in (recovery.steps if recovery else ()):
            await self._remediate(remedy)

        try:
            await self._act_and_verify(edge.action_type, selector, edge.value, G.node(edge.to_id))
        except StepFailure as exc:
            landed = await self.matcher.identify(self.automation, G, preferred=[step.from_label, step.to_label])
            if landed != step.to_label:
                run.current = landed
                logger.info(
                    "Step %d attempt with %r failed: %s (now at %s)", run.step_no, selector, exc.error_kind, landed
                )
                return exc.error_kind, landed
            # the action reported an error but the page shows the target
        run.current = step.to_label
        return None, step.to_label

    async def _act_and_verify(
        self, action_type: str, selector: str, value: Optional[str], target: WorkflowNode
    ) -> None:
        """Issue the action and check the target state. Raises ``StepFailure``."""
        result = await self._perform(action_type, selector, value)
        if not result.ok:
            kind = "action_timeout" if result.error == "timeout" else "action_error"
            raise StepFailure(kind, result.error or "")
        settled = await self.automation.wait_for_settle(self.config.settle_timeout_s)
        if await self.matcher.verify(self.automation, target):
            if not settled:
                logger.debug("%s verified before the page settled", target.label)
            return
        raise StepFailure("state_mismatch" if settled else "settle_timeout")

    async def _perform(self, action_type: str, selector: str, value: Optional[str]) -> ActionResult:
        a = self.automation
        if action_type == "click":
            return await a.click(selector)
        if action_type == "type":
            return await a.type_text(selector, value or "")
        if action_type == "navigate":
            return await a.navigate(value or selector)
        if action_type == "scroll":
            return await a.scroll(selector or None)
        if action_type == "reload":
            return await a.reload()
        return ActionResult(ok=False, error=f"unsupported action {action_type}")

    async def _remediate(self, remedy: str) -> None:
        op, _, arg = remedy.partition(":")
        if op == "wait":
            await asyncio.sleep(int(arg or 1000) / 1000)
        elif op == "scroll":
            await self.automation.scroll(None, arg or "down")
        elif op == "reload":
            await self.automation.reload()
            await self.automation.wait_for_settle(self.config.settle_timeout_s)
        elif op != "selector":
            logger.warning("Unknown remediation step %r", remedy)

    # ------------------------------------------------------------------
    async def _capture(self, run: _Run, action: Optional[ActionInfo]) -> Frame:
        rec = run.recorder
        frame = await asyncio.wait_for(
            capture_frame(
                self.automation,
                rec.next_frame_id(),
                rec.elapsed_ms(),
                self.config.capture_options(run.artifact_dir),
                action_info=action,
                state=run.current,
            ),
            timeout=self.config.step_timeout_s,
        )
        frame = self._dedup.check(frame, run.prev_frame, force=self.config.keep_duplicates)
        rec.add_frame(frame)
        run.prev_frame = frame
        return frame

    async def _capture_terminal(self, run: _Run) -> None:
        try:
            await self._capture(run, None)
        except (NavigatorError, asyncio.TimeoutError) as exc:
            logger.warning("Terminal frame not captured: %s", exc)

    def _fail(self, run: _Run, error_kind: str, step_no: Optional[int] = None) -> None:
        run.outcome = SessionOutcome.FAILURE
        run.error_kind = error_kind
        run.failing_step = step_no if step_no is not None else (run.step_no or None)

    def _finish(self, run: _Run, definition: Optional[WorkflowDefinition]) -> ExecutionResult:
        outcome = run.outcome or SessionOutcome.FAILURE
        self.state = {
            SessionOutcome.SUCCESS: ExecutorState.SUCCEEDED,
            SessionOutcome.FAILURE: ExecutorState.FAILED,
            SessionOutcome.CANCELLED: ExecutorState.CANCELLED,
        }[outcome]
        session = run.recorder.finalize(
            outcome,
            error_kind=run.error_kind,
            failing_step=run.failing_step,
            last_successful_node=run.last_ok,
        )
        learned = self._hand_off(session, run.G, definition)
        self.events.emit(WorkflowFinished(session.session_id, outcome.value, run.last_ok, run.error_kind))
        return ExecutionResult(
            outcome=outcome,
            session=session,
            last_successful_node=run.last_ok,
            failing_step=run.failing_step,
            error_kind=run.error_kind,
            learned=learned,
        )

    def _hand_off(self, session: Session, G: WorkflowGraph, definition: Optional[WorkflowDefinition]) -> bool:
        """Persist the session and learn from it. Never fails the run."""
        if self.session_store is not None:
            try:
                self.session_store.save(session)
            except OSError:
                logger.exception("Could not persist session %s", session.session_id)
        try:
            if self.graph_store is not None:

                def learn(stored: WorkflowGraph) -> WorkflowGraph:
                    if definition is not None:
                        definition.seed(stored)
                    return self.learner.learn(session, stored)

                self.graph_store.update(session.workflow_id, learn, default=lambda: G)
            else:
                self.learner.learn(session, G)
            return True
        except LearnError as exc:
            logger.warning("Session %s not learned: %s", session.session_id, exc)
            return False
        except (NavigatorError, OSError, KeyError, ValueError):
            logger.exception("Learning from session %s failed", session.session_id)
            return False


def _selector_in(steps: Tuple[str, ...]) -> Optional[str]:
    for s in steps:
        if s.startswith("selector:"):
            return s[len("selector:"):]
    return None
