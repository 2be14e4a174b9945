from __future__ import annotations

"""Exception hierarchy shared by capture, recording, learning and execution."""


class NavigatorError(Exception):
    """Base class for all web-navigator errors."""


class CaptureConnectionError(NavigatorError, ConnectionError):
    """The live page handle is unreachable. Fatal for the current frame/step."""


class CaptureDegradation(NavigatorError):
    """A non-mandatory sub-capture failed. Caught inside the capture engine."""

    def __init__(self, component: str, cause: BaseException | None = None) -> None:
        super().__init__(f"{component} capture degraded: {cause}")
        self.component = component
        self.cause = cause


class StepFailure(NavigatorError):
    """The expected downstream state of an action did not materialize."""

    def __init__(self, error_kind: str, message: str = "") -> None:
        super().__init__(message or error_kind)
        self.error_kind = error_kind


class RecoveryExhausted(NavigatorError):
    """Every recovery strategy and alternative selector failed for a step."""

    def __init__(self, edge_id: int, error_kind: str) -> None:
        super().__init__(f"recovery exhausted on edge {edge_id} ({error_kind})")
        self.edge_id = edge_id
        self.error_kind = error_kind


class LearnError(NavigatorError):
    """A session could not be reconciled with the graph's state labels."""


class GraphError(NavigatorError):
    """Structural problem: unknown ids, dangling edges, unbounded cycles."""


class GraphConcurrencyConflict(NavigatorError):
    """An edge changed between read and commit. Retried internally."""


class PlanningError(NavigatorError):
    """No executable path exists between the requested states."""


class FrameOrderError(NavigatorError, ValueError):
    """A frame was appended out of order."""


class SessionFinalizedError(NavigatorError):
    """The session was already finalized and is read-only."""
