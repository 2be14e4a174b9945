from __future__ import annotations

"""Structured progress events for an external presentation layer.

The core never formats anything for humans; listeners receive plain dataclasses.
"""

import logging
from dataclasses import dataclass
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StepStarted:
    session_id: str
    step: int
    edge_id: int
    from_state: str
    to_state: str
    selector: str


@dataclass(frozen=True)
class StepCompleted:
    session_id: str
    step: int
    edge_id: int
    duration_ms: int


@dataclass(frozen=True)
class StepFailed:
    session_id: str
    step: int
    edge_id: int
    error_kind: str


@dataclass(frozen=True)
class RecoveryAttempted:
    session_id: str
    step: int
    edge_id: int
    error_kind: str
    steps: tuple
    succeeded: bool


@dataclass(frozen=True)
class WorkflowFinished:
    session_id: str
    outcome: str
    last_successful_node: Optional[str]
    error_kind: Optional[str]


Listener = Callable[[object], None]


class EventEmitter:
    def __init__(self) -> None:
        self._listeners: List[Listener] = []

    def subscribe(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def unsubscribe(self, listener: Listener) -> None:
        self._listeners.remove(listener)

    def emit(self, event: object) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                # a broken listener must not break execution
                logger.exception("Event listener failed on %s", type(event).__name__)
