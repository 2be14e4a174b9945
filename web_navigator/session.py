from __future__ import annotations

"""Session recording: the ordered record of all frames of one execution."""

import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .errors import FrameOrderError, SessionFinalizedError
from .frames import Frame

logger = logging.getLogger(__name__)

SESSION_SCHEMA_VERSION = 1


class SessionOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class RecoveryAction:
    """One remediation attempt made during the run."""

    frame_id: int
    edge_id: Optional[int]
    error_kind: str
    steps: Tuple[str, ...]
    succeeded: bool


@dataclass
class Session:
    workflow_id: str
    session_id: str
    started_at: str
    frames: List[Frame] = field(default_factory=list)
    outcome: Optional[SessionOutcome] = None
    ended_at: Optional[str] = None
    duration_ms: int = 0
    recovery_actions: List[RecoveryAction] = field(default_factory=list)
    error_kind: Optional[str] = None
    failing_step: Optional[int] = None
    last_successful_node: Optional[str] = None

    @property
    def finalized(self) -> bool:
        return self.outcome is not None

    def state_labels(self) -> List[str]:
        return [f.state for f in self.frames if f.state]

    # --- persistence ------------------------------------------------------
    def to_json(self) -> Dict[str, Any]:
        return {
            "schema_version": SESSION_SCHEMA_VERSION,
            "workflow_id": self.workflow_id,
            "session_id": self.session_id,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "duration_ms": self.duration_ms,
            "outcome": self.outcome.value if self.outcome else None,
            "error_kind": self.error_kind,
            "failing_step": self.failing_step,
            "last_successful_node": self.last_successful_node,
            "recovery_actions": [
                {
                    "frame_id": r.frame_id,
                    "edge_id": r.edge_id,
                    "error_kind": r.error_kind,
                    "steps": list(r.steps),
                    "succeeded": r.succeeded,
                }
                for r in self.recovery_actions
            ],
            "frames": [f.to_dict() for f in self.frames],
        }

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "Session":
        version = data.get("schema_version", SESSION_SCHEMA_VERSION)
        if version > SESSION_SCHEMA_VERSION:
            raise ValueError(f"unsupported session schema version {version}")
        outcome = data.get("outcome")
        return cls(
            workflow_id=data["workflow_id"],
            session_id=data["session_id"],
            started_at=data["started_at"],
            frames=[Frame.from_dict(f) for f in data.get("frames", [])],
            outcome=SessionOutcome(outcome) if outcome else None,
            ended_at=data.get("ended_at"),
            duration_ms=int(data.get("duration_ms", 0)),
            recovery_actions=[
                RecoveryAction(
                    frame_id=r["frame_id"],
                    edge_id=r.get("edge_id"),
                    error_kind=r["error_kind"],
                    steps=tuple(r.get("steps", ())),
                    succeeded=bool(r["succeeded"]),
                )
                for r in data.get("recovery_actions", [])
            ],
            error_kind=data.get("error_kind"),
            failing_step=data.get("failing_step"),
            last_successful_node=data.get("last_successful_node"),
        )


class SessionRecorder:
    """Accumulates frames for one run and finalizes them into a ``Session``."""

    def __init__(self, workflow_id: str, session_id: str | None = None) -> None:
        self._session = Session(
            workflow_id=workflow_id,
            session_id=session_id or uuid.uuid4().hex,
            started_at=datetime.now(timezone.utc).isoformat(),
        )
        self._t0 = time.monotonic()

    @property
    def session(self) -> Session:
        return self._session

    @property
    def session_id(self) -> str:
        return self._session.session_id

    @property
    def last_frame(self) -> Optional[Frame]:
        return self._session.frames[-1] if self._session.frames else None

    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self._t0) * 1000)

    def next_frame_id(self) -> int:
        last = self.last_frame
        return 0 if last is None else last.frame_id + 1

    # ------------------------------------------------------------------
    def add_frame(self, frame: Frame) -> None:
        self._ensure_open()
        last = self.last_frame
        if last is not None:
            if frame.frame_id <= last.frame_id:
                raise FrameOrderError(
                    f"frame_id {frame.frame_id} not after {last.frame_id}"
                )
            if frame.elapsed_ms < last.elapsed_ms:
                raise FrameOrderError(
                    f"elapsed_ms {frame.elapsed_ms} before {last.elapsed_ms}"
                )
        self._session.frames.append(frame)

    def record_recovery(
        self,
        frame_id: int,
        edge_id: Optional[int],
        error_kind: str,
        steps: Tuple[str, ...],
        succeeded: bool,
    ) -> None:
        self._ensure_open()
        self._session.recovery_actions.append(
            RecoveryAction(frame_id, edge_id, error_kind, tuple(steps), succeeded)
        )

    def finalize(
        self,
        outcome: SessionOutcome,
        error_kind: str | None = None,
        failing_step: int | None = None,
        last_successful_node: str | None = None,
    ) -> Session:
        self._ensure_open()
        s = self._session
        s.outcome = SessionOutcome(outcome)
        s.ended_at = datetime.now(timezone.utc).isoformat()
        s.duration_ms = self.elapsed_ms()
        s.error_kind = error_kind
        s.failing_step = failing_step
        s.last_successful_node = last_successful_node
        logger.info(
            "Session %s finalized: %s (%d frames)", s.session_id, s.outcome.value, len(s.frames)
        )
        return s

    def _ensure_open(self) -> None:
        if self._session.finalized:
            raise SessionFinalizedError(f"session {self._session.session_id} is finalized")
