from __future__ import annotations

"""Frame data model: one structured snapshot captured at a point in execution.

Frames are frozen once built. A frame's ``action`` describes the action about to
be performed *from* the frame's state; the next frame of the session shows the
result of that action.
"""

from dataclasses import asdict, dataclass, replace
from typing import Any, Dict, Optional, Tuple


@dataclass(frozen=True)
class Dimensions:
    width: int
    height: int


@dataclass(frozen=True)
class ScreenshotInfo:
    path: str
    format: str  # png | jpeg
    size_bytes: int
    dimensions: Optional[Dimensions] = None
    hash: Optional[str] = None


@dataclass(frozen=True)
class InteractiveElement:
    selector: str
    tag: str
    text: str
    is_visible: bool = True
    is_enabled: bool = True


@dataclass(frozen=True)
class DomInfo:
    url: str
    title: str
    html_path: Optional[str] = None
    html_hash: Optional[str] = None
    interactive_elements: Optional[Tuple[InteractiveElement, ...]] = None


@dataclass(frozen=True)
class LayoutSnapshotInfo:
    """Metadata of the structured layout snapshot written next to the frame."""

    path: str
    preset: str
    node_count: int
    size_bytes: int
    hash: Optional[str] = None


@dataclass(frozen=True)
class RecoveryTag:
    """Marks an action as a recovery retry after a failure of ``error_kind``."""

    error_kind: str
    steps: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ActionInfo:
    action_type: str
    intent: str
    target: Optional[str] = None  # selector (or url for navigate)
    from_state: Optional[str] = None
    expected_state: Optional[str] = None
    edge_id: Optional[int] = None
    recovery: Optional[RecoveryTag] = None


@dataclass(frozen=True)
class TranscriptInfo:
    action_description: str
    reasoning: Optional[str] = None
    expected_outcome: Optional[str] = None


@dataclass(frozen=True)
class Frame:
    frame_id: int
    timestamp: str  # ISO-8601
    elapsed_ms: int
    screenshot: ScreenshotInfo
    dom: DomInfo
    layout: Optional[LayoutSnapshotInfo] = None
    action: Optional[ActionInfo] = None
    transcript: Optional[TranscriptInfo] = None
    state: Optional[str] = None
    duplicate: bool = False

    @property
    def is_actionable(self) -> bool:
        return self.action is not None

    def with_changes(self, **changes: Any) -> "Frame":
        return replace(self, **changes)

    # ------------------------------------------------------------------
    def to_dict(self) -> Dict[str, Any]:
        return _drop_none(asdict(self))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Frame":
        shot = dict(data["screenshot"])
        if shot.get("dimensions"):
            shot["dimensions"] = Dimensions(**shot["dimensions"])
        dom = dict(data["dom"])
        if dom.get("interactive_elements") is not None:
            dom["interactive_elements"] = tuple(
                InteractiveElement(**e) for e in dom["interactive_elements"]
            )
        action = data.get("action")
        if action is not None:
            action = dict(action)
            if action.get("recovery"):
                rec = action["recovery"]
                action["recovery"] = RecoveryTag(
                    error_kind=rec["error_kind"], steps=tuple(rec.get("steps", ()))
                )
            action = ActionInfo(**action)
        layout = data.get("layout")
        transcript = data.get("transcript")
        return cls(
            frame_id=int(data["frame_id"]),
            timestamp=data["timestamp"],
            elapsed_ms=int(data["elapsed_ms"]),
            screenshot=ScreenshotInfo(**shot),
            dom=DomInfo(**dom),
            layout=LayoutSnapshotInfo(**layout) if layout else None,
            action=action,
            transcript=TranscriptInfo(**transcript) if transcript else None,
            state=data.get("state"),
            duplicate=bool(data.get("duplicate", False)),
        )


def _drop_none(value: Any) -> Any:
    """Recursively drop ``None`` entries so optional fields are omitted."""
    if isinstance(value, dict):
        return {k: _drop_none(v) for k, v in value.items() if v is not None}
    if isinstance(value, (list, tuple)):
        return [_drop_none(v) for v in value]
    return value
