"""Shared test fixtures for web_navigator.

No test drives a real browser: ``FakeAutomation`` implements the
``BrowserAutomation`` capability over a dict of in-memory pages, with
screenshots rendered by Pillow so the capture engine can measure them.
"""
from __future__ import annotations

import io
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set, Tuple

import pytest
from PIL import Image

from web_navigator.automation import ActionResult, BrowserAutomation
from web_navigator.config import NavigatorConfig
from web_navigator.errors import CaptureConnectionError
from web_navigator.frames import ActionInfo, DomInfo, Frame, RecoveryTag, ScreenshotInfo
from web_navigator.graph import WorkflowGraph
from web_navigator.session import Session, SessionOutcome, SessionRecorder
from web_navigator.workflow import StepSpec, WorkflowDefinition


# ---------------------------------------------------------------------------
# Fake browser
# ---------------------------------------------------------------------------

@dataclass
class FakePage:
    title: str
    html: str
    selectors: Set[str] = field(default_factory=set)
    color: Tuple[int, int, int] = (255, 255, 255)


class FakeAutomation(BrowserAutomation):
    """In-memory browser: ``links`` maps ``(url, selector)`` to the url it opens."""

    def __init__(
        self,
        pages: Dict[str, FakePage],
        start_url: str,
        links: Optional[Dict[Tuple[str, str], str]] = None,
        size: Tuple[int, int] = (8, 6),
    ) -> None:
        self.pages = pages
        self.links = links or {}
        self.current_url = start_url
        self.size = size
        self.connected = True
        self.fail_content = False
        self.fail_layout = False
        self.settles = True
        self.calls: List[Tuple[str, Any]] = []

    @property
    def page(self) -> FakePage:
        return self.pages[self.current_url]

    async def ensure_connected(self) -> None:
        if not self.connected:
            raise CaptureConnectionError("page closed")

    # --- actions ----------------------------------------------------------
    async def navigate(self, url: str) -> ActionResult:
        self.calls.append(("navigate", url))
        if url not in self.pages:
            return ActionResult(ok=False, error="net::ERR_NAME_NOT_RESOLVED")
        self.current_url = url
        return ActionResult(ok=True)

    async def click(self, selector: str) -> ActionResult:
        self.calls.append(("click", selector))
        if selector not in self.page.selectors:
            return ActionResult(ok=False, error="timeout")
        target = self.links.get((self.current_url, selector))
        if target is not None:
            self.current_url = target
        return ActionResult(ok=True)

    async def type_text(self, selector: str, text: str) -> ActionResult:
        self.calls.append(("type", (selector, text)))
        if selector not in self.page.selectors:
            return ActionResult(ok=False, error="timeout")
        return ActionResult(ok=True)

    async def scroll(self, selector: Optional[str] = None, direction: str = "down") -> ActionResult:
        self.calls.append(("scroll", (selector, direction)))
        return ActionResult(ok=True)

    async def reload(self) -> ActionResult:
        self.calls.append(("reload", self.current_url))
        return ActionResult(ok=True)

    async def evaluate(self, script: str, arg: Any = None) -> Any:
        return [
            {"selector": s, "tag": "button", "text": s.strip("#"), "is_visible": True, "is_enabled": True}
            for s in sorted(self.page.selectors)
        ]

    async def wait_for_settle(self, timeout_s: float) -> bool:
        return self.settles

    # --- observation ------------------------------------------------------
    async def screenshot(self, fmt: str = "png", quality: Optional[int] = None) -> bytes:
        buf = io.BytesIO()
        img = Image.new("RGB", self.size, self.page.color)
        if fmt == "jpeg":
            img.save(buf, "JPEG", quality=quality or 80)
        else:
            img.save(buf, "PNG")
        return buf.getvalue()

    async def url(self) -> str:
        return self.current_url

    async def title(self) -> str:
        return self.page.title

    async def content(self) -> str:
        if self.fail_content:
            raise RuntimeError("content unavailable")
        return self.page.html

    async def selector_exists(self, selector: str) -> bool:
        return selector in self.page.selectors

    async def layout_snapshot(self, computed_styles: List[str]) -> Dict[str, Any]:
        if self.fail_layout:
            raise RuntimeError("CDP session refused")
        return {
            "documents": [{"nodes": {"nodeName": [0, 1, 2, 3]}}],
            "strings": ["#document", "HTML", "BODY", "BUTTON"],
            "computed_styles": computed_styles,
            "images": [],
        }


# ---------------------------------------------------------------------------
# Login workflow fixtures
# ---------------------------------------------------------------------------

LOGIN_URL = "https://app.test/login"
DASHBOARD_URL = "https://app.test/dashboard"
SETTINGS_URL = "https://app.test/settings"


def login_pages() -> Dict[str, FakePage]:
    return {
        LOGIN_URL: FakePage("Sign in", "<html><form id='login'></form></html>", {"button[type=submit]"}),
        DASHBOARD_URL: FakePage("Dashboard", "<html><nav id='dash'></nav></html>", {"#settings"}, (0, 0, 255)),
        SETTINGS_URL: FakePage("Settings", "<html><main id='settings'></main></html>", set(), (0, 255, 0)),
    }


def login_links() -> Dict[Tuple[str, str], str]:
    return {
        (LOGIN_URL, "#login-btn"): DASHBOARD_URL,
        (LOGIN_URL, "button[type=submit]"): DASHBOARD_URL,
        (DASHBOARD_URL, "#settings"): SETTINGS_URL,
    }


def login_definition() -> WorkflowDefinition:
    return WorkflowDefinition(
        workflow_id="login",
        start_state="login",
        goal_state="settings",
        start_url=LOGIN_URL,
        steps=[
            StepSpec("login", "dashboard", "click", "#login-btn", alternatives=["button[type=submit]"]),
            StepSpec("dashboard", "settings", "click", "#settings"),
        ],
        signals={
            "login": {"url_contains": "/login"},
            "dashboard": {"url_contains": "/dashboard"},
            "settings": {"url_contains": "/settings"},
        },
    )


@pytest.fixture
def automation() -> FakeAutomation:
    return FakeAutomation(login_pages(), LOGIN_URL, login_links())


@pytest.fixture
def definition() -> WorkflowDefinition:
    return login_definition()


@pytest.fixture
def seeded_graph(definition: WorkflowDefinition) -> WorkflowGraph:
    return definition.seed(WorkflowGraph("login"))


@pytest.fixture
def config(tmp_path) -> NavigatorConfig:
    """Isolated config: artifacts and data under tmp_path, short timeouts."""
    return NavigatorConfig(
        artifact_root=str(tmp_path / "artifacts"),
        data_dir=str(tmp_path / "data"),
        step_timeout_s=5.0,
        settle_timeout_s=1.0,
        workflow_timeout_s=10.0,
        retry_wait_ms=1,
    )


# ---------------------------------------------------------------------------
# Synthetic frames and sessions (no capture)
# ---------------------------------------------------------------------------

def make_frame(
    frame_id: int,
    state: Optional[str],
    action: Optional[ActionInfo] = None,
    duplicate: bool = False,
    html_hash: Optional[str] = None,
) -> Frame:
    base = f"/tmp/frames/frame_{frame_id:06d}"
    return Frame(
        frame_id=frame_id,
        timestamp="2026-01-01T00:00:00+00:00",
        elapsed_ms=frame_id * 100,
        screenshot=ScreenshotInfo(path=f"{base}.png", format="png", size_bytes=10),
        dom=DomInfo(url=f"https://app.test/{state}", title=str(state), html_hash=html_hash),
        action=action,
        state=state,
        duplicate=duplicate,
    )


def act(
    from_state: str,
    to_state: str,
    selector: str,
    action_type: str = "click",
    recovery: Optional[RecoveryTag] = None,
) -> ActionInfo:
    return ActionInfo(
        action_type=action_type,
        intent=f"{action_type} {from_state} -> {to_state}",
        target=selector,
        from_state=from_state,
        expected_state=to_state,
        recovery=recovery,
    )


def build_session(
    workflow_id: str,
    frames: List[Frame],
    outcome: SessionOutcome = SessionOutcome.SUCCESS,
) -> Session:
    rec = SessionRecorder(workflow_id)
    for f in frames:
        rec.add_frame(f)
    return rec.finalize(outcome)


def linear_session(
    workflow_id: str,
    path: List[Tuple[str, str]],
    outcome: SessionOutcome = SessionOutcome.SUCCESS,
) -> Session:
    """``path`` is ``[(state, selector_to_next), ...]`` ending with ``(goal, "")``."""
    frames = []
    for i, (state, selector) in enumerate(path):
        action = act(state, path[i + 1][0], selector) if i + 1 < len(path) else None
        frames.append(make_frame(i, state, action))
    return build_session(workflow_id, frames, outcome)


HAPPY_PATH_STEPS = [("login", "#login-btn"), ("dashboard", "#settings"), ("settings", "")]
