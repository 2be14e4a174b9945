from __future__ import annotations

"""Frame capture engine.

Captures one structured snapshot of the live page: screenshot + DOM, plus an
optional structured layout snapshot and interactive-element inventory. The
screenshot and the DOM url/title are mandatory; every other sub-capture degrades
gracefully (logged, field omitted) instead of aborting the frame.

Artifacts are written to ``CaptureOptions.artifact_dir`` using zero-padded,
sequential names so that lexicographic order equals execution order::

    frame_000000.png
    frame_000000.html
    frame_000000.layout.json
"""

import io
import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Union

from PIL import Image

from .automation import BrowserAutomation
from .errors import CaptureDegradation
from .frames import (
    ActionInfo,
    Dimensions,
    DomInfo,
    Frame,
    InteractiveElement,
    LayoutSnapshotInfo,
    ScreenshotInfo,
    TranscriptInfo,
)
from .hashing import ContentHasher

logger = logging.getLogger(__name__)

FRAME_NAME_WIDTH = 6


class ScreenshotFormat(str, Enum):
    PNG = "png"
    JPEG = "jpeg"

    @property
    def extension(self) -> str:
        return "jpg" if self is ScreenshotFormat.JPEG else "png"


class StylePreset(str, Enum):
    """How many computed style properties go into the layout snapshot."""

    MINIMAL = "minimal"
    BALANCED = "balanced"
    FULL = "full"


_MINIMAL_STYLES = ["display", "visibility", "opacity"]
_BALANCED_STYLES = _MINIMAL_STYLES + [
    "position",
    "z-index",
    "overflow",
    "color",
    "background-color",
    "font-size",
    "font-weight",
]
_FULL_STYLES = _BALANCED_STYLES + [
    "font-family",
    "line-height",
    "text-align",
    "width",
    "height",
    "margin-top",
    "margin-bottom",
    "padding-top",
    "padding-bottom",
    "border-top-width",
    "border-bottom-width",
    "cursor",
    "pointer-events",
    "transform",
]

STYLE_PRESETS: Dict[StylePreset, List[str]] = {
    StylePreset.MINIMAL: _MINIMAL_STYLES,
    StylePreset.BALANCED: _BALANCED_STYLES,
    StylePreset.FULL: _FULL_STYLES,
}


@dataclass
class CaptureOptions:
    artifact_dir: str = "./frames"
    screenshot_format: ScreenshotFormat = ScreenshotFormat.PNG
    jpeg_quality: int = 80
    save_html: bool = True
    compute_hashes: bool = True
    capture_layout: bool = False
    # preset name or an explicit list of CSS property names
    layout_styles: Union[StylePreset, Sequence[str]] = StylePreset.BALANCED
    extract_interactive_elements: bool = False
    interactive_limit: int = 50

    def style_properties(self) -> List[str]:
        if isinstance(self.layout_styles, (StylePreset, str)):
            return list(STYLE_PRESETS[StylePreset(self.layout_styles)])
        return list(self.layout_styles)

    def style_label(self) -> str:
        if isinstance(self.layout_styles, (StylePreset, str)):
            return StylePreset(self.layout_styles).value
        return "custom"


def frame_basename(frame_id: int) -> str:
    return f"frame_{frame_id:0{FRAME_NAME_WIDTH}d}"


# Interactive elements with a best-guess selector: #id, [name=..], then
# tag:nth-of-type among same-tag siblings of the document.
_INTERACTIVE_JS = """
(limit) => {
    const tags = ['button', 'a', 'input', 'select', 'textarea'];
    const out = [];
    for (const tag of tags) {
        const nodes = Array.from(document.querySelectorAll(tag)).slice(0, limit);
        nodes.forEach((el, idx) => {
            const rect = el.getBoundingClientRect();
            let selector = `${tag}:nth-of-type(${idx + 1})`;
            if (el.id) {
                selector = `#${CSS.escape(el.id)}`;
            } else if (el.getAttribute('name')) {
                selector = `${tag}[name="${el.getAttribute('name')}"]`;
            }
            out.push({
                selector: selector,
                tag: tag,
                text: (el.innerText || el.value || el.textContent || '').trim().substring(0, 100),
                is_visible: rect.width > 0 && rect.height > 0,
                is_enabled: !el.disabled
            });
        });
    }
    return out;
}
"""


async def capture_frame(
    automation: BrowserAutomation,
    frame_id: int,
    elapsed_ms: int,
    options: CaptureOptions,
    instruction: Optional[str] = None,
    action_info: Optional[ActionInfo] = None,
    state: Optional[str] = None,
) -> Frame:
    """Capture a frame from the current browser state.

    Raises ``CaptureConnectionError`` when the page handle is unreachable. The
    check happens before the artifact directory is created or any file written.
    """
    if action_info is not None:
        logger.info("Capturing frame %d (%s: %s)", frame_id, action_info.action_type, action_info.intent)
    else:
        logger.info("Capturing frame %d", frame_id)

    # 1. fail fast ---------------------------------------------------------
    await automation.ensure_connected()
    logger.debug("Browser connection verified")

    os.makedirs(options.artifact_dir, exist_ok=True)
    base = os.path.join(options.artifact_dir, frame_basename(frame_id))

    # 2. screenshot (mandatory) --------------------------------------------
    fmt = ScreenshotFormat(options.screenshot_format)
    raw = await automation.screenshot(
        fmt.value, options.jpeg_quality if fmt is ScreenshotFormat.JPEG else None
    )
    shot_path = f"{base}.{fmt.extension}"
    with open(shot_path, "wb") as fh:
        fh.write(raw)
    dimensions = _guard("dimensions", lambda: _image_dimensions(raw))
    screenshot = ScreenshotInfo(
        path=shot_path,
        format=fmt.value,
        size_bytes=len(raw),
        dimensions=dimensions,
        hash=ContentHasher.digest_bytes(raw) if options.compute_hashes else None,
    )

    # 3. DOM (url/title mandatory, html optional) --------------------------
    url = await automation.url()
    title = await automation.title()
    html_path, html_hash = await _capture_html(automation, base, options)
    interactive = None
    if options.extract_interactive_elements:
        interactive = await _aguard("interactive_elements", _interactive_elements(automation, options))
    dom = DomInfo(
        url=url,
        title=title,
        html_path=html_path,
        html_hash=html_hash,
        interactive_elements=interactive,
    )

    # 4. structured layout snapshot (optional) -----------------------------
    layout = None
    if options.capture_layout:
        layout = await _aguard("layout", _capture_layout(automation, base, options))

    # 5. transcript ---------------------------------------------------------
    transcript = None
    if instruction:
        transcript = TranscriptInfo(action_description=instruction)
    elif action_info is not None:
        transcript = TranscriptInfo(action_description=action_info.intent)

    frame = Frame(
        frame_id=frame_id,
        timestamp=datetime.now(timezone.utc).isoformat(),
        elapsed_ms=elapsed_ms,
        screenshot=screenshot,
        dom=dom,
        layout=layout,
        action=action_info,
        transcript=transcript,
        state=state,
    )
    logger.debug(
        "Frame %d captured: screenshot %d bytes, url=%s, layout=%s",
        frame_id,
        screenshot.size_bytes,
        url,
        "yes" if layout else "no",
    )
    return frame


# ------------------------------------------------------------------
# sub-captures -------------------------------------------------------

def _image_dimensions(raw: bytes) -> Dimensions:
    with Image.open(io.BytesIO(raw)) as img:
        width, height = img.size
    return Dimensions(width=width, height=height)


async def _capture_html(automation: BrowserAutomation, base: str, options: CaptureOptions):
    if not (options.save_html or options.compute_hashes):
        return None, None
    try:
        html = await automation.content()
    except Exception as exc:
        _degraded(CaptureDegradation("html", exc))
        return None, None
    html_path = None
    if options.save_html:
        html_path = f"{base}.html"
        with open(html_path, "w", encoding="utf-8") as fh:
            fh.write(html)
    html_hash = ContentHasher.digest_text(html) if options.compute_hashes else None
    return html_path, html_hash


async def _interactive_elements(automation: BrowserAutomation, options: CaptureOptions):
    items = await automation.evaluate(_INTERACTIVE_JS, options.interactive_limit) or []
    return tuple(
        InteractiveElement(
            selector=str(it.get("selector", "")),
            tag=str(it.get("tag", "")),
            text=str(it.get("text", "")),
            is_visible=bool(it.get("is_visible", True)),
            is_enabled=bool(it.get("is_enabled", True)),
        )
        for it in items
    )


async def _capture_layout(
    automation: BrowserAutomation, base: str, options: CaptureOptions
) -> LayoutSnapshotInfo:
    snapshot = await automation.layout_snapshot(options.style_properties())
    payload = json.dumps(snapshot, sort_keys=True, separators=(",", ":"))
    path = f"{base}.layout.json"
    with open(path, "w", encoding="utf-8") as fh:
        fh.write(payload)
    return LayoutSnapshotInfo(
        path=path,
        preset=options.style_label(),
        node_count=layout_node_count(snapshot),
        size_bytes=len(payload.encode("utf-8")),
        hash=ContentHasher.digest_json(snapshot) if options.compute_hashes else None,
    )


def layout_node_count(snapshot: Dict[str, Any]) -> int:
    """Count DOM nodes across every document of a DOMSnapshot payload."""
    total = 0
    for doc in snapshot.get("documents", []):
        total += len(doc.get("nodes", {}).get("nodeName", []))
    return total


# ------------------------------------------------------------------
# degradation helpers ------------------------------------------------

def _degraded(err: CaptureDegradation) -> None:
    logger.warning("%s", err)


def _guard(component: str, fn):
    try:
        return fn()
    except Exception as exc:
        _degraded(CaptureDegradation(component, exc))
        return None


async def _aguard(component: str, coro):
    try:
        return await coro
    except Exception as exc:
        _degraded(CaptureDegradation(component, exc))
        return None
