from __future__ import annotations

"""Browser automation capability consumed by capture and execution.

The core treats the browser as an opaque capability: it issues actions, awaits
them, and reads back raw bytes/markup. ``PlaywrightAutomation`` is the default
adapter over a Playwright async ``Page``.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page, TimeoutError as PlaywrightTimeoutError

from .errors import CaptureConnectionError

logger = logging.getLogger(__name__)


@dataclass
class ActionResult:
    ok: bool
    error: Optional[str] = None


class BrowserAutomation:
    """Interface every automation handle implements. All methods are awaitable."""

    async def ensure_connected(self) -> None:
        """Raise ``CaptureConnectionError`` if the live page is unreachable."""
        raise NotImplementedError

    # --- actions ----------------------------------------------------------
    async def navigate(self, url: str) -> ActionResult:
        raise NotImplementedError

    async def click(self, selector: str) -> ActionResult:
        raise NotImplementedError

    async def type_text(self, selector: str, text: str) -> ActionResult:
        raise NotImplementedError

    async def scroll(self, selector: Optional[str] = None, direction: str = "down") -> ActionResult:
        raise NotImplementedError

    async def reload(self) -> ActionResult:
        raise NotImplementedError

    async def evaluate(self, script: str, arg: Any = None) -> Any:
        raise NotImplementedError

    async def wait_for_settle(self, timeout_s: float) -> bool:
        """Return True when the page settled within ``timeout_s``."""
        raise NotImplementedError

    # --- observation ------------------------------------------------------
    async def screenshot(self, fmt: str = "png", quality: Optional[int] = None) -> bytes:
        raise NotImplementedError

    async def url(self) -> str:
        raise NotImplementedError

    async def title(self) -> str:
        raise NotImplementedError

    async def content(self) -> str:
        raise NotImplementedError

    async def selector_exists(self, selector: str) -> bool:
        raise NotImplementedError

    async def layout_snapshot(self, computed_styles: List[str]) -> Dict[str, Any]:
        raise NotImplementedError


# Collects embedded images (bitmaps and inline data) so the layout snapshot can
# be reasoned about without OCR of the screenshot.
_IMAGES_JS = """
(limit) => {
    const out = [];
    const imgs = Array.from(document.images).slice(0, limit);
    for (const img of imgs) {
        const r = img.getBoundingClientRect();
        out.push({
            src: img.currentSrc || img.src || '',
            alt: img.alt || '',
            natural_width: img.naturalWidth,
            natural_height: img.naturalHeight,
            bounding_rect: {x: r.x, y: r.y, width: r.width, height: r.height}
        });
    }
    return out;
}
"""


class PlaywrightAutomation(BrowserAutomation):
    """Adapter over a Playwright async ``Page``."""

    def __init__(self, page: Page, action_timeout_ms: int = 10_000, image_limit: int = 50) -> None:
        self._page = page
        self._action_timeout_ms = action_timeout_ms
        self._image_limit = image_limit

    @property
    def page(self) -> Page:
        return self._page

    async def ensure_connected(self) -> None:
        if self._page.is_closed():
            raise CaptureConnectionError("page is closed")
        try:
            await self._page.evaluate("() => document.readyState")
        except PlaywrightError as exc:
            raise CaptureConnectionError(f"browser not responding: {exc}") from exc

    # ------------------------------------------------------------------
    async def _run(self, name: str, coro: Any) -> ActionResult:
        try:
            await coro
            return ActionResult(ok=True)
        except PlaywrightTimeoutError as exc:
            logger.debug("%s timed out: %s", name, exc)
            return ActionResult(ok=False, error="timeout")
        except PlaywrightError as exc:
            logger.debug("%s failed: %s", name, exc)
            return ActionResult(ok=False, error=str(exc))

    async def navigate(self, url: str) -> ActionResult:
        return await self._run("navigate", self._page.goto(url, timeout=self._action_timeout_ms))

    async def click(self, selector: str) -> ActionResult:
        return await self._run("click", self._page.click(selector, timeout=self._action_timeout_ms))

    async def type_text(self, selector: str, text: str) -> ActionResult:
        return await self._run("type", self._page.fill(selector, text, timeout=self._action_timeout_ms))

    async def scroll(self, selector: Optional[str] = None, direction: str = "down") -> ActionResult:
        delta = -600 if direction == "up" else 600
        if selector:
            return await self._run(
                "scroll",
                self._page.locator(selector).first.scroll_into_view_if_needed(timeout=self._action_timeout_ms),
            )
        return await self._run("scroll", self._page.mouse.wheel(0, delta))

    async def reload(self) -> ActionResult:
        return await self._run("reload", self._page.reload(timeout=self._action_timeout_ms))

    async def evaluate(self, script: str, arg: Any = None) -> Any:
        if arg is None:
            return await self._page.evaluate(script)
        return await self._page.evaluate(script, arg)

    async def wait_for_settle(self, timeout_s: float) -> bool:
        try:
            await self._page.wait_for_load_state("load", timeout=timeout_s * 1000)
            await self._page.wait_for_load_state("networkidle", timeout=timeout_s * 1000)
            return True
        except PlaywrightTimeoutError:
            return False

    # ------------------------------------------------------------------
    async def screenshot(self, fmt: str = "png", quality: Optional[int] = None) -> bytes:
        kwargs: Dict[str, Any] = {"type": fmt}
        if fmt == "jpeg" and quality is not None:
            kwargs["quality"] = quality
        return await self._page.screenshot(**kwargs)

    async def url(self) -> str:
        return self._page.url

    async def title(self) -> str:
        return await self._page.title()

    async def content(self) -> str:
        return await self._page.content()

    async def selector_exists(self, selector: str) -> bool:
        try:
            return await self._page.locator(selector).count() > 0
        except PlaywrightError:
            return False

    async def layout_snapshot(self, computed_styles: List[str]) -> Dict[str, Any]:
        session = await self._page.context.new_cdp_session(self._page)
        try:
            snapshot = await session.send(
                "DOMSnapshot.captureSnapshot",
                {
                    "computedStyles": computed_styles,
                    "includeDOMRects": True,
                    "includePaintOrder": False,
                },
            )
        finally:
            try:
                await session.detach()
            except PlaywrightError:
                pass
        snapshot["images"] = await self._page.evaluate(_IMAGES_JS, self._image_limit)
        return snapshot


async def open_playwright(url: str, headless: bool = True):
    """Launch Chromium and return ``(playwright, browser, automation)`` on ``url``."""
    from playwright.async_api import async_playwright

    pw = await async_playwright().start()
    browser = await pw.chromium.launch(headless=headless)
    context = await browser.new_context()
    page = await context.new_page()
    await page.goto(url)
    await asyncio.sleep(0.5)
    await page.wait_for_load_state("load")
    return pw, browser, PlaywrightAutomation(page)
