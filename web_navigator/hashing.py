from __future__ import annotations

"""Content digests for capture artifacts and duplicate-frame detection."""

import hashlib
import json
import logging
import os
from dataclasses import replace
from typing import Any, Optional

from .frames import Frame

logger = logging.getLogger(__name__)


class ContentHasher:
    """SHA-256 digests over the three artifact kinds (bytes, html, layout json)."""

    @staticmethod
    def digest_bytes(data: bytes) -> str:
        return hashlib.sha256(data).hexdigest()

    @staticmethod
    def digest_text(text: str) -> str:
        return hashlib.sha256(text.encode("utf-8")).hexdigest()

    @staticmethod
    def digest_json(obj: Any) -> str:
        # canonical form so key order never changes the digest
        canon = json.dumps(obj, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canon.encode("utf-8")).hexdigest()

    @staticmethod
    def digest_file(path: str, chunk_size: int = 65536) -> str:
        h = hashlib.sha256()
        with open(path, "rb") as fh:
            for chunk in iter(lambda: fh.read(chunk_size), b""):
                h.update(chunk)
        return h.hexdigest()


class FrameDeduplicator:
    """Flags frames whose page content did not change since the previous frame.

    The DOM hash is compared first since it is the cheapest signal. When neither
    frame carries a DOM hash the screenshot hash is used instead. Frames without
    any hash are never flagged.
    """

    def __init__(self, prune_artifacts: bool = False) -> None:
        self.prune_artifacts = prune_artifacts
        self.duplicates_seen: int = 0

    def is_unchanged(self, new: Frame, prev: Optional[Frame]) -> bool:
        if prev is None:
            return False
        if new.dom.html_hash and prev.dom.html_hash:
            return new.dom.html_hash == prev.dom.html_hash
        if new.screenshot.hash and prev.screenshot.hash:
            return new.screenshot.hash == prev.screenshot.hash
        return False

    def check(self, new: Frame, prev: Optional[Frame], force: bool = False) -> Frame:
        """Return ``new``, flagged as duplicate when unchanged and not forced."""
        if force or not self.is_unchanged(new, prev):
            return new
        self.duplicates_seen += 1
        logger.debug("Frame %s duplicates frame %s", new.frame_id, prev.frame_id)
        flagged = new.with_changes(duplicate=True)
        if self.prune_artifacts:
            flagged = self._reuse_artifacts(flagged, prev)
        return flagged

    # ------------------------------------------------------------------
    def _reuse_artifacts(self, frame: Frame, prev: Frame) -> Frame:
        """Drop byte-identical artifact files and point at the previous ones.

        The previous file is re-hashed first; one that went missing or changed on
        disk is never reused.
        """
        shot, dom = frame.screenshot, frame.dom
        if (
            shot.hash
            and shot.hash == prev.screenshot.hash
            and shot.path != prev.screenshot.path
            and _file_matches(prev.screenshot.path, shot.hash)
        ):
            _remove_quietly(shot.path)
            shot = prev.screenshot
        if (
            dom.html_path
            and prev.dom.html_path
            and dom.html_hash
            and dom.html_hash == prev.dom.html_hash
            and dom.html_path != prev.dom.html_path
            and _file_matches(prev.dom.html_path, dom.html_hash)
        ):
            _remove_quietly(dom.html_path)
            dom = replace(dom, html_path=prev.dom.html_path)
        return frame.with_changes(screenshot=shot, dom=dom)


def _file_matches(path: Optional[str], digest: str) -> bool:
    if not path or not os.path.exists(path):
        return False
    return ContentHasher.digest_file(path) == digest


def _remove_quietly(path: str) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
