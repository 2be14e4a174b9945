"""Tests for content hashing and duplicate-frame detection."""
import os

import pytest

from web_navigator.capture import CaptureOptions, capture_frame
from web_navigator.hashing import ContentHasher, FrameDeduplicator


class TestContentHasher:

    def test_known_digest(self):
        assert ContentHasher.digest_bytes(b"") == (
            "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"
        )

    def test_text_and_bytes_agree(self):
        assert ContentHasher.digest_text("héllo") == ContentHasher.digest_bytes("héllo".encode("utf-8"))

    def test_json_digest_ignores_key_order(self):
        assert ContentHasher.digest_json({"a": 1, "b": [1, 2]}) == ContentHasher.digest_json({"b": [1, 2], "a": 1})

    def test_file_digest(self, tmp_path):
        path = tmp_path / "blob.bin"
        path.write_bytes(b"x" * 200_000)
        assert ContentHasher.digest_file(str(path)) == ContentHasher.digest_bytes(b"x" * 200_000)


class TestFrameDeduplicator:

    @pytest.mark.asyncio
    async def test_unchanged_page_flags_second_capture(self, tmp_path, automation):
        opts = CaptureOptions(artifact_dir=str(tmp_path))
        first = await capture_frame(automation, 0, 0, opts)
        second = await capture_frame(automation, 1, 10, opts)
        assert first.dom.html_hash == second.dom.html_hash

        dedup = FrameDeduplicator()
        assert not dedup.check(first, None).duplicate
        flagged = dedup.check(second, first)
        assert flagged.duplicate
        assert dedup.duplicates_seen == 1
        # flagging never touches files unless pruning is on
        assert os.path.exists(second.screenshot.path)

    @pytest.mark.asyncio
    async def test_changed_page_not_flagged(self, tmp_path, automation):
        opts = CaptureOptions(artifact_dir=str(tmp_path))
        first = await capture_frame(automation, 0, 0, opts)
        await automation.click("button[type=submit]")
        second = await capture_frame(automation, 1, 10, opts)
        assert not FrameDeduplicator().check(second, first).duplicate

    @pytest.mark.asyncio
    async def test_force_keeps_duplicate_unflagged(self, tmp_path, automation):
        opts = CaptureOptions(artifact_dir=str(tmp_path))
        first = await capture_frame(automation, 0, 0, opts)
        second = await capture_frame(automation, 1, 10, opts)
        assert not FrameDeduplicator().check(second, first, force=True).duplicate

    @pytest.mark.asyncio
    async def test_screenshot_hash_used_without_html(self, tmp_path, automation):
        opts = CaptureOptions(artifact_dir=str(tmp_path), save_html=False)
        automation.fail_content = True
        first = await capture_frame(automation, 0, 0, opts)
        second = await capture_frame(automation, 1, 10, opts)
        assert first.dom.html_hash is None
        assert FrameDeduplicator().is_unchanged(second, first)

    @pytest.mark.asyncio
    async def test_no_hashes_never_flagged(self, tmp_path, automation):
        opts = CaptureOptions(artifact_dir=str(tmp_path), compute_hashes=False)
        first = await capture_frame(automation, 0, 0, opts)
        second = await capture_frame(automation, 1, 10, opts)
        assert not FrameDeduplicator().is_unchanged(second, first)

    @pytest.mark.asyncio
    async def test_pruning_reuses_previous_artifacts(self, tmp_path, automation):
        opts = CaptureOptions(artifact_dir=str(tmp_path))
        first = await capture_frame(automation, 0, 0, opts)
        second = await capture_frame(automation, 1, 10, opts)

        pruned = FrameDeduplicator(prune_artifacts=True).check(second, first)
        assert pruned.screenshot.path == first.screenshot.path
        assert pruned.dom.html_path == first.dom.html_path
        assert not os.path.exists(second.screenshot.path)
        assert not os.path.exists(second.dom.html_path)

    @pytest.mark.asyncio
    async def test_pruning_keeps_file_when_previous_changed_on_disk(self, tmp_path, automation):
        opts = CaptureOptions(artifact_dir=str(tmp_path))
        first = await capture_frame(automation, 0, 0, opts)
        second = await capture_frame(automation, 1, 10, opts)
        with open(first.screenshot.path, "wb") as fh:
            fh.write(b"overwritten")

        pruned = FrameDeduplicator(prune_artifacts=True).check(second, first)
        assert pruned.duplicate
        assert pruned.screenshot.path == second.screenshot.path
        assert os.path.exists(second.screenshot.path)
        assert pruned.dom.html_path == first.dom.html_path
