from __future__ import annotations

"""Runtime configuration, read from the environment (and an optional .env file)."""

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

from .capture import CaptureOptions, ScreenshotFormat, StylePreset

ENV_PREFIX = "WEB_NAVIGATOR_"


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.getenv(ENV_PREFIX + name, default)


def _env_bool(name: str, default: bool) -> bool:
    raw = _env(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str) -> Optional[int]:
    raw = _env(name)
    return int(raw) if raw not in (None, "") else None


@dataclass
class NavigatorConfig:
    artifact_root: str = "run_artifacts"
    data_dir: str = "navigator_data"
    step_timeout_s: float = 30.0
    settle_timeout_s: float = 10.0
    workflow_timeout_s: float = 300.0
    screenshot_format: ScreenshotFormat = ScreenshotFormat.PNG
    style_preset: StylePreset = StylePreset.BALANCED
    capture_layout: bool = False
    compute_hashes: bool = True
    save_html: bool = True
    keep_duplicates: bool = False
    prune_duplicate_artifacts: bool = False
    # no default: caller decides how often a retry loop may repeat
    cycle_bound: Optional[int] = None
    max_edge_traversals: int = 3
    retry_wait_ms: int = 1000
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, dotenv_path: Optional[str] = None) -> "NavigatorConfig":
        load_dotenv(dotenv_path)
        base = cls()
        return cls(
            artifact_root=_env("ARTIFACT_ROOT", base.artifact_root),
            data_dir=_env("DATA_DIR", base.data_dir),
            step_timeout_s=float(_env("STEP_TIMEOUT", str(base.step_timeout_s))),
            settle_timeout_s=float(_env("SETTLE_TIMEOUT", str(base.settle_timeout_s))),
            workflow_timeout_s=float(_env("WORKFLOW_TIMEOUT", str(base.workflow_timeout_s))),
            screenshot_format=ScreenshotFormat(_env("SCREENSHOT_FORMAT", base.screenshot_format.value)),
            style_preset=StylePreset(_env("STYLE_PRESET", base.style_preset.value)),
            capture_layout=_env_bool("CAPTURE_LAYOUT", base.capture_layout),
            compute_hashes=_env_bool("COMPUTE_HASHES", base.compute_hashes),
            save_html=_env_bool("SAVE_HTML", base.save_html),
            keep_duplicates=_env_bool("KEEP_DUPLICATES", base.keep_duplicates),
            prune_duplicate_artifacts=_env_bool("PRUNE_DUPLICATES", base.prune_duplicate_artifacts),
            cycle_bound=_env_int("CYCLE_BOUND"),
            max_edge_traversals=_env_int("MAX_EDGE_TRAVERSALS") or base.max_edge_traversals,
            retry_wait_ms=int(_env("RETRY_WAIT_MS", str(base.retry_wait_ms))),
            log_level=_env("LOG_LEVEL", base.log_level),
        )

    def capture_options(self, artifact_dir: str) -> CaptureOptions:
        return CaptureOptions(
            artifact_dir=artifact_dir,
            screenshot_format=self.screenshot_format,
            save_html=self.save_html,
            compute_hashes=self.compute_hashes,
            capture_layout=self.capture_layout,
            layout_styles=self.style_preset,
        )

    @property
    def graph_dir(self) -> str:
        return os.path.join(self.data_dir, "graphs")

    @property
    def session_dir(self) -> str:
        return os.path.join(self.data_dir, "sessions")
