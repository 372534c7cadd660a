"""Environment-driven configuration for render_comments_video."""

from __future__ import annotations

import dataclasses
import logging
import tempfile
from pathlib import Path
from typing import Mapping

from domain.comment_video import INVALID_CONFIG_CODE, CommentVideoValidationError
from service.timeline import DEFAULT_FPS

REPO_ROOT = Path(__file__).resolve().parents[1]
DEFAULT_PUBLIC_DIR = REPO_ROOT / "assets"
DEFAULT_ENTRY_POINT = DEFAULT_PUBLIC_DIR / "compositions.json"
DEFAULT_X264_PRESET = "veryfast"
DEFAULT_COMPOSE_STALL_SECONDS = 120.0
DEFAULT_IMAGE_TIMEOUT_SECONDS = 15.0

FFMPEG_PATH_ENV = "COMMENTS_VIDEO_FFMPEG_PATH"
FFPROBE_PATH_ENV = "COMMENTS_VIDEO_FFPROBE_PATH"
ENTRY_POINT_ENV = "COMMENTS_VIDEO_ENTRY_POINT"
PUBLIC_DIR_ENV = "COMMENTS_VIDEO_PUBLIC_DIR"
WORK_DIR_ENV = "COMMENTS_VIDEO_WORK_DIR"
FPS_ENV = "COMMENTS_VIDEO_FPS"
X264_PRESET_ENV = "COMMENTS_VIDEO_X264_PRESET"
COMPOSE_STALL_SECONDS_ENV = "COMMENTS_VIDEO_COMPOSE_STALL_SECONDS"
IMAGE_TIMEOUT_SECONDS_ENV = "COMMENTS_VIDEO_IMAGE_TIMEOUT_SECONDS"
PROXY_URL_ENV = "COMMENTS_VIDEO_PROXY_URL"
LOG_LEVEL_ENV = "COMMENTS_VIDEO_LOG_LEVEL"

X264_PRESETS = (
    "ultrafast",
    "superfast",
    "veryfast",
    "faster",
    "fast",
    "medium",
    "slow",
    "slower",
    "veryslow",
)


@dataclasses.dataclass(frozen=True)
class PipelineConfig:
    """Validated runtime configuration for the render pipeline."""

    ffmpeg_path: str = "ffmpeg"
    ffprobe_path: str = "ffprobe"
    entry_point: Path = DEFAULT_ENTRY_POINT
    public_dir: Path = DEFAULT_PUBLIC_DIR
    work_dir: Path | None = None
    fps: int = DEFAULT_FPS
    x264_preset: str = DEFAULT_X264_PRESET
    compose_stall_seconds: float = DEFAULT_COMPOSE_STALL_SECONDS
    image_timeout_seconds: float = DEFAULT_IMAGE_TIMEOUT_SECONDS
    proxy_url: str | None = None

    def __post_init__(self) -> None:
        if not self.ffmpeg_path.strip():
            raise CommentVideoValidationError(
                INVALID_CONFIG_CODE, "ffmpeg-path must be non-empty"
            )
        if not self.ffprobe_path.strip():
            raise CommentVideoValidationError(
                INVALID_CONFIG_CODE, "ffprobe-path must be non-empty"
            )
        if self.fps <= 0:
            raise CommentVideoValidationError(INVALID_CONFIG_CODE, "fps must be positive")
        if self.x264_preset not in X264_PRESETS:
            raise CommentVideoValidationError(
                INVALID_CONFIG_CODE, f"invalid x264 preset: {self.x264_preset!r}"
            )
        if self.compose_stall_seconds <= 0:
            raise CommentVideoValidationError(
                INVALID_CONFIG_CODE, "compose-stall-seconds must be positive"
            )
        if self.image_timeout_seconds <= 0:
            raise CommentVideoValidationError(
                INVALID_CONFIG_CODE, "image-timeout-seconds must be positive"
            )

    def resolved_work_dir(self) -> Path:
        """Return the parent directory for ephemeral run directories."""
        if self.work_dir is not None:
            return self.work_dir
        return Path(tempfile.gettempdir())


def parse_positive_int(raw_value: str, label: str) -> int:
    """Parse a positive integer from a string."""
    try:
        value = int(raw_value)
    except ValueError as exc:
        raise CommentVideoValidationError(
            INVALID_CONFIG_CODE, f"{label} must be an integer"
        ) from exc
    if value <= 0:
        raise CommentVideoValidationError(INVALID_CONFIG_CODE, f"{label} must be positive")
    return value


def parse_positive_float(raw_value: str, label: str) -> float:
    """Parse a positive float from a string."""
    try:
        value = float(raw_value)
    except ValueError as exc:
        raise CommentVideoValidationError(
            INVALID_CONFIG_CODE, f"{label} must be a number"
        ) from exc
    if value <= 0:
        raise CommentVideoValidationError(INVALID_CONFIG_CODE, f"{label} must be positive")
    return value


def read_env_int(env: Mapping[str, str], key: str, label: str, fallback: int) -> int:
    """Read a positive integer from the environment."""
    raw_value = env.get(key, "").strip()
    if not raw_value:
        return fallback
    return parse_positive_int(raw_value, label)


def read_env_float(
    env: Mapping[str, str], key: str, label: str, fallback: float
) -> float:
    """Read a positive float from the environment."""
    raw_value = env.get(key, "").strip()
    if not raw_value:
        return fallback
    return parse_positive_float(raw_value, label)


def read_env_path(env: Mapping[str, str], key: str, fallback: Path | None) -> Path | None:
    raw_value = env.get(key, "").strip()
    if not raw_value:
        return fallback
    return Path(raw_value)


def load_pipeline_config(env: Mapping[str, str]) -> PipelineConfig:
    """Load pipeline configuration from the environment."""
    return PipelineConfig(
        ffmpeg_path=env.get(FFMPEG_PATH_ENV, "").strip() or "ffmpeg",
        ffprobe_path=env.get(FFPROBE_PATH_ENV, "").strip() or "ffprobe",
        entry_point=read_env_path(env, ENTRY_POINT_ENV, DEFAULT_ENTRY_POINT)
        or DEFAULT_ENTRY_POINT,
        public_dir=read_env_path(env, PUBLIC_DIR_ENV, DEFAULT_PUBLIC_DIR)
        or DEFAULT_PUBLIC_DIR,
        work_dir=read_env_path(env, WORK_DIR_ENV, None),
        fps=read_env_int(env, FPS_ENV, "fps", DEFAULT_FPS),
        x264_preset=env.get(X264_PRESET_ENV, "").strip().lower() or DEFAULT_X264_PRESET,
        compose_stall_seconds=read_env_float(
            env,
            COMPOSE_STALL_SECONDS_ENV,
            "compose-stall-seconds",
            DEFAULT_COMPOSE_STALL_SECONDS,
        ),
        image_timeout_seconds=read_env_float(
            env,
            IMAGE_TIMEOUT_SECONDS_ENV,
            "image-timeout-seconds",
            DEFAULT_IMAGE_TIMEOUT_SECONDS,
        ),
        proxy_url=env.get(PROXY_URL_ENV, "").strip() or None,
    )


def configure_logging(env: Mapping[str, str]) -> None:
    """Configure logging from environment."""
    level_name = env.get(LOG_LEVEL_ENV, "INFO").strip().upper()
    level = logging.INFO
    if level_name == "DEBUG":
        level = logging.DEBUG
    elif level_name == "WARNING":
        level = logging.WARNING
    elif level_name == "ERROR":
        level = logging.ERROR
    logging.basicConfig(level=level, format="%(message)s")
