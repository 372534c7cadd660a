"""Tests for environment-driven pipeline configuration."""

from __future__ import annotations

import tempfile
from pathlib import Path

import pytest

from domain.comment_video import INVALID_CONFIG_CODE, CommentVideoValidationError
from service.settings import (
    DEFAULT_ENTRY_POINT,
    PipelineConfig,
    load_pipeline_config,
)


def test_defaults_without_environment() -> None:
    config = load_pipeline_config({})

    assert config.ffmpeg_path == "ffmpeg"
    assert config.entry_point == DEFAULT_ENTRY_POINT
    assert DEFAULT_ENTRY_POINT.is_file()
    assert config.fps == 30
    assert config.x264_preset == "veryfast"
    assert config.compose_stall_seconds == 120.0
    assert config.proxy_url is None
    assert config.resolved_work_dir() == Path(tempfile.gettempdir())


def test_environment_overrides(tmp_path: Path) -> None:
    config = load_pipeline_config(
        {
            "COMMENTS_VIDEO_FFMPEG_PATH": "/opt/ffmpeg",
            "COMMENTS_VIDEO_WORK_DIR": str(tmp_path),
            "COMMENTS_VIDEO_FPS": "24",
            "COMMENTS_VIDEO_X264_PRESET": "UltraFast",
            "COMMENTS_VIDEO_COMPOSE_STALL_SECONDS": "2.5",
            "COMMENTS_VIDEO_PROXY_URL": "http://proxy:3128",
        }
    )

    assert config.ffmpeg_path == "/opt/ffmpeg"
    assert config.resolved_work_dir() == tmp_path
    assert config.fps == 24
    assert config.x264_preset == "ultrafast"
    assert config.compose_stall_seconds == 2.5
    assert config.proxy_url == "http://proxy:3128"


@pytest.mark.parametrize(
    "env",
    [
        {"COMMENTS_VIDEO_FPS": "0"},
        {"COMMENTS_VIDEO_FPS": "thirty"},
        {"COMMENTS_VIDEO_X264_PRESET": "warp"},
        {"COMMENTS_VIDEO_COMPOSE_STALL_SECONDS": "-1"},
        {"COMMENTS_VIDEO_IMAGE_TIMEOUT_SECONDS": "soon"},
    ],
)
def test_invalid_environment_is_rejected(env: dict[str, str]) -> None:
    with pytest.raises(CommentVideoValidationError) as excinfo:
        load_pipeline_config(env)
    assert excinfo.value.code == INVALID_CONFIG_CODE


def test_blank_ffmpeg_path_is_rejected() -> None:
    with pytest.raises(CommentVideoValidationError):
        PipelineConfig(ffmpeg_path="  ")
