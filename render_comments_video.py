#!/usr/bin/env -S uv run
# /// script
# requires-python = ">=3.11"
# dependencies = [
#   "pillow>=10.1"
# ]
# ///
"""Render a comments overlay video around a source clip (MP4, H.264 + AAC)."""

from __future__ import annotations

import argparse
import json
import logging
import os
import signal
import sys
from dataclasses import dataclass
from typing import Any, Sequence

from domain.comment_video import (
    INPUT_FILE_CODE,
    INVALID_CONFIG_CODE,
    CommentTemplate,
    CommentVideoPipelineError,
    CommentVideoValidationError,
    RenderOptions,
    RenderProgressEvent,
    RenderStage,
    VideoInfo,
    parse_comments,
    parse_template,
    read_utf8_text_strict,
    video_info_from_payload,
)
from service.cancellation import CancellationToken
from service.orchestrator import CommentsVideoRenderer
from service.settings import configure_logging, load_pipeline_config
from service.timeline import build_timeline, timeline_to_payload

LOGGER = logging.getLogger("comments_video")

PROGRESS_LOG_STEP = 0.1


@dataclass(frozen=True)
class CliRequest:
    comments_file: str
    video_info_file: str | None
    source_video: str | None
    output_video_file: str | None
    template: CommentTemplate
    timeout_seconds: float | None
    emit_timeline: bool


def parse_args(argv: Sequence[str]) -> CliRequest:
    """Parse CLI arguments into a CliRequest."""
    parser = argparse.ArgumentParser(prog="render_comments_video.py", add_help=True)
    parser.add_argument("--comments-file", required=True)
    parser.add_argument("--video-info-file", default=None)
    parser.add_argument("--source-video", default=None, help="local path or http(s) URL")
    parser.add_argument("--output-video-file", default=None)
    parser.add_argument(
        "--template",
        default=CommentTemplate.DEFAULT.value,
        help="comments-default (default) or comments-vertical",
    )
    parser.add_argument("--timeout-seconds", type=float, default=None)
    parser.add_argument("--emit-timeline", action="store_true")

    parsed = parser.parse_args(argv)
    if parsed.timeout_seconds is not None and parsed.timeout_seconds <= 0:
        raise CommentVideoValidationError(
            INVALID_CONFIG_CODE, "timeout-seconds must be positive"
        )
    if not parsed.emit_timeline:
        missing = [
            flag
            for flag, value in (
                ("--video-info-file", parsed.video_info_file),
                ("--source-video", parsed.source_video),
                ("--output-video-file", parsed.output_video_file),
            )
            if not value
        ]
        if missing:
            raise CommentVideoValidationError(
                INVALID_CONFIG_CODE,
                f"missing required arguments: {', '.join(missing)}",
            )
    return CliRequest(
        comments_file=parsed.comments_file,
        video_info_file=parsed.video_info_file,
        source_video=parsed.source_video,
        output_video_file=parsed.output_video_file,
        template=parse_template(parsed.template),
        timeout_seconds=parsed.timeout_seconds,
        emit_timeline=parsed.emit_timeline,
    )


def read_json_file(file_path: str) -> Any:
    """Read a strict UTF-8 JSON file."""
    text_value = read_utf8_text_strict(file_path)
    try:
        return json.loads(text_value)
    except json.JSONDecodeError as exc:
        raise CommentVideoValidationError(
            INPUT_FILE_CODE,
            f"{file_path} is not valid JSON: {exc.msg} (line {exc.lineno})",
        ) from exc


def load_video_info(file_path: str) -> VideoInfo:
    payload = read_json_file(file_path)
    if isinstance(payload, dict) and isinstance(payload.get("videoInfo"), dict):
        payload = payload["videoInfo"]
    return video_info_from_payload(payload)


def emit_timeline(payload: dict[str, object]) -> None:
    """Emit the timeline to stdout."""
    sys.stdout.write(json.dumps(payload, ensure_ascii=True))


class ProgressLogger:
    """Logs progress events, at most once per step of each stage."""

    def __init__(self, step: float = PROGRESS_LOG_STEP) -> None:
        self.step = step
        self._logged: dict[RenderStage, int] = {}

    def __call__(self, event: RenderProgressEvent) -> None:
        if event.stage == RenderStage.FAILED:
            return
        if event.progress is None:
            return
        bucket = int(event.progress / self.step)
        if self._logged.get(event.stage) == bucket:
            return
        self._logged[event.stage] = bucket
        meta = event.meta or {}
        if event.stage == RenderStage.RENDER and "total_frames" in meta:
            LOGGER.info(
                "comments_video.progress: stage=%s %.0f%% frames=%s/%s",
                event.stage.value,
                event.progress * 100,
                meta.get("frames_rendered"),
                meta.get("total_frames"),
            )
            return
        LOGGER.info(
            "comments_video.progress: stage=%s %.0f%%",
            event.stage.value,
            event.progress * 100,
        )


def install_cancel_handler(cancel_token: CancellationToken) -> None:
    """Cancel the render when the process receives SIGTERM."""

    def handle_sigterm(signum: int, frame: Any) -> None:
        LOGGER.warning("comments_video.signal: SIGTERM received, cancelling render")
        cancel_token.cancel("render cancelled by SIGTERM")

    signal.signal(signal.SIGTERM, handle_sigterm)


def main() -> int:
    """CLI entrypoint."""
    configure_logging(os.environ)

    try:
        request = parse_args(sys.argv[1:])
        config = load_pipeline_config(os.environ)
        comments = parse_comments(read_json_file(request.comments_file))
        if request.emit_timeline:
            timeline = build_timeline(comments, config.fps)
            emit_timeline(timeline_to_payload(timeline))
            return 0

        video_info = load_video_info(request.video_info_file or "")
        cancel_token = CancellationToken(request.timeout_seconds)
        install_cancel_handler(cancel_token)
        options = RenderOptions(
            source_video_path=request.source_video or "",
            output_path=request.output_video_file or "",
            video_info=video_info,
            comments=comments,
            on_progress=ProgressLogger(),
            template=request.template,
        )
        CommentsVideoRenderer(config).run(options, cancel_token)
        return 0
    except CommentVideoValidationError as exc:
        LOGGER.error("%s: %s", exc.code, str(exc).strip())
        return 1
    except CommentVideoPipelineError as exc:
        LOGGER.error("%s: %s", exc.code, str(exc).strip())
        return 1
    except Exception as exc:
        LOGGER.error("comments_video.unhandled_error: %s", str(exc).strip())
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
