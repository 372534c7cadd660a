"""Pipeline orchestration: timeline, bundle, render, compose, cleanup."""

from __future__ import annotations

import contextlib
import logging
import os
import shutil
import tempfile
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Iterator

from domain.comment_video import (
    EMPTY_COMMENTS_CODE,
    CommentVideoValidationError,
    RenderOptions,
    RenderStage,
)
from service.assets import AssetCache, materialize_source_video
from service.cancellation import CancellationToken
from service.compose import ComposeRequest, MediaComposer
from service.compositor import CompositorAdapter, FrameCompositor
from service.pillow_compositor import PillowCompositor
from service.progress import ProgressEmitter
from service.settings import PipelineConfig, load_pipeline_config
from service.timeline import build_timeline

LOGGER = logging.getLogger("comments_video.pipeline")

SCRATCH_PREFIX = "comments-video-scratch-"
CACHE_PREFIX = "comments-video-cache-"
IMAGE_CACHE_DIR_NAME = "images"


class PipelineState(str, Enum):
    IDLE = "idle"
    BUNDLING = "bundling"
    RENDERING = "rendering"
    COMPOSING = "composing"
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass(frozen=True)
class RenderWorkspace:
    """Ephemeral directories owned by a single run."""

    scratch_dir: Path
    cache_dir: Path


def remove_tree(path: Path) -> None:
    """Remove a directory tree, logging rather than raising on failure."""
    try:
        shutil.rmtree(path)
    except FileNotFoundError:
        return
    except OSError as exc:
        LOGGER.warning("comments_video.pipeline.cleanup_failed: %s (%s)", path, exc)


@contextlib.contextmanager
def render_workspace(base_dir: Path) -> Iterator[RenderWorkspace]:
    """Create uniquely named scratch and cache directories; remove both on exit."""
    base_dir.mkdir(parents=True, exist_ok=True)
    scratch_dir = Path(tempfile.mkdtemp(prefix=SCRATCH_PREFIX, dir=base_dir))
    try:
        cache_dir = Path(tempfile.mkdtemp(prefix=CACHE_PREFIX, dir=base_dir))
    except OSError:
        remove_tree(scratch_dir)
        raise
    LOGGER.debug(
        "comments_video.pipeline.workspace: scratch=%s cache=%s", scratch_dir, cache_dir
    )
    try:
        yield RenderWorkspace(scratch_dir=scratch_dir, cache_dir=cache_dir)
    finally:
        remove_tree(scratch_dir)
        remove_tree(cache_dir)


def describe_failure(exc: BaseException) -> str:
    """Format an error as ``code: message`` for the Failed event."""
    message = str(exc).strip() or type(exc).__name__
    code = getattr(exc, "code", None)
    if code:
        return f"{code}: {message}"
    return message


class CommentsVideoRenderer:
    """Runs the comments-video pipeline for one RenderOptions at a time."""

    def __init__(
        self,
        config: PipelineConfig,
        compositor: FrameCompositor | None = None,
        composer: MediaComposer | None = None,
    ) -> None:
        self.config = config
        self.adapter = CompositorAdapter(compositor or PillowCompositor(config), config)
        self.composer = composer or MediaComposer(config)
        self.state = PipelineState.IDLE

    def run(
        self, options: RenderOptions, cancel_token: CancellationToken | None = None
    ) -> str:
        """Render ``options`` to its output path and return that path.

        Empty comment lists are rejected before any directory is created or any
        event is emitted. Every other failure emits exactly one Failed event and
        is re-raised after the run's directories are removed.
        """
        if not options.comments:
            raise CommentVideoValidationError(
                EMPTY_COMMENTS_CODE, "at least one comment is required"
            )
        cancel_token = cancel_token or CancellationToken()
        emitter = ProgressEmitter(options.on_progress)
        self.state = PipelineState.IDLE

        try:
            timeline = build_timeline(options.comments, self.config.fps)
            LOGGER.info(
                "comments_video.timeline: comments=%d frames=%d seconds=%.2f",
                len(options.comments),
                timeline.total_duration_in_frames,
                timeline.total_duration_seconds,
            )
            with render_workspace(self.config.resolved_work_dir()) as workspace:
                image_cache_dir = workspace.cache_dir / IMAGE_CACHE_DIR_NAME
                image_cache_dir.mkdir()
                assets = AssetCache(
                    image_cache_dir,
                    self.config.image_timeout_seconds,
                    self.config.proxy_url,
                )
                video_info = assets.prepare_video_info(options.video_info, cancel_token)
                comments = assets.prepare_comments(options.comments, cancel_token)

                self.state = PipelineState.BUNDLING
                handle = self.adapter.bundle(
                    workspace.scratch_dir, workspace.cache_dir, emitter, cancel_token
                )

                self.state = PipelineState.RENDERING
                overlay = self.adapter.render(
                    handle,
                    options.composition_id,
                    timeline,
                    video_info,
                    comments,
                    workspace.scratch_dir,
                    emitter,
                    cancel_token,
                )

                cancel_token.raise_if_cancelled()
                self.state = PipelineState.COMPOSING
                source_video_path = materialize_source_video(
                    options.source_video_path,
                    workspace.scratch_dir,
                    self.config.image_timeout_seconds,
                    cancel_token,
                    self.config.proxy_url,
                )
                Path(options.output_path).parent.mkdir(parents=True, exist_ok=True)
                self.composer.compose(
                    ComposeRequest(
                        overlay_path=str(overlay.overlay_path),
                        source_video_path=source_video_path,
                        output_path=options.output_path,
                        timeline=timeline,
                        video_slot=overlay.composition.video_slot,
                    ),
                    emitter,
                    cancel_token,
                )

            emitter.emit(
                RenderStage.COMPLETE, 1.0, {"output_path": options.output_path}
            )
        except Exception as exc:
            failed_in = self.state
            self.state = PipelineState.FAILED
            LOGGER.warning(
                "comments_video.pipeline.failed: state=%s %s",
                failed_in.value,
                describe_failure(exc),
            )
            if emitter.terminal_event is None:
                try:
                    emitter.emit(
                        RenderStage.FAILED,
                        None,
                        {
                            "message": describe_failure(exc),
                            "code": getattr(exc, "code", None),
                        },
                    )
                except Exception as emit_exc:
                    LOGGER.warning(
                        "comments_video.pipeline.failed_event_error: %s",
                        describe_failure(emit_exc),
                    )
            raise

        self.state = PipelineState.COMPLETE
        LOGGER.info("comments_video.pipeline.complete: %s", options.output_path)
        return options.output_path


def run_render(
    options: RenderOptions,
    config: PipelineConfig | None = None,
    cancel_token: CancellationToken | None = None,
) -> str:
    """Render a comments video with the default compositor and composer."""
    if config is None:
        config = load_pipeline_config(os.environ)
    return CommentsVideoRenderer(config).run(options, cancel_token)
