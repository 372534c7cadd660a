"""Frame compositor port and the adapter that drives its bundle and render phases."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Callable, Mapping, Protocol, Sequence

from domain.comment_video import (
    COMPOSITION_NOT_FOUND_CODE,
    RENDER_CODE,
    Comment,
    CommentVideoPipelineError,
    Composition,
    RenderStage,
    Timeline,
    VideoInfo,
    build_input_props,
)
from service.cancellation import CancellationToken
from service.progress import ProgressEmitter, clamp_progress
from service.settings import PipelineConfig

LOGGER = logging.getLogger("comments_video.compositor")

RenderProgressCallback = Callable[[float, int, int], None]


class FrameCompositor(Protocol):
    """Engine that turns props into an overlay video via a bundle."""

    def bundle(
        self,
        entry_point: Path,
        out_dir: Path,
        public_dir: Path,
        cache_dir: Path,
        cancel_token: CancellationToken,
    ) -> Any: ...

    def list_compositions(
        self, handle: Any, input_props: Mapping[str, Any]
    ) -> Sequence[Composition]: ...

    def render_composition(
        self,
        composition: Composition,
        handle: Any,
        output_path: Path,
        input_props: Mapping[str, Any],
        on_progress: RenderProgressCallback,
        cancel_token: CancellationToken,
    ) -> None: ...


@dataclass(frozen=True)
class OverlayRender:
    """Result of the render phase."""

    overlay_path: Path
    composition: Composition


def find_composition(
    compositions: Sequence[Composition], composition_id: str
) -> Composition:
    """Return the composition with ``composition_id`` or fail."""
    for composition in compositions:
        if composition.id == composition_id:
            return composition
    available = ", ".join(sorted(item.id for item in compositions)) or "none"
    raise CommentVideoPipelineError(
        COMPOSITION_NOT_FOUND_CODE,
        f"composition {composition_id!r} not found (available: {available})",
    )


class CompositorAdapter:
    """Runs bundle then render against a FrameCompositor, emitting progress."""

    def __init__(self, compositor: FrameCompositor, config: PipelineConfig) -> None:
        self.compositor = compositor
        self.config = config

    def bundle(
        self,
        scratch_dir: Path,
        cache_dir: Path,
        emitter: ProgressEmitter,
        cancel_token: CancellationToken,
    ) -> Any:
        cancel_token.raise_if_cancelled()
        emitter.emit(RenderStage.BUNDLE, 0.0)
        handle = self.compositor.bundle(
            self.config.entry_point,
            scratch_dir / "bundle",
            self.config.public_dir,
            cache_dir,
            cancel_token,
        )
        emitter.emit(RenderStage.BUNDLE, 1.0)
        LOGGER.info("comments_video.bundle.ready: %s", self.config.entry_point)
        return handle

    def render(
        self,
        handle: Any,
        composition_id: str,
        timeline: Timeline,
        video_info: VideoInfo,
        comments: Sequence[Comment],
        scratch_dir: Path,
        emitter: ProgressEmitter,
        cancel_token: CancellationToken,
    ) -> OverlayRender:
        """Render the overlay video for ``composition_id`` into the scratch dir."""
        cancel_token.raise_if_cancelled()
        input_props = build_input_props(video_info, comments, timeline)
        discovered = find_composition(
            self.compositor.list_compositions(handle, input_props), composition_id
        )
        composition = replace(
            discovered,
            fps=timeline.fps,
            duration_in_frames=timeline.total_duration_in_frames,
        )
        overlay_path = scratch_dir / f"{uuid.uuid4().hex}-overlay.mp4"
        total_frames = composition.duration_in_frames
        LOGGER.info(
            "comments_video.render.start: composition=%s size=%dx%d frames=%d fps=%d",
            composition.id,
            composition.width,
            composition.height,
            total_frames,
            composition.fps,
        )

        def forward_progress(
            progress: float, frames_rendered: int, frames_encoded: int
        ) -> None:
            emitter.emit(
                RenderStage.RENDER,
                clamp_progress(progress),
                {
                    "frames_rendered": frames_rendered,
                    "frames_encoded": frames_encoded,
                    "total_frames": total_frames,
                },
            )

        self.compositor.render_composition(
            composition,
            handle,
            overlay_path,
            input_props,
            forward_progress,
            cancel_token,
        )
        if not overlay_path.is_file():
            raise CommentVideoPipelineError(
                RENDER_CODE, f"compositor produced no overlay at {overlay_path}"
            )
        emitter.emit(RenderStage.RENDER, 1.0)
        return OverlayRender(overlay_path=overlay_path, composition=composition)
