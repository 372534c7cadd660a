"""Ordered progress emission for render_comments_video."""

from __future__ import annotations

import logging
from typing import Any, Mapping

from domain.comment_video import (
    EVENT_ORDER_CODE,
    TERMINAL_STAGES,
    CommentVideoPipelineError,
    ProgressCallback,
    RenderProgressEvent,
    RenderStage,
)

LOGGER = logging.getLogger("comments_video.progress")

STAGE_ORDER = {
    RenderStage.BUNDLE: 0,
    RenderStage.RENDER: 1,
    RenderStage.COMPOSE: 2,
    RenderStage.COMPLETE: 3,
}


def clamp_progress(value: float) -> float:
    """Clamp a progress fraction into [0, 1]."""
    return max(0.0, min(1.0, float(value)))


class ProgressEmitter:
    """Single-producer event stream with stage ordering and one terminal event."""

    def __init__(self, callback: ProgressCallback | None) -> None:
        self._callback = callback
        self._last_stage: RenderStage | None = None
        self._terminal: RenderProgressEvent | None = None

    @property
    def terminal_event(self) -> RenderProgressEvent | None:
        return self._terminal

    def emit(
        self,
        stage: RenderStage,
        progress: float | None = None,
        meta: Mapping[str, Any] | None = None,
    ) -> RenderProgressEvent:
        """Validate ordering and deliver an event to the callback."""
        if self._terminal is not None:
            raise CommentVideoPipelineError(
                EVENT_ORDER_CODE,
                f"{stage.value} event after terminal {self._terminal.stage.value} event",
            )
        if stage != RenderStage.FAILED and self._last_stage is not None:
            if STAGE_ORDER[stage] < STAGE_ORDER[self._last_stage]:
                raise CommentVideoPipelineError(
                    EVENT_ORDER_CODE,
                    f"{stage.value} event after {self._last_stage.value} event",
                )

        event = RenderProgressEvent(
            stage=stage,
            progress=None if progress is None else clamp_progress(progress),
            meta=dict(meta) if meta is not None else None,
        )
        if stage in TERMINAL_STAGES:
            self._terminal = event
        else:
            self._last_stage = stage
        LOGGER.debug(
            "comments_video.progress: stage=%s progress=%s",
            stage.value,
            "-" if event.progress is None else f"{event.progress:.3f}",
        )
        if self._callback is not None:
            self._callback(event)
        return event
