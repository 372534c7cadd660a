"""Comment timeline estimation for render_comments_video."""

from __future__ import annotations

import math
import re
from typing import Sequence

from domain.comment_video import (
    INVALID_CONFIG_CODE,
    Comment,
    CommentVideoValidationError,
    Timeline,
)

DEFAULT_FPS = 30
COVER_DURATION_SECONDS = 3
MIN_COMMENT_DURATION_SECONDS = 3
MAX_COMMENT_DURATION_SECONDS = 8

BASE_SECONDS = 2.8
TRANSLATION_WEIGHT = 1.2
CHARACTER_DIVISOR = 90
APPEAR_DISAPPEAR_BUFFER_SECONDS = 1.6

SCROLL_VIEWPORT_HEIGHT = 320
SCROLL_SPEED_PX_PER_SEC = 30
MIN_SCROLL_SECONDS = 1.5

PRIMARY_FONT_SIZE = 26
PRIMARY_LINE_HEIGHT = 1.52
TRANSLATION_FONT_SIZE = 24
TRANSLATION_LINE_HEIGHT = 1.48
CJK_FONT_SIZE = 52
CJK_LINE_HEIGHT = 1.4
SECTION_SPACING_PX = 36

CJK_PATTERN = re.compile(r"[\u4e00-\u9fff]")


def contains_cjk(text_value: str | None) -> bool:
    """Return True when any character falls in the CJK Unified Ideographs block."""
    return bool(text_value) and CJK_PATTERN.search(text_value) is not None


def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves away from zero for positives."""
    return int(math.floor(value + 0.5))


def seconds_to_frames(seconds: float, fps: int) -> int:
    """Convert seconds to a whole frame count."""
    return round_half_up(seconds * fps)


def has_distinct_translation(comment: Comment) -> bool:
    return bool(comment.translated_content) and (
        comment.translated_content != comment.content
    )


def line_height_px(text_value: str | None, font_size: int, line_height: float) -> float:
    if contains_cjk(text_value):
        return CJK_FONT_SIZE * CJK_LINE_HEIGHT
    return font_size * line_height


def estimate_comment_height(comment: Comment) -> float:
    """Estimate the rendered height of a comment body in pixels.

    Only explicit line breaks are counted and wrapping is ignored. Any
    non-empty translation adds its block, even one identical to the content.
    """
    main_lines = len(comment.content.split("\n"))
    height = main_lines * line_height_px(
        comment.content, PRIMARY_FONT_SIZE, PRIMARY_LINE_HEIGHT
    )
    if comment.translated_content:
        translation = comment.translated_content
        translation_lines = len(translation.split("\n"))
        height += SECTION_SPACING_PX + translation_lines * line_height_px(
            translation, TRANSLATION_FONT_SIZE, TRANSLATION_LINE_HEIGHT
        )
    return height


def scrolling_duration_seconds(content_height: float) -> float:
    """Extra time needed to scroll content taller than the viewport."""
    if content_height <= SCROLL_VIEWPORT_HEIGHT:
        return 0.0
    scroll_distance = content_height - SCROLL_VIEWPORT_HEIGHT
    return max(MIN_SCROLL_SECONDS, scroll_distance / SCROLL_SPEED_PX_PER_SEC)


def estimate_comment_duration_seconds(comment: Comment) -> float:
    """Estimate how long a comment stays on screen, clamped to [3, 8] seconds."""
    content_length = len(comment.content)
    translation_length = len(comment.translated_content or "")
    weighted_chars = content_length + translation_length * TRANSLATION_WEIGHT
    reading_seconds = BASE_SECONDS + weighted_chars / CHARACTER_DIVISOR
    scrolling_seconds = scrolling_duration_seconds(estimate_comment_height(comment))
    total = reading_seconds + scrolling_seconds + APPEAR_DISAPPEAR_BUFFER_SECONDS
    return min(
        float(MAX_COMMENT_DURATION_SECONDS),
        max(float(MIN_COMMENT_DURATION_SECONDS), total),
    )


def build_timeline(comments: Sequence[Comment], fps: int = DEFAULT_FPS) -> Timeline:
    """Build the frame schedule for a cover followed by every comment.

    An empty comment list is valid here and yields a cover-only timeline.
    """
    if isinstance(fps, bool) or not isinstance(fps, int) or fps <= 0:
        raise CommentVideoValidationError(
            INVALID_CONFIG_CODE, "fps must be a positive integer"
        )

    cover_frames = seconds_to_frames(COVER_DURATION_SECONDS, fps)
    comment_frames = tuple(
        seconds_to_frames(estimate_comment_duration_seconds(comment), fps)
        for comment in comments
    )
    total_frames = cover_frames + sum(comment_frames)
    return Timeline(
        fps=fps,
        cover_duration_in_frames=cover_frames,
        comment_durations_in_frames=comment_frames,
        total_duration_in_frames=total_frames,
        total_duration_seconds=total_frames / fps,
        cover_duration_seconds=float(COVER_DURATION_SECONDS),
    )


def timeline_to_payload(timeline: Timeline) -> dict[str, object]:
    """Serialize a timeline for JSON output."""
    return {
        "fps": timeline.fps,
        "coverDurationInFrames": timeline.cover_duration_in_frames,
        "commentDurationsInFrames": list(timeline.comment_durations_in_frames),
        "totalDurationInFrames": timeline.total_duration_in_frames,
        "totalDurationSeconds": timeline.total_duration_seconds,
        "coverDurationSeconds": timeline.cover_duration_seconds,
    }
