"""Domain types and parsing for render_comments_video."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Mapping, Sequence, Tuple

EMPTY_COMMENTS_CODE = "comments_video.input.empty_comments"
INVALID_COMMENT_CODE = "comments_video.input.invalid_comment"
INVALID_VIDEO_INFO_CODE = "comments_video.input.invalid_video_info"
INVALID_CONFIG_CODE = "comments_video.input.invalid_config"
INVALID_TEMPLATE_CODE = "comments_video.input.invalid_template"
INPUT_FILE_CODE = "comments_video.input.file_error"
BUNDLE_CODE = "comments_video.bundle.failed"
COMPOSITION_NOT_FOUND_CODE = "comments_video.render.composition_not_found"
RENDER_CODE = "comments_video.render.failed"
COMPOSE_CODE = "comments_video.compose.failed"
COMPOSE_STALLED_CODE = "comments_video.compose.stalled"
FFMPEG_NOT_FOUND_CODE = "comments_video.ffmpeg.not_found"
SOURCE_DOWNLOAD_CODE = "comments_video.source.download_failed"
CANCELLED_CODE = "comments_video.pipeline.cancelled"
DEADLINE_CODE = "comments_video.pipeline.deadline_exceeded"
EVENT_ORDER_CODE = "comments_video.internal.event_order"

COMMENTS_VIDEO_COMPOSITION_ID = "CommentsVideo"
COMMENTS_VIDEO_VERTICAL_COMPOSITION_ID = "CommentsVideoVertical"


class CommentVideoValidationError(ValueError):
    """Validation error with a stable error code."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code


class CommentVideoPipelineError(RuntimeError):
    """Runtime error with a stable error code."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code


class RenderCancelledError(CommentVideoPipelineError):
    """Raised when a render is cancelled or runs past its deadline."""


class RenderStage(str, Enum):
    """Pipeline stages reported to progress listeners."""

    BUNDLE = "bundle"
    RENDER = "render"
    COMPOSE = "compose"
    COMPLETE = "complete"
    FAILED = "failed"


TERMINAL_STAGES = frozenset({RenderStage.COMPLETE, RenderStage.FAILED})


class CommentTemplate(str, Enum):
    """Supported overlay templates."""

    DEFAULT = "comments-default"
    VERTICAL = "comments-vertical"


TEMPLATE_COMPOSITIONS = {
    CommentTemplate.DEFAULT: COMMENTS_VIDEO_COMPOSITION_ID,
    CommentTemplate.VERTICAL: COMMENTS_VIDEO_VERTICAL_COMPOSITION_ID,
}


@dataclass(frozen=True)
class Comment:
    """A single extracted comment."""

    id: str
    author: str
    content: str
    likes: int = 0
    author_thumbnail: str | None = None
    translated_content: str | None = None
    reply_count: int | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.id, str) or not self.id.strip():
            raise CommentVideoValidationError(
                INVALID_COMMENT_CODE, "comment id must be a non-empty string"
            )
        if not isinstance(self.content, str):
            raise CommentVideoValidationError(
                INVALID_COMMENT_CODE, f"comment {self.id!r} content must be text"
            )
        if self.translated_content is not None and not isinstance(
            self.translated_content, str
        ):
            raise CommentVideoValidationError(
                INVALID_COMMENT_CODE,
                f"comment {self.id!r} translated content must be text",
            )
        if self.likes < 0:
            raise CommentVideoValidationError(
                INVALID_COMMENT_CODE, f"comment {self.id!r} likes must be non-negative"
            )
        if self.reply_count is not None and self.reply_count < 0:
            raise CommentVideoValidationError(
                INVALID_COMMENT_CODE,
                f"comment {self.id!r} reply count must be non-negative",
            )


@dataclass(frozen=True)
class VideoInfo:
    """Metadata describing the source video."""

    title: str
    view_count: int = 0
    translated_title: str | None = None
    author: str | None = None
    thumbnail: str | None = None
    series: str | None = None
    series_episode: int | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.title, str):
            raise CommentVideoValidationError(
                INVALID_VIDEO_INFO_CODE, "video title must be text"
            )
        if self.view_count < 0:
            raise CommentVideoValidationError(
                INVALID_VIDEO_INFO_CODE, "view count must be non-negative"
            )
        if self.series_episode is not None and self.series_episode < 0:
            raise CommentVideoValidationError(
                INVALID_VIDEO_INFO_CODE, "series episode must be non-negative"
            )


@dataclass(frozen=True)
class Timeline:
    """Frame-accurate schedule for the cover and every comment."""

    fps: int
    cover_duration_in_frames: int
    comment_durations_in_frames: Tuple[int, ...]
    total_duration_in_frames: int
    total_duration_seconds: float
    cover_duration_seconds: float

    def __post_init__(self) -> None:
        if self.fps <= 0:
            raise CommentVideoValidationError(INVALID_CONFIG_CODE, "fps must be positive")
        if self.cover_duration_in_frames < 0:
            raise CommentVideoValidationError(
                INVALID_CONFIG_CODE, "cover duration must be non-negative"
            )
        for frames in self.comment_durations_in_frames:
            if not isinstance(frames, int) or frames < 0:
                raise CommentVideoValidationError(
                    INVALID_CONFIG_CODE,
                    "comment durations must be non-negative integers",
                )
        expected_total = self.cover_duration_in_frames + sum(
            self.comment_durations_in_frames
        )
        if self.total_duration_in_frames != expected_total:
            raise CommentVideoValidationError(
                INVALID_CONFIG_CODE,
                "total frames must equal cover frames plus comment frames",
            )
        if self.total_duration_seconds != self.total_duration_in_frames / self.fps:
            raise CommentVideoValidationError(
                INVALID_CONFIG_CODE, "total seconds must equal total frames / fps"
            )


@dataclass(frozen=True)
class RenderProgressEvent:
    """Progress notification streamed to callers."""

    stage: RenderStage
    progress: float | None = None
    meta: Mapping[str, Any] | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.stage, RenderStage):
            raise CommentVideoPipelineError(EVENT_ORDER_CODE, "stage is invalid")
        if self.progress is not None and not 0.0 <= self.progress <= 1.0:
            raise CommentVideoPipelineError(
                EVENT_ORDER_CODE,
                f"progress must be between 0 and 1: {self.progress}",
            )


ProgressCallback = Callable[[RenderProgressEvent], None]


@dataclass(frozen=True)
class SlotLayout:
    """Canvas rectangle reserved for the source video."""

    x: int
    y: int
    width: int
    height: int

    def __post_init__(self) -> None:
        if self.x < 0 or self.y < 0:
            raise CommentVideoValidationError(
                INVALID_CONFIG_CODE, "video slot position must be non-negative"
            )
        if self.width <= 0 or self.height <= 0:
            raise CommentVideoValidationError(
                INVALID_CONFIG_CODE, "video slot size must be positive"
            )


@dataclass(frozen=True)
class Composition:
    """A named, renderable composition discovered in a bundle."""

    id: str
    width: int
    height: int
    fps: int
    duration_in_frames: int
    video_slot: SlotLayout

    def __post_init__(self) -> None:
        if not self.id.strip():
            raise CommentVideoValidationError(
                INVALID_CONFIG_CODE, "composition id must be non-empty"
            )
        if self.width <= 0 or self.height <= 0:
            raise CommentVideoValidationError(
                INVALID_CONFIG_CODE, "composition size must be positive"
            )
        if self.width % 2 or self.height % 2:
            raise CommentVideoValidationError(
                INVALID_CONFIG_CODE, "composition size must be even"
            )
        if self.fps <= 0:
            raise CommentVideoValidationError(
                INVALID_CONFIG_CODE, "composition fps must be positive"
            )
        if self.duration_in_frames <= 0:
            raise CommentVideoValidationError(
                INVALID_CONFIG_CODE, "composition duration must be positive"
            )
        if (
            self.video_slot.x + self.video_slot.width > self.width
            or self.video_slot.y + self.video_slot.height > self.height
        ):
            raise CommentVideoValidationError(
                INVALID_CONFIG_CODE, f"video slot exceeds composition {self.id!r}"
            )


@dataclass(frozen=True)
class RenderOptions:
    """Inputs for a single render invocation."""

    source_video_path: str
    output_path: str
    video_info: VideoInfo
    comments: Tuple[Comment, ...]
    on_progress: ProgressCallback | None = None
    template: CommentTemplate = CommentTemplate.DEFAULT

    def __post_init__(self) -> None:
        if not self.source_video_path.strip():
            raise CommentVideoValidationError(
                INVALID_CONFIG_CODE, "source video path must be non-empty"
            )
        if not self.output_path.strip():
            raise CommentVideoValidationError(
                INVALID_CONFIG_CODE, "output path must be non-empty"
            )
        if not isinstance(self.template, CommentTemplate):
            raise CommentVideoValidationError(
                INVALID_TEMPLATE_CODE, "template is invalid"
            )

    @property
    def composition_id(self) -> str:
        return TEMPLATE_COMPOSITIONS[self.template]


def parse_template(value: str) -> CommentTemplate:
    """Parse a template name into a CommentTemplate."""
    normalized = value.strip().lower()
    try:
        return CommentTemplate(normalized)
    except ValueError as exc:
        raise CommentVideoValidationError(
            INVALID_TEMPLATE_CODE, f"invalid template: {value!r}"
        ) from exc


def _optional_text(payload: Mapping[str, Any], key: str, code: str) -> str | None:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise CommentVideoValidationError(code, f"{key} must be text")
    return value


def _count(payload: Mapping[str, Any], key: str, code: str, default: int | None) -> int | None:
    value = payload.get(key)
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise CommentVideoValidationError(code, f"{key} must be a number")
    if isinstance(value, float) and not value.is_integer():
        raise CommentVideoValidationError(code, f"{key} must be a whole number")
    return int(value)


def comment_from_payload(payload: Mapping[str, Any]) -> Comment:
    """Build a Comment from a camelCase JSON payload."""
    if not isinstance(payload, Mapping):
        raise CommentVideoValidationError(
            INVALID_COMMENT_CODE, "comment payload must be an object"
        )
    content = payload.get("content")
    if content is None:
        raise CommentVideoValidationError(
            INVALID_COMMENT_CODE, f"comment {payload.get('id')!r} is missing content"
        )
    raw_id = payload.get("id")
    return Comment(
        id=str(raw_id) if raw_id is not None else "",
        author=_optional_text(payload, "author", INVALID_COMMENT_CODE) or "",
        content=content,
        likes=_count(payload, "likes", INVALID_COMMENT_CODE, 0) or 0,
        author_thumbnail=_optional_text(
            payload, "authorThumbnail", INVALID_COMMENT_CODE
        ),
        translated_content=_optional_text(
            payload, "translatedContent", INVALID_COMMENT_CODE
        ),
        reply_count=_count(payload, "replyCount", INVALID_COMMENT_CODE, None),
    )


def video_info_from_payload(payload: Mapping[str, Any]) -> VideoInfo:
    """Build VideoInfo from a camelCase JSON payload."""
    if not isinstance(payload, Mapping):
        raise CommentVideoValidationError(
            INVALID_VIDEO_INFO_CODE, "video info payload must be an object"
        )
    title = payload.get("title")
    if not isinstance(title, str):
        raise CommentVideoValidationError(
            INVALID_VIDEO_INFO_CODE, "video info title is required"
        )
    return VideoInfo(
        title=title,
        view_count=_count(payload, "viewCount", INVALID_VIDEO_INFO_CODE, 0) or 0,
        translated_title=_optional_text(
            payload, "translatedTitle", INVALID_VIDEO_INFO_CODE
        ),
        author=_optional_text(payload, "author", INVALID_VIDEO_INFO_CODE),
        thumbnail=_optional_text(payload, "thumbnail", INVALID_VIDEO_INFO_CODE),
        series=_optional_text(payload, "series", INVALID_VIDEO_INFO_CODE),
        series_episode=_count(
            payload, "seriesEpisode", INVALID_VIDEO_INFO_CODE, None
        ),
    )


def parse_comments(payload: Any) -> Tuple[Comment, ...]:
    """Parse a comment list, or an object holding one under ``comments``."""
    if isinstance(payload, Mapping):
        payload = payload.get("comments")
    if not isinstance(payload, list):
        raise CommentVideoValidationError(
            INVALID_COMMENT_CODE, "comments payload must be a list"
        )
    return tuple(comment_from_payload(item) for item in payload)


def _drop_none(values: Mapping[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in values.items() if value is not None}


def comment_to_payload(comment: Comment) -> dict[str, Any]:
    """Serialize a Comment into the camelCase compositor payload."""
    return _drop_none(
        {
            "id": comment.id,
            "author": comment.author,
            "authorThumbnail": comment.author_thumbnail,
            "content": comment.content,
            "translatedContent": comment.translated_content,
            "likes": comment.likes,
            "replyCount": comment.reply_count,
        }
    )


def video_info_to_payload(video_info: VideoInfo) -> dict[str, Any]:
    """Serialize VideoInfo into the camelCase compositor payload."""
    return _drop_none(
        {
            "title": video_info.title,
            "translatedTitle": video_info.translated_title,
            "viewCount": video_info.view_count,
            "author": video_info.author,
            "thumbnail": video_info.thumbnail,
            "series": video_info.series,
            "seriesEpisode": video_info.series_episode,
        }
    )


def build_input_props(
    video_info: VideoInfo,
    comments: Sequence[Comment],
    timeline: Timeline,
) -> dict[str, Any]:
    """Build the exact input props handed to the frame compositor."""
    return {
        "videoInfo": video_info_to_payload(video_info),
        "comments": [comment_to_payload(comment) for comment in comments],
        "coverDurationInFrames": timeline.cover_duration_in_frames,
        "commentDurationsInFrames": list(timeline.comment_durations_in_frames),
        "fps": timeline.fps,
    }


def is_remote_url(value: str | None) -> bool:
    """Return True for http(s) URLs."""
    if not value:
        return False
    lowered = value.strip().lower()
    return lowered.startswith("http://") or lowered.startswith("https://")


def read_utf8_text_strict(file_path: str | Path) -> str:
    """Read a UTF-8 file with strict decoding."""
    try:
        with open(file_path, "rb") as file_handle:
            file_bytes = file_handle.read()
    except FileNotFoundError as exc:
        raise CommentVideoValidationError(
            INPUT_FILE_CODE, f"input file not found: {file_path}"
        ) from exc
    except OSError as exc:
        raise CommentVideoValidationError(
            INPUT_FILE_CODE, f"input file is unreadable: {file_path}"
        ) from exc

    try:
        return file_bytes.decode("utf-8", errors="strict")
    except UnicodeDecodeError as exc:
        raise CommentVideoValidationError(
            INPUT_FILE_CODE,
            f"input file is not valid UTF-8 at byte offset {exc.start}",
        ) from exc
