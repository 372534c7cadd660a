"""Tests for comment video payload parsing, progress ordering and cancellation."""

from __future__ import annotations

import time

import pytest

from domain.comment_video import (
    CANCELLED_CODE,
    DEADLINE_CODE,
    EVENT_ORDER_CODE,
    INVALID_COMMENT_CODE,
    INVALID_TEMPLATE_CODE,
    CommentTemplate,
    CommentVideoPipelineError,
    CommentVideoValidationError,
    RenderCancelledError,
    RenderOptions,
    RenderStage,
    VideoInfo,
    build_input_props,
    comment_from_payload,
    parse_comments,
    parse_template,
    read_utf8_text_strict,
    video_info_from_payload,
)
from service.cancellation import CancellationToken
from service.progress import ProgressEmitter
from service.timeline import build_timeline


def test_comment_payload_round_trip_keys() -> None:
    comment = comment_from_payload(
        {
            "id": 42,
            "author": "Ana",
            "content": "nice",
            "likes": 3.0,
            "authorThumbnail": "https://example.com/a.png",
            "translatedContent": "bien",
            "replyCount": 1,
        }
    )

    assert comment.id == "42"
    assert comment.likes == 3
    assert comment.author_thumbnail == "https://example.com/a.png"
    assert comment.translated_content == "bien"
    assert comment.reply_count == 1


def test_comment_payload_requires_content() -> None:
    with pytest.raises(CommentVideoValidationError) as excinfo:
        comment_from_payload({"id": "a", "author": "b"})
    assert excinfo.value.code == INVALID_COMMENT_CODE


def test_comment_payload_rejects_fractional_likes() -> None:
    with pytest.raises(CommentVideoValidationError):
        comment_from_payload({"id": "a", "content": "x", "likes": 1.5})


def test_parse_comments_accepts_wrapped_list() -> None:
    comments = parse_comments({"comments": [{"id": "1", "content": "hey"}]})

    assert [comment.id for comment in comments] == ["1"]
    with pytest.raises(CommentVideoValidationError):
        parse_comments({"items": []})


def test_video_info_requires_title() -> None:
    with pytest.raises(CommentVideoValidationError):
        video_info_from_payload({"viewCount": 3})


def test_input_props_have_exact_keys() -> None:
    comments = parse_comments([{"id": "1", "content": "hey", "likes": 2}])
    video_info = VideoInfo(title="Clip", view_count=10)
    timeline = build_timeline(comments, fps=30)

    props = build_input_props(video_info, comments, timeline)

    assert set(props) == {
        "videoInfo",
        "comments",
        "coverDurationInFrames",
        "commentDurationsInFrames",
        "fps",
    }
    assert props["videoInfo"] == {"title": "Clip", "viewCount": 10}
    assert props["comments"] == [
        {"id": "1", "author": "", "content": "hey", "likes": 2}
    ]
    assert props["commentDurationsInFrames"] == list(
        timeline.comment_durations_in_frames
    )


def test_parse_template() -> None:
    assert parse_template(" Comments-Vertical ") == CommentTemplate.VERTICAL
    with pytest.raises(CommentVideoValidationError) as excinfo:
        parse_template("square")
    assert excinfo.value.code == INVALID_TEMPLATE_CODE


def test_render_options_maps_template_to_composition() -> None:
    options = RenderOptions(
        source_video_path="in.mp4",
        output_path="out.mp4",
        video_info=VideoInfo(title="t"),
        comments=(),
        template=CommentTemplate.VERTICAL,
    )

    assert options.composition_id == "CommentsVideoVertical"


def test_read_utf8_text_strict_rejects_invalid_bytes(tmp_path) -> None:
    path = tmp_path / "bad.json"
    path.write_bytes(b"\xff\xfe")

    with pytest.raises(CommentVideoValidationError):
        read_utf8_text_strict(path)


def test_emitter_delivers_events_in_order() -> None:
    received = []
    emitter = ProgressEmitter(received.append)

    emitter.emit(RenderStage.BUNDLE, 0.0)
    emitter.emit(RenderStage.RENDER, 1.5, {"frames_encoded": 1})
    emitter.emit(RenderStage.COMPOSE, 0.5)
    emitter.emit(RenderStage.COMPLETE, 1.0)

    assert [event.stage for event in received] == [
        RenderStage.BUNDLE,
        RenderStage.RENDER,
        RenderStage.COMPOSE,
        RenderStage.COMPLETE,
    ]
    assert received[1].progress == 1.0
    assert emitter.terminal_event is received[-1]


def test_emitter_rejects_stage_regression() -> None:
    emitter = ProgressEmitter(None)
    emitter.emit(RenderStage.COMPOSE, 0.2)

    with pytest.raises(CommentVideoPipelineError) as excinfo:
        emitter.emit(RenderStage.RENDER, 0.3)
    assert excinfo.value.code == EVENT_ORDER_CODE


def test_emitter_rejects_events_after_terminal() -> None:
    emitter = ProgressEmitter(None)
    emitter.emit(RenderStage.RENDER, 0.3)
    emitter.emit(RenderStage.FAILED, None, {"message": "boom"})

    with pytest.raises(CommentVideoPipelineError):
        emitter.emit(RenderStage.FAILED, None, {"message": "again"})
    with pytest.raises(CommentVideoPipelineError):
        emitter.emit(RenderStage.COMPOSE, 0.1)


def test_cancellation_token_cancel() -> None:
    token = CancellationToken()
    token.raise_if_cancelled()

    token.cancel("stop")

    assert token.cancelled
    with pytest.raises(RenderCancelledError) as excinfo:
        token.raise_if_cancelled()
    assert excinfo.value.code == CANCELLED_CODE
    assert str(excinfo.value) == "stop"


def test_cancellation_token_deadline() -> None:
    token = CancellationToken(timeout_seconds=0.01)
    time.sleep(0.05)

    assert token.expired
    assert token.remaining_seconds() == 0.0
    with pytest.raises(RenderCancelledError) as excinfo:
        token.raise_if_cancelled()
    assert excinfo.value.code == DEADLINE_CODE


def test_cancellation_token_rejects_non_positive_timeout() -> None:
    with pytest.raises(ValueError):
        CancellationToken(timeout_seconds=0)
