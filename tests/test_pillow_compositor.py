"""Tests for the Pillow frame compositor."""

from __future__ import annotations

import json
import os
import shutil
import stat
import time
from dataclasses import replace
from pathlib import Path
from typing import Any

import pytest
from PIL import Image, ImageFont

from domain.comment_video import (
    BUNDLE_CODE,
    RENDER_CODE,
    CommentVideoPipelineError,
    VideoInfo,
    build_input_props,
    parse_comments,
)
from service import pillow_compositor
from service.cancellation import CancellationToken
from service.pillow_compositor import (
    FontBook,
    FramePainter,
    PillowCompositor,
    fade_alpha,
    format_count,
    scroll_fraction,
    select_fonts,
    wrap_text,
)
from service.settings import DEFAULT_ENTRY_POINT, PipelineConfig
from service.timeline import build_timeline

BACKGROUND = (11, 17, 32, 255)
PANEL = (17, 24, 39, 255)
CARD = (31, 41, 55, 255)
SLOT_COLOR = (0, 0, 0, 255)


def small_manifest() -> dict[str, Any]:
    return {
        "version": 1,
        "compositions": [
            {
                "id": "CommentsVideo",
                "width": 320,
                "height": 180,
                "fps": 10,
                "videoSlot": {"x": 176, "y": 8, "width": 136, "height": 76},
                "theme": {
                    "background": "#0b1120",
                    "panel": "#111827",
                    "card": "#1f2937",
                    "slot": "#000000",
                },
            }
        ],
    }


def write_manifest(path: Path, payload: Any) -> Path:
    path.write_text(json.dumps(payload), encoding="utf-8")
    return path


def bundle_small(tmp_path: Path, name: str = "bundle") -> Any:
    entry_point = write_manifest(tmp_path / "compositions.json", small_manifest())
    return PillowCompositor(PipelineConfig()).bundle(
        entry_point,
        tmp_path / name,
        tmp_path / "public",
        tmp_path / "cache",
        CancellationToken(),
    )


def sample_props(fps: int = 10) -> tuple[dict[str, Any], Any]:
    comments = parse_comments(
        [
            {"id": "1", "author": "Ana", "content": "hello there", "likes": 1200},
            {
                "id": "2",
                "author": "Bo",
                "content": "\n".join(["line"] * 20),
                "translatedContent": "translated",
            },
        ]
    )
    timeline = build_timeline(comments, fps=fps)
    props = build_input_props(
        VideoInfo(title="Clip", view_count=5, author="Chan"), comments, timeline
    )
    return props, timeline


def test_bundle_writes_manifest_and_reuses_cache(tmp_path: Path) -> None:
    first = bundle_small(tmp_path, "first")
    second = bundle_small(tmp_path, "second")

    assert not first.cache_hit
    assert second.cache_hit
    assert first.cache_key == second.cache_key
    assert (tmp_path / "first" / "bundle.json").is_file()
    written = json.loads((tmp_path / "second" / "bundle.json").read_text("utf-8"))
    assert written["cacheKey"] == first.cache_key
    assert [spec.composition.id for spec in second.compositions] == ["CommentsVideo"]


def test_bundle_falls_back_to_default_font(tmp_path: Path) -> None:
    fonts_dir = tmp_path / "public" / "fonts"
    fonts_dir.mkdir(parents=True)
    (fonts_dir / "broken.ttf").write_bytes(b"not a font")

    handle = bundle_small(tmp_path)

    assert handle.regular_font is None
    assert handle.bold_font is None


def test_bundle_rejects_missing_manifest(tmp_path: Path) -> None:
    with pytest.raises(CommentVideoPipelineError) as excinfo:
        PillowCompositor(PipelineConfig()).bundle(
            tmp_path / "missing.json",
            tmp_path / "bundle",
            tmp_path,
            tmp_path / "cache",
            CancellationToken(),
        )
    assert excinfo.value.code == BUNDLE_CODE


@pytest.mark.parametrize(
    "mutate",
    [
        lambda payload: payload.update({"compositions": []}),
        lambda payload: payload["compositions"][0].update({"width": 321}),
        lambda payload: payload["compositions"][0]["videoSlot"].update({"x": 300}),
        lambda payload: payload["compositions"][0]["theme"].update({"card": "blue"}),
        lambda payload: payload.update({"version": 2}),
    ],
)
def test_bundle_rejects_invalid_manifest(tmp_path: Path, mutate: Any) -> None:
    payload = small_manifest()
    mutate(payload)
    entry_point = write_manifest(tmp_path / "compositions.json", payload)

    with pytest.raises(CommentVideoPipelineError) as excinfo:
        PillowCompositor(PipelineConfig()).bundle(
            entry_point,
            tmp_path / "bundle",
            tmp_path,
            tmp_path / "cache",
            CancellationToken(),
        )
    assert excinfo.value.code == BUNDLE_CODE


def test_bundle_rejects_invalid_json(tmp_path: Path) -> None:
    entry_point = tmp_path / "compositions.json"
    entry_point.write_text("{not json", encoding="utf-8")

    with pytest.raises(CommentVideoPipelineError) as excinfo:
        PillowCompositor(PipelineConfig()).bundle(
            entry_point,
            tmp_path / "bundle",
            tmp_path,
            tmp_path / "cache",
            CancellationToken(),
        )
    assert excinfo.value.code == BUNDLE_CODE


def test_default_manifest_lists_both_templates(tmp_path: Path) -> None:
    handle = PillowCompositor(PipelineConfig()).bundle(
        DEFAULT_ENTRY_POINT,
        tmp_path / "bundle",
        tmp_path,
        tmp_path / "cache",
        CancellationToken(),
    )
    compositions = {spec.composition.id: spec.composition for spec in handle.compositions}

    assert set(compositions) == {"CommentsVideo", "CommentsVideoVertical"}
    slot = compositions["CommentsVideo"].video_slot
    assert (slot.x, slot.y, slot.width, slot.height) == (912, 48, 720, 405)
    vertical_slot = compositions["CommentsVideoVertical"].video_slot
    assert (vertical_slot.width, vertical_slot.height) == (540, 960)


def test_list_compositions_uses_props_duration(tmp_path: Path) -> None:
    handle = bundle_small(tmp_path)
    props, timeline = sample_props(fps=12)

    compositions = PillowCompositor(PipelineConfig()).list_compositions(handle, props)

    assert compositions[0].duration_in_frames == timeline.total_duration_in_frames
    assert compositions[0].fps == 12


def test_painter_draws_cover_then_cards(tmp_path: Path) -> None:
    handle = bundle_small(tmp_path)
    props, timeline = sample_props()
    composition = PillowCompositor(PipelineConfig()).list_compositions(handle, props)[0]
    painter = FramePainter(
        handle.compositions[0], composition, FontBook(None, None), props
    )
    slot = composition.video_slot
    region = painter.card_region
    probe_point = (region.x + 2, region.y + region.height // 2)
    first_start = timeline.cover_duration_in_frames
    first_middle = first_start + timeline.comment_durations_in_frames[0] // 2

    cover = painter.paint(0)
    first_frame = painter.paint(first_start)
    middle_frame = painter.paint(first_middle)

    assert cover.size == (320, 180)
    assert cover.getpixel((1, 1)) == BACKGROUND
    assert middle_frame.getpixel((slot.x + 10, slot.y + 10)) == SLOT_COLOR
    assert middle_frame.getpixel(probe_point) == CARD
    assert first_frame.getpixel(probe_point) == PANEL


def test_painter_rejects_mismatched_durations(tmp_path: Path) -> None:
    handle = bundle_small(tmp_path)
    props, _ = sample_props()
    props["commentDurationsInFrames"] = [30]
    composition = PillowCompositor(PipelineConfig()).list_compositions(handle, props)[0]

    with pytest.raises(CommentVideoPipelineError) as excinfo:
        FramePainter(handle.compositions[0], composition, FontBook(None, None), props)
    assert excinfo.value.code == RENDER_CODE


def test_wrap_text_respects_width() -> None:
    font = ImageFont.load_default(size=20)
    text_value = "the quick brown fox jumps over the lazy dog " * 3

    lines = wrap_text(text_value, font, 120)

    assert len(lines) > 1
    assert all(font.getlength(line) <= 120 for line in lines)
    assert " ".join(lines).split() == text_value.split()


def test_wrap_text_breaks_unspaced_text() -> None:
    font = ImageFont.load_default(size=20)

    lines = wrap_text("x" * 60, font, 80)

    assert len(lines) > 1
    assert "".join(lines) == "x" * 60


def test_select_fonts_prefers_named_faces() -> None:
    assert select_fonts(["f/Inter-Bold.ttf", "f/Inter-Regular.ttf"]) == (
        "f/Inter-Regular.ttf",
        "f/Inter-Bold.ttf",
    )
    assert select_fonts(["f/Only-Bold.ttf"]) == ("f/Only-Bold.ttf", "f/Only-Bold.ttf")
    assert select_fonts([]) == (None, None)


def test_format_count() -> None:
    assert format_count(999) == "999"
    assert format_count(1234) == "1.2K"
    assert format_count(1_000_000) == "1M"
    assert format_count(1_500_000) == "1.5M"


def test_scroll_and_fade_timing() -> None:
    assert scroll_fraction(0.5, 6.0) == 0.0
    assert scroll_fraction(3.0, 6.0) == pytest.approx(0.5)
    assert scroll_fraction(5.5, 6.0) == 1.0
    assert scroll_fraction(1.0, 1.2) == 0.0
    assert fade_alpha(0.0, 4.0) == 0.0
    assert fade_alpha(2.0, 4.0) == 1.0
    assert fade_alpha(4.0, 4.0) == 0.0


@pytest.mark.skipif(shutil.which("ffmpeg") is None, reason="ffmpeg not on PATH")
def test_render_composition_encodes_every_frame(tmp_path: Path) -> None:
    compositor = PillowCompositor(PipelineConfig(x264_preset="ultrafast"))
    handle = bundle_small(tmp_path)
    props, timeline = sample_props()
    composition = compositor.list_compositions(handle, props)[0]
    output_path = tmp_path / "overlay.mp4"
    calls = []

    compositor.render_composition(
        composition,
        handle,
        output_path,
        props,
        lambda progress, rendered, encoded: calls.append((progress, rendered, encoded)),
        CancellationToken(),
    )

    assert output_path.is_file()
    assert output_path.stat().st_size > 0
    assert len(calls) == timeline.total_duration_in_frames
    assert calls[-1] == (1.0, len(calls), len(calls))


@pytest.mark.skipif(shutil.which("ffmpeg") is None, reason="ffmpeg not on PATH")
def test_render_composition_stops_when_cancelled(tmp_path: Path) -> None:
    compositor = PillowCompositor(PipelineConfig(x264_preset="ultrafast"))
    handle = bundle_small(tmp_path)
    props, _ = sample_props()
    composition = compositor.list_compositions(handle, props)[0]
    token = CancellationToken()
    calls = []

    def cancel_after_five(progress: float, rendered: int, encoded: int) -> None:
        calls.append(rendered)
        if rendered == 5:
            token.cancel()

    with pytest.raises(CommentVideoPipelineError):
        compositor.render_composition(
            composition,
            handle,
            tmp_path / "overlay.mp4",
            props,
            cancel_after_five,
            token,
        )
    assert calls == [1, 2, 3, 4, 5]


class TinyPainter:
    """Painter stand-in whose frames fit in the encoder pipe's write buffer."""

    def __init__(self, *args: Any) -> None:
        pass

    def paint(self, frame_index: int) -> Image.Image:
        return Image.new("RGBA", (8, 8), (0, 0, 0, 255))


@pytest.mark.skipif(os.name != "posix", reason="stub executables need sh")
def test_encoder_exit_before_input_close_is_coded(tmp_path: Path, monkeypatch) -> None:
    ffmpeg_path = tmp_path / "ffmpeg"
    ffmpeg_path.write_text(
        "#!/bin/sh\nexec 0<&-\necho 'encoder crashed' >&2\nexec sleep 5\n",
        encoding="utf-8",
    )
    ffmpeg_path.chmod(ffmpeg_path.stat().st_mode | stat.S_IXUSR)
    monkeypatch.setattr(pillow_compositor, "FramePainter", TinyPainter)
    compositor = PillowCompositor(PipelineConfig(ffmpeg_path=str(ffmpeg_path)))
    handle = bundle_small(tmp_path)
    props, _ = sample_props()
    composition = replace(
        compositor.list_compositions(handle, props)[0], duration_in_frames=3
    )

    def wait_for_encoder_exit(progress: float, rendered: int, encoded: int) -> None:
        if rendered == 1:
            time.sleep(0.5)

    with pytest.raises(CommentVideoPipelineError) as excinfo:
        compositor.render_composition(
            composition,
            handle,
            tmp_path / "overlay.mp4",
            props,
            wait_for_encoder_exit,
            CancellationToken(),
        )

    assert excinfo.value.code == RENDER_CODE
    assert "closed its input after 3 frames" in str(excinfo.value)
    assert "encoder crashed" in str(excinfo.value)
