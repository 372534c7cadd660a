"""Pillow frame compositor: draws the comments overlay and encodes it with ffmpeg."""

from __future__ import annotations

import base64
import binascii
import bisect
import hashlib
import io
import json
import logging
import os
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Sequence, Tuple

from PIL import Image, ImageDraw, ImageFont, ImageOps

from domain.comment_video import (
    BUNDLE_CODE,
    INVALID_CONFIG_CODE,
    RENDER_CODE,
    Comment,
    CommentVideoPipelineError,
    CommentVideoValidationError,
    Composition,
    SlotLayout,
    VideoInfo,
    is_remote_url,
    parse_comments,
    video_info_from_payload,
)
from service.cancellation import CancellationToken
from service.compositor import RenderProgressCallback
from service.ffmpeg import StderrPump, format_command, resolve_executable, stop_process
from service.settings import PipelineConfig
from service.timeline import (
    APPEAR_DISAPPEAR_BUFFER_SECONDS,
    CJK_FONT_SIZE,
    CJK_LINE_HEIGHT,
    PRIMARY_FONT_SIZE,
    PRIMARY_LINE_HEIGHT,
    SECTION_SPACING_PX,
    TRANSLATION_FONT_SIZE,
    TRANSLATION_LINE_HEIGHT,
    contains_cjk,
    has_distinct_translation,
)

LOGGER = logging.getLogger("comments_video.compositor")

MANIFEST_VERSION = 1
FONTS_DIR_NAME = "fonts"
FONT_SAMPLE_SIZE = 32
BUNDLE_FILE_NAME = "bundle.json"
BUNDLE_CACHE_DIR_NAME = "bundles"
DEFAULT_DURATION_IN_FRAMES = 150
REFERENCE_WIDTH = 1920
MIN_FONT_SIZE = 8
FADE_SECONDS = 0.3
H264_CRF = "20"

DEFAULT_THEME = {
    "background": "#0b1120",
    "panel": "#111827",
    "card": "#1f2937",
    "text": "#f9fafb",
    "muted": "#9ca3af",
    "accent": "#f59e0b",
    "slot": "#000000",
}

RGBA = Tuple[int, int, int, int]


@dataclass(frozen=True)
class Theme:
    background: RGBA
    panel: RGBA
    card: RGBA
    text: RGBA
    muted: RGBA
    accent: RGBA
    slot: RGBA


@dataclass(frozen=True)
class CompositionSpec:
    """A manifest entry: the composition plus how it is painted."""

    composition: Composition
    theme: Theme


@dataclass(frozen=True)
class BundleHandle:
    """Validated manifest and resolved fonts produced by ``bundle``."""

    bundle_dir: Path
    cache_key: str
    compositions: Tuple[CompositionSpec, ...]
    regular_font: str | None
    bold_font: str | None
    cache_hit: bool


@dataclass(frozen=True)
class Region:
    x: int
    y: int
    width: int
    height: int


def parse_hex_color_to_rgba(color_value: str) -> RGBA:
    """Parse a color token into an RGBA tuple."""
    normalized = color_value.strip()
    if normalized.lower() == "transparent":
        return (0, 0, 0, 0)

    match_value = re.fullmatch(r"#([0-9a-fA-F]{6})", normalized)
    if not match_value:
        raise CommentVideoValidationError(
            INVALID_CONFIG_CODE, f"invalid color value: {color_value!r}"
        )

    rgb_hex = match_value.group(1)
    return (
        int(rgb_hex[0:2], 16),
        int(rgb_hex[2:4], 16),
        int(rgb_hex[4:6], 16),
        255,
    )


def _require_int(payload: Mapping[str, Any], key: str, label: str) -> int:
    value = payload.get(key)
    if isinstance(value, bool) or not isinstance(value, int):
        raise CommentVideoValidationError(
            INVALID_CONFIG_CODE, f"{label}.{key} must be an integer"
        )
    return value


def parse_theme(payload: Any, label: str) -> Theme:
    if payload is None:
        payload = {}
    if not isinstance(payload, Mapping):
        raise CommentVideoValidationError(
            INVALID_CONFIG_CODE, f"{label}.theme must be an object"
        )
    colors = {}
    for key, fallback in DEFAULT_THEME.items():
        raw_value = payload.get(key, fallback)
        if not isinstance(raw_value, str):
            raise CommentVideoValidationError(
                INVALID_CONFIG_CODE, f"{label}.theme.{key} must be a color string"
            )
        colors[key] = parse_hex_color_to_rgba(raw_value)
    return Theme(**colors)


def parse_manifest(payload: Any) -> Tuple[CompositionSpec, ...]:
    """Validate a composition manifest."""
    if not isinstance(payload, Mapping):
        raise CommentVideoValidationError(
            INVALID_CONFIG_CODE, "composition manifest must be an object"
        )
    version = payload.get("version", MANIFEST_VERSION)
    if version != MANIFEST_VERSION:
        raise CommentVideoValidationError(
            INVALID_CONFIG_CODE, f"unsupported manifest version: {version!r}"
        )
    entries = payload.get("compositions")
    if not isinstance(entries, list) or not entries:
        raise CommentVideoValidationError(
            INVALID_CONFIG_CODE, "manifest must list at least one composition"
        )

    specs: list[CompositionSpec] = []
    seen_ids: set[str] = set()
    for index, entry in enumerate(entries):
        label = f"compositions[{index}]"
        if not isinstance(entry, Mapping):
            raise CommentVideoValidationError(
                INVALID_CONFIG_CODE, f"{label} must be an object"
            )
        composition_id = entry.get("id")
        if not isinstance(composition_id, str):
            raise CommentVideoValidationError(
                INVALID_CONFIG_CODE, f"{label}.id must be a string"
            )
        if composition_id in seen_ids:
            raise CommentVideoValidationError(
                INVALID_CONFIG_CODE, f"duplicate composition id: {composition_id!r}"
            )
        seen_ids.add(composition_id)

        slot_payload = entry.get("videoSlot")
        if not isinstance(slot_payload, Mapping):
            raise CommentVideoValidationError(
                INVALID_CONFIG_CODE, f"{label}.videoSlot must be an object"
            )
        slot_label = f"{label}.videoSlot"
        video_slot = SlotLayout(
            x=_require_int(slot_payload, "x", slot_label),
            y=_require_int(slot_payload, "y", slot_label),
            width=_require_int(slot_payload, "width", slot_label),
            height=_require_int(slot_payload, "height", slot_label),
        )
        duration = (
            _require_int(entry, "defaultDurationInFrames", label)
            if "defaultDurationInFrames" in entry
            else DEFAULT_DURATION_IN_FRAMES
        )
        composition = Composition(
            id=composition_id,
            width=_require_int(entry, "width", label),
            height=_require_int(entry, "height", label),
            fps=_require_int(entry, "fps", label),
            duration_in_frames=duration,
            video_slot=video_slot,
        )
        specs.append(
            CompositionSpec(
                composition=composition, theme=parse_theme(entry.get("theme"), label)
            )
        )
    return tuple(specs)


def list_font_files(fonts_dir: Path) -> list[str]:
    """List font files from the fonts directory, empty when it is missing."""
    if not fonts_dir.is_dir():
        return []
    font_files: list[str] = []
    for entry_name in sorted(os.listdir(fonts_dir)):
        lower_name = entry_name.lower()
        if lower_name.endswith(".ttf") or lower_name.endswith(".otf"):
            font_files.append(str(fonts_dir / entry_name))
    return font_files


def filter_loadable_fonts(font_files: Sequence[str], sample_size: int) -> list[str]:
    """Filter font files to those loadable at the sample size."""
    loadable_fonts: list[str] = []
    for font_file_path in font_files:
        try:
            ImageFont.truetype(
                font_file_path, size=sample_size, layout_engine=ImageFont.Layout.BASIC
            )
        except OSError as exc:
            LOGGER.warning(
                "comments_video.bundle.font_skipped: %s (%s)",
                font_file_path,
                str(exc).strip(),
            )
            continue
        loadable_fonts.append(font_file_path)
    return loadable_fonts


def select_fonts(font_files: Sequence[str]) -> Tuple[str | None, str | None]:
    """Pick (regular, bold) faces by file name, each falling back to the other."""
    bold = None
    regular = None
    for font_file_path in font_files:
        if "bold" in Path(font_file_path).name.lower():
            bold = bold or font_file_path
        else:
            regular = regular or font_file_path
    return regular or bold, bold or regular


def compute_cache_key(manifest_bytes: bytes, font_files: Sequence[str]) -> str:
    """Hash the manifest and the font files it will be drawn with."""
    digest = hashlib.sha256(manifest_bytes)
    for font_file_path in font_files:
        stat_result = os.stat(font_file_path)
        fingerprint = (
            f"{Path(font_file_path).name}:{stat_result.st_size}:"
            f"{stat_result.st_mtime_ns}"
        )
        digest.update(fingerprint.encode("utf-8"))
    return digest.hexdigest()[:32]


def read_bundle_cache(cache_path: Path) -> Mapping[str, Any] | None:
    if not cache_path.is_file():
        return None
    try:
        with open(cache_path, "r", encoding="utf-8") as file_handle:
            record = json.load(file_handle)
    except (OSError, ValueError) as exc:
        LOGGER.warning(
            "comments_video.bundle.cache_unreadable: %s (%s)", cache_path, exc
        )
        return None
    fonts = record.get("fonts", {}) if isinstance(record, Mapping) else {}
    for font_path in (fonts.get("regular"), fonts.get("bold")):
        if font_path is not None and not os.path.isfile(font_path):
            return None
    return record


def write_json(path: Path, payload: Mapping[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as file_handle:
        json.dump(payload, file_handle, indent=2, ensure_ascii=False)


def format_count(value: int) -> str:
    """Format a count compactly, e.g. 1234 -> 1.2K."""
    for threshold, suffix in ((1_000_000_000, "B"), (1_000_000, "M"), (1_000, "K")):
        if value >= threshold:
            text = f"{value / threshold:.1f}".rstrip("0").rstrip(".")
            return f"{text}{suffix}"
    return str(value)


def wrap_text(
    text_value: str, font: ImageFont.FreeTypeFont, max_width: int
) -> list[str]:
    """Greedy line wrapping that breaks at spaces, or anywhere for unspaced text."""
    lines: list[str] = []
    for paragraph in text_value.splitlines() or [""]:
        current = ""
        for character in paragraph:
            candidate = current + character
            if current and font.getlength(candidate) > max_width:
                break_at = current.rfind(" ")
                if break_at > 0 and not character.isspace():
                    lines.append(current[:break_at].rstrip())
                    current = current[break_at + 1 :] + character
                else:
                    lines.append(current.rstrip())
                    current = character.lstrip()
            else:
                current = candidate
        lines.append(current.rstrip())
    return lines


def load_image(reference: str | None) -> Image.Image | None:
    """Load a local path or data URL as RGBA; missing or broken images yield None."""
    if not reference or is_remote_url(reference):
        return None
    try:
        if reference.startswith("data:"):
            _, _, encoded = reference.partition(",")
            image = Image.open(io.BytesIO(base64.b64decode(encoded)))
        else:
            image = Image.open(reference)
        return image.convert("RGBA")
    except (OSError, ValueError, binascii.Error) as exc:
        LOGGER.warning("comments_video.render.image_skipped: %s", exc)
        return None


def circular_image(image: Image.Image, size: int) -> Image.Image:
    fitted = ImageOps.fit(image, (size, size))
    mask = Image.new("L", (size, size), 0)
    ImageDraw.Draw(mask).ellipse((0, 0, size - 1, size - 1), fill=255)
    fitted.putalpha(mask)
    return fitted


def compute_panel_region(composition: Composition, margin: int) -> Region:
    """Place the info panel in the wider free area beside the video slot."""
    slot = composition.video_slot
    left_space = slot.x - 2 * margin
    right_space = composition.width - (slot.x + slot.width) - 2 * margin
    if max(left_space, right_space) >= composition.width // 5:
        if left_space >= right_space:
            return Region(margin, margin, left_space, composition.height - 2 * margin)
        return Region(
            slot.x + slot.width + margin,
            margin,
            right_space,
            composition.height - 2 * margin,
        )
    top = slot.y + slot.height + margin
    return Region(
        margin,
        top,
        composition.width - 2 * margin,
        max(1, composition.height - top - margin),
    )


def scroll_fraction(elapsed_seconds: float, duration_seconds: float) -> float:
    """Fraction of overflow scrolled; text holds still while appearing and leaving."""
    hold = APPEAR_DISAPPEAR_BUFFER_SECONDS / 2
    window = duration_seconds - 2 * hold
    if window <= 0:
        return 0.0
    return max(0.0, min(1.0, (elapsed_seconds - hold) / window))


def fade_alpha(elapsed_seconds: float, duration_seconds: float) -> float:
    fade = min(FADE_SECONDS, duration_seconds / 2)
    if fade <= 0:
        return 1.0
    remaining_seconds = duration_seconds - elapsed_seconds
    return max(0.0, min(1.0, elapsed_seconds / fade, remaining_seconds / fade))


class FontBook:
    """Loads fonts by size, caching by (path, size)."""

    def __init__(self, regular_font: str | None, bold_font: str | None) -> None:
        self.regular_font = regular_font
        self.bold_font = bold_font
        self._cache: dict[Tuple[str | None, int], ImageFont.FreeTypeFont] = {}

    def get(self, size: int, bold: bool = False) -> ImageFont.FreeTypeFont:
        font_path = self.bold_font if bold else self.regular_font
        size = max(MIN_FONT_SIZE, size)
        cache_key = (font_path, size)
        cached_font = self._cache.get(cache_key)
        if cached_font is not None:
            return cached_font
        if font_path is None:
            font = ImageFont.load_default(size=size)
        else:
            try:
                font = ImageFont.truetype(
                    font_path, size=size, layout_engine=ImageFont.Layout.BASIC
                )
            except OSError as exc:
                raise CommentVideoPipelineError(
                    RENDER_CODE, f"failed to load font {font_path} at size {size}"
                ) from exc
        self._cache[cache_key] = font
        return font


def draw_lines(
    draw_context: ImageDraw.ImageDraw,
    lines: Sequence[str],
    font: ImageFont.FreeTypeFont,
    fill: RGBA,
    x: int,
    y: int,
    line_height: int,
) -> int:
    """Draw lines top-down and return the y just below the last one."""
    for line in lines:
        draw_context.text((x, y), line, font=font, fill=fill, anchor="la")
        y += line_height
    return y


class FramePainter:
    """Paints overlay frames for one composition and one set of input props."""

    def __init__(
        self,
        spec: CompositionSpec,
        composition: Composition,
        fonts: FontBook,
        input_props: Mapping[str, Any],
    ) -> None:
        self.composition = composition
        self.theme = spec.theme
        self.fonts = fonts
        self.scale = composition.width / REFERENCE_WIDTH
        self.video_info: VideoInfo = video_info_from_payload(
            input_props.get("videoInfo") or {}
        )
        self.comments: Tuple[Comment, ...] = parse_comments(
            list(input_props.get("comments") or [])
        )
        self.fps = composition.fps
        self.cover_frames = int(input_props.get("coverDurationInFrames", 0))
        self.durations = [
            int(value) for value in input_props.get("commentDurationsInFrames", [])
        ]
        if len(self.durations) != len(self.comments):
            raise CommentVideoPipelineError(
                RENDER_CODE, "comment durations do not match the comment count"
            )
        self.starts: list[int] = []
        cursor = self.cover_frames
        for frames in self.durations:
            self.starts.append(cursor)
            cursor += frames

        self.margin = self.px(48)
        self.panel = compute_panel_region(composition, self.margin)
        self.padding = self.px(24)
        self.cover = self._paint_cover()
        self.base, header_bottom = self._paint_base()
        card_top = header_bottom + self.px(24)
        self.card_region = Region(
            self.panel.x + self.padding,
            card_top,
            max(1, self.panel.width - 2 * self.padding),
            max(1, self.panel.y + self.panel.height - self.padding - card_top),
        )
        self._sprite_index: int | None = None
        self._sprite: Image.Image | None = None

    def px(self, value: float) -> int:
        return max(1, int(round(value * self.scale)))

    def _blank(self, color: RGBA) -> Image.Image:
        return Image.new(
            "RGBA", (self.composition.width, self.composition.height), color=color
        )

    def _series_label(self) -> str | None:
        if not self.video_info.series:
            return None
        if self.video_info.series_episode is not None:
            return f"{self.video_info.series} EP {self.video_info.series_episode}"
        return self.video_info.series

    def _meta_label(self) -> str:
        parts = []
        if self.video_info.author:
            parts.append(self.video_info.author)
        parts.append(f"{format_count(self.video_info.view_count)} views")
        return " | ".join(parts)

    def _paint_cover(self) -> Image.Image:
        image = self._blank(self.theme.background)
        draw_context = ImageDraw.Draw(image)
        max_width = self.composition.width - 2 * self.margin
        blocks: list[Tuple[list[str], ImageFont.FreeTypeFont, RGBA, int]] = []

        series_label = self._series_label()
        if series_label:
            font = self.fonts.get(self.px(32), bold=True)
            blocks.append(([series_label], font, self.theme.accent, self.px(48)))
        title_font = self.fonts.get(self.px(76), bold=True)
        blocks.append(
            (
                wrap_text(self.video_info.title, title_font, max_width)[:3],
                title_font,
                self.theme.text,
                self.px(100),
            )
        )
        if (
            self.video_info.translated_title
            and self.video_info.translated_title != self.video_info.title
        ):
            font = self.fonts.get(self.px(44))
            blocks.append(
                (
                    wrap_text(self.video_info.translated_title, font, max_width)[:2],
                    font,
                    self.theme.muted,
                    self.px(62),
                )
            )
        meta_font = self.fonts.get(self.px(32))
        blocks.append(([self._meta_label()], meta_font, self.theme.muted, self.px(48)))

        thumbnail = load_image(self.video_info.thumbnail)
        if thumbnail is not None:
            thumbnail.thumbnail((self.px(640), self.px(360)))
        gap = self.px(32)
        total_height = sum(
            len(lines) * line_height for lines, _, _, line_height in blocks
        )
        if thumbnail is not None:
            total_height += thumbnail.height + gap
        y = max(self.margin, (self.composition.height - total_height) // 2)
        if thumbnail is not None:
            image.alpha_composite(
                thumbnail, ((self.composition.width - thumbnail.width) // 2, y)
            )
            y += thumbnail.height + gap
        for lines, font, fill, line_height in blocks:
            for line in lines:
                line_width = int(font.getlength(line))
                x = max(self.margin, (self.composition.width - line_width) // 2)
                draw_context.text((x, y), line, font=font, fill=fill, anchor="la")
                y += line_height
        return image

    def _paint_base(self) -> Tuple[Image.Image, int]:
        image = self._blank(self.theme.background)
        draw_context = ImageDraw.Draw(image)
        panel = self.panel
        draw_context.rounded_rectangle(
            (panel.x, panel.y, panel.x + panel.width - 1, panel.y + panel.height - 1),
            radius=self.px(24),
            fill=self.theme.panel,
        )
        slot = self.composition.video_slot
        draw_context.rectangle(
            (slot.x, slot.y, slot.x + slot.width - 1, slot.y + slot.height - 1),
            fill=self.theme.slot,
        )

        x = panel.x + self.padding
        y = panel.y + self.padding
        max_width = max(1, panel.width - 2 * self.padding)
        series_label = self._series_label()
        if series_label:
            font = self.fonts.get(self.px(24), bold=True)
            y = draw_lines(
                draw_context, [series_label], font, self.theme.accent, x, y, self.px(36)
            )
        title_font = self.fonts.get(self.px(40), bold=True)
        y = draw_lines(
            draw_context,
            wrap_text(self.video_info.title, title_font, max_width)[:2],
            title_font,
            self.theme.text,
            x,
            y,
            self.px(54),
        )
        if (
            self.video_info.translated_title
            and self.video_info.translated_title != self.video_info.title
        ):
            font = self.fonts.get(self.px(30))
            y = draw_lines(
                draw_context,
                wrap_text(self.video_info.translated_title, font, max_width)[:2],
                font,
                self.theme.muted,
                x,
                y,
                self.px(42),
            )
        meta_font = self.fonts.get(self.px(26))
        y = draw_lines(
            draw_context,
            [self._meta_label()],
            meta_font,
            self.theme.muted,
            x,
            y,
            self.px(38),
        )
        return image, y

    def _comment_sprite(self, index: int) -> Image.Image:
        if self._sprite_index == index and self._sprite is not None:
            return self._sprite

        comment = self.comments[index]
        width = max(1, self.card_region.width - 2 * self.padding)
        avatar_size = self.px(56)
        author_font = self.fonts.get(self.px(28), bold=True)
        likes_font = self.fonts.get(self.px(22))
        if contains_cjk(comment.content):
            body_font = self.fonts.get(self.px(CJK_FONT_SIZE))
            body_line_height = self.px(CJK_FONT_SIZE * CJK_LINE_HEIGHT)
        else:
            body_font = self.fonts.get(self.px(PRIMARY_FONT_SIZE))
            body_line_height = self.px(PRIMARY_FONT_SIZE * PRIMARY_LINE_HEIGHT)
        body_lines: list[str] = []
        if comment.content:
            body_lines = wrap_text(comment.content, body_font, width)

        translation_lines: list[str] = []
        translation_font = self.fonts.get(self.px(TRANSLATION_FONT_SIZE))
        translation_line_height = self.px(
            TRANSLATION_FONT_SIZE * TRANSLATION_LINE_HEIGHT
        )
        if has_distinct_translation(comment):
            translation_lines = wrap_text(
                comment.translated_content or "", translation_font, width
            )

        header_height = avatar_size + self.px(20)
        height = header_height + len(body_lines) * body_line_height
        if translation_lines:
            height += self.px(SECTION_SPACING_PX)
            height += len(translation_lines) * translation_line_height
        sprite = Image.new("RGBA", (width, max(1, height)), (0, 0, 0, 0))
        draw_context = ImageDraw.Draw(sprite)

        avatar = load_image(comment.author_thumbnail)
        if avatar is not None:
            sprite.alpha_composite(circular_image(avatar, avatar_size), (0, 0))
        else:
            draw_context.ellipse(
                (0, 0, avatar_size - 1, avatar_size - 1), fill=self.theme.accent
            )
            initial = (comment.author.strip()[:1] or "?").upper()
            initial_font = self.fonts.get(self.px(28), bold=True)
            draw_context.text(
                (avatar_size // 2, avatar_size // 2),
                initial,
                font=initial_font,
                fill=self.theme.background,
                anchor="mm",
            )
        text_x = avatar_size + self.px(16)
        draw_context.text(
            (text_x, 0),
            comment.author or "Anonymous",
            font=author_font,
            fill=self.theme.text,
            anchor="la",
        )
        likes_label = f"{format_count(comment.likes)} likes"
        if comment.reply_count:
            likes_label += f" | {format_count(comment.reply_count)} replies"
        draw_context.text(
            (text_x, self.px(34)),
            likes_label,
            font=likes_font,
            fill=self.theme.muted,
            anchor="la",
        )

        y = draw_lines(
            draw_context,
            body_lines,
            body_font,
            self.theme.text,
            0,
            header_height,
            body_line_height,
        )
        if translation_lines:
            draw_lines(
                draw_context,
                translation_lines,
                translation_font,
                self.theme.muted,
                0,
                y + self.px(SECTION_SPACING_PX),
                translation_line_height,
            )

        self._sprite_index = index
        self._sprite = sprite
        return sprite

    def _paint_card(self, index: int, local_frame: int) -> Image.Image:
        region = self.card_region
        card = Image.new("RGBA", (region.width, region.height), (0, 0, 0, 0))
        draw_context = ImageDraw.Draw(card)
        draw_context.rounded_rectangle(
            (0, 0, region.width - 1, region.height - 1),
            radius=self.px(20),
            fill=self.theme.card,
        )

        counter_font = self.fonts.get(self.px(22))
        footer_height = self.px(36)
        viewport_height = max(1, region.height - 2 * self.padding - footer_height)
        sprite = self._comment_sprite(index)
        duration_seconds = self.durations[index] / self.fps
        elapsed_seconds = local_frame / self.fps
        overflow = max(0, sprite.height - viewport_height)
        scrolled = scroll_fraction(elapsed_seconds, duration_seconds)
        offset = int(round(overflow * scrolled))
        visible = sprite.crop(
            (0, offset, sprite.width, offset + min(viewport_height, sprite.height))
        )
        card.alpha_composite(visible, (self.padding, self.padding))
        draw_context.text(
            (region.width - self.padding, region.height - self.padding),
            f"{index + 1} / {len(self.comments)}",
            font=counter_font,
            fill=self.theme.muted,
            anchor="rd",
        )

        alpha = fade_alpha(elapsed_seconds, duration_seconds)
        if alpha < 1.0:
            faded = card.getchannel("A").point(lambda value: int(value * alpha))
            card.putalpha(faded)
        return card

    def paint(self, frame_index: int) -> Image.Image:
        """Return the frame image for ``frame_index``."""
        if frame_index < self.cover_frames:
            return self.cover
        frame_image = self.base.copy()
        index = bisect.bisect_right(self.starts, frame_index) - 1
        if 0 <= index < len(self.comments) and self.durations[index] > 0:
            local_frame = frame_index - self.starts[index]
            if local_frame < self.durations[index]:
                card = self._paint_card(index, local_frame)
                frame_image.alpha_composite(
                    card, (self.card_region.x, self.card_region.y)
                )
        return frame_image


def build_encoder_args(
    ffmpeg_path: str, composition: Composition, output_path: Path, preset: str
) -> list[str]:
    """Build the ffmpeg command for a raw RGBA frame stream on stdin."""
    return [
        ffmpeg_path,
        "-y",
        "-hide_banner",
        "-loglevel",
        "error",
        "-f",
        "rawvideo",
        "-pix_fmt",
        "rgba",
        "-s",
        f"{composition.width}x{composition.height}",
        "-r",
        str(composition.fps),
        "-i",
        "-",
        "-an",
        "-c:v",
        "libx264",
        "-crf",
        H264_CRF,
        "-preset",
        preset,
        "-pix_fmt",
        "yuv420p",
        "-movflags",
        "+faststart",
        str(output_path),
    ]


class PillowCompositor:
    """Default FrameCompositor backed by Pillow and an ffmpeg encoder pipe."""

    def __init__(self, config: PipelineConfig) -> None:
        self.config = config

    def bundle(
        self,
        entry_point: Path,
        out_dir: Path,
        public_dir: Path,
        cache_dir: Path,
        cancel_token: CancellationToken,
    ) -> BundleHandle:
        """Validate the manifest, resolve fonts and write ``bundle.json``."""
        cancel_token.raise_if_cancelled()
        try:
            with open(entry_point, "rb") as file_handle:
                manifest_bytes = file_handle.read()
        except OSError as exc:
            raise CommentVideoPipelineError(
                BUNDLE_CODE, f"composition manifest unreadable: {entry_point} ({exc})"
            ) from exc
        try:
            manifest = json.loads(manifest_bytes.decode("utf-8"))
            compositions = parse_manifest(manifest)
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise CommentVideoPipelineError(
                BUNDLE_CODE, f"composition manifest is not valid JSON: {exc}"
            ) from exc
        except CommentVideoValidationError as exc:
            raise CommentVideoPipelineError(
                BUNDLE_CODE, f"composition manifest is invalid: {exc}"
            ) from exc

        font_files = list_font_files(public_dir / FONTS_DIR_NAME)
        cache_key = compute_cache_key(manifest_bytes, font_files)
        cache_path = cache_dir / BUNDLE_CACHE_DIR_NAME / f"{cache_key}.json"
        record = read_bundle_cache(cache_path)
        cache_hit = record is not None
        if record is None:
            regular_font, bold_font = select_fonts(
                filter_loadable_fonts(font_files, FONT_SAMPLE_SIZE)
            )
            record = {
                "cacheKey": cache_key,
                "entryPoint": str(entry_point),
                "fonts": {"regular": regular_font, "bold": bold_font},
                "compositions": manifest["compositions"],
            }
            try:
                write_json(cache_path, record)
            except OSError as exc:
                LOGGER.warning("comments_video.bundle.cache_write_failed: %s", exc)
        fonts = record["fonts"]
        if fonts.get("regular") is None:
            LOGGER.warning(
                "comments_video.bundle.default_font: no loadable fonts in %s",
                public_dir / FONTS_DIR_NAME,
            )

        try:
            write_json(out_dir / BUNDLE_FILE_NAME, record)
        except OSError as exc:
            raise CommentVideoPipelineError(
                BUNDLE_CODE, f"failed to write bundle to {out_dir}: {exc}"
            ) from exc
        LOGGER.info(
            "comments_video.bundle.done: key=%s cache=%s compositions=%s",
            cache_key,
            "hit" if cache_hit else "miss",
            ",".join(spec.composition.id for spec in compositions),
        )
        return BundleHandle(
            bundle_dir=out_dir,
            cache_key=cache_key,
            compositions=compositions,
            regular_font=fonts.get("regular"),
            bold_font=fonts.get("bold"),
            cache_hit=cache_hit,
        )

    def list_compositions(
        self, handle: BundleHandle, input_props: Mapping[str, Any]
    ) -> list[Composition]:
        """List compositions with metadata computed from the input props."""
        durations = input_props.get("commentDurationsInFrames")
        compositions = []
        for spec in handle.compositions:
            composition = spec.composition
            if durations is not None:
                total = int(input_props.get("coverDurationInFrames", 0)) + sum(
                    int(value) for value in durations
                )
                fps = int(input_props.get("fps", composition.fps))
                if total > 0:
                    composition = Composition(
                        id=composition.id,
                        width=composition.width,
                        height=composition.height,
                        fps=fps,
                        duration_in_frames=total,
                        video_slot=composition.video_slot,
                    )
            compositions.append(composition)
        return compositions

    def render_composition(
        self,
        composition: Composition,
        handle: BundleHandle,
        output_path: Path,
        input_props: Mapping[str, Any],
        on_progress: RenderProgressCallback,
        cancel_token: CancellationToken,
    ) -> None:
        """Paint every frame and pipe it into an H.264 encoder."""
        spec = None
        for item in handle.compositions:
            if item.composition.id == composition.id:
                spec = item
        if spec is None:
            raise CommentVideoPipelineError(
                RENDER_CODE, f"composition {composition.id!r} is not in the bundle"
            )
        try:
            painter = FramePainter(
                spec,
                composition,
                FontBook(handle.regular_font, handle.bold_font),
                input_props,
            )
        except CommentVideoValidationError as exc:
            raise CommentVideoPipelineError(
                RENDER_CODE, f"invalid input props: {exc}"
            ) from exc

        ffmpeg_path = resolve_executable(self.config.ffmpeg_path, "ffmpeg")
        command = build_encoder_args(
            ffmpeg_path, composition, output_path, self.config.x264_preset
        )
        LOGGER.debug("comments_video.render.command: %s", format_command(command))
        try:
            process = subprocess.Popen(
                command,
                stdin=subprocess.PIPE,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
            )
        except OSError as exc:
            raise CommentVideoPipelineError(
                RENDER_CODE, f"ffmpeg could not be started: {exc}"
            ) from exc
        if not process.stdin or not process.stderr:
            stop_process(process)
            raise CommentVideoPipelineError(RENDER_CODE, "ffmpeg pipes unavailable")

        pump = StderrPump(process.stderr)
        total_frames = composition.duration_in_frames
        try:
            for frame_index in range(total_frames):
                cancel_token.raise_if_cancelled()
                frame_image = painter.paint(frame_index)
                try:
                    process.stdin.write(frame_image.tobytes())
                except OSError as exc:
                    raise CommentVideoPipelineError(
                        RENDER_CODE,
                        f"ffmpeg stopped accepting frames at {frame_index}. "
                        f"{pump.collect_tail()}".strip(),
                    ) from exc
                frames_done = frame_index + 1
                on_progress(frames_done / total_frames, frames_done, frames_done)

            try:
                process.stdin.close()
            except OSError as exc:
                raise CommentVideoPipelineError(
                    RENDER_CODE,
                    f"ffmpeg closed its input after {total_frames} frames. "
                    f"{pump.collect_tail()}".strip(),
                ) from exc
            return_code = process.wait()
            if return_code != 0:
                raise CommentVideoPipelineError(
                    RENDER_CODE,
                    f"ffmpeg failed with exit code {return_code}. "
                    f"{pump.collect_tail()}".strip(),
                )
        finally:
            stop_process(process)
            pump.join()
            process.stderr.close()
