"""Overlay composition of the rendered comments onto the source video."""

from __future__ import annotations

import logging
import subprocess
import time
from dataclasses import dataclass
from typing import Any, Mapping, Tuple

from domain.comment_video import (
    COMPOSE_CODE,
    COMPOSE_STALLED_CODE,
    CommentVideoPipelineError,
    RenderStage,
    SlotLayout,
    Timeline,
)
from service.cancellation import CancellationToken
from service.ffmpeg import (
    SourceProbe,
    StderrPump,
    format_command,
    probe_source_video,
    resolve_executable,
    stop_process,
)
from service.progress import ProgressEmitter, clamp_progress
from service.settings import PipelineConfig

LOGGER = logging.getLogger("comments_video.compose")

H264_CODEC = "libx264"
H264_PIXEL_FORMAT = "yuv420p"
AUDIO_CODEC = "aac"
AUDIO_BITRATE = "192k"
FAST_START_FLAGS = "+faststart"
FPS_MODE = "cfr"
SCALE_FLAGS = "lanczos"
POLL_SECONDS = 0.25
PROGRESS_KEYS = (
    "frame=",
    "fps=",
    "stream_",
    "bitrate=",
    "total_size=",
    "out_time",
    "dup_frames=",
    "drop_frames=",
    "speed=",
    "progress=",
)


@dataclass(frozen=True)
class ComposeRequest:
    """Inputs for a single compose run."""

    overlay_path: str
    source_video_path: str
    output_path: str
    timeline: Timeline
    video_slot: SlotLayout


def format_seconds(value: float) -> str:
    """Format seconds for ffmpeg expressions without trailing zeros."""
    text = f"{value:.6f}".rstrip("0").rstrip(".")
    return text or "0"


def build_overlay_filter(
    fps: int,
    cover_duration_seconds: float,
    total_duration_seconds: float,
    slot: SlotLayout,
    include_audio: bool,
) -> str:
    """Build the filter graph that places the source video into its slot.

    The source is re-timed to start at the end of the cover segment, its last
    frame is held until the composed duration, and its audio is delayed by the
    same amount and padded to the composed duration.
    """
    cover = format_seconds(cover_duration_seconds)
    total = format_seconds(total_duration_seconds)
    delay_ms = int(round(cover_duration_seconds * 1000))
    filters = [
        (
            f"[1:v]fps={fps},setpts=PTS-STARTPTS+{cover}/TB,"
            f"scale={slot.width}:{slot.height}:flags={SCALE_FLAGS},setsar=1,"
            f"tpad=stop_mode=clone:stop_duration={total}[scaled_src]"
        ),
        (
            f"[0:v][scaled_src]overlay={slot.x}:{slot.y}:"
            f"enable='between(t,{cover},{total})'[composited]"
        ),
    ]
    if include_audio:
        filters.append(
            f"[1:a]adelay=delays={delay_ms}:all=1,apad=whole_dur={total},"
            f"atrim=0:{total},asetpts=PTS-STARTPTS[delayed_audio]"
        )
    return ";".join(filters)


def build_compose_args(
    ffmpeg_path: str,
    request: ComposeRequest,
    include_audio: bool,
    preset: str,
) -> list[str]:
    """Build the ffmpeg command for composing overlay and source."""
    timeline = request.timeline
    filter_graph = build_overlay_filter(
        timeline.fps,
        timeline.cover_duration_seconds,
        timeline.total_duration_seconds,
        request.video_slot,
        include_audio,
    )
    args = [
        ffmpeg_path,
        "-y",
        "-hide_banner",
        "-loglevel",
        "error",
        "-nostats",
        "-progress",
        "pipe:2",
        "-i",
        request.overlay_path,
        "-i",
        request.source_video_path,
        "-filter_complex",
        filter_graph,
        "-map",
        "[composited]",
    ]
    if include_audio:
        args.extend(
            [
                "-map",
                "[delayed_audio]",
                "-c:a",
                AUDIO_CODEC,
                "-b:a",
                AUDIO_BITRATE,
            ]
        )
    else:
        args.append("-an")
    args.extend(
        [
            "-fps_mode",
            FPS_MODE,
            "-r",
            str(timeline.fps),
            "-c:v",
            H264_CODEC,
            "-preset",
            preset,
            "-pix_fmt",
            H264_PIXEL_FORMAT,
            "-movflags",
            FAST_START_FLAGS,
            "-t",
            format_seconds(timeline.total_duration_seconds),
            "-shortest",
            request.output_path,
        ]
    )
    return args


def parse_progress_line(
    line: str, total_duration_seconds: float
) -> Tuple[float | None, Mapping[str, Any]] | None:
    """Translate an ffmpeg ``-progress`` line into (progress, meta)."""
    if line.startswith("out_time_us=") or line.startswith("out_time_ms="):
        raw_value = line.split("=", 1)[1].strip()
        try:
            microseconds = int(raw_value)
        except ValueError:
            return None
        total_microseconds = total_duration_seconds * 1_000_000
        if total_microseconds <= 0:
            return None
        return (
            clamp_progress(microseconds / total_microseconds),
            {"out_time_us": microseconds},
        )
    if line.startswith("out_time="):
        return None, {"timemark": line.split("=", 1)[1].strip()}
    return None


def is_progress_line(line: str) -> bool:
    return line.startswith(PROGRESS_KEYS)


class MediaComposer:
    """Runs ffmpeg to overlay the rendered comments onto the source video."""

    def __init__(self, config: PipelineConfig) -> None:
        self.config = config

    def compose(
        self,
        request: ComposeRequest,
        emitter: ProgressEmitter,
        cancel_token: CancellationToken,
    ) -> None:
        """Compose the output video, emitting compose progress."""
        ffmpeg_path = resolve_executable(self.config.ffmpeg_path, "ffmpeg")
        cancel_token.raise_if_cancelled()
        emitter.emit(RenderStage.COMPOSE, 0.0)

        probe = probe_source_video(self.config.ffprobe_path, request.source_video_path)
        log_layout(request, probe)
        command = build_compose_args(
            ffmpeg_path, request, probe.has_audio, self.config.x264_preset
        )
        LOGGER.debug("comments_video.compose.command: %s", format_command(command))
        self._run(command, request.timeline.total_duration_seconds, emitter, cancel_token)
        emitter.emit(RenderStage.COMPOSE, 1.0)

    def _run(
        self,
        command: list[str],
        total_duration_seconds: float,
        emitter: ProgressEmitter,
        cancel_token: CancellationToken,
    ) -> None:
        try:
            process = subprocess.Popen(
                command,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
            )
        except OSError as exc:
            raise CommentVideoPipelineError(
                COMPOSE_CODE, f"ffmpeg could not be started: {exc}"
            ) from exc

        pump = StderrPump(process.stderr)
        last_activity = time.monotonic()
        try:
            for line in pump.lines(POLL_SECONDS):
                cancel_token.raise_if_cancelled()
                if line is None:
                    idle_seconds = time.monotonic() - last_activity
                    if idle_seconds > self.config.compose_stall_seconds:
                        raise CommentVideoPipelineError(
                            COMPOSE_STALLED_CODE,
                            f"ffmpeg produced no output for {idle_seconds:.0f}s",
                        )
                    continue

                last_activity = time.monotonic()
                if not line:
                    continue
                parsed = parse_progress_line(line, total_duration_seconds)
                if parsed is not None:
                    progress, meta = parsed
                    emitter.emit(RenderStage.COMPOSE, progress, meta)
                elif not is_progress_line(line):
                    pump.remember(line)

            return_code = process.wait()
            if return_code != 0:
                stderr_text = pump.tail_text()
                raise CommentVideoPipelineError(
                    COMPOSE_CODE,
                    f"ffmpeg failed with exit code {return_code}. {stderr_text}".strip(),
                )
        finally:
            stop_process(process)
            pump.join()
            if process.stderr:
                process.stderr.close()


def log_layout(request: ComposeRequest, probe: SourceProbe) -> None:
    slot = request.video_slot
    LOGGER.info(
        "comments_video.compose.start: source=%sx%s slot=%dx%d@%d,%d "
        "cover=%ss total=%ss audio=%s",
        probe.width if probe.width is not None else "?",
        probe.height if probe.height is not None else "?",
        slot.width,
        slot.height,
        slot.x,
        slot.y,
        format_seconds(request.timeline.cover_duration_seconds),
        format_seconds(request.timeline.total_duration_seconds),
        "yes" if probe.has_audio else "no",
    )
