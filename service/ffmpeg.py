"""ffmpeg/ffprobe process helpers shared by the render and compose stages."""

from __future__ import annotations

import json
import logging
import queue
import shutil
import subprocess
import threading
from collections import deque
from dataclasses import dataclass
from typing import IO, Iterator, Sequence

from domain.comment_video import FFMPEG_NOT_FOUND_CODE, CommentVideoPipelineError

LOGGER = logging.getLogger("comments_video.ffmpeg")

STDERR_TAIL_LINES = 40
PROCESS_KILL_WAIT_SECONDS = 5.0


@dataclass(frozen=True)
class SourceProbe:
    """Facts about the source video relevant to composition."""

    width: int | None
    height: int | None
    has_audio: bool


def resolve_executable(executable: str, label: str) -> str:
    """Resolve an executable on PATH or fail with a coded error."""
    resolved = shutil.which(executable)
    if not resolved:
        raise CommentVideoPipelineError(
            FFMPEG_NOT_FOUND_CODE, f"{label} not on PATH: {executable}"
        )
    return resolved


def probe_source_video(ffprobe_path: str, video_path: str) -> SourceProbe:
    """Probe dimensions and audio presence, assuming audio when probing fails."""
    try:
        result = subprocess.run(
            [
                ffprobe_path,
                "-v",
                "error",
                "-print_format",
                "json",
                "-show_streams",
                video_path,
            ],
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            check=False,
        )
    except OSError as exc:
        LOGGER.warning("comments_video.compose.probe_failed: %s", exc)
        return SourceProbe(width=None, height=None, has_audio=True)

    if result.returncode != 0:
        LOGGER.warning(
            "comments_video.compose.probe_failed: %s", result.stderr.strip()
        )
        return SourceProbe(width=None, height=None, has_audio=True)

    try:
        streams = json.loads(result.stdout or "{}").get("streams", [])
    except ValueError as exc:
        LOGGER.warning("comments_video.compose.probe_failed: %s", exc)
        return SourceProbe(width=None, height=None, has_audio=True)

    width = None
    height = None
    has_audio = False
    for stream in streams:
        codec_type = stream.get("codec_type")
        if codec_type == "video" and width is None:
            width = stream.get("width")
            height = stream.get("height")
        elif codec_type == "audio":
            has_audio = True
    return SourceProbe(width=width, height=height, has_audio=has_audio)


def stop_process(process: subprocess.Popen) -> None:
    """Close stdin and kill a child that is still running."""
    try:
        if process.stdin and not process.stdin.closed:
            process.stdin.close()
    except OSError:
        pass
    if process.poll() is None:
        process.kill()
        try:
            process.wait(timeout=PROCESS_KILL_WAIT_SECONDS)
        except subprocess.TimeoutExpired:
            LOGGER.warning("comments_video.ffmpeg.kill_timeout: pid=%s", process.pid)


class StderrPump:
    """Drain a child's stderr on a thread so the caller can poll with timeouts."""

    _DONE = object()

    def __init__(self, stream: IO[bytes]) -> None:
        self._queue: queue.Queue = queue.Queue()
        self.tail: deque[str] = deque(maxlen=STDERR_TAIL_LINES)
        self._thread = threading.Thread(
            target=self._drain, args=(stream,), name="ffmpeg-stderr", daemon=True
        )
        self._thread.start()

    def _drain(self, stream: IO[bytes]) -> None:
        try:
            for raw_line in iter(stream.readline, b""):
                self._queue.put(raw_line.decode("utf-8", errors="replace").strip())
        except (OSError, ValueError):
            pass
        finally:
            self._queue.put(self._DONE)

    def lines(self, poll_seconds: float) -> Iterator[str | None]:
        """Yield stderr lines, or None after each idle ``poll_seconds``."""
        while True:
            try:
                item = self._queue.get(timeout=poll_seconds)
            except queue.Empty:
                yield None
                continue
            if item is self._DONE:
                return
            yield item

    def remember(self, line: str) -> None:
        self.tail.append(line)

    def tail_text(self) -> str:
        return "\n".join(self.tail).strip()

    def collect_tail(self, timeout: float = 1.0) -> str:
        """Move every queued line into the tail and return it as text."""
        self.join(timeout)
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                break
            if item is not self._DONE and item:
                self.tail.append(item)
        return self.tail_text()

    def join(self, timeout: float = 1.0) -> None:
        self._thread.join(timeout)


def format_command(command: Sequence[str]) -> str:
    return " ".join(command)
