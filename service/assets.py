"""Remote asset downloads into a run-scoped cache directory."""

from __future__ import annotations

import hashlib
import logging
import urllib.error
import urllib.request
from dataclasses import replace
from pathlib import Path
from typing import Sequence
from urllib.parse import urlparse

from domain.comment_video import (
    SOURCE_DOWNLOAD_CODE,
    Comment,
    CommentVideoPipelineError,
    VideoInfo,
    is_remote_url,
)
from service.cancellation import CancellationToken

LOGGER = logging.getLogger("comments_video.assets")

CHUNK_SIZE = 256 * 1024
USER_AGENT = "render-comments-video/1.0"
CONTENT_TYPE_SUFFIXES = {
    "image/png": ".png",
    "image/webp": ".webp",
    "image/gif": ".gif",
    "image/bmp": ".bmp",
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
}
URL_SUFFIXES = {".png", ".webp", ".gif", ".bmp", ".jpg", ".jpeg"}


def build_opener(proxy_url: str | None) -> urllib.request.OpenerDirector:
    """Build a urllib opener, routed through a proxy when configured."""
    if proxy_url:
        proxy_handler = urllib.request.ProxyHandler(
            {"http": proxy_url, "https": proxy_url}
        )
        return urllib.request.build_opener(proxy_handler)
    return urllib.request.build_opener()


def infer_suffix(url: str, content_type: str | None) -> str:
    """Infer an image file suffix from the response type or URL path."""
    if content_type:
        normalized = content_type.split(";", 1)[0].strip().lower()
        if normalized in CONTENT_TYPE_SUFFIXES:
            return CONTENT_TYPE_SUFFIXES[normalized]
    suffix = Path(urlparse(url).path).suffix.lower()
    if suffix in URL_SUFFIXES:
        return suffix
    return ".jpg"


def download_to_path(
    url: str,
    target_path: Path,
    opener: urllib.request.OpenerDirector,
    timeout_seconds: float,
    cancel_token: CancellationToken,
) -> str | None:
    """Stream a URL to disk and return the response content type."""
    request = urllib.request.Request(url, headers={"User-Agent": USER_AGENT})
    with opener.open(request, timeout=timeout_seconds) as response:
        content_type = response.headers.get("Content-Type")
        with open(target_path, "wb") as file_handle:
            while True:
                cancel_token.raise_if_cancelled()
                chunk = response.read(CHUNK_SIZE)
                if not chunk:
                    break
                file_handle.write(chunk)
    return content_type


class AssetCache:
    """Per-run map of remote image URLs to downloaded local files."""

    def __init__(
        self,
        cache_dir: Path,
        timeout_seconds: float,
        proxy_url: str | None = None,
    ) -> None:
        self.cache_dir = cache_dir
        self.timeout_seconds = timeout_seconds
        self._opener = build_opener(proxy_url)
        self._entries: dict[str, str | None] = {}

    def resolve(self, url: str | None, cancel_token: CancellationToken) -> str | None:
        """Return a local path for ``url``; non-remote values pass through."""
        if not url:
            return None
        if not is_remote_url(url):
            return url
        if url in self._entries:
            return self._entries[url]

        digest = hashlib.sha256(url.encode("utf-8")).hexdigest()[:24]
        partial_path = self.cache_dir / f"{digest}.part"
        try:
            content_type = download_to_path(
                url, partial_path, self._opener, self.timeout_seconds, cancel_token
            )
            final_path = self.cache_dir / f"{digest}{infer_suffix(url, content_type)}"
            partial_path.replace(final_path)
            local_path: str | None = str(final_path)
        except (urllib.error.URLError, OSError, ValueError) as exc:
            LOGGER.warning("comments_video.assets.download_failed: %s (%s)", url, exc)
            partial_path.unlink(missing_ok=True)
            local_path = None
        self._entries[url] = local_path
        return local_path

    def prepare_video_info(
        self, video_info: VideoInfo, cancel_token: CancellationToken
    ) -> VideoInfo:
        """Replace a remote thumbnail with its cached local copy."""
        if not is_remote_url(video_info.thumbnail):
            return video_info
        return replace(
            video_info, thumbnail=self.resolve(video_info.thumbnail, cancel_token)
        )

    def prepare_comments(
        self, comments: Sequence[Comment], cancel_token: CancellationToken
    ) -> tuple[Comment, ...]:
        """Replace remote author avatars with cached local copies."""
        prepared = []
        for comment in comments:
            if is_remote_url(comment.author_thumbnail):
                comment = replace(
                    comment,
                    author_thumbnail=self.resolve(comment.author_thumbnail, cancel_token),
                )
            prepared.append(comment)
        downloaded = sum(1 for value in self._entries.values() if value is not None)
        failed = sum(1 for value in self._entries.values() if value is None)
        if self._entries:
            LOGGER.info(
                "comments_video.assets.images: ok=%d failed=%d", downloaded, failed
            )
        return tuple(prepared)


def materialize_source_video(
    source_path: str,
    scratch_dir: Path,
    timeout_seconds: float,
    cancel_token: CancellationToken,
    proxy_url: str | None = None,
) -> str:
    """Download a remote source video into the scratch directory."""
    if not is_remote_url(source_path):
        return source_path
    suffix = Path(urlparse(source_path).path).suffix or ".mp4"
    target_path = scratch_dir / f"source{suffix}"
    LOGGER.info("comments_video.source.download: %s", source_path)
    try:
        download_to_path(
            source_path,
            target_path,
            build_opener(proxy_url),
            timeout_seconds,
            cancel_token,
        )
    except (urllib.error.URLError, OSError, ValueError) as exc:
        raise CommentVideoPipelineError(
            SOURCE_DOWNLOAD_CODE, f"failed to fetch remote source video: {exc}"
        ) from exc
    return str(target_path)
