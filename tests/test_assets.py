"""Tests for remote image caching and source video materialization."""

from __future__ import annotations

import logging
import urllib.error
from pathlib import Path

import pytest

from domain.comment_video import (
    SOURCE_DOWNLOAD_CODE,
    Comment,
    CommentVideoPipelineError,
    VideoInfo,
)
from service import assets
from service.assets import AssetCache, infer_suffix, materialize_source_video
from service.cancellation import CancellationToken


def fake_download(calls: list[str], fail_urls: set[str] = frozenset()):
    def download(url, target_path, opener, timeout_seconds, cancel_token):
        calls.append(url)
        if url in fail_urls:
            raise urllib.error.URLError("unreachable")
        Path(target_path).write_bytes(b"\x89PNG fake")
        return "image/png"

    return download


def test_infer_suffix() -> None:
    assert infer_suffix("https://x/a", "image/webp; charset=binary") == ".webp"
    assert infer_suffix("https://x/a.GIF?size=1", None) == ".gif"
    assert infer_suffix("https://x/avatar", "text/html") == ".jpg"


def test_asset_cache_downloads_each_url_once(tmp_path: Path, monkeypatch) -> None:
    calls: list[str] = []
    monkeypatch.setattr(assets, "download_to_path", fake_download(calls))
    cache = AssetCache(tmp_path, timeout_seconds=1.0)
    comments = [
        Comment(id="1", author="a", content="x", author_thumbnail="https://cdn/a.png"),
        Comment(id="2", author="b", content="y", author_thumbnail="https://cdn/a.png"),
        Comment(id="3", author="c", content="z", author_thumbnail="/local/c.png"),
        Comment(id="4", author="d", content="w"),
    ]

    prepared = cache.prepare_comments(comments, CancellationToken())

    assert calls == ["https://cdn/a.png"]
    assert prepared[0].author_thumbnail == prepared[1].author_thumbnail
    assert Path(prepared[0].author_thumbnail).suffix == ".png"
    assert Path(prepared[0].author_thumbnail).read_bytes() == b"\x89PNG fake"
    assert prepared[2].author_thumbnail == "/local/c.png"
    assert prepared[3].author_thumbnail is None


def test_asset_cache_failures_are_not_fatal(tmp_path: Path, monkeypatch, caplog) -> None:
    calls: list[str] = []
    monkeypatch.setattr(
        assets, "download_to_path", fake_download(calls, {"https://cdn/thumb.jpg"})
    )
    cache = AssetCache(tmp_path, timeout_seconds=1.0)

    with caplog.at_level(logging.WARNING, logger="comments_video.assets"):
        video_info = cache.prepare_video_info(
            VideoInfo(title="t", thumbnail="https://cdn/thumb.jpg"), CancellationToken()
        )

    assert video_info.thumbnail is None
    assert "comments_video.assets.download_failed" in caplog.text
    assert list(tmp_path.iterdir()) == []


def test_local_source_is_used_in_place(tmp_path: Path) -> None:
    source = str(tmp_path / "clip.mp4")

    assert (
        materialize_source_video(source, tmp_path, 1.0, CancellationToken()) == source
    )


def test_remote_source_failure_is_coded(tmp_path: Path, monkeypatch) -> None:
    calls: list[str] = []
    url = "https://cdn/clip.webm"
    monkeypatch.setattr(assets, "download_to_path", fake_download(calls, {url}))

    with pytest.raises(CommentVideoPipelineError) as excinfo:
        materialize_source_video(url, tmp_path, 1.0, CancellationToken())

    assert excinfo.value.code == SOURCE_DOWNLOAD_CODE


def test_remote_source_is_downloaded_into_scratch(tmp_path: Path, monkeypatch) -> None:
    calls: list[str] = []
    monkeypatch.setattr(assets, "download_to_path", fake_download(calls))

    local_path = materialize_source_video(
        "https://cdn/clip.webm", tmp_path, 1.0, CancellationToken()
    )

    assert local_path == str(tmp_path / "source.webm")
    assert calls == ["https://cdn/clip.webm"]
