"""Tests for the YouTube resolver and the yt-dlp downloader."""

from pathlib import Path
from unittest.mock import MagicMock

import httpx
import pytest

from chromasync.acquisition import resolver as resolver_module
from chromasync.acquisition.resolver import SEARCH_URL, YouTubeResolver, YtDlpDownloader
from chromasync.errors import DownloadFailure, ResolverBlocked


def make_resolver(handler, api_key="test-key"):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return YouTubeResolver(api_key, client=client)


class TestResolve:
    @pytest.mark.asyncio
    async def test_first_result(self):
        seen = {}

        def handler(request):
            seen["url"] = request.url
            return httpx.Response(200, json={"items": [{"id": {"videoId": "abc123"}}, {"id": {"videoId": "zzz"}}]})

        url = await make_resolver(handler).resolve("Daft Punk", "Around the World")

        assert url == "https://www.youtube.com/watch?v=abc123"
        params = seen["url"].params
        assert str(seen["url"]).startswith(SEARCH_URL)
        assert params["q"] == "Daft Punk Around the World official audio"
        assert params["videoCategoryId"] == "10"
        assert params["type"] == "video"
        assert params["maxResults"] == "1"
        assert params["key"] == "test-key"

    @pytest.mark.asyncio
    async def test_no_results(self):
        resolver = make_resolver(lambda request: httpx.Response(200, json={"items": []}))
        assert await resolver.resolve("Nobody", "Nothing") is None

    @pytest.mark.asyncio
    async def test_forbidden_blocks(self):
        body = {"error": {"code": 403, "message": "quotaExceeded"}}
        resolver = make_resolver(lambda request: httpx.Response(403, json=body))

        with pytest.raises(ResolverBlocked) as exc_info:
            await resolver.resolve("Daft Punk", "Around the World")
        assert exc_info.value.reason == "quotaExceeded"

    @pytest.mark.asyncio
    async def test_forbidden_in_body(self):
        body = {"error": {"code": 403, "message": "forbidden"}}
        resolver = make_resolver(lambda request: httpx.Response(200, json=body))
        with pytest.raises(ResolverBlocked):
            await resolver.resolve("Daft Punk", "Around the World")

    @pytest.mark.asyncio
    async def test_server_error_is_a_miss(self):
        resolver = make_resolver(lambda request: httpx.Response(500, text="oops"))
        assert await resolver.resolve("Daft Punk", "Around the World") is None

    @pytest.mark.asyncio
    async def test_network_error_is_a_miss(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        assert await make_resolver(handler).resolve("Daft Punk", "Around the World") is None

    @pytest.mark.asyncio
    async def test_missing_key(self):
        handler = MagicMock()
        resolver = make_resolver(handler, api_key=None)
        with pytest.raises(ResolverBlocked, match="no API key"):
            await resolver.resolve("Daft Punk", "Around the World")
        handler.assert_not_called()


class FakeYoutubeDL:
    instances = []

    def __init__(self, options):
        self.options = options
        self.urls = []
        FakeYoutubeDL.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        return False

    def download(self, urls):
        self.urls.extend(urls)
        Path(self.options["outtmpl"].replace("%(ext)s", "mp3")).write_bytes(b"audio")
        return 0


class TestDownloader:
    def test_options(self, tmp_path):
        options = YtDlpDownloader(output_format="mp3", quality="192").options(tmp_path / "slug")
        assert options["outtmpl"] == str(tmp_path / "slug") + ".%(ext)s"
        assert options["noplaylist"] is True
        assert options["postprocessors"][0]["key"] == "FFmpegExtractAudio"
        assert options["postprocessors"][0]["preferredcodec"] == "mp3"

    def test_download(self, tmp_path, monkeypatch):
        FakeYoutubeDL.instances = []
        monkeypatch.setattr(resolver_module.yt_dlp, "YoutubeDL", FakeYoutubeDL)

        path = YtDlpDownloader().download("https://example.com/v", tmp_path / "daft_punk--da_funk")

        assert path == tmp_path / "daft_punk--da_funk.mp3"
        assert path.read_bytes() == b"audio"
        assert FakeYoutubeDL.instances[0].urls == ["https://example.com/v"]

    def test_download_error(self, tmp_path, monkeypatch):
        ydl = MagicMock()
        ydl.__enter__.return_value.download.side_effect = RuntimeError("unavailable")
        monkeypatch.setattr(resolver_module.yt_dlp, "YoutubeDL", MagicMock(return_value=ydl))

        with pytest.raises(DownloadFailure, match="unavailable"):
            YtDlpDownloader().download("https://example.com/v", tmp_path / "x")

    def test_no_output_file(self, tmp_path, monkeypatch):
        monkeypatch.setattr(resolver_module.yt_dlp, "YoutubeDL", MagicMock())
        with pytest.raises(DownloadFailure, match="file not found"):
            YtDlpDownloader().download("https://example.com/v", tmp_path / "x")
