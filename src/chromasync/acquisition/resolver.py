"""
External media resolution and download.

``YouTubeResolver`` turns an artist/title pair into a video URL through the
YouTube Data API; ``YtDlpDownloader`` extracts the audio of that URL into a
local file.
"""

import logging
from pathlib import Path
from typing import Optional

import httpx
import yt_dlp

from chromasync.errors import DownloadFailure, ResolverBlocked

logger = logging.getLogger(__name__)

SEARCH_URL = "https://www.googleapis.com/youtube/v3/search"
WATCH_URL = "https://www.youtube.com/watch?v={video_id}"
MUSIC_CATEGORY = "10"


class YouTubeResolver:
    """
    Resolves tracks to YouTube watch URLs.

    A 403 from the API (bad key, quota exhausted) raises
    :class:`ResolverBlocked`; any other failure resolves to None.
    """

    def __init__(
        self,
        api_key: Optional[str],
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ):
        """
        Initialize the resolver.

        Args:
            api_key: YouTube Data API key.
            client: Shared AsyncClient; one is created per call when None.
            timeout: Request timeout in seconds.
        """
        self.api_key = api_key
        self.client = client
        self.timeout = timeout

    def _params(self, artist: str, title: str) -> dict[str, str]:
        return {
            "part": "id",
            "q": f"{artist} {title} official audio",
            "type": "video",
            "videoCategoryId": MUSIC_CATEGORY,
            "maxResults": "1",
            "fields": "items/id/videoId",
            "key": self.api_key or "",
        }

    @staticmethod
    def _block_reason(response: httpx.Response) -> str:
        try:
            error = response.json().get("error", {})
            return str(error.get("message") or f"HTTP {response.status_code}")
        except ValueError:
            return f"HTTP {response.status_code}"

    async def _get(self, params: dict[str, str]) -> httpx.Response:
        if self.client is not None:
            return await self.client.get(SEARCH_URL, params=params, timeout=self.timeout)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.get(SEARCH_URL, params=params)

    async def resolve(self, artist: str, title: str) -> Optional[str]:
        """
        Search for the official audio of a track.

        Returns:
            Watch URL of the first result, or None when nothing was found
            or the request failed.

        Raises:
            ResolverBlocked: On a 403 or when no API key is configured.
        """
        if not self.api_key:
            raise ResolverBlocked("no API key configured")

        try:
            response = await self._get(self._params(artist, title))
        except httpx.HTTPError as exc:
            logger.warning("YouTube search failed for %s - %s: %s", artist, title, exc)
            return None

        if response.status_code == 403:
            raise ResolverBlocked(self._block_reason(response))
        if response.status_code != 200:
            logger.warning("YouTube search returned HTTP %d", response.status_code)
            return None

        try:
            data = response.json()
        except ValueError:
            logger.warning("YouTube search returned a non-JSON body")
            return None

        if data.get("error", {}).get("code") == 403:
            raise ResolverBlocked(str(data["error"].get("message", "HTTP 403")))

        for item in data.get("items", []):
            video_id = item.get("id", {}).get("videoId")
            if video_id:
                return WATCH_URL.format(video_id=video_id)
        logger.info("No YouTube result for %s - %s", artist, title)
        return None


class YtDlpDownloader:
    """Downloads the audio track of a URL with yt-dlp."""

    def __init__(self, output_format: str = "mp3", quality: str = "192", quiet: bool = True):
        """
        Initialize the downloader.

        Args:
            output_format: Audio codec passed to FFmpegExtractAudio.
            quality: Preferred bitrate (kbps) for lossy codecs.
            quiet: Suppress yt-dlp console output.
        """
        self.output_format = output_format
        self.quality = quality
        self.quiet = quiet

    def options(self, target: Path) -> dict:
        return {
            "format": "bestaudio/best",
            "outtmpl": str(target) + ".%(ext)s",
            "postprocessors": [
                {
                    "key": "FFmpegExtractAudio",
                    "preferredcodec": self.output_format,
                    "preferredquality": self.quality,
                }
            ],
            "noplaylist": True,
            "quiet": self.quiet,
            "no_warnings": self.quiet,
        }

    def download(self, url: str, target: Path) -> Path:
        """
        Download audio from *url*.

        Args:
            url: Media URL.
            target: Output path without extension.

        Returns:
            Path to the extracted audio file.

        Raises:
            DownloadFailure: If yt-dlp fails or produces no file.
        """
        target = Path(target)
        final_path = target.with_name(f"{target.name}.{self.output_format}")
        try:
            with yt_dlp.YoutubeDL(self.options(target)) as ydl:
                ydl.download([url])
        except Exception as exc:
            raise DownloadFailure(f"Failed to download {url}: {exc}") from exc

        if not final_path.exists():
            raise DownloadFailure(f"Download succeeded but file not found: {final_path}")
        return final_path
