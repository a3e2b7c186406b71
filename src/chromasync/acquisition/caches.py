"""
Cache tiers consulted by the acquisition orchestrator.

``AnalysisCache`` holds finished timelines; ``MediaCache`` holds downloaded
audio files.  Both sit on a :class:`KeyedStore`, so they share slug
addressing, fuzzy fallback and expiry.
"""

import logging
from pathlib import Path
from typing import Optional, Protocol, Union

from chromasync.acquisition.keys import TrackKey
from chromasync.acquisition.store import KeyedStore
from chromasync.core.timeline import AnalysisTimeline
from chromasync.errors import CacheIOFailure
from chromasync.io.exporter import TimelineExporter
from chromasync.pipeline import ANALYSIS_VERSION

logger = logging.getLogger(__name__)

AUDIO_SUFFIXES = (".mp3", ".m4a", ".opus", ".ogg", ".wav", ".flac", ".webm")


class Downloader(Protocol):
    def download(self, url: str, target: Path) -> Path:
        """Fetch *url* to a file whose name starts with *target*; return the path."""


class AnalysisCache:
    """
    Timelines keyed by track.

    Entries written by a different :data:`ANALYSIS_VERSION` are ignored.
    """

    def __init__(self, store: Optional[KeyedStore] = None, exporter: Optional[TimelineExporter] = None):
        self.store = store or KeyedStore()
        self.exporter = exporter or TimelineExporter(precision=6)

    def get(self, track: TrackKey) -> Optional[AnalysisTimeline]:
        """
        Cached timeline for *track*, or None on a miss.

        Raises:
            CacheIOFailure: If the entry exists but cannot be read or decoded.
        """
        found = self.store.lookup(track)
        if found is None:
            return None
        slug, payload = found
        if not isinstance(payload, dict) or payload.get("analysis_version") != ANALYSIS_VERSION:
            logger.debug("Ignoring analysis entry %s from another version", slug)
            return None
        try:
            return self.exporter.from_dict(payload["timeline"])
        except (KeyError, ValueError) as exc:
            raise CacheIOFailure(f"Corrupt analysis entry {slug}: {exc}") from exc

    def check_cache(self, track: TrackKey) -> bool:
        return self.get(track) is not None

    def put(self, track: TrackKey, timeline: AnalysisTimeline):
        self.store.put(
            track.slug,
            {
                "analysis_version": ANALYSIS_VERSION,
                "artist": track.artist,
                "title": track.title,
                "timeline": self.exporter.to_dict(timeline),
            },
        )


class MediaCache:
    """
    Downloaded audio files keyed by track.

    Files live in ``directory`` and are named after the track slug; the
    store records which file belongs to which slug.
    """

    def __init__(
        self,
        directory: Union[str, Path],
        downloader: Downloader,
        store: Optional[KeyedStore] = None,
    ):
        self.directory = Path(directory)
        self.downloader = downloader
        self.store = store or KeyedStore()

    def check_cache(self, track: TrackKey) -> Optional[Path]:
        """Local path of a cached file for *track*, or None."""
        found = self.store.lookup(track)
        if found is None:
            return None
        slug, payload = found
        path = Path(payload["path"]) if isinstance(payload, dict) and "path" in payload else None
        if path is None or not path.exists():
            logger.info("Media entry %s points at a missing file, dropping it", slug)
            self.store.delete(slug)
            return None
        return path

    def fetch_or_create(self, track: TrackKey, url: str) -> Path:
        """
        Return the cached file for *track*, downloading *url* if needed.

        Raises:
            DownloadFailure: If the downloader fails.
        """
        existing = self.check_cache(track)
        if existing is not None:
            return existing
        path = self.download(track, url)
        self.register(track, path, url)
        return path

    def download(self, track: TrackKey, url: str) -> Path:
        """Download *url* into the cache directory without indexing it."""
        self.directory.mkdir(parents=True, exist_ok=True)
        return Path(self.downloader.download(url, self.directory / track.slug))

    def register(self, track: TrackKey, path: Path, url: Optional[str] = None):
        """Index an already downloaded file under *track*."""
        self.store.put(track.slug, {"path": str(path), "url": url})
        logger.info("Cached media for %s at %s", track, path)

    def rescan(self) -> int:
        """
        Index audio files in ``directory`` that the store does not know.

        The file stem is taken as the slug.  Returns the number of new entries.
        """
        if not self.directory.is_dir():
            return 0
        known = set(self.store.keys())
        added = 0
        for path in sorted(self.directory.iterdir()):
            if path.suffix.lower() in AUDIO_SUFFIXES and path.stem not in known:
                self.store.put(path.stem, {"path": str(path)})
                added += 1
        return added
