"""
Track acquisition state machine.

Drives one track from "the player switched songs" to "a timeline is
published"::

    IDLE -> DEBOUNCING -> CHECK_ANALYSIS_CACHE -> CHECK_MEDIA_CACHE
         -> RESOLVING -> DOWNLOADING -> EXTRACTING -> PUBLISHING -> IDLE

An analysis-cache hit jumps straight to PUBLISHING; a media-cache hit skips
RESOLVING and DOWNLOADING, and a remembered source URL skips RESOLVING
only.  Any failure that leaves nothing to show ends in FAILED.

Every track change bumps a generation counter.  An acquisition remembers
the generation it started under and re-checks it after each await; once it
no longer matches, the acquisition stops without touching state, caches or
subscribers.  Work already handed to a thread or the network is not
interrupted, its result is simply discarded.

All methods must be called from the event loop that runs the orchestrator.
"""

import asyncio
import logging
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path
from typing import Callable, Optional, Protocol

from chromasync.acquisition.caches import AnalysisCache, MediaCache
from chromasync.acquisition.guard import ConcurrencyGuard
from chromasync.acquisition.keys import TrackKey
from chromasync.acquisition.resolver import YouTubeResolver, YtDlpDownloader
from chromasync.acquisition.store import DirectoryBackend, KeyedStore
from chromasync.config import EngineConfig
from chromasync.core.timeline import AnalysisTimeline
from chromasync.errors import (
    CacheIOFailure,
    DecodeFailure,
    DownloadFailure,
    ResolverBlocked,
    StaleGeneration,
)
from chromasync.pipeline import AnalysisPipeline

logger = logging.getLogger(__name__)


class Phase(str, Enum):
    IDLE = "idle"
    DEBOUNCING = "debouncing"
    CHECK_ANALYSIS_CACHE = "check_analysis_cache"
    CHECK_MEDIA_CACHE = "check_media_cache"
    RESOLVING = "resolving"
    DOWNLOADING = "downloading"
    EXTRACTING = "extracting"
    PUBLISHING = "publishing"
    ABORTED = "aborted"
    FAILED = "failed"


ACTIVE_PHASES = frozenset(
    {
        Phase.DEBOUNCING,
        Phase.CHECK_ANALYSIS_CACHE,
        Phase.CHECK_MEDIA_CACHE,
        Phase.RESOLVING,
        Phase.DOWNLOADING,
        Phase.EXTRACTING,
        Phase.PUBLISHING,
    }
)


class Resolver(Protocol):
    async def resolve(self, artist: str, title: str) -> Optional[str]:
        ...


@dataclass
class AcquisitionState:
    """Mutable bookkeeping owned by the orchestrator."""

    track: Optional[TrackKey] = None
    phase: Phase = Phase.IDLE
    generation: int = 0
    lock_owner: Optional[int] = None   # generation holding the single-flight lock

    @property
    def locked(self) -> bool:
        return self.lock_owner is not None


@dataclass(frozen=True)
class PublishedState:
    """What consumers see after every transition."""

    track: Optional[TrackKey] = None
    timeline: Optional[AnalysisTimeline] = None
    is_analyzing: bool = False
    phase: Phase = Phase.IDLE
    error: Optional[str] = None


Subscriber = Callable[[PublishedState], None]


class AcquisitionOrchestrator:
    """
    Single-flight, cancellable track acquisition.

    Args:
        analysis_cache: Tier holding finished timelines.
        media_cache: Tier holding downloaded audio.
        resolver: Async ``resolve(artist, title) -> url | None``.
        extract: Blocking ``path -> AnalysisTimeline``; run in a thread.
        guard: Rate limiter and block flag for the resolver.
        debounce: Seconds to wait after a track change before starting.
        url_cache: Resolved source URLs by slug, so a failed download can be
            retried without spending resolver quota.
    """

    def __init__(
        self,
        analysis_cache: AnalysisCache,
        media_cache: MediaCache,
        resolver: Resolver,
        extract: Callable[[Path], AnalysisTimeline],
        guard: Optional[ConcurrencyGuard] = None,
        debounce: float = 0.8,
        url_cache: Optional[KeyedStore] = None,
    ):
        self.analysis_cache = analysis_cache
        self.media_cache = media_cache
        self.resolver = resolver
        self.extract = extract
        self.guard = guard or ConcurrencyGuard()
        self.debounce = debounce
        self.url_cache = url_cache if url_cache is not None else KeyedStore()

        self.state = AcquisitionState()
        self._published = PublishedState()
        self._subscribers: list[Subscriber] = []
        self._timer: Optional[asyncio.TimerHandle] = None
        self._tasks: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Consumers
    # ------------------------------------------------------------------

    @property
    def published(self) -> PublishedState:
        return self._published

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register *callback* for every published state; returns an unsubscribe function."""
        self._subscribers.append(callback)

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _publish(self, **changes):
        self._published = replace(self._published, **changes)
        for callback in list(self._subscribers):
            try:
                callback(self._published)
            except Exception:
                logger.exception("Subscriber %r failed", callback)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def _invalidate(self):
        """Supersede whatever is in flight."""
        self.state.generation += 1
        self.state.lock_owner = None
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def on_track_change(self, track: Optional[TrackKey]) -> bool:
        """
        Handle a track change reported by the playback monitor.

        Args:
            track: New track, or None when playback stopped.

        Returns:
            True if the event changed the current track.
        """
        if track is None:
            if self.state.track is None and self.state.phase == Phase.IDLE:
                return False
            self.clear()
            return True
        if track == self.state.track:
            return False

        previous, previous_phase = self.state.track, self.state.phase
        self._invalidate()
        if previous_phase in ACTIVE_PHASES:
            logger.info("Aborted acquisition of %s", previous)
            self.state.phase = Phase.ABORTED
            self._publish(is_analyzing=False, phase=Phase.ABORTED)

        self.state.track = track
        self.state.phase = Phase.DEBOUNCING
        self._publish(track=track, timeline=None, is_analyzing=True, phase=Phase.DEBOUNCING, error=None)

        generation = self.state.generation
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self.debounce, self._debounce_elapsed, generation)
        logger.debug("Track change to %s (generation %d)", track, generation)
        return True

    def clear(self):
        """Playback stopped: drop everything and go idle with no timeline."""
        self._invalidate()
        self.state.track = None
        self.state.phase = Phase.IDLE
        self._publish(track=None, timeline=None, is_analyzing=False, phase=Phase.IDLE, error=None)

    def trigger(self) -> bool:
        """
        Run acquisition for the current track now, e.g. a manual refresh.

        Returns:
            False if there is no track or an acquisition already holds the lock.
        """
        if self.state.track is None:
            return False
        if self.state.locked:
            logger.debug("Trigger rejected: acquisition in flight for %s", self.state.track)
            return False
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        return self._start(self.state.generation)

    def _debounce_elapsed(self, generation: int):
        self._timer = None
        if generation == self.state.generation:
            self._start(generation)

    def _start(self, generation: int) -> bool:
        if self.state.locked:
            logger.debug("Start rejected: lock held by generation %s", self.state.lock_owner)
            return False
        self.state.lock_owner = generation
        task = asyncio.get_running_loop().create_task(self._acquire(self.state.track, generation))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return True

    # ------------------------------------------------------------------
    # Acquisition
    # ------------------------------------------------------------------

    def _checkpoint(self, generation: int):
        if generation != self.state.generation:
            raise StaleGeneration(generation, self.state.generation)

    def _enter(self, phase: Phase, generation: int):
        self._checkpoint(generation)
        self.state.phase = phase
        self._publish(phase=phase, is_analyzing=True)

    def _fail(self, generation: int, message: str):
        self._checkpoint(generation)
        logger.warning("Acquisition of %s failed: %s", self.state.track, message)
        self.state.phase = Phase.FAILED
        self._publish(timeline=None, is_analyzing=False, phase=Phase.FAILED, error=message)

    def _finish(self, track: TrackKey, timeline: AnalysisTimeline, generation: int, store: bool):
        self._enter(Phase.PUBLISHING, generation)
        if store:
            try:
                self.analysis_cache.put(track, timeline)
            except CacheIOFailure as exc:
                logger.warning("Could not store analysis for %s: %s", track, exc)
        self.state.phase = Phase.IDLE
        self._publish(timeline=timeline, is_analyzing=False, phase=Phase.IDLE, error=None)
        logger.info("Published timeline for %s", track)

    async def _read_tier(self, name: str, fn: Callable, track: TrackKey):
        try:
            return await asyncio.to_thread(fn, track)
        except CacheIOFailure as exc:
            logger.warning("%s cache unreadable for %s, treating as miss: %s", name, track, exc)
            return None

    async def _acquire(self, track: TrackKey, generation: int):
        try:
            await self._run(track, generation)
        except StaleGeneration as exc:
            logger.debug("Dropped stale acquisition of %s: %s", track, exc)
        except Exception as exc:
            logger.exception("Unexpected error acquiring %s", track)
            if generation == self.state.generation:
                self._fail(generation, f"{type(exc).__name__}: {exc}")
        finally:
            if self.state.lock_owner == generation:
                self.state.lock_owner = None

    async def _run(self, track: TrackKey, generation: int):
        self._enter(Phase.CHECK_ANALYSIS_CACHE, generation)
        timeline = await self._read_tier("Analysis", self.analysis_cache.get, track)
        self._checkpoint(generation)
        if timeline is not None:
            logger.info("Analysis cache hit for %s", track)
            self._finish(track, timeline, generation, store=False)
            return

        self._enter(Phase.CHECK_MEDIA_CACHE, generation)
        path = await self._read_tier("Media", self.media_cache.check_cache, track)
        self._checkpoint(generation)

        if path is None:
            path = await self._fetch(track, generation)
            if path is None:
                return
        else:
            logger.info("Media cache hit for %s", track)

        self._enter(Phase.EXTRACTING, generation)
        try:
            timeline = await asyncio.to_thread(self.extract, path)
        except DecodeFailure as exc:
            self._fail(generation, str(exc))
            return
        self._checkpoint(generation)
        self._finish(track, timeline, generation, store=True)

    def _lookup_url(self, track: TrackKey) -> Optional[str]:
        payload = self.url_cache.get(track.slug)
        if isinstance(payload, dict) and payload.get("url"):
            return payload["url"]
        return None

    def _remember_url(self, track: TrackKey, url: str):
        try:
            self.url_cache.put(track.slug, {"url": url})
        except CacheIOFailure as exc:
            logger.warning("Could not store resolved URL for %s: %s", track, exc)

    async def _fetch(self, track: TrackKey, generation: int) -> Optional[Path]:
        """Resolve and download media; returns None after publishing a failure."""
        url = await self._read_tier("URL", self._lookup_url, track)
        self._checkpoint(generation)
        if url is not None:
            logger.info("Resolved URL cache hit for %s", track)
        else:
            url = await self._resolve(track, generation)
            if url is None:
                return None

        self._enter(Phase.DOWNLOADING, generation)
        try:
            path = await asyncio.to_thread(self.media_cache.download, track, url)
        except DownloadFailure as exc:
            self._fail(generation, str(exc))
            return None
        self._checkpoint(generation)
        try:
            self.media_cache.register(track, path, url)
        except CacheIOFailure as exc:
            logger.warning("Could not index media for %s: %s", track, exc)
        return path

    async def _resolve(self, track: TrackKey, generation: int) -> Optional[str]:
        """Ask the resolver for a source URL; returns None after publishing a failure."""
        if self.guard.blocked:
            self._fail(generation, f"resolver blocked ({self.guard.block_reason}) and no cached media")
            return None

        self._enter(Phase.RESOLVING, generation)
        try:
            url = await self.guard.call(self.resolver.resolve, track.artist, track.title)
        except ResolverBlocked as exc:
            self._fail(generation, f"resolver blocked: {exc.reason}")
            return None
        self._checkpoint(generation)
        if url is None:
            self._fail(generation, f"no source found for {track}")
            return None
        self._remember_url(track, url)
        return url

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def join(self):
        """Wait until no debounce timer or acquisition is pending."""
        loop = asyncio.get_running_loop()
        while self._timer is not None or self._tasks:
            if self._tasks:
                await asyncio.gather(*list(self._tasks), return_exceptions=True)
            elif self._timer is not None:
                await asyncio.sleep(max(0.0, self._timer.when() - loop.time()) + 0.001)

    async def close(self):
        """Supersede everything and wait for in-flight tasks to unwind."""
        self._invalidate()
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


def build_orchestrator(
    config: EngineConfig,
    pipeline: AnalysisPipeline,
    debounce: Optional[float] = None,
) -> AcquisitionOrchestrator:
    """
    Wire an orchestrator with on-disk caches, the YouTube resolver and yt-dlp.

    Args:
        config: EngineConfig.
        pipeline: AnalysisPipeline used for extraction.
        debounce: Override for ``config.acquisition.debounce_seconds``.
    """
    acq = config.acquisition
    analysis_store = KeyedStore(DirectoryBackend(acq.analysis_dir), ttl=acq.cache_ttl)
    media_store = KeyedStore(DirectoryBackend(acq.media_dir / "index"), ttl=acq.cache_ttl)
    media_cache = MediaCache(acq.media_dir, YtDlpDownloader(), store=media_store)
    media_cache.rescan()
    url_store = KeyedStore(DirectoryBackend(acq.url_dir), ttl=acq.cache_ttl)

    return AcquisitionOrchestrator(
        analysis_cache=AnalysisCache(analysis_store),
        media_cache=media_cache,
        resolver=YouTubeResolver(acq.youtube_api_key),
        extract=pipeline.process,
        guard=ConcurrencyGuard(min_interval=acq.resolver_min_interval),
        debounce=acq.debounce_seconds if debounce is None else debounce,
        url_cache=url_store,
    )
