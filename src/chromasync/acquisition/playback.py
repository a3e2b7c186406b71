"""
Playback-state polling and the renderer clock.

The playback provider (a streaming service's "currently playing" endpoint)
is polled about once per second.  A changed track id becomes a track-change
event for the orchestrator; the reported progress keeps a local
:class:`PlaybackClock` in step with the real player between polls.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from chromasync.acquisition.keys import TrackKey
from chromasync.config import AcquisitionConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PlaybackState:
    """One sample of the external player's state."""

    track_id: Optional[str]
    track_name: str = ""
    artist_name: str = ""
    progress_ms: int = 0
    is_playing: bool = False

    @property
    def progress(self) -> float:
        return self.progress_ms / 1000.0

    def track_key(self) -> Optional[TrackKey]:
        if self.track_id is None:
            return None
        try:
            return TrackKey(artist=self.artist_name, title=self.track_name)
        except ValueError:
            return None


PlaybackProvider = Callable[[], Awaitable[Optional[PlaybackState]]]


class PlaybackClock:
    """
    Locally advancing playback position.

    The clock runs freely between polls and is snapped to the reported
    position when ``resync_interval`` has passed since the last snap, when
    it has drifted more than ``drift_threshold`` seconds, or when the
    play/pause state flips.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        resync_interval: float = 1.0,
        drift_threshold: float = 0.15,
    ):
        self.clock = clock
        self.resync_interval = resync_interval
        self.drift_threshold = drift_threshold
        self._position = 0.0
        self._anchor = clock()
        self._playing = False
        self._last_sync: Optional[float] = None

    @property
    def playing(self) -> bool:
        return self._playing

    def position(self) -> float:
        """Current playback position in seconds."""
        if not self._playing:
            return self._position
        return self._position + (self.clock() - self._anchor)

    def drift(self, reported: float) -> float:
        return abs(self.position() - reported)

    def sync(self, reported: float, is_playing: bool, force: bool = False) -> bool:
        """
        Offer a reported position to the clock.

        Returns:
            True if the clock snapped to *reported*.
        """
        now = self.clock()
        due = (
            force
            or self._last_sync is None
            or is_playing != self._playing
            or now - self._last_sync >= self.resync_interval
            or self.drift(reported) > self.drift_threshold
        )
        if not due:
            return False
        self._position = reported
        self._anchor = now
        self._playing = is_playing
        self._last_sync = now
        return True


class PlaybackMonitor:
    """
    Polls the playback provider and forwards track changes.

    Args:
        provider: Async callable returning the current PlaybackState (or None
            when nothing is playing).
        on_track_change: Receives the new TrackKey, or None when playback stops.
        clock: Optional clock kept in sync with reported progress.
        interval: Seconds between polls.
    """

    def __init__(
        self,
        provider: PlaybackProvider,
        on_track_change: Callable[[Optional[TrackKey]], object],
        clock: Optional[PlaybackClock] = None,
        interval: float = 1.0,
    ):
        self.provider = provider
        self.on_track_change = on_track_change
        self.clock = clock
        self.interval = interval
        self._last_track_id: Optional[str] = None

    async def poll_once(self) -> Optional[PlaybackState]:
        """Poll the provider once; provider errors are logged, not raised."""
        try:
            state = await self.provider()
        except Exception as exc:
            logger.warning("Playback provider failed: %s", exc)
            return None

        track_id = None if state is None else state.track_id
        if track_id != self._last_track_id:
            self._last_track_id = track_id
            self.on_track_change(None if state is None else state.track_key())

        if state is not None and self.clock is not None:
            self.clock.sync(state.progress, state.is_playing)
        return state

    async def run(self, stop: Optional[asyncio.Event] = None):
        """Poll every ``interval`` seconds until *stop* is set (or cancelled)."""
        stop = stop or asyncio.Event()
        while not stop.is_set():
            await self.poll_once()
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass


def build_monitor(
    config: AcquisitionConfig,
    provider: PlaybackProvider,
    on_track_change: Callable[[Optional[TrackKey]], object],
    clock: Optional[PlaybackClock] = None,
) -> PlaybackMonitor:
    """
    Wire a monitor polling every ``config.poll_interval`` seconds.

    When no clock is given, one is created that resyncs once per poll.
    """
    if clock is None:
        clock = PlaybackClock(resync_interval=config.poll_interval)
    return PlaybackMonitor(provider, on_track_change, clock=clock, interval=config.poll_interval)
