"""Track acquisition: caching, resolution, download and orchestration."""

from chromasync.acquisition.caches import AnalysisCache, MediaCache
from chromasync.acquisition.guard import ConcurrencyGuard
from chromasync.acquisition.keys import TrackKey
from chromasync.acquisition.orchestrator import AcquisitionOrchestrator, Phase, PublishedState
from chromasync.acquisition.playback import PlaybackClock, PlaybackMonitor, PlaybackState, build_monitor
from chromasync.acquisition.store import KeyedStore

__all__ = [
    "TrackKey",
    "KeyedStore",
    "AnalysisCache",
    "MediaCache",
    "ConcurrencyGuard",
    "AcquisitionOrchestrator",
    "Phase",
    "PublishedState",
    "PlaybackClock",
    "PlaybackMonitor",
    "PlaybackState",
    "build_monitor",
]
