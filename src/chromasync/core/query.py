"""
Point-in-time lookup over an analysis timeline.

The renderer keeps its own playback clock and asks, many times per second,
"what do the features look like at time t?".  :class:`FrameQuery` answers
with the nearest frame of each feature series (binary search, O(log n)) and
with the proximity to the closest beat.  Results are assembled into a
:class:`FeatureSnapshot`, a single-instant view in the same spirit as a live
analyzer frame.

FrameQuery holds no mutable state: the same timeline and time always give
the same answer.
"""

import math
from dataclasses import dataclass
from typing import Any, Optional

import numpy as np

from chromasync.core.timeline import (
    CHROMA_NAMES,
    AnalysisTimeline,
    ChromaFrame,
    MelFrame,
    PitchFrame,
)

DEFAULT_BEAT_TOLERANCE = 0.05
DEFAULT_BPM = 120.0


def nearest_index(times: np.ndarray, t: float) -> Optional[int]:
    """
    Index of the frame closest to *t* in a sorted time array.

    Times outside the range clamp to the first or last frame.  When two
    neighbours are equally close the later one wins; the earlier frame is
    chosen only if it is strictly closer.

    Returns:
        Frame index, or None for an empty array.
    """
    n = len(times)
    if n == 0:
        return None
    i = int(np.searchsorted(times, t, side="left"))
    if i >= n:
        return n - 1
    if i > 0 and abs(times[i - 1] - t) < abs(times[i] - t):
        return i - 1
    return i


@dataclass(frozen=True)
class BeatProximity:
    """How close a query time is to a detected beat."""

    on_beat: bool
    strength: float = 0.0
    beat_index: Optional[int] = None


@dataclass(eq=False)
class FeatureSnapshot:
    """
    Single-instant feature vector handed to the renderer.

    Fields for missing features stay None (or their neutral defaults) so
    callers can check availability before use.
    """

    time: float = 0.0

    # Spectrum
    mel: Optional[np.ndarray] = None

    # Tonality
    chroma: Optional[np.ndarray] = None
    dominant_chroma_index: Optional[int] = None

    # Pitch
    pitch_hz: float = 0.0
    pitch_confidence: float = 0.0

    # Rhythm
    bpm: float = DEFAULT_BPM
    on_beat: bool = False
    beat_strength: float = 0.0
    beat_index: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        """JSON-compatible view of the snapshot."""
        dominant = self.dominant_chroma_index
        return {
            "time": self.time,
            "mel": None if self.mel is None else [float(v) for v in self.mel],
            "chroma": None if self.chroma is None else [float(v) for v in self.chroma],
            "dominant_chroma": None if dominant is None else CHROMA_NAMES[dominant],
            "pitch_hz": self.pitch_hz,
            "pitch_confidence": self.pitch_confidence,
            "bpm": self.bpm,
            "on_beat": self.on_beat,
            "beat_strength": self.beat_strength,
            "beat_index": self.beat_index,
        }


class FrameQuery:
    """
    Nearest-frame and beat-proximity lookups for one timeline.

    Each feature is looked up independently; an empty series yields None
    for that feature only.
    """

    def __init__(self, timeline: AnalysisTimeline, beat_tolerance: float = DEFAULT_BEAT_TOLERANCE):
        """
        Initialize the query.

        Args:
            timeline: Published analysis timeline.
            beat_tolerance: Default window, in seconds, for :meth:`beat`.
        """
        self.timeline = timeline
        self.beat_tolerance = beat_tolerance

    # ------------------------------------------------------------------
    # Per-feature lookups
    # ------------------------------------------------------------------

    def mel(self, t: float) -> Optional[MelFrame]:
        series = self.timeline.mel
        i = nearest_index(series.times, t)
        if i is None:
            return None
        return MelFrame(time=float(series.times[i]), bands=series.values[i])

    def chroma(self, t: float) -> Optional[ChromaFrame]:
        series = self.timeline.chroma
        i = nearest_index(series.times, t)
        if i is None:
            return None
        return ChromaFrame(time=float(series.times[i]), values=series.values[i])

    def pitch(self, t: float) -> Optional[PitchFrame]:
        series = self.timeline.pitch
        i = nearest_index(series.times, t)
        if i is None:
            return None
        return PitchFrame(
            time=float(series.times[i]),
            frequency=float(series.values[i, 0]),
            confidence=float(series.values[i, 1]),
        )

    def beat(self, t: float, tolerance: Optional[float] = None) -> BeatProximity:
        """
        Check whether *t* falls within *tolerance* of a beat.

        The first beat (in time order) closer than the tolerance wins.
        Strength falls linearly from 1 at the beat to 0 at the tolerance
        edge, and every fourth beat (index divisible by 4) is treated as a
        downbeat and weighted by 1.5.
        """
        tol = self.beat_tolerance if tolerance is None else tolerance
        beats = self.timeline.rhythm.beat_times
        if len(beats) == 0 or tol <= 0:
            return BeatProximity(on_beat=False)

        # Beats are sorted: skip everything well before the window, then
        # scan forward until past it.
        start = max(0, int(np.searchsorted(beats, t - tol, side="left")) - 1)
        for i in range(start, len(beats)):
            diff = abs(beats[i] - t)
            if diff < tol:
                strength = 1.0 - diff / tol
                if i % 4 == 0:
                    strength *= 1.5
                return BeatProximity(on_beat=True, strength=float(strength), beat_index=i)
            if beats[i] > t + tol:
                break
        return BeatProximity(on_beat=False)

    # ------------------------------------------------------------------
    # Composite views
    # ------------------------------------------------------------------

    def at(self, t: float) -> FeatureSnapshot:
        """Assemble a FeatureSnapshot for time *t*."""
        mel = self.mel(t)
        chroma = self.chroma(t)
        pitch = self.pitch(t)
        beat = self.beat(t)
        return FeatureSnapshot(
            time=float(t),
            mel=None if mel is None else mel.bands,
            chroma=None if chroma is None else chroma.values,
            dominant_chroma_index=None if chroma is None else chroma.dominant_index,
            pitch_hz=0.0 if pitch is None else pitch.frequency,
            pitch_confidence=0.0 if pitch is None else pitch.confidence,
            bpm=self.timeline.rhythm.bpm or DEFAULT_BPM,
            on_beat=beat.on_beat,
            beat_strength=beat.strength,
            beat_index=beat.beat_index,
        )

    def lookup_table(self, resolution: float = 0.02) -> list[FeatureSnapshot]:
        """
        Precompute snapshots every *resolution* seconds over [0, duration).

        Useful when a renderer prefers an index lookup to a search per frame.
        """
        if resolution <= 0:
            raise ValueError("resolution must be positive")
        n = max(0, int(math.ceil(self.timeline.duration / resolution - 1e-9)))
        return [self.at(i * resolution) for i in range(n)]
