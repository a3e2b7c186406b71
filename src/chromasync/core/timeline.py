"""
Immutable analysis results.

An :class:`AnalysisTimeline` bundles every feature series extracted from one
recording.  Series are stored as parallel ``times``/``values`` arrays that are
sorted by time and flagged read-only, so a published timeline can be shared
with any number of readers without copying.
"""

from dataclasses import dataclass
from typing import Optional

import numpy as np

CHROMA_NAMES = ["C", "C#", "D", "D#", "E", "F", "F#", "G", "G#", "A", "A#", "B"]


def _frozen(arr, dtype=np.float64, ndim: int = 1) -> np.ndarray:
    """Return a read-only copy of *arr* with the requested rank."""
    out = np.array(arr, dtype=dtype, copy=True)
    if ndim == 2 and out.ndim == 1:
        out = out.reshape(len(out), -1) if out.size else out.reshape(0, 0)
    out.setflags(write=False)
    return out


# ---------------------------------------------------------------------------
# Per-instant frames
# ---------------------------------------------------------------------------

@dataclass(frozen=True, eq=False)
class MelFrame:
    """Log-compressed band energies at one instant."""

    time: float
    bands: np.ndarray  # (n_bands,)


@dataclass(frozen=True, eq=False)
class ChromaFrame:
    """Pitch-class profile at one instant, normalized to [0,1]."""

    time: float
    values: np.ndarray  # (12,)

    @property
    def dominant_index(self) -> int:
        return int(np.argmax(self.values))

    @property
    def dominant_name(self) -> str:
        return CHROMA_NAMES[self.dominant_index]


@dataclass(frozen=True)
class PitchFrame:
    """Fundamental frequency estimate; frequency is 0 when unvoiced."""

    time: float
    frequency: float
    confidence: float

    @property
    def voiced(self) -> bool:
        return self.frequency > 0.0


# ---------------------------------------------------------------------------
# Series storage
# ---------------------------------------------------------------------------

@dataclass(frozen=True, eq=False)
class FeatureSeries:
    """
    Time-sorted series of fixed-width feature vectors.

    ``times`` has shape (n,) and ``values`` has shape (n, width).  Both are
    copied and made read-only on construction.

    Raises:
        ValueError: If the arrays disagree in length or times are unsorted.
    """

    times: np.ndarray
    values: np.ndarray

    def __post_init__(self):
        times = _frozen(self.times)
        values = _frozen(self.values, ndim=2)
        if times.ndim != 1:
            raise ValueError("times must be one-dimensional")
        if len(times) != len(values):
            raise ValueError(
                f"times ({len(times)}) and values ({len(values)}) differ in length"
            )
        if len(times) > 1 and np.any(np.diff(times) < 0):
            raise ValueError("series times must be sorted ascending")
        object.__setattr__(self, "times", times)
        object.__setattr__(self, "values", values)

    @classmethod
    def empty(cls, width: int) -> "FeatureSeries":
        return cls(times=np.zeros(0), values=np.zeros((0, width)))

    def __len__(self) -> int:
        return len(self.times)

    @property
    def width(self) -> int:
        return self.values.shape[1] if self.values.ndim == 2 else 0

    @property
    def is_empty(self) -> bool:
        return len(self.times) == 0


@dataclass(frozen=True, eq=False)
class RhythmSummary:
    """Tempo, beat positions and beat density for a whole recording."""

    bpm: float
    beat_times: np.ndarray        # ascending, all <= duration
    density_times: np.ndarray     # bucket start times
    density_counts: np.ndarray    # beats per bucket
    confidence: float = 0.0       # [0,1]

    def __post_init__(self):
        beat_times = _frozen(self.beat_times)
        if len(beat_times) > 1 and np.any(np.diff(beat_times) < 0):
            raise ValueError("beat times must be sorted ascending")
        object.__setattr__(self, "beat_times", beat_times)
        object.__setattr__(self, "density_times", _frozen(self.density_times))
        object.__setattr__(self, "density_counts", _frozen(self.density_counts, dtype=np.int64))

    @classmethod
    def fallback(cls, bpm: float = 120.0) -> "RhythmSummary":
        """Summary used when rhythm extraction fails."""
        return cls(
            bpm=bpm,
            beat_times=np.zeros(0),
            density_times=np.zeros(0),
            density_counts=np.zeros(0, dtype=np.int64),
            confidence=0.0,
        )

    @property
    def n_beats(self) -> int:
        return len(self.beat_times)


# ---------------------------------------------------------------------------
# Aggregate
# ---------------------------------------------------------------------------

@dataclass(frozen=True, eq=False)
class AnalysisTimeline:
    """Complete, immutable feature set for one recording."""

    duration: float
    sample_rate: int
    mel: FeatureSeries
    chroma: FeatureSeries
    pitch: FeatureSeries          # values[:, 0] = Hz, values[:, 1] = confidence
    rhythm: RhythmSummary
    analysis_time: float = 0.0    # wall seconds spent extracting
    source: Optional[str] = None

    @property
    def bpm(self) -> float:
        return self.rhythm.bpm

    def feature_counts(self) -> dict[str, int]:
        """Number of frames per feature, for logging and CLI summaries."""
        return {
            "mel": len(self.mel),
            "chroma": len(self.chroma),
            "pitch": len(self.pitch),
            "beats": self.rhythm.n_beats,
        }
