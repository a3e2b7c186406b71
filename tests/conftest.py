"""Shared fixtures: synthetic signals and hand-built timelines."""

import numpy as np
import pytest

from chromasync.core.signal import AudioSignal
from chromasync.core.timeline import AnalysisTimeline, FeatureSeries, RhythmSummary

SR = 44100


def _tone(freq, duration, sr=SR, amplitude=0.5):
    t = np.arange(int(sr * duration)) / sr
    return (amplitude * np.sin(2 * np.pi * freq * t)).astype(np.float32)


@pytest.fixture
def pure_sine():
    """A4 (440 Hz) sine, 2 seconds."""
    return AudioSignal(samples=_tone(440.0, 2.0), sample_rate=SR)


@pytest.fixture
def silence():
    return AudioSignal(samples=np.zeros(SR * 2, dtype=np.float32), sample_rate=SR)


@pytest.fixture
def mixed_signal():
    """C-major triad with a click every 0.5 s, 4 seconds."""
    duration = 4.0
    y = _tone(261.63, duration, amplitude=0.2) + _tone(329.63, duration, amplitude=0.2) + _tone(392.0, duration, amplitude=0.2)
    click = np.zeros_like(y)
    for start in range(0, len(y), SR // 2):
        click[start:start + 200] = np.hanning(400)[:len(click[start:start + 200])] * 0.8
    return AudioSignal(samples=(y + click).astype(np.float32), sample_rate=SR)


@pytest.fixture
def make_timeline():
    """Factory for small timelines with known frame positions."""

    def _make(
        beats=(0.0, 0.5, 1.0, 1.5),
        duration=2.0,
        bpm=120.0,
        empty=(),
    ):
        n_mel = int(round(duration / 0.1))
        mel_times = np.arange(n_mel) * 0.1
        mel = FeatureSeries(times=mel_times, values=np.tile(np.arange(n_mel, dtype=float)[:, None], (1, 40)))

        chroma_values = np.zeros((n_mel, 12))
        chroma_values[np.arange(n_mel), np.arange(n_mel) % 12] = 1.0
        chroma = FeatureSeries(times=mel_times, values=chroma_values)

        pitch = FeatureSeries(
            times=np.array([0.0, 0.5, 1.0]),
            values=np.array([[0.0, 0.0], [440.0, 0.9], [220.0, 0.5]]),
        )

        series = {"mel": mel, "chroma": chroma, "pitch": pitch}
        widths = {"mel": 40, "chroma": 12, "pitch": 2}
        for name in empty:
            series[name] = FeatureSeries.empty(widths[name])

        beats = np.asarray(beats, dtype=float)
        n_buckets = int(np.ceil(duration / 0.1))
        counts = np.bincount(np.clip((beats / 0.1 + 1e-9).astype(int), 0, n_buckets - 1), minlength=n_buckets)
        rhythm = RhythmSummary(
            bpm=bpm,
            beat_times=beats,
            density_times=np.arange(n_buckets) * 0.1,
            density_counts=counts,
            confidence=0.75,
        )
        return AnalysisTimeline(
            duration=duration,
            sample_rate=SR,
            rhythm=rhythm,
            analysis_time=0.5,
            source="fixture",
            **series,
        )

    return _make
