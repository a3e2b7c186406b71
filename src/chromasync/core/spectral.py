"""
Reduced-resolution magnitude spectra.

Frames are taken at a fixed wall-clock cadence rather than a hop size, and
each frame is transformed by direct summation over a small number of output
bins.  Only every ``frame_size // 256``-th windowed sample enters the sum, so
the cost per frame is bounded no matter how large the window is.  This trades
frequency accuracy for predictable CPU use; the output is meant to drive
visuals, not measurement.
"""

import math
from dataclasses import dataclass
from typing import Iterator

import numpy as np
from scipy import signal as scipy_signal

from chromasync.core.signal import AudioSignal


@dataclass
class SpectralFrame:
    """One magnitude spectrum at a point in time."""

    time: float
    magnitudes: np.ndarray  # (n_bins,)


class SpectralFrameExtractor:
    """
    Windows a signal at a fixed cadence and produces magnitude spectra.

    Bin ``k`` is evaluated at fractional DFT index ``k * (N/2) / n_bins``,
    so the ``n_bins`` outputs span DC up to (but excluding) Nyquist.
    """

    # Sub-sampling target: about this many samples enter each sum
    SUMMATION_POINTS = 256

    def __init__(
        self,
        n_bins: int,
        interval: float,
        frame_size: int = 2048,
        sample_rate: int = 44100,
        block_size: int = 512,
    ):
        """
        Initialize the extractor.

        Args:
            n_bins: Number of output magnitude bins.
            interval: Seconds between consecutive frame starts.
            frame_size: Analysis window length in samples.
            sample_rate: Expected sample rate of incoming signals.
            block_size: Frames transformed per batch in :meth:`extract`.
        """
        if n_bins <= 0:
            raise ValueError("n_bins must be positive")
        if interval <= 0:
            raise ValueError("interval must be positive")

        self.n_bins = n_bins
        self.interval = interval
        self.frame_size = frame_size
        self.sample_rate = sample_rate
        self.block_size = block_size

        self.step = max(1, frame_size // self.SUMMATION_POINTS)
        self._positions = np.arange(0, frame_size, self.step)
        # Symmetric Hann: 0.5 * (1 - cos(2*pi*i / (N-1)))
        window = scipy_signal.windows.hann(frame_size, sym=True)
        self._window = window[self._positions]

        bin_index = np.arange(n_bins) * (frame_size / 2.0) / n_bins
        self._basis = np.exp(
            -2j * np.pi * np.outer(self._positions, bin_index) / frame_size
        )
        self._norm = frame_size / self.step

    # ------------------------------------------------------------------
    # Frame layout
    # ------------------------------------------------------------------

    def frame_layout(self, signal: AudioSignal) -> tuple[np.ndarray, np.ndarray]:
        """
        Compute frame times and start samples for a signal.

        Frame ``i`` sits at ``i * interval`` and starts at sample
        ``round(time * sr)``.  Windows that would run past the end of the
        signal are dropped, never zero-padded.

        Returns:
            Tuple of (times, start_samples).
        """
        n_candidates = int(math.floor(signal.duration / self.interval + 1e-9))
        times = np.arange(n_candidates) * self.interval
        starts = np.floor(times * signal.sample_rate + 0.5).astype(np.int64)

        complete = starts + self.frame_size <= signal.n_samples
        # starts are increasing, so the complete windows form a prefix
        n_frames = int(np.count_nonzero(complete))
        return times[:n_frames], starts[:n_frames]

    # ------------------------------------------------------------------
    # Transforms
    # ------------------------------------------------------------------

    def spectrum(self, window_samples: np.ndarray) -> np.ndarray:
        """
        Magnitude spectrum of a single raw window.

        Args:
            window_samples: At least ``frame_size`` samples; extra samples
                are ignored.

        Returns:
            (n_bins,) magnitudes.
        """
        window_samples = np.asarray(window_samples, dtype=np.float64)
        if len(window_samples) < self.frame_size:
            raise ValueError(
                f"Window needs {self.frame_size} samples, got {len(window_samples)}"
            )
        sub = window_samples[self._positions] * self._window
        return np.abs(sub @ self._basis) / self._norm

    def _transform_block(self, samples: np.ndarray, starts: np.ndarray) -> np.ndarray:
        index = starts[:, None] + self._positions[None, :]
        sub = samples[index].astype(np.float64) * self._window
        return np.abs(sub @ self._basis) / self._norm

    def iter_frames(self, signal: AudioSignal) -> Iterator[SpectralFrame]:
        """Lazily yield one SpectralFrame per complete window."""
        times, starts = self.frame_layout(signal)
        for time, start in zip(times, starts):
            yield SpectralFrame(
                time=float(time),
                magnitudes=self.spectrum(signal.samples[start:start + self.frame_size]),
            )

    def extract(self, signal: AudioSignal) -> tuple[np.ndarray, np.ndarray]:
        """
        Transform every complete window of a signal.

        Work is done in blocks of ``block_size`` frames to bound memory.

        Returns:
            Tuple of (times (n,), magnitudes (n, n_bins)).
        """
        times, starts = self.frame_layout(signal)
        magnitudes = np.zeros((len(starts), self.n_bins), dtype=np.float64)
        for lo in range(0, len(starts), self.block_size):
            hi = lo + self.block_size
            magnitudes[lo:hi] = self._transform_block(signal.samples, starts[lo:hi])
        return times, magnitudes
