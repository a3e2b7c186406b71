"""
Melodic pitch tracking.

A salience-based fundamental-frequency tracker in the spirit of MELODIA:

1. Spectral peaks are picked from an STFT; peaks more than
   ``magnitude_threshold`` dB under the frame maximum are ignored.
2. Each peak votes for every sub-harmonic ``f/h`` (h = 1..n_harmonics) on a
   10-cent grid, weighted by ``harmonic_weight ** (h-1)`` and spread over one
   semitone with a cos^2 kernel.
3. A contour is followed frame by frame, preferring the salience peak
   closest to the previous pitch within the allowed continuity jump.
4. Octave outliers are pulled towards a moving-average pitch for
   ``filter_iterations`` passes.
5. Contours whose mean salience falls under the peak-distribution threshold
   are unvoiced, as are contours shorter than ``min_duration``.

The tracker is CPU heavy, so :class:`PitchWorker` runs it on a dedicated
executor and hands results back as :class:`PitchResponse` messages.
"""

import logging
import math
import time
from concurrent.futures import Executor, Future, ProcessPoolExecutor, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Optional

import librosa
import numpy as np
from scipy.ndimage import uniform_filter1d

from chromasync.core.signal import AudioSignal
from chromasync.core.timeline import FeatureSeries

logger = logging.getLogger(__name__)


@dataclass
class PitchParameters:
    """Tracker settings; defaults follow the MELODIA reference values."""

    frame_size: int = 2048
    interval: float = 0.0333          # hop = round(sr * interval)
    bin_resolution: float = 10.0      # cents
    n_bins: int = 600                 # 600 x 10 cents = 5 octaves above reference
    reference_frequency: float = 55.0
    min_frequency: float = 80.0
    max_frequency: float = 1760.0
    n_harmonics: int = 20
    harmonic_weight: float = 0.8
    magnitude_compression: float = 1.0
    magnitude_threshold: float = 40.0          # dB below frame maximum
    peak_frame_threshold: float = 0.9          # fraction of frame's top salience
    peak_distribution_threshold: float = 0.9   # std devs below mean salience
    pitch_continuity: float = 27.5625          # cents per millisecond
    time_continuity: float = 0.1               # seconds a contour may go silent
    min_duration: float = 0.1                  # seconds
    filter_iterations: int = 3
    averaging_window: float = 5.0              # seconds, octave correction

    def hop_length(self, sample_rate: int) -> int:
        return int(round(sample_rate * self.interval))


class PitchTracker:
    """
    Estimates the melodic fundamental frequency of a mono signal.

    Output series has width 2: column 0 is frequency in Hz (0 when unvoiced),
    column 1 is confidence in [0,1].  Frame ``i`` sits at ``i * hop / sr``.
    """

    def __init__(self, params: Optional[PitchParameters] = None):
        self.params = params or PitchParameters()

    # ------------------------------------------------------------------
    # Grid helpers
    # ------------------------------------------------------------------

    def hz_to_bin(self, freq) -> np.ndarray:
        p = self.params
        return 1200.0 * np.log2(np.asarray(freq, dtype=np.float64) / p.reference_frequency) / p.bin_resolution

    def bin_to_hz(self, bins) -> np.ndarray:
        p = self.params
        return p.reference_frequency * 2.0 ** (np.asarray(bins, dtype=np.float64) * p.bin_resolution / 1200.0)

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _spectral_peaks(self, mag: np.ndarray, sr: int) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        """
        Pick per-frame spectral peaks with parabolic refinement.

        Args:
            mag: (n_freq, n_frames) STFT magnitudes.
            sr: Sample rate.

        Returns:
            Tuple of (frame_index, frequency_hz, magnitude) for all peaks.
        """
        p = self.params
        centre = mag[1:-1]
        is_peak = (centre > mag[:-2]) & (centre >= mag[2:])

        frame_max = mag.max(axis=0)
        floor = frame_max * 10.0 ** (-p.magnitude_threshold / 20.0)
        is_peak &= centre > floor[None, :]
        is_peak &= frame_max[None, :] > 0

        k, frames = np.nonzero(is_peak)
        k = k + 1

        # Parabolic interpolation on log magnitude
        eps = 1e-12
        alpha = np.log(mag[k - 1, frames] + eps)
        beta = np.log(mag[k, frames] + eps)
        gamma = np.log(mag[k + 1, frames] + eps)
        denom = alpha - 2.0 * beta + gamma
        safe = np.abs(denom) > eps
        offset = np.zeros_like(beta)
        offset[safe] = 0.5 * (alpha[safe] - gamma[safe]) / denom[safe]
        offset = np.clip(offset, -0.5, 0.5)

        freqs = (k + offset) * sr / p.frame_size
        amps = mag[k, frames] ** p.magnitude_compression
        return frames, freqs, amps

    def salience(self, mag: np.ndarray, sr: int) -> np.ndarray:
        """
        Harmonic-summation salience on the cent grid.

        Returns:
            (n_frames, n_bins) salience values.
        """
        p = self.params
        n_frames = mag.shape[1]
        total = np.zeros(n_frames * p.n_bins)

        frames, freqs, amps = self._spectral_peaks(mag, sr)
        if len(frames) == 0:
            return total.reshape(n_frames, p.n_bins)

        half_width = int(round(100.0 / p.bin_resolution))  # one semitone
        offsets = np.arange(-half_width, half_width + 1)
        lo_bin = max(0, int(math.ceil(float(self.hz_to_bin(p.min_frequency)))))
        hi_bin = min(p.n_bins - 1, int(math.floor(float(self.hz_to_bin(p.max_frequency)))))

        for h in range(1, p.n_harmonics + 1):
            f0 = freqs / h
            keep = (f0 >= p.min_frequency) & (f0 <= p.max_frequency)
            if not np.any(keep):
                continue
            centre = self.hz_to_bin(f0[keep])
            target = np.round(centre)[:, None] + offsets[None, :]
            distance = np.abs(target - centre[:, None]) / half_width
            weight = np.where(distance <= 1.0, np.cos(distance * np.pi / 2.0) ** 2, 0.0)
            weight *= (amps[keep] * p.harmonic_weight ** (h - 1))[:, None]

            target = target.astype(np.int64)
            valid = (target >= lo_bin) & (target <= hi_bin) & (weight > 0)
            flat = frames[keep][:, None] * p.n_bins + target
            total += np.bincount(flat[valid], weights=weight[valid], minlength=total.size)

        return total.reshape(n_frames, p.n_bins)

    def _follow_contour(self, sal: np.ndarray, hop_seconds: float) -> np.ndarray:
        """Continuity-constrained bin choice per frame (-1 where empty)."""
        p = self.params
        n_frames = sal.shape[0]
        max_jump = self._max_jump(hop_seconds)
        max_gap = max(1, int(round(p.time_continuity / hop_seconds)))

        path = np.full(n_frames, -1, dtype=np.int64)
        prev_bin, prev_frame = -1, -max_gap - 1
        for i in range(n_frames):
            row = sal[i]
            top = row.max()
            if top <= 0:
                continue
            best = int(np.argmax(row))
            if prev_bin >= 0 and i - prev_frame <= max_gap:
                lo = max(0, prev_bin - max_jump)
                hi = min(len(row), prev_bin + max_jump + 1)
                local = int(np.argmax(row[lo:hi])) + lo
                if row[local] >= p.peak_frame_threshold * top:
                    best = local
            path[i] = best
            prev_bin, prev_frame = best, i
        return path

    def _correct_octaves(self, path: np.ndarray, sal: np.ndarray, hop_seconds: float) -> np.ndarray:
        """Pull bins lying over half an octave from the moving mean back by an octave."""
        p = self.params
        octave = int(round(1200.0 / p.bin_resolution))
        window = max(1, int(round(p.averaging_window / hop_seconds)))
        path = path.copy()

        for _ in range(p.filter_iterations):
            voiced = path >= 0
            if not np.any(voiced):
                break
            weights = voiced.astype(np.float64)
            numer = uniform_filter1d(np.where(voiced, path, 0).astype(np.float64), window, mode="nearest")
            denom = uniform_filter1d(weights, window, mode="nearest")
            mean = np.divide(numer, denom, out=np.zeros_like(numer), where=denom > 0)

            changed = False
            for i in np.nonzero(voiced)[0]:
                delta = path[i] - mean[i]
                if abs(delta) <= octave / 2:
                    continue
                shifted = path[i] - octave if delta > 0 else path[i] + octave
                if 0 <= shifted < sal.shape[1] and sal[i, shifted] > 0:
                    path[i] = shifted
                    changed = True
            if not changed:
                break
        return path

    def _max_jump(self, hop_seconds: float) -> int:
        p = self.params
        return int(math.ceil(p.pitch_continuity * hop_seconds * 1000.0 / p.bin_resolution))

    def _contours(self, active: np.ndarray, path: np.ndarray, max_jump: int):
        """Yield (start, stop) for runs of active frames without pitch jumps."""
        n_frames = len(path)
        i = 0
        while i < n_frames:
            if not active[i]:
                i += 1
                continue
            j = i + 1
            while j < n_frames and active[j] and abs(path[j] - path[j - 1]) <= max_jump:
                j += 1
            yield i, j
            i = j

    def _voicing(self, path: np.ndarray, sal: np.ndarray, hop_seconds: float) -> np.ndarray:
        """
        Boolean voiced mask.

        Frames are grouped into contours.  A contour is voiced when it lasts
        at least ``min_duration`` and its mean salience is no more than
        ``peak_distribution_threshold`` standard deviations under the mean
        salience of all tracked frames.
        Frames more than ``magnitude_threshold`` dB under the loudest tracked
        frame never join a contour.
        """
        p = self.params
        n_frames = len(path)
        values = np.zeros(n_frames)
        has = path >= 0
        values[has] = sal[np.nonzero(has)[0], path[has]]

        positive = values[values > 0]
        voiced = np.zeros(n_frames, dtype=bool)
        if positive.size == 0:
            return voiced

        threshold = positive.mean() - p.peak_distribution_threshold * positive.std()
        silence_floor = positive.max() * 10.0 ** (-p.magnitude_threshold / 20.0)
        active = (values > 0) & (values >= silence_floor)

        min_frames = int(math.ceil(p.min_duration / hop_seconds - 1e-9))
        for start, stop in self._contours(active, path, self._max_jump(hop_seconds)):
            if stop - start >= min_frames and values[start:stop].mean() >= threshold:
                voiced[start:stop] = True
        return voiced

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def track(self, samples: np.ndarray, sample_rate: int) -> FeatureSeries:
        """
        Run the full tracker over a mono buffer.

        Args:
            samples: Mono audio samples.
            sample_rate: Sample rate in Hz.

        Returns:
            FeatureSeries of width 2 (frequency, confidence); empty when the
            signal is shorter than one frame.  Each row is stamped at
            the centre of its analysis window.
        """
        p = self.params
        hop = p.hop_length(sample_rate)
        if len(samples) < p.frame_size or hop <= 0:
            return FeatureSeries.empty(2)

        mag = np.abs(
            librosa.stft(
                np.asarray(samples, dtype=np.float32),
                n_fft=p.frame_size,
                hop_length=hop,
                window="hann",
                center=False,
            )
        )
        hop_seconds = hop / float(sample_rate)
        n_frames = mag.shape[1]
        # Frames are uncentred, so stamp each one at the middle of its window
        times = (np.arange(n_frames) * hop + p.frame_size / 2.0) / float(sample_rate)

        sal = self.salience(mag, sample_rate)
        path = self._follow_contour(sal, hop_seconds)
        path = self._correct_octaves(path, sal, hop_seconds)
        voiced = self._voicing(path, sal, hop_seconds)

        freq = np.zeros(n_frames)
        conf = np.zeros(n_frames)
        peak = sal.max()
        if peak > 0 and np.any(voiced):
            idx = np.nonzero(voiced)[0]
            freq[idx] = self.bin_to_hz(path[idx])
            conf[idx] = np.clip(sal[idx, path[idx]] / peak, 0.0, 1.0)

        return FeatureSeries(times=times, values=np.column_stack([freq, conf]))


# ---------------------------------------------------------------------------
# Worker channel
# ---------------------------------------------------------------------------

@dataclass
class PitchRequest:
    """Message sent to the pitch worker."""

    samples: np.ndarray
    sample_rate: int
    params: PitchParameters = field(default_factory=PitchParameters)


@dataclass
class PitchResponse:
    """Message returned by the pitch worker."""

    series: Optional[FeatureSeries]
    error: Optional[str] = None
    elapsed: float = 0.0


def run_pitch_request(request: PitchRequest) -> PitchResponse:
    """Worker entry point; never raises, failures travel in the response."""
    start = time.perf_counter()
    try:
        series = PitchTracker(request.params).track(request.samples, request.sample_rate)
    except Exception as exc:
        return PitchResponse(
            series=None,
            error=f"{type(exc).__name__}: {exc}",
            elapsed=time.perf_counter() - start,
        )
    return PitchResponse(series=series, elapsed=time.perf_counter() - start)


class PitchWorker:
    """
    Dedicated single-slot executor for pitch tracking.

    With the ``"thread"`` backend the sample buffer is lent as a read-only
    view and the caller must wait on the returned future before letting go
    of the signal.  The ``"process"`` backend pickles the buffer across.
    """

    def __init__(self, backend: str = "thread", params: Optional[PitchParameters] = None):
        if backend not in ("thread", "process"):
            raise ValueError(f"Unknown pitch backend: {backend!r}")
        self.backend = backend
        self.params = params or PitchParameters()
        self._executor: Optional[Executor] = None

    def _ensure_executor(self) -> Executor:
        if self._executor is None:
            if self.backend == "process":
                self._executor = ProcessPoolExecutor(max_workers=1)
            else:
                self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="pitch")
        return self._executor

    def submit(self, signal: AudioSignal) -> "Future[PitchResponse]":
        samples = signal.samples
        if self.backend == "thread":
            samples = samples.view()
            samples.setflags(write=False)
        request = PitchRequest(samples=samples, sample_rate=signal.sample_rate, params=self.params)
        return self._ensure_executor().submit(run_pitch_request, request)

    def collect(self, future: "Future[PitchResponse]", timeout: Optional[float] = None) -> FeatureSeries:
        """
        Wait for a submitted request and unwrap it.

        Failures degrade to an empty series and are logged, never raised.
        """
        try:
            response = future.result(timeout=timeout)
        except Exception as exc:
            logger.warning("Pitch worker failed: %s", exc)
            return FeatureSeries.empty(2)

        if response.series is None:
            logger.warning("Pitch tracking failed: %s", response.error)
            return FeatureSeries.empty(2)

        logger.debug("Pitch tracked %d frames in %.2fs", len(response.series), response.elapsed)
        # Re-freeze: arrays coming back from a process are writeable copies
        return FeatureSeries(times=response.series.times, values=response.series.values)

    def shutdown(self, wait: bool = True):
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
            self._executor = None

    def __enter__(self) -> "PitchWorker":
        return self

    def __exit__(self, *exc_info):
        self.shutdown()
