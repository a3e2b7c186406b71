"""
Feature extraction module for audio analysis.

Extracts visual drivers from a mono signal: mel-style band energies,
pitch-class profiles (chroma), and tempo/beat information.  Each extractor
runs at its own fixed cadence and returns a self-contained series; pitch
tracking lives in :mod:`chromasync.core.pitch` because it runs off-thread.
"""

import logging
import math
from dataclasses import dataclass
from typing import Callable, Optional

import librosa
import numpy as np

from chromasync.config import ExtractionConfig
from chromasync.core.signal import AudioSignal
from chromasync.core.spectral import SpectralFrameExtractor
from chromasync.core.timeline import CHROMA_NAMES, FeatureSeries, RhythmSummary

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Mel-style bands
# ---------------------------------------------------------------------------

class MelBandExtractor:
    """
    Groups a reduced spectrum into contiguous bands with log compression.

    The grouping is linear (``mel_bins_per_band`` adjacent bins per band),
    not a perceptual mel filterbank.  It approximates the look of a mel
    display at a fraction of the cost.
    """

    def __init__(self, config: Optional[ExtractionConfig] = None):
        """
        Initialize the extractor.

        Args:
            config: Extraction parameters. Defaults to ``ExtractionConfig()``.
        """
        self.config = config or ExtractionConfig()
        self.spectral = SpectralFrameExtractor(
            n_bins=self.config.n_mel_bins,
            interval=self.config.mel_interval,
            frame_size=self.config.frame_size,
            sample_rate=self.config.sample_rate,
        )

    def compress(self, magnitudes: np.ndarray) -> np.ndarray:
        """
        Fold (n, n_mel_bins) magnitudes into (n, n_mel_bands) energies.

        Each band is ``log10(1 + sum * mel_scale) * mel_gain``.
        """
        cfg = self.config
        magnitudes = np.atleast_2d(magnitudes)
        summed = magnitudes.reshape(
            len(magnitudes), cfg.n_mel_bands, cfg.mel_bins_per_band
        ).sum(axis=2)
        return np.log10(1.0 + summed * cfg.mel_scale) * cfg.mel_gain

    def extract(self, signal: AudioSignal) -> FeatureSeries:
        times, magnitudes = self.spectral.extract(signal)
        if len(times) == 0:
            return FeatureSeries.empty(self.config.n_mel_bands)
        return FeatureSeries(times=times, values=self.compress(magnitudes))


# ---------------------------------------------------------------------------
# Chroma
# ---------------------------------------------------------------------------

class ChromaExtractor:
    """
    Folds a reduced spectrum onto 12 pitch classes.

    Bin ``b`` (b >= 1) sits at ``b / n_bins * nyquist``.  Bins strictly inside
    (chroma_fmin, chroma_fmax) map to ``round(12*log2(f/440) + 69) mod 12``.
    Every frame is normalized by its own maximum, so any frame with energy
    has a dominant class equal to exactly 1.0.
    """

    def __init__(self, config: Optional[ExtractionConfig] = None):
        self.config = config or ExtractionConfig()
        self.spectral = SpectralFrameExtractor(
            n_bins=self.config.chroma_bins,
            interval=self.config.chroma_interval,
            frame_size=self.config.frame_size,
            sample_rate=self.config.sample_rate,
        )

    def fold_matrix(self, sample_rate: int) -> np.ndarray:
        """
        Build the (n_bins, 12) bin-to-pitch-class assignment matrix.

        Args:
            sample_rate: Sample rate of the analyzed signal.

        Returns:
            One-hot rows for in-band bins, zero rows elsewhere.
        """
        cfg = self.config
        n_bins = cfg.chroma_bins
        fold = np.zeros((n_bins, 12))

        bins = np.arange(1, n_bins)
        freqs = bins / n_bins * (sample_rate / 2.0)
        in_band = (freqs > cfg.chroma_fmin) & (freqs < cfg.chroma_fmax)

        midi = 12.0 * np.log2(freqs[in_band] / 440.0) + 69.0
        pitch_class = np.floor(midi + 0.5).astype(int) % 12
        fold[bins[in_band], pitch_class] = 1.0
        return fold

    def normalize(self, energy: np.ndarray) -> np.ndarray:
        """Divide each row by ``max(row_max, epsilon)``."""
        peak = np.maximum(energy.max(axis=1, keepdims=True), self.config.chroma_epsilon)
        return energy / peak

    def extract(self, signal: AudioSignal) -> FeatureSeries:
        times, magnitudes = self.spectral.extract(signal)
        if len(times) == 0:
            return FeatureSeries.empty(12)
        energy = magnitudes @ self.fold_matrix(signal.sample_rate)
        return FeatureSeries(times=times, values=self.normalize(energy))

    @staticmethod
    def chroma_index_to_name(index: int) -> str:
        """Convert chroma index (0-11) to note name."""
        return CHROMA_NAMES[index % 12]


# ---------------------------------------------------------------------------
# Rhythm
# ---------------------------------------------------------------------------

@dataclass
class BeatEstimate:
    """Raw output of a beat tracker, before clipping and bucketing."""

    bpm: float
    beat_times: np.ndarray
    confidence: float = 0.0


BeatTracker = Callable[[np.ndarray, int], BeatEstimate]


class LibrosaBeatTracker:
    """
    Default beat tracker built on librosa's onset envelope.

    Tempo is estimated once for the whole signal and clipped to
    [min_tempo, max_tempo]; beats are then tracked at that tempo.
    Confidence is the mean onset strength on the beats relative to the
    strongest onset in the recording.
    """

    def __init__(self, min_tempo: float = 40.0, max_tempo: float = 208.0, hop_length: int = 512):
        self.min_tempo = min_tempo
        self.max_tempo = max_tempo
        self.hop_length = hop_length

    def __call__(self, y: np.ndarray, sr: int) -> BeatEstimate:
        onset_env = librosa.onset.onset_strength(y=y, sr=sr, hop_length=self.hop_length)
        tempo = librosa.feature.tempo(
            onset_envelope=onset_env,
            sr=sr,
            hop_length=self.hop_length,
            max_tempo=self.max_tempo,
        )
        # Handle both scalar tempo and array tempo (librosa version differences)
        tempo = np.atleast_1d(tempo)
        bpm = float(tempo[0]) if len(tempo) > 0 else 120.0
        bpm = float(np.clip(bpm, self.min_tempo, self.max_tempo))

        _, beat_frames = librosa.beat.beat_track(
            onset_envelope=onset_env,
            sr=sr,
            hop_length=self.hop_length,
            bpm=bpm,
        )
        beat_frames = np.asarray(beat_frames, dtype=int)
        beat_times = librosa.frames_to_time(beat_frames, sr=sr, hop_length=self.hop_length)

        confidence = 0.0
        peak = float(onset_env.max()) if onset_env.size else 0.0
        if len(beat_frames) > 0 and peak > 0:
            confidence = float(np.clip(onset_env[beat_frames].mean() / peak, 0.0, 1.0))

        return BeatEstimate(bpm=bpm, beat_times=beat_times, confidence=confidence)


class RhythmExtractor:
    """
    Tempo, beat times and beat density for a whole signal.

    The tracker runs once over the full buffer.  Beats past the signal's
    duration are dropped, and the survivors are counted into fixed buckets
    aligned with the mel cadence.
    """

    def __init__(
        self,
        config: Optional[ExtractionConfig] = None,
        beat_tracker: Optional[BeatTracker] = None,
    ):
        """
        Initialize the extractor.

        Args:
            config: Extraction parameters.
            beat_tracker: Callable ``(y, sr) -> BeatEstimate``. Defaults to
                :class:`LibrosaBeatTracker` bounded by the config's tempo range.
        """
        self.config = config or ExtractionConfig()
        self.beat_tracker = beat_tracker or LibrosaBeatTracker(
            min_tempo=self.config.min_tempo,
            max_tempo=self.config.max_tempo,
        )

    def density(self, beat_times: np.ndarray, duration: float) -> tuple[np.ndarray, np.ndarray]:
        """
        Count beats per ``density_interval`` bucket.

        There are ``ceil(duration / interval)`` buckets; bucket ``i`` covers
        ``[i*interval, (i+1)*interval)``.  A beat landing exactly on the end
        of the signal is counted in the last bucket.

        Returns:
            Tuple of (bucket_start_times, counts).
        """
        interval = self.config.density_interval
        n_buckets = max(0, int(math.ceil(duration / interval - 1e-9)))
        if n_buckets == 0:
            return np.zeros(0), np.zeros(0, dtype=np.int64)

        index = np.floor(np.asarray(beat_times) / interval + 1e-9).astype(np.int64)
        index = np.clip(index, 0, n_buckets - 1)
        counts = np.bincount(index, minlength=n_buckets)
        return np.arange(n_buckets) * interval, counts

    def extract(self, signal: AudioSignal) -> RhythmSummary:
        estimate = self.beat_tracker(signal.samples, signal.sample_rate)
        duration = signal.duration

        beats = np.sort(np.asarray(estimate.beat_times, dtype=np.float64).ravel())
        n_raw = len(beats)
        beats = beats[(beats >= 0.0) & (beats <= duration)]
        if len(beats) < n_raw:
            logger.debug("Dropped %d beats outside [0, %.3f]", n_raw - len(beats), duration)

        density_times, counts = self.density(beats, duration)
        return RhythmSummary(
            bpm=float(estimate.bpm),
            beat_times=beats,
            density_times=density_times,
            density_counts=counts,
            confidence=float(estimate.confidence),
        )
