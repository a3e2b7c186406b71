"""Tests for the mel-band, chroma and rhythm extractors."""

import numpy as np
import pytest

from chromasync.config import ExtractionConfig
from chromasync.core.analyzer import (
    BeatEstimate,
    ChromaExtractor,
    LibrosaBeatTracker,
    MelBandExtractor,
    RhythmExtractor,
)
from chromasync.core.signal import AudioSignal
from chromasync.core.timeline import RhythmSummary

SR = 44100


def fixed_tracker(beats, bpm=128.0, confidence=0.5):
    def tracker(y, sr):
        return BeatEstimate(bpm=bpm, beat_times=np.asarray(beats, dtype=float), confidence=confidence)

    return tracker


# ---------------------------------------------------------------------------
# Mel bands
# ---------------------------------------------------------------------------

class TestMelBands:
    def test_long_signal_frame_count(self):
        signal = AudioSignal(samples=np.zeros(SR * 180, dtype=np.float32), sample_rate=SR)
        series = MelBandExtractor().extract(signal)

        assert len(series) == 1800
        assert series.values.shape == (1800, 40)
        assert series.times[-1] == pytest.approx(179.9)

    def test_log_compression(self):
        extractor = MelBandExtractor()
        magnitudes = np.zeros((1, 80))
        magnitudes[0, 0:2] = [0.3, 0.6]    # band 0 sum 0.9
        bands = extractor.compress(magnitudes)

        assert bands.shape == (1, 40)
        assert bands[0, 0] == pytest.approx(np.log10(1 + 0.9 * 100) * 10)
        assert np.all(bands[0, 1:] == 0)

    def test_silence_gives_zero_bands(self, silence):
        series = MelBandExtractor().extract(silence)
        assert len(series) == 20
        assert np.all(series.values == 0)

    def test_series_is_read_only(self, pure_sine):
        series = MelBandExtractor().extract(pure_sine)
        with pytest.raises(ValueError):
            series.values[0, 0] = 1.0


# ---------------------------------------------------------------------------
# Chroma
# ---------------------------------------------------------------------------

class TestChroma:
    def test_values_normalized(self, mixed_signal):
        series = ChromaExtractor().extract(mixed_signal)

        assert series.values.shape[1] == 12
        assert np.all(series.values >= 0.0)
        assert np.all(series.values <= 1.0)
        for row in series.values:
            if row.sum() > 0:
                assert row.max() == 1.0

    def test_a440_dominant(self, pure_sine):
        series = ChromaExtractor().extract(pure_sine)
        dominant = np.argmax(series.values, axis=1)
        assert np.all(dominant == 9)   # A
        assert ChromaExtractor.chroma_index_to_name(9) == "A"

    def test_silence_has_no_nan(self, silence):
        series = ChromaExtractor().extract(silence)
        assert len(series) > 0
        assert not np.any(np.isnan(series.values))
        assert np.all(series.values == 0)

    def test_cadence(self, pure_sine):
        series = ChromaExtractor().extract(pure_sine)
        assert np.diff(series.times) == pytest.approx(np.full(len(series) - 1, 0.0333))

    def test_fold_matrix_band_limits(self):
        extractor = ChromaExtractor()
        fold = extractor.fold_matrix(SR)
        freqs = np.arange(256) / 256 * SR / 2

        assert fold.shape == (256, 12)
        assert fold[0].sum() == 0
        in_band = (freqs > 60) & (freqs < 4000)
        in_band[0] = False
        assert np.all(fold[in_band].sum(axis=1) == 1)
        assert np.all(fold[~in_band].sum(axis=1) == 0)

    def test_normalize_uses_epsilon_floor(self):
        extractor = ChromaExtractor()
        energy = np.array([[0.0] * 12, [0.0] * 11 + [2.0]])
        out = extractor.normalize(energy)
        assert np.all(out[0] == 0)
        assert out[1, 11] == 1.0


# ---------------------------------------------------------------------------
# Rhythm
# ---------------------------------------------------------------------------

class TestRhythm:
    def test_beats_past_duration_dropped(self, silence):
        raw = [0.0, 0.5, 1.0, 1.5, 2.0, 2.3, 2.9]
        summary = RhythmExtractor(beat_tracker=fixed_tracker(raw)).extract(silence)

        assert list(summary.beat_times) == [0.0, 0.5, 1.0, 1.5, 2.0]
        assert np.all(summary.beat_times <= silence.duration)

    def test_density_sum_equals_retained_beats(self, silence):
        raw = [0.05, 0.07, 0.31, 1.99, 2.0, 5.0]
        summary = RhythmExtractor(beat_tracker=fixed_tracker(raw)).extract(silence)

        assert len(summary.density_counts) == 20
        assert summary.density_counts.sum() == summary.n_beats == 5
        assert summary.density_counts[0] == 2
        assert summary.density_counts[3] == 1
        assert summary.density_counts[19] == 2   # 1.99 and the beat at exactly 2.0

    def test_density_bucket_times(self, silence):
        summary = RhythmExtractor(beat_tracker=fixed_tracker([])).extract(silence)
        assert summary.density_times == pytest.approx(np.arange(20) * 0.1)
        assert summary.density_counts.sum() == 0

    def test_tracker_metadata_kept(self, silence):
        summary = RhythmExtractor(beat_tracker=fixed_tracker([0.5], bpm=97.0, confidence=0.3)).extract(silence)
        assert summary.bpm == 97.0
        assert summary.confidence == pytest.approx(0.3)

    def test_unsorted_tracker_output_sorted(self, silence):
        summary = RhythmExtractor(beat_tracker=fixed_tracker([1.5, 0.5, 1.0])).extract(silence)
        assert list(summary.beat_times) == [0.5, 1.0, 1.5]

    def test_librosa_tracker_on_click_track(self, mixed_signal):
        config = ExtractionConfig()
        summary = RhythmExtractor(config).extract(mixed_signal)

        assert config.min_tempo <= summary.bpm <= config.max_tempo
        assert np.all(summary.beat_times <= mixed_signal.duration)
        assert 0.0 <= summary.confidence <= 1.0
        assert summary.density_counts.sum() == summary.n_beats

    def test_default_tracker_bounds(self):
        extractor = RhythmExtractor()
        assert isinstance(extractor.beat_tracker, LibrosaBeatTracker)
        assert extractor.beat_tracker.max_tempo == 208.0
        assert extractor.beat_tracker.min_tempo == 40.0

    def test_fallback_summary(self):
        summary = RhythmSummary.fallback()
        assert summary.bpm == 120.0
        assert summary.n_beats == 0
        assert len(summary.density_counts) == 0
        assert summary.confidence == 0.0
