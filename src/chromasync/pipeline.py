"""
End-to-end analysis pipeline.

Loads a recording, runs every extractor and assembles an immutable
:class:`AnalysisTimeline`.  Pitch tracking is submitted to its worker first
and joined last, so it overlaps with the other extractors.  A failing
extractor only empties its own series; the rest of the timeline is still
produced.
"""

import logging
import time
from pathlib import Path
from typing import Callable, Optional, TypeVar, Union

from chromasync.config import ExtractionConfig
from chromasync.core.analyzer import BeatTracker, ChromaExtractor, MelBandExtractor, RhythmExtractor
from chromasync.core.pitch import PitchParameters, PitchWorker
from chromasync.core.signal import AudioSignal, load_signal
from chromasync.core.timeline import AnalysisTimeline, FeatureSeries, RhythmSummary

logger = logging.getLogger(__name__)

# Bump when extractor output changes so stale cache entries are not served
ANALYSIS_VERSION = "1"

T = TypeVar("T")


class AnalysisPipeline:
    """
    Runs all feature extractors over a signal.

    Example:
        >>> pipeline = AnalysisPipeline()
        >>> timeline = pipeline.process("song.mp3")
        >>> timeline.feature_counts()
    """

    def __init__(
        self,
        config: Optional[ExtractionConfig] = None,
        beat_tracker: Optional[BeatTracker] = None,
        pitch_worker: Optional[PitchWorker] = None,
    ):
        """
        Initialize the pipeline.

        Args:
            config: Extraction parameters.
            beat_tracker: Optional replacement for the librosa beat tracker.
            pitch_worker: Optional pre-built pitch worker.
        """
        self.config = config or ExtractionConfig()
        self.mel_extractor = MelBandExtractor(self.config)
        self.chroma_extractor = ChromaExtractor(self.config)
        self.rhythm_extractor = RhythmExtractor(self.config, beat_tracker=beat_tracker)
        self.pitch_worker = pitch_worker or PitchWorker(
            backend=self.config.pitch_backend,
            params=PitchParameters(
                frame_size=self.config.frame_size,
                interval=self.config.pitch_interval,
            ),
        )

    @staticmethod
    def _isolated(name: str, fn: Callable[[], T], fallback: Callable[[], T]) -> T:
        try:
            return fn()
        except Exception as exc:
            logger.warning("%s extraction failed, continuing without it: %s", name, exc)
            return fallback()

    def load(self, audio_path: Union[str, Path]) -> AudioSignal:
        """Decode *audio_path* at the configured sample rate."""
        return load_signal(audio_path, sample_rate=self.config.sample_rate)

    def analyze(self, signal: AudioSignal, source: Optional[str] = None) -> AnalysisTimeline:
        """
        Extract every feature from a decoded signal.

        Args:
            signal: Mono audio signal.
            source: Optional label recorded in the timeline.

        Returns:
            AnalysisTimeline; series of failed extractors are empty.
        """
        start = time.perf_counter()

        pitch_future = self._isolated("pitch", lambda: self.pitch_worker.submit(signal), lambda: None)

        rhythm = self._isolated(
            "rhythm",
            lambda: self.rhythm_extractor.extract(signal),
            lambda: RhythmSummary.fallback(self.config.fallback_bpm),
        )
        mel = self._isolated(
            "mel",
            lambda: self.mel_extractor.extract(signal),
            lambda: FeatureSeries.empty(self.config.n_mel_bands),
        )
        chroma = self._isolated(
            "chroma",
            lambda: self.chroma_extractor.extract(signal),
            lambda: FeatureSeries.empty(12),
        )

        # Completion barrier: the worker may hold a view of signal.samples
        if pitch_future is None:
            pitch = FeatureSeries.empty(2)
        else:
            pitch = self.pitch_worker.collect(pitch_future)

        timeline = AnalysisTimeline(
            duration=signal.duration,
            sample_rate=signal.sample_rate,
            mel=mel,
            chroma=chroma,
            pitch=pitch,
            rhythm=rhythm,
            analysis_time=time.perf_counter() - start,
            source=source,
        )
        logger.info(
            "Analyzed %.1fs of audio in %.2fs: %s",
            timeline.duration,
            timeline.analysis_time,
            timeline.feature_counts(),
        )
        return timeline

    def process(self, audio_path: Union[str, Path]) -> AnalysisTimeline:
        """
        Load and analyze an audio file in one step.

        Raises:
            DecodeFailure: If the file cannot be decoded.
        """
        signal = self.load(audio_path)
        return self.analyze(signal, source=str(audio_path))

    def close(self):
        self.pitch_worker.shutdown()

    def __enter__(self) -> "AnalysisPipeline":
        return self

    def __exit__(self, *exc_info):
        self.close()
