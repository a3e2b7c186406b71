"""Playback-synced audio feature extraction and track acquisition."""

from chromasync.core.analyzer import ChromaExtractor, MelBandExtractor, RhythmExtractor
from chromasync.core.pitch import PitchTracker
from chromasync.core.query import FeatureSnapshot, FrameQuery
from chromasync.core.timeline import AnalysisTimeline
from chromasync.io.exporter import TimelineExporter
from chromasync.pipeline import AnalysisPipeline

__version__ = "0.1.0"
__all__ = [
    "MelBandExtractor",
    "ChromaExtractor",
    "RhythmExtractor",
    "PitchTracker",
    "AnalysisTimeline",
    "FrameQuery",
    "FeatureSnapshot",
    "TimelineExporter",
    "AnalysisPipeline",
]
