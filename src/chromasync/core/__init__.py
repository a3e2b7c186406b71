"""Core audio processing modules."""

from chromasync.core.analyzer import ChromaExtractor, MelBandExtractor, RhythmExtractor
from chromasync.core.pitch import PitchTracker
from chromasync.core.query import FrameQuery
from chromasync.core.spectral import SpectralFrameExtractor

__all__ = [
    "SpectralFrameExtractor",
    "MelBandExtractor",
    "ChromaExtractor",
    "RhythmExtractor",
    "PitchTracker",
    "FrameQuery",
]
