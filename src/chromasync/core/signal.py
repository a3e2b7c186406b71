"""
Audio signal loading.

Decodes a file into the mono, fixed-rate buffer every extractor consumes.
Stereo sources are mixed down by averaging channels.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Union

import librosa
import numpy as np

from chromasync.errors import DecodeFailure

logger = logging.getLogger(__name__)


@dataclass
class AudioSignal:
    """Mono sample buffer plus its sample rate."""

    samples: np.ndarray
    sample_rate: int

    def __post_init__(self):
        samples = np.asarray(self.samples, dtype=np.float32)
        if samples.ndim == 2:
            # (channels, n) -> mono
            samples = samples.mean(axis=0).astype(np.float32)
        if samples.ndim != 1:
            raise ValueError(f"Expected a 1-D or 2-D sample buffer, got shape {samples.shape}")
        if self.sample_rate <= 0:
            raise ValueError("sample_rate must be positive")
        self.samples = samples

    @property
    def n_samples(self) -> int:
        """Total number of samples in the signal."""
        return len(self.samples)

    @property
    def duration(self) -> float:
        """Signal length in seconds."""
        return self.n_samples / float(self.sample_rate)


def load_signal(
    audio_path: Union[str, Path],
    sample_rate: int = 44100,
) -> AudioSignal:
    """
    Load audio from file.

    Args:
        audio_path: Path to audio file (wav, mp3, flac).
        sample_rate: Target sample rate; the file is resampled if needed.

    Returns:
        AudioSignal with mono samples at ``sample_rate``.

    Raises:
        DecodeFailure: If the file is missing, unreadable or empty.
    """
    audio_path = Path(audio_path)
    if not audio_path.exists():
        raise DecodeFailure(f"Audio file not found: {audio_path}")

    try:
        y, sr_out = librosa.load(audio_path, sr=sample_rate, mono=True)
    except Exception as exc:
        raise DecodeFailure(f"Could not decode {audio_path}: {exc}") from exc

    if y.size == 0:
        raise DecodeFailure(f"Decoded zero samples from {audio_path}")

    logger.debug("Decoded %s: %d samples at %d Hz", audio_path.name, y.size, sr_out)
    return AudioSignal(samples=y, sample_rate=int(sr_out))
