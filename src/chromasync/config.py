"""
Engine configuration.

Extraction constants and acquisition timings live in plain dataclasses so
callers can override single fields.  ``EngineConfig.from_env`` layers
``CHROMASYNC_*`` environment variables on top of the defaults.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional


@dataclass
class ExtractionConfig:
    """Parameters for the feature-extraction engine."""

    sample_rate: int = 44100
    frame_size: int = 2048

    # Mel-style bands
    mel_interval: float = 0.1        # seconds between mel frames
    n_mel_bands: int = 40
    mel_bins_per_band: int = 2
    mel_scale: float = 100.0         # log10(1 + sum * scale) * gain
    mel_gain: float = 10.0

    # Chroma
    chroma_interval: float = 0.0333
    chroma_bins: int = 256
    chroma_fmin: float = 60.0        # open interval (fmin, fmax)
    chroma_fmax: float = 4000.0
    chroma_epsilon: float = 1e-12

    # Pitch
    pitch_interval: float = 0.0333   # hop = round(sr * pitch_interval)
    pitch_backend: str = "thread"    # "thread" | "process"

    # Rhythm
    min_tempo: float = 40.0
    max_tempo: float = 208.0
    density_interval: float = 0.1
    fallback_bpm: float = 120.0

    @property
    def n_mel_bins(self) -> int:
        """Reduced spectrum size consumed by the mel extractor."""
        return self.n_mel_bands * self.mel_bins_per_band


@dataclass
class AcquisitionConfig:
    """Timings and storage locations for track acquisition."""

    debounce_seconds: float = 0.8
    resolver_min_interval: float = 2.0
    poll_interval: float = 1.0
    cache_dir: Path = field(default_factory=lambda: Path.home() / ".cache" / "chromasync")
    cache_ttl: float = 7 * 24 * 3600.0
    youtube_api_key: Optional[str] = None

    @property
    def analysis_dir(self) -> Path:
        return self.cache_dir / "analysis"

    @property
    def media_dir(self) -> Path:
        return self.cache_dir / "media"

    @property
    def url_dir(self) -> Path:
        return self.cache_dir / "urls"


@dataclass
class EngineConfig:
    """Bundle of extraction and acquisition settings."""

    extraction: ExtractionConfig = field(default_factory=ExtractionConfig)
    acquisition: AcquisitionConfig = field(default_factory=AcquisitionConfig)

    @classmethod
    def from_env(cls, environ: Optional[dict] = None) -> "EngineConfig":
        """
        Build a config from environment variables.

        Recognised variables: ``CHROMASYNC_SAMPLE_RATE``,
        ``CHROMASYNC_PITCH_BACKEND``, ``CHROMASYNC_DEBOUNCE``,
        ``CHROMASYNC_RESOLVER_INTERVAL``, ``CHROMASYNC_POLL_INTERVAL``,
        ``CHROMASYNC_CACHE_DIR``, ``CHROMASYNC_CACHE_TTL`` and
        ``YOUTUBE_API_KEY``.

        Args:
            environ: Mapping to read instead of ``os.environ``.

        Returns:
            EngineConfig with overrides applied.
        """
        env = os.environ if environ is None else environ
        config = cls()
        ext = config.extraction
        acq = config.acquisition

        if "CHROMASYNC_SAMPLE_RATE" in env:
            ext.sample_rate = int(env["CHROMASYNC_SAMPLE_RATE"])
        if "CHROMASYNC_PITCH_BACKEND" in env:
            ext.pitch_backend = env["CHROMASYNC_PITCH_BACKEND"]
        if "CHROMASYNC_DEBOUNCE" in env:
            acq.debounce_seconds = float(env["CHROMASYNC_DEBOUNCE"])
        if "CHROMASYNC_RESOLVER_INTERVAL" in env:
            acq.resolver_min_interval = float(env["CHROMASYNC_RESOLVER_INTERVAL"])
        if "CHROMASYNC_POLL_INTERVAL" in env:
            acq.poll_interval = float(env["CHROMASYNC_POLL_INTERVAL"])
        if "CHROMASYNC_CACHE_DIR" in env:
            acq.cache_dir = Path(env["CHROMASYNC_CACHE_DIR"]).expanduser()
        if "CHROMASYNC_CACHE_TTL" in env:
            acq.cache_ttl = float(env["CHROMASYNC_CACHE_TTL"])
        acq.youtube_api_key = env.get("YOUTUBE_API_KEY") or acq.youtube_api_key

        if ext.pitch_backend not in ("thread", "process"):
            raise ValueError(f"Unknown pitch backend: {ext.pitch_backend!r}")
        return config
