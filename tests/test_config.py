"""Tests for configuration defaults and environment overrides."""

from pathlib import Path

import pytest

from chromasync.config import AcquisitionConfig, EngineConfig, ExtractionConfig


def test_extraction_defaults():
    config = ExtractionConfig()
    assert config.sample_rate == 44100
    assert config.frame_size == 2048
    assert config.n_mel_bins == 80
    assert config.chroma_bins == 256
    assert (config.min_tempo, config.max_tempo) == (40.0, 208.0)


def test_acquisition_paths(tmp_path):
    config = AcquisitionConfig(cache_dir=tmp_path)
    assert config.analysis_dir == tmp_path / "analysis"
    assert config.media_dir == tmp_path / "media"
    assert config.url_dir == tmp_path / "urls"
    assert config.debounce_seconds == 0.8
    assert config.resolver_min_interval == 2.0


def test_from_env_defaults():
    config = EngineConfig.from_env({})
    assert config.extraction.pitch_backend == "thread"
    assert config.acquisition.youtube_api_key is None


def test_from_env_overrides():
    config = EngineConfig.from_env(
        {
            "CHROMASYNC_SAMPLE_RATE": "22050",
            "CHROMASYNC_PITCH_BACKEND": "process",
            "CHROMASYNC_DEBOUNCE": "0.2",
            "CHROMASYNC_RESOLVER_INTERVAL": "5",
            "CHROMASYNC_POLL_INTERVAL": "0.5",
            "CHROMASYNC_CACHE_DIR": "/tmp/chromasync-test",
            "CHROMASYNC_CACHE_TTL": "60",
            "YOUTUBE_API_KEY": "secret",
        }
    )
    assert config.extraction.sample_rate == 22050
    assert config.extraction.pitch_backend == "process"
    assert config.acquisition.debounce_seconds == 0.2
    assert config.acquisition.resolver_min_interval == 5.0
    assert config.acquisition.poll_interval == 0.5
    assert config.acquisition.cache_dir == Path("/tmp/chromasync-test")
    assert config.acquisition.cache_ttl == 60.0
    assert config.acquisition.youtube_api_key == "secret"


def test_from_env_bad_backend():
    with pytest.raises(ValueError, match="pitch backend"):
        EngineConfig.from_env({"CHROMASYNC_PITCH_BACKEND": "gpu"})


def test_empty_api_key_ignored():
    assert EngineConfig.from_env({"YOUTUBE_API_KEY": ""}).acquisition.youtube_api_key is None
