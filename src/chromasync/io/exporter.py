"""
Timeline serialization module.

Converts an :class:`AnalysisTimeline` to a JSON-compatible dictionary and
back.  The same format is written to disk by the CLI and stored by the
analysis cache, so ``from_dict(to_dict(t))`` must reproduce ``t`` up to the
configured rounding precision.
"""

import json
from pathlib import Path
from typing import Any, Union

import numpy as np

from chromasync.core.timeline import AnalysisTimeline, FeatureSeries, RhythmSummary

SCHEMA_VERSION = "1.0"

_SERIES_WIDTHS = {"mel": None, "chroma": 12, "pitch": 2}


class TimelineExporter:
    """
    Exports analysis timelines to JSON (and NumPy archives).

    Each feature series is stored as parallel ``times`` and ``values``
    lists; rhythm is stored as a flat block.
    """

    def __init__(self, precision: int = 4):
        """
        Initialize the exporter.

        Args:
            precision: Decimal places for floating point values.
        """
        self.precision = precision

    def _round(self, value: float) -> float:
        """Round to configured precision."""
        return round(float(value), self.precision)

    def _round_list(self, values) -> list:
        return np.round(np.asarray(values, dtype=np.float64), self.precision).tolist()

    def _series_to_dict(self, series: FeatureSeries) -> dict[str, Any]:
        return {
            "width": series.width,
            "times": self._round_list(series.times),
            "values": self._round_list(series.values),
        }

    @staticmethod
    def _series_from_dict(block: dict[str, Any], width: int) -> FeatureSeries:
        times = block.get("times", [])
        if not times:
            return FeatureSeries.empty(int(block.get("width", width)))
        return FeatureSeries(times=np.asarray(times), values=np.asarray(block["values"]))

    # ------------------------------------------------------------------
    # Dictionaries
    # ------------------------------------------------------------------

    def to_dict(self, timeline: AnalysisTimeline) -> dict[str, Any]:
        """
        Return the timeline as a dictionary (for in-memory use or caching).

        Args:
            timeline: Timeline to serialize.

        Returns:
            JSON-compatible dictionary.
        """
        rhythm = timeline.rhythm
        return {
            "metadata": {
                "schema_version": SCHEMA_VERSION,
                "duration": self._round(timeline.duration),
                "sample_rate": int(timeline.sample_rate),
                "analysis_time": self._round(timeline.analysis_time),
                "source": timeline.source,
                "bpm": self._round(rhythm.bpm),
                "counts": timeline.feature_counts(),
            },
            "mel": self._series_to_dict(timeline.mel),
            "chroma": self._series_to_dict(timeline.chroma),
            "pitch": self._series_to_dict(timeline.pitch),
            "rhythm": {
                "bpm": self._round(rhythm.bpm),
                "confidence": self._round(rhythm.confidence),
                "beat_times": self._round_list(rhythm.beat_times),
                "density_times": self._round_list(rhythm.density_times),
                "density_counts": [int(c) for c in rhythm.density_counts],
            },
        }

    def from_dict(self, data: dict[str, Any]) -> AnalysisTimeline:
        """
        Rebuild a timeline from :meth:`to_dict` output.

        Raises:
            ValueError: If the payload is malformed or from an
                incompatible schema major version.
        """
        try:
            meta = data["metadata"]
            version = str(meta.get("schema_version", ""))
            if version.split(".")[0] != SCHEMA_VERSION.split(".")[0]:
                raise ValueError(f"Unsupported timeline schema version: {version!r}")

            rhythm_block = data["rhythm"]
            rhythm = RhythmSummary(
                bpm=float(rhythm_block["bpm"]),
                beat_times=np.asarray(rhythm_block.get("beat_times", []), dtype=np.float64),
                density_times=np.asarray(rhythm_block.get("density_times", []), dtype=np.float64),
                density_counts=np.asarray(rhythm_block.get("density_counts", []), dtype=np.int64),
                confidence=float(rhythm_block.get("confidence", 0.0)),
            )
            series = {
                name: self._series_from_dict(data.get(name, {}), width or 0)
                for name, width in _SERIES_WIDTHS.items()
            }
            return AnalysisTimeline(
                duration=float(meta["duration"]),
                sample_rate=int(meta["sample_rate"]),
                analysis_time=float(meta.get("analysis_time", 0.0)),
                source=meta.get("source"),
                rhythm=rhythm,
                **series,
            )
        except (KeyError, TypeError) as exc:
            raise ValueError(f"Malformed timeline payload: {exc}") from exc

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    def export_json(
        self,
        timeline: AnalysisTimeline,
        output_path: Union[str, Path],
        indent: int = 2,
    ) -> Path:
        """
        Export timeline to JSON file.

        Args:
            timeline: Timeline to write.
            output_path: Path for output JSON file.
            indent: JSON indentation level.

        Returns:
            Path to written file.
        """
        output_path = Path(output_path)
        with open(output_path, "w", encoding="utf-8") as f:
            json.dump(self.to_dict(timeline), f, indent=indent)
        return output_path

    def load_json(self, input_path: Union[str, Path]) -> AnalysisTimeline:
        """Read a timeline previously written by :meth:`export_json`."""
        with open(Path(input_path), "r", encoding="utf-8") as f:
            return self.from_dict(json.load(f))

    def export_numpy(
        self,
        timeline: AnalysisTimeline,
        output_path: Union[str, Path],
    ) -> Path:
        """
        Export features as NumPy .npz archive for faster loading.

        Args:
            timeline: Timeline to write.
            output_path: Path for output .npz file.

        Returns:
            Path to written file.
        """
        output_path = Path(output_path)
        rhythm = timeline.rhythm
        np.savez_compressed(
            output_path,
            mel_times=timeline.mel.times,
            mel=timeline.mel.values,
            chroma_times=timeline.chroma.times,
            chroma=timeline.chroma.values,
            pitch_times=timeline.pitch.times,
            pitch=timeline.pitch.values,
            beat_times=rhythm.beat_times,
            density_times=rhythm.density_times,
            density_counts=rhythm.density_counts,
            bpm=np.array([rhythm.bpm]),
            duration=np.array([timeline.duration]),
            sample_rate=np.array([timeline.sample_rate]),
        )
        return output_path
