"""Serialization of analysis timelines."""

from chromasync.io.exporter import TimelineExporter

__all__ = ["TimelineExporter"]
