"""
Keyed storage with a single expiry policy.

A :class:`KeyedStore` maps slugs to JSON-compatible payloads.  Where the
entries live is delegated to a backend (process memory or a directory of
JSON files); expiry is decided in one place, by the store, for every
backend alike.
"""

import json
import logging
import os
import tempfile
import time
from pathlib import Path
from typing import Any, Callable, Iterator, Optional, Union

from chromasync.acquisition.keys import TrackKey, match_fuzzy
from chromasync.errors import CacheIOFailure

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------

class StoreBackend:
    """Raw record storage. Records are ``{"stored_at": float, "payload": ...}``."""

    def read(self, key: str) -> Optional[dict]:
        raise NotImplementedError

    def write(self, key: str, record: dict):
        raise NotImplementedError

    def delete(self, key: str):
        raise NotImplementedError

    def keys(self) -> Iterator[str]:
        raise NotImplementedError


class MemoryBackend(StoreBackend):
    """Dictionary-backed records that live as long as the process."""

    def __init__(self):
        self._records: dict[str, dict] = {}

    def read(self, key: str) -> Optional[dict]:
        return self._records.get(key)

    def write(self, key: str, record: dict):
        self._records[key] = record

    def delete(self, key: str):
        self._records.pop(key, None)

    def keys(self) -> Iterator[str]:
        return iter(list(self._records))


class DirectoryBackend(StoreBackend):
    """
    One ``<key>.json`` file per record.

    Writes go through a temporary file and an atomic rename, so readers
    never see a half-written record.
    """

    SUFFIX = ".json"

    def __init__(self, directory: Union[str, Path]):
        self.directory = Path(directory)

    def _path(self, key: str) -> Path:
        return self.directory / f"{key}{self.SUFFIX}"

    def read(self, key: str) -> Optional[dict]:
        path = self._path(key)
        try:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as exc:
            raise CacheIOFailure(f"Could not read cache entry {path}: {exc}") from exc

    def write(self, key: str, record: dict):
        path = self._path(key)
        tmp = None
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=self.directory, suffix=".tmp")
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(record, f)
            os.replace(tmp, path)
        except (OSError, TypeError, ValueError) as exc:
            if tmp is not None:
                Path(tmp).unlink(missing_ok=True)
            raise CacheIOFailure(f"Could not write cache entry {path}: {exc}") from exc

    def delete(self, key: str):
        try:
            self._path(key).unlink(missing_ok=True)
        except OSError as exc:
            raise CacheIOFailure(f"Could not delete cache entry {key}: {exc}") from exc

    def keys(self) -> Iterator[str]:
        if not self.directory.is_dir():
            return iter(())
        return iter(sorted(p.name[: -len(self.SUFFIX)] for p in self.directory.glob(f"*{self.SUFFIX}")))


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class KeyedStore:
    """
    Slug-addressed payload store with time-to-live expiry.

    Args:
        backend: Where records are kept.
        ttl: Seconds an entry stays valid; None disables expiry.
        clock: Wall-clock source, injectable for tests.
    """

    def __init__(
        self,
        backend: Optional[StoreBackend] = None,
        ttl: Optional[float] = 7 * 24 * 3600.0,
        clock: Callable[[], float] = time.time,
    ):
        self.backend = backend or MemoryBackend()
        self.ttl = ttl
        self.clock = clock

    def _expired(self, record: dict) -> bool:
        if self.ttl is None:
            return False
        return self.clock() - float(record.get("stored_at", 0.0)) > self.ttl

    def get(self, key: str) -> Optional[Any]:
        """Payload for *key*, or None when missing or expired."""
        record = self.backend.read(key)
        if record is None:
            return None
        if self._expired(record):
            logger.debug("Cache entry %s expired", key)
            self.backend.delete(key)
            return None
        return record.get("payload")

    def put(self, key: str, payload: Any):
        self.backend.write(key, {"stored_at": self.clock(), "payload": payload})

    def delete(self, key: str):
        self.backend.delete(key)

    def keys(self) -> list[str]:
        return list(self.backend.keys())

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def lookup(self, track: TrackKey) -> Optional[tuple[str, Any]]:
        """
        Find an entry for *track*.

        The exact slug is tried first.  On a miss, stored slugs are scanned
        for a keyword-subset match to absorb small metadata differences.

        Returns:
            Tuple of (matched_slug, payload), or None.
        """
        payload = self.get(track.slug)
        if payload is not None:
            return track.slug, payload

        candidate = match_fuzzy(track, (k for k in self.keys() if k != track.slug))
        if candidate is None:
            return None
        payload = self.get(candidate)
        if payload is None:
            return None
        logger.info("Fuzzy cache match for %s: %s", track, candidate)
        return candidate, payload
