"""Tests for keyed storage and the two cache tiers."""

import pytest

from chromasync.acquisition.caches import AnalysisCache, MediaCache
from chromasync.acquisition.keys import TrackKey
from chromasync.acquisition.store import DirectoryBackend, KeyedStore, MemoryBackend
from chromasync.errors import CacheIOFailure
from chromasync.pipeline import ANALYSIS_VERSION

TRACK = TrackKey(artist="Daft Punk", title="Around the World")


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


class FakeDownloader:
    def __init__(self, suffix=".mp3"):
        self.suffix = suffix
        self.calls = []

    def download(self, url, target):
        self.calls.append((url, target))
        path = target.with_name(target.name + self.suffix)
        path.write_bytes(b"audio")
        return path


# ---------------------------------------------------------------------------
# KeyedStore
# ---------------------------------------------------------------------------

class TestKeyedStore:
    def test_put_get(self):
        store = KeyedStore()
        store.put("a--b", {"x": 1})
        assert store.get("a--b") == {"x": 1}
        assert "a--b" in store
        assert "c--d" not in store

    def test_ttl_expiry(self):
        clock = FakeClock()
        backend = MemoryBackend()
        store = KeyedStore(backend=backend, ttl=60, clock=clock)
        store.put("a--b", 1)

        clock.now += 59
        assert store.get("a--b") == 1
        clock.now += 2
        assert store.get("a--b") is None
        assert list(backend.keys()) == []

    def test_no_ttl(self):
        clock = FakeClock()
        store = KeyedStore(ttl=None, clock=clock)
        store.put("a--b", 1)
        clock.now += 10 ** 9
        assert store.get("a--b") == 1

    def test_lookup_exact(self):
        store = KeyedStore()
        store.put(TRACK.slug, "exact")
        store.put("daft_punk--around_the_world_remastered", "fuzzy")
        assert store.lookup(TRACK) == (TRACK.slug, "exact")

    def test_lookup_fuzzy(self):
        store = KeyedStore()
        store.put("daft_punk--around_the_world_remastered", "fuzzy")
        store.put("daft_punk--da_funk", "other")
        assert store.lookup(TRACK) == ("daft_punk--around_the_world_remastered", "fuzzy")

    def test_lookup_miss(self):
        store = KeyedStore()
        store.put("daft_punk--da_funk", "other")
        assert store.lookup(TRACK) is None

    def test_delete(self):
        store = KeyedStore()
        store.put("a--b", 1)
        store.delete("a--b")
        store.delete("a--b")
        assert store.keys() == []


class TestDirectoryBackend:
    def test_round_trip(self, tmp_path):
        store = KeyedStore(backend=DirectoryBackend(tmp_path / "cache"))
        store.put("b--two", {"n": 2})
        store.put("a--one", {"n": 1})

        assert store.get("a--one") == {"n": 1}
        assert store.keys() == ["a--one", "b--two"]
        assert (tmp_path / "cache" / "a--one.json").exists()
        assert not list((tmp_path / "cache").glob("*.tmp"))

    def test_persists_across_instances(self, tmp_path):
        KeyedStore(backend=DirectoryBackend(tmp_path)).put("a--one", [1, 2])
        assert KeyedStore(backend=DirectoryBackend(tmp_path)).get("a--one") == [1, 2]

    def test_missing_directory(self, tmp_path):
        backend = DirectoryBackend(tmp_path / "nowhere")
        assert backend.read("x") is None
        assert list(backend.keys()) == []

    def test_corrupt_file(self, tmp_path):
        (tmp_path / "a--one.json").write_text("{not json", encoding="utf-8")
        with pytest.raises(CacheIOFailure):
            KeyedStore(backend=DirectoryBackend(tmp_path)).get("a--one")

    def test_unserializable_payload(self, tmp_path):
        store = KeyedStore(backend=DirectoryBackend(tmp_path))
        with pytest.raises(CacheIOFailure):
            store.put("a--one", {"bad": object()})

    def test_long_non_latin_slug(self, tmp_path):
        track = TrackKey(artist="東京事変" * 30, title="群青日和" * 30)
        store = KeyedStore(backend=DirectoryBackend(tmp_path))
        store.put(track.slug, {"n": 1})
        assert store.lookup(track) == (track.slug, {"n": 1})


# ---------------------------------------------------------------------------
# Cache tiers
# ---------------------------------------------------------------------------

class TestAnalysisCache:
    def test_round_trip(self, make_timeline):
        cache = AnalysisCache()
        assert not cache.check_cache(TRACK)

        cache.put(TRACK, make_timeline())
        assert cache.check_cache(TRACK)
        restored = cache.get(TRACK)
        assert restored.bpm == 120.0
        assert len(restored.mel) == 20

    def test_other_version_ignored(self, make_timeline):
        cache = AnalysisCache()
        cache.put(TRACK, make_timeline())
        payload = cache.store.get(TRACK.slug)
        payload["analysis_version"] = ANALYSIS_VERSION + "-old"
        cache.store.put(TRACK.slug, payload)

        assert cache.get(TRACK) is None

    def test_corrupt_entry(self):
        cache = AnalysisCache()
        cache.store.put(TRACK.slug, {"analysis_version": ANALYSIS_VERSION, "timeline": {}})
        with pytest.raises(CacheIOFailure):
            cache.get(TRACK)

    def test_on_disk(self, make_timeline, tmp_path):
        store = KeyedStore(backend=DirectoryBackend(tmp_path))
        AnalysisCache(store=store).put(TRACK, make_timeline())
        restored = AnalysisCache(store=KeyedStore(backend=DirectoryBackend(tmp_path))).get(TRACK)
        assert restored.rhythm.n_beats == 4


class TestMediaCache:
    def test_fetch_downloads_once(self, tmp_path):
        downloader = FakeDownloader()
        cache = MediaCache(tmp_path / "media", downloader)

        first = cache.fetch_or_create(TRACK, "https://example.com/v")
        second = cache.fetch_or_create(TRACK, "https://example.com/v")

        assert first == second == tmp_path / "media" / f"{TRACK.slug}.mp3"
        assert len(downloader.calls) == 1
        assert cache.check_cache(TRACK) == first

    def test_download_does_not_register(self, tmp_path):
        cache = MediaCache(tmp_path, FakeDownloader())
        path = cache.download(TRACK, "https://example.com/v")
        assert path.exists()
        assert cache.check_cache(TRACK) is None

        cache.register(TRACK, path, "https://example.com/v")
        assert cache.check_cache(TRACK) == path

    def test_long_non_latin_slug(self, tmp_path):
        track = TrackKey(artist="東京事変" * 30, title="群青日和" * 30)
        cache = MediaCache(tmp_path, FakeDownloader())
        path = cache.fetch_or_create(track, "https://example.com/v")
        assert path.exists()
        assert cache.check_cache(track) == path

    def test_missing_file_dropped(self, tmp_path):
        cache = MediaCache(tmp_path, FakeDownloader())
        path = cache.fetch_or_create(TRACK, "https://example.com/v")
        path.unlink()

        assert cache.check_cache(TRACK) is None
        assert TRACK.slug not in cache.store.keys()

    def test_rescan(self, tmp_path):
        (tmp_path / f"{TRACK.slug}.mp3").write_bytes(b"audio")
        (tmp_path / "notes.txt").write_text("ignore me")
        cache = MediaCache(tmp_path, FakeDownloader())

        assert cache.rescan() == 1
        assert cache.rescan() == 0
        assert cache.check_cache(TRACK) == tmp_path / f"{TRACK.slug}.mp3"

    def test_rescan_missing_directory(self, tmp_path):
        assert MediaCache(tmp_path / "nope", FakeDownloader()).rescan() == 0
