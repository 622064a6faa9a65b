# tests/test_cache.py
from coffee_survey.core import cache as cache_module
from coffee_survey.core.cache import FileCache, MemoryCache, now_ms


def test_memory_cache_round_trip_and_miss():
    cache = MemoryCache()
    cache.put("coffee_data:url", b"payload", now_ms() + 60_000)

    assert cache.get("coffee_data:url") == b"payload"
    assert cache.get("other") is None


def test_memory_cache_expired_entry_is_a_miss():
    cache = MemoryCache()
    cache.put("k", b"old", now_ms() - 1)

    assert cache.get("k") is None


def test_file_cache_round_trip(tmp_path):
    cache = FileCache(tmp_path / "cache")
    cache.put("coffee_data:https://example.com/a?b=c", b"a,b\n1,2", now_ms() + 60_000)

    assert cache.get("coffee_data:https://example.com/a?b=c") == b"a,b\n1,2"
    assert len(list((tmp_path / "cache").glob("*.cache"))) == 1


def test_file_cache_keys_do_not_collide(tmp_path):
    cache = FileCache(tmp_path)
    expiry = now_ms() + 60_000
    cache.put("feed:a/b", b"one", expiry)
    cache.put("feed:a_b", b"two", expiry)

    assert cache.get("feed:a/b") == b"one"
    assert cache.get("feed:a_b") == b"two"


def test_file_cache_expiry(tmp_path, monkeypatch):
    cache = FileCache(tmp_path)
    cache.put("k", b"v", 1_000)

    monkeypatch.setattr(cache_module, "now_ms", lambda: 999)
    assert cache.get("k") == b"v"

    monkeypatch.setattr(cache_module, "now_ms", lambda: 1_000)
    assert cache.get("k") is None


def test_file_cache_corrupt_entry_is_a_miss(tmp_path):
    cache = FileCache(tmp_path)
    cache.put("k", b"v", now_ms() + 60_000)
    cache._path("k").write_bytes(b"not-a-number\nv")

    assert cache.get("k") is None
