from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

from qwen_chat_gateway.uploads.cache import ContentCache, fingerprint


def test_fingerprint_is_deterministic_sha256() -> None:
    assert fingerprint(b"abc") == fingerprint(b"abc")
    assert fingerprint(b"abc") != fingerprint(b"abd")
    assert (
        fingerprint(b"abc")
        == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"
    )


def test_lookup_returns_inserted_url() -> None:
    cache = ContentCache()
    key = fingerprint(b"image-bytes")

    assert cache.lookup(key) is None
    cache.insert(key, "https://cdn.example/a.png")

    assert cache.lookup(key) == "https://cdn.example/a.png"
    assert key in cache
    assert len(cache) == 1


def test_unbounded_by_default() -> None:
    cache = ContentCache()
    for index in range(500):
        cache.insert(f"key-{index}", f"url-{index}")

    assert len(cache) == 500


def test_bounded_cache_evicts_oldest_key() -> None:
    cache = ContentCache(max_entries=2)
    cache.insert("a", "url-a")
    cache.insert("b", "url-b")
    cache.insert("c", "url-c")

    assert cache.to_dict() == {"b": "url-b", "c": "url-c"}


def test_reinserting_existing_key_does_not_evict() -> None:
    cache = ContentCache(max_entries=2)
    cache.insert("a", "url-a")
    cache.insert("b", "url-b")
    cache.insert("a", "url-a2")

    assert cache.to_dict() == {"b": "url-b", "a": "url-a2"}


def test_concurrent_inserts_are_all_visible() -> None:
    cache = ContentCache()

    def worker(index: int) -> None:
        key = fingerprint(str(index).encode())
        cache.insert(key, f"url-{index}")
        assert cache.lookup(key) == f"url-{index}"

    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(worker, range(200)))

    assert len(cache) == 200
