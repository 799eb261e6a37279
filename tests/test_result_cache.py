from __future__ import annotations

from article_images.services.result_cache import DomainVisitCounter, ResultCache


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def test_result_cache_expires_entries() -> None:
    clock = FakeClock()
    cache: ResultCache[str] = ResultCache(60, clock=clock)
    cache.set("https://cdn.example.com/a.jpg", "too_small")

    assert cache.get("https://cdn.example.com/a.jpg") == "too_small"
    clock.now += 61
    assert cache.get("https://cdn.example.com/a.jpg") is None

    stats = cache.stats()
    assert (stats.hits, stats.misses, stats.expired, stats.size) == (1, 1, 1, 0)


def test_result_cache_prune_and_delete() -> None:
    clock = FakeClock()
    cache: ResultCache[int] = ResultCache(10, clock=clock)
    cache.set("old", 1)
    clock.now += 5
    cache.set("fresh", 2)
    cache.set("gone", 3)
    cache.delete("gone")
    clock.now += 6

    assert cache.prune() == 1
    assert len(cache) == 1
    assert cache.get("fresh") == 2
    cache.clear()
    assert len(cache) == 0


def test_result_cache_sweeps_expired_entries_on_write() -> None:
    clock = FakeClock()
    cache: ResultCache[int] = ResultCache(10, clock=clock)
    for index in range(1000):
        cache.set(f"https://cdn.example.com/{index}.jpg", index)
        clock.now += 100

    assert len(cache) == 0
    cache.set("https://cdn.example.com/last.jpg", 1)
    assert len(cache) == 1
    assert cache.stats().expired == 1000


def test_result_cache_evicts_least_recently_used_at_capacity() -> None:
    clock = FakeClock()
    cache: ResultCache[str] = ResultCache(60, max_entries=2, clock=clock)
    cache.set("a", "first")
    cache.set("b", "second")
    assert cache.get("a") == "first"
    cache.set("c", "third")

    assert len(cache) == 2
    assert cache.get("b") is None
    assert cache.get("a") == "first"
    assert cache.stats().max_entries == 2


def test_domain_visit_counter_groups_by_host() -> None:
    counter = DomainVisitCounter()
    counter.visit("https://CDN.example.com/a.jpg")
    counter.visit("https://cdn.example.com/b.jpg")
    counter.visit("https://news.example.com/")
    counter.visit("not a url")

    assert counter.count("cdn.example.com") == 2
    assert counter.count("https://news.example.com/story") == 1
    assert counter.most_common(1) == [("cdn.example.com", 2)]
    counter.reset()
    assert counter.most_common() == []
