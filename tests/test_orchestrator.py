from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import httpx

from article_images.pipeline.models import AcquireResult, FeedHints, ImageCandidate, PageContent, StrategyName
from article_images.pipeline.orchestrator import ImageAcquisitionPipeline, build_pipeline, rank_candidates
from article_images.services.dedup_store import InMemoryDedupStore
from tests.conftest import FakeWeb, build_settings, make_jpeg, public_resolver

ARTICLE_URL = "https://news.example.com/2026/10/18/harbor-bridge.html"
OTHER_ARTICLE_URL = "https://daily.example.org/bridge-reopens"


def _article(*, og_image: str | None = None, body: str = "") -> str:
    head = f'<meta property="og:image" content="{og_image}">' if og_image else ""
    return f"<html><head><title>Bridge</title>{head}</head><body>{body}</body></html>"


def _acquire(
    web: FakeWeb,
    *article_urls: str,
    store: InMemoryDedupStore | None = None,
    feed_hints: FeedHints | None = None,
    configure: Callable[[ImageAcquisitionPipeline], None] | None = None,
    sleep: Callable[[float], Awaitable[Any]] | None = None,
    **overrides: Any,
) -> list[AcquireResult]:
    async def no_sleep(seconds: float) -> None:
        return None

    async def run() -> list[AcquireResult]:
        pipeline = build_pipeline(
            build_settings(**overrides),
            client=httpx.AsyncClient(transport=httpx.MockTransport(web)),
            store=store if store is not None else InMemoryDedupStore(),
            resolver=public_resolver,
            sleep=sleep or no_sleep,
        )
        if configure is not None:
            configure(pipeline)
        try:
            return [await pipeline.acquire_image(url, feed_hints) for url in article_urls]
        finally:
            await pipeline.http.aclose()

    return asyncio.run(run())


class FailingStrategy:
    name = StrategyName.EMBED

    async def extract(self, page: PageContent) -> list[ImageCandidate]:
        raise RuntimeError("parser exploded")


class SlowStrategy:
    name = StrategyName.AMP

    async def extract(self, page: PageContent) -> list[ImageCandidate]:
        await asyncio.sleep(10)
        return []


def test_accepts_open_graph_image(web: FakeWeb) -> None:
    web.page(ARTICLE_URL, _article(og_image="https://cdn.example.com/photos/bridge.jpg"))
    web.image("https://cdn.example.com/photos/bridge.jpg", make_jpeg(seed=1))

    (result,) = _acquire(web, ARTICLE_URL)

    assert result.outcome == "accepted"
    assert result.image_url == "https://cdn.example.com/photos/bridge.jpg"
    assert result.source_strategy is StrategyName.SOCIAL
    assert (result.width, result.height, result.orientation) == (1200, 630, "landscape")
    assert result.attempts == 1
    assert result.to_dict()["source_strategy"] == "social"


def test_repeat_acquisition_is_idempotent_without_network(web: FakeWeb) -> None:
    web.page(ARTICLE_URL, _article(og_image="https://cdn.example.com/photos/bridge.jpg"))
    web.image("https://cdn.example.com/photos/bridge.jpg", make_jpeg(seed=1))
    store = InMemoryDedupStore()

    (first,) = _acquire(web, ARTICLE_URL, store=store)
    requests_after_first = len(web.requests)
    (second,) = _acquire(web, ARTICLE_URL, store=store)

    assert second.outcome == "accepted"
    assert second.image_url == first.image_url
    assert second.reason == "previously_accepted"
    assert len(web.requests) == requests_after_first
    assert asyncio.run(store.count()) == 1


def test_private_og_image_falls_through_to_dom_candidate(web: FakeWeb) -> None:
    web.page(
        ARTICLE_URL,
        _article(
            og_image="http://127.0.0.1/internal/hero.jpg",
            body='<figure class="featured-image"><img src="/media/bridge-wide.jpg" width="1200" height="630"></figure>',
        ),
    )
    web.image("https://news.example.com/media/bridge-wide.jpg", make_jpeg(seed=2))

    (result,) = _acquire(web, ARTICLE_URL)

    assert result.outcome == "accepted"
    assert result.image_url == "https://news.example.com/media/bridge-wide.jpg"
    assert result.source_strategy is StrategyName.DOM
    assert result.rejections == [("http://127.0.0.1/internal/hero.jpg", "egress_blocked:private_address")]
    assert not any("127.0.0.1" in url for url in web.urls())


def test_same_image_is_not_reused_by_another_article(web: FakeWeb) -> None:
    shared = make_jpeg(seed=3)
    web.page(ARTICLE_URL, _article(og_image="https://cdn.example.com/wire/bridge.jpg"))
    web.page(
        OTHER_ARTICLE_URL,
        _article(
            og_image="https://images.example.org/syndicated/bridge.jpg",
            body='<article><img src="/local/crowd.jpg"></article>',
        ),
    )
    web.image("https://cdn.example.com/wire/bridge.jpg", shared)
    web.image("https://images.example.org/syndicated/bridge.jpg", shared)
    web.image("https://daily.example.org/local/crowd.jpg", make_jpeg(seed=4))

    first, second = _acquire(web, ARTICLE_URL, OTHER_ARTICLE_URL)

    assert first.image_url == "https://cdn.example.com/wire/bridge.jpg"
    assert second.outcome == "accepted"
    assert second.image_url == "https://daily.example.org/local/crowd.jpg"
    assert second.rejections == [("https://images.example.org/syndicated/bridge.jpg", "exact_duplicate")]


def test_page_without_images_is_exhausted(web: FakeWeb) -> None:
    web.page(ARTICLE_URL, _article(body="<p>Text only.</p>"))

    (result,) = _acquire(web, ARTICLE_URL)

    assert result.outcome == "exhausted"
    assert result.reason == "no_candidates"
    assert result.retryable is False
    assert result.image_url is None


def test_all_candidates_rejected(web: FakeWeb) -> None:
    web.page(ARTICLE_URL, _article(og_image="https://cdn.example.com/assets/site-logo.png"))

    (result,) = _acquire(web, ARTICLE_URL)

    assert result.reason == "all_candidates_rejected"
    assert result.to_dict()["rejections"] == [
        {"url": "https://cdn.example.com/assets/site-logo.png", "reason": "blacklisted"}
    ]


def test_failing_and_slow_strategies_are_isolated(web: FakeWeb) -> None:
    web.page(ARTICLE_URL, _article(og_image="https://cdn.example.com/photos/bridge.jpg"))
    web.image("https://cdn.example.com/photos/bridge.jpg", make_jpeg(seed=5))

    def configure(pipeline: ImageAcquisitionPipeline) -> None:
        pipeline.registry.register(FailingStrategy())
        pipeline.registry.register(SlowStrategy())

    (result,) = _acquire(web, ARTICLE_URL, configure=configure, strategy_timeout_seconds=0.2)

    assert result.outcome == "accepted"
    assert result.source_strategy is StrategyName.SOCIAL


def test_article_deadline_bounds_total_time(web: FakeWeb) -> None:
    web.page(ARTICLE_URL, _article(og_image="https://cdn.example.com/photos/bridge.jpg"))

    def configure(pipeline: ImageAcquisitionPipeline) -> None:
        pipeline.registry.register(SlowStrategy())

    (result,) = _acquire(
        web,
        ARTICLE_URL,
        configure=configure,
        article_timeout_seconds=0.1,
        strategy_timeout_seconds=5.0,
    )

    assert result.outcome == "exhausted"
    assert result.reason == "deadline_exceeded"
    assert result.attempts == 1


def test_feed_hints_skip_page_fetch(web: FakeWeb) -> None:
    web.image("https://cdn.example.com/feed/bridge.jpg", make_jpeg(seed=6))
    hints = FeedHints(media_content_url="https://cdn.example.com/feed/bridge.jpg")

    (result,) = _acquire(web, ARTICLE_URL, feed_hints=hints)

    assert result.outcome == "accepted"
    assert result.source_strategy is StrategyName.FEED
    assert ARTICLE_URL not in web.urls()


def test_disabled_feed_strategy_uses_page(web: FakeWeb) -> None:
    web.page(ARTICLE_URL, _article(og_image="https://cdn.example.com/photos/bridge.jpg"))
    web.image("https://cdn.example.com/photos/bridge.jpg", make_jpeg(seed=7))
    web.image("https://cdn.example.com/feed/bridge.jpg", make_jpeg(seed=8))
    hints = FeedHints(enclosure_url="https://cdn.example.com/feed/bridge.jpg")

    (result,) = _acquire(web, ARTICLE_URL, feed_hints=hints, disabled_strategies=["feed"])

    assert result.source_strategy is StrategyName.SOCIAL
    assert "https://cdn.example.com/feed/bridge.jpg" not in web.urls()


def test_transient_page_failure_is_retried_with_backoff(web: FakeWeb) -> None:
    responses = iter(
        [
            httpx.Response(503),
            httpx.Response(
                200,
                headers={"content-type": "text/html"},
                text=_article(og_image="https://cdn.example.com/photos/bridge.jpg"),
            ),
        ]
    )
    web.routes[("GET", ARTICLE_URL)] = lambda request: next(responses)
    web.image("https://cdn.example.com/photos/bridge.jpg", make_jpeg(seed=9))
    sleeps: list[float] = []

    async def record_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    (result,) = _acquire(
        web,
        ARTICLE_URL,
        sleep=record_sleep,
        retry_backoff_base_seconds=1.0,
        retry_backoff_max_seconds=8.0,
    )

    assert result.outcome == "accepted"
    assert result.attempts == 2
    assert len(sleeps) == 1
    assert 1.0 <= sleeps[0] <= 1.5


def test_retries_stop_after_configured_attempts(web: FakeWeb) -> None:
    web.routes[("GET", ARTICLE_URL)] = lambda request: httpx.Response(502)

    (result,) = _acquire(web, ARTICLE_URL, retry_attempts=2)

    assert result.reason == "page_fetch_failed"
    assert result.retryable is True
    assert result.attempts == 3
    assert web.urls("GET") == [ARTICLE_URL] * 3


def test_blocked_and_missing_article_pages(web: FakeWeb) -> None:
    web.page(ARTICLE_URL, "gone", status_code=404)

    blocked, missing = _acquire(web, "http://192.168.0.10/admin", ARTICLE_URL)

    assert blocked.reason == "article_url_blocked"
    assert missing.reason == "page_unavailable"
    assert missing.retryable is False
    assert web.urls() == [ARTICLE_URL]


def test_rank_candidates_merges_and_orders() -> None:
    candidates = [
        ImageCandidate(url="https://cdn.example.com/a.jpg?utm_source=x", source_strategy=StrategyName.DOM, prior_score=65,
                       measured_width=1200, measured_height=630),
        ImageCandidate(url="https://cdn.example.com/b.jpg", source_strategy=StrategyName.CONTENT_FALLBACK, prior_score=65),
        ImageCandidate(url="https://cdn.example.com/a.jpg", source_strategy=StrategyName.SOCIAL, prior_score=100),
        ImageCandidate(url="https://cdn.example.com/c.jpg", source_strategy=StrategyName.STRUCTURED_DATA, prior_score=65),
    ]

    ranked = rank_candidates(candidates)

    assert [(item.url, item.source_strategy) for item in ranked] == [
        ("https://cdn.example.com/a.jpg", StrategyName.SOCIAL),
        ("https://cdn.example.com/c.jpg", StrategyName.STRUCTURED_DATA),
        ("https://cdn.example.com/b.jpg", StrategyName.CONTENT_FALLBACK),
    ]
    assert (ranked[0].measured_width, ranked[0].measured_height) == (1200, 630)


def test_amp_url_enables_amp_images_without_amp_markup(web: FakeWeb) -> None:
    amp_url = "https://news.example.com/2026/10/18/harbor-bridge/amp/"
    web.page(
        amp_url,
        _article(body='<amp-img src="https://cdn.example.com/amp/bridge.jpg" width="1200" height="630"></amp-img>'),
    )
    web.image("https://cdn.example.com/amp/bridge.jpg", make_jpeg(seed=12))

    (result,) = _acquire(web, amp_url)

    assert result.outcome == "accepted"
    assert result.source_strategy is StrategyName.AMP


def test_oversized_article_page_is_read_up_to_the_cap(web: FakeWeb) -> None:
    served: list[int] = []
    head = _article(og_image="https://cdn.example.com/photos/capped.jpg").replace("</body></html>", "").encode()
    filler = b"<p>" + b"x" * 99_993 + b"</p>"

    async def endless_page():
        served.append(len(head))
        yield head
        for _ in range(500):
            served.append(len(filler))
            yield filler

    web.routes[("GET", ARTICLE_URL)] = lambda request: httpx.Response(
        200,
        headers={"content-type": "text/html; charset=utf-8"},
        content=endless_page(),
    )
    web.image("https://cdn.example.com/photos/capped.jpg", make_jpeg(seed=13))

    (result,) = _acquire(web, ARTICLE_URL, max_page_bytes=1_000_000)

    assert result.outcome == "accepted"
    assert result.image_url == "https://cdn.example.com/photos/capped.jpg"
    assert sum(served) <= 1_200_000
