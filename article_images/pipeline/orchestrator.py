from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable, Iterable
from typing import Any, Literal

import httpx
from opentelemetry import trace

from article_images.core.config import Settings
from article_images.core.egress import EgressGuard, Resolver
from article_images.core.urls import build_identity_rules, is_amp_url, normalize_url
from article_images.extractors.base import ExtractionStrategy, StrategyRegistry
from article_images.extractors.feed import FeedStrategy
from article_images.extractors.registry import build_registry
from article_images.pipeline.models import (
    AcquireResult,
    FeedHints,
    ImageCandidate,
    PageContent,
    StrategyName,
    ValidationOutcome,
)
from article_images.pipeline.validation import ImageValidator
from article_images.services.composition import orientation
from article_images.services.dedup_store import DedupStore, build_dedup_store
from article_images.services.http import (
    EgressBlockedError,
    FetchError,
    GuardedHttpClient,
    TransientFetchError,
)
from article_images.services.result_cache import DomainVisitCounter, ResultCache
from article_images.services.vision import CaptionVisionCheck, VisionCheck

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

PipelineState = Literal["fetching", "extracting", "ranking", "validating", "accepted", "exhausted"]


def rank_candidates(candidates: Iterable[ImageCandidate]) -> list[ImageCandidate]:
    """Merge candidates that normalize to the same URL and order them for validation.

    The merged entry keeps the highest prior score (ties go to the stronger
    strategy) and any dimensions another strategy measured. Order is score
    descending, then strategy priority, then discovery order.
    """
    merged: dict[str, tuple[int, ImageCandidate]] = {}
    for index, candidate in enumerate(candidates):
        key = normalize_url(candidate.url)
        existing = merged.get(key)
        if existing is None:
            merged[key] = (index, candidate)
            continue
        first_index, current = existing
        better = (candidate.prior_score, -candidate.source_strategy.priority) > (
            current.prior_score,
            -current.source_strategy.priority,
        )
        winner, other = (candidate, current) if better else (current, candidate)
        merged[key] = (
            first_index,
            ImageCandidate(
                url=winner.url,
                source_strategy=winner.source_strategy,
                prior_score=winner.prior_score,
                measured_width=winner.measured_width or other.measured_width,
                measured_height=winner.measured_height or other.measured_height,
            ),
        )

    ordered = sorted(
        merged.values(),
        key=lambda item: (-item[1].prior_score, item[1].source_strategy.priority, item[0]),
    )
    return [candidate for _, candidate in ordered]


class ImageAcquisitionPipeline:
    """Finds one validated, non-duplicate lead image for an article URL.

    ``acquire_image`` never raises for a page without a usable image; it
    returns an exhausted result. Only dedup store errors escape.
    """

    def __init__(
        self,
        *,
        http: GuardedHttpClient,
        guard: EgressGuard,
        registry: StrategyRegistry,
        validator: ImageValidator,
        store: DedupStore,
        page_cache: ResultCache[PageContent],
        max_page_bytes: int = 5_000_000,
        feed_strategy: FeedStrategy | None = None,
        disabled_strategies: Iterable[str] = (),
        article_timeout_seconds: float = 30.0,
        strategy_timeout_seconds: float = 5.0,
        retry_attempts: int = 2,
        retry_backoff_base_seconds: float = 1.0,
        retry_backoff_max_seconds: float = 8.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.http = http
        self.guard = guard
        self.registry = registry
        self.validator = validator
        self.store = store
        self.page_cache = page_cache
        self.max_page_bytes = max_page_bytes
        self.feed_strategy = feed_strategy or FeedStrategy()
        self.disabled_strategies = {name.strip().lower() for name in disabled_strategies}
        self.article_timeout_seconds = article_timeout_seconds
        self.strategy_timeout_seconds = strategy_timeout_seconds
        self.retry_attempts = max(0, retry_attempts)
        self.retry_backoff_base_seconds = retry_backoff_base_seconds
        self.retry_backoff_max_seconds = retry_backoff_max_seconds
        self._sleep = sleep

    async def aclose(self) -> None:
        await self.http.aclose()
        await self.store.close()

    async def acquire_image(self, article_url: str, feed_hints: FeedHints | None = None) -> AcquireResult:
        """Run the pipeline, re-running it with backoff while the exhaustion is retryable."""
        backoff = self.retry_backoff_base_seconds
        attempt = 0
        while True:
            attempt += 1
            result = await self.acquire_once(article_url, feed_hints)
            result.attempts = attempt
            if result.accepted or not result.retryable or attempt > self.retry_attempts:
                return result
            sleep_for = min(backoff * (1.0 + random.uniform(0.0, 0.5)), self.retry_backoff_max_seconds)
            logger.info(
                "retrying acquisition url=%s reason=%s attempt=%s sleep=%.2fs",
                article_url,
                result.reason,
                attempt,
                sleep_for,
            )
            await self._sleep(sleep_for)
            backoff = min(backoff * 2.0, self.retry_backoff_max_seconds)

    async def acquire_once(self, article_url: str, feed_hints: FeedHints | None = None) -> AcquireResult:
        with tracer.start_as_current_span("image.acquire") as span:
            span.set_attribute("article.url", article_url)
            rejections: list[tuple[str, str]] = []
            try:
                result = await asyncio.wait_for(
                    self._run(article_url, feed_hints, rejections),
                    timeout=self.article_timeout_seconds,
                )
            except asyncio.TimeoutError:
                logger.info("acquisition deadline exceeded url=%s", article_url)
                result = AcquireResult(
                    outcome="exhausted",
                    article_url=article_url,
                    reason="deadline_exceeded",
                    rejections=list(rejections),
                )
            span.set_attribute("image.outcome", result.outcome)
            if result.image_url:
                span.set_attribute("image.url", result.image_url)
            return result

    def stats(self) -> dict[str, Any]:
        return {
            "outcome_cache": _cache_stats(self.validator.cache),
            "page_cache": _cache_stats(self.page_cache),
            "domain_visits": dict(self.http.visits.most_common(50)),
            "strategies": self.registry.names(),
        }

    async def _run(
        self,
        article_url: str,
        feed_hints: FeedHints | None,
        rejections: list[tuple[str, str]],
    ) -> AcquireResult:
        existing = await self.store.find_by_article(article_url)
        if existing is not None:
            logger.info("article already owns an image url=%s image=%s", article_url, existing.source_url)
            return AcquireResult(
                outcome="accepted",
                article_url=article_url,
                image_url=existing.source_url,
                reason="previously_accepted",
            )

        if feed_hints is not None and StrategyName.FEED.value not in self.disabled_strategies:
            feed_candidates = await self._run_feed(feed_hints, article_url)
            if feed_candidates:
                result = await self._validate_all(article_url, rank_candidates(feed_candidates), rejections)
                if result.accepted:
                    return result

        self._transition(article_url, "fetching")
        try:
            page = await self._fetch_page(article_url)
        except EgressBlockedError as exc:
            logger.debug("article url blocked by egress guard url=%s reason=%s", article_url, exc.reason)
            return self._exhausted(article_url, "article_url_blocked", rejections)
        except TransientFetchError as exc:
            logger.info("article fetch failed url=%s error=%s", article_url, exc)
            return self._exhausted(article_url, "page_fetch_failed", rejections, retryable=True)
        except FetchError as exc:
            logger.info("article fetch failed url=%s error=%s", article_url, exc)
            return self._exhausted(article_url, "page_fetch_failed", rejections)
        if page is None:
            return self._exhausted(article_url, "page_unavailable", rejections)

        self._transition(article_url, "extracting")
        strategies = self.registry.enabled(self.disabled_strategies)
        cheap = [strategy for strategy in strategies if strategy.name is not StrategyName.RENDERED]
        candidates = await self._extract(cheap, page)
        if not candidates:
            rendered = [strategy for strategy in strategies if strategy.name is StrategyName.RENDERED]
            if rendered:
                candidates = await self._extract(rendered, page)

        self._transition(article_url, "ranking")
        ranked = rank_candidates(candidates)
        if not ranked:
            return self._exhausted(article_url, "no_candidates", rejections)

        result = await self._validate_all(article_url, ranked, rejections)
        if result.accepted:
            return result
        transient = any(reason == "transient_error" for _, reason in rejections)
        return self._exhausted(article_url, "all_candidates_rejected", rejections, retryable=transient)

    async def _run_feed(self, feed_hints: FeedHints, article_url: str) -> list[ImageCandidate]:
        try:
            return await asyncio.wait_for(
                self.feed_strategy.extract_hints(feed_hints, article_url),
                timeout=self.strategy_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning("strategy timed out name=%s url=%s", StrategyName.FEED.value, article_url)
        except Exception as exc:  # pragma: no cover - strategy isolation
            logger.warning("strategy failed name=%s url=%s error=%s", StrategyName.FEED.value, article_url, exc)
        return []

    async def _fetch_page(self, article_url: str) -> PageContent | None:
        cached = self.page_cache.get(article_url)
        if cached is not None:
            return cached

        body = await self.http.fetch_bytes(
            article_url,
            max_bytes=self.max_page_bytes,
            headers={"Accept": "text/html,application/xhtml+xml"},
        )
        if body.status_code >= 400:
            logger.info("article page unavailable url=%s status=%s", article_url, body.status_code)
            return None
        if body.truncated:
            logger.info("article page truncated url=%s max_bytes=%s", article_url, self.max_page_bytes)
        final_url = str(body.response.url)
        page = PageContent(
            url=article_url,
            final_url=final_url,
            html=body.text,
            is_amp=is_amp_url(article_url) or is_amp_url(final_url),
        )
        self.page_cache.set(article_url, page)
        return page

    async def _extract(self, strategies: list[ExtractionStrategy], page: PageContent) -> list[ImageCandidate]:
        results = await asyncio.gather(*(self._run_strategy(strategy, page) for strategy in strategies))
        return [candidate for batch in results for candidate in batch]

    async def _run_strategy(self, strategy: ExtractionStrategy, page: PageContent) -> list[ImageCandidate]:
        try:
            candidates = await asyncio.wait_for(strategy.extract(page), timeout=self.strategy_timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning("strategy timed out name=%s url=%s", strategy.name.value, page.url)
            return []
        except Exception as exc:  # pragma: no cover - strategy isolation
            logger.warning("strategy failed name=%s url=%s error=%s", strategy.name.value, page.url, exc, exc_info=True)
            return []
        logger.debug("strategy finished name=%s url=%s candidates=%s", strategy.name.value, page.url, len(candidates))
        return candidates

    async def _validate_all(
        self,
        article_url: str,
        ranked: list[ImageCandidate],
        rejections: list[tuple[str, str]],
    ) -> AcquireResult:
        self._transition(article_url, "validating")
        for candidate in ranked:
            outcome = await self.validator.validate(candidate, article_url=article_url)
            if outcome.accepted:
                self._transition(article_url, "accepted")
                return self._accepted(article_url, candidate, outcome, rejections)
            rejections.append((candidate.url, outcome.reason or "rejected"))
        return self._exhausted(article_url, "all_candidates_rejected", rejections)

    def _accepted(
        self,
        article_url: str,
        candidate: ImageCandidate,
        outcome: ValidationOutcome,
        rejections: list[tuple[str, str]],
    ) -> AcquireResult:
        return AcquireResult(
            outcome="accepted",
            article_url=article_url,
            image_url=candidate.url,
            source_strategy=candidate.source_strategy,
            score=candidate.prior_score,
            width=outcome.width,
            height=outcome.height,
            orientation=orientation(outcome.width, outcome.height),
            reason=outcome.reason,
            rejections=list(rejections),
        )

    def _exhausted(
        self,
        article_url: str,
        reason: str,
        rejections: list[tuple[str, str]],
        *,
        retryable: bool = False,
    ) -> AcquireResult:
        self._transition(article_url, "exhausted")
        return AcquireResult(
            outcome="exhausted",
            article_url=article_url,
            reason=reason,
            retryable=retryable,
            rejections=list(rejections),
        )

    @staticmethod
    def _transition(article_url: str, state: PipelineState) -> None:
        logger.debug("acquisition state url=%s state=%s", article_url, state)


def build_pipeline(
    settings: Settings,
    *,
    client: httpx.AsyncClient | None = None,
    store: DedupStore | None = None,
    resolver: Resolver | None = None,
    vision: VisionCheck | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> ImageAcquisitionPipeline:
    guard = EgressGuard(resolve_dns=settings.resolve_dns, resolver=resolver)
    http = GuardedHttpClient(
        guard,
        timeout_seconds=settings.request_timeout_seconds,
        user_agent=settings.user_agent,
        max_redirects=settings.max_redirects,
        visits=DomainVisitCounter(),
        client=client,
    )
    dedup_store = store if store is not None else build_dedup_store(settings)
    if vision is None and settings.vision_endpoint:
        vision = CaptionVisionCheck(
            http,
            endpoint=settings.vision_endpoint,
            api_key=settings.vision_api_key,
            timeout_seconds=settings.vision_timeout_seconds,
        )

    validator = ImageValidator(
        http=http,
        guard=guard,
        cache=ResultCache(settings.result_cache_ttl_seconds, max_entries=settings.result_cache_max_entries),
        store=dedup_store,
        vision=vision,
        min_bytes=settings.min_image_bytes,
        max_bytes=settings.max_image_bytes,
        max_range_bytes=settings.max_range_bytes,
        exact_threshold=settings.exact_duplicate_threshold,
        near_threshold=settings.near_duplicate_threshold,
        scan_limit=settings.dedup_scan_limit,
        min_composition_score=settings.min_composition_score,
        unknown_composition_score=settings.unknown_composition_score,
        identity_rules=build_identity_rules(settings.image_identity_overrides_json),
    )
    return ImageAcquisitionPipeline(
        http=http,
        guard=guard,
        registry=build_registry(settings, http=http, guard=guard),
        validator=validator,
        store=dedup_store,
        page_cache=ResultCache(settings.page_cache_ttl_seconds, max_entries=settings.page_cache_max_entries),
        max_page_bytes=settings.max_page_bytes,
        disabled_strategies=settings.disabled_strategies,
        article_timeout_seconds=settings.article_timeout_seconds,
        strategy_timeout_seconds=settings.strategy_timeout_seconds,
        retry_attempts=settings.retry_attempts,
        retry_backoff_base_seconds=settings.retry_backoff_base_seconds,
        retry_backoff_max_seconds=settings.retry_backoff_max_seconds,
        sleep=sleep,
    )


def _cache_stats(cache: ResultCache[Any]) -> dict[str, Any]:
    stats = cache.stats()
    return {
        "size": stats.size,
        "hits": stats.hits,
        "misses": stats.misses,
        "expired": stats.expired,
        "ttl_seconds": stats.ttl_seconds,
        "max_entries": stats.max_entries,
    }
