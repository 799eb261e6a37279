from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Iterable
from typing import Any, Protocol

from bs4 import BeautifulSoup
from bs4.element import Tag

from article_images.core.urls import best_srcset_url, resolve_image_url
from article_images.pipeline.models import ImageCandidate, PageContent, StrategyName

logger = logging.getLogger(__name__)

LAZY_SOURCE_ATTRIBUTES = ("data-src", "data-lazy-src", "data-original", "data-lazy", "data-url", "src")
SRCSET_ATTRIBUTES = ("srcset", "data-srcset", "data-lazy-srcset")
_INT_RE = re.compile(r"^\s*(\d+)")


class ExtractionStrategy(Protocol):
    name: StrategyName

    async def extract(self, page: PageContent) -> list[ImageCandidate]: ...


class HtmlStrategy:
    """Base for strategies that only read the page markup.

    Parsing happens in a worker thread so slow pages do not stall the event
    loop and the per-strategy timeout can fire.
    """

    name: StrategyName

    async def extract(self, page: PageContent) -> list[ImageCandidate]:
        return await asyncio.to_thread(self._extract_sync, page)

    def _extract_sync(self, page: PageContent) -> list[ImageCandidate]:
        soup = BeautifulSoup(page.html or "", "html.parser")
        return dedupe_candidates(self.parse(soup, page))

    def parse(self, soup: BeautifulSoup, page: PageContent) -> Iterable[ImageCandidate]:
        raise NotImplementedError


class StrategyRegistry:
    def __init__(self, strategies: Iterable[ExtractionStrategy] = ()) -> None:
        self._strategies: dict[StrategyName, ExtractionStrategy] = {}
        for strategy in strategies:
            self.register(strategy)

    def register(self, strategy: ExtractionStrategy) -> None:
        self._strategies[strategy.name] = strategy

    def get(self, name: StrategyName) -> ExtractionStrategy | None:
        return self._strategies.get(name)

    def enabled(self, disabled: Iterable[str] = ()) -> list[ExtractionStrategy]:
        disabled_names = {item.strip().lower() for item in disabled}
        return [
            strategy
            for strategy in sorted(self._strategies.values(), key=lambda item: item.name.priority)
            if strategy.name.value not in disabled_names
        ]

    def names(self) -> list[str]:
        return [strategy.name.value for strategy in self.enabled()]


def dedupe_candidates(candidates: Iterable[ImageCandidate]) -> list[ImageCandidate]:
    """Drop repeated URLs within one strategy, keeping the best-scored entry."""
    best: dict[str, ImageCandidate] = {}
    order: list[str] = []
    for candidate in candidates:
        existing = best.get(candidate.url)
        if existing is None:
            order.append(candidate.url)
            best[candidate.url] = candidate
        elif candidate.prior_score > existing.prior_score:
            best[candidate.url] = candidate
    return [best[url] for url in order]


def image_source(tag: Tag, base_url: str) -> str | None:
    """Best fetchable URL for an <img>-like tag: largest srcset entry, then lazy attributes."""
    for attribute in SRCSET_ATTRIBUTES:
        chosen = best_srcset_url(attr_text(tag, attribute))
        resolved = resolve_image_url(chosen, base_url)
        if resolved:
            return resolved
    for attribute in LAZY_SOURCE_ATTRIBUTES:
        resolved = resolve_image_url(attr_text(tag, attribute), base_url)
        if resolved:
            return resolved
    return None


def attr_text(tag: Tag, name: str) -> str | None:
    value: Any = tag.get(name)
    if isinstance(value, list):
        value = " ".join(value)
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return None


def parse_dimension(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value > 0 else None
    if isinstance(value, float):
        return int(value) if value > 0 else None
    if isinstance(value, str):
        match = _INT_RE.match(value)
        if match:
            parsed = int(match.group(1))
            return parsed if parsed > 0 else None
    return None


def tag_dimensions(tag: Tag) -> tuple[int | None, int | None]:
    return parse_dimension(attr_text(tag, "width")), parse_dimension(attr_text(tag, "height"))
