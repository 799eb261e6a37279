from __future__ import annotations

import re
from collections.abc import Iterable

from bs4 import BeautifulSoup
from bs4.element import Tag

from article_images.core.urls import resolve_image_url
from article_images.extractors.base import HtmlStrategy, attr_text, image_source, tag_dimensions
from article_images.pipeline.models import ImageCandidate, PageContent, StrategyName

FEATURED_IMAGE_SELECTORS = (
    "img.wp-post-image",
    ".featured-image img",
    ".post-thumbnail img",
    "img.featured",
    "img.hero",
    "img.hero-image",
    ".hero-image img",
    ".hero img",
    ".featured img",
    ".main-image img",
    ".primary-image img",
    ".lead-image img",
    ".cover-image img",
    ".banner-image img",
    ".article-image img",
    ".article-hero img",
    ".article-header img",
    ".post-header img",
    ".entry-header img",
    ".story-image img",
    ".article-featured-image img",
    ".post-featured-image img",
    "figure.featured img",
    "figure.lead img",
    "figure.hero img",
    ".article-figure img",
    'img[data-featured="true"]',
    'img[data-hero="true"]',
    "img[data-featured-image]",
    "img[data-hero-image]",
    '[itemprop="image"] img',
    ".gatsby-image-wrapper img",
    ".post-full-image img",
    ".kg-image",
    "picture img",
)
ARTICLE_CONTENT_SELECTORS = (
    "article img",
    "main img",
    ".article-content img",
    ".post-content img",
    ".entry-content img",
    '[role="main"] img',
    ".story-body img",
    ".article-body img",
    "#content img",
    ".content img",
)
HERO_HINT_RE = re.compile(r"(hero|featured|lead|cover|banner|main[-_]?image)", re.IGNORECASE)
CSS_BACKGROUND_RE = re.compile(r"background(?:-image)?\s*:[^;]*?url\(\s*(['\"]?)([^'\")]+)\1\s*\)", re.IGNORECASE)
CSS_BACKGROUND_ATTRIBUTES = ("data-background", "data-background-image", "data-bg", "data-bg-url")

DOM_BASE_SCORE = 60
DOM_MAX_SCORE = 70
IMAGE_SRC_LINK_SCORE = 60
AMP_SCORE = 75
CSS_BACKGROUND_SCORE = 55
CONTENT_FALLBACK_BASE_SCORE = 45
CONTENT_FALLBACK_MAX_SCORE = 65
CONTENT_FALLBACK_LIMIT = 3


def _hero_hint(tag: Tag) -> bool:
    node: Tag | None = tag
    for _ in range(3):
        if node is None:
            return False
        identity = " ".join(filter(None, (attr_text(node, "class"), attr_text(node, "id"))))
        if identity and HERO_HINT_RE.search(identity):
            return True
        parent = node.parent
        node = parent if isinstance(parent, Tag) else None
    return False


def _size_bonus(width: int | None, height: int | None, *, wide: int, tall: int, step: int) -> int:
    bonus = 0
    if width is not None and width >= wide:
        bonus += step
    if height is not None and height >= tall:
        bonus += step
    return bonus


class DomHeuristicStrategy(HtmlStrategy):
    """Featured/hero image selectors, scored 45-70 with size and class cues."""

    name = StrategyName.DOM

    def parse(self, soup: BeautifulSoup, page: PageContent) -> Iterable[ImageCandidate]:
        candidates: list[ImageCandidate] = []
        seen_tags: set[int] = set()
        for selector in FEATURED_IMAGE_SELECTORS:
            for tag in soup.select(selector):
                if id(tag) in seen_tags:
                    continue
                seen_tags.add(id(tag))
                url = image_source(tag, page.base_url)
                if not url:
                    continue
                width, height = tag_dimensions(tag)
                score = DOM_BASE_SCORE + _size_bonus(width, height, wide=800, tall=450, step=5)
                if _hero_hint(tag):
                    score += 5
                candidates.append(
                    ImageCandidate(
                        url=url,
                        source_strategy=self.name,
                        prior_score=min(score, DOM_MAX_SCORE),
                        measured_width=width,
                        measured_height=height,
                    )
                )

        for link in soup.find_all("link"):
            rel = (attr_text(link, "rel") or "").lower()
            if "image_src" not in rel.split():
                continue
            url = resolve_image_url(attr_text(link, "href"), page.base_url)
            if url:
                candidates.append(ImageCandidate(url=url, source_strategy=self.name, prior_score=IMAGE_SRC_LINK_SCORE))
        return candidates


class AmpStrategy(HtmlStrategy):
    name = StrategyName.AMP

    def parse(self, soup: BeautifulSoup, page: PageContent) -> Iterable[ImageCandidate]:
        if not page.is_amp and not is_amp_document(soup):
            return []
        candidates: list[ImageCandidate] = []
        for tag in soup.find_all("amp-img"):
            url = image_source(tag, page.base_url)
            if not url:
                continue
            width, height = tag_dimensions(tag)
            candidates.append(
                ImageCandidate(
                    url=url,
                    source_strategy=self.name,
                    prior_score=AMP_SCORE,
                    measured_width=width,
                    measured_height=height,
                )
            )
        return candidates


class CssBackgroundStrategy(HtmlStrategy):
    name = StrategyName.CSS_BACKGROUND

    def parse(self, soup: BeautifulSoup, page: PageContent) -> Iterable[ImageCandidate]:
        candidates: list[ImageCandidate] = []
        for tag in soup.find_all(True):
            raw_urls: list[str] = []
            style = attr_text(tag, "style")
            if style:
                raw_urls.extend(match.group(2) for match in CSS_BACKGROUND_RE.finditer(style))
            for attribute in CSS_BACKGROUND_ATTRIBUTES:
                value = attr_text(tag, attribute)
                if value:
                    raw_urls.append(value)
            for raw_url in raw_urls:
                url = resolve_image_url(raw_url, page.base_url)
                if url:
                    candidates.append(
                        ImageCandidate(url=url, source_strategy=self.name, prior_score=CSS_BACKGROUND_SCORE)
                    )
        return candidates


class ContentFallbackStrategy(HtmlStrategy):
    """First few images inside the article body, for pages without any metadata."""

    name = StrategyName.CONTENT_FALLBACK

    def parse(self, soup: BeautifulSoup, page: PageContent) -> Iterable[ImageCandidate]:
        candidates: list[ImageCandidate] = []
        for selector in ARTICLE_CONTENT_SELECTORS:
            for tag in soup.select(selector):
                url = image_source(tag, page.base_url)
                if not url:
                    continue
                width, height = tag_dimensions(tag)
                score = CONTENT_FALLBACK_BASE_SCORE + _size_bonus(width, height, wide=800, tall=400, step=10)
                candidates.append(
                    ImageCandidate(
                        url=url,
                        source_strategy=self.name,
                        prior_score=min(score, CONTENT_FALLBACK_MAX_SCORE),
                        measured_width=width,
                        measured_height=height,
                    )
                )
                if len(candidates) >= CONTENT_FALLBACK_LIMIT:
                    return candidates
            if candidates:
                break
        return candidates


def is_amp_document(soup: BeautifulSoup) -> bool:
    root = soup.find("html")
    if not isinstance(root, Tag):
        return False
    return root.has_attr("amp") or root.has_attr("⚡")
