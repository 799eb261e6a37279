from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any

from article_images.core.urls import resolve_image_url
from article_images.extractors.base import dedupe_candidates, parse_dimension
from article_images.pipeline.models import ImageCandidate, PageContent, StrategyName
from article_images.services.http import FetchError, GuardedHttpClient

logger = logging.getLogger(__name__)

PHOTO_SCORE = 90
THUMBNAIL_SCORE = 80
EMBED_HTML_IMAGE_SCORE = 75
MAX_OEMBED_BYTES = 256_000
_EMBED_IMG_RE = re.compile(r"<img[^>]+src=[\"']([^\"']+)[\"']", re.IGNORECASE)
_YOUTUBE_EMBED_RE = re.compile(r"https?://(?:www\.)?youtube(?:-nocookie)?\.com/embed/([\w-]+)", re.IGNORECASE)


@dataclass(slots=True, frozen=True)
class OEmbedProvider:
    name: str
    endpoint: str
    url_pattern: re.Pattern[str]
    extra_params: tuple[tuple[str, str], ...] = ()

    def matches(self, url: str) -> bool:
        return bool(self.url_pattern.match(url))


OEMBED_PROVIDERS = (
    OEmbedProvider(
        name="twitter",
        endpoint="https://publish.twitter.com/oembed",
        url_pattern=re.compile(r"https?://(?:www\.)?(?:twitter\.com|x\.com)/\w+/status/\d+", re.IGNORECASE),
        extra_params=(("omit_script", "true"),),
    ),
    OEmbedProvider(
        name="youtube",
        endpoint="https://www.youtube.com/oembed",
        url_pattern=re.compile(r"https?://(?:www\.|m\.)?(?:youtube\.com/watch\?v=|youtu\.be/)[\w-]+", re.IGNORECASE),
    ),
    OEmbedProvider(
        name="vimeo",
        endpoint="https://vimeo.com/api/oembed.json",
        url_pattern=re.compile(r"https?://(?:www\.|player\.)?vimeo\.com/(?:video/)?\d+", re.IGNORECASE),
    ),
    OEmbedProvider(
        name="flickr",
        endpoint="https://www.flickr.com/services/oembed/",
        url_pattern=re.compile(r"https?://(?:www\.)?flickr\.com/photos/[\w@-]+/\d+", re.IGNORECASE),
    ),
    OEmbedProvider(
        name="reddit",
        endpoint="https://www.reddit.com/oembed",
        url_pattern=re.compile(r"https?://(?:www\.|old\.)?reddit\.com/r/\w+/comments/\w+", re.IGNORECASE),
    ),
)


def find_provider(url: str) -> OEmbedProvider | None:
    return next((provider for provider in OEMBED_PROVIDERS if provider.matches(url)), None)


def images_from_oembed(payload: dict[str, Any], base_url: str) -> list[tuple[str, int, int | None, int | None]]:
    """(url, score, width, height) in preference order: photo, thumbnail, <img> in embed html."""
    found: list[tuple[str, int, int | None, int | None]] = []
    if payload.get("type") == "photo":
        url = resolve_image_url(_as_str(payload.get("url")), base_url)
        if url:
            found.append((url, PHOTO_SCORE, parse_dimension(payload.get("width")), parse_dimension(payload.get("height"))))
    thumbnail = resolve_image_url(_as_str(payload.get("thumbnail_url")), base_url)
    if thumbnail:
        found.append(
            (
                thumbnail,
                THUMBNAIL_SCORE,
                parse_dimension(payload.get("thumbnail_width")),
                parse_dimension(payload.get("thumbnail_height")),
            )
        )
    embed_html = _as_str(payload.get("html"))
    if embed_html:
        match = _EMBED_IMG_RE.search(embed_html)
        url = resolve_image_url(match.group(1), base_url) if match else None
        if url:
            found.append((url, EMBED_HTML_IMAGE_SCORE, None, None))
    return found


class EmbedStrategy:
    """Resolves social/video embed URLs through their public oEmbed endpoints."""

    name = StrategyName.EMBED

    def __init__(self, http: GuardedHttpClient, *, max_response_bytes: int = MAX_OEMBED_BYTES) -> None:
        self.http = http
        self.max_response_bytes = max_response_bytes

    async def extract(self, page: PageContent) -> list[ImageCandidate]:
        candidates: list[ImageCandidate] = []
        for embed_url in find_embed_urls(page):
            provider = find_provider(embed_url)
            if provider is None:
                continue
            payload = await self._fetch_oembed(provider, embed_url)
            if payload is None:
                continue
            for url, score, width, height in images_from_oembed(payload, embed_url):
                candidates.append(
                    ImageCandidate(
                        url=url,
                        source_strategy=self.name,
                        prior_score=score,
                        measured_width=width,
                        measured_height=height,
                    )
                )
        return dedupe_candidates(candidates)

    async def _fetch_oembed(self, provider: OEmbedProvider, embed_url: str) -> dict[str, Any] | None:
        params = {"url": embed_url, "format": "json", **dict(provider.extra_params)}
        try:
            body = await self.http.fetch_bytes(
                provider.endpoint,
                max_bytes=self.max_response_bytes,
                params=params,
                headers={"Accept": "application/json"},
            )
        except FetchError as exc:
            logger.info("oembed fetch failed provider=%s url=%s error=%s", provider.name, embed_url, exc)
            return None
        if body.status_code != 200:
            logger.info("oembed non-200 provider=%s status=%s", provider.name, body.status_code)
            return None
        if body.truncated:
            logger.info("oembed response too large provider=%s url=%s", provider.name, embed_url)
            return None
        try:
            payload = json.loads(body.content)
        except ValueError:
            return None
        return payload if isinstance(payload, dict) else None


def find_embed_urls(page: PageContent) -> list[str]:
    """The article URL, and where it redirected to, when either is a known embed page."""
    urls: list[str] = []
    for raw in (page.url, page.final_url):
        url = _canonical_embed_url(raw)
        if url and url not in urls and find_provider(url):
            urls.append(url)
    return urls


def _canonical_embed_url(url: str | None) -> str | None:
    if url is None:
        return None
    match = _YOUTUBE_EMBED_RE.match(url)
    if match:
        return f"https://www.youtube.com/watch?v={match.group(1)}"
    return url


def _as_str(value: Any) -> str | None:
    return value if isinstance(value, str) and value.strip() else None
