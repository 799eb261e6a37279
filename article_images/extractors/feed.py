from __future__ import annotations

import asyncio
from urllib.parse import urlparse

from bs4 import BeautifulSoup

from article_images.core.urls import resolve_image_url
from article_images.extractors.base import dedupe_candidates, image_source
from article_images.pipeline.models import FeedHints, ImageCandidate, StrategyName

ENCLOSURE_SCORE = 100
MEDIA_CONTENT_SCORE = 95
CONTENT_IMAGE_SCORE = 80
NON_IMAGE_EXTENSIONS = (".mp3", ".m4a", ".mp4", ".m4v", ".mov", ".wav", ".ogg", ".pdf", ".webm")


class FeedStrategy:
    """Candidates carried by the syndication feed entry itself.

    These are tried before the article page is fetched at all.
    """

    name = StrategyName.FEED

    async def extract_hints(self, hints: FeedHints, article_url: str) -> list[ImageCandidate]:
        return await asyncio.to_thread(self._extract_sync, hints, article_url)

    def _extract_sync(self, hints: FeedHints, article_url: str) -> list[ImageCandidate]:
        candidates: list[ImageCandidate] = []
        for raw_url, score in ((hints.enclosure_url, ENCLOSURE_SCORE), (hints.media_content_url, MEDIA_CONTENT_SCORE)):
            url = resolve_image_url(raw_url, article_url)
            if url and not urlparse(url).path.lower().endswith(NON_IMAGE_EXTENSIONS):
                candidates.append(ImageCandidate(url=url, source_strategy=self.name, prior_score=score))

        if hints.raw_content_html:
            soup = BeautifulSoup(hints.raw_content_html, "html.parser")
            for tag in soup.find_all("img"):
                url = image_source(tag, article_url)
                if url:
                    candidates.append(ImageCandidate(url=url, source_strategy=self.name, prior_score=CONTENT_IMAGE_SCORE))
                    break
        return dedupe_candidates(candidates)
