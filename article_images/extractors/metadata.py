from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from bs4 import BeautifulSoup

from article_images.core.urls import resolve_image_url
from article_images.extractors.base import HtmlStrategy, attr_text, parse_dimension
from article_images.pipeline.models import ImageCandidate, PageContent, StrategyName

logger = logging.getLogger(__name__)

SOCIAL_META_SCORES = {
    "og:image": 100,
    "og:image:secure_url": 100,
    "og:image:url": 98,
    "twitter:image": 95,
    "twitter:image:src": 95,
    "image": 90,
    "thumbnail": 90,
    "thumbnailurl": 90,
}
STRUCTURED_DATA_SCORE = 85
STRUCTURED_IMAGE_KEYS = ("image", "thumbnailUrl", "contentUrl", "primaryImageOfPage")
# Subtrees describing people or organizations carry avatars and logos, not article art.
STRUCTURED_SKIP_KEYS = {"author", "publisher", "creator", "brand", "logo", "sourceOrganization"}
_MAX_JSON_DEPTH = 24


@dataclass(slots=True)
class _MetaImage:
    url: str
    score: int
    width: int | None = None
    height: int | None = None


class SocialMetaStrategy(HtmlStrategy):
    name = StrategyName.SOCIAL

    def parse(self, soup: BeautifulSoup, page: PageContent) -> Iterable[ImageCandidate]:
        found: list[_MetaImage] = []
        last_open_graph: _MetaImage | None = None
        for meta in soup.find_all("meta"):
            key = (attr_text(meta, "property") or attr_text(meta, "name") or attr_text(meta, "itemprop") or "").lower()
            if key in {"og:image:width", "og:image:height"}:
                if last_open_graph is not None:
                    dimension = parse_dimension(attr_text(meta, "content"))
                    if key.endswith("width"):
                        last_open_graph.width = dimension
                    else:
                        last_open_graph.height = dimension
                continue

            score = SOCIAL_META_SCORES.get(key)
            if score is None:
                continue
            url = resolve_image_url(attr_text(meta, "content"), page.base_url)
            if not url:
                continue
            entry = _MetaImage(url=url, score=score)
            found.append(entry)
            if key.startswith("og:"):
                last_open_graph = entry

        return [
            ImageCandidate(
                url=entry.url,
                source_strategy=self.name,
                prior_score=entry.score,
                measured_width=entry.width,
                measured_height=entry.height,
            )
            for entry in found
        ]


class StructuredDataStrategy(HtmlStrategy):
    name = StrategyName.STRUCTURED_DATA

    def parse(self, soup: BeautifulSoup, page: PageContent) -> Iterable[ImageCandidate]:
        candidates: list[ImageCandidate] = []
        for script in soup.find_all("script"):
            script_type = (attr_text(script, "type") or "").lower()
            if "ld+json" not in script_type:
                continue
            document = _load_json_block(script.string or script.get_text() or "")
            if document is None:
                continue
            found: list[tuple[str, int | None, int | None]] = []
            _walk(document, found, depth=0)
            for raw_url, width, height in found:
                url = resolve_image_url(raw_url, page.base_url)
                if url:
                    candidates.append(
                        ImageCandidate(
                            url=url,
                            source_strategy=self.name,
                            prior_score=STRUCTURED_DATA_SCORE,
                            measured_width=width,
                            measured_height=height,
                        )
                    )
        return candidates


def _load_json_block(text: str) -> Any:
    cleaned = text.strip()
    if cleaned.startswith("<!--"):
        cleaned = cleaned[4:]
    if cleaned.endswith("-->"):
        cleaned = cleaned[:-3]
    cleaned = cleaned.replace("//<![CDATA[", "").replace("//]]>", "").strip()
    if not cleaned:
        return None
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        logger.debug("skipping malformed json-ld block length=%s", len(cleaned))
        return None


def _walk(node: Any, found: list[tuple[str, int | None, int | None]], *, depth: int) -> None:
    if depth > _MAX_JSON_DEPTH:
        return
    if isinstance(node, list):
        for item in node:
            _walk(item, found, depth=depth + 1)
        return
    if not isinstance(node, dict):
        return

    for key in STRUCTURED_IMAGE_KEYS:
        if key in node:
            _collect_image(node[key], found, depth=depth + 1)
    for key, value in node.items():
        if key in STRUCTURED_IMAGE_KEYS or key in STRUCTURED_SKIP_KEYS:
            continue
        if isinstance(value, (dict, list)):
            _walk(value, found, depth=depth + 1)


def _collect_image(value: Any, found: list[tuple[str, int | None, int | None]], *, depth: int) -> None:
    if depth > _MAX_JSON_DEPTH:
        return
    if isinstance(value, str):
        found.append((value, None, None))
    elif isinstance(value, list):
        for item in value:
            _collect_image(item, found, depth=depth + 1)
    elif isinstance(value, dict):
        url = value.get("url") or value.get("contentUrl")
        if isinstance(url, str):
            found.append((url, _quantity(value.get("width")), _quantity(value.get("height"))))
        elif url is not None:
            _collect_image(url, found, depth=depth + 1)
        for key in ("thumbnail", "thumbnailUrl"):
            if key in value:
                _collect_image(value[key], found, depth=depth + 1)


def _quantity(value: Any) -> int | None:
    if isinstance(value, dict):
        value = value.get("value")
    return parse_dimension(value)
