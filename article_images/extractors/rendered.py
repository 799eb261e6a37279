from __future__ import annotations

import logging
from typing import Any

from playwright.async_api import Playwright, Route, async_playwright
from playwright.async_api import Error as PlaywrightError

from article_images.core.config import DEFAULT_USER_AGENT
from article_images.core.egress import EgressGuard
from article_images.core.urls import resolve_image_url
from article_images.extractors.base import dedupe_candidates, parse_dimension
from article_images.pipeline.models import ImageCandidate, PageContent, StrategyName

logger = logging.getLogger(__name__)

RENDERED_SCORE = 50
RENDERED_MAX_CANDIDATES = 5
MIN_RENDERED_WIDTH = 400

# Runs in the page: social image meta first, then every <img> in document order.
_COLLECT_IMAGES_JS = """
() => {
  const found = [];
  const meta = document.querySelector('meta[property="og:image"], meta[name="twitter:image"]');
  if (meta && meta.content) found.push({src: meta.content, width: 0, height: 0});
  for (const img of Array.from(document.images)) {
    const src = img.currentSrc || img.src;
    if (!src) continue;
    found.push({src, width: img.naturalWidth || 0, height: img.naturalHeight || 0});
  }
  return found;
}
"""


class RenderedPageStrategy:
    """Headless Chromium fallback for pages that only build their markup in JS.

    One browser per call, always closed. Every request the page issues goes
    through the literal egress check, so scripts cannot reach private hosts.
    """

    name = StrategyName.RENDERED

    def __init__(
        self,
        guard: EgressGuard,
        *,
        navigation_timeout_seconds: float = 20.0,
        user_agent: str = DEFAULT_USER_AGENT,
    ) -> None:
        self.guard = guard
        self.navigation_timeout_seconds = navigation_timeout_seconds
        self.user_agent = user_agent

    async def extract(self, page: PageContent) -> list[ImageCandidate]:
        decision = await self.guard.check(page.url)
        if not decision.valid:
            return []
        try:
            async with async_playwright() as playwright:
                raw_images, final_url = await self._render(playwright, page.url)
        except PlaywrightError as exc:
            logger.warning("rendered extraction failed url=%s error=%s", page.url, exc)
            return []
        return self._to_candidates(raw_images, final_url)

    async def _render(self, playwright: Playwright, url: str) -> tuple[list[dict[str, Any]], str]:
        browser = await playwright.chromium.launch(headless=True)
        try:
            context = await browser.new_context(user_agent=self.user_agent)
            browser_page = await context.new_page()
            browser_page.set_default_navigation_timeout(self.navigation_timeout_seconds * 1000)
            await browser_page.route("**/*", self._guard_route)
            await browser_page.goto(url, wait_until="networkidle")
            raw_images = await browser_page.evaluate(_COLLECT_IMAGES_JS)
            return (raw_images if isinstance(raw_images, list) else []), browser_page.url
        finally:
            await browser.close()

    async def _guard_route(self, route: Route) -> None:
        if self.guard.check_literal(route.request.url).valid:
            await route.continue_()
        else:
            await route.abort()

    def _to_candidates(self, raw_images: list[dict[str, Any]], base_url: str) -> list[ImageCandidate]:
        candidates: list[ImageCandidate] = []
        for item in raw_images:
            if not isinstance(item, dict):
                continue
            url = resolve_image_url(item.get("src"), base_url)
            if not url:
                continue
            width = parse_dimension(item.get("width"))
            height = parse_dimension(item.get("height"))
            if width is not None and width < MIN_RENDERED_WIDTH:
                continue
            candidates.append(
                ImageCandidate(
                    url=url,
                    source_strategy=self.name,
                    prior_score=RENDERED_SCORE,
                    measured_width=width,
                    measured_height=height,
                )
            )
        return dedupe_candidates(candidates)[:RENDERED_MAX_CANDIDATES]
