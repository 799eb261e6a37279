from __future__ import annotations

from article_images.core.config import Settings
from article_images.core.egress import EgressGuard
from article_images.extractors.base import StrategyRegistry
from article_images.extractors.dom import AmpStrategy, ContentFallbackStrategy, CssBackgroundStrategy, DomHeuristicStrategy
from article_images.extractors.embeds import EmbedStrategy
from article_images.extractors.metadata import SocialMetaStrategy, StructuredDataStrategy
from article_images.extractors.rendered import RenderedPageStrategy
from article_images.services.http import GuardedHttpClient


def build_registry(settings: Settings, *, http: GuardedHttpClient, guard: EgressGuard) -> StrategyRegistry:
    """Page strategies in priority order. The feed strategy runs separately, before any page fetch."""
    registry = StrategyRegistry(
        [
            SocialMetaStrategy(),
            StructuredDataStrategy(),
            EmbedStrategy(http),
            AmpStrategy(),
            DomHeuristicStrategy(),
            CssBackgroundStrategy(),
            ContentFallbackStrategy(),
        ]
    )
    if settings.render_fallback_enabled:
        registry.register(
            RenderedPageStrategy(
                guard,
                navigation_timeout_seconds=settings.render_timeout_seconds,
                user_agent=settings.user_agent,
            )
        )
    return registry
