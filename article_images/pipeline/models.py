from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Literal

AcquireOutcome = Literal["accepted", "exhausted"]


class StrategyName(str, Enum):
    FEED = "feed"
    SOCIAL = "social"
    STRUCTURED_DATA = "structured_data"
    EMBED = "embed"
    AMP = "amp"
    DOM = "dom"
    CSS_BACKGROUND = "css_background"
    CONTENT_FALLBACK = "content_fallback"
    RENDERED = "rendered"

    @property
    def priority(self) -> int:
        return _STRATEGY_PRIORITY[self]


# Lower sorts first. Metadata beats DOM heuristics, which beat generic fallbacks.
_STRATEGY_PRIORITY = {name: index for index, name in enumerate(StrategyName)}


@dataclass(slots=True, frozen=True)
class ImageCandidate:
    url: str
    source_strategy: StrategyName
    prior_score: int
    measured_width: int | None = None
    measured_height: int | None = None


@dataclass(slots=True, frozen=True)
class FeedHints:
    enclosure_url: str | None = None
    media_content_url: str | None = None
    raw_content_html: str | None = None

    @classmethod
    def from_mapping(cls, raw: Any) -> FeedHints | None:
        if not isinstance(raw, dict):
            return None
        hints = cls(
            enclosure_url=_as_text(raw.get("enclosure_url")),
            media_content_url=_as_text(raw.get("media_content_url")),
            raw_content_html=_as_text(raw.get("raw_content_html")),
        )
        if hints.enclosure_url is None and hints.media_content_url is None and hints.raw_content_html is None:
            return None
        return hints


@dataclass(slots=True, frozen=True)
class PageContent:
    url: str
    final_url: str
    html: str
    is_amp: bool = False

    @property
    def base_url(self) -> str:
        return self.final_url or self.url


@dataclass(slots=True)
class ValidationOutcome:
    accepted: bool
    reason: str | None = None
    content_hash: str | None = None
    perceptual_hash: str | None = None
    mime_type: str | None = None
    byte_size: int | None = None
    width: int | None = None
    height: int | None = None


@dataclass(slots=True, frozen=True)
class DedupRecord:
    content_hash: str
    perceptual_hash: str | None
    source_url: str
    article_url: str
    accepted_at: datetime


@dataclass(slots=True)
class AcquireResult:
    outcome: AcquireOutcome
    article_url: str
    image_url: str | None = None
    source_strategy: StrategyName | None = None
    score: int | None = None
    width: int | None = None
    height: int | None = None
    orientation: str | None = None
    reason: str | None = None
    retryable: bool = False
    attempts: int = 1
    rejections: list[tuple[str, str]] = field(default_factory=list)

    @property
    def accepted(self) -> bool:
        return self.outcome == "accepted"

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["source_strategy"] = self.source_strategy.value if self.source_strategy else None
        payload["rejections"] = [{"url": url, "reason": reason} for url, reason in self.rejections]
        return payload


def _as_text(value: Any) -> str | None:
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return None
