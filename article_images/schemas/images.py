from typing import Any, Literal

from pydantic import BaseModel, Field, HttpUrl


class FeedHintsIn(BaseModel):
    enclosure_url: str | None = None
    media_content_url: str | None = None
    raw_content_html: str | None = None


class AcquireImageRequest(BaseModel):
    article_url: HttpUrl
    feed_hints: FeedHintsIn | None = None


class RejectionOut(BaseModel):
    url: str
    reason: str


class AcquireImageResponse(BaseModel):
    outcome: Literal["accepted", "exhausted"]
    article_url: str
    image_url: str | None = None
    source_strategy: str | None = None
    score: int | None = None
    width: int | None = None
    height: int | None = None
    orientation: str | None = None
    reason: str | None = None
    retryable: bool = False
    attempts: int = 1
    rejections: list[RejectionOut] = Field(default_factory=list)


class PipelineStatsOut(BaseModel):
    outcome_cache: dict[str, Any]
    page_cache: dict[str, Any]
    domain_visits: dict[str, int]
    strategies: list[str]
    dedup_records: int
