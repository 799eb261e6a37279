from __future__ import annotations

from typing import Any

from article_images.pipeline.models import FeedHints
from article_images.pipeline.orchestrator import ImageAcquisitionPipeline

ACQUIRE_JOB_KIND = "acquire_featured_image"


async def execute_acquire_featured_image(
    job: dict[str, Any],
    *,
    pipeline: ImageAcquisitionPipeline,
) -> dict[str, Any]:
    raw_inputs = job.get("inputs_json")
    inputs: dict[str, Any] = raw_inputs if isinstance(raw_inputs, dict) else {}
    article_url = _as_text(inputs.get("article_url")) or _as_text(inputs.get("url"))
    base = {
        "handled": True,
        "kind": job.get("kind"),
        "target_type": job.get("target_type"),
        "target_id": job.get("target_id"),
    }
    if not article_url:
        return {**base, "outcome": "exhausted", "reason": "missing_url"}

    hints = FeedHints.from_mapping(inputs.get("feed_hints"))
    result = await pipeline.acquire_image(article_url, hints)
    return {**base, **result.to_dict()}


def _as_text(value: Any) -> str | None:
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return None
