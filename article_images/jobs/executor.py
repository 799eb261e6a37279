from __future__ import annotations

from typing import Any

from article_images.jobs.acquire import ACQUIRE_JOB_KIND, execute_acquire_featured_image
from article_images.pipeline.orchestrator import ImageAcquisitionPipeline


async def execute_job(job: dict[str, Any], *, pipeline: ImageAcquisitionPipeline) -> dict[str, Any]:
    if job.get("kind") == ACQUIRE_JOB_KIND:
        return await execute_acquire_featured_image(job, pipeline=pipeline)

    return {
        "handled": False,
        "kind": job.get("kind"),
        "target_type": job.get("target_type"),
        "target_id": job.get("target_id"),
        "reason": "unsupported_kind",
    }
