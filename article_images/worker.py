from __future__ import annotations

import asyncio
import logging
import random

from opentelemetry import trace

from article_images.core.config import get_settings
from article_images.core.telemetry import configure_logging, setup_telemetry, shutdown_telemetry
from article_images.jobs.acquire import ACQUIRE_JOB_KIND
from article_images.jobs.executor import execute_job
from article_images.pipeline.orchestrator import ImageAcquisitionPipeline, build_pipeline
from article_images.services.dedup_store import DedupStoreError
from article_images.services.job_client import JobClient, build_job_client

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


async def process_jobs_once(client: JobClient, pipeline: ImageAcquisitionPipeline, *, lease_seconds: int) -> int:
    """Claim and run one batch of queued jobs. Returns how many jobs were processed."""
    jobs = await client.get_jobs(kind=ACQUIRE_JOB_KIND, limit=5)
    for job in jobs:
        with tracer.start_as_current_span("worker.process_job") as job_span:
            job_span.set_attribute("job.id", job["id"])
            claimed = await client.claim_job(job["id"], lease_seconds=lease_seconds)
            try:
                result = await execute_job(claimed, pipeline=pipeline)
            except DedupStoreError as exc:
                await client.submit_result(claimed["id"], status="failed", error_json={"error": str(exc)})
                logger.error("dedup store failure for job id=%s: %s", claimed["id"], exc)
                continue
            await client.submit_result(claimed["id"], status="done", result_json=result)
    return len(jobs)


async def run_worker() -> None:
    settings = get_settings()
    configure_logging(settings.log_level)
    client = build_job_client(settings)
    telemetry_runtime = setup_telemetry(settings, role="worker")
    pipeline = build_pipeline(settings)

    backoff = settings.poll_interval_seconds
    try:
        while True:
            try:
                with tracer.start_as_current_span("worker.poll_cycle"):
                    processed = await process_jobs_once(client, pipeline, lease_seconds=settings.claim_lease_seconds)
                if not processed:
                    await asyncio.sleep(settings.poll_interval_seconds)
                backoff = settings.poll_interval_seconds
            except Exception as exc:  # pragma: no cover - polling robustness
                jitter = random.uniform(0.0, 0.5)
                sleep_for = min(backoff * (2.0 + jitter), settings.max_backoff_seconds)
                logger.exception("worker iteration failed: %s; retry in %.1fs", exc, sleep_for)
                await asyncio.sleep(sleep_for)
                backoff = sleep_for
    finally:
        await pipeline.aclose()
        shutdown_telemetry(telemetry_runtime)


if __name__ == "__main__":
    asyncio.run(run_worker())
