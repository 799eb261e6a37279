from __future__ import annotations

import asyncio
import json
from typing import Any

import httpx
import pytest

from article_images.jobs import executor
from article_images.jobs.acquire import ACQUIRE_JOB_KIND, execute_acquire_featured_image
from article_images.pipeline.models import AcquireResult, FeedHints, StrategyName
from article_images.services.dedup_store import DedupStoreUnavailableError
from article_images.services.job_client import JobClient, JobQueueNotConfiguredError, build_job_client
from article_images.worker import process_jobs_once
from tests.conftest import build_settings


class FakePipeline:
    def __init__(self, *, error: Exception | None = None) -> None:
        self.calls: list[tuple[str, FeedHints | None]] = []
        self.error = error

    async def acquire_image(self, article_url: str, feed_hints: FeedHints | None = None) -> AcquireResult:
        self.calls.append((article_url, feed_hints))
        if self.error is not None:
            raise self.error
        return AcquireResult(
            outcome="accepted",
            article_url=article_url,
            image_url="https://cdn.example.com/hero.jpg",
            source_strategy=StrategyName.SOCIAL,
            score=100,
            width=1200,
            height=630,
            orientation="landscape",
            reason="accepted",
        )


def test_acquire_job_passes_url_and_feed_hints() -> None:
    pipeline = FakePipeline()
    job = {
        "kind": ACQUIRE_JOB_KIND,
        "target_type": "article",
        "target_id": "article-1",
        "inputs_json": {
            "article_url": " https://news.example.com/story ",
            "feed_hints": {"enclosure_url": "https://cdn.example.com/feed.jpg"},
        },
    }

    result = asyncio.run(execute_acquire_featured_image(job, pipeline=pipeline))

    assert result["handled"] is True
    assert result["target_id"] == "article-1"
    assert result["outcome"] == "accepted"
    assert result["image_url"] == "https://cdn.example.com/hero.jpg"
    assert result["source_strategy"] == "social"
    assert pipeline.calls == [
        ("https://news.example.com/story", FeedHints(enclosure_url="https://cdn.example.com/feed.jpg"))
    ]


def test_acquire_job_without_url_is_exhausted() -> None:
    pipeline = FakePipeline()
    result = asyncio.run(
        execute_acquire_featured_image({"kind": ACQUIRE_JOB_KIND, "inputs_json": {}}, pipeline=pipeline)
    )
    assert result["reason"] == "missing_url"
    assert pipeline.calls == []


def test_execute_job_rejects_unknown_kinds() -> None:
    result = asyncio.run(executor.execute_job({"kind": "resolve_url_redirects", "target_id": "x"}, pipeline=FakePipeline()))
    assert result == {
        "handled": False,
        "kind": "resolve_url_redirects",
        "target_type": None,
        "target_id": "x",
        "reason": "unsupported_kind",
    }


def _job_api(jobs: list[dict[str, Any]], submitted: list[dict[str, Any]]) -> httpx.AsyncClient:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["x-module-id"] == "test-worker"
        if request.method == "GET" and request.url.path == "/jobs":
            assert request.url.params["kind"] == ACQUIRE_JOB_KIND
            return httpx.Response(200, json=jobs)
        if request.url.path.endswith("/claim"):
            job_id = request.url.path.split("/")[2]
            return httpx.Response(200, json=next(job for job in jobs if job["id"] == job_id))
        if request.url.path.endswith("/result"):
            submitted.append(json.loads(request.content))
            return httpx.Response(200, json={"ok": True})
        return httpx.Response(404)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def test_process_jobs_once_submits_results() -> None:
    jobs = [{"id": "job-1", "kind": ACQUIRE_JOB_KIND, "inputs_json": {"url": "https://news.example.com/a"}}]
    submitted: list[dict[str, Any]] = []

    async def run() -> int:
        async with _job_api(jobs, submitted) as http:
            client = JobClient("https://queue.example.com/", "test-worker", "key", client=http)
            return await process_jobs_once(client, FakePipeline(), lease_seconds=60)

    assert asyncio.run(run()) == 1
    assert submitted[0]["status"] == "done"
    assert submitted[0]["result_json"]["image_url"] == "https://cdn.example.com/hero.jpg"


def test_process_jobs_once_marks_store_failures_as_failed() -> None:
    jobs = [{"id": "job-2", "kind": ACQUIRE_JOB_KIND, "inputs_json": {"url": "https://news.example.com/b"}}]
    submitted: list[dict[str, Any]] = []
    pipeline = FakePipeline(error=DedupStoreUnavailableError("dedup database unavailable"))

    async def run() -> int:
        async with _job_api(jobs, submitted) as http:
            client = JobClient("https://queue.example.com", "test-worker", "key", client=http)
            return await process_jobs_once(client, pipeline, lease_seconds=60)

    assert asyncio.run(run()) == 1
    assert submitted == [
        {"status": "failed", "result_json": None, "error_json": {"error": "dedup database unavailable"}}
    ]


def test_job_client_requires_external_queue_url() -> None:
    with pytest.raises(JobQueueNotConfiguredError):
        build_job_client(build_settings(job_queue_url=None))

    client = build_job_client(build_settings(job_queue_url="https://queue.example.com/", module_id="images-1"))
    assert client.base_url == "https://queue.example.com"
    assert client.headers["X-Module-Id"] == "images-1"
