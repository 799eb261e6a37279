from __future__ import annotations

from typing import Any

import httpx

from article_images.core.config import Settings


class JobQueueNotConfiguredError(RuntimeError):
    """Raised when the worker starts without an external job queue URL."""


class JobClient:
    """Client for the external job queue service, not this service's own API.

    Requests go straight to ``base_url``, outside the egress guard.
    """

    def __init__(
        self,
        base_url: str,
        module_id: str,
        api_key: str,
        *,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.headers = {
            "X-Module-Id": module_id,
            "X-API-Key": api_key,
        }
        self._client = client

    async def get_jobs(self, *, kind: str, limit: int = 10) -> list[dict[str, Any]]:
        response = await self._request("GET", "/jobs", params={"limit": limit, "kind": kind})
        return response.json()

    async def claim_job(self, job_id: str, lease_seconds: int = 120) -> dict[str, Any]:
        response = await self._request("POST", f"/jobs/{job_id}/claim", json={"lease_seconds": lease_seconds})
        return response.json()

    async def submit_result(
        self,
        job_id: str,
        *,
        status: str,
        result_json: dict[str, Any] | None = None,
        error_json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        payload = {
            "status": status,
            "result_json": result_json,
            "error_json": error_json,
        }
        response = await self._request("POST", f"/jobs/{job_id}/result", json=payload)
        return response.json()

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        if self._client is not None:
            response = await self._client.request(method, f"{self.base_url}{path}", headers=self.headers, **kwargs)
        else:
            async with httpx.AsyncClient(timeout=10.0) as client:
                response = await client.request(method, f"{self.base_url}{path}", headers=self.headers, **kwargs)
        response.raise_for_status()
        return response


def build_job_client(settings: Settings, *, client: httpx.AsyncClient | None = None) -> JobClient:
    if not settings.job_queue_url:
        raise JobQueueNotConfiguredError("AIMG_JOB_QUEUE_URL is required to run the worker")
    return JobClient(
        base_url=settings.job_queue_url,
        module_id=settings.module_id,
        api_key=settings.api_key,
        client=client,
    )
