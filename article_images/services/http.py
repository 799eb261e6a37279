from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any
from urllib.parse import urljoin

import httpx

from article_images.core.config import DEFAULT_USER_AGENT
from article_images.core.egress import EgressGuard
from article_images.services.result_cache import DomainVisitCounter

logger = logging.getLogger(__name__)

REDIRECT_STATUS_CODES = {301, 302, 303, 307, 308}


class FetchError(Exception):
    """Base error for guarded outbound requests."""


class EgressBlockedError(FetchError):
    """Raised before any request is sent to a URL the egress guard rejects."""

    def __init__(self, url: str, reason: str | None) -> None:
        super().__init__(f"egress blocked for {url}: {reason}")
        self.url = url
        self.reason = reason or "blocked"


class TransientFetchError(FetchError):
    """Timeouts, connection failures and 5xx responses."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RedirectLimitError(FetchError):
    """Raised when a redirect chain exceeds the hop limit or loops."""


@dataclass(slots=True)
class FetchedBody:
    response: httpx.Response
    content: bytes
    truncated: bool

    @property
    def status_code(self) -> int:
        return self.response.status_code

    @property
    def text(self) -> str:
        encoding = self.response.charset_encoding or "utf-8"
        try:
            return self.content.decode(encoding, errors="replace")
        except LookupError:
            return self.content.decode("utf-8", errors="replace")


class GuardedHttpClient:
    """The only HTTP client the pipeline uses.

    Redirects are followed by hand so the egress guard sees every hop before a
    request leaves the process.
    """

    def __init__(
        self,
        guard: EgressGuard,
        *,
        timeout_seconds: float = 5.0,
        user_agent: str = DEFAULT_USER_AGENT,
        max_redirects: int = 5,
        visits: DomainVisitCounter | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.guard = guard
        self.max_redirects = max(0, max_redirects)
        self.user_agent = user_agent
        self.visits = visits or DomainVisitCounter()
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds, follow_redirects=False)

    async def __aenter__(self) -> GuardedHttpClient:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def get(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self._send("GET", url, stream=False, **kwargs)

    async def head(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self._send("HEAD", url, stream=False, **kwargs)

    async def post(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self._send("POST", url, stream=False, **kwargs)

    async def fetch_bytes(
        self,
        url: str,
        *,
        max_bytes: int,
        headers: dict[str, str] | None = None,
        params: dict[str, Any] | None = None,
    ) -> FetchedBody:
        """GET ``url`` and read at most ``max_bytes`` + 1 bytes of the body."""
        response = await self._send("GET", url, stream=True, headers=headers, params=params)
        chunks: list[bytes] = []
        total = 0
        truncated = False
        try:
            async for chunk in response.aiter_bytes():
                chunks.append(chunk)
                total += len(chunk)
                if total > max_bytes:
                    truncated = True
                    break
        except httpx.TransportError as exc:
            raise TransientFetchError(f"body read failed for {url}: {exc}") from exc
        finally:
            await response.aclose()
        return FetchedBody(response=response, content=b"".join(chunks), truncated=truncated)

    async def _send(
        self,
        method: str,
        url: str,
        *,
        stream: bool,
        headers: dict[str, str] | None = None,
        params: dict[str, Any] | None = None,
        json: Any = None,
        timeout: float | None = None,
    ) -> httpx.Response:
        request_headers = {"User-Agent": self.user_agent, **(headers or {})}
        current_url = url
        seen_urls: set[str] = set()

        for _ in range(self.max_redirects + 1):
            decision = await self.guard.check(current_url)
            if not decision.valid:
                raise EgressBlockedError(current_url, decision.reason)
            if current_url in seen_urls:
                raise RedirectLimitError(f"redirect loop detected at {current_url}")
            seen_urls.add(current_url)

            extra: dict[str, Any] = {"headers": request_headers}
            if params is not None:
                extra["params"] = params
            if json is not None:
                extra["json"] = json
            if timeout is not None:
                extra["timeout"] = timeout
            request = self._client.build_request(method, current_url, **extra)

            self.visits.visit(current_url)
            try:
                response = await self._client.send(request, stream=stream)
            except httpx.TimeoutException as exc:
                raise TransientFetchError(f"timeout requesting {current_url}") from exc
            except httpx.TransportError as exc:
                raise TransientFetchError(f"transport error requesting {current_url}: {exc}") from exc

            location = response.headers.get("location")
            if response.status_code in REDIRECT_STATUS_CODES and location:
                if stream:
                    await response.aclose()
                next_url = urljoin(str(response.url), location)
                logger.debug("following redirect status=%s from=%s to=%s", response.status_code, current_url, next_url)
                if response.status_code == 303 or (response.status_code in {301, 302} and method == "POST"):
                    method = "GET"
                    json = None
                current_url = next_url
                params = None
                continue

            if response.status_code >= 500:
                if stream:
                    await response.aclose()
                raise TransientFetchError(
                    f"server error {response.status_code} from {current_url}",
                    status_code=response.status_code,
                )
            return response

        raise RedirectLimitError(f"redirect hop limit {self.max_redirects} exceeded for {url}")
