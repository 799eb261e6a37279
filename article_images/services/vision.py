from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Protocol

from article_images.services.http import FetchError, GuardedHttpClient

logger = logging.getLogger(__name__)

INVALID_CAPTION_PATTERNS = (
    re.compile(r"\b404\b"),
    re.compile(r"not found", re.IGNORECASE),
    re.compile(r"\berror\b", re.IGNORECASE),
    re.compile(r"placeholder", re.IGNORECASE),
    re.compile(r"broken", re.IGNORECASE),
)


@dataclass(slots=True, frozen=True)
class VisionVerdict:
    passed: bool
    caption: str | None = None
    error: str | None = None


class VisionCheck(Protocol):
    async def verify(self, image_url: str) -> VisionVerdict: ...


class CaptionVisionCheck:
    """Advisory caption check against a BLIP-style inference endpoint.

    Only a caption that reads like an error page rejects the image. Every
    failure of the check itself passes.
    """

    def __init__(
        self,
        http: GuardedHttpClient,
        *,
        endpoint: str,
        api_key: str | None,
        timeout_seconds: float = 10.0,
    ) -> None:
        self.http = http
        self.endpoint = endpoint
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds

    async def verify(self, image_url: str) -> VisionVerdict:
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        try:
            response = await self.http.post(
                self.endpoint,
                json={"inputs": image_url},
                headers=headers,
                timeout=self.timeout_seconds,
            )
        except FetchError as exc:
            logger.info("vision check unavailable url=%s error=%s", image_url, exc)
            return VisionVerdict(passed=True, error=str(exc))

        if response.status_code != 200:
            return VisionVerdict(passed=True, error=f"vision endpoint status {response.status_code}")

        try:
            payload = response.json()
        except ValueError:
            return VisionVerdict(passed=True, error="vision endpoint returned invalid json")

        caption = _extract_caption(payload)
        if caption is None:
            return VisionVerdict(passed=True, error="no caption")
        if any(pattern.search(caption) for pattern in INVALID_CAPTION_PATTERNS):
            return VisionVerdict(passed=False, caption=caption)
        return VisionVerdict(passed=True, caption=caption)


def _extract_caption(payload: object) -> str | None:
    if isinstance(payload, list) and payload and isinstance(payload[0], dict):
        text = payload[0].get("generated_text")
        if isinstance(text, str) and text.strip():
            return text.strip()
    return None
