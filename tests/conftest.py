from __future__ import annotations

import io
import random
from collections.abc import Callable
from typing import Any

import httpx
import pytest
from PIL import Image, ImageDraw

from article_images.core.config import Settings

PUBLIC_ADDRESS = "93.184.216.34"

Route = httpx.Response | Callable[[httpx.Request], httpx.Response]


def make_jpeg(width: int = 1200, height: int = 630, *, seed: int = 0, quality: int = 85) -> bytes:
    """Blocky grayscale scene with light noise: stable pHash, realistic byte size."""
    rng = random.Random(seed)
    scene = Image.new("L", (width, height), color=rng.randint(0, 255))
    draw = ImageDraw.Draw(scene)
    for _ in range(12):
        x0 = rng.randint(0, width - 2)
        y0 = rng.randint(0, height - 2)
        x1 = rng.randint(x0 + 1, width - 1)
        y1 = rng.randint(y0 + 1, height - 1)
        draw.rectangle((x0, y0, x1, y1), fill=rng.randint(0, 255))
    noise = Image.effect_noise((width, height), 24)
    buffer = io.BytesIO()
    Image.blend(scene, noise, 0.2).convert("RGB").save(buffer, format="JPEG", quality=quality)
    return buffer.getvalue()


class FakeWeb:
    """MockTransport handler serving registered URLs and recording every request."""

    def __init__(self) -> None:
        self.routes: dict[tuple[str, str], Route] = {}
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = str(request.url)
        route = self.routes.get((request.method, url)) or self.routes.get((request.method, url.split("?", 1)[0]))
        if route is None:
            return httpx.Response(404, request=request)
        if isinstance(route, httpx.Response):
            return route
        return route(request)

    def page(self, url: str, html: str, *, status_code: int = 200) -> None:
        self.routes[("GET", url)] = lambda request: httpx.Response(
            status_code,
            headers={"content-type": "text/html; charset=utf-8"},
            text=html,
            request=request,
        )

    def image(self, url: str, content: bytes, *, content_type: str = "image/jpeg") -> None:
        self.routes[("HEAD", url)] = lambda request: httpx.Response(
            200,
            headers={"content-type": content_type, "content-length": str(len(content))},
            request=request,
        )
        self.routes[("GET", url)] = lambda request: httpx.Response(
            200,
            headers={"content-type": content_type},
            content=content,
            request=request,
        )

    def json(self, url: str, payload: Any, *, status_code: int = 200) -> None:
        self.routes[("GET", url)] = lambda request: httpx.Response(status_code, json=payload, request=request)

    def urls(self, method: str | None = None) -> list[str]:
        return [str(request.url) for request in self.requests if method is None or request.method == method]


async def public_resolver(host: str) -> list[str]:
    return [PUBLIC_ADDRESS]


def build_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "otel_enabled": False,
        "database_url": None,
        "vision_endpoint": None,
        "render_fallback_enabled": False,
        "retry_backoff_base_seconds": 0.0,
        "retry_backoff_max_seconds": 0.0,
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def web() -> FakeWeb:
    return FakeWeb()

