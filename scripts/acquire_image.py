#!/usr/bin/env python3
"""Run the image acquisition pipeline once for one article URL and print the result."""

from __future__ import annotations

import argparse
import asyncio
import json
from typing import Any

from article_images.core.config import get_settings
from article_images.core.telemetry import configure_logging
from article_images.pipeline.models import FeedHints
from article_images.pipeline.orchestrator import build_pipeline


async def acquire(article_url: str, hints: FeedHints | None) -> dict[str, Any]:
    pipeline = build_pipeline(get_settings())
    try:
        result = await pipeline.acquire_image(article_url, hints)
        return result.to_dict()
    finally:
        await pipeline.aclose()


def main() -> None:
    parser = argparse.ArgumentParser(description="Find a lead image for an article URL.")
    parser.add_argument("article_url", help="Article page URL")
    parser.add_argument("--enclosure-url", help="Feed enclosure image URL")
    parser.add_argument("--media-content-url", help="Feed media:content URL")
    args = parser.parse_args()

    configure_logging()
    hints = FeedHints.from_mapping(
        {"enclosure_url": args.enclosure_url, "media_content_url": args.media_content_url}
    )
    print(json.dumps(asyncio.run(acquire(args.article_url, hints)), indent=2, default=str))


if __name__ == "__main__":
    main()
