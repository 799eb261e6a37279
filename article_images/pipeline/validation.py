from __future__ import annotations

import asyncio
import logging
import mimetypes
import re
from dataclasses import replace
from datetime import datetime, timezone
from urllib.parse import urlparse

import httpx
from opentelemetry import trace

from article_images.core.egress import EgressGuard
from article_images.core.urls import ImageIdentityRule, image_content_hash, parse_dimensions_from_url
from article_images.pipeline.models import DedupRecord, ImageCandidate, ValidationOutcome
from article_images.services.composition import is_acceptable_composition
from article_images.services.dedup_store import DedupStore
from article_images.services.fingerprint import fingerprint_image
from article_images.services.http import (
    EgressBlockedError,
    FetchedBody,
    GuardedHttpClient,
    RedirectLimitError,
    TransientFetchError,
)
from article_images.services.result_cache import ResultCache
from article_images.services.vision import VisionCheck

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

ALLOWED_MIME_TYPES = {
    "image/jpeg",
    "image/jpg",
    "image/pjpeg",
    "image/png",
    "image/webp",
    "image/gif",
    "image/avif",
}
HEAD_FALLBACK_STATUSES = {400, 403, 405, 501}
GENERIC_CONTENT_TYPES = {"application/octet-stream", "binary/octet-stream"}
RANGE_REQUEST_BYTES = 65_536
_BOUNDARY = r"(?:^|[/_.\-=?&])"
_END = r"(?:[/_.\-=?&]|\d|$)"
BLACKLIST_PATTERNS = tuple(
    re.compile(pattern)
    for pattern in (
        rf"{_BOUNDARY}avatars?{_END}",
        rf"{_BOUNDARY}icons?{_END}",
        rf"{_BOUNDARY}favicon",
        rf"{_BOUNDARY}logos?{_END}",
        rf"{_BOUNDARY}sprites?{_END}",
        rf"{_BOUNDARY}1x1{_END}",
        rf"{_BOUNDARY}pixel{_END}",
        rf"{_BOUNDARY}spacer{_END}",
        rf"{_BOUNDARY}transparent{_END}",
        rf"{_BOUNDARY}blank\.(?:gif|png)",
        rf"{_BOUNDARY}placeholder",
        r"gravatar\.com",
        rf"{_BOUNDARY}profile{_END}",
        r"default[-_]?(?:image|avatar|thumb)",
        r"no[-_]?image",
        r"coming[-_]?soon",
        r"\.svgz?(?:\?|$)",
    )
)
TRACKING_PATTERNS = tuple(
    re.compile(pattern)
    for pattern in (
        r"doubleclick\.net",
        r"google-analytics\.com",
        r"googletagmanager\.com",
        r"facebook\.com/tr",
        r"scorecardresearch\.com",
        r"quantserve\.com",
        r"/analytics[/.?]",
        r"/track(?:ing)?[/.?]",
        r"/beacon[/.?]",
    )
)


def is_blacklisted(url: str) -> bool:
    parsed = urlparse(url)
    host = (parsed.hostname or "").lower()
    target = parsed.path.lower()
    if parsed.query:
        target = f"{target}?{parsed.query.lower()}"
    subject = f"{host}{target}"
    if any(pattern.search(subject) for pattern in TRACKING_PATTERNS):
        return True
    return any(pattern.search(subject) for pattern in BLACKLIST_PATTERNS)


def guess_mime_type(url: str) -> str | None:
    guessed, _ = mimetypes.guess_type(urlparse(url).path)
    if guessed == "image/jpg":
        return "image/jpeg"
    return guessed


def content_mime_type(content_type: str | None, url: str) -> str | None:
    declared = (content_type or "").split(";", maxsplit=1)[0].strip().lower()
    if declared and declared not in GENERIC_CONTENT_TYPES:
        return declared
    return guess_mime_type(url) or (declared or None)


def _declared_size(headers: httpx.Headers, status_code: int) -> int | None:
    if status_code == 206:
        content_range = headers.get("content-range") or ""
        _, _, total = content_range.rpartition("/")
        return int(total) if total.isdigit() else None
    raw_length = headers.get("content-length")
    if raw_length and raw_length.isdigit():
        return int(raw_length)
    return None


class ImageValidator:
    """Runs one candidate through the validation chain.

    Order: egress, blacklist, cached probe (content type, size, fingerprint),
    exact and perceptual dedup, composition, optional vision check, then an
    atomic claim in the dedup store. A candidate is accepted only if the claim
    succeeds.
    """

    def __init__(
        self,
        *,
        http: GuardedHttpClient,
        guard: EgressGuard,
        cache: ResultCache[ValidationOutcome],
        store: DedupStore,
        vision: VisionCheck | None = None,
        min_bytes: int = 5_000,
        max_bytes: int = 10_000_000,
        max_range_bytes: int = RANGE_REQUEST_BYTES,
        exact_threshold: int = 1,
        near_threshold: int = 6,
        scan_limit: int = 1000,
        min_composition_score: int = 50,
        unknown_composition_score: int = 50,
        identity_rules: dict[str, ImageIdentityRule] | None = None,
    ) -> None:
        self.http = http
        self.guard = guard
        self.cache = cache
        self.store = store
        self.vision = vision
        self.min_bytes = min_bytes
        self.max_bytes = max_bytes
        self.max_range_bytes = max(1, max_range_bytes)
        self.exact_threshold = exact_threshold
        self.near_threshold = near_threshold
        self.scan_limit = scan_limit
        self.min_composition_score = min_composition_score
        self.unknown_composition_score = unknown_composition_score
        self.identity_rules = identity_rules

    async def validate(self, candidate: ImageCandidate, *, article_url: str) -> ValidationOutcome:
        with tracer.start_as_current_span("image.validate") as span:
            span.set_attribute("image.url", candidate.url)
            span.set_attribute("image.strategy", candidate.source_strategy.value)
            outcome = await self._validate(candidate, article_url=article_url)
            span.set_attribute("image.accepted", outcome.accepted)
            if outcome.reason:
                span.set_attribute("image.reason", outcome.reason)
            return outcome

    async def _validate(self, candidate: ImageCandidate, *, article_url: str) -> ValidationOutcome:
        url = candidate.url
        decision = await self.guard.check(url)
        if not decision.valid:
            logger.debug("candidate blocked by egress guard url=%s reason=%s", url, decision.reason)
            return ValidationOutcome(accepted=False, reason=f"egress_blocked:{decision.reason}")

        if is_blacklisted(url):
            return ValidationOutcome(accepted=False, reason="blacklisted")

        probe = self.cache.get(url)
        if probe is None:
            try:
                probe = await self._probe(candidate)
            except EgressBlockedError as exc:
                logger.debug("candidate redirect blocked url=%s reason=%s", url, exc.reason)
                return ValidationOutcome(accepted=False, reason=f"egress_blocked:{exc.reason}")
            except TransientFetchError as exc:
                logger.info("transient probe failure url=%s error=%s", url, exc)
                return ValidationOutcome(accepted=False, reason="transient_error")
            self.cache.set(url, probe)

        if not probe.accepted or probe.content_hash is None:
            return probe

        record = DedupRecord(
            content_hash=probe.content_hash,
            perceptual_hash=probe.perceptual_hash,
            source_url=url,
            article_url=article_url,
            accepted_at=datetime.now(timezone.utc),
        )
        precheck = await self.store.check(
            record,
            exact_threshold=self.exact_threshold,
            near_threshold=self.near_threshold,
            scan_limit=self.scan_limit,
        )
        if not precheck.accepted:
            logger.info("duplicate image rejected url=%s decision=%s", url, precheck.decision)
            return replace(probe, accepted=False, reason=precheck.decision)

        width = probe.width or candidate.measured_width
        height = probe.height or candidate.measured_height
        if not is_acceptable_composition(
            width,
            height,
            minimum=self.min_composition_score,
            unknown_score=self.unknown_composition_score,
        ):
            return replace(probe, accepted=False, reason="low_composition")

        if self.vision is not None and precheck.decision != "already_owned":
            verdict = await self.vision.verify(url)
            if not verdict.passed:
                rejected = replace(probe, accepted=False, reason="vision_rejected")
                self.cache.set(url, rejected)
                return rejected

        claim = await self.store.claim(
            record,
            exact_threshold=self.exact_threshold,
            near_threshold=self.near_threshold,
            scan_limit=self.scan_limit,
        )
        if not claim.accepted:
            logger.info("lost dedup claim url=%s decision=%s", url, claim.decision)
            return replace(probe, accepted=False, reason=claim.decision)
        return replace(probe, accepted=True, reason=claim.decision, width=width, height=height)

    async def _probe(self, candidate: ImageCandidate) -> ValidationOutcome:
        """Content type, size and fingerprint. Raises TransientFetchError for retryable failures."""
        url = candidate.url
        ranged: FetchedBody | None = None
        try:
            response = await self.http.head(url, headers={"Accept": "image/*"})
            if response.status_code in HEAD_FALLBACK_STATUSES:
                ranged = await self.http.fetch_bytes(
                    url,
                    max_bytes=self.max_range_bytes,
                    headers={"Accept": "image/*", "Range": f"bytes=0-{self.max_range_bytes - 1}"},
                )
                response = ranged.response
        except RedirectLimitError:
            return ValidationOutcome(accepted=False, reason="redirect_limit")

        if response.status_code >= 400:
            return ValidationOutcome(accepted=False, reason=f"http_{response.status_code}")

        mime_type = content_mime_type(response.headers.get("content-type"), url)
        if mime_type not in ALLOWED_MIME_TYPES:
            return ValidationOutcome(accepted=False, reason="unsupported_content_type", mime_type=mime_type)

        declared = _declared_size(response.headers, response.status_code)
        size_rejection = self._size_rejection(declared)
        if size_rejection:
            return ValidationOutcome(accepted=False, reason=size_rejection, mime_type=mime_type, byte_size=declared)

        if ranged is not None and ranged.status_code == 200 and not ranged.truncated:
            # Range ignored but the whole image fit in the probe read.
            body = ranged
        else:
            try:
                body = await self.http.fetch_bytes(url, max_bytes=self.max_bytes, headers={"Accept": "image/*"})
            except RedirectLimitError:
                return ValidationOutcome(accepted=False, reason="redirect_limit")
        if body.status_code >= 400:
            return ValidationOutcome(accepted=False, reason=f"http_{body.status_code}")
        if body.truncated:
            return ValidationOutcome(accepted=False, reason="too_large", mime_type=mime_type)

        byte_size = len(body.content)
        if byte_size < self.min_bytes:
            return ValidationOutcome(accepted=False, reason="too_small", mime_type=mime_type, byte_size=byte_size)

        fingerprint = await asyncio.to_thread(fingerprint_image, body.content)
        if fingerprint is not None:
            width, height = fingerprint.width, fingerprint.height
        elif candidate.measured_width and candidate.measured_height:
            width, height = candidate.measured_width, candidate.measured_height
        else:
            width, height = parse_dimensions_from_url(url) or (None, None)

        return ValidationOutcome(
            accepted=True,
            content_hash=image_content_hash(url, rules=self.identity_rules),
            perceptual_hash=fingerprint.perceptual_hash if fingerprint else None,
            mime_type=mime_type,
            byte_size=byte_size,
            width=width,
            height=height,
        )

    def _size_rejection(self, size: int | None) -> str | None:
        if size is None or size <= 0:
            return None
        if size < self.min_bytes:
            return "too_small"
        if size > self.max_bytes:
            return "too_large"
        return None
