from __future__ import annotations

import hashlib
import html
import json
import re
from typing import Any, TypedDict
from urllib.parse import parse_qsl, urlencode, urljoin, urlparse, urlunparse

TRACKING_KEYS = {"ref", "fbclid", "gclid", "mc_cid", "mc_eid"}
MEANINGFUL_IMAGE_PARAMS = {"id", "image_id", "photo_id", "media_id"}
UNFETCHABLE_SCHEMES = ("data:", "blob:", "javascript:", "about:", "mailto:")

_DIMENSION_PATTERNS = (
    re.compile(r"[/_](\d{3,5})x(\d{3,5})[/_.]", re.IGNORECASE),
    re.compile(r"[/_]w(\d{3,5})-?h(\d{3,5})[/_.]", re.IGNORECASE),
    re.compile(r"[/_](\d{3,5})w-?(\d{3,5})h[/_.]", re.IGNORECASE),
    re.compile(r"\.(\d{3,5})x(\d{3,5})\.\w+$", re.IGNORECASE),
)
_MIN_URL_DIMENSION = 100
_MAX_URL_DIMENSION = 10_000
_AMP_PATH_RE = re.compile(r"(?:/amp/?$|/amp/|\.amp(?:\.html)?$)", re.IGNORECASE)


class ImageIdentityRule(TypedDict):
    preserve_all_query: bool
    preserve_query_params: set[str]
    strip_query_params: set[str]
    strip_query_prefixes: set[str]
    strip_www: bool
    force_https: bool


def _rule(
    *,
    preserve_all_query: bool = False,
    preserve_query_params: set[str] | None = None,
    strip_query_params: set[str] | None = None,
    strip_query_prefixes: set[str] | None = None,
    strip_www: bool = False,
    force_https: bool = False,
) -> ImageIdentityRule:
    return {
        "preserve_all_query": preserve_all_query,
        "preserve_query_params": preserve_query_params or set(),
        "strip_query_params": strip_query_params or set(),
        "strip_query_prefixes": strip_query_prefixes or set(),
        "strip_www": strip_www,
        "force_https": force_https,
    }


# Hosts whose query string is part of the image identity (random/signed URLs).
DEFAULT_IDENTITY_RULES: dict[str, ImageIdentityRule] = {
    "source.unsplash.com": _rule(preserve_all_query=True),
    "amazonaws.com": _rule(preserve_all_query=True),
    "cloudfront.net": _rule(preserve_all_query=True),
    "googleusercontent.com": _rule(preserve_all_query=True),
    "imgix.net": _rule(preserve_all_query=True),
}


def canonical_hash(identity_url: str) -> str:
    return hashlib.sha256(identity_url.encode("utf-8")).hexdigest()


def parse_identity_overrides(raw: str | None) -> dict[str, ImageIdentityRule]:
    if not raw:
        return {}
    try:
        decoded = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    if not isinstance(decoded, dict):
        return {}

    parsed: dict[str, ImageIdentityRule] = {}
    for raw_domain, raw_rules in decoded.items():
        if not isinstance(raw_domain, str):
            continue
        domain = raw_domain.strip().lower().lstrip(".")
        if not domain or not isinstance(raw_rules, dict):
            continue

        parsed[domain] = _rule(
            preserve_all_query=bool(raw_rules.get("preserve_all_query", False)),
            preserve_query_params=_coerce_lower_str_set(raw_rules.get("preserve_query_params")),
            strip_query_params=_coerce_lower_str_set(raw_rules.get("strip_query_params")),
            strip_query_prefixes=_coerce_lower_str_set(raw_rules.get("strip_query_prefixes")),
            strip_www=bool(raw_rules.get("strip_www", False)),
            force_https=bool(raw_rules.get("force_https", False)),
        )
    return parsed


def build_identity_rules(raw: str | None) -> dict[str, ImageIdentityRule]:
    rules = dict(DEFAULT_IDENTITY_RULES)
    rules.update(parse_identity_overrides(raw))
    return rules


def normalize_url(raw_url: str) -> str:
    """Conservative normalization used to merge candidates found by several strategies."""
    parsed = urlparse(raw_url.strip())
    scheme = parsed.scheme.lower()
    netloc = _strip_default_port(scheme, parsed.netloc.lower())

    path = parsed.path or "/"
    if path != "/" and path.endswith("/"):
        path = path[:-1]

    query_pairs = [
        (key, value)
        for key, value in parse_qsl(parsed.query, keep_blank_values=True)
        if not _is_tracking_param(key.lower())
    ]
    query_pairs.sort(key=lambda pair: pair[0])
    return urlunparse((scheme, netloc, path, "", urlencode(query_pairs, doseq=True), ""))


def image_identity_url(raw_url: str, *, rules: dict[str, ImageIdentityRule] | None = None) -> str:
    """Reduce an image URL to the part that identifies the image.

    Resize and cache-busting parameters are dropped so that the same picture at
    different widths hashes identically. Hosts listed in the rule table with
    ``preserve_all_query`` keep their full query string, signature included.
    """
    parsed = urlparse(raw_url.strip())
    scheme = parsed.scheme.lower()
    netloc = _strip_default_port(scheme, parsed.netloc.lower())
    host, _, port = netloc.partition(":")

    rule = _match_rule(host, DEFAULT_IDENTITY_RULES if rules is None else rules)
    if rule and rule["strip_www"] and host.startswith("www."):
        host = host[4:]
        netloc = host if not port else f"{host}:{port}"
    if rule and rule["force_https"] and scheme == "http":
        scheme = "https"

    query_pairs = [
        (key, value)
        for key, value in parse_qsl(parsed.query, keep_blank_values=True)
        if _keeps_identity_param(key.lower(), rule)
    ]
    query_pairs.sort(key=lambda pair: pair[0])
    return urlunparse((scheme, netloc, parsed.path or "/", "", urlencode(query_pairs, doseq=True), ""))


def image_content_hash(raw_url: str, *, rules: dict[str, ImageIdentityRule] | None = None) -> str:
    return canonical_hash(image_identity_url(raw_url, rules=rules))


def resolve_image_url(raw: str | None, base_url: str | None) -> str | None:
    """Turn an attribute value into an absolute, fetchable http(s) URL."""
    if not raw:
        return None
    value = html.unescape(raw).strip().strip("'\"").strip()
    if not value or value.lower().startswith(UNFETCHABLE_SCHEMES):
        return None
    if value.startswith("//"):
        value = f"https:{value}"
    absolute = urljoin(base_url, value) if base_url else value
    parsed = urlparse(absolute)
    if parsed.scheme.lower() not in {"http", "https"} or not parsed.netloc:
        return None
    return absolute.replace(" ", "%20")


def parse_srcset(value: str | None) -> list[tuple[str, str]]:
    """Split a srcset attribute into (url, descriptor) pairs.

    URLs may contain commas (image CDNs use them for transform options), so a
    comma only separates entries when it follows a descriptor or ends a URL.
    """
    if not value:
        return []
    entries: list[tuple[str, str]] = []
    position = 0
    length = len(value)
    while position < length:
        while position < length and (value[position].isspace() or value[position] == ","):
            position += 1
        if position >= length:
            break
        start = position
        while position < length and not value[position].isspace():
            position += 1
        url = value[start:position]
        descriptor = ""
        if url.endswith(","):
            url = url.rstrip(",")
        else:
            start = position
            while position < length and value[position] != ",":
                position += 1
            descriptor = value[start:position].strip()
        if url:
            entries.append((url, descriptor))
    return entries


def best_srcset_url(value: str | None) -> str | None:
    best_url: str | None = None
    best_weight = -1.0
    for url, descriptor in parse_srcset(value):
        if url.lower().startswith("data:"):
            continue
        weight = _descriptor_weight(descriptor)
        if weight > best_weight:
            best_url = url
            best_weight = weight
    return best_url


def parse_dimensions_from_url(url: str) -> tuple[int, int] | None:
    path = urlparse(url).path
    for pattern in _DIMENSION_PATTERNS:
        match = pattern.search(path)
        if not match:
            continue
        width, height = int(match.group(1)), int(match.group(2))
        if _MIN_URL_DIMENSION <= width <= _MAX_URL_DIMENSION and _MIN_URL_DIMENSION <= height <= _MAX_URL_DIMENSION:
            return width, height
    return None


def is_amp_url(url: str) -> bool:
    parsed = urlparse(url)
    if _AMP_PATH_RE.search(parsed.path):
        return True
    for key, value in parse_qsl(parsed.query, keep_blank_values=True):
        key, value = key.lower(), value.lower()
        if (key == "amp" and value in {"", "1", "true"}) or (key == "outputtype" and value == "amp"):
            return True
    return False


def host_of(url: str) -> str:
    return (urlparse(url).hostname or "").lower()


def _descriptor_weight(descriptor: str) -> float:
    token = descriptor.strip().lower()
    if not token:
        return 1.0
    try:
        if token.endswith("w"):
            return float(token[:-1])
        if token.endswith("x"):
            return float(token[:-1])
    except ValueError:
        return 0.0
    return 0.0


def _strip_default_port(scheme: str, netloc: str) -> str:
    if ":" not in netloc or netloc.endswith("]"):
        return netloc
    host, port = netloc.rsplit(":", maxsplit=1)
    if (scheme == "http" and port == "80") or (scheme == "https" and port == "443"):
        return host
    return netloc


def _coerce_lower_str_set(value: Any) -> set[str]:
    if not isinstance(value, list):
        return set()
    return {item.strip().lower() for item in value if isinstance(item, str) and item.strip()}


def _is_tracking_param(key: str) -> bool:
    return key.startswith("utm_") or key in TRACKING_KEYS


def _match_rule(host: str, rules: dict[str, ImageIdentityRule]) -> ImageIdentityRule | None:
    if not host or not rules:
        return None
    labels = host.split(".")
    for index in range(len(labels)):
        candidate = ".".join(labels[index:])
        if candidate in rules:
            return rules[candidate]
    return None


def _keeps_identity_param(key: str, rule: ImageIdentityRule | None) -> bool:
    if _is_tracking_param(key):
        return False
    if rule is None:
        return key in MEANINGFUL_IMAGE_PARAMS
    if key in rule["strip_query_params"] or any(key.startswith(prefix) for prefix in rule["strip_query_prefixes"]):
        return False
    if rule["preserve_all_query"]:
        return True
    return key in MEANINGFUL_IMAGE_PARAMS or key in rule["preserve_query_params"]
