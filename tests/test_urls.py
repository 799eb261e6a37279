from __future__ import annotations

from article_images.core.urls import (
    best_srcset_url,
    build_identity_rules,
    image_content_hash,
    image_identity_url,
    is_amp_url,
    normalize_url,
    parse_dimensions_from_url,
    parse_srcset,
    resolve_image_url,
)


def test_normalize_url_drops_tracking_and_sorts_query() -> None:
    normalized = normalize_url("https://CDN.Example.com:443/img/hero.jpg/?utm_source=feed&w=800&a=1")
    assert normalized == "https://cdn.example.com/img/hero.jpg?a=1&w=800"


def test_identity_url_strips_resize_params_by_default() -> None:
    first = image_identity_url("https://cdn.example.com/photos/a.jpg?w=800&quality=80")
    second = image_identity_url("https://cdn.example.com/photos/a.jpg?w=1600")
    assert first == second == "https://cdn.example.com/photos/a.jpg"


def test_identity_url_keeps_meaningful_params() -> None:
    identity = image_identity_url("https://img.example.com/render?width=300&image_id=42&id=7")
    assert identity == "https://img.example.com/render?id=7&image_id=42"


def test_identity_url_keeps_signature_for_random_image_services() -> None:
    rules = build_identity_rules(None)
    first = image_content_hash("https://source.unsplash.com/1600x900/?city&sig=1", rules=rules)
    second = image_content_hash("https://source.unsplash.com/1600x900/?city&sig=2", rules=rules)
    assert first != second


def test_identity_overrides_merge_over_defaults() -> None:
    rules = build_identity_rules(
        '{"media.example.org":{"preserve_query_params":["v"],"strip_www":true,"force_https":true}}'
    )
    identity = image_identity_url("http://www.media.example.org/pic.png?v=3&w=200", rules=rules)
    assert identity == "https://media.example.org/pic.png?v=3"
    assert "source.unsplash.com" in rules


def test_identity_overrides_ignore_malformed_json() -> None:
    assert build_identity_rules("{not json") == build_identity_rules(None)


def test_resolve_image_url_handles_relative_and_protocol_relative() -> None:
    base = "https://news.example.com/world/story.html"
    assert resolve_image_url("//cdn.example.com/a.jpg", base) == "https://cdn.example.com/a.jpg"
    assert resolve_image_url("../img/b.jpg", base) == "https://news.example.com/img/b.jpg"
    assert resolve_image_url("/img/c&amp;d.jpg", base) == "https://news.example.com/img/c&d.jpg"


def test_resolve_image_url_rejects_unfetchable_schemes() -> None:
    base = "https://news.example.com/"
    assert resolve_image_url("data:image/png;base64,AAAA", base) is None
    assert resolve_image_url("javascript:alert(1)", base) is None
    assert resolve_image_url("ftp://files.example.com/a.jpg", base) is None
    assert resolve_image_url("   ", base) is None


def test_parse_srcset_keeps_commas_inside_urls() -> None:
    srcset = "https://res.example.com/w_400,h_200/a.jpg 400w, https://res.example.com/w_1200,h_600/a.jpg 1200w"
    assert parse_srcset(srcset) == [
        ("https://res.example.com/w_400,h_200/a.jpg", "400w"),
        ("https://res.example.com/w_1200,h_600/a.jpg", "1200w"),
    ]
    assert best_srcset_url(srcset) == "https://res.example.com/w_1200,h_600/a.jpg"


def test_best_srcset_url_prefers_highest_density_and_skips_data_urls() -> None:
    assert best_srcset_url("small.jpg 1x, large.jpg 2x") == "large.jpg"
    assert best_srcset_url("data:image/gif;base64,R0lGOD 3x, real.jpg 1x") == "real.jpg"
    assert best_srcset_url("") is None


def test_parse_dimensions_from_url_patterns() -> None:
    assert parse_dimensions_from_url("https://cdn.example.com/1200x630/hero.jpg") == (1200, 630)
    assert parse_dimensions_from_url("https://cdn.example.com/img/hero_1600x900.jpg") == (1600, 900)
    assert parse_dimensions_from_url("https://cdn.example.com/w1200-h800/hero.jpg") == (1200, 800)
    assert parse_dimensions_from_url("https://cdn.example.com/hero.800x450.webp") == (800, 450)
    assert parse_dimensions_from_url("https://cdn.example.com/hero.jpg") is None
    assert parse_dimensions_from_url("https://cdn.example.com/50000x90000/hero.jpg") is None


def test_is_amp_url_recognizes_common_amp_forms() -> None:
    assert is_amp_url("https://news.example.com/story/amp/") is True
    assert is_amp_url("https://news.example.com/amp/story") is True
    assert is_amp_url("https://news.example.com/story.amp.html") is True
    assert is_amp_url("https://news.example.com/story?amp=1") is True
    assert is_amp_url("https://news.example.com/story?outputType=amp") is True
    assert is_amp_url("https://news.example.com/stamp-collecting") is False
    assert is_amp_url("https://news.example.com/story?amp=0") is False
