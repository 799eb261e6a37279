from __future__ import annotations

import pytest

from article_images.services.composition import composition_score, is_acceptable_composition, orientation


@pytest.mark.parametrize(
    ("width", "height", "expected"),
    [
        (1920, 1080, 100),
        (1200, 630, 100),
        (1500, 1000, 95),
        (1024, 768, 85),
        (1000, 1000, 60),
        (600, 900, 40),
        (1080, 1920, 20),
        (4000, 1000, 70),
        (300, 1000, 5),
    ],
)
def test_composition_score_table(width: int, height: int, expected: int) -> None:
    assert composition_score(width, height) == expected


def test_unknown_dimensions_get_neutral_score() -> None:
    assert composition_score(None, 600) == 50
    assert composition_score(0, 0, unknown_score=30) == 30
    assert is_acceptable_composition(None, None) is True
    assert is_acceptable_composition(None, None, unknown_score=40) is False


def test_acceptance_floor() -> None:
    assert is_acceptable_composition(1000, 1000) is True
    assert is_acceptable_composition(600, 900) is False
    assert is_acceptable_composition(1000, 1000, minimum=70) is False


def test_orientation() -> None:
    assert orientation(1200, 630) == "landscape"
    assert orientation(630, 1200) == "portrait"
    assert orientation(1000, 1030) == "square"
    assert orientation(None, 10) == "unknown"
