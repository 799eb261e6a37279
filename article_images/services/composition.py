from __future__ import annotations

from typing import Literal

Orientation = Literal["landscape", "portrait", "square", "unknown"]

# (ratio, score) pairs; the closest ratio wins.
IDEAL_RATIOS: tuple[tuple[float, int], ...] = (
    (16 / 9, 100),
    (3 / 2, 95),
    (4 / 3, 85),
    (1.0, 60),
    (2 / 3, 40),
    (9 / 16, 20),
)
EXTREME_WIDE_RATIO = 3.0
EXTREME_TALL_RATIO = 0.4
SQUARE_TOLERANCE = 0.05


def composition_score(width: int | None, height: int | None, *, unknown_score: int = 50) -> int:
    """Score how well width x height fits a wide hero slot, on a 0-100 scale.

    Unknown or zero dimensions get ``unknown_score`` instead of being excluded.
    """
    if not width or not height or width <= 0 or height <= 0:
        return unknown_score

    ratio = width / height
    _, score = min(IDEAL_RATIOS, key=lambda item: abs(item[0] - ratio))
    if ratio > EXTREME_WIDE_RATIO:
        score = max(10, score - 30)
    elif ratio < EXTREME_TALL_RATIO:
        score = max(5, score - 40)
    return score


def is_acceptable_composition(
    width: int | None,
    height: int | None,
    *,
    minimum: int = 50,
    unknown_score: int = 50,
) -> bool:
    return composition_score(width, height, unknown_score=unknown_score) >= minimum


def orientation(width: int | None, height: int | None) -> Orientation:
    if not width or not height:
        return "unknown"
    ratio = width / height
    if abs(ratio - 1.0) <= SQUARE_TOLERANCE:
        return "square"
    return "landscape" if ratio > 1.0 else "portrait"
