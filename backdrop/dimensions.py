"""Target size planning with aspect ratio preservation."""

from __future__ import annotations

from dataclasses import dataclass

from .exceptions import InvalidDimensions


@dataclass(frozen=True, slots=True)
class Dimensions:
    width: int
    height: int

    def as_tuple(self) -> tuple[int, int]:
        return (self.width, self.height)


def _round_ratio(numerator: int, denominator: int) -> int:
    # round half up, exact for ints
    return (2 * numerator + denominator) // (2 * denominator)


def fit_inside(width: int, height: int, box_width: int, box_height: int) -> Dimensions:
    """Shrink ``width`` x ``height`` to fit a box, never enlarging.

    Both axes are scaled by the same factor; the constrained axis lands exactly
    on the box edge and the other one is rounded to the nearest integer.
    """

    if width <= 0 or height <= 0:
        raise InvalidDimensions(f"Source dimensions must be positive, got {width}x{height}")
    if box_width <= 0 or box_height <= 0:
        raise InvalidDimensions(f"Target box must be positive, got {box_width}x{box_height}")

    if width <= box_width and height <= box_height:
        return Dimensions(width, height)

    # Compare width/box_width against height/box_height without floats.
    if width * box_height >= height * box_width:
        new_width = box_width
        new_height = max(1, _round_ratio(height * box_width, width))
    else:
        new_height = box_height
        new_width = max(1, _round_ratio(width * box_height, height))
    return Dimensions(new_width, new_height)


def plan_dimensions(source_width: int, source_height: int, max_dimension: int) -> Dimensions:
    """Compute the canonical working size for a source image."""

    return fit_inside(source_width, source_height, max_dimension, max_dimension)
