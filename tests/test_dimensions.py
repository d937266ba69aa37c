from __future__ import annotations

import pytest

from backdrop import Dimensions, InvalidDimensions, fit_inside, plan_dimensions


def test_within_bounds_is_unchanged() -> None:
    assert plan_dimensions(640, 480, 800) == Dimensions(640, 480)
    assert plan_dimensions(800, 800, 800) == Dimensions(800, 800)


def test_landscape_scales_long_axis_to_bound() -> None:
    assert plan_dimensions(1600, 1200, 800) == Dimensions(800, 600)


def test_portrait_scales_long_axis_to_bound() -> None:
    assert plan_dimensions(1200, 1600, 800) == Dimensions(600, 800)


def test_square_scales_both_axes() -> None:
    assert plan_dimensions(2000, 2000, 800) == Dimensions(800, 800)


def test_only_one_axis_over_bound() -> None:
    assert plan_dimensions(1000, 500, 800) == Dimensions(800, 400)
    assert plan_dimensions(300, 900, 800) == Dimensions(267, 800)


def test_short_axis_rounds_to_nearest() -> None:
    # 333 * 800 / 1000 = 266.4
    assert plan_dimensions(1000, 333, 800) == Dimensions(800, 266)
    # 1001 * 800 / 1600 = 500.5
    assert plan_dimensions(1600, 1001, 800) == Dimensions(800, 501)


def test_extreme_aspect_keeps_at_least_one_pixel() -> None:
    assert plan_dimensions(100000, 10, 800) == Dimensions(800, 1)


@pytest.mark.parametrize("width", [1, 7, 799, 800, 801, 1024, 1599, 4032])
@pytest.mark.parametrize("height", [1, 13, 600, 800, 1200, 3024, 5000])
def test_plan_respects_bound_and_aspect(width: int, height: int) -> None:
    bound = 800
    planned = plan_dimensions(width, height, bound)

    assert max(planned.width, planned.height) <= bound
    if width <= bound and height <= bound:
        assert planned.as_tuple() == (width, height)
    elif width >= height:
        assert planned.width == bound
        assert abs(planned.height - max(1.0, height * bound / width)) <= 0.5
    else:
        assert planned.height == bound
        assert abs(planned.width - max(1.0, width * bound / height)) <= 0.5


@pytest.mark.parametrize("width,height", [(0, 100), (100, 0), (-5, 10), (10, -5)])
def test_non_positive_source_is_rejected(width: int, height: int) -> None:
    with pytest.raises(InvalidDimensions):
        plan_dimensions(width, height, 800)


def test_non_positive_bound_is_rejected() -> None:
    with pytest.raises(InvalidDimensions):
        plan_dimensions(100, 100, 0)


def test_fit_inside_rectangular_box() -> None:
    assert fit_inside(1000, 1000, 400, 200) == Dimensions(200, 200)
    assert fit_inside(400, 100, 200, 200) == Dimensions(200, 50)
