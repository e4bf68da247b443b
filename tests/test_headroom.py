# SPDX-License-Identifier: MPL-2.0
# Copyright (c) 2025-2026 Aryan Ameri
#
# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.

from __future__ import annotations

import numpy as np
import pytest

from gainmap_config import HeadroomPolicy, ProcessingConfig
from gainmap_errors import MeasurementError
from headroom import (
    estimate_headroom,
    headroom_ratio_from_peak,
    max_headroom,
    percentile_from_histogram,
    percentile_headroom,
)
from luma_stats import Histogram, clamp_bins, luma_histogram, max_luminance
from render_engine import NumpyRenderEngine


@pytest.fixture
def engine() -> NumpyRenderEngine:
    return NumpyRenderEngine(read_exif_orientation=False)


def test_ratio_from_peak_matches_blend() -> None:
    assert headroom_ratio_from_peak(4.0) == pytest.approx(1.0 + 4.0 - 4.0**0.2)
    assert headroom_ratio_from_peak(4.0) == pytest.approx(3.6805, abs=1e-4)


@pytest.mark.parametrize("peak", [0.0, 0.25, 1.0, 1.5, 16.0])
@pytest.mark.parametrize("ratio", [0.0, 0.2, 0.5, 1.0])
def test_ratio_from_peak_never_below_one(peak: float, ratio: float) -> None:
    assert headroom_ratio_from_peak(peak, ratio) >= 1.0


def test_percentile_100_returns_top_bin_centre() -> None:
    masses = np.zeros(16)
    masses[3] = 10.0
    masses[-1] = 1.0
    value = percentile_from_histogram(Histogram(masses), abs_max=8.0, percentile=100.0)
    assert value == pytest.approx((15 + 0.5) / 16 * 8.0)


def test_percentile_picks_first_bin_reaching_target() -> None:
    masses = np.array([50.0, 0.0, 0.0, 50.0])
    # bin 0 centre is 0.5, raised to the 1.0 floor
    assert percentile_from_histogram(Histogram(masses), 4.0, 50.0) == 1.0
    assert percentile_from_histogram(Histogram(masses), 4.0, 51.0) == pytest.approx(3.5)


def test_percentile_headroom_is_at_least_one() -> None:
    masses = np.array([100.0, 0.0, 0.0, 0.0])
    assert percentile_from_histogram(Histogram(masses), 2.0, 99.5) == 1.0


def test_percentile_zero_peak_defaults_to_one() -> None:
    assert percentile_from_histogram(Histogram(np.ones(8)), 0.0, 99.5) == 1.0


def test_empty_histogram_defaults_to_one() -> None:
    assert percentile_from_histogram(Histogram(np.zeros(8)), 5.0, 99.5) == 1.0


def test_histogram_rejects_bad_shapes() -> None:
    with pytest.raises(ValueError, match="bins"):
        Histogram(np.zeros(0))
    with pytest.raises(ValueError, match="bins"):
        Histogram(np.zeros(4096))


@pytest.mark.parametrize(("requested", "expected"), [(-5, 1), (0, 1), (1, 1), (512, 512), (10_000, 2048)])
def test_clamp_bins(requested: int, expected: int) -> None:
    assert clamp_bins(requested) == expected


def test_max_luminance_of_gray_ramp(engine: NumpyRenderEngine, image_factory) -> None:
    image = image_factory([[0.0, 1.0], [2.5, 0.5]])
    assert max_luminance(image, engine) == pytest.approx(2.5, rel=1e-5)


def test_max_luminance_clamps_negative_to_zero(engine: NumpyRenderEngine, image_factory) -> None:
    image = image_factory([[-1.0, -2.0]])
    assert max_luminance(image, engine) == 0.0


def test_max_luminance_of_empty_image_is_none(engine: NumpyRenderEngine, image_factory) -> None:
    image = image_factory(np.zeros((0, 4)))
    assert max_luminance(image, engine) is None


def test_luma_histogram_normalises_by_scale(engine: NumpyRenderEngine, image_factory) -> None:
    image = image_factory([[0.5, 1.5, 3.9, 4.0]])
    histogram = luma_histogram(image, engine, 4, 1.0 / 4.0)
    assert histogram is not None
    assert histogram.total == 4.0
    assert histogram.masses.tolist() == [1.0, 1.0, 0.0, 2.0]


def test_percentile_headroom_of_uniform_image(engine: NumpyRenderEngine, image_factory) -> None:
    image = image_factory(np.full((4, 4), 3.0))
    value = percentile_headroom(image, engine, bins=64, percentile=99.5)
    assert value == pytest.approx(63.5 / 64 * 3.0, rel=1e-4)


def test_percentile_headroom_of_black_image(engine: NumpyRenderEngine, image_factory) -> None:
    image = image_factory(np.zeros((4, 4)))
    assert percentile_headroom(image, engine) == 1.0


def test_max_headroom_result(engine: NumpyRenderEngine, image_factory) -> None:
    result = max_headroom(image_factory([[4.0, 0.1]]), engine)
    assert result is not None
    assert result.policy is HeadroomPolicy.MAX
    assert result.pic_headroom == pytest.approx(4.0, rel=1e-5)
    assert result.headroom_ratio == pytest.approx(3.6805, abs=1e-3)


def test_estimate_headroom_dispatches_on_policy(engine: NumpyRenderEngine, hdr_factory) -> None:
    hdr = hdr_factory(peak=4.0)

    by_max = estimate_headroom(hdr, engine, ProcessingConfig(max_concurrency=1))
    assert by_max.policy is HeadroomPolicy.MAX
    assert by_max.headroom_ratio < by_max.pic_headroom

    by_percentile = estimate_headroom(
        hdr,
        engine,
        ProcessingConfig(max_concurrency=1, headroom_policy=HeadroomPolicy.PERCENTILE, percentile=50.0),
    )
    assert by_percentile.policy is HeadroomPolicy.PERCENTILE
    assert by_percentile.headroom_ratio == by_percentile.pic_headroom
    assert 1.0 <= by_percentile.pic_headroom <= 4.0


class _BrokenReductions(NumpyRenderEngine):
    def reduce_max(self, image):
        return None

    def reduce_histogram(self, image, bins):
        return None


class _BrokenHistogram(NumpyRenderEngine):
    def reduce_histogram(self, image, bins):
        return None


def test_estimate_headroom_reports_missing_peak(hdr_factory) -> None:
    with pytest.raises(MeasurementError, match="Cannot compute luminance peak"):
        estimate_headroom(hdr_factory(), _BrokenReductions(read_exif_orientation=False),
                          ProcessingConfig(max_concurrency=1))


def test_estimate_headroom_reports_missing_histogram(hdr_factory) -> None:
    config = ProcessingConfig(max_concurrency=1, headroom_policy=HeadroomPolicy.PERCENTILE)
    with pytest.raises(MeasurementError, match="Cannot compute percentile headroom"):
        estimate_headroom(hdr_factory(), _BrokenHistogram(read_exif_orientation=False), config)
