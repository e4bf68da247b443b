# SPDX-License-Identifier: MPL-2.0
# Copyright (c) 2025-2026 Aryan Ameri
#
# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.
"""
Scalar HDR headroom estimation.

Two policies are available:

- max: pic_headroom is the peak luminance and the tone mapping source
  headroom is blended down, max(1, 1 + p - p**ratio).
- percentile: pic_headroom is the luminance at the requested percentile of
  the normalised histogram (bin centre), at least 1.0, and is used as the
  source headroom directly.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Final

import numpy as np

from gainmap_config import HeadroomPolicy, ProcessingConfig
from gainmap_errors import MeasurementError
from luma_stats import Histogram, clamp_bins, luma_histogram, max_luminance
from render_engine import Image, RenderEngine

__all__: Final[list[str]] = [
    "HeadroomResult",
    "headroom_ratio_from_peak",
    "percentile_from_histogram",
    "percentile_headroom",
    "max_headroom",
    "estimate_headroom",
]

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True, kw_only=True)
class HeadroomResult:
    """Measured headroom and the tone mapping source headroom derived from it."""

    pic_headroom: float
    headroom_ratio: float
    policy: HeadroomPolicy


def headroom_ratio_from_peak(pic_headroom: float, tonemap_ratio: float = 0.2) -> float:
    return max(1.0, 1.0 + pic_headroom - pic_headroom**tonemap_ratio)


def percentile_from_histogram(histogram: Histogram, abs_max: float, percentile: float) -> float:
    """Absolute luminance at the given percentile, never below 1.0."""
    if abs_max <= 0:
        return 1.0
    cdf = histogram.cdf()
    total = float(cdf[-1])
    if total <= 0:
        return 1.0

    bins = histogram.bin_count
    target = percentile / 100.0 * total
    k = min(int(np.searchsorted(cdf, target, side="left")), bins - 1)
    v_norm = (k + 0.5) / bins
    y_percentile = v_norm * abs_max

    logger.debug(
        "percentile headroom: bins=%d absMax=%.6f target=%.1f%% k=%d vNorm=%.6f "
        "CDF=%.4f yPercentile=%.6f headroom=%.6f",
        bins, abs_max, percentile, k, v_norm, cdf[k] / total,
        y_percentile, max(y_percentile, 1.0),
    )
    return max(y_percentile, 1.0)


def percentile_headroom(
    image: Image,
    engine: RenderEngine,
    bins: int = 2048,
    percentile: float = 99.5,
) -> float | None:
    """Robust peak from the luminance CDF. None if the histogram cannot be built."""
    abs_max = max_luminance(image, engine)
    if abs_max is None or abs_max <= 0:
        return 1.0
    histogram = luma_histogram(image, engine, clamp_bins(bins), 1.0 / abs_max)
    if histogram is None:
        return None
    return percentile_from_histogram(histogram, abs_max, percentile)


def max_headroom(image: Image, engine: RenderEngine, tonemap_ratio: float = 0.2) -> HeadroomResult | None:
    peak = max_luminance(image, engine)
    if peak is None:
        return None
    return HeadroomResult(
        pic_headroom=peak,
        headroom_ratio=headroom_ratio_from_peak(peak, tonemap_ratio),
        policy=HeadroomPolicy.MAX,
    )


def estimate_headroom(image: Image, engine: RenderEngine, config: ProcessingConfig) -> HeadroomResult:
    """Measure headroom with the configured policy.

    Raises:
        MeasurementError: If the engine cannot produce the peak or histogram
    """
    if config.headroom_policy is HeadroomPolicy.PERCENTILE:
        value = percentile_headroom(image, engine, config.bin_count, config.percentile)
        if value is None:
            raise MeasurementError("Cannot compute percentile headroom")
        return HeadroomResult(
            pic_headroom=value,
            headroom_ratio=value,
            policy=HeadroomPolicy.PERCENTILE,
        )

    result = max_headroom(image, engine, config.tonemap_ratio)
    if result is None:
        raise MeasurementError("Cannot compute luminance peak")
    return result
