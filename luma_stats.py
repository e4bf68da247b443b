# SPDX-License-Identifier: MPL-2.0
# Copyright (c) 2025-2026 Aryan Ameri
#
# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.
"""
Linear luminance statistics: peak and normalised histogram.

Luminance is Y = 0.2126 R + 0.7152 G + 0.0722 B on linear values, stored in the
R channel of a derived image so the engine reductions can work on it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Final

import numpy as np
from numpy.typing import NDArray

from gainmap_config import MAX_HISTOGRAM_BINS
from render_engine import REC709_LUMA, Image, RenderEngine

__all__: Final[list[str]] = [
    "Histogram",
    "clamp_bins",
    "linear_luma",
    "max_luminance",
    "luma_histogram",
]

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True, eq=False)
class Histogram:
    """Luminance masses over [0, 1]; bin k covers [k/N, (k+1)/N)."""

    masses: NDArray[np.float64]

    def __post_init__(self) -> None:
        if self.masses.ndim != 1 or not 1 <= self.masses.size <= MAX_HISTOGRAM_BINS:
            msg = f"histogram must have 1..{MAX_HISTOGRAM_BINS} bins, got shape {self.masses.shape}"
            raise ValueError(msg)

    @property
    def bin_count(self) -> int:
        return int(self.masses.size)

    @property
    def total(self) -> float:
        return float(self.masses.sum())

    def cdf(self) -> NDArray[np.float64]:
        return np.cumsum(self.masses)


def clamp_bins(bins: int) -> int:
    return min(max(int(bins), 1), MAX_HISTOGRAM_BINS)


def linear_luma(image: Image, engine: RenderEngine) -> Image:
    """Put linear luminance into R, zero G and B, set A to 1."""
    wr, wg, wb = REC709_LUMA
    return engine.color_matrix(
        image,
        r=(wr, wg, wb, 0.0),
        g=(0.0, 0.0, 0.0, 0.0),
        b=(0.0, 0.0, 0.0, 0.0),
        a=(0.0, 0.0, 0.0, 0.0),
        bias=(0.0, 0.0, 0.0, 1.0),
    )


def max_luminance(image: Image, engine: RenderEngine) -> float | None:
    """Peak linear luminance, clamped at 0 from below. None if the engine yields nothing."""
    if image.width == 0 or image.height == 0:
        return None
    peak = engine.reduce_max(linear_luma(image, engine))
    if peak is None:
        return None
    return max(0.0, float(peak[0]))


def luma_histogram(
    image: Image,
    engine: RenderEngine,
    bin_count: int,
    normalization_scale: float,
) -> Histogram | None:
    """Histogram of luminance * normalization_scale over [0, 1].

    Callers pass 1/absMax as the scale so HDR values above 1.0 are not folded
    into the top bin. Negative masses are clamped to 0.
    """
    bins = clamp_bins(bin_count)
    luma = linear_luma(image, engine)
    normalized = engine.color_matrix(
        luma,
        r=(normalization_scale, 0.0, 0.0, 0.0),
        g=(0.0, 1.0, 0.0, 0.0),
        b=(0.0, 0.0, 1.0, 0.0),
        a=(0.0, 0.0, 0.0, 1.0),
    )
    counts = engine.reduce_histogram(normalized, bins)
    if counts is None:
        return None
    masses = np.maximum(np.asarray(counts, dtype=np.float64)[:bins, 0], 0.0)
    return Histogram(masses)
