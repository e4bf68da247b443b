# SPDX-License-Identifier: MPL-2.0
# Copyright (c) 2025-2026 Aryan Ameri
#
# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.
"""
Clipping statistics and visualisation for a tone mapping threshold.

A pixel is clipped when its linear luminance exceeds the source headroom given
to the tone mapper. The fraction is read off the absMax-normalised histogram
with linear interpolation inside the bin that holds the threshold.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass
from typing import Final

from luma_stats import Histogram, clamp_bins, linear_luma, luma_histogram, max_luminance
from render_engine import Image, RenderEngine

__all__: Final[list[str]] = [
    "ClipStats",
    "MASK_COLORS",
    "fraction_above",
    "pixel_count",
    "measure_clip",
    "build_clip_mask",
    "apply_mask_overlay",
    "parse_color",
]

logger = logging.getLogger(__name__)

MASK_GAIN: Final[float] = 1_000_000.0

MASK_COLORS: Final[dict[str, tuple[float, float, float, float]]] = {
    "red": (1.0, 0.0, 0.0, 1.0),
    "magenta": (1.0, 0.0, 1.0, 1.0),
    "violet": (0.56, 0.0, 1.0, 1.0),
}

_HEX_COLOR = re.compile(r"#([0-9a-fA-F]{6})")


@dataclass(frozen=True, slots=True, kw_only=True)
class ClipStats:
    fraction: float
    clipped_pixels: float
    total_pixels: float


def pixel_count(image: Image) -> float:
    """Pixel count from header dimensions when known, else the raster extent."""
    width = image.properties.get("pixel_width")
    height = image.properties.get("pixel_height")
    if isinstance(width, int) and isinstance(height, int) and width > 0 and height > 0:
        return float(width * height)
    return float(max(0, round(image.width)) * max(0, round(image.height)))


def fraction_above(
    histogram: Histogram,
    abs_max: float,
    threshold: float,
    total_pixels: float,
) -> ClipStats:
    """Fraction of histogram mass above threshold (absolute luminance).

    Whole bins above the threshold bin count fully; the threshold bin counts in
    proportion to the part of it lying above the threshold.
    """
    cdf = histogram.cdf()
    total = float(cdf[-1])
    if total <= 0:
        return ClipStats(fraction=0.0, clipped_pixels=0.0, total_pixels=0.0)
    if abs_max <= 0:
        return ClipStats(fraction=0.0, clipped_pixels=0.0, total_pixels=total_pixels)

    bins = histogram.bin_count
    thr_norm = min(max(threshold / abs_max, 0.0), 1.0)
    thr_bin = min(max(math.floor(thr_norm * bins), 0), bins - 1)

    above_strict = total - float(cdf[thr_bin])
    bin_width = 1.0 / bins
    bin_upper = (thr_bin + 1) * bin_width
    part_above = min(max((bin_upper - thr_norm) / bin_width, 0.0), 1.0)
    above = above_strict + float(histogram.masses[thr_bin]) * part_above

    fraction = min(max(above / total, 0.0), 1.0)
    logger.debug(
        "clip: bins=%d absMax=%.6f thrNorm=%.6f thrBin=%d frac=%.6f",
        bins, abs_max, thr_norm, thr_bin, fraction,
    )
    return ClipStats(
        fraction=fraction,
        clipped_pixels=fraction * total_pixels,
        total_pixels=total_pixels,
    )


def measure_clip(
    image: Image,
    engine: RenderEngine,
    threshold: float,
    bins: int = 2048,
) -> ClipStats | None:
    """Clip statistics for an image, None when a reduction fails."""
    abs_max = max_luminance(image, engine)
    if abs_max is None:
        return None
    if abs_max <= 0:
        return ClipStats(fraction=0.0, clipped_pixels=0.0, total_pixels=pixel_count(image))
    histogram = luma_histogram(image, engine, clamp_bins(bins), 1.0 / abs_max)
    if histogram is None:
        return None
    return fraction_above(histogram, abs_max, threshold, pixel_count(image))


def build_clip_mask(image: Image, engine: RenderEngine, threshold: float) -> Image:
    """Binary mask, white where luminance exceeds threshold."""
    zero = (0.0, 0.0, 0.0, 0.0)
    keep_alpha = (0.0, 0.0, 0.0, 1.0)

    y = linear_luma(image, engine)
    y = engine.color_matrix(y, (1.0, 0.0, 0.0, 0.0), zero, zero, keep_alpha, bias=(-threshold, 0.0, 0.0, 0.0))
    y = engine.clamp(y, (0.0, 0.0, 0.0, 0.0), (1e9, 0.0, 0.0, 1.0))
    y = engine.color_matrix(y, (MASK_GAIN, 0.0, 0.0, 0.0), zero, zero, keep_alpha)
    y = engine.clamp(y, (0.0, 0.0, 0.0, 0.0), (1.0, 0.0, 0.0, 1.0))
    red = (1.0, 0.0, 0.0, 0.0)
    return engine.color_matrix(y, red, red, red, keep_alpha)


def apply_mask_overlay(
    base: Image,
    mask: Image,
    color: tuple[float, float, float, float],
    engine: RenderEngine,
) -> Image:
    """Paint masked pixels of base with a solid colour."""
    solid = engine.constant_color(color, like=base)
    return engine.blend_with_mask(solid, base, mask)


def parse_color(text: str | None) -> tuple[tuple[float, float, float, float], bool]:
    """Parse a mask colour name or #RRGGBB.

    Returns (rgba, recognised). Unrecognised input falls back to magenta.
    """
    if text:
        named = MASK_COLORS.get(text.strip().lower())
        if named is not None:
            return named, True
        match = _HEX_COLOR.fullmatch(text.strip())
        if match:
            value = match.group(1)
            r, g, b = (int(value[i : i + 2], 16) / 255.0 for i in (0, 2, 4))
            return (r, g, b, 1.0), True
    return MASK_COLORS["magenta"], False
