# SPDX-License-Identifier: MPL-2.0
# Copyright (c) 2025-2026 Aryan Ameri
#
# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.
"""
Processing configuration shared by every stage of the converter.

The configuration is an explicit immutable value handed to each entry point.
Nothing reads options from module globals.
"""

from __future__ import annotations

import os
import shutil
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Final, Self

__all__: Final[list[str]] = [
    "HeadroomPolicy",
    "EncoderStrategy",
    "ProcessingConfig",
    "DEFAULT_PERCENTILE",
    "MAX_HISTOGRAM_BINS",
]

DEFAULT_PERCENTILE: Final[float] = 99.5
DEFAULT_TONEMAP_RATIO: Final[float] = 0.2
DEFAULT_QUALITY: Final[float] = 0.97
MAX_HISTOGRAM_BINS: Final[int] = 2048


class HeadroomPolicy(StrEnum):
    """How the HDR headroom is measured."""

    PERCENTILE = "percentile"
    MAX = "max"


class EncoderStrategy(StrEnum):
    """Container writer variants. AUTO picks an order from the host architecture."""

    AUTO = "auto"
    LEGACY = "legacy"
    TEN_BIT = "ten_bit"


def _get_cpu_count() -> int:
    """Get CPU count with fallback."""
    return os.cpu_count() or 1


def _get_env_int(var_name: str, /) -> int | None:
    """Get a positive int from environment variable, or None if invalid."""
    value = os.environ.get(var_name, "").strip()
    if not value:
        return None
    try:
        result = int(value)
        return result if result > 0 else None
    except ValueError:
        return None


def _find_tool(env_var: str, name: str, /) -> Path | None:
    """Resolve an external tool from an environment override, then PATH."""
    value = os.environ.get(env_var, "").strip()
    if value:
        return Path(value)
    found = shutil.which(name)
    return Path(found) if found else None


def _normalize_suffix(suffix: str) -> str:
    if not suffix or suffix.startswith(("_", "-")):
        return suffix
    return f"_{suffix}"


@dataclass(frozen=True, slots=True, kw_only=True)
class ProcessingConfig:
    """Configuration for a conversion run."""

    headroom_policy: HeadroomPolicy = HeadroomPolicy.MAX
    percentile: float = DEFAULT_PERCENTILE
    tonemap_ratio: float = DEFAULT_TONEMAP_RATIO
    bin_count: int = MAX_HISTOGRAM_BINS
    compression_quality: float = DEFAULT_QUALITY
    encoder_strategy: EncoderStrategy = EncoderStrategy.AUTO
    verify_after_write: bool = True
    max_concurrency: int = field(default_factory=_get_cpu_count)

    # Maker field round-trip tolerances
    tol_stops_abs: float = 0.01
    tol_headroom_rel: float = 0.02

    # Reporting extras
    suffix: str = ""
    tonemap_dryrun: bool = False
    emit_clip_mask: bool = False
    emit_masked_image: bool = False
    mask_color: str = "magenta"

    cjxl_path: Path | None = None
    djxl_path: Path | None = None

    def __post_init__(self) -> None:
        """Validate configuration."""
        if not 0.0 < self.percentile <= 100.0:
            msg = f"percentile must be in (0, 100], got {self.percentile}"
            raise ValueError(msg)
        if not 0.0 <= self.tonemap_ratio <= 1.0:
            msg = f"tonemap_ratio must be in [0, 1], got {self.tonemap_ratio}"
            raise ValueError(msg)
        if not 1 <= self.bin_count <= MAX_HISTOGRAM_BINS:
            msg = f"bin_count must be in [1, {MAX_HISTOGRAM_BINS}], got {self.bin_count}"
            raise ValueError(msg)
        if not 0.0 <= self.compression_quality <= 1.0:
            msg = f"compression_quality must be in [0, 1], got {self.compression_quality}"
            raise ValueError(msg)
        if self.max_concurrency < 1:
            msg = f"max_concurrency must be >= 1, got {self.max_concurrency}"
            raise ValueError(msg)
        if self.tol_stops_abs < 0 or self.tol_headroom_rel < 0:
            msg = "validation tolerances must be non-negative"
            raise ValueError(msg)
        object.__setattr__(self, "headroom_policy", HeadroomPolicy(self.headroom_policy))
        object.__setattr__(self, "encoder_strategy", EncoderStrategy(self.encoder_strategy))
        object.__setattr__(self, "suffix", _normalize_suffix(self.suffix))

    @classmethod
    def create(
        cls,
        *,
        max_concurrency: int | None = None,
        cjxl_path: Path | None = None,
        djxl_path: Path | None = None,
        **options: object,
    ) -> Self:
        """Create config from arguments with environment variable fallbacks."""
        return cls(
            max_concurrency=(
                max_concurrency or _get_env_int("HDR2JXL_JOBS") or _get_cpu_count()
            ),
            cjxl_path=cjxl_path or _find_tool("CJXL", "cjxl"),
            djxl_path=djxl_path or _find_tool("DJXL", "djxl"),
            **options,  # type: ignore[arg-type]
        )
