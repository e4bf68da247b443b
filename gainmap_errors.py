# SPDX-License-Identifier: MPL-2.0
# Copyright (c) 2025-2026 Aryan Ameri
#
# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.
"""
Exception hierarchy for the HDR to gain map JXL pipeline.

Three outcome classes exist for a batch run:

- ValidationError aborts the whole run (missing folders, missing tools).
- ItemSkipped marks an input that does not meet the preconditions.
- ItemFailed and its subclasses mark an input that was attempted but could
  not be converted.
"""

from __future__ import annotations

from typing import Final

__all__: Final[list[str]] = [
    "GainMapError",
    "ValidationError",
    "ItemSkipped",
    "ItemFailed",
    "ReadError",
    "MeasurementError",
    "ToneMapError",
    "MakerMappingError",
    "MakerValidationError",
    "GainMapExtractionError",
    "EncodeError",
    "VerificationError",
]


class GainMapError(Exception):
    """Base exception for gain map JXL creation errors."""


class ValidationError(GainMapError):
    """Environment validation failed (folders or external tools)."""


class ItemSkipped(GainMapError):
    """Input does not meet the colour space, size or orientation preconditions."""


class ItemFailed(GainMapError):
    """Input was processed but no output could be produced."""


class ReadError(ItemFailed):
    """An input image could not be loaded."""


class MeasurementError(ItemFailed):
    """Luminance peak or histogram could not be computed."""


class ToneMapError(ItemFailed):
    """The SDR rendition could not be generated from the HDR input."""


class MakerMappingError(ItemFailed):
    """No maker field pair reproduces the measured headroom."""


class MakerValidationError(ItemFailed):
    """The chosen maker field pair does not round-trip within tolerance."""


class GainMapExtractionError(ItemFailed):
    """The temporary container could not be written or carried no gain map."""


class EncodeError(ItemFailed):
    """Every writer strategy raised while writing the final container."""


class VerificationError(ItemFailed):
    """The written container has no readable gain map."""
