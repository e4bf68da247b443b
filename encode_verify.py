# SPDX-License-Identifier: MPL-2.0
# Copyright (c) 2025-2026 Aryan Ameri
#
# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.
"""
Gain map container encoding with writer strategy fallback and verification.

A temporary container is written from the SDR base and the HDR image so the
engine computes the gain map. That gain map is read back and attached to the
final write, together with the maker Apple fields. The final write walks the
strategy order: a strategy that raises, or whose output carries no gain map,
hands over to the next one. The temporary write falls back the same way.
Only the last strategy's failure is reported, and a failed final write
leaves no output behind.
"""

from __future__ import annotations

import logging
import platform
import tempfile
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Final, TypeAlias

from gainmap_config import EncoderStrategy, ProcessingConfig
from gainmap_errors import EncodeError, GainMapExtractionError, VerificationError
from maker_apple import MakerCandidate
from render_engine import Image, RenderEngine

__all__: Final[list[str]] = [
    "AUTO_STRATEGY_TABLE",
    "EncodeResult",
    "strategy_order",
    "extract_gain_map",
    "encode_with_gain_map",
]

logger = logging.getLogger(__name__)

LogSink: TypeAlias = Callable[[str], None]

TEMP_QUALITY: Final[float] = 1.0

_TEN_BIT_FIRST: Final[tuple[EncoderStrategy, ...]] = (EncoderStrategy.TEN_BIT, EncoderStrategy.LEGACY)
_LEGACY_FIRST: Final[tuple[EncoderStrategy, ...]] = (EncoderStrategy.LEGACY, EncoderStrategy.TEN_BIT)

# Normalised platform.machine() value -> strategy order for AUTO
AUTO_STRATEGY_TABLE: Final[Mapping[str, tuple[EncoderStrategy, ...]]] = {
    "arm64": _TEN_BIT_FIRST,
    "aarch64": _TEN_BIT_FIRST,
    "x86_64": _LEGACY_FIRST,
    "amd64": _LEGACY_FIRST,
}


@dataclass(frozen=True, slots=True, kw_only=True)
class EncodeResult:
    path: Path
    strategy: EncoderStrategy
    attempts: int


def strategy_order(
    strategy: EncoderStrategy,
    machine: str | None = None,
    table: Mapping[str, tuple[EncoderStrategy, ...]] = AUTO_STRATEGY_TABLE,
) -> tuple[EncoderStrategy, ...]:
    """Strategies to try, in order. A pinned strategy is tried alone."""
    if strategy is not EncoderStrategy.AUTO:
        return (strategy,)
    key = (machine if machine is not None else platform.machine()).strip().lower()
    return table.get(key, _LEGACY_FIRST)


def _has_gain_map(image: Image | None) -> bool:
    return image is not None and image.width > 0 and image.height > 0


def extract_gain_map(
    sdr: Image,
    hdr: Image,
    engine: RenderEngine,
    strategy: EncoderStrategy,
    tmp_dir: Path,
) -> Image:
    """Let the engine compute a gain map through a temporary container.

    Raises:
        GainMapExtractionError: If the temporary container cannot be written or read back
    """
    tmp_path = tmp_dir / "gainmap_pair.jxl"
    try:
        engine.write_container(tmp_path, sdr, hdr=hdr, quality=TEMP_QUALITY, strategy=strategy)
    except Exception as e:
        raise GainMapExtractionError(f"Failed to build temp container: {e}") from e

    try:
        gain_map = engine.read_aux_gain_map(tmp_path)
    except Exception as e:
        raise GainMapExtractionError(f"Failed to extract gain map: {e}") from e
    if not _has_gain_map(gain_map):
        raise GainMapExtractionError("Failed to extract gain map from temp container")
    return gain_map


def encode_with_gain_map(
    sdr: Image,
    hdr: Image,
    maker: MakerCandidate,
    output_path: Path,
    engine: RenderEngine,
    config: ProcessingConfig,
    log: LogSink | None = None,
    *,
    machine: str | None = None,
) -> EncodeResult:
    """Write output_path with the SDR base, the HDR gain map and maker fields.

    Raises:
        GainMapExtractionError: Temporary container step failed for every strategy
        EncodeError: The last strategy raised while writing
        VerificationError: The last strategy wrote a file without a gain map
    """
    emit = log or (lambda _msg: None)
    order = strategy_order(config.encoder_strategy, machine)

    with tempfile.TemporaryDirectory(prefix="hdr2jxl-") as tmpdir:
        for attempt, strategy in enumerate(order, start=1):
            try:
                gain_map = extract_gain_map(sdr, hdr, engine, strategy, Path(tmpdir))
                break
            except GainMapExtractionError as e:
                if attempt == len(order):
                    raise
                emit(f"  ! Writer {strategy} could not build the gain map ({e}), "
                     f"retrying with {order[attempt]}")

    properties = dict(hdr.properties)
    maker_apple = dict(properties.get("maker_apple") or {})
    maker_apple["33"] = maker.maker33
    maker_apple["48"] = maker.maker48
    properties["maker_apple"] = maker_apple
    base = sdr.with_properties(properties)

    for attempt, strategy in enumerate(order, start=1):
        is_last = attempt == len(order)
        try:
            engine.write_container(
                output_path,
                base,
                gain_map=gain_map,
                quality=config.compression_quality,
                strategy=strategy,
            )
        except Exception as e:
            if is_last:
                output_path.unlink(missing_ok=True)
                raise EncodeError(f"Export failed ({strategy}): {e}") from e
            emit(f"  ! Writer {strategy} failed ({e}), retrying with {order[attempt]}")
            continue

        if not config.verify_after_write:
            return EncodeResult(path=output_path, strategy=strategy, attempts=attempt)

        try:
            written = engine.read_aux_gain_map(output_path)
        except Exception as e:
            logger.debug("gain map read-back of %s failed: %s", output_path, e)
            written = None

        if _has_gain_map(written):
            return EncodeResult(path=output_path, strategy=strategy, attempts=attempt)
        if is_last:
            output_path.unlink(missing_ok=True)
            raise VerificationError("gain map missing after write")
        emit(f"  ! Writer {strategy} produced no gain map, retrying with {order[attempt]}")

    # order is never empty
    raise EncodeError("no writer strategy available")
