# SPDX-License-Identifier: MPL-2.0
# Copyright (c) 2025-2026 Aryan Ameri
#
# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.
"""Shared fixtures: synthetic images and an in-memory render engine."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Iterable
from pathlib import Path
from typing import Any

import numpy as np
import pytest

from gainmap_config import EncoderStrategy, ProcessingConfig
from render_engine import DISPLAY_P3_PQ, Image, NumpyRenderEngine


def gray_image(
    values: Iterable[Iterable[float]] | np.ndarray,
    color_space: str | None = DISPLAY_P3_PQ,
    **kwargs: Any,
) -> Image:
    """Neutral RGBA image whose linear luminance equals values."""
    luma = np.asarray(values, dtype=np.float32)
    pixels = np.concatenate(
        [np.repeat(luma[..., None], 3, axis=2), np.ones((*luma.shape, 1), np.float32)], axis=2
    )
    return Image(pixels=pixels, color_space=color_space, **kwargs)


def default_hdr(peak: float = 4.0, size: int = 8) -> Image:
    """Ramp from 0 to peak, one quarter of the pixels at the peak."""
    values = np.linspace(0.0, peak, size * size, dtype=np.float32).reshape(size, size)
    values[: size // 4] = peak
    return gray_image(values)


class MemoryEngine(NumpyRenderEngine):
    """NumpyRenderEngine with containers and PNG output kept in memory.

    Loads of registered paths return the registered image; other existing
    paths yield default_hdr(); missing paths raise FileNotFoundError.
    """

    def __init__(
        self,
        images: dict[Path, Image] | None = None,
        *,
        fail_strategies: Iterable[EncoderStrategy] = (),
        drop_gain_map_strategies: Iterable[EncoderStrategy] = (),
        fail_temp_write: bool = False,
        fail_temp_strategies: Iterable[EncoderStrategy] = (),
        load_delay: float = 0.0,
    ) -> None:
        super().__init__(read_exif_orientation=False)
        self.images = dict(images or {})
        self.fail_strategies = set(fail_strategies)
        self.drop_gain_map_strategies = set(drop_gain_map_strategies)
        self.fail_temp_write = fail_temp_write
        self.fail_temp_strategies = set(fail_temp_strategies)
        self.temp_writes: list[EncoderStrategy] = []
        self.load_delay = load_delay

        self.containers: dict[Path, dict[str, Any]] = {}
        self.pngs: dict[Path, Image] = {}
        self.final_writes: list[EncoderStrategy] = []

        self._lock = threading.Lock()
        self.active_loads = 0
        self.max_active_loads = 0

    def load_image(self, path: Path) -> Image:
        with self._lock:
            self.active_loads += 1
            self.max_active_loads = max(self.max_active_loads, self.active_loads)
        try:
            if self.load_delay:
                time.sleep(self.load_delay)
            if path in self.images:
                return self.images[path]
            if not path.exists():
                raise FileNotFoundError(f"No such file: {path}")
            return default_hdr()
        finally:
            with self._lock:
                self.active_loads -= 1

    def write_png(self, path: Path, image: Image) -> None:
        with self._lock:
            self.pngs[path] = image

    def write_container(
        self,
        path: Path,
        base: Image,
        *,
        gain_map: Image | None = None,
        hdr: Image | None = None,
        quality: float,
        strategy: EncoderStrategy,
    ) -> None:
        is_temp = hdr is not None
        if is_temp:
            with self._lock:
                self.temp_writes.append(strategy)
            if self.fail_temp_write or strategy in self.fail_temp_strategies:
                raise RuntimeError("temp writer unavailable")
        if not is_temp:
            with self._lock:
                self.final_writes.append(strategy)
            if strategy in self.fail_strategies:
                raise RuntimeError(f"{strategy} writer crashed")

        if is_temp:
            stored_gain: Image | None = base.with_pixels(
                np.clip(hdr.pixels - base.pixels, 0.0, 1.0).astype(np.float32)
            )
        elif strategy in self.drop_gain_map_strategies:
            stored_gain = None
        else:
            stored_gain = gain_map

        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(b"memory container")
        with self._lock:
            self.containers[path] = {
                "base": base,
                "gain_map": stored_gain,
                "quality": quality,
                "strategy": strategy,
            }

    def read_aux_gain_map(self, path: Path) -> Image | None:
        entry = self.containers.get(path)
        return None if entry is None else entry["gain_map"]


@pytest.fixture
def memory_engine() -> Callable[..., MemoryEngine]:
    return MemoryEngine


@pytest.fixture
def image_factory() -> Callable[..., Image]:
    return gray_image


@pytest.fixture
def hdr_factory() -> Callable[..., Image]:
    return default_hdr


@pytest.fixture
def config() -> ProcessingConfig:
    return ProcessingConfig(max_concurrency=2, encoder_strategy=EncoderStrategy.LEGACY)
