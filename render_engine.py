# SPDX-License-Identifier: MPL-2.0
# Copyright (c) 2025-2026 Aryan Ameri
#
# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.
"""
Rendering engine seam and the numpy implementation of its pixel primitives.

All statistics and metadata code talks to pixels through a RenderEngine. The
numpy engine works in extended linear light where 1.0 is SDR reference white
(203 nits for PQ sources). PNG files are read and written with pypng, the
colour space tag comes from the cICP chunk (or the iCCP profile name) and the
EXIF orientation is read with exiftool.
"""

from __future__ import annotations

import io
import logging
import math
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Final, Protocol, TypeAlias

import exiftool
import numpy as np
from numpy.typing import NDArray
import png

from gainmap_config import EncoderStrategy

__all__: Final[list[str]] = [
    "Image",
    "RenderEngine",
    "NumpyRenderEngine",
    "DISPLAY_P3",
    "DISPLAY_P3_PQ",
    "SRGB",
    "REC709_LUMA",
    "read_png",
    "write_png",
    "read_orientation",
    "apply_srgb_gamma",
    "srgb_to_linear",
    "apply_pq_oetf",
    "pq_to_linear",
]

logger = logging.getLogger(__name__)

DISPLAY_P3: Final[str] = "display-p3"
DISPLAY_P3_PQ: Final[str] = "display-p3-pq"
SRGB: Final[str] = "srgb"

# Rec.709 luminance coefficients, used for every luminance statistic
REC709_LUMA: Final[tuple[float, float, float]] = (0.2126, 0.7152, 0.0722)

SDR_WHITE_NITS: Final[float] = 203.0

Vector4: TypeAlias = tuple[float, float, float, float]


# ═══════════════════════════════════════════════════════════════════
#                        DATA MODEL
# ═══════════════════════════════════════════════════════════════════


@dataclass(frozen=True, slots=True, kw_only=True, eq=False)
class Image:
    """Immutable RGBA raster in extended linear light.

    Attributes:
        pixels: float32 array of shape (height, width, 4)
        color_space: Colour space tag of the source ("display-p3-pq", ...)
        orientation: EXIF orientation (1-8)
        properties: Source metadata (pixel_width/pixel_height, maker fields, ...)
    """

    pixels: NDArray[np.float32]
    color_space: str | None = None
    orientation: int = 1
    properties: Mapping[str, Any] = field(default_factory=dict)

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def extent(self) -> tuple[int, int]:
        """(width, height) of the raster."""
        return self.width, self.height

    def with_pixels(self, pixels: NDArray[np.float32]) -> Image:
        return replace(self, pixels=pixels.astype(np.float32, copy=False))

    def with_properties(self, properties: Mapping[str, Any]) -> Image:
        return replace(self, properties=dict(properties))


class RenderEngine(Protocol):
    """Pixel and container primitives the pipeline is built on."""

    def load_image(self, path: Path) -> Image: ...

    def color_matrix(
        self,
        image: Image,
        r: Vector4,
        g: Vector4,
        b: Vector4,
        a: Vector4,
        bias: Vector4 = (0.0, 0.0, 0.0, 0.0),
    ) -> Image: ...

    def clamp(self, image: Image, lo: Vector4, hi: Vector4) -> Image: ...

    def constant_color(self, rgba: Vector4, like: Image) -> Image: ...

    def blend_with_mask(self, foreground: Image, background: Image, mask: Image) -> Image: ...

    def reduce_max(self, image: Image) -> Vector4 | None: ...

    def reduce_histogram(self, image: Image, bins: int) -> NDArray[np.float64] | None: ...

    def tone_map(
        self, hdr: Image, source_headroom: float, target_headroom: float = 1.0
    ) -> Image | None: ...

    def write_container(
        self,
        path: Path,
        base: Image,
        *,
        gain_map: Image | None = None,
        hdr: Image | None = None,
        quality: float,
        strategy: EncoderStrategy,
    ) -> None: ...

    def read_aux_gain_map(self, path: Path) -> Image | None: ...

    def write_png(self, path: Path, image: Image) -> None: ...


# ═══════════════════════════════════════════════════════════════════
#                        TRANSFER FUNCTIONS
# ═══════════════════════════════════════════════════════════════════

_PQ_M1: Final[float] = 0.1593017578125
_PQ_M2: Final[float] = 78.84375
_PQ_C1: Final[float] = 0.8359375
_PQ_C2: Final[float] = 18.8515625
_PQ_C3: Final[float] = 18.6875


def apply_srgb_gamma(linear: NDArray[np.float32]) -> NDArray[np.float32]:
    """Apply sRGB transfer function (IEC 61966-2-1).

    Piecewise:
        x <= 0.0031308: 12.92 * x
        x > 0.0031308:  1.055 * x^(1/2.4) - 0.055
    """
    linear = np.clip(linear, 0.0, 1.0)
    threshold = 0.0031308
    return np.where(
        linear <= threshold,
        12.92 * linear,
        1.055 * np.power(linear, 1.0 / 2.4) - 0.055,
    ).astype(np.float32)


def srgb_to_linear(encoded: NDArray[np.float32]) -> NDArray[np.float32]:
    """Inverse of apply_srgb_gamma."""
    encoded = np.clip(encoded, 0.0, 1.0)
    return np.where(
        encoded <= 0.04045,
        encoded / 12.92,
        np.power((encoded + 0.055) / 1.055, 2.4),
    ).astype(np.float32)


def apply_pq_oetf(linear_nits: NDArray[np.float32]) -> NDArray[np.float32]:
    """Apply PQ (SMPTE ST 2084) OETF."""
    L = np.clip(linear_nits / 10000.0, 0.0, 1.0)
    L_m1 = np.power(L, _PQ_M1)
    numerator = _PQ_C1 + _PQ_C2 * L_m1
    denominator = 1.0 + _PQ_C3 * L_m1
    return np.power(numerator / denominator, _PQ_M2).astype(np.float32)


def pq_to_linear(encoded: NDArray[np.float32]) -> NDArray[np.float32]:
    """Decode PQ signal to linear light relative to SDR reference white."""
    E = np.power(np.clip(encoded, 0.0, 1.0), 1.0 / _PQ_M2)
    numerator = np.maximum(E - _PQ_C1, 0.0)
    denominator = _PQ_C2 - _PQ_C3 * E
    nits = 10000.0 * np.power(numerator / denominator, 1.0 / _PQ_M1)
    return (nits / SDR_WHITE_NITS).astype(np.float32)


# ═══════════════════════════════════════════════════════════════════
#                        PNG I/O
# ═══════════════════════════════════════════════════════════════════

# cICP code points (ITU-T H.273)
_CICP_PRIMARIES: Final[dict[int, str]] = {1: SRGB, 9: "rec2020", 12: DISPLAY_P3}
_CICP_TRANSFERS: Final[dict[int, str]] = {16: "pq", 18: "hlg"}
_PRIMARIES_CODES: Final[dict[str, int]] = {SRGB: 1, "rec2020": 9, DISPLAY_P3: 12}


def _color_space_from_chunks(chunks: Sequence[tuple[bytes, bytes]]) -> str | None:
    """Derive the colour space tag from cICP, iCCP or sRGB chunks."""
    by_type = {chunk_type: data for chunk_type, data in chunks}

    cicp = by_type.get(b"cICP")
    if cicp is not None and len(cicp) >= 2:
        primaries = _CICP_PRIMARIES.get(cicp[0])
        if primaries is None:
            return None
        transfer = _CICP_TRANSFERS.get(cicp[1])
        return f"{primaries}-{transfer}" if transfer else primaries

    iccp = by_type.get(b"iCCP")
    if iccp is not None:
        name = iccp.split(b"\0", 1)[0].decode("latin-1").lower()
        if "p3" in name:
            return DISPLAY_P3_PQ if "pq" in name else DISPLAY_P3
        if "srgb" in name:
            return SRGB
        return None

    if b"sRGB" in by_type:
        return SRGB
    return None


def read_orientation(path: Path) -> int:
    """Get EXIF orientation from file using exiftool."""
    try:
        with exiftool.ExifToolHelper() as et:
            tags = et.get_tags([str(path)], tags=["Orientation"], params=["-n"])
    except (exiftool.exceptions.ExifToolException, OSError) as e:
        logger.debug("Orientation lookup failed for %s: %s", path, e)
        return 1

    for key, value in (tags[0] if tags else {}).items():
        if key.endswith("Orientation"):
            try:
                return int(value)
            except (TypeError, ValueError):
                return 1
    return 1


def read_png(path: Path, *, with_orientation: bool = True) -> Image:
    """Read a PNG into an extended linear RGBA Image.

    PQ-tagged files are decoded to linear light relative to SDR white;
    everything else is decoded with the sRGB curve.
    """
    data = Path(path).read_bytes()
    chunks = list(png.Reader(bytes=data).chunks())
    width, height, rows, info = png.Reader(bytes=data).asDirect()

    planes = int(info["planes"])
    maxval = float(2 ** int(info["bitdepth"]) - 1)
    raw = np.array([np.asarray(row) for row in rows], dtype=np.float32)
    raw = raw.reshape(height, width, planes) / maxval

    if planes in (1, 2):
        rgb = np.repeat(raw[..., :1], 3, axis=2)
    else:
        rgb = raw[..., :3]
    alpha = raw[..., -1:] if planes in (2, 4) else np.ones((height, width, 1), np.float32)

    color_space = _color_space_from_chunks(chunks)
    if color_space is not None and color_space.endswith("-pq"):
        linear = pq_to_linear(rgb)
    else:
        linear = srgb_to_linear(rgb)

    return Image(
        pixels=np.concatenate([linear, alpha], axis=2).astype(np.float32),
        color_space=color_space,
        orientation=read_orientation(path) if with_orientation else 1,
        properties={"pixel_width": width, "pixel_height": height},
    )


def write_png(
    path: Path,
    image: Image,
    *,
    bitdepth: int = 8,
    alpha: bool = True,
    color_space: str | None = None,
) -> None:
    """Write an Image as PNG with pypng, tagging the colour space with cICP."""
    tag = color_space or image.color_space or SRGB
    rgb = image.pixels[..., :3]
    if tag.endswith("-pq"):
        encoded = apply_pq_oetf(rgb * SDR_WHITE_NITS)
        primaries, transfer = tag.removesuffix("-pq"), 16
    else:
        encoded = apply_srgb_gamma(rgb)
        primaries, transfer = tag, 13

    planes = 4 if alpha else 3
    if alpha:
        encoded = np.concatenate([encoded, np.clip(image.pixels[..., 3:], 0.0, 1.0)], axis=2)

    maxval = 2**bitdepth - 1
    dtype = np.uint16 if bitdepth > 8 else np.uint8
    quantized = np.clip(np.round(encoded * maxval), 0, maxval).astype(dtype)
    height, width = quantized.shape[:2]

    buffer = io.BytesIO()
    writer = png.Writer(width=width, height=height, bitdepth=bitdepth, greyscale=False, alpha=alpha)
    writer.write(buffer, quantized.reshape(height, width * planes))

    chunks = list(png.Reader(bytes=buffer.getvalue()).chunks())
    code = _PRIMARIES_CODES.get(primaries)
    if code is not None:
        # cICP must precede IDAT
        chunks.insert(1, (b"cICP", bytes([code, transfer, 0, 1])))

    with open(path, "wb") as f:
        png.write_chunks(f, chunks)


# ═══════════════════════════════════════════════════════════════════
#                        NUMPY ENGINE
# ═══════════════════════════════════════════════════════════════════


def _as_vec(value: float | Sequence[float]) -> NDArray[np.float32]:
    if isinstance(value, (int, float)):
        return np.full(4, value, dtype=np.float32)
    return np.asarray(value, dtype=np.float32)


class NumpyRenderEngine:
    """CPU implementation of the pixel primitives and PNG I/O.

    Container primitives are left to subclasses; see jxl_gainmap.JxlRenderEngine.
    """

    def __init__(self, *, read_exif_orientation: bool = True) -> None:
        self.read_exif_orientation = read_exif_orientation

    def load_image(self, path: Path) -> Image:
        return read_png(path, with_orientation=self.read_exif_orientation)

    def write_png(self, path: Path, image: Image) -> None:
        write_png(path, image, bitdepth=8, alpha=True, color_space=SRGB)

    def color_matrix(
        self,
        image: Image,
        r: Vector4,
        g: Vector4,
        b: Vector4,
        a: Vector4,
        bias: Vector4 = (0.0, 0.0, 0.0, 0.0),
    ) -> Image:
        """Each output channel is the dot product of the input pixel with its vector."""
        matrix = np.array([r, g, b, a], dtype=np.float32)
        out = image.pixels @ matrix.T + np.asarray(bias, dtype=np.float32)
        return image.with_pixels(out)

    def clamp(self, image: Image, lo: Vector4 | float, hi: Vector4 | float) -> Image:
        return image.with_pixels(np.clip(image.pixels, _as_vec(lo), _as_vec(hi)))

    def constant_color(self, rgba: Vector4, like: Image) -> Image:
        pixels = np.broadcast_to(np.asarray(rgba, dtype=np.float32), like.pixels.shape)
        return like.with_pixels(pixels.copy())

    def blend_with_mask(self, foreground: Image, background: Image, mask: Image) -> Image:
        """White mask selects foreground, black keeps background."""
        weight = np.clip(mask.pixels[..., :1], 0.0, 1.0)
        out = background.pixels + (foreground.pixels - background.pixels) * weight
        return background.with_pixels(out)

    def reduce_max(self, image: Image) -> Vector4 | None:
        if image.pixels.size == 0:
            return None
        flat = image.pixels.reshape(-1, 4)
        if not np.all(np.isfinite(flat)):
            flat = np.nan_to_num(flat, nan=0.0, posinf=0.0, neginf=0.0)
        r, g, b, a = (float(v) for v in flat.max(axis=0))
        return r, g, b, a

    def reduce_histogram(self, image: Image, bins: int) -> NDArray[np.float64] | None:
        """Per-channel pixel counts over [0, 1]; values outside land in the edge bins."""
        if image.pixels.size == 0 or bins < 1:
            return None
        flat = np.nan_to_num(image.pixels.reshape(-1, 4), nan=0.0)
        indices = np.clip(np.floor(flat * bins), 0, bins - 1).astype(np.int64)
        counts = np.stack(
            [np.bincount(indices[:, c], minlength=bins) for c in range(4)], axis=1
        )
        return counts.astype(np.float64)

    def tone_map(
        self, hdr: Image, source_headroom: float, target_headroom: float = 1.0
    ) -> Image | None:
        """Extended Reinhard on luminance, mapping source_headroom onto target_headroom."""
        if not (math.isfinite(source_headroom) and math.isfinite(target_headroom)):
            return None
        if target_headroom <= 0:
            return None

        rgb = np.maximum(hdr.pixels[..., :3], 0.0)
        if source_headroom > target_headroom:
            white = source_headroom / target_headroom
            lum = rgb @ np.asarray(REC709_LUMA, dtype=np.float32)
            x = lum / target_headroom
            mapped = target_headroom * x * (1.0 + x / (white * white)) / (1.0 + x)
            scale = np.divide(mapped, lum, out=np.ones_like(lum), where=lum > 0)
            rgb = rgb * scale[..., None]

        rgb = np.clip(rgb, 0.0, target_headroom)
        out = np.concatenate([rgb, hdr.pixels[..., 3:]], axis=2)
        sdr_space = hdr.color_space.removesuffix("-pq") if hdr.color_space else DISPLAY_P3
        return replace(hdr, pixels=out.astype(np.float32), color_space=sdr_space)

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
        raise NotImplementedError("NumpyRenderEngine does not write containers")

    def read_aux_gain_map(self, path: Path) -> Image | None:
        raise NotImplementedError("NumpyRenderEngine does not read containers")
