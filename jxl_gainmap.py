# SPDX-License-Identifier: MPL-2.0
# Copyright (c) 2025-2026 Aryan Ameri
#
# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.
"""
ISO 21496-1 gain maps in JPEG XL, and the cjxl/djxl backed render engine.

The SDR base is encoded by cjxl into a container, the gain map is encoded as a
naked codestream and wrapped together with its ISO 21496-1 metadata in a jhgm
box placed right after the base codestream. Maker Apple fields travel in an
XMP packet (xml box).
"""

from __future__ import annotations

import logging
import os
import struct
import subprocess
import tempfile
import xml.etree.ElementTree as ET
from collections.abc import Mapping
from dataclasses import dataclass
from fractions import Fraction
from pathlib import Path
from typing import Final

import numpy as np
from numpy.typing import NDArray

from gainmap_config import EncoderStrategy
from jxl_container import (
    JxlBox,
    extract_naked_codestream,
    find_box,
    insert_jhgm_box,
    parse_jxl_container,
    upsert_box,
    write_jxl_container,
)
from render_engine import DISPLAY_P3, Image, NumpyRenderEngine, write_png

__all__: Final[list[str]] = [
    "GainMapParams",
    "create_gain_map_metadata",
    "parse_gain_map_metadata",
    "create_jhgm_box",
    "parse_jhgm_box",
    "find_min_max_without_outliers",
    "compute_gain_map",
    "build_maker_xmp",
    "parse_maker_xmp",
    "JxlRenderEngine",
]

logger = logging.getLogger(__name__)

# Display P3 luminance coefficients
P3_Y_COEFFS: Final[NDArray[np.float64]] = np.array([0.2290, 0.6917, 0.0793])

MAKER_XMP_NS: Final[str] = "urn:hdr2jxl:maker-apple:1.0"
_RDF_NS: Final[str] = "http://www.w3.org/1999/02/22-rdf-syntax-ns#"


# =============================================================================
# ISO 21496-1 Metadata
# =============================================================================


@dataclass(frozen=True, slots=True, kw_only=True)
class GainMapParams:
    """Single-channel ISO 21496-1 parameters (log2 domain)."""

    gain_min: float
    gain_max: float
    base_headroom: float
    alt_headroom: float
    gamma: float = 1.0
    base_offset: float = 1 / 64
    alt_offset: float = 1 / 64


def float_to_fraction(value: float, max_denominator: int = 134217728) -> tuple[int, int]:
    """Convert float to fraction with reasonable precision."""
    frac = Fraction(value).limit_denominator(max_denominator)
    return frac.numerator, frac.denominator


def create_gain_map_metadata(params: GainMapParams) -> bytes:
    """Serialize ISO 21496-1 gain map metadata (big-endian).

    Binary format:
    - minimum_version: uint16 BE (= 0)
    - writer_version: uint16 BE (= 0)
    - flags: uint8 (bit7=is_multichannel, bit6=use_base_color_space)
    - base_headroom: uint32 BE numerator + uint32 BE denominator
    - alternate_headroom: uint32 BE numerator + uint32 BE denominator
    - gain_min: int32 BE (signed) + uint32 BE denominator
    - gain_max: int32 BE (signed) + uint32 BE denominator
    - gamma: uint32 BE + uint32 BE
    - base_offset: int32 BE (signed) + uint32 BE
    - alternate_offset: int32 BE (signed) + uint32 BE
    """
    parts: list[bytes] = [struct.pack(">HH", 0, 0), struct.pack("B", 0)]

    n, d = float_to_fraction(params.base_headroom)
    parts.append(struct.pack(">II", max(0, n), d))
    n, d = float_to_fraction(params.alt_headroom)
    parts.append(struct.pack(">II", max(0, n), d))

    for value, fmt in (
        (params.gain_min, ">iI"),
        (params.gain_max, ">iI"),
        (params.gamma, ">II"),
        (params.base_offset, ">iI"),
        (params.alt_offset, ">iI"),
    ):
        n, d = float_to_fraction(value)
        parts.append(struct.pack(fmt, n, d))

    return b"".join(parts)


def parse_gain_map_metadata(data: bytes) -> GainMapParams:
    """Read the first channel of serialized ISO 21496-1 metadata.

    Raises:
        ValueError: If the payload is too short
    """
    if len(data) < 5 + 16 + 40:
        raise ValueError(f"Gain map metadata too short: {len(data)} bytes")

    pos = 5
    base_n, base_d, alt_n, alt_d = struct.unpack(">IIII", data[pos : pos + 16])
    pos += 16
    g_min_n, g_min_d, g_max_n, g_max_d, gamma_n, gamma_d, bo_n, bo_d, ao_n, ao_d = struct.unpack(
        ">iIiIIIiIiI", data[pos : pos + 40]
    )
    return GainMapParams(
        gain_min=g_min_n / g_min_d,
        gain_max=g_max_n / g_max_d,
        base_headroom=base_n / base_d,
        alt_headroom=alt_n / alt_d,
        gamma=gamma_n / gamma_d,
        base_offset=bo_n / bo_d,
        alt_offset=ao_n / ao_d,
    )


# =============================================================================
# JHGM Box
# =============================================================================


def create_jhgm_box(metadata: bytes, gain_map_codestream: bytes) -> bytes:
    """Create jhgm box contents per libjxl gain_map.h.

    Format:
    - jhgm_version: uint8 (0)
    - metadata_size: uint16 BE
    - metadata: bytes (ISO 21496-1 binary)
    - color_encoding_size: uint8 (0, none)
    - alt_icc_size: uint32 BE (0, none)
    - gain_map: remaining bytes (JXL naked codestream)
    """
    return b"".join([
        struct.pack("B", 0),
        struct.pack(">H", len(metadata)),
        metadata,
        struct.pack("B", 0),
        struct.pack(">I", 0),
        gain_map_codestream,
    ])


def parse_jhgm_box(data: bytes) -> tuple[bytes, bytes]:
    """Split jhgm box contents into (metadata, gain map codestream).

    Raises:
        ValueError: On an unknown version or truncated payload
    """
    if len(data) < 3 or data[0] != 0:
        raise ValueError("Unsupported or truncated jhgm box")
    metadata_size = struct.unpack(">H", data[1:3])[0]
    pos = 3 + metadata_size
    metadata = data[3:pos]

    color_encoding_bits = data[pos]
    pos += 1 + (color_encoding_bits + 7) // 8
    alt_icc_size = struct.unpack(">I", data[pos : pos + 4])[0]
    pos += 4 + alt_icc_size
    if pos > len(data):
        raise ValueError("Truncated jhgm box")
    return metadata, data[pos:]


# =============================================================================
# Gain Map Computation
# =============================================================================


def find_min_max_without_outliers(
    gain_values: NDArray[np.float32],
    outlier_ratio: float = 0.001,
    bucket_size: float = 0.01,
    max_buckets: int = 10000,
) -> tuple[float, float]:
    """Find min/max of gain values, discarding outliers.

    Walks a histogram of the values from each end and moves the bound past
    empty buckets until more than outlier_ratio/2 of the values were passed.
    """
    if len(gain_values) == 0:
        return 0.0, 0.0

    abs_min = float(np.min(gain_values))
    abs_max = float(np.max(gain_values))

    range_span = abs_max - abs_min
    if range_span <= bucket_size * 2:
        return abs_min, abs_max

    num_buckets = min(int(np.ceil(range_span / bucket_size)), max_buckets)
    histogram, bin_edges = np.histogram(gain_values, bins=num_buckets, range=(abs_min, abs_max))

    max_outliers_each_side = int(round(len(gain_values) * outlier_ratio / 2.0))
    if max_outliers_each_side == 0:
        return abs_min, abs_max

    range_min = abs_min
    left_outliers = 0
    for i in range(num_buckets):
        left_outliers += histogram[i]
        if left_outliers > max_outliers_each_side:
            break
        if histogram[i] == 0:
            range_min = float(bin_edges[i + 1])

    range_max = abs_max
    right_outliers = 0
    for i in range(num_buckets - 1, -1, -1):
        right_outliers += histogram[i]
        if right_outliers > max_outliers_each_side:
            break
        if histogram[i] == 0:
            range_max = float(bin_edges[i])

    return range_min, range_max


def compute_gain_map(
    sdr_linear: NDArray[np.float32],
    hdr_linear: NDArray[np.float32],
    offset: float = 1 / 64,
    epsilon: float = 1e-10,
) -> tuple[NDArray[np.float32], GainMapParams]:
    """Compute a luminance gain map from linear SDR and HDR renditions.

    Returns:
        Tuple of the (H, W) gain map normalised to [0, 1] and its parameters
    """
    if sdr_linear.shape[:2] != hdr_linear.shape[:2]:
        raise ValueError(f"SDR {sdr_linear.shape[:2]} and HDR {hdr_linear.shape[:2]} differ in size")

    sdr_lum = np.maximum(np.dot(sdr_linear[..., :3], P3_Y_COEFFS), 0.0)
    hdr_lum = np.maximum(np.dot(hdr_linear[..., :3], P3_Y_COEFFS), 0.0)

    ratio = np.maximum((hdr_lum + offset) / (sdr_lum + offset), epsilon)
    gain_log2 = np.log2(ratio)

    gain_min, gain_max = find_min_max_without_outliers(gain_log2.flatten().astype(np.float32))

    if gain_max > gain_min:
        gain_normalized = (gain_log2 - gain_min) / (gain_max - gain_min)
    else:
        gain_normalized = np.zeros_like(gain_log2)
    gain_normalized = np.clip(gain_normalized, 0, 1).astype(np.float32)

    base_max = max(float(sdr_lum.max(initial=0.0)), 1.0)
    alt_max = max(float(hdr_lum.max(initial=0.0)), 1.0)

    return gain_normalized, GainMapParams(
        gain_min=gain_min,
        gain_max=gain_max,
        base_headroom=float(np.log2(base_max)),
        alt_headroom=float(np.log2(alt_max)),
        base_offset=offset,
        alt_offset=offset,
    )


# =============================================================================
# Maker Apple XMP
# =============================================================================


def build_maker_xmp(maker: Mapping[str, float]) -> bytes:
    """XMP packet holding maker Apple fields keyed by tag number."""
    fields = "\n".join(
        f"   <makerApple:Tag{key}>{float(value)!r}</makerApple:Tag{key}>"
        for key, value in sorted(maker.items())
    )
    packet = (
        '<?xpacket begin="\ufeff" id="W5M0MpCehiHzreSzNTczkc9d"?>\n'
        '<x:xmpmeta xmlns:x="adobe:ns:meta/">\n'
        f' <rdf:RDF xmlns:rdf="{_RDF_NS}">\n'
        f'  <rdf:Description rdf:about="" xmlns:makerApple="{MAKER_XMP_NS}">\n'
        f"{fields}\n"
        "  </rdf:Description>\n"
        " </rdf:RDF>\n"
        "</x:xmpmeta>\n"
        '<?xpacket end="w"?>'
    )
    return packet.encode("utf-8")


def parse_maker_xmp(data: bytes) -> dict[str, float]:
    root = ET.fromstring(data.decode("utf-8"))
    prefix = f"{{{MAKER_XMP_NS}}}Tag"
    return {
        element.tag.removeprefix(prefix): float(element.text or "nan")
        for element in root.iter()
        if element.tag.startswith(prefix)
    }


# =============================================================================
# PNM I/O
# =============================================================================


def write_grayscale_pgm(path: Path, data: NDArray[np.float32]) -> None:
    """Write 2D data normalised to [0, 1] as 16-bit PGM (P5)."""
    height, width = data.shape
    data_16bit = (np.clip(data, 0, 1) * 65535).astype(np.uint16)
    with open(path, "wb") as f:
        f.write(f"P5\n{width} {height}\n65535\n".encode("ascii"))
        f.write(data_16bit.astype(">u2").tobytes())


def read_pnm_as_float(path: Path) -> NDArray[np.float32]:
    """Read P5/P6 file as float32 array normalized to [0, 1]."""
    with open(path, "rb") as f:
        magic = f.readline().decode("ascii").strip()
        if magic not in ("P5", "P6"):
            raise ValueError(f"Unsupported PNM format: {magic}")

        line = f.readline()
        while line.startswith(b"#"):
            line = f.readline()
        width, height = (int(v) for v in line.decode("ascii").split()[:2])
        maxval = int(f.readline().decode("ascii").strip())
        data = f.read()

    if maxval > 255:
        pixels = np.frombuffer(data, dtype=">u2")
    else:
        pixels = np.frombuffer(data, dtype=np.uint8)

    shape = (height, width, 3) if magic == "P6" else (height, width)
    return (pixels.reshape(shape).astype(np.float32) / maxval).astype(np.float32)


# =============================================================================
# External Tools
# =============================================================================


def get_library_path(tool: Path) -> str:
    """LD_LIBRARY_PATH covering the lib dirs next to a tool's bin dir."""
    prefix = tool.resolve().parent.parent
    paths = [str(p) for p in (prefix / "lib", prefix / "lib64") if p.is_dir()]
    existing = os.environ.get("LD_LIBRARY_PATH", "")
    if existing:
        paths.append(existing)
    return ":".join(paths)


def run_command(cmd: list[str], tool: Path) -> subprocess.CompletedProcess[str]:
    """Run an external tool, raising RuntimeError with its stderr on failure."""
    env = os.environ.copy()
    env["LD_LIBRARY_PATH"] = get_library_path(tool)
    result = subprocess.run(cmd, env=env, check=False, capture_output=True, text=True)
    if result.returncode != 0:
        raise RuntimeError(f"{tool.name} failed: {result.stderr.strip()}")
    return result


# =============================================================================
# Engine
# =============================================================================


class JxlRenderEngine(NumpyRenderEngine):
    """Numpy pixel primitives plus JPEG XL gain map container I/O."""

    def __init__(
        self,
        cjxl: Path,
        djxl: Path,
        *,
        effort: int = 7,
        gain_map_distance: float = 1.0,
        read_exif_orientation: bool = True,
    ) -> None:
        super().__init__(read_exif_orientation=read_exif_orientation)
        self.cjxl = Path(cjxl)
        self.djxl = Path(djxl)
        self.effort = effort
        self.gain_map_distance = gain_map_distance

    def _encode_base(self, png_path: Path, out: Path, quality: float, strategy: EncoderStrategy) -> None:
        cmd = [
            str(self.cjxl),
            str(png_path),
            str(out),
            "-q", str(round(quality * 100)),
            "-e", str(self.effort),
            "--container=1",
        ]
        if strategy is EncoderStrategy.TEN_BIT:
            cmd.append("--override_bitdepth=10")
        run_command(cmd, self.cjxl)

    def _encode_gain_map(self, gain: NDArray[np.float32], tmp: Path) -> bytes:
        pgm = tmp / "gain.pgm"
        write_grayscale_pgm(pgm, gain)
        out = tmp / "gain.jxl"
        run_command(
            [
                str(self.cjxl),
                str(pgm),
                str(out),
                "-d", str(self.gain_map_distance),
                "-e", str(self.effort),
                "--container=0",
            ],
            self.cjxl,
        )
        return extract_naked_codestream(out)

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
        """Encode base with cjxl and attach a gain map plus maker XMP.

        With hdr, the gain map is computed from the base/hdr pair. With
        gain_map, its pixels and the GainMapParams in its properties are reused.
        """
        if strategy is EncoderStrategy.AUTO:
            raise ValueError("write_container needs a concrete strategy")

        if gain_map is not None:
            params = gain_map.properties.get("gain_map_params")
            if not isinstance(params, GainMapParams):
                raise ValueError("gain map image carries no GainMapParams")
            gain = gain_map.pixels[..., 0]
        elif hdr is not None:
            gain, params = compute_gain_map(base.pixels, hdr.pixels)
        else:
            raise ValueError("write_container needs a gain map or an HDR image")

        with tempfile.TemporaryDirectory(prefix="hdr2jxl-") as tmpdir:
            tmp = Path(tmpdir)
            base_png = tmp / "base.png"
            write_png(
                base_png,
                base,
                bitdepth=8 if strategy is EncoderStrategy.LEGACY else 16,
                alpha=False,
                color_space=base.color_space or DISPLAY_P3,
            )
            base_jxl = tmp / "base.jxl"
            self._encode_base(base_png, base_jxl, quality, strategy)

            jhgm = JxlBox(
                box_type="jhgm",
                data=create_jhgm_box(create_gain_map_metadata(params), self._encode_gain_map(gain, tmp)),
            )
            boxes = insert_jhgm_box(parse_jxl_container(base_jxl), jhgm)

        maker = base.properties.get("maker_apple")
        if maker:
            boxes = upsert_box(boxes, JxlBox(box_type="xml ", data=build_maker_xmp(maker)))

        write_jxl_container(path, boxes)
        logger.debug("wrote %s (%s, q=%.2f, gain [%.3f, %.3f])", path, strategy, quality,
                     params.gain_min, params.gain_max)

    def read_aux_gain_map(self, path: Path) -> Image | None:
        """Decode the jhgm gain map of a container, None when there is none."""
        jhgm = find_box(parse_jxl_container(path), "jhgm")
        if jhgm is None:
            return None
        metadata, codestream = parse_jhgm_box(jhgm.data)
        if not codestream:
            return None
        params = parse_gain_map_metadata(metadata)

        with tempfile.TemporaryDirectory(prefix="hdr2jxl-") as tmpdir:
            tmp = Path(tmpdir)
            gain_jxl = tmp / "gain.jxl"
            gain_jxl.write_bytes(codestream)
            gain_pgm = tmp / "gain.pgm"
            run_command([str(self.djxl), str(gain_jxl), str(gain_pgm)], self.djxl)
            gray = read_pnm_as_float(gain_pgm)

        if gray.ndim == 3:
            gray = gray[..., 0]
        pixels = np.concatenate(
            [np.repeat(gray[..., None], 3, axis=2), np.ones((*gray.shape, 1), np.float32)], axis=2
        )
        return Image(pixels=pixels, color_space=None, properties={"gain_map_params": params})
