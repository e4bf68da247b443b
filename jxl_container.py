"""
JXL Container Parser/Writer Module.

Reads and writes the ISOBMFF-like JXL container so gain map (jhgm) and XMP
(xml ) boxes can be placed next to a codestream produced by cjxl.

SPDX-License-Identifier: MPL-2.0
Copyright (c) 2025-2026 Aryan Ameri
"""

from __future__ import annotations

import struct
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path
from typing import Final

__all__: Final[list[str]] = [
    "JxlBox",
    "parse_jxl_bytes",
    "parse_jxl_container",
    "serialize_boxes",
    "write_jxl_container",
    "find_box",
    "insert_after_codestream",
    "insert_jhgm_box",
    "upsert_box",
    "extract_naked_codestream",
    "JXL_SIGNATURE",
    "CODESTREAM_SIGNATURE",
]

# JXL container signature (12 bytes)
JXL_SIGNATURE: Final[bytes] = bytes([
    0x00, 0x00, 0x00, 0x0C,  # size = 12
    0x4A, 0x58, 0x4C, 0x20,  # "JXL "
    0x0D, 0x0A, 0x87, 0x0A,  # magic bytes
])

CODESTREAM_SIGNATURE: Final[bytes] = b"\xff\x0a"

_CODESTREAM_BOXES: Final[tuple[str, ...]] = ("jxlc", "jxlp")


@dataclass(frozen=True, slots=True)
class JxlBox:
    """Represents a single box in a JXL container.

    Attributes:
        box_type: 4-character ASCII box type (e.g., "JXL ", "ftyp", "jxlc", "jhgm")
        data: Raw box data (excludes size and type header)
    """
    box_type: str
    data: bytes

    def __repr__(self) -> str:
        return f"JxlBox(type={self.box_type!r}, size={len(self.data)})"


def parse_jxl_bytes(data: bytes) -> list[JxlBox]:
    """Split container bytes into boxes.

    Box structure:
    - size (4 bytes, big-endian): Total box size including header
    - type (4 bytes, ASCII): Box type identifier
    - data (size - 8 bytes): Box payload

    Special size values:
    - size = 0: Box extends to end of file
    - size = 1: Extended size (64-bit) follows type field

    Raises:
        ValueError: If data is not a JXL container or a box overruns the data
    """
    if not data.startswith(JXL_SIGNATURE):
        raise ValueError("Not a JXL container")

    boxes: list[JxlBox] = []
    pos = 0

    while pos + 8 <= len(data):
        size = struct.unpack(">I", data[pos : pos + 4])[0]
        box_type = data[pos + 4 : pos + 8].decode("ascii", errors="replace")

        if size == 0:
            end = len(data)
            start = pos + 8
        elif size == 1:
            if pos + 16 > len(data):
                raise ValueError(f"Truncated extended box header at offset {pos}")
            end = pos + struct.unpack(">Q", data[pos + 8 : pos + 16])[0]
            start = pos + 16
        else:
            end = pos + size
            start = pos + 8

        if end > len(data) or end < start:
            raise ValueError(f"Box {box_type!r} at offset {pos} overruns container")

        boxes.append(JxlBox(box_type=box_type, data=data[start:end]))
        pos = end

    return boxes


def parse_jxl_container(path: Path) -> list[JxlBox]:
    """Parse a JXL file into a list of boxes."""
    try:
        return parse_jxl_bytes(Path(path).read_bytes())
    except ValueError as e:
        raise ValueError(f"{e}: {path}") from e


def serialize_boxes(boxes: Iterable[JxlBox]) -> bytes:
    parts: list[bytes] = []
    for box in boxes:
        box_type_bytes = box.box_type.encode("ascii")
        if len(box_type_bytes) != 4:
            raise ValueError(f"Box type must be exactly 4 characters: {box.box_type!r}")

        total_size = 8 + len(box.data)
        if total_size > 0xFFFFFFFF:
            parts.append(struct.pack(">I", 1) + box_type_bytes + struct.pack(">Q", 16 + len(box.data)))
        else:
            parts.append(struct.pack(">I", total_size) + box_type_bytes)
        parts.append(box.data)
    return b"".join(parts)


def write_jxl_container(path: Path, boxes: Iterable[JxlBox]) -> None:
    """Write boxes to a JXL container file."""
    Path(path).write_bytes(serialize_boxes(boxes))


def find_box(boxes: Iterable[JxlBox], box_type: str) -> JxlBox | None:
    return next((box for box in boxes if box.box_type == box_type), None)


def insert_after_codestream(boxes: list[JxlBox], new_box: JxlBox) -> list[JxlBox]:
    """Insert a box right after the last codestream box, replacing any box of its type.

    Raises:
        ValueError: If no codestream box is found
    """
    filtered = [box for box in boxes if box.box_type != new_box.box_type]
    last_codestream_idx = max(
        (i for i, box in enumerate(filtered) if box.box_type in _CODESTREAM_BOXES),
        default=-1,
    )
    if last_codestream_idx == -1:
        raise ValueError("No codestream box (jxlc/jxlp) found in JXL container")

    return [*filtered[: last_codestream_idx + 1], new_box, *filtered[last_codestream_idx + 1 :]]


def insert_jhgm_box(boxes: list[JxlBox], jhgm_box: JxlBox) -> list[JxlBox]:
    """Insert a jhgm box after the last codestream box.

    Per libjxl ordering convention:
    1. JXL  - Signature
    2. ftyp - File type
    3. jxlc/jxlp - Codestream (may be multiple jxlp for partial codestream)
    4. jhgm - Gain map (INSERT HERE)
    5. Exif, xml  - Metadata
    """
    return insert_after_codestream(boxes, jhgm_box)


def upsert_box(boxes: list[JxlBox], new_box: JxlBox) -> list[JxlBox]:
    """Replace the first box of the same type in place, or append it."""
    for i, box in enumerate(boxes):
        if box.box_type == new_box.box_type:
            return [*boxes[:i], new_box, *(b for b in boxes[i + 1 :] if b.box_type != new_box.box_type)]
    return [*boxes, new_box]


def extract_naked_codestream(jxl_path: Path) -> bytes:
    """Extract the naked codestream from a JXL file.

    If the file is already a naked codestream (starts with 0xFF0A), it is
    returned unchanged.
    """
    data = Path(jxl_path).read_bytes()
    if data.startswith(CODESTREAM_SIGNATURE):
        return data

    boxes = parse_jxl_bytes(data)
    codestream = find_box(boxes, "jxlc")
    if codestream is not None:
        return codestream.data

    # Partial codestream boxes start with a 4-byte sequence number
    parts = [box.data[4:] for box in boxes if box.box_type == "jxlp" and len(box.data) >= 4]
    if parts:
        return b"".join(parts)

    raise ValueError(f"No codestream found in JXL container: {jxl_path}")
