"""Binary building blocks of the on-camera calibration formats.

Layouts (all integers little-endian):

* AGCAL archive: 8-byte magic, ``u32`` entry count, then per entry
  ``u32`` name length (with terminating NUL), ``u32`` data length,
  the NUL-terminated name and the raw data.
* AGCZ envelope: ``"AGCZ"``, ``u32`` uncompressed size, zlib stream.
* AGST stash: ``"AGST"``, ``u32`` header size (4096), NUL-terminated
  JSON summary padded with zeros, then the AGCZ (or raw) archive.
* AGMS container: ``"AGMS"``, ``u32`` header size, ``u32`` slot count,
  NUL-terminated JSON index, then the concatenated AGST blobs.
* RMAP remap tables: ``"RMAP"``, ``u32`` width, ``u32`` height,
  ``u32`` flags, then one offset per pixel; 4 bytes each normally,
  3 bytes each when flags is 1 (compact form).
"""

from __future__ import annotations

import struct
import zlib
from dataclasses import dataclass
from typing import Any, Mapping

ARCHIVE_MAGIC = b"AGCAL\x00\x00\x01"
COMPRESSED_MAGIC = b"AGCZ"
STASH_MAGIC = b"AGST"
STASH_HEADER_SIZE = 4096
MULTISLOT_MAGIC = b"AGMS"
MULTISLOT_HEADER_SIZE = 4096
MAX_SLOTS = 3

REMAP_MAGIC = b"RMAP"
REMAP_HEADER_SIZE = 16
REMAP_SENTINEL = 0xFFFFFFFF
REMAP_COMPACT_FLAG = 1
REMAP_COMPACT_SENTINEL = 0x00FFFFFF

ARCHIVE_FILES = ("remap_left.bin", "remap_right.bin", "calibration_meta.json")
REMAP_ENTRIES = frozenset(ARCHIVE_FILES[:2])

_U32 = struct.Struct("<I")
_U32_MAX = 0xFFFFFFFF


class ArchiveError(Exception):
    """Raised when calibration data is malformed or cannot be processed."""


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


@dataclass
class CalibMeta:
    """Stereo calibration metadata used by depth processing."""

    min_disparity: int = 0
    num_disparities: int = 0
    focal_length_px: float = 0.0
    baseline_cm: float = 0.0

    @classmethod
    def from_json(cls, obj: Any) -> "CalibMeta":
        """Build metadata from a parsed ``calibration_meta.json`` object.

        Fields that are missing or not numeric keep their zero default.
        """
        meta = cls()
        if not isinstance(obj, Mapping):
            return meta
        dr = obj.get("disparity_range")
        if isinstance(dr, Mapping):
            md = dr.get("min_disparity")
            nd = dr.get("num_disparities")
            if _is_number(md):
                meta.min_disparity = int(md)
            if _is_number(nd):
                meta.num_disparities = int(nd)
        fl = obj.get("focal_length_px")
        if _is_number(fl):
            meta.focal_length_px = float(fl)
        bl = obj.get("baseline_cm")
        if _is_number(bl):
            meta.baseline_cm = float(bl)
        return meta


def read_u32(data: bytes, offset: int) -> int:
    """Read a little-endian unsigned 32-bit integer at ``offset``."""
    if offset < 0 or offset + 4 > len(data):
        raise ArchiveError(f"cannot read u32 at offset {offset} of {len(data)} bytes")
    return _U32.unpack_from(data, offset)[0]


def compress_archive(data: bytes) -> bytes:
    """Wrap ``data`` in an AGCZ envelope, deflated at best compression."""
    if len(data) > _U32_MAX:
        raise ArchiveError("archive too large to compress")
    return COMPRESSED_MAGIC + _U32.pack(len(data)) + zlib.compress(bytes(data), 9)


def skip_stash_header(data: bytes) -> bytes:
    """Return the payload after an AGST header, or ``data`` if there is none."""
    if len(data) >= 8 and data[:4] == STASH_MAGIC:
        hdr_size = _U32.unpack_from(data, 4)[0]
        if hdr_size <= len(data):
            return bytes(data[hdr_size:])
    return bytes(data)


def maybe_decompress(data: bytes) -> bytes:
    """Inflate an AGCZ envelope; other data is returned unchanged."""
    if len(data) < 8 or data[:4] != COMPRESSED_MAGIC:
        return bytes(data)
    orig_len = _U32.unpack_from(data, 4)[0]
    inflater = zlib.decompressobj()
    try:
        out = inflater.decompress(bytes(data[8:]), orig_len) if orig_len else b""
    except zlib.error as exc:
        raise ArchiveError(f"zlib uncompress failed: {exc}") from exc
    if orig_len == 0 or inflater.unconsumed_tail or not inflater.eof:
        if orig_len == 0 or inflater.unconsumed_tail:
            raise ArchiveError("zlib uncompress failed: output exceeds declared size")
        raise ArchiveError("zlib uncompress failed: truncated stream")
    return out


def unwrap(data: bytes) -> bytes:
    """Strip an AGST header and inflate an AGCZ envelope where present."""
    return maybe_decompress(skip_stash_header(data))


def _remap_dims(data: bytes) -> tuple[int, int, int]:
    width, height, flags = struct.unpack_from("<III", data, 4)
    return width, height, flags


def is_compact_remap(data: bytes) -> bool:
    """Tell whether a remap table is stored with 3-byte offsets."""
    return len(data) >= REMAP_HEADER_SIZE and read_u32(data, 12) == REMAP_COMPACT_FLAG


def pack_remap_compact(data: bytes) -> bytes:
    """Convert a standard RMAP table to the compact 3-byte form.

    Only the low three bytes of each offset are kept, so the sentinel
    0xFFFFFFFF becomes 0xFFFFFF.
    """
    if len(data) < REMAP_HEADER_SIZE or data[:4] != REMAP_MAGIC:
        raise ArchiveError("not an RMAP remap table")
    width, height, _ = _remap_dims(data)
    n_pixels = width * height
    if len(data) < REMAP_HEADER_SIZE + n_pixels * 4:
        raise ArchiveError("remap table truncated")

    src = bytes(data[REMAP_HEADER_SIZE:REMAP_HEADER_SIZE + n_pixels * 4])
    body = bytearray(n_pixels * 3)
    for k in range(3):
        body[k::3] = src[k::4]

    header = bytearray(data[:REMAP_HEADER_SIZE])
    _U32.pack_into(header, 12, REMAP_COMPACT_FLAG)
    return bytes(header + body)


def unpack_remap_compact(data: bytes) -> bytes:
    """Expand a compact RMAP table back to 4-byte offsets."""
    if len(data) < REMAP_HEADER_SIZE:
        raise ArchiveError("remap table too small")
    width, height, flags = _remap_dims(data)
    if flags != REMAP_COMPACT_FLAG:
        raise ArchiveError("remap table is not in compact form")
    n_pixels = width * height
    if len(data) < REMAP_HEADER_SIZE + n_pixels * 3:
        raise ArchiveError("compact remap table truncated")

    src = bytes(data[REMAP_HEADER_SIZE:REMAP_HEADER_SIZE + n_pixels * 3])
    lanes = [src[k::3] for k in range(3)]

    # A pixel is the sentinel where all three low bytes are 0xFF.
    to_flag = bytes.maketrans(bytes(range(256)), bytes([0] * 255 + [1]))
    flags_int = -1
    for lane in lanes:
        flags_int &= int.from_bytes(lane.translate(to_flag), "big")
    high = (flags_int & ((1 << (8 * n_pixels)) - 1) if n_pixels else 0)
    high_bytes = high.to_bytes(n_pixels, "big").translate(
        bytes.maketrans(b"\x01", b"\xff")
    )

    body = bytearray(n_pixels * 4)
    for k, lane in enumerate(lanes):
        body[k::4] = lane
    body[3::4] = high_bytes

    header = bytearray(data[:REMAP_HEADER_SIZE])
    _U32.pack_into(header, 12, 0)
    return bytes(header + body)


def expand_remap(data: bytes) -> bytes:
    """Return a remap table in standard form, expanding it if compact."""
    if is_compact_remap(data):
        return unpack_remap_compact(data)
    return bytes(data)