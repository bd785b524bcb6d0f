"""The AGMS multi-slot container holding several AGST calibration blobs.

An AGMS file starts with a fixed 4 KB header: ``"AGMS"``, ``u32`` header
size, ``u32`` slot count and a NUL-terminated JSON index describing each
slot (``null`` for an empty one).  The AGST blobs of occupied slots follow,
packed back to back in slot order.  A bare AGST blob is still accepted
wherever a container is read and is treated as holding only slot 0.
"""

from __future__ import annotations

import json
import math
import struct
from dataclasses import dataclass, field, replace
from typing import Any, Mapping

from .formats import (
    MAX_SLOTS,
    MULTISLOT_HEADER_SIZE,
    MULTISLOT_MAGIC,
    STASH_HEADER_SIZE,
    STASH_MAGIC,
    ArchiveError,
)

_HEADER_FIXED = struct.Struct("<4sII")
_PREFIX_LEN = _HEADER_FIXED.size
_PACKED_AT_MAX = 31
_U32_MAX = 0xFFFFFFFF
_INT_MAX = 2**31 - 1
_INT_MIN = -(2**31)


@dataclass
class SlotInfo:
    """What the container index records about one slot."""

    occupied: bool = False
    offset: int = 0
    size: int = 0
    image_w: int = 0
    image_h: int = 0
    rms_stereo_px: float = 0.0
    packed_at: str = ""


def _empty_slots() -> list[SlotInfo]:
    return [SlotInfo() for _ in range(MAX_SLOTS)]


@dataclass
class MultiSlotIndex:
    """The parsed index of an AGMS container."""

    num_slots: int = 0
    slots: list[SlotInfo] = field(default_factory=_empty_slots)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _valueint(value: Any) -> int:
    """Integer view of a JSON value, saturating like a C ``int``."""
    if not _is_number(value) or (isinstance(value, float) and math.isnan(value)):
        return 0
    if value >= _INT_MAX:
        return _INT_MAX
    if value <= _INT_MIN:
        return _INT_MIN
    return int(value)


def _as_u32(value: Any) -> int:
    if isinstance(value, float) and not math.isfinite(value):
        return 0
    return max(0, min(int(value), _U32_MAX))


def _clip_packed_at(text: str) -> str:
    return text.encode("utf-8")[:_PACKED_AT_MAX].decode("utf-8", errors="ignore")


def _cut_at_nul(raw: bytes) -> bytes:
    nul = raw.find(b"\0")
    return raw[:nul] if nul >= 0 else raw


def _apply_summary(info: SlotInfo, obj: Mapping[str, Any]) -> None:
    """Copy image size, stereo RMS and pack time from a JSON summary."""
    isz = obj.get("image_size")
    if isinstance(isz, list) and len(isz) >= 2:
        info.image_w = _valueint(isz[0])
        info.image_h = _valueint(isz[1])
    rms = obj.get("rms_stereo_px")
    if _is_number(rms):
        info.rms_stereo_px = float(rms)
    packed_at = obj.get("packed_at")
    if isinstance(packed_at, str):
        info.packed_at = _clip_packed_at(packed_at)


def stash_header_json(blob: bytes) -> Any | None:
    """Return the JSON summary of an AGST header, or None if there is none."""
    if len(blob) < 8 or blob[:4] != STASH_MAGIC:
        return None
    body = _cut_at_nul(bytes(blob[8:min(len(blob), STASH_HEADER_SIZE)]))
    if not body:
        return None
    try:
        return json.loads(body)
    except ValueError:
        return None


def slot_info_from_stash(blob: bytes) -> SlotInfo:
    """Describe an AGST blob as an occupied slot.

    Offset and size are left at zero; the caller places the blob.
    """
    info = SlotInfo(occupied=True)
    root = stash_header_json(blob)
    if isinstance(root, Mapping):
        _apply_summary(info, root)
    return info


def parse_index(data: bytes) -> MultiSlotIndex:
    """Parse the index from the header of an AGMS container."""
    if data is None or len(data) < _PREFIX_LEN:
        raise ArchiveError("data too small for an AGMS header")
    magic, header_size, num_slots = _HEADER_FIXED.unpack_from(data, 0)
    if magic != MULTISLOT_MAGIC:
        raise ArchiveError("not an AGMS container")
    if header_size > len(data) or header_size < _PREFIX_LEN:
        raise ArchiveError(f"invalid AGMS header size {header_size}")
    if num_slots > MAX_SLOTS:
        raise ArchiveError(f"too many slots ({num_slots} > {MAX_SLOTS})")

    index = MultiSlotIndex(num_slots=num_slots)
    body = _cut_at_nul(bytes(data[_PREFIX_LEN:header_size]))
    if not body:
        return index

    try:
        root = json.loads(body)
    except ValueError as exc:
        raise ArchiveError("failed to parse AGMS index") from exc
    slots = root.get("slots") if isinstance(root, Mapping) else None
    if not isinstance(slots, list):
        raise ArchiveError("AGMS index has no slot list")

    for i, entry in enumerate(slots[:MAX_SLOTS]):
        if not isinstance(entry, Mapping):
            continue
        info = SlotInfo(occupied=True)
        offset = entry.get("offset")
        if _is_number(offset):
            info.offset = _as_u32(offset)
        size = entry.get("size")
        if _is_number(size):
            info.size = _as_u32(size)
        _apply_summary(info, entry)
        index.slots[i] = info
    return index


def format_index(data: bytes) -> str:
    """Render a per-slot summary table from an AGMS header."""
    index = parse_index(data)
    lines = ["", f"Calibration slots ({index.num_slots} total):"]
    for i, info in enumerate(index.slots[:index.num_slots]):
        if not info.occupied:
            lines.append(f"  Slot {i}: (empty)")
            continue
        line = f"  Slot {i}: {info.image_w}x{info.image_h}"
        if info.rms_stereo_px > 0.0:
            line += f"  RMS {info.rms_stereo_px:.4f} px"
        if info.packed_at:
            line += f"  packed {info.packed_at}"
        line += f"  ({info.size / (1024.0 * 1024.0):.1f} MB)"
        lines.append(line)
    return "\n".join(lines) + "\n"


def _index_json(infos: list[SlotInfo]) -> str:
    entries: list[dict[str, Any] | None] = []
    for info in infos:
        if not info.occupied:
            entries.append(None)
            continue
        entry: dict[str, Any] = {"offset": info.offset, "size": info.size}
        if info.image_w > 0 and info.image_h > 0:
            entry["image_size"] = [info.image_w, info.image_h]
        if info.rms_stereo_px > 0.0:
            entry["rms_stereo_px"] = info.rms_stereo_px
        if info.packed_at:
            entry["packed_at"] = info.packed_at
        entries.append(entry)
    return json.dumps({"slots": entries}, indent="\t", ensure_ascii=False)


def _existing_slots(existing: bytes) -> tuple[list[bytes | None], list[SlotInfo]]:
    blobs: list[bytes | None] = [None] * MAX_SLOTS
    infos = _empty_slots()
    if existing[:4] == MULTISLOT_MAGIC:
        try:
            index = parse_index(existing)
        except ArchiveError as exc:
            raise ArchiveError("failed to parse existing AGMS index") from exc
        for i, info in enumerate(index.slots[:index.num_slots]):
            if not info.occupied:
                continue
            end = info.offset + info.size
            if end > len(existing):
                raise ArchiveError(
                    f"slot {i} overflows file (offset={info.offset} "
                    f"size={info.size} file={len(existing)})"
                )
            blobs[i] = bytes(existing[info.offset:end])
            infos[i] = replace(info)
    elif existing[:4] == STASH_MAGIC:
        blobs[0] = bytes(existing)
        infos[0] = slot_info_from_stash(existing)
        infos[0].offset = MULTISLOT_HEADER_SIZE
        infos[0].size = len(existing)
    return blobs, infos


def build(existing: bytes | None, slot: int, archive: bytes | None) -> bytes | None:
    """Rebuild a container with ``slot`` set to ``archive`` (or cleared).

    ``existing`` may be None, a legacy AGST blob (moved to slot 0), an AGMS
    container, or anything else, which counts as empty.  Passing no archive
    deletes the slot.  Returns None when every slot ends up empty, meaning
    the stored file should be removed.
    """
    if not 0 <= slot < MAX_SLOTS:
        raise ArchiveError(f"slot {slot} out of range (0..{MAX_SLOTS - 1})")

    if existing is not None and len(existing) > 4:
        blobs, infos = _existing_slots(existing)
    else:
        blobs, infos = [None] * MAX_SLOTS, _empty_slots()

    if archive:
        blobs[slot] = bytes(archive)
        infos[slot] = slot_info_from_stash(archive)
    else:
        blobs[slot] = None
        infos[slot] = SlotInfo()

    if all(blob is None for blob in blobs):
        return None

    offset = MULTISLOT_HEADER_SIZE
    for info, blob in zip(infos, blobs):
        if blob is None:
            continue
        info.offset = offset
        info.size = len(blob)
        offset += len(blob)

    encoded = _index_json(infos).encode("utf-8")
    limit = MULTISLOT_HEADER_SIZE - _PREFIX_LEN - 1
    if len(encoded) > limit:
        raise ArchiveError(f"AGMS JSON index too large ({len(encoded)} > {limit})")

    header = bytearray(MULTISLOT_HEADER_SIZE)
    _HEADER_FIXED.pack_into(header, 0, MULTISLOT_MAGIC, MULTISLOT_HEADER_SIZE, MAX_SLOTS)
    header[_PREFIX_LEN:_PREFIX_LEN + len(encoded)] = encoded
    return bytes(header) + b"".join(blob for blob in blobs if blob is not None)


def extract_slot(data: bytes, slot: int) -> bytes:
    """Return the AGST blob stored in ``slot`` of a container.

    A legacy AGST blob holds slot 0 only.
    """
    if not data or len(data) < 4 or not 0 <= slot < MAX_SLOTS:
        raise ArchiveError(f"slot {slot} is invalid")

    if data[:4] == STASH_MAGIC:
        if slot != 0:
            raise ArchiveError("legacy single-slot file: only slot 0 exists")
        return bytes(data)

    if data[:4] != MULTISLOT_MAGIC:
        raise ArchiveError("not a calibration container")

    index = parse_index(data)
    if slot >= index.num_slots or not index.slots[slot].occupied:
        raise ArchiveError(f"slot {slot} is empty")

    info = index.slots[slot]
    end = info.offset + info.size
    if end > len(data):
        raise ArchiveError(f"slot {slot} data overflows file")
    return bytes(data[info.offset:end])