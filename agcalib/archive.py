"""Packing, unpacking, listing and extracting calibration archives.

A calibration session directory holds ``calib_result/remap_left.bin``,
``calib_result/remap_right.bin`` and, optionally,
``calib_result/calibration_meta.json``.  Packing turns these into an AGST
stash blob: a 4 KB header with a JSON summary followed by the AGCZ
(zlib-compressed) AGCAL archive.  Reading accepts AGST, bare AGCZ or raw
AGCAL data.
"""

from __future__ import annotations

import json
import logging
import math
import struct
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Iterator, Mapping

from .formats import (
    ARCHIVE_FILES,
    ARCHIVE_MAGIC,
    COMPRESSED_MAGIC,
    REMAP_ENTRIES,
    STASH_HEADER_SIZE,
    STASH_MAGIC,
    ArchiveError,
    CalibMeta,
    compress_archive,
    expand_remap,
    maybe_decompress,
    pack_remap_compact,
    read_u32,
    skip_stash_header,
)

log = logging.getLogger(__name__)

META_ENTRY = "calibration_meta.json"

_U32 = struct.Struct("<I")
_INT_MAX = 2**31 - 1
_INT_MIN = -(2**31)


@dataclass(frozen=True)
class ArchiveEntry:
    """One named file stored in an AGCAL archive."""

    name: str
    data: bytes


@dataclass
class UnpackedCalibration:
    """Remap tables (standard 4-byte form) and metadata from an archive."""

    left: bytes
    right: bytes
    meta: CalibMeta = field(default_factory=CalibMeta)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _valueint(value: Any) -> int:
    """Integer view of a JSON value, saturating like a C ``int``."""
    if not _is_number(value):
        return 0
    if isinstance(value, float) and math.isnan(value):
        return 0
    if value >= _INT_MAX:
        return _INT_MAX
    if value <= _INT_MIN:
        return _INT_MIN
    return int(value)


def _as_number(value: Any) -> int | float:
    number = float(value) if _is_number(value) else 0.0
    if math.isfinite(number) and number.is_integer():
        return int(number)
    return number


def _entry_name(raw: bytes) -> str:
    nul = raw.find(b"\0")
    if nul >= 0:
        raw = raw[:nul]
    return raw.decode("utf-8", errors="replace")


def iter_entries(data: bytes) -> Iterator[ArchiveEntry]:
    """Yield the entries of a raw AGCAL archive in stored order."""
    if len(data) < len(ARCHIVE_MAGIC) + 4:
        raise ArchiveError("buffer too small")
    if data[: len(ARCHIVE_MAGIC)] != ARCHIVE_MAGIC:
        raise ArchiveError("bad magic")

    n_entries = read_u32(data, len(ARCHIVE_MAGIC))
    offset = len(ARCHIVE_MAGIC) + 4
    for index in range(n_entries):
        if offset + 8 > len(data):
            raise ArchiveError(f"truncated entry header at #{index}")
        name_len = read_u32(data, offset)
        data_len = read_u32(data, offset + 4)
        offset += 8
        if offset + name_len + data_len > len(data):
            raise ArchiveError(f"truncated entry data at #{index}")
        name = _entry_name(bytes(data[offset:offset + name_len]))
        start = offset + name_len
        yield ArchiveEntry(name, bytes(data[start:start + data_len]))
        offset += name_len + data_len


def build_archive(entries: Iterable[ArchiveEntry]) -> bytes:
    """Serialise entries into a raw AGCAL archive."""
    entries = list(entries)
    parts = [ARCHIVE_MAGIC, _U32.pack(len(entries))]
    for entry in entries:
        name = entry.name.encode("utf-8") + b"\0"
        parts += [_U32.pack(len(name)), _U32.pack(len(entry.data)), name, entry.data]
    return b"".join(parts)


def build_stash(payload: bytes, header_json: str | None = None) -> bytes:
    """Prefix ``payload`` with a fixed-size AGST header holding ``header_json``.

    The JSON is truncated so that a terminating NUL always fits.
    """
    header = bytearray(STASH_HEADER_SIZE)
    header[:4] = STASH_MAGIC
    _U32.pack_into(header, 4, STASH_HEADER_SIZE)
    if header_json:
        encoded = header_json.encode("utf-8")[: STASH_HEADER_SIZE - 8 - 1]
        header[8:8 + len(encoded)] = encoded
    return bytes(header) + bytes(payload)


def _timestamp(now: datetime | None) -> str:
    if now is None:
        now = datetime.now(timezone.utc)
    elif now.tzinfo is not None:
        now = now.astimezone(timezone.utc)
    return now.strftime("%Y-%m-%dT%H:%M:%SZ")


def _stamp_metadata(raw: bytes, now: datetime | None) -> tuple[bytes, str | None]:
    """Add ``packed_at`` to the metadata and build the header summary."""
    if not raw:
        return raw, None
    try:
        root = json.loads(raw)
    except ValueError:
        return raw, None
    if not isinstance(root, dict):
        return raw, None

    root.pop("packed_at", None)
    root["packed_at"] = _timestamp(now)

    summary: dict[str, Any] = {}
    if "image_size" in root:
        summary["image_size"] = root["image_size"]
    for key in ("num_pairs_used", "rms_stereo_px", "mean_epipolar_error_px",
                "baseline_cm", "focal_length_px"):
        if key in root:
            summary[key] = _as_number(root[key])
    if "disparity_range" in root:
        summary["disparity_range"] = root["disparity_range"]
    summary["packed_at"] = root["packed_at"]

    full = json.dumps(root, separators=(",", ":"), ensure_ascii=False)
    header = json.dumps(summary, indent="\t", ensure_ascii=False)
    return full.encode("utf-8"), header


def pack_session(session_path: str | Path, now: datetime | None = None) -> bytes:
    """Pack a calibration session into an AGST stash blob.

    Remap tables are mandatory; the metadata JSON is optional and gets a
    ``packed_at`` UTC timestamp taken from ``now`` (default: current time).
    """
    result_dir = Path(session_path) / "calib_result"
    contents: dict[str, bytes] = {}
    for name in ARCHIVE_FILES:
        path = result_dir / name
        try:
            contents[name] = path.read_bytes()
        except OSError as exc:
            if name in REMAP_ENTRIES:
                raise ArchiveError(f"cannot read {path}: {exc}") from exc

    header_json = None
    if META_ENTRY in contents:
        contents[META_ENTRY], header_json = _stamp_metadata(contents[META_ENTRY], now)

    for name in REMAP_ENTRIES:
        try:
            compact = pack_remap_compact(contents[name])
        except ArchiveError:
            continue
        log.info("%s: %.1f KB -> %.1f KB (compact 3-byte offsets)",
                 name, len(contents[name]) / 1024.0, len(compact) / 1024.0)
        contents[name] = compact

    raw = build_archive(ArchiveEntry(name, contents[name])
                        for name in ARCHIVE_FILES if name in contents)
    try:
        payload = compress_archive(raw)
    except ArchiveError:
        log.warning("compression failed, using raw archive")
        payload = raw
    return build_stash(payload, header_json)


def unpack(data: bytes) -> UnpackedCalibration:
    """Recover both remap tables and the metadata from AGST, AGCZ or AGCAL data."""
    archive = maybe_decompress(skip_stash_header(data))
    left = right = None
    meta = CalibMeta()
    for entry in iter_entries(archive):
        if entry.name == "remap_left.bin":
            left = expand_remap(entry.data)
        elif entry.name == "remap_right.bin":
            right = expand_remap(entry.data)
        elif entry.name == META_ENTRY:
            try:
                meta = CalibMeta.from_json(json.loads(entry.data))
            except ValueError:
                log.warning("failed to parse %s", META_ENTRY)
    if left is None or right is None:
        raise ArchiveError("archive missing remap table(s)")
    return UnpackedCalibration(left, right, meta)


def format_summary(meta: Any) -> str:
    """Render a human-readable calibration summary of parsed metadata JSON."""
    lines = ["", "Calibration summary:"]
    if not isinstance(meta, Mapping):
        return "\n".join(lines) + "\n"

    isz = meta.get("image_size")
    if isinstance(isz, list) and len(isz) >= 2:
        lines.append(f"  Resolution:       {_valueint(isz[0])} × {_valueint(isz[1])}")
    np_ = meta.get("num_pairs_used")
    if _is_number(np_):
        lines.append(f"  Pairs used:       {_valueint(np_)}")
    rms = meta.get("rms_stereo_px")
    if _is_number(rms):
        lines.append(f"  Stereo RMS:       {rms:.4f} px")
    epi = meta.get("mean_epipolar_error_px")
    if _is_number(epi):
        lines.append(f"  Epipolar error:   {epi:.4f} px (mean)")
    bl = meta.get("baseline_cm")
    if _is_number(bl):
        lines.append(f"  Baseline:         {bl:.2f} cm")
    fl = meta.get("focal_length_px")
    if _is_number(fl):
        lines.append(f"  Focal length:     {fl:.2f} px")
    dr = meta.get("disparity_range")
    if isinstance(dr, Mapping):
        md, nd = dr.get("min_disparity"), dr.get("num_disparities")
        if _is_number(md) and _is_number(nd):
            lo, count = _valueint(md), _valueint(nd)
            lines.append(f"  Disparity range:  {lo} .. {lo + count} ({count} values)")
    pa = meta.get("packed_at")
    if isinstance(pa, str):
        lines.append(f"  Packed at:        {pa}")
    return "\n".join(lines) + "\n"


def list_archive(data: bytes) -> str:
    """Describe an archive's contents and its calibration summary."""
    payload = skip_stash_header(data)
    was_compressed = len(payload) >= 8 and payload[:4] == COMPRESSED_MAGIC
    archive = maybe_decompress(payload)

    if len(archive) < len(ARCHIVE_MAGIC) + 4:
        raise ArchiveError("buffer too small")
    if archive[: len(ARCHIVE_MAGIC)] != ARCHIVE_MAGIC:
        raise ArchiveError("bad magic")
    n_entries = read_u32(archive, len(ARCHIVE_MAGIC))

    if was_compressed:
        out = [f"Calibration archive: {n_entries} file(s), {len(data)} bytes "
               f"on-camera ({len(archive)} bytes uncompressed)\n"]
    else:
        out = [f"Calibration archive: {n_entries} file(s), {len(archive)} bytes total\n"]

    entries = list(iter_entries(archive))
    for index, entry in enumerate(entries):
        size_kb = len(entry.data) / 1024.0
        if size_kb >= 1024.0:
            out.append(f"  [{index}]  {entry.name:<28}  {size_kb / 1024.0:8.1f} MB\n")
        else:
            out.append(f"  [{index}]  {entry.name:<28}  {size_kb:8.1f} KB\n")

    for entry in entries:
        if entry.name != META_ENTRY:
            continue
        try:
            root = json.loads(entry.data)
        except ValueError:
            continue
        out.append(format_summary(root))
    return "".join(out)


def list_header(data: bytes) -> str:
    """Render the calibration summary held in an AGST header alone."""
    if len(data) < 8 or data[:4] != STASH_MAGIC:
        raise ArchiveError("not an AGST header")
    body = bytes(data[8:])
    nul = body.find(b"\0")
    if nul >= 0:
        body = body[:nul]
    if not body:
        raise ArchiveError("AGST header holds no metadata")
    try:
        root = json.loads(body)
    except ValueError as exc:
        raise ArchiveError("failed to parse header metadata") from exc
    return format_summary(root)


def _safe_name(name: str) -> bool:
    return name not in ("", ".", "..") and Path(name).name == name and "\\" not in name


def extract_to_dir(data: bytes, output_dir: str | Path) -> list[ArchiveEntry]:
    """Write every archive entry into ``output_dir/calib_result/``.

    Remap tables are written in the standard 4-byte form; other entries
    verbatim.  Returns the entries written, as stored in the archive.
    """
    result_dir = Path(output_dir) / "calib_result"
    try:
        result_dir.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise ArchiveError(f"failed to create {result_dir}: {exc}") from exc

    archive = maybe_decompress(skip_stash_header(data))
    written: list[ArchiveEntry] = []
    for entry in iter_entries(archive):
        if not _safe_name(entry.name):
            raise ArchiveError(f"refusing to write entry named {entry.name!r}")
        path = result_dir / entry.name
        if entry.name in REMAP_ENTRIES:
            try:
                content = expand_remap(entry.data)
            except ArchiveError as exc:
                raise ArchiveError(f"failed to load {entry.name} from archive: {exc}") from exc
        else:
            content = entry.data
        try:
            path.write_bytes(content)
        except OSError as exc:
            raise ArchiveError(f"failed to write {path}: {exc}") from exc
        written.append(entry)

    if not written:
        raise ArchiveError("archive contained no entries")
    return written