"""Load stereo rectification tables from a local session or a container slot.

A calibration can come from a session directory on disk
(``<session>/calib_result/``) or from one numbered slot of an on-camera
container (AGMS, or a legacy AGST blob holding slot 0 only).
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path

from .archive import META_ENTRY, unpack
from .formats import ArchiveError, CalibMeta
from .multislot import extract_slot

log = logging.getLogger(__name__)

_RESULT_DIR = "calib_result"


@dataclass(frozen=True)
class CalibSource:
    """Where a calibration comes from.

    ``local_path`` takes precedence; otherwise ``slot`` (0 or above)
    selects a slot of an on-camera container.  A slot of -1 means unused.
    """

    local_path: str | Path | None = None
    slot: int = -1


@dataclass
class LoadedCalibration:
    """Left and right remap tables together with calibration metadata."""

    left: bytes
    right: bytes
    meta: CalibMeta = field(default_factory=CalibMeta)


def load_meta(session_path: str | Path) -> CalibMeta:
    """Read ``calib_result/calibration_meta.json`` of a local session."""
    json_path = Path(session_path) / _RESULT_DIR / META_ENTRY
    try:
        raw = json_path.read_bytes()
    except OSError as exc:
        raise ArchiveError(f"cannot read {json_path}: {exc}") from exc
    try:
        root = json.loads(raw)
    except ValueError as exc:
        raise ArchiveError(f"failed to parse {META_ENTRY}") from exc
    return CalibMeta.from_json(root)


def load_local(session_path: str | Path) -> LoadedCalibration:
    """Load both remap tables and, if readable, the metadata of a session.

    Missing or unreadable metadata is not an error; the metadata then
    keeps its zero defaults.
    """
    result_dir = Path(session_path) / _RESULT_DIR
    try:
        left = (result_dir / "remap_left.bin").read_bytes()
        right = (result_dir / "remap_right.bin").read_bytes()
    except OSError as exc:
        raise ArchiveError(
            f"failed to load remap tables from {session_path}: {exc}"
        ) from exc

    try:
        meta = load_meta(session_path)
    except ArchiveError as exc:
        log.warning("%s", exc)
        meta = CalibMeta()
    return LoadedCalibration(left, right, meta)


def load_from_container(data: bytes, slot: int) -> LoadedCalibration:
    """Load the calibration stored in ``slot`` of a container's bytes."""
    try:
        blob = extract_slot(data, slot)
    except ArchiveError as exc:
        raise ArchiveError(f"calibration slot {slot} not found: {exc}") from exc
    try:
        unpacked = unpack(blob)
    except ArchiveError as exc:
        raise ArchiveError(f"failed to unpack calibration archive: {exc}") from exc
    return LoadedCalibration(unpacked.left, unpacked.right, unpacked.meta)


def load(source: CalibSource, container: bytes | None = None) -> LoadedCalibration:
    """Load a calibration from whichever place ``source`` names.

    ``container`` holds the stored container bytes and is needed only
    when the source is a slot.
    """
    if source.local_path:
        return load_local(source.local_path)
    if source.slot >= 0:
        if container is None:
            raise ArchiveError("no calibration data available to read the slot from")
        return load_from_container(container, source.slot)
    raise ArchiveError("no calibration source specified")