"""Command line for managing calibration slots in a stored container file.

The container file plays the part of the camera's persistent user file:
it holds either an AGMS multi-slot container or a legacy AGST blob.
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

from .archive import ArchiveEntry, extract_to_dir, list_archive, list_header, pack_session
from .formats import (
    MAX_SLOTS,
    MULTISLOT_HEADER_SIZE,
    MULTISLOT_MAGIC,
    STASH_MAGIC,
    ArchiveError,
)
from .multislot import build, extract_slot, format_index, parse_index

DEFAULT_STORE = "UserFile1"

USAGE = """\
Usage:
  agcalib list     [--slot N] [-f <file>]
  agcalib upload   [--slot N] [-f <file>] <session>
  agcalib download [--slot N] -o <dir> [-f <file>]
  agcalib delete    --slot N  [-f <file>]
  agcalib purge     [-f <file>]

Actions:
  list      Show storage info and calibration slot contents
  upload    Pack a calibration session and write it to a slot
  download  Download a calibration slot to a local directory
  delete    Remove a calibration slot
  purge     Delete the entire calibration file

Options:
      --slot <0|1|2>       Calibration slot (default: 0)
  -o, --output <dir>       Output directory (for download)
  -f, --file <path>        Calibration container file (default: UserFile1)
  -h, --help               Print this help
"""

_ACTIONS = ("list", "upload", "download", "delete", "purge")


def _file_size(path: Path) -> int:
    try:
        return path.stat().st_size
    except OSError:
        return 0


def _read_head(path: Path, size: int) -> bytes:
    try:
        with path.open("rb") as fh:
            return fh.read(size)
    except OSError:
        return b""


def _read_all(path: Path) -> bytes:
    try:
        return path.read_bytes()
    except OSError as exc:
        raise ArchiveError(f"failed to read {path}: {exc}") from exc


def _write_all(path: Path, data: bytes) -> None:
    try:
        path.write_bytes(data)
    except OSError as exc:
        raise ArchiveError(f"failed to write {path}: {exc}") from exc


def _remove(path: Path) -> None:
    try:
        path.unlink()
    except OSError as exc:
        raise ArchiveError(f"failed to delete {path}: {exc}") from exc


def _check_slot(slot: int) -> None:
    if not 0 <= slot < MAX_SLOTS:
        raise ArchiveError(f"--slot must be 0..{MAX_SLOTS - 1}")


def stash_list(store_path: str | Path) -> str:
    """Describe the stored container: its size and what each slot holds."""
    path = Path(store_path)
    size = _file_size(path)
    out = [f"Calibration file storage ({path}):\n", f"  File size: {size:8d} bytes\n"]
    if size <= 0:
        out.append("\n  No calibration data stored on camera.\n")
        return "".join(out)

    out.append("\n")
    head = _read_head(path, MULTISLOT_HEADER_SIZE)
    try:
        if len(head) >= 4 and head[:4] == MULTISLOT_MAGIC:
            out.append(format_index(head))
        elif len(head) >= 4 and head[:4] == STASH_MAGIC:
            out.append("  (legacy single-slot format)\n")
            out.append(list_header(head))
        else:
            out.append(list_archive(_read_all(path)))
    except ArchiveError as exc:
        print(f"warn: {exc}", file=sys.stderr)
    return "".join(out)


def stash_upload(store_path: str | Path, slot: int, session_path: str | Path) -> int:
    """Pack a session and store it in ``slot``; return the packed blob size."""
    _check_slot(slot)
    path = Path(store_path)
    print(f"Packing calibration session: {session_path}")
    try:
        archive = pack_session(session_path)
    except ArchiveError as exc:
        raise ArchiveError(f"failed to pack calibration session: {exc}") from exc
    print(f"Archive size: {len(archive)} bytes ({len(archive) / (1024.0 * 1024.0):.1f} MB)")

    existing = None
    if _file_size(path) > 0:
        print("Reading existing calibration data...")
        existing = _read_all(path)

    try:
        container = build(existing, slot, archive)
    except ArchiveError as exc:
        raise ArchiveError(f"failed to build multi-slot archive: {exc}") from exc
    assert container is not None

    print(f"Writing (slot {slot}, {len(container) / (1024.0 * 1024.0):.1f} MB total)...")
    _write_all(path, container)
    print(f"Done. Calibration data written to {path} slot {slot} ({len(archive)} bytes).")
    return len(archive)


def stash_download(store_path: str | Path, slot: int,
                   output_path: str | Path) -> list[ArchiveEntry]:
    """Extract the calibration in ``slot`` into ``output_path/calib_result/``."""
    _check_slot(slot)
    path = Path(store_path)
    print("Reading calibration data...")
    data = _read_all(path)
    try:
        blob = extract_slot(data, slot)
    except ArchiveError as exc:
        raise ArchiveError(f"slot {slot} is empty or not present") from exc

    print(f"Extracting slot {slot} to {output_path}:")
    try:
        written = extract_to_dir(blob, output_path)
    except ArchiveError as exc:
        raise ArchiveError(f"failed to extract calibration data: {exc}") from exc
    for entry in written:
        print(f"  {entry.name} ({len(entry.data)} bytes)")
    print(f"Done. Calibration slot {slot} downloaded to {output_path}/calib_result/")
    return written


def stash_delete(store_path: str | Path, slot: int) -> bool:
    """Remove ``slot``; return False when there was nothing to remove.

    Removing the last occupied slot deletes the whole file.
    """
    _check_slot(slot)
    path = Path(store_path)
    if _file_size(path) <= 0:
        print("No calibration data — nothing to delete.")
        return False

    need_full_read = True
    head = _read_head(path, MULTISLOT_HEADER_SIZE)
    if len(head) >= 4:
        if head[:4] == STASH_MAGIC:
            if slot != 0:
                raise ArchiveError("legacy single-slot file — only slot 0 exists")
            need_full_read = False
        elif head[:4] == MULTISLOT_MAGIC:
            try:
                index = parse_index(head)
            except ArchiveError:
                index = None
            if index is not None:
                if not index.slots[slot].occupied:
                    print(f"Slot {slot} is already empty — nothing to delete.")
                    return False
                others = sum(
                    1 for i, info in enumerate(index.slots[:index.num_slots])
                    if i != slot and info.occupied
                )
                if others == 0:
                    need_full_read = False

    if not need_full_read:
        print(f"Removing {path} (last slot)...")
        _remove(path)
        print(f"Done. Slot {slot} deleted. All calibration data removed.")
        return True

    print("Reading existing calibration data...")
    existing = _read_all(path)
    try:
        container = build(existing, slot, None)
    except ArchiveError as exc:
        raise ArchiveError(f"failed to rebuild multi-slot archive: {exc}") from exc

    print(f"Writing updated calibration data (slot {slot} removed)...")
    if container is None:
        _remove(path)
    else:
        _write_all(path, container)
    print(f"Done. Slot {slot} deleted.")
    return True


def stash_purge(store_path: str | Path) -> bool:
    """Delete the whole container file; return False if there was none."""
    path = Path(store_path)
    size = _file_size(path)
    if size <= 0:
        print("No calibration data — nothing to purge.")
        return False
    print(f"Purging {path} ({size} bytes)...")
    _remove(path)
    print(f"Done. All calibration data purged from {path}.")
    return True


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="agcalib", add_help=False)
    parser.add_argument("action", nargs="?")
    parser.add_argument("session", nargs="?")
    parser.add_argument("--slot", type=int, default=None)
    parser.add_argument("-o", "--output")
    parser.add_argument("-f", "--file", default=DEFAULT_STORE)
    parser.add_argument("-h", "--help", action="store_true")
    return parser


def main(argv: list[str] | None = None) -> int:
    """Run the calibration stash command; return the process exit code."""
    args = _parser().parse_args(argv)

    if args.help or args.action is None:
        print(USAGE, end="")
        return 0

    slot = 0
    if args.slot is not None:
        slot = args.slot
        if not 0 <= slot < MAX_SLOTS:
            print(f"error: --slot must be 0..{MAX_SLOTS - 1}", file=sys.stderr)
            return 1

    action = args.action
    if action not in _ACTIONS:
        print(f"error: unknown action '{action}' "
              "(expected list, upload, download, delete, or purge)", file=sys.stderr)
        return 1
    if action == "upload" and not args.session:
        print("error: 'upload' requires a calibration session path\n"
              "  usage: agcalib upload [--slot N] <session>", file=sys.stderr)
        return 1
    if action == "download" and not args.output:
        print("error: 'download' requires -o <output-dir>\n"
              "  usage: agcalib download [--slot N] -o <dir>", file=sys.stderr)
        return 1

    try:
        if action == "list":
            print(stash_list(args.file), end="")
        elif action == "upload":
            stash_upload(args.file, slot, args.session)
        elif action == "download":
            stash_download(args.file, slot, args.output)
        elif action == "delete":
            stash_delete(args.file, slot)
        else:
            stash_purge(args.file)
    except ArchiveError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())