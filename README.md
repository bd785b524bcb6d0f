# agcalib

Tools for packing stereo rectification calibration data into a compact
binary archive, keeping up to three calibrations side by side in one
multi-slot container file, and reading them back.

A calibration session is a directory with a `calib_result/` folder
holding:

- `remap_left.bin` and `remap_right.bin`: pixel remap tables (`RMAP`
  format, 4 bytes per offset); both are required
- `calibration_meta.json`: optional metadata (image size, RMS error,
  baseline, focal length, disparity range, ...)

## Formats

All integers are little-endian `uint32`.

| Magic           | Layout                                                                 |
| --------------- | ---------------------------------------------------------------------- |
| `AGCAL\0\0\x01` | entry count, then per entry: name length, data length, name, data      |
| `AGCZ`          | uncompressed size, then the zlib-compressed `AGCAL` archive            |
| `AGST`          | header size (4096), JSON summary padded with zeros, then the payload   |
| `AGMS`          | header size (4096), slot count (3), JSON slot index, then `AGST` blobs |

Inside an archive the remap tables are stored with 3-byte offsets (only
the low three bytes of each offset are kept; the `0xFFFFFFFF` sentinel
becomes `0xFFFFFF`). They are expanded back to 4-byte offsets when
unpacked or extracted. When packed, the metadata JSON gains a
`packed_at` UTC timestamp, and a summary of it is written into the
`AGST` header so it can be shown without decompressing the archive.

Reading accepts an `AGST` stash blob, a bare `AGCZ` archive or a raw
`AGCAL` archive alike. Wherever a container is read, a bare `AGST` blob
is also accepted and treated as holding slot 0 only.

## Command line

Installing the package provides the `agcalib` command. It manages a
container file (default `UserFile1` in the current directory, or the
path given with `-f/--file`):

    agcalib list     [--slot N] [-f <file>]
    agcalib upload   [--slot N] [-f <file>] <session>
    agcalib download [--slot N] -o <dir> [-f <file>]
    agcalib delete    --slot N  [-f <file>]
    agcalib purge     [-f <file>]

- `list` shows the file size and the calibration in each slot, reading
  only the 4 KB header where the file is an `AGMS` container or `AGST`
  blob.
- `upload` packs a session and stores it in the slot (default 0),
  keeping the other slots.
- `download` extracts a slot into `<dir>/calib_result/`.
- `delete` clears a slot; clearing the last occupied slot removes the
  file.
- `purge` removes the whole file.

Slots are 0, 1 or 2. The command exits with status 1 and an
`error: ...` line on standard error when something fails. Run
`agcalib --help` for the summary.

## Library use

```python
from datetime import datetime, timezone

from agcalib import archive, multislot
from agcalib.calib_load import CalibSource, load

blob = archive.pack_session("sessions/calibration_01", datetime.now(timezone.utc))

# Put the blob into slot 1 of an empty container.
container = multislot.build(None, 1, blob)

# Inspect the container index without touching the payloads.
print(multislot.format_index(container))

# Take slot 1 back out and unpack the remap tables and metadata.
calibration = archive.unpack(multislot.extract_slot(container, 1))

# Or load through a source description.
loaded = load(CalibSource(slot=1), container)
```

Modules:

- `agcalib.formats`: constants and low-level helpers: `read_u32`,
  `compress_archive`, `skip_stash_header`, `maybe_decompress`, `unwrap`,
  `is_compact_remap`, `pack_remap_compact`, `unpack_remap_compact`,
  `expand_remap`, the `CalibMeta` dataclass (with `CalibMeta.from_json`)
  and the `ArchiveError` exception.
- `agcalib.archive`: `ArchiveEntry`, `UnpackedCalibration`,
  `iter_entries`, `build_archive`, `build_stash`, `pack_session`,
  `unpack`, `extract_to_dir`, and `format_summary`, `list_archive` and
  `list_header`, which return the listing as text.
- `agcalib.multislot`: `SlotInfo`, `MultiSlotIndex`, `stash_header_json`,
  `slot_info_from_stash`, `parse_index`, `format_index`, `build` (which
  returns `None` once every slot is empty) and `extract_slot`.
- `agcalib.calib_load`: `CalibSource`, `LoadedCalibration`, `load_meta`,
  `load_local`, `load_from_container` and `load`.
- `agcalib.cli`: `stash_list`, `stash_upload`, `stash_download`,
  `stash_delete`, `stash_purge` and `main`.

Malformed data (bad magic, truncated entries, missing remap tables,
slots out of range or empty, unreadable files) raises `ArchiveError`.
Remap tables are returned as raw `RMAP` bytes; the package does not
interpret them further.

## What it does not do

The package does not talk to a camera. Where calibrations would be kept
in a camera's persistent user file, the command line works on an
ordinary local file instead; copying that file to or from a device is
left to other tools. It does not capture calibration images, compute
calibrations or rectify images.

## Development

    pip install -e .[test]
    pytest