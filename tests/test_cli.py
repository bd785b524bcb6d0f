import json
import struct

import pytest

from agcalib.archive import pack_session, unpack
from agcalib.cli import (
    main,
    stash_delete,
    stash_download,
    stash_list,
    stash_purge,
    stash_upload,
)
from agcalib.formats import ArchiveError
from agcalib.multislot import extract_slot, parse_index


def _remap(w, h, offsets):
    return b"RMAP" + struct.pack("<III", w, h, 0) + struct.pack(f"<{len(offsets)}I", *offsets)


def _session(root, name, width=4, height=2, rms=0.25):
    result = root / name / "calib_result"
    result.mkdir(parents=True)
    left = _remap(2, 2, [0, 1, 2, 0xFFFFFFFF])
    right = _remap(2, 2, [3, 0xFFFFFFFF, 1, 0])
    (result / "remap_left.bin").write_bytes(left)
    (result / "remap_right.bin").write_bytes(right)
    meta = {
        "image_size": [width, height],
        "rms_stereo_px": rms,
        "focal_length_px": 700.5,
        "baseline_cm": 6.0,
        "disparity_range": {"min_disparity": 0, "num_disparities": 64},
    }
    (result / "calibration_meta.json").write_text(json.dumps(meta))
    return root / name, left, right


def test_upload_creates_container_with_slot(tmp_path):
    session, left, right = _session(tmp_path, "s0")
    store = tmp_path / "store.bin"
    size = stash_upload(store, 0, session)
    data = store.read_bytes()
    assert data[:4] == b"AGMS"
    blob = extract_slot(data, 0)
    assert len(blob) == size
    unpacked = unpack(blob)
    assert unpacked.left == left
    assert unpacked.right == right
    assert unpacked.meta.num_disparities == 64


def test_list_shows_slots(tmp_path):
    session, _, _ = _session(tmp_path, "s1", width=6, height=3)
    store = tmp_path / "store.bin"
    stash_upload(store, 1, session)
    text = stash_list(store)
    assert "Slot 0: (empty)" in text
    assert "Slot 1: 6x3" in text
    assert "Calibration slots (3 total):" in text


def test_list_empty_store(tmp_path):
    text = stash_list(tmp_path / "missing.bin")
    assert "No calibration data stored on camera." in text


def test_list_legacy_stash(tmp_path):
    session, _, _ = _session(tmp_path, "legacy")
    store = tmp_path / "store.bin"
    store.write_bytes(pack_session(session))
    text = stash_list(store)
    assert "(legacy single-slot format)" in text
    assert "Calibration summary:" in text


def test_download_round_trip(tmp_path):
    session, left, right = _session(tmp_path, "s0")
    store = tmp_path / "store.bin"
    stash_upload(store, 2, session)
    out = tmp_path / "out"
    written = stash_download(store, 2, out)
    assert {e.name for e in written} == {
        "remap_left.bin", "remap_right.bin", "calibration_meta.json"}
    assert (out / "calib_result" / "remap_left.bin").read_bytes() == left
    assert (out / "calib_result" / "remap_right.bin").read_bytes() == right


def test_download_empty_slot_raises(tmp_path):
    session, _, _ = _session(tmp_path, "s0")
    store = tmp_path / "store.bin"
    stash_upload(store, 0, session)
    with pytest.raises(ArchiveError):
        stash_download(store, 1, tmp_path / "out")


def test_delete_last_slot_removes_file(tmp_path):
    session, _, _ = _session(tmp_path, "s0")
    store = tmp_path / "store.bin"
    stash_upload(store, 0, session)
    assert stash_delete(store, 0) is True
    assert not store.exists()


def test_delete_keeps_other_slot(tmp_path):
    session_a, left_a, _ = _session(tmp_path, "a")
    session_b, _, _ = _session(tmp_path, "b", width=8, height=4)
    store = tmp_path / "store.bin"
    stash_upload(store, 0, session_a)
    stash_upload(store, 1, session_b)
    assert stash_delete(store, 1) is True
    index = parse_index(store.read_bytes())
    assert index.slots[0].occupied
    assert not index.slots[1].occupied
    assert unpack(extract_slot(store.read_bytes(), 0)).left == left_a


def test_delete_empty_slot_is_noop(tmp_path):
    session, _, _ = _session(tmp_path, "s0")
    store = tmp_path / "store.bin"
    stash_upload(store, 0, session)
    before = store.read_bytes()
    assert stash_delete(store, 2) is False
    assert store.read_bytes() == before


def test_delete_legacy_other_slot_raises(tmp_path):
    session, _, _ = _session(tmp_path, "legacy")
    store = tmp_path / "store.bin"
    store.write_bytes(pack_session(session))
    with pytest.raises(ArchiveError):
        stash_delete(store, 1)


def test_delete_missing_store(tmp_path):
    assert stash_delete(tmp_path / "none.bin", 0) is False


def test_purge(tmp_path):
    session, _, _ = _session(tmp_path, "s0")
    store = tmp_path / "store.bin"
    stash_upload(store, 0, session)
    assert stash_purge(store) is True
    assert not store.exists()
    assert stash_purge(store) is False


def test_upload_missing_session_raises(tmp_path):
    with pytest.raises(ArchiveError):
        stash_upload(tmp_path / "store.bin", 0, tmp_path / "nowhere")


def test_main_without_action_prints_usage(capsys):
    assert main([]) == 0
    assert "Usage:" in capsys.readouterr().out


@pytest.mark.parametrize("argv", [
    ["list", "--slot", "3"],
    ["bogus"],
    ["upload"],
    ["download"],
])
def test_main_rejects_bad_invocations(argv, tmp_path):
    assert main(argv + ["-f", str(tmp_path / "store.bin")]) == 1


def test_main_upload_download(tmp_path, capsys):
    session, left, _ = _session(tmp_path, "s0")
    store = str(tmp_path / "store.bin")
    assert main(["upload", str(session), "--slot", "1", "-f", store]) == 0
    out = tmp_path / "out"
    assert main(["download", "--slot", "1", "-o", str(out), "-f", store]) == 0
    assert (out / "calib_result" / "remap_left.bin").read_bytes() == left
    assert main(["list", "-f", store]) == 0
    assert "Slot 1:" in capsys.readouterr().out


def test_main_download_empty_slot_fails(tmp_path):
    session, _, _ = _session(tmp_path, "s0")
    store = str(tmp_path / "store.bin")
    assert main(["upload", str(session), "-f", store]) == 0
    assert main(["download", "--slot", "2", "-o", str(tmp_path / "o"), "-f", store]) == 1