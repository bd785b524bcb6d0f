import json
import struct

import pytest

from agcalib.archive import build_stash
from agcalib.formats import (
    MAX_SLOTS,
    MULTISLOT_HEADER_SIZE,
    MULTISLOT_MAGIC,
    STASH_HEADER_SIZE,
    ArchiveError,
)
from agcalib.multislot import (
    MultiSlotIndex,
    SlotInfo,
    build,
    extract_slot,
    format_index,
    parse_index,
    slot_info_from_stash,
    stash_header_json,
)

PACKED_AT = "2024-01-02T03:04:05Z"


def make_stash(payload=b"payload-bytes", **summary):
    header = json.dumps(summary) if summary else None
    return build_stash(payload, header)


def make_agms(index_text, num_slots=MAX_SLOTS, header_size=MULTISLOT_HEADER_SIZE,
              body=b""):
    header = bytearray(MULTISLOT_HEADER_SIZE)
    header[:4] = MULTISLOT_MAGIC
    struct.pack_into("<II", header, 4, header_size, num_slots)
    encoded = index_text.encode("utf-8")
    header[12:12 + len(encoded)] = encoded
    return bytes(header) + body


@pytest.fixture
def stash_a():
    return make_stash(b"A" * 100, image_size=[1440, 1080], rms_stereo_px=0.25,
                      packed_at=PACKED_AT)


@pytest.fixture
def stash_b():
    return make_stash(b"B" * 50, image_size=[720, 540])


def test_stash_header_json_reads_summary(stash_a):
    root = stash_header_json(stash_a)
    assert root == {"image_size": [1440, 1080], "rms_stereo_px": 0.25,
                    "packed_at": PACKED_AT}


@pytest.mark.parametrize("blob", [
    b"",
    b"AGCZ\x00\x00\x00\x00",
    build_stash(b"payload"),
    build_stash(b"payload", "{not json"),
])
def test_stash_header_json_none_without_summary(blob):
    assert stash_header_json(blob) is None


def test_slot_info_from_stash(stash_a):
    info = slot_info_from_stash(stash_a)
    assert info == SlotInfo(occupied=True, offset=0, size=0, image_w=1440,
                            image_h=1080, rms_stereo_px=0.25, packed_at=PACKED_AT)


def test_slot_info_from_stash_without_header():
    info = slot_info_from_stash(build_stash(b"xyz"))
    assert info == SlotInfo(occupied=True)


def test_slot_info_truncates_packed_at():
    info = slot_info_from_stash(make_stash(packed_at="x" * 40))
    assert info.packed_at == "x" * 31


def test_build_first_slot_layout(stash_a):
    container = build(None, 0, stash_a)
    assert container[:4] == b"AGMS"
    assert struct.unpack_from("<II", container, 4) == (MULTISLOT_HEADER_SIZE, MAX_SLOTS)
    assert len(container) == MULTISLOT_HEADER_SIZE + len(stash_a)
    assert container[MULTISLOT_HEADER_SIZE:] == stash_a


def test_build_index_describes_slot(stash_a):
    index = parse_index(build(None, 0, stash_a))
    assert index.num_slots == MAX_SLOTS
    assert index.slots[0] == SlotInfo(True, MULTISLOT_HEADER_SIZE, len(stash_a),
                                      1440, 1080, 0.25, PACKED_AT)
    assert not index.slots[1].occupied
    assert not index.slots[2].occupied


def test_build_multiple_slots_round_trip(stash_a, stash_b):
    container = build(None, 2, stash_b)
    container = build(container, 0, stash_a)
    assert extract_slot(container, 0) == stash_a
    assert extract_slot(container, 2) == stash_b
    index = parse_index(container)
    assert index.slots[0].offset == MULTISLOT_HEADER_SIZE
    assert index.slots[2].offset == MULTISLOT_HEADER_SIZE + len(stash_a)
    assert index.slots[2].image_w == 720
    assert len(container) == MULTISLOT_HEADER_SIZE + len(stash_a) + len(stash_b)


def test_build_replaces_slot(stash_a, stash_b):
    container = build(build(None, 1, stash_a), 1, stash_b)
    assert extract_slot(container, 1) == stash_b
    assert len(container) == MULTISLOT_HEADER_SIZE + len(stash_b)


def test_build_delete_slot_keeps_others(stash_a, stash_b):
    container = build(build(None, 0, stash_a), 1, stash_b)
    container = build(container, 0, None)
    index = parse_index(container)
    assert not index.slots[0].occupied
    assert index.slots[1].offset == MULTISLOT_HEADER_SIZE
    assert extract_slot(container, 1) == stash_b


def test_build_delete_last_slot_returns_none(stash_a):
    container = build(None, 1, stash_a)
    assert build(container, 1, None) is None
    assert build(container, 1, b"") is None


def test_build_migrates_legacy_stash(stash_a, stash_b):
    container = build(stash_a, 2, stash_b)
    assert extract_slot(container, 0) == stash_a
    assert extract_slot(container, 2) == stash_b
    assert parse_index(container).slots[0].packed_at == PACKED_AT


def test_build_unknown_existing_treated_as_empty(stash_b):
    container = build(b"garbage-data-here", 1, stash_b)
    index = parse_index(container)
    assert [s.occupied for s in index.slots] == [False, True, False]


@pytest.mark.parametrize("slot", [-1, MAX_SLOTS])
def test_build_rejects_slot_out_of_range(slot, stash_a):
    with pytest.raises(ArchiveError):
        build(None, slot, stash_a)


def test_build_rejects_overflowing_existing(stash_a):
    index = json.dumps({"slots": [{"offset": MULTISLOT_HEADER_SIZE, "size": 999999}]})
    with pytest.raises(ArchiveError):
        build(make_agms(index), 1, stash_a)


def test_build_rejects_unparsable_existing(stash_a):
    with pytest.raises(ArchiveError):
        build(make_agms("{broken"), 0, stash_a)


def test_extract_slot_legacy(stash_a):
    assert extract_slot(stash_a, 0) == stash_a
    with pytest.raises(ArchiveError):
        extract_slot(stash_a, 1)


def test_extract_slot_empty_slot(stash_a):
    container = build(None, 0, stash_a)
    with pytest.raises(ArchiveError):
        extract_slot(container, 1)


@pytest.mark.parametrize("data, slot", [
    (b"", 0),
    (b"AG", 0),
    (b"XXXX" + bytes(20), 0),
    (build_stash(b"x"), MAX_SLOTS),
    (build_stash(b"x"), -1),
])
def test_extract_slot_invalid(data, slot):
    with pytest.raises(ArchiveError):
        extract_slot(data, slot)


def test_extract_slot_beyond_num_slots(stash_a):
    index = json.dumps({"slots": [None, {"offset": MULTISLOT_HEADER_SIZE,
                                         "size": len(stash_a)}]})
    container = make_agms(index, num_slots=1, body=stash_a)
    with pytest.raises(ArchiveError):
        extract_slot(container, 1)


def test_extract_slot_overflow():
    index = json.dumps({"slots": [{"offset": MULTISLOT_HEADER_SIZE, "size": 10}]})
    with pytest.raises(ArchiveError):
        extract_slot(make_agms(index, body=b"abc"), 0)


def test_parse_index_empty_json():
    index = parse_index(make_agms("", num_slots=2))
    assert index == MultiSlotIndex(num_slots=2)
    assert not any(s.occupied for s in index.slots)


def test_parse_index_skips_null_and_non_objects():
    index = parse_index(make_agms(json.dumps({"slots": [None, 5, {"size": 7}]})))
    assert [s.occupied for s in index.slots] == [False, False, True]
    assert index.slots[2].size == 7


@pytest.mark.parametrize("data", [
    b"AGMS",
    b"XXXX" + bytes(MULTISLOT_HEADER_SIZE),
    make_agms("", num_slots=MAX_SLOTS + 1),
    make_agms("", header_size=MULTISLOT_HEADER_SIZE + 1),
    make_agms("{broken"),
    make_agms(json.dumps({"other": []})),
    make_agms(json.dumps([1, 2])),
])
def test_parse_index_rejects(data):
    with pytest.raises(ArchiveError):
        parse_index(data)


def test_format_index(stash_a):
    text = format_index(build(None, 0, stash_a))
    lines = text.splitlines()
    assert lines[0] == ""
    assert lines[1] == f"Calibration slots ({MAX_SLOTS} total):"
    assert lines[2] == f"  Slot 0: 1440x1080  RMS 0.2500 px  packed {PACKED_AT}  (0.0 MB)"
    assert lines[3] == "  Slot 1: (empty)"
    assert lines[4] == "  Slot 2: (empty)"
    assert text.endswith("\n")


def test_format_index_omits_missing_fields(stash_b):
    text = format_index(build(None, 1, stash_b))
    slot_line = text.splitlines()[3]
    assert slot_line.startswith("  Slot 1: 720x540  (")
    assert "RMS" not in slot_line
    assert "packed" not in slot_line


def test_format_index_rejects_non_container():
    with pytest.raises(ArchiveError):
        format_index(bytes(STASH_HEADER_SIZE))