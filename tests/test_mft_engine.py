import struct
from datetime import datetime, timezone

import pytest

from builders import (
    file_name_content,
    mft_entry,
    named_entry,
    non_resident_attribute,
    resident_attribute,
)
from forensic_errors import SignatureMismatch, TruncatedStructure
from mft_engine import (
    ATTR_DATA,
    ATTR_FILE_NAME,
    ATTR_STANDARD_INFO,
    NonResidentContent,
    ResidentContent,
    extract_file_name,
    iter_mft_entries,
    parse_attribute,
    parse_file_name,
    parse_mft_entry,
    scan_mft,
)
from scan_config import ScanConfig
from timeline import EventCategory, RetentionPolicy, Timeline


def _four(ticks):
    return (
        ticks(2024, 1, 10, 8, 0, 0),
        ticks(2024, 1, 12, 9, 0, 0),
        ticks(2024, 1, 11, 10, 0, 0),
        ticks(2024, 1, 13, 11, 0, 0),
    )


def test_parse_entry_header(memory_image, ticks):
    image = memory_image(named_entry("a.txt", *_four(ticks), record_number=42, flags=0x03))
    entry = parse_mft_entry(image, 0)
    assert entry.signature == b"FILE"
    assert entry.record_number == 42
    assert entry.attribute_offset == 0x38
    assert entry.allocated_size == 1024
    assert entry.sequence_number == 1
    assert entry.link_count == 1
    assert entry.in_use and entry.is_directory
    assert not entry.is_extension
    assert [a.type_code for a in entry.attributes] == [ATTR_FILE_NAME]


def test_signature_mismatch(memory_image):
    image = memory_image(mft_entry(signature=b"BAAD"))
    with pytest.raises(SignatureMismatch) as excinfo:
        parse_mft_entry(image, 0)
    assert excinfo.value.found == b"BAAD"


def test_resident_and_non_resident_content(memory_image):
    si = resident_attribute(ATTR_STANDARD_INFO, b"\x01" * 0x30)
    data = non_resident_attribute(ATTR_DATA)
    entry = parse_mft_entry(memory_image(mft_entry([si, data])), 0)
    first, second = entry.attributes
    assert first.content == ResidentContent(b"\x01" * 0x30)
    assert first.type_name == "$STANDARD_INFORMATION"
    assert second.non_resident
    assert isinstance(second.content, NonResidentContent)


def test_empty_resident_content_is_distinct_from_non_resident(memory_image):
    entry = parse_mft_entry(memory_image(mft_entry([resident_attribute(ATTR_DATA, b"")])), 0)
    assert entry.attributes[0].content == ResidentContent(b"")


def test_zero_length_attribute_ends_attribute_scan(memory_image):
    block = bytearray(mft_entry([resident_attribute(ATTR_STANDARD_INFO, b"\x00" * 8)], terminate=False))
    # second attribute header: type 0x30, length 0
    struct.pack_into("<II", block, 0x38 + 0x20, ATTR_FILE_NAME, 0)
    entry = parse_mft_entry(memory_image(bytes(block)), 0)
    assert len(entry.attributes) == 1


def test_attribute_longer_than_entry_stops_scan(memory_image):
    block = bytearray(mft_entry(terminate=False))
    struct.pack_into("<II", block, 0x38, ATTR_FILE_NAME, 4096)
    entry = parse_mft_entry(memory_image(bytes(block)), 0)
    assert entry.attributes == []


def test_resident_content_must_fit_attribute():
    attr = bytearray(resident_attribute(ATTR_FILE_NAME, b"\x00" * 16))
    struct.pack_into("<I", attr, 0x10, 200)  # content size beyond the attribute
    with pytest.raises(TruncatedStructure):
        parse_attribute(bytes(attr), 0)


def test_attribute_scan_stays_inside_entry(memory_image):
    # Attributes fill the entry up to the end without an end marker
    filler = resident_attribute(ATTR_DATA, b"\x00" * (1024 - 0x38 - 0x18))
    entry = parse_mft_entry(memory_image(mft_entry([filler], terminate=False)), 0)
    assert len(entry.attributes) == 1


def test_parse_file_name_fields(ticks):
    created, accessed, modified, changed = _four(ticks)
    content = file_name_content("notes.txt", created, accessed, modified, changed,
                                parent=(3 << 48) | 5, logical=1234, allocated=4096)
    fact = parse_file_name(content)
    assert fact.name == "notes.txt"
    assert fact.parent_record == 5
    assert fact.parent_sequence == 3
    assert (fact.created, fact.accessed, fact.modified, fact.entry_changed) == (created, accessed, modified, changed)
    assert fact.logical_size == 1234
    assert fact.allocated_size == 4096
    assert fact.namespace == 1


def test_file_name_too_short():
    with pytest.raises(TruncatedStructure):
        parse_file_name(b"\x00" * 65)


def test_file_name_length_past_content_is_rejected():
    content = bytearray(file_name_content("abc", 0, 0, 0, 0))
    content[0x40] = 10
    with pytest.raises(TruncatedStructure):
        parse_file_name(bytes(content))


def test_invalid_utf16_is_replaced():
    content = bytearray(file_name_content("ab", 0, 0, 0, 0))
    content[0x42:0x44] = b"\x00\xd8"  # lone high surrogate
    assert parse_file_name(bytes(content)).name == "\ufffdb"


def test_first_file_name_wins(memory_image):
    first = resident_attribute(ATTR_FILE_NAME, file_name_content("LONGFI~1.TXT", 1, 1, 1, 1))
    second = resident_attribute(ATTR_FILE_NAME, file_name_content("long file.txt", 1, 1, 1, 1))
    entry = parse_mft_entry(memory_image(mft_entry([first, second])), 0)
    assert extract_file_name(entry).name == "LONGFI~1.TXT"


def test_broken_file_name_falls_through_to_next(memory_image):
    broken = resident_attribute(ATTR_FILE_NAME, b"\x00" * 20)
    good = resident_attribute(ATTR_FILE_NAME, file_name_content("ok.txt", 1, 1, 1, 1))
    entry = parse_mft_entry(memory_image(mft_entry([broken, good])), 0)
    assert extract_file_name(entry).name == "ok.txt"


def test_no_file_name(memory_image):
    entry = parse_mft_entry(memory_image(mft_entry([non_resident_attribute(ATTR_FILE_NAME)])), 0)
    assert extract_file_name(entry) is None


def test_fixups_restore_sector_trailers(memory_image, ticks):
    block = bytearray(named_entry("fixed.txt", *_four(ticks)))
    # update sequence array at 0x30: check value + 1 replacement for sector 2
    struct.pack_into("<HH", block, 0x04, 0x30, 2)
    struct.pack_into("<HH", block, 0x30, 0xABCD, 0x1234)
    struct.pack_into("<H", block, 510, 0xABCD)
    image = memory_image(bytes(block))
    entry = parse_mft_entry(image, 0)
    assert entry.fixups_applied
    assert extract_file_name(entry).name == "fixed.txt"


def test_fixups_left_alone_on_mismatch(memory_image):
    block = bytearray(mft_entry())
    struct.pack_into("<HH", block, 0x04, 0x30, 2)
    struct.pack_into("<H", block, 0x30, 0xABCD)
    entry = parse_mft_entry(memory_image(bytes(block)), 0)
    assert not entry.fixups_applied


def test_stride_scan_skips_bad_blocks(memory_image, ticks):
    data = (
        b"\xff" * 1024
        + named_entry("one.txt", *_four(ticks), record_number=1)
        + mft_entry(signature=b"JUNK")
        + named_entry("two.txt", *_four(ticks), record_number=3)
        + b"FILE"  # partial trailing block is never read
    )
    entries = list(iter_mft_entries(memory_image(data)))
    assert [e.record_number for e in entries] == [1, 3]
    assert [e.offset for e in entries] == [1024, 3072]


def test_configurable_entry_size_and_stride(memory_image, ticks):
    entry = named_entry("small.txt", *_four(ticks), entry_size=512)
    data = entry + b"\x00" * 256 + entry
    config = ScanConfig(entry_size=512, stride=256)
    assert [e.offset for e in iter_mft_entries(memory_image(data), config)] == [0, 768]


def test_end_to_end_single_entry(memory_image, ticks):
    created, accessed, modified, changed = _four(ticks)
    image = memory_image(named_entry("notes.txt", created, accessed, modified, changed))
    timeline = Timeline()
    result = scan_mft(image, timeline)

    assert result.facts_extracted == 1
    assert result.blocks_scanned == 1
    assert result.events_added == 4
    assert not result.stopped_early

    events = timeline.sorted_events()
    assert len(events) == 4
    assert all(e.source_artifact == "MFT" for e in events)
    assert events[0].category is EventCategory.FILE_CREATED
    assert events[0].timestamp == datetime(2024, 1, 10, 8, tzinfo=timezone.utc)
    assert events[0].description == "File 'notes.txt' was created."
    assert [e.category for e in events[1:]] == [
        EventCategory.FILE_MODIFIED,
        EventCategory.FILE_ACCESSED,
        EventCategory.FILE_METADATA_CHANGED,
    ]


def test_retention_applies_to_scanned_events(memory_image, ticks):
    image = memory_image(named_entry("notes.txt", *_four(ticks)))
    policy = RetentionPolicy.trailing(2, reference=datetime(2024, 1, 13, 12, tzinfo=timezone.utc))
    timeline = Timeline(retention=policy)
    result = scan_mft(image, timeline)
    assert result.facts_extracted == 1
    assert result.events_added == 2
    assert {e.category for e in timeline} == {EventCategory.FILE_ACCESSED, EventCategory.FILE_METADATA_CHANGED}


def test_unconvertible_timestamp_drops_only_that_field(memory_image, ticks):
    created, accessed, modified, _ = _four(ticks)
    image = memory_image(named_entry("odd.txt", created, accessed, modified, 2**64 - 1))
    timeline = Timeline()
    result = scan_mft(image, timeline)
    assert result.timestamps_dropped == 1
    assert len(timeline) == 3
    assert EventCategory.FILE_METADATA_CHANGED not in {e.category for e in timeline}


def test_fact_cap_stops_early(memory_image, ticks):
    cap = 3
    data = b"".join(named_entry(f"f{i}.txt", *_four(ticks), record_number=i) for i in range(cap + 5))
    timeline = Timeline()
    result = scan_mft(memory_image(data), timeline, ScanConfig(max_facts=cap))
    assert result.facts_extracted == cap
    assert result.stopped_early
    assert result.blocks_scanned == cap
    assert len(timeline) == cap * 4


def test_cap_reached_on_last_block_is_not_early(memory_image, ticks):
    data = b"".join(named_entry(f"f{i}.txt", *_four(ticks)) for i in range(2))
    result = scan_mft(memory_image(data), Timeline(), ScanConfig(max_facts=2))
    assert result.facts_extracted == 2
    assert not result.stopped_early


def test_scan_of_image_without_records(memory_image):
    result = scan_mft(memory_image(b"\x00" * 4096), Timeline())
    assert result.to_dict() == {
        "facts_extracted": 0,
        "blocks_scanned": 4,
        "entries_decoded": 0,
        "entries_rejected": 4,
        "events_added": 0,
        "timestamps_dropped": 0,
        "stopped_early": False,
    }


def test_naive_retention_reference_does_not_abort_scan(memory_image, ticks):
    image = memory_image(named_entry("notes.txt", *_four(ticks)) * 2)
    timeline = Timeline(retention=RetentionPolicy.trailing(2, reference=datetime(2024, 1, 13, 12)))
    result = scan_mft(image, timeline)
    assert result.facts_extracted == 2
    assert result.events_added == 4
