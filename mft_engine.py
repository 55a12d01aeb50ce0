"""
MFT scanner: walks a disk image at a fixed stride, decodes FILE records and
their attribute lists, and turns each $FILE_NAME attribute into file events.

Only resident content is decoded. Non-resident attributes are kept in the
attribute list with a NonResidentContent marker; their data runs are not
followed.

Header and resident-attribute fields are read at their on-disk NTFS offsets
(content size u32 at +0x10, content offset u16 at +0x14), not in declaration
order.
"""

import logging
import struct
from dataclasses import asdict, dataclass, field
from typing import Iterator, List, Optional, Union

from disk_image import DiskImage
from forensic_errors import (
    BoundsError,
    ConversionError,
    SignatureMismatch,
    TruncatedStructure,
)
from scan_config import MFT_HEADER_SIZE, ScanConfig
from time_codec import filetime_to_datetime
from timeline import EventCategory, Timeline

logger = logging.getLogger(__name__)

MFT_SIGNATURE = b"FILE"
SECTOR_SIZE = 512

# NTFS attribute type codes
ATTR_STANDARD_INFO = 0x10
ATTR_FILE_NAME = 0x30
ATTR_DATA = 0x80
ATTR_END = 0xFFFFFFFF

ATTR_NAMES = {
    0x10: "$STANDARD_INFORMATION",
    0x20: "$ATTRIBUTE_LIST",
    0x30: "$FILE_NAME",
    0x40: "$OBJECT_ID",
    0x50: "$SECURITY_DESCRIPTOR",
    0x60: "$VOLUME_NAME",
    0x70: "$VOLUME_INFORMATION",
    0x80: "$DATA",
    0x90: "$INDEX_ROOT",
    0xA0: "$INDEX_ALLOCATION",
    0xB0: "$BITMAP",
    0x100: "$LOGGED_UTILITY_STREAM",
}

# FILE record flags
FR_IN_USE = 0x01
FR_IS_DIRECTORY = 0x02

# Attribute list ends this many bytes before the end of the entry at the latest
END_OF_LIST_MARGIN = 4

ATTR_HEADER_SIZE = 0x10
RESIDENT_HEADER_SIZE = 0x18

# $FILE_NAME content layout
FN_FIXED_FORMAT = "<QQQQQQQI"  # parent, 4 timestamps, logical, allocated, flags
FN_NAME_LENGTH_OFFSET = 0x40
FN_NAMESPACE_OFFSET = 0x41
FN_NAME_OFFSET = 0x42
FILE_NAME_MIN_SIZE = FN_NAME_OFFSET

_HEADER = struct.Struct("<4sHHQHHHHIIQHHI")  # bytes 0x00..0x30
_ATTR_HEADER = struct.Struct("<IIBBHHH")
_RESIDENT = struct.Struct("<IH")


@dataclass(frozen=True)
class ResidentContent:
    data: bytes


@dataclass(frozen=True)
class NonResidentContent:
    """Content lives in clusters outside the entry and was not read."""


AttributeContent = Union[ResidentContent, NonResidentContent]


@dataclass
class MftAttribute:
    type_code: int
    length: int
    non_resident: bool
    name_length: int
    name_offset: int
    flags: int
    attribute_id: int
    content: AttributeContent

    @property
    def type_name(self):
        return ATTR_NAMES.get(self.type_code, f"0x{self.type_code:X}")


@dataclass
class MftEntry:
    offset: int
    signature: bytes
    update_sequence_offset: int
    update_sequence_count: int
    sequence_number: int
    link_count: int
    attribute_offset: int
    flags: int
    used_size: int
    allocated_size: int
    base_record: int
    next_attribute_id: int
    record_number: int
    attributes: List[MftAttribute] = field(default_factory=list)
    fixups_applied: bool = False

    @property
    def in_use(self):
        return bool(self.flags & FR_IN_USE)

    @property
    def is_directory(self):
        return bool(self.flags & FR_IS_DIRECTORY)

    @property
    def is_extension(self):
        """Extension records point at their base record; that link is not followed."""
        return self.base_record != 0


@dataclass
class FileNameFact:
    """$FILE_NAME attribute content. Timestamps are raw FILETIME ticks."""
    parent_reference: int
    created: int
    accessed: int
    modified: int
    entry_changed: int
    logical_size: int
    allocated_size: int
    flags: int
    namespace: int
    name: str

    @property
    def parent_record(self):
        return self.parent_reference & 0xFFFFFFFFFFFF

    @property
    def parent_sequence(self):
        return self.parent_reference >> 48

    def timestamps(self):
        return [
            (EventCategory.FILE_CREATED, self.created),
            (EventCategory.FILE_ACCESSED, self.accessed),
            (EventCategory.FILE_MODIFIED, self.modified),
            (EventCategory.FILE_METADATA_CHANGED, self.entry_changed),
        ]


@dataclass
class ScanResult:
    facts_extracted: int = 0
    blocks_scanned: int = 0
    entries_decoded: int = 0
    entries_rejected: int = 0
    events_added: int = 0
    timestamps_dropped: int = 0
    stopped_early: bool = False

    def to_dict(self):
        return asdict(self)


def _apply_fixups(block: bytearray) -> bool:
    """
    Apply the update sequence array in place. The last two bytes of every
    sector hold a check value; the real bytes live in the array. Nothing is
    changed unless every sector trailer matches the check value.
    """
    usa_offset, usa_count = struct.unpack_from("<HH", block, 0x04)
    if usa_count < 2 or usa_offset < 0x28 or usa_offset + 2 * usa_count > len(block):
        return False
    if (usa_count - 1) * SECTOR_SIZE > len(block):
        return False
    check = block[usa_offset : usa_offset + 2]
    for i in range(1, usa_count):
        pos = i * SECTOR_SIZE - 2
        if block[pos : pos + 2] != check:
            return False
    for i in range(1, usa_count):
        pos = i * SECTOR_SIZE - 2
        repl = usa_offset + 2 * i
        block[pos : pos + 2] = block[repl : repl + 2]
    return True


def parse_attribute(block, offset) -> MftAttribute:
    """Decode the attribute starting at `offset` within one entry block."""
    if offset + ATTR_HEADER_SIZE > len(block):
        raise TruncatedStructure(f"Attribute header at +0x{offset:X} runs past the entry")
    (type_code, length, non_resident, name_length,
     name_offset, flags, attribute_id) = _ATTR_HEADER.unpack_from(block, offset)
    if length == 0:
        raise TruncatedStructure(f"Attribute at +0x{offset:X} declares zero length")
    if length < ATTR_HEADER_SIZE or offset + length > len(block):
        raise TruncatedStructure(
            f"Attribute at +0x{offset:X} declares length {length}, entry has {len(block) - offset} bytes left"
        )

    if non_resident:
        content = NonResidentContent()
    else:
        if length < RESIDENT_HEADER_SIZE:
            raise TruncatedStructure(f"Resident attribute at +0x{offset:X} too short for its header")
        content_size, content_offset = _RESIDENT.unpack_from(block, offset + 0x10)
        if content_offset + content_size > length:
            raise TruncatedStructure(
                f"Resident content {content_offset}+{content_size} exceeds attribute length {length}"
            )
        start = offset + content_offset
        content = ResidentContent(bytes(block[start : start + content_size]))

    return MftAttribute(
        type_code=type_code,
        length=length,
        non_resident=bool(non_resident),
        name_length=name_length,
        name_offset=name_offset,
        flags=flags,
        attribute_id=attribute_id,
        content=content,
    )


def parse_mft_entry(image: DiskImage, offset, entry_size=1024, apply_fixups=True) -> MftEntry:
    """
    Decode one FILE record at `offset`. Raises BoundsError, SignatureMismatch
    or TruncatedStructure; the caller decides whether to skip.
    """
    if entry_size < MFT_HEADER_SIZE:
        raise TruncatedStructure(f"Entry size {entry_size} cannot hold a FILE header")
    raw = image.read(offset, entry_size)
    if raw[:4] != MFT_SIGNATURE:
        raise SignatureMismatch(offset, MFT_SIGNATURE, bytes(raw[:4]))

    block = bytearray(raw)
    fixed = _apply_fixups(block) if apply_fixups else False
    (signature, usa_offset, usa_count, _lsn, sequence_number, link_count,
     attribute_offset, flags, used_size, allocated_size, base_record,
     next_attribute_id, _align, record_number) = _HEADER.unpack_from(block, 0)

    entry = MftEntry(
        offset=offset,
        signature=signature,
        update_sequence_offset=usa_offset,
        update_sequence_count=usa_count,
        sequence_number=sequence_number,
        link_count=link_count,
        attribute_offset=attribute_offset,
        flags=flags,
        used_size=used_size,
        allocated_size=allocated_size,
        base_record=base_record,
        next_attribute_id=next_attribute_id,
        record_number=record_number,
        fixups_applied=fixed,
    )

    cursor = attribute_offset
    limit = entry_size - END_OF_LIST_MARGIN
    while cursor < limit:
        (type_code,) = struct.unpack_from("<I", block, cursor)
        if type_code == ATTR_END:
            break
        try:
            attr = parse_attribute(block, cursor)
        except TruncatedStructure as e:
            logger.debug("Entry at offset %d: %s", offset, e)
            break
        entry.attributes.append(attr)
        cursor += attr.length
    return entry


def parse_file_name(content) -> FileNameFact:
    """Decode resident $FILE_NAME content."""
    if len(content) < FILE_NAME_MIN_SIZE:
        raise TruncatedStructure(
            f"$FILE_NAME content is {len(content)} bytes, need at least {FILE_NAME_MIN_SIZE}"
        )
    (parent, created, accessed, modified, changed,
     logical_size, allocated_size, flags) = struct.unpack_from(FN_FIXED_FORMAT, content, 0)
    name_length = content[FN_NAME_LENGTH_OFFSET]
    namespace = content[FN_NAMESPACE_OFFSET]
    end = FN_NAME_OFFSET + name_length * 2
    if end > len(content):
        raise TruncatedStructure(
            f"Filename of {name_length} chars needs {end} bytes, content has {len(content)}"
        )
    name = bytes(content[FN_NAME_OFFSET:end]).decode("utf-16-le", errors="replace")
    return FileNameFact(
        parent_reference=parent,
        created=created,
        accessed=accessed,
        modified=modified,
        entry_changed=changed,
        logical_size=logical_size,
        allocated_size=allocated_size,
        flags=flags,
        namespace=namespace,
        name=name,
    )


def extract_file_name(entry: MftEntry) -> Optional[FileNameFact]:
    """First $FILE_NAME attribute that decodes; later ones are ignored."""
    for attr in entry.attributes:
        if attr.type_code != ATTR_FILE_NAME or not isinstance(attr.content, ResidentContent):
            continue
        try:
            return parse_file_name(attr.content.data)
        except TruncatedStructure as e:
            logger.debug("Entry at offset %d: skipping $FILE_NAME: %s", entry.offset, e)
    return None


def iter_mft_entries(image: DiskImage, config: Optional[ScanConfig] = None,
                     stats: Optional[ScanResult] = None) -> Iterator[MftEntry]:
    """
    Yield every decodable FILE record found at the configured stride.
    Blocks that fail to decode are counted in `stats` and skipped.
    """
    config = config or ScanConfig()
    stats = stats if stats is not None else ScanResult()
    offset = config.start_offset
    size = image.size()
    while offset + config.entry_size <= size:
        stats.blocks_scanned += 1
        try:
            entry = parse_mft_entry(image, offset, config.entry_size, config.apply_fixups)
        except SignatureMismatch:
            # most blocks of an image are not FILE records
            stats.entries_rejected += 1
        except (TruncatedStructure, BoundsError) as e:
            stats.entries_rejected += 1
            logger.debug("Skipping entry at offset %d: %s", offset, e)
        else:
            stats.entries_decoded += 1
            yield entry
        offset += config.stride


def add_file_events(timeline: Timeline, fact: FileNameFact, source, stats: Optional[ScanResult] = None):
    """Convert each timestamp of the fact and append the matching file event."""
    added = 0
    for category, ticks in fact.timestamps():
        try:
            ts = filetime_to_datetime(ticks)
        except ConversionError as e:
            logger.debug("Dropping %s timestamp of '%s': %s", category.value, fact.name, e)
            if stats is not None:
                stats.timestamps_dropped += 1
            continue
        if timeline.add_file_event(ts, category, fact.name, source):
            added += 1
    if stats is not None:
        stats.events_added += added
    return added


def scan_mft(image: DiskImage, timeline: Timeline, config: Optional[ScanConfig] = None) -> ScanResult:
    """
    Scan the whole image for FILE records and append their file events.
    Stops early, without error, once `config.max_facts` facts were extracted.
    """
    config = config or ScanConfig()
    result = ScanResult()
    logger.info("Starting MFT parsing (entry size %d, stride %d)", config.entry_size, config.stride)

    for entry in iter_mft_entries(image, config, result):
        fact = extract_file_name(entry)
        if fact is None:
            continue
        add_file_events(timeline, fact, config.source_label, result)
        result.facts_extracted += 1

        if result.facts_extracted >= config.max_facts:
            if entry.offset + config.stride + config.entry_size <= image.size():
                result.stopped_early = True
                logger.info("MFT parsing limited to %d entries", config.max_facts)
            break

    logger.info(
        "MFT parsing completed. Found %d file facts in %d blocks (%d rejected)",
        result.facts_extracted, result.blocks_scanned, result.entries_rejected,
    )
    return result
