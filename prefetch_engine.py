"""
Prefetch (.pf) execution evidence.

Uncompressed SCCA headers are carved straight out of the image at sector
alignment, or read from .pf files that were already extracted. Windows 10+
stores prefetch MAM-compressed; those files are reported and skipped.
"""

import logging
import os
import struct
from dataclasses import dataclass, field
from typing import List, Optional

from disk_image import DiskImage
from forensic_errors import (
    BoundsError,
    ConversionError,
    SignatureMismatch,
    TruncatedStructure,
)
from scan_config import PrefetchScanConfig
from time_codec import filetime_to_datetime
from timeline import Timeline

logger = logging.getLogger(__name__)

PREFETCH_SIGNATURE = b"SCCA"
MAM_SIGNATURE = b"MAM"
EXECUTABLE_NAME_OFFSET = 0x10
EXECUTABLE_NAME_SIZE = 60
HASH_OFFSET = 0x4C

# version -> (last run times offset, number of run times, run count offset)
RUN_INFO_LAYOUT = {
    17: (0x78, 1, 0x90),  # XP / 2003
    23: (0x80, 1, 0x98),  # Vista / 7
    26: (0x80, 8, 0xD0),  # 8.x
    30: (0x80, 8, 0xD0),  # 10
    31: (0x80, 8, 0xD0),  # 11
}


@dataclass
class PrefetchHeader:
    version: int
    file_size: int
    executable: str
    path_hash: int
    run_count: int
    last_run_times: List[int] = field(default_factory=list)

    @property
    def prefetch_name(self):
        return f"{self.executable.upper()}-{self.path_hash:08X}.pf"


def _header_size(version):
    layout = RUN_INFO_LAYOUT[version]
    return layout[2] + 4


def parse_prefetch_header(data) -> PrefetchHeader:
    if len(data) < 8:
        raise TruncatedStructure("Prefetch data shorter than its signature")
    version, signature = struct.unpack_from("<I4s", data, 0)
    if signature != PREFETCH_SIGNATURE:
        raise SignatureMismatch(4, PREFETCH_SIGNATURE, signature)
    if version not in RUN_INFO_LAYOUT:
        raise TruncatedStructure(f"Unsupported prefetch version {version}")
    if len(data) < _header_size(version):
        raise TruncatedStructure(
            f"Prefetch v{version} header needs {_header_size(version)} bytes, got {len(data)}"
        )

    (file_size,) = struct.unpack_from("<I", data, 0x0C)
    raw_name = bytes(data[EXECUTABLE_NAME_OFFSET : EXECUTABLE_NAME_OFFSET + EXECUTABLE_NAME_SIZE])
    executable = raw_name.decode("utf-16-le", errors="replace").split("\x00", 1)[0]
    (path_hash,) = struct.unpack_from("<I", data, HASH_OFFSET)

    runs_offset, runs, count_offset = RUN_INFO_LAYOUT[version]
    run_times = struct.unpack_from(f"<{runs}Q", data, runs_offset)
    (run_count,) = struct.unpack_from("<I", data, count_offset)

    return PrefetchHeader(
        version=version,
        file_size=file_size,
        executable=executable,
        path_hash=path_hash,
        run_count=run_count,
        last_run_times=[t for t in run_times if t],
    )


def add_execution_events(timeline: Timeline, header: PrefetchHeader, source: Optional[str] = None):
    source = source or header.prefetch_name
    added = 0
    for ticks in header.last_run_times:
        try:
            ts = filetime_to_datetime(ticks)
        except ConversionError as e:
            logger.debug("%s: dropping run time: %s", source, e)
            continue
        timeline.add_program_execution(ts, header.executable.lower(), source)
        added += 1
    return added


def carve_prefetch(image: DiskImage, timeline: Timeline, config: Optional[PrefetchScanConfig] = None):
    """Scan the image for uncompressed prefetch headers. Returns headers found."""
    config = config or PrefetchScanConfig()
    logger.info("Starting Prefetch carving...")
    found = 0
    offset = 0
    size = image.size()

    while offset + 8 <= size:
        if image.read(offset + 4, 4) == PREFETCH_SIGNATURE:
            (version,) = struct.unpack("<I", image.read(offset, 4))
            try:
                if version not in RUN_INFO_LAYOUT:
                    raise TruncatedStructure(f"Unsupported prefetch version {version}")
                header = parse_prefetch_header(image.read(offset, _header_size(version)))
            except (TruncatedStructure, SignatureMismatch, BoundsError) as e:
                logger.debug("Skipping SCCA candidate at offset %d: %s", offset, e)
            else:
                add_execution_events(timeline, header)
                found += 1
                if found >= config.max_headers:
                    logger.info("Prefetch carving limited to %d headers", config.max_headers)
                    break
        offset += config.stride

    logger.info("Prefetch carving completed. Found %d headers", found)
    return found


def parse_prefetch_files(disk_image, timeline: Timeline, paths=()):
    """Append execution events from extracted .pf files."""
    found = 0
    for path in paths:
        name = os.path.basename(path)
        try:
            with open(path, "rb") as f:
                data = f.read()
        except OSError as e:
            logger.warning("Could not read prefetch file %s: %s", path, e)
            continue
        if data[:3] == MAM_SIGNATURE:
            logger.warning("%s is MAM-compressed, skipping", name)
            continue
        try:
            header = parse_prefetch_header(data)
        except (TruncatedStructure, SignatureMismatch) as e:
            logger.warning("%s: not a usable prefetch file: %s", name, e)
            continue
        add_execution_events(timeline, header, source=name)
        found += 1
    logger.info("Parsed %d prefetch files", found)
    return found
