"""
Read-only, bounds-checked random access over a raw disk image.

The image is memory mapped once and never written. Every read goes through
`read()` which refuses anything outside the mapped extent.
"""

import logging
import mmap
import os

from forensic_errors import BoundsError, ImageOpenError

logger = logging.getLogger(__name__)

CONTAINER_SUFFIX = ".e01"
RAW_SUFFIX = ".dd"


class DiskImage:
    def __init__(self, path, data=None):
        self.path = str(path)
        self._file = None
        self._map = None
        if data is not None:
            self._view = memoryview(bytes(data)).toreadonly()
            return
        try:
            self._file = open(self.path, "rb")
            if os.fstat(self._file.fileno()).st_size == 0:
                # mmap refuses empty files
                self._view = memoryview(b"")
            else:
                self._map = mmap.mmap(self._file.fileno(), 0, access=mmap.ACCESS_READ)
                self._view = memoryview(self._map).toreadonly()
        except (OSError, ValueError) as e:
            self.close()
            raise ImageOpenError(self.path, e) from e
        logger.info("Mapped disk image %s (%d bytes)", self.path, len(self._view))

    @classmethod
    def open(cls, path):
        return cls(path)

    @classmethod
    def from_bytes(cls, data, path="memory.dd"):
        """Wrap an in-memory buffer, mostly for tests and carved fragments."""
        return cls(path, data=data)

    def read(self, offset, length):
        """Return a read-only view of `length` bytes starting at `offset`."""
        size = len(self._view)
        if offset < 0 or length < 0 or offset + length > size:
            raise BoundsError(offset, length, size)
        return self._view[offset : offset + length]

    def size(self):
        return len(self._view)

    def __len__(self):
        return len(self._view)

    def is_container_format(self):
        return self.path.lower().endswith(CONTAINER_SUFFIX)

    def is_raw_format(self):
        return self.path.lower().endswith(RAW_SUFFIX)

    def close(self):
        view = getattr(self, "_view", None)
        if view is not None:
            view.release()
            self._view = memoryview(b"")
        if self._map is not None:
            try:
                self._map.close()
            except BufferError:
                # views handed out by read() are still alive; the mapping
                # goes away with the last of them
                logger.debug("Deferring unmap of %s, views still exported", self.path)
            self._map = None
        if self._file is not None:
            self._file.close()
            self._file = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def __repr__(self):
        return f"DiskImage({self.path!r}, size={self.size()})"
