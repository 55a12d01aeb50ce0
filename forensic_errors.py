"""Error taxonomy for the image scanner and its collaborators."""


class ChronosError(Exception):
    """Base class for every error raised by the scanner."""


class BoundsError(ChronosError):
    """A read was requested outside the image extent."""

    def __init__(self, offset, length, size):
        super().__init__(
            f"Read of {length} bytes at offset {offset} exceeds image size {size}"
        )
        self.offset = offset
        self.length = length
        self.size = size


class SignatureMismatch(ChronosError):
    """A block does not start with the expected magic."""

    def __init__(self, offset, expected, found):
        super().__init__(f"Expected signature {expected!r} at offset {offset}, found {found!r}")
        self.offset = offset
        self.expected = expected
        self.found = found


class TruncatedStructure(ChronosError):
    """A fixed field or declared region does not fit in the available bytes."""


class ConversionError(ChronosError):
    """A native timestamp has no representable calendar time."""

    def __init__(self, ticks, reason=""):
        msg = f"FILETIME {ticks} is not representable"
        if reason:
            msg = f"{msg}: {reason}"
        super().__init__(msg)
        self.ticks = ticks


class ImageOpenError(ChronosError):
    """The image could not be opened or mapped."""

    def __init__(self, path, cause):
        super().__init__(f"Failed to open disk image {path}: {cause}")
        self.path = path
        self.cause = cause
