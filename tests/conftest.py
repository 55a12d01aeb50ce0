from datetime import datetime, timezone

import pytest

from disk_image import DiskImage
from time_codec import datetime_to_filetime


@pytest.fixture
def ticks():
    """Build FILETIME ticks from calendar fields (UTC)."""
    def _ticks(*args):
        return datetime_to_filetime(datetime(*args, tzinfo=timezone.utc))
    return _ticks


@pytest.fixture
def image_file(tmp_path):
    """Write bytes to a .dd file and return its path."""
    def _write(data, name="evidence.dd"):
        path = tmp_path / name
        path.write_bytes(data)
        return path
    return _write


@pytest.fixture
def memory_image():
    images = []

    def _open(data, path="memory.dd"):
        image = DiskImage.from_bytes(data, path=path)
        images.append(image)
        return image

    yield _open
    for image in images:
        image.close()
