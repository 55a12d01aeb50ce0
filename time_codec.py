from datetime import datetime, timedelta, timezone

from forensic_errors import ConversionError

# 100ns ticks between 1601-01-01 and 1970-01-01
EPOCH_DELTA_TICKS = 116444736000000000
TICKS_PER_SECOND = 10_000_000
UNIX_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def filetime_to_datetime(ticks):
    """Convierte timestamps de Windows (FILETIME) a datetime UTC, a segundos enteros."""
    delta = ticks - EPOCH_DELTA_TICKS
    # truncate toward zero, not floor
    seconds = abs(delta) // TICKS_PER_SECOND
    if delta < 0:
        seconds = -seconds
    try:
        return UNIX_EPOCH + timedelta(seconds=seconds)
    except OverflowError as e:
        raise ConversionError(ticks, str(e)) from e


def datetime_to_filetime(dt):
    """Encode a datetime as FILETIME ticks. Naive values are taken as UTC."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    delta = dt - UNIX_EPOCH
    micros = (delta.days * 86400 + delta.seconds) * 1_000_000 + delta.microseconds
    return micros * 10 + EPOCH_DELTA_TICKS
