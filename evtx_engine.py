import json
import logging
import os
from datetime import datetime, timezone

from evtx import PyEvtxParser

from timeline import Timeline

logger = logging.getLogger(__name__)

EVENT_LOGON = 4624
EVENT_SERVICE_INSTALL = 7045


def parse_system_time(value):
    """'2024-01-15T10:30:00.1234567Z' -> datetime UTC (microsecond precision)."""
    text = value.strip().replace("T", " ")
    if text.endswith("Z"):
        text = text[:-1]
    if "." in text:
        head, frac = text.split(".", 1)
        # Only keep up to microseconds
        text = f"{head}.{frac[:6]}"
        fmt = "%Y-%m-%d %H:%M:%S.%f"
    else:
        fmt = "%Y-%m-%d %H:%M:%S"
    return datetime.strptime(text, fmt).replace(tzinfo=timezone.utc)


def get_value(v):
    # Helper to handle fields rendered with attributes
    if isinstance(v, dict):
        return v.get("#text", str(v))
    return v


def _event_id(system):
    try:
        return int(get_value(system.get("EventID", 0)))
    except (TypeError, ValueError):
        return 0


def _append_record(data, timeline: Timeline, source):
    event = data.get("Event", {})
    system = event.get("System", {})
    event_id = _event_id(system)
    if event_id not in (EVENT_LOGON, EVENT_SERVICE_INSTALL):
        return False

    timestamp = parse_system_time(system["TimeCreated"]["#attributes"]["SystemTime"])
    event_data = event.get("EventData") or {}

    if event_id == EVENT_LOGON:
        user = get_value(event_data.get("TargetUserName")) or "Unknown"
        ip = get_value(event_data.get("IpAddress")) or "-"
        timeline.add_user_logon(timestamp, user, ip, source=source)
    else:
        service = get_value(event_data.get("ServiceName")) or "Unknown"
        timeline.add_service_installation(timestamp, service, source=source)
    return True


def process_evtx_file(file_path, timeline: Timeline):
    """
    Motor para Event Logs (.evtx): agrega logons (4624) e instalaciones de
    servicios (7045) al timeline. Returns the number of events appended.
    """
    source = os.path.basename(file_path)
    parser = PyEvtxParser(str(file_path))
    added = 0
    skipped = 0

    for record in parser.records_json():
        # Cada record es un JSON con la estructura de Windows Event Log
        try:
            data = json.loads(record["data"])
            if _append_record(data, timeline, source):
                added += 1
        except (KeyError, TypeError, ValueError) as e:
            skipped += 1
            logger.debug("%s: skipping record %s: %s", source, record.get("event_record_id"), e)

    logger.info("%s: %d timeline events, %d malformed records skipped", source, added, skipped)
    return added


def parse_event_logs(disk_image, timeline: Timeline, evtx_paths=()):
    """
    Append logon and service-install events from event logs extracted from
    `disk_image`. Locating the logs inside the image is left to the extractor.
    """
    logger.info("Starting Windows Event Log parsing...")
    total = 0
    for path in evtx_paths:
        try:
            total += process_evtx_file(path, timeline)
        except (OSError, RuntimeError) as e:
            logger.warning("Could not read event log %s: %s", path, e)
    logger.info("Windows Event Log parsing completed (%d events)", total)
    return total
