"""
Timeline aggregator: every artifact engine appends typed events here, and the
renderers read them back after a single stable sort.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import List, Optional

import polars as pl


class EventCategory(Enum):
    FILE_CREATED = "file-created"
    FILE_MODIFIED = "file-modified"
    FILE_ACCESSED = "file-accessed"
    FILE_METADATA_CHANGED = "file-metadata-changed"
    USER_LOGON = "user-logon"
    SERVICE_INSTALLED = "service-installed"
    PROGRAM_EXECUTED = "program-executed"

    @property
    def label(self):
        return _LABELS[self]

    def is_file_event(self):
        return self in _FILE_TEMPLATES


_LABELS = {
    EventCategory.FILE_CREATED: "File Creation",
    EventCategory.FILE_MODIFIED: "File Modification",
    EventCategory.FILE_ACCESSED: "File Access",
    EventCategory.FILE_METADATA_CHANGED: "MFT Entry Changed",
    EventCategory.USER_LOGON: "User Logon",
    EventCategory.SERVICE_INSTALLED: "Service Installation",
    EventCategory.PROGRAM_EXECUTED: "Program Execution",
}

_FILE_TEMPLATES = {
    EventCategory.FILE_CREATED: "File '{path}' was created.",
    EventCategory.FILE_MODIFIED: "File '{path}' was modified.",
    EventCategory.FILE_ACCESSED: "File '{path}' was accessed.",
    EventCategory.FILE_METADATA_CHANGED: "MFT entry for '{path}' was changed.",
}


@dataclass(frozen=True)
class TimelineEvent:
    timestamp: datetime
    category: EventCategory
    description: str
    source_artifact: str

    def to_record(self):
        return {
            "Timestamp": self.timestamp,
            "Category": self.category.value,
            "EventType": self.category.label,
            "Description": self.description,
            "Source": self.source_artifact,
        }


@dataclass(frozen=True)
class RetentionPolicy:
    """
    Keep only events newer than `reference - window`.

    The reference instant is passed in explicitly. For evidence acquired long
    before the run, use the acquisition time as reference, or no policy.
    """
    reference: datetime
    window: timedelta

    def __post_init__(self):
        # naive reference is taken as UTC, like the FILETIME codec does
        if self.reference.tzinfo is None:
            object.__setattr__(self, "reference", self.reference.replace(tzinfo=timezone.utc))
        if self.window < timedelta(0):
            raise ValueError(f"Retention window must not be negative, got {self.window}")

    @classmethod
    def trailing(cls, days, reference=None):
        if days < 0:
            raise ValueError(f"Retention days must not be negative, got {days}")
        if reference is None:
            reference = datetime.now(timezone.utc)
        return cls(reference=reference, window=timedelta(days=days))

    @property
    def cutoff(self):
        return self.reference - self.window

    def retains(self, timestamp):
        return timestamp > self.cutoff


class Timeline:
    def __init__(self, retention: Optional[RetentionPolicy] = None):
        self.retention = retention
        self.events: List[TimelineEvent] = []
        self.dropped_by_retention = 0

    def add_event(self, event: TimelineEvent):
        self.events.append(event)

    def add_file_event(self, timestamp, category, file_path, source):
        """Append a file lifecycle event. Returns False when retention drops it."""
        template = _FILE_TEMPLATES.get(category)
        if template is None:
            raise ValueError(f"{category} is not a file event category")
        if self.retention is not None and not self.retention.retains(timestamp):
            self.dropped_by_retention += 1
            return False
        self.events.append(TimelineEvent(
            timestamp=timestamp,
            category=category,
            description=template.format(path=file_path),
            source_artifact=source,
        ))
        return True

    def add_user_logon(self, timestamp, username, source_ip, source="Security.evtx"):
        self.events.append(TimelineEvent(
            timestamp=timestamp,
            category=EventCategory.USER_LOGON,
            description=f"User '{username}' logged on from source IP {source_ip}",
            source_artifact=source,
        ))

    def add_service_installation(self, timestamp, service_name, source="System.evtx"):
        self.events.append(TimelineEvent(
            timestamp=timestamp,
            category=EventCategory.SERVICE_INSTALLED,
            description=f"Service '{service_name}' was installed.",
            source_artifact=source,
        ))

    def add_program_execution(self, timestamp, executable_name, prefetch_file):
        self.events.append(TimelineEvent(
            timestamp=timestamp,
            category=EventCategory.PROGRAM_EXECUTED,
            description=f"Executable '{executable_name}' was run.",
            source_artifact=prefetch_file,
        ))

    def merge(self, other: "Timeline"):
        """Append another timeline's events, e.g. one built by a separate worker."""
        self.events.extend(other.events)
        self.dropped_by_retention += other.dropped_by_retention

    def sort(self):
        # list.sort is stable: equal timestamps keep append order
        self.events.sort(key=lambda e: e.timestamp)

    def sorted_events(self) -> List[TimelineEvent]:
        self.sort()
        return list(self.events)

    def to_frame(self) -> pl.DataFrame:
        return pl.DataFrame(
            [e.to_record() for e in self.events],
            schema={
                "Timestamp": pl.Datetime(time_unit="us", time_zone="UTC"),
                "Category": pl.Utf8,
                "EventType": pl.Utf8,
                "Description": pl.Utf8,
                "Source": pl.Utf8,
            },
        )

    def __len__(self):
        return len(self.events)

    def __iter__(self):
        return iter(self.events)
