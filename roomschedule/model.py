"""
Central data model definitions used across the project.

This module defines the canonical shape of one scheduled occurrence (Record)
and of the run summary (RunResult) so that:
- fetchers, the normalizer and every store share the same field names
- the snapshot table and the cumulative table agree on what a row is
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date
from enum import Enum
from typing import Any, List, Mapping, NamedTuple, Optional, Sequence, Tuple, Union


# A raw row is whatever the source hands us: a header-keyed mapping
# (spreadsheet / HTML table with headers) or a plain positional sequence.
RawRow = Union[Mapping[str, Any], Sequence[Any]]

LOCATION_FIELDS = ("room", "building", "campus")


class EventKind(str, Enum):
    LECTURE = "Lecture"
    TUTORIAL = "Tutorial"
    OTHER = "Other"


class Weekday(str, Enum):
    SUNDAY = "Sunday"
    MONDAY = "Monday"
    TUESDAY = "Tuesday"
    WEDNESDAY = "Wednesday"
    THURSDAY = "Thursday"
    FRIDAY = "Friday"
    SATURDAY = "Saturday"

    @classmethod
    def from_date(cls, day: date) -> "Weekday":
        # isoweekday: Monday=1 .. Sunday=7
        return list(cls)[day.isoweekday() % 7]


class Page(NamedTuple):
    """
    One batch of raw rows returned by a fetcher.

    done=True means the source is exhausted; rows of that page still count.
    """

    rows: List[RawRow]
    done: bool


@dataclass(frozen=True)
class Record:
    """
    Represents one scheduled occurrence (one line of the daily listing).

    Location fields are None when the source leaves them blank, never "".
    """

    kind: EventKind
    title: str
    start_time: str
    end_time: str
    snapshot_date: date
    room: Optional[str] = None
    building: Optional[str] = None
    campus: Optional[str] = None
    weekday: Optional[Weekday] = None
    kind_label: Optional[str] = None
    extra: Tuple[Tuple[str, str], ...] = ()

    @property
    def is_cumulative(self) -> bool:
        """Only lectures and tutorials are kept in the cumulative log."""
        return self.kind in (EventKind.LECTURE, EventKind.TUTORIAL)

    def locations(self) -> dict[str, str]:
        """Location fields that are actually present on this record."""
        out: dict[str, str] = {}
        for name in LOCATION_FIELDS:
            value = getattr(self, name)
            if value is not None:
                out[name] = value
        return out

    def snapshot_row(self) -> dict[str, Any]:
        """
        Row layout of the snapshot table: every field plus the extra columns.

        kind_label keeps the source classification text (e.g. "Examen"),
        which the kind enum folds into Other.
        """
        row: dict[str, Any] = dict(self.extra)
        row.update(
            {
                "kind": self.kind.value,
                "title": self.title,
                "start_time": self.start_time,
                "end_time": self.end_time,
                "snapshot_date": self.snapshot_date.isoformat(),
            }
        )
        if self.kind_label is not None:
            row["kind_label"] = self.kind_label
        row.update(self.locations())
        return row

    def cumulative_row(self, run_date: date, weekday: Weekday) -> dict[str, Any]:
        """
        Row layout of the cumulative table: natural key fields + run tags.
        """
        row: dict[str, Any] = {
            "kind": self.kind.value,
            "title": self.title,
            "start_time": self.start_time,
            "end_time": self.end_time,
        }
        row.update(self.locations())
        row["snapshot_date"] = run_date.isoformat()
        row["weekday"] = weekday.value
        return row


def matches_loosely(row: Mapping[str, Any], record: Record) -> bool:
    """
    Loose natural-key comparison between a stored cumulative row and a record.

    Required key fields must be equal. An optional location field only
    discriminates when both sides carry a value and the values differ.
    """
    if row.get("kind") != record.kind.value:
        return False
    if row.get("title") != record.title:
        return False
    if row.get("start_time") != record.start_time or row.get("end_time") != record.end_time:
        return False
    for name, value in record.locations().items():
        stored = row.get(name)
        if stored is not None and stored != value:
            return False
    return True


@dataclass
class RunResult:
    """
    Structured summary of one pipeline run; the only output contract
    towards callers (CLI, scheduler, tests).
    """

    success: bool
    run_date: date
    weekday: Weekday
    state: str
    fetched_count: int = 0
    normalized_count: int = 0
    skipped_count: int = 0
    inserted_snapshot_count: int = 0
    inserted_cumulative_count: int = 0
    persisted: bool = False
    error: Optional[str] = None
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["run_date"] = self.run_date.isoformat()
        data["weekday"] = self.weekday.value
        return data
