"""Error hierarchy for the ingestion pipeline.

Run-level errors (FetchError, StoreUnavailable) end up in the RunResult;
row-level SkipSignal never leaves the pipeline; PartialInsertError carries
how far a reconciliation batch got before a write failed.
"""

from __future__ import annotations


class RoomScheduleError(Exception):
    """Base exception for all pipeline errors."""

    pass


class FetchError(RoomScheduleError):
    """Source unreachable, pagination malformed or file not decodable.

    Fatal for the run: nothing is persisted.
    """

    pass


class SkipSignal(RoomScheduleError):
    """A raw row lacks a required field and is dropped."""

    def __init__(self, reason: str, missing: str | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.missing = missing


class StoreError(RoomScheduleError):
    """Base exception for persistence failures."""

    pass


class StoreUnavailable(StoreError):
    """Connection to the persistence layer could not be established."""

    pass


class PartialInsertError(StoreError):
    """Some records of a batch were written before an insert failed.

    Not a run failure: the next run re-observes whatever is missing.
    """

    def __init__(self, inserted: int, failed: int, cause: str = "") -> None:
        super().__init__(f"{failed} record(s) not written after {inserted} insert(s): {cause}")
        self.inserted = inserted
        self.failed = failed
        self.cause = cause
