"""
Run orchestration: fetch -> normalize -> reconcile.

One run walks the fetcher's pages in order, normalizes each page as soon as
it arrives, and only when the source is exhausted hands the whole record set
to the store. A fetch failure ends the run before anything is written.

Runs are not coordinated with each other; two overlapping runs for the same
date can interleave their snapshot replacements, so schedule them serially.
"""

from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from typing import List, Optional
from zoneinfo import ZoneInfo

from roomschedule.config import Settings
from roomschedule.errors import FetchError, PartialInsertError, SkipSignal, StoreError
from roomschedule.logging import get_logger
from roomschedule.model import Record, RunResult, Weekday
from roomschedule.normalize import Normalizer
from roomschedule.scrape import PageFetcher
from roomschedule.store import ReconcilingStore, open_store

log = get_logger(__name__)


class PipelineState(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    NORMALIZING = "normalizing"
    RECONCILING = "reconciling"
    DONE = "done"
    FAILED = "failed"


def today_in(timezone: str) -> date:
    return datetime.now(ZoneInfo(timezone)).date()


class Pipeline:
    """
    Drives one PageFetcher through a Normalizer into a ReconcilingStore.

    Without a store the run is fetch-and-normalize only: store operations
    are not attempted at all.
    """

    def __init__(
        self,
        fetcher: PageFetcher,
        normalizer: Optional[Normalizer] = None,
        store: Optional[ReconcilingStore] = None,
        timezone: str = "UTC",
    ) -> None:
        self.fetcher = fetcher
        self.normalizer = normalizer or Normalizer()
        self.store = store
        self.timezone = timezone
        self.state = PipelineState.IDLE

    def _enter(self, state: PipelineState) -> None:
        log.debug("pipeline_state", previous=self.state.value, state=state.value)
        self.state = state

    def run(self, run_date: Optional[date] = None) -> RunResult:
        """
        Execute one run and return its summary. Never raises for fetch or
        store failures; those are reported in the result.
        """
        # Fixed once: every record of this run shares date and weekday
        run_date = run_date or today_in(self.timezone)
        weekday = Weekday.from_date(run_date)
        result = RunResult(success=False, run_date=run_date, weekday=weekday, state=self.state.value)
        log.info("run_started", run_date=run_date.isoformat(), weekday=weekday.value)

        records: List[Record] = []
        try:
            while True:
                self._enter(PipelineState.FETCHING)
                page = self.fetcher.next_page()
                result.fetched_count += len(page.rows)

                self._enter(PipelineState.NORMALIZING)
                for raw in page.rows:
                    try:
                        records.append(self.normalizer.normalize(raw, run_date))
                    except SkipSignal as e:
                        result.skipped_count += 1
                        log.debug("row_skipped", reason=e.reason)

                if page.done:
                    break
        except FetchError as e:
            self._enter(PipelineState.FAILED)
            result.state = self.state.value
            result.error = str(e)
            log.error("run_failed", stage="fetch", error=str(e), fetched=result.fetched_count)
            return result

        result.normalized_count = len(records)

        self._enter(PipelineState.RECONCILING)
        if self.store is None:
            log.info("persistence_skipped", reason="no_store_configured")
            result.success = True
        else:
            result.success = self._reconcile(self.store, records, run_date, weekday, result)

        self._enter(PipelineState.DONE)
        result.state = self.state.value
        log.info(
            "run_finished",
            success=result.success,
            fetched=result.fetched_count,
            normalized=result.normalized_count,
            skipped=result.skipped_count,
            snapshot=result.inserted_snapshot_count,
            cumulative=result.inserted_cumulative_count,
        )
        return result

    def _reconcile(
        self, store: ReconcilingStore, records: List[Record], run_date: date, weekday: Weekday, result: RunResult
    ) -> bool:
        # An empty run still clears the day's stale snapshot
        try:
            result.inserted_snapshot_count = store.replace_snapshot(records, run_date)
        except PartialInsertError as e:
            result.inserted_snapshot_count = e.inserted
            result.warnings.append(str(e))
        except StoreError as e:
            result.error = str(e)
            log.error("run_failed", stage="snapshot", error=str(e))
            return False
        result.persisted = True

        if not records:
            return True

        try:
            result.inserted_cumulative_count = store.append_deduplicated(records, run_date, weekday)
        except PartialInsertError as e:
            result.inserted_cumulative_count = e.inserted
            result.warnings.append(str(e))
        except StoreError as e:
            result.error = str(e)
            log.error("run_failed", stage="cumulative", error=str(e))
            return False
        return True


def run_once(
    settings: Settings,
    fetcher: PageFetcher,
    run_date: Optional[date] = None,
    normalizer: Optional[Normalizer] = None,
) -> RunResult:
    """
    Open the configured store (if any), run the pipeline once, close the store.
    """
    if not settings.store_uri:
        log.warning("store_not_configured", hint="set STORE_URI or MONGODB_URI to persist")
        return Pipeline(fetcher, normalizer, None, timezone=settings.timezone).run(run_date)

    with open_store(settings.store_uri, settings) as store:
        return Pipeline(fetcher, normalizer, store, timezone=settings.timezone).run(run_date)
