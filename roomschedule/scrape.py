"""
Page fetchers (source -> raw rows).

Two ways to read the daily room/event listing:
- ListingFetcher: walks the paginated HTML listing page by page
- WorkbookFetcher: decodes the exported spreadsheet in one shot

Both only hand out raw rows; turning them into Records is the normalizer's job.
"""

from __future__ import annotations

import re
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import pandas as pd
import requests
from bs4 import BeautifulSoup
from bs4.element import Tag
from tenacity import Retrying, retry_if_exception, stop_after_attempt, wait_fixed

from roomschedule.errors import FetchError
from roomschedule.logging import get_logger
from roomschedule.model import Page, RawRow

log = get_logger(__name__)


# ---------------------------------------------------------------------------
# Fetcher contract
# ---------------------------------------------------------------------------


class PageFetcher:
    """
    Yields pages of raw rows until the source is exhausted.

    next_page() is called repeatedly until it returns done=True or raises
    FetchError. A source with nothing published for the day is not an error:
    it answers Page(rows=[], done=True).
    """

    def next_page(self) -> Page:
        raise NotImplementedError


# ---------------------------------------------------------------------------
# Paginated HTML listing
# ---------------------------------------------------------------------------

PAGINATION_SELECTOR = ".pagination, .pager, nav[aria-label*='agination']"


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, (requests.ConnectionError, requests.Timeout)):
        return True
    if isinstance(exc, requests.HTTPError) and exc.response is not None:
        return exc.response.status_code >= 500
    return False


def parse_table(table: Tag) -> List[RawRow]:
    """
    Turn one <table> into raw rows.

    With a header row the rows are dicts keyed by header text, otherwise
    plain lists of cell texts (positional).
    """
    headers: List[str] = []
    header_row = table.select_one("thead tr") or table.find("tr")
    if header_row is not None and header_row.find("th") is not None:
        headers = [th.get_text(" ", strip=True) for th in header_row.find_all(["th", "td"])]

    rows: List[RawRow] = []
    for tr in table.find_all("tr"):
        cells = tr.find_all("td")
        if not cells:
            continue
        values = [td.get_text(" ", strip=True) for td in cells]
        if headers:
            rows.append(dict(zip(headers, values)))
        else:
            rows.append(values)
    return rows


def detect_page_count(soup: BeautifulSoup, page_param: str = "page") -> int:
    """
    Read the number of pages from the pagination controls of the first page.

    No pagination control means a single page. A control without any page
    number in it cannot be interpreted and raises FetchError.
    """
    nav = soup.select_one(PAGINATION_SELECTOR)
    if nav is None:
        return 1

    href_re = re.compile(rf"[?&]{re.escape(page_param)}=(\d+)")
    numbers: List[int] = []
    for a in nav.find_all(["a", "span", "li"]):
        text = a.get_text(strip=True)
        if text.isdigit():
            numbers.append(int(text))
        href = a.get("href") if a.name == "a" else None
        if href:
            m = href_re.search(href)
            if m:
                numbers.append(int(m.group(1)))

    if not numbers:
        raise FetchError("Pagination control found but no page numbers in it")
    return max(numbers)


class ListingFetcher(PageFetcher):
    """
    Fetch page N of the HTML listing and parse its table.

    The page count is detected once from the first page. Successive
    requests are spaced by a fixed delay; each single request is retried a
    bounded number of times on transient transport errors.
    """

    def __init__(
        self,
        url: str,
        *,
        page_param: str = "page",
        params: Optional[Dict[str, Any]] = None,
        table_selector: str = "table",
        delay_seconds: float = 1.0,
        timeout: float = 30.0,
        max_attempts: int = 3,
        retry_wait: float = 2.0,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.url = url
        self.page_param = page_param
        self.params = dict(params or {})
        self.table_selector = table_selector
        self.delay_seconds = delay_seconds
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.retry_wait = retry_wait
        self.session = session or requests.Session()
        self._sleep = sleep

        self.page_number = 0
        self.page_count: Optional[int] = None
        self._done = False

    def _get(self, number: int) -> str:
        params = dict(self.params)
        params[self.page_param] = number

        try:
            for attempt in Retrying(
                stop=stop_after_attempt(self.max_attempts),
                wait=wait_fixed(self.retry_wait),
                retry=retry_if_exception(_is_transient),
                reraise=True,
            ):
                with attempt:
                    resp = self.session.get(self.url, params=params, timeout=self.timeout)
                    resp.raise_for_status()
        except requests.RequestException as e:
            log.warning("page_fetch_failed", url=self.url, page=number, error=str(e))
            raise FetchError(f"Could not fetch page {number} of {self.url}: {e}") from e

        return resp.text

    def next_page(self) -> Page:
        if self._done:
            return Page([], True)

        number = self.page_number + 1
        if number > 1 and self.delay_seconds > 0:
            self._sleep(self.delay_seconds)

        soup = BeautifulSoup(self._get(number), "html.parser")
        if number == 1:
            self.page_count = detect_page_count(soup, self.page_param)
            log.info("listing_opened", url=self.url, pages=self.page_count)

        self.page_number = number
        table = soup.select_one(self.table_selector)
        if table is None:
            # Nothing published (first page) or listing ended early
            if number > 1:
                log.warning("listing_table_missing", page=number, expected_pages=self.page_count)
            self._done = True
            return Page([], True)

        rows = parse_table(table)
        self._done = number >= (self.page_count or 1)
        log.debug("page_fetched", page=number, rows=len(rows), done=self._done)
        return Page(rows, self._done)


# ---------------------------------------------------------------------------
# Exported spreadsheet
# ---------------------------------------------------------------------------


def locate_download(directory: str | Path, suffix: str = ".xlsx") -> Optional[Path]:
    """
    Return the newest downloaded file with the given suffix, or None.
    """
    folder = Path(directory)
    if not folder.is_dir():
        return None
    candidates = [p for p in folder.iterdir() if p.is_file() and p.suffix.lower() == suffix]
    if not candidates:
        return None
    return max(candidates, key=lambda p: p.stat().st_mtime)


def _blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, float) and value != value:  # NaN
        return True
    return not str(value).strip()


def read_workbook(path: str | Path, sheet: int | str = 0) -> List[Dict[str, Any]]:
    """
    Decode a spreadsheet (or CSV export) into header-keyed rows.

    CSV cells are read as text. Spreadsheet cells keep their native type
    (time-of-day cells arrive as datetime.time, numbers as numbers) so the
    normalizer can render them; blank cells become None and fully blank rows
    are dropped.
    """
    file_path = Path(path)
    if not file_path.is_file():
        raise FetchError(f"Spreadsheet not found: {file_path}")

    try:
        if file_path.suffix.lower() == ".csv":
            df = pd.read_csv(file_path, dtype=str, keep_default_na=False)
        else:
            df = pd.read_excel(file_path, sheet_name=sheet, keep_default_na=False)
    except pd.errors.EmptyDataError:
        return []
    except (ValueError, OSError) as e:
        raise FetchError(f"Could not decode {file_path.name}: {e}") from e

    df = df.astype(object).where(df.notna(), None)
    df.columns = [str(c).strip() for c in df.columns]

    rows: List[Dict[str, Any]] = []
    for row in df.to_dict(orient="records"):
        cleaned = {k: (None if _blank(v) else v) for k, v in row.items()}
        if any(v is not None for v in cleaned.values()):
            rows.append(cleaned)
    return rows


class WorkbookFetcher(PageFetcher):
    """
    Single-shot fetcher: the whole file is one page, done immediately.

    path=None means no file was produced for the day (e.g. the export
    button was missing) and is reported as an empty listing.
    """

    def __init__(self, path: str | Path | None, sheet: int | str = 0) -> None:
        self.path = Path(path) if path is not None else None
        self.sheet = sheet
        self._consumed = False

    def next_page(self) -> Page:
        if self._consumed:
            return Page([], True)
        self._consumed = True

        if self.path is None:
            log.info("workbook_missing", reason="no_download")
            return Page([], True)

        rows = read_workbook(self.path, self.sheet)
        log.info("workbook_decoded", file=self.path.name, rows=len(rows))
        return Page(list(rows), True)
