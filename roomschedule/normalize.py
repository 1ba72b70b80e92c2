"""
Normalization (raw row -> Record).

Rules:
- title, start and end are required; a row without them is skipped, never fatal
- location fields are trimmed, blanks are dropped (None), never ""
- the classification column maps onto a closed set of kinds, unknown -> Other
- snapshot date and weekday come from the run date, not from the row
"""

from __future__ import annotations

import re
import unicodedata
from datetime import date, datetime, time
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple

from roomschedule.errors import SkipSignal
from roomschedule.model import EventKind, RawRow, Record, Weekday


REQUIRED_FIELDS = ("title", "start_time", "end_time")
TIME_FIELDS = ("start_time", "end_time")

# Header aliases of the exported sheet / HTML listing (matched without case or accents)
DEFAULT_COLUMNS: Dict[str, Tuple[str, ...]] = {
    "title": ("Evento", "Event", "Asignatura", "Title"),
    "start_time": ("Inicio", "Hora Inicio", "Start", "Start Time"),
    "end_time": ("Fin", "Hora Fin", "Termino", "End", "End Time"),
    "kind": ("Tipo", "Type", "Kind"),
    "room": ("Sala", "Room"),
    "building": ("Edificio", "Building"),
    "campus": ("Campus", "Sede"),
}

KIND_ALIASES: Dict[str, EventKind] = {
    "catedra": EventKind.LECTURE,
    "clase": EventKind.LECTURE,
    "lecture": EventKind.LECTURE,
    "ayudantia": EventKind.TUTORIAL,
    "tutorial": EventKind.TUTORIAL,
}


# 9:00, 09:00, 09:00:00 (spreadsheet text of a time cell)
_CLOCK = re.compile(r"^(\d{1,2}):(\d{2})(?::\d{2}(?:\.\d+)?)?$")


def _fold(text: str) -> str:
    """Lowercase and strip accents: 'Cátedra' -> 'catedra'."""
    decomposed = unicodedata.normalize("NFKD", text.strip())
    return "".join(c for c in decomposed if not unicodedata.combining(c)).casefold()


def classify_kind(value: Any) -> EventKind:
    if value is None:
        return EventKind.OTHER
    return KIND_ALIASES.get(_fold(str(value)), EventKind.OTHER)


def clean_value(value: Any) -> Optional[str]:
    """
    Trimmed text of a cell, or None when the cell is blank.

    Time-of-day cells are rendered as HH:MM; whole floats lose their '.0'.
    """
    if value is None:
        return None
    if isinstance(value, (datetime, time)):
        return value.strftime("%H:%M")
    if isinstance(value, float):
        if value != value:  # NaN
            return None
        if value.is_integer():
            value = int(value)
    text = str(value).strip()
    return text or None


def clean_time(value: Any) -> Optional[str]:
    """Like clean_value, but clock text is rendered HH:MM; other text is kept."""
    text = clean_value(value)
    if text is None:
        return None
    m = _CLOCK.match(text)
    if m and int(m.group(1)) < 24:
        return f"{int(m.group(1)):02d}:{m.group(2)}"
    return text


class Normalizer:
    """
    Converts raw rows into Records.

    Name-keyed rows are looked up through `columns` (field -> header aliases);
    positional rows through `positions` (field -> index).
    """

    def __init__(
        self,
        columns: Optional[Mapping[str, Sequence[str]]] = None,
        positions: Optional[Mapping[str, int]] = None,
    ) -> None:
        self.columns = {k: tuple(v) for k, v in (columns or DEFAULT_COLUMNS).items()}
        self.positions = dict(positions or {})
        self._folded = {name: {_fold(a) for a in aliases} for name, aliases in self.columns.items()}

    def _map_keyed(self, raw: Mapping[str, Any]) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        fields: Dict[str, Any] = {}
        extra: Dict[str, Any] = {}
        for key, value in raw.items():
            folded = _fold(str(key))
            for name, aliases in self._folded.items():
                if folded in aliases and name not in fields:
                    fields[name] = value
                    break
            else:
                extra[str(key).strip()] = value
        return fields, extra

    def _map_positional(self, raw: Sequence[Any]) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        fields: Dict[str, Any] = {}
        for name, index in self.positions.items():
            if 0 <= index < len(raw):
                fields[name] = raw[index]
        return fields, {}

    def normalize(self, raw: RawRow, run_date: date) -> Record:
        """
        Build one Record from one raw row.

        Raises SkipSignal when a required field is missing or blank.
        """
        if isinstance(raw, Mapping):
            fields, extra = self._map_keyed(raw)
        elif isinstance(raw, Sequence) and not isinstance(raw, (str, bytes)):
            fields, extra = self._map_positional(raw)
        else:
            raise SkipSignal(f"Unsupported row type: {type(raw).__name__}")

        values = {
            name: clean_time(v) if name in TIME_FIELDS else clean_value(v) for name, v in fields.items()
        }
        for name in REQUIRED_FIELDS:
            if values.get(name) is None:
                raise SkipSignal(f"Missing required field {name!r}", missing=name)

        extra_pairs = []
        for key, value in extra.items():
            text = clean_value(value)
            if key and text is not None:
                extra_pairs.append((key, text))

        return Record(
            kind=classify_kind(fields.get("kind")),
            title=values["title"],
            start_time=values["start_time"],
            end_time=values["end_time"],
            snapshot_date=run_date,
            room=values.get("room"),
            building=values.get("building"),
            campus=values.get("campus"),
            weekday=Weekday.from_date(run_date),
            kind_label=values.get("kind"),
            extra=tuple(extra_pairs),
        )
