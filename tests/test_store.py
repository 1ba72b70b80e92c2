"""
Tests for the reconciling stores.

The same contract runs against the in-memory store and a temporary SQLite file:
- snapshot replacement for a date is exact
- cumulative append is idempotent per (loose) natural key
- only lectures and tutorials reach the cumulative table
"""

import tempfile
import unittest
from datetime import date
from pathlib import Path
from typing import Any, Dict

from roomschedule.config import Settings
from roomschedule.errors import PartialInsertError, StoreError, StoreUnavailable
from roomschedule.model import EventKind, Record, Weekday
from roomschedule.store import MemoryStore, MongoStore, SqliteStore, open_store

DAY = date(2026, 3, 10)
NEXT_DAY = date(2026, 3, 11)


def make_record(title: str = "Álgebra", kind: EventKind = EventKind.LECTURE, day: date = DAY, **kw: Any) -> Record:
    fields: Dict[str, Any] = {"start_time": "10:00", "end_time": "11:00"}
    fields.update(kw)
    return Record(kind=kind, title=title, snapshot_date=day, weekday=Weekday.from_date(day), **fields)


class StoreContract:
    """Mixed into a TestCase together with a make_store() factory."""

    def make_store(self):
        raise NotImplementedError

    def setUp(self) -> None:
        self.store = self.make_store()

    def tearDown(self) -> None:
        self.store.close()

    def test_snapshot_replace_is_exact(self) -> None:
        self.store.replace_snapshot([make_record("Viejo"), make_record("Antiguo")], DAY)
        self.store.replace_snapshot([make_record("Otro día", day=NEXT_DAY)], NEXT_DAY)

        new = [make_record("Álgebra", room="B201"), make_record("Física", kind=EventKind.OTHER)]
        n = self.store.replace_snapshot(new, DAY)

        self.assertEqual(n, 2)
        self.assertEqual(self.store.snapshot(DAY), [r.snapshot_row() for r in new])
        self.assertEqual(len(self.store.snapshot(NEXT_DAY)), 1)

    def test_snapshot_replace_with_empty_set_clears_day(self) -> None:
        self.store.replace_snapshot([make_record()], DAY)
        self.assertEqual(self.store.replace_snapshot([], DAY), 0)
        self.assertEqual(self.store.snapshot(DAY), [])

    def test_snapshot_keeps_extra_columns(self) -> None:
        rec = make_record(extra=(("Profesor", "Pérez"),))
        self.store.replace_snapshot([rec], DAY)
        self.assertEqual(self.store.snapshot(DAY)[0]["Profesor"], "Pérez")

    def test_snapshot_keeps_classification_text(self) -> None:
        exam = make_record("Cálculo", kind=EventKind.OTHER, kind_label="Examen")
        talk = make_record("Charla", kind=EventKind.OTHER)
        self.store.replace_snapshot([exam, talk], DAY)

        rows = {r["title"]: r for r in self.store.snapshot(DAY)}
        self.assertEqual(rows["Cálculo"]["kind"], "Other")
        self.assertEqual(rows["Cálculo"]["kind_label"], "Examen")
        self.assertNotIn("kind_label", rows["Charla"])

    def test_cumulative_append_is_idempotent(self) -> None:
        records = [make_record("Álgebra"), make_record("Cálculo", kind=EventKind.TUTORIAL)]

        self.assertEqual(self.store.append_deduplicated(records, DAY, Weekday.TUESDAY), 2)
        self.assertEqual(self.store.append_deduplicated(records, DAY, Weekday.TUESDAY), 0)
        self.assertEqual(self.store.append_deduplicated(records, NEXT_DAY, Weekday.WEDNESDAY), 0)
        self.assertEqual(len(self.store.cumulative()), 2)

    def test_cumulative_skips_other_kinds(self) -> None:
        records = [make_record("Prueba", kind=EventKind.OTHER), make_record("Álgebra")]
        self.assertEqual(self.store.append_deduplicated(records, DAY, Weekday.TUESDAY), 1)
        self.assertEqual([r["title"] for r in self.store.cumulative()], ["Álgebra"])

    def test_duplicates_within_one_batch(self) -> None:
        records = [make_record(), make_record()]
        self.assertEqual(self.store.append_deduplicated(records, DAY, Weekday.TUESDAY), 1)

    def test_missing_optional_field_does_not_discriminate(self) -> None:
        self.store.append_deduplicated([make_record()], DAY, Weekday.TUESDAY)
        inserted = self.store.append_deduplicated([make_record(room="B201")], NEXT_DAY, Weekday.WEDNESDAY)
        self.assertEqual(inserted, 0)
        self.assertEqual(len(self.store.cumulative()), 1)

    def test_missing_optional_field_on_incoming_record(self) -> None:
        self.store.append_deduplicated([make_record(room="B201")], DAY, Weekday.TUESDAY)
        inserted = self.store.append_deduplicated([make_record()], NEXT_DAY, Weekday.WEDNESDAY)
        self.assertEqual(inserted, 0)

    def test_conflicting_optional_values_are_distinct(self) -> None:
        self.store.append_deduplicated([make_record(room="B201")], DAY, Weekday.TUESDAY)
        inserted = self.store.append_deduplicated([make_record(room="C105")], DAY, Weekday.TUESDAY)
        self.assertEqual(inserted, 1)
        self.assertEqual(len(self.store.cumulative()), 2)

    def test_different_times_are_distinct(self) -> None:
        self.store.append_deduplicated([make_record()], DAY, Weekday.TUESDAY)
        inserted = self.store.append_deduplicated(
            [make_record(start_time="12:00", end_time="13:00")], DAY, Weekday.TUESDAY
        )
        self.assertEqual(inserted, 1)

    def test_cumulative_rows_are_tagged(self) -> None:
        self.store.append_deduplicated([make_record(campus="Viña")], DAY, Weekday.TUESDAY)
        row = self.store.cumulative()[0]
        self.assertEqual(row["snapshot_date"], "2026-03-10")
        self.assertEqual(row["weekday"], "Tuesday")
        self.assertEqual(row["kind"], "Lecture")
        self.assertEqual(row["campus"], "Viña")
        self.assertNotIn("room", row)


class TestMemoryStore(StoreContract, unittest.TestCase):
    def make_store(self):
        return MemoryStore()


class TestSqliteStore(StoreContract, unittest.TestCase):
    def make_store(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        return SqliteStore(str(Path(self._tmp.name) / "salas.db"))

    def test_data_survives_reopen(self) -> None:
        self.store.append_deduplicated([make_record()], DAY, Weekday.TUESDAY)
        self.store.close()

        reopened = SqliteStore(self.store.path)
        self.addCleanup(reopened.close)
        self.assertEqual(reopened.append_deduplicated([make_record()], NEXT_DAY, Weekday.WEDNESDAY), 0)
        self.assertEqual(len(reopened.cumulative()), 1)

    def test_unreachable_path_is_store_unavailable(self) -> None:
        store = SqliteStore(str(Path(self._tmp.name) / "missing" / "dir" / "salas.db"))
        with self.assertRaises(StoreUnavailable):
            store.replace_snapshot([make_record()], DAY)

    def test_invalid_table_name_rejected(self) -> None:
        with self.assertRaises(ValueError):
            SqliteStore(":memory:", snapshot_table="eventos; DROP TABLE x")


class FlakyStore(MemoryStore):
    """Fails on the n-th cumulative insert."""

    write_errors = (RuntimeError,)

    def __init__(self, fail_on: int) -> None:
        super().__init__()
        self.fail_on = fail_on
        self.attempts = 0

    def _insert_cumulative(self, row):
        self.attempts += 1
        if self.attempts == self.fail_on:
            raise RuntimeError("transient write fault")
        super()._insert_cumulative(row)


class TestPartialInsert(unittest.TestCase):
    def test_failure_aborts_rest_of_batch(self) -> None:
        store = FlakyStore(fail_on=2)
        records = [make_record("A"), make_record("B"), make_record("C")]

        with self.assertRaises(PartialInsertError) as ctx:
            store.append_deduplicated(records, DAY, Weekday.TUESDAY)

        self.assertEqual(ctx.exception.inserted, 1)
        self.assertEqual(ctx.exception.failed, 2)
        self.assertEqual(ctx.exception.cause, "transient write fault")
        self.assertEqual([r["title"] for r in store.cumulative()], ["A"])

    def test_next_run_heals_missing_rows(self) -> None:
        store = FlakyStore(fail_on=2)
        records = [make_record("A"), make_record("B"), make_record("C")]
        with self.assertRaises(PartialInsertError):
            store.append_deduplicated(records, DAY, Weekday.TUESDAY)

        self.assertEqual(store.append_deduplicated(records, NEXT_DAY, Weekday.WEDNESDAY), 2)
        self.assertEqual(sorted(r["title"] for r in store.cumulative()), ["A", "B", "C"])


class TestExistenceCheckFailure(unittest.TestCase):
    def test_failed_lookup_is_a_store_failure(self) -> None:
        class BrokenLookupStore(MemoryStore):
            write_errors = (RuntimeError,)

            def _has_cumulative(self, record):
                raise StoreUnavailable("connection lost")

        store = BrokenLookupStore()
        with self.assertRaises(StoreUnavailable):
            store.append_deduplicated([make_record("A")], DAY, Weekday.TUESDAY)
        self.assertEqual(store.cumulative(), [])

    def test_sqlite_lookup_error_is_store_error(self) -> None:
        with tempfile.TemporaryDirectory() as d:
            store = SqliteStore(str(Path(d) / "salas.db"))
            try:
                store.append_deduplicated([make_record("A")], DAY, Weekday.TUESDAY)
                store._connection().execute("DROP TABLE all_eventos")
                with self.assertRaises(StoreError) as ctx:
                    store.append_deduplicated([make_record("B")], DAY, Weekday.TUESDAY)
                self.assertNotIsInstance(ctx.exception, PartialInsertError)
            finally:
                store.close()


class TestOpenStore(unittest.TestCase):
    def test_schemes(self) -> None:
        settings = Settings(snapshot_table="snap", cumulative_table="cum")
        self.assertIsInstance(open_store("memory://", settings), MemoryStore)

        sqlite_store = open_store("sqlite:///:memory:", settings)
        self.assertIsInstance(sqlite_store, SqliteStore)
        self.assertEqual(sqlite_store.path, ":memory:")
        self.assertEqual(sqlite_store.cumulative_table, "cum")

        mongo = open_store("mongodb://localhost:27017", settings)
        self.assertIsInstance(mongo, MongoStore)
        self.assertEqual(mongo.snapshot_collection, "snap")

    def test_unknown_scheme(self) -> None:
        with self.assertRaises(ValueError):
            open_store("ftp://example.test/db", Settings())


if __name__ == "__main__":
    unittest.main()
