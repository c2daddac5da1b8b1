"""
Tests for storage backends, units of work and record locks
"""

import pytest
import tempfile
import threading
from pathlib import Path

from funds_core.errors import ConcurrencyError
from funds_core.storage import (
    InMemoryStorage, SQLiteStorage, DuplicateRecord, create_storage
)


def _record(record_id, **extra):
    data = {"id": record_id, "name": f"Record {record_id}"}
    data.update(extra)
    return data


class TestInMemoryStorage:
    """Basic operations and unit-of-work behaviour of InMemoryStorage"""

    def setup_method(self):
        self.storage = InMemoryStorage()

    def test_basic_operations(self):
        self.storage.save("items", "a", _record("a", kind="x"))
        self.storage.save("items", "b", _record("b", kind="y"))

        assert self.storage.load("items", "a")["name"] == "Record a"
        assert self.storage.exists("items", "b")
        assert not self.storage.exists("items", "c")
        assert self.storage.count("items") == 2
        assert [r["id"] for r in self.storage.load_all("items")] == ["a", "b"]
        assert [r["id"] for r in self.storage.find("items", {"kind": "y"})] == ["b"]

        assert self.storage.delete("items", "a")
        assert not self.storage.delete("items", "a")
        assert self.storage.load("items", "a") is None

    def test_loaded_records_are_copies(self):
        self.storage.save("items", "a", _record("a"))
        loaded = self.storage.load("items", "a")
        loaded["name"] = "changed"
        assert self.storage.load("items", "a")["name"] == "Record a"

    def test_insert_rejects_duplicates(self):
        self.storage.insert("items", "a", _record("a"))
        with pytest.raises(DuplicateRecord):
            self.storage.insert("items", "a", _record("a"))

    def test_atomic_commits_on_success(self):
        with self.storage.atomic():
            self.storage.save("items", "a", _record("a"))
            assert self.storage.in_transaction()
        assert not self.storage.in_transaction()
        assert self.storage.exists("items", "a")

    def test_atomic_rolls_back_on_error(self):
        self.storage.save("items", "a", _record("a", value=1))

        with pytest.raises(RuntimeError):
            with self.storage.atomic():
                self.storage.save("items", "a", _record("a", value=2))
                self.storage.save("items", "b", _record("b"))
                self.storage.delete("items", "a")
                raise RuntimeError("boom")

        assert self.storage.load("items", "a")["value"] == 1
        assert not self.storage.exists("items", "b")

    def test_reads_inside_unit_see_pending_writes(self):
        with self.storage.atomic():
            self.storage.save("items", "a", _record("a", kind="x"))
            assert self.storage.load("items", "a") is not None
            assert len(self.storage.find("items", {"kind": "x"})) == 1
            self.storage.delete("items", "a")
            assert self.storage.load("items", "a") is None
            assert self.storage.count("items") == 0

    def test_nested_atomic_joins_outer_unit(self):
        with pytest.raises(RuntimeError):
            with self.storage.atomic():
                with self.storage.atomic():
                    self.storage.save("items", "inner", _record("inner"))
                # Inner block finished but nothing is visible until the outer commits
                raise RuntimeError("outer fails")

        assert not self.storage.exists("items", "inner")

    def test_uncommitted_writes_invisible_to_other_threads(self):
        seen = {}

        def reader():
            seen["during"] = self.storage.load("items", "a")

        self.storage.begin_transaction()
        self.storage.save("items", "a", _record("a"))
        thread = threading.Thread(target=reader)
        thread.start()
        thread.join()
        self.storage.commit()

        assert seen["during"] is None
        assert self.storage.load("items", "a") is not None

    def test_racing_inserts_of_one_id_never_overwrite(self):
        barrier = threading.Barrier(2)
        outcomes = []
        outcomes_lock = threading.Lock()

        def insert(owner):
            try:
                with self.storage.atomic():
                    self.storage.insert("reference_codes", "TRF-AAAA2222", {"id": "TRF-AAAA2222", "owner": owner})
                    # Both units pass the insert check before either commits
                    barrier.wait()
                outcome = "committed"
            except ConcurrencyError:
                outcome = "conflict"
            with outcomes_lock:
                outcomes.append((owner, outcome))

        threads = [threading.Thread(target=insert, args=(owner,)) for owner in ("t1", "t2")]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert sorted(outcome for _, outcome in outcomes) == ["committed", "conflict"]
        winner = next(owner for owner, outcome in outcomes if outcome == "committed")
        assert self.storage.load("reference_codes", "TRF-AAAA2222")["owner"] == winner
        assert self.storage.count("reference_codes") == 1

    def test_reinsert_after_delete_in_same_unit(self):
        self.storage.save("items", "a", _record("a"))
        with self.storage.atomic():
            self.storage.delete("items", "a")
            self.storage.insert("items", "a", _record("a"))
        assert self.storage.exists("items", "a")


class TestRecordLocks:
    """Per-record lock registry"""

    def test_lock_timeout_raises_concurrency_error(self):
        storage = InMemoryStorage(lock_timeout=0.1)
        held = threading.Event()
        release = threading.Event()

        def holder():
            with storage.lock_records([("accounts", "a")]):
                held.set()
                release.wait(5)

        thread = threading.Thread(target=holder)
        thread.start()
        held.wait(5)
        try:
            with pytest.raises(ConcurrencyError):
                with storage.lock_records([("accounts", "a")]):
                    pass
        finally:
            release.set()
            thread.join()

    def test_disjoint_records_do_not_contend(self):
        storage = InMemoryStorage(lock_timeout=0.1)
        held = threading.Event()
        release = threading.Event()

        def holder():
            with storage.lock_records([("accounts", "a")]):
                held.set()
                release.wait(5)

        thread = threading.Thread(target=holder)
        thread.start()
        held.wait(5)
        try:
            with storage.lock_records([("accounts", "b")]):
                pass
        finally:
            release.set()
            thread.join()

    def test_locks_are_reentrant(self):
        storage = InMemoryStorage(lock_timeout=0.1)
        with storage.lock_records([("accounts", "a"), ("accounts", "b")]):
            with storage.lock_records([("accounts", "a")]):
                pass


class TestSQLiteStorage:
    """SQLite persistence and transactions"""

    def setup_method(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.db_path = Path(self.temp_dir.name) / "funds.db"
        self.storage = SQLiteStorage(self.db_path)

    def teardown_method(self):
        self.storage.close()
        self.temp_dir.cleanup()

    def test_basic_operations(self):
        self.storage.save("items", "a", _record("a", kind="x"))
        self.storage.save("items", "b", _record("b", kind="y"))
        self.storage.save("items", "a", _record("a", kind="z"))

        assert self.storage.load("items", "a")["kind"] == "z"
        assert self.storage.count("items") == 2
        assert [r["id"] for r in self.storage.load_all("items")] == ["a", "b"]
        assert [r["id"] for r in self.storage.find("items", {"kind": "y"})] == ["b"]
        assert self.storage.delete("items", "b")
        assert not self.storage.exists("items", "b")

    def test_insert_rejects_duplicates(self):
        self.storage.insert("items", "a", _record("a"))
        with pytest.raises(DuplicateRecord):
            self.storage.insert("items", "a", _record("a"))

    def test_atomic_rolls_back_on_error(self):
        self.storage.save("items", "a", _record("a", value=1))

        with pytest.raises(RuntimeError):
            with self.storage.atomic():
                self.storage.save("items", "a", _record("a", value=2))
                self.storage.save("items", "b", _record("b"))
                raise RuntimeError("boom")

        assert self.storage.load("items", "a")["value"] == 1
        assert not self.storage.exists("items", "b")
        assert not self.storage.in_transaction()

    def test_rollback_of_first_write_to_new_table(self):
        with pytest.raises(RuntimeError):
            with self.storage.atomic():
                self.storage.save("fresh", "a", _record("a"))
                raise RuntimeError("boom")

        # Table creation was rolled back too; using it again must still work
        self.storage.save("fresh", "b", _record("b"))
        assert self.storage.count("fresh") == 1

    def test_data_survives_reopen(self):
        self.storage.save("items", "a", _record("a"))
        self.storage.close()

        self.storage = SQLiteStorage(self.db_path)
        assert self.storage.load("items", "a")["name"] == "Record a"


class TestCreateStorage:
    """Database URL parsing"""

    def test_memory_url(self):
        assert isinstance(create_storage("memory://"), InMemoryStorage)

    def test_sqlite_url(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            storage = create_storage(f"sqlite:///{temp_dir}/x.db")
            try:
                assert isinstance(storage, SQLiteStorage)
                assert storage.db_path.endswith("x.db")
            finally:
                storage.close()

    def test_unknown_url(self):
        with pytest.raises(ValueError):
            create_storage("postgresql://localhost/db")
