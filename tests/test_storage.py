"""
Tests for storage backends and transaction support
"""

import pytest
import tempfile
import threading
from pathlib import Path

from aml_returns.storage import (
    DuplicateKeyError, InMemoryStorage, SQLiteStorage, parse_optional_datetime
)


# Test data
test_data = {
    "id": "record_1",
    "organization_id": "org-1",
    "month": 12,
    "year": 2024,
    "status": "draft",
}


@pytest.fixture
def sqlite_storage():
    """SQLite storage in a temporary directory"""
    with tempfile.TemporaryDirectory() as temp_dir:
        storage = SQLiteStorage(Path(temp_dir) / "test.db")
        yield storage
        storage.close()


@pytest.fixture(params=["memory", "sqlite"])
def storage(request):
    """Run a test against both backends"""
    if request.param == "memory":
        yield InMemoryStorage()
    else:
        with tempfile.TemporaryDirectory() as temp_dir:
            backend = SQLiteStorage(Path(temp_dir) / "test.db")
            yield backend
            backend.close()


class TestBasicOperations:
    """Test CRUD operations on both backends"""

    def test_save_and_load(self, storage):
        storage.save("submissions", "record_1", test_data)
        assert storage.load("submissions", "record_1") == test_data
        assert storage.load("submissions", "missing") is None

    def test_exists_count_and_load_all(self, storage):
        storage.save("submissions", "record_1", test_data)
        storage.save("submissions", "record_2", dict(test_data, id="record_2", month=11))

        assert storage.exists("submissions", "record_1")
        assert not storage.exists("submissions", "record_3")
        assert storage.count("submissions") == 2
        assert len(storage.load_all("submissions")) == 2

    def test_find_matches_all_filters(self, storage):
        storage.save("submissions", "record_1", test_data)
        storage.save("submissions", "record_2", dict(test_data, id="record_2", status="approved"))

        results = storage.find("submissions", {"organization_id": "org-1", "status": "approved"})
        assert [r["id"] for r in results] == ["record_2"]
        assert len(storage.find("submissions", {})) == 2
        assert storage.find("submissions", {"unknown_field": 1}) == []

    def test_save_overwrites(self, storage):
        storage.save("submissions", "record_1", test_data)
        storage.save("submissions", "record_1", dict(test_data, status="submitted"))

        assert storage.count("submissions") == 1
        assert storage.load("submissions", "record_1")["status"] == "submitted"

    def test_delete(self, storage):
        storage.save("submissions", "record_1", test_data)
        assert storage.delete("submissions", "record_1")
        assert not storage.delete("submissions", "record_1")
        assert storage.count("submissions") == 0

    def test_none_filter_matches_missing_field(self, storage):
        storage.save("users", "admin", {"id": "admin", "organization_id": None})
        storage.save("users", "legacy", {"id": "legacy"})
        storage.save("users", "officer", {"id": "officer", "organization_id": "org-1"})

        assert sorted(r["id"] for r in storage.find("users", {"organization_id": None})) == ["admin", "legacy"]
        assert [r["id"] for r in storage.find("users", {"organization_id": "org-1"})] == ["officer"]

    def test_find_by_boolean_and_integer(self, storage):
        storage.save("organizations", "a", {"id": "a", "is_active": True, "rank": 1})
        storage.save("organizations", "b", {"id": "b", "is_active": False, "rank": 2})

        assert [r["id"] for r in storage.find("organizations", {"is_active": False})] == ["b"]
        assert [r["id"] for r in storage.find("organizations", {"rank": 1})] == ["a"]

    def test_loaded_records_are_copies(self):
        storage = InMemoryStorage()
        storage.save("submissions", "record_1", test_data)

        loaded = storage.load("submissions", "record_1")
        loaded["status"] = "approved"
        assert storage.load("submissions", "record_1")["status"] == "draft"


class TestUniqueKeys:
    """Test the per-record unique key constraint"""

    def test_duplicate_unique_key_rejected(self, storage):
        storage.insert("submissions", "a", test_data, unique_key="period:org-1:2024:12")

        with pytest.raises(DuplicateKeyError) as exc_info:
            storage.insert("submissions", "b", dict(test_data, id="b"), unique_key="period:org-1:2024:12")

        assert exc_info.value.table == "submissions"
        assert storage.count("submissions") == 1

    def test_duplicate_id_rejected(self, storage):
        storage.insert("submissions", "a", test_data)
        with pytest.raises(DuplicateKeyError):
            storage.insert("submissions", "a", test_data)

    def test_distinct_keys_allowed(self, storage):
        storage.insert("submissions", "a", test_data, unique_key="period:org-1:2024:12")
        storage.insert("submissions", "b", dict(test_data, id="b"), unique_key="period:org-1:2024:11")
        storage.insert("submissions", "c", dict(test_data, id="c"))
        storage.insert("submissions", "d", dict(test_data, id="d"))
        assert storage.count("submissions") == 4

    def test_save_keeps_unique_key(self, storage):
        storage.insert("submissions", "a", test_data, unique_key="period:org-1:2024:12")
        storage.save("submissions", "a", dict(test_data, status="submitted"))

        with pytest.raises(DuplicateKeyError):
            storage.insert("submissions", "b", dict(test_data, id="b"), unique_key="period:org-1:2024:12")

    def test_delete_releases_unique_key(self, storage):
        storage.insert("submissions", "a", test_data, unique_key="period:org-1:2024:12")
        storage.delete("submissions", "a")

        storage.insert("submissions", "b", dict(test_data, id="b"), unique_key="period:org-1:2024:12")
        assert storage.exists("submissions", "b")

    def test_concurrent_inserts_single_winner(self, storage):
        """Racing inserts for one key leave exactly one record"""
        errors = []
        barrier = threading.Barrier(8)

        def worker(n):
            barrier.wait()
            try:
                storage.insert("submissions", f"rec-{n}", dict(test_data, id=f"rec-{n}"),
                               unique_key="period:org-1:2024:12")
            except DuplicateKeyError as e:
                errors.append(e)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert storage.count("submissions") == 1
        assert len(errors) == 7


class TestTransactions:
    """Test atomic units of work"""

    def test_atomic_commit(self, storage):
        with storage.atomic():
            storage.save("submissions", "record_1", test_data)
            storage.save("audit_events", "event_1", {"id": "event_1"})

        assert storage.exists("submissions", "record_1")
        assert storage.exists("audit_events", "event_1")

    def test_atomic_rollback(self, storage):
        storage.save("submissions", "existing", dict(test_data, id="existing"))

        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.save("submissions", "record_1", test_data)
                storage.save("submissions", "existing", dict(test_data, id="existing", status="approved"))
                raise RuntimeError("boom")

        assert not storage.exists("submissions", "record_1")
        assert storage.load("submissions", "existing")["status"] == "draft"

    def test_rollback_restores_unique_keys(self, storage):
        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.insert("submissions", "a", test_data, unique_key="period:org-1:2024:12")
                raise RuntimeError("boom")

        storage.insert("submissions", "b", dict(test_data, id="b"), unique_key="period:org-1:2024:12")
        assert storage.count("submissions") == 1

    def test_nested_atomic_joins_outer(self, storage):
        with pytest.raises(RuntimeError):
            with storage.atomic():
                with storage.atomic():
                    storage.save("submissions", "record_1", test_data)
                raise RuntimeError("boom")

        assert not storage.exists("submissions", "record_1")


class TestSQLitePersistence:
    """Test that SQLite data survives reconnects"""

    def test_rejects_unsafe_identifiers(self, sqlite_storage):
        with pytest.raises(ValueError):
            sqlite_storage.save("users; DROP TABLE users", "a", {"id": "a"})
        with pytest.raises(ValueError):
            sqlite_storage.find("users", {"email') OR 1=1 --": "x"})

    def test_rollback_drops_new_table(self, sqlite_storage):
        with pytest.raises(RuntimeError):
            with sqlite_storage.atomic():
                sqlite_storage.save("fresh", "a", {"id": "a"})
                raise RuntimeError("boom")

        sqlite_storage.save("fresh", "b", {"id": "b"})
        assert sqlite_storage.count("fresh") == 1

    def test_reopen_database(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = Path(temp_dir) / "returns.db"

            storage = SQLiteStorage(db_path)
            storage.insert("organizations", "org-1", {"id": "org-1", "code": "BOU"}, unique_key="code:BOU")
            storage.close()

            reopened = SQLiteStorage(db_path)
            assert reopened.load("organizations", "org-1") == {"id": "org-1", "code": "BOU"}
            with pytest.raises(DuplicateKeyError):
                reopened.insert("organizations", "org-2", {"id": "org-2", "code": "BOU"}, unique_key="code:BOU")
            reopened.close()


def test_parse_optional_datetime():
    assert parse_optional_datetime(None) is None
    parsed = parse_optional_datetime("2024-12-01T10:00:00+00:00")
    assert parsed.year == 2024 and parsed.month == 12
    assert parse_optional_datetime(parsed) is parsed
