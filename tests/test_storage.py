"""
Tests for storage backends and transaction support
"""

import pytest
import tempfile
from datetime import datetime, timezone, date
from decimal import Decimal
from pathlib import Path

from loan_engine.storage import InMemoryStorage, SQLiteStorage, StorageRecord


test_data = {
    "id": "pay_001",
    "loan_id": "LOAN001",
    "amount": "3000.00",
    "payment_date": "2024-02-15",
    "created_at": datetime.now(timezone.utc).isoformat(),
    "updated_at": datetime.now(timezone.utc).isoformat()
}


@pytest.fixture(params=["memory", "sqlite"])
def storage(request):
    """Each test runs against both backends"""
    if request.param == "memory":
        backend = InMemoryStorage()
        yield backend
        backend.close()
    else:
        with tempfile.TemporaryDirectory() as temp_dir:
            backend = SQLiteStorage(Path(temp_dir) / "test.db")
            yield backend
            backend.close()


class TestStorageOperations:
    """Test basic CRUD operations"""

    def test_save_and_load(self, storage):
        storage.save("payments", "pay_001", test_data)

        assert storage.load("payments", "pay_001") == test_data
        assert storage.exists("payments", "pay_001")
        assert not storage.exists("payments", "missing")
        assert storage.load("payments", "missing") is None

    def test_values_are_stored_as_strings(self, storage):
        """Decimals and dates are converted to their string form"""
        storage.save("payments", "pay_002", {
            "id": "pay_002", "amount": Decimal("10.50"), "payment_date": date(2024, 2, 15)
        })
        loaded = storage.load("payments", "pay_002")

        assert loaded["amount"] == "10.50"
        assert loaded["payment_date"] == "2024-02-15"

    def test_insert_rejects_duplicates(self, storage):
        storage.insert("payments", "pay_001", test_data)

        with pytest.raises(KeyError):
            storage.insert("payments", "pay_001", test_data)

    def test_update_merges_fields(self, storage):
        storage.save("payments", "pay_001", test_data)
        updated = storage.update("payments", "pay_001", {"amount": Decimal("2500.00")})

        assert updated["amount"] == "2500.00"
        assert storage.load("payments", "pay_001")["payment_date"] == "2024-02-15"

    def test_update_missing_record(self, storage):
        with pytest.raises(KeyError):
            storage.update("payments", "missing", {"amount": "1"})

    def test_delete_and_count(self, storage):
        storage.save("payments", "pay_001", test_data)
        storage.save("payments", "pay_002", dict(test_data, id="pay_002"))

        assert storage.count("payments") == 2
        assert storage.delete("payments", "pay_001")
        assert not storage.delete("payments", "pay_001")
        assert storage.count("payments") == 1

        storage.clear_table("payments")
        assert storage.count("payments") == 0


class TestStorageSelect:
    """Test filtered and ordered selection"""

    def setup_rows(self, storage):
        rows = [
            ("pay_a", "LOAN001", "2024-03-10", 1),
            ("pay_b", "LOAN001", "2024-02-15", 2),
            ("pay_c", "LOAN002", "2024-02-20", 3),
            ("pay_d", "LOAN001", "2024-02-15", 4),
        ]
        for record_id, loan_id, payment_date, sequence in rows:
            storage.save("payments", record_id, {
                "id": record_id, "loan_id": loan_id,
                "payment_date": payment_date, "sequence": sequence
            })

    def test_filter_by_loan(self, storage):
        self.setup_rows(storage)
        results = storage.select("payments", {"loan_id": "LOAN001"})

        assert {r["id"] for r in results} == {"pay_a", "pay_b", "pay_d"}

    def test_order_by_columns(self, storage):
        self.setup_rows(storage)
        results = storage.select("payments", {"loan_id": "LOAN001"}, order_by=["payment_date", "sequence"])

        assert [r["id"] for r in results] == ["pay_b", "pay_d", "pay_a"]

    def test_filter_on_non_indexed_field(self, storage):
        self.setup_rows(storage)
        results = storage.select("payments", {"payment_date": "2024-02-15"})

        assert {r["id"] for r in results} == {"pay_b", "pay_d"}

    def test_delete_where(self, storage):
        self.setup_rows(storage)

        assert storage.delete_where("payments", {"loan_id": "LOAN001"}) == 3
        assert [r["id"] for r in storage.select("payments")] == ["pay_c"]


class TestTransactions:
    """Test atomic blocks"""

    def test_commit(self, storage):
        with storage.atomic():
            storage.save("payments", "pay_001", test_data)

        assert storage.exists("payments", "pay_001")

    def test_rollback_on_error(self, storage):
        storage.save("payments", "pay_001", test_data)

        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.save("payments", "pay_002", dict(test_data, id="pay_002"))
                storage.delete("payments", "pay_001")
                raise RuntimeError("boom")

        assert storage.exists("payments", "pay_001")
        assert not storage.exists("payments", "pay_002")

    def test_nested_atomic_blocks(self, storage):
        """An inner block's work is undone with the outer block"""
        with pytest.raises(RuntimeError):
            with storage.atomic():
                with storage.atomic():
                    storage.save("payments", "pay_001", test_data)
                raise RuntimeError("boom")

        assert not storage.exists("payments", "pay_001")


class TestSQLiteStorage:
    """SQLite specifics"""

    def test_persistence_across_connections(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = Path(temp_dir) / "test.db"
            storage = SQLiteStorage(db_path)
            storage.save("payments", "pay_001", test_data)
            storage.close()

            reopened = SQLiteStorage(db_path)
            assert reopened.load("payments", "pay_001") == test_data
            reopened.close()

    def test_from_url(self):
        storage = SQLiteStorage.from_url("sqlite:///:memory:")
        assert storage.db_path == ":memory:"
        storage.close()

        with pytest.raises(ValueError):
            SQLiteStorage.from_url("postgresql://localhost/loans")


class TestStorageRecord:
    """Test the stored record base class"""

    def test_round_trip(self):
        now = datetime.now(timezone.utc)
        record = StorageRecord(id="rec_1", created_at=now, updated_at=now)
        data = record.to_dict()

        assert data["created_at"] == now.isoformat()
        assert StorageRecord.from_dict(data) == record
