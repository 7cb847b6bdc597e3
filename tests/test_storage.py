"""
Test suite for storage backends and idempotency primitives
"""

import pytest
from decimal import Decimal
from datetime import datetime, timezone

from p2p_lending.storage import (
    DuplicateRecordError, InMemoryStorage, SQLiteStorage, MARKERS_TABLE,
    claim_step, idempotency_key
)


@pytest.fixture(params=["memory", "sqlite"])
def storage(request):
    """Each test runs against both backends"""
    if request.param == "memory":
        backend = InMemoryStorage()
    else:
        backend = SQLiteStorage(":memory:")
    yield backend
    backend.close()


def _record(record_id, **fields):
    now = datetime.now(timezone.utc).isoformat()
    data = {'id': record_id, 'created_at': now, 'updated_at': now}
    data.update(fields)
    return data


class TestBasicOperations:
    """Test CRUD behaviour shared by both backends"""

    def test_save_and_load(self, storage):
        """Test a saved record loads back unchanged"""
        storage.save("items", "a", _record("a", amount="10.50", tags=["x"]))

        loaded = storage.load("items", "a")
        assert loaded["amount"] == "10.50"
        assert loaded["tags"] == ["x"]
        assert storage.exists("items", "a")
        assert storage.count("items") == 1

    def test_load_missing(self, storage):
        """Test loading an unknown id returns None"""
        assert storage.load("items", "missing") is None
        assert not storage.exists("items", "missing")

    def test_find_filters_on_stored_values(self, storage):
        """Test find matches every filter field"""
        storage.save("items", "a", _record("a", status="open", owner="u1"))
        storage.save("items", "b", _record("b", status="closed", owner="u1"))
        storage.save("items", "c", _record("c", status="open", owner="u2"))

        found = storage.find("items", {"status": "open", "owner": "u1"})
        assert [record["id"] for record in found] == ["a"]

    def test_delete(self, storage):
        """Test delete reports whether a record was removed"""
        storage.save("items", "a", _record("a"))
        assert storage.delete("items", "a") is True
        assert storage.delete("items", "a") is False

    def test_loaded_records_are_copies(self, storage):
        """Test mutating a loaded record does not change storage"""
        storage.save("items", "a", _record("a", status="open"))
        loaded = storage.load("items", "a")
        loaded["status"] = "changed"

        assert storage.load("items", "a")["status"] == "open"


class TestIdempotency:
    """Test unique inserts and step claims"""

    def test_insert_unique_rejects_second_insert(self, storage):
        """Test the primary key is the de-duplication mechanism"""
        storage.insert_unique("events", "e1", _record("e1", value=1))

        with pytest.raises(DuplicateRecordError):
            storage.insert_unique("events", "e1", _record("e1", value=2))

        assert storage.load("events", "e1")["value"] == 1

    def test_idempotency_key_is_deterministic(self):
        """Test identical parts give identical keys"""
        assert idempotency_key("payment", "loan-1", "pay-1") == idempotency_key("payment", "loan-1", "pay-1")
        assert idempotency_key("payment", "loan-1", "pay-1") != idempotency_key("payment", "loan-1", "pay-2")
        assert len(idempotency_key("x")) == 40

    def test_claim_step_once(self, storage):
        """Test a step can be claimed only once per key"""
        assert claim_step(storage, "release_capital", "loan-1") is True
        assert claim_step(storage, "release_capital", "loan-1") is False
        assert claim_step(storage, "release_capital", "loan-2") is True
        assert storage.count(MARKERS_TABLE) == 2

    def test_failed_step_releases_claim(self, storage):
        """Test a claim made inside a failed atomic block is rolled back"""
        with pytest.raises(RuntimeError):
            with storage.atomic():
                assert claim_step(storage, "notify", "loan-1")
                raise RuntimeError("provider down")

        assert claim_step(storage, "notify", "loan-1") is True


class TestConditionalUpdates:
    """Test compare-and-set and increments"""

    def test_compare_and_set_applies_when_expected_matches(self, storage):
        """Test a matching expectation applies the update"""
        storage.save("loans", "l1", _record("l1", status="pending"))

        assert storage.compare_and_set("loans", "l1", {"status": "pending"}, {"status": "active"})
        assert storage.load("loans", "l1")["status"] == "active"

    def test_compare_and_set_rejects_stale_expectation(self, storage):
        """Test a second writer with the same expectation loses"""
        storage.save("loans", "l1", _record("l1", status="pending"))

        assert storage.compare_and_set("loans", "l1", {"status": "pending"}, {"status": "active"})
        assert not storage.compare_and_set("loans", "l1", {"status": "pending"}, {"status": "cancelled"})
        assert storage.load("loans", "l1")["status"] == "active"

    def test_compare_and_set_missing_record(self, storage):
        """Test CAS on a missing record fails without creating it"""
        assert not storage.compare_and_set("loans", "nope", {}, {"status": "active"})
        assert storage.load("loans", "nope") is None

    def test_compare_and_set_serializes_values(self, storage):
        """Test Decimal expectations compare against stored strings"""
        storage.save("loans", "l1", _record("l1", amount_paid="10.00"))

        assert storage.compare_and_set(
            "loans", "l1", {"amount_paid": Decimal("10.00")}, {"amount_paid": Decimal("20.00")}
        )
        assert storage.load("loans", "l1")["amount_paid"] == "20.00"

    def test_increment_decimal_and_int(self, storage):
        """Test relative deltas on Decimal strings and integer counters"""
        storage.save("lenders", "k", _record("k", capital_deployed="100.00", offers_received=2))

        record = storage.increment("lenders", "k", {"capital_deployed": Decimal("50.25"), "offers_received": 1})

        assert Decimal(record["capital_deployed"]) == Decimal("150.25")
        assert record["offers_received"] == 3

    def test_increment_floor(self, storage):
        """Test the floor bounds decrements"""
        storage.save("lenders", "k", _record("k", capital_deployed="100.00"))

        record = storage.increment("lenders", "k", {"capital_deployed": Decimal("-250")}, floor=Decimal("0"))

        assert Decimal(record["capital_deployed"]) == Decimal("0")

    def test_increment_missing_record(self, storage):
        """Test incrementing an unknown record raises KeyError"""
        with pytest.raises(KeyError):
            storage.increment("lenders", "missing", {"count": 1})


class TestTransactions:
    """Test atomic blocks and nesting"""

    def test_atomic_rollback(self, storage):
        """Test every write in a failed block is undone"""
        storage.save("items", "a", _record("a", status="open"))

        with pytest.raises(ValueError):
            with storage.atomic():
                storage.save("items", "a", _record("a", status="closed"))
                storage.save("items", "b", _record("b"))
                raise ValueError("abort")

        assert storage.load("items", "a")["status"] == "open"
        assert storage.load("items", "b") is None

    def test_nested_rollback_keeps_outer_writes(self, storage):
        """Test an inner failure only undoes the inner block"""
        with storage.atomic():
            storage.save("items", "outer", _record("outer"))
            try:
                with storage.atomic():
                    storage.save("items", "inner", _record("inner"))
                    raise ValueError("inner abort")
            except ValueError:
                pass

        assert storage.exists("items", "outer")
        assert not storage.exists("items", "inner")

    def test_compare_and_set_inside_atomic(self, storage):
        """Test CAS joins an enclosing transaction"""
        storage.save("loans", "l1", _record("l1", status="pending"))

        with pytest.raises(ValueError):
            with storage.atomic():
                assert storage.compare_and_set("loans", "l1", {"status": "pending"}, {"status": "active"})
                raise ValueError("abort")

        assert storage.load("loans", "l1")["status"] == "pending"


class TestSQLitePersistence:
    """Test data survives reopening the database file"""

    def test_reopen(self, tmp_path):
        """Test records persist across connections"""
        db_path = tmp_path / "lending.db"
        first = SQLiteStorage(db_path)
        first.insert_unique("items", "a", _record("a", amount="5.00"))
        first.close()

        second = SQLiteStorage(db_path)
        assert second.load("items", "a")["amount"] == "5.00"
        with pytest.raises(DuplicateRecordError):
            second.insert_unique("items", "a", _record("a"))
        second.close()
