import re
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

import orders
from errors import AllocationExhausted
from sequence import (
    COUNTER_COLLECTION,
    COUNTER_ID,
    CounterAllocator,
    DeriveAllocator,
    OrderNumberAllocator,
    RandomAllocator,
    format_order_number,
    get_allocator,
    insert_with_order_number,
    parse_sequence,
)


class PreReadAllocator(DeriveAllocator):
    """A writer that read the highest number before its peers committed."""

    def __init__(self, snapshot):
        super().__init__()
        self.snapshot = snapshot

    def highest_sequence(self, database):
        if self.snapshot is not None:
            value, self.snapshot = self.snapshot, None
            return value
        return super().highest_sequence(database)


def _order(db, allocator, counter_name="Shree Stores"):
    return orders.create_order(
        db,
        counterName=counter_name,
        bit="Andur",
        totalItems=0,
        totalAmount=0,
        allocator=allocator,
    )


def test_format_and_parse():
    assert format_order_number(5) == "ORD-005"
    assert format_order_number(1234) == "ORD-1234"
    assert parse_sequence("ORD-004") == 4
    assert parse_sequence("ORD-1A2B3C4D") is None
    assert parse_sequence(None) is None


def test_counter_continues_from_stored_value(db):
    db[COUNTER_COLLECTION].insert_one({"_id": COUNTER_ID, "sequence_value": 4})

    assert CounterAllocator().allocate(db) == "ORD-005"
    assert db[COUNTER_COLLECTION].find_one({"_id": COUNTER_ID})["sequence_value"] == 5


def test_counter_created_on_first_use(db, allocator):
    order = _order(db, allocator)

    assert order["orderNumber"] == "ORD-001"
    assert order["status"] == "Pending"


def test_counter_skips_numbers_taken_before_it_existed(db, allocator):
    db.order.insert_one({"orderNumber": "ORD-001"})
    db.order.insert_one({"orderNumber": "ORD-002"})

    order = _order(db, allocator)

    assert order["orderNumber"] == "ORD-003"


def test_derive_compares_numerically(db):
    db.order.insert_one({"orderNumber": "ORD-999"})
    db.order.insert_one({"orderNumber": "ORD-1000"})
    db.order.insert_one({"orderNumber": "legacy"})

    assert DeriveAllocator().allocate(db) == "ORD-1001"


def test_derive_retries_after_losing_a_race(db):
    _order(db, DeriveAllocator())
    stale = PreReadAllocator(snapshot=0)

    order = _order(db, stale)

    assert order["orderNumber"] == "ORD-002"
    assert db.order.count_documents({}) == 2


def test_random_tokens_are_eight_hex_chars(db):
    number = RandomAllocator().allocate(db)
    assert re.fullmatch(r"ORD-[0-9A-F]{8}", number)


def test_random_retries_on_collision(db, monkeypatch):
    tokens = iter(["DEADBEEF", "DEADBEEF", "CAFEBABE"])
    allocator = RandomAllocator()
    monkeypatch.setattr(allocator, "token", lambda: next(tokens))

    first = _order(db, allocator)
    second = _order(db, allocator)

    assert first["orderNumber"] == "ORD-DEADBEEF"
    assert second["orderNumber"] == "ORD-CAFEBABE"


def test_exhaustion_never_persists_an_order(db, monkeypatch):
    allocator = RandomAllocator()
    monkeypatch.setattr(allocator, "token", lambda: "DEADBEEF")
    _order(db, allocator)

    with pytest.raises(AllocationExhausted):
        _order(db, allocator, counter_name="Second Counter")

    assert db.order.count_documents({}) == 1
    assert db.order.count_documents({"counterName": "Second Counter"}) == 0


def test_insert_with_order_number_uses_each_candidate(db):
    seen = []

    def build(number):
        seen.append(number)
        return {"orderNumber": number}

    document = insert_with_order_number(db, CounterAllocator(), build)

    assert seen == ["ORD-001"]
    assert "_id" in document


def test_interleaved_writers_never_share_a_number(db):
    # Ten rounds of five writers that all read the maximum before any of them commits
    for _ in range(10):
        snapshot = DeriveAllocator().highest_sequence(db)
        writers = [PreReadAllocator(snapshot) for _ in range(5)]
        for writer in writers:
            _order(db, writer)

    numbers = [o["orderNumber"] for o in db.order.find({})]
    assert len(numbers) == 50
    assert len(set(numbers)) == 50
    assert sorted(numbers) == [format_order_number(n) for n in range(1, 51)]


def test_counter_writers_share_one_sequence(db):
    writers = [CounterAllocator() for _ in range(5)]
    for i in range(50):
        _order(db, writers[i % 5])

    numbers = {o["orderNumber"] for o in db.order.find({})}
    assert len(numbers) == 50


def test_get_allocator():
    assert isinstance(get_allocator("counter"), CounterAllocator)
    assert isinstance(get_allocator("derive"), DeriveAllocator)
    assert isinstance(get_allocator("random"), OrderNumberAllocator)
    with pytest.raises(ValueError):
        get_allocator("uuid")


@pytest.fixture()
def atomic_writes(db, monkeypatch):
    """Make single-document writes atomic in the Mongo double, as they are on a server."""
    lock = threading.RLock()
    collection_cls = type(db.order)

    def atomic(method):
        def wrapper(self, *args, **kwargs):
            with lock:
                return method(self, *args, **kwargs)
        return wrapper

    for name in ("find_one_and_update", "insert_one"):
        monkeypatch.setattr(collection_cls, name, atomic(getattr(collection_cls, name)))
    return db


def test_threaded_creations_with_default_strategy(atomic_writes, monkeypatch):
    monkeypatch.setattr(orders, "get_allocator", lambda: get_allocator("counter"))

    with ThreadPoolExecutor(max_workers=8) as pool:
        created = list(pool.map(lambda i: _order(atomic_writes, None, f"Counter {i}"), range(60)))

    numbers = [o["orderNumber"] for o in created]
    assert len(set(numbers)) == 60
    assert sorted(numbers) == [format_order_number(n) for n in range(1, 61)]
    assert atomic_writes.order.count_documents({}) == 60
