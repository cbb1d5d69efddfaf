"""
Order number allocation.

An order number is human facing and unique for the lifetime of the system.
Three interchangeable strategies implement the ``OrderNumberAllocator``
capability; a deployment picks exactly one through ``ORDER_NUMBER_STRATEGY``:

- ``counter``: atomic ``$inc`` on one document in the ``counters`` collection.
  Linearizable, O(1), no retry needed in normal operation.
- ``derive``: scan for the highest existing number and try the next one.
  Dense numbers, but concurrent writers can collide repeatedly.
- ``random``: eight random hex characters. Not ordered, nothing shared to
  contend on.

Whatever the strategy, the unique index on ``order.orderNumber`` is the final
arbiter: ``insert_with_order_number`` retries on a duplicate-key error up to the
allocator's bound and then gives up with ``AllocationExhausted``. An order is
never written without a number.
"""

import re
import secrets
from typing import Callable, Optional, Protocol, runtime_checkable

import structlog
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from config import ORDER_NUMBER_PAD, ORDER_NUMBER_PREFIX, ORDER_NUMBER_STRATEGY
from database import create_document
from errors import AllocationExhausted

logger = structlog.get_logger(__name__)

COUNTER_COLLECTION = "counters"
COUNTER_ID = "orderNumber"


@runtime_checkable
class OrderNumberAllocator(Protocol):
    """Produces candidate order numbers; uniqueness is confirmed by the insert."""

    max_attempts: int

    def allocate(self, database) -> str:
        ...


def format_order_number(sequence: int, prefix: str = ORDER_NUMBER_PREFIX, pad: int = ORDER_NUMBER_PAD) -> str:
    return f"{prefix}-{sequence:0{pad}d}"


def parse_sequence(order_number: Optional[str], prefix: str = ORDER_NUMBER_PREFIX) -> Optional[int]:
    """Extract the numeric part of e.g. ``ORD-004``. Foreign formats yield None."""
    if not order_number:
        return None
    match = re.fullmatch(rf"{re.escape(prefix)}-(\d+)", order_number)
    if not match:
        return None
    return int(match.group(1))


class CounterAllocator:
    # Collisions only happen against numbers written before the counter existed
    max_attempts = 10

    def __init__(self, prefix: str = ORDER_NUMBER_PREFIX, pad: int = ORDER_NUMBER_PAD):
        self.prefix = prefix
        self.pad = pad

    def allocate(self, database) -> str:
        counter = database[COUNTER_COLLECTION].find_one_and_update(
            {"_id": COUNTER_ID},
            {"$inc": {"sequence_value": 1}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return format_order_number(counter["sequence_value"], self.prefix, self.pad)


class DeriveAllocator:
    max_attempts = 10

    def __init__(self, prefix: str = ORDER_NUMBER_PREFIX, pad: int = ORDER_NUMBER_PAD):
        self.prefix = prefix
        self.pad = pad

    def highest_sequence(self, database) -> int:
        # String order breaks past the padding width ("ORD-1000" < "ORD-999"), so compare numerically
        highest = 0
        for doc in database.order.find({}, {"orderNumber": 1}):
            sequence = parse_sequence(doc.get("orderNumber"), self.prefix)
            if sequence is not None and sequence > highest:
                highest = sequence
        return highest

    def allocate(self, database) -> str:
        return format_order_number(self.highest_sequence(database) + 1, self.prefix, self.pad)


class RandomAllocator:
    max_attempts = 5
    width = 8

    def __init__(self, prefix: str = ORDER_NUMBER_PREFIX):
        self.prefix = prefix

    def token(self) -> str:
        return secrets.token_hex(self.width // 2).upper()

    def allocate(self, database) -> str:
        return f"{self.prefix}-{self.token()}"


STRATEGIES = {
    "counter": CounterAllocator,
    "derive": DeriveAllocator,
    "random": RandomAllocator,
}


def get_allocator(strategy: str = ORDER_NUMBER_STRATEGY) -> OrderNumberAllocator:
    try:
        allocator_cls = STRATEGIES[strategy]
    except KeyError:
        raise ValueError(f"Unknown order number strategy '{strategy}'. Choose one of: {', '.join(STRATEGIES)}")
    return allocator_cls()


def insert_with_order_number(
    database,
    allocator: OrderNumberAllocator,
    build_document: Callable[[str], dict],
) -> dict:
    """
    Allocate a number, build the order around it and insert it.

    ``build_document`` receives each candidate number and returns the document
    to insert. A duplicate-key error means another writer took the number
    first; the next attempt asks the allocator again.

    Returns the inserted document (with ``_id``).
    """
    for attempt in range(1, allocator.max_attempts + 1):
        order_number = allocator.allocate(database)
        document = build_document(order_number)
        try:
            create_document(database, "order", document)
        except DuplicateKeyError:
            logger.warning("Order number collision", order_number=order_number, attempt=attempt)
            continue
        logger.info("Order number allocated", order_number=order_number, attempts=attempt)
        return document

    logger.error("Order number allocation exhausted", attempts=allocator.max_attempts)
    raise AllocationExhausted(
        f"Unable to generate a unique order number after {allocator.max_attempts} attempts"
    )
