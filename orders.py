"""
Order lifecycle: create, read, list, edit, status changes, deletion and the
retention sweep for old completed orders.

Orders are created Pending with a number from the configured allocator.
Line items are value copies of the product as it was when the order was
placed; nothing here ever refreshes them.
"""

import re
from datetime import date, datetime, timedelta, timezone
from typing import Iterable, List, Optional

import structlog
from pydantic import ValidationError as PydanticValidationError
from pymongo import DESCENDING, ReturnDocument

from config import ORDER_STATUSES, RETENTION_DAYS, TOTAL_BITS
from database import parse_object_id
from errors import NotFound, ValidationError
from schemas import DATE_FORMAT, TIME_FORMAT, Order, OrderItem
from sequence import OrderNumberAllocator, get_allocator, insert_with_order_number

logger = structlog.get_logger(__name__)

SNAPSHOT_FIELDS = ("productName", "brandName")


def _validated(model, **fields):
    try:
        return model(**fields)
    except PydanticValidationError as exc:
        first = exc.errors()[0]
        location = ".".join(str(part) for part in first["loc"])
        raise ValidationError(f"{location}: {first['msg']}" if location else first["msg"])


def order_timestamp(order_date: Optional[datetime] = None) -> tuple:
    """Split the placement instant into the stored DD/MM/YYYY and HH:MM strings."""
    moment = order_date or datetime.now()
    if moment.tzinfo is not None:
        # Aware instants are stored in server local time
        moment = moment.astimezone()
    return moment.strftime(DATE_FORMAT), moment.strftime(TIME_FORMAT)


def parse_order_date(value: Optional[str]) -> Optional[date]:
    try:
        return datetime.strptime(value, DATE_FORMAT).date()
    except (TypeError, ValueError):
        return None


def snapshot_items(database, items: Optional[Iterable[dict]]) -> List[dict]:
    """
    Build the embedded line items.

    Name and brand come from the request when given, otherwise they are
    copied from the current product record.
    """
    lines = []
    for position, item in enumerate(items or []):
        item = dict(item)
        try:
            item["productId"] = parse_object_id(item.get("productId"), "Product")
        except NotFound:
            raise ValidationError(f"items.{position}.productId: a valid product id is required")

        if not all(item.get(field) for field in SNAPSHOT_FIELDS):
            product = database.product.find_one({"_id": item["productId"]})
            if product is None:
                raise ValidationError(f"items.{position}: productName and brandName are required for unknown products")
            item["productName"] = item.get("productName") or product["name"]
            item["brandName"] = item.get("brandName") or product["brandName"]

        line = _validated(OrderItem, **item)
        lines.append(line.model_dump())
    return lines


def create_order(
    database,
    counterName: Optional[str],
    bit: Optional[str],
    totalItems: Optional[int],
    totalAmount: Optional[float],
    items: Optional[Iterable[dict]] = None,
    orderDate: Optional[datetime] = None,
    allocator: Optional[OrderNumberAllocator] = None,
) -> dict:
    if not (counterName and counterName.strip()) or not (bit and bit.strip()) or totalItems is None or totalAmount is None:
        raise ValidationError("counterName, bit, totalItems, and totalAmount are required")

    order_date, order_time = order_timestamp(orderDate)
    lines = snapshot_items(database, items)
    fields = {
        "counterName": counterName.strip(),
        "bit": bit.strip(),
        "totalItems": totalItems,
        "totalAmount": totalAmount,
        "date": order_date,
        "time": order_time,
        "status": "Pending",
        "items": lines,
    }
    # Validate once up front so a bad request never consumes a number
    _validated(Order, orderNumber="pending", **fields)

    def build(order_number: str) -> dict:
        document = dict(fields, orderNumber=order_number)
        document["items"] = [dict(line) for line in lines]
        return document

    order = insert_with_order_number(database, allocator or get_allocator(), build)
    logger.info("Order created", order_id=str(order["_id"]), order_number=order["orderNumber"], bit=order["bit"])
    return order


def get_order(database, order_id) -> dict:
    order = database.order.find_one({"_id": parse_object_id(order_id, "Order")})
    if not order:
        raise NotFound("Order not found")
    return order


def list_orders(database, bit: Optional[str] = None, status: Optional[str] = None, search: Optional[str] = None) -> list:
    query = {}
    if bit and bit != "all":
        query["bit"] = bit
    if status:
        query["status"] = status
    if search:
        pattern = {"$regex": re.escape(search), "$options": "i"}
        query["$or"] = [
            {"counterName": pattern},
            {"orderNumber": pattern},
            {"bit": pattern},
        ]
    return list(database.order.find(query).sort("created_at", DESCENDING))


def recent_orders(database, limit: int = 3) -> list:
    return list(database.order.find({}).sort("created_at", DESCENDING).limit(limit))


def update_order(database, order_id, changes: dict) -> dict:
    """Full-document edit. The order number and identity never change."""
    order = get_order(database, order_id)
    changes = {k: v for k, v in changes.items() if k not in ("_id", "orderNumber", "created_at", "updated_at")}
    if "items" in changes:
        changes["items"] = snapshot_items(database, changes["items"])

    merged = {field: order.get(field) for field in Order.model_fields if field in order}
    merged.update(changes)
    validated = _validated(Order, **merged).model_dump()
    update = {field: validated[field] for field in changes if field in validated}
    update["updated_at"] = datetime.now(timezone.utc)

    updated = database.order.find_one_and_update(
        {"_id": order["_id"]},
        {"$set": update},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise NotFound("Order not found")
    return updated


def update_status(database, order_id, status: Optional[str]) -> dict:
    if status not in ORDER_STATUSES:
        raise ValidationError("Valid status is required")
    updated = database.order.find_one_and_update(
        {"_id": parse_object_id(order_id, "Order")},
        {"$set": {"status": status, "updated_at": datetime.now(timezone.utc)}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise NotFound("Order not found")
    logger.info("Order status changed", order_id=str(updated["_id"]), status=status)
    return updated


def delete_order(database, order_id) -> None:
    result = database.order.delete_one({"_id": parse_object_id(order_id, "Order")})
    if not result.deleted_count:
        raise NotFound("Order not found")


def retention_cutoff(today: Optional[date] = None) -> date:
    return (today or date.today()) - timedelta(days=RETENTION_DAYS)


def cleanup_old_completed(database, order_ids: Iterable, today: Optional[date] = None) -> dict:
    """
    Delete the candidates that are Completed and dated on or before the cutoff.

    Anything else in the candidate list (pending, too recent, unparseable
    date, unknown or malformed id) is left alone without error.
    """
    candidates = []
    for order_id in order_ids:
        try:
            candidates.append(parse_object_id(order_id, "Order"))
        except NotFound:
            continue
    if not candidates:
        return {"deletedCount": 0}

    cutoff = retention_cutoff(today)
    eligible = []
    for order in database.order.find({"_id": {"$in": candidates}, "status": "Completed"}, {"date": 1}):
        placed = parse_order_date(order.get("date"))
        if placed is not None and placed <= cutoff:
            eligible.append(order["_id"])

    if not eligible:
        return {"deletedCount": 0}

    # Status is re-checked so an order reopened meanwhile survives
    result = database.order.delete_many({"_id": {"$in": eligible}, "status": "Completed"})
    logger.info("Old completed orders removed", deleted=result.deleted_count, cutoff=cutoff.isoformat())
    return {"deletedCount": result.deleted_count}


def dashboard_stats(database) -> dict:
    distinct_items = list(database.order.aggregate([
        {"$unwind": "$items"},
        {"$group": {"_id": {"productName": "$items.productName", "brandName": "$items.brandName"}}},
        {"$group": {"_id": None, "count": {"$sum": 1}}},
    ]))
    return {
        "totalOrders": database.order.count_documents({}),
        "totalItems": distinct_items[0]["count"] if distinct_items else 0,
        "pendingOrders": database.order.count_documents({"status": "Pending"}),
        "totalBits": TOTAL_BITS,
    }
