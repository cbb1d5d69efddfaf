"""
Pending demand: outstanding quantity per (product, unit) over all open orders.

The grouping runs inside MongoDB (``$unwind`` + ``$group``) because the set
of pending orders is unbounded while the grouped result is bounded by the
number of distinct (product, unit) pairs. ``summarize_orders`` is the same
computation over documents already in memory; both paths share the bucket
and sort step so they cannot disagree.

Line items carry their own product name, brand and unit, so an order keeps
contributing after its product has been renamed or deleted.
"""

from typing import Iterable, Optional

import structlog

from config import UNITS
from sequence import parse_sequence

logger = structlog.get_logger(__name__)

# Orders are visited in this order so "$first" picks the same snapshot on every run
ORDER_SCAN_SORT = {"orderNumber": 1}


def _order_match(bit: Optional[str]) -> dict:
    match = {"status": "Pending"}
    if bit and bit != "all":
        match["bit"] = bit
    return match


def _line_stages(bit: Optional[str], brand: Optional[str]) -> list:
    stages = [
        {"$match": _order_match(bit)},
        {"$sort": ORDER_SCAN_SORT},
        {"$unwind": "$items"},
    ]
    if brand and brand != "all":
        stages.append({"$match": {"items.brandName": brand}})
    return stages


def group_pipeline(bit: Optional[str] = None, brand: Optional[str] = None) -> list:
    return _line_stages(bit, brand) + [
        {
            "$group": {
                "_id": {"productId": "$items.productId", "unit": "$items.unit"},
                "productName": {"$first": "$items.productName"},
                "brandName": {"$first": "$items.brandName"},
                "totalQuantity": {"$sum": "$items.quantity"},
                "orderIds": {"$addToSet": "$_id"},
                "orderNumbers": {"$addToSet": "$orderNumber"},
            }
        },
    ]


def _summarize(groups: Iterable[dict], total_orders: int) -> dict:
    items = {unit: [] for unit in UNITS}
    for group in groups:
        unit = group["unit"]
        if unit not in items:
            logger.warning("Skipping line with unknown unit", unit=unit, product_id=str(group["productId"]))
            continue
        items[unit].append(group)

    totals = {}
    for unit, rows in items.items():
        rows.sort(key=lambda row: (-row["totalQuantity"], str(row["productId"])))
        totals[unit] = sum(row["totalQuantity"] for row in rows)
    totals["totalGroups"] = sum(len(rows) for rows in items.values())
    totals["totalOrders"] = total_orders
    return {"items": items, "totals": totals}


def _order_number_key(order_number):
    # Numeric first so "ORD-999" sorts before "ORD-1000"; foreign formats go last
    sequence = parse_sequence(order_number)
    return (sequence is None, sequence or 0, order_number or "")


def _group_row(product_id, unit, product_name, brand_name, quantity, order_ids, order_numbers) -> dict:
    return {
        "productId": product_id,
        "productName": product_name,
        "brandName": brand_name,
        "unit": unit,
        "totalQuantity": quantity,
        "orderCount": len(order_ids),
        "orderNumbers": sorted(order_numbers, key=_order_number_key),
    }


def aggregate_pending_demand(database, bit: Optional[str] = None, brand: Optional[str] = None) -> dict:
    """Group pending order lines by (productId, unit) inside the store."""
    rows = list(database.order.aggregate(group_pipeline(bit, brand)))
    # One read: the contributing orders are the union of every group's order ids
    contributing = set()
    for row in rows:
        contributing.update(row.get("orderIds", []))

    groups = [
        _group_row(
            row["_id"].get("productId"),
            row["_id"].get("unit"),
            row.get("productName"),
            row.get("brandName"),
            row.get("totalQuantity", 0),
            row.get("orderIds", []),
            row.get("orderNumbers", []),
        )
        for row in rows
    ]
    return _summarize(groups, len(contributing))


def summarize_orders(orders: Iterable[dict], bit: Optional[str] = None, brand: Optional[str] = None) -> dict:
    """
    In-memory equivalent of ``aggregate_pending_demand`` for an already loaded order set.

    Not used by the HTTP surface. It is the reference implementation the
    store pipeline is checked against, and works on any iterable of order
    documents, e.g. an export.
    """
    match = _order_match(bit)
    selected = [
        order for order in orders
        if all(order.get(field) == value for field, value in match.items())
    ]
    selected.sort(key=lambda order: order.get("orderNumber") or "")

    grouped = {}
    contributing = set()
    for order in selected:
        for item in order.get("items") or []:
            if brand and brand != "all" and item.get("brandName") != brand:
                continue
            key = (item.get("productId"), item.get("unit"))
            group = grouped.get(key)
            if group is None:
                group = grouped[key] = {
                    "productName": item.get("productName"),
                    "brandName": item.get("brandName"),
                    "quantity": 0,
                    "orderIds": set(),
                    "orderNumbers": set(),
                }
            group["quantity"] += item.get("quantity", 0)
            group["orderIds"].add(order["_id"])
            group["orderNumbers"].add(order.get("orderNumber"))
            contributing.add(order["_id"])

    groups = [
        _group_row(
            product_id, unit, g["productName"], g["brandName"], g["quantity"], g["orderIds"], g["orderNumbers"]
        )
        for (product_id, unit), g in grouped.items()
    ]
    return _summarize(groups, len(contributing))
