"""
Brand product-count maintenance.

``brand.productCount`` is a cached count of the products whose ``brandId``
points at the brand. It is kept up to date with ``$inc`` as products are
created, moved and deleted, and a brand whose count drops to zero is removed.

None of this runs in a transaction. A crash between two steps, or two
writers touching the same brand, can leave the cached count wrong for a
while. ``reconcile_brands`` recomputes the real counts and repairs the cache;
it can be run at any time, any number of times, concurrently.

Only the brand-exists check is allowed to fail the product write. Every
step after the product itself has been written is best effort: failures are
logged and left for the next reconciliation.
"""

from typing import Optional

import structlog
from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.errors import PyMongoError

from database import parse_object_id
from errors import NotFound

logger = structlog.get_logger(__name__)


def require_brand(database, brand_id) -> dict:
    """Return the brand or fail the write with NotFound."""
    brand = database.brand.find_one({"_id": parse_object_id(brand_id, "Brand")})
    if not brand:
        raise NotFound("Brand not found")
    return brand


def true_count(database, brand_id: ObjectId) -> int:
    return database.product.count_documents({"brandId": brand_id})


def _adjust(database, brand_id: ObjectId, delta: int) -> Optional[dict]:
    try:
        brand = database.brand.find_one_and_update(
            {"_id": brand_id},
            {"$inc": {"productCount": delta}},
            return_document=ReturnDocument.AFTER,
        )
    except PyMongoError:
        logger.exception("Brand count adjustment failed", brand_id=str(brand_id), delta=delta)
        return None
    if brand is None:
        logger.warning("Brand count adjustment skipped, brand missing", brand_id=str(brand_id), delta=delta)
    return brand


def settle_brand(database, brand: dict) -> Optional[str]:
    """
    Bring one brand's cached count in line with its real product set.

    Returns "deleted", "repaired" or None when nothing changed. Writes are
    conditional on the count that was read, so a concurrent adjustment wins
    and the brand is looked at again on the next pass.
    """
    actual = true_count(database, brand["_id"])
    stored = brand.get("productCount", 0)

    if actual == 0:
        result = database.brand.delete_one({"_id": brand["_id"], "productCount": stored})
        if result.deleted_count:
            logger.info("Brand removed, no products left", brand_id=str(brand["_id"]), name=brand.get("name"))
            return "deleted"
        return None

    if stored != actual:
        result = database.brand.update_one(
            {"_id": brand["_id"], "productCount": stored},
            {"$set": {"productCount": actual}},
        )
        if result.modified_count:
            logger.info(
                "Brand product count repaired",
                brand_id=str(brand["_id"]),
                name=brand.get("name"),
                stored=stored,
                actual=actual,
            )
            return "repaired"
    return None


def _release(database, brand_id: ObjectId) -> None:
    brand = _adjust(database, brand_id, -1)
    if brand is None or brand.get("productCount", 0) > 0:
        return
    try:
        settle_brand(database, brand)
    except PyMongoError:
        logger.exception("Brand cascade cleanup failed", brand_id=str(brand_id))


def product_added(database, brand_id: ObjectId) -> None:
    _adjust(database, brand_id, 1)


def product_removed(database, brand_id: ObjectId) -> None:
    _release(database, brand_id)


def product_moved(database, old_brand_id: ObjectId, new_brand_id: ObjectId) -> None:
    if old_brand_id == new_brand_id:
        return
    _adjust(database, new_brand_id, 1)
    _release(database, old_brand_id)


def reconcile_brands(database) -> dict:
    """
    Repair drift between cached and real product counts.

    Real counts come from one ``$group`` over products. Brands with no
    products are deleted; any other brand whose cached count differs is
    overwritten with the real one.
    """
    actual_counts = {
        row["_id"]: row["count"]
        for row in database.product.aggregate([{"$group": {"_id": "$brandId", "count": {"$sum": 1}}}])
    }

    deleted = repaired = 0
    for brand in database.brand.find({}):
        stored = brand.get("productCount", 0)
        actual = actual_counts.get(brand["_id"], 0)
        if actual != 0 and stored == actual:
            continue
        outcome = settle_brand(database, brand)
        if outcome == "deleted":
            deleted += 1
        elif outcome == "repaired":
            repaired += 1

    logger.info("Brand reconciliation finished", deleted=deleted, repaired=repaired)
    return {"deleted": deleted, "repaired": repaired}
