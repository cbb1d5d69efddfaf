"""
Products and brands.

Product writes call into ``integrity`` so the owning brand's cached product
count follows the real product set.
"""

import re
from datetime import datetime, timezone
from typing import Iterable, Optional
from urllib.parse import quote

import structlog
from pymongo import ASCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from database import create_document, parse_object_id
from errors import Conflict, IntegrityViolation, NotFound, ValidationError
from integrity import product_added, product_moved, product_removed, require_brand, true_count
from schemas import Brand, Product

logger = structlog.get_logger(__name__)

PLACEHOLDER_IMAGE = "https://via.placeholder.com/100x100?text={}"


def _clean_name(name: Optional[str], label: str) -> str:
    name = (name or "").strip()
    if not name:
        raise ValidationError(f"{label} name is required")
    return name


def _apply_ranks(collection, entries: Iterable[dict]) -> dict:
    """Set display rank per record. Each update stands alone; unknown ids are reported back."""
    updated = 0
    missing = []
    for entry in entries:
        try:
            record_id = parse_object_id(entry["id"])
        except NotFound:
            missing.append(entry["id"])
            continue
        result = collection.update_one({"_id": record_id}, {"$set": {"order": entry["order"]}})
        if result.matched_count:
            updated += 1
        else:
            missing.append(entry["id"])
    return {"updated": updated, "missing": missing}


# Products

def list_products(database, brand: Optional[str] = None, search: Optional[str] = None) -> list:
    query = {}
    if brand and brand != "all":
        query["brandName"] = brand
    if search:
        pattern = {"$regex": re.escape(search), "$options": "i"}
        query["$or"] = [{"name": pattern}, {"brandName": pattern}]
    return list(database.product.find(query).sort([("order", ASCENDING), ("name", ASCENDING)]))


def get_product(database, product_id) -> dict:
    product = database.product.find_one({"_id": parse_object_id(product_id, "Product")})
    if not product:
        raise NotFound("Product not found")
    return product


def create_product(database, name: str, brand_id, order: int = 0) -> dict:
    name = _clean_name(name, "Product")
    brand = require_brand(database, brand_id)

    document = Product(name=name, brandId=brand["_id"], brandName=brand["name"], order=order).model_dump()
    create_document(database, "product", document)
    product_added(database, brand["_id"])
    logger.info("Product created", product_id=str(document["_id"]), brand=brand["name"])
    return document


def update_product(database, product_id, name: str, brand_id, order: Optional[int] = None) -> dict:
    name = _clean_name(name, "Product")
    brand = require_brand(database, brand_id)
    product = get_product(database, product_id)

    changes = {
        "name": name,
        "brandId": brand["_id"],
        "brandName": brand["name"],
        "updated_at": datetime.now(timezone.utc),
    }
    if order is not None:
        changes["order"] = order

    updated = database.product.find_one_and_update(
        {"_id": product["_id"]},
        {"$set": changes},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise NotFound("Product not found")

    if product["brandId"] != brand["_id"]:
        product_moved(database, product["brandId"], brand["_id"])
    return updated


def delete_product(database, product_id) -> None:
    product = get_product(database, product_id)
    result = database.product.delete_one({"_id": product["_id"]})
    if not result.deleted_count:
        raise NotFound("Product not found")
    product_removed(database, product["brandId"])
    logger.info("Product deleted", product_id=str(product["_id"]))


def reorder_products(database, entries: Iterable[dict]) -> dict:
    return _apply_ranks(database.product, entries)


def brand_names(database) -> list:
    return [b["name"] for b in database.brand.find({}, {"name": 1}).sort("name", ASCENDING)]


# Brands

def list_brands(database) -> list:
    return list(database.brand.find({}).sort([("order", ASCENDING), ("name", ASCENDING)]))


def get_brand(database, brand_id) -> dict:
    return require_brand(database, brand_id)


def create_brand(database, name: str, image: Optional[str] = None) -> dict:
    name = _clean_name(name, "Brand")
    if database.brand.find_one({"name": name}):
        raise Conflict("Brand already exists")

    document = Brand(name=name, productCount=0, image=image or PLACEHOLDER_IMAGE.format(quote(name))).model_dump()
    try:
        create_document(database, "brand", document)
    except DuplicateKeyError:
        raise Conflict("Brand already exists")
    return document


def update_brand(database, brand_id, name: str, image: Optional[str] = None) -> dict:
    name = _clean_name(name, "Brand")
    brand = require_brand(database, brand_id)
    if database.brand.find_one({"name": name, "_id": {"$ne": brand["_id"]}}):
        raise Conflict("Brand name already exists")

    try:
        updated = database.brand.find_one_and_update(
            {"_id": brand["_id"]},
            {"$set": {"name": name, "image": image or brand.get("image", ""), "updated_at": datetime.now(timezone.utc)}},
            return_document=ReturnDocument.AFTER,
        )
    except DuplicateKeyError:
        raise Conflict("Brand name already exists")
    if updated is None:
        raise NotFound("Brand not found")
    return updated


def delete_brand(database, brand_id) -> None:
    brand = require_brand(database, brand_id)
    # The cached count can drift, so ask the product collection
    if true_count(database, brand["_id"]) > 0:
        raise IntegrityViolation("Cannot delete brand with existing products. Please delete all products first.")
    database.brand.delete_one({"_id": brand["_id"]})
    logger.info("Brand deleted", brand_id=str(brand["_id"]), name=brand["name"])


def reorder_brands(database, entries: Iterable[dict]) -> dict:
    return _apply_ranks(database.brand, entries)
