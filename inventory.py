from typing import Union

import structlog
from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ReturnDocument
from pymongo.database import Database

from database import utcnow
from errors import InsufficientStockError, ProductUnavailableError

logger = structlog.get_logger(__name__)


def check_availability(db: Database, product_id: Union[str, ObjectId], quantity: int) -> dict:
    """Return the product if it can be sold in this quantity right now."""
    try:
        _id = product_id if isinstance(product_id, ObjectId) else ObjectId(str(product_id))
    except (InvalidId, TypeError):
        raise ProductUnavailableError(str(product_id))
    product = db["product"].find_one({"_id": _id})
    if not product:
        raise ProductUnavailableError(str(product_id))
    if product.get("status", "active") != "active":
        raise ProductUnavailableError(str(product_id), product.get("name"))
    available = int(product.get("stock", 0))
    if available < quantity:
        raise InsufficientStockError(product.get("name", str(product_id)), available, quantity)
    return product


def reserve_on_confirm(db: Database, order: dict) -> dict:
    """Take stock for a paid order.

    Only the caller that won the payment-completion claim may call this, so it
    runs once per order. Each line is a guarded decrement; a line that cannot
    be covered is recorded as a shortfall for manual follow-up instead of
    driving stock negative.
    """
    reserved, shortfalls = [], []
    for item in order.get("orderItems", []):
        line = {"product": str(item["product"]), "quantity": int(item["quantity"])}
        try:
            _id = ObjectId(line["product"])
        except (InvalidId, TypeError):
            shortfalls.append(line)
            continue
        result = db["product"].update_one(
            {"_id": _id, "stock": {"$gte": line["quantity"]}},
            {"$inc": {"stock": -line["quantity"], "salesCount": line["quantity"]}},
        )
        if result.modified_count:
            reserved.append(line)
        else:
            shortfalls.append(line)

    record = {"reserved": bool(reserved), "items": reserved, "shortfalls": shortfalls}
    db["order"].update_one({"_id": order["_id"]}, {"$set": {"inventory": record, "updated_at": utcnow()}})

    if shortfalls:
        logger.error("stock_shortfall", order_id=str(order["_id"]), shortfalls=shortfalls)
    else:
        logger.info("stock_reserved", order_id=str(order["_id"]), lines=len(reserved))
    return record


def release_on_cancel(db: Database, order_id: ObjectId) -> bool:
    """Give back exactly what ``reserve_on_confirm`` took. Returns False when there was nothing to give back."""
    order = db["order"].find_one_and_update(
        {"_id": order_id, "inventory.reserved": True},
        {"$set": {"inventory.reserved": False, "updated_at": utcnow()}},
        return_document=ReturnDocument.BEFORE,
    )
    if order is None:
        return False
    for line in order["inventory"].get("items", []):
        db["product"].update_one(
            {"_id": ObjectId(line["product"])},
            {"$inc": {"stock": line["quantity"], "salesCount": -line["quantity"]}},
        )
    logger.info("stock_released", order_id=str(order_id), lines=len(order["inventory"].get("items", [])))
    return True
