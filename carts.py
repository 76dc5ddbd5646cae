from typing import Optional

import structlog
from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from database import to_object_id, utcnow
from errors import ConflictError, InsufficientStockError, NotFoundError, ValidationError
from inventory import check_availability
from schemas import CartItem

logger = structlog.get_logger(__name__)

CART_RETRIES = 5


def get_or_create(db: Database, user_id: str) -> dict:
    now = utcnow()
    try:
        return db["cart"].find_one_and_update(
            {"user": user_id},
            {"$setOnInsert": {"items": [], "created_at": now, "updated_at": now}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
    except DuplicateKeyError:
        # lost the insert race to a parallel request for the same user
        return db["cart"].find_one({"user": user_id})


def _line_quantity(cart: Optional[dict], product_id: str) -> int:
    for item in (cart or {}).get("items", []):
        if item.get("product") == product_id:
            return int(item.get("quantity", 0))
    return 0


def add_item(db: Database, user_id: str, product_id: str, quantity: int = 1) -> dict:
    product = check_availability(db, product_id, quantity)
    product_id = str(product["_id"])
    cart = get_or_create(db, user_id)

    wanted = _line_quantity(cart, product_id) + quantity
    if int(product.get("stock", 0)) < wanted:
        raise InsufficientStockError(product.get("name", product_id), int(product.get("stock", 0)), wanted)

    line = CartItem(product=product_id, quantity=quantity).model_dump()
    for _ in range(CART_RETRIES):
        now = utcnow()
        bumped = db["cart"].update_one(
            {"user": user_id, "items.product": product_id},
            {"$inc": {"items.$.quantity": quantity}, "$set": {"updated_at": now}},
        )
        if bumped.matched_count:
            break
        pushed = db["cart"].update_one(
            {"user": user_id, "items.product": {"$ne": product_id}},
            {"$push": {"items": line}, "$set": {"updated_at": now}},
        )
        if pushed.matched_count:
            break
    else:
        logger.warning("cart_update_contended", user=user_id, product=product_id)
        raise ConflictError("Cart is being updated elsewhere, please retry")

    return db["cart"].find_one({"user": user_id})


def update_item(db: Database, user_id: str, product_id: str, quantity: int) -> dict:
    check_availability(db, product_id, quantity)
    result = db["cart"].update_one(
        {"user": user_id, "items.product": product_id},
        {"$set": {"items.$.quantity": quantity, "updated_at": utcnow()}},
    )
    if result.matched_count == 0:
        raise NotFoundError("Cart item", product_id)
    return db["cart"].find_one({"user": user_id})


def remove_item(db: Database, user_id: str, product_id: str) -> dict:
    cart = db["cart"].find_one_and_update(
        {"user": user_id},
        {"$pull": {"items": {"product": product_id}}, "$set": {"updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if cart is None:
        raise NotFoundError("Cart", user_id)
    return cart


def clear(db: Database, user_id: str) -> None:
    db["cart"].update_one({"user": user_id}, {"$set": {"items": [], "updated_at": utcnow()}})


def hydrate(db: Database, cart: dict) -> dict:
    """Attach current product details to each cart line."""
    ids = []
    for item in cart.get("items", []):
        try:
            ids.append(to_object_id(item["product"]))
        except ValidationError:
            continue
    products = {str(p["_id"]): p for p in db["product"].find({"_id": {"$in": ids}})}

    items = []
    for item in cart.get("items", []):
        prod = products.get(item["product"])
        items.append({
            "product": item["product"],
            "quantity": item["quantity"],
            "name": prod.get("name") if prod else None,
            "price": float(prod.get("price", 0)) if prod else None,
            "image": (prod.get("images") or [None])[0] if prod else None,
            "stock": int(prod.get("stock", 0)) if prod else 0,
            "status": prod.get("status") if prod else "unavailable",
        })
    return {"id": str(cart["_id"]), "user": cart["user"], "items": items}
