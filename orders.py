"""Order aggregate: checkout, status machine and reversal."""

from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime, timedelta
from typing import Dict, List, Optional

import structlog
from bson import ObjectId
from pydantic import ValidationError as SchemaError
from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database
from pymongo.errors import PyMongoError

import carts
from config import CouponPolicy
from coupons import apply_with_policy, release as release_coupon
from database import create_document, to_object_id, utcnow
from errors import BusinessRuleError, ConflictError, NotFoundError, ValidationError
from inventory import check_availability, release_on_cancel
from pricing import items_total, order_totals, subtotal
from schemas import Order, OrderItem, OrderItemIn, OrderStatus, PaymentStatus, ShippingAddress

logger = structlog.get_logger(__name__)

MAX_LOOKUP_WORKERS = 8

# Manual transitions. pending/processing -> delivered also happens, but only
# through payment completion (stickers are downloads, paid means delivered).
# delivered -> cancelled is allowed only for paid orders, see can_transition.
TRANSITIONS: Dict[str, set] = {
    OrderStatus.PENDING.value: {OrderStatus.PROCESSING.value, OrderStatus.CANCELLED.value},
    OrderStatus.PROCESSING.value: {OrderStatus.SHIPPED.value, OrderStatus.CANCELLED.value},
    OrderStatus.SHIPPED.value: {OrderStatus.DELIVERED.value, OrderStatus.CANCELLED.value},
    OrderStatus.DELIVERED.value: set(),
    OrderStatus.CANCELLED.value: set(),
}


def can_transition(current: str, target: str, paid: bool = False) -> bool:
    if current == OrderStatus.DELIVERED.value and target == OrderStatus.CANCELLED.value:
        # a paid download can still be revoked, which hands its stock back
        return paid
    return target in TRANSITIONS.get(current, set())


def get_order(db: Database, order_id: str) -> dict:
    order = db["order"].find_one({"_id": to_object_id(order_id, "order id")})
    if not order:
        raise NotFoundError("Order", order_id)
    return order


def _check_items(db: Database, items: List[OrderItemIn]) -> Dict[str, dict]:
    """Look up every product in parallel; the first failure aborts the whole batch."""
    wanted: Dict[str, int] = {}
    for item in items:
        wanted[item.product] = wanted.get(item.product, 0) + item.quantity

    products = {}
    with ThreadPoolExecutor(max_workers=min(MAX_LOOKUP_WORKERS, len(wanted))) as pool:
        futures = {pool.submit(check_availability, db, pid, qty): pid for pid, qty in wanted.items()}
        for future in as_completed(futures):
            products[futures[future]] = future.result()
    return products


def create_order(
    db: Database,
    user_id: str,
    items: List[OrderItemIn],
    shipping_address: ShippingAddress,
    payment_method: Optional[str] = None,
    coupon_code: Optional[str] = None,
    coupon_policy: CouponPolicy = CouponPolicy.SKIP,
    now: Optional[datetime] = None,
) -> dict:
    if not items:
        raise ValidationError("Order items are required")
    now = now or utcnow()

    products = _check_items(db, items)

    # prices always come from the catalog, never from the client
    lines = []
    for item in items:
        product = products[item.product]
        images = product.get("images") or []
        lines.append(OrderItem(
            product=str(product["_id"]),
            quantity=item.quantity,
            price=float(product.get("price", 0)),
            name=product.get("name", ""),
            image=images[0] if images else None,
        ))
    items_price = items_total((line.price, line.quantity) for line in lines)

    quote = apply_with_policy(db, coupon_code, subtotal(items_price), coupon_policy, now=now)
    totals = order_totals(items_price, quote.discount_amount if quote else 0)

    order_id = ObjectId()
    try:
        order = Order(
            user=user_id,
            order_number=str(order_id)[-8:].upper(),
            order_items=lines,
            shipping_address=shipping_address,
            payment_method=payment_method or "razorpay",
            items_price=totals["itemsPrice"],
            shipping_price=totals["shippingPrice"],
            tax_price=totals["taxPrice"],
            discount_amount=totals["discountAmount"],
            total_price=totals["totalPrice"],
            coupon_code=quote.code if quote else None,
        )
        doc = order.model_dump(by_alias=True)
        doc["_id"] = order_id
        doc["created_at"] = now
        create_document(db, "order", doc)
    except (SchemaError, PyMongoError):
        if quote:
            release_coupon(db, quote.code)
        raise
    logger.info("order_created", order_id=str(order_id), user=user_id, total=totals["totalPrice"], coupon=doc["couponCode"])

    try:
        carts.clear(db, user_id)
    except PyMongoError as exc:
        logger.warning("cart_clear_failed", user=user_id, error=str(exc))

    return db["order"].find_one({"_id": order_id})


def update_status(db: Database, order_id: str, target: str, reason: Optional[str] = None, now: Optional[datetime] = None) -> dict:
    now = now or utcnow()
    order = get_order(db, order_id)
    current = order.get("orderStatus")
    paid = order.get("paymentInfo", {}).get("status") == PaymentStatus.COMPLETED.value
    if not can_transition(current, target, paid):
        raise BusinessRuleError(f"Cannot change order status from {current} to {target}")

    if target == OrderStatus.CANCELLED.value:
        return reverse_order(db, order["_id"], reason, expected_status=current, now=now)

    fields = {"orderStatus": target, "updated_at": now}
    if target == OrderStatus.DELIVERED.value:
        fields["deliveredAt"] = now
    updated = db["order"].find_one_and_update(
        {"_id": order["_id"], "orderStatus": current},
        {"$set": fields},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise ConflictError("Order status changed concurrently. Reload and try again.")
    logger.info("order_status_changed", order_id=str(order["_id"]), previous=current, status=target)
    return updated


def reverse_order(
    db: Database,
    order_id: ObjectId,
    reason: Optional[str],
    refunded: bool = False,
    expected_status: Optional[str] = None,
    now: Optional[datetime] = None,
) -> dict:
    """Cancel an order and hand back any stock its payment took.

    Shared by admin cancellation and refunds so both restore inventory the
    same way.
    """
    now = now or utcnow()
    query = {"_id": order_id}
    if expected_status is not None:
        query["orderStatus"] = expected_status
    fields = {
        "orderStatus": OrderStatus.CANCELLED.value,
        "cancelledAt": now,
        "cancellationReason": reason,
        "updated_at": now,
    }
    if refunded:
        fields["paymentInfo.status"] = PaymentStatus.REFUNDED.value

    order = db["order"].find_one_and_update(query, {"$set": fields}, return_document=ReturnDocument.AFTER)
    if order is None:
        if db["order"].count_documents({"_id": order_id}) == 0:
            raise NotFoundError("Order", str(order_id))
        raise ConflictError("Order status changed concurrently. Reload and try again.")

    restored = release_on_cancel(db, order_id)
    logger.info("order_reversed", order_id=str(order_id), refunded=refunded, stock_restored=restored)
    return db["order"].find_one({"_id": order_id})


def repair_lagging_status(db: Database, extra_filter: Optional[dict] = None, now: Optional[datetime] = None) -> int:
    """Mark paid orders as delivered where an earlier update never landed."""
    now = now or utcnow()
    query = {
        "paymentInfo.status": PaymentStatus.COMPLETED.value,
        "orderStatus": {"$nin": [OrderStatus.DELIVERED.value, OrderStatus.CANCELLED.value]},
    }
    query.update(extra_filter or {})
    fixed = 0
    for order in db["order"].find(query):
        result = db["order"].update_one(
            {"_id": order["_id"], "orderStatus": order["orderStatus"]},
            {"$set": {
                "orderStatus": OrderStatus.DELIVERED.value,
                "deliveredAt": order.get("deliveredAt") or order.get("updated_at") or now,
                "updated_at": now,
            }},
        )
        fixed += result.modified_count
    if fixed:
        logger.info("order_status_repaired", count=fixed)
    return fixed


def list_orders_for_user(db: Database, user_id: str) -> List[dict]:
    repair_lagging_status(db, {"user": user_id})
    orders = db["order"].find({"user": user_id}).sort("created_at", DESCENDING)
    # unpaid checkouts that never left pending are not shown to the customer
    return [
        o for o in orders
        if o.get("paymentInfo", {}).get("status") == PaymentStatus.COMPLETED.value
        or o.get("orderStatus") != OrderStatus.PENDING.value
    ]


def cancel_stale_pending(db: Database, older_than_hours: int, now: Optional[datetime] = None) -> int:
    now = now or utcnow()
    cutoff = now - timedelta(hours=older_than_hours)
    stale = db["order"].find({
        "orderStatus": OrderStatus.PENDING.value,
        "paymentInfo.status": PaymentStatus.PENDING.value,
        "created_at": {"$lt": cutoff},
    })
    cancelled = 0
    for order in stale:
        try:
            reverse_order(
                db,
                order["_id"],
                f"Payment not received within {older_than_hours} hours",
                expected_status=OrderStatus.PENDING.value,
                now=now,
            )
        except ConflictError:
            # moved on (paid or handled by an admin) since the scan started
            logger.info("stale_order_skipped", order_id=str(order["_id"]))
            continue
        cancelled += 1
    logger.info("stale_orders_cancelled", count=cancelled, older_than_hours=older_than_hours)
    return cancelled
