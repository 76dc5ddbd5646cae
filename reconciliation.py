"""Payment reconciliation.

Client callbacks, status polls and payment-link confirmations all end in
``complete_order``, which claims the pending -> completed transition in one
atomic update. Only the caller that wins the claim takes stock, so replays and
races between a poll and a webhook cannot decrement inventory twice.
"""

from datetime import datetime
from typing import List, Optional, Tuple

import structlog
from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.database import Database

from auth import Identity, ensure_owner, ensure_owner_or_admin
from config import Settings
from database import to_object_id, utcnow
from errors import (
    BusinessRuleError,
    GatewayError,
    GatewayUnavailableError,
    NotFoundError,
    SignatureMismatchError,
    ValidationError,
)
from gateway import CAPTURED, PaymentGateway
from inventory import reserve_on_confirm
from orders import get_order, reverse_order
from pricing import to_minor_units
from schemas import OrderStatus, PaymentStatus

logger = structlog.get_logger(__name__)


def _require(gateway: Optional[PaymentGateway]) -> PaymentGateway:
    if gateway is None:
        raise GatewayUnavailableError()
    return gateway


def _first_captured(payments: List[dict]) -> Optional[dict]:
    for payment in payments:
        if payment.get("status") == CAPTURED:
            return payment
    return None


def _payment_status(order: dict) -> str:
    return order.get("paymentInfo", {}).get("status", PaymentStatus.PENDING.value)


def _remote_order_ids(order: dict) -> List[str]:
    """Every remote order opened for this order, oldest first."""
    info = order.get("paymentInfo", {})
    ids = list(info.get("razorpayOrderIds") or [])
    latest = info.get("razorpayOrderId")
    if latest and latest not in ids:
        ids.append(latest)
    return ids


def _ensure_payable(order: dict) -> None:
    if _payment_status(order) != PaymentStatus.PENDING.value:
        raise BusinessRuleError("Order has already been paid")
    if order.get("orderStatus") == OrderStatus.CANCELLED.value:
        raise BusinessRuleError("Order has been cancelled")


def complete_order(
    db: Database,
    order_id: ObjectId,
    remote_payment_id: Optional[str],
    signature: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Tuple[dict, bool]:
    """Record a confirmed payment. Returns the order and whether this call did the work."""
    now = now or utcnow()
    fields = {
        "paymentInfo.status": PaymentStatus.COMPLETED.value,
        "paymentInfo.razorpayPaymentId": remote_payment_id,
        "orderStatus": OrderStatus.DELIVERED.value,
        "deliveredAt": now,
        "updated_at": now,
    }
    if signature:
        fields["paymentInfo.razorpaySignature"] = signature

    order = db["order"].find_one_and_update(
        {"_id": order_id, "paymentInfo.status": PaymentStatus.PENDING.value},
        {"$set": fields},
        return_document=ReturnDocument.AFTER,
    )
    if order is None:
        current = db["order"].find_one({"_id": order_id})
        if current is None:
            raise NotFoundError("Order", str(order_id))
        logger.info("payment_already_recorded", order_id=str(order_id), status=_payment_status(current))
        return current, False

    logger.info("payment_claimed", order_id=str(order_id), payment_id=remote_payment_id)
    reserve_on_confirm(db, order)
    return db["order"].find_one({"_id": order_id}), True


def create_remote_order(db: Database, gateway: Optional[PaymentGateway], settings: Settings, order_id: str, user: Identity) -> dict:
    order = get_order(db, order_id)
    ensure_owner(order, user)
    _ensure_payable(order)

    amount = to_minor_units(order["totalPrice"])
    if amount == 0:
        # fully discounted, nothing to collect
        completed, _ = complete_order(db, order["_id"], None)
        return {"status": PaymentStatus.COMPLETED.value, "order": completed}

    remote = _require(gateway).create_remote_order(
        amount,
        settings.currency,
        f"order_{order['_id']}",
        notes={"orderId": str(order["_id"]), "userId": user.user_id},
    )
    # a retried checkout opens a new remote order; payments on older ones still count
    db["order"].update_one(
        {"_id": order["_id"]},
        {
            "$set": {"paymentInfo.razorpayOrderId": remote["id"], "updated_at": utcnow()},
            "$addToSet": {"paymentInfo.razorpayOrderIds": remote["id"]},
        },
    )
    logger.info("remote_order_created", order_id=str(order["_id"]), remote_order_id=remote["id"], amount=amount)
    return {"order": remote, "key": settings.razorpay_key_id}


def verify(
    db: Database,
    gateway: Optional[PaymentGateway],
    order_id: str,
    remote_order_id: str,
    remote_payment_id: Optional[str],
    signature: Optional[str],
    user: Identity,
) -> Tuple[dict, str]:
    order = get_order(db, order_id)
    ensure_owner_or_admin(order, user, "Not authorized")
    gw = _require(gateway)

    if remote_order_id not in _remote_order_ids(order):
        raise ValidationError("Payment does not belong to this order")
    if _payment_status(order) == PaymentStatus.COMPLETED.value:
        return order, "Payment already verified"

    if not remote_payment_id:
        # QR and other async methods may never hand the client a payment id
        payment = _first_captured(gw.fetch_payments_for_order(remote_order_id))
        if payment is None:
            raise ValidationError("Payment ID is required. Please complete the payment and try again.")
        order, _ = complete_order(db, order["_id"], payment["id"])
        return order, "Payment verified successfully (via order lookup)"

    if not gw.verify_signature(remote_order_id, remote_payment_id, signature):
        logger.warning("signature_mismatch", order_id=order_id, remote_order_id=remote_order_id)
        raise SignatureMismatchError()

    order, _ = complete_order(db, order["_id"], remote_payment_id, signature)
    return order, "Payment verified successfully"


def check_status(db: Database, gateway: Optional[PaymentGateway], order_id: str, user: Identity) -> dict:
    order = get_order(db, order_id)
    ensure_owner(order, user)

    status = _payment_status(order)
    if status != PaymentStatus.PENDING.value:
        return {"status": status, "order": order}

    remote_order_ids = _remote_order_ids(order)
    if gateway is None or not remote_order_ids:
        return {"status": PaymentStatus.PENDING.value, "message": "Payment pending"}

    payment = None
    for remote_order_id in reversed(remote_order_ids):
        try:
            payment = _first_captured(gateway.fetch_payments_for_order(remote_order_id))
        except GatewayError:
            # the client polls again on its own schedule
            continue
        if payment is not None:
            break
    if payment is None:
        return {"status": PaymentStatus.PENDING.value, "message": "Payment pending"}

    order, _ = complete_order(db, order["_id"], payment["id"])
    return {"status": PaymentStatus.COMPLETED.value, "order": order}


def create_payment_link(
    db: Database,
    gateway: Optional[PaymentGateway],
    settings: Settings,
    order_id: str,
    user: Identity,
    customer_name: Optional[str] = None,
    customer_email: Optional[str] = None,
) -> dict:
    order = get_order(db, order_id)
    ensure_owner(order, user)
    _ensure_payable(order)
    gw = _require(gateway)

    address = order.get("shippingAddress", {})
    customer = {"contact": address.get("phone")}
    name = customer_name or address.get("name")
    if name:
        customer["name"] = name
    if customer_email:
        customer["email"] = customer_email

    link = gw.create_payment_link(
        to_minor_units(order["totalPrice"]),
        settings.currency,
        f"Order #{order['orderNumber']} - PokeStash Pokemon Stickers",
        customer,
        f"{settings.frontend_url}/orders?payment_link=true",
        notes={"orderId": str(order["_id"]), "userId": user.user_id, "orderNumber": order["orderNumber"]},
    )
    db["order"].update_one(
        {"_id": order["_id"]},
        {"$set": {
            "paymentInfo.razorpayPaymentLinkId": link["id"],
            "paymentInfo.razorpayPaymentLinkUrl": link.get("short_url"),
            "updated_at": utcnow(),
        }},
    )
    logger.info("payment_link_created", order_id=str(order["_id"]), link_id=link["id"])
    return {"id": link["id"], "short_url": link.get("short_url"), "url": link.get("short_url")}


def verify_payment_link(db: Database, gateway: Optional[PaymentGateway], payment_link_id: str, payment_id: str) -> Tuple[dict, bool]:
    order = db["order"].find_one({"paymentInfo.razorpayPaymentLinkId": payment_link_id})
    if not order:
        raise NotFoundError("Order", payment_link_id)
    gw = _require(gateway)

    if _payment_status(order) == PaymentStatus.COMPLETED.value:
        return order, True

    payment = gw.fetch_payment(payment_id)
    if payment.get("status") != CAPTURED:
        logger.info("payment_link_not_captured", order_id=str(order["_id"]), status=payment.get("status"))
        return order, False

    # the endpoint is public, so the payment has to be one made through this link
    link = gw.fetch_payment_link(payment_link_id)
    linked = {p.get("payment_id") for p in link.get("payments") or []}
    same_remote_order = link.get("order_id") and payment.get("order_id") == link.get("order_id")
    if payment_id not in linked and not same_remote_order:
        logger.warning("payment_link_mismatch", order_id=str(order["_id"]), link_id=payment_link_id, payment_id=payment_id)
        raise ValidationError("Payment does not belong to this payment link")
    if payment.get("amount") != to_minor_units(order["totalPrice"]):
        logger.warning("payment_amount_mismatch", order_id=str(order["_id"]), amount=payment.get("amount"))
        raise ValidationError("Payment amount does not match the order total")

    order, _ = complete_order(db, order["_id"], payment_id)
    return order, True


def refund(
    db: Database,
    gateway: Optional[PaymentGateway],
    order_id: str,
    payment_id: Optional[str] = None,
    amount: Optional[float] = None,
) -> Tuple[dict, dict]:
    gw = _require(gateway)
    order = get_order(db, order_id)
    if _payment_status(order) != PaymentStatus.COMPLETED.value:
        raise BusinessRuleError("Only orders with a completed payment can be refunded")

    recorded = order.get("paymentInfo", {}).get("razorpayPaymentId")
    if payment_id and recorded and payment_id != recorded:
        raise ValidationError("Payment does not belong to this order")
    payment_id = payment_id or recorded
    if not payment_id:
        raise ValidationError("Payment ID is required")

    amount_minor = to_minor_units(amount) if amount else None
    if amount_minor and amount_minor > to_minor_units(order["totalPrice"]):
        raise ValidationError("Refund amount exceeds the order total")

    # one refund in flight per order
    claimed = db["order"].find_one_and_update(
        {"_id": order["_id"], "paymentInfo.status": PaymentStatus.COMPLETED.value},
        {"$set": {"paymentInfo.status": PaymentStatus.REFUNDING.value, "updated_at": utcnow()}},
    )
    if claimed is None:
        raise BusinessRuleError("A refund is already in progress for this order")

    try:
        record = gw.refund(payment_id, amount_minor)
    except GatewayError:
        db["order"].update_one(
            {"_id": order["_id"], "paymentInfo.status": PaymentStatus.REFUNDING.value},
            {"$set": {"paymentInfo.status": PaymentStatus.COMPLETED.value, "updated_at": utcnow()}},
        )
        logger.warning("refund_rolled_back", order_id=order_id, payment_id=payment_id)
        raise
    logger.info("refund_issued", order_id=order_id, payment_id=payment_id, amount=amount_minor)
    order = reverse_order(db, to_object_id(order_id, "order id"), "Refunded", refunded=True)
    return record, order
