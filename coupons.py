"""Coupon evaluation and administration.

``validate`` is the dry-run used for cart previews and never writes.
``apply`` re-checks the coupon and claims one use atomically; it is only
called while creating an order.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

import structlog
from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from config import CouponPolicy
from database import as_utc, create_document, to_object_id, utcnow
from errors import ConflictError, CouponError, CouponFailure, NotFoundError, ValidationError
from pricing import Number, round_money, to_decimal
from schemas import Coupon, CouponUpdate

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class CouponQuote:
    code: str
    discount_type: str
    discount_value: float
    discount_amount: Decimal

    def as_dict(self) -> dict:
        return {
            "code": self.code,
            "discountType": self.discount_type,
            "discountValue": self.discount_value,
            "discountAmount": float(self.discount_amount),
        }


def normalize_code(code: str) -> str:
    return code.strip().upper()


def find_active(db: Database, code: str) -> Optional[dict]:
    return db["coupon"].find_one({"code": normalize_code(code), "isActive": True})


def compute_discount(coupon: dict, total: Number) -> Decimal:
    total = to_decimal(total)
    value = to_decimal(coupon.get("discountValue", 0))
    if coupon.get("discountType") == "percentage":
        discount = total * value / 100
        cap = coupon.get("maxDiscountAmount")
        if cap is not None and discount > to_decimal(cap):
            discount = to_decimal(cap)
    else:
        discount = min(value, total)
    return round_money(discount)


def check(coupon: dict, total: Number, now: datetime) -> None:
    """Raise CouponError for the first rule the coupon breaks."""
    valid_from = as_utc(coupon.get("validFrom"))
    valid_until = as_utc(coupon.get("validUntil"))
    if valid_from is not None and now < valid_from:
        raise CouponError(CouponFailure.NOT_YET_VALID)
    if valid_until is not None and now > valid_until:
        raise CouponError(CouponFailure.EXPIRED)
    limit = coupon.get("usageLimit")
    if limit is not None and coupon.get("usedCount", 0) >= limit:
        raise CouponError(CouponFailure.LIMIT_REACHED)
    minimum = coupon.get("minPurchaseAmount") or 0
    if to_decimal(total) < to_decimal(minimum):
        raise CouponError(CouponFailure.BELOW_MINIMUM, minimum=minimum)


def _quote(coupon: dict, total: Number) -> CouponQuote:
    return CouponQuote(
        code=coupon["code"],
        discount_type=coupon["discountType"],
        discount_value=coupon["discountValue"],
        discount_amount=compute_discount(coupon, total),
    )


def validate(db: Database, code: str, proposed_total: Number, now: Optional[datetime] = None) -> CouponQuote:
    now = as_utc(now) or utcnow()
    coupon = find_active(db, code)
    if coupon is None:
        raise CouponError(CouponFailure.NOT_FOUND)
    check(coupon, proposed_total, now)
    return _quote(coupon, proposed_total)


def apply(db: Database, code: str, proposed_total: Number, now: Optional[datetime] = None) -> CouponQuote:
    now = as_utc(now) or utcnow()
    coupon = find_active(db, code)
    if coupon is None:
        raise CouponError(CouponFailure.NOT_FOUND)
    check(coupon, proposed_total, now)

    # The limit lives in the filter so two orders racing for the last use
    # cannot both succeed.
    claim = {"_id": coupon["_id"], "isActive": True}
    limit = coupon.get("usageLimit")
    if limit is not None:
        claim["usedCount"] = {"$lt": limit}
    result = db["coupon"].update_one(claim, {"$inc": {"usedCount": 1}, "$set": {"updated_at": now}})
    if result.modified_count == 0:
        raise CouponError(CouponFailure.LIMIT_REACHED)

    logger.info("coupon_applied", code=coupon["code"])
    return _quote(coupon, proposed_total)


def release(db: Database, code: str) -> None:
    """Hand back a use taken by ``apply`` for an order that was never saved."""
    result = db["coupon"].update_one(
        {"code": normalize_code(code), "usedCount": {"$gt": 0}},
        {"$inc": {"usedCount": -1}, "$set": {"updated_at": utcnow()}},
    )
    if result.modified_count:
        logger.info("coupon_released", code=normalize_code(code))


def apply_with_policy(db: Database, code: Optional[str], proposed_total: Number, policy: CouponPolicy, now: Optional[datetime] = None) -> Optional[CouponQuote]:
    if not code or not code.strip():
        return None
    try:
        return apply(db, code, proposed_total, now=now)
    except CouponError as exc:
        if policy == CouponPolicy.STRICT:
            raise
        logger.info("coupon_skipped", code=normalize_code(code), reason=exc.reason.value)
        return None


# --------------
# Administration
# --------------
def create_coupon(db: Database, payload: Coupon) -> dict:
    try:
        coupon_id = create_document(db, "coupon", payload)
    except DuplicateKeyError:
        raise ConflictError("Coupon code already exists")
    logger.info("coupon_created", code=payload.code)
    return db["coupon"].find_one({"_id": to_object_id(coupon_id)})


def list_coupons(db: Database) -> list:
    return list(db["coupon"].find({}).sort("created_at", -1))


def update_coupon(db: Database, coupon_id: str, payload: CouponUpdate) -> dict:
    changes = payload.model_dump(by_alias=True, exclude_unset=True)
    if not changes:
        raise ValidationError("No coupon fields to update")
    changes["updated_at"] = utcnow()
    try:
        coupon = db["coupon"].find_one_and_update(
            {"_id": to_object_id(coupon_id, "coupon id")},
            {"$set": changes},
            return_document=ReturnDocument.AFTER,
        )
    except DuplicateKeyError:
        raise ConflictError("Coupon code already exists")
    if coupon is None:
        raise NotFoundError("Coupon", coupon_id)
    return coupon


def delete_coupon(db: Database, coupon_id: str) -> None:
    result = db["coupon"].delete_one({"_id": to_object_id(coupon_id, "coupon id")})
    if result.deleted_count == 0:
        raise NotFoundError("Coupon", coupon_id)
