import os
from contextlib import asynccontextmanager
from typing import Any, Optional

import structlog
from fastapi import Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo import ReturnDocument
from pymongo.database import Database
from starlette.exceptions import HTTPException as StarletteHTTPException

import carts
import coupons
import database
import orders
import reconciliation
from auth import Identity, ensure_owner_or_admin, get_current_user, require_admin, require_staff
from config import Settings
from database import connect, create_document, get_db, to_object_id, to_str_id, utcnow
from errors import ForbiddenError, NotFoundError, StoreError, ValidationError
from gateway import PaymentGateway, build_gateway
from logconfig import configure_logging
from schemas import (
    AddToCartRequest,
    Coupon,
    CouponUpdate,
    CreateOrderRequest,
    PaymentLinkRequest,
    PaymentOrderRequest,
    Product as ProductSchema,
    ProductUpdate,
    RefundRequest,
    UpdateCartItemRequest,
    UpdateOrderStatusRequest,
    ValidateCouponRequest,
    VerifyPaymentLinkRequest,
    VerifyPaymentRequest,
)

settings = Settings.from_env()
configure_logging(settings.log_level, settings.log_json)
logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    connect(settings.database_url, settings.database_name)
    yield


app = FastAPI(title="PokeStash API", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.state.settings = settings
app.state.gateway = build_gateway(settings)


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_gateway(request: Request) -> Optional[PaymentGateway]:
    return request.app.state.gateway


# --------------
# Error envelopes
# --------------
@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError):
    body: dict[str, Any] = {"success": False, "message": exc.message}
    if isinstance(exc, ValidationError) and exc.errors:
        body["errors"] = exc.errors
    if exc.status_code >= 500:
        logger.error("request_failed", path=request.url.path, error=exc.message, status=exc.status_code)
    return JSONResponse(status_code=exc.status_code, content=body)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"field": ".".join(str(p) for p in err["loc"] if p != "body"), "message": err["msg"]}
        for err in exc.errors()
    ]
    message = errors[0]["message"] if errors else "Invalid request"
    return JSONResponse(status_code=400, content={"success": False, "message": message, "errors": errors})


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"success": False, "message": str(exc.detail)})


@app.get("/")
def root():
    return {"name": "PokeStash API", "status": "ok"}


@app.get("/api/health")
def health(request: Request):
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set",
        "payments": "✅ Configured" if request.app.state.gateway is not None else "❌ Not Configured",
        "collections": [],
    }
    try:
        if database.db is not None:
            response["database"] = "✅ Connected"
            response["collections"] = database.db.list_collection_names()[:10]
    except Exception as e:
        response["database"] = f"⚠️ {str(e)[:80]}"
    return response


# -----------------
# Products Endpoints
# -----------------
@app.get("/api/products")
def list_products(
    q: Optional[str] = Query(default=None, description="Search query"),
    category: Optional[str] = None,
    status: str = "active",
    limit: int = Query(100, ge=1, le=200),
    db: Database = Depends(get_db),
):
    query: dict[str, Any] = {"status": status}
    if q:
        query["$or"] = [
            {"name": {"$regex": q, "$options": "i"}},
            {"description": {"$regex": q, "$options": "i"}},
        ]
    if category:
        query["category"] = category

    docs = list(db["product"].find(query).limit(limit))
    return {"success": True, "count": len(docs), "products": to_str_id(docs)}


@app.get("/api/products/{product_id}")
def get_product(product_id: str, db: Database = Depends(get_db)):
    doc = db["product"].find_one({"_id": to_object_id(product_id, "product id")})
    if not doc:
        raise NotFoundError("Product", product_id)
    return {"success": True, "product": to_str_id(doc)}


@app.post("/api/products", status_code=201)
def create_product(payload: ProductSchema, user: Identity = Depends(require_staff), db: Database = Depends(get_db)):
    data = payload.model_dump(by_alias=True)
    data["seller"] = user.user_id
    new_id = create_document(db, "product", data)
    return {"success": True, "product": to_str_id(db["product"].find_one({"_id": to_object_id(new_id)}))}


@app.put("/api/products/{product_id}")
def update_product(product_id: str, payload: ProductUpdate, user: Identity = Depends(require_staff), db: Database = Depends(get_db)):
    _id = to_object_id(product_id, "product id")
    existing = db["product"].find_one({"_id": _id})
    if not existing:
        raise NotFoundError("Product", product_id)
    if not user.is_admin and existing.get("seller") != user.user_id:
        raise ForbiddenError("Not authorized to update this product")

    data = payload.model_dump(by_alias=True, exclude_unset=True)
    data["updated_at"] = utcnow()
    res = db["product"].find_one_and_update({"_id": _id}, {"$set": data}, return_document=ReturnDocument.AFTER)
    return {"success": True, "product": to_str_id(res)}


# --------------
# Cart Endpoints
# --------------
@app.get("/api/cart")
def get_cart(user: Identity = Depends(get_current_user), db: Database = Depends(get_db)):
    cart = carts.get_or_create(db, user.user_id)
    return {"success": True, "cart": carts.hydrate(db, cart)}


@app.post("/api/cart")
def add_to_cart(payload: AddToCartRequest, user: Identity = Depends(get_current_user), db: Database = Depends(get_db)):
    cart = carts.add_item(db, user.user_id, payload.product_id, payload.quantity)
    return {"success": True, "cart": carts.hydrate(db, cart)}


@app.put("/api/cart/{product_id}")
def update_cart_item(product_id: str, payload: UpdateCartItemRequest, user: Identity = Depends(get_current_user), db: Database = Depends(get_db)):
    cart = carts.update_item(db, user.user_id, product_id, payload.quantity)
    return {"success": True, "cart": carts.hydrate(db, cart)}


@app.delete("/api/cart/{product_id}")
def remove_cart_item(product_id: str, user: Identity = Depends(get_current_user), db: Database = Depends(get_db)):
    cart = carts.remove_item(db, user.user_id, product_id)
    return {"success": True, "cart": carts.hydrate(db, cart)}


# ---------------
# Orders Endpoints
# ---------------
@app.post("/api/orders", status_code=201)
def create_order(
    payload: CreateOrderRequest,
    user: Identity = Depends(get_current_user),
    db: Database = Depends(get_db),
    cfg: Settings = Depends(get_settings),
):
    order = orders.create_order(
        db,
        user.user_id,
        payload.order_items,
        payload.shipping_address,
        payment_method=payload.payment_method,
        coupon_code=payload.coupon_code,
        coupon_policy=payload.coupon_policy or cfg.coupon_policy,
    )
    return {"success": True, "order": to_str_id(order)}


@app.get("/api/orders")
def list_orders(user: Identity = Depends(get_current_user), db: Database = Depends(get_db)):
    docs = orders.list_orders_for_user(db, user.user_id)
    return {"success": True, "count": len(docs), "orders": to_str_id(docs)}


@app.get("/api/orders/{order_id}")
def get_order(order_id: str, user: Identity = Depends(get_current_user), db: Database = Depends(get_db)):
    order = orders.get_order(db, order_id)
    ensure_owner_or_admin(order, user)
    return {"success": True, "order": to_str_id(order)}


@app.put("/api/orders/{order_id}/status")
def update_order_status(
    order_id: str,
    payload: UpdateOrderStatusRequest,
    user: Identity = Depends(require_staff),
    db: Database = Depends(get_db),
):
    order = orders.update_status(db, order_id, payload.order_status, payload.cancellation_reason)
    logger.info("order_status_updated_by", order_id=order_id, user=user.user_id, role=user.role)
    return {"success": True, "order": to_str_id(order)}


# ----------------
# Coupon Endpoints
# ----------------
@app.post("/api/coupons/validate")
def validate_coupon(payload: ValidateCouponRequest, db: Database = Depends(get_db)):
    quote = coupons.validate(db, payload.code, payload.total_amount)
    return {"success": True, "coupon": quote.as_dict()}


@app.post("/api/coupons", status_code=201)
def create_coupon(payload: Coupon, _: Identity = Depends(require_admin), db: Database = Depends(get_db)):
    coupon = coupons.create_coupon(db, payload)
    return {"success": True, "coupon": to_str_id(coupon)}


@app.get("/api/coupons")
def list_coupons(_: Identity = Depends(require_admin), db: Database = Depends(get_db)):
    docs = coupons.list_coupons(db)
    return {"success": True, "count": len(docs), "coupons": to_str_id(docs)}


@app.put("/api/coupons/{coupon_id}")
def update_coupon(coupon_id: str, payload: CouponUpdate, _: Identity = Depends(require_admin), db: Database = Depends(get_db)):
    coupon = coupons.update_coupon(db, coupon_id, payload)
    return {"success": True, "coupon": to_str_id(coupon)}


@app.delete("/api/coupons/{coupon_id}")
def delete_coupon(coupon_id: str, _: Identity = Depends(require_admin), db: Database = Depends(get_db)):
    coupons.delete_coupon(db, coupon_id)
    return {"success": True, "message": "Coupon deleted successfully"}


# -----------------
# Payment Endpoints
# -----------------
@app.post("/api/payments/create-order")
def create_payment_order(
    payload: PaymentOrderRequest,
    user: Identity = Depends(get_current_user),
    db: Database = Depends(get_db),
    gateway: Optional[PaymentGateway] = Depends(get_gateway),
    cfg: Settings = Depends(get_settings),
):
    result = reconciliation.create_remote_order(db, gateway, cfg, payload.order_id, user)
    return {"success": True, **to_str_id(result)}


@app.post("/api/payments/verify")
def verify_payment(
    payload: VerifyPaymentRequest,
    user: Identity = Depends(get_current_user),
    db: Database = Depends(get_db),
    gateway: Optional[PaymentGateway] = Depends(get_gateway),
):
    order, message = reconciliation.verify(
        db,
        gateway,
        payload.order_id,
        payload.razorpay_order_id,
        payload.razorpay_payment_id,
        payload.razorpay_signature,
        user,
    )
    return {"success": True, "message": message, "order": to_str_id(order)}


@app.get("/api/payments/check-status/{order_id}")
def check_payment_status(
    order_id: str,
    user: Identity = Depends(get_current_user),
    db: Database = Depends(get_db),
    gateway: Optional[PaymentGateway] = Depends(get_gateway),
):
    result = reconciliation.check_status(db, gateway, order_id, user)
    return {"success": True, **to_str_id(result)}


@app.post("/api/payments/create-payment-link")
def create_payment_link(
    payload: PaymentLinkRequest,
    user: Identity = Depends(get_current_user),
    db: Database = Depends(get_db),
    gateway: Optional[PaymentGateway] = Depends(get_gateway),
    cfg: Settings = Depends(get_settings),
):
    link = reconciliation.create_payment_link(
        db,
        gateway,
        cfg,
        payload.order_id,
        user,
        customer_name=payload.customer_name,
        customer_email=payload.customer_email,
    )
    return {"success": True, "paymentLink": link}


@app.post("/api/payments/verify-payment-link")
def verify_payment_link(
    payload: VerifyPaymentLinkRequest,
    db: Database = Depends(get_db),
    gateway: Optional[PaymentGateway] = Depends(get_gateway),
):
    order, paid = reconciliation.verify_payment_link(db, gateway, payload.payment_link_id, payload.payment_id)
    if not paid:
        return {"success": False, "message": "Payment not completed"}
    return {"success": True, "message": "Payment verified successfully", "order": to_str_id(order)}


@app.post("/api/payments/refund")
def refund_payment(
    payload: RefundRequest,
    _: Identity = Depends(require_admin),
    db: Database = Depends(get_db),
    gateway: Optional[PaymentGateway] = Depends(get_gateway),
):
    record, order = reconciliation.refund(db, gateway, payload.order_id, payload.payment_id, payload.amount)
    return {"success": True, "refund": record, "order": to_str_id(order)}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=settings.port)
