"""
Database Schemas for the PokeStash sticker store

Each Pydantic model represents a MongoDB collection. The collection name is the
lowercased class name (e.g., Product -> "product"). Documents are stored with
camelCase keys (the field aliases).
"""
from datetime import datetime
from enum import Enum
from typing import Annotated, List, Literal, Optional

from pydantic import BaseModel, BeforeValidator, ConfigDict, EmailStr, Field
from pydantic.alias_generators import to_camel

from config import CouponPolicy


class OrderStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    REFUNDING = "refunding"
    REFUNDED = "refunded"


class StoreModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        use_enum_values=True,
        str_strip_whitespace=True,
        validate_default=True,
    )


class Product(StoreModel):
    """Sticker product schema"""
    name: str = Field(..., min_length=1, description="Product name (e.g., 'Pikachu Holo Sticker')")
    description: Optional[str] = Field(None, description="Detailed description")
    price: float = Field(..., ge=0, description="Price in INR")
    category: Optional[str] = Field(None, description="Category (e.g., 'Electric', 'Legendary')")
    images: List[str] = Field(default_factory=list, description="Image URLs")
    stock: int = Field(0, ge=0, description="Units in stock")
    sales_count: int = Field(0, ge=0, description="Units sold")
    status: Literal["active", "inactive"] = Field("active", description="Only active products can be ordered")
    seller: Optional[str] = Field(None, description="User id of the seller")


class ProductUpdate(StoreModel):
    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    category: Optional[str] = None
    images: Optional[List[str]] = None
    stock: Optional[int] = Field(None, ge=0)
    status: Optional[Literal["active", "inactive"]] = None


def _normalize_code(value):
    if isinstance(value, str):
        return value.strip().upper()
    return value


CouponCode = Annotated[str, BeforeValidator(_normalize_code)]


class Coupon(StoreModel):
    """Discount coupon schema"""
    code: CouponCode = Field(..., min_length=1, description="Unique code, stored uppercase")
    discount_type: Literal["percentage", "fixed"]
    discount_value: float = Field(..., ge=0)
    min_purchase_amount: float = Field(0, ge=0)
    max_discount_amount: Optional[float] = Field(None, ge=0, description="Cap for percentage coupons; null means no limit")
    valid_from: datetime = Field(default_factory=lambda: datetime.now().astimezone())
    valid_until: datetime
    usage_limit: Optional[int] = Field(None, ge=0, description="null means unlimited")
    used_count: int = Field(0, ge=0)
    is_active: bool = True
    applicable_to: Literal["all", "products", "categories"] = "all"


class CouponUpdate(StoreModel):
    code: Optional[CouponCode] = Field(None, min_length=1)
    discount_type: Optional[Literal["percentage", "fixed"]] = None
    discount_value: Optional[float] = Field(None, ge=0)
    min_purchase_amount: Optional[float] = Field(None, ge=0)
    max_discount_amount: Optional[float] = Field(None, ge=0)
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    usage_limit: Optional[int] = Field(None, ge=0)
    is_active: Optional[bool] = None
    applicable_to: Optional[Literal["all", "products", "categories"]] = None


class ShippingAddress(StoreModel):
    name: Optional[str] = None
    street: str = Field(..., min_length=1, description="Street address is required")
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    zip_code: str = Field(..., min_length=1)
    country: str = Field(..., min_length=1)
    phone: str = Field(..., min_length=1)


class OrderItem(StoreModel):
    """Frozen copy of a product line at purchase time"""
    product: str = Field(..., description="Mongo ObjectId of product as string")
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0)
    name: str
    image: Optional[str] = None


class PaymentInfo(StoreModel):
    razorpay_order_id: Optional[str] = None
    razorpay_order_ids: List[str] = Field(default_factory=list)
    razorpay_payment_id: Optional[str] = None
    razorpay_signature: Optional[str] = None
    razorpay_payment_link_id: Optional[str] = None
    razorpay_payment_link_url: Optional[str] = None
    status: PaymentStatus = PaymentStatus.PENDING


class InventoryLine(StoreModel):
    product: str
    quantity: int


class InventoryRecord(StoreModel):
    reserved: bool = False
    items: List[InventoryLine] = Field(default_factory=list)
    shortfalls: List[InventoryLine] = Field(default_factory=list)


class Order(StoreModel):
    user: str
    order_number: str
    order_items: List[OrderItem]
    shipping_address: ShippingAddress
    payment_method: str = "razorpay"
    items_price: float = Field(..., ge=0)
    shipping_price: float = Field(..., ge=0)
    tax_price: float = Field(..., ge=0)
    discount_amount: float = Field(0, ge=0)
    total_price: float = Field(..., ge=0)
    coupon_code: Optional[str] = None
    payment_info: PaymentInfo = Field(default_factory=PaymentInfo)
    order_status: OrderStatus = Field(OrderStatus.PENDING, description="pending | processing | shipped | delivered | cancelled")
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    inventory: InventoryRecord = Field(default_factory=InventoryRecord)


class CartItem(StoreModel):
    product: str
    quantity: int = Field(1, ge=1)


# -----------------
# Request payloads
# -----------------
class OrderItemIn(StoreModel):
    product: str = Field(..., min_length=1)
    quantity: int = Field(..., ge=1)


class CreateOrderRequest(StoreModel):
    order_items: List[OrderItemIn] = Field(default_factory=list)
    shipping_address: ShippingAddress
    payment_method: Optional[str] = None
    coupon_code: Optional[str] = None
    coupon_policy: Optional[CouponPolicy] = None


class UpdateOrderStatusRequest(StoreModel):
    order_status: OrderStatus
    cancellation_reason: Optional[str] = None


class ValidateCouponRequest(StoreModel):
    code: str = Field(..., min_length=1)
    total_amount: float = Field(..., ge=0)


class AddToCartRequest(StoreModel):
    product_id: str = Field(..., min_length=1)
    quantity: int = Field(1, ge=1)

class UpdateCartItemRequest(StoreModel):
    quantity: int = Field(..., ge=1)


class PaymentOrderRequest(StoreModel):
    order_id: str = Field(..., min_length=1)


class PaymentLinkRequest(StoreModel):
    order_id: str = Field(..., min_length=1)
    customer_name: Optional[str] = None
    customer_email: Optional[EmailStr] = None


class VerifyPaymentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    order_id: str = Field(..., alias="orderId", min_length=1)
    razorpay_order_id: str = Field(..., min_length=1)
    razorpay_payment_id: Optional[str] = None
    razorpay_signature: Optional[str] = None


class VerifyPaymentLinkRequest(BaseModel):
    payment_link_id: str = Field(..., min_length=1)
    payment_id: str = Field(..., min_length=1)


class RefundRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    order_id: str = Field(..., alias="orderId", min_length=1)
    payment_id: Optional[str] = Field(None, alias="paymentId")
    amount: Optional[float] = Field(None, gt=0, description="Rupees; full refund when omitted")
