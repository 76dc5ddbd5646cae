import os
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel


class CouponPolicy(str, Enum):
    """What order creation does when a supplied coupon cannot be applied."""

    STRICT = "strict"
    SKIP = "skip"


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Settings(BaseModel):
    database_url: Optional[str] = None
    database_name: Optional[str] = None
    razorpay_key_id: Optional[str] = None
    razorpay_key_secret: Optional[str] = None
    frontend_url: str = "http://localhost:3000"
    currency: str = "INR"
    gateway_timeout_seconds: float = 10.0
    coupon_policy: CouponPolicy = CouponPolicy.SKIP
    stale_order_hours: int = 24
    log_level: str = "INFO"
    log_json: bool = True
    cors_origins: List[str] = ["*"]
    port: int = 8000

    @property
    def razorpay_configured(self) -> bool:
        return bool(self.razorpay_key_id and self.razorpay_key_secret)

    @classmethod
    def from_env(cls) -> "Settings":
        origins = os.getenv("CORS_ORIGINS")
        return cls(
            database_url=os.getenv("DATABASE_URL"),
            database_name=os.getenv("DATABASE_NAME"),
            razorpay_key_id=os.getenv("RAZORPAY_KEY_ID") or None,
            razorpay_key_secret=os.getenv("RAZORPAY_KEY_SECRET") or None,
            frontend_url=os.getenv("FRONTEND_URL", "http://localhost:3000"),
            currency=os.getenv("CURRENCY", "INR"),
            gateway_timeout_seconds=float(os.getenv("GATEWAY_TIMEOUT_SECONDS", "10")),
            coupon_policy=CouponPolicy(os.getenv("COUPON_POLICY", CouponPolicy.SKIP.value).lower()),
            stale_order_hours=int(os.getenv("STALE_ORDER_HOURS", "24")),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            log_json=_env_bool("LOG_JSON", True),
            cors_origins=[o.strip() for o in origins.split(",") if o.strip()] if origins else ["*"],
            port=int(os.getenv("PORT", 8000)),
        )
