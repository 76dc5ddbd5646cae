from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Optional, Tuple, Union

Number = Union[int, float, str, Decimal]

SHIPPING_PRICE = Decimal("5")
TAX_PRICE = Decimal("1")

CENT = Decimal("0.01")


def to_decimal(value: Number) -> Decimal:
    if isinstance(value, Decimal):
        return value
    # str() keeps 0.1 as 0.1 instead of its binary float expansion
    return Decimal(str(value))


def round_money(value: Number) -> Decimal:
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def to_minor_units(amount: Number) -> int:
    """Rupees to paise, rounding half-up."""
    return int((to_decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def items_total(lines: Iterable[Tuple[Number, int]]) -> Decimal:
    total = Decimal("0")
    for price, quantity in lines:
        total += to_decimal(price) * quantity
    return total


def order_totals(items_price: Number, discount: Optional[Number] = None) -> dict:
    """Price breakdown for an order; the total never drops below zero."""
    items_price = to_decimal(items_price)
    discount = round_money(discount or 0)
    total = max(Decimal("0"), items_price + SHIPPING_PRICE + TAX_PRICE - discount)
    return {
        "itemsPrice": float(round_money(items_price)),
        "shippingPrice": float(SHIPPING_PRICE),
        "taxPrice": float(TAX_PRICE),
        "discountAmount": float(discount),
        "totalPrice": float(round_money(total)),
    }


def subtotal(items_price: Number) -> Decimal:
    return to_decimal(items_price) + SHIPPING_PRICE + TAX_PRICE
