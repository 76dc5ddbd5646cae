from decimal import Decimal

from pricing import items_total, order_totals, round_money, subtotal, to_minor_units


def test_round_money_is_half_up_on_cents():
    assert round_money("2.345") == Decimal("2.35")
    assert round_money("2.344") == Decimal("2.34")
    assert round_money(8.6) == Decimal("8.60")


def test_minor_units():
    assert to_minor_units(86) == 8600
    assert to_minor_units(77.4) == 7740
    assert to_minor_units("0.005") == 1


def test_items_total_uses_exact_decimals():
    assert items_total([(0.1, 3), (40, 2)]) == Decimal("80.3")


def test_order_totals_without_discount():
    totals = order_totals(80)
    assert totals == {
        "itemsPrice": 80.0,
        "shippingPrice": 5.0,
        "taxPrice": 1.0,
        "discountAmount": 0.0,
        "totalPrice": 86.0,
    }


def test_order_totals_never_negative():
    totals = order_totals(60, discount=100)
    assert totals["totalPrice"] == 0.0


def test_total_matches_formula():
    for items_price, discount in [(80, "8.60"), (12.35, "1.24"), (0, 0), (999.99, "50")]:
        totals = order_totals(items_price, discount)
        expected = max(Decimal("0"), subtotal(items_price) - Decimal(str(discount)))
        assert Decimal(str(totals["totalPrice"])) == round_money(expected)
