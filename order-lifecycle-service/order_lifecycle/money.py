from decimal import ROUND_HALF_UP, Decimal

CENT = Decimal("0.01")


def to_decimal(value) -> Decimal:
    # str() first so 3.99 stays 3.99 and not its binary expansion
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def to_money(value) -> float:
    return float(to_decimal(value))


def line_total(unit_price, quantity: int) -> Decimal:
    return to_decimal(to_decimal(unit_price) * quantity)
