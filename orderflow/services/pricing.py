from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Mapping

CENT = Decimal("0.01")


def to_money(value) -> Decimal:
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def commission_for(total, rate: Decimal) -> Decimal:
    """Staff commission is always derived from the total being written."""
    return to_money(to_money(total) * rate)


def items_amount(rows: Iterable[Mapping]) -> Decimal:
    return to_money(sum(
        (to_money(row["unit_price"]) * int(row["quantity"]) for row in rows),
        Decimal("0"),
    ))
