"""Exchange precision rules.

Every helper floors, so an order never asks for more USD or tokens than we
hold. Floats go through their shortest decimal repr first: ``0.29`` floors to
``0.29``, not to the ``0.28`` a naive ``floor(0.29 * 100) / 100`` yields.

The CLOB is asymmetric about decimals:

- market (FOK) buys: USD amount <= 2 decimals, tokens <= 4 decimals
- limit (GTC) buys:  tokens <= 2 decimals, USD cost <= 4 decimals
- prices: 2 decimals (0.01 tick)
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_FLOOR, Decimal
from typing import Iterable


def _dec(value: float) -> Decimal:
    return Decimal(repr(float(value)))


def floor_to_decimals(value: float, decimals: int) -> float:
    quantum = Decimal(1).scaleb(-decimals)
    return float(_dec(value).quantize(quantum, rounding=ROUND_FLOOR))


def round_amount(amount: float) -> float:
    """USD amounts: 2 decimals."""
    return floor_to_decimals(amount, 2)


def round_tokens(tokens: float) -> float:
    """Token quantities: 4 decimals."""
    return floor_to_decimals(tokens, 4)


def round_price(price: float) -> float:
    """Prices: 2 decimals."""
    return floor_to_decimals(price, 2)


def price_to_cents(price: float) -> int:
    return int((_dec(price) * 100).to_integral_value(rounding=ROUND_FLOOR))


def exact_sub(a: float, b: float) -> float:
    """``a - b`` without binary drift (0.3 - 0.1 == 0.2)."""
    return float(_dec(a) - _dec(b))


def exact_add(a: float, b: float) -> float:
    return float(_dec(a) + _dec(b))


def exact_div(a: float, b: float) -> float:
    if b == 0:
        return 0.0
    return float(_dec(a) / _dec(b))


def weighted_average(pairs: Iterable[tuple[float, float]]) -> float:
    """Average of ``(value, weight)`` pairs, summed in decimal."""
    total = Decimal(0)
    weight = Decimal(0)
    for value, w in pairs:
        total += _dec(value) * _dec(w)
        weight += _dec(w)
    if weight <= 0:
        return 0.0
    return float(total / weight)


@dataclass(frozen=True, slots=True)
class BuyAmounts:
    """Exchange-ready numbers for one buy clip."""

    price: float
    tokens: float
    usd: float

    @property
    def price_str(self) -> str:
        return f"{self.price:.2f}"


def fok_buy_amounts(remaining_usd: float, price: float) -> BuyAmounts:
    """USD floored to cents, tokens = USD / price floored to 4 decimals."""
    cents = price_to_cents(price)
    if cents <= 0:
        return BuyAmounts(price=0.0, tokens=0.0, usd=0.0)
    usd_cents = int((_dec(remaining_usd) * 100).to_integral_value(rounding=ROUND_FLOOR))
    tokens = (Decimal(usd_cents) / Decimal(cents)).quantize(
        Decimal("0.0001"), rounding=ROUND_FLOOR
    )
    return BuyAmounts(
        price=float(Decimal(cents).scaleb(-2)),
        tokens=float(tokens),
        usd=float(Decimal(usd_cents).scaleb(-2)),
    )


def gtc_buy_amounts(remaining_usd: float, price: float) -> BuyAmounts:
    """Tokens floored to 2 decimals, cost = tokens * price at 4 decimals."""
    cents = price_to_cents(price)
    if cents <= 0:
        return BuyAmounts(price=0.0, tokens=0.0, usd=0.0)
    budget = int((_dec(remaining_usd) * 10000).to_integral_value(rounding=ROUND_FLOOR))
    token_cents = budget // cents
    return BuyAmounts(
        price=float(Decimal(cents).scaleb(-2)),
        tokens=float(Decimal(token_cents).scaleb(-2)),
        usd=float(Decimal(token_cents * cents).scaleb(-4)),
    )
