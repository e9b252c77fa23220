"""Copy sizing policy: how many USD to spend copying one trader order.

Three strategies:

- PERCENTAGE: ``COPY_SIZE`` percent of the trader's order.
- FIXED: ``COPY_SIZE`` USD per order, whatever the trader spent.
- ADAPTIVE: a percentage that slides from ``ADAPTIVE_MAX_PERCENT`` (tiny
  orders) through ``COPY_SIZE`` (at the threshold) down to
  ``ADAPTIVE_MIN_PERCENT`` (orders of twice the threshold and above).

A multiplier (single or tiered by the trader's order size) is applied on top,
then the order cap, the per-market position cap and the available balance.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

import structlog

from polycopy.exceptions import ConfigError

logger = structlog.get_logger()

# Never commit the last 1% of the wallet.
BALANCE_USAGE = 0.99


class CopyStrategy(str, Enum):
    PERCENTAGE = "PERCENTAGE"
    FIXED = "FIXED"
    ADAPTIVE = "ADAPTIVE"


@dataclass(frozen=True, slots=True)
class MultiplierTier:
    min_size: float
    max_size: float  # math.inf for "100+"
    multiplier: float

    def contains(self, size: float) -> bool:
        return self.min_size <= size < self.max_size


def parse_tiered_multipliers(raw: str) -> list[MultiplierTier]:
    """Parse ``"1-10:2.0,10-100:1.0,100+:0.5"`` into sorted tiers."""
    tiers: list[MultiplierTier] = []
    for chunk in raw.split(","):
        chunk = chunk.strip()
        if not chunk:
            continue
        bounds, sep, mult = chunk.partition(":")
        if not sep:
            raise ConfigError(f"Invalid multiplier tier {chunk!r}: expected RANGE:MULT")
        bounds = bounds.strip()
        try:
            multiplier = float(mult)
            if bounds.endswith("+"):
                low, high = float(bounds[:-1]), math.inf
            else:
                lo, _, hi = bounds.partition("-")
                low, high = float(lo), float(hi)
        except ValueError as exc:
            raise ConfigError(f"Invalid multiplier tier {chunk!r}") from exc
        if high <= low or multiplier < 0:
            raise ConfigError(f"Invalid multiplier tier {chunk!r}")
        tiers.append(MultiplierTier(low, high, multiplier))
    tiers.sort(key=lambda t: t.min_size)
    return tiers


@dataclass(frozen=True, slots=True)
class CopyStrategyConfig:
    strategy: CopyStrategy = CopyStrategy.PERCENTAGE
    copy_size: float = 10.0
    max_order_size_usd: float = 100.0
    min_order_size_usd: float = 1.0
    max_position_size_usd: float = 0.0  # 0 = no cap
    adaptive_min_percent: float = 5.0
    adaptive_max_percent: float = 20.0
    adaptive_threshold_usd: float = 500.0
    trade_multiplier: float = 1.0
    tiers: tuple[MultiplierTier, ...] = field(default_factory=tuple)

    @classmethod
    def from_settings(cls) -> "CopyStrategyConfig":
        from config.settings import settings
        try:
            strategy = CopyStrategy(settings.COPY_STRATEGY.upper())
        except ValueError as exc:
            raise ConfigError(f"Unknown COPY_STRATEGY: {settings.COPY_STRATEGY}") from exc
        return cls(
            strategy=strategy,
            copy_size=settings.COPY_SIZE,
            max_order_size_usd=settings.MAX_ORDER_SIZE_USD,
            min_order_size_usd=settings.MIN_ORDER_SIZE_USD,
            max_position_size_usd=settings.MAX_POSITION_SIZE_USD,
            adaptive_min_percent=settings.ADAPTIVE_MIN_PERCENT,
            adaptive_max_percent=settings.ADAPTIVE_MAX_PERCENT,
            adaptive_threshold_usd=settings.ADAPTIVE_THRESHOLD_USD,
            trade_multiplier=settings.TRADE_MULTIPLIER,
            tiers=tuple(parse_tiered_multipliers(settings.TIERED_MULTIPLIERS)),
        )

    def describe(self) -> str:
        if self.strategy is CopyStrategy.FIXED:
            return f"FIXED ${self.copy_size:.2f}"
        if self.strategy is CopyStrategy.ADAPTIVE:
            return (
                f"ADAPTIVE {self.adaptive_max_percent}%..{self.copy_size}%.."
                f"{self.adaptive_min_percent}% around ${self.adaptive_threshold_usd:.0f}"
            )
        return f"PERCENTAGE {self.copy_size}%"


@dataclass(frozen=True, slots=True)
class OrderSize:
    """Sizing result. ``amount`` is never bumped up to the minimum."""

    trader_amount: float
    base_amount: float
    amount: float
    multiplier: float
    below_minimum: bool
    reasoning: str


def get_trade_multiplier(config: CopyStrategyConfig, trader_order_usd: float) -> float:
    for tier in config.tiers:
        if tier.contains(trader_order_usd):
            return tier.multiplier
    return config.trade_multiplier


def adaptive_percent(config: CopyStrategyConfig, trader_order_usd: float) -> float:
    threshold = config.adaptive_threshold_usd
    if threshold <= 0:
        return config.copy_size
    if trader_order_usd >= threshold:
        factor = min(1.0, trader_order_usd / threshold - 1.0)
        return config.copy_size + (config.adaptive_min_percent - config.copy_size) * factor
    factor = trader_order_usd / threshold
    return config.adaptive_max_percent + (config.copy_size - config.adaptive_max_percent) * factor


def calculate_order_size(
    config: CopyStrategyConfig,
    trader_order_usd: float,
    available_balance: Optional[float] = None,
    current_position_usd: float = 0.0,
) -> OrderSize:
    """Size one copy order. ``available_balance=None`` skips the balance check."""
    trader_order_usd = max(trader_order_usd, 0.0)
    if config.strategy is CopyStrategy.FIXED:
        base = config.copy_size
        notes = [f"fixed ${base:.2f}"]
    elif config.strategy is CopyStrategy.ADAPTIVE:
        pct = adaptive_percent(config, trader_order_usd)
        base = trader_order_usd * pct / 100.0
        notes = [f"{pct:.1f}% of ${trader_order_usd:.2f} = ${base:.2f}"]
    else:
        base = trader_order_usd * config.copy_size / 100.0
        notes = [f"{config.copy_size}% of ${trader_order_usd:.2f} = ${base:.2f}"]

    multiplier = get_trade_multiplier(config, trader_order_usd)
    amount = base * multiplier
    if multiplier != 1.0:
        notes.append(f"x{multiplier} = ${amount:.2f}")

    if config.max_order_size_usd > 0 and amount > config.max_order_size_usd:
        amount = config.max_order_size_usd
        notes.append(f"capped at max order ${amount:.2f}")

    if config.max_position_size_usd > 0:
        room = max(0.0, config.max_position_size_usd - max(current_position_usd, 0.0))
        if amount > room:
            amount = room
            notes.append(f"position room ${room:.2f}")

    if available_balance is not None:
        usable = max(0.0, available_balance * BALANCE_USAGE)
        if amount > usable:
            amount = usable
            notes.append(f"reduced to balance ${usable:.2f}")

    below = amount < config.min_order_size_usd
    if below:
        notes.append(f"below minimum ${config.min_order_size_usd:.2f}")

    return OrderSize(
        trader_amount=trader_order_usd,
        base_amount=base,
        amount=amount,
        multiplier=multiplier,
        below_minimum=below,
        reasoning=" -> ".join(notes),
    )
