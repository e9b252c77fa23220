"""Buffer that merges small copied BUYs until they are big enough to trade.

A copied trade is often far below the exchange minimum (5 tokens for a
taker order). BUY events for the same (trader, condition_id, asset) are
summed here; once the scaled size is worth ``token_threshold`` tokens at the
running average price the accumulator is released, exactly once.

SELL events never enter the buffer: sizing a sell needs the live position,
not a buffered snapshot.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field

import structlog

from polycopy.execution.models import BUY, TradeEvent
from polycopy.utils.precision import exact_add, exact_div, weighted_average

logger = structlog.get_logger()

# Exchange minimum for taker orders, in tokens.
MIN_TOKENS_FOR_ORDER = 5.0

AggregationKey = tuple[str, str, str]


@dataclass(slots=True)
class AggregatedTrade:
    trader_address: str
    condition_id: str
    asset: str
    side: str
    slug: str = ""
    event_slug: str = ""
    trades: list[TradeEvent] = field(default_factory=list)
    total_raw_usdc_size: float = 0.0
    total_scaled_usdc_size: float = 0.0
    average_price: float = 0.0
    first_trade_time: float = 0.0
    last_trade_time: float = 0.0

    @property
    def key(self) -> AggregationKey:
        return (self.trader_address, self.condition_id, self.asset)

    @property
    def trade_ids(self) -> list[str]:
        return [t.id for t in self.trades]

    @property
    def total_tokens(self) -> float:
        if self.average_price <= 0:
            return 0.0
        return exact_div(self.total_scaled_usdc_size, self.average_price)

    @property
    def label(self) -> str:
        return self.slug or self.asset[:10]


class AggregationBuffer:
    """Keyed accumulators of copied BUY events."""

    def __init__(self) -> None:
        self._buffer: dict[AggregationKey, AggregatedTrade] = {}

    def __len__(self) -> int:
        return len(self._buffer)

    def __iter__(self):
        return iter(list(self._buffer.values()))

    @staticmethod
    def key_for(event: TradeEvent) -> AggregationKey:
        return (event.trader_address, event.condition_id, event.asset)

    def add_trade(self, event: TradeEvent, scaled_size: float) -> AggregatedTrade:
        """Merge *event* into its accumulator.

        ``scaled_size`` is the sizing policy's USD target for this event. The
        average price is weighted by the raw (observed) sizes.
        """
        if event.side.upper() != BUY:
            raise ValueError("SELL trades are executed immediately, not buffered")

        key = self.key_for(event)
        now = time.time()
        scaled = max(scaled_size, 0.0)
        agg = self._buffer.get(key)

        if agg is None:
            agg = AggregatedTrade(
                trader_address=event.trader_address,
                condition_id=event.condition_id,
                asset=event.asset,
                side=BUY,
                slug=event.slug,
                event_slug=event.event_slug,
                trades=[event],
                total_raw_usdc_size=event.usdc_size,
                total_scaled_usdc_size=scaled,
                average_price=event.price,
                first_trade_time=now,
                last_trade_time=now,
            )
            self._buffer[key] = agg
            logger.info(
                "buffer_created",
                market=agg.label,
                tokens=round(agg.total_tokens, 2),
                threshold=MIN_TOKENS_FOR_ORDER,
                buffers=len(self._buffer),
            )
            return agg

        agg.trades.append(event)
        agg.total_raw_usdc_size = exact_add(agg.total_raw_usdc_size, event.usdc_size)
        agg.total_scaled_usdc_size = exact_add(agg.total_scaled_usdc_size, scaled)
        if agg.total_raw_usdc_size > 0:
            agg.average_price = weighted_average((t.price, t.usdc_size) for t in agg.trades)
        agg.last_trade_time = now
        logger.info(
            "buffer_updated",
            market=agg.label,
            trades=len(agg.trades),
            tokens=round(agg.total_tokens, 2),
            threshold=MIN_TOKENS_FOR_ORDER,
            buffers=len(self._buffer),
        )
        return agg

    def get_ready(self, token_threshold: float = MIN_TOKENS_FOR_ORDER) -> list[AggregatedTrade]:
        """Release and remove every accumulator worth >= ``token_threshold`` tokens."""
        ready: list[AggregatedTrade] = []
        for key, agg in list(self._buffer.items()):
            tokens = agg.total_tokens
            if tokens >= token_threshold:
                del self._buffer[key]
                ready.append(agg)
                logger.info(
                    "buffer_ready",
                    market=agg.label,
                    trades=len(agg.trades),
                    tokens=round(tokens, 2),
                    avg_price=round(agg.average_price, 4),
                )
            else:
                logger.debug(
                    "buffer_waiting",
                    market=agg.label,
                    tokens=round(tokens, 2),
                    threshold=token_threshold,
                )
        return ready

    def pending_tokens(self) -> float:
        return sum(agg.total_tokens for agg in self._buffer.values())
