"""Polling loop that turns stored trader activity into our own orders.

One coroutine owns the aggregation buffer, the position tracker (through the
engine) and the risk gate, and processes trades strictly one at a time. The
risk gate's read-then-write is only safe under that serialization.
"""

from __future__ import annotations

import asyncio
import dataclasses
import time
from typing import Awaitable, Callable, Optional

import structlog

from polycopy.copying.aggregation import MIN_TOKENS_FOR_ORDER, AggregatedTrade, AggregationBuffer
from polycopy.copying.filters import MarketFilter
from polycopy.copying.sizing import CopyStrategyConfig, calculate_order_size, get_trade_multiplier
from polycopy.db.activity import ActivityStore
from polycopy.exceptions import ErrorKind
from polycopy.execution.engine import ExecutionEngine, classify_request
from polycopy.execution.executor import classify_exception
from polycopy.execution.models import (
    BUY,
    ExecutionReport,
    RequestKind,
    TradeEvent,
    UserPosition,
)
from polycopy.feeds.data_api import DataApiClient
from polycopy.risk.gate import RiskGate
from polycopy.utils.parsing import _short

logger = structlog.get_logger()

TRADE_ERROR_BACKOFF = 3.0
LOOP_NETWORK_BACKOFF = 5.0
LOOP_ERROR_BACKOFF = 2.0


def _find_position(positions: list[UserPosition], asset: str) -> Optional[UserPosition]:
    for position in positions:
        if position.asset == asset:
            return position
    return None


class TradeReplicator:
    """Reads unprocessed trades, sizes, buffers, gates and executes them."""

    def __init__(
        self,
        *,
        store: ActivityStore,
        data_api: DataApiClient,
        engine: ExecutionEngine,
        sizing: CopyStrategyConfig,
        wallet_address: str,
        trader_addresses: list[str],
        market_filter: Optional[MarketFilter] = None,
        risk_gate: Optional[RiskGate] = None,
        buffer: Optional[AggregationBuffer] = None,
        get_balance: Optional[Callable[[], Awaitable[float]]] = None,
        aggregation_enabled: bool = True,
        poll_interval: float = 0.3,
        status_interval: float = 10.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.store = store
        self.data_api = data_api
        self.engine = engine
        self.sizing = sizing
        self.wallet_address = wallet_address
        self.trader_addresses = [a.lower() for a in trader_addresses]
        self.market_filter = market_filter if market_filter is not None else MarketFilter()
        self.risk_gate = risk_gate if risk_gate is not None else RiskGate()
        self.buffer = buffer if buffer is not None else AggregationBuffer()
        self._get_balance = get_balance
        self.aggregation_enabled = aggregation_enabled
        self.poll_interval = poll_interval
        self.status_interval = status_interval
        self._sleep = sleep
        self._shutdown = asyncio.Event()
        self._last_status = 0.0

    @property
    def tracker(self):
        return self.engine.tracker

    def stop(self) -> None:
        logger.info("replicator_shutdown_requested")
        self._shutdown.set()

    async def hydrate(self) -> int:
        """Reload the position tracker from stored purchases."""
        rows = await self.store.tracked_purchases(self.trader_addresses)
        return self.tracker.hydrate(rows)

    async def _balance(self) -> Optional[float]:
        if self._get_balance is None:
            return None
        return await self._get_balance()

    # ------------------------------------------------------------------
    # Write-back
    # ------------------------------------------------------------------

    def _retry_marker(self, report: ExecutionReport) -> Optional[int]:
        if report.funds_blocked:
            return self.engine.retry_limit
        if report.exhausted:
            return report.retries
        return None

    async def _write_back(
        self,
        ids: list[str],
        report: ExecutionReport,
        purchase_id: str = "",
    ) -> None:
        marker = self._retry_marker(report)
        if purchase_id and report.filled_quantity > 0:
            await self.store.record_purchase(
                purchase_id, report.filled_quantity, report.filled_cost, retry_marker=marker,
            )
            ids = [i for i in ids if i != purchase_id]
        await self.store.mark_processed(ids, retry_marker=marker)

    def _log_report(self, trade: TradeEvent, report: ExecutionReport,
                    balance_before: Optional[float], balance_after: Optional[float]) -> None:
        log = logger.warning if report.error_kind is not None else logger.info
        log(
            "copy_finished",
            market=trade.label,
            kind=report.kind.value,
            status=report.status.value,
            filled=round(report.filled_quantity, 4),
            cost=round(report.filled_cost, 4),
            retries=report.retries,
            error_kind=report.error_kind.value if report.error_kind else None,
            reason=report.reason,
            balance_before=balance_before,
            balance_after=balance_after,
        )

    # ------------------------------------------------------------------
    # Execution paths
    # ------------------------------------------------------------------

    async def execute_trade(self, trade: TradeEvent) -> Optional[ExecutionReport]:
        """Copy one trade without aggregation. Errors stay with this trade.

        The balance is read before the row is claimed: if it fails the error
        reaches the loop and the trade is picked up again next cycle.
        """
        balance_before = await self._balance()
        try:
            await self.store.mark_in_flight([trade.id])
            kind = classify_request(trade)
            logger.info(
                "copy_started",
                trader=_short(trade.trader_address),
                kind=kind.value,
                market=trade.label,
                usdc=round(trade.usdc_size, 2),
                price=trade.price,
                tx=_short(trade.transaction_hash, 18),
            )
            my_positions = await self.data_api.fetch_positions(self.wallet_address)
            my_position = _find_position(my_positions, trade.asset)

            if kind is RequestKind.MERGE:
                report = await self.engine.merge(trade, my_position)
            elif kind is RequestKind.SELL:
                trader_position = await self.data_api.fetch_position(
                    trade.trader_address, trade.condition_id, trade.asset,
                )
                multiplier = get_trade_multiplier(self.sizing, trade.usdc_size)
                report = await self.engine.sell(trade, my_position, trader_position, multiplier)
                if report.filled_quantity > 0:
                    await self.store.update_bought_sizes(
                        self.tracker.records(trade.condition_id, trade.asset)
                    )
            else:
                size = calculate_order_size(
                    self.sizing,
                    trade.usdc_size,
                    balance_before,
                    my_position.cost_value if my_position else 0.0,
                )
                logger.info("copy_sized", market=trade.label, reasoning=size.reasoning)
                if size.below_minimum:
                    logger.warning("copy_below_minimum", market=trade.label,
                                   amount=round(size.amount, 4),
                                   hint="raise COPY_SIZE or enable aggregation")
                    await self.store.mark_processed([trade.id])
                    return None
                report = await self.engine.buy(trade, size.amount)

            await self._write_back(
                [trade.id], report,
                purchase_id=trade.id if kind is RequestKind.BUY else "",
            )
            self._log_report(trade, report, balance_before, await self._balance())
            return report
        except Exception as exc:
            logger.warning("copy_failed", market=trade.label, trade_id=trade.id,
                           error=str(exc))
            await self.store.mark_processed([trade.id])
            await self._sleep(TRADE_ERROR_BACKOFF)
            return None

    async def execute_aggregated(self, agg: AggregatedTrade) -> Optional[ExecutionReport]:
        """Gate and execute a released aggregation as one BUY."""
        tokens = agg.total_tokens
        decision = self.risk_gate.check_before_execution(
            agg.condition_id, agg.asset, tokens, agg.average_price,
        )
        logger.info(
            "risk_gate_checked",
            market=agg.label,
            trades=len(agg.trades),
            usd=round(agg.total_scaled_usdc_size, 2),
            tokens=round(tokens, 2),
            avg_price=round(agg.average_price, 4),
            allowed=decision.allowed,
            reason=decision.reason,
        )
        if not decision.allowed:
            await self.store.mark_processed(agg.trade_ids)
            return None

        try:
            balance_before = await self._balance()
            synthetic = dataclasses.replace(
                agg.trades[0],
                side=BUY,
                usdc_size=agg.total_raw_usdc_size,
                price=agg.average_price,
            )
            purchase_id = agg.trades[0].id
            report = await self.engine.buy(
                synthetic, agg.total_scaled_usdc_size, record_as=purchase_id,
            )
            if report.filled_quantity > 0:
                self.risk_gate.record_execution(
                    agg.condition_id, agg.asset,
                    report.filled_quantity, report.filled_cost, slug=agg.slug,
                )
            await self._write_back(agg.trade_ids, report, purchase_id=purchase_id)
            self._log_report(synthetic, report, balance_before, await self._balance())
            return report
        except Exception as exc:
            logger.warning("aggregated_copy_failed", market=agg.label,
                           trades=len(agg.trades), error=str(exc))
            await self.store.mark_processed(agg.trade_ids)
            await self._sleep(TRADE_ERROR_BACKOFF)
            return None

    async def _buffer_trades(self, trades: list[TradeEvent]) -> None:
        balance = await self._balance()
        my_positions = await self.data_api.fetch_positions(self.wallet_address)
        for trade in trades:
            if classify_request(trade) is not RequestKind.BUY:
                await self.execute_trade(trade)
                continue
            position = _find_position(my_positions, trade.asset)
            size = calculate_order_size(
                self.sizing,
                trade.usdc_size,
                balance,
                position.cost_value if position else 0.0,
            )
            logger.info(
                "copy_buffered",
                market=trade.label,
                trader_usd=round(trade.usdc_size, 2),
                scaled_usd=round(size.amount, 2),
                tokens=round(size.amount / trade.price, 2) if trade.price > 0 else 0.0,
            )
            await self.store.mark_in_flight([trade.id])
            self.buffer.add_trade(trade, size.amount)

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def run_once(self) -> int:
        """One polling cycle. Returns the number of trades read."""
        trades = await self.store.fetch_unprocessed(self.trader_addresses)
        allowed: list[TradeEvent] = []
        filtered: list[TradeEvent] = []
        for trade in trades:
            (allowed if self.market_filter.allows(trade) else filtered).append(trade)

        if filtered:
            await self.store.mark_processed([t.id for t in filtered])
            logger.info("trades_filtered", count=len(filtered),
                        allowed=self.market_filter.describe())

        if allowed:
            logger.info("trades_detected", count=len(allowed))

        if self.aggregation_enabled:
            if allowed:
                await self._buffer_trades(allowed)
            for agg in self.buffer.get_ready(MIN_TOKENS_FOR_ORDER):
                await self.execute_aggregated(agg)
        else:
            for trade in allowed:
                await self.execute_trade(trade)
        return len(trades)

    def status(self) -> dict[str, float]:
        gate = self.risk_gate.summary()
        return {
            "buffers": len(self.buffer),
            "buffered_tokens": round(self.buffer.pending_tokens(), 2),
            "markets": gate["markets"],
            "paired": gate["paired"],
            "tracked": len(self.tracker),
        }

    def _maybe_log_status(self) -> None:
        now = time.monotonic()
        if now - self._last_status < self.status_interval:
            return
        self._last_status = now
        logger.info("copy_status", traders=len(self.trader_addresses), **self.status())

    async def run(self) -> None:
        logger.info(
            "replicator_started",
            traders=len(self.trader_addresses),
            strategy=self.sizing.describe(),
            aggregation=self.aggregation_enabled,
            token_threshold=MIN_TOKENS_FOR_ORDER,
            markets=self.market_filter.describe(),
            max_cost_basis=self.risk_gate.max_cost_basis,
            max_imbalance=self.risk_gate.max_imbalance,
        )
        while not self._shutdown.is_set():
            try:
                await self.run_once()
            except Exception as exc:
                if classify_exception(exc) is ErrorKind.NETWORK:
                    logger.warning("poll_network_error", error=str(exc))
                    await self._sleep(LOOP_NETWORK_BACKOFF)
                else:
                    logger.error("poll_error", error=str(exc))
                    await self._sleep(LOOP_ERROR_BACKOFF)
            self._maybe_log_status()
            try:
                await asyncio.wait_for(self._shutdown.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass
        logger.info("replicator_stopped", **self.status())
