"""Order execution for copied trades: MERGE, BUY and SELL.

Each request runs one loop of book fetch -> intent -> submit until the
target is filled, a guard stops it, a terminal error aborts it, or the retry
budget runs out. Every iteration re-reads the live book, so each clip is
priced against the current best level.

Failure handling is shared by the three request kinds:

========================  =========================================
funds / allowance         abort, terminal (needs a top-up)
below exchange minimum    abort, terminal (upstream sizing defect)
decimal precision         abort, terminal (rounding defect)
rate limited              back off, retry
network / timeout         back off, retry
anything else             retry, short pause while budget remains
========================  =========================================

A success resets the retry counter.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

import structlog

from polycopy.exceptions import ErrorKind
from polycopy.execution.executor import (
    ExchangeClient,
    adapt_submit_response,
    classify_error_message,
    classify_exception,
)
from polycopy.execution.models import (
    BUY,
    SELL,
    ExecutionOutcome,
    ExecutionReport,
    ExecutionStatus,
    OrderBook,
    OrderIntent,
    OrderStyle,
    RequestKind,
    TradeEvent,
    UserPosition,
)
from polycopy.execution.position_tracker import PositionTracker
from polycopy.utils.precision import (
    exact_add,
    exact_sub,
    fok_buy_amounts,
    gtc_buy_amounts,
    round_amount,
    round_price,
    round_tokens,
)

logger = structlog.get_logger()

# Exchange-imposed minimums. Not configurable.
TAKER_MIN_TOKENS = 5.0
MAKER_MIN_USD = 1.00
MIN_ORDER_SIZE_USD = 0.10
MIN_ORDER_SIZE_TOKENS = 0.10

MAX_SLIPPAGE = 1.10  # best ask may be at most 10% above the trader's price
MAKER_OFFSET_PCT = 0.02
TICK = 0.01

# event, default reason, operator hint
_TERMINAL_FAILURES: dict[ErrorKind, tuple[str, str, str]] = {
    ErrorKind.FUNDS: ("order_rejected_funds", "insufficient balance or allowance",
                      "top up USDC or refresh allowance before retrying"),
    ErrorKind.SIZE: ("order_below_minimum", "order below exchange minimum",
                     "check aggregation thresholds and sizing"),
    ErrorKind.PRECISION: ("order_precision_rejected", "decimal precision rejected",
                          "amounts must be floored before submission"),
}


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Retry budget and backoff delays, in seconds."""

    retry_limit: int = 3
    rate_limit_delay: float = 5.0
    network_delay: float = 2.0
    raised_network_delay: float = 3.0
    retry_delay: float = 1.0

    def backoff(self, kind: ErrorKind, *, raised: bool) -> float:
        if kind is ErrorKind.RATE_LIMIT:
            return self.rate_limit_delay
        if kind is ErrorKind.NETWORK:
            return self.raised_network_delay if raised else self.network_delay
        return 0.0


def classify_request(trade: TradeEvent) -> RequestKind:
    if trade.activity_type.upper() == "MERGE":
        return RequestKind.MERGE
    return RequestKind.SELL if trade.side.upper() == SELL else RequestKind.BUY


def compute_sell_size(
    trade_tokens: float,
    held: float,
    trader_remaining: Optional[float],
    tracked_bought: float,
    multiplier: float = 1.0,
) -> float:
    """Tokens to sell when a copied trader sells ``trade_tokens``.

    The trader's exit fraction is ``trade / (remaining + trade)``. It is
    applied to what we bought while copying them, falling back to the live
    holding only when nothing was tracked. A trader with nothing left means
    we close everything. The result never exceeds ``held``.
    """
    cap = round_tokens(max(held, 0.0))
    if trader_remaining is None or trader_remaining <= 0:
        return cap
    denominator = trader_remaining + trade_tokens
    if denominator <= 0:
        return 0.0
    fraction = trade_tokens / denominator
    basis = tracked_bought if tracked_bought > 0 else held
    size = round_tokens(max(basis * fraction * multiplier, 0.0))
    return min(size, cap)


@dataclass(slots=True)
class _Run:
    """Mutable loop state for one request."""

    kind: RequestKind
    label: str
    retry: int = 0
    filled_quantity: float = 0.0
    filled_cost: float = 0.0
    status: Optional[ExecutionStatus] = None
    error_kind: Optional[ErrorKind] = None
    reason: str = ""

    def stop(self, status: ExecutionStatus, reason: str,
             error_kind: Optional[ErrorKind] = None) -> None:
        self.status = status
        self.reason = reason
        self.error_kind = error_kind

    def report(self, retry_limit: int) -> ExecutionReport:
        status = self.status
        if status is None:
            status = (
                ExecutionStatus.EXHAUSTED if self.retry >= retry_limit
                else ExecutionStatus.COMPLETED
            )
        return ExecutionReport(
            kind=self.kind,
            status=status,
            filled_quantity=self.filled_quantity,
            filled_cost=self.filled_cost,
            retries=self.retry,
            error_kind=self.error_kind,
            reason=self.reason or (
                f"retries exhausted ({self.retry})"
                if status is ExecutionStatus.EXHAUSTED else "done"
            ),
        )


class ExecutionEngine:
    """Turns copy requests into exchange orders."""

    def __init__(
        self,
        *,
        client: ExchangeClient,
        tracker: PositionTracker,
        retry_policy: Optional[RetryPolicy] = None,
        skip_slippage_check: bool = False,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.client = client
        self.tracker = tracker
        self.retry_policy = retry_policy or RetryPolicy()
        self.skip_slippage_check = skip_slippage_check
        self._sleep = sleep

    @property
    def retry_limit(self) -> int:
        return self.retry_policy.retry_limit

    # ------------------------------------------------------------------
    # Shared plumbing
    # ------------------------------------------------------------------

    async def _fetch_book(self, token_id: str, run: _Run) -> Optional[OrderBook]:
        try:
            return await self.client.get_order_book(token_id)
        except Exception as exc:
            await self._on_failure(run, classify_exception(exc), str(exc), raised=True)
            return None

    async def _submit(self, intent: OrderIntent) -> tuple[ExecutionOutcome, str, bool]:
        """Build, sign and post one order. Never raises."""
        try:
            signed = await self.client.build_order(intent)
            result = adapt_submit_response(await self.client.submit(signed, intent.style))
        except Exception as exc:
            return (
                ExecutionOutcome(0.0, 0.0, False, classify_exception(exc)),
                str(exc),
                True,
            )
        if result.success:
            return ExecutionOutcome(0.0, 0.0, True), "", False
        kind = result.error_kind or classify_error_message(result.error)
        return ExecutionOutcome(0.0, 0.0, False, kind), result.error or "", False

    async def _on_failure(self, run: _Run, kind: ErrorKind, error: str,
                          *, raised: bool) -> None:
        """Apply the shared retry table. Sets ``run.status`` on terminal errors."""
        if kind.terminal:
            event, reason, hint = _TERMINAL_FAILURES[kind]
            logger.warning(event, market=run.label, error=error, hint=hint)
            run.stop(ExecutionStatus.ABORTED, error or reason, kind)
            return

        run.retry += 1
        run.error_kind = kind
        delay = self.retry_policy.backoff(kind, raised=raised)
        if delay <= 0 and run.retry < self.retry_limit:
            delay = self.retry_policy.retry_delay
        logger.warning(
            "order_failed",
            market=run.label,
            kind=kind.value,
            attempt=run.retry,
            limit=self.retry_limit,
            backoff=delay,
            error=error,
        )
        if delay > 0:
            await self._sleep(delay)

    # ------------------------------------------------------------------
    # MERGE / SELL: walk the bid side
    # ------------------------------------------------------------------

    async def _walk_bids(self, run: _Run, token_id: str, remaining: float) -> None:
        while remaining > 0 and run.retry < self.retry_limit:
            book = await self._fetch_book(token_id, run)
            if run.status is not None:
                return
            if book is None:
                continue
            best = book.best_bid()
            if best is None:
                logger.warning("no_bids", market=run.label)
                run.stop(ExecutionStatus.ABORTED, "no bids in order book")
                return
            if remaining < MIN_ORDER_SIZE_TOKENS:
                logger.info("remainder_below_minimum", market=run.label,
                            remaining=remaining)
                return

            amount = round_tokens(min(remaining, best.size))
            if amount < MIN_ORDER_SIZE_TOKENS:
                logger.info("clip_below_minimum", market=run.label, amount=amount)
                return
            price = round_price(best.price)
            intent = OrderIntent(
                side=SELL,
                token_id=token_id,
                amount=amount,
                price=price,
                style=OrderStyle.GTC,
                market_order=True,
            )
            logger.info("sell_clip", market=run.label, best_bid=best.price,
                        bid_size=best.size, amount=amount, price=price)

            outcome, error, raised = await self._submit(intent)
            if outcome.success:
                run.retry = 0
                run.error_kind = None
                run.filled_quantity = exact_add(run.filled_quantity, amount)
                run.filled_cost = exact_add(run.filled_cost, round_tokens(amount * price))
                remaining = exact_sub(remaining, amount)
                logger.info("order_filled", market=run.label, side=SELL,
                            tokens=amount, price=price, remaining=remaining)
            else:
                await self._on_failure(run, outcome.error_kind or ErrorKind.UNKNOWN,
                                       error, raised=raised)
                if run.status is not None:
                    return

    async def merge(
        self, trade: TradeEvent, position: Optional[UserPosition]
    ) -> ExecutionReport:
        """Liquidate our whole position in ``trade.asset`` at the best bids."""
        run = _Run(kind=RequestKind.MERGE, label=trade.label)
        if position is None or position.size <= 0:
            logger.warning("no_position_to_merge", market=trade.label)
            run.stop(ExecutionStatus.SKIPPED, "no position to merge")
            return run.report(self.retry_limit)

        remaining = round_tokens(position.size)
        if remaining < MIN_ORDER_SIZE_TOKENS:
            logger.warning("merge_position_too_small", market=trade.label, tokens=remaining)
            run.stop(ExecutionStatus.SKIPPED, f"position {remaining} tokens below minimum")
            return run.report(self.retry_limit)

        logger.info("merge_started", market=trade.label, tokens=remaining)
        await self._walk_bids(run, position.asset or trade.asset, remaining)
        return run.report(self.retry_limit)

    async def sell(
        self,
        trade: TradeEvent,
        position: Optional[UserPosition],
        trader_position: Optional[UserPosition],
        multiplier: float = 1.0,
    ) -> ExecutionReport:
        """Mirror a trader's sell proportionally, then decay the ledger."""
        run = _Run(kind=RequestKind.SELL, label=trade.label)
        if position is None or position.size <= 0:
            logger.warning("no_position_to_sell", market=trade.label)
            run.stop(ExecutionStatus.SKIPPED, "no position to sell")
            return run.report(self.retry_limit)

        tracked = self.tracker.bought_quantity(trade.condition_id, trade.asset)
        trader_remaining = trader_position.size if trader_position else None
        remaining = compute_sell_size(
            trade.token_size, position.size, trader_remaining, tracked, multiplier,
        )
        logger.info(
            "sell_sized",
            market=trade.label,
            trader_sold=round(trade.token_size, 4),
            trader_remaining=trader_remaining,
            tracked_bought=round(tracked, 4),
            held=round(position.size, 4),
            multiplier=multiplier,
            sell_tokens=remaining,
            basis="tracked" if tracked > 0 else "live_position",
        )
        if remaining < MIN_ORDER_SIZE_TOKENS:
            run.stop(ExecutionStatus.SKIPPED,
                     f"sell size {remaining} tokens below minimum {MIN_ORDER_SIZE_TOKENS}")
            return run.report(self.retry_limit)

        await self._walk_bids(run, trade.asset, remaining)

        if run.filled_quantity > 0 and tracked > 0:
            self.tracker.reduce_proportionally(
                trade.condition_id, trade.asset, run.filled_quantity / tracked,
            )
        return run.report(self.retry_limit)

    # ------------------------------------------------------------------
    # BUY: walk the ask side
    # ------------------------------------------------------------------

    def _maker_price(self, best_ask: float, trader_price: float) -> float:
        """Highest 2-decimal price strictly below the ask, capped by the trader's price."""
        offset = max(TICK, best_ask * MAKER_OFFSET_PCT)
        price = min(trader_price, round_price(exact_sub(best_ask, offset)))
        if price >= best_ask:
            price = round_price(exact_sub(best_ask, TICK))
        return price

    async def buy(
        self,
        trade: TradeEvent,
        amount_usd: float,
        *,
        record_as: str = "",
    ) -> ExecutionReport:
        """Spend up to ``amount_usd`` on ``trade.asset``.

        Fills land in the position tracker under ``record_as`` (defaults to
        the trade id).
        """
        run = _Run(kind=RequestKind.BUY, label=trade.label)
        remaining = round_amount(amount_usd)
        trader_price = round_price(trade.price)
        logger.info("buy_started", market=trade.label, amount_usd=remaining,
                    trader_price=trade.price,
                    slippage_check=not self.skip_slippage_check)

        while remaining > 0 and run.retry < self.retry_limit:
            book = await self._fetch_book(trade.asset, run)
            if run.status is not None:
                break
            if book is None:
                continue
            best = book.best_ask()
            if best is None:
                logger.warning("no_asks", market=trade.label)
                run.stop(ExecutionStatus.ABORTED, "no asks in order book")
                break

            if not self.skip_slippage_check:
                max_price = trade.price * MAX_SLIPPAGE
                if best.price > max_price:
                    logger.warning("slippage_too_high", market=trade.label,
                                   best_ask=best.price, max_price=round(max_price, 4))
                    run.stop(ExecutionStatus.ABORTED,
                             f"best ask {best.price} above {max_price:.4f}")
                    break

            if remaining < MIN_ORDER_SIZE_USD:
                logger.info("remainder_below_minimum", market=trade.label,
                            remaining=remaining)
                break

            best_ask = round_price(best.price)
            if remaining >= MAKER_MIN_USD:
                style = OrderStyle.FOK
                amounts = fok_buy_amounts(remaining, best_ask)
            elif best_ask > 0 and remaining / best_ask >= TAKER_MIN_TOKENS:
                style = OrderStyle.GTC
                price = self._maker_price(best_ask, trader_price)
                if price <= 0:
                    run.stop(ExecutionStatus.ABORTED, "no maker price below best ask")
                    break
                amounts = gtc_buy_amounts(remaining, price)
            else:
                logger.warning(
                    "order_too_small",
                    market=trade.label,
                    usd=remaining,
                    tokens=round(remaining / best_ask, 4) if best_ask > 0 else 0.0,
                    hint="check aggregation thresholds",
                )
                run.stop(ExecutionStatus.ABORTED,
                         f"${remaining} is below both ${MAKER_MIN_USD} and "
                         f"{TAKER_MIN_TOKENS} tokens")
                break

            if amounts.tokens <= 0:
                logger.info("order_rounds_to_zero", market=trade.label, usd=remaining)
                break

            intent = OrderIntent(
                side=BUY,
                token_id=trade.asset,
                amount=amounts.usd if style is OrderStyle.FOK else amounts.tokens,
                price=amounts.price,
                style=style,
                market_order=style is OrderStyle.FOK,
            )
            logger.info("buy_clip", market=trade.label, style=style.value,
                        usd=amounts.usd, tokens=amounts.tokens,
                        price=amounts.price_str, best_ask=best_ask)

            outcome, error, raised = await self._submit(intent)
            if outcome.success:
                run.retry = 0
                run.error_kind = None
                run.filled_quantity = exact_add(run.filled_quantity, amounts.tokens)
                run.filled_cost = exact_add(run.filled_cost, amounts.usd)
                remaining = exact_sub(remaining, amounts.usd)
                logger.info("order_filled", market=trade.label, side=BUY,
                            tokens=amounts.tokens, usd=amounts.usd,
                            price=amounts.price_str, remaining=remaining)
            else:
                await self._on_failure(run, outcome.error_kind or ErrorKind.UNKNOWN,
                                       error, raised=raised)
                if run.status is not None:
                    break

        if run.filled_quantity > 0:
            self.tracker.record_fill(
                trade.condition_id,
                trade.asset,
                run.filled_quantity,
                run.filled_cost,
                trade_id=record_as or trade.id,
            )
        return run.report(self.retry_limit)
