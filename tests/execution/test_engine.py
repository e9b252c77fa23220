"""Execution engine tests against a scripted exchange client."""

from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from polycopy.exceptions import ErrorKind, FundsError
from polycopy.execution.engine import (
    ExecutionEngine,
    RetryPolicy,
    classify_request,
    compute_sell_size,
)
from polycopy.execution.models import (
    ExecutionStatus,
    OrderBook,
    OrderStyle,
    RequestKind,
    SubmitResult,
    TradeEvent,
    UserPosition,
)
from polycopy.execution.position_tracker import PositionTracker


def _trade(side="BUY", price=0.50, usdc=10.0, size=0.0, activity_type="TRADE"):
    return TradeEvent(
        id="trade-1",
        trader_address="0xtrader",
        condition_id="cid-1",
        asset="tok-up",
        side=side,
        usdc_size=usdc,
        price=price,
        timestamp=1700000000.0,
        slug="btc-updown-15m",
        size=size,
        activity_type=activity_type,
    )


def _book(bids=(), asks=()):
    return OrderBook.from_raw({
        "bids": [{"price": str(p), "size": str(s)} for p, s in bids],
        "asks": [{"price": str(p), "size": str(s)} for p, s in asks],
    })


def _client(books, results=None):
    client = MagicMock()
    if isinstance(books, list):
        client.get_order_book = AsyncMock(side_effect=books)
    else:
        client.get_order_book = AsyncMock(return_value=books)
    client.build_order = AsyncMock(return_value="signed-order")
    if isinstance(results, list):
        client.submit = AsyncMock(side_effect=results)
    else:
        client.submit = AsyncMock(return_value=results or SubmitResult(success=True))
    return client


def _engine(client, tracker=None, retry_limit=3, skip_slippage_check=False):
    sleep = AsyncMock()
    engine = ExecutionEngine(
        client=client,
        tracker=tracker if tracker is not None else PositionTracker(),
        retry_policy=RetryPolicy(retry_limit=retry_limit),
        skip_slippage_check=skip_slippage_check,
        sleep=sleep,
    )
    return engine, sleep


def _intents(client):
    return [call.args[0] for call in client.build_order.call_args_list]


# -- classification --------------------------------------------------------

def test_classify_request():
    assert classify_request(_trade(side="BUY")) is RequestKind.BUY
    assert classify_request(_trade(side="SELL")) is RequestKind.SELL
    assert classify_request(_trade(side="SELL", activity_type="MERGE")) is RequestKind.MERGE


@pytest.mark.asyncio
@pytest.mark.parametrize("kind", list(ErrorKind))
async def test_terminal_kinds_abort_and_the_rest_retry(kind):
    client = _client(
        _book(asks=[(0.51, 100)]),
        SubmitResult(success=False, error="rejected", error_kind=kind),
    )
    engine, _ = _engine(client)

    report = await engine.buy(_trade(price=0.50), 10.0)

    assert report.error_kind is kind
    if kind.terminal:
        assert report.status is ExecutionStatus.ABORTED
        assert client.submit.await_count == 1
    else:
        assert report.status is ExecutionStatus.EXHAUSTED
        assert client.submit.await_count == 3
    assert kind.terminal == (kind in (ErrorKind.FUNDS, ErrorKind.SIZE, ErrorKind.PRECISION))


# -- MERGE -------------------------------------------------------------------

@pytest.mark.asyncio
async def test_merge_walks_the_bid_side():
    client = _client([
        _book(bids=[(0.50, 40), (0.52, 10)]),  # unsorted on purpose
        _book(bids=[(0.51, 30)]),
    ])
    engine, _ = _engine(client)
    position = UserPosition(asset="tok-up", condition_id="cid-1", size=12.3456)

    report = await engine.merge(_trade(side="SELL", activity_type="MERGE"), position)

    intents = _intents(client)
    assert [(i.amount, i.price) for i in intents] == [(10.0, 0.52), (2.3456, 0.51)]
    assert all(i.side == "SELL" and i.style is OrderStyle.GTC for i in intents)
    assert report.status is ExecutionStatus.COMPLETED
    assert report.filled_quantity == 12.3456


@pytest.mark.asyncio
async def test_merge_without_position_is_skipped():
    client = _client(_book(bids=[(0.5, 10)]))
    engine, _ = _engine(client)
    report = await engine.merge(_trade(side="SELL", activity_type="MERGE"), None)
    assert report.status is ExecutionStatus.SKIPPED
    client.get_order_book.assert_not_awaited()


@pytest.mark.asyncio
async def test_merge_aborts_on_empty_bids():
    client = _client(_book(asks=[(0.5, 10)]))
    engine, _ = _engine(client)
    position = UserPosition(asset="tok-up", condition_id="cid-1", size=10.0)
    report = await engine.merge(_trade(side="SELL", activity_type="MERGE"), position)
    assert report.status is ExecutionStatus.ABORTED
    assert report.error_kind is None
    client.submit.assert_not_awaited()


# -- BUY -----------------------------------------------------------------------

@pytest.mark.asyncio
async def test_buy_uses_fok_at_best_ask_and_records_fill():
    tracker = PositionTracker()
    client = _client(_book(asks=[(0.55, 100), (0.51, 100)]))
    engine, _ = _engine(client, tracker=tracker)

    report = await engine.buy(_trade(price=0.50), 10.0)

    (intent,) = _intents(client)
    assert intent.style is OrderStyle.FOK
    assert intent.market_order
    assert intent.amount == 10.0
    assert intent.price == 0.51
    assert report.status is ExecutionStatus.COMPLETED
    assert report.filled_quantity == 19.6078
    assert report.filled_cost == 10.0
    assert tracker.bought_quantity("cid-1", "tok-up") == pytest.approx(19.6078)
    assert tracker.records("cid-1", "tok-up")[0].trade_id == "trade-1"


@pytest.mark.asyncio
async def test_buy_under_one_dollar_rests_gtc_below_the_ask():
    tracker = PositionTracker()
    client = _client(_book(asks=[(0.15, 500)]))
    engine, _ = _engine(client, tracker=tracker)

    report = await engine.buy(_trade(price=0.16, usdc=20.0), 0.90, record_as="agg-1")

    (intent,) = _intents(client)
    assert intent.style is OrderStyle.GTC
    assert not intent.market_order
    assert intent.price == 0.14
    assert intent.amount == 6.42
    assert report.filled_quantity == 6.42
    assert report.filled_cost == 0.8988
    assert report.status is ExecutionStatus.COMPLETED
    assert tracker.records("cid-1", "tok-up")[0].trade_id == "agg-1"


@pytest.mark.asyncio
async def test_buy_aborts_when_ask_runs_away():
    client = _client(_book(asks=[(0.45, 100)]))
    engine, _ = _engine(client)
    report = await engine.buy(_trade(price=0.40), 5.0)
    assert report.status is ExecutionStatus.ABORTED
    assert "above" in report.reason
    client.submit.assert_not_awaited()


@pytest.mark.asyncio
async def test_buy_slippage_check_can_be_skipped():
    client = _client(_book(asks=[(0.45, 100)]))
    engine, _ = _engine(client, skip_slippage_check=True)
    report = await engine.buy(_trade(price=0.40), 5.0)
    assert report.status is ExecutionStatus.COMPLETED
    client.submit.assert_awaited_once()


@pytest.mark.asyncio
async def test_buy_too_small_for_either_order_style_aborts():
    client = _client(_book(asks=[(0.50, 100)]))
    engine, _ = _engine(client)
    report = await engine.buy(_trade(price=0.50), 0.50)
    assert report.status is ExecutionStatus.ABORTED
    assert report.error_kind is None
    client.submit.assert_not_awaited()


@pytest.mark.asyncio
async def test_buy_aborts_on_empty_asks():
    client = _client(_book(bids=[(0.50, 100)]))
    engine, _ = _engine(client)
    report = await engine.buy(_trade(), 5.0)
    assert report.status is ExecutionStatus.ABORTED
    assert report.filled_quantity == 0.0


# -- failure handling ---------------------------------------------------------

@pytest.mark.asyncio
async def test_funds_error_is_terminal():
    client = _client(
        _book(asks=[(0.50, 100)]),
        SubmitResult(success=False, error="not enough balance / allowance"),
    )
    engine, sleep = _engine(client)
    report = await engine.buy(_trade(), 5.0)
    assert report.status is ExecutionStatus.ABORTED
    assert report.funds_blocked
    client.submit.assert_awaited_once()
    sleep.assert_not_awaited()


@pytest.mark.asyncio
async def test_raised_funds_error_is_terminal():
    client = _client(_book(asks=[(0.50, 100)]))
    client.build_order = AsyncMock(side_effect=FundsError("allowance too low"))
    engine, _ = _engine(client)
    report = await engine.buy(_trade(), 5.0)
    assert report.error_kind is ErrorKind.FUNDS
    assert report.status is ExecutionStatus.ABORTED


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "message, kind",
    [
        ("Size (0.5) lower than the minimum: 5", ErrorKind.SIZE),
        ("invalid amount, max accuracy of 2 decimals", ErrorKind.PRECISION),
    ],
)
async def test_size_and_precision_errors_are_terminal(message, kind):
    client = _client(
        _book(asks=[(0.50, 100)]),
        SubmitResult(success=False, error=message),
    )
    engine, _ = _engine(client)
    report = await engine.buy(_trade(), 5.0)
    assert report.status is ExecutionStatus.ABORTED
    assert report.error_kind is kind
    client.submit.assert_awaited_once()


@pytest.mark.asyncio
async def test_rate_limit_backs_off_then_succeeds():
    client = _client(
        _book(asks=[(0.50, 100)]),
        [SubmitResult(success=False, error="rate limit exceeded"), SubmitResult(success=True)],
    )
    engine, sleep = _engine(client)
    report = await engine.buy(_trade(), 5.0)
    sleep.assert_awaited_once_with(5.0)
    assert report.status is ExecutionStatus.COMPLETED
    assert report.retries == 0
    assert report.filled_cost == 5.0


@pytest.mark.asyncio
async def test_network_backoff_depends_on_failure_path():
    client = _client(
        _book(asks=[(0.50, 100)]),
        [
            httpx.ConnectTimeout("timed out"),
            SubmitResult(success=False, error="network error"),
            SubmitResult(success=True),
        ],
    )
    engine, sleep = _engine(client)
    report = await engine.buy(_trade(), 5.0)
    assert [c.args[0] for c in sleep.await_args_list] == [3.0, 2.0]
    assert report.status is ExecutionStatus.COMPLETED


@pytest.mark.asyncio
async def test_unknown_failures_exhaust_retries():
    client = _client(
        _book(asks=[(0.50, 100)]),
        SubmitResult(success=False, error="order couldn't be matched"),
    )
    engine, sleep = _engine(client, retry_limit=3)
    report = await engine.buy(_trade(), 5.0)
    assert report.status is ExecutionStatus.EXHAUSTED
    assert report.exhausted
    assert report.retries == 3
    assert client.submit.await_count == 3
    # short pause only while retries remain
    assert [c.args[0] for c in sleep.await_args_list] == [1.0, 1.0]


@pytest.mark.asyncio
async def test_book_fetch_errors_count_as_retries():
    client = _client([httpx.ReadTimeout("timed out")] * 2)
    engine, sleep = _engine(client, retry_limit=2)
    report = await engine.buy(_trade(), 5.0)
    assert report.status is ExecutionStatus.EXHAUSTED
    assert report.error_kind is ErrorKind.NETWORK
    client.submit.assert_not_awaited()


# -- SELL ----------------------------------------------------------------------

def test_compute_sell_size_uses_tracked_purchases():
    assert compute_sell_size(40, held=100, trader_remaining=60, tracked_bought=80) == 32.0
    assert compute_sell_size(40, 100, 60, 80, multiplier=0.5) == 16.0


def test_compute_sell_size_falls_back_to_held_and_caps():
    assert compute_sell_size(40, held=50, trader_remaining=60, tracked_bought=0) == 20.0
    assert compute_sell_size(40, held=10, trader_remaining=60, tracked_bought=80) == 10.0


def test_compute_sell_size_closes_when_trader_is_out():
    assert compute_sell_size(40, held=12.34567, trader_remaining=None, tracked_bought=80) == 12.3456
    assert compute_sell_size(40, held=25, trader_remaining=0, tracked_bought=80) == 25.0


@pytest.mark.asyncio
async def test_sell_mirrors_trader_fraction_and_decays_tracker():
    tracker = PositionTracker()
    tracker.record_fill("cid-1", "tok-up", 80.0, 40.0, trade_id="b1")
    client = _client(_book(bids=[(0.60, 500)]))
    engine, _ = _engine(client, tracker=tracker)

    trade = _trade(side="SELL", price=0.60, usdc=24.0, size=40.0)
    mine = UserPosition(asset="tok-up", condition_id="cid-1", size=100.0)
    theirs = UserPosition(asset="tok-up", condition_id="cid-1", size=60.0)
    report = await engine.sell(trade, mine, theirs)

    (intent,) = _intents(client)
    assert intent.amount == 32.0
    assert intent.side == "SELL"
    assert report.filled_quantity == 32.0
    assert tracker.bought_quantity("cid-1", "tok-up") == pytest.approx(48.0)


@pytest.mark.asyncio
async def test_full_sell_clears_tracker():
    tracker = PositionTracker()
    tracker.record_fill("cid-1", "tok-up", 20.0, 10.0, trade_id="b1")
    client = _client(_book(bids=[(0.60, 500)]))
    engine, _ = _engine(client, tracker=tracker)

    trade = _trade(side="SELL", price=0.60, usdc=24.0, size=40.0)
    mine = UserPosition(asset="tok-up", condition_id="cid-1", size=20.0)
    report = await engine.sell(trade, mine, None)

    assert report.filled_quantity == 20.0
    assert tracker.bought_quantity("cid-1", "tok-up") == 0.0


@pytest.mark.asyncio
async def test_sell_without_position_is_skipped():
    client = _client(_book(bids=[(0.60, 500)]))
    engine, _ = _engine(client)
    report = await engine.sell(_trade(side="SELL", size=10.0), None, None)
    assert report.status is ExecutionStatus.SKIPPED
    client.get_order_book.assert_not_awaited()
