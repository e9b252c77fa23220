import pytest

from polycopy.copying.aggregation import MIN_TOKENS_FOR_ORDER, AggregationBuffer
from polycopy.execution.models import TradeEvent


def _trade(trade_id, usdc, price, side="BUY", asset="tok-up", trader="0xabc", cid="cid-1"):
    return TradeEvent(
        id=trade_id,
        trader_address=trader,
        condition_id=cid,
        asset=asset,
        side=side,
        usdc_size=usdc,
        price=price,
        timestamp=1700000000.0,
        slug="btc-updown-15m-1700000000",
    )


def test_three_small_buys_release_as_one_aggregation():
    buf = AggregationBuffer()
    buf.add_trade(_trade("t1", 8.0, 0.40), 0.80)
    assert buf.get_ready() == []
    buf.add_trade(_trade("t2", 7.0, 0.40), 0.70)
    assert buf.get_ready() == []
    buf.add_trade(_trade("t3", 7.0, 0.40), 0.70)

    ready = buf.get_ready()
    assert len(ready) == 1
    agg = ready[0]
    assert agg.trade_ids == ["t1", "t2", "t3"]
    assert agg.total_scaled_usdc_size == pytest.approx(2.20)
    assert agg.average_price == pytest.approx(0.40)
    assert agg.total_tokens == pytest.approx(5.5)
    assert agg.total_tokens >= MIN_TOKENS_FOR_ORDER
    # released exactly once
    assert len(buf) == 0
    assert buf.get_ready() == []


def test_average_price_is_weighted_by_raw_size():
    buf = AggregationBuffer()
    buf.add_trade(_trade("t1", 10.0, 0.40), 1.0)
    agg = buf.add_trade(_trade("t2", 30.0, 0.60), 3.0)
    # (10*0.40 + 30*0.60) / 40
    assert agg.average_price == pytest.approx(0.55)


def test_raw_size_is_conserved():
    buf = AggregationBuffer()
    sizes = [1.25, 0.5, 3.75, 2.0]
    for i, size in enumerate(sizes):
        agg = buf.add_trade(_trade(f"t{i}", size, 0.50), size / 10)
    assert agg.total_raw_usdc_size == sum(sizes)


def test_keys_are_per_trader_market_and_asset():
    buf = AggregationBuffer()
    buf.add_trade(_trade("t1", 1.0, 0.5), 0.1)
    buf.add_trade(_trade("t2", 1.0, 0.5, asset="tok-down"), 0.1)
    buf.add_trade(_trade("t3", 1.0, 0.5, trader="0xdef"), 0.1)
    assert len(buf) == 3


def test_below_threshold_stays_buffered():
    buf = AggregationBuffer()
    buf.add_trade(_trade("t1", 10.0, 0.50), 1.0)
    assert buf.get_ready() == []
    assert len(buf) == 1
    assert buf.pending_tokens() == pytest.approx(2.0)


def test_sell_trades_are_refused():
    buf = AggregationBuffer()
    with pytest.raises(ValueError):
        buf.add_trade(_trade("t1", 10.0, 0.50, side="SELL"), 1.0)
    assert len(buf) == 0


def test_accumulation_landing_exactly_on_threshold_is_released():
    buf = AggregationBuffer()
    buf.add_trade(_trade("t1", 7.0, 0.40), 0.70)
    buf.add_trade(_trade("t2", 6.0, 0.40), 0.60)
    buf.add_trade(_trade("t3", 7.0, 0.40), 0.70)

    (agg,) = buf.get_ready(MIN_TOKENS_FOR_ORDER)
    assert agg.total_scaled_usdc_size == 2.0
    assert agg.average_price == 0.4
    assert agg.total_tokens == 5.0


def test_decimal_sizes_sum_without_drift():
    buf = AggregationBuffer()
    buf.add_trade(_trade("t1", 1.0, 0.30), 0.1)
    agg = buf.add_trade(_trade("t2", 2.0, 0.30), 0.2)
    assert agg.total_raw_usdc_size == 3.0
    assert agg.total_scaled_usdc_size == 0.3
    assert agg.average_price == 0.3
    assert agg.total_tokens == 1.0
