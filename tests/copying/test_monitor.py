from unittest.mock import AsyncMock, MagicMock

import pytest

from polycopy.copying.monitor import ActivityMonitor
from polycopy.db.activity import ActivityStore
from polycopy.exceptions import FeedError
from polycopy.execution.models import TradeEvent
from polycopy.feeds.data_api import DataApiClient


def _event(trade_id, trader):
    return TradeEvent(
        id=trade_id, trader_address=trader, condition_id="c", asset="a", side="BUY",
        usdc_size=1.0, price=0.5, timestamp=1000.0,
    )


@pytest.mark.asyncio
async def test_poll_once_stores_each_traders_activity():
    api = MagicMock(spec=DataApiClient)
    api.fetch_activity = AsyncMock(side_effect=[[_event("a", "0x1")], FeedError("down"), []])
    store = MagicMock(spec=ActivityStore)
    store.add_activities = AsyncMock(return_value=1)
    monitor = ActivityMonitor(api, store, ["0x1", "0x2", "0X3"], max_age_hours=1.0)

    inserted = await monitor.poll_once(now=7200.0)

    assert inserted == 1
    assert api.fetch_activity.await_count == 3
    assert api.fetch_activity.await_args_list[0].kwargs["since"] == 3600.0
    assert api.fetch_activity.await_args_list[2].args[0] == "0x3"
    store.add_activities.assert_awaited_once()


@pytest.mark.asyncio
async def test_run_exits_when_stopped():
    api = MagicMock(spec=DataApiClient)
    api.fetch_activity = AsyncMock(return_value=[])
    store = MagicMock(spec=ActivityStore)
    monitor = ActivityMonitor(api, store, ["0x1"], poll_interval=0.01)
    monitor.stop()
    await monitor.run()
    api.fetch_activity.assert_not_awaited()
