#!/usr/bin/env python3
"""Copy trades from the wallets in USER_ADDRESSES.

Reads unprocessed trader activity from the database, sizes it with the
configured copy strategy, buffers small BUYs until they clear the exchange
minimum, gates them through the pair risk check, and executes on the CLOB.

Usage:
    python scripts/run_copy_trader.py --with-monitor          # poll feed + copy
    python scripts/run_copy_trader.py --once                  # single cycle
    python scripts/run_copy_trader.py --no-aggregation        # copy every trade as-is
"""

from __future__ import annotations

import argparse
import asyncio
import signal
import sys
from pathlib import Path

_ROOT = str(Path(__file__).resolve().parent.parent)
sys.path.insert(0, _ROOT)

import structlog

from polycopy.utils.logging import configure_logging

configure_logging()
logger = structlog.get_logger()

from config.settings import settings
from config.validators import validate_copy_strategy, validate_copy_targets
from polycopy.copying.filters import MarketFilter
from polycopy.copying.monitor import ActivityMonitor
from polycopy.copying.replicator import TradeReplicator
from polycopy.copying.sizing import CopyStrategyConfig
from polycopy.db.activity import ActivityStore
from polycopy.db.database import close_db_async
from polycopy.execution.engine import ExecutionEngine, RetryPolicy
from polycopy.execution.polymarket_client import PolymarketExchangeClient
from polycopy.execution.position_tracker import PositionTracker
from polycopy.feeds.data_api import DataApiClient
from polycopy.risk.gate import RiskGate


def parse_args() -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(description="Polymarket copy trader")
    parser.add_argument("--once", action="store_true", help="Run a single polling cycle and exit")
    parser.add_argument(
        "--no-aggregation",
        action="store_true",
        help="Execute every trade directly instead of buffering small BUYs",
    )
    parser.add_argument(
        "--skip-slippage-check",
        action="store_true",
        default=settings.SKIP_SLIPPAGE_CHECK,
        help="Do not abort BUYs when the best ask is >10%% above the trader's price",
    )
    parser.add_argument(
        "--db-url",
        default=settings.DATABASE_URL,
        help=f"Activity database URL (default: {settings.DATABASE_URL})",
    )
    parser.add_argument(
        "--with-monitor",
        action="store_true",
        help="Also poll the data API for new trader activity",
    )
    return parser.parse_args()


async def main(args: argparse.Namespace) -> None:
    traders = validate_copy_targets()
    validate_copy_strategy()

    if args.db_url.startswith("sqlite") and ":///" in args.db_url:
        db_path = args.db_url.split(":///", 1)[1]
        if db_path and db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    store = ActivityStore(args.db_url)
    await store.init()

    client = PolymarketExchangeClient.from_settings()
    data_api = DataApiClient(settings.POLYMARKET_DATA_API)
    engine = ExecutionEngine(
        client=client,
        tracker=PositionTracker(),
        retry_policy=RetryPolicy(retry_limit=settings.RETRY_LIMIT),
        skip_slippage_check=args.skip_slippage_check,
    )
    replicator = TradeReplicator(
        store=store,
        data_api=data_api,
        engine=engine,
        sizing=CopyStrategyConfig.from_settings(),
        wallet_address=settings.POLYMARKET_WALLET_ADDRESS,
        trader_addresses=traders,
        market_filter=MarketFilter.from_string(settings.ALLOWED_MARKET_KEYWORDS),
        risk_gate=RiskGate(
            max_cost_basis=settings.ARB_MAX_COST_BASIS,
            max_imbalance=settings.ARB_MAX_IMBALANCE,
        ),
        get_balance=client.get_balance,
        aggregation_enabled=settings.TRADE_AGGREGATION_ENABLED and not args.no_aggregation,
        poll_interval=settings.FETCH_INTERVAL,
        status_interval=settings.STATUS_INTERVAL_SECONDS,
    )
    monitor = ActivityMonitor(
        data_api,
        store,
        traders,
        poll_interval=settings.ACTIVITY_POLL_INTERVAL,
        max_age_hours=settings.ACTIVITY_MAX_AGE_HOURS,
    )

    hydrated = await replicator.hydrate()
    logger.info("copy_trader_ready", traders=len(traders), tracked_records=hydrated,
                db_url=args.db_url)

    try:
        if args.once:
            if args.with_monitor:
                await monitor.poll_once()
            await replicator.run_once()
            return

        loop = asyncio.get_running_loop()

        def _signal_handler() -> None:
            logger.info("shutdown_signal_received")
            replicator.stop()
            monitor.stop()

        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, _signal_handler)

        tasks = [replicator.run()]
        if args.with_monitor:
            tasks.append(monitor.run())
        await asyncio.gather(*tasks)
    finally:
        await data_api.close()
        await close_db_async()

    logger.info("copy_trader_stopped")


if __name__ == "__main__":
    asyncio.run(main(parse_args()))
