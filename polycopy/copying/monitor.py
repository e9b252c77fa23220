"""Polls copied traders' activity and stores new TRADE / MERGE rows."""

from __future__ import annotations

import asyncio
import time
from typing import Optional

import structlog

from polycopy.db.activity import ActivityStore
from polycopy.exceptions import FeedError, PersistenceError
from polycopy.feeds.data_api import DataApiClient

logger = structlog.get_logger()


class ActivityMonitor:
    """Feed -> store. Deduplication is the store's job (primary key on id)."""

    def __init__(
        self,
        data_api: DataApiClient,
        store: ActivityStore,
        trader_addresses: list[str],
        *,
        poll_interval: float = 1.0,
        max_age_hours: float = 1.0,
    ) -> None:
        self.data_api = data_api
        self.store = store
        self.trader_addresses = [a.lower() for a in trader_addresses]
        self.poll_interval = poll_interval
        self.max_age_seconds = max_age_hours * 3600.0
        self._shutdown = asyncio.Event()

    def stop(self) -> None:
        self._shutdown.set()

    async def poll_once(self, now: Optional[float] = None) -> int:
        """Fetch every trader once. Returns the number of new rows stored."""
        since = (now if now is not None else time.time()) - self.max_age_seconds
        inserted = 0
        for address in self.trader_addresses:
            try:
                events = await self.data_api.fetch_activity(address, since=since)
            except FeedError as exc:
                logger.warning("activity_fetch_failed", trader=address[:10], error=str(exc))
                continue
            if events:
                inserted += await self.store.add_activities(events)
        if inserted:
            logger.info("new_activity", rows=inserted, traders=len(self.trader_addresses))
        return inserted

    async def run(self) -> None:
        logger.info("activity_monitor_started", traders=len(self.trader_addresses),
                    interval=self.poll_interval)
        while not self._shutdown.is_set():
            try:
                await self.poll_once()
            except PersistenceError as exc:
                logger.error("activity_store_failed", error=str(exc))
            try:
                await asyncio.wait_for(self._shutdown.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass
        logger.info("activity_monitor_stopped")
