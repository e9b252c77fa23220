"""Async store for copied-trader activity rows."""

from __future__ import annotations

from typing import Iterable, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError

from polycopy.db.database import DEFAULT_ASYNC_DATABASE_URL, get_session, init_db_async
from polycopy.db.models import TradeActivity
from polycopy.exceptions import PersistenceError
from polycopy.execution.models import BUY, TradeEvent
from polycopy.execution.position_tracker import PurchaseRecord

logger = structlog.get_logger()


def row_to_event(row: TradeActivity) -> TradeEvent:
    return TradeEvent(
        id=row.id,
        trader_address=row.trader_address,
        condition_id=row.condition_id,
        asset=row.asset,
        side=row.side,
        usdc_size=row.usdc_size or 0.0,
        price=row.price or 0.0,
        timestamp=row.timestamp or 0.0,
        slug=row.slug or "",
        event_slug=row.event_slug or "",
        size=row.size or 0.0,
        activity_type=row.activity_type or "TRADE",
        transaction_hash=row.transaction_hash or "",
    )


class ActivityStore:
    """Read/write access to ``trade_activity``.

    A row moves through three states: fresh (``processed=False``,
    ``retry_marker=0``), in flight (``retry_marker=1``) and processed.
    """

    def __init__(self, db_url: str = DEFAULT_ASYNC_DATABASE_URL) -> None:
        self.db_url = db_url

    async def init(self) -> None:
        try:
            await init_db_async(self.db_url)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"cannot initialise {self.db_url}: {exc}") from exc

    async def add_activities(self, events: Iterable[TradeEvent]) -> int:
        """Insert events whose id is not stored yet. Returns the number inserted."""
        events = list(events)
        if not events:
            return 0
        try:
            async with get_session(self.db_url) as s:
                result = await s.execute(
                    select(TradeActivity.id).where(
                        TradeActivity.id.in_([e.id for e in events])
                    )
                )
                known = set(result.scalars().all())
                inserted = 0
                for event in events:
                    if event.id in known:
                        continue
                    known.add(event.id)
                    s.add(TradeActivity(
                        id=event.id,
                        trader_address=event.trader_address.lower(),
                        condition_id=event.condition_id,
                        asset=event.asset,
                        side=event.side.upper(),
                        activity_type=event.activity_type.upper(),
                        size=event.size,
                        usdc_size=event.usdc_size,
                        price=event.price,
                        timestamp=event.timestamp,
                        slug=event.slug,
                        event_slug=event.event_slug,
                        transaction_hash=event.transaction_hash,
                        processed=False,
                        retry_marker=0,
                    ))
                    inserted += 1
        except SQLAlchemyError as exc:
            raise PersistenceError(f"failed to store activity: {exc}") from exc
        if inserted:
            logger.info("activity_stored", inserted=inserted, seen=len(events))
        return inserted

    async def fetch_unprocessed(
        self, trader_addresses: Optional[Iterable[str]] = None
    ) -> list[TradeEvent]:
        """Fresh rows (not processed, never attempted), oldest first."""
        q = select(TradeActivity).where(
            TradeActivity.processed.is_(False),
            TradeActivity.retry_marker == 0,
        )
        if trader_addresses is not None:
            addresses = [a.lower() for a in trader_addresses]
            q = q.where(TradeActivity.trader_address.in_(addresses))
        q = q.order_by(TradeActivity.timestamp, TradeActivity.id)
        try:
            async with get_session(self.db_url) as s:
                result = await s.execute(q)
                return [row_to_event(row) for row in result.scalars().all()]
        except SQLAlchemyError as exc:
            raise PersistenceError(f"failed to read activity: {exc}") from exc

    async def get(self, activity_id: str) -> Optional[TradeActivity]:
        async with get_session(self.db_url) as s:
            return await s.get(TradeActivity, activity_id)

    async def _update(self, ids: Iterable[str], **values) -> None:
        ids = list(ids)
        if not ids:
            return
        try:
            async with get_session(self.db_url) as s:
                await s.execute(
                    update(TradeActivity)
                    .where(TradeActivity.id.in_(ids))
                    .values(**values)
                )
        except SQLAlchemyError as exc:
            raise PersistenceError(f"failed to update activity: {exc}") from exc

    async def mark_in_flight(self, ids: Iterable[str]) -> None:
        """Claim rows so the next poll does not pick them up again."""
        await self._update(ids, retry_marker=1)

    async def mark_processed(
        self,
        ids: Iterable[str],
        *,
        retry_marker: Optional[int] = None,
    ) -> None:
        values: dict[str, object] = {"processed": True}
        if retry_marker is not None:
            values["retry_marker"] = retry_marker
        await self._update(ids, **values)

    async def record_purchase(
        self,
        activity_id: str,
        bought_tokens: float,
        bought_cost: float = 0.0,
        *,
        retry_marker: Optional[int] = None,
    ) -> None:
        values: dict[str, object] = {
            "processed": True,
            "my_bought_size": bought_tokens,
            "my_bought_cost": bought_cost,
        }
        if retry_marker is not None:
            values["retry_marker"] = retry_marker
        await self._update([activity_id], **values)

    async def tracked_purchases(
        self, trader_addresses: Optional[Iterable[str]] = None
    ) -> list[tuple[str, str, str, float, float]]:
        """(id, condition_id, asset, my_bought_size, my_bought_cost) for processed BUYs we filled."""
        q = select(TradeActivity).where(
            TradeActivity.side == BUY,
            TradeActivity.processed.is_(True),
            TradeActivity.my_bought_size > 0,
        )
        if trader_addresses is not None:
            q = q.where(
                TradeActivity.trader_address.in_([a.lower() for a in trader_addresses])
            )
        async with get_session(self.db_url) as s:
            result = await s.execute(q.order_by(TradeActivity.timestamp))
            return [
                (r.id, r.condition_id, r.asset, r.my_bought_size, r.my_bought_cost or 0.0)
                for r in result.scalars().all()
            ]

    async def update_bought_sizes(self, records: Iterable[PurchaseRecord]) -> int:
        """Write decayed tracker quantities and costs back to their activity rows."""
        count = 0
        try:
            async with get_session(self.db_url) as s:
                for record in records:
                    if not record.trade_id:
                        continue
                    await s.execute(
                        update(TradeActivity)
                        .where(TradeActivity.id == record.trade_id)
                        .values(my_bought_size=record.quantity, my_bought_cost=record.cost)
                    )
                    count += 1
        except SQLAlchemyError as exc:
            raise PersistenceError(f"failed to update bought sizes: {exc}") from exc
        return count
