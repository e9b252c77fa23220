"""Ledger of our own historical buys, per (condition_id, asset).

SELL sizing reads it to mirror a trader's partial exit proportionally; fills
decay it. Only confirmed fills ever land here, so the ledger never runs ahead
of what the exchange has acknowledged.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Optional

import structlog

logger = structlog.get_logger()

# A sell covering at least this share of tracked tokens closes the ledger.
FULL_CLOSE_FRACTION = 0.99


@dataclass(slots=True)
class PurchaseRecord:
    """Tokens bought on behalf of one copied trade."""

    trade_id: str
    quantity: float
    cost: float


@dataclass(slots=True)
class PositionTrackerEntry:
    condition_id: str
    asset: str
    records: list[PurchaseRecord] = field(default_factory=list)

    @property
    def quantity(self) -> float:
        return sum(r.quantity for r in self.records)

    @property
    def cost(self) -> float:
        return sum(r.cost for r in self.records)

    @property
    def avg_price(self) -> float:
        qty = self.quantity
        return self.cost / qty if qty > 0 else 0.0


@dataclass(frozen=True, slots=True)
class TrackedPosition:
    """Read-only view handed to the engine and the risk gate."""

    condition_id: str
    asset: str
    quantity: float
    cost: float
    avg_price: float
    record_count: int


class PositionTracker:
    """Process-wide store of PositionTrackerEntry objects."""

    def __init__(self) -> None:
        self._entries: dict[tuple[str, str], PositionTrackerEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def _entry(self, condition_id: str, asset: str) -> PositionTrackerEntry:
        key = (condition_id, asset)
        entry = self._entries.get(key)
        if entry is None:
            entry = PositionTrackerEntry(condition_id=condition_id, asset=asset)
            self._entries[key] = entry
        return entry

    def record_fill(
        self,
        condition_id: str,
        asset: str,
        quantity: float,
        cost: float,
        trade_id: str = "",
    ) -> TrackedPosition:
        """Add a confirmed BUY fill. Repeated trade ids accumulate."""
        if quantity <= 0:
            return self.snapshot(condition_id, asset)
        entry = self._entry(condition_id, asset)
        for record in entry.records:
            if trade_id and record.trade_id == trade_id:
                record.quantity += quantity
                record.cost += max(cost, 0.0)
                break
        else:
            entry.records.append(
                PurchaseRecord(trade_id=trade_id, quantity=quantity, cost=max(cost, 0.0))
            )
        logger.info(
            "tracked_purchase",
            condition_id=condition_id,
            asset=asset[:16],
            quantity=round(quantity, 4),
            total=round(entry.quantity, 4),
            avg_price=round(entry.avg_price, 4),
        )
        return self.snapshot(condition_id, asset)

    def reduce_proportionally(
        self, condition_id: str, asset: str, fraction: float
    ) -> list[PurchaseRecord]:
        """Scale every contributing record by ``1 - fraction``.

        A fraction at or above 0.99 zeroes the records (position closed).
        Returns the touched records so callers can persist them.
        """
        entry = self._entries.get((condition_id, asset))
        if entry is None or not entry.records:
            return []
        fraction = max(0.0, fraction)
        if fraction >= FULL_CLOSE_FRACTION:
            for record in entry.records:
                record.quantity = 0.0
                record.cost = 0.0
            logger.info("purchase_tracking_cleared", asset=asset[:16],
                        sold_pct=round(fraction * 100, 1))
        else:
            keep = 1.0 - fraction
            for record in entry.records:
                record.quantity = max(0.0, record.quantity * keep)
                record.cost = max(0.0, record.cost * keep)
            logger.info("purchase_tracking_reduced", asset=asset[:16],
                        sold_pct=round(fraction * 100, 1),
                        remaining=round(entry.quantity, 4))
        return list(entry.records)

    def records(self, condition_id: str, asset: str) -> list[PurchaseRecord]:
        entry = self._entries.get((condition_id, asset))
        return list(entry.records) if entry else []

    def bought_quantity(self, condition_id: str, asset: str) -> float:
        entry = self._entries.get((condition_id, asset))
        return entry.quantity if entry else 0.0

    def snapshot(self, condition_id: str, asset: str) -> TrackedPosition:
        entry = self._entries.get((condition_id, asset))
        if entry is None:
            return TrackedPosition(condition_id, asset, 0.0, 0.0, 0.0, 0)
        return TrackedPosition(
            condition_id=condition_id,
            asset=asset,
            quantity=entry.quantity,
            cost=entry.cost,
            avg_price=entry.avg_price,
            record_count=len(entry.records),
        )

    def get(self, condition_id: str, asset: str) -> Optional[TrackedPosition]:
        if (condition_id, asset) not in self._entries:
            return None
        return self.snapshot(condition_id, asset)

    def hydrate(self, rows: Iterable[tuple[str, str, str, float, float]]) -> int:
        """Load (trade_id, condition_id, asset, quantity, cost) rows at startup."""
        count = 0
        for trade_id, condition_id, asset, quantity, cost in rows:
            if quantity <= 0:
                continue
            entry = self._entry(condition_id, asset)
            entry.records.append(
                PurchaseRecord(trade_id=trade_id, quantity=quantity, cost=max(cost, 0.0))
            )
            count += 1
        if count:
            logger.info("position_tracker_hydrated", records=count, entries=len(self))
        return count
