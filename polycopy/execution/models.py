"""Shared data structures for trade replication and execution."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from polycopy.exceptions import ErrorKind
from polycopy.utils.parsing import _to_float

BUY = "BUY"
SELL = "SELL"


class OrderStyle(str, Enum):
    FOK = "FOK"  # fill-or-kill, marketable
    GTC = "GTC"  # good-til-cancelled, rests as maker when priced below the ask


class RequestKind(str, Enum):
    MERGE = "merge"
    BUY = "buy"
    SELL = "sell"


class ExecutionStatus(str, Enum):
    COMPLETED = "completed"  # nothing left to do (filled, or remainder below minimum)
    ABORTED = "aborted"      # stopped by a guard or a terminal error
    EXHAUSTED = "exhausted"  # retry budget used up
    SKIPPED = "skipped"      # never reached the exchange


@dataclass(frozen=True, slots=True)
class TradeEvent:
    """One observed fill by a copied trader, as read from the activity store."""

    id: str
    trader_address: str
    condition_id: str
    asset: str
    side: str  # "BUY" or "SELL"
    usdc_size: float
    price: float
    timestamp: float
    slug: str = ""
    event_slug: str = ""
    size: float = 0.0  # tokens; 0 when the feed did not report it
    activity_type: str = "TRADE"  # "TRADE" or "MERGE"
    transaction_hash: str = ""

    @property
    def token_size(self) -> float:
        if self.size > 0:
            return self.size
        return self.usdc_size / self.price if self.price > 0 else 0.0

    @property
    def label(self) -> str:
        return self.slug or self.event_slug or self.asset[:10]


@dataclass(frozen=True, slots=True)
class UserPosition:
    """A wallet's live holding in one outcome token."""

    asset: str
    condition_id: str
    size: float
    avg_price: float = 0.0
    current_value: float = 0.0

    @property
    def cost_value(self) -> float:
        return self.size * self.avg_price


@dataclass(frozen=True, slots=True)
class BookLevel:
    price: float
    size: float


@dataclass(slots=True)
class OrderBook:
    """Order book snapshot. Levels are kept in exchange order (unsorted)."""

    bids: list[BookLevel] = field(default_factory=list)
    asks: list[BookLevel] = field(default_factory=list)

    @staticmethod
    def _parse_level(level: Any) -> Optional[BookLevel]:
        if isinstance(level, dict):
            price, size = level.get("price"), level.get("size")
        else:
            price, size = getattr(level, "price", None), getattr(level, "size", None)
        p = _to_float(price, default=-1.0)
        s = _to_float(size, default=0.0)
        if p <= 0 or s <= 0:
            return None
        return BookLevel(price=p, size=s)

    @classmethod
    def from_raw(cls, raw: Any) -> "OrderBook":
        """Build from a CLOB ``/book`` payload or a py-clob-client summary."""
        if isinstance(raw, dict):
            bids, asks = raw.get("bids") or [], raw.get("asks") or []
        else:
            bids, asks = getattr(raw, "bids", None) or [], getattr(raw, "asks", None) or []
        return cls(
            bids=[lvl for lvl in map(cls._parse_level, bids) if lvl is not None],
            asks=[lvl for lvl in map(cls._parse_level, asks) if lvl is not None],
        )

    def best_bid(self) -> Optional[BookLevel]:
        """Highest bid, found by scanning; the API does not sort levels."""
        best: Optional[BookLevel] = None
        for level in self.bids:
            if best is None or level.price > best.price:
                best = level
        return best

    def best_ask(self) -> Optional[BookLevel]:
        """Lowest ask, found by scanning."""
        best: Optional[BookLevel] = None
        for level in self.asks:
            if best is None or level.price < best.price:
                best = level
        return best


@dataclass(frozen=True, slots=True)
class OrderIntent:
    """One order attempt. Rebuilt from the live book on every iteration.

    ``amount`` is USD for market buys, tokens for market sells and for GTC
    limit buys (``market_order=False``).
    """

    side: str
    token_id: str
    amount: float
    price: float
    style: OrderStyle
    market_order: bool = True


@dataclass(frozen=True, slots=True)
class SubmitResult:
    """Exchange answer to a posted order."""

    success: bool
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    order_id: str = ""


@dataclass(frozen=True, slots=True)
class ExecutionOutcome:
    """Result of a single order attempt inside an execution loop."""

    filled_quantity: float
    filled_cost: float
    success: bool
    error_kind: Optional[ErrorKind] = None


@dataclass(slots=True)
class ExecutionReport:
    """Summary of one MERGE / BUY / SELL request."""

    kind: RequestKind
    status: ExecutionStatus
    filled_quantity: float = 0.0
    filled_cost: float = 0.0
    retries: int = 0
    error_kind: Optional[ErrorKind] = None
    reason: str = ""
    finished_at: float = field(default_factory=time.time)

    @property
    def funds_blocked(self) -> bool:
        return self.error_kind is ErrorKind.FUNDS

    @property
    def exhausted(self) -> bool:
        return self.status is ExecutionStatus.EXHAUSTED
