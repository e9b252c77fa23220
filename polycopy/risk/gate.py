"""Pairwise cost-basis / imbalance gate for copied binary-market buys.

Each market (condition_id) has two complementary outcome tokens. Holding both
at a combined average price below 1.0 locks in a payout spread at
resolution. The gate tracks what we actually bought on each side and is
asked, right before an aggregated buy is dispatched, whether the buy would
*newly degrade* the market:

* cost basis: ``avg(side) + avg(other)`` crossing up through
  ``max_cost_basis`` (it was below, it would be at or above), or
* imbalance: ``|q_side - q_other| / (q_side + q_other)`` growing beyond
  ``max_imbalance``.

Everything else passes, including buys that improve a market already above
a ceiling. Until the complementary side exists, every buy passes.

The gate reads then writes without locks; that is only sound because a
single polling loop drives it. Concurrent dispatch would need per-market
serialization.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

import structlog

logger = structlog.get_logger()


@dataclass(slots=True)
class SideRecord:
    asset: str
    quantity: float = 0.0
    total_cost: float = 0.0

    @property
    def avg_price(self) -> float:
        return self.total_cost / self.quantity if self.quantity > 0 else 0.0


@dataclass(slots=True)
class MarketRiskState:
    condition_id: str
    slug: str = ""
    sides: dict[str, SideRecord] = field(default_factory=dict)

    def other_side(self, asset: str) -> Optional[SideRecord]:
        for other_asset, record in self.sides.items():
            if other_asset != asset:
                return record
        return None

    @property
    def paired(self) -> bool:
        return len(self.sides) >= 2


@dataclass(frozen=True, slots=True)
class RiskDecision:
    allowed: bool
    reason: str
    cost_basis: float = 0.0
    imbalance: float = 0.0


def imbalance(qty_a: float, qty_b: float) -> float:
    total = qty_a + qty_b
    return abs(qty_a - qty_b) / total if total > 0 else 0.0


class RiskGate:
    """Per-market pair tracker with a monotonic accept/reject rule."""

    def __init__(
        self,
        max_cost_basis: float = 0.95,
        max_imbalance: float = 0.25,
    ) -> None:
        self.max_cost_basis = max_cost_basis
        self.max_imbalance = max_imbalance
        self._markets: dict[str, MarketRiskState] = {}

    def __len__(self) -> int:
        return len(self._markets)

    def market(self, condition_id: str) -> Optional[MarketRiskState]:
        return self._markets.get(condition_id)

    def _get_or_create(self, condition_id: str, slug: str = "") -> MarketRiskState:
        state = self._markets.get(condition_id)
        if state is None:
            state = MarketRiskState(condition_id=condition_id, slug=slug)
            self._markets[condition_id] = state
        elif slug and not state.slug:
            state.slug = slug
        return state

    # ------------------------------------------------------------------
    # Core API
    # ------------------------------------------------------------------

    def check_before_execution(
        self,
        condition_id: str,
        asset: str,
        incoming_qty: float,
        incoming_price: float,
    ) -> RiskDecision:
        """Decide whether buying ``incoming_qty`` of ``asset`` may proceed."""
        state = self._markets.get(condition_id)
        this = state.sides.get(asset) if state else None
        other = state.other_side(asset) if state else None

        if other is None or other.quantity <= 0:
            return RiskDecision(True, "first side for this market")

        cur_qty = this.quantity if this else 0.0
        cur_cost = this.total_cost if this else 0.0
        new_qty = cur_qty + max(incoming_qty, 0.0)
        new_cost = cur_cost + max(incoming_qty, 0.0) * incoming_price

        cur_avg = cur_cost / cur_qty if cur_qty > 0 else 0.0
        new_avg = new_cost / new_qty if new_qty > 0 else 0.0

        cur_basis = cur_avg + other.avg_price
        new_basis = new_avg + other.avg_price
        cur_imbalance = imbalance(cur_qty, other.quantity)
        new_imbalance = imbalance(new_qty, other.quantity)

        logger.debug(
            "risk_gate_evaluated",
            condition_id=condition_id,
            this_qty=round(cur_qty, 2),
            other_qty=round(other.quantity, 2),
            basis_before=round(cur_basis, 4),
            basis_after=round(new_basis, 4),
            imbalance_before=round(cur_imbalance, 4),
            imbalance_after=round(new_imbalance, 4),
        )

        if new_basis >= self.max_cost_basis and cur_basis < self.max_cost_basis:
            return RiskDecision(
                False,
                f"would push cost basis above {self.max_cost_basis}: "
                f"{cur_basis:.4f} -> {new_basis:.4f}",
                new_basis,
                new_imbalance,
            )

        if new_imbalance > cur_imbalance and new_imbalance > self.max_imbalance:
            return RiskDecision(
                False,
                f"would worsen imbalance: {cur_imbalance:.1%} -> {new_imbalance:.1%}",
                new_basis,
                new_imbalance,
            )

        if new_imbalance < cur_imbalance:
            reason = f"improves balance: {cur_imbalance:.1%} -> {new_imbalance:.1%}"
        elif new_basis < cur_basis:
            reason = f"improves cost basis: {cur_basis:.4f} -> {new_basis:.4f}"
        else:
            reason = "within limits"
        return RiskDecision(True, reason, new_basis, new_imbalance)

    def record_execution(
        self,
        condition_id: str,
        asset: str,
        quantity: float,
        cost: float,
        slug: str = "",
    ) -> MarketRiskState:
        """Add a confirmed fill to the market's side record."""
        state = self._get_or_create(condition_id, slug)
        if quantity <= 0:
            return state
        record = state.sides.get(asset)
        if record is None:
            record = SideRecord(asset=asset)
            state.sides[asset] = record
        record.quantity += quantity
        record.total_cost += max(cost, 0.0)

        fields: dict[str, object] = {
            "market": state.slug or condition_id,
            "asset": asset[:16],
            "quantity": round(record.quantity, 2),
            "avg_price": round(record.avg_price, 4),
            "sides": len(state.sides),
        }
        other = state.other_side(asset)
        if other is not None:
            fields["cost_basis"] = round(record.avg_price + other.avg_price, 4)
            fields["imbalance"] = round(imbalance(record.quantity, other.quantity), 4)
        logger.info("risk_state_recorded", **fields)
        return state

    def summary(self) -> dict[str, int]:
        return {
            "markets": len(self._markets),
            "paired": sum(1 for s in self._markets.values() if s.paired),
        }
