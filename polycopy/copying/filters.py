"""Allowed-market filter on trade slugs."""

from __future__ import annotations

from polycopy.execution.models import TradeEvent


def parse_keyword_groups(raw: str) -> list[list[str]]:
    """``"btc+15m,eth+15m"`` -> ``[["btc", "15m"], ["eth", "15m"]]``."""
    groups: list[list[str]] = []
    for chunk in raw.split(","):
        keywords = [k.strip().lower() for k in chunk.split("+") if k.strip()]
        if keywords:
            groups.append(keywords)
    return groups


class MarketFilter:
    """Accepts a trade when every keyword of at least one group appears in
    its slug or event slug. No groups means everything passes."""

    def __init__(self, groups: list[list[str]] | None = None) -> None:
        self.groups = groups or []

    @classmethod
    def from_string(cls, raw: str) -> "MarketFilter":
        return cls(parse_keyword_groups(raw))

    def allows(self, trade: TradeEvent) -> bool:
        if not self.groups:
            return True
        combined = f"{trade.slug.lower()} {trade.event_slug.lower()}"
        return any(all(k in combined for k in group) for group in self.groups)

    def describe(self) -> str:
        if not self.groups:
            return "all markets"
        return " OR ".join("+".join(group) for group in self.groups)
