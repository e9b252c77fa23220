"""Polymarket data API: wallet positions and activity.

Both endpoints are public and unauthenticated. Numbers arrive as JSON numbers
or decimal strings; everything goes through ``_to_float``.
"""

from __future__ import annotations

from typing import Any, Optional

import httpx
import structlog

from polycopy.exceptions import FeedError
from polycopy.execution.models import TradeEvent, UserPosition
from polycopy.utils.parsing import _to_float

logger = structlog.get_logger()

DATA_API = "https://data-api.polymarket.com"
ACTIVITY_TYPES = ("TRADE", "MERGE")


def parse_position(raw: dict[str, Any]) -> Optional[UserPosition]:
    asset = str(raw.get("asset") or "")
    if not asset:
        return None
    return UserPosition(
        asset=asset,
        condition_id=str(raw.get("conditionId") or ""),
        size=_to_float(raw.get("size")),
        avg_price=_to_float(raw.get("avgPrice")),
        current_value=_to_float(raw.get("currentValue")),
    )


def activity_id(raw: dict[str, Any]) -> str:
    """Stable row id. One transaction can fill several assets and sides."""
    if raw.get("id"):
        return str(raw["id"])
    tx = str(raw.get("transactionHash") or "")
    return f"{tx}:{raw.get('asset', '')}:{str(raw.get('side') or '').upper()}"


def parse_activity(raw: dict[str, Any], trader_address: str = "") -> Optional[TradeEvent]:
    kind = str(raw.get("type") or "").upper()
    if kind not in ACTIVITY_TYPES:
        return None
    condition_id = str(raw.get("conditionId") or "")
    if not condition_id:
        return None
    side = str(raw.get("side") or "").upper()
    if kind == "MERGE" and not side:
        side = "SELL"
    if side not in ("BUY", "SELL"):
        return None
    wallet = str(raw.get("proxyWallet") or trader_address).lower()
    return TradeEvent(
        id=activity_id(raw),
        trader_address=wallet,
        condition_id=condition_id,
        asset=str(raw.get("asset") or ""),
        side=side,
        usdc_size=_to_float(raw.get("usdcSize")),
        price=_to_float(raw.get("price")),
        timestamp=_to_float(raw.get("timestamp")),
        slug=str(raw.get("slug") or ""),
        event_slug=str(raw.get("eventSlug") or ""),
        size=_to_float(raw.get("size")),
        activity_type=kind,
        transaction_hash=str(raw.get("transactionHash") or ""),
    )


class DataApiClient:
    """Async client for ``/positions`` and ``/activity``."""

    def __init__(
        self,
        base_url: str = DATA_API,
        *,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 15.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "DataApiClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def _get_list(self, path: str, params: dict[str, Any]) -> list[dict[str, Any]]:
        try:
            response = await self._client.get(f"{self.base_url}{path}", params=params)
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as exc:
            raise FeedError(
                f"{path} returned {exc.response.status_code} for {params.get('user', '')}"
            ) from exc
        except httpx.HTTPError as exc:
            raise FeedError(f"{path} request failed: {exc}") from exc
        except ValueError as exc:
            raise FeedError(f"{path} returned invalid JSON") from exc
        if not isinstance(payload, list):
            logger.warning("data_api_unexpected_payload", path=path,
                           payload_type=type(payload).__name__)
            return []
        return [row for row in payload if isinstance(row, dict)]

    async def fetch_positions(self, wallet: str) -> list[UserPosition]:
        rows = await self._get_list("/positions", {"user": wallet, "sizeThreshold": 0})
        positions = [p for p in map(parse_position, rows) if p is not None]
        logger.debug("positions_fetched", wallet=wallet[:10], count=len(positions))
        return positions

    async def fetch_position(
        self, wallet: str, condition_id: str, asset: str
    ) -> Optional[UserPosition]:
        for position in await self.fetch_positions(wallet):
            if position.asset == asset and (
                not condition_id or position.condition_id == condition_id
            ):
                return position
        return None

    async def fetch_activity(
        self,
        wallet: str,
        *,
        limit: int = 100,
        since: float = 0.0,
    ) -> list[TradeEvent]:
        """TRADE and MERGE rows for *wallet*, newest first, not older than ``since``."""
        rows = await self._get_list(
            "/activity", {"user": wallet, "limit": limit, "offset": 0},
        )
        events: list[TradeEvent] = []
        for raw in rows:
            event = parse_activity(raw, wallet)
            if event is None or event.timestamp < since:
                continue
            events.append(event)
        return events
