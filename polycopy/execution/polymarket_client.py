"""Polymarket CLOB client behind the ``ExchangeClient`` protocol."""

from __future__ import annotations

import asyncio
from typing import Any, Optional

import httpx
import structlog
from py_clob_client.client import ClobClient
from py_clob_client.clob_types import (
    ApiCreds,
    MarketOrderArgs,
    OrderArgs,
    OrderType,
    PartialCreateOrderOptions,
)
from py_clob_client.exceptions import PolyApiException

from polycopy.exceptions import (
    ConfigError,
    ErrorKind,
    ExecutionError,
    TransientNetworkError,
    error_for_kind,
)
from polycopy.execution.executor import adapt_submit_response, classify_error_message
from polycopy.execution.models import OrderBook, OrderIntent, OrderStyle, SubmitResult

logger = structlog.get_logger()

TICK_SIZE = "0.01"


def _translate(exc: Exception) -> ExecutionError:
    """Map a py-clob-client failure onto the execution error taxonomy."""
    if isinstance(exc, ExecutionError):
        return exc
    if isinstance(exc, PolyApiException):
        message = str(exc.error_msg) if exc.error_msg else str(exc)
        if exc.status_code == 429:
            return error_for_kind(ErrorKind.RATE_LIMIT, message)
        if exc.status_code is None:
            return error_for_kind(ErrorKind.NETWORK, message)
        return error_for_kind(classify_error_message(message), message)
    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError, ConnectionError, TimeoutError)):
        return error_for_kind(ErrorKind.NETWORK, str(exc))
    return error_for_kind(classify_error_message(str(exc)), str(exc))


class PolymarketExchangeClient:
    """Reads books and posts orders through py-clob-client.

    The SDK is synchronous, so every call runs via ``asyncio.to_thread``.
    """

    # USDC.e on Polygon (PoS-bridged, 6 decimals)
    _USDC_E_ADDRESS = "0x2791Bca1f2de4661ED88A30C99A7a9449Aa84174"
    _BALANCE_OF_SELECTOR = "0x70a08231"
    _DEFAULT_RPC = "https://polygon-rpc.com"

    def __init__(
        self,
        host: str,
        chain_id: int,
        private_key: str,
        funder: str,
        signature_type: int = 1,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        api_passphrase: Optional[str] = None,
        rpc_url: str = "",
    ) -> None:
        if not private_key:
            raise ConfigError("POLYMARKET_PRIVATE_KEY is required for execution")

        self._client = ClobClient(
            host=host,
            chain_id=chain_id,
            key=private_key,
            funder=funder,
            signature_type=signature_type,
        )
        self._funder = funder
        self._rpc_url = rpc_url or self._DEFAULT_RPC
        self._api_key = api_key
        self._api_secret = api_secret
        self._api_passphrase = api_passphrase
        self._creds_ready = False

    @classmethod
    def from_settings(cls) -> "PolymarketExchangeClient":
        """Build the client from global settings.

        Raises ConfigError if credentials are missing.
        """
        from config.settings import settings
        from config.validators import validate_polymarket_credentials
        validate_polymarket_credentials()
        return cls(
            host=settings.POLYMARKET_CLOB_HTTP,
            chain_id=settings.POLYMARKET_CHAIN_ID,
            private_key=settings.POLYMARKET_PRIVATE_KEY,
            funder=settings.POLYMARKET_WALLET_ADDRESS,
            signature_type=settings.POLYMARKET_SIGNATURE_TYPE,
            api_key=settings.POLYMARKET_API_KEY or None,
            api_secret=settings.POLYMARKET_API_SECRET or None,
            api_passphrase=settings.POLYMARKET_API_PASSPHRASE or None,
            rpc_url=settings.POLYGON_RPC_URL,
        )

    def _ensure_creds(self) -> None:
        if self._creds_ready:
            return
        if self._api_key and self._api_secret and self._api_passphrase:
            creds = ApiCreds(
                api_key=self._api_key,
                api_secret=self._api_secret,
                api_passphrase=self._api_passphrase,
            )
        else:
            creds = self._client.create_or_derive_api_creds()
        if not creds:
            raise ConfigError("Failed to create or derive Polymarket API credentials")
        self._client.set_api_creds(creds)
        self._creds_ready = True

    # -- order book ------------------------------------------------------

    async def get_order_book(self, token_id: str) -> OrderBook:
        try:
            raw = await asyncio.to_thread(self._client.get_order_book, token_id)
        except Exception as exc:
            raise _translate(exc) from exc
        return OrderBook.from_raw(raw)

    # -- orders ------------------------------------------------------------

    def _build_order_sync(self, intent: OrderIntent) -> Any:
        self._ensure_creds()
        if intent.market_order:
            args = MarketOrderArgs(
                token_id=intent.token_id,
                amount=intent.amount,
                side=intent.side,
                price=intent.price,
                order_type=getattr(OrderType, intent.style.value),
            )
            return self._client.create_market_order(args)
        args = OrderArgs(
            token_id=intent.token_id,
            price=intent.price,
            size=intent.amount,
            side=intent.side,
        )
        return self._client.create_order(args, PartialCreateOrderOptions(tick_size=TICK_SIZE))

    async def build_order(self, intent: OrderIntent) -> Any:
        try:
            return await asyncio.to_thread(self._build_order_sync, intent)
        except Exception as exc:
            raise _translate(exc) from exc

    async def submit(self, signed_order: Any, style: OrderStyle) -> SubmitResult:
        try:
            response = await asyncio.to_thread(
                self._client.post_order,
                signed_order,
                getattr(OrderType, style.value),
            )
        except Exception as exc:
            logger.error("polymarket_order_failed", style=style.value, error=str(exc))
            raise _translate(exc) from exc
        result = adapt_submit_response(response)
        logger.info(
            "polymarket_order_posted",
            style=style.value,
            success=result.success,
            order_id=result.order_id,
            error=result.error,
        )
        return result

    # -- balance -----------------------------------------------------------

    def _get_balance_sync(self) -> float:
        """Query on-chain USDC.e balance on Polygon for the funder wallet.

        Raises ``TransientNetworkError`` when the RPC call fails.
        """
        padded = self._funder.lower().replace("0x", "").zfill(64)
        try:
            resp = httpx.post(
                self._rpc_url,
                json={
                    "jsonrpc": "2.0",
                    "method": "eth_call",
                    "params": [
                        {"to": self._USDC_E_ADDRESS, "data": self._BALANCE_OF_SELECTOR + padded},
                        "latest",
                    ],
                    "id": 1,
                },
                timeout=10,
            )
            resp.raise_for_status()
            payload = resp.json()
            result = payload.get("result")
            if result is None:
                raise ValueError(f"no result in RPC response: {payload.get('error')}")
            return int(result, 16) / 1e6
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("polymarket_get_balance_failed", error=str(exc))
            raise TransientNetworkError(f"USDC balance unavailable: {exc}") from exc

    async def get_balance(self) -> float:
        """Return on-chain USDC.e balance for the wallet on Polygon."""
        return await asyncio.to_thread(self._get_balance_sync)
