"""Exchange client protocol and the adapters at its boundary.

The engine only ever sees ``SubmitResult.error_kind`` or an
``ExecutionError`` subclass. Substring matching on exchange messages lives
here and nowhere else; it is the fallback for clients that only return text.
"""

from __future__ import annotations

import asyncio
from typing import Any, Optional, Protocol, runtime_checkable

import httpx

from polycopy.exceptions import ErrorKind, ExecutionError
from polycopy.execution.models import OrderBook, OrderIntent, OrderStyle, SubmitResult


@runtime_checkable
class ExchangeClient(Protocol):
    """Interface the execution engine needs from an exchange."""

    async def get_order_book(self, token_id: str) -> OrderBook: ...

    async def build_order(self, intent: OrderIntent) -> Any: ...

    async def submit(self, signed_order: Any, style: OrderStyle) -> SubmitResult: ...


_FUNDS_MARKERS = ("not enough balance", "insufficient balance", "allowance")
_SIZE_MARKERS = ("lower than the minimum", "below minimum", "min size")
_PRECISION_MARKERS = ("decimal", "accuracy")
_RATE_MARKERS = ("rate limit", "rate-limit", "ratelimit", "too many", "429")
_NETWORK_MARKERS = ("network", "timeout", "timed out", "econnreset", "socket")


def extract_order_error(response: Any) -> Optional[str]:
    """Dig the human-readable error out of a CLOB response."""
    if not response:
        return None
    if isinstance(response, str):
        return response
    if not isinstance(response, dict):
        return None

    direct = response.get("error")
    if isinstance(direct, str) and direct:
        return direct
    if isinstance(direct, dict):
        for key in ("error", "message"):
            nested = direct.get(key)
            if isinstance(nested, str) and nested:
                return nested

    for key in ("errorMsg", "errorMessage", "message"):
        value = response.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def classify_error_message(message: Optional[str]) -> ErrorKind:
    """Map an exchange error string onto an ``ErrorKind``.

    Funds markers are checked first, so "allowance limit" stays a funds
    error. Rate limits need the whole phrase: "generate" is not a throttle.
    """
    if not message:
        return ErrorKind.UNKNOWN
    lower = message.lower()
    if any(m in lower for m in _FUNDS_MARKERS):
        return ErrorKind.FUNDS
    if any(m in lower for m in _SIZE_MARKERS):
        return ErrorKind.SIZE
    if any(m in lower for m in _PRECISION_MARKERS):
        return ErrorKind.PRECISION
    if any(m in lower for m in _RATE_MARKERS):
        return ErrorKind.RATE_LIMIT
    if any(m in lower for m in _NETWORK_MARKERS):
        return ErrorKind.NETWORK
    return ErrorKind.UNKNOWN


def classify_exception(exc: BaseException) -> ErrorKind:
    """Classify an exception raised while building or posting an order."""
    if isinstance(exc, ExecutionError):
        return exc.kind
    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError)):
        return ErrorKind.NETWORK
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return ErrorKind.NETWORK
    kind = classify_error_message(str(exc))
    if kind is ErrorKind.UNKNOWN and "fetch" in str(exc).lower():
        return ErrorKind.NETWORK
    return kind


def adapt_submit_response(raw: Any) -> SubmitResult:
    """Convert a raw ``post_order`` response into a ``SubmitResult``.

    Anything other than an explicit ``success: true`` is a failure.
    """
    if isinstance(raw, SubmitResult):
        return raw
    if isinstance(raw, dict) and raw.get("success") is True:
        order_id = raw.get("orderID") or raw.get("orderId") or raw.get("id") or ""
        return SubmitResult(success=True, order_id=str(order_id))
    message = extract_order_error(raw)
    return SubmitResult(
        success=False,
        error=message or "order not accepted",
        error_kind=classify_error_message(message),
    )
