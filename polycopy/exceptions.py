"""Custom exceptions for the polycopy trading system."""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """Structured classification of an order failure."""

    FUNDS = "funds"
    SIZE = "size"
    PRECISION = "precision"
    NETWORK = "network"
    RATE_LIMIT = "rate_limit"
    UNKNOWN = "unknown"

    @property
    def terminal(self) -> bool:
        return self in (ErrorKind.FUNDS, ErrorKind.SIZE, ErrorKind.PRECISION)


class PolyCopyError(Exception):
    """Base exception for all polycopy errors."""


class FeedError(PolyCopyError):
    """Error connecting to or reading from a data feed."""


class PersistenceError(PolyCopyError):
    """Activity store persistence failure."""


class ConfigError(PolyCopyError):
    """Missing or invalid configuration."""


class ExecutionError(PolyCopyError):
    """Error building, placing, or checking an order."""

    kind: ErrorKind = ErrorKind.UNKNOWN


class FundsError(ExecutionError):
    """Insufficient balance or allowance. Needs a top-up before retrying."""

    kind = ErrorKind.FUNDS


class SizeError(ExecutionError):
    """Order below the exchange minimum. Points at an upstream sizing defect."""

    kind = ErrorKind.SIZE


class PrecisionError(ExecutionError):
    """Exchange rejected the decimal precision of an amount or price."""

    kind = ErrorKind.PRECISION


class TransientNetworkError(ExecutionError):
    """Timeout or connection failure talking to the exchange."""

    kind = ErrorKind.NETWORK


class RateLimitError(ExecutionError):
    """Exchange throttled the request."""

    kind = ErrorKind.RATE_LIMIT


class UnknownOrderError(ExecutionError):
    """Order failed for a reason we could not classify."""

    kind = ErrorKind.UNKNOWN


_ERRORS_BY_KIND: dict[ErrorKind, type[ExecutionError]] = {
    ErrorKind.FUNDS: FundsError,
    ErrorKind.SIZE: SizeError,
    ErrorKind.PRECISION: PrecisionError,
    ErrorKind.NETWORK: TransientNetworkError,
    ErrorKind.RATE_LIMIT: RateLimitError,
    ErrorKind.UNKNOWN: UnknownOrderError,
}


def error_for_kind(kind: ErrorKind, message: str) -> ExecutionError:
    """Build the taxonomy exception matching *kind*."""
    return _ERRORS_BY_KIND[kind](message)
