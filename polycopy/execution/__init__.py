from polycopy.execution.models import (
    TradeEvent,
    UserPosition,
    OrderBook,
    OrderIntent,
    SubmitResult,
    ExecutionReport,
)
from polycopy.execution.executor import ExchangeClient, adapt_submit_response
from polycopy.execution.engine import ExecutionEngine, RetryPolicy, classify_request
from polycopy.execution.position_tracker import PositionTracker

__all__ = [
    "TradeEvent",
    "UserPosition",
    "OrderBook",
    "OrderIntent",
    "SubmitResult",
    "ExecutionReport",
    "ExchangeClient",
    "adapt_submit_response",
    "ExecutionEngine",
    "RetryPolicy",
    "classify_request",
    "PositionTracker",
]
