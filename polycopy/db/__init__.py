"""Persistence for observed trader activity."""

from .models import Base, TradeActivity
from .database import get_session, init_db_async, close_db_async, reset_engines

__all__ = [
    "Base",
    "TradeActivity",
    "get_session",
    "init_db_async",
    "close_db_async",
    "reset_engines",
]
