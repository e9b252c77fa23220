"""SQLAlchemy ORM model for observed trader activity."""

from datetime import datetime

from sqlalchemy import (
    Column,
    DateTime,
    Float,
    Boolean,
    Integer,
    String,
    Index,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class TradeActivity(Base):
    """One TRADE or MERGE row from a copied trader's activity feed.

    ``retry_marker`` is 0 for fresh rows, 1 while a copy is in flight, and
    the final retry count (or the retry limit on a funds abort) once the copy
    gave up. ``my_bought_size`` is what we bought copying this row; it seeds
    the position tracker after a restart and is decayed by later sells, together
    with ``my_bought_cost``.
    """

    __tablename__ = "trade_activity"

    id = Column(String(128), primary_key=True)  # feed id or tx hash + asset
    trader_address = Column(String(64), nullable=False, index=True)
    condition_id = Column(String(128), nullable=False, index=True)
    asset = Column(String(128), nullable=False)
    side = Column(String(8), nullable=False)  # "BUY" or "SELL"
    activity_type = Column(String(16), nullable=False, default="TRADE")
    size = Column(Float, nullable=False, default=0.0)  # tokens
    usdc_size = Column(Float, nullable=False, default=0.0)
    price = Column(Float, nullable=False, default=0.0)
    timestamp = Column(Float, nullable=False)  # unix seconds
    slug = Column(String(255), nullable=True)
    event_slug = Column(String(255), nullable=True)
    transaction_hash = Column(String(128), nullable=True)
    processed = Column(Boolean, nullable=False, default=False)
    retry_marker = Column(Integer, nullable=False, default=0)
    my_bought_size = Column(Float, nullable=True)
    my_bought_cost = Column(Float, nullable=True)  # USD paid for my_bought_size
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_trade_activity_pending", "trader_address", "processed", "retry_marker"),
    )

    def __repr__(self) -> str:
        return (
            f"<TradeActivity(id={self.id}, side={self.side}, "
            f"processed={self.processed}, retry={self.retry_marker})>"
        )
