"""Runtime configuration - values come from the environment or ``.env``."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # === Polymarket ===
    POLYMARKET_API_KEY: str = ""
    POLYMARKET_API_SECRET: str = ""
    POLYMARKET_API_PASSPHRASE: str = ""
    POLYMARKET_WALLET_ADDRESS: str = ""  # proxy wallet that holds positions
    POLYMARKET_PRIVATE_KEY: str = ""
    POLYMARKET_CHAIN_ID: int = 137
    POLYMARKET_SIGNATURE_TYPE: int = 1  # POLY_PROXY

    POLYMARKET_CLOB_HTTP: str = "https://clob.polymarket.com"
    POLYMARKET_DATA_API: str = "https://data-api.polymarket.com"
    POLYGON_RPC_URL: str = ""

    # === Copy targets ===
    USER_ADDRESSES: str = ""  # comma-separated trader wallets
    ACTIVITY_POLL_INTERVAL: float = 1.0
    ACTIVITY_MAX_AGE_HOURS: float = 1.0  # ignore feed rows older than this

    # === Copy strategy (sizing policy) ===
    COPY_STRATEGY: str = "PERCENTAGE"  # PERCENTAGE | FIXED | ADAPTIVE
    COPY_SIZE: float = 10.0  # percent of trader size, or USD for FIXED
    MAX_ORDER_SIZE_USD: float = 100.0
    MIN_ORDER_SIZE_USD: float = 1.0
    MAX_POSITION_SIZE_USD: float = 0.0  # 0 disables the per-market cap
    ADAPTIVE_MIN_PERCENT: float = 5.0
    ADAPTIVE_MAX_PERCENT: float = 20.0
    ADAPTIVE_THRESHOLD_USD: float = 500.0
    TRADE_MULTIPLIER: float = 1.0
    TIERED_MULTIPLIERS: str = ""  # e.g. "1-10:2.0,10-100:1.0,100+:0.5"

    # === Execution ===
    RETRY_LIMIT: int = 3
    SKIP_SLIPPAGE_CHECK: bool = False
    TRADE_AGGREGATION_ENABLED: bool = True
    FETCH_INTERVAL: float = 0.3  # polling loop sleep
    STATUS_INTERVAL_SECONDS: float = 10.0

    # === Market filter ===
    # Groups separated by ",", keywords inside a group joined by "+".
    ALLOWED_MARKET_KEYWORDS: str = "btc+15m,eth+15m"

    # === Risk gate ===
    ARB_MAX_COST_BASIS: float = 0.95  # combined YES+NO average price ceiling
    ARB_MAX_IMBALANCE: float = 0.25  # max quantity imbalance between sides

    # === Database ===
    DATABASE_URL: str = "sqlite+aiosqlite:///data/polycopy.db"

    model_config = {"env_file": ".env", "extra": "ignore"}


settings = Settings()
