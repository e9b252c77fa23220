"""Credential and configuration validators."""

from polycopy.exceptions import ConfigError


def validate_polymarket_credentials() -> None:
    """Raise ConfigError if Polymarket execution credentials are missing."""
    from config.settings import settings
    if not settings.POLYMARKET_PRIVATE_KEY:
        raise ConfigError("POLYMARKET_PRIVATE_KEY is required")
    if not settings.POLYMARKET_WALLET_ADDRESS:
        raise ConfigError("POLYMARKET_WALLET_ADDRESS is required")


def validate_copy_targets() -> list[str]:
    """Return the configured trader wallets, raising ConfigError when empty."""
    from config.settings import settings
    addresses = [
        a.strip().lower() for a in settings.USER_ADDRESSES.split(",") if a.strip()
    ]
    if not addresses:
        raise ConfigError("USER_ADDRESSES must list at least one trader wallet")
    return addresses


def validate_copy_strategy() -> None:
    """Raise ConfigError if the sizing policy settings are inconsistent."""
    from config.settings import settings
    if settings.COPY_STRATEGY.upper() not in ("PERCENTAGE", "FIXED", "ADAPTIVE"):
        raise ConfigError(f"Unknown COPY_STRATEGY: {settings.COPY_STRATEGY}")
    if settings.COPY_SIZE <= 0:
        raise ConfigError("COPY_SIZE must be positive")
    if settings.RETRY_LIMIT < 1:
        raise ConfigError("RETRY_LIMIT must be at least 1")
