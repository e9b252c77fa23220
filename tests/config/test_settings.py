import pytest

from config.settings import Settings
from polycopy.exceptions import ConfigError


def test_settings_defaults():
    s = Settings(_env_file=None)
    assert s.COPY_STRATEGY == "PERCENTAGE"
    assert s.RETRY_LIMIT == 3
    assert s.TRADE_AGGREGATION_ENABLED is True
    assert s.ARB_MAX_COST_BASIS == 0.95
    assert s.ARB_MAX_IMBALANCE == 0.25
    assert s.ALLOWED_MARKET_KEYWORDS == "btc+15m,eth+15m"
    assert s.DATABASE_URL.startswith("sqlite+aiosqlite")


def test_settings_read_environment(monkeypatch):
    monkeypatch.setenv("COPY_STRATEGY", "ADAPTIVE")
    monkeypatch.setenv("RETRY_LIMIT", "5")
    monkeypatch.setenv("SKIP_SLIPPAGE_CHECK", "true")
    s = Settings(_env_file=None)
    assert s.COPY_STRATEGY == "ADAPTIVE"
    assert s.RETRY_LIMIT == 5
    assert s.SKIP_SLIPPAGE_CHECK is True


def test_validate_copy_targets(monkeypatch):
    from config import validators

    monkeypatch.setattr("config.settings.settings", Settings(_env_file=None, USER_ADDRESSES=" 0xAbC ,0xdef,"))
    assert validators.validate_copy_targets() == ["0xabc", "0xdef"]

    monkeypatch.setattr("config.settings.settings", Settings(_env_file=None, USER_ADDRESSES=""))
    with pytest.raises(ConfigError):
        validators.validate_copy_targets()


def test_validate_credentials_and_strategy(monkeypatch):
    from config import validators

    monkeypatch.setattr("config.settings.settings", Settings(_env_file=None))
    with pytest.raises(ConfigError):
        validators.validate_polymarket_credentials()

    monkeypatch.setattr(
        "config.settings.settings",
        Settings(_env_file=None, COPY_STRATEGY="martingale"),
    )
    with pytest.raises(ConfigError):
        validators.validate_copy_strategy()
