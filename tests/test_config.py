import pytest
from pydantic import ValidationError

from expense_bot.config import Settings


def test_settings_are_normalised(monkeypatch):
    monkeypatch.setenv("TELEGRAM_BOT", "123:abc")
    monkeypatch.setenv("HOME_CURRENCY", " usd ")
    monkeypatch.setenv("SERVICE_URL", "https://bot.example.com/")

    settings = Settings()

    assert settings.telegram_bot_token == "123:abc"
    assert settings.home_currency == "USD"
    assert settings.service_url == "https://bot.example.com"
    assert settings.total_budget_ms == 1500


def test_invalid_settings_are_rejected():
    with pytest.raises(ValidationError):
        Settings(home_currency="yen")
    with pytest.raises(ValidationError):
        Settings(light_phase_fraction=1.5)
