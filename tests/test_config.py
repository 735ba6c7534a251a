"""Settings parsing and validation."""

import pytest
from pydantic import ValidationError

from core.config import Settings


def test_defaults():
    settings = Settings(_env_file=None)

    assert settings.analysis_concurrency == 3
    assert settings.webhook_concurrency == 5
    assert settings.sheets_batch_size == 10
    assert settings.retry_max_delay == 60.0
    assert settings.sheets_configured is False


def test_private_key_newlines_are_unescaped():
    settings = Settings(_env_file=None, google_sheets_private_key="line1\\nline2")
    assert settings.google_sheets_private_key == "line1\nline2"


def test_sheets_configured_requires_every_credential():
    settings = Settings(
        _env_file=None,
        master_sheet_id="sheet",
        google_sheets_client_email="svc@example.com",
        google_sheets_private_key="key",
    )
    assert settings.sheets_configured is True


def test_invalid_log_format_is_rejected():
    with pytest.raises(ValidationError):
        Settings(_env_file=None, log_format="xml")


def test_bounds_are_enforced():
    with pytest.raises(ValidationError):
        Settings(_env_file=None, webhook_concurrency=0)


def test_webhook_urls_from_environment(monkeypatch):
    monkeypatch.setenv("WEBHOOK_URLS", '{"Task": "https://hooks.example.com/task"}')
    settings = Settings(_env_file=None)
    assert settings.webhook_urls == {"Task": "https://hooks.example.com/task"}


def test_default_delivery_tiers():
    settings = Settings(_env_file=None, webhook_timeout=7, webhook_max_retries=1)

    assert settings.delivery_for("ProjectIdea").max_retries == 5
    assert settings.delivery_for("Task").timeout == 5
    assert settings.delivery_for("Sensitive").circuit_breaker is False
    fallback = settings.delivery_for("Unlisted")
    assert (fallback.timeout, fallback.max_retries, fallback.circuit_breaker) == (7, 1, True)


def test_webhook_delivery_from_environment(monkeypatch):
    monkeypatch.setenv("WEBHOOK_DELIVERY",
                       '{"Task": {"timeout": 3, "max_retries": 1, "circuit_breaker": false}}')
    settings = Settings(_env_file=None)

    task = settings.delivery_for("Task")
    assert (task.timeout, task.max_retries, task.circuit_breaker) == (3, 1, False)
    # an override map replaces the default tiers
    assert settings.delivery_for("Goal").timeout == settings.webhook_timeout


def test_webhook_delivery_bounds_are_enforced():
    with pytest.raises(ValidationError):
        Settings(_env_file=None, webhook_delivery={"Task": {"timeout": 0, "max_retries": 1}})
