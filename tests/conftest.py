"""Shared fixtures: settings, a fake REST client and a clean environment."""

from unittest.mock import MagicMock

import pytest

import twilio_common
from twilio_common import Settings

ENV_NAMES = (
    "TWILIO_ACCT_SID",
    "TWILIO_ACCOUNT_SID",
    "TWILIO_ACCT_AUTH",
    "TWILIO_AUTH_TOKEN",
    "TWILIO_SERVICE_SID",
    "TWILIO_WORKSPACE_SID",
    "TWILIO_HTTP_TIMEOUT",
    "TWILIO_MAX_RETRIES",
)


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch, tmp_path):
    """No real credentials or .env file leak into a test."""
    for name in ENV_NAMES:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr(twilio_common, "ENV_FILE", str(tmp_path / "missing.env"))
    monkeypatch.setattr(twilio_common.time, "sleep", lambda seconds: None)


@pytest.fixture
def settings():
    return Settings(
        account_sid="AC123",
        auth_token="secret",
        chat_service_sid="IS123",
        workspace_sid="WS123",
        max_retries=3,
    )


@pytest.fixture
def client():
    return MagicMock(name="twilio_client")


@pytest.fixture
def script_env(monkeypatch, client):
    """Environment for running a script's main() against the fake client."""
    monkeypatch.setenv("TWILIO_ACCT_SID", "AC123")
    monkeypatch.setenv("TWILIO_ACCT_AUTH", "secret")
    monkeypatch.setenv("TWILIO_SERVICE_SID", "IS123")
    monkeypatch.setenv("TWILIO_WORKSPACE_SID", "WS123")
    monkeypatch.setattr(twilio_common, "build_client", lambda settings: client)
    return client
