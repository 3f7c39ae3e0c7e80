"""Tests for configuration, API wrappers and the worker pool."""

import argparse
import threading
from unittest.mock import MagicMock

import pytest
import requests
from twilio.base.exceptions import TwilioRestException

import twilio_common
from twilio_common import (
    ConfigError,
    Settings,
    call_api,
    escape_identity,
    fetch_all,
    map_items,
    non_negative_int,
    positive_int,
    run_script,
)


def _rest_error(status, code=None, msg="boom"):
    return TwilioRestException(status, "https://api.twilio.com/x", msg=msg, code=code)


def test_escape_identity_hex_escapes_non_alphanumerics() -> None:
    assert escape_identity("a.b@c") == "a_2Eb_40c"
    assert escape_identity("Jane Doe") == "Jane_20Doe"
    assert escape_identity("abcXYZ019") == "abcXYZ019"


def test_escape_identity_is_not_idempotent() -> None:
    assert escape_identity("a_2E") == "a_5F2E"


def test_escape_identity_escapes_non_ascii_letters() -> None:
    assert escape_identity("é") == "_E9"


def test_settings_from_env_reads_primary_names(monkeypatch) -> None:
    monkeypatch.setenv("TWILIO_ACCT_SID", "AC1")
    monkeypatch.setenv("TWILIO_ACCT_AUTH", "tok")
    monkeypatch.setenv("TWILIO_WORKSPACE_SID", "WS1")

    settings = Settings.from_env()

    assert settings.account_sid == "AC1"
    assert settings.auth_token == "tok"
    assert settings.workspace_sid == "WS1"
    assert settings.chat_service_sid is None
    assert settings.http_timeout == 30
    assert settings.max_retries == 3


def test_settings_from_env_accepts_aliases(monkeypatch) -> None:
    monkeypatch.setenv("TWILIO_ACCOUNT_SID", "AC2")
    monkeypatch.setenv("TWILIO_AUTH_TOKEN", "tok2")

    settings = Settings.from_env()

    assert (settings.account_sid, settings.auth_token) == ("AC2", "tok2")


def test_settings_from_env_loads_dotenv_without_overriding(monkeypatch, tmp_path) -> None:
    env_file = tmp_path / ".env"
    env_file.write_text("# creds\nTWILIO_ACCT_SID=ACfile\nTWILIO_ACCT_AUTH=fromfile\n")
    monkeypatch.setattr(twilio_common, "ENV_FILE", str(env_file))
    monkeypatch.setenv("TWILIO_ACCT_AUTH", "fromenv")

    settings = Settings.from_env()

    assert settings.account_sid == "ACfile"
    assert settings.auth_token == "fromenv"


def test_settings_from_env_requires_credentials() -> None:
    with pytest.raises(ConfigError):
        Settings.from_env()


def test_settings_bad_numbers_fall_back_to_defaults(monkeypatch) -> None:
    monkeypatch.setenv("TWILIO_ACCT_SID", "AC1")
    monkeypatch.setenv("TWILIO_ACCT_AUTH", "tok")
    monkeypatch.setenv("TWILIO_HTTP_TIMEOUT", "soon")
    monkeypatch.setenv("TWILIO_MAX_RETRIES", "0")

    settings = Settings.from_env()

    assert settings.http_timeout == 30
    assert settings.max_retries == 1


def test_require_workspace_raises_when_unset() -> None:
    settings = Settings(account_sid="AC1", auth_token="tok")
    with pytest.raises(ConfigError, match="TWILIO_WORKSPACE_SID"):
        settings.require_workspace()
    with pytest.raises(ConfigError, match="TWILIO_SERVICE_SID"):
        settings.require_chat_service()


def test_call_api_retries_on_rate_limit(monkeypatch, settings, capsys) -> None:
    sleeps = []
    monkeypatch.setattr(twilio_common.time, "sleep", sleeps.append)
    func = MagicMock(side_effect=[_rest_error(429), _rest_error(429), "ok"])

    assert call_api(settings, func, "a", key="b") == "ok"

    assert func.call_count == 3
    func.assert_called_with("a", key="b")
    assert sleeps == [twilio_common.RATE_LIMIT_WAIT] * 2
    assert "Rate limited" in capsys.readouterr().err


def test_call_api_gives_up_after_max_retries(settings) -> None:
    func = MagicMock(side_effect=_rest_error(429))

    with pytest.raises(TwilioRestException):
        call_api(settings, func)

    assert func.call_count == settings.max_retries


def test_call_api_does_not_retry_other_errors(settings) -> None:
    func = MagicMock(side_effect=_rest_error(404))

    with pytest.raises(TwilioRestException):
        call_api(settings, func)

    assert func.call_count == 1


def test_fetch_all_drops_unset_filters(settings) -> None:
    resource = MagicMock()
    resource.list.return_value = iter(["e1", "e2"])

    result = fetch_all(settings, resource, limit=5, task_sid=None, worker_sid="WK1")

    assert result == ["e1", "e2"]
    resource.list.assert_called_once_with(limit=5, worker_sid="WK1")


def test_map_items_skips_failures_and_keeps_order(capsys) -> None:
    def work(item):
        if item == 2:
            raise _rest_error(500, code=20500, msg="server sad")
        if item == 3:
            raise requests.ConnectionError("reset")
        return item * 10

    result = map_items(work, [1, 2, 3, 4], concurrency=2, label="thing")

    assert result == [10, 40]
    err = capsys.readouterr().err
    assert "Skipping thing 2: 20500: server sad" in err
    assert "Skipping thing 3: reset" in err


def test_map_items_propagates_unexpected_errors() -> None:
    def work(item):
        raise ValueError("bug")

    with pytest.raises(ValueError):
        map_items(work, [1])


def test_map_items_bounds_concurrency() -> None:
    lock = threading.Lock()
    state = {"active": 0, "peak": 0}
    release = threading.Event()

    def work(item):
        with lock:
            state["active"] += 1
            state["peak"] = max(state["peak"], state["active"])
        release.wait(0.05)
        with lock:
            state["active"] -= 1
        return item

    assert map_items(work, range(6), concurrency=2) == list(range(6))
    assert state["peak"] <= 2


def test_argparse_number_types() -> None:
    assert positive_int("3") == 3
    assert non_negative_int("0") == 0
    with pytest.raises(argparse.ArgumentTypeError):
        positive_int("0")
    with pytest.raises(argparse.ArgumentTypeError):
        non_negative_int("-1")


def test_run_script_reports_missing_config(capsys) -> None:
    body = MagicMock()

    assert run_script(body, None) == 1

    body.assert_not_called()
    assert "ERROR: TWILIO_ACCT_SID" in capsys.readouterr().err


def test_run_script_reports_auth_failures(script_env, capsys) -> None:
    def body(settings, client, args):
        raise _rest_error(401, code=20003, msg="Authenticate")

    assert run_script(body, None) == 1

    err = capsys.readouterr().err
    assert "ERROR 20003: Authenticate" in err
    assert "HINT" in err


def test_run_script_passes_settings_and_client(script_env) -> None:
    seen = {}

    def body(settings, client, args):
        seen.update(settings=settings, client=client, args=args)

    assert run_script(body, "args") == 0
    assert seen["client"] is script_env
    assert seen["settings"].workspace_sid == "WS123"
    assert seen["args"] == "args"


@pytest.mark.parametrize("error", [_rest_error(401, code=20003), _rest_error(403, code=20403)])
def test_map_items_stops_on_credential_errors(error, capsys) -> None:
    def work(item):
        raise error

    with pytest.raises(TwilioRestException):
        map_items(work, [1, 2])

    assert "Skipping" not in capsys.readouterr().err
