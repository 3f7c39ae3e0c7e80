"""
Shared plumbing for the Twilio operator scripts.

Environment variables:
  TWILIO_ACCT_SID      — Account SID (alias: TWILIO_ACCOUNT_SID)
  TWILIO_ACCT_AUTH     — Auth token (alias: TWILIO_AUTH_TOKEN)
  TWILIO_SERVICE_SID   — Chat service SID (chat scripts only)
  TWILIO_WORKSPACE_SID — TaskRouter workspace SID (TaskRouter scripts only)
  TWILIO_HTTP_TIMEOUT  — HTTP timeout in seconds (default 30)
  TWILIO_MAX_RETRIES   — Attempts per request when rate limited (default 3)
"""

import argparse
import os
import sys
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Optional

import requests
from twilio.base.exceptions import TwilioRestException
from twilio.http.http_client import TwilioHttpClient
from twilio.rest import Client

ENV_FILE = os.path.join(os.path.dirname(os.path.abspath(__file__)), "..", ".env")
RATE_LIMIT_WAIT = 5
IDENTITY_ESCAPE_PREFIX = "_"

# Failures that only sink the item being processed, not the whole run.
ITEM_ERRORS = (TwilioRestException, requests.RequestException)


class ConfigError(Exception):
    """Raised when required configuration is missing."""


def is_fatal_error(exc):
    """Credential or permission failures end the run instead of skipping an item."""
    return isinstance(exc, TwilioRestException) and (exc.status in (401, 403) or exc.code == 20003)


def _load_env():
    """Load .env file from the repository root."""
    env_path = os.path.normpath(ENV_FILE)
    if os.path.exists(env_path):
        with open(env_path) as f:
            for line in f:
                line = line.strip()
                if line and not line.startswith("#") and "=" in line:
                    k, v = line.split("=", 1)
                    os.environ.setdefault(k.strip(), v.strip())


def _env(name, alias=None):
    value = os.environ.get(name) or (os.environ.get(alias) if alias else None)
    return value.strip() if value and value.strip() else None


def _env_number(name, default, cast=int):
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return cast(raw.strip())
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    account_sid: str
    auth_token: str
    chat_service_sid: Optional[str] = None
    workspace_sid: Optional[str] = None
    http_timeout: float = 30
    max_retries: int = 3

    @classmethod
    def from_env(cls):
        """Build settings from the process environment (and .env)."""
        _load_env()
        account_sid = _env("TWILIO_ACCT_SID", "TWILIO_ACCOUNT_SID")
        auth_token = _env("TWILIO_ACCT_AUTH", "TWILIO_AUTH_TOKEN")
        if not account_sid or not auth_token:
            raise ConfigError("TWILIO_ACCT_SID and TWILIO_ACCT_AUTH must be set")
        return cls(
            account_sid=account_sid,
            auth_token=auth_token,
            chat_service_sid=_env("TWILIO_SERVICE_SID"),
            workspace_sid=_env("TWILIO_WORKSPACE_SID"),
            http_timeout=_env_number("TWILIO_HTTP_TIMEOUT", 30, float),
            max_retries=max(1, _env_number("TWILIO_MAX_RETRIES", 3)),
        )

    def require_chat_service(self):
        if not self.chat_service_sid:
            raise ConfigError("TWILIO_SERVICE_SID must be set")
        return self.chat_service_sid

    def require_workspace(self):
        if not self.workspace_sid:
            raise ConfigError("TWILIO_WORKSPACE_SID must be set")
        return self.workspace_sid


def build_client(settings):
    """Create a REST client bound to the configured account."""
    http_client = TwilioHttpClient(timeout=settings.http_timeout)
    return Client(settings.account_sid, settings.auth_token, http_client=http_client)


def call_api(settings, func, *args, **kwargs):
    """Invoke one SDK operation, retrying when Twilio answers 429."""
    for attempt in range(settings.max_retries):
        try:
            return func(*args, **kwargs)
        except TwilioRestException as exc:
            if exc.status != 429 or attempt + 1 == settings.max_retries:
                raise
            print(f"Rate limited, retrying in {RATE_LIMIT_WAIT}s...", file=sys.stderr)
            time.sleep(RATE_LIMIT_WAIT)


def fetch_all(settings, resource, limit=None, page_size=None, **filters):
    """Read every page of a list resource into a plain list."""
    params = {k: v for k, v in filters.items() if v is not None}
    if limit is not None:
        params["limit"] = limit
    if page_size is not None:
        params["page_size"] = page_size
    return list(call_api(settings, resource.list, **params))


def map_items(func, items, concurrency=1, label="item", describe=str):
    """Apply func to every item with at most `concurrency` calls in flight.

    Results come back in input order. Items whose call fails with an API or
    network error are reported on stderr and left out of the result.
    """
    items = list(items)
    results = []
    with ThreadPoolExecutor(max_workers=max(1, concurrency)) as pool:
        futures = [pool.submit(func, item) for item in items]
        try:
            for item, future in zip(items, futures):
                try:
                    results.append(future.result())
                except ITEM_ERRORS as exc:
                    if is_fatal_error(exc):
                        raise
                    print(f"Skipping {label} {describe(item)}: {describe_error(exc)}", file=sys.stderr)
        except BaseException:
            for future in futures:
                future.cancel()
            raise
    return results


def escape_identity(name):
    """Turn a display name into a chat identity token.

    Every character outside [A-Za-z0-9] becomes the prefix followed by its
    uppercase hex code point, e.g. "a.b@c" -> "a_2Eb_40c".
    """
    escaped = []
    for ch in name:
        if ch.isascii() and ch.isalnum():
            escaped.append(ch)
        else:
            escaped.append(f"{IDENTITY_ESCAPE_PREFIX}{ord(ch):02X}")
    return "".join(escaped)


def describe_error(exc):
    if isinstance(exc, TwilioRestException):
        return f"{exc.code or exc.status}: {exc.msg}"
    return str(exc)


def report_error(exc):
    """Print a fatal error (and a hint where one helps) to stderr."""
    if isinstance(exc, TwilioRestException):
        print(f"ERROR {describe_error(exc)}", file=sys.stderr)
        if exc.status == 401 or exc.code == 20003:
            print("HINT: Check TWILIO_ACCT_SID / TWILIO_ACCT_AUTH in your environment or .env file.", file=sys.stderr)
        elif exc.status == 404:
            print("HINT: Check the service / workspace SID the script is pointed at.", file=sys.stderr)
    else:
        print(f"ERROR: {exc}", file=sys.stderr)


def run_script(func, args):
    """Run a script body, translating failures into exit codes."""
    try:
        settings = Settings.from_env()
        return func(settings, build_client(settings), args) or 0
    except ConfigError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1
    except (TwilioRestException, requests.RequestException, OSError) as exc:
        report_error(exc)
        return 1
    except KeyboardInterrupt:
        print("Interrupted.", file=sys.stderr)
        return 130


def positive_int(value):
    """argparse type: integer >= 1."""
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be >= 1, got {value}")
    return number


def non_negative_int(value):
    """argparse type: integer >= 0."""
    number = int(value)
    if number < 0:
        raise argparse.ArgumentTypeError(f"must be >= 0, got {value}")
    return number
