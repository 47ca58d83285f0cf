from __future__ import annotations

import os

import pytest

from whatsapp_chat import api as api_module
from whatsapp_chat.config import get_settings
from whatsapp_chat.main import create_app
from whatsapp_chat.provider import OutboundMessage, StubProviderClient


def _set_env(overrides: dict[str, str | None]) -> dict[str, str | None]:
    previous: dict[str, str | None] = {}
    for key, value in overrides.items():
        previous[key] = os.environ.get(key)
        if value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = value
    return previous


def _restore_env(previous: dict[str, str | None]) -> None:
    for key, value in previous.items():
        if value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = value


def _base_runtime_secret_env() -> dict[str, str | None]:
    return {
        "CHAT_APP_NAME": "WhatsApp Chat Service",
        "RUNTIME_SECRET_GUARD_MODE": "enforce",
        "WEBHOOK_VERIFY_TOKEN": "prod-verify-token-001",
        "PROVIDER_CLIENT_TYPE": "stub",
        "CHAT_STORE_BACKEND": "inmemory",
        "DATABASE_URL": None,
    }


def test_create_app_starts_with_stub_provider_and_real_verify_token() -> None:
    previous = _set_env(_base_runtime_secret_env())
    try:
        app = create_app()
        assert app.title == "WhatsApp Chat Service"
    finally:
        _restore_env(previous)


def test_create_app_blocks_http_provider_without_credentials_in_enforce_mode() -> None:
    previous = _set_env(
        {
            **_base_runtime_secret_env(),
            "PROVIDER_CLIENT_TYPE": "http",
            "WHATSAPP_ACCESS_TOKEN": None,
            "WHATSAPP_PHONE_NUMBER_ID": None,
        }
    )
    try:
        with pytest.raises(RuntimeError, match="WHATSAPP_ACCESS_TOKEN"):
            create_app()
    finally:
        _restore_env(previous)


def test_create_app_blocks_placeholder_verify_token_in_enforce_mode() -> None:
    previous = _set_env({**_base_runtime_secret_env(), "WEBHOOK_VERIFY_TOKEN": "default_token"})
    try:
        with pytest.raises(RuntimeError, match="WEBHOOK_VERIFY_TOKEN"):
            create_app()
    finally:
        _restore_env(previous)


def test_create_app_only_warns_in_warn_mode(caplog: pytest.LogCaptureFixture) -> None:
    previous = _set_env(
        {**_base_runtime_secret_env(), "RUNTIME_SECRET_GUARD_MODE": "warn", "WEBHOOK_VERIFY_TOKEN": None}
    )
    try:
        with caplog.at_level("WARNING", logger="whatsapp_chat.main"):
            create_app()
        assert any("WEBHOOK_VERIFY_TOKEN" in record.getMessage() for record in caplog.records)
    finally:
        _restore_env(previous)


def test_warn_mode_with_unconfigured_http_provider_starts_with_sends_disabled(caplog: pytest.LogCaptureFixture) -> None:
    previous = _set_env(
        {
            **_base_runtime_secret_env(),
            "RUNTIME_SECRET_GUARD_MODE": "warn",
            "PROVIDER_CLIENT_TYPE": "http",
            "WHATSAPP_ACCESS_TOKEN": None,
            "WHATSAPP_PHONE_NUMBER_ID": None,
        }
    )
    try:
        with caplog.at_level("WARNING"):
            provider = api_module._create_provider(get_settings())
            app = create_app()
        assert isinstance(provider, StubProviderClient)
        assert provider.dispatch(OutboundMessage(to="15550002", type="text", content="x")).error_code == (
            "provider_disabled"
        )
        assert app.title == "WhatsApp Chat Service"
        warned = [record.getMessage() for record in caplog.records if record.name == "whatsapp_chat.main"]
        assert any("WHATSAPP_ACCESS_TOKEN" in message for message in warned)
    finally:
        _restore_env(previous)
