from __future__ import annotations

import os
from dataclasses import dataclass


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _as_csv_tuple(value: str | None, default: tuple[str, ...] = ()) -> tuple[str, ...]:
    if value is None:
        return default
    items = [item.strip() for item in value.split(",")]
    return tuple(item for item in items if item)


def _as_int(value: str | None, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value.strip())
    except ValueError:
        return default


def _normalize_mode(value: str | None, *, default: str, allowed: set[str]) -> str:
    if value is None:
        return default
    normalized = value.strip().lower()
    return normalized if normalized in allowed else default


def _is_placeholder(value: str, *, defaults: set[str]) -> bool:
    normalized = value.strip()
    if not normalized:
        return True
    if normalized in defaults:
        return True
    lower = normalized.lower()
    return lower in {"change-me", "replace-me", "placeholder", "changeme"}


DEFAULT_CORS_ORIGINS = (
    "http://localhost:3000",
    "http://localhost:3001",
    "http://localhost:32100",
    "http://localhost:32101",
)


@dataclass(frozen=True)
class Settings:
    app_name: str = "WhatsApp Chat Service"
    api_prefix: str = "/api/chat"
    whatsapp_api_url: str = "https://graph.facebook.com/v23.0"
    whatsapp_access_token: str = ""
    whatsapp_phone_number_id: str = ""
    whatsapp_display_phone_number: str = ""
    webhook_verify_token: str = ""
    provider_client_type: str = "stub"
    provider_enabled: bool = True
    provider_timeout_seconds: int = 30
    default_template_language: str = "en_US"
    chat_store_backend: str = "inmemory"
    database_url: str = ""
    autoreply_enabled: bool = False
    cors_allowed_origins: tuple[str, ...] = DEFAULT_CORS_ORIGINS
    conversations_default_limit: int = 20
    messages_default_limit: int = 50
    query_limit_max: int = 500
    log_level: str = "INFO"
    runtime_secret_guard_mode: str = "warn"

    @property
    def business_number(self) -> str:
        # Outgoing messages are attributed to the display number when Meta reports one.
        return self.whatsapp_display_phone_number.strip() or self.whatsapp_phone_number_id.strip()

    def clamp_limit(self, requested: int | None, *, default: int) -> int:
        if requested is None or requested <= 0:
            return default
        return min(requested, self.query_limit_max)


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("CHAT_APP_NAME", "WhatsApp Chat Service"),
        api_prefix=os.getenv("API_PREFIX", "/api/chat"),
        whatsapp_api_url=os.getenv("WHATSAPP_API_URL", "https://graph.facebook.com/v23.0"),
        whatsapp_access_token=os.getenv("WHATSAPP_ACCESS_TOKEN", ""),
        whatsapp_phone_number_id=os.getenv("WHATSAPP_PHONE_NUMBER_ID", ""),
        whatsapp_display_phone_number=os.getenv("WHATSAPP_DISPLAY_PHONE_NUMBER", ""),
        webhook_verify_token=os.getenv("WEBHOOK_VERIFY_TOKEN", ""),
        provider_client_type=_normalize_mode(
            os.getenv("PROVIDER_CLIENT_TYPE"),
            default="stub",
            allowed={"stub", "http"},
        ),
        provider_enabled=_as_bool(os.getenv("PROVIDER_ENABLED"), True),
        provider_timeout_seconds=_as_int(os.getenv("PROVIDER_TIMEOUT_SECONDS"), 30),
        default_template_language=os.getenv("DEFAULT_TEMPLATE_LANGUAGE", "en_US"),
        chat_store_backend=_normalize_mode(
            os.getenv("CHAT_STORE_BACKEND"),
            default="inmemory",
            allowed={"inmemory", "postgres"},
        ),
        database_url=os.getenv("DATABASE_URL", ""),
        autoreply_enabled=_as_bool(os.getenv("CHAT_AUTOREPLY_ENABLED"), False),
        cors_allowed_origins=_as_csv_tuple(os.getenv("CORS_ALLOWED_ORIGINS"), DEFAULT_CORS_ORIGINS),
        conversations_default_limit=_as_int(os.getenv("CONVERSATIONS_DEFAULT_LIMIT"), 20),
        messages_default_limit=_as_int(os.getenv("MESSAGES_DEFAULT_LIMIT"), 50),
        query_limit_max=_as_int(os.getenv("QUERY_LIMIT_MAX"), 500),
        log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO",
        runtime_secret_guard_mode=_normalize_mode(
            os.getenv("RUNTIME_SECRET_GUARD_MODE"),
            default="warn",
            allowed={"off", "warn", "enforce"},
        ),
    )


def runtime_secret_issues(settings: Settings) -> tuple[str, ...]:
    issues: list[str] = []
    if settings.provider_client_type == "http":
        if _is_placeholder(settings.whatsapp_access_token, defaults={"dev-access-token"}):
            issues.append("WHATSAPP_ACCESS_TOKEN is required when PROVIDER_CLIENT_TYPE=http")
        if not settings.whatsapp_phone_number_id.strip():
            issues.append("WHATSAPP_PHONE_NUMBER_ID is required when PROVIDER_CLIENT_TYPE=http")
    if _is_placeholder(settings.webhook_verify_token, defaults={"default_token", "dev-verify-token"}):
        issues.append("WEBHOOK_VERIFY_TOKEN is empty or uses a development placeholder")
    if settings.chat_store_backend == "postgres" and not settings.database_url.strip():
        issues.append("DATABASE_URL is required when CHAT_STORE_BACKEND=postgres")
    return tuple(issues)
