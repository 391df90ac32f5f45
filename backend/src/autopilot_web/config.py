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


def _as_int(value: str | None, default: int, *, minimum: int | None = None) -> int:
    if value is None:
        return default
    try:
        parsed = int(value.strip())
    except ValueError:
        return default
    if minimum is not None and parsed < minimum:
        return minimum
    return parsed


def _as_float(value: str | None, default: float) -> float:
    if value is None:
        return default
    try:
        return float(value.strip())
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


@dataclass(frozen=True)
class Settings:
    app_name: str = "Autopilot Reply Engine"
    api_prefix: str = "/api/v1"
    autopilot_enabled: bool = True
    autopilot_store_backend: str = "inmemory"
    database_url: str = ""
    autopilot_max_workers: int = 4
    autopilot_fetch_limit: int = 100
    autopilot_api_secret: str = ""
    autopilot_auto_enable_tag: str = "vox-ai"
    # Messaging provider (LeadConnector conversations API).
    provider_client_type: str = "stub"
    provider_api_base_url: str = "https://services.leadconnectorhq.com"
    provider_api_version: str = "2021-07-28"
    provider_token_url: str = "https://services.leadconnectorhq.com/oauth/token"
    provider_client_id: str = ""
    provider_client_secret: str = ""
    provider_access_token: str = ""
    provider_refresh_token: str = ""
    provider_timeout_seconds: int = 30
    provider_max_retries: int = 2
    provider_retry_backoff_seconds: float = 0.5
    # AI reply generation service.
    generator_type: str = "stub"
    generator_api_base_url: str = ""
    generator_api_key: str = ""
    generator_timeout_seconds: int = 60
    runtime_secret_guard_mode: str = "warn"


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("AUTOPILOT_APP_NAME", "Autopilot Reply Engine"),
        api_prefix=os.getenv("AUTOPILOT_API_PREFIX", "/api/v1"),
        autopilot_enabled=_as_bool(os.getenv("AUTOPILOT_ENABLED"), True),
        autopilot_store_backend=os.getenv("AUTOPILOT_STORE_BACKEND", "inmemory"),
        database_url=os.getenv("DATABASE_URL", ""),
        autopilot_max_workers=_as_int(os.getenv("AUTOPILOT_MAX_WORKERS"), 4, minimum=1),
        autopilot_fetch_limit=_as_int(os.getenv("AUTOPILOT_FETCH_LIMIT"), 100, minimum=1),
        autopilot_api_secret=os.getenv("AUTOPILOT_API_SECRET", ""),
        autopilot_auto_enable_tag=os.getenv("AUTOPILOT_AUTO_ENABLE_TAG", "vox-ai"),
        provider_client_type=_normalize_mode(
            os.getenv("PROVIDER_CLIENT_TYPE"),
            default="stub",
            allowed={"stub", "http"},
        ),
        provider_api_base_url=os.getenv("PROVIDER_API_BASE_URL", "https://services.leadconnectorhq.com"),
        provider_api_version=os.getenv("PROVIDER_API_VERSION", "2021-07-28"),
        provider_token_url=os.getenv("PROVIDER_TOKEN_URL", "https://services.leadconnectorhq.com/oauth/token"),
        provider_client_id=os.getenv("PROVIDER_CLIENT_ID", ""),
        provider_client_secret=os.getenv("PROVIDER_CLIENT_SECRET", ""),
        provider_access_token=os.getenv("PROVIDER_ACCESS_TOKEN", ""),
        provider_refresh_token=os.getenv("PROVIDER_REFRESH_TOKEN", ""),
        provider_timeout_seconds=_as_int(os.getenv("PROVIDER_TIMEOUT_SECONDS"), 30, minimum=1),
        provider_max_retries=_as_int(os.getenv("PROVIDER_MAX_RETRIES"), 2, minimum=0),
        provider_retry_backoff_seconds=_as_float(os.getenv("PROVIDER_RETRY_BACKOFF_SECONDS"), 0.5),
        generator_type=_normalize_mode(
            os.getenv("GENERATOR_TYPE"),
            default="stub",
            allowed={"stub", "http"},
        ),
        generator_api_base_url=os.getenv("GENERATOR_API_BASE_URL", ""),
        generator_api_key=os.getenv("GENERATOR_API_KEY", ""),
        generator_timeout_seconds=_as_int(os.getenv("GENERATOR_TIMEOUT_SECONDS"), 60, minimum=1),
        runtime_secret_guard_mode=_normalize_mode(
            os.getenv("RUNTIME_SECRET_GUARD_MODE"),
            default="warn",
            allowed={"off", "warn", "enforce"},
        ),
    )


def runtime_secret_issues(settings: Settings) -> tuple[str, ...]:
    issues: list[str] = []
    if _is_placeholder(
        settings.autopilot_api_secret,
        defaults={"dev-autopilot-secret", "change-me-in-production"},
    ):
        issues.append("AUTOPILOT_API_SECRET is empty or uses a placeholder value")
    if settings.autopilot_store_backend.strip().lower() == "postgres" and not settings.database_url.strip():
        issues.append("DATABASE_URL is required when AUTOPILOT_STORE_BACKEND=postgres")
    if settings.provider_client_type == "http":
        if not settings.provider_client_id.strip() or not settings.provider_client_secret.strip():
            issues.append(
                "PROVIDER_CLIENT_ID and PROVIDER_CLIENT_SECRET are required when PROVIDER_CLIENT_TYPE=http"
            )
        if not settings.provider_refresh_token.strip():
            issues.append("PROVIDER_REFRESH_TOKEN is required when PROVIDER_CLIENT_TYPE=http")
    if settings.generator_type == "http" and not settings.generator_api_base_url.strip():
        issues.append("GENERATOR_API_BASE_URL is required when GENERATOR_TYPE=http")
    return tuple(issues)
