from __future__ import annotations

import os

from autopilot_web.config import get_settings, runtime_secret_issues


def _set_env(name: str, value: str | None) -> str | None:
    previous = os.environ.get(name)
    if value is None:
        os.environ.pop(name, None)
    else:
        os.environ[name] = value
    return previous


def _restore_env(name: str, previous: str | None) -> None:
    if previous is None:
        os.environ.pop(name, None)
    else:
        os.environ[name] = previous


def test_get_settings_defaults_to_local_stub_runtime() -> None:
    names = [
        "AUTOPILOT_STORE_BACKEND",
        "AUTOPILOT_MAX_WORKERS",
        "PROVIDER_CLIENT_TYPE",
        "GENERATOR_TYPE",
        "RUNTIME_SECRET_GUARD_MODE",
    ]
    previous = {name: _set_env(name, None) for name in names}
    try:
        settings = get_settings()
        assert settings.autopilot_store_backend == "inmemory"
        assert settings.autopilot_max_workers == 4
        assert settings.provider_client_type == "stub"
        assert settings.generator_type == "stub"
        assert settings.runtime_secret_guard_mode == "warn"
        assert settings.provider_api_version == "2021-07-28"
    finally:
        for name, value in previous.items():
            _restore_env(name, value)


def test_get_settings_falls_back_on_invalid_values() -> None:
    previous = {
        "AUTOPILOT_MAX_WORKERS": _set_env("AUTOPILOT_MAX_WORKERS", "not-a-number"),
        "PROVIDER_CLIENT_TYPE": _set_env("PROVIDER_CLIENT_TYPE", "carrier-pigeon"),
        "RUNTIME_SECRET_GUARD_MODE": _set_env("RUNTIME_SECRET_GUARD_MODE", "sometimes"),
        "AUTOPILOT_ENABLED": _set_env("AUTOPILOT_ENABLED", "nope"),
    }
    try:
        settings = get_settings()
        assert settings.autopilot_max_workers == 4
        assert settings.provider_client_type == "stub"
        assert settings.runtime_secret_guard_mode == "warn"
        assert settings.autopilot_enabled is True
    finally:
        for key, value in previous.items():
            _restore_env(key, value)


def test_max_workers_is_clamped_to_one() -> None:
    previous = _set_env("AUTOPILOT_MAX_WORKERS", "0")
    try:
        assert get_settings().autopilot_max_workers == 1
    finally:
        _restore_env("AUTOPILOT_MAX_WORKERS", previous)


def test_placeholder_api_secret_is_reported() -> None:
    previous = _set_env("AUTOPILOT_API_SECRET", "change-me-in-production")
    try:
        issues = runtime_secret_issues(get_settings())
        assert any("AUTOPILOT_API_SECRET" in issue for issue in issues)
    finally:
        _restore_env("AUTOPILOT_API_SECRET", previous)


def test_http_provider_requires_oauth_client_and_refresh_token() -> None:
    previous = {
        "AUTOPILOT_API_SECRET": _set_env("AUTOPILOT_API_SECRET", "prod-autopilot-secret-001"),
        "PROVIDER_CLIENT_TYPE": _set_env("PROVIDER_CLIENT_TYPE", "http"),
        "PROVIDER_CLIENT_ID": _set_env("PROVIDER_CLIENT_ID", None),
        "PROVIDER_CLIENT_SECRET": _set_env("PROVIDER_CLIENT_SECRET", None),
        "PROVIDER_REFRESH_TOKEN": _set_env("PROVIDER_REFRESH_TOKEN", None),
    }
    try:
        issues = runtime_secret_issues(get_settings())
        assert any("PROVIDER_CLIENT_ID" in issue for issue in issues)
        assert any("PROVIDER_REFRESH_TOKEN" in issue for issue in issues)
        assert not any("AUTOPILOT_API_SECRET" in issue for issue in issues)
    finally:
        for key, value in previous.items():
            _restore_env(key, value)


def test_stub_clients_do_not_require_provider_or_generator_secrets() -> None:
    previous = {
        "AUTOPILOT_API_SECRET": _set_env("AUTOPILOT_API_SECRET", "prod-autopilot-secret-001"),
        "AUTOPILOT_STORE_BACKEND": _set_env("AUTOPILOT_STORE_BACKEND", "inmemory"),
        "PROVIDER_CLIENT_TYPE": _set_env("PROVIDER_CLIENT_TYPE", "stub"),
        "GENERATOR_TYPE": _set_env("GENERATOR_TYPE", "stub"),
    }
    try:
        assert runtime_secret_issues(get_settings()) == ()
    finally:
        for key, value in previous.items():
            _restore_env(key, value)


def test_postgres_backend_requires_database_url() -> None:
    previous = {
        "AUTOPILOT_STORE_BACKEND": _set_env("AUTOPILOT_STORE_BACKEND", "postgres"),
        "DATABASE_URL": _set_env("DATABASE_URL", None),
    }
    try:
        issues = runtime_secret_issues(get_settings())
        assert any("DATABASE_URL" in issue for issue in issues)
    finally:
        for key, value in previous.items():
            _restore_env(key, value)
