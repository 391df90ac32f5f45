from __future__ import annotations

import json
import logging
import socket
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Protocol

from sqlalchemy import DateTime, String, Text, create_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .config import Settings
from .provider import DEFAULT_PROVIDER_KEY, ProviderError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProviderCredentialRecord:
    provider_key: str
    access_token: str
    refresh_token: str
    expires_at: datetime | None
    updated_at: datetime


class TokenRefreshError(ProviderError):
    pass


class CredentialStore(Protocol):
    def reset(self) -> None: ...

    def get_credential(self, provider_key: str) -> ProviderCredentialRecord | None: ...

    def get_access_token(self, provider_key: str) -> str | None: ...

    def save_tokens(
        self,
        provider_key: str,
        *,
        access_token: str,
        refresh_token: str,
        expires_at: datetime | None,
    ) -> ProviderCredentialRecord: ...


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class InMemoryCredentialStore:
    def __init__(self) -> None:
        self._lock = Lock()
        self._credentials: dict[str, ProviderCredentialRecord] = {}

    def reset(self) -> None:
        with self._lock:
            self._credentials.clear()

    def get_credential(self, provider_key: str) -> ProviderCredentialRecord | None:
        with self._lock:
            return self._credentials.get(provider_key)

    def get_access_token(self, provider_key: str) -> str | None:
        credential = self.get_credential(provider_key)
        return credential.access_token if credential is not None else None

    def save_tokens(
        self,
        provider_key: str,
        *,
        access_token: str,
        refresh_token: str,
        expires_at: datetime | None,
    ) -> ProviderCredentialRecord:
        record = ProviderCredentialRecord(
            provider_key=provider_key,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expires_at,
            updated_at=_now_utc(),
        )
        with self._lock:
            self._credentials[provider_key] = record
        return record


class CredentialStoreBase(DeclarativeBase):
    pass


class _ProviderCredentialRow(CredentialStoreBase):
    __tablename__ = "provider_credentials"

    provider_key: Mapped[str] = mapped_column(String(64), primary_key=True)
    access_token: Mapped[str] = mapped_column(Text, nullable=False)
    refresh_token: Mapped[str] = mapped_column(Text, nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class SqlAlchemyCredentialStore:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for AUTOPILOT_STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            CredentialStoreBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.query(_ProviderCredentialRow).delete()

    def get_credential(self, provider_key: str) -> ProviderCredentialRecord | None:
        with self._session() as session:
            row = session.get(_ProviderCredentialRow, provider_key)
            if row is None:
                return None
            return ProviderCredentialRecord(
                provider_key=row.provider_key,
                access_token=row.access_token,
                refresh_token=row.refresh_token,
                expires_at=_coerce_utc(row.expires_at) if row.expires_at is not None else None,
                updated_at=_coerce_utc(row.updated_at),
            )

    def get_access_token(self, provider_key: str) -> str | None:
        credential = self.get_credential(provider_key)
        return credential.access_token if credential is not None else None

    def save_tokens(
        self,
        provider_key: str,
        *,
        access_token: str,
        refresh_token: str,
        expires_at: datetime | None,
    ) -> ProviderCredentialRecord:
        now = _now_utc()
        with self._session() as session:
            with session.begin():
                row = session.get(_ProviderCredentialRow, provider_key, with_for_update=True)
                if row is None:
                    row = _ProviderCredentialRow(provider_key=provider_key)
                    session.add(row)
                row.access_token = access_token
                row.refresh_token = refresh_token
                row.expires_at = expires_at
                row.updated_at = now
        return ProviderCredentialRecord(
            provider_key=provider_key,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expires_at,
            updated_at=now,
        )


def create_credential_store(*, backend: str, database_url: str) -> CredentialStore:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyCredentialStore(database_url)
    if normalized == "inmemory":
        return InMemoryCredentialStore()
    raise RuntimeError(f"unsupported AUTOPILOT_STORE_BACKEND: {backend}")


def seed_credentials_from_settings(
    store: CredentialStore,
    settings: Settings,
    *,
    provider_key: str = DEFAULT_PROVIDER_KEY,
) -> ProviderCredentialRecord | None:
    """Store env-provided tokens unless a rotated credential already exists."""
    existing = store.get_credential(provider_key)
    if existing is not None:
        return existing
    refresh_token = settings.provider_refresh_token.strip()
    if not refresh_token:
        return None
    return store.save_tokens(
        provider_key,
        access_token=settings.provider_access_token.strip(),
        refresh_token=refresh_token,
        expires_at=None,
    )


class OAuthTokenRefresher:
    """Exchanges the stored refresh token for a new access token."""

    def __init__(
        self,
        *,
        token_url: str,
        client_id: str,
        client_secret: str,
        store: CredentialStore,
        provider_key: str = DEFAULT_PROVIDER_KEY,
        timeout_seconds: int = 30,
    ) -> None:
        stripped_url = token_url.strip()
        if not stripped_url:
            raise ValueError("token_url must not be empty")
        self._token_url = stripped_url
        self._client_id = client_id
        self._client_secret = client_secret
        self._store = store
        self._provider_key = provider_key
        self._timeout_seconds = timeout_seconds
        self._lock = Lock()

    def refresh(self) -> str:
        with self._lock:
            current = self._store.get_credential(self._provider_key)
            if current is None or not current.refresh_token:
                raise TokenRefreshError("missing_refresh_token", "no refresh token is stored for the provider")
            data = self._post_form(
                {
                    "grant_type": "refresh_token",
                    "client_id": self._client_id,
                    "client_secret": self._client_secret,
                    "refresh_token": current.refresh_token,
                }
            )
            access_token = str(data.get("access_token") or "").strip()
            if not access_token:
                raise TokenRefreshError("invalid_token_response", "token response did not include access_token")
            refresh_token = str(data.get("refresh_token") or current.refresh_token)
            expires_at = None
            expires_in = data.get("expires_in")
            if isinstance(expires_in, (int, float)) and expires_in > 0:
                expires_at = _now_utc() + timedelta(seconds=float(expires_in))
            self._store.save_tokens(
                self._provider_key,
                access_token=access_token,
                refresh_token=refresh_token,
                expires_at=expires_at,
            )
            logger.info("provider token refreshed for %s", self._provider_key)
            return access_token

    def _post_form(self, fields: dict[str, str]) -> dict[str, object]:
        request = urllib.request.Request(
            self._token_url,
            data=urllib.parse.urlencode(fields).encode("utf-8"),
            headers={
                "Content-Type": "application/x-www-form-urlencoded",
                "Accept": "application/json",
            },
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout_seconds) as response:
                parsed = json.loads(response.read().decode("utf-8"))
        except urllib.error.HTTPError as exc:
            raise TokenRefreshError(f"http_{exc.code}", f"Token refresh failed: HTTP {exc.code}: {exc.reason}") from exc
        except urllib.error.URLError as exc:
            raise TokenRefreshError("connection_error", f"Connection error: {exc.reason}") from exc
        except (socket.timeout, TimeoutError) as exc:
            raise TokenRefreshError("timeout", f"Request timed out: {exc}") from exc
        except json.JSONDecodeError as exc:
            raise TokenRefreshError("invalid_json", "token endpoint returned a non-JSON body") from exc
        if not isinstance(parsed, dict):
            raise TokenRefreshError("invalid_token_response", "token endpoint returned an unexpected body")
        return parsed
