from __future__ import annotations

import json
import logging
import socket
import time
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from datetime import datetime, timezone
from threading import Lock
from typing import Callable, Protocol

from .models import MessageDirection, MessageType

logger = logging.getLogger(__name__)

DEFAULT_PROVIDER_KEY = "leadconnector"

# Transient failures that happen before the provider could have accepted a send.
UNDELIVERED_ERROR_CODES = frozenset({"http_429", "connection_refused"})

_MESSAGE_TYPE_ALIASES: dict[str, MessageType] = {
    "sms": "SMS",
    "type_sms": "SMS",
    "phone": "SMS",
    "type_phone": "SMS",
    "email": "Email",
    "type_email": "Email",
    "whatsapp": "WhatsApp",
    "type_whatsapp": "WhatsApp",
    "fb": "FB",
    "facebook": "FB",
    "type_fb": "FB",
    "type_facebook": "FB",
    "ig": "IG",
    "instagram": "IG",
    "type_instagram": "IG",
    "live_chat": "Live_Chat",
    "livechat": "Live_Chat",
    "type_live_chat": "Live_Chat",
    "custom": "Custom",
    "type_custom": "Custom",
}


@dataclass(frozen=True)
class ProviderMessage:
    message_id: str
    conversation_id: str
    direction: MessageDirection
    body: str
    created_at: datetime
    message_type: MessageType | None = None


class ProviderError(Exception):
    """Raised when the messaging provider rejects or cannot serve a request."""

    def __init__(self, error_code: str, message: str) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message


class ProviderAuthError(ProviderError):
    pass


class ProviderTransientError(ProviderError):
    pass


class MessagingProvider(Protocol):
    def fetch_new_messages(self, conversation_id: str, after_message_id: str | None) -> list[ProviderMessage]: ...

    def send_message(self, conversation_id: str, body: str, message_type: MessageType) -> str: ...


class AccessTokenSource(Protocol):
    def get_access_token(self, provider_key: str) -> str | None: ...


class TokenRefresher(Protocol):
    def refresh(self) -> str: ...


def normalize_message_type(value: object) -> MessageType | None:
    if value is None:
        return None
    normalized = str(value).strip().lower()
    if normalized.startswith("conversation_"):
        normalized = normalized[len("conversation_") :]
    if not normalized:
        return None
    return _MESSAGE_TYPE_ALIASES.get(normalized)


def _parse_timestamp(value: object) -> datetime:
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(float(value) / 1000, tz=timezone.utc)
    raw = str(value or "").strip()
    if not raw:
        raise ValueError("message is missing dateAdded")
    if raw.endswith("Z"):
        raw = f"{raw[:-1]}+00:00"
    parsed = datetime.fromisoformat(raw)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


class HttpLeadConnectorClient:
    """Conversation provider client for the LeadConnector REST API."""

    def __init__(
        self,
        *,
        base_url: str,
        token_source: AccessTokenSource,
        api_version: str = "2021-07-28",
        provider_key: str = DEFAULT_PROVIDER_KEY,
        fetch_limit: int = 100,
        timeout_seconds: int = 30,
    ) -> None:
        stripped_url = base_url.strip().rstrip("/")
        if not stripped_url:
            raise ValueError("base_url must not be empty")
        self._base_url = stripped_url
        self._token_source = token_source
        self._api_version = api_version
        self._provider_key = provider_key
        self._fetch_limit = fetch_limit
        self._timeout_seconds = timeout_seconds

    def fetch_new_messages(self, conversation_id: str, after_message_id: str | None) -> list[ProviderMessage]:
        query: dict[str, str] = {"limit": str(self._fetch_limit)}
        if after_message_id:
            query["lastMessageId"] = after_message_id
        path = f"/conversations/{urllib.parse.quote(conversation_id, safe='')}/messages"
        data = self._request("GET", f"{path}?{urllib.parse.urlencode(query)}")
        container = data.get("messages") or {}
        raw_messages = container.get("messages", []) if isinstance(container, dict) else container
        messages: list[ProviderMessage] = []
        for raw in raw_messages or []:
            message_id = str(raw.get("id") or "").strip()
            if not message_id or message_id == after_message_id:
                continue
            try:
                created_at = _parse_timestamp(raw.get("dateAdded"))
            except ValueError:
                logger.warning("skipping provider message without a valid timestamp: %s", message_id)
                continue
            direction = str(raw.get("direction") or "").strip().lower()
            messages.append(
                ProviderMessage(
                    message_id=message_id,
                    conversation_id=conversation_id,
                    direction="inbound" if direction == "inbound" else "outbound",
                    body=str(raw.get("body") or ""),
                    created_at=created_at,
                    message_type=normalize_message_type(raw.get("messageType") or raw.get("type")),
                )
            )
        messages.sort(key=lambda value: value.created_at)
        return messages

    def send_message(self, conversation_id: str, body: str, message_type: MessageType) -> str:
        conversation = self._request("GET", f"/conversations/{urllib.parse.quote(conversation_id, safe='')}")
        details = conversation.get("conversation") if isinstance(conversation.get("conversation"), dict) else conversation
        contact_id = str(details.get("contactId") or "").strip()
        if not contact_id:
            raise ProviderError("missing_contact", f"conversation {conversation_id} has no contactId")
        response = self._request(
            "POST",
            "/conversations/messages",
            {"type": message_type, "message": body, "contactId": contact_id},
        )
        message_id = str(response.get("messageId") or response.get("id") or "").strip()
        if not message_id:
            raise ProviderError("missing_message_id", "provider response did not include a message id")
        return message_id

    def _request(self, method: str, path: str, body: dict[str, object] | None = None) -> dict[str, object]:
        access_token = self._token_source.get_access_token(self._provider_key)
        if not access_token:
            raise ProviderAuthError("missing_token", "no access token is stored for the provider")
        headers = {
            "Authorization": f"Bearer {access_token}",
            "Version": self._api_version,
            "Accept": "application/json",
        }
        data = None
        if body is not None:
            data = json.dumps(body).encode("utf-8")
            headers["Content-Type"] = "application/json"
        request = urllib.request.Request(f"{self._base_url}{path}", data=data, headers=headers, method=method)
        try:
            with urllib.request.urlopen(request, timeout=self._timeout_seconds) as response:
                payload = response.read().decode("utf-8")
        except urllib.error.HTTPError as exc:
            message = f"HTTP {exc.code}: {exc.reason}"
            if exc.code == 401:
                raise ProviderAuthError(f"http_{exc.code}", message) from exc
            if exc.code == 429 or exc.code >= 500:
                raise ProviderTransientError(f"http_{exc.code}", message) from exc
            raise ProviderError(f"http_{exc.code}", message) from exc
        except urllib.error.URLError as exc:
            if isinstance(exc.reason, (ConnectionRefusedError, socket.gaierror)):
                raise ProviderTransientError("connection_refused", f"Connection refused: {exc.reason}") from exc
            raise ProviderTransientError("connection_error", f"Connection error: {exc.reason}") from exc
        except (socket.timeout, TimeoutError) as exc:
            raise ProviderTransientError("timeout", f"Request timed out: {exc}") from exc
        if not payload.strip():
            return {}
        try:
            parsed = json.loads(payload)
        except json.JSONDecodeError as exc:
            raise ProviderError("invalid_json", "provider returned a non-JSON body") from exc
        return parsed if isinstance(parsed, dict) else {"messages": parsed}


class AutoRefreshingProvider:
    """Retries provider calls after refreshing credentials or backing off."""

    def __init__(
        self,
        client: MessagingProvider,
        *,
        refresher: TokenRefresher,
        max_retries: int = 2,
        backoff_seconds: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._client = client
        self._refresher = refresher
        self._max_retries = max(0, max_retries)
        self._backoff_seconds = max(0.0, backoff_seconds)
        self._sleep = sleep

    def fetch_new_messages(self, conversation_id: str, after_message_id: str | None) -> list[ProviderMessage]:
        return self._call(lambda: self._client.fetch_new_messages(conversation_id, after_message_id))

    def send_message(self, conversation_id: str, body: str, message_type: MessageType) -> str:
        # A timeout or 5xx may arrive after the provider accepted the message.
        return self._call(
            lambda: self._client.send_message(conversation_id, body, message_type),
            retry_transient=lambda exc: exc.error_code in UNDELIVERED_ERROR_CODES,
        )

    def _call(self, operation, *, retry_transient: Callable[[ProviderTransientError], bool] = lambda exc: True):
        attempt = 0
        while True:
            try:
                return operation()
            except ProviderAuthError as exc:
                if attempt >= self._max_retries:
                    raise
                attempt += 1
                logger.info("provider auth failed (%s); refreshing token, attempt %s", exc.error_code, attempt)
                self._refresher.refresh()
            except ProviderTransientError as exc:
                if attempt >= self._max_retries or not retry_transient(exc):
                    raise
                attempt += 1
                logger.warning("provider transient error (%s); retry %s", exc.error_code, attempt)
                self._sleep(self._backoff_seconds * attempt)


def with_auto_refresh(
    client: MessagingProvider,
    *,
    refresher: TokenRefresher,
    max_retries: int = 2,
    backoff_seconds: float = 0.5,
    sleep: Callable[[float], None] = time.sleep,
) -> AutoRefreshingProvider:
    return AutoRefreshingProvider(
        client,
        refresher=refresher,
        max_retries=max_retries,
        backoff_seconds=backoff_seconds,
        sleep=sleep,
    )


class StubMessagingProvider:
    def __init__(self) -> None:
        self._lock = Lock()
        self._messages: dict[str, list[ProviderMessage]] = {}
        self._counter = 1
        self.sent: list[tuple[str, str, MessageType]] = []

    def reset(self) -> None:
        with self._lock:
            self._messages.clear()
            self._counter = 1
            self.sent.clear()

    def add_message(
        self,
        conversation_id: str,
        *,
        message_id: str,
        body: str,
        created_at: datetime,
        direction: MessageDirection = "inbound",
        message_type: MessageType | None = None,
    ) -> ProviderMessage:
        message = ProviderMessage(
            message_id=message_id,
            conversation_id=conversation_id,
            direction=direction,
            body=body,
            created_at=created_at,
            message_type=message_type,
        )
        with self._lock:
            bucket = self._messages.setdefault(conversation_id, [])
            bucket.append(message)
            bucket.sort(key=lambda value: value.created_at)
        return message

    def fetch_new_messages(self, conversation_id: str, after_message_id: str | None) -> list[ProviderMessage]:
        with self._lock:
            bucket = list(self._messages.get(conversation_id, []))
        if after_message_id is None:
            return bucket
        for index, message in enumerate(bucket):
            if message.message_id == after_message_id:
                return bucket[index + 1 :]
        return bucket

    def send_message(self, conversation_id: str, body: str, message_type: MessageType) -> str:
        if "fail" in conversation_id.lower():
            raise ProviderError("stub_delivery_failed", "Stub provider forced failure for conversation")
        with self._lock:
            message_id = f"stub-reply-{self._counter}"
            self._counter += 1
            self.sent.append((conversation_id, body, message_type))
        return message_id


def mask_contact_target(contact_target: str | None, *, kind: str) -> str | None:
    if contact_target is None:
        return None
    normalized = contact_target.strip()
    if not normalized:
        return "***"

    if kind == "email" and "@" in normalized:
        local, domain = normalized.split("@", 1)
        if len(local) <= 1:
            return f"*@{domain}"
        return f"{local[0]}***@{domain}"

    if kind == "phone":
        digits = "".join(ch for ch in normalized if ch.isdigit())
        if len(digits) >= 4:
            return f"***{digits[-4:]}"

    if len(normalized) <= 4:
        return "*" * len(normalized)

    return f"{normalized[:2]}***{normalized[-2:]}"
