from __future__ import annotations

import json
import socket
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from typing import Protocol

from .provider import ProviderMessage

GENERATION_PATH = "/ai/conversation/response-suggestions/enhanced"


@dataclass(frozen=True)
class ConversationContext:
    conversation_id: str
    location_id: str
    user_id: str
    last_customer_message: str
    recent_messages: tuple[ProviderMessage, ...] = field(default_factory=tuple)
    contact_name: str | None = None


class GenerationError(Exception):
    def __init__(self, error_code: str, message: str) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message


class ReplyGenerator(Protocol):
    def generate(
        self,
        context: ConversationContext,
        *,
        agent_id: str | None,
        model: str,
        temperature: float,
        max_tokens: int,
        custom_prompt: str | None,
    ) -> str: ...


class StubReplyGenerator:
    def __init__(self, *, reply_text: str | None = None) -> None:
        self._reply_text = reply_text

    def generate(
        self,
        context: ConversationContext,
        *,
        agent_id: str | None,
        model: str,
        temperature: float,
        max_tokens: int,
        custom_prompt: str | None,
    ) -> str:
        if self._reply_text is not None:
            return self._reply_text
        greeting = f"Hi {context.contact_name}" if context.contact_name else "Hi there"
        return f"{greeting}, thanks for your message. We will follow up shortly."


class HttpReplyGenerator:
    """Calls the conversation response-suggestion service."""

    def __init__(self, *, base_url: str, api_key: str = "", timeout_seconds: int = 60) -> None:
        stripped_url = base_url.strip().rstrip("/")
        if not stripped_url:
            raise ValueError("base_url must not be empty")
        self._base_url = stripped_url
        self._api_key = api_key.strip()
        self._timeout_seconds = timeout_seconds

    def generate(
        self,
        context: ConversationContext,
        *,
        agent_id: str | None,
        model: str,
        temperature: float,
        max_tokens: int,
        custom_prompt: str | None,
    ) -> str:
        body: dict[str, object] = {
            "userId": context.user_id,
            "conversationId": context.conversation_id,
            "locationId": context.location_id,
            "autopilot": True,
            "lastCustomerMessage": context.last_customer_message,
            "recentMessages": [
                {
                    "id": message.message_id,
                    "direction": message.direction,
                    "body": message.body,
                    "dateAdded": message.created_at.isoformat(),
                }
                for message in context.recent_messages
            ],
            "knowledgebaseId": context.conversation_id,
            "aiAgentId": agent_id or "default",
            "model": model,
            "temperature": temperature,
            "maxTokens": max_tokens,
        }
        if custom_prompt:
            body["systemPrompt"] = custom_prompt

        data = self._post(body)
        reply = data.get("response_suggestion") or data.get("autopilot_response")
        if not isinstance(reply, str) or not reply.strip():
            raise GenerationError("empty_reply", "generation service returned no reply text")
        return reply.strip()

    def _post(self, body: dict[str, object]) -> dict[str, object]:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        request = urllib.request.Request(
            f"{self._base_url}{GENERATION_PATH}",
            data=json.dumps(body).encode("utf-8"),
            headers=headers,
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout_seconds) as response:
                parsed = json.loads(response.read().decode("utf-8"))
        except urllib.error.HTTPError as exc:
            raise GenerationError(f"http_{exc.code}", f"HTTP {exc.code}: {exc.reason}") from exc
        except urllib.error.URLError as exc:
            raise GenerationError("connection_error", f"Connection error: {exc.reason}") from exc
        except (socket.timeout, TimeoutError) as exc:
            raise GenerationError("timeout", f"Request timed out: {exc}") from exc
        except json.JSONDecodeError as exc:
            raise GenerationError("invalid_json", "generation service returned a non-JSON body") from exc
        if not isinstance(parsed, dict):
            raise GenerationError("invalid_response", "generation service returned an unexpected body")
        return parsed
