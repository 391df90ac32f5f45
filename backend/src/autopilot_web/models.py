from __future__ import annotations

import re
from datetime import date, datetime
from typing import Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, field_validator, model_validator

MessageDirection = Literal["inbound", "outbound"]
MessageType = Literal["SMS", "Email", "WhatsApp", "FB", "IG", "Live_Chat", "Custom"]
VerdictKind = Literal["eligible", "skip", "cancel"]
OutcomeStatus = Literal["sent", "skipped", "failed", "dry_run"]
PipelineStage = Literal["fetch", "generate", "send", "internal"]

_CLOCK_RE = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")


def _normalize_keywords(value: list[str]) -> list[str]:
    normalized: list[str] = []
    seen: set[str] = set()
    for raw in value:
        keyword = str(raw).strip()
        if not keyword:
            continue
        folded = keyword.casefold()
        if folded in seen:
            continue
        seen.add(folded)
        normalized.append(keyword)
    return normalized


class OperatingHours(BaseModel):
    enabled: bool = False
    start: str = "09:00"
    end: str = "17:00"
    timezone: str = "UTC"
    days_of_week: list[int] = Field(default_factory=lambda: [1, 2, 3, 4, 5])

    @field_validator("start", "end")
    @classmethod
    def _validate_clock(cls, value: str) -> str:
        normalized = str(value).strip()
        if len(normalized) == 4 and normalized[1] == ":":
            normalized = f"0{normalized}"
        if not _CLOCK_RE.match(normalized):
            raise ValueError("operating hours must use HH:MM 24-hour format")
        return normalized

    @field_validator("timezone")
    @classmethod
    def _validate_timezone(cls, value: str) -> str:
        normalized = value.strip() or "UTC"
        try:
            ZoneInfo(normalized)
        except ZoneInfoNotFoundError as exc:
            raise ValueError(f"invalid timezone: {normalized}") from exc
        return normalized

    @field_validator("days_of_week")
    @classmethod
    def _validate_days(cls, value: list[int]) -> list[int]:
        days = sorted(set(value))
        for day in days:
            if day < 1 or day > 7:
                raise ValueError("days_of_week entries must be ISO weekdays 1 (Monday) to 7 (Sunday)")
        return days


class AutopilotPolicyUpsertRequest(BaseModel):
    conversation_id: str = Field(min_length=1, max_length=128)
    location_id: str = Field(min_length=1, max_length=128)
    user_id: str = Field(min_length=1, max_length=128)
    is_enabled: bool = False
    reply_delay_minutes: int = Field(default=5, ge=0, le=10080)
    max_replies_per_conversation: int = Field(default=3, ge=0)
    max_replies_per_day: int = Field(default=10, ge=0)
    operating_hours: OperatingHours | None = None
    cancel_on_user_reply: bool = True
    require_human_keywords: list[str] = Field(default_factory=list, max_length=100)
    exclude_keywords: list[str] = Field(default_factory=list, max_length=100)
    agent_id: str | None = Field(default=None, max_length=128)
    model: str = Field(default="gpt-4o-mini", min_length=1, max_length=128)
    temperature: float = Field(default=0.7, ge=0, le=2)
    max_tokens: int = Field(default=500, ge=1, le=8000)
    custom_prompt: str | None = Field(default=None, max_length=8000)
    message_type: MessageType = "SMS"
    prefer_conversation_type: bool = True

    @field_validator("conversation_id", "location_id", "user_id")
    @classmethod
    def _normalize_text(cls, value: str) -> str:
        normalized = str(value).strip()
        if not normalized:
            raise ValueError("identity fields cannot be blank")
        return normalized

    @field_validator("require_human_keywords", "exclude_keywords")
    @classmethod
    def _normalize_keyword_lists(cls, value: list[str]) -> list[str]:
        return _normalize_keywords(value)


class AutopilotPolicyItem(BaseModel):
    conversation_id: str
    location_id: str
    user_id: str
    is_enabled: bool
    reply_delay_minutes: int
    max_replies_per_conversation: int
    max_replies_per_day: int
    operating_hours: OperatingHours | None = None
    cancel_on_user_reply: bool
    require_human_keywords: list[str]
    exclude_keywords: list[str]
    agent_id: str | None = None
    model: str
    temperature: float
    max_tokens: int
    custom_prompt: str | None = None
    message_type: MessageType
    prefer_conversation_type: bool
    created_at: datetime
    updated_at: datetime


class AutopilotPolicyResponse(BaseModel):
    policy: AutopilotPolicyItem | None = None


class ConversationTrackingItem(BaseModel):
    conversation_id: str
    location_id: str | None = None
    user_id: str | None = None
    last_seen_message_id: str | None = None
    last_seen_message_at: datetime | None = None
    last_human_message_at: datetime | None = None
    last_ai_message_at: datetime | None = None
    last_ai_message_id: str | None = None
    replies_total: int
    replies_today: int
    last_reply_date: date | None = None
    conversation_status: str
    contact_name: str | None = None
    contact_email_masked: str | None = None
    contact_phone_masked: str | None = None
    paused_until: datetime | None = None
    updated_at: datetime


class ConversationTrackingListResponse(BaseModel):
    items: list[ConversationTrackingItem]
    count: int


class ConversationPauseRequest(BaseModel):
    paused_until: datetime | None = None


class CycleRunRequest(BaseModel):
    dry_run: bool = False


class ConversationOutcomeItem(BaseModel):
    conversation_id: str
    status: OutcomeStatus
    reason: str | None = None
    stage: PipelineStage | None = None
    message_id: str | None = None
    reply_message_id: str | None = None
    error_message: str | None = None


class CycleReportResponse(BaseModel):
    run_at: datetime
    finished_at: datetime
    dry_run: bool
    processed: int
    sent: int
    skipped: int
    failed: int
    eligible: int
    results: list[ConversationOutcomeItem]
    errors: list[str] = Field(default_factory=list)


class ConversationSummaryItem(BaseModel):
    conversation_id: str = Field(min_length=1, max_length=128)
    contact_name: str | None = Field(default=None, max_length=256)
    email: str | None = Field(default=None, max_length=256)
    phone: str | None = Field(default=None, max_length=64)
    tags: list[str] = Field(default_factory=list)
    conversation_type: str | None = Field(default=None, max_length=64)
    status: str | None = Field(default=None, max_length=32)

    @field_validator("tags")
    @classmethod
    def _normalize_tags(cls, value: list[str]) -> list[str]:
        return [tag.strip().lower() for tag in value if tag and tag.strip()]


class AutoEnableRequest(BaseModel):
    location_id: str = Field(min_length=1, max_length=128)
    user_id: str = Field(min_length=1, max_length=128)
    tag: str | None = Field(default=None, max_length=64)
    conversations: list[ConversationSummaryItem] = Field(min_length=1, max_length=500)

    @model_validator(mode="after")
    def _validate_unique_conversations(self) -> AutoEnableRequest:
        seen: set[str] = set()
        for item in self.conversations:
            if item.conversation_id in seen:
                raise ValueError("conversations entries must be unique by conversation_id")
            seen.add(item.conversation_id)
        return self


class AutoEnableResponse(BaseModel):
    tag: str
    enabled: list[str]
    already_enabled: list[str]
    ignored: list[str]
    failed: list[str]


class RuntimeStatusResponse(BaseModel):
    autopilot_enabled: bool
    store_backend: str
    provider_client_type: str
    generator_type: str
    max_workers: int
    runtime_secret_guard_mode: Literal["off", "warn", "enforce"]
    runtime_secret_issues: list[str]
    enabled_policy_count: int
