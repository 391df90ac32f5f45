from __future__ import annotations

import json
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from threading import Lock
from typing import Protocol

from sqlalchemy import Boolean, DateTime, Float, Integer, String, Text, create_engine, select
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .models import AutopilotPolicyUpsertRequest, MessageType, OperatingHours


@dataclass(frozen=True)
class OperatingHoursWindow:
    enabled: bool
    start: str
    end: str
    timezone: str
    days_of_week: tuple[int, ...]


@dataclass(frozen=True)
class AutopilotPolicyRecord:
    conversation_id: str
    location_id: str
    user_id: str
    is_enabled: bool
    reply_delay_minutes: int
    max_replies_per_conversation: int
    max_replies_per_day: int
    operating_hours: OperatingHoursWindow | None
    cancel_on_user_reply: bool
    require_human_keywords: tuple[str, ...]
    exclude_keywords: tuple[str, ...]
    agent_id: str | None
    model: str
    temperature: float
    max_tokens: int
    custom_prompt: str | None
    message_type: MessageType
    prefer_conversation_type: bool
    created_at: datetime
    updated_at: datetime


class PolicyRepository(Protocol):
    def reset(self) -> None: ...

    def upsert_policy(self, payload: AutopilotPolicyUpsertRequest) -> AutopilotPolicyRecord: ...

    def get_policy(self, conversation_id: str) -> AutopilotPolicyRecord | None: ...

    def list_enabled_policies(self) -> list[AutopilotPolicyRecord]: ...

    def set_enabled(self, conversation_id: str, *, is_enabled: bool) -> AutopilotPolicyRecord: ...


class PolicyNotFoundError(KeyError):
    pass


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _window_from_model(value: OperatingHours | None) -> OperatingHoursWindow | None:
    if value is None:
        return None
    return OperatingHoursWindow(
        enabled=value.enabled,
        start=value.start,
        end=value.end,
        timezone=value.timezone,
        days_of_week=tuple(value.days_of_week),
    )


def _window_to_json(value: OperatingHoursWindow | None) -> str | None:
    if value is None:
        return None
    return json.dumps(
        {
            "enabled": value.enabled,
            "start": value.start,
            "end": value.end,
            "timezone": value.timezone,
            "days_of_week": list(value.days_of_week),
        },
        sort_keys=True,
        separators=(",", ":"),
    )


def _window_from_json(raw: str | None) -> OperatingHoursWindow | None:
    if not raw:
        return None
    data = json.loads(raw)
    return OperatingHoursWindow(
        enabled=bool(data.get("enabled", False)),
        start=str(data.get("start", "09:00")),
        end=str(data.get("end", "17:00")),
        timezone=str(data.get("timezone", "UTC")),
        days_of_week=tuple(int(day) for day in data.get("days_of_week", [1, 2, 3, 4, 5])),
    )


def _validate_quotas(payload: AutopilotPolicyUpsertRequest) -> None:
    for field_name in ("reply_delay_minutes", "max_replies_per_conversation", "max_replies_per_day"):
        if getattr(payload, field_name) < 0:
            raise ValueError(f"{field_name} must be non-negative")


def _record_from_payload(
    payload: AutopilotPolicyUpsertRequest,
    *,
    created_at: datetime,
    updated_at: datetime,
) -> AutopilotPolicyRecord:
    return AutopilotPolicyRecord(
        conversation_id=payload.conversation_id,
        location_id=payload.location_id,
        user_id=payload.user_id,
        is_enabled=payload.is_enabled,
        reply_delay_minutes=payload.reply_delay_minutes,
        max_replies_per_conversation=payload.max_replies_per_conversation,
        max_replies_per_day=payload.max_replies_per_day,
        operating_hours=_window_from_model(payload.operating_hours),
        cancel_on_user_reply=payload.cancel_on_user_reply,
        require_human_keywords=tuple(payload.require_human_keywords),
        exclude_keywords=tuple(payload.exclude_keywords),
        agent_id=payload.agent_id,
        model=payload.model,
        temperature=payload.temperature,
        max_tokens=payload.max_tokens,
        custom_prompt=payload.custom_prompt,
        message_type=payload.message_type,
        prefer_conversation_type=payload.prefer_conversation_type,
        created_at=created_at,
        updated_at=updated_at,
    )


class InMemoryPolicyRepository:
    def __init__(self) -> None:
        self._lock = Lock()
        self._policies: dict[str, AutopilotPolicyRecord] = {}

    def reset(self) -> None:
        with self._lock:
            self._policies.clear()

    def upsert_policy(self, payload: AutopilotPolicyUpsertRequest) -> AutopilotPolicyRecord:
        _validate_quotas(payload)
        now = _now_utc()
        with self._lock:
            existing = self._policies.get(payload.conversation_id)
            created_at = existing.created_at if existing is not None else now
            record = _record_from_payload(payload, created_at=created_at, updated_at=now)
            self._policies[payload.conversation_id] = record
            return record

    def get_policy(self, conversation_id: str) -> AutopilotPolicyRecord | None:
        with self._lock:
            return self._policies.get(conversation_id)

    def list_enabled_policies(self) -> list[AutopilotPolicyRecord]:
        with self._lock:
            enabled = [value for value in self._policies.values() if value.is_enabled]
        return sorted(enabled, key=lambda value: value.conversation_id)

    def set_enabled(self, conversation_id: str, *, is_enabled: bool) -> AutopilotPolicyRecord:
        with self._lock:
            current = self._policies.get(conversation_id)
            if current is None:
                raise PolicyNotFoundError(conversation_id)
            updated = replace(current, is_enabled=is_enabled, updated_at=_now_utc())
            self._policies[conversation_id] = updated
            return updated


class PolicyStoreBase(DeclarativeBase):
    pass


class _AutopilotPolicyRow(PolicyStoreBase):
    __tablename__ = "autopilot_policies"

    conversation_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    location_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    is_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    reply_delay_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    max_replies_per_conversation: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    max_replies_per_day: Mapped[int] = mapped_column(Integer, nullable=False, default=10)
    operating_hours_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancel_on_user_reply: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    require_human_keywords_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    exclude_keywords_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    agent_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    model: Mapped[str] = mapped_column(String(128), nullable=False)
    temperature: Mapped[float] = mapped_column(Float, nullable=False)
    max_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=500)
    custom_prompt: Mapped[str | None] = mapped_column(Text, nullable=True)
    message_type: Mapped[str] = mapped_column(String(16), nullable=False, default="SMS")
    prefer_conversation_type: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class SqlAlchemyPolicyRepository:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for AUTOPILOT_STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            PolicyStoreBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.query(_AutopilotPolicyRow).delete()

    def upsert_policy(self, payload: AutopilotPolicyUpsertRequest) -> AutopilotPolicyRecord:
        _validate_quotas(payload)
        now = _now_utc()
        with self._session() as session:
            with session.begin():
                row = session.get(_AutopilotPolicyRow, payload.conversation_id, with_for_update=True)
                if row is None:
                    row = _AutopilotPolicyRow(conversation_id=payload.conversation_id, created_at=now)
                    session.add(row)
                row.location_id = payload.location_id
                row.user_id = payload.user_id
                row.is_enabled = payload.is_enabled
                row.reply_delay_minutes = payload.reply_delay_minutes
                row.max_replies_per_conversation = payload.max_replies_per_conversation
                row.max_replies_per_day = payload.max_replies_per_day
                row.operating_hours_json = _window_to_json(_window_from_model(payload.operating_hours))
                row.cancel_on_user_reply = payload.cancel_on_user_reply
                row.require_human_keywords_json = json.dumps(payload.require_human_keywords)
                row.exclude_keywords_json = json.dumps(payload.exclude_keywords)
                row.agent_id = payload.agent_id
                row.model = payload.model
                row.temperature = payload.temperature
                row.max_tokens = payload.max_tokens
                row.custom_prompt = payload.custom_prompt
                row.message_type = payload.message_type
                row.prefer_conversation_type = payload.prefer_conversation_type
                row.updated_at = now
                session.flush()
                return self._policy_record(row)

    def get_policy(self, conversation_id: str) -> AutopilotPolicyRecord | None:
        with self._session() as session:
            row = session.get(_AutopilotPolicyRow, conversation_id)
            return self._policy_record(row) if row is not None else None

    def list_enabled_policies(self) -> list[AutopilotPolicyRecord]:
        with self._session() as session:
            rows = session.scalars(
                select(_AutopilotPolicyRow)
                .where(_AutopilotPolicyRow.is_enabled.is_(True))
                .order_by(_AutopilotPolicyRow.conversation_id.asc())
            ).all()
            return [self._policy_record(row) for row in rows]

    def set_enabled(self, conversation_id: str, *, is_enabled: bool) -> AutopilotPolicyRecord:
        with self._session() as session:
            with session.begin():
                row = session.get(_AutopilotPolicyRow, conversation_id)
                if row is None:
                    raise PolicyNotFoundError(conversation_id)
                row.is_enabled = is_enabled
                row.updated_at = _now_utc()
                session.flush()
                return self._policy_record(row)

    @staticmethod
    def _policy_record(row: _AutopilotPolicyRow) -> AutopilotPolicyRecord:
        return AutopilotPolicyRecord(
            conversation_id=row.conversation_id,
            location_id=row.location_id,
            user_id=row.user_id,
            is_enabled=row.is_enabled,
            reply_delay_minutes=row.reply_delay_minutes,
            max_replies_per_conversation=row.max_replies_per_conversation,
            max_replies_per_day=row.max_replies_per_day,
            operating_hours=_window_from_json(row.operating_hours_json),
            cancel_on_user_reply=row.cancel_on_user_reply,
            require_human_keywords=tuple(json.loads(row.require_human_keywords_json or "[]")),
            exclude_keywords=tuple(json.loads(row.exclude_keywords_json or "[]")),
            agent_id=row.agent_id,
            model=row.model,
            temperature=row.temperature,
            max_tokens=row.max_tokens,
            custom_prompt=row.custom_prompt,
            message_type=row.message_type,  # type: ignore[arg-type]
            prefer_conversation_type=row.prefer_conversation_type,
            created_at=_coerce_utc(row.created_at),
            updated_at=_coerce_utc(row.updated_at),
        )


def create_policy_repository(*, backend: str, database_url: str) -> PolicyRepository:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyPolicyRepository(database_url)
    if normalized == "inmemory":
        return InMemoryPolicyRepository()
    raise RuntimeError(f"unsupported AUTOPILOT_STORE_BACKEND: {backend}")
