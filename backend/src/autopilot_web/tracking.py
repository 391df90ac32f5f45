from __future__ import annotations

from collections.abc import Iterator
from contextlib import AbstractContextManager, contextmanager
from dataclasses import dataclass, replace
from datetime import date, datetime, timezone
from threading import Lock
from typing import Protocol

from sqlalchemy import Date, DateTime, Integer, String, create_engine, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker


@dataclass(frozen=True)
class ConversationTrackingRecord:
    conversation_id: str
    location_id: str | None
    user_id: str | None
    last_seen_message_id: str | None
    last_seen_message_at: datetime | None
    last_human_message_at: datetime | None
    last_ai_message_at: datetime | None
    last_ai_message_id: str | None
    replies_total: int
    replies_today: int
    last_reply_date: date | None
    conversation_status: str
    contact_name: str | None
    contact_email: str | None
    contact_phone: str | None
    paused_until: datetime | None
    created_at: datetime
    updated_at: datetime


class ReplySlot(Protocol):
    """Exclusive hold on one conversation while a reply is checked, sent and counted."""

    @property
    def tracking(self) -> ConversationTrackingRecord: ...

    def record_sent(self, *, reply_message_id: str, sent_at: datetime, today: date) -> ConversationTrackingRecord: ...


class TrackingRepository(Protocol):
    def reset(self) -> None: ...

    def get_tracking(self, conversation_id: str) -> ConversationTrackingRecord | None: ...

    def get_or_create_tracking(
        self,
        conversation_id: str,
        *,
        location_id: str | None = None,
        user_id: str | None = None,
    ) -> ConversationTrackingRecord: ...

    def advance_watermark(
        self,
        conversation_id: str,
        *,
        message_id: str,
        message_at: datetime,
        last_human_message_at: datetime | None = None,
    ) -> ConversationTrackingRecord: ...

    def record_sent(
        self,
        conversation_id: str,
        *,
        reply_message_id: str,
        sent_at: datetime,
        today: date,
    ) -> ConversationTrackingRecord: ...

    def reply_slot(self, conversation_id: str) -> AbstractContextManager[ReplySlot]: ...

    def upsert_contact(
        self,
        conversation_id: str,
        *,
        location_id: str | None,
        user_id: str | None,
        contact_name: str | None,
        contact_email: str | None,
        contact_phone: str | None,
        conversation_status: str | None = None,
    ) -> ConversationTrackingRecord: ...

    def set_paused_until(self, conversation_id: str, paused_until: datetime | None) -> ConversationTrackingRecord: ...

    def list_tracking(self, *, limit: int = 100) -> list[ConversationTrackingRecord]: ...


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _optional_utc(value: datetime | None) -> datetime | None:
    return _coerce_utc(value) if value is not None else None


def _later(current: datetime | None, candidate: datetime | None) -> datetime | None:
    if candidate is None:
        return current
    if current is None:
        return candidate
    return candidate if _coerce_utc(candidate) > _coerce_utc(current) else current


def _watermark_moves(current_at: datetime | None, current_id: str | None, message_id: str, message_at: datetime) -> bool:
    if current_id == message_id:
        return False
    if current_at is None:
        return True
    return _coerce_utc(message_at) >= _coerce_utc(current_at)


def rolled_over(last_reply_date: date | None, today: date) -> bool:
    return last_reply_date != today


def new_tracking_record(
    conversation_id: str,
    *,
    location_id: str | None = None,
    user_id: str | None = None,
) -> ConversationTrackingRecord:
    now = _now_utc()
    return ConversationTrackingRecord(
        conversation_id=conversation_id,
        location_id=location_id,
        user_id=user_id,
        last_seen_message_id=None,
        last_seen_message_at=None,
        last_human_message_at=None,
        last_ai_message_at=None,
        last_ai_message_id=None,
        replies_total=0,
        replies_today=0,
        last_reply_date=None,
        conversation_status="active",
        contact_name=None,
        contact_email=None,
        contact_phone=None,
        paused_until=None,
        created_at=now,
        updated_at=now,
    )


class _InMemoryReplySlot:
    def __init__(self, repository: InMemoryTrackingRepository, conversation_id: str) -> None:
        self._repository = repository
        self._conversation_id = conversation_id

    @property
    def tracking(self) -> ConversationTrackingRecord:
        return self._repository.get_or_create_tracking(self._conversation_id)

    def record_sent(self, *, reply_message_id: str, sent_at: datetime, today: date) -> ConversationTrackingRecord:
        return self._repository.record_sent(
            self._conversation_id,
            reply_message_id=reply_message_id,
            sent_at=sent_at,
            today=today,
        )


class InMemoryTrackingRepository:
    def __init__(self) -> None:
        self._lock = Lock()
        self._rows: dict[str, ConversationTrackingRecord] = {}
        self._slot_locks: dict[str, Lock] = {}

    @contextmanager
    def reply_slot(self, conversation_id: str) -> Iterator[ReplySlot]:
        with self._lock:
            slot_lock = self._slot_locks.setdefault(conversation_id, Lock())
        with slot_lock:
            yield _InMemoryReplySlot(self, conversation_id)

    def reset(self) -> None:
        with self._lock:
            self._rows.clear()

    def get_tracking(self, conversation_id: str) -> ConversationTrackingRecord | None:
        with self._lock:
            return self._rows.get(conversation_id)

    def get_or_create_tracking(
        self,
        conversation_id: str,
        *,
        location_id: str | None = None,
        user_id: str | None = None,
    ) -> ConversationTrackingRecord:
        with self._lock:
            return self._get_or_create_locked(conversation_id, location_id=location_id, user_id=user_id)

    def _get_or_create_locked(
        self,
        conversation_id: str,
        *,
        location_id: str | None = None,
        user_id: str | None = None,
    ) -> ConversationTrackingRecord:
        current = self._rows.get(conversation_id)
        if current is not None:
            return current
        created = new_tracking_record(conversation_id, location_id=location_id, user_id=user_id)
        self._rows[conversation_id] = created
        return created

    def advance_watermark(
        self,
        conversation_id: str,
        *,
        message_id: str,
        message_at: datetime,
        last_human_message_at: datetime | None = None,
    ) -> ConversationTrackingRecord:
        with self._lock:
            current = self._get_or_create_locked(conversation_id)
            updated = current
            if _watermark_moves(current.last_seen_message_at, current.last_seen_message_id, message_id, message_at):
                updated = replace(updated, last_seen_message_id=message_id, last_seen_message_at=message_at)
            human_at = _later(current.last_human_message_at, last_human_message_at)
            if human_at != current.last_human_message_at:
                updated = replace(updated, last_human_message_at=human_at)
            if updated is not current:
                updated = replace(updated, updated_at=_now_utc())
                self._rows[conversation_id] = updated
            return updated

    def record_sent(
        self,
        conversation_id: str,
        *,
        reply_message_id: str,
        sent_at: datetime,
        today: date,
    ) -> ConversationTrackingRecord:
        with self._lock:
            current = self._get_or_create_locked(conversation_id)
            replies_today = 0 if rolled_over(current.last_reply_date, today) else current.replies_today
            updated = replace(
                current,
                replies_today=replies_today + 1,
                replies_total=current.replies_total + 1,
                last_ai_message_at=sent_at,
                last_ai_message_id=reply_message_id,
                last_reply_date=today,
                updated_at=_now_utc(),
            )
            self._rows[conversation_id] = updated
            return updated

    def upsert_contact(
        self,
        conversation_id: str,
        *,
        location_id: str | None,
        user_id: str | None,
        contact_name: str | None,
        contact_email: str | None,
        contact_phone: str | None,
        conversation_status: str | None = None,
    ) -> ConversationTrackingRecord:
        with self._lock:
            current = self._get_or_create_locked(conversation_id, location_id=location_id, user_id=user_id)
            updated = replace(
                current,
                location_id=location_id or current.location_id,
                user_id=user_id or current.user_id,
                contact_name=contact_name or current.contact_name,
                contact_email=contact_email or current.contact_email,
                contact_phone=contact_phone or current.contact_phone,
                conversation_status=conversation_status or current.conversation_status,
                updated_at=_now_utc(),
            )
            self._rows[conversation_id] = updated
            return updated

    def set_paused_until(self, conversation_id: str, paused_until: datetime | None) -> ConversationTrackingRecord:
        with self._lock:
            current = self._get_or_create_locked(conversation_id)
            updated = replace(current, paused_until=paused_until, updated_at=_now_utc())
            self._rows[conversation_id] = updated
            return updated

    def list_tracking(self, *, limit: int = 100) -> list[ConversationTrackingRecord]:
        with self._lock:
            rows = list(self._rows.values())
        rows.sort(key=lambda value: (value.updated_at, value.conversation_id), reverse=True)
        return rows[:limit]


class TrackingStoreBase(DeclarativeBase):
    pass


class _ConversationTrackingRow(TrackingStoreBase):
    __tablename__ = "autopilot_conversation_tracking"

    conversation_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    location_id: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    user_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    last_seen_message_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    last_seen_message_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_human_message_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_ai_message_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_ai_message_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    replies_total: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    replies_today: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_reply_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    conversation_status: Mapped[str] = mapped_column(String(32), nullable=False, default="active")
    contact_name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    contact_email: Mapped[str | None] = mapped_column(String(256), nullable=True)
    contact_phone: Mapped[str | None] = mapped_column(String(64), nullable=True)
    paused_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)


class SqlAlchemyTrackingRepository:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for AUTOPILOT_STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            TrackingStoreBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.query(_ConversationTrackingRow).delete()

    def get_tracking(self, conversation_id: str) -> ConversationTrackingRecord | None:
        with self._session() as session:
            row = session.get(_ConversationTrackingRow, conversation_id)
            return self._tracking_record(row) if row is not None else None

    def get_or_create_tracking(
        self,
        conversation_id: str,
        *,
        location_id: str | None = None,
        user_id: str | None = None,
    ) -> ConversationTrackingRecord:
        existing = self.get_tracking(conversation_id)
        if existing is not None:
            return existing
        try:
            with self._session() as session:
                with session.begin():
                    row = self._new_row(conversation_id, location_id=location_id, user_id=user_id)
                    session.add(row)
                    session.flush()
                    return self._tracking_record(row)
        except IntegrityError:
            # Another worker created the row first.
            created = self.get_tracking(conversation_id)
            if created is None:
                raise
            return created

    def advance_watermark(
        self,
        conversation_id: str,
        *,
        message_id: str,
        message_at: datetime,
        last_human_message_at: datetime | None = None,
    ) -> ConversationTrackingRecord:
        self.get_or_create_tracking(conversation_id)
        with self._session() as session:
            with session.begin():
                row = self._locked_row(session, conversation_id)
                changed = False
                if _watermark_moves(row.last_seen_message_at, row.last_seen_message_id, message_id, message_at):
                    row.last_seen_message_id = message_id
                    row.last_seen_message_at = message_at
                    changed = True
                human_at = _later(row.last_human_message_at, last_human_message_at)
                if human_at is not row.last_human_message_at:
                    row.last_human_message_at = human_at
                    changed = True
                if changed:
                    row.updated_at = _now_utc()
                session.flush()
                return self._tracking_record(row)

    def record_sent(
        self,
        conversation_id: str,
        *,
        reply_message_id: str,
        sent_at: datetime,
        today: date,
    ) -> ConversationTrackingRecord:
        self.get_or_create_tracking(conversation_id)
        with self._session() as session:
            with session.begin():
                row = self._locked_row(session, conversation_id)
                _apply_sent(row, reply_message_id=reply_message_id, sent_at=sent_at, today=today)
                session.flush()
                return self._tracking_record(row)

    @contextmanager
    def reply_slot(self, conversation_id: str) -> Iterator[ReplySlot]:
        """Hold the tracking row lock until the block exits.

        The transaction commits on a clean exit and rolls back on error.
        """
        self.get_or_create_tracking(conversation_id)
        with self._session() as session:
            with session.begin():
                row = self._locked_row(session, conversation_id)
                yield _SqlReplySlot(session, row)

    def upsert_contact(
        self,
        conversation_id: str,
        *,
        location_id: str | None,
        user_id: str | None,
        contact_name: str | None,
        contact_email: str | None,
        contact_phone: str | None,
        conversation_status: str | None = None,
    ) -> ConversationTrackingRecord:
        self.get_or_create_tracking(conversation_id, location_id=location_id, user_id=user_id)
        with self._session() as session:
            with session.begin():
                row = self._locked_row(session, conversation_id)
                row.location_id = location_id or row.location_id
                row.user_id = user_id or row.user_id
                row.contact_name = contact_name or row.contact_name
                row.contact_email = contact_email or row.contact_email
                row.contact_phone = contact_phone or row.contact_phone
                row.conversation_status = conversation_status or row.conversation_status
                row.updated_at = _now_utc()
                session.flush()
                return self._tracking_record(row)

    def set_paused_until(self, conversation_id: str, paused_until: datetime | None) -> ConversationTrackingRecord:
        self.get_or_create_tracking(conversation_id)
        with self._session() as session:
            with session.begin():
                row = self._locked_row(session, conversation_id)
                row.paused_until = paused_until
                row.updated_at = _now_utc()
                session.flush()
                return self._tracking_record(row)

    def list_tracking(self, *, limit: int = 100) -> list[ConversationTrackingRecord]:
        with self._session() as session:
            rows = session.scalars(
                select(_ConversationTrackingRow)
                .order_by(
                    _ConversationTrackingRow.updated_at.desc(),
                    _ConversationTrackingRow.conversation_id.desc(),
                )
                .limit(limit)
            ).all()
            return [self._tracking_record(row) for row in rows]

    @staticmethod
    def _locked_row(session, conversation_id: str) -> _ConversationTrackingRow:
        row = session.scalars(
            select(_ConversationTrackingRow)
            .where(_ConversationTrackingRow.conversation_id == conversation_id)
            .with_for_update()
        ).one_or_none()
        if row is None:
            raise KeyError(conversation_id)
        return row

    @staticmethod
    def _new_row(
        conversation_id: str,
        *,
        location_id: str | None,
        user_id: str | None,
    ) -> _ConversationTrackingRow:
        now = _now_utc()
        return _ConversationTrackingRow(
            conversation_id=conversation_id,
            location_id=location_id,
            user_id=user_id,
            replies_total=0,
            replies_today=0,
            conversation_status="active",
            created_at=now,
            updated_at=now,
        )

    @staticmethod
    def _tracking_record(row: _ConversationTrackingRow) -> ConversationTrackingRecord:
        return ConversationTrackingRecord(
            conversation_id=row.conversation_id,
            location_id=row.location_id,
            user_id=row.user_id,
            last_seen_message_id=row.last_seen_message_id,
            last_seen_message_at=_optional_utc(row.last_seen_message_at),
            last_human_message_at=_optional_utc(row.last_human_message_at),
            last_ai_message_at=_optional_utc(row.last_ai_message_at),
            last_ai_message_id=row.last_ai_message_id,
            replies_total=row.replies_total,
            replies_today=row.replies_today,
            last_reply_date=row.last_reply_date,
            conversation_status=row.conversation_status,
            contact_name=row.contact_name,
            contact_email=row.contact_email,
            contact_phone=row.contact_phone,
            paused_until=_optional_utc(row.paused_until),
            created_at=_coerce_utc(row.created_at),
            updated_at=_coerce_utc(row.updated_at),
        )


def _apply_sent(row: _ConversationTrackingRow, *, reply_message_id: str, sent_at: datetime, today: date) -> None:
    if rolled_over(row.last_reply_date, today):
        row.replies_today = 0
    row.replies_today += 1
    row.replies_total += 1
    row.last_ai_message_at = sent_at
    row.last_ai_message_id = reply_message_id
    row.last_reply_date = today
    row.updated_at = _now_utc()


class _SqlReplySlot:
    def __init__(self, session, row: _ConversationTrackingRow) -> None:
        self._session = session
        self._row = row

    @property
    def tracking(self) -> ConversationTrackingRecord:
        return SqlAlchemyTrackingRepository._tracking_record(self._row)

    def record_sent(self, *, reply_message_id: str, sent_at: datetime, today: date) -> ConversationTrackingRecord:
        _apply_sent(self._row, reply_message_id=reply_message_id, sent_at=sent_at, today=today)
        self._session.flush()
        return SqlAlchemyTrackingRepository._tracking_record(self._row)


def create_tracking_repository(*, backend: str, database_url: str) -> TrackingRepository:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyTrackingRepository(database_url)
    if normalized == "inmemory":
        return InMemoryTrackingRepository()
    raise RuntimeError(f"unsupported AUTOPILOT_STORE_BACKEND: {backend}")
