from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from threading import Lock
from typing import Protocol, Union

from sqlalchemy import DateTime, String, create_engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker


@dataclass(frozen=True)
class ProcessedMessageRecord:
    message_id: str
    conversation_id: str
    processed_at: datetime


@dataclass(frozen=True)
class Inserted:
    entry: ProcessedMessageRecord


@dataclass(frozen=True)
class AlreadyExists:
    message_id: str


LedgerClaim = Union[Inserted, AlreadyExists]


class ProcessedMessageLedger(Protocol):
    def reset(self) -> None: ...

    def claim(self, message_id: str, conversation_id: str) -> LedgerClaim: ...

    def get_entry(self, message_id: str) -> ProcessedMessageRecord | None: ...


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class InMemoryProcessedMessageLedger:
    def __init__(self) -> None:
        self._lock = Lock()
        self._entries: dict[str, ProcessedMessageRecord] = {}

    def reset(self) -> None:
        with self._lock:
            self._entries.clear()

    def claim(self, message_id: str, conversation_id: str) -> LedgerClaim:
        with self._lock:
            if message_id in self._entries:
                return AlreadyExists(message_id=message_id)
            entry = ProcessedMessageRecord(
                message_id=message_id,
                conversation_id=conversation_id,
                processed_at=_now_utc(),
            )
            self._entries[message_id] = entry
            return Inserted(entry=entry)

    def get_entry(self, message_id: str) -> ProcessedMessageRecord | None:
        with self._lock:
            return self._entries.get(message_id)


class LedgerStoreBase(DeclarativeBase):
    pass


class _ProcessedMessageRow(LedgerStoreBase):
    __tablename__ = "autopilot_processed_messages"

    message_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    conversation_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    processed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class SqlAlchemyProcessedMessageLedger:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for AUTOPILOT_STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            LedgerStoreBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.query(_ProcessedMessageRow).delete()

    def claim(self, message_id: str, conversation_id: str) -> LedgerClaim:
        processed_at = _now_utc()
        try:
            with self._session() as session:
                with session.begin():
                    session.add(
                        _ProcessedMessageRow(
                            message_id=message_id,
                            conversation_id=conversation_id,
                            processed_at=processed_at,
                        )
                    )
        except IntegrityError:
            return AlreadyExists(message_id=message_id)
        return Inserted(
            entry=ProcessedMessageRecord(
                message_id=message_id,
                conversation_id=conversation_id,
                processed_at=processed_at,
            )
        )

    def get_entry(self, message_id: str) -> ProcessedMessageRecord | None:
        with self._session() as session:
            row = session.get(_ProcessedMessageRow, message_id)
            return self._entry_record(row) if row is not None else None

    @staticmethod
    def _entry_record(row: _ProcessedMessageRow) -> ProcessedMessageRecord:
        return ProcessedMessageRecord(
            message_id=row.message_id,
            conversation_id=row.conversation_id,
            processed_at=_coerce_utc(row.processed_at),
        )


def create_processed_message_ledger(*, backend: str, database_url: str) -> ProcessedMessageLedger:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyProcessedMessageLedger(database_url)
    if normalized == "inmemory":
        return InMemoryProcessedMessageLedger()
    raise RuntimeError(f"unsupported AUTOPILOT_STORE_BACKEND: {backend}")
