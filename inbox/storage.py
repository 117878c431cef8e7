"""
Message storage backends.

Two implementations share the ``MessageStore`` protocol:

- ``DurableStore``: SQLAlchemy over a network database (or SQLite file).
  Idempotency comes from the unique constraint on ``dedup_key``.
- ``VolatileStore``: in-process maps guarded by a lock. Nothing survives a
  restart and nothing is evicted.

Records never move between the two.
"""

import logging
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Generator, Iterable, Optional, Protocol, Tuple

from sqlalchemy import create_engine, select, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, defer, sessionmaker

from inbox.errors import BackendUnavailable, InvalidRequest, NotFound
from inbox.models import Base, Message
from inbox.schemas import MessageRecord, MessageStatus

logger = logging.getLogger(__name__)

# Hard cap on list queries, regardless of the requested limit
MAX_LIST_LIMIT = 300


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_message_id() -> str:
    return uuid.uuid4().hex


def _clamp_limit(limit: int) -> int:
    return max(0, min(limit, MAX_LIST_LIMIT))


def _check_transition(current: MessageStatus, requested: MessageStatus) -> None:
    if current == MessageStatus.REPLIED and requested == MessageStatus.NEW:
        raise InvalidRequest("Message status cannot go back from replied to new")


class MessageStore(Protocol):
    """Capability surface every storage backend provides."""

    def upsert_if_absent(self, key: str, candidate: MessageRecord) -> Tuple[MessageRecord, bool]:
        ...

    def find(
        self,
        status: Optional[MessageStatus] = None,
        limit: int = MAX_LIST_LIMIT,
        newest_first: bool = True,
    ) -> list[MessageRecord]:
        ...

    def find_by_ids(self, ids: Iterable[str]) -> list[MessageRecord]:
        ...

    def update(self, record: MessageRecord) -> MessageRecord:
        ...

    def delete_by_id(self, message_id: str) -> Optional[MessageRecord]:
        ...


# =============================================================================
# Volatile (in-memory) backend
# =============================================================================

class VolatileStore:
    """
    In-process store: id -> record and dedup key -> id.

    Records are copied on the way in and out so callers can never mutate
    stored state without going through ``update``.
    """

    def __init__(self) -> None:
        self._by_id: dict[str, MessageRecord] = {}
        self._by_key: dict[str, str] = {}
        self._lock = threading.Lock()

    def upsert_if_absent(self, key: str, candidate: MessageRecord) -> Tuple[MessageRecord, bool]:
        with self._lock:
            existing_id = self._by_key.get(key)
            if existing_id is not None:
                logger.debug(f"Volatile upsert hit existing record for key: {key}")
                return self._by_id[existing_id].model_copy(deep=True), False

            now = utcnow()
            record = candidate.model_copy(
                deep=True,
                update={
                    "id": new_message_id(),
                    "dedup_key": key,
                    "created_at": now,
                    "updated_at": now,
                },
            )
            self._by_id[record.id] = record
            self._by_key[key] = record.id

        logger.debug(f"Volatile upsert created record: {record.id}")
        return record.model_copy(deep=True), True

    def find(
        self,
        status: Optional[MessageStatus] = None,
        limit: int = MAX_LIST_LIMIT,
        newest_first: bool = True,
    ) -> list[MessageRecord]:
        with self._lock:
            # Newest inserted first, so the stable sort breaks exact ties that way
            records = [
                r for r in reversed(self._by_id.values())
                if status is None or r.status == status
            ]

        records.sort(key=lambda r: (r.received_at, r.created_at), reverse=newest_first)
        return [r.model_copy(update={"raw": None}) for r in records[:_clamp_limit(limit)]]

    def find_by_ids(self, ids: Iterable[str]) -> list[MessageRecord]:
        with self._lock:
            found = [self._by_id.get(str(message_id)) for message_id in dict.fromkeys(ids)]
            return [r.model_copy(deep=True) for r in found if r is not None]

    def update(self, record: MessageRecord) -> MessageRecord:
        with self._lock:
            stored = self._by_id.get(record.id)
            if stored is None:
                raise NotFound(f"Message {record.id} not found")
            _check_transition(stored.status, record.status)

            updated = stored.model_copy(
                update={
                    "status": record.status,
                    "reply_text": record.reply_text,
                    "replied_at": record.replied_at,
                    "updated_at": utcnow(),
                }
            )
            self._by_id[record.id] = updated
            return updated.model_copy(deep=True)

    def delete_by_id(self, message_id: str) -> Optional[MessageRecord]:
        with self._lock:
            record = self._by_id.pop(message_id, None)
            if record is None:
                return None
            # Release the key so the store behaves like the durable backend
            self._by_key.pop(record.dedup_key, None)
        return record

    def __len__(self) -> int:
        return len(self._by_id)


# =============================================================================
# Durable (SQLAlchemy) backend
# =============================================================================

def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything is stored in UTC
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _row_to_record(row: Message, include_raw: bool = True) -> MessageRecord:
    return MessageRecord(
        id=row.id,
        dedup_key=row.dedup_key,
        provider_message_id=row.provider_message_id,
        sender=row.sender,
        text=row.text or "",
        received_at=_as_utc(row.received_at),
        status=MessageStatus(row.status),
        reply_text=row.reply_text,
        replied_at=_as_utc(row.replied_at),
        raw=row.raw if include_raw else None,
        created_at=_as_utc(row.created_at),
        updated_at=_as_utc(row.updated_at),
    )


class DurableStore:
    """
    SQLAlchemy-backed store. ``connect()`` must succeed before any other call.
    """

    def __init__(self, database_url: str) -> None:
        self.database_url = database_url
        self._engine: Optional[Engine] = None
        self._sessionmaker: Optional[sessionmaker] = None
        self._closed = False
        self._state_lock = threading.Lock()

    @property
    def connected(self) -> bool:
        return self._sessionmaker is not None

    def connect(self) -> None:
        """
        Create the engine, check connectivity and apply the schema.

        Raises:
            BackendUnavailable: the database is unreachable or misconfigured
        """
        logger.debug("Connecting durable store")
        connect_args = {}
        if self.database_url.startswith("sqlite"):
            # Sessions are used from worker threads as well as the event loop
            connect_args["check_same_thread"] = False

        engine = None
        try:
            engine = create_engine(
                self.database_url,
                connect_args=connect_args,
                pool_pre_ping=True,
                echo=False,
            )
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            Base.metadata.create_all(bind=engine)
        except (SQLAlchemyError, ImportError) as e:
            if engine is not None:
                engine.dispose()
            logger.error(f"Durable store connection failed: {e}")
            raise BackendUnavailable(str(e)) from e

        with self._state_lock:
            if self._closed:
                # close() ran while this connect was still in its worker thread
                engine.dispose()
                raise BackendUnavailable("Durable store was closed while connecting")
            self._engine = engine
            self._sessionmaker = sessionmaker(autoflush=False, expire_on_commit=False, bind=engine)
        logger.info("Durable store connected and schema applied")

    def close(self) -> None:
        """Dispose the engine. A closed store never connects again."""
        with self._state_lock:
            self._closed = True
            engine = self._engine
            self._engine = None
            self._sessionmaker = None
        if engine is not None:
            engine.dispose()

    @contextmanager
    def _session(self) -> Generator[Session, None, None]:
        if self._sessionmaker is None:
            raise BackendUnavailable("Durable store is not connected")
        db = self._sessionmaker()
        try:
            yield db
        finally:
            db.close()

    def _get_by_key(self, db: Session, key: str) -> Optional[Message]:
        return db.execute(select(Message).where(Message.dedup_key == key)).scalar_one_or_none()

    def upsert_if_absent(self, key: str, candidate: MessageRecord) -> Tuple[MessageRecord, bool]:
        with self._session() as db:
            existing = self._get_by_key(db, key)
            if existing is not None:
                logger.debug(f"Durable upsert hit existing record for key: {key}")
                return _row_to_record(existing), False

            now = utcnow()
            row = Message(
                id=new_message_id(),
                dedup_key=key,
                provider_message_id=candidate.provider_message_id,
                sender=candidate.sender,
                text=candidate.text,
                received_at=candidate.received_at,
                status=candidate.status.value,
                raw=candidate.raw,
                created_at=now,
                updated_at=now,
            )
            db.add(row)
            try:
                db.commit()
            except IntegrityError:
                # A concurrent delivery inserted the same key first
                db.rollback()
                existing = self._get_by_key(db, key)
                if existing is None:
                    raise
                logger.info(f"Concurrent insert resolved to existing record: {existing.id}")
                return _row_to_record(existing), False

            logger.debug(f"Durable upsert created record: {row.id}")
            return _row_to_record(row), True

    def find(
        self,
        status: Optional[MessageStatus] = None,
        limit: int = MAX_LIST_LIMIT,
        newest_first: bool = True,
    ) -> list[MessageRecord]:
        stmt = select(Message).options(defer(Message.raw))
        if status is not None:
            stmt = stmt.where(Message.status == status.value)

        if newest_first:
            stmt = stmt.order_by(Message.received_at.desc(), Message.created_at.desc())
        else:
            stmt = stmt.order_by(Message.received_at.asc(), Message.created_at.asc())
        stmt = stmt.limit(_clamp_limit(limit))

        with self._session() as db:
            rows = db.execute(stmt).scalars().all()
            return [_row_to_record(row, include_raw=False) for row in rows]

    def find_by_ids(self, ids: Iterable[str]) -> list[MessageRecord]:
        wanted = [str(message_id) for message_id in dict.fromkeys(ids)]
        if not wanted:
            return []
        with self._session() as db:
            rows = db.execute(select(Message).where(Message.id.in_(wanted))).scalars().all()
            # Same order as requested, like the volatile store
            position = {message_id: i for i, message_id in enumerate(wanted)}
            rows = sorted(rows, key=lambda row: position[row.id])
            return [_row_to_record(row) for row in rows]

    def update(self, record: MessageRecord) -> MessageRecord:
        with self._session() as db:
            row = db.get(Message, record.id)
            if row is None:
                raise NotFound(f"Message {record.id} not found")
            _check_transition(MessageStatus(row.status), record.status)

            row.status = record.status.value
            row.reply_text = record.reply_text
            row.replied_at = record.replied_at
            row.updated_at = utcnow()
            db.commit()
            return _row_to_record(row)

    def delete_by_id(self, message_id: str) -> Optional[MessageRecord]:
        with self._session() as db:
            row = db.get(Message, message_id)
            if row is None:
                return None
            record = _row_to_record(row)
            db.delete(row)
            db.commit()
            return record
