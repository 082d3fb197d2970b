"""Primary audit stores.

- MemoryAuditStore: tests and single-process development
- SqlAuditStore: SQLAlchemy, the audit_events table

Stores are synchronous; the ledger runs them in worker threads.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Iterable

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from carebridge.audit.events import AuditError, AuditEvent, format_timestamp, parse_timestamp
from carebridge.audit.models import AuditEventModel
from carebridge.database import session_scope

MAX_QUERY_LIMIT = 1000


class AuditEventExistsError(AuditError):
    """Raised when an event with the same audit_id is already stored."""

    pass


class AuditStore(ABC):
    """Abstract base for audit storage backends."""

    @abstractmethod
    def put(self, event: AuditEvent) -> None:
        """Store a new audit event.

        Raises:
            AuditEventExistsError: An event with this audit_id is already stored
        """

    @abstractmethod
    def get(self, audit_id: str) -> AuditEvent | None:
        """Fetch one event by id."""

    @abstractmethod
    def query(
        self,
        event_type: str | None = None,
        event_subtype: str | None = None,
        user_id_hash: str | None = None,
        start_time: datetime | None = None,
        end_time: datetime | None = None,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """Query events, newest first. Time bounds are inclusive."""

    @abstractmethod
    def in_range(self, start_time: datetime, end_time: datetime) -> list[AuditEvent]:
        """Every event in an inclusive time range, oldest first."""

    @abstractmethod
    def linked_to(self, user_id_hash: str) -> list[AuditEvent]:
        """Every event whose subject or acting admin is this user."""

    @abstractmethod
    def replace_many(self, events: Iterable[AuditEvent]) -> int:
        """Overwrite existing events by id. Returns the number written."""

    @abstractmethod
    def delete_expired(self, now: datetime) -> int:
        """Delete events past their retention expiry. Returns the count."""


def _matches(
    event: AuditEvent,
    event_type: str | None,
    event_subtype: str | None,
    user_id_hash: str | None,
    start_time: datetime | None,
    end_time: datetime | None,
) -> bool:
    if event_type and event.event_type != event_type:
        return False
    if event_subtype and event.event_subtype != event_subtype:
        return False
    if user_id_hash and event.user_id_hash != user_id_hash:
        return False
    if start_time and event.event_timestamp < start_time:
        return False
    if end_time and event.event_timestamp > end_time:
        return False
    return True


class MemoryAuditStore(AuditStore):
    """In-memory audit store for testing."""

    def __init__(self):
        self.events: dict[str, AuditEvent] = {}
        self._lock = threading.Lock()

    def put(self, event: AuditEvent) -> None:
        with self._lock:
            if event.audit_id in self.events:
                raise AuditEventExistsError(f"Audit event {event.audit_id} already exists")
            self.events[event.audit_id] = event

    def get(self, audit_id: str) -> AuditEvent | None:
        with self._lock:
            return self.events.get(audit_id)

    def query(
        self,
        event_type: str | None = None,
        event_subtype: str | None = None,
        user_id_hash: str | None = None,
        start_time: datetime | None = None,
        end_time: datetime | None = None,
        limit: int = 100,
    ) -> list[AuditEvent]:
        with self._lock:
            events = list(self.events.values())
        results = [
            e for e in events
            if _matches(e, event_type, event_subtype, user_id_hash, start_time, end_time)
        ]
        results.sort(key=lambda e: e.event_timestamp, reverse=True)
        return results[:min(limit, MAX_QUERY_LIMIT)]

    def in_range(self, start_time: datetime, end_time: datetime) -> list[AuditEvent]:
        with self._lock:
            events = list(self.events.values())
        results = [e for e in events if start_time <= e.event_timestamp <= end_time]
        results.sort(key=lambda e: e.event_timestamp)
        return results

    def linked_to(self, user_id_hash: str) -> list[AuditEvent]:
        with self._lock:
            return [
                e for e in self.events.values()
                if user_id_hash in (e.user_id_hash, e.admin_user_id_hash)
            ]

    def replace_many(self, events: Iterable[AuditEvent]) -> int:
        count = 0
        with self._lock:
            for event in events:
                if event.audit_id in self.events:
                    self.events[event.audit_id] = event
                    count += 1
        return count

    def delete_expired(self, now: datetime) -> int:
        with self._lock:
            expired = [
                audit_id for audit_id, e in self.events.items()
                if e.retention_expires_at is not None and e.retention_expires_at < now
            ]
            for audit_id in expired:
                del self.events[audit_id]
        return len(expired)


def _to_model(event: AuditEvent) -> AuditEventModel:
    return AuditEventModel(
        audit_id=event.audit_id,
        event_timestamp=format_timestamp(event.event_timestamp),
        event_type=event.event_type,
        event_subtype=event.event_subtype,
        user_id_hash=event.user_id_hash,
        session_id=event.session_id,
        admin_user_id_hash=event.admin_user_id_hash,
        source_ip_hash=event.source_ip_hash,
        user_agent_hash=event.user_agent_hash,
        request_id=event.request_id,
        event_details=event.event_details,
        gdpr_lawful_basis=event.gdpr_lawful_basis,
        data_classification=event.data_classification,
        retention_years=event.retention_years,
        retention_expires_at=(
            format_timestamp(event.retention_expires_at)
            if event.retention_expires_at
            else None
        ),
        event_hash=event.event_hash,
        environment=event.environment,
        anonymized=event.anonymized,
    )


def _from_model(record: AuditEventModel) -> AuditEvent:
    return AuditEvent(
        audit_id=record.audit_id,
        event_timestamp=parse_timestamp(record.event_timestamp),
        event_type=record.event_type,
        event_subtype=record.event_subtype,
        user_id_hash=record.user_id_hash,
        session_id=record.session_id,
        admin_user_id_hash=record.admin_user_id_hash,
        source_ip_hash=record.source_ip_hash,
        user_agent_hash=record.user_agent_hash,
        request_id=record.request_id,
        event_details=record.event_details or {},
        gdpr_lawful_basis=record.gdpr_lawful_basis,
        data_classification=record.data_classification,
        retention_years=record.retention_years,
        retention_expires_at=(
            parse_timestamp(record.retention_expires_at)
            if record.retention_expires_at
            else None
        ),
        event_hash=record.event_hash,
        environment=record.environment,
        anonymized=bool(record.anonymized),
    )


class SqlAuditStore(AuditStore):
    """Audit store backed by the audit_events table."""

    def __init__(self, session_factory: sessionmaker):
        """Initialize the SQL audit store.

        Args:
            session_factory: SQLAlchemy session factory bound to an engine
                on which the audit tables exist
        """
        self._session_factory = session_factory

    def put(self, event: AuditEvent) -> None:
        try:
            with session_scope(self._session_factory) as session:
                if session.get(AuditEventModel, event.audit_id) is not None:
                    raise AuditEventExistsError(f"Audit event {event.audit_id} already exists")
                session.add(_to_model(event))
        except IntegrityError as e:
            # Concurrent insert of the same id
            raise AuditEventExistsError(f"Audit event {event.audit_id} already exists") from e

    def get(self, audit_id: str) -> AuditEvent | None:
        with session_scope(self._session_factory) as session:
            record = session.get(AuditEventModel, audit_id)
            return _from_model(record) if record else None

    def query(
        self,
        event_type: str | None = None,
        event_subtype: str | None = None,
        user_id_hash: str | None = None,
        start_time: datetime | None = None,
        end_time: datetime | None = None,
        limit: int = 100,
    ) -> list[AuditEvent]:
        with session_scope(self._session_factory) as session:
            query = session.query(AuditEventModel)
            if event_type:
                query = query.filter(AuditEventModel.event_type == event_type)
            if event_subtype:
                query = query.filter(AuditEventModel.event_subtype == event_subtype)
            if user_id_hash:
                query = query.filter(AuditEventModel.user_id_hash == user_id_hash)
            if start_time:
                query = query.filter(AuditEventModel.event_timestamp >= format_timestamp(start_time))
            if end_time:
                query = query.filter(AuditEventModel.event_timestamp <= format_timestamp(end_time))

            records = query.order_by(
                AuditEventModel.event_timestamp.desc()
            ).limit(min(limit, MAX_QUERY_LIMIT)).all()
            return [_from_model(r) for r in records]

    def in_range(self, start_time: datetime, end_time: datetime) -> list[AuditEvent]:
        with session_scope(self._session_factory) as session:
            records = session.query(AuditEventModel).filter(
                AuditEventModel.event_timestamp >= format_timestamp(start_time),
                AuditEventModel.event_timestamp <= format_timestamp(end_time),
            ).order_by(AuditEventModel.event_timestamp.asc()).all()
            return [_from_model(r) for r in records]

    def linked_to(self, user_id_hash: str) -> list[AuditEvent]:
        with session_scope(self._session_factory) as session:
            records = session.query(AuditEventModel).filter(
                or_(
                    AuditEventModel.user_id_hash == user_id_hash,
                    AuditEventModel.admin_user_id_hash == user_id_hash,
                ),
            ).all()
            return [_from_model(r) for r in records]

    def replace_many(self, events: Iterable[AuditEvent]) -> int:
        count = 0
        # One transaction: either every row is rewritten or none is
        with session_scope(self._session_factory) as session:
            for event in events:
                if session.get(AuditEventModel, event.audit_id) is None:
                    continue
                session.merge(_to_model(event))
                count += 1
        return count

    def delete_expired(self, now: datetime) -> int:
        with session_scope(self._session_factory) as session:
            return session.query(AuditEventModel).filter(
                AuditEventModel.retention_expires_at.is_not(None),
                AuditEventModel.retention_expires_at < format_timestamp(now),
            ).delete(synchronize_session=False)
