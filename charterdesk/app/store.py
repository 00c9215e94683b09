from __future__ import annotations

from datetime import datetime
from threading import RLock
from typing import Optional
from uuid import uuid4

from charterdesk.app.errors import NotFoundError, StatusConflictError
from charterdesk.app.models import (
    AllEntitiesFilter,
    AnalyticsEventRecord,
    ContactSubmissionRecord,
    CreatedWindowFilter,
    EntityFilter,
    EntityKind,
    EntityRecord,
    QuoteRequestRecord,
    SearchFilter,
    StatusRecord,
)
from charterdesk.app.services.workflow import INITIAL_STATUS


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex[:12]}"


def search_fields(record: EntityRecord) -> list[str]:
    if isinstance(record, QuoteRequestRecord):
        return [record.full_name, record.email, record.origin, record.destination]
    return [record.full_name, record.email, record.subject or "", record.message]


def matches_filter(record: EntityRecord, criteria: EntityFilter) -> bool:
    if isinstance(criteria, AllEntitiesFilter):
        return True
    if isinstance(criteria, CreatedWindowFilter):
        created = record.created_at_utc.date()
        if criteria.created_from and created < criteria.created_from:
            return False
        if criteria.created_to and created > criteria.created_to:
            return False
        return True
    if isinstance(criteria, SearchFilter):
        term = criteria.term.strip().lower()
        return any(term in value.lower() for value in search_fields(record))
    raise TypeError(f"unsupported filter: {criteria!r}")


class InMemoryStore:
    """Process-local persistence collaborator.

    Mirrors the method surface of ``SqlPersistence`` so services can run
    without a database. History is kept in insertion order; ``sequence``
    is the position in that order.
    """

    def __init__(self) -> None:
        self._lock = RLock()
        self.quotes: dict[str, QuoteRequestRecord] = {}
        self.contacts: dict[str, ContactSubmissionRecord] = {}
        self.status_records: list[StatusRecord] = []
        self.analytics_events: list[AnalyticsEventRecord] = []

    def ping(self) -> bool:
        return True

    def insert_quote(self, record: QuoteRequestRecord) -> QuoteRequestRecord:
        with self._lock:
            self.quotes[record.id] = record
            return record

    def insert_contact(self, record: ContactSubmissionRecord) -> ContactSubmissionRecord:
        with self._lock:
            self.contacts[record.id] = record
            return record

    def _table(self, kind: EntityKind) -> dict:
        return self.quotes if kind == EntityKind.quote else self.contacts

    def get_entity(self, kind: EntityKind, entity_id: str) -> EntityRecord:
        with self._lock:
            record = self._table(kind).get(entity_id)
        if not record:
            raise NotFoundError(kind.value, entity_id)
        return record

    def entity_exists(self, kind: EntityKind, entity_id: str) -> bool:
        with self._lock:
            return entity_id in self._table(kind)

    def touch_entity(self, kind: EntityKind, entity_id: str, at: datetime) -> None:
        if kind != EntityKind.quote:
            return
        with self._lock:
            quote = self.quotes.get(entity_id)
            if quote:
                self.quotes[entity_id] = quote.model_copy(update={"updated_at_utc": at})

    def list_entities(
        self,
        kind: EntityKind,
        criteria: EntityFilter,
        *,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[EntityRecord]:
        with self._lock:
            records = list(self._table(kind).values())
        records = [record for record in records if matches_filter(record, criteria)]
        records.sort(key=lambda item: item.created_at_utc, reverse=True)
        if limit is None:
            return records[offset:]
        return records[offset : offset + limit]

    def count_entities(self, kind: EntityKind, criteria: EntityFilter) -> int:
        with self._lock:
            records = list(self._table(kind).values())
        return len([record for record in records if matches_filter(record, criteria)])

    def list_entity_ids(
        self,
        kind: EntityKind,
        *,
        created_since: Optional[datetime] = None,
        created_before: Optional[datetime] = None,
    ) -> list[str]:
        with self._lock:
            records = list(self._table(kind).values())
        if created_since:
            records = [item for item in records if item.created_at_utc >= created_since]
        if created_before:
            records = [item for item in records if item.created_at_utc < created_before]
        records.sort(key=lambda item: item.created_at_utc)
        return [record.id for record in records]

    def append_status_record(
        self,
        *,
        kind: EntityKind,
        entity_id: str,
        status: str,
        changed_by: str,
        occurred_at: datetime,
        note: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        expected_status: Optional[str] = None,
    ) -> StatusRecord:
        with self._lock:
            latest = self.latest_status_record(kind, entity_id)
            current = latest.status if latest else INITIAL_STATUS
            if expected_status is not None and current != expected_status:
                raise StatusConflictError(entity_id, expected_status, current)
            record = StatusRecord(
                id=new_id("sts"),
                sequence=len(self.status_records) + 1,
                entity_id=entity_id,
                entity_kind=kind,
                from_status=current,
                status=status,
                changed_by=changed_by,
                note=note,
                ip_address=ip_address,
                user_agent=user_agent,
                occurred_at=occurred_at,
            )
            self.status_records.append(record)
            return record

    def list_status_records(self, kind: EntityKind, entity_id: str) -> list[StatusRecord]:
        with self._lock:
            return [
                record
                for record in self.status_records
                if record.entity_kind == kind and record.entity_id == entity_id
            ]

    def latest_status_record(self, kind: EntityKind, entity_id: str) -> Optional[StatusRecord]:
        with self._lock:
            for record in reversed(self.status_records):
                if record.entity_kind == kind and record.entity_id == entity_id:
                    return record
        return None

    def latest_statuses(self, kind: EntityKind) -> dict[str, str]:
        latest: dict[str, str] = {}
        with self._lock:
            for record in self.status_records:
                if record.entity_kind == kind:
                    latest[record.entity_id] = record.status
        return latest

    def list_kind_status_records(
        self, kind: EntityKind, *, since: Optional[datetime] = None
    ) -> list[StatusRecord]:
        with self._lock:
            records = [record for record in self.status_records if record.entity_kind == kind]
        if since:
            records = [record for record in records if record.occurred_at >= since]
        return records

    def insert_analytics_events(self, events: list[AnalyticsEventRecord]) -> int:
        with self._lock:
            self.analytics_events.extend(events)
        return len(events)

    def list_analytics_events(self, limit: int = 100) -> list[AnalyticsEventRecord]:
        safe_limit = max(1, min(limit, 500))
        with self._lock:
            events = list(self.analytics_events)
        events.sort(key=lambda item: item.occurred_at, reverse=True)
        return events[:safe_limit]
