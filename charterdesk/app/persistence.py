from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from datetime import datetime, time, timedelta
from pathlib import Path
from threading import Lock
from typing import Iterator, Optional

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    func,
    or_,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool

from charterdesk.app.errors import NotFoundError, PersistenceError, StatusConflictError
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
from charterdesk.app.store import new_id

logger = logging.getLogger("charterdesk.persistence")


def _normalize_database_url(database_url: str) -> str:
    value = database_url.strip()
    if value.startswith("sqlite:///"):
        sqlite_path = value[len("sqlite:///") :].split("?", 1)[0]
        if sqlite_path and sqlite_path != ":memory:":
            path = Path(sqlite_path)
            if path.parent:
                path.parent.mkdir(parents=True, exist_ok=True)
        return value
    if "://" in value:
        return value
    path = Path(value)
    if path.parent:
        path.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{str(path).replace(chr(92), '/')}"


@contextmanager
def _translate_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except SQLAlchemyError as exc:
        logger.exception("persistence_failed operation=%s", operation)
        raise PersistenceError(f"{operation} failed") from exc


class SqlPersistence:
    """
    SQLAlchemy Core backed persistence collaborator. Works with SQLite and PostgreSQL URLs.

    Status history lives in one append-only table keyed by entity_kind + entity_id;
    the autoincrement ``sequence`` column is the insertion order used to pick the
    latest record when timestamps coincide.
    """

    def __init__(self, database_url: str) -> None:
        self.database_url = _normalize_database_url(database_url)
        self._lock = Lock()
        engine_kwargs: dict = {"future": True, "pool_pre_ping": True}
        if self.database_url in {"sqlite://", "sqlite:///:memory:"}:
            engine_kwargs["poolclass"] = StaticPool
            engine_kwargs["connect_args"] = {"check_same_thread": False}
        self.engine: Engine = create_engine(self.database_url, **engine_kwargs)
        self.metadata = MetaData()
        self.quote_requests = Table(
            "quote_requests",
            self.metadata,
            Column("id", String(64), primary_key=True),
            Column("service_type", String(30), nullable=False),
            Column("full_name", String(100), nullable=False),
            Column("email", String(255), nullable=False),
            Column("phone", String(20), nullable=True),
            Column("passengers", Integer, nullable=False),
            Column("origin", String(3), nullable=False),
            Column("destination", String(3), nullable=False),
            Column("departure_date", Date, nullable=False),
            Column("departure_time", String(5), nullable=False),
            Column("locale", String(5), nullable=False),
            Column("comments", Text, nullable=True),
            Column("created_at_utc", DateTime, nullable=False, index=True),
            Column("updated_at_utc", DateTime, nullable=False),
        )
        self.contact_submissions = Table(
            "contact_submissions",
            self.metadata,
            Column("id", String(64), primary_key=True),
            Column("full_name", String(100), nullable=False),
            Column("email", String(255), nullable=False),
            Column("phone", String(20), nullable=True),
            Column("subject", String(200), nullable=True),
            Column("message", Text, nullable=False),
            Column("contact_via_whatsapp", Boolean, nullable=False),
            Column("locale", String(5), nullable=False),
            Column("created_at_utc", DateTime, nullable=False, index=True),
        )
        self.status_records = Table(
            "status_records",
            self.metadata,
            Column("sequence", Integer, primary_key=True, autoincrement=True),
            Column("id", String(64), nullable=False, unique=True),
            Column("entity_kind", String(20), nullable=False),
            Column("entity_id", String(64), nullable=False),
            Column("from_status", String(40), nullable=False),
            Column("status", String(40), nullable=False),
            Column("changed_by", String(255), nullable=False),
            Column("note", Text, nullable=True),
            Column("ip_address", String(64), nullable=True),
            Column("user_agent", String(512), nullable=True),
            Column("occurred_at", DateTime, nullable=False),
            Index("ix_status_records_entity", "entity_kind", "entity_id", "occurred_at"),
            Index("ix_status_records_kind_status", "entity_kind", "status"),
        )
        self.analytics_events = Table(
            "analytics_events",
            self.metadata,
            Column("id", String(64), primary_key=True),
            Column("event_name", String(50), nullable=False, index=True),
            Column("event_data_json", Text, nullable=False),
            Column("session_id", String(100), nullable=True),
            Column("page_path", String(255), nullable=True),
            Column("referrer", String(255), nullable=True),
            Column("locale", String(5), nullable=True),
            Column("ip_address", String(64), nullable=True),
            Column("user_agent", String(512), nullable=True),
            Column("occurred_at", DateTime, nullable=False),
        )
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        with _translate_errors("create_schema"):
            self.metadata.create_all(self.engine)

    def _table(self, kind: EntityKind) -> Table:
        return self.quote_requests if kind == EntityKind.quote else self.contact_submissions

    @staticmethod
    def _to_entity(kind: EntityKind, row) -> EntityRecord:
        if kind == EntityKind.quote:
            return QuoteRequestRecord.model_validate(dict(row._mapping))
        return ContactSubmissionRecord.model_validate(dict(row._mapping))

    @staticmethod
    def _to_status_record(row) -> StatusRecord:
        return StatusRecord.model_validate(dict(row._mapping))

    def _where(self, kind: EntityKind, criteria: EntityFilter) -> list:
        table = self._table(kind)
        if isinstance(criteria, AllEntitiesFilter):
            return []
        if isinstance(criteria, CreatedWindowFilter):
            clauses = []
            if criteria.created_from:
                start = datetime.combine(criteria.created_from, time.min)
                clauses.append(table.c.created_at_utc >= start)
            if criteria.created_to:
                end = datetime.combine(criteria.created_to + timedelta(days=1), time.min)
                clauses.append(table.c.created_at_utc < end)
            return clauses
        if isinstance(criteria, SearchFilter):
            term = criteria.term.strip().lower()
            if kind == EntityKind.quote:
                columns = [table.c.full_name, table.c.email, table.c.origin, table.c.destination]
            else:
                columns = [table.c.full_name, table.c.email, table.c.subject, table.c.message]
            return [
                or_(*[func.lower(column).contains(term, autoescape=True) for column in columns])
            ]
        raise TypeError(f"unsupported filter: {criteria!r}")

    def ping(self) -> bool:
        try:
            with self.engine.connect() as conn:
                conn.execute(select(1))
            return True
        except SQLAlchemyError:
            return False

    def insert_quote(self, record: QuoteRequestRecord) -> QuoteRequestRecord:
        payload = record.model_dump()
        payload["service_type"] = record.service_type.value
        payload["locale"] = record.locale.value
        with self._lock, _translate_errors("insert_quote"):
            with self.engine.begin() as conn:
                conn.execute(self.quote_requests.insert().values(**payload))
        return record

    def insert_contact(self, record: ContactSubmissionRecord) -> ContactSubmissionRecord:
        payload = record.model_dump()
        payload["locale"] = record.locale.value
        with self._lock, _translate_errors("insert_contact"):
            with self.engine.begin() as conn:
                conn.execute(self.contact_submissions.insert().values(**payload))
        return record

    def get_entity(self, kind: EntityKind, entity_id: str) -> EntityRecord:
        table = self._table(kind)
        with _translate_errors("get_entity"):
            with self.engine.connect() as conn:
                row = conn.execute(select(table).where(table.c.id == entity_id)).first()
        if not row:
            raise NotFoundError(kind.value, entity_id)
        return self._to_entity(kind, row)

    def entity_exists(self, kind: EntityKind, entity_id: str) -> bool:
        table = self._table(kind)
        with _translate_errors("entity_exists"):
            with self.engine.connect() as conn:
                row = conn.execute(select(table.c.id).where(table.c.id == entity_id)).first()
        return row is not None

    def touch_entity(self, kind: EntityKind, entity_id: str, at: datetime) -> None:
        if kind != EntityKind.quote:
            return
        with self._lock, _translate_errors("touch_entity"):
            with self.engine.begin() as conn:
                conn.execute(
                    self.quote_requests.update()
                    .where(self.quote_requests.c.id == entity_id)
                    .values(updated_at_utc=at)
                )

    def list_entities(
        self,
        kind: EntityKind,
        criteria: EntityFilter,
        *,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[EntityRecord]:
        table = self._table(kind)
        query = (
            select(table)
            .where(*self._where(kind, criteria))
            .order_by(table.c.created_at_utc.desc())
            .offset(offset)
        )
        if limit is not None:
            query = query.limit(limit)
        with _translate_errors("list_entities"):
            with self.engine.connect() as conn:
                rows = conn.execute(query).all()
        return [self._to_entity(kind, row) for row in rows]

    def count_entities(self, kind: EntityKind, criteria: EntityFilter) -> int:
        table = self._table(kind)
        query = select(func.count()).select_from(table).where(*self._where(kind, criteria))
        with _translate_errors("count_entities"):
            with self.engine.connect() as conn:
                return int(conn.execute(query).scalar_one())

    def list_entity_ids(
        self,
        kind: EntityKind,
        *,
        created_since: Optional[datetime] = None,
        created_before: Optional[datetime] = None,
    ) -> list[str]:
        table = self._table(kind)
        query = select(table.c.id).order_by(table.c.created_at_utc.asc())
        if created_since:
            query = query.where(table.c.created_at_utc >= created_since)
        if created_before:
            query = query.where(table.c.created_at_utc < created_before)
        with _translate_errors("list_entity_ids"):
            with self.engine.connect() as conn:
                return [row.id for row in conn.execute(query).all()]

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
        records = self.status_records
        with self._lock, _translate_errors("append_status_record"):
            with self.engine.begin() as conn:
                latest = conn.execute(
                    select(records.c.status)
                    .where(records.c.entity_kind == kind.value, records.c.entity_id == entity_id)
                    .order_by(records.c.sequence.desc())
                    .limit(1)
                ).first()
                current = latest.status if latest else INITIAL_STATUS
                if expected_status is not None and current != expected_status:
                    raise StatusConflictError(entity_id, expected_status, current)
                payload = {
                    "id": new_id("sts"),
                    "entity_kind": kind.value,
                    "entity_id": entity_id,
                    "from_status": current,
                    "status": status,
                    "changed_by": changed_by,
                    "note": note,
                    "ip_address": ip_address,
                    "user_agent": user_agent,
                    "occurred_at": occurred_at,
                }
                result = conn.execute(records.insert().values(**payload))
                sequence = result.inserted_primary_key[0]
        return StatusRecord(sequence=sequence, **payload)

    def list_status_records(self, kind: EntityKind, entity_id: str) -> list[StatusRecord]:
        records = self.status_records
        query = (
            select(records)
            .where(records.c.entity_kind == kind.value, records.c.entity_id == entity_id)
            .order_by(records.c.sequence.asc())
        )
        with _translate_errors("list_status_records"):
            with self.engine.connect() as conn:
                rows = conn.execute(query).all()
        return [self._to_status_record(row) for row in rows]

    def latest_status_record(self, kind: EntityKind, entity_id: str) -> Optional[StatusRecord]:
        records = self.status_records
        query = (
            select(records)
            .where(records.c.entity_kind == kind.value, records.c.entity_id == entity_id)
            .order_by(records.c.sequence.desc())
            .limit(1)
        )
        with _translate_errors("latest_status_record"):
            with self.engine.connect() as conn:
                row = conn.execute(query).first()
        return self._to_status_record(row) if row else None

    def latest_statuses(self, kind: EntityKind) -> dict[str, str]:
        records = self.status_records
        query = (
            select(records.c.entity_id, records.c.status)
            .where(records.c.entity_kind == kind.value)
            .order_by(records.c.sequence.asc())
        )
        latest: dict[str, str] = {}
        with _translate_errors("latest_statuses"):
            with self.engine.connect() as conn:
                for row in conn.execute(query):
                    latest[row.entity_id] = row.status
        return latest

    def list_kind_status_records(
        self, kind: EntityKind, *, since: Optional[datetime] = None
    ) -> list[StatusRecord]:
        records = self.status_records
        query = (
            select(records)
            .where(records.c.entity_kind == kind.value)
            .order_by(records.c.sequence.asc())
        )
        if since:
            query = query.where(records.c.occurred_at >= since)
        with _translate_errors("list_kind_status_records"):
            with self.engine.connect() as conn:
                rows = conn.execute(query).all()
        return [self._to_status_record(row) for row in rows]

    def insert_analytics_events(self, events: list[AnalyticsEventRecord]) -> int:
        if not events:
            return 0
        rows = [
            {
                "id": event.id,
                "event_name": event.event_name,
                "event_data_json": json.dumps(event.event_data, default=str),
                "session_id": event.session_id,
                "page_path": event.page_path,
                "referrer": event.referrer,
                "locale": event.locale.value if event.locale else None,
                "ip_address": event.ip_address,
                "user_agent": event.user_agent,
                "occurred_at": event.occurred_at,
            }
            for event in events
        ]
        with self._lock, _translate_errors("insert_analytics_events"):
            with self.engine.begin() as conn:
                conn.execute(self.analytics_events.insert(), rows)
        return len(rows)

    def list_analytics_events(self, limit: int = 100) -> list[AnalyticsEventRecord]:
        safe_limit = max(1, min(limit, 500))
        table = self.analytics_events
        query = select(table).order_by(table.c.occurred_at.desc()).limit(safe_limit)
        with _translate_errors("list_analytics_events"):
            with self.engine.connect() as conn:
                rows = conn.execute(query).all()
        output: list[AnalyticsEventRecord] = []
        for row in rows:
            output.append(
                AnalyticsEventRecord(
                    id=row.id,
                    event_name=row.event_name,
                    event_data=json.loads(row.event_data_json),
                    session_id=row.session_id,
                    page_path=row.page_path,
                    referrer=row.referrer,
                    locale=row.locale,
                    ip_address=row.ip_address,
                    user_agent=row.user_agent,
                    occurred_at=row.occurred_at,
                )
            )
        return output
