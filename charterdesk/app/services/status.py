from __future__ import annotations

import logging
from datetime import timedelta
from typing import Optional, Union

from charterdesk.app.errors import NotFoundError, ValidationError
from charterdesk.app.models import (
    AllEntitiesFilter,
    EntityFilter,
    EntityKind,
    EntityRecord,
    EntityWithStatus,
    StatusRecord,
    utc_now,
)
from charterdesk.app.persistence import SqlPersistence
from charterdesk.app.services.workflow import (
    INITIAL_STATUS,
    StatusValue,
    available_actions,
    parse_status,
    statuses_for,
    validate_transition,
)
from charterdesk.app.store import InMemoryStore

logger = logging.getLogger("charterdesk.status")

Store = Union[InMemoryStore, SqlPersistence]


class StatusService:
    """Lifecycle of one entity kind, derived from its append-only status log.

    The current status is never stored on the entity itself; it is the
    status of the latest record, or ``pending`` when there is none.
    """

    def __init__(self, kind: EntityKind, store: Store) -> None:
        self.kind = kind
        self.store = store

    def _require_entity(self, entity_id: str) -> None:
        if not self.store.entity_exists(self.kind, entity_id):
            raise NotFoundError(self.kind.value, entity_id)

    def get_entity(self, entity_id: str) -> EntityRecord:
        return self.store.get_entity(self.kind, entity_id)

    def get_current_status(self, entity_id: str) -> str:
        latest = self.store.latest_status_record(self.kind, entity_id)
        return latest.status if latest else INITIAL_STATUS

    def get_history(self, entity_id: str) -> list[StatusRecord]:
        return self.store.list_status_records(self.kind, entity_id)

    def available_actions(self, entity_id: str) -> list[str]:
        return available_actions(self.kind, self.get_current_status(entity_id))

    def update_status(
        self,
        entity_id: str,
        new_status: StatusValue,
        changed_by: str,
        note: Optional[str] = None,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        expected_status: Optional[StatusValue] = None,
    ) -> StatusRecord:
        target = parse_status(self.kind, new_status)
        expected = parse_status(self.kind, expected_status) if expected_status else None
        if not changed_by or not changed_by.strip():
            raise ValidationError("changed_by is required")
        self._require_entity(entity_id)

        current = self.get_current_status(entity_id)
        validate_transition(self.kind, current, target)

        now = utc_now()
        record = self.store.append_status_record(
            kind=self.kind,
            entity_id=entity_id,
            status=target,
            changed_by=changed_by.strip(),
            occurred_at=now,
            note=note,
            ip_address=ip_address,
            user_agent=user_agent,
            expected_status=expected,
        )
        self.store.touch_entity(self.kind, entity_id, now)
        logger.info(
            "status_changed kind=%s entity_id=%s from=%s to=%s changed_by=%s",
            self.kind.value,
            entity_id,
            record.from_status,
            record.status,
            record.changed_by,
        )
        return record

    def get_statistics(self) -> dict[str, int]:
        stats = {status: 0 for status in statuses_for(self.kind)}
        latest = self.store.latest_statuses(self.kind)
        for entity_id in self.store.list_entity_ids(self.kind):
            stats[latest.get(entity_id, INITIAL_STATUS)] += 1
        return stats

    def list_entities(
        self,
        criteria: Optional[EntityFilter] = None,
        *,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[EntityWithStatus], int]:
        criteria = criteria or AllEntitiesFilter()
        safe_limit = max(1, min(limit, 500))
        safe_offset = max(0, offset)
        records = self.store.list_entities(
            self.kind, criteria, limit=safe_limit, offset=safe_offset
        )
        total = self.store.count_entities(self.kind, criteria)
        latest = self.store.latest_statuses(self.kind)
        items = [
            EntityWithStatus(entity=record, current_status=latest.get(record.id, INITIAL_STATUS))
            for record in records
        ]
        return items, total

    def list_by_status(
        self,
        status: StatusValue,
        *,
        criteria: Optional[EntityFilter] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[EntityWithStatus], int]:
        wanted = parse_status(self.kind, status)
        latest = self.store.latest_statuses(self.kind)
        matching = [
            record
            for record in self.store.list_entities(self.kind, criteria or AllEntitiesFilter())
            if latest.get(record.id, INITIAL_STATUS) == wanted
        ]
        safe_limit = max(1, min(limit, 500))
        safe_offset = max(0, offset)
        page = matching[safe_offset : safe_offset + safe_limit]
        return [EntityWithStatus(entity=record, current_status=wanted) for record in page], len(
            matching
        )

    def list_stale(
        self,
        days_old: int = 7,
        *,
        open_statuses: Optional[set[str]] = None,
    ) -> list[EntityWithStatus]:
        if days_old < 1:
            raise ValidationError("days_old must be at least 1")
        cutoff = utc_now() - timedelta(days=days_old)
        open_set = open_statuses or {INITIAL_STATUS}
        latest = self.store.latest_statuses(self.kind)
        output: list[EntityWithStatus] = []
        for entity_id in self.store.list_entity_ids(self.kind, created_before=cutoff):
            current = latest.get(entity_id, INITIAL_STATUS)
            if current in open_set:
                output.append(
                    EntityWithStatus(
                        entity=self.store.get_entity(self.kind, entity_id),
                        current_status=current,
                    )
                )
        return output


class QuoteStatusService(StatusService):
    STALE_STATUSES = {"pending", "processing"}

    def __init__(self, store: Store) -> None:
        super().__init__(EntityKind.quote, store)

    def list_stale(
        self,
        days_old: int = 7,
        *,
        open_statuses: Optional[set[str]] = None,
    ) -> list[EntityWithStatus]:
        return super().list_stale(days_old, open_statuses=open_statuses or self.STALE_STATUSES)


class ContactStatusService(StatusService):
    def __init__(self, store: Store) -> None:
        super().__init__(EntityKind.contact, store)


def service_for(kind: EntityKind, store: Store) -> StatusService:
    if kind == EntityKind.quote:
        return QuoteStatusService(store)
    return ContactStatusService(store)
