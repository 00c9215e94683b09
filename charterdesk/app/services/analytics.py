from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional, Union

from charterdesk.app.errors import ValidationError
from charterdesk.app.models import (
    AllEntitiesFilter,
    EntityKind,
    GroupBy,
    QuoteRequestRecord,
    RouteCount,
    ServiceType,
    ServiceTypeCount,
    TimeRange,
    TimeSeriesPoint,
    utc_now,
)
from charterdesk.app.services.status import Store
from charterdesk.app.services.workflow import INITIAL_STATUS, statuses_for

TIME_RANGE_DAYS = {
    TimeRange.last_7_days: 7,
    TimeRange.last_30_days: 30,
    TimeRange.last_90_days: 90,
}


def parse_time_range(raw: Union[str, TimeRange, None]) -> TimeRange:
    if raw is None or raw == "":
        return TimeRange.last_30_days
    if isinstance(raw, TimeRange):
        return raw
    try:
        return TimeRange(raw.strip().lower())
    except ValueError as exc:
        valid = ", ".join(item.value for item in TimeRange)
        raise ValidationError(f"invalid time range: {raw!r}. valid time ranges: {valid}") from exc


def range_start(time_range: TimeRange, now: Optional[datetime] = None) -> Optional[datetime]:
    days = TIME_RANGE_DAYS.get(time_range)
    if days is None:
        return None
    return (now or utc_now()) - timedelta(days=days)


def get_status_distribution(
    store: Store,
    kind: EntityKind,
    time_range: TimeRange = TimeRange.last_30_days,
    now: Optional[datetime] = None,
) -> dict[str, int]:
    counts = {status: 0 for status in statuses_for(kind)}
    latest = store.latest_statuses(kind)
    for entity_id in store.list_entity_ids(kind, created_since=range_start(time_range, now)):
        counts[latest.get(entity_id, INITIAL_STATUS)] += 1
    return counts


def total_entities(
    store: Store,
    kind: EntityKind,
    time_range: TimeRange = TimeRange.last_30_days,
    now: Optional[datetime] = None,
) -> int:
    return len(store.list_entity_ids(kind, created_since=range_start(time_range, now)))


def conversion_rate(
    store: Store,
    time_range: TimeRange = TimeRange.last_30_days,
    now: Optional[datetime] = None,
) -> float:
    """Converted quotes as a percentage of quotes that reached ``quoted``."""
    distribution = get_status_distribution(store, EntityKind.quote, time_range, now)
    converted = distribution["converted"]
    reached_quote = distribution["quoted"] + converted
    if not reached_quote:
        return 0.0
    return round((converted / reached_quote) * 100, 2)


def average_response_hours(
    store: Store,
    time_range: TimeRange = TimeRange.last_30_days,
    now: Optional[datetime] = None,
) -> float:
    """Mean hours between a quote leaving ``pending`` and first entering ``quoted``."""
    records = store.list_kind_status_records(EntityKind.quote, since=range_start(time_range, now))
    left_pending: dict[str, datetime] = {}
    first_quoted: dict[str, datetime] = {}
    for record in records:
        leaves_pending = record.from_status == INITIAL_STATUS and record.status != INITIAL_STATUS
        if leaves_pending and record.entity_id not in left_pending:
            left_pending[record.entity_id] = record.occurred_at
        if record.status == "quoted" and record.entity_id not in first_quoted:
            first_quoted[record.entity_id] = record.occurred_at

    durations = [
        (first_quoted[entity_id] - started).total_seconds() / 3600
        for entity_id, started in left_pending.items()
        if entity_id in first_quoted
    ]
    if not durations:
        return 0.0
    return round(sum(durations) / len(durations), 2)


def top_routes(
    store: Store,
    limit: int = 10,
    time_range: TimeRange = TimeRange.last_30_days,
    now: Optional[datetime] = None,
) -> list[RouteCount]:
    counts: dict[str, int] = {}
    for quote in _quotes_in_range(store, time_range, now):
        route = f"{quote.origin.upper()} -> {quote.destination.upper()}"
        counts[route] = counts.get(route, 0) + 1
    ranked = sorted(counts.items(), key=lambda item: (-item[1], item[0]))
    safe_limit = max(1, min(limit, 50))
    return [RouteCount(route=route, count=count) for route, count in ranked[:safe_limit]]


def parse_group_by(raw: Union[str, GroupBy, None]) -> GroupBy:
    if raw is None or raw == "":
        return GroupBy.day
    if isinstance(raw, GroupBy):
        return raw
    try:
        return GroupBy(raw.strip().lower())
    except ValueError as exc:
        valid = ", ".join(item.value for item in GroupBy)
        raise ValidationError(f"invalid group_by: {raw!r}. valid values: {valid}") from exc


def _quotes_in_range(
    store: Store, time_range: TimeRange, now: Optional[datetime]
) -> list[QuoteRequestRecord]:
    since = range_start(time_range, now)
    return [
        quote
        for quote in store.list_entities(EntityKind.quote, AllEntitiesFilter())
        if not since or quote.created_at_utc >= since
    ]


def _period_key(created: datetime, group_by: GroupBy) -> str:
    if group_by == GroupBy.month:
        return created.strftime("%Y-%m")
    if group_by == GroupBy.week:
        # weeks are keyed by their Monday
        return (created.date() - timedelta(days=created.weekday())).isoformat()
    return created.date().isoformat()


def quotes_over_time(
    store: Store,
    time_range: TimeRange = TimeRange.last_30_days,
    group_by: GroupBy = GroupBy.day,
    now: Optional[datetime] = None,
) -> list[TimeSeriesPoint]:
    """Quote submissions bucketed by creation day, week or month, oldest bucket first."""
    counts: dict[str, int] = {}
    for quote in _quotes_in_range(store, time_range, now):
        key = _period_key(quote.created_at_utc, group_by)
        counts[key] = counts.get(key, 0) + 1
    return [TimeSeriesPoint(period=key, count=counts[key]) for key in sorted(counts)]


def quotes_by_service_type(
    store: Store,
    time_range: TimeRange = TimeRange.last_30_days,
    now: Optional[datetime] = None,
) -> list[ServiceTypeCount]:
    counts: dict[ServiceType, int] = {}
    for quote in _quotes_in_range(store, time_range, now):
        counts[quote.service_type] = counts.get(quote.service_type, 0) + 1
    ranked = sorted(counts.items(), key=lambda item: (-item[1], item[0].value))
    return [ServiceTypeCount(service_type=kind, count=count) for kind, count in ranked]
