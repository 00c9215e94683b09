from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest
from pydantic import ValidationError as PydanticValidationError

from charterdesk.app.errors import (
    InvalidTransitionError,
    NotFoundError,
    StatusConflictError,
    ValidationError,
)
from charterdesk.app.models import CreatedWindowFilter, QuoteStatus, SearchFilter, utc_now


def test_entity_without_records_is_pending(quote_service, contact_service, make_quote, make_contact) -> None:
    quote = make_quote()
    contact = make_contact()
    assert quote_service.get_current_status(quote.id) == "pending"
    assert contact_service.get_current_status(contact.id) == "pending"
    assert quote_service.get_history(quote.id) == []


def test_backward_quote_transition_leaves_history_untouched(quote_service, make_quote) -> None:
    quote = make_quote()
    quote_service.update_status(quote.id, "processing", "admin@x")

    with pytest.raises(InvalidTransitionError):
        quote_service.update_status(quote.id, "pending", "admin@x")

    history = quote_service.get_history(quote.id)
    assert len(history) == 1
    assert history[0].status == "processing"
    assert history[0].from_status == "pending"


def test_contact_closed_is_terminal(contact_service, make_contact) -> None:
    contact = make_contact()
    contact_service.update_status(contact.id, "responded", "admin@x")
    contact_service.update_status(contact.id, "closed", "admin@x")

    with pytest.raises(InvalidTransitionError):
        contact_service.update_status(contact.id, "responded", "admin@x")
    assert contact_service.get_current_status(contact.id) == "closed"


def test_current_status_follows_last_applied_transition(quote_service, make_quote) -> None:
    quote = make_quote()
    applied = ["processing", "processing", "quoted", QuoteStatus.converted]
    for status in applied:
        quote_service.update_status(quote.id, status, "ops@example.com", note=f"to {status}")

    history = quote_service.get_history(quote.id)
    assert [record.status for record in history] == [
        "processing",
        "processing",
        "quoted",
        "converted",
    ]
    assert [record.sequence for record in history] == sorted(r.sequence for r in history)
    assert quote_service.get_current_status(quote.id) == "converted"
    assert quote_service.available_actions(quote.id) == []


def test_status_records_are_immutable(quote_service, make_quote) -> None:
    quote = make_quote()
    record = quote_service.update_status(quote.id, "closed", "admin@x", note="duplicate")
    with pytest.raises(PydanticValidationError):
        record.status = "pending"


def test_update_records_audit_context_and_touches_quote(quote_service, store, make_quote) -> None:
    quote = make_quote(created_at=utc_now() - timedelta(days=2))
    record = quote_service.update_status(
        quote.id,
        "processing",
        "  ops@example.com ",
        ip_address="203.0.113.9",
        user_agent="pytest",
    )
    assert record.changed_by == "ops@example.com"
    assert record.ip_address == "203.0.113.9"
    assert record.user_agent == "pytest"
    assert store.get_entity(quote_service.kind, quote.id).updated_at_utc == record.occurred_at


def test_update_rejects_bad_input_before_lookup(quote_service, make_quote) -> None:
    with pytest.raises(ValidationError):
        quote_service.update_status("quote_missing", "archived", "admin@x")
    with pytest.raises(NotFoundError):
        quote_service.update_status("quote_missing", "processing", "admin@x")

    quote = make_quote()
    with pytest.raises(ValidationError):
        quote_service.update_status(quote.id, "processing", "   ")
    assert quote_service.get_history(quote.id) == []


def test_expected_status_makes_update_conditional(quote_service, make_quote) -> None:
    quote = make_quote()
    quote_service.update_status(quote.id, "processing", "a@x", expected_status="pending")

    with pytest.raises(StatusConflictError) as excinfo:
        quote_service.update_status(quote.id, "closed", "b@x", expected_status="pending")
    assert excinfo.value.current_status == "processing"
    assert len(quote_service.get_history(quote.id)) == 1


def test_concurrent_conditional_updates_admit_one_writer(quote_service, make_quote) -> None:
    quote = make_quote()

    def attempt(index: int) -> bool:
        try:
            quote_service.update_status(
                quote.id, "closed", f"admin{index}@x", expected_status="pending"
            )
        except (StatusConflictError, InvalidTransitionError):
            return False
        return True

    with ThreadPoolExecutor(max_workers=8) as executor:
        results = list(executor.map(attempt, range(16)))

    assert results.count(True) == 1
    assert len(quote_service.get_history(quote.id)) == 1


def test_statistics_sum_to_entity_count(quote_service, make_quote) -> None:
    quotes = [make_quote() for _ in range(5)]
    quote_service.update_status(quotes[0].id, "processing", "admin@x")
    quote_service.update_status(quotes[1].id, "closed", "admin@x")
    quote_service.update_status(quotes[2].id, "processing", "admin@x")
    quote_service.update_status(quotes[2].id, "quoted", "admin@x")

    stats = quote_service.get_statistics()
    assert stats == {
        "pending": 2,
        "processing": 1,
        "quoted": 1,
        "converted": 0,
        "closed": 1,
    }
    assert sum(stats.values()) == len(quotes)


def test_list_by_status_paginates_after_filtering(quote_service, make_quote) -> None:
    now = utc_now()
    quotes = [make_quote(created_at=now - timedelta(minutes=index)) for index in range(6)]
    for quote in quotes[::2]:
        quote_service.update_status(quote.id, "processing", "admin@x")

    first_page, total = quote_service.list_by_status("processing", limit=2)
    assert total == 3
    assert [item.entity.id for item in first_page] == [quotes[0].id, quotes[2].id]
    assert all(item.current_status == "processing" for item in first_page)

    second_page, _ = quote_service.list_by_status("processing", limit=2, offset=2)
    assert [item.entity.id for item in second_page] == [quotes[4].id]

    with pytest.raises(ValidationError):
        quote_service.list_by_status("lost")


def test_list_entities_applies_filter_variants(quote_service, make_quote) -> None:
    now = utc_now()
    old = make_quote(origin="SCL", destination="LIM", created_at=now - timedelta(days=40))
    recent = make_quote(full_name="Ana Costa", created_at=now)

    items, total = quote_service.list_entities(SearchFilter(term="scl"))
    assert total == 1
    assert items[0].entity.id == old.id

    window = CreatedWindowFilter(created_from=(now - timedelta(days=1)).date())
    items, total = quote_service.list_entities(window)
    assert [item.entity.id for item in items] == [recent.id]
    assert items[0].current_status == "pending"


def test_list_stale_keeps_open_quotes_only(quote_service, make_quote) -> None:
    now = utc_now()
    stale_pending = make_quote(created_at=now - timedelta(days=10))
    stale_processing = make_quote(created_at=now - timedelta(days=9))
    stale_closed = make_quote(created_at=now - timedelta(days=8))
    make_quote(created_at=now - timedelta(days=1))
    quote_service.update_status(stale_processing.id, "processing", "admin@x")
    quote_service.update_status(stale_closed.id, "closed", "admin@x")

    stale = quote_service.list_stale(7)
    assert [item.entity.id for item in stale] == [stale_pending.id, stale_processing.id]

    with pytest.raises(ValidationError):
        quote_service.list_stale(0)
