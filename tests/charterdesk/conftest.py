from __future__ import annotations

from datetime import date, datetime
from typing import Callable, Optional

import pytest
from fastapi.testclient import TestClient

from charterdesk.app.main import create_app
from charterdesk.app.models import (
    ContactSubmissionRecord,
    Locale,
    QuoteRequestRecord,
    ServiceType,
    utc_now,
)
from charterdesk.app.services.status import ContactStatusService, QuoteStatusService
from charterdesk.app.store import InMemoryStore, new_id


@pytest.fixture()
def client(monkeypatch: pytest.MonkeyPatch) -> TestClient:
    monkeypatch.setenv("PERSISTENCE_ENABLED", "false")
    monkeypatch.setenv("AUTH_ENABLED", "false")
    monkeypatch.setenv("RECAPTCHA_ENABLED", "false")
    app = create_app()
    return TestClient(app)


@pytest.fixture()
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture()
def quote_service(store: InMemoryStore) -> QuoteStatusService:
    return QuoteStatusService(store)


@pytest.fixture()
def contact_service(store: InMemoryStore) -> ContactStatusService:
    return ContactStatusService(store)


@pytest.fixture()
def make_quote(store: InMemoryStore) -> Callable[..., QuoteRequestRecord]:
    def factory(
        *,
        origin: str = "EZE",
        destination: str = "MVD",
        full_name: str = "Lucia Fernandez",
        email: str = "lucia@example.com",
        service_type: ServiceType = ServiceType.charter,
        created_at: Optional[datetime] = None,
    ) -> QuoteRequestRecord:
        created = created_at or utc_now()
        record = QuoteRequestRecord(
            id=new_id("quote"),
            service_type=service_type,
            full_name=full_name,
            email=email,
            phone=None,
            passengers=4,
            origin=origin,
            destination=destination,
            departure_date=date(2026, 12, 1),
            departure_time="09:30",
            locale=Locale.es,
            created_at_utc=created,
            updated_at_utc=created,
        )
        return store.insert_quote(record)

    return factory


@pytest.fixture()
def make_contact(store: InMemoryStore) -> Callable[..., ContactSubmissionRecord]:
    def factory(
        *,
        full_name: str = "Martin Suarez",
        subject: Optional[str] = "Empty legs",
        created_at: Optional[datetime] = None,
    ) -> ContactSubmissionRecord:
        record = ContactSubmissionRecord(
            id=new_id("contact"),
            full_name=full_name,
            email="martin@example.com",
            phone=None,
            subject=subject,
            message="Do you have empty legs to Punta del Este?",
            contact_via_whatsapp=False,
            locale=Locale.es,
            created_at_utc=created_at or utc_now(),
        )
        return store.insert_contact(record)

    return factory
