from __future__ import annotations

from datetime import date, timedelta

from fastapi.testclient import TestClient

from charterdesk.app.errors import PersistenceError
from charterdesk.app.main import create_app
from charterdesk.app.services.recaptcha import (
    RecaptchaVerificationError,
    RecaptchaVerificationResult,
)


def build_quote_payload(**overrides) -> dict:
    payload = {
        "service_type": "charter",
        "full_name": "Lucia Fernandez",
        "email": "Lucia@Example.com",
        "phone": "+5491155550000",
        "passengers": 4,
        "origin": "eze",
        "destination": "PDP",
        "departure_date": (date.today() + timedelta(days=21)).isoformat(),
        "departure_time": "09:30",
        "locale": "es",
        "comments": "Two dogs travelling",
    }
    payload.update(overrides)
    return payload


def build_contact_payload(**overrides) -> dict:
    payload = {
        "full_name": "Martin Suarez",
        "email": "martin@example.com",
        "subject": "Empty legs",
        "message": "Any empty legs to Punta del Este in January?",
        "contact_via_whatsapp": True,
        "locale": "en",
    }
    payload.update(overrides)
    return payload


def create_quote(client: TestClient, **overrides) -> str:
    response = client.post("/quotes", json=build_quote_payload(**overrides))
    assert response.status_code == 200
    return response.json()["quote_id"]


def test_quote_submission_starts_pending(client) -> None:
    response = client.post("/quotes", json=build_quote_payload())
    assert response.status_code == 200
    body = response.json()
    assert body["current_status"] == "pending"

    status_view = client.get(f"/admin/quotes/{body['quote_id']}/status")
    assert status_view.status_code == 200
    view = status_view.json()
    assert view["current_status"] == "pending"
    assert view["history"] == []
    assert view["available_actions"] == ["closed", "processing"]


def test_quote_with_same_origin_and_destination_is_400(client) -> None:
    response = client.post("/quotes", json=build_quote_payload(destination="EZE"))
    assert response.status_code == 400
    assert response.json()["detail"]["reason"] == "validation_error"


def test_quote_status_lifecycle(client) -> None:
    quote_id = create_quote(client)

    first = client.patch(
        f"/admin/quotes/{quote_id}/status",
        json={"status": "processing", "note": "checking fleet"},
        headers={"User-Agent": "dashboard", "X-Forwarded-For": "198.51.100.4, 10.0.0.1"},
    )
    assert first.status_code == 200
    body = first.json()
    assert body["current_status"] == "processing"
    assert body["available_actions"] == ["closed", "quoted"]
    assert body["status_change"]["from_status"] == "pending"
    assert body["status_change"]["changed_by"] == "admin@localhost"
    assert body["status_change"]["ip_address"] == "198.51.100.4"
    assert body["status_change"]["user_agent"] == "dashboard"

    backward = client.patch(f"/admin/quotes/{quote_id}/status", json={"status": "pending"})
    assert backward.status_code == 400
    detail = backward.json()["detail"]
    assert detail["reason"] == "invalid_transition"
    assert detail["from"] == "processing"
    assert detail["to"] == "pending"
    assert detail["allowed"] == ["closed", "quoted"]

    history = client.get(f"/admin/quotes/{quote_id}/status").json()["history"]
    assert len(history) == 1


def test_status_errors_map_to_http_codes(client) -> None:
    quote_id = create_quote(client)

    unknown_status = client.patch(f"/admin/quotes/{quote_id}/status", json={"status": "lost"})
    assert unknown_status.status_code == 400
    assert unknown_status.json()["detail"]["reason"] == "validation_error"

    missing = client.patch("/admin/quotes/quote_missing/status", json={"status": "processing"})
    assert missing.status_code == 404
    assert missing.json()["detail"]["reason"] == "not_found"

    missing_view = client.get("/admin/contacts/contact_missing/status")
    assert missing_view.status_code == 404

    conflict = client.patch(
        f"/admin/quotes/{quote_id}/status",
        json={"status": "processing", "expected_status": "quoted"},
    )
    assert conflict.status_code == 409
    assert conflict.json()["detail"]["current"] == "pending"


def test_contact_graph_over_http(client) -> None:
    created = client.post("/contacts", json=build_contact_payload())
    assert created.status_code == 200
    contact_id = created.json()["contact_id"]

    skip = client.patch(f"/admin/contacts/{contact_id}/status", json={"status": "closed"})
    assert skip.status_code == 400

    for status in ("responded", "closed"):
        response = client.patch(f"/admin/contacts/{contact_id}/status", json={"status": status})
        assert response.status_code == 200

    terminal = client.patch(f"/admin/contacts/{contact_id}/status", json={"status": "responded"})
    assert terminal.status_code == 400
    assert terminal.json()["detail"]["allowed"] == []


def test_bulk_status_endpoint(client) -> None:
    quote_ids = [create_quote(client) for _ in range(4)]

    response = client.post(
        "/admin/quotes/bulk-status",
        json={"entity_ids": quote_ids + ["quote_missing"], "status": "processing"},
    )
    assert response.status_code == 200
    summary = response.json()
    assert summary["requested"] == 5
    assert summary["updated"] == 4
    assert summary["failed"] == 1
    assert summary["results"][-1]["error"]["reason"] == "not_found"

    empty = client.post("/admin/quotes/bulk-status", json={"entity_ids": [], "status": "closed"})
    assert empty.status_code == 400

    metrics = client.get("/metrics").text
    assert 'charterdesk_status_changes_total{kind="quote",status="processing"} 4' in metrics


def test_listing_statistics_and_stale(client) -> None:
    first = create_quote(client, origin="SCL", destination="LIM")
    second = create_quote(client)
    client.patch(f"/admin/quotes/{first}/status", json={"status": "processing"})

    listed = client.get("/admin/quotes?limit=1")
    assert listed.status_code == 200
    body = listed.json()
    assert body["total"] == 2
    assert body["has_more"] is True
    assert body["items"][0]["entity"]["id"] == second

    processing = client.get("/admin/quotes?status=processing").json()
    assert [item["entity"]["id"] for item in processing["items"]] == [first]

    searched = client.get("/admin/quotes?search=lim").json()
    assert searched["total"] == 1
    assert searched["items"][0]["current_status"] == "processing"

    today = date.today().isoformat()
    combined = client.get(f"/admin/quotes?search=lim&created_from={today}")
    assert combined.status_code == 400

    inverted = client.get(f"/admin/quotes?created_from={today}&created_to=2020-01-01")
    assert inverted.status_code == 400

    stats = client.get("/admin/quotes/statistics").json()
    assert stats["total"] == 2
    assert stats["statistics"]["pending"] == 1
    assert stats["statistics"]["processing"] == 1

    stale = client.get("/admin/quotes/stale?days_old=7")
    assert stale.status_code == 200
    assert stale.json()["total"] == 0
    assert client.get("/admin/contacts/stale").status_code in {404, 405}


def test_analytics_dashboard(client) -> None:
    converted = create_quote(client)
    quoted = create_quote(client)
    for status in ("processing", "quoted", "converted"):
        client.patch(f"/admin/quotes/{converted}/status", json={"status": status})
    for status in ("processing", "quoted"):
        client.patch(f"/admin/quotes/{quoted}/status", json={"status": status})

    distribution = client.get("/admin/analytics/status-distribution?kind=quote&time_range=7d")
    assert distribution.status_code == 200
    body = distribution.json()
    assert body["time_range"] == "7d"
    assert body["statistics"]["converted"] == 1
    assert body["total"] == 2

    default_range = client.get("/admin/analytics/status-distribution?kind=contact").json()
    assert default_range["time_range"] == "30d"
    assert set(default_range["statistics"]) == {"pending", "responded", "closed"}

    bad_range = client.get("/admin/analytics/status-distribution?time_range=1y")
    assert bad_range.status_code == 400
    bad_kind = client.get("/admin/analytics/status-distribution?kind=lead")
    assert bad_kind.status_code == 400

    overview = client.get("/admin/analytics/overview?time_range=all").json()
    assert overview["total_quotes"] == 2
    assert overview["conversion_rate"] == 50.0
    assert overview["top_routes"] == [{"route": "EZE -> PDP", "count": 2}]


def test_analytics_events_are_deduplicated_and_flushed(client) -> None:
    event = {"event_name": "quote_form_view", "event_data": {"step": 1}, "session_id": "s-1"}

    first = client.post("/analytics/events", json=event)
    assert first.json() == {"accepted": True, "deduplicated": False, "pending": 1}
    duplicate = client.post("/analytics/events", json=event)
    assert duplicate.json()["deduplicated"] is True

    flushed = client.post("/admin/analytics/flush")
    assert flushed.status_code == 200
    assert flushed.json() == {"flushed": 1, "pending": 0}
    assert len(client.app.state.store.list_analytics_events()) == 1


def test_public_forms_are_rate_limited(monkeypatch) -> None:
    monkeypatch.setenv("PERSISTENCE_ENABLED", "false")
    monkeypatch.setenv("CONTACT_RATE_LIMIT_PER_HOUR", "2")
    client = TestClient(create_app())

    for _ in range(2):
        assert client.post("/contacts", json=build_contact_payload()).status_code == 200
    limited = client.post("/contacts", json=build_contact_payload())
    assert limited.status_code == 429
    assert int(limited.headers["Retry-After"]) > 0

    other_ip = client.post(
        "/contacts",
        json=build_contact_payload(),
        headers={"X-Forwarded-For": "203.0.113.50"},
    )
    assert other_ip.status_code == 200


def test_recaptcha_guards_public_forms(monkeypatch) -> None:
    monkeypatch.setenv("PERSISTENCE_ENABLED", "false")
    monkeypatch.setenv("RECAPTCHA_ENABLED", "true")
    monkeypatch.setenv("RECAPTCHA_SECRET", "test-secret")
    client = TestClient(create_app())

    missing = client.post("/quotes", json=build_quote_payload())
    assert missing.status_code == 400

    def reject(**kwargs):
        raise RecaptchaVerificationError("recaptcha score below threshold")

    monkeypatch.setattr("charterdesk.app.services.recaptcha.verify_recaptcha_token", reject)
    rejected = client.post("/quotes", json=build_quote_payload(recaptcha_token="bad"))
    assert rejected.status_code == 403

    seen: dict = {}

    def accept(**kwargs):
        seen.update(kwargs)
        return RecaptchaVerificationResult(success=True, score=0.9, action="contact_submit", hostname="x")

    monkeypatch.setattr("charterdesk.app.services.recaptcha.verify_recaptcha_token", accept)
    accepted = client.post("/contacts", json=build_contact_payload(recaptcha_token="good"))
    assert accepted.status_code == 200
    assert seen["expected_action"] == "contact_submit"
    assert seen["secret"] == "test-secret"


def test_storage_failure_is_generic_500(client, monkeypatch) -> None:
    quote_id = create_quote(client)

    def broken_append(**kwargs):
        raise PersistenceError("append_status_record failed: database is locked at /var/lib/db")

    monkeypatch.setattr(client.app.state.store, "append_status_record", broken_append)
    response = client.patch(f"/admin/quotes/{quote_id}/status", json={"status": "processing"})

    assert response.status_code == 500
    assert response.json()["detail"] == {"reason": "internal_error", "message": "internal server error"}
    assert "database" not in response.text
    assert "charterdesk_requests_5xx_total 1" in client.get("/metrics").text


def test_status_view_flags_terminal_states(client) -> None:
    quote_id = create_quote(client)
    view = client.get(f"/admin/quotes/{quote_id}/status").json()
    assert view["terminal"] is False

    closed = client.patch(f"/admin/quotes/{quote_id}/status", json={"status": "closed"}).json()
    assert closed["terminal"] is True
    assert closed["available_actions"] == []


def test_analytics_time_series_and_service_types(client) -> None:
    create_quote(client)
    create_quote(client, service_type="helicopter")
    create_quote(client, service_type="helicopter")

    series = client.get("/admin/analytics/quotes-over-time?group_by=month")
    assert series.status_code == 200
    assert [point["count"] for point in series.json()] in ([3], [1, 2], [2, 1])

    bad_group = client.get("/admin/analytics/quotes-over-time?group_by=quarter")
    assert bad_group.status_code == 400

    service_types = client.get("/admin/analytics/service-types").json()
    assert service_types == [
        {"service_type": "helicopter", "count": 2},
        {"service_type": "charter", "count": 1},
    ]

    overview = client.get("/admin/analytics/overview?group_by=week").json()
    assert overview["group_by"] == "week"
    assert sum(point["count"] for point in overview["quotes_over_time"]) == 3
    assert overview["quotes_by_service_type"] == service_types


def test_recent_analytics_events_listing(client) -> None:
    for step in range(3):
        client.post("/analytics/events", json={"event_name": "quote_step", "event_data": {"step": step}})
    client.post("/admin/analytics/flush")

    listed = client.get("/admin/analytics/events?limit=2")
    assert listed.status_code == 200
    events = listed.json()
    assert len(events) == 2
    assert all(event["event_name"] == "quote_step" for event in events)
