import json
from datetime import datetime

import pytest

from app.core.config import settings
from app.db.db_models import UserRole

from conftest import JHB, auth_headers


def booking_body(**overrides):
    body = {
        "date": datetime.utcnow().date().isoformat(),
        "time": "23:59",
        "location": {"type": "Point", "coordinates": JHB},
        "job_size": "small",
        "estimated_duration_minutes": 60,
    }
    body.update(overrides)
    return body


@pytest.fixture
async def parties(db, make_user, make_provider, make_service):
    customer = await make_user()
    provider = await make_provider(full_name="Thabo Provider", phone="+27820000000")
    service = await make_service(provider, price=400.0)
    await db.commit()
    return customer, provider, service


async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


async def test_requires_token(client):
    response = await client.get("/bookings/")
    assert response.status_code == 401


async def test_providers_cannot_create_bookings(client, parties):
    _, provider, service = parties
    response = await client.post(
        "/bookings/", json=booking_body(service_id=service.id), headers=auth_headers(provider)
    )
    assert response.status_code == 403


async def test_create_hides_provider_until_accepted(client, parties):
    customer, _, service = parties

    response = await client.post(
        "/bookings/", json=booking_body(service_id=service.id), headers=auth_headers(customer)
    )

    assert response.status_code == 201
    data = response.json()
    assert data["status"] == "pending_payment"
    assert data["reference_number"].startswith("SH-BK-")
    assert data["calculated_price"] == 400.0
    assert data["service"]["provider_id"] is None
    assert data["service"]["provider_name"] is None
    assert data["chat_token"] is None


async def test_create_queues_when_nobody_matches(client, parties):
    customer = parties[0]
    response = await client.post(
        "/bookings/",
        json=booking_body(service_title="Pool Cleaning", required_skills=["pools"]),
        headers=auth_headers(customer),
    )
    assert response.status_code == 202
    assert response.json()["queued"] is True


async def test_create_rejects_other_days(client, parties):
    customer, _, service = parties
    response = await client.post(
        "/bookings/",
        json=booking_body(service_id=service.id, date="2020-01-01"),
        headers=auth_headers(customer),
    )
    assert response.status_code == 400
    assert response.json()["detail"]["field"] == "date"


async def test_pay_then_accept(client, parties):
    customer, provider, service = parties
    created = await client.post(
        "/bookings/", json=booking_body(service_id=service.id), headers=auth_headers(customer)
    )
    booking_id = created.json()["id"]

    early = await client.post(f"/bookings/{booking_id}/accept", headers=auth_headers(provider))
    assert early.status_code == 409
    assert early.json()["detail"]["current_state"]["payment_status"] == "pending"

    intent = await client.post(
        "/payments/intent", json={"booking_id": booking_id, "tip_amount": 20}, headers=auth_headers(customer)
    )
    assert intent.status_code == 200
    intent_data = intent.json()
    assert intent_data["amount"] == 420.0
    assert intent_data["simulated"] is True

    event = {
        "type": "payment_intent.succeeded",
        "data": {"object": {
            "id": intent_data["intent_id"],
            "amount": 42000,
            "metadata": {"booking_id": booking_id, "payment_id": intent_data["payment_id"]},
        }},
    }
    for _ in range(2):
        webhook = await client.post("/payments/webhook", content=json.dumps(event))
        assert webhook.status_code == 200
        assert webhook.json()["status"] == "success"

    accepted = await client.post(f"/bookings/{booking_id}/accept", headers=auth_headers(provider))
    assert accepted.status_code == 200
    assert accepted.json()["request_status"] == "accepted"
    assert accepted.json()["chat_token"].startswith(f"{booking_id}:service_provider:")

    seen = (await client.get(f"/bookings/{booking_id}", headers=auth_headers(customer))).json()
    assert seen["status"] == "confirmed"
    assert seen["payment_status"] == "paid_to_escrow"
    assert seen["escrow_amount"] == 420.0
    assert seen["service"]["provider_id"] == provider.id
    assert seen["service"]["provider_name"] == "Thabo Provider"
    assert seen["chat_token"].startswith(f"{booking_id}:customer:")
    assert seen["payment"]["escrow_status"] == "held"


async def test_list_filters_by_status(client, parties):
    customer, _, service = parties
    await client.post("/bookings/", json=booking_body(service_id=service.id), headers=auth_headers(customer))

    pending = await client.get("/bookings/", params={"status": "pending_payment"}, headers=auth_headers(customer))
    done = await client.get("/bookings/", params={"status": "completed"}, headers=auth_headers(customer))

    assert len(pending.json()) == 1
    assert done.json() == []


async def test_stranger_gets_forbidden(client, parties, db, make_user):
    customer, _, service = parties
    created = await client.post(
        "/bookings/", json=booking_body(service_id=service.id), headers=auth_headers(customer)
    )
    stranger = await make_user(role=UserRole.CUSTOMER.value)
    await db.commit()

    response = await client.post(
        f"/bookings/{created.json()['id']}/location",
        json={"coordinates": JHB},
        headers=auth_headers(stranger),
    )
    assert response.status_code == 403


async def test_unknown_booking(client, parties):
    customer = parties[0]
    response = await client.get("/bookings/does-not-exist", headers=auth_headers(customer))
    assert response.status_code == 404


async def test_webhook_ignores_other_events(client):
    response = await client.post("/payments/webhook", content=json.dumps({"type": "charge.refunded"}))
    assert response.json() == {"status": "ignored"}


async def test_unsigned_webhook_refused_for_live_payments(client, monkeypatch):
    monkeypatch.setattr(settings, "PAYMENTS_SIMULATED", False)
    monkeypatch.setattr(settings, "STRIPE_WEBHOOK_SECRET", "")
    response = await client.post("/payments/webhook", content=json.dumps({"type": "payment_intent.succeeded"}))
    assert response.status_code == 400
