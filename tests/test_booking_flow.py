from datetime import timedelta

import pytest
from sqlalchemy import select, func

from app.core.config import settings
from app.core.exceptions import ForbiddenError, InvalidStateError, ValidationFailedError
from app.core.security import verify_chat_token
from app.db.db_models import Booking, Payment, ProviderProfile, WalletTransaction
from app.models.booking import BookingCreate
from app.services.booking_service import BookingStateMachine
from app.services.escrow_service import EscrowLedger
from app.services.payment_service import PaymentService
from app.services.workflow_service import WorkflowService

from conftest import JHB, NOW

# ~1.1 m north of JHB
NEXT_TO_JHB = [28.0, -25.99999]


def booking_request(**overrides):
    data = {
        "date": NOW.date(),
        "time": "10:00",
        "location": {"type": "Point", "coordinates": JHB},
        "job_size": "small",
        "estimated_duration_minutes": 120,
    }
    data.update(overrides)
    return BookingCreate(**data)


def succeeded_event(booking, payment, intent_id="pi_test_1"):
    return {
        "type": "payment_intent.succeeded",
        "data": {"object": {
            "id": intent_id,
            "amount": int(payment.amount * 100),
            "metadata": {"booking_id": booking.id, "payment_id": payment.id},
        }},
    }


@pytest.fixture
async def market(db, notifier, make_user, make_provider, make_service):
    customer = await make_user(full_name="Naledi Customer")
    provider = await make_provider(full_name="Thabo Provider", phone="+27820000000")
    service = await make_service(provider, price=1000.0)
    machine = BookingStateMachine(db, notifier=notifier)
    payments = PaymentService(db, bookings=machine)
    return customer, provider, service, machine, payments


async def create(market, **overrides):
    customer, _, service, machine, _ = market
    overrides.setdefault("service_id", service.id)
    return await machine.create_booking(customer, booking_request(**overrides), now=NOW)


async def fund(market, booking, tip_amount=0.0):
    customer, _, _, _, payments = market
    intent = await payments.create_payment_intent(customer, booking.id, tip_amount)
    await payments.handle_event(succeeded_event(booking, intent.payment, intent.intent_id))
    return intent.payment


async def deposits(db, booking_id):
    return await db.scalar(
        select(func.count(WalletTransaction.id)).where(
            WalletTransaction.booking_id == booking_id, WalletTransaction.type == "deposit"
        )
    )


async def claim_of(db, provider):
    profile = await db.scalar(select(ProviderProfile).where(ProviderProfile.user_id == provider.id))
    await db.refresh(profile)
    return profile.active_booking_id


# ─── createBooking ───────────────────────────────────────────────────

async def test_direct_booking_uses_assigned_provider(db, market, notifier):
    _, provider, service, _, _ = market

    result = await create(market)

    booking = result.booking
    assert not result.queued
    assert result.match.provider.id == provider.id
    assert result.match.distance == 0
    assert booking.status == "pending_payment"
    assert booking.request_status == "pending"
    assert booking.payment_status == "pending"
    assert booking.reference_number == "SH-BK-000001"
    assert booking.calculated_price == 1000.0
    assert booking.provider_distance == 0
    assert await claim_of(db, provider) == booking.id
    assert "new-booking-request" in notifier.names(provider.id)

    workflow = await WorkflowService(db).get(booking.id)
    assert workflow.steps[0]["status"] == "completed"
    assert all(step["status"] == "pending" for step in workflow.steps[1:])


async def test_job_size_and_area_pricing(market):
    result = await create(
        market,
        job_size="large",
        location={"type": "Point", "coordinates": JHB, "address": "Rivonia Rd, Sandton"},
    )
    assert result.booking.location_multiplier == 1.3
    assert result.booking.base_price == 1300.0
    assert result.booking.calculated_price == 2600.0


async def test_custom_job_uses_custom_price(market):
    result = await create(market, job_size="custom", custom_price=750.0)
    assert result.booking.calculated_price == 750.0


async def test_custom_job_requires_price(db, market):
    _, provider, _, _, _ = market
    with pytest.raises(ValidationFailedError) as exc:
        await create(market, job_size="custom")
    assert exc.value.field == "custom_price"
    assert await claim_of(db, provider) is None


async def test_location_is_required(market):
    with pytest.raises(ValidationFailedError) as exc:
        await create(market, location=None)
    assert exc.value.field == "location"


async def test_null_island_location_rejected(market):
    with pytest.raises(ValidationFailedError):
        await create(market, location={"type": "Point", "coordinates": [0, 0]})


@pytest.mark.parametrize("days", [-1, 1])
async def test_only_same_day_bookings(market, days):
    with pytest.raises(ValidationFailedError) as exc:
        await create(market, date=NOW.date() + timedelta(days=days))
    assert exc.value.field == "date"


async def test_time_already_passed(market):
    with pytest.raises(ValidationFailedError) as exc:
        await create(market, time="09:00")
    assert exc.value.field == "time"


async def test_iso_timestamp_date_accepted(market):
    result = await create(market, date=f"{NOW.date().isoformat()}T08:00:00.000Z")
    assert result.booking.date == NOW.date()


async def test_profile_location_refreshed_when_far(market):
    customer = market[0]
    customer.latitude, customer.longitude = -26.2, 28.2

    await create(market)

    assert (customer.longitude, customer.latitude) == tuple(JHB)


async def test_unapproved_service_rejected(market, make_service):
    provider = market[1]
    pending = await make_service(provider, title="Pending Service", admin_approved=False)
    with pytest.raises(ValidationFailedError):
        await create(market, service_id=pending.id)


async def test_queued_when_nobody_available(db, market, make_user):
    with pytest.raises(ValidationFailedError):
        await create(market, service_id=None)

    result = await create(market, service_id=None, service_title="Roof Painting", required_skills=["painting"])

    assert result.queued
    assert result.booking is None
    assert await db.scalar(select(func.count(Booking.id))) == 0


async def test_busy_provider_is_not_double_booked(db, market, make_user):
    customer, _, service, machine, _ = market
    first = await create(market)
    other = await make_user()

    second = await machine.create_booking(other, booking_request(service_id=service.id), now=NOW)

    assert first.booking is not None
    assert second.queued


async def test_falls_back_to_matching_when_assigned_provider_busy(db, market, make_provider, make_service):
    backup = await make_provider(lng=28.05, lat=-26.0)
    backup_service = await make_service(backup, title="Leak Repair")
    await create(market)

    # second request for the same service while its provider is busy
    result = await create(market)

    assert result.match.provider.id == backup.id
    assert result.booking.service_id == backup_service.id
    assert result.booking.provider_distance > 4


async def test_only_customers_book(market):
    _, provider, service, machine, _ = market
    with pytest.raises(ForbiddenError):
        await machine.create_booking(provider, booking_request(service_id=service.id), now=NOW)


# ─── payment ─────────────────────────────────────────────────────────

async def test_webhook_funds_booking_exactly_once(db, market, notifier):
    customer, provider, _, _, payments = market
    booking = (await create(market)).booking
    intent = await payments.create_payment_intent(customer, booking.id)
    assert intent.simulated
    assert intent.payment.reference_number == "SH-PY-000001"

    event = succeeded_event(booking, intent.payment, intent.intent_id)
    await payments.handle_event(event)
    await payments.handle_event(event)

    await db.refresh(booking)
    assert booking.payment_status == "paid_to_escrow"
    assert booking.status == "pending_acceptance"
    assert booking.escrow_amount == 1000.0
    assert verify_chat_token(booking.customer_chat_token, booking.id, customer.id, "customer")
    assert await deposits(db, booking.id) == 1
    assert notifier.names(provider.id).count("payment-received") == 1


async def test_intent_reused_while_pending(market):
    customer, _, _, _, payments = market
    booking = (await create(market)).booking
    first = await payments.create_payment_intent(customer, booking.id)
    second = await payments.create_payment_intent(customer, booking.id, tip_amount=50.0)
    assert first.payment.id == second.payment.id
    assert second.payment.amount == 1050.0
    assert second.payment.tip_amount == 50.0


async def test_only_booking_customer_can_pay(market, make_user):
    payments = market[4]
    booking = (await create(market)).booking
    stranger = await make_user()
    with pytest.raises(ForbiddenError):
        await payments.create_payment_intent(stranger, booking.id)


async def test_webhook_matches_by_intent_id(db, market):
    customer, _, _, _, payments = market
    booking = (await create(market)).booking
    intent = await payments.create_payment_intent(customer, booking.id)

    await payments.handle_event({
        "type": "payment_intent.succeeded",
        "data": {"object": {"id": intent.intent_id, "amount_received": 100000, "currency": "zar", "metadata": {}}},
    })

    await db.refresh(booking)
    assert booking.payment_status == "paid_to_escrow"


async def test_underpaid_intent_does_not_fund(db, market):
    customer, _, _, _, payments = market
    booking = (await create(market)).booking
    intent = await payments.create_payment_intent(customer, booking.id)
    event = succeeded_event(booking, intent.payment, intent.intent_id)
    event["data"]["object"]["amount"] = 1

    result = await payments.handle_event(event)

    assert result["status"] == "rejected"
    await db.refresh(booking)
    assert booking.status == "pending_payment"
    assert booking.payment_status == "pending"
    assert intent.payment.status == "pending"
    assert await deposits(db, booking.id) == 0
    assert (await EscrowLedger(db).summary()).total_held == 0.0


async def test_wrong_currency_does_not_fund(db, market):
    customer, _, _, _, payments = market
    booking = (await create(market)).booking
    intent = await payments.create_payment_intent(customer, booking.id)
    event = succeeded_event(booking, intent.payment, intent.intent_id)
    event["data"]["object"]["currency"] = "usd"

    result = await payments.handle_event(event)

    assert result["status"] == "rejected"
    assert await deposits(db, booking.id) == 0


async def test_untracked_underpaid_intent_is_not_recorded(db, market):
    payments = market[4]
    booking = (await create(market)).booking

    result = await payments.handle_event({
        "type": "payment_intent.succeeded",
        "data": {"object": {"id": "pi_untracked", "amount": 1, "metadata": {"booking_id": booking.id}}},
    })

    assert result["status"] == "unmatched"
    assert await db.scalar(select(func.count(Payment.id))) == 0
    await db.refresh(booking)
    assert booking.payment_status == "pending"


async def test_untracked_full_payment_is_reconciled(db, market):
    payments = market[4]
    booking = (await create(market)).booking

    result = await payments.handle_event({
        "type": "payment_intent.succeeded",
        "data": {"object": {
            "id": "pi_untracked", "amount": 105000, "currency": "zar",
            "metadata": {"booking_id": booking.id},
        }},
    })

    assert result["status"] == "success"
    await db.refresh(booking)
    assert booking.payment_status == "paid_to_escrow"
    assert booking.escrow_amount == 1050.0
    payment = await db.scalar(select(Payment).where(Payment.booking_id == booking.id))
    assert payment.tip_amount == 50.0


async def test_unsigned_webhooks_refused_for_live_payments(market, monkeypatch):
    payments = market[4]
    monkeypatch.setattr(settings, "PAYMENTS_SIMULATED", False)
    monkeypatch.setattr(settings, "STRIPE_WEBHOOK_SECRET", "")

    with pytest.raises(ValidationFailedError) as exc:
        payments.parse_event(b'{"type": "payment_intent.succeeded"}', None)
    assert exc.value.field == "stripe-signature"


async def test_failure_after_success_is_ignored(db, market, notifier):
    customer, _, _, _, payments = market
    booking = (await create(market)).booking
    payment = await fund(market, booking)

    result = await payments.handle_event({
        "type": "payment_intent.payment_failed",
        "data": {"object": {
            "id": payment.external_transaction_id,
            "metadata": {"payment_id": payment.id},
            "last_payment_error": {"message": "Card declined"},
        }},
    })

    assert result["status"] == "ignored"
    assert payment.failure_reason is None
    assert "payment-failed" not in notifier.names(customer.id)
    await db.refresh(booking)
    assert booking.payment_status == "paid_to_escrow"


async def test_failed_payment_recorded(db, market, notifier):
    customer, _, _, _, payments = market
    booking = (await create(market)).booking
    intent = await payments.create_payment_intent(customer, booking.id)

    result = await payments.handle_event({
        "type": "payment_intent.payment_failed",
        "data": {"object": {
            "id": intent.intent_id,
            "metadata": {"payment_id": intent.payment.id},
            "last_payment_error": {"message": "Card declined"},
        }},
    })

    assert result["status"] == "failed"
    assert intent.payment.failure_reason == "Card declined"
    assert intent.payment.status == "pending"
    assert "payment-failed" in notifier.names(customer.id)


async def test_payment_after_cancellation_is_refunded(db, market):
    customer, _, _, machine, payments = market
    booking = (await create(market)).booking
    intent = await payments.create_payment_intent(customer, booking.id)
    await machine.cancel_booking(customer, booking.id, "changed my mind", now=NOW)

    await payments.handle_event(succeeded_event(booking, intent.payment, intent.intent_id))

    await db.refresh(intent.payment)
    assert intent.payment.escrow_status == "refunded"
    assert booking.status == "cancelled"


# ─── accept / decline ────────────────────────────────────────────────

async def test_accept_before_payment_fails(market):
    _, provider, _, machine, _ = market
    booking = (await create(market)).booking

    with pytest.raises(InvalidStateError) as exc:
        await machine.accept_booking_request(provider, booking.id, now=NOW)

    assert exc.value.status_code == 409
    assert exc.value.current_state["request_status"] == "pending"
    assert booking.request_status == "pending"


async def test_second_accept_fails(market):
    _, provider, _, machine, _ = market
    booking = (await create(market)).booking
    await fund(market, booking)

    accepted = await machine.accept_booking_request(provider, booking.id, now=NOW)
    with pytest.raises(InvalidStateError) as exc:
        await machine.accept_booking_request(provider, booking.id, now=NOW)

    assert accepted.request_status == "accepted"
    assert "already processed" in exc.value.message
    assert exc.value.current_state["request_status"] == "accepted"


async def test_interleaved_accepts_have_one_winner(db, market, notifier, monkeypatch):
    customer, provider, _, first, _ = market
    second = BookingStateMachine(db, notifier=notifier)
    booking = (await create(market)).booking
    await fund(market, booking)

    # the second accept commits between the first one's read and its conditional update
    original = first._transition

    async def interleaved(target, guards, values):
        await second.accept_booking_request(provider, booking.id, now=NOW)
        return await original(target, guards, values)

    monkeypatch.setattr(first, "_transition", interleaved)

    with pytest.raises(InvalidStateError) as exc:
        await first.accept_booking_request(provider, booking.id, now=NOW)

    assert "already processed" in exc.value.message
    await db.refresh(booking)
    assert booking.request_status == "accepted"
    assert booking.status == "confirmed"
    assert notifier.names(customer.id).count("booking-accepted") == 1


async def test_accept_opens_chat(market, notifier):
    customer, provider, _, machine, _ = market
    booking = (await create(market)).booking
    await fund(market, booking)

    booking = await machine.accept_booking_request(provider, booking.id, now=NOW)

    assert booking.status == "confirmed"
    assert booking.provider_accepted_at == NOW
    assert booking.chat_active
    assert verify_chat_token(booking.provider_chat_token, booking.id, provider.id, "service_provider")
    assert "chat-ready" in notifier.names(customer.id)
    assert "booking-accepted" in notifier.names(customer.id)


async def test_only_owning_provider_can_accept(market, make_provider):
    machine = market[3]
    booking = (await create(market)).booking
    await fund(market, booking)
    intruder = await make_provider()

    with pytest.raises(ForbiddenError):
        await machine.accept_booking_request(intruder, booking.id, now=NOW)


async def test_decline_cancels_and_frees_provider(db, market, make_user, notifier):
    customer, provider, service, machine, _ = market
    booking = (await create(market)).booking

    booking = await machine.decline_booking_request(provider, booking.id, "fully booked", now=NOW)

    assert booking.request_status == "declined"
    assert booking.status == "cancelled"
    assert booking.decline_reason == "fully booked"
    assert await claim_of(db, provider) is None
    assert "booking-declined" in notifier.names(customer.id)

    with pytest.raises(InvalidStateError):
        await machine.decline_booking_request(provider, booking.id, now=NOW)

    # provider is bookable again
    other = await make_user()
    again = await machine.create_booking(other, booking_request(service_id=service.id), now=NOW)
    assert again.match.provider.id == provider.id


# ─── live tracking / start / complete ────────────────────────────────

async def _accepted(market):
    provider, machine = market[1], market[3]
    booking = (await create(market)).booking
    await fund(market, booking)
    return await machine.accept_booking_request(provider, booking.id, now=NOW)


async def _co_located(market, booking, since):
    customer, provider, _, machine, _ = market
    await machine.update_location(provider, booking.id, JHB, now=since)
    await machine.update_location(customer, booking.id, NEXT_TO_JHB, now=since)
    return await machine.update_location(provider, booking.id, JHB, now=since + timedelta(minutes=5))


async def test_start_requires_proximity(market):
    provider, machine = market[1], market[3]
    booking = await _accepted(market)

    with pytest.raises(InvalidStateError) as exc:
        await machine.start_booking(provider, booking.id, now=NOW)
    assert exc.value.current_state["can_start_job"] is False


async def test_location_updates_open_the_gate(market, notifier):
    customer, provider, _, machine, _ = market
    booking = await _accepted(market)
    t0 = NOW + timedelta(minutes=10)

    first = await machine.update_location(provider, booking.id, JHB, now=t0)
    assert first.distance is None
    assert first.role == "provider"

    close = await machine.update_location(customer, booking.id, NEXT_TO_JHB, now=t0)
    assert close.proximity_detected
    assert not close.can_start_job
    assert 1.0 < close.distance < 1.2

    ready = await machine.update_location(provider, booking.id, JHB, now=t0 + timedelta(minutes=5))
    assert ready.can_start_job
    assert "location-updated" in notifier.names(customer.id)
    assert "location-updated" in notifier.names(provider.id)


async def test_stranger_cannot_send_location(market, make_user):
    machine = market[3]
    booking = await _accepted(market)
    stranger = await make_user()
    with pytest.raises(ForbiddenError):
        await machine.update_location(stranger, booking.id, JHB, now=NOW)


async def test_full_lifecycle_with_sla_breach(db, market, notifier):
    customer, provider, _, machine, _ = market
    booking = await _accepted(market)
    await _co_located(market, booking, NOW + timedelta(minutes=10))

    started_at = NOW + timedelta(minutes=16)
    booking = await machine.start_booking(provider, booking.id, now=started_at)
    assert booking.status == "in_progress"
    assert booking.started_at == started_at

    booking = await machine.complete_booking(provider, booking.id, now=started_at + timedelta(minutes=180))

    assert booking.status == "completed"
    assert booking.actual_duration_minutes == 180
    assert booking.sla_breached
    assert booking.sla_penalty_amount == 100.0
    assert booking.payment_status == "released_to_provider"
    assert booking.commission_amount == 150.0
    assert booking.provider_payout_amount == 750.0
    assert not booking.chat_active
    assert booking.chat_terminated_at is not None

    await db.refresh(provider)
    assert provider.wallet_balance == 750.0
    assert await claim_of(db, provider) is None

    workflow = await WorkflowService(db).get(booking.id)
    assert workflow.status == "completed"

    types = (await db.execute(
        select(WalletTransaction.type).where(WalletTransaction.booking_id == booking.id)
    )).scalars().all()
    assert sorted(types) == ["commission", "deposit", "release", "sla_penalty"]
    assert "booking-completed" in notifier.names(customer.id)

    with pytest.raises(InvalidStateError):
        await machine.complete_booking(provider, booking.id, now=started_at + timedelta(minutes=200))


async def test_complete_requires_start(market):
    provider, machine = market[1], market[3]
    booking = await _accepted(market)
    with pytest.raises(InvalidStateError) as exc:
        await machine.complete_booking(provider, booking.id, now=NOW)
    assert "not been started" in exc.value.message


async def test_on_time_completion_has_no_penalty(market):
    provider, machine = market[1], market[3]
    booking = await _accepted(market)
    await _co_located(market, booking, NOW + timedelta(minutes=10))
    started_at = NOW + timedelta(minutes=16)
    await machine.start_booking(provider, booking.id, now=started_at)

    booking = await machine.complete_booking(provider, booking.id, now=started_at + timedelta(minutes=90))

    assert not booking.sla_breached
    assert booking.sla_penalty_amount == 0.0
    assert booking.provider_payout_amount == 850.0


async def test_declined_payment_refunded_on_cancel(db, market, notifier):
    customer, provider, _, machine, _ = market
    booking = (await create(market)).booking
    await fund(market, booking)
    await machine.decline_booking_request(provider, booking.id, "fully booked", now=NOW)
    assert (await EscrowLedger(db).summary()).total_held == 1000.0

    booking = await machine.cancel_booking(customer, booking.id, now=NOW)

    assert booking.status == "cancelled"
    assert booking.payment_status == "refunded"
    assert (await EscrowLedger(db).summary()).total_held == 0.0
    assert "booking-cancelled" in notifier.names(customer.id)
    types = (await db.execute(
        select(WalletTransaction.type).where(WalletTransaction.booking_id == booking.id)
    )).scalars().all()
    assert sorted(types) == ["deposit", "refund"]

    with pytest.raises(InvalidStateError):
        await machine.cancel_booking(customer, booking.id, now=NOW)


# ─── cancel ──────────────────────────────────────────────────────────

async def test_cancel_after_payment_refunds(db, market, notifier):
    customer, provider, _, machine, _ = market
    booking = await _accepted(market)

    booking = await machine.cancel_booking(customer, booking.id, "no longer needed", now=NOW)

    assert booking.status == "cancelled"
    assert booking.payment_status == "refunded"
    assert booking.cancelled_by == customer.id
    assert not booking.chat_active
    assert await claim_of(db, provider) is None
    assert "booking-cancelled" in notifier.names(provider.id)

    types = (await db.execute(
        select(WalletTransaction.type).where(WalletTransaction.booking_id == booking.id)
    )).scalars().all()
    assert sorted(types) == ["deposit", "refund"]

    with pytest.raises(InvalidStateError):
        await machine.cancel_booking(customer, booking.id, now=NOW)


async def test_cancel_before_payment_has_nothing_to_refund(market):
    customer, _, _, machine, _ = market
    booking = (await create(market)).booking

    booking = await machine.cancel_booking(customer, booking.id, now=NOW)

    assert booking.status == "cancelled"
    assert booking.payment_status == "pending"


async def test_stranger_cannot_cancel(market, make_user):
    machine = market[3]
    booking = (await create(market)).booking
    stranger = await make_user()
    with pytest.raises(ForbiddenError):
        await machine.cancel_booking(stranger, booking.id, now=NOW)


async def test_no_location_updates_after_cancel(market):
    customer, _, _, machine, _ = market
    booking = (await create(market)).booking
    await machine.cancel_booking(customer, booking.id, now=NOW)
    with pytest.raises(InvalidStateError):
        await machine.update_location(customer, booking.id, JHB, now=NOW)


# ─── ratings ─────────────────────────────────────────────────────────

async def _completed(market):
    provider, machine = market[1], market[3]
    booking = await _accepted(market)
    await _co_located(market, booking, NOW + timedelta(minutes=10))
    started_at = NOW + timedelta(minutes=16)
    await machine.start_booking(provider, booking.id, now=started_at)
    return await machine.complete_booking(provider, booking.id, now=started_at + timedelta(minutes=60))


async def test_rating_requires_completion(market):
    customer, _, _, machine, _ = market
    booking = (await create(market)).booking
    with pytest.raises(InvalidStateError):
        await machine.rate_booking(customer, booking.id, 5)


async def test_customer_rates_provider(db, market):
    customer, provider, _, machine, _ = market
    booking = await _completed(market)

    await machine.rate_booking(customer, booking.id, 4, "Quick and tidy")

    assert booking.rating == 4
    assert provider.rating == 4.0
    assert provider.total_reviews == 1

    # a second rating on the same booking replaces the first
    await machine.rate_booking(customer, booking.id, 2)
    assert provider.rating == 2.0
    assert provider.total_reviews == 1


async def test_rating_bounds(market):
    customer, _, _, machine, _ = market
    booking = await _completed(market)
    with pytest.raises(ValidationFailedError):
        await machine.rate_booking(customer, booking.id, 6)


async def test_only_counterparty_rates(market):
    _, provider, _, machine, _ = market
    booking = await _completed(market)
    with pytest.raises(ForbiddenError):
        await machine.rate_booking(provider, booking.id, 5)


async def test_provider_rates_customer(market):
    customer, provider, _, machine, _ = market
    booking = await _completed(market)

    await machine.rate_customer(provider, booking.id, 5, "Friendly")

    assert booking.customer_rating == 5
    assert customer.rating == 5.0
    assert customer.total_reviews == 1


# ─── reads ───────────────────────────────────────────────────────────

async def test_list_and_get_are_participant_scoped(market, make_user):
    customer, provider, _, machine, _ = market
    booking = (await create(market)).booking
    stranger = await make_user()

    assert [b.id for b in await machine.list_bookings(customer)] == [booking.id]
    assert [b.id for b in await machine.list_bookings(provider)] == [booking.id]
    assert await machine.list_bookings(stranger) == []
    assert (await machine.get_booking(provider, booking.id)).id == booking.id
    with pytest.raises(ForbiddenError):
        await machine.get_booking(stranger, booking.id)
