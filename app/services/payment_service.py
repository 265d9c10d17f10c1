"""
Payment intents and gateway webhook reconciliation.

The booking is paid for before the provider accepts. An intent is created for
``calculated_price + tip``; when the gateway reports success the matching
Payment is located (metadata payment id, then gateway intent id, then booking)
and handed to ``BookingStateMachine.on_payment_confirmed``, which is a no-op for
payments already deposited.
"""
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import stripe
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import (
    NotFoundError, ForbiddenError, InvalidStateError, ValidationFailedError, UpstreamFailureError,
)
from app.db.db_models import (
    User, Booking, Payment, BookingStatus, BookingPaymentStatus, PaymentStatus, generate_uuid,
)
from app.db.sequence import generate_reference
from app.services import pricing
from app.services.booking_service import BookingStateMachine, current_state

logger = logging.getLogger(__name__)

stripe.api_key = settings.STRIPE_SECRET_KEY

EVENT_SUCCEEDED = "payment_intent.succeeded"
EVENT_FAILED = "payment_intent.payment_failed"


@dataclass
class PaymentIntentResult:
    payment: Payment
    intent_id: str
    client_secret: Optional[str]
    simulated: bool


def _metadata_value(metadata: Dict[str, Any], *keys: str) -> Optional[str]:
    for key in keys:
        if metadata.get(key):
            return str(metadata[key])
    return None


def _captured_cents(intent: Dict[str, Any]) -> Optional[int]:
    captured = intent.get("amount_received")
    if captured is None:
        captured = intent.get("amount")
    try:
        return None if captured is None else int(captured)
    except (TypeError, ValueError):
        return None


def capture_mismatch(payment: Payment, intent: Dict[str, Any]) -> Optional[str]:
    """Reason the captured amount/currency disagrees with ``payment``, or ``None`` when they match."""
    captured = _captured_cents(intent)
    expected = int(round(payment.amount * 100))
    if captured is None:
        return "intent carries no amount"
    if captured != expected:
        return f"captured {captured} cents, expected {expected}"
    currency = intent.get("currency")
    if currency and currency.lower() != (payment.currency or settings.DEFAULT_CURRENCY).lower():
        return f"currency {currency} does not match {payment.currency}"
    return None


class PaymentService:
    def __init__(self, db: AsyncSession, bookings: Optional[BookingStateMachine] = None):
        self.db = db
        self.bookings = bookings or BookingStateMachine(db)

    async def _pending_payment(self, booking_id: str) -> Optional[Payment]:
        result = await self.db.execute(
            select(Payment)
            .where(Payment.booking_id == booking_id, Payment.status == PaymentStatus.PENDING.value)
            .order_by(Payment.created_at.desc())
        )
        return result.scalars().first()

    async def create_payment_intent(self, customer: User, booking_id: str, tip_amount: float = 0.0) -> PaymentIntentResult:
        booking = await self.db.get(Booking, booking_id)
        if not booking:
            raise NotFoundError("booking", "Booking not found")
        if booking.customer_id != customer.id:
            raise ForbiddenError("Not authorized to pay for this booking")
        if booking.status != BookingStatus.PENDING_PAYMENT.value or booking.payment_status != BookingPaymentStatus.PENDING.value:
            raise InvalidStateError("Booking is not awaiting payment", current_state(booking))
        if tip_amount < 0:
            raise ValidationFailedError("Tip cannot be negative", field="tip_amount")

        amount = pricing.money(booking.calculated_price + tip_amount)
        if amount <= 0:
            raise ValidationFailedError("Invalid booking amount", field="amount")

        payment = await self._pending_payment(booking.id)
        if payment is None:
            payment = Payment(
                id=generate_uuid(),
                reference_number=await generate_reference(self.db, "payment"),
                booking_id=booking.id,
                customer_id=customer.id,
                currency=settings.DEFAULT_CURRENCY,
                commission_rate=settings.COMMISSION_RATE,
                status=PaymentStatus.PENDING.value,
            )
            self.db.add(payment)
        payment.amount = amount
        payment.tip_amount = pricing.money(tip_amount)
        await self.db.flush()

        if settings.PAYMENTS_SIMULATED:
            intent_id = f"pi_sim_{payment.id.replace('-', '')[:24]}"
            client_secret = f"{intent_id}_secret_simulated"
            logger.info(f"[MOCK STRIPE] Intent {intent_id} for {amount:.2f} {payment.currency} (booking {booking.id})")
            simulated = True
        else:
            try:
                intent = stripe.PaymentIntent.create(
                    amount=int(round(amount * 100)),  # Amount in cents
                    currency=payment.currency,
                    metadata={
                        "booking_id": booking.id,
                        "payment_id": payment.id,
                        "customer_id": customer.id,
                    },
                )
            except stripe.StripeError as e:
                logger.error(f"Stripe intent creation failed for booking {booking.id}: {e}")
                raise UpstreamFailureError(f"Payment gateway error: {str(e)}", upstream="stripe")
            intent_id = intent["id"]
            client_secret = intent["client_secret"]
            simulated = False

        payment.external_transaction_id = intent_id
        await self.db.flush()
        logger.info(f"Payment {payment.reference_number} intent {intent_id} ready for booking {booking.reference_number}")
        return PaymentIntentResult(payment=payment, intent_id=intent_id, client_secret=client_secret, simulated=simulated)

    def parse_event(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """Verify the gateway signature, then decode.

        Unsigned events are only accepted while payments are simulated.
        """
        if not settings.STRIPE_WEBHOOK_SECRET and not settings.PAYMENTS_SIMULATED:
            logger.error("Rejected webhook: STRIPE_WEBHOOK_SECRET is not configured")
            raise ValidationFailedError("Webhook signing secret is not configured", field="stripe-signature")
        if settings.STRIPE_WEBHOOK_SECRET:
            try:
                stripe.Webhook.construct_event(payload, signature, settings.STRIPE_WEBHOOK_SECRET)
            except stripe.SignatureVerificationError as e:
                raise ValidationFailedError(f"Invalid webhook signature: {str(e)}", field="stripe-signature")
        try:
            return json.loads(payload)
        except ValueError:
            raise ValidationFailedError("Invalid webhook payload", field="body")

    async def _find_payment(self, intent: Dict[str, Any], create_missing: bool = False) -> Optional[Payment]:
        metadata = intent.get("metadata") or {}

        payment_id = _metadata_value(metadata, "payment_id", "paymentId")
        if payment_id:
            payment = await self.db.get(Payment, payment_id)
            if payment:
                return payment

        if intent.get("id"):
            payment = await self.db.scalar(
                select(Payment).where(Payment.external_transaction_id == intent["id"])
            )
            if payment:
                return payment

        booking_id = _metadata_value(metadata, "booking_id", "bookingId")
        if not booking_id:
            return None
        payment = await self._pending_payment(booking_id)
        if payment or not create_missing:
            return payment

        # Gateway knows about a payment we never recorded; reconcile it onto the booking
        booking = await self.db.get(Booking, booking_id)
        captured = _captured_cents(intent)
        if not booking or captured is None:
            return None
        amount = pricing.money(captured / 100)
        currency = (intent.get("currency") or settings.DEFAULT_CURRENCY).lower()
        if amount < booking.calculated_price or currency != settings.DEFAULT_CURRENCY:
            logger.warning(
                f"Untracked intent {intent.get('id')} captured {amount:.2f} {currency} for booking "
                f"{booking_id} priced {booking.calculated_price:.2f} {settings.DEFAULT_CURRENCY}; not recorded"
            )
            return None
        payment = Payment(
            id=generate_uuid(),
            reference_number=await generate_reference(self.db, "payment"),
            booking_id=booking.id,
            customer_id=booking.customer_id,
            amount=amount,
            tip_amount=pricing.money(max(0.0, amount - booking.calculated_price)),
            currency=currency,
            commission_rate=settings.COMMISSION_RATE,
            status=PaymentStatus.PENDING.value,
            external_transaction_id=intent.get("id"),
        )
        self.db.add(payment)
        await self.db.flush()
        logger.info(f"Recorded untracked payment {payment.reference_number} from webhook for booking {booking_id}")
        return payment

    async def handle_event(self, event: Dict[str, Any]) -> Dict[str, Any]:
        event_type = event.get("type")
        intent = (event.get("data") or {}).get("object") or {}

        if event_type not in (EVENT_SUCCEEDED, EVENT_FAILED):
            logger.info(f"Ignoring webhook event {event_type}")
            return {"status": "ignored"}

        payment = await self._find_payment(intent, create_missing=event_type == EVENT_SUCCEEDED)
        if payment is None:
            logger.warning(f"Webhook {event_type} for intent {intent.get('id')} matched no payment")
            return {"status": "unmatched"}

        if event_type == EVENT_SUCCEEDED:
            mismatch = capture_mismatch(payment, intent)
            if mismatch:
                logger.error(
                    f"Intent {intent.get('id')} for payment {payment.id} rejected: {mismatch}; nothing deposited"
                )
                return {"status": "rejected", "payment_id": payment.id, "reason": mismatch}
            booking = await self.bookings.on_payment_confirmed(payment.id, intent.get("id"))
            return {
                "status": "success",
                "payment_id": payment.id,
                "booking_id": booking.id if booking else payment.booking_id,
            }

        error = intent.get("last_payment_error") or {}
        if not await self.bookings.record_payment_failure(payment.id, error.get("message")):
            return {"status": "ignored", "payment_id": payment.id}
        return {"status": "failed", "payment_id": payment.id}
