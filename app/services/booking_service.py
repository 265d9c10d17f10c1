"""
Booking lifecycle.

A booking carries three independent status axes:

    status          pending_payment -> pending_acceptance -> confirmed -> in_progress -> completed
                    (any non-terminal) -> cancelled
    request_status  pending -> accepted | declined
    payment_status  pending -> paid_to_escrow -> released_to_provider | refunded

Every transition is a conditional UPDATE guarded on the axes it depends on, so
two concurrent calls can never both succeed. Notifications, workflow steps and
activity records are side effects that never fail the transition.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, date
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import (
    NotFoundError, ForbiddenError, InvalidStateError, ValidationFailedError,
)
from app.core.security import generate_chat_token
from app.db.db_models import (
    User, ProviderProfile, Service, Booking, Payment, UserRole, PaymentStatus,
    BookingStatus, RequestStatus, BookingPaymentStatus, WorkflowStatus,
    TERMINAL_BOOKING_STATUSES, generate_uuid,
)
from app.db.sequence import generate_reference
from app.models.booking import BookingCreate
from app.services import geo, pricing
from app.services.activity_service import ActivityLogger
from app.services.escrow_service import EscrowLedger
from app.services.matching_service import (
    ProviderMatch, ProviderMatcher, claim_provider, release_provider, is_provider_busy, match_score,
)
from app.services.notification_service import NotificationService, notification_service
from app.services.proximity import ProximityState, ProximityTracker
from app.services.workflow_service import (
    WorkflowService, STEP_PROVIDER_ASSIGNED, STEP_PAYMENT_RECEIVED,
    STEP_PROVIDER_EN_ROUTE, STEP_IN_PROGRESS, STEP_COMPLETED,
)

logger = logging.getLogger(__name__)


@dataclass
class BookingResult:
    booking: Optional[Booking]
    match: Optional[ProviderMatch] = None
    queued: bool = False
    message: Optional[str] = None


@dataclass
class LocationResult:
    booking: Booking
    role: str
    distance: Optional[float]
    proximity_detected: bool
    proximity_detected_at: Optional[datetime]
    can_start_job: bool


def current_state(booking: Booking) -> Dict[str, Any]:
    return {
        "status": booking.status,
        "request_status": booking.request_status,
        "payment_status": booking.payment_status,
        "can_start_job": bool(booking.can_start_job),
    }


def validate_schedule(booking_date: date, booking_time: str, now: datetime) -> None:
    """Same-day service only, and not for a time that has already gone by."""
    if booking_date != now.date():
        raise ValidationFailedError(
            "Bookings can only be made for today. Please select today's date.", field="date"
        )
    try:
        requested = datetime.strptime(booking_time, "%H:%M")
    except (TypeError, ValueError):
        raise ValidationFailedError("time must be in HH:MM format", field="time")
    requested_at = datetime.combine(booking_date, requested.time())
    if requested_at < now.replace(second=0, microsecond=0):
        raise ValidationFailedError(
            "Cannot book for a time that has already passed. Please select a future time.", field="time"
        )


class BookingStateMachine:
    def __init__(
        self,
        db: AsyncSession,
        notifier: NotificationService = notification_service,
        workflow: Optional[WorkflowService] = None,
        activity: Optional[ActivityLogger] = None,
        matcher: Optional[ProviderMatcher] = None,
        ledger: Optional[EscrowLedger] = None,
        tracker: Optional[ProximityTracker] = None,
    ):
        self.db = db
        self.notifier = notifier
        self.workflow = workflow or WorkflowService(db)
        self.activity = activity or ActivityLogger(db)
        self.matcher = matcher or ProviderMatcher(db)
        self.ledger = ledger or EscrowLedger(db)
        self.tracker = tracker or ProximityTracker()

    # ─── Lookups ─────────────────────────────────────────────────────

    async def _load(self, booking_id: str) -> Booking:
        booking = await self.db.get(Booking, booking_id)
        if not booking:
            raise NotFoundError("booking", "Booking not found")
        await self.db.refresh(booking)
        return booking

    async def _service_for(self, booking: Booking) -> Service:
        service = await self.db.get(Service, booking.service_id)
        if not service:
            raise NotFoundError("service", "Service not found for booking")
        return service

    async def _load_for_provider(self, provider: User, booking_id: str):
        booking = await self._load(booking_id)
        service = await self._service_for(booking)
        if service.provider_id != provider.id:
            raise ForbiddenError("You are not the provider for this booking")
        return booking, service

    def _notify(self, user_id: Optional[str], event: str, payload: Dict[str, Any]) -> None:
        try:
            self.notifier.emit(user_id, event, payload)
        except Exception as e:
            logger.warning(f"Notification {event} to {user_id} failed: {e}")

    async def _transition(self, booking: Booking, guards: Sequence, values: Dict[str, Any]) -> bool:
        """Conditional update of one booking row; True when this call won the race."""
        result = await self.db.execute(
            update(Booking)
            .where(Booking.id == booking.id, *guards)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self.db.refresh(booking)
        return result.rowcount == 1

    # ─── Create ──────────────────────────────────────────────────────

    async def _refresh_profile_location(self, customer: User, point: geo.GeoPoint) -> None:
        stored = geo.point_or_none(customer.latitude, customer.longitude)
        if stored is not None and geo.locations_are_equal(
            stored, point, tolerance_m=settings.PROFILE_LOCATION_REFRESH_METERS
        ):
            return
        customer.latitude = point.lat
        customer.longitude = point.lng
        if point.address:
            customer.address = point.address
        logger.info(f"Refreshed stored location for customer {customer.id}")

    async def _direct_match(self, service: Service, point: geo.GeoPoint, booking_id: str) -> Optional[ProviderMatch]:
        """Assigned provider of the requested service, when online and free."""
        if not service.provider_id:
            return None
        provider = await self.db.get(User, service.provider_id)
        profile = await self.db.scalar(
            select(ProviderProfile).where(ProviderProfile.user_id == service.provider_id)
        )
        if provider is None or profile is None or not profile.is_online:
            return None
        if await is_provider_busy(self.db, provider.id):
            return None
        if not await claim_provider(self.db, provider.id, booking_id):
            return None

        multiplier = pricing.location_multiplier(point.address)
        return ProviderMatch(
            provider=provider,
            profile=profile,
            service=service,
            distance=0.0,
            location_multiplier=multiplier,
            adjusted_price=pricing.money(service.price * multiplier),
            match_score=match_score(provider.rating, 0.0, profile.experience_years),
        )

    async def _resolve_provider(self, request: BookingCreate, point: geo.GeoPoint, booking_id: str) -> Optional[ProviderMatch]:
        if request.service_id:
            service = await self.db.get(Service, request.service_id)
            if not service:
                raise NotFoundError("service", "Service not found")
            if not service.admin_approved or service.status != "active":
                raise ValidationFailedError("Service is not available for booking", field="service_id")

            match = await self._direct_match(service, point, booking_id)
            if match is not None:
                return match
            logger.info(f"Assigned provider for service {service.id} unavailable; falling back to matching")
            return await self.matcher.match(
                service.title, request.required_skills, point, service.price, claim_for=booking_id
            )

        if not request.service_title or not request.required_skills:
            raise ValidationFailedError(
                "Either serviceId or serviceTitle with requiredSkills is required", field="service_title"
            )
        return await self.matcher.match(
            request.service_title, request.required_skills, point, claim_for=booking_id
        )

    async def create_booking(self, customer: User, request: BookingCreate, now: Optional[datetime] = None) -> BookingResult:
        now = now or datetime.utcnow()
        if customer.role != UserRole.CUSTOMER.value:
            raise ForbiddenError("Only customers can create bookings")

        point = geo.validate_location(request.location)
        job_size = request.job_size.value if hasattr(request.job_size, "value") else request.job_size
        # Surface job-size / custom price errors before a provider is claimed
        pricing.calculate_job_price(0.0, job_size, request.custom_price)
        validate_schedule(request.date, request.time, now)

        await self._refresh_profile_location(customer, point)

        booking_id = generate_uuid()
        match = await self._resolve_provider(request, point, booking_id)
        if match is None:
            logger.info(f"No provider available for customer {customer.id}; request queued")
            return BookingResult(
                booking=None,
                queued=True,
                message="No providers are available right now. Your request has been queued; please try again shortly.",
            )

        price = pricing.calculate_job_price(match.adjusted_price, job_size, request.custom_price)
        reference = await generate_reference(self.db, "booking")

        booking = Booking(
            id=booking_id,
            reference_number=reference,
            customer_id=customer.id,
            service_id=match.service.id,
            status=BookingStatus.PENDING_PAYMENT.value,
            request_status=RequestStatus.PENDING.value,
            payment_status=BookingPaymentStatus.PENDING.value,
            date=request.date,
            time=request.time,
            notes=request.notes,
            location_lat=point.lat,
            location_lng=point.lng,
            location_address=point.address,
            job_size=price.job_size,
            job_size_multiplier=price.multiplier,
            base_price=price.base_price,
            calculated_price=price.calculated_price,
            location_multiplier=match.location_multiplier,
            provider_distance=match.distance,
            estimated_duration_minutes=request.estimated_duration_minutes or 0,
            created_at=now,
            updated_at=now,
        )
        self.db.add(booking)
        await self.db.flush()
        logger.info(
            f"Booking {reference} created for customer {customer.id} with provider {match.provider.id} "
            f"({price.job_size}, {price.calculated_price:.2f})"
        )

        await self.workflow.create_for_booking(booking.id, now)
        self._notify(match.provider.id, "new-booking-request", {
            "booking_id": booking.id,
            "reference_number": reference,
            "service_title": match.service.title,
            "calculated_price": price.calculated_price,
        })
        await self.activity.log(
            customer.id, "booking_created", booking.id, "Booking",
            {"provider_id": match.provider.id, "calculated_price": price.calculated_price},
        )
        return BookingResult(booking=booking, match=match)

    # ─── Payment ─────────────────────────────────────────────────────

    async def on_payment_confirmed(
        self, payment_id: str, external_transaction_id: Optional[str] = None, now: Optional[datetime] = None
    ) -> Optional[Booking]:
        """Gateway confirmed a payment: hold it in escrow and open the booking to the provider.

        Replays for the same payment are no-ops. A second payment for a booking
        that is already funded (or no longer awaiting payment) is refunded.
        """
        now = now or datetime.utcnow()
        payment = await self.db.get(Payment, payment_id)
        if not payment:
            raise NotFoundError("payment", "Payment not found")

        if not await self.ledger.deposit(payment_id, external_transaction_id):
            return await self.db.get(Booking, payment.booking_id)

        booking = await self._load(payment.booking_id)
        customer_token = generate_chat_token(booking.id, booking.customer_id, "customer")
        funded = await self._transition(
            booking,
            [
                Booking.status == BookingStatus.PENDING_PAYMENT.value,
                Booking.payment_status == BookingPaymentStatus.PENDING.value,
            ],
            {
                "status": BookingStatus.PENDING_ACCEPTANCE.value,
                "payment_status": BookingPaymentStatus.PAID_TO_ESCROW.value,
                "escrow_amount": payment.amount,
                "customer_chat_token": customer_token,
                "updated_at": now,
            },
        )
        if not funded:
            logger.warning(
                f"Payment {payment_id} arrived for booking {booking.id} in state {current_state(booking)}; refunding"
            )
            await self.ledger.refund(payment_id)
            return booking

        service = await self._service_for(booking)
        await self.workflow.update_steps(booking.id, {STEP_PAYMENT_RECEIVED: WorkflowStatus.COMPLETED.value}, now)
        self._notify(service.provider_id, "payment-received", {
            "booking_id": booking.id,
            "amount": payment.amount,
        })
        self._notify(booking.customer_id, "payment-updated", {
            "booking_id": booking.id,
            "payment_status": booking.payment_status,
            "chat_token": customer_token,
        })
        await self.activity.log(
            booking.customer_id, "payment_received", payment.id, "Payment", {"booking_id": booking.id}
        )
        logger.info(f"Booking {booking.reference_number} funded; awaiting provider acceptance")
        return booking

    async def record_payment_failure(self, payment_id: str, reason: Optional[str]) -> bool:
        """Record a gateway failure; False when the payment already went through."""
        payment = await self.db.get(Payment, payment_id)
        if not payment:
            raise NotFoundError("payment", "Payment not found")
        await self.db.refresh(payment)
        if payment.status != PaymentStatus.PENDING.value:
            logger.info(f"Ignoring failure for payment {payment_id} in status {payment.status}")
            return False
        payment.failure_reason = reason or "Payment failed"
        await self.db.flush()
        logger.info(f"Payment {payment_id} failed: {payment.failure_reason}")
        self._notify(payment.customer_id, "payment-failed", {
            "booking_id": payment.booking_id,
            "reason": payment.failure_reason,
        })
        return True

    # ─── Provider decision ───────────────────────────────────────────

    async def accept_booking_request(self, provider: User, booking_id: str, now: Optional[datetime] = None) -> Booking:
        now = now or datetime.utcnow()
        booking, service = await self._load_for_provider(provider, booking_id)

        if booking.payment_status != BookingPaymentStatus.PAID_TO_ESCROW.value:
            raise InvalidStateError(
                "Payment must be received before the request can be accepted", current_state(booking)
            )
        if booking.request_status != RequestStatus.PENDING.value:
            raise InvalidStateError("Booking request already processed", current_state(booking))

        provider_token = generate_chat_token(booking.id, provider.id, "service_provider")
        accepted = await self._transition(
            booking,
            [
                Booking.request_status == RequestStatus.PENDING.value,
                Booking.payment_status == BookingPaymentStatus.PAID_TO_ESCROW.value,
                Booking.status == BookingStatus.PENDING_ACCEPTANCE.value,
            ],
            {
                "request_status": RequestStatus.ACCEPTED.value,
                "status": BookingStatus.CONFIRMED.value,
                "provider_chat_token": provider_token,
                "provider_accepted_at": now,
                "updated_at": now,
            },
        )
        if not accepted:
            raise InvalidStateError("Booking request already processed", current_state(booking))
        logger.info(f"Booking {booking.reference_number} accepted by provider {provider.id}")

        if booking.customer_chat_token and not booking.chat_active:
            booking.chat_active = True
            await self.db.flush()
            chat_payload = {"booking_id": booking.id}
            self._notify(booking.customer_id, "chat-ready", chat_payload)
            self._notify(provider.id, "chat-ready", chat_payload)

        await self.workflow.update_steps(booking.id, {STEP_PROVIDER_ASSIGNED: WorkflowStatus.COMPLETED.value}, now)
        self._notify(booking.customer_id, "booking-accepted", {
            "booking_id": booking.id,
            "provider_name": provider.full_name,
            "provider_phone": provider.phone,
        })
        await self.activity.log(provider.id, "booking_accepted", booking.id, "Booking")
        return booking

    async def decline_booking_request(
        self, provider: User, booking_id: str, reason: Optional[str] = None, now: Optional[datetime] = None
    ) -> Booking:
        now = now or datetime.utcnow()
        booking, service = await self._load_for_provider(provider, booking_id)

        if booking.request_status != RequestStatus.PENDING.value or booking.status in TERMINAL_BOOKING_STATUSES:
            raise InvalidStateError("Booking request already processed", current_state(booking))

        declined = await self._transition(
            booking,
            [
                Booking.request_status == RequestStatus.PENDING.value,
                Booking.status.notin_(TERMINAL_BOOKING_STATUSES),
            ],
            {
                "request_status": RequestStatus.DECLINED.value,
                "status": BookingStatus.CANCELLED.value,
                "decline_reason": reason,
                "cancelled_by": provider.id,
                "cancelled_at": now,
                "updated_at": now,
            },
        )
        if not declined:
            raise InvalidStateError("Booking request already processed", current_state(booking))
        logger.info(f"Booking {booking.reference_number} declined by provider {provider.id}")

        await release_provider(self.db, provider.id, booking.id)
        await self.workflow.set_status(booking.id, WorkflowStatus.CANCELLED.value)
        self._notify(booking.customer_id, "booking-declined", {"booking_id": booking.id, "reason": reason})
        await self.activity.log(provider.id, "booking_declined", booking.id, "Booking", {"reason": reason})
        return booking

    # ─── Job execution ───────────────────────────────────────────────

    async def start_booking(self, provider: User, booking_id: str, now: Optional[datetime] = None) -> Booking:
        now = now or datetime.utcnow()
        booking, service = await self._load_for_provider(provider, booking_id)

        if booking.request_status != RequestStatus.ACCEPTED.value:
            raise InvalidStateError("Booking must be accepted before it can start", current_state(booking))
        if booking.payment_status != BookingPaymentStatus.PAID_TO_ESCROW.value:
            raise InvalidStateError("Payment must be held in escrow before the job can start", current_state(booking))
        if not booking.can_start_job:
            raise InvalidStateError(
                "You must be at the customer's location for 5 minutes before starting the job",
                current_state(booking),
            )

        started = await self._transition(
            booking,
            [
                Booking.status == BookingStatus.CONFIRMED.value,
                Booking.request_status == RequestStatus.ACCEPTED.value,
                Booking.payment_status == BookingPaymentStatus.PAID_TO_ESCROW.value,
                Booking.can_start_job == True,
            ],
            {
                "status": BookingStatus.IN_PROGRESS.value,
                "started_at": now,
                "updated_at": now,
            },
        )
        if not started:
            raise InvalidStateError("Booking cannot be started in its current state", current_state(booking))
        logger.info(f"Booking {booking.reference_number} started by provider {provider.id}")

        await self.workflow.update_steps(booking.id, {
            STEP_PROVIDER_EN_ROUTE: WorkflowStatus.COMPLETED.value,
            STEP_IN_PROGRESS: WorkflowStatus.IN_PROGRESS.value,
        }, now)
        self._notify(booking.customer_id, "booking-started", {"booking_id": booking.id, "started_at": now.isoformat()})
        await self.activity.log(provider.id, "booking_started", booking.id, "Booking")
        return booking

    async def complete_booking(self, provider: User, booking_id: str, now: Optional[datetime] = None) -> Booking:
        now = now or datetime.utcnow()
        booking, service = await self._load_for_provider(provider, booking_id)

        if not booking.started_at:
            raise InvalidStateError("Booking has not been started", current_state(booking))
        if booking.status != BookingStatus.IN_PROGRESS.value:
            raise InvalidStateError("Booking is not in progress", current_state(booking))

        actual_minutes = max(0, pricing.actual_duration_minutes(booking.started_at, now))
        breached = pricing.is_sla_breached(booking.estimated_duration_minutes, actual_minutes)
        penalty = pricing.calculate_sla_penalty(
            booking.calculated_price, booking.estimated_duration_minutes, actual_minutes
        )

        completed = await self._transition(
            booking,
            [Booking.status == BookingStatus.IN_PROGRESS.value],
            {
                "status": BookingStatus.COMPLETED.value,
                "completed_at": now,
                "actual_duration_minutes": actual_minutes,
                "sla_breached": breached,
                "sla_penalty_amount": penalty,
                "chat_active": False,
                "chat_terminated_at": now,
                "updated_at": now,
            },
        )
        if not completed:
            raise InvalidStateError("Booking is not in progress", current_state(booking))
        logger.info(
            f"Booking {booking.reference_number} completed in {actual_minutes} min "
            f"(estimate {booking.estimated_duration_minutes}, penalty {penalty:.2f})"
        )

        payment = await self.ledger.held_payment_for(booking.id)
        if payment is not None:
            await self.ledger.release(payment.id, booking.id)
        else:
            logger.warning(f"No held payment for completed booking {booking.id}; nothing released")

        await release_provider(self.db, provider.id, booking.id)
        await self.workflow.update_steps(booking.id, {
            STEP_IN_PROGRESS: WorkflowStatus.COMPLETED.value,
            STEP_COMPLETED: WorkflowStatus.COMPLETED.value,
        }, now)
        self._notify(booking.customer_id, "booking-completed", {
            "booking_id": booking.id,
            "sla_breached": breached,
        })
        self._notify(booking.customer_id, "chat-terminated", {"booking_id": booking.id})
        self._notify(provider.id, "chat-terminated", {"booking_id": booking.id})
        await self.activity.log(
            provider.id, "booking_completed", booking.id, "Booking",
            {"actual_duration_minutes": actual_minutes, "sla_penalty_amount": penalty},
        )
        await self.db.refresh(booking)
        return booking

    async def _refund_held(self, booking: Booking) -> bool:
        payment = await self.ledger.held_payment_for(booking.id)
        if payment is None or not await self.ledger.refund(payment.id):
            return False
        booking.payment_status = BookingPaymentStatus.REFUNDED.value
        await self.db.flush()
        return True

    async def cancel_booking(
        self, user: User, booking_id: str, reason: Optional[str] = None, now: Optional[datetime] = None
    ) -> Booking:
        now = now or datetime.utcnow()
        booking = await self._load(booking_id)
        service = await self._service_for(booking)
        if user.id not in (booking.customer_id, service.provider_id):
            raise ForbiddenError("Not authorized to cancel this booking")
        if booking.status in TERMINAL_BOOKING_STATUSES:
            # A declined request is already cancelled but may still hold the customer's payment
            if booking.request_status == RequestStatus.DECLINED.value and await self._refund_held(booking):
                logger.info(f"Refunded declined booking {booking.reference_number} on request of {user.id}")
                payload = {"booking_id": booking.id, "reason": reason, "cancelled_by": user.id}
                self._notify(booking.customer_id, "booking-cancelled", payload)
                await self.activity.log(user.id, "booking_refunded", booking.id, "Booking", {"reason": reason})
                return booking
            raise InvalidStateError(f"Booking is already {booking.status}", current_state(booking))

        values = {
            "status": BookingStatus.CANCELLED.value,
            "cancellation_reason": reason,
            "cancelled_by": user.id,
            "cancelled_at": now,
            "updated_at": now,
        }
        if booking.chat_active:
            values.update(chat_active=False, chat_terminated_at=now)
        cancelled = await self._transition(
            booking, [Booking.status.notin_(TERMINAL_BOOKING_STATUSES)], values
        )
        if not cancelled:
            raise InvalidStateError(f"Booking is already {booking.status}", current_state(booking))

        await self._refund_held(booking)
        logger.info(f"Booking {booking.reference_number} cancelled by {user.id} (payment {booking.payment_status})")

        await release_provider(self.db, service.provider_id, booking.id)
        await self.workflow.set_status(booking.id, WorkflowStatus.CANCELLED.value)
        payload = {"booking_id": booking.id, "reason": reason, "cancelled_by": user.id}
        self._notify(booking.customer_id, "booking-cancelled", payload)
        self._notify(service.provider_id, "booking-cancelled", payload)
        await self.activity.log(user.id, "booking_cancelled", booking.id, "Booking", {"reason": reason})
        return booking

    # ─── Live tracking ───────────────────────────────────────────────

    async def update_location(
        self, user: User, booking_id: str, coordinates: List[float], now: Optional[datetime] = None
    ) -> LocationResult:
        now = now or datetime.utcnow()
        booking = await self._load(booking_id)
        service = await self._service_for(booking)

        if user.id == booking.customer_id:
            role = "customer"
        elif user.id == service.provider_id:
            role = "provider"
        else:
            raise ForbiddenError("Not authorized to update location for this booking")
        if booking.status in TERMINAL_BOOKING_STATUSES:
            raise InvalidStateError("Live tracking has ended for this booking", current_state(booking))

        point = geo.validate_coordinates(coordinates)
        if role == "customer":
            booking.customer_live_lat, booking.customer_live_lng = point.lat, point.lng
        else:
            booking.provider_live_lat, booking.provider_live_lng = point.lat, point.lng

        previous = ProximityState.from_booking(booking)
        state = self.tracker.track(
            previous,
            geo.point_or_none(booking.customer_live_lat, booking.customer_live_lng),
            geo.point_or_none(booking.provider_live_lat, booking.provider_live_lng),
            now,
        )
        state.apply_to(booking)
        booking.updated_at = now
        await self.db.flush()

        if state.can_start_job and not previous.can_start_job:
            logger.info(f"Booking {booking.reference_number}: proximity confirmed, job may start")
        elif previous.proximity_detected and not state.proximity_detected:
            logger.info(f"Booking {booking.reference_number}: parties moved apart, proximity reset")

        payload = {
            "booking_id": booking.id,
            "role": role,
            "distance": state.distance_apart,
            "proximity_detected": state.proximity_detected,
            "can_start_job": state.can_start_job,
        }
        self._notify(booking.customer_id, "location-updated", payload)
        self._notify(service.provider_id, "location-updated", payload)

        return LocationResult(
            booking=booking,
            role=role,
            distance=state.distance_apart,
            proximity_detected=state.proximity_detected,
            proximity_detected_at=state.proximity_detected_at,
            can_start_job=state.can_start_job,
        )

    # ─── Ratings ─────────────────────────────────────────────────────

    @staticmethod
    def _validate_rating(rating: Any, field: str) -> int:
        if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
            raise ValidationFailedError("Rating must be a whole number between 1 and 5", field=field)
        return rating

    async def rate_booking(
        self, customer: User, booking_id: str, rating: int, review: Optional[str] = None
    ) -> Booking:
        """Customer rates the provider; the provider's rating is recomputed from all rated jobs."""
        rating = self._validate_rating(rating, "rating")
        booking = await self._load(booking_id)
        if booking.customer_id != customer.id:
            raise ForbiddenError("Only the customer can rate this booking")
        if booking.status != BookingStatus.COMPLETED.value:
            raise InvalidStateError("Only completed bookings can be rated", current_state(booking))
        service = await self._service_for(booking)

        booking.rating = rating
        booking.review = review
        await self.db.flush()

        average, count = (await self.db.execute(
            select(func.avg(Booking.rating), func.count(Booking.id))
            .join(Service, Service.id == Booking.service_id)
            .where(
                Service.provider_id == service.provider_id,
                Booking.status == BookingStatus.COMPLETED.value,
                Booking.rating.isnot(None),
            )
        )).one()
        await self._set_user_rating(service.provider_id, average, count)
        await self.activity.log(customer.id, "booking_rated", booking.id, "Booking", {"rating": rating})
        return booking

    async def rate_customer(
        self, provider: User, booking_id: str, rating: int, review: Optional[str] = None
    ) -> Booking:
        rating = self._validate_rating(rating, "customer_rating")
        booking, service = await self._load_for_provider(provider, booking_id)
        if booking.status != BookingStatus.COMPLETED.value:
            raise InvalidStateError("Only completed bookings can be rated", current_state(booking))

        booking.customer_rating = rating
        booking.customer_review = review
        await self.db.flush()

        average, count = (await self.db.execute(
            select(func.avg(Booking.customer_rating), func.count(Booking.id))
            .where(
                Booking.customer_id == booking.customer_id,
                Booking.status == BookingStatus.COMPLETED.value,
                Booking.customer_rating.isnot(None),
            )
        )).one()
        await self._set_user_rating(booking.customer_id, average, count)
        await self.activity.log(provider.id, "customer_rated", booking.id, "Booking", {"rating": rating})
        return booking

    async def _set_user_rating(self, user_id: Optional[str], average: Optional[float], count: int) -> None:
        if not user_id:
            return
        await self.db.execute(
            update(User)
            .where(User.id == user_id)
            .values(rating=float(average or 0.0), total_reviews=count)
            .execution_options(synchronize_session=False)
        )
        user = await self.db.get(User, user_id)
        if user is not None:
            await self.db.refresh(user)

    # ─── Reads ───────────────────────────────────────────────────────

    async def get_booking(self, user: User, booking_id: str) -> Booking:
        booking = await self._load(booking_id)
        if user.role == UserRole.ADMIN.value:
            return booking
        service = await self._service_for(booking)
        if user.id not in (booking.customer_id, service.provider_id):
            raise ForbiddenError("Not authorized to view this booking")
        return booking

    async def list_bookings(self, user: User, status: Optional[str] = None) -> List[Booking]:
        query = select(Booking).order_by(Booking.created_at.desc())
        if user.role == UserRole.PROVIDER.value:
            query = query.join(Service, Service.id == Booking.service_id).where(Service.provider_id == user.id)
        elif user.role != UserRole.ADMIN.value:
            query = query.where(Booking.customer_id == user.id)
        if status:
            query = query.where(Booking.status == status)
        result = await self.db.execute(query)
        return list(result.scalars().all())
