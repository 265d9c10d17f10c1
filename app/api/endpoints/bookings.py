from typing import Any, List, Optional, Union
from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from app.models.booking import (
    BookingCreate, BookingResponse, QueuedBookingResponse, GeoPointOut,
    LocationUpdate, LocationUpdateResponse,
    DeclineRequest, CancelRequest, RateBooking, RateCustomer,
)
from app.models.payment import PaymentResponse
from app.models.service import ServiceSummary
from app.api import deps
from app.db.database import get_db
from app.db.db_models import User, Booking, Service, Payment, UserRole, RequestStatus
from app.services.booking_service import BookingStateMachine

router = APIRouter()


def _point(lat: Optional[float], lng: Optional[float], address: Optional[str] = None) -> Optional[GeoPointOut]:
    if lat is None or lng is None:
        return None
    return GeoPointOut(coordinates=[lng, lat], address=address)


async def build_booking_response(db: AsyncSession, booking: Booking, viewer: User) -> BookingResponse:
    """Serialize a booking for ``viewer``.

    Customers do not see who the provider is until the request is accepted,
    and each party only receives its own chat token.
    """
    service = await db.get(Service, booking.service_id)
    provider = await db.get(User, service.provider_id) if service and service.provider_id else None

    service_out = None
    if service:
        hide_provider = (
            viewer.role == UserRole.CUSTOMER.value
            and booking.request_status != RequestStatus.ACCEPTED.value
        )
        service_out = ServiceSummary(
            id=service.id,
            title=service.title,
            category=service.category,
            price=service.price,
            duration_minutes=service.duration_minutes,
            provider_id=None if hide_provider else service.provider_id,
            provider_name=None if hide_provider or not provider else provider.full_name,
            provider_phone=None if hide_provider or not provider else provider.phone,
        )

    payment = await db.scalar(
        select(Payment).where(Payment.booking_id == booking.id).order_by(Payment.created_at.desc())
    )

    if viewer.id == booking.customer_id:
        chat_token = booking.customer_chat_token
    elif service and viewer.id == service.provider_id:
        chat_token = booking.provider_chat_token
    else:
        chat_token = None

    fields = {column.name: getattr(booking, column.name) for column in Booking.__table__.columns}
    return BookingResponse(
        **fields,
        service=service_out,
        location=_point(booking.location_lat, booking.location_lng, booking.location_address),
        customer_live_location=_point(booking.customer_live_lat, booking.customer_live_lng),
        provider_live_location=_point(booking.provider_live_lat, booking.provider_live_lng),
        chat_token=chat_token,
        payment=PaymentResponse.model_validate(payment) if payment else None,
    )


@router.post("/", response_model=Union[BookingResponse, QueuedBookingResponse], status_code=status.HTTP_201_CREATED,
             responses={202: {"model": QueuedBookingResponse}})
async def create_booking(
    booking_in: BookingCreate,
    response: Response,
    current_user: User = Depends(deps.get_current_customer),
    db: AsyncSession = Depends(get_db),
) -> Any:
    """Create a booking for today; answers 202 when no provider is free yet."""
    result = await BookingStateMachine(db).create_booking(current_user, booking_in)
    if result.queued:
        response.status_code = status.HTTP_202_ACCEPTED
        return QueuedBookingResponse(message=result.message)
    return await build_booking_response(db, result.booking, current_user)


@router.get("/", response_model=List[BookingResponse])
async def read_bookings(
    booking_status: Optional[str] = Query(None, alias="status"),
    current_user: User = Depends(deps.get_current_active_user),
    db: AsyncSession = Depends(get_db),
) -> Any:
    """Retrieve bookings for current user (provider: bookings on their services)."""
    bookings = await BookingStateMachine(db).list_bookings(current_user, booking_status)
    return [await build_booking_response(db, b, current_user) for b in bookings]


@router.get("/{booking_id}", response_model=BookingResponse)
async def read_booking(
    booking_id: str,
    current_user: User = Depends(deps.get_current_active_user),
    db: AsyncSession = Depends(get_db),
) -> Any:
    booking = await BookingStateMachine(db).get_booking(current_user, booking_id)
    return await build_booking_response(db, booking, current_user)


@router.post("/{booking_id}/accept", response_model=BookingResponse)
async def accept_booking(
    booking_id: str,
    current_user: User = Depends(deps.get_current_provider),
    db: AsyncSession = Depends(get_db),
) -> Any:
    """Accept a paid booking request (Provider only)."""
    booking = await BookingStateMachine(db).accept_booking_request(current_user, booking_id)
    return await build_booking_response(db, booking, current_user)


@router.post("/{booking_id}/decline", response_model=BookingResponse)
async def decline_booking(
    booking_id: str,
    decline_in: Optional[DeclineRequest] = None,
    current_user: User = Depends(deps.get_current_provider),
    db: AsyncSession = Depends(get_db),
) -> Any:
    reason = decline_in.reason if decline_in else None
    booking = await BookingStateMachine(db).decline_booking_request(current_user, booking_id, reason)
    return await build_booking_response(db, booking, current_user)


@router.post("/{booking_id}/start", response_model=BookingResponse)
async def start_booking(
    booking_id: str,
    current_user: User = Depends(deps.get_current_provider),
    db: AsyncSession = Depends(get_db),
) -> Any:
    """Start the job once the provider has been at the customer's location long enough."""
    booking = await BookingStateMachine(db).start_booking(current_user, booking_id)
    return await build_booking_response(db, booking, current_user)


@router.post("/{booking_id}/complete", response_model=BookingResponse)
async def complete_booking(
    booking_id: str,
    current_user: User = Depends(deps.get_current_provider),
    db: AsyncSession = Depends(get_db),
) -> Any:
    """Complete the job; applies any SLA penalty and releases escrow."""
    booking = await BookingStateMachine(db).complete_booking(current_user, booking_id)
    return await build_booking_response(db, booking, current_user)


@router.post("/{booking_id}/cancel", response_model=BookingResponse)
async def cancel_booking(
    booking_id: str,
    cancel_in: Optional[CancelRequest] = None,
    current_user: User = Depends(deps.get_current_active_user),
    db: AsyncSession = Depends(get_db),
) -> Any:
    reason = cancel_in.reason if cancel_in else None
    booking = await BookingStateMachine(db).cancel_booking(current_user, booking_id, reason)
    return await build_booking_response(db, booking, current_user)


@router.post("/{booking_id}/location", response_model=LocationUpdateResponse)
async def update_booking_location(
    booking_id: str,
    location_in: LocationUpdate,
    current_user: User = Depends(deps.get_current_active_user),
    db: AsyncSession = Depends(get_db),
) -> Any:
    """Report the caller's live position; drives the start-job proximity gate."""
    result = await BookingStateMachine(db).update_location(current_user, booking_id, location_in.coordinates)
    return LocationUpdateResponse(
        booking_id=result.booking.id,
        role=result.role,
        distance=result.distance,
        proximity_detected=result.proximity_detected,
        proximity_detected_at=result.proximity_detected_at,
        can_start_job=result.can_start_job,
    )


@router.post("/{booking_id}/rate", response_model=BookingResponse)
async def rate_booking(
    booking_id: str,
    rating_in: RateBooking,
    current_user: User = Depends(deps.get_current_customer),
    db: AsyncSession = Depends(get_db),
) -> Any:
    booking = await BookingStateMachine(db).rate_booking(
        current_user, booking_id, rating_in.rating, rating_in.review
    )
    return await build_booking_response(db, booking, current_user)


@router.post("/{booking_id}/rate-customer", response_model=BookingResponse)
async def rate_customer(
    booking_id: str,
    rating_in: RateCustomer,
    current_user: User = Depends(deps.get_current_provider),
    db: AsyncSession = Depends(get_db),
) -> Any:
    booking = await BookingStateMachine(db).rate_customer(
        current_user, booking_id, rating_in.customer_rating, rating_in.customer_review
    )
    return await build_booking_response(db, booking, current_user)
