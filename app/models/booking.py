from pydantic import BaseModel, Field, field_validator
from typing import Optional, List
from datetime import date as date_type, datetime
from enum import Enum

from app.models.payment import PaymentResponse
from app.models.service import ServiceSummary


class JobSize(str, Enum):
    SMALL = "small"
    MEDIUM = "medium"
    LARGE = "large"
    CUSTOM = "custom"


# ─── Location Schemas ────────────────────────────────────────────────

class GeoPointIn(BaseModel):
    """GeoJSON point, coordinates in [longitude, latitude] order."""
    type: str = "Point"
    coordinates: List[float]
    address: Optional[str] = None


class GeoPointOut(BaseModel):
    type: str = "Point"
    coordinates: List[float]
    address: Optional[str] = None


class LocationUpdate(BaseModel):
    coordinates: List[float]


class LocationUpdateResponse(BaseModel):
    booking_id: str
    role: str
    distance: Optional[float] = None
    proximity_detected: bool
    proximity_detected_at: Optional[datetime] = None
    can_start_job: bool


# ─── Booking Request Schemas ─────────────────────────────────────────

class BookingCreate(BaseModel):
    service_id: Optional[str] = None
    service_title: Optional[str] = None
    required_skills: List[str] = []
    date: date_type
    time: str
    location: Optional[GeoPointIn] = None
    notes: Optional[str] = None
    estimated_duration_minutes: int = Field(default=0, ge=0)
    job_size: JobSize = JobSize.SMALL
    custom_price: Optional[float] = None

    @field_validator("date", mode="before")
    @classmethod
    def date_from_iso_datetime(cls, v):
        # Mobile clients send full ISO timestamps; only the calendar day matters
        if isinstance(v, str) and len(v) > 10 and v[10] in ("T", " "):
            return v[:10]
        if isinstance(v, datetime):
            return v.date()
        return v


class DeclineRequest(BaseModel):
    reason: Optional[str] = None


class CancelRequest(BaseModel):
    reason: Optional[str] = None


class RateBooking(BaseModel):
    rating: int
    review: Optional[str] = None


class RateCustomer(BaseModel):
    customer_rating: int
    customer_review: Optional[str] = None


# ─── Booking Response Schemas ────────────────────────────────────────

class BookingResponse(BaseModel):
    id: str
    reference_number: str
    customer_id: str
    service_id: str
    service: Optional[ServiceSummary] = None

    status: str
    request_status: str
    payment_status: str

    date: date_type
    time: str
    notes: Optional[str] = None
    location: Optional[GeoPointOut] = None

    job_size: str
    job_size_multiplier: float
    base_price: float
    calculated_price: float
    location_multiplier: Optional[float] = None
    provider_distance: Optional[float] = None
    escrow_amount: Optional[float] = None
    commission_amount: Optional[float] = None
    provider_payout_amount: Optional[float] = None
    sla_breached: bool = False
    sla_penalty_amount: Optional[float] = None

    estimated_duration_minutes: Optional[int] = None
    provider_accepted_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    actual_duration_minutes: Optional[int] = None

    customer_live_location: Optional[GeoPointOut] = None
    provider_live_location: Optional[GeoPointOut] = None
    distance_apart: Optional[float] = None
    proximity_detected: bool = False
    proximity_detected_at: Optional[datetime] = None
    proximity_start_time: Optional[datetime] = None
    can_start_job: bool = False

    chat_active: bool = False
    chat_token: Optional[str] = None
    chat_terminated_at: Optional[datetime] = None

    decline_reason: Optional[str] = None
    cancellation_reason: Optional[str] = None
    cancelled_at: Optional[datetime] = None

    rating: Optional[int] = None
    review: Optional[str] = None
    customer_rating: Optional[int] = None
    customer_review: Optional[str] = None

    payment: Optional[PaymentResponse] = None
    created_at: datetime

    class Config:
        from_attributes = True


class QueuedBookingResponse(BaseModel):
    queued: bool = True
    message: str
