import uuid
from datetime import datetime
from sqlalchemy import (
    Column, String, Integer, Float, Boolean, Text, Date, DateTime,
    ForeignKey, JSON,
)
from sqlalchemy.orm import relationship, DeclarativeBase
import enum


class Base(DeclarativeBase):
    pass


# ─── Enums ───────────────────────────────────────────────────────────

class UserRole(str, enum.Enum):
    CUSTOMER = "customer"
    PROVIDER = "service_provider"
    ADMIN = "admin"


class BookingStatus(str, enum.Enum):
    PENDING_PAYMENT = "pending_payment"
    PENDING_ACCEPTANCE = "pending_acceptance"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class RequestStatus(str, enum.Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"


class BookingPaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PAID_TO_ESCROW = "paid_to_escrow"
    RELEASED_TO_PROVIDER = "released_to_provider"
    REFUNDED = "refunded"


class JobSize(str, enum.Enum):
    SMALL = "small"
    MEDIUM = "medium"
    LARGE = "large"
    CUSTOM = "custom"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    REFUNDED = "refunded"
    COMPLETED = "completed"


class EscrowStatus(str, enum.Enum):
    HELD = "held"
    RELEASED = "released"
    REFUNDED = "refunded"


class TransactionType(str, enum.Enum):
    DEPOSIT = "deposit"
    RELEASE = "release"
    COMMISSION = "commission"
    SLA_PENALTY = "sla_penalty"
    REFUND = "refund"


class WorkflowStatus(str, enum.Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# Bookings that keep a provider occupied
ACTIVE_BOOKING_STATUSES = (
    BookingStatus.PENDING_PAYMENT.value,
    BookingStatus.PENDING_ACCEPTANCE.value,
    BookingStatus.CONFIRMED.value,
    BookingStatus.IN_PROGRESS.value,
)

TERMINAL_BOOKING_STATUSES = (
    BookingStatus.COMPLETED.value,
    BookingStatus.CANCELLED.value,
)

PLATFORM_WALLET_ID = "platform"


# ─── Helper ──────────────────────────────────────────────────────────

def generate_uuid():
    return str(uuid.uuid4())


# ─── Models ──────────────────────────────────────────────────────────

class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=generate_uuid)
    email = Column(String, unique=True, nullable=False, index=True)
    password_hash = Column(String, nullable=False)
    full_name = Column(String, nullable=False)
    phone = Column(String, nullable=True)
    role = Column(String, nullable=False, default=UserRole.CUSTOMER.value)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    address = Column(String, nullable=True)
    rating = Column(Float, default=0.0)
    total_reviews = Column(Integer, default=0)
    wallet_balance = Column(Float, default=0.0)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    provider_profile = relationship("ProviderProfile", back_populates="user", uselist=False)
    services = relationship("Service", back_populates="provider")


class ProviderProfile(Base):
    __tablename__ = "provider_profiles"

    id = Column(String, primary_key=True, default=generate_uuid)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, unique=True)
    skills = Column(JSON, default=list)
    is_online = Column(Boolean, default=False)
    is_verified = Column(Boolean, default=False)
    is_identity_verified = Column(Boolean, default=False)
    is_profile_complete = Column(Boolean, default=False)
    application_status = Column(String, default="pending")  # pending, active, suspended
    service_area_lat = Column(Float, nullable=True)
    service_area_lng = Column(Float, nullable=True)
    service_area_radius_km = Column(Float, nullable=True)
    experience_years = Column(Integer, default=0)
    # Booking currently holding this provider; claimed with a conditional update
    active_booking_id = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    # Relationships
    user = relationship("User", back_populates="provider_profile")


class Service(Base):
    __tablename__ = "services"

    id = Column(String, primary_key=True, default=generate_uuid)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    category = Column(String, nullable=True)
    price = Column(Float, nullable=False)
    duration_minutes = Column(Integer, default=60)
    provider_id = Column(String, ForeignKey("users.id"), nullable=True)
    admin_approved = Column(Boolean, default=False)
    status = Column(String, default="active")  # active, inactive
    created_at = Column(DateTime, default=datetime.utcnow)

    # Relationships
    provider = relationship("User", back_populates="services")
    bookings = relationship("Booking", back_populates="service")


class Booking(Base):
    __tablename__ = "bookings"

    id = Column(String, primary_key=True, default=generate_uuid)
    reference_number = Column(String, unique=True, nullable=False, index=True)
    customer_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    service_id = Column(String, ForeignKey("services.id"), nullable=False, index=True)

    # Lifecycle axes
    status = Column(String, nullable=False, default=BookingStatus.PENDING_PAYMENT.value, index=True)
    request_status = Column(String, nullable=False, default=RequestStatus.PENDING.value)
    payment_status = Column(String, nullable=False, default=BookingPaymentStatus.PENDING.value)

    # Schedule
    date = Column(Date, nullable=False)
    time = Column(String, nullable=False)  # HH:MM
    notes = Column(Text, nullable=True)
    location_lat = Column(Float, nullable=False)
    location_lng = Column(Float, nullable=False)
    location_address = Column(String, nullable=True)

    # Pricing
    job_size = Column(String, nullable=False, default=JobSize.SMALL.value)
    job_size_multiplier = Column(Float, nullable=False, default=1.0)
    base_price = Column(Float, nullable=False)
    calculated_price = Column(Float, nullable=False)
    location_multiplier = Column(Float, default=1.0)
    provider_distance = Column(Float, default=0.0)  # km
    escrow_amount = Column(Float, nullable=True)
    commission_amount = Column(Float, nullable=True)
    provider_payout_amount = Column(Float, nullable=True)
    sla_breached = Column(Boolean, default=False)
    sla_penalty_amount = Column(Float, default=0.0)

    # Timing
    estimated_duration_minutes = Column(Integer, default=0)
    provider_accepted_at = Column(DateTime, nullable=True)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    actual_duration_minutes = Column(Integer, nullable=True)

    # Live tracking
    customer_live_lat = Column(Float, nullable=True)
    customer_live_lng = Column(Float, nullable=True)
    provider_live_lat = Column(Float, nullable=True)
    provider_live_lng = Column(Float, nullable=True)
    distance_apart = Column(Float, nullable=True)  # meters
    proximity_detected = Column(Boolean, default=False)
    proximity_detected_at = Column(DateTime, nullable=True)
    proximity_start_time = Column(DateTime, nullable=True)
    can_start_job = Column(Boolean, default=False)

    # Chat gating
    customer_chat_token = Column(String, nullable=True)
    provider_chat_token = Column(String, nullable=True)
    chat_active = Column(Boolean, default=False)
    chat_terminated_at = Column(DateTime, nullable=True)

    # Closure
    decline_reason = Column(Text, nullable=True)
    cancellation_reason = Column(Text, nullable=True)
    cancelled_by = Column(String, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)

    # Ratings (customer -> provider, provider -> customer)
    rating = Column(Integer, nullable=True)
    review = Column(Text, nullable=True)
    customer_rating = Column(Integer, nullable=True)
    customer_review = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    customer = relationship("User", foreign_keys=[customer_id])
    service = relationship("Service", back_populates="bookings")
    payments = relationship("Payment", back_populates="booking", order_by="Payment.created_at")


class Payment(Base):
    __tablename__ = "payments"

    id = Column(String, primary_key=True, default=generate_uuid)
    reference_number = Column(String, unique=True, nullable=False)
    # Not unique: duplicate intents for a booking are tolerated and reconciled by payment id
    booking_id = Column(String, ForeignKey("bookings.id"), nullable=False, index=True)
    customer_id = Column(String, ForeignKey("users.id"), nullable=False)
    amount = Column(Float, nullable=False)
    currency = Column(String, default="zar")
    commission_rate = Column(Float, default=0.15)
    commission_amount = Column(Float, nullable=True)
    tip_amount = Column(Float, default=0.0)
    provider_payout = Column(Float, nullable=True)
    status = Column(String, default=PaymentStatus.PENDING.value)
    escrow_status = Column(String, nullable=True)
    external_transaction_id = Column(String, nullable=True, index=True)
    failure_reason = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    booking = relationship("Booking", back_populates="payments")


class EscrowWallet(Base):
    __tablename__ = "escrow_wallets"

    id = Column(String, primary_key=True, default=PLATFORM_WALLET_ID)
    total_held = Column(Float, nullable=False, default=0.0)
    total_released = Column(Float, nullable=False, default=0.0)
    total_commission = Column(Float, nullable=False, default=0.0)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class WalletTransaction(Base):
    __tablename__ = "wallet_transactions"

    id = Column(String, primary_key=True, default=generate_uuid)
    wallet_id = Column(String, ForeignKey("escrow_wallets.id"), nullable=False)
    type = Column(String, nullable=False, index=True)
    amount = Column(Float, nullable=False)
    booking_id = Column(String, ForeignKey("bookings.id"), nullable=True, index=True)
    payment_id = Column(String, ForeignKey("payments.id"), nullable=True, index=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=True)
    description = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class Activity(Base):
    __tablename__ = "activities"

    id = Column(String, primary_key=True, default=generate_uuid)
    user_id = Column(String, ForeignKey("users.id"), nullable=True)
    action_type = Column(String, nullable=False)
    content_id = Column(String, nullable=True)
    content_model = Column(String, nullable=True)
    details = Column(JSON, default=dict)
    created_at = Column(DateTime, default=datetime.utcnow)


class ServiceWorkflow(Base):
    __tablename__ = "service_workflows"

    id = Column(String, primary_key=True, default=generate_uuid)
    booking_id = Column(String, ForeignKey("bookings.id"), nullable=False, unique=True)
    steps = Column(JSON, default=list)  # [{"name", "status", "updated_at"}]
    current_step = Column(Integer, default=0)
    status = Column(String, default=WorkflowStatus.PENDING.value)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class Sequence(Base):
    __tablename__ = "sequences"

    type = Column(String, primary_key=True)
    counter = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
