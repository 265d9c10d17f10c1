import os

# Must be set before app modules build the engine
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("PAYMENTS_SIMULATED", "True")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "")
os.environ.setdefault("FIREBASE_CREDENTIALS_PATH", "")

from datetime import datetime

import httpx
import pytest
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.pool import StaticPool

from app.core.security import create_access_token
from app.db.database import get_db
from app.db.db_models import Base, User, ProviderProfile, Service, Booking, Payment, UserRole, generate_uuid
from app.main import app
from app.services.notification_service import NotificationService

# Johannesburg CBD, GeoJSON order
JHB = [28.0, -26.0]
NOW = datetime(2026, 3, 2, 9, 30)


class RecordingNotifier(NotificationService):
    """Notification port that keeps every event instead of pushing it."""

    def __init__(self):
        super().__init__(credentials_path="")
        self.events = []

    def emit(self, user_id, event, payload=None):
        self.events.append((user_id, event, payload or {}))

    def names(self, user_id=None):
        return [e for uid, e, _ in self.events if user_id is None or uid == user_id]


@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def make_user(db):
    async def _make_user(role=UserRole.CUSTOMER.value, **kwargs):
        user = User(
            id=generate_uuid(),
            email=kwargs.pop("email", f"{generate_uuid()[:8]}@example.com"),
            password_hash="not-a-real-hash",
            full_name=kwargs.pop("full_name", "Test User"),
            role=role,
            rating=kwargs.pop("rating", 0.0),
            total_reviews=0,
            wallet_balance=0.0,
            is_active=True,
            **kwargs,
        )
        db.add(user)
        await db.flush()
        return user
    return _make_user


@pytest.fixture
def make_provider(db, make_user):
    async def _make_provider(
        lng=28.0, lat=-26.0, skills=("plumbing",), online=True, rating=4.0,
        experience_years=5, radius_km=25.0, **user_kwargs
    ):
        provider = await make_user(UserRole.PROVIDER.value, rating=rating, **user_kwargs)
        profile = ProviderProfile(
            user_id=provider.id,
            skills=list(skills),
            is_online=online,
            is_verified=True,
            is_identity_verified=True,
            is_profile_complete=True,
            application_status="active",
            service_area_lat=lat,
            service_area_lng=lng,
            service_area_radius_km=radius_km,
            experience_years=experience_years,
        )
        db.add(profile)
        await db.flush()
        return provider
    return _make_provider


@pytest.fixture
def make_service(db):
    async def _make_service(provider, title="Leak Repair", price=500.0, **kwargs):
        service = Service(
            id=generate_uuid(),
            title=title,
            description=kwargs.pop("description", f"{title} service"),
            category=kwargs.pop("category", "plumbing"),
            price=price,
            duration_minutes=kwargs.pop("duration_minutes", 60),
            provider_id=provider.id if provider else None,
            admin_approved=kwargs.pop("admin_approved", True),
            status=kwargs.pop("status", "active"),
        )
        db.add(service)
        await db.flush()
        return service
    return _make_service


@pytest.fixture
def make_booking(db):
    """Insert a booking row directly, bypassing matching."""
    counter = {"n": 0}

    async def _make_booking(customer, service, calculated_price=1000.0, **kwargs):
        counter["n"] += 1
        booking = Booking(
            id=generate_uuid(),
            reference_number=f"SH-BK-T{counter['n']:05d}",
            customer_id=customer.id,
            service_id=service.id,
            date=NOW.date(),
            time="10:00",
            location_lat=-26.0,
            location_lng=28.0,
            job_size="small",
            job_size_multiplier=1.0,
            base_price=calculated_price,
            calculated_price=calculated_price,
            **kwargs,
        )
        db.add(booking)
        await db.flush()
        return booking
    return _make_booking


@pytest.fixture
def make_payment(db):
    async def _make_payment(booking, amount=None, tip_amount=0.0, commission_rate=0.15):
        payment = Payment(
            id=generate_uuid(),
            reference_number=f"SH-PY-{generate_uuid()[:6]}",
            booking_id=booking.id,
            customer_id=booking.customer_id,
            amount=booking.calculated_price + tip_amount if amount is None else amount,
            tip_amount=tip_amount,
            commission_rate=commission_rate,
            currency="zar",
            status="pending",
        )
        db.add(payment)
        await db.flush()
        return payment
    return _make_payment


@pytest.fixture
async def client(session_factory):
    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test/api/v1") as client:
        yield client
    app.dependency_overrides.clear()


def auth_headers(user):
    return {"Authorization": f"Bearer {create_access_token(user.id)}"}
