"""Seed the database with demo providers, services and a customer around Johannesburg."""
import logging
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from app.db.db_models import User, UserRole, ProviderProfile, Service, EscrowWallet, PLATFORM_WALLET_ID
from app.core.security import get_password_hash

logger = logging.getLogger(__name__)

PROVIDERS = [
    {
        "email": "thabo.plumber@example.com",
        "full_name": "Thabo Nkosi",
        "phone": "+27821110001",
        "address": "Sandton, Johannesburg",
        "latitude": -26.1076,
        "longitude": 28.0567,
        "skills": ["plumbing", "geyser repair", "leak detection"],
        "experience_years": 12,
        "rating": 4.8,
        "services": [
            {"title": "Leak Repair", "category": "plumbing", "price": 450.0, "duration_minutes": 60,
             "description": "Find and fix leaking pipes, taps and fittings."},
            {"title": "Geyser Installation", "category": "plumbing", "price": 1800.0, "duration_minutes": 180,
             "description": "Supply-side geyser replacement and installation."},
        ],
    },
    {
        "email": "lerato.electrician@example.com",
        "full_name": "Lerato Mokoena",
        "phone": "+27821110002",
        "address": "Rosebank, Johannesburg",
        "latitude": -26.1452,
        "longitude": 28.0422,
        "skills": ["electrical", "wiring", "lighting"],
        "experience_years": 8,
        "rating": 4.6,
        "services": [
            {"title": "Electrical Fault Finding", "category": "electrical", "price": 550.0, "duration_minutes": 90,
             "description": "Trace and repair tripping circuits and faulty wiring."},
        ],
    },
    {
        "email": "sipho.cleaning@example.com",
        "full_name": "Sipho Dlamini",
        "phone": "+27821110003",
        "address": "Soweto, Johannesburg",
        "latitude": -26.2485,
        "longitude": 27.8540,
        "skills": ["cleaning", "deep cleaning"],
        "experience_years": 4,
        "rating": 4.3,
        "services": [
            {"title": "Home Deep Clean", "category": "cleaning", "price": 600.0, "duration_minutes": 240,
             "description": "Full home deep clean including kitchen and bathrooms."},
        ],
    },
]

CUSTOMERS = [
    {
        "email": "customer@example.com",
        "full_name": "Naledi Khumalo",
        "phone": "+27831110001",
        "address": "Melrose, Johannesburg",
        "latitude": -26.1370,
        "longitude": 28.0680,
    }
]


async def seed_data(db: AsyncSession):
    """Seed the database with demo data. Existing records (by email) are left alone."""
    logger.info("Starting database seed...")
    password_hash = get_password_hash("password123")

    if await db.get(EscrowWallet, PLATFORM_WALLET_ID) is None:
        db.add(EscrowWallet(id=PLATFORM_WALLET_ID, total_held=0.0, total_released=0.0, total_commission=0.0))

    seeded_services = 0
    for pro_data in PROVIDERS:
        result = await db.execute(select(User).where(User.email == pro_data["email"]))
        if result.scalars().first():
            continue
        user = User(
            email=pro_data["email"],
            password_hash=password_hash,
            full_name=pro_data["full_name"],
            phone=pro_data["phone"],
            role=UserRole.PROVIDER.value,
            latitude=pro_data["latitude"],
            longitude=pro_data["longitude"],
            address=pro_data["address"],
            rating=pro_data["rating"],
            is_active=True,
        )
        db.add(user)
        await db.flush()

        db.add(ProviderProfile(
            user_id=user.id,
            skills=pro_data["skills"],
            is_online=True,
            is_verified=True,
            is_identity_verified=True,
            is_profile_complete=True,
            application_status="active",
            service_area_lat=pro_data["latitude"],
            service_area_lng=pro_data["longitude"],
            service_area_radius_km=30.0,
            experience_years=pro_data["experience_years"],
        ))
        for service_data in pro_data["services"]:
            db.add(Service(provider_id=user.id, admin_approved=True, status="active", **service_data))
            seeded_services += 1

    for customer_data in CUSTOMERS:
        result = await db.execute(select(User).where(User.email == customer_data["email"]))
        if not result.scalars().first():
            db.add(User(
                password_hash=password_hash,
                role=UserRole.CUSTOMER.value,
                is_active=True,
                **customer_data,
            ))

    await db.commit()
    logger.info(f"Database seed completed ({seeded_services} new services).")
