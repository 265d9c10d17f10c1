"""
Provider matching.

Finds online, verified, unoccupied providers whose skills overlap the request
and whose service area covers the customer, then ranks them.

Scoring (higher is better):
    rating x 20  +  max(0, 100 - 2 x distance_km)  +  2 x min(experience_years, 10)

Ties break on distance, then provider id, then service id, so identical inputs
always produce the same winner.
"""
import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional

from sqlalchemy import select, and_, or_, func, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.db.db_models import (
    User, ProviderProfile, Service, Booking, ACTIVE_BOOKING_STATUSES,
)
from app.services.geo import GeoPoint, haversine_km
from app.services import pricing

logger = logging.getLogger(__name__)


@dataclass
class ProviderMatch:
    provider: User
    profile: ProviderProfile
    service: Service
    distance: float  # km
    location_multiplier: float
    adjusted_price: float
    match_score: float


def match_score(rating: Optional[float], distance_km: float, experience_years: Optional[int]) -> float:
    rating_score = (rating or 0.0) * 20
    distance_score = max(0.0, 100 - distance_km * 2)
    experience_score = min(experience_years or 0, 10) * 2
    return rating_score + distance_score + experience_score


def skills_overlap(provider_skills: Optional[Iterable[str]], required_skills: Optional[Iterable[str]]) -> bool:
    required = {s.strip().lower() for s in (required_skills or []) if s and s.strip()}
    if not required:
        return True
    offered = {s.strip().lower() for s in (provider_skills or []) if s}
    return bool(offered & required)


def is_profile_eligible(profile: Optional[ProviderProfile]) -> bool:
    return bool(
        profile
        and profile.is_online
        and profile.is_verified
        and profile.is_identity_verified
        and profile.is_profile_complete
        and profile.application_status == "active"
    )


async def is_provider_busy(db: AsyncSession, provider_id: str) -> bool:
    """A provider is busy while any booking on their services is active, or while a booking holds their claim."""
    claimed_by = await db.scalar(
        select(ProviderProfile.active_booking_id).where(ProviderProfile.user_id == provider_id)
    )
    if claimed_by:
        return True
    result = await db.execute(
        select(func.count(Booking.id))
        .join(Service, Service.id == Booking.service_id)
        .where(
            Service.provider_id == provider_id,
            Booking.status.in_(ACTIVE_BOOKING_STATUSES),
        )
    )
    return (result.scalar() or 0) > 0


async def claim_provider(db: AsyncSession, provider_id: str, booking_id: str) -> bool:
    """Reserve ``provider_id`` for ``booking_id``.

    Conditional update on the claim column: of two concurrent bookings only one
    sees rowcount 1, so a provider can never be handed two active bookings.
    """
    result = await db.execute(
        update(ProviderProfile)
        .where(
            ProviderProfile.user_id == provider_id,
            ProviderProfile.active_booking_id.is_(None),
        )
        .values(active_booking_id=booking_id)
        .execution_options(synchronize_session=False)
    )
    claimed = result.rowcount == 1
    if not claimed:
        logger.info(f"Provider {provider_id} already claimed; booking {booking_id} not assigned")
    return claimed


async def release_provider(db: AsyncSession, provider_id: Optional[str], booking_id: str) -> None:
    if not provider_id:
        return
    await db.execute(
        update(ProviderProfile)
        .where(
            ProviderProfile.user_id == provider_id,
            ProviderProfile.active_booking_id == booking_id,
        )
        .values(active_booking_id=None)
        .execution_options(synchronize_session=False)
    )


class ProviderMatcher:
    def __init__(self, db: AsyncSession, max_distance_km: Optional[float] = None):
        self.db = db
        self.max_distance_km = settings.MATCH_MAX_DISTANCE_KM if max_distance_km is None else max_distance_km

    async def _candidate_services(self, service_title: Optional[str]) -> List[tuple]:
        query = (
            select(Service, User, ProviderProfile)
            .join(User, User.id == Service.provider_id)
            .join(ProviderProfile, ProviderProfile.user_id == User.id)
            .where(
                and_(
                    Service.admin_approved == True,
                    Service.status == "active",
                    User.is_active == True,
                )
            )
        )
        if service_title:
            pattern = f"%{service_title.strip()}%"
            query = query.where(
                or_(
                    Service.title.ilike(pattern),
                    Service.description.ilike(pattern),
                )
            )
        result = await self.db.execute(query)
        return list(result.all())

    async def find_available(
        self,
        service_title: Optional[str],
        required_skills: Optional[List[str]],
        location: GeoPoint,
        base_price: Optional[float] = None,
        exclude_service_ids: Iterable[str] = (),
    ) -> List[ProviderMatch]:
        excluded = set(exclude_service_ids)
        area_multiplier = pricing.location_multiplier(location.address)
        matches: List[ProviderMatch] = []

        for service, provider, profile in await self._candidate_services(service_title):
            if service.id in excluded:
                continue
            if not is_profile_eligible(profile):
                continue
            if not skills_overlap(profile.skills, required_skills):
                continue
            if profile.service_area_lat is None or profile.service_area_lng is None:
                continue

            distance_km = haversine_km(
                profile.service_area_lat, profile.service_area_lng, location.lat, location.lng
            )
            radius = profile.service_area_radius_km or settings.DEFAULT_SERVICE_RADIUS_KM
            if distance_km > radius or distance_km > self.max_distance_km:
                continue

            if await is_provider_busy(self.db, provider.id):
                continue

            price = service.price if base_price is None else base_price
            matches.append(ProviderMatch(
                provider=provider,
                profile=profile,
                service=service,
                distance=round(distance_km, 3),
                location_multiplier=area_multiplier,
                adjusted_price=pricing.money(price * area_multiplier),
                match_score=match_score(provider.rating, distance_km, profile.experience_years),
            ))

        matches.sort(key=lambda m: (-m.match_score, m.distance, m.provider.id, m.service.id))
        return matches

    async def match(
        self,
        service_title: Optional[str],
        required_skills: Optional[List[str]],
        location: GeoPoint,
        base_price: Optional[float] = None,
        exclude_service_ids: Iterable[str] = (),
        claim_for: Optional[str] = None,
    ) -> Optional[ProviderMatch]:
        """Best available provider, or ``None`` when the request has to be queued.

        With ``claim_for`` set, candidates are claimed in ranking order for that
        booking id and the first successful claim wins.
        """
        matches = await self.find_available(
            service_title, required_skills, location, base_price, exclude_service_ids
        )
        tried = set()
        for candidate in matches:
            if candidate.provider.id in tried:
                continue
            tried.add(candidate.provider.id)
            if claim_for and not await claim_provider(self.db, candidate.provider.id, claim_for):
                continue
            logger.info(
                f"Matched provider {candidate.provider.id} for '{service_title}' "
                f"at {candidate.distance:.2f} km (score {candidate.match_score:.1f})"
            )
            return candidate

        logger.info(f"No available provider for '{service_title}' skills={required_skills}")
        return None
