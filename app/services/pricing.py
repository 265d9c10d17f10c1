"""
Price arithmetic for bookings: job-size scaling, area multipliers, commission,
SLA penalties and provider payout.

Amounts are rounded to cents on the way out of every helper.
"""
import math
from dataclasses import dataclass
from typing import Dict, Optional

from app.core.config import settings
from app.core.exceptions import ValidationFailedError
from app.db.db_models import JobSize

JOB_SIZE_MULTIPLIERS: Dict[str, float] = {
    JobSize.SMALL.value: 1.0,
    JobSize.MEDIUM.value: 1.5,
    JobSize.LARGE.value: 2.0,
    JobSize.CUSTOM.value: 1.0,
}

# Premium areas price above 1.0, lower-income areas below
LOCATION_MULTIPLIERS: Dict[str, float] = {
    "sandton": 1.3,
    "rosebank": 1.25,
    "melrose": 1.2,
    "bryanston": 1.2,
    "waterkloof": 1.3,
    "constantia": 1.3,
    "johannesburg": 1.0,
    "pretoria": 1.0,
    "cape town": 1.0,
    "soweto": 0.85,
    "alexandra": 0.85,
    "khayelitsha": 0.85,
    "mitchells plain": 0.85,
}


def money(value: float) -> float:
    return round(float(value), 2)


@dataclass(frozen=True)
class JobPrice:
    job_size: str
    multiplier: float
    base_price: float
    calculated_price: float


@dataclass(frozen=True)
class Settlement:
    amount: float
    tip_amount: float
    commission_rate: float
    commission_amount: float
    sla_penalty_amount: float
    provider_payout: float


def job_size_multiplier(job_size: str) -> float:
    try:
        return JOB_SIZE_MULTIPLIERS[job_size]
    except KeyError:
        raise ValidationFailedError(
            f"jobSize must be one of {', '.join(JOB_SIZE_MULTIPLIERS)}", field="job_size"
        )


def calculate_job_price(base_price: float, job_size: str, custom_price: Optional[float] = None) -> JobPrice:
    """``calculated_price = custom_price`` for custom jobs, else ``base_price x multiplier``."""
    multiplier = job_size_multiplier(job_size)
    if job_size == JobSize.CUSTOM.value:
        if custom_price is None:
            raise ValidationFailedError("customPrice is required when jobSize is custom", field="custom_price")
        if custom_price <= 0:
            raise ValidationFailedError("customPrice must be greater than zero", field="custom_price")
        calculated = custom_price
    else:
        if custom_price is not None:
            raise ValidationFailedError("customPrice is only accepted when jobSize is custom", field="custom_price")
        calculated = base_price * multiplier
    return JobPrice(
        job_size=job_size,
        multiplier=multiplier,
        base_price=money(base_price),
        calculated_price=money(calculated),
    )


def location_multiplier(address: Optional[str]) -> float:
    """Area multiplier from the first known area name found in ``address``."""
    if not address:
        return 1.0
    address_lower = address.lower()
    for area, multiplier in LOCATION_MULTIPLIERS.items():
        if area in address_lower:
            return multiplier
    return 1.0


def calculate_commission(amount: float, tip_amount: float = 0.0, rate: Optional[float] = None) -> float:
    """Commission applies to the service portion only; tips pass through untouched."""
    if rate is None:
        rate = settings.COMMISSION_RATE
    return money(max(0.0, amount - tip_amount) * rate)


def actual_duration_minutes(started_at, completed_at) -> int:
    return math.ceil((completed_at - started_at).total_seconds() / 60)


def is_sla_breached(estimated_minutes: Optional[int], actual_minutes: int) -> bool:
    return bool(estimated_minutes) and estimated_minutes > 0 and actual_minutes > estimated_minutes


def calculate_sla_penalty(
    calculated_price: float,
    estimated_minutes: Optional[int],
    actual_minutes: int,
    rate_per_hour: Optional[float] = None,
) -> float:
    """Linear penalty: ``price x rate x hours_over``, fractional hours included."""
    if not is_sla_breached(estimated_minutes, actual_minutes):
        return 0.0
    if rate_per_hour is None:
        rate_per_hour = settings.SLA_PENALTY_RATE_PER_HOUR
    hours_over = (actual_minutes - estimated_minutes) / 60
    return money(calculated_price * rate_per_hour * hours_over)


def calculate_settlement(
    amount: float,
    tip_amount: float = 0.0,
    sla_penalty_amount: float = 0.0,
    commission_rate: Optional[float] = None,
) -> Settlement:
    if commission_rate is None:
        commission_rate = settings.COMMISSION_RATE
    tip_amount = tip_amount or 0.0
    sla_penalty_amount = sla_penalty_amount or 0.0
    commission = calculate_commission(amount, tip_amount, commission_rate)
    payout = money(max(0.0, amount - commission - sla_penalty_amount))
    return Settlement(
        amount=money(amount),
        tip_amount=money(tip_amount),
        commission_rate=commission_rate,
        commission_amount=commission,
        sla_penalty_amount=money(sla_penalty_amount),
        provider_payout=payout,
    )
