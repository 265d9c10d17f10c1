"""
Proximity gate for live location tracking.

Poll-driven: state only advances when a location update arrives, and the dwell
requirement is checked against the wall clock at that moment. Nothing is scheduled.

    distance <= detect, not detected      -> detected, dwell timer starts
    distance <= detect, detected, dwell   -> can_start_job latches true
    distance >  reset,  detected          -> everything resets
    detect < distance <= reset            -> unchanged (hysteresis band)
"""
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Optional

from app.core.config import settings
from app.services.geo import GeoPoint, distance_between_m

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProximityState:
    proximity_detected: bool = False
    proximity_detected_at: Optional[datetime] = None
    proximity_start_time: Optional[datetime] = None
    can_start_job: bool = False
    distance_apart: Optional[float] = None

    @classmethod
    def from_booking(cls, booking) -> "ProximityState":
        return cls(
            proximity_detected=bool(booking.proximity_detected),
            proximity_detected_at=booking.proximity_detected_at,
            proximity_start_time=booking.proximity_start_time,
            can_start_job=bool(booking.can_start_job),
            distance_apart=booking.distance_apart,
        )

    def apply_to(self, booking) -> None:
        booking.proximity_detected = self.proximity_detected
        booking.proximity_detected_at = self.proximity_detected_at
        booking.proximity_start_time = self.proximity_start_time
        booking.can_start_job = self.can_start_job
        booking.distance_apart = self.distance_apart


class ProximityTracker:
    def __init__(
        self,
        detect_meters: Optional[float] = None,
        reset_meters: Optional[float] = None,
        dwell_seconds: Optional[int] = None,
    ):
        self.detect_meters = settings.PROXIMITY_DETECT_METERS if detect_meters is None else detect_meters
        self.reset_meters = settings.PROXIMITY_RESET_METERS if reset_meters is None else reset_meters
        dwell = settings.PROXIMITY_DWELL_SECONDS if dwell_seconds is None else dwell_seconds
        self.dwell = timedelta(seconds=dwell)

    def evaluate(self, state: ProximityState, distance_m: float, now: datetime) -> ProximityState:
        state = replace(state, distance_apart=round(distance_m, 2))

        if distance_m <= self.detect_meters:
            if not state.proximity_detected:
                return replace(
                    state,
                    proximity_detected=True,
                    proximity_detected_at=now,
                    proximity_start_time=now,
                )
            if state.proximity_start_time is None:
                return replace(state, proximity_start_time=now)
            if not state.can_start_job and now - state.proximity_start_time >= self.dwell:
                return replace(state, can_start_job=True)
            return state

        if distance_m > self.reset_meters and state.proximity_detected:
            return replace(
                state,
                proximity_detected=False,
                proximity_start_time=None,
                can_start_job=False,
            )

        return state

    def track(
        self,
        state: ProximityState,
        customer: Optional[GeoPoint],
        provider: Optional[GeoPoint],
        now: datetime,
    ) -> ProximityState:
        """Advance the gate when both parties have reported a position."""
        if customer is None or provider is None:
            return state
        return self.evaluate(state, distance_between_m(provider, customer), now)
