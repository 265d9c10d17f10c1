import logging
from datetime import datetime
from typing import List, Optional
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from app.db.db_models import ServiceWorkflow, WorkflowStatus

logger = logging.getLogger(__name__)

STEP_REQUEST_CREATED = "Booking Request Created"
STEP_PROVIDER_ASSIGNED = "Provider Assigned"
STEP_PAYMENT_RECEIVED = "Payment Received"
STEP_PROVIDER_EN_ROUTE = "Provider En Route"
STEP_IN_PROGRESS = "Service In Progress"
STEP_COMPLETED = "Service Completed"

DEFAULT_STEPS: List[str] = [
    STEP_REQUEST_CREATED,
    STEP_PROVIDER_ASSIGNED,
    STEP_PAYMENT_RECEIVED,
    STEP_PROVIDER_EN_ROUTE,
    STEP_IN_PROGRESS,
    STEP_COMPLETED,
]


def _step(name: str, status: str, now: datetime) -> dict:
    return {"name": name, "status": status, "updated_at": now.isoformat()}


def _current_step(steps: List[dict]) -> int:
    for index, step in enumerate(steps):
        if step["status"] != WorkflowStatus.COMPLETED.value:
            return index
    return len(steps) - 1


class WorkflowService:
    """Per-booking progress checklist. Every method is best-effort and logs failures."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, booking_id: str) -> Optional[ServiceWorkflow]:
        result = await self.db.execute(
            select(ServiceWorkflow).where(ServiceWorkflow.booking_id == booking_id)
        )
        return result.scalar_one_or_none()

    async def create_for_booking(self, booking_id: str, now: Optional[datetime] = None) -> None:
        now = now or datetime.utcnow()
        steps = [
            _step(name, WorkflowStatus.COMPLETED.value if index == 0 else WorkflowStatus.PENDING.value, now)
            for index, name in enumerate(DEFAULT_STEPS)
        ]
        try:
            async with self.db.begin_nested():
                self.db.add(ServiceWorkflow(
                    booking_id=booking_id,
                    steps=steps,
                    current_step=_current_step(steps),
                    status=WorkflowStatus.IN_PROGRESS.value,
                ))
        except Exception as e:
            logger.warning(f"Failed to create workflow for booking {booking_id}: {e}")

    async def update_steps(self, booking_id: str, updates: dict, now: Optional[datetime] = None) -> None:
        """Apply ``{step_name: status}`` updates; the workflow completes when every step has."""
        now = now or datetime.utcnow()
        try:
            async with self.db.begin_nested():
                workflow = await self.get(booking_id)
                if workflow is None:
                    logger.info(f"No workflow for booking {booking_id}; skipping step update")
                    return
                # JSON columns only persist on reassignment
                steps = [dict(step) for step in (workflow.steps or [])]
                for step in steps:
                    if step["name"] in updates:
                        step["status"] = updates[step["name"]]
                        step["updated_at"] = now.isoformat()
                workflow.steps = steps
                workflow.current_step = _current_step(steps)
                if all(step["status"] == WorkflowStatus.COMPLETED.value for step in steps):
                    workflow.status = WorkflowStatus.COMPLETED.value
        except Exception as e:
            logger.warning(f"Failed to update workflow for booking {booking_id}: {e}")

    async def set_status(self, booking_id: str, status: str) -> None:
        try:
            async with self.db.begin_nested():
                workflow = await self.get(booking_id)
                if workflow is not None:
                    workflow.status = status
        except Exception as e:
            logger.warning(f"Failed to set workflow status for booking {booking_id}: {e}")
