import logging
from typing import Any, Dict, Optional
from sqlalchemy.ext.asyncio import AsyncSession
from app.db.db_models import Activity

logger = logging.getLogger(__name__)


class ActivityLogger:
    """Audit trail of user actions. Best-effort: a failed write never fails the caller."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def log(
        self,
        user_id: Optional[str],
        action_type: str,
        content_id: Optional[str] = None,
        content_model: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        try:
            async with self.db.begin_nested():
                self.db.add(Activity(
                    user_id=user_id,
                    action_type=action_type,
                    content_id=content_id,
                    content_model=content_model,
                    details=details or {},
                ))
        except Exception as e:
            logger.warning(f"Failed to log activity {action_type} for {content_model} {content_id}: {e}")
