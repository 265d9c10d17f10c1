"""Durable reference-number sequences (``SH-BK-000001``, ``SH-PY-000001``)."""
import logging
from datetime import datetime
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from app.core.config import settings
from app.db.db_models import Sequence

logger = logging.getLogger(__name__)

REFERENCE_CODES = {
    "booking": "BK",
    "payment": "PY",
}


async def next_sequence(db: AsyncSession, seq_type: str) -> int:
    """Atomically increment and return the counter for ``seq_type``.

    The increment happens in SQL so concurrent callers each get a distinct value;
    the first caller for a type creates the row.
    """
    for _ in range(3):
        result = await db.execute(
            update(Sequence)
            .where(Sequence.type == seq_type)
            .values(counter=Sequence.counter + 1, updated_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            counter = await db.scalar(select(Sequence.counter).where(Sequence.type == seq_type))
            return int(counter)

        try:
            async with db.begin_nested():
                db.add(Sequence(type=seq_type, counter=1))
            return 1
        except IntegrityError:
            # Another writer created the row first; loop back to the increment
            logger.info(f"Sequence row for {seq_type} created concurrently, retrying increment")
    raise RuntimeError(f"Could not allocate sequence value for {seq_type}")


def format_reference(seq_type: str, counter: int) -> str:
    code = REFERENCE_CODES[seq_type]
    return f"{settings.REFERENCE_PREFIX}-{code}-{counter:06d}"


async def generate_reference(db: AsyncSession, seq_type: str) -> str:
    return format_reference(seq_type, await next_sequence(db, seq_type))
