import logging
import uuid
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from common.config import settings
from common.models import EventLog

logger = logging.getLogger(__name__)

engine = create_async_engine(settings.DATABASE_URL, echo=settings.APP_ENV == "dev")
AsyncSessionLocal = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


def log_event(
    db: AsyncSession,
    user_id: str,
    event_type: str,
    request_id: str,
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    payload: Optional[dict] = None,
) -> None:
    """Stage an EventLog row on the caller's session; it is written with the caller's commit."""
    db.add(EventLog(
        id=str(uuid.uuid4()),
        request_id=request_id,
        user_id=user_id,
        event_type=event_type,
        entity_type=entity_type,
        entity_id=entity_id,
        payload_json=payload or {},
    ))


async def emit_event(
    db: AsyncSession,
    user_id: str,
    event_type: str,
    request_id: str,
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    payload: Optional[dict] = None,
) -> None:
    """Write an EventLog row immediately. Never raises."""
    try:
        log_event(db, user_id, event_type, request_id, entity_type, entity_id, payload)
        await db.commit()
    except Exception as log_error:
        await db.rollback()
        logger.error(f"Failed to emit event {event_type} for {request_id}: {log_error}")
