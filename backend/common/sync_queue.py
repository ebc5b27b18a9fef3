"""Durable at-least-once queue of outbound sync work, backed by the sync_jobs table.

State machine: pending -> processing -> {completed, failed}. Terminal rows are
never revived; retrying means enqueueing a fresh job. Rows stuck in
processing longer than the lease are handed back to pending by
``reclaim_stale_jobs``.
"""
import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Union

import redis.asyncio as redis
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from common.config import settings
from common.models import SyncAction, SyncJob, SyncJobStatus, utc_now

logger = logging.getLogger(__name__)

WAKE_QUEUE = "sync_jobs_wake"

redis_client = redis.from_url(settings.REDIS_URL, decode_responses=True)


async def _nudge_worker(job_id: str) -> None:
    try:
        await redis_client.rpush(WAKE_QUEUE, job_id)
    except Exception as e:
        logger.debug(f"Worker wake-up nudge failed for job {job_id}: {e}")


async def enqueue(
    db: AsyncSession,
    user_id: str,
    task_id: Optional[str],
    action: Union[SyncAction, str],
    metadata: Optional[Dict[str, Any]] = None,
    schedule_at: Optional[datetime] = None,
) -> bool:
    """Insert a pending job and commit it.

    Never raises: a failed enqueue must not fail the local mutation that
    triggered it. Returns False when nothing was written (error, bad input or
    an already queued full_sync).
    """
    if not user_id or not action:
        return False
    try:
        action = SyncAction(action)
    except ValueError:
        logger.error(f"Refusing to enqueue unknown sync action {action!r}")
        return False

    job_id = str(uuid.uuid4())
    try:
        if action == SyncAction.full_sync:
            existing = (await db.execute(
                select(SyncJob.id).where(
                    SyncJob.user_id == user_id,
                    SyncJob.action == SyncAction.full_sync,
                    SyncJob.status.in_([SyncJobStatus.pending, SyncJobStatus.processing]),
                ).limit(1)
            )).scalar_one_or_none()
            if existing:
                logger.info(f"full_sync already queued for user {user_id} ({existing})")
                return False

        db.add(SyncJob(
            id=job_id,
            user_id=user_id,
            task_id=task_id,
            action=action,
            payload=dict(metadata or {}),
            status=SyncJobStatus.pending,
            attempts=0,
            scheduled_at=schedule_at or utc_now(),
        ))
        await db.commit()
    except Exception as e:
        await db.rollback()
        logger.error(f"Failed to enqueue {action.value} sync job for user {user_id} task {task_id}: {e}")
        return False

    await _nudge_worker(job_id)
    return True


async def fetch_pending(db: AsyncSession, limit: int = 25) -> List[SyncJob]:
    stmt = (
        select(SyncJob)
        .where(
            SyncJob.status == SyncJobStatus.pending,
            SyncJob.scheduled_at <= utc_now(),
        )
        .order_by(SyncJob.scheduled_at, SyncJob.created_at)
        .limit(max(limit, 0))
    )
    return list((await db.execute(stmt)).scalars().all())


async def mark_processing(db: AsyncSession, job_id: str, attempts: int) -> bool:
    """Claim a pending job. False means another worker got there first."""
    now = utc_now()
    result = await db.execute(
        update(SyncJob)
        .where(SyncJob.id == job_id, SyncJob.status == SyncJobStatus.pending)
        .values(status=SyncJobStatus.processing, attempts=attempts + 1, locked_at=now, updated_at=now)
    )
    await db.commit()
    return (result.rowcount or 0) == 1


async def mark_completed(db: AsyncSession, job_id: str) -> None:
    now = utc_now()
    await db.execute(
        update(SyncJob)
        .where(SyncJob.id == job_id, SyncJob.status == SyncJobStatus.processing)
        .values(status=SyncJobStatus.completed, last_error=None, processed_at=now, updated_at=now)
    )
    await db.commit()


async def mark_failed(db: AsyncSession, job_id: str, error: Optional[str], attempts: int) -> None:
    message = (error or "")[: settings.SYNC_JOB_ERROR_MAX_LENGTH] or None
    await db.execute(
        update(SyncJob)
        .where(SyncJob.id == job_id, SyncJob.status == SyncJobStatus.processing)
        .values(status=SyncJobStatus.failed, last_error=message, attempts=attempts, updated_at=utc_now())
    )
    await db.commit()


async def reclaim_stale_jobs(db: AsyncSession, lease_minutes: Optional[int] = None) -> int:
    """Return processing jobs whose lease expired (crashed worker) to pending."""
    lease = lease_minutes if lease_minutes is not None else settings.SYNC_JOB_LEASE_MINUTES
    cutoff = utc_now() - timedelta(minutes=lease)
    result = await db.execute(
        update(SyncJob)
        .where(
            SyncJob.status == SyncJobStatus.processing,
            SyncJob.locked_at < cutoff,
        )
        .values(status=SyncJobStatus.pending, locked_at=None, updated_at=utc_now())
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    reclaimed = result.rowcount or 0
    if reclaimed:
        logger.warning(f"Reclaimed {reclaimed} sync job(s) stuck in processing for over {lease} minutes")
    return reclaimed


async def queue_stats(db: AsyncSession, user_id: Optional[str] = None) -> Dict[str, Any]:
    def _scoped(stmt):
        return stmt.where(SyncJob.user_id == user_id) if user_id else stmt

    counts = {s.value: 0 for s in SyncJobStatus}
    rows = (await db.execute(_scoped(select(SyncJob.status, func.count(SyncJob.id))).group_by(SyncJob.status))).all()
    for status_value, count in rows:
        counts[status_value.value] = count

    oldest_pending = (await db.execute(
        _scoped(select(func.min(SyncJob.scheduled_at)).where(SyncJob.status == SyncJobStatus.pending))
    )).scalar()
    last_completed = (await db.execute(
        _scoped(select(func.max(SyncJob.processed_at)).where(SyncJob.status == SyncJobStatus.completed))
    )).scalar()
    last_failed = (await db.execute(
        _scoped(select(SyncJob).where(SyncJob.status == SyncJobStatus.failed))
        .order_by(SyncJob.updated_at.desc())
        .limit(1)
    )).scalar_one_or_none()

    return {
        **counts,
        "oldest_pending_scheduled_at": oldest_pending.isoformat() if oldest_pending else None,
        "last_completed_at": last_completed.isoformat() if last_completed else None,
        "last_failure_at": last_failed.updated_at.isoformat() if last_failed else None,
        "last_failure_error": last_failed.last_error if last_failed else None,
    }
