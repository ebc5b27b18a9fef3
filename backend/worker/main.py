import asyncio
import logging
import time
import uuid
from typing import Any, Dict, List

from sqlalchemy import select

from common.config import settings
from common.db import AsyncSessionLocal, emit_event
from common.inbound import sync_remote_changes_for_user
from common.models import RemoteConnection
from common.outbound import process_pending_jobs
from common import sync_queue

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("worker")


async def drain_sync_jobs() -> List[Dict[str, Any]]:
    async with AsyncSessionLocal() as db:
        reclaimed = await sync_queue.reclaim_stale_jobs(db)
        if reclaimed:
            await emit_event(
                db, "system", "sync_jobs_reclaimed", f"reclaim_{uuid.uuid4()}",
                payload={"reclaimed": reclaimed, "lease_minutes": settings.SYNC_JOB_LEASE_MINUTES},
            )
        return await process_pending_jobs(db, settings.SYNC_JOB_BATCH_SIZE)


async def enabled_connection_users() -> List[str]:
    async with AsyncSessionLocal() as db:
        stmt = select(RemoteConnection.user_id).where(RemoteConnection.sync_enabled.is_(True))
        return list((await db.execute(stmt)).scalars().all())


async def sync_remote_for_all_users() -> Dict[str, Any]:
    results: Dict[str, Any] = {}
    for user_id in await enabled_connection_users():
        # Fresh session per user.
        async with AsyncSessionLocal() as db:
            try:
                results[user_id] = await sync_remote_changes_for_user(db, user_id)
            except Exception as e:
                await db.rollback()
                logger.error(f"Remote sync failed for user {user_id}: {e}")
                results[user_id] = {"error": str(e)[: settings.SYNC_JOB_ERROR_MAX_LENGTH]}
    return results


async def wait_for_wakeup(timeout: int) -> None:
    result = await sync_queue.redis_client.blpop(sync_queue.WAKE_QUEUE, timeout=max(timeout, 1))
    if result:
        # Collapse a burst of nudges into one drain.
        await sync_queue.redis_client.delete(sync_queue.WAKE_QUEUE)


async def worker_loop():
    logger.info("Sync worker started, polling sync_jobs...")
    remote_interval = settings.SYNC_REMOTE_INTERVAL_MINUTES * 60
    last_remote_sync = None
    while True:
        try:
            await drain_sync_jobs()
            if remote_interval > 0 and (last_remote_sync is None or time.monotonic() - last_remote_sync >= remote_interval):
                last_remote_sync = time.monotonic()
                results = await sync_remote_for_all_users()
                if results:
                    logger.info(f"Periodic remote sync finished for {len(results)} user(s)")
            await wait_for_wakeup(settings.SYNC_POLL_INTERVAL_SECONDS)
        except Exception as e:
            logger.error(f"Error in worker loop: {e}")
            await asyncio.sleep(5)

if __name__ == "__main__":
    asyncio.run(worker_loop())
