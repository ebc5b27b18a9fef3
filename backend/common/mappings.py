"""Persisted local<->remote associations.

Every function stages its changes on the given session and flushes; the
caller owns the commit. Version tokens (``remote_etag``) are opaque strings.
"""
import uuid
from typing import List, Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from common.models import ProjectListMapping, SyncDirection, TaskItemMapping, utc_now


# --- Project <-> container ---

async def get_project_mapping(db: AsyncSession, project_id: str) -> Optional[ProjectListMapping]:
    stmt = select(ProjectListMapping).where(ProjectListMapping.project_id == project_id)
    return (await db.execute(stmt)).scalar_one_or_none()


async def get_project_mapping_by_container(
    db: AsyncSession, user_id: str, remote_container_id: str
) -> Optional[ProjectListMapping]:
    stmt = select(ProjectListMapping).where(
        ProjectListMapping.user_id == user_id,
        ProjectListMapping.remote_container_id == remote_container_id,
        ProjectListMapping.is_active.is_(True),
    )
    return (await db.execute(stmt)).scalars().first()


async def list_project_mappings(db: AsyncSession, user_id: str, active_only: bool = False) -> List[ProjectListMapping]:
    stmt = select(ProjectListMapping).where(ProjectListMapping.user_id == user_id)
    if active_only:
        stmt = stmt.where(
            ProjectListMapping.is_active.is_(True),
            ProjectListMapping.remote_container_id.isnot(None),
        )
    stmt = stmt.order_by(ProjectListMapping.created_at)
    return list((await db.execute(stmt)).scalars().all())


async def save_project_mapping(
    db: AsyncSession,
    user_id: str,
    project_id: str,
    remote_container_id: str,
    remote_etag: Optional[str] = None,
) -> ProjectListMapping:
    """Point the project at ``remote_container_id``, reusing the row when one exists."""
    mapping = await get_project_mapping(db, project_id)
    if mapping is None:
        mapping = ProjectListMapping(id=str(uuid.uuid4()), user_id=user_id, project_id=project_id)
        db.add(mapping)
    if mapping.remote_container_id != remote_container_id:
        mapping.delta_cursor = None
    mapping.remote_container_id = remote_container_id
    mapping.remote_etag = remote_etag
    mapping.is_active = True
    mapping.updated_at = utc_now()
    await db.flush()
    return mapping


async def deactivate_project_mapping(db: AsyncSession, mapping: ProjectListMapping) -> None:
    mapping.is_active = False
    mapping.delta_cursor = None
    mapping.updated_at = utc_now()
    await db.flush()


async def set_delta_cursor(db: AsyncSession, mapping: ProjectListMapping, cursor: Optional[str]) -> None:
    mapping.delta_cursor = cursor
    mapping.updated_at = utc_now()
    await db.flush()


async def delete_project_mapping(db: AsyncSession, mapping: ProjectListMapping) -> None:
    """Drop the project mapping and every item mapping that lives in its container."""
    if mapping.remote_container_id:
        await db.execute(
            delete(TaskItemMapping).where(
                TaskItemMapping.user_id == mapping.user_id,
                TaskItemMapping.remote_container_id == mapping.remote_container_id,
            )
        )
    await db.delete(mapping)
    await db.flush()


# --- Task <-> item ---

async def get_task_mapping(db: AsyncSession, task_id: str) -> Optional[TaskItemMapping]:
    stmt = select(TaskItemMapping).where(TaskItemMapping.task_id == task_id)
    return (await db.execute(stmt)).scalar_one_or_none()


async def get_task_mapping_by_remote_id(
    db: AsyncSession, user_id: str, remote_item_id: str
) -> Optional[TaskItemMapping]:
    stmt = select(TaskItemMapping).where(
        TaskItemMapping.user_id == user_id,
        TaskItemMapping.remote_item_id == remote_item_id,
    )
    return (await db.execute(stmt)).scalars().first()


async def list_task_mappings(db: AsyncSession, user_id: str) -> List[TaskItemMapping]:
    stmt = select(TaskItemMapping).where(TaskItemMapping.user_id == user_id).order_by(TaskItemMapping.created_at)
    return list((await db.execute(stmt)).scalars().all())


async def upsert_task_mapping(
    db: AsyncSession,
    user_id: str,
    task_id: str,
    remote_container_id: str,
    remote_item_id: str,
    remote_etag: Optional[str],
    direction: SyncDirection,
) -> TaskItemMapping:
    mapping = await get_task_mapping(db, task_id)
    if mapping is None:
        mapping = TaskItemMapping(id=str(uuid.uuid4()), user_id=user_id, task_id=task_id)
        db.add(mapping)
    now = utc_now()
    mapping.remote_container_id = remote_container_id
    mapping.remote_item_id = remote_item_id
    mapping.remote_etag = remote_etag
    mapping.last_synced_at = now
    mapping.last_sync_direction = direction
    mapping.updated_at = now
    await db.flush()
    return mapping


async def delete_task_mapping(
    db: AsyncSession,
    user_id: str,
    task_id: Optional[str] = None,
    remote_item_id: Optional[str] = None,
) -> int:
    if not task_id and not remote_item_id:
        return 0
    stmt = delete(TaskItemMapping).where(TaskItemMapping.user_id == user_id)
    if task_id:
        stmt = stmt.where(TaskItemMapping.task_id == task_id)
    else:
        stmt = stmt.where(TaskItemMapping.remote_item_id == remote_item_id)
    result = await db.execute(stmt)
    return result.rowcount or 0
