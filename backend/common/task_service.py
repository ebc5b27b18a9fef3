"""Local project/task CRUD.

Every local task mutation commits first and then enqueues an outbound sync
job. Inbound sync passes ``skip_sync_job=True`` so remote changes are not
echoed back out.
"""
import logging
import uuid
from datetime import date, datetime
from typing import Any, Dict, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from common.config import settings
from common.mappings import get_task_mapping
from common.models import PRIORITIES, Project, ProjectSource, SyncAction, Task, utc_now
from common import sync_queue

logger = logging.getLogger(__name__)

TASK_FIELDS = ("name", "description", "due_date", "priority", "project_id", "is_completed", "completed_at", "updated_at")


class SyncError(RuntimeError):
    pass


class LocalDataError(SyncError):
    """A local task or project is missing or belongs to someone else."""


def _parse_due_date(value: Any) -> Optional[date]:
    if value is None or (isinstance(value, date) and not isinstance(value, datetime)):
        return value
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, str) and value.strip():
        try:
            return date.fromisoformat(value.strip()[:10])
        except ValueError:
            raise LocalDataError(f"Invalid due_date: {value!r}")
    return None


def _normalize_priority(value: Any) -> str:
    if isinstance(value, str):
        for candidate in PRIORITIES:
            if value.strip().lower() == candidate.lower():
                return candidate
    return "Medium"


async def get_project(db: AsyncSession, user_id: str, project_id: str) -> Project:
    project = (await db.execute(select(Project).where(Project.id == project_id))).scalar_one_or_none()
    if project is None:
        raise LocalDataError(f"Project {project_id} not found")
    if project.user_id != user_id:
        raise LocalDataError(f"Project {project_id} does not belong to user {user_id}")
    return project


async def get_task(db: AsyncSession, user_id: str, task_id: str) -> Task:
    task = (await db.execute(select(Task).where(Task.id == task_id))).scalar_one_or_none()
    if task is None:
        raise LocalDataError(f"Task {task_id} not found")
    if task.user_id != user_id:
        raise LocalDataError(f"Task {task_id} does not belong to user {user_id}")
    return task


async def create_project(
    db: AsyncSession,
    user_id: str,
    name: str,
    source: ProjectSource = ProjectSource.local,
    description: Optional[str] = None,
) -> Project:
    project = Project(
        id=str(uuid.uuid4()),
        user_id=user_id,
        name=name,
        description=description,
        status="Open",
        priority="Medium",
        source=source,
    )
    db.add(project)
    await db.commit()
    return project


async def ensure_unassigned_project(db: AsyncSession, user_id: str) -> Project:
    name = settings.UNASSIGNED_PROJECT_NAME
    stmt = select(Project).where(Project.user_id == user_id, func.lower(Project.name) == name.lower())
    existing = (await db.execute(stmt)).scalars().first()
    if existing is not None:
        return existing
    return await create_project(db, user_id, name, description="Auto-generated project for unassigned tasks.")


async def _touch_projects(db: AsyncSession, project_ids) -> None:
    ids = [pid for pid in project_ids if pid]
    if ids:
        await db.execute(update(Project).where(Project.id.in_(ids)).values(updated_at=utc_now()))


async def _mapping_metadata(db: AsyncSession, task_id: str) -> Dict[str, Any]:
    mapping = await get_task_mapping(db, task_id)
    if mapping is None:
        return {}
    return {
        "remote_item_id": mapping.remote_item_id,
        "remote_etag": mapping.remote_etag,
        "remote_container_id": mapping.remote_container_id,
    }


async def _enqueue(db: AsyncSession, task: Optional[Task], user_id: str, task_id: str, action: SyncAction, metadata: dict) -> None:
    enqueued = await sync_queue.enqueue(db, user_id, task_id, action, metadata)
    if not enqueued and task is not None:
        # enqueue rolled back its own insert; reload the already committed task.
        await db.refresh(task)


async def create_task(
    db: AsyncSession,
    user_id: str,
    data: Dict[str, Any],
    skip_sync_job: bool = False,
) -> Task:
    name = (data.get("name") or "").strip()
    if not name:
        raise LocalDataError("Task name is required")

    project_id = data.get("project_id")
    if project_id:
        project = await get_project(db, user_id, project_id)
    else:
        project = await ensure_unassigned_project(db, user_id)

    now = utc_now()
    is_completed = bool(data.get("is_completed", False))
    task = Task(
        id=data.get("id") or str(uuid.uuid4()),
        user_id=user_id,
        project_id=project.id,
        name=name,
        description=data.get("description") or None,
        due_date=_parse_due_date(data.get("due_date")),
        priority=_normalize_priority(data.get("priority")),
        is_completed=is_completed,
        completed_at=data.get("completed_at") or (now if is_completed else None),
        created_at=now,
        updated_at=data.get("updated_at") or now,
    )
    db.add(task)
    project.updated_at = now
    await db.commit()

    if not skip_sync_job:
        await _enqueue(db, task, user_id, task.id, SyncAction.create, {"project_id": project.id})
    return task


async def update_task(
    db: AsyncSession,
    user_id: str,
    task_id: str,
    updates: Dict[str, Any],
    skip_sync_job: bool = False,
    skip_timestamp: bool = False,
    skip_project_touch: bool = False,
) -> Task:
    task = await get_task(db, user_id, task_id)
    previous_project_id = task.project_id
    changes = {k: v for k, v in updates.items() if k in TASK_FIELDS}

    if "name" in changes:
        name = (changes["name"] or "").strip()
        if not name:
            raise LocalDataError("Task name cannot be blank")
        changes["name"] = name
    if "project_id" in changes:
        if changes["project_id"]:
            await get_project(db, user_id, changes["project_id"])
        else:
            changes["project_id"] = (await ensure_unassigned_project(db, user_id)).id
    if "due_date" in changes:
        changes["due_date"] = _parse_due_date(changes["due_date"])
    if "priority" in changes:
        changes["priority"] = _normalize_priority(changes["priority"])
    if "is_completed" in changes and "completed_at" not in changes:
        changes["completed_at"] = utc_now() if changes["is_completed"] else None
    if not skip_timestamp:
        changes["updated_at"] = utc_now()

    for field, value in changes.items():
        setattr(task, field, value)

    if not skip_project_touch:
        await _touch_projects(db, {previous_project_id, task.project_id})
    await db.commit()

    if not skip_sync_job:
        metadata = {"project_id": task.project_id, "previous_project_id": previous_project_id}
        metadata.update(await _mapping_metadata(db, task.id))
        await _enqueue(db, task, user_id, task.id, SyncAction.update, metadata)
    return task


async def delete_task(
    db: AsyncSession,
    user_id: str,
    task_id: str,
    skip_sync_job: bool = False,
    skip_project_touch: bool = False,
) -> None:
    task = await get_task(db, user_id, task_id)
    project_id = task.project_id
    # Snapshot remote ids now; the delete job may run after the mapping is gone.
    metadata = {"project_id": project_id}
    metadata.update(await _mapping_metadata(db, task_id))

    await db.delete(task)
    if not skip_project_touch:
        await _touch_projects(db, {project_id})
    await db.commit()

    if not skip_sync_job:
        await _enqueue(db, None, user_id, task_id, SyncAction.delete, metadata)
