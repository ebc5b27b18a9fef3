"""Outbound sync: drains sync_jobs and pushes local changes to Microsoft To Do.

Projects map to remote lists (containers) and tasks to remote tasks (items).
The remote API has no move primitive, so an item whose project now maps to a
different list is deleted from the old list and recreated in the new one.
"""
import logging
import uuid
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from common.config import settings
from common.connections import get_connection
from common.db import emit_event, log_event
from common.graph import GraphAPIError, graph_client, is_conflict, is_not_found, is_precondition_failed
from common.mappings import (
    deactivate_project_mapping,
    delete_project_mapping,
    delete_task_mapping,
    get_project_mapping,
    get_task_mapping,
    list_project_mappings,
    save_project_mapping,
    upsert_task_mapping,
)
from common.models import (
    Project,
    ProjectListMapping,
    SyncAction,
    SyncDirection,
    Task,
    TaskItemMapping,
    as_utc,
    utc_now,
)
from common import sync_queue
from common import task_service
from common.task_service import SyncError

logger = logging.getLogger(__name__)

IMPORTANCE_BY_PRIORITY = {"High": "high", "Low": "low"}


class ItemTransition(Enum):
    CREATE = "create"
    SAME_LIST_UPDATE = "same_list_update"
    CROSS_LIST_MOVE = "cross_list_move"


def plan_item_transition(mapping: Optional[TaskItemMapping], container_id: str) -> ItemTransition:
    """Decide how a task reaches ``container_id`` given what is already mapped."""
    if mapping is None or not mapping.remote_item_id:
        return ItemTransition.CREATE
    if mapping.remote_container_id != container_id:
        return ItemTransition.CROSS_LIST_MOVE
    return ItemTransition.SAME_LIST_UPDATE


def list_display_name(name: Optional[str]) -> str:
    cleaned = (name or "").strip() or settings.UNASSIGNED_PROJECT_NAME
    return cleaned[: settings.REMOTE_LIST_NAME_MAX_LENGTH]


def _utc_stamp(value) -> str:
    return as_utc(value).strftime("%Y-%m-%dT%H:%M:%S")


def build_item_payload(task: Task) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "title": task.name,
        "importance": IMPORTANCE_BY_PRIORITY.get(task.priority, "normal"),
        "status": "completed" if task.is_completed else "notStarted",
        "body": {"content": task.description or "", "contentType": "text"},
    }
    if task.due_date:
        # Date-only due dates travel as midday UTC.
        payload["dueDateTime"] = {"dateTime": f"{task.due_date.isoformat()}T12:00:00", "timeZone": "UTC"}
    else:
        payload["dueDateTime"] = None
    if task.is_completed and task.completed_at:
        payload["completedDateTime"] = {"dateTime": _utc_stamp(task.completed_at), "timeZone": "UTC"}
    return payload


class OutboundSyncProcessor:
    """Applies local state to the remote side for one user and one access token.

    Changes are staged on ``db``; the job loop commits on success and rolls
    back on failure.
    """

    def __init__(self, db: AsyncSession, user_id: str, access_token: str, client=None, request_id: Optional[str] = None):
        self.db = db
        self.user_id = user_id
        self.access_token = access_token
        self.client = client or graph_client
        self.request_id = request_id or f"sync_{uuid.uuid4()}"

    # --- Containers ---

    async def _create_container(self, project_id: str, display_name: str) -> Dict[str, Any]:
        try:
            return await self.client.create_list(self.access_token, display_name)
        except GraphAPIError as exc:
            if not is_conflict(exc):
                raise
            # Lists already mapped to another project are never adopted.
            taken = [
                m.remote_container_id
                for m in await list_project_mappings(self.db, self.user_id, active_only=True)
                if m.project_id != project_id
            ]
            existing = await self.client.find_list_by_name(self.access_token, display_name, exclude=taken)
            if existing is None:
                raise
            logger.info(f"Remote list '{display_name}' already exists; adopting {existing['id']}")
            return existing

    async def ensure_container(self, project: Project) -> ProjectListMapping:
        display_name = list_display_name(project.name)
        mapping = await get_project_mapping(self.db, project.id)

        if mapping is not None and mapping.is_active and mapping.remote_container_id:
            try:
                updated = await self.client.update_list(self.access_token, mapping.remote_container_id, display_name)
                mapping.remote_etag = self.client.version_of(updated) or mapping.remote_etag
                await self.db.flush()
                return mapping
            except GraphAPIError as exc:
                if not is_not_found(exc):
                    logger.warning(f"Rename of remote list {mapping.remote_container_id} failed: {exc}")
                    return mapping
            logger.warning(
                f"Remote list {mapping.remote_container_id} for project {project.id} is gone; recreating"
            )
            log_event(
                self.db, self.user_id, "remote_container_deactivated", self.request_id,
                entity_type="project", entity_id=project.id,
                payload={"remote_container_id": mapping.remote_container_id, "reason": "rename_not_found"},
            )
            await deactivate_project_mapping(self.db, mapping)

        created = await self._create_container(project.id, display_name)
        logger.info(f"Mapped project {project.id} to remote list {created['id']}")
        return await save_project_mapping(
            self.db, self.user_id, project.id, created["id"], self.client.version_of(created)
        )

    async def remove_container(self, mapping: ProjectListMapping) -> None:
        """Delete the remote list (404 ignored); the mapping rows are purged regardless."""
        try:
            if mapping.is_active and mapping.remote_container_id:
                try:
                    await self.client.delete_list(self.access_token, mapping.remote_container_id)
                except GraphAPIError as exc:
                    if not is_not_found(exc):
                        raise
        finally:
            await delete_project_mapping(self.db, mapping)

    # --- Items ---

    async def _rediscover(self, container_id: str, item_id: str) -> Optional[Dict[str, Any]]:
        try:
            return await self.client.get_task(self.access_token, container_id, item_id)
        except GraphAPIError as exc:
            if is_not_found(exc):
                return None
            raise

    async def _delete_remote_item(self, container_id: str, item_id: str, etag: Optional[str] = None) -> None:
        try:
            await self.client.delete_task(self.access_token, container_id, item_id, etag=etag)
            return
        except GraphAPIError as exc:
            if is_not_found(exc):
                logger.info(f"Remote task {item_id} already gone")
                return
            if not is_precondition_failed(exc):
                raise
        current = await self._rediscover(container_id, item_id)
        if current is not None:
            await self.client.delete_task(
                self.access_token, container_id, item_id, etag=self.client.version_of(current)
            )

    async def _update_remote_item(self, mapping: TaskItemMapping, payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        try:
            return await self.client.update_task(
                self.access_token, mapping.remote_container_id, mapping.remote_item_id, payload,
                etag=mapping.remote_etag,
            )
        except GraphAPIError as exc:
            if not is_precondition_failed(exc):
                raise
        # Stale version token: the stored one is never retried.
        logger.info(f"Version token for remote task {mapping.remote_item_id} is stale; re-reading")
        current = await self.client.get_task(self.access_token, mapping.remote_container_id, mapping.remote_item_id)
        return await self.client.update_task(
            self.access_token, mapping.remote_container_id, mapping.remote_item_id, payload,
            etag=self.client.version_of(current),
        )

    async def _create_item(self, task: Task, container_id: str, payload: Dict[str, Any]) -> TaskItemMapping:
        created = await self.client.create_task(self.access_token, container_id, payload)
        logger.info(f"Created remote task {created['id']} for task {task.id}")
        return await upsert_task_mapping(
            self.db, self.user_id, task.id, container_id, created["id"],
            self.client.version_of(created), SyncDirection.local,
        )

    async def ensure_item(self, task: Task) -> Optional[TaskItemMapping]:
        """Make the remote item match ``task``. Returns None when the task is not synced."""
        project = await task_service.get_project(self.db, self.user_id, task.project_id)
        if not project.is_syncable:
            logger.info(f"Project {project.id} is {project.status}; removing remote copy of task {task.id}")
            await self.remove_item(task.id)
            return None

        container = await self.ensure_container(project)
        container_id = container.remote_container_id
        mapping = await get_task_mapping(self.db, task.id)
        payload = build_item_payload(task)
        transition = plan_item_transition(mapping, container_id)

        if transition is ItemTransition.CROSS_LIST_MOVE:
            logger.info(
                f"Moving task {task.id} from remote list {mapping.remote_container_id} to {container_id}"
            )
            try:
                await self._delete_remote_item(mapping.remote_container_id, mapping.remote_item_id, mapping.remote_etag)
            except GraphAPIError as exc:
                logger.warning(f"Could not delete old remote task {mapping.remote_item_id}: {exc}")
            return await self._create_item(task, container_id, payload)

        if transition is ItemTransition.SAME_LIST_UPDATE:
            try:
                updated = await self._update_remote_item(mapping, payload)
            except GraphAPIError as exc:
                if not is_not_found(exc):
                    raise
                logger.info(f"Remote task {mapping.remote_item_id} is gone; recreating task {task.id}")
                await self.db.delete(mapping)
                await self.db.flush()
                return await self._create_item(task, container_id, payload)
            mapping.remote_etag = self.client.version_of(updated) or mapping.remote_etag
            mapping.last_synced_at = utc_now()
            mapping.last_sync_direction = SyncDirection.local
            await self.db.flush()
            return mapping

        return await self._create_item(task, container_id, payload)

    async def remove_item(self, task_id: Optional[str], metadata: Optional[Dict[str, Any]] = None) -> None:
        """Delete the remote item for ``task_id`` and purge its mapping.

        Remote ids from ``metadata`` (a snapshot taken when the job was
        enqueued) win over the live mapping.
        """
        metadata = metadata or {}
        mapping = await get_task_mapping(self.db, task_id) if task_id else None
        item_id = metadata.get("remote_item_id") or (mapping.remote_item_id if mapping else None)
        if not item_id:
            return
        container_id = metadata.get("remote_container_id") or (mapping.remote_container_id if mapping else None)
        etag = metadata.get("remote_etag") or (mapping.remote_etag if mapping else None)

        try:
            if container_id:
                await self._delete_remote_item(container_id, item_id, etag)
            else:
                logger.warning(f"No remote list known for remote task {item_id}; dropping mapping only")
        finally:
            if task_id:
                await delete_task_mapping(self.db, self.user_id, task_id=task_id)
            else:
                await delete_task_mapping(self.db, self.user_id, remote_item_id=item_id)
            await self.db.commit()

    # --- Job handlers ---

    async def handle_create(self, task_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        task = await task_service.get_task(self.db, self.user_id, task_id)
        mapping = await self.ensure_item(task)
        return {"remote_item_id": mapping.remote_item_id if mapping else None}

    async def handle_update(self, task_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        task = await task_service.get_task(self.db, self.user_id, task_id)
        mapping = await self.ensure_item(task)
        return {"remote_item_id": mapping.remote_item_id if mapping else None}

    async def handle_delete(self, task_id: Optional[str], payload: Dict[str, Any]) -> Dict[str, Any]:
        await self.remove_item(task_id, payload)
        return {"remote_item_id": payload.get("remote_item_id")}

    async def handle_full_sync(self, task_id: Optional[str], payload: Dict[str, Any]) -> Dict[str, Any]:
        from common.inbound import sync_remote_changes_for_user

        return await sync_remote_changes_for_user(
            self.db, self.user_id, access_token=self.access_token, request_id=self.request_id
        )

    async def dispatch(self, action: SyncAction, task_id: Optional[str], payload: Dict[str, Any]) -> Dict[str, Any]:
        handlers = {
            SyncAction.create: self.handle_create,
            SyncAction.update: self.handle_update,
            SyncAction.delete: self.handle_delete,
            SyncAction.full_sync: self.handle_full_sync,
        }
        action = SyncAction(action)
        if action in (SyncAction.create, SyncAction.update) and not task_id:
            raise task_service.LocalDataError(f"{action.value} job has no task_id")
        return await handlers[action](task_id, payload)


async def process_single_job(
    db: AsyncSession,
    user_id: str,
    action: SyncAction,
    task_id: Optional[str],
    payload: Dict[str, Any],
    request_id: Optional[str] = None,
) -> Dict[str, Any]:
    access_token = await get_connection(db, user_id)
    if not access_token:
        raise SyncError("No remote connection available")
    processor = OutboundSyncProcessor(db, user_id, access_token, request_id=request_id)
    return await processor.dispatch(action, task_id, payload)


async def process_pending_jobs(db: AsyncSession, limit: Optional[int] = None) -> List[Dict[str, Any]]:
    """Drain up to ``limit`` due jobs, oldest first, one at a time."""
    if limit is None:
        limit = settings.SYNC_JOB_BATCH_SIZE
    if limit <= 0:
        return []
    # Snapshot plain values: a rollback below expires every loaded row.
    jobs = [
        (job.id, job.user_id, job.task_id, job.action, dict(job.payload or {}), job.attempts or 0)
        for job in await sync_queue.fetch_pending(db, limit)
    ]
    results: List[Dict[str, Any]] = []

    for job_id, user_id, task_id, action, payload, attempts in jobs:
        if not await sync_queue.mark_processing(db, job_id, attempts):
            logger.info(f"Sync job {job_id} was claimed elsewhere; skipping")
            results.append({"job_id": job_id, "status": "skipped"})
            continue

        request_id = f"sync_job_{job_id}"
        logger.info(f"Processing sync job {job_id} ({action.value}) for user {user_id}, task {task_id}")
        try:
            outcome = await process_single_job(db, user_id, action, task_id, payload, request_id=request_id)
            await db.commit()
        except Exception as e:
            await db.rollback()
            error = str(e) or e.__class__.__name__
            logger.error(f"Sync job {job_id} ({action.value}) failed: {error}")
            await sync_queue.mark_failed(db, job_id, error, attempts + 1)
            await emit_event(
                db, user_id, "sync_job_failed", request_id,
                entity_type="task" if task_id else None, entity_id=task_id,
                payload={"job_id": job_id, "action": action.value, "attempts": attempts + 1, "error": error[:500]},
            )
            results.append({"job_id": job_id, "status": "failed", "error": error[: settings.SYNC_JOB_ERROR_MAX_LENGTH]})
            continue

        await sync_queue.mark_completed(db, job_id)
        await emit_event(
            db, user_id, "sync_job_completed", request_id,
            entity_type="task" if task_id else None, entity_id=task_id,
            payload={"job_id": job_id, "action": action.value, "attempts": attempts + 1, "result": outcome or {}},
        )
        results.append({"job_id": job_id, "status": "completed"})

    if results:
        logger.info(f"Processed {len(results)} sync job(s)")
    return results
