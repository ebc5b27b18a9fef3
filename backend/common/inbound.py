"""Inbound sync: pulls remote changes per mapped list and applies them locally.

Local writes made here always pass ``skip_sync_job=True`` so they are never
echoed back out through the outbound queue.
"""
import logging
import uuid
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from common.config import settings
from common.connections import get_connection, load_connection
from common.db import emit_event, log_event
from common.graph import DeltaCursorExpired, GraphAPIError, is_not_found
from common.mappings import (
    deactivate_project_mapping,
    delete_project_mapping,
    delete_task_mapping,
    get_task_mapping_by_remote_id,
    list_project_mappings,
    list_task_mappings,
    save_project_mapping,
    set_delta_cursor,
    upsert_task_mapping,
)
from common.models import Project, ProjectListMapping, ProjectSource, SyncDirection, Task, utc_now
from common.outbound import OutboundSyncProcessor
from common import task_service
from common.task_service import LocalDataError, SyncError

logger = logging.getLogger(__name__)

PRIORITY_BY_IMPORTANCE = {"high": "High", "low": "Low"}


def _parse_remote_datetime(value: Any) -> Optional[datetime]:
    """Graph timestamps carry seven fractional digits and a trailing Z; keep whole seconds."""
    if isinstance(value, dict):
        value = value.get("dateTime")
    if not isinstance(value, str) or len(value.strip()) < 19:
        return None
    try:
        return datetime.fromisoformat(value.strip()[:19]).replace(tzinfo=timezone.utc)
    except ValueError:
        return None


def _parse_remote_date(value: Any) -> Optional[date]:
    if isinstance(value, dict):
        value = value.get("dateTime")
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        return date.fromisoformat(value.strip()[:10])
    except ValueError:
        return None


def map_remote_item(item: Dict[str, Any]) -> Dict[str, Any]:
    """Translate a remote task into the local task field shape."""
    body = item.get("body")
    content = body.get("content") if isinstance(body, dict) else None
    completed = (item.get("status") or "").lower() == "completed"

    fields: Dict[str, Any] = {
        "name": (item.get("title") or "").strip(),
        "description": (content or "").strip() or None,
        "due_date": _parse_remote_date(item.get("dueDateTime")),
        "priority": PRIORITY_BY_IMPORTANCE.get((item.get("importance") or "").lower(), "Medium"),
        "is_completed": completed,
    }
    completed_at = _parse_remote_datetime(item.get("completedDateTime")) if completed else None
    if completed_at or not completed:
        fields["completed_at"] = completed_at
    modified = _parse_remote_datetime(item.get("lastModifiedDateTime"))
    if modified:
        fields["updated_at"] = modified
    return fields


def _is_wellknown(remote_list: Dict[str, Any]) -> bool:
    name = remote_list.get("wellknownListName")
    return bool(name) and name != "none"


class InboundReconciler:
    def __init__(self, db: AsyncSession, user_id: str, access_token: str, request_id: Optional[str] = None):
        self.db = db
        self.user_id = user_id
        self.access_token = access_token
        self.request_id = request_id or f"remote_sync_{uuid.uuid4()}"
        self.outbound = OutboundSyncProcessor(db, user_id, access_token, request_id=self.request_id)
        self.client = self.outbound.client
        self.counters = {
            "processed": 0,
            "created": 0,
            "updated": 0,
            "deleted": 0,
            "skipped": 0,
            "containers_created": 0,
            "containers_imported": 0,
            "containers_deactivated": 0,
            "containers_removed": 0,
            "items_removed": 0,
            "items_pushed": 0,
            "items_push_failed": 0,
        }

    async def _local_projects(self) -> Dict[str, Project]:
        rows = (await self.db.execute(select(Project).where(Project.user_id == self.user_id))).scalars().all()
        return {project.id: project for project in rows}

    # --- Delta ---

    async def _pull_delta(self, container_id: str, cursor: Optional[str]) -> Tuple[List[Dict[str, Any]], Optional[str]]:
        items: List[Dict[str, Any]] = []
        link = cursor
        for _ in range(max(settings.SYNC_DELTA_MAX_PAGES, 1)):
            page = await self.client.get_delta(self.access_token, container_id, link)
            items.extend(v for v in page.get("value", []) if isinstance(v, dict))
            if page.get("@odata.deltaLink"):
                return items, page["@odata.deltaLink"]
            link = page.get("@odata.nextLink")
            if not link:
                return items, None
        logger.warning(f"Delta for remote list {container_id} exceeded {settings.SYNC_DELTA_MAX_PAGES} pages; resuming next run")
        return items, link

    async def reconcile_container(self, mapping: ProjectListMapping, project: Project) -> None:
        container_id = mapping.remote_container_id
        try:
            try:
                items, new_cursor = await self._pull_delta(container_id, mapping.delta_cursor)
            except DeltaCursorExpired:
                logger.info(f"Delta cursor for remote list {container_id} expired; starting a fresh delta")
                await set_delta_cursor(self.db, mapping, None)
                items, new_cursor = await self._pull_delta(container_id, None)
        except GraphAPIError as exc:
            if not is_not_found(exc):
                raise
            logger.warning(f"Remote list {container_id} for project {project.id} is gone; deactivating mapping")
            await deactivate_project_mapping(self.db, mapping)
            log_event(
                self.db, self.user_id, "remote_container_deactivated", self.request_id,
                entity_type="project", entity_id=project.id,
                payload={"remote_container_id": container_id, "reason": "delta_not_found"},
            )
            self.counters["containers_deactivated"] += 1
            return

        for item in items:
            await self.apply_item(mapping, project, item)

        if new_cursor and new_cursor != mapping.delta_cursor:
            await set_delta_cursor(self.db, mapping, new_cursor)

    async def apply_item(self, mapping: ProjectListMapping, project: Project, item: Dict[str, Any]) -> None:
        item_id = item.get("id")
        if not item_id:
            return
        self.counters["processed"] += 1
        existing = await get_task_mapping_by_remote_id(self.db, self.user_id, item_id)

        if "@removed" in item:
            if existing is None:
                return
            try:
                await task_service.delete_task(self.db, self.user_id, existing.task_id, skip_sync_job=True)
            except LocalDataError as exc:
                logger.info(f"Local task for removed remote task {item_id} already gone: {exc}")
            await delete_task_mapping(self.db, self.user_id, remote_item_id=item_id)
            self.counters["deleted"] += 1
            return

        fields = map_remote_item(item)
        if not fields["name"]:
            logger.warning(f"Skipping remote task {item_id} in list {mapping.remote_container_id}: blank title")
            log_event(
                self.db, self.user_id, "remote_item_skipped_blank_title", self.request_id,
                entity_type="remote_item", entity_id=item_id,
                payload={"remote_container_id": mapping.remote_container_id},
            )
            self.counters["skipped"] += 1
            return

        version = self.client.version_of(item)
        if existing is None:
            task = await task_service.create_task(
                self.db, self.user_id, {**fields, "project_id": project.id}, skip_sync_job=True
            )
            await upsert_task_mapping(
                self.db, self.user_id, task.id, mapping.remote_container_id, item_id, version, SyncDirection.remote
            )
            self.counters["created"] += 1
            return

        try:
            await task_service.get_task(self.db, self.user_id, existing.task_id)
        except LocalDataError:
            logger.info(f"Remote task {item_id} maps to missing local task {existing.task_id}; skipping")
            self.counters["skipped"] += 1
            return

        await task_service.update_task(
            self.db, self.user_id, existing.task_id, fields,
            skip_sync_job=True, skip_timestamp=True, skip_project_touch=True,
        )
        existing.remote_etag = version or existing.remote_etag
        existing.last_synced_at = utc_now()
        existing.last_sync_direction = SyncDirection.remote
        await self.db.flush()
        self.counters["updated"] += 1

    # --- Full-user passes ---

    async def ensure_local_containers(self, projects: Dict[str, Project]) -> None:
        active = {m.project_id for m in await list_project_mappings(self.db, self.user_id, active_only=True)}
        for project in projects.values():
            if project.is_syncable and project.id not in active:
                await self.outbound.ensure_container(project)
                self.counters["containers_created"] += 1
        await self.db.commit()

    async def import_remote_containers(self, projects: Dict[str, Project]) -> None:
        mapped = {m.remote_container_id for m in await list_project_mappings(self.db, self.user_id, active_only=True)}
        for remote_list in await self.client.list_lists(self.access_token):
            list_id = remote_list.get("id")
            if not list_id or list_id in mapped or _is_wellknown(remote_list):
                continue
            name = (remote_list.get("displayName") or "").strip()
            if not name:
                continue
            project = await task_service.create_project(self.db, self.user_id, name, source=ProjectSource.remote)
            await save_project_mapping(self.db, self.user_id, project.id, list_id, self.client.version_of(remote_list))
            await self.db.commit()
            projects[project.id] = project
            mapped.add(list_id)
            logger.info(f"Imported remote list {list_id} as project {project.id}")
            self.counters["containers_imported"] += 1

    async def push_local_items(self, projects: Dict[str, Project]) -> None:
        """Send tasks the remote side is missing, or holds in a list other than their project's."""
        syncable = [project_id for project_id, project in projects.items() if project.is_syncable]
        if not syncable:
            return
        containers = {
            m.project_id: m.remote_container_id
            for m in await list_project_mappings(self.db, self.user_id, active_only=True)
        }
        placed = {
            m.task_id: m.remote_container_id
            for m in await list_task_mappings(self.db, self.user_id)
            if m.remote_item_id
        }
        stmt = (
            select(Task.id, Task.project_id)
            .where(Task.user_id == self.user_id, Task.project_id.in_(syncable))
            .order_by(Task.created_at)
        )
        pending = [
            task_id for task_id, project_id in (await self.db.execute(stmt)).all()
            if placed.get(task_id) is None or placed[task_id] != containers.get(project_id)
        ]

        rolled_back = False
        for task_id in pending:
            try:
                task = await task_service.get_task(self.db, self.user_id, task_id)
                await self.outbound.ensure_item(task)
                await self.db.commit()
                self.counters["items_pushed"] += 1
            except (GraphAPIError, LocalDataError) as exc:
                await self.db.rollback()
                rolled_back = True
                logger.warning(f"Could not push task {task_id} to the remote side: {exc}")
                await emit_event(
                    self.db, self.user_id, "remote_item_push_failed", self.request_id,
                    entity_type="task", entity_id=task_id,
                    payload={"error": str(exc)[: settings.SYNC_JOB_ERROR_MAX_LENGTH]},
                )
                self.counters["items_push_failed"] += 1
        if rolled_back:
            # Reload rows the rollback expired.
            projects.update(await self._local_projects())

    async def collect_garbage(self, projects: Dict[str, Project]) -> None:
        for mapping in await list_project_mappings(self.db, self.user_id):
            project = projects.get(mapping.project_id)
            if project is not None and project.is_syncable:
                continue
            container_id = mapping.remote_container_id
            try:
                await self.outbound.remove_container(mapping)
            except GraphAPIError as exc:
                logger.warning(f"Could not delete remote list {container_id}: {exc}")
            self.counters["containers_removed"] += 1
        await self.db.commit()

        task_ids = set((await self.db.execute(select(Task.id).where(Task.user_id == self.user_id))).scalars().all())
        for mapping in await list_task_mappings(self.db, self.user_id):
            if mapping.task_id in task_ids:
                continue
            item_id = mapping.remote_item_id
            try:
                await self.outbound.remove_item(mapping.task_id)
            except GraphAPIError as exc:
                logger.warning(f"Could not delete remote task {item_id}: {exc}")
            self.counters["items_removed"] += 1
        await self.db.commit()

    async def run(self) -> Dict[str, Any]:
        projects = await self._local_projects()
        await self.ensure_local_containers(projects)
        if settings.SYNC_IMPORT_REMOTE_LISTS:
            await self.import_remote_containers(projects)

        for mapping in await list_project_mappings(self.db, self.user_id, active_only=True):
            project = projects.get(mapping.project_id)
            if project is None or not project.is_syncable:
                continue
            await self.reconcile_container(mapping, project)
            await self.db.commit()

        await self.push_local_items(projects)
        await self.collect_garbage(projects)

        connection = await load_connection(self.db, self.user_id)
        if connection is not None:
            connection.last_synced_at = utc_now()
        log_event(
            self.db, self.user_id, "remote_sync_completed", self.request_id,
            entity_type="remote_connection", entity_id=connection.id if connection else None,
            payload=dict(self.counters),
        )
        await self.db.commit()
        logger.info(f"Remote sync for user {self.user_id} complete: {self.counters}")
        return dict(self.counters)


async def sync_remote_changes_for_user(
    db: AsyncSession,
    user_id: str,
    access_token: Optional[str] = None,
    request_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Full two-way pass for one user. Returns ``{"processed": n, ...counters}``."""
    if access_token is None:
        access_token = await get_connection(db, user_id)
        if not access_token:
            raise SyncError("No remote connection available")
    reconciler = InboundReconciler(db, user_id, access_token, request_id=request_id)
    return await reconciler.run()
