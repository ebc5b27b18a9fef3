import asyncio
from contextlib import contextmanager
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select

from common import task_service
from common.graph import GraphAPIError
from common.mappings import get_project_mapping, get_task_mapping, list_task_mappings
from common.models import EventLog, SyncAction, SyncJob, SyncJobStatus, TaskItemMapping
from common.outbound import ItemTransition, OutboundSyncProcessor, plan_item_transition, process_pending_jobs
from common import sync_queue
from sync_fakes import FakeTodoClient, sqlite_session

USER = "usr_dev"


@contextmanager
def _remote(fake, token="access_token"):
    with patch("common.outbound.graph_client", fake), patch(
        "common.outbound.get_connection", AsyncMock(return_value=token)
    ):
        yield


async def _jobs(db):
    return (await db.execute(select(SyncJob).order_by(SyncJob.created_at))).scalars().all()


def test_plan_item_transition():
    assert plan_item_transition(None, "list-a") is ItemTransition.CREATE
    assert plan_item_transition(TaskItemMapping(remote_item_id=None, remote_container_id="list-a"), "list-a") is ItemTransition.CREATE
    same = TaskItemMapping(remote_item_id="item-1", remote_container_id="list-a")
    assert plan_item_transition(same, "list-a") is ItemTransition.SAME_LIST_UPDATE
    assert plan_item_transition(same, "list-b") is ItemTransition.CROSS_LIST_MOVE


def test_unassigned_task_creates_list_then_item():
    async def _run():
        fake = FakeTodoClient()
        async with sqlite_session() as db:
            task = await task_service.create_task(
                db, USER, {"name": "File taxes", "due_date": "2024-06-01", "priority": "High"}
            )
            with _remote(fake):
                results = await process_pending_jobs(db, 10)

            assert [r["status"] for r in results] == ["completed"]
            project = await task_service.get_project(db, USER, task.project_id)
            assert project.name == "Unassigned"

            project_mapping = await get_project_mapping(db, project.id)
            assert fake.lists[project_mapping.remote_container_id]["displayName"] == "Unassigned"

            items = fake.tasks_in(project_mapping.remote_container_id)
            assert len(items) == 1
            assert items[0]["title"] == "File taxes"
            assert items[0]["importance"] == "high"
            assert items[0]["status"] == "notStarted"
            assert items[0]["dueDateTime"]["dateTime"].startswith("2024-06-01T12:00:00")
            assert items[0]["dueDateTime"]["timeZone"] == "UTC"

            task_mapping = await get_task_mapping(db, task.id)
            assert task_mapping.remote_item_id == items[0]["id"]
            assert task_mapping.remote_etag == items[0]["@odata.etag"]

            names = [c[0] for c in fake.calls]
            assert names.index("create_list") < names.index("create_task")
            assert (await _jobs(db))[0].status == SyncJobStatus.completed

    asyncio.run(_run())


def test_duplicate_create_delivery_yields_one_item():
    async def _run():
        fake = FakeTodoClient()
        async with sqlite_session() as db:
            task = await task_service.create_task(db, USER, {"name": "Call plumber"})
            assert await sync_queue.enqueue(db, USER, task.id, SyncAction.create, {"project_id": task.project_id})

            with _remote(fake):
                results = await process_pending_jobs(db, 10)

            assert [r["status"] for r in results] == ["completed", "completed"]
            assert len(await list_task_mappings(db, USER)) == 1
            assert len(fake.tasks) == 1
            assert fake.count("create_task") == 1

    asyncio.run(_run())


def test_cross_list_move_recreates_item_in_new_list():
    async def _run():
        fake = FakeTodoClient()
        async with sqlite_session() as db:
            home = await task_service.create_project(db, USER, "Home")
            work = await task_service.create_project(db, USER, "Work")
            task = await task_service.create_task(db, USER, {"name": "Fix fence", "project_id": home.id})
            with _remote(fake):
                await process_pending_jobs(db, 10)
            old_item = (await get_task_mapping(db, task.id)).remote_item_id
            home_list = (await get_project_mapping(db, home.id)).remote_container_id

            await task_service.update_task(db, USER, task.id, {"project_id": work.id})
            with _remote(fake):
                results = await process_pending_jobs(db, 10)

            assert [r["status"] for r in results] == ["completed"]
            work_list = (await get_project_mapping(db, work.id)).remote_container_id
            mappings = await list_task_mappings(db, USER)
            assert len(mappings) == 1
            assert mappings[0].remote_container_id == work_list
            assert mappings[0].remote_item_id != old_item
            assert fake.tasks_in(home_list) == []
            assert [t["id"] for t in fake.tasks_in(work_list)] == [mappings[0].remote_item_id]

    asyncio.run(_run())


def test_update_of_vanished_item_recreates_instead_of_failing():
    async def _run():
        fake = FakeTodoClient()
        async with sqlite_session() as db:
            task = await task_service.create_task(db, USER, {"name": "Renew passport"})
            with _remote(fake):
                await process_pending_jobs(db, 10)
            old_item = (await get_task_mapping(db, task.id)).remote_item_id
            del fake.tasks[old_item]

            await task_service.update_task(db, USER, task.id, {"name": "Renew passport (urgent)"})
            with _remote(fake):
                results = await process_pending_jobs(db, 10)

            assert [r["status"] for r in results] == ["completed"]
            mapping = await get_task_mapping(db, task.id)
            assert mapping.remote_item_id != old_item
            assert fake.tasks[mapping.remote_item_id]["title"] == "Renew passport (urgent)"

    asyncio.run(_run())


def test_stale_version_token_is_rediscovered_not_retried():
    async def _run():
        fake = FakeTodoClient()
        async with sqlite_session() as db:
            task = await task_service.create_task(db, USER, {"name": "Book flights"})
            with _remote(fake):
                await process_pending_jobs(db, 10)
            mapping = await get_task_mapping(db, task.id)
            stale = mapping.remote_etag
            fake.tasks[mapping.remote_item_id]["@odata.etag"] = 'W/"edited-elsewhere"'

            await task_service.update_task(db, USER, task.id, {"is_completed": True})
            with _remote(fake):
                results = await process_pending_jobs(db, 10)

            assert [r["status"] for r in results] == ["completed"]
            updates = [c for c in fake.calls if c[0] == "update_task"]
            assert [c[3] for c in updates] == [stale, 'W/"edited-elsewhere"']
            remote = fake.tasks[mapping.remote_item_id]
            assert remote["status"] == "completed"
            assert "completedDateTime" in remote
            assert (await get_task_mapping(db, task.id)).remote_etag == remote["@odata.etag"]

    asyncio.run(_run())


def test_delete_job_removes_item_and_mapping():
    async def _run():
        fake = FakeTodoClient()
        async with sqlite_session() as db:
            task = await task_service.create_task(db, USER, {"name": "Old chore"})
            task_id = task.id
            with _remote(fake):
                await process_pending_jobs(db, 10)
            assert len(fake.tasks) == 1

            await task_service.delete_task(db, USER, task_id)
            delete_job = (await _jobs(db))[-1]
            assert delete_job.action == SyncAction.delete
            assert delete_job.payload["remote_item_id"]

            with _remote(fake):
                results = await process_pending_jobs(db, 10)

            assert [r["status"] for r in results] == ["completed"]
            assert fake.tasks == {}
            assert await get_task_mapping(db, task_id) is None

    asyncio.run(_run())


def test_delete_job_tolerates_item_already_gone():
    async def _run():
        fake = FakeTodoClient()
        async with sqlite_session() as db:
            task = await task_service.create_task(db, USER, {"name": "Ghost"})
            task_id = task.id
            with _remote(fake):
                await process_pending_jobs(db, 10)
            fake.tasks.clear()

            await task_service.delete_task(db, USER, task_id)
            with _remote(fake):
                results = await process_pending_jobs(db, 10)

            assert [r["status"] for r in results] == ["completed"]
            assert await get_task_mapping(db, task_id) is None

    asyncio.run(_run())


def test_delete_without_known_remote_item_is_noop():
    async def _run():
        fake = FakeTodoClient()
        async with sqlite_session() as db:
            await sync_queue.enqueue(db, USER, "never-synced", SyncAction.delete, {})
            with _remote(fake):
                results = await process_pending_jobs(db, 10)

            assert [r["status"] for r in results] == ["completed"]
            assert fake.calls == []

    asyncio.run(_run())


def test_missing_connection_fails_job():
    async def _run():
        fake = FakeTodoClient()
        async with sqlite_session() as db:
            await task_service.create_task(db, USER, {"name": "Offline"})
            with _remote(fake, token=None):
                results = await process_pending_jobs(db, 10)

            assert results[0]["status"] == "failed"
            assert "No remote connection available" in results[0]["error"]
            job = (await _jobs(db))[0]
            assert job.status == SyncJobStatus.failed
            assert job.attempts == 1
            assert "No remote connection" in job.last_error
            failed_events = (
                await db.execute(select(EventLog).where(EventLog.event_type == "sync_job_failed"))
            ).scalars().all()
            assert len(failed_events) == 1
            assert fake.calls == []

    asyncio.run(_run())


def test_remote_server_error_fails_job_with_truncated_error():
    async def _run():
        fake = FakeTodoClient()
        fake.create_list = AsyncMock(side_effect=GraphAPIError(503, "x" * 5000))
        async with sqlite_session() as db:
            await task_service.create_task(db, USER, {"name": "Retry later"})
            with _remote(fake):
                results = await process_pending_jobs(db, 10)

            assert results[0]["status"] == "failed"
            job = (await _jobs(db))[0]
            assert job.status == SyncJobStatus.failed
            assert len(job.last_error) == 1000
            assert await list_task_mappings(db, USER) == []

    asyncio.run(_run())


def test_lost_claim_is_skipped():
    async def _run():
        fake = FakeTodoClient()
        async with sqlite_session() as db:
            await task_service.create_task(db, USER, {"name": "Contended"})
            with _remote(fake), patch("common.outbound.sync_queue.mark_processing", AsyncMock(return_value=False)):
                results = await process_pending_jobs(db, 10)

            assert [r["status"] for r in results] == ["skipped"]
            assert fake.calls == []

    asyncio.run(_run())


def test_inactive_project_removes_remote_item():
    async def _run():
        fake = FakeTodoClient()
        async with sqlite_session() as db:
            project = await task_service.create_project(db, USER, "Garden")
            task = await task_service.create_task(db, USER, {"name": "Plant bulbs", "project_id": project.id})
            with _remote(fake):
                await process_pending_jobs(db, 10)
            assert len(fake.tasks) == 1

            project.status = "Completed"
            await db.commit()
            await task_service.update_task(db, USER, task.id, {"description": "tulips"})
            with _remote(fake):
                results = await process_pending_jobs(db, 10)

            assert [r["status"] for r in results] == ["completed"]
            assert fake.tasks == {}
            assert await get_task_mapping(db, task.id) is None

    asyncio.run(_run())


def test_ensure_container_recreates_list_deleted_remotely():
    async def _run():
        fake = FakeTodoClient()
        async with sqlite_session() as db:
            project = await task_service.create_project(db, USER, "Errands")
            await task_service.create_task(db, USER, {"name": "Groceries", "project_id": project.id})
            with _remote(fake):
                await process_pending_jobs(db, 10)
            old_list = (await get_project_mapping(db, project.id)).remote_container_id
            await fake.delete_list("access_token", old_list)

            await task_service.create_task(db, USER, {"name": "Pharmacy", "project_id": project.id})
            with _remote(fake):
                results = await process_pending_jobs(db, 10)

            assert [r["status"] for r in results] == ["completed"]
            mapping = await get_project_mapping(db, project.id)
            assert mapping.is_active
            assert mapping.remote_container_id != old_list
            assert [t["title"] for t in fake.tasks_in(mapping.remote_container_id)] == ["Pharmacy"]
            events = (
                await db.execute(select(EventLog).where(EventLog.event_type == "remote_container_deactivated"))
            ).scalars().all()
            assert len(events) == 1

    asyncio.run(_run())


def test_ensure_container_adopts_existing_list_on_name_conflict():
    async def _run():
        fake = FakeTodoClient()
        existing = fake.add_remote_list("Work")
        fake.create_list = AsyncMock(side_effect=GraphAPIError(409, "List already exists"))
        async with sqlite_session() as db:
            project = await task_service.create_project(db, USER, "Work")
            processor = OutboundSyncProcessor(db, USER, "access_token", client=fake)
            mapping = await processor.ensure_container(project)

            assert mapping.remote_container_id == existing["id"]

    asyncio.run(_run())


def test_long_project_names_are_truncated_for_remote_lists():
    async def _run():
        fake = FakeTodoClient()
        async with sqlite_session() as db:
            project = await task_service.create_project(db, USER, "P" * 300)
            processor = OutboundSyncProcessor(db, USER, "access_token", client=fake)
            mapping = await processor.ensure_container(project)

            assert len(fake.lists[mapping.remote_container_id]["displayName"]) == 120

    asyncio.run(_run())


def test_name_conflict_never_adopts_a_list_mapped_to_another_project():
    async def _run():
        fake = FakeTodoClient()
        async with sqlite_session() as db:
            first = await task_service.create_project(db, USER, "Work")
            processor = OutboundSyncProcessor(db, USER, "access_token", client=fake)
            taken = (await processor.ensure_container(first)).remote_container_id

            fake.create_list = AsyncMock(side_effect=GraphAPIError(409, "List already exists"))
            second = await task_service.create_project(db, USER, "Work")
            with pytest.raises(GraphAPIError) as exc_info:
                await processor.ensure_container(second)
            assert exc_info.value.status_code == 409
            assert await get_project_mapping(db, second.id) is None

            spare = fake.add_remote_list("Work")
            mapping = await processor.ensure_container(second)

            assert mapping.remote_container_id == spare["id"]
            assert (await get_project_mapping(db, first.id)).remote_container_id == taken

    asyncio.run(_run())


def test_zero_limit_drains_nothing():
    async def _run():
        fake = FakeTodoClient()
        async with sqlite_session() as db:
            await task_service.create_task(db, USER, {"name": "Later"})
            with _remote(fake):
                results = await process_pending_jobs(db, 0)

            assert results == []
            assert [job.status for job in await _jobs(db)] == [SyncJobStatus.pending]
            assert fake.calls == []

    asyncio.run(_run())
