import asyncio
import json
from contextlib import contextmanager
from unittest.mock import AsyncMock, MagicMock, patch
from urllib.parse import parse_qs, urlsplit

from httpx import ASGITransport, AsyncClient
from sqlalchemy import select

from api.main import app, get_db
from common import task_service
from common.config import settings
from common.connections import load_connection, upsert_connection
from common.models import SyncAction, SyncJob
from common.vault import secret_store
from sync_fakes import FakeTodoClient, sqlite_session

AUTH = {"Authorization": "Bearer test_token"}


@contextmanager
def _use_db(db):
    async def _get_db():
        yield db

    app.dependency_overrides[get_db] = _get_db
    try:
        yield
    finally:
        app.dependency_overrides.clear()


def _client():
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


def test_health_live_and_ready(app_no_db, mock_redis):
    async def _run():
        async with _client() as client:
            live = await client.get("/health/live")
            ready = await client.get("/health/ready")
        assert live.json() == {"status": "ok"}
        assert ready.status_code == 200
        mock_redis.ping.assert_awaited()

    asyncio.run(_run())


def test_health_ready_reports_unreachable_redis(app_no_db, mock_redis):
    async def _run():
        mock_redis.ping.side_effect = ConnectionError("down")
        async with _client() as client:
            resp = await client.get("/health/ready")
        assert resp.status_code == 503

    asyncio.run(_run())


def test_cron_jobs_endpoint_drains_queue():
    async def _run():
        fake = FakeTodoClient()
        async with sqlite_session() as db:
            await task_service.create_task(db, "usr_dev", {"name": "From the API"})
            with _use_db(db), patch("common.outbound.graph_client", fake), patch(
                "common.outbound.get_connection", AsyncMock(return_value="access_token")
            ):
                async with _client() as client:
                    resp = await client.post("/v1/cron/sync/jobs?limit=5")

        assert resp.status_code == 200
        body = resp.json()
        assert body["processed"] == 1
        assert body["completed"] == 1
        assert body["failed"] == 0
        assert body["results"][0]["status"] == "completed"
        assert len(fake.tasks) == 1

    asyncio.run(_run())


def test_cron_endpoints_require_secret_when_configured():
    async def _run():
        async with sqlite_session() as db:
            with _use_db(db), patch.object(settings, "CRON_SECRET", "s3cret"):
                async with _client() as client:
                    missing = await client.post("/v1/cron/sync/jobs")
                    wrong = await client.post("/v1/cron/sync/remote", headers={"Authorization": "Bearer nope"})
                    ok = await client.post("/v1/cron/sync/jobs", headers={"Authorization": "Bearer s3cret"})
                    header_ok = await client.post("/v1/cron/sync/remote", headers={"X-Cron-Secret": "s3cret"})

        assert missing.status_code == 401
        assert wrong.status_code == 401
        assert ok.status_code == 200
        assert ok.json()["processed"] == 0
        assert header_ok.status_code == 200
        assert header_ok.json()["users"] == {}

    asyncio.run(_run())


def test_cron_remote_sync_reports_per_user_results():
    async def _run():
        fake = FakeTodoClient()
        async with sqlite_session() as db:
            await upsert_connection(db, "usr_dev", {"access_token": "a", "refresh_token": "r", "expires_in": 3600})
            await task_service.create_project(db, "usr_dev", "Home")
            with _use_db(db), patch("common.outbound.graph_client", fake):
                async with _client() as client:
                    resp = await client.post("/v1/cron/sync/remote")

        assert resp.status_code == 200
        result = resp.json()["users"]["usr_dev"]
        assert result["containers_created"] == 1
        assert [item["displayName"] for item in fake.lists.values()] == ["Home"]

    asyncio.run(_run())


def test_trigger_remote_sync_enqueues_single_full_sync():
    async def _run():
        async with sqlite_session() as db:
            with _use_db(db):
                async with _client() as client:
                    first = await client.post("/v1/sync/remote", headers=AUTH)
                    second = await client.post("/v1/sync/remote", headers=AUTH)
                    unauthorized = await client.post("/v1/sync/remote")

        assert first.json() == {"status": "ok", "enqueued": True}
        assert second.json() == {"status": "ok", "enqueued": False}
        assert unauthorized.status_code == 401

    asyncio.run(_run())


def test_sync_status_reports_queue_and_warnings():
    async def _run():
        async with sqlite_session() as db:
            await task_service.create_task(db, "usr_dev", {"name": "Pending"})
            with _use_db(db):
                async with _client() as client:
                    resp = await client.get("/v1/sync/status", headers=AUTH)

        assert resp.status_code == 200
        body = resp.json()
        assert body["connection"]["connected"] is False
        assert body["queue"]["pending"] == 1
        assert body["mapped_projects"] == 0
        assert any("No remote connection" in w for w in body["warnings"])

    asyncio.run(_run())


def test_sync_status_warns_about_expiring_token():
    async def _run():
        async with sqlite_session() as db:
            await upsert_connection(
                db, "usr_dev", {"access_token": "a", "refresh_token": "r", "expires_in": 600},
                account_email="me@example.com",
            )
            with _use_db(db):
                async with _client() as client:
                    resp = await client.get("/v1/sync/status", headers=AUTH)

        body = resp.json()
        assert body["connection"]["connected"] is True
        assert body["connection"]["account_email"] == "me@example.com"
        assert any("expires within one hour" in w for w in body["warnings"])

    asyncio.run(_run())


def _redis_store(mock_redis):
    store = {}

    async def _set(key, value, ex=None):
        store[key] = value
        return True

    async def _get(key):
        return store.get(key)

    async def _delete(key):
        return 1 if store.pop(key, None) is not None else 0

    mock_redis.set = AsyncMock(side_effect=_set)
    mock_redis.get = AsyncMock(side_effect=_get)
    mock_redis.delete = AsyncMock(side_effect=_delete)
    return store


CALLBACK_URL = "http://test/v1/integrations/remote/callback"


def test_connect_and_callback_store_connection_and_queue_first_sync(mock_redis):
    async def _run():
        store = _redis_store(mock_redis)
        exchange = AsyncMock(return_value={"access_token": "a", "refresh_token": "r-1", "expires_in": 3600})
        profile = MagicMock(get_profile=AsyncMock(return_value={"mail": "me@example.com"}))
        async with sqlite_session() as db:
            with _use_db(db):
                async with _client() as client:
                    connect = await client.get("/v1/integrations/remote/connect", headers=AUTH)
                    state = connect.json()["state"]
                    pending = json.loads(store[f"remote_oauth_state:{state}"])
                    with patch("common.oauth.exchange_authorization_code", exchange), patch(
                        "api.main.graph_client", profile
                    ):
                        callback = await client.get(
                            "/v1/integrations/remote/callback", params={"code": "code-1", "state": state}
                        )
                        replay = await client.get(
                            "/v1/integrations/remote/callback", params={"code": "code-1", "state": state}
                        )

            query = parse_qs(urlsplit(connect.json()["authorize_url"]).query)
            assert query["state"] == [state]
            assert query["code_challenge_method"] == ["S256"]
            assert query["redirect_uri"] == [CALLBACK_URL]
            assert pending["user_id"] == "usr_dev"

            assert callback.status_code == 200
            assert callback.json() == {"status": "connected", "account_email": "me@example.com", "sync_enqueued": True}
            assert replay.status_code == 400
            exchange.assert_awaited_once_with("code-1", pending["code_verifier"], CALLBACK_URL)

            connection = await load_connection(db, "usr_dev")
            assert connection.account_email == "me@example.com"
            assert await secret_store.retrieve(db, connection.refresh_token_secret_id) == "r-1"
            actions = (await db.execute(select(SyncJob.action))).scalars().all()
            assert actions == [SyncAction.full_sync]

    asyncio.run(_run())


def test_callback_rejects_unknown_state_and_denied_consent(mock_redis):
    async def _run():
        _redis_store(mock_redis)
        exchange = AsyncMock()
        async with sqlite_session() as db:
            with _use_db(db), patch("common.oauth.exchange_authorization_code", exchange):
                async with _client() as client:
                    unknown = await client.get(
                        "/v1/integrations/remote/callback", params={"code": "code-1", "state": "forged"}
                    )
                    denied = await client.get(
                        "/v1/integrations/remote/callback",
                        params={"error": "access_denied", "error_description": "User declined"},
                    )

            assert unknown.status_code == 400
            assert denied.status_code == 400
            assert "User declined" in denied.json()["detail"]
            exchange.assert_not_awaited()
            assert await load_connection(db, "usr_dev") is None

    asyncio.run(_run())


def test_disconnect_removes_connection():
    async def _run():
        async with sqlite_session() as db:
            await upsert_connection(db, "usr_dev", {"access_token": "a", "refresh_token": "r", "expires_in": 3600})
            with _use_db(db):
                async with _client() as client:
                    first = await client.delete("/v1/integrations/remote", headers=AUTH)
                    second = await client.delete("/v1/integrations/remote", headers=AUTH)

            assert first.json() == {"status": "ok", "disconnected": True}
            assert second.json() == {"status": "ok", "disconnected": False}
            assert await load_connection(db, "usr_dev") is None

    asyncio.run(_run())
