import json
import uuid
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import FastAPI, Depends, HTTPException, status, Request, Query
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import text, select, func

from common.config import settings
from common.db import AsyncSessionLocal
from common.connections import delete_connection, load_connection, upsert_connection
from common.graph import GraphAPIError, graph_client
from common.inbound import sync_remote_changes_for_user
from common.models import ProjectListMapping, RemoteConnection, SyncAction, TaskItemMapping, as_utc
from common.outbound import process_pending_jobs
from common import oauth, sync_queue
from api.schemas import (
    ConnectionStatus, ProcessJobsResponse, QueueStats, RemoteConnectResponse, RemoteConnectedResponse,
    RemoteDisconnectResponse, RemoteSyncRunResponse, RemoteSyncTriggerResponse, SyncJobResult,
    SyncStatusResponse,
)

logger = logging.getLogger(__name__)

app = FastAPI(title="Task Sync API")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def get_db():
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()

# --- Middleware & Dependencies ---

@app.middleware("http")
async def add_request_id(request: Request, call_next):
    request_id = str(uuid.uuid4())
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response

def _bearer_token(request: Request) -> Optional[str]:
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None
    return auth_header.split(" ", 1)[1].strip()

async def get_authenticated_user(request: Request):
    token = _bearer_token(request)
    if not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing or invalid authorization header")
    token_map = settings.token_user_map
    if token_map:
        mapped_user = token_map.get(token)
        if mapped_user:
            return mapped_user
    if token not in settings.auth_tokens:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    return "usr_dev"

async def verify_cron_secret(request: Request):
    expected = settings.CRON_SECRET
    if not expected:
        # No secret configured: cron endpoints are open.
        return
    provided = _bearer_token(request) or request.headers.get("X-Cron-Secret") or ""
    if not secrets.compare_digest(provided, expected):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid cron secret")

# --- Health ---

@app.get("/health/live")
async def health_live():
    return {"status": "ok"}

@app.get("/health/ready")
async def health_ready(db: AsyncSession = Depends(get_db)):
    try:
        await db.execute(text("SELECT 1"))
        await sync_queue.redis_client.ping()
    except Exception:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Infrastructure unreachable")
    return {"status": "ready"}

# --- Scheduler entry points ---

@app.post("/v1/cron/sync/jobs", response_model=ProcessJobsResponse, dependencies=[Depends(verify_cron_secret)])
async def cron_process_sync_jobs(
    limit: int = Query(default=settings.SYNC_JOB_BATCH_SIZE, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
):
    reclaimed = await sync_queue.reclaim_stale_jobs(db)
    if reclaimed:
        logger.info(f"Reclaimed {reclaimed} stale sync job(s) before cron drain")
    results = await process_pending_jobs(db, limit)
    counts = {"completed": 0, "failed": 0, "skipped": 0}
    for item in results:
        counts[item["status"]] = counts.get(item["status"], 0) + 1
    return ProcessJobsResponse(
        processed=len(results),
        completed=counts["completed"],
        failed=counts["failed"],
        skipped=counts["skipped"],
        results=[SyncJobResult(**item) for item in results],
    )


@app.post("/v1/cron/sync/remote", response_model=RemoteSyncRunResponse, dependencies=[Depends(verify_cron_secret)])
async def cron_sync_remote(db: AsyncSession = Depends(get_db)):
    user_ids = (
        await db.execute(select(RemoteConnection.user_id).where(RemoteConnection.sync_enabled.is_(True)))
    ).scalars().all()
    users = {}
    for user_id in user_ids:
        try:
            users[user_id] = await sync_remote_changes_for_user(db, user_id)
        except Exception as e:
            await db.rollback()
            logger.error(f"Remote sync failed for user {user_id}: {e}")
            users[user_id] = {"error": str(e)[: settings.SYNC_JOB_ERROR_MAX_LENGTH]}
    return RemoteSyncRunResponse(users=users)

# --- Remote account connection ---

OAUTH_STATE_PREFIX = "remote_oauth_state:"


def _oauth_redirect_uri(request: Request) -> str:
    return settings.MICROSOFT_REDIRECT_URI or str(request.url_for("remote_oauth_callback"))


@app.get("/v1/integrations/remote/connect", response_model=RemoteConnectResponse)
async def connect_remote(
    request: Request,
    login_hint: Optional[str] = Query(default=None),
    user_id: str = Depends(get_authenticated_user),
):
    state = oauth.create_oauth_state()
    verifier, challenge = oauth.create_pkce_pair()
    redirect_uri = _oauth_redirect_uri(request)
    await sync_queue.redis_client.set(
        f"{OAUTH_STATE_PREFIX}{state}",
        json.dumps({"user_id": user_id, "code_verifier": verifier, "redirect_uri": redirect_uri}),
        ex=settings.OAUTH_STATE_TTL_SECONDS,
    )
    return RemoteConnectResponse(
        authorize_url=oauth.build_authorize_url(redirect_uri, state, challenge, login_hint=login_hint),
        state=state,
    )


@app.get("/v1/integrations/remote/callback", name="remote_oauth_callback", response_model=RemoteConnectedResponse)
async def remote_oauth_callback(
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
    error_description: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
):
    if error:
        raise HTTPException(status_code=400, detail=f"Authorization was not granted: {error_description or error}")
    if not code or not state:
        raise HTTPException(status_code=400, detail="Missing code or state")

    key = f"{OAUTH_STATE_PREFIX}{state}"
    raw = await sync_queue.redis_client.get(key)
    if not raw:
        raise HTTPException(status_code=400, detail="Unknown or expired state")
    await sync_queue.redis_client.delete(key)
    pending = json.loads(raw)
    user_id = pending["user_id"]

    try:
        token_response = await oauth.exchange_authorization_code(
            code, pending["code_verifier"], pending["redirect_uri"]
        )
    except oauth.OAuthError as e:
        logger.error(f"Authorization code exchange failed for user {user_id}: {e}")
        raise HTTPException(status_code=502, detail=str(e))

    account_email = None
    try:
        profile = await graph_client.get_profile(token_response["access_token"])
        account_email = profile.get("mail") or profile.get("userPrincipalName")
    except GraphAPIError as e:
        logger.warning(f"Could not read remote profile for user {user_id}: {e}")

    try:
        await upsert_connection(db, user_id, token_response, account_email=account_email)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    logger.info(f"Remote account connected for user {user_id}")
    enqueued = await sync_queue.enqueue(db, user_id, None, SyncAction.full_sync, {"trigger": "connect"})
    return RemoteConnectedResponse(account_email=account_email, sync_enqueued=enqueued)


@app.delete("/v1/integrations/remote", response_model=RemoteDisconnectResponse)
async def disconnect_remote(user_id: str = Depends(get_authenticated_user), db: AsyncSession = Depends(get_db)):
    removed = await delete_connection(db, user_id)
    if removed:
        logger.info(f"Remote account disconnected for user {user_id}")
    return RemoteDisconnectResponse(disconnected=removed)

# --- User-facing sync ---

@app.post("/v1/sync/remote", response_model=RemoteSyncTriggerResponse)
async def trigger_remote_sync(user_id: str = Depends(get_authenticated_user), db: AsyncSession = Depends(get_db)):
    enqueued = await sync_queue.enqueue(db, user_id, None, SyncAction.full_sync, {"trigger": "api"})
    return RemoteSyncTriggerResponse(enqueued=enqueued)


@app.get("/v1/sync/status", response_model=SyncStatusResponse)
async def get_sync_status(user_id: str = Depends(get_authenticated_user), db: AsyncSession = Depends(get_db)):
    connection = await load_connection(db, user_id)
    mapped_projects = (
        await db.execute(
            select(func.count(ProjectListMapping.id)).where(
                ProjectListMapping.user_id == user_id,
                ProjectListMapping.is_active.is_(True),
            )
        )
    ).scalar()
    inactive_projects = (
        await db.execute(
            select(func.count(ProjectListMapping.id)).where(
                ProjectListMapping.user_id == user_id,
                ProjectListMapping.is_active.is_(False),
            )
        )
    ).scalar()
    mapped_tasks = (
        await db.execute(select(func.count(TaskItemMapping.id)).where(TaskItemMapping.user_id == user_id))
    ).scalar()
    queue = QueueStats(**(await sync_queue.queue_stats(db, user_id)))

    warnings = []
    if connection is None:
        warnings.append("No remote connection; local changes are not being synced.")
    else:
        expires_at = as_utc(connection.access_token_expires_at)
        if expires_at and expires_at <= utc_now() + timedelta(hours=1):
            warnings.append("Access token expires within one hour; it will be refreshed on next use.")
        if not connection.sync_enabled:
            warnings.append("Sync is disabled for this connection.")
    if queue.pending > settings.SYNC_QUEUE_BACKLOG_WARNING:
        warnings.append(f"Sync backlog is high: {queue.pending} pending job(s).")
    if queue.failed:
        warnings.append(f"{queue.failed} sync job(s) failed; last error: {queue.last_failure_error or 'unknown'}")

    return SyncStatusResponse(
        connection=ConnectionStatus(
            connected=connection is not None,
            sync_enabled=bool(connection and connection.sync_enabled),
            account_email=connection.account_email if connection else None,
            access_token_expires_at=(
                as_utc(connection.access_token_expires_at).isoformat()
                if connection and connection.access_token_expires_at else None
            ),
            last_synced_at=(
                as_utc(connection.last_synced_at).isoformat()
                if connection and connection.last_synced_at else None
            ),
        ),
        mapped_projects=mapped_projects or 0,
        inactive_project_mappings=inactive_projects or 0,
        mapped_tasks=mapped_tasks or 0,
        queue=queue,
        warnings=warnings,
    )
