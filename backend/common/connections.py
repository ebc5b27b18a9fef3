import logging
import uuid
from datetime import timedelta
from typing import Any, Dict, Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from common.config import settings
from common.models import ProjectListMapping, RemoteConnection, TaskItemMapping, as_utc, utc_now
from common import oauth
from common.vault import secret_store

logger = logging.getLogger(__name__)


def _parse_scopes(value: Any) -> list:
    if isinstance(value, list):
        return [str(v) for v in value]
    if isinstance(value, str):
        return [s for s in value.split() if s]
    return []


async def load_connection(db: AsyncSession, user_id: str) -> Optional[RemoteConnection]:
    stmt = select(RemoteConnection).where(RemoteConnection.user_id == user_id)
    return (await db.execute(stmt)).scalar_one_or_none()


async def upsert_connection(
    db: AsyncSession,
    user_id: str,
    token_response: Dict[str, Any],
    account_email: Optional[str] = None,
) -> RemoteConnection:
    """Persist credentials returned by the OAuth code exchange."""
    access_token = token_response.get("access_token")
    refresh_token = token_response.get("refresh_token")
    if not access_token:
        raise ValueError("Token response missing access_token")
    if not refresh_token:
        raise ValueError("Token response missing refresh_token (ensure offline_access scope is granted)")

    connection = await load_connection(db, user_id)
    if connection is None:
        connection = RemoteConnection(id=str(uuid.uuid4()), user_id=user_id)
        db.add(connection)

    connection.refresh_token_secret_id = await secret_store.update(
        db, connection.refresh_token_secret_id, refresh_token
    )
    connection.access_token = access_token
    connection.access_token_expires_at = utc_now() + timedelta(seconds=int(token_response.get("expires_in") or 3600))
    connection.scopes = _parse_scopes(token_response.get("scope")) or list(connection.scopes or [])
    connection.account_email = account_email or connection.account_email
    connection.sync_enabled = True
    await db.commit()
    return connection


async def delete_connection(db: AsyncSession, user_id: str) -> bool:
    """Remove credentials and every mapping for the user. Remote data is left untouched."""
    connection = await load_connection(db, user_id)
    if connection is None:
        return False
    await secret_store.delete(db, connection.refresh_token_secret_id)
    await db.execute(delete(ProjectListMapping).where(ProjectListMapping.user_id == user_id))
    await db.execute(delete(TaskItemMapping).where(TaskItemMapping.user_id == user_id))
    await db.delete(connection)
    await db.commit()
    return True


async def get_connection(db: AsyncSession, user_id: str) -> Optional[str]:
    """Return a bearer token usable for at least the refresh margin, or None.

    None means there is nothing to sync with (no connection, disabled, or no
    refresh token). A rejected refresh raises ``oauth.OAuthRefreshError``.
    """
    connection = await load_connection(db, user_id)
    if connection is None or not connection.sync_enabled:
        return None

    expires_at = as_utc(connection.access_token_expires_at)
    threshold = utc_now() + timedelta(seconds=settings.TOKEN_REFRESH_MARGIN_SECONDS)
    if connection.access_token and expires_at and expires_at > threshold:
        return connection.access_token

    refresh_token = await secret_store.retrieve(db, connection.refresh_token_secret_id)
    if not refresh_token:
        logger.warning(f"No refresh token stored for user {user_id}; reconnect required")
        return None

    logger.info(f"Refreshing remote access token for user {user_id}")
    refreshed = await oauth.refresh_access_token(refresh_token)

    rotated = refreshed.get("refresh_token")
    if rotated and rotated != refresh_token:
        connection.refresh_token_secret_id = await secret_store.update(
            db, connection.refresh_token_secret_id, rotated
        )
    connection.access_token = refreshed["access_token"]
    connection.access_token_expires_at = utc_now() + timedelta(seconds=int(refreshed.get("expires_in") or 3600))
    scopes = _parse_scopes(refreshed.get("scope"))
    if scopes:
        connection.scopes = scopes
    await db.commit()
    return connection.access_token
