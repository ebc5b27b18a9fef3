import logging
import uuid
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from common.config import settings
from common.models import VaultSecret, utc_now

logger = logging.getLogger(__name__)


class SecretStore:
    """Encrypted secret storage keyed by an opaque reference id.

    Values are Fernet-encrypted before they reach the database. Callers keep
    only the reference (e.g. ``RemoteConnection.refresh_token_secret_id``).
    """

    def __init__(self, key: Optional[str] = None):
        self._fernet = Fernet((key or settings.VAULT_ENCRYPTION_KEY).encode())

    async def retrieve(self, db: AsyncSession, ref: Optional[str]) -> Optional[str]:
        if not ref:
            return None
        row = (await db.execute(select(VaultSecret).where(VaultSecret.id == ref))).scalar_one_or_none()
        if row is None:
            return None
        try:
            return self._fernet.decrypt(row.ciphertext.encode()).decode()
        except InvalidToken:
            logger.error(f"Secret {ref} could not be decrypted with the configured key")
            return None

    async def update(self, db: AsyncSession, ref: Optional[str], value: str) -> str:
        """Store ``value`` under ``ref`` (creating a new reference when missing) and return the reference.

        The row is staged on the session; the caller commits.
        """
        ciphertext = self._fernet.encrypt(value.encode()).decode()
        row = None
        if ref:
            row = (await db.execute(select(VaultSecret).where(VaultSecret.id == ref))).scalar_one_or_none()
        if row is None:
            row = VaultSecret(id=ref or str(uuid.uuid4()), ciphertext=ciphertext)
            db.add(row)
        else:
            row.ciphertext = ciphertext
            row.updated_at = utc_now()
        return row.id

    async def delete(self, db: AsyncSession, ref: Optional[str]) -> None:
        if not ref:
            return
        await db.execute(delete(VaultSecret).where(VaultSecret.id == ref))


secret_store = SecretStore()
