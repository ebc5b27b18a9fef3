from typing import List, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    # Shared
    APP_ENV: str = "dev"
    APP_PORT: int = 8000
    DATABASE_URL: str
    REDIS_URL: str
    APP_AUTH_BEARER_TOKENS: str  # Comma-separated
    APP_AUTH_TOKEN_USER_MAP: Optional[str] = None  # token:user_id pairs, comma-separated
    CRON_SECRET: Optional[str] = None

    # Remote provider (Microsoft To Do via Graph)
    GRAPH_API_BASE: str = "https://graph.microsoft.com/v1.0"
    GRAPH_AUTH_BASE: str = "https://login.microsoftonline.com"
    GRAPH_TIMEOUT_SECONDS: float = 15.0
    MICROSOFT_CLIENT_ID: Optional[str] = None
    MICROSOFT_CLIENT_SECRET: Optional[str] = None
    MICROSOFT_TENANT_ID: str = "common"
    MICROSOFT_SCOPES: str = "offline_access Tasks.ReadWrite User.Read"
    MICROSOFT_REDIRECT_URI: Optional[str] = None  # Defaults to the API callback route
    OAUTH_STATE_TTL_SECONDS: int = 600

    # Secret store
    VAULT_ENCRYPTION_KEY: str

    # Sync tuning
    TOKEN_REFRESH_MARGIN_SECONDS: int = 120
    SYNC_JOB_BATCH_SIZE: int = 25
    SYNC_JOB_LEASE_MINUTES: int = 15
    SYNC_JOB_ERROR_MAX_LENGTH: int = 1000
    SYNC_POLL_INTERVAL_SECONDS: int = 30
    SYNC_REMOTE_INTERVAL_MINUTES: int = 5
    SYNC_IMPORT_REMOTE_LISTS: bool = True
    SYNC_DELTA_MAX_PAGES: int = 50
    REMOTE_LIST_NAME_MAX_LENGTH: int = 120
    UNASSIGNED_PROJECT_NAME: str = "Unassigned"
    SYNC_QUEUE_BACKLOG_WARNING: int = 50

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @property
    def auth_tokens(self) -> List[str]:
        return [t.strip() for t in self.APP_AUTH_BEARER_TOKENS.split(",") if t.strip()]

    @property
    def token_user_map(self) -> dict:
        if not self.APP_AUTH_TOKEN_USER_MAP:
            return {}
        mapping = {}
        for pair in self.APP_AUTH_TOKEN_USER_MAP.split(","):
            pair = pair.strip()
            if not pair or ":" not in pair:
                continue
            token, user_id = pair.split(":", 1)
            token = token.strip()
            user_id = user_id.strip()
            if token and user_id:
                mapping[token] = user_id
        return mapping

    @property
    def graph_scopes(self) -> List[str]:
        return [s for s in self.MICROSOFT_SCOPES.split() if s]

settings = Settings()
