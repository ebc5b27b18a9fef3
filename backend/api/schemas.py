from pydantic import BaseModel, Field
from typing import Optional, Dict, Any, List


class SyncJobResult(BaseModel):
    job_id: str
    status: str
    error: Optional[str] = None


class ProcessJobsResponse(BaseModel):
    status: str = "ok"
    processed: int
    completed: int
    failed: int
    skipped: int
    results: List[SyncJobResult] = Field(default_factory=list)


class RemoteSyncRunResponse(BaseModel):
    status: str = "ok"
    users: Dict[str, Dict[str, Any]] = Field(default_factory=dict)


class RemoteSyncTriggerResponse(BaseModel):
    status: str = "ok"
    enqueued: bool


class QueueStats(BaseModel):
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    oldest_pending_scheduled_at: Optional[str] = None
    last_completed_at: Optional[str] = None
    last_failure_at: Optional[str] = None
    last_failure_error: Optional[str] = None


class ConnectionStatus(BaseModel):
    connected: bool
    sync_enabled: bool = False
    account_email: Optional[str] = None
    access_token_expires_at: Optional[str] = None
    last_synced_at: Optional[str] = None


class SyncStatusResponse(BaseModel):
    connection: ConnectionStatus
    mapped_projects: int
    inactive_project_mappings: int
    mapped_tasks: int
    queue: QueueStats
    warnings: List[str] = Field(default_factory=list)


class RemoteConnectResponse(BaseModel):
    authorize_url: str
    state: str


class RemoteConnectedResponse(BaseModel):
    status: str = "connected"
    account_email: Optional[str] = None
    sync_enqueued: bool = False


class RemoteDisconnectResponse(BaseModel):
    status: str = "ok"
    disconnected: bool
