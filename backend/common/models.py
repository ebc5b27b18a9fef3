from datetime import datetime, timezone
from typing import Optional
from enum import Enum as PyEnum

from sqlalchemy import (
    Column, Integer, String, Text, DateTime, Date, Boolean, ForeignKey,
    Index, UniqueConstraint, JSON, Enum
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base

Base = declarative_base()

JSONType = JSON().with_variant(JSONB(), "postgresql")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything we store is UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value

# --- Enums ---

class SyncAction(PyEnum):
    create = "create"
    update = "update"
    delete = "delete"
    full_sync = "full_sync"

class SyncJobStatus(PyEnum):
    pending = "pending"
    processing = "processing"
    completed = "completed"
    failed = "failed"

class SyncDirection(PyEnum):
    local = "local"
    remote = "remote"

class ProjectSource(PyEnum):
    local = "local"
    remote = "remote"

ACTIVE_PROJECT_STATUSES = ("open", "in progress", "on hold")
PRIORITIES = ("High", "Medium", "Low")

# --- Local domain ---

class Project(Base):
    __tablename__ = "projects"

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False)
    name = Column(Text, nullable=False)
    description = Column(Text, nullable=True)
    status = Column(String, nullable=False, default="Open")
    priority = Column(String, nullable=False, default="Medium")
    source = Column(Enum(ProjectSource, name="project_source"), nullable=False, default=ProjectSource.local)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)

    __table_args__ = (
        Index("idx_projects_user_name", "user_id", "name"),
    )

    @property
    def is_syncable(self) -> bool:
        return (self.status or "").strip().lower() in ACTIVE_PROJECT_STATUSES

class Task(Base):
    __tablename__ = "tasks"

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False)
    project_id = Column(String, ForeignKey("projects.id"), nullable=False)
    name = Column(Text, nullable=False)
    description = Column(Text, nullable=True)
    due_date = Column(Date, nullable=True)
    priority = Column(String, nullable=False, default="Medium")
    is_completed = Column(Boolean, nullable=False, default=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    # Stamped explicitly by the task service so inbound sync can keep the remote time.
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)

    __table_args__ = (
        Index("idx_tasks_user_project", "user_id", "project_id"),
        Index("idx_tasks_user_updated", "user_id", updated_at.desc()),
    )

# --- Credentials ---

class VaultSecret(Base):
    __tablename__ = "vault_secrets"

    id = Column(String, primary_key=True)
    ciphertext = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now)

class RemoteConnection(Base):
    __tablename__ = "remote_connections"

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False)
    account_email = Column(String, nullable=True)
    access_token = Column(Text, nullable=True)
    access_token_expires_at = Column(DateTime(timezone=True), nullable=True)
    refresh_token_secret_id = Column(String, nullable=True)
    scopes = Column(JSONType, nullable=False, default=list)
    sync_enabled = Column(Boolean, nullable=False, default=True)
    last_synced_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now)

    __table_args__ = (
        UniqueConstraint("user_id", name="uq_remote_connections_user"),
    )

# --- Mappings ---

class ProjectListMapping(Base):
    __tablename__ = "project_list_mappings"

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False)
    # No FK: the row must outlive a deleted project until garbage collection removes the remote list.
    project_id = Column(String, nullable=False)
    remote_container_id = Column(String, nullable=True)
    remote_etag = Column(String, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    delta_cursor = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now)

    __table_args__ = (
        UniqueConstraint("project_id", name="uq_project_list_mappings_project"),
        Index("idx_project_list_mappings_user_active", "user_id", "is_active"),
        Index("idx_project_list_mappings_container", "user_id", "remote_container_id"),
    )

class TaskItemMapping(Base):
    __tablename__ = "task_item_mappings"

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False)
    # No FK: delete jobs read the mapping after the local task row is gone.
    task_id = Column(String, nullable=False)
    remote_container_id = Column(String, nullable=False)
    remote_item_id = Column(String, nullable=False)
    remote_etag = Column(String, nullable=True)
    last_synced_at = Column(DateTime(timezone=True), nullable=True)
    last_sync_direction = Column(Enum(SyncDirection, name="sync_direction"), nullable=False, default=SyncDirection.local)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now)

    __table_args__ = (
        UniqueConstraint("task_id", name="uq_task_item_mappings_task"),
        Index("idx_task_item_mappings_remote_lookup", "user_id", "remote_item_id"),
        Index("idx_task_item_mappings_container", "user_id", "remote_container_id"),
    )

# --- Queue ---

class SyncJob(Base):
    __tablename__ = "sync_jobs"

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False)
    task_id = Column(String, nullable=True)
    action = Column(Enum(SyncAction, name="sync_action"), nullable=False)
    payload = Column(JSONType, nullable=False, default=dict)
    status = Column(Enum(SyncJobStatus, name="sync_job_status"), nullable=False, default=SyncJobStatus.pending)
    attempts = Column(Integer, nullable=False, default=0)
    scheduled_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    locked_at = Column(DateTime(timezone=True), nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now)

    __table_args__ = (
        Index("idx_sync_jobs_status_scheduled", "status", "scheduled_at"),
        Index("idx_sync_jobs_user_action_status", "user_id", "action", "status"),
    )

# --- Observability ---

class EventLog(Base):
    __tablename__ = "event_log"

    id = Column(String, primary_key=True)
    request_id = Column(String, nullable=False)
    user_id = Column(String, nullable=False)
    event_type = Column(String, nullable=False)
    entity_type = Column(String, nullable=True)
    entity_id = Column(String, nullable=True)
    payload_json = Column(JSONType, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)

    __table_args__ = (
        Index("idx_event_log_request", "request_id"),
        Index("idx_event_log_user_created", "user_id", created_at.desc()),
    )
