"""initial_sync_schema

Revision ID: 3b9e1c4a7d20
Revises:
Create Date: 2026-10-18 09:12:44.118302

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '3b9e1c4a7d20'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

json_type = sa.JSON().with_variant(postgresql.JSONB(), 'postgresql')


def upgrade() -> None:
    # --- Enums ---
    # Let SQLAlchemy create enum types when referenced by tables.
    project_source_enum = sa.Enum('local', 'remote', name='project_source')
    sync_direction_enum = sa.Enum('local', 'remote', name='sync_direction')
    sync_action_enum = sa.Enum('create', 'update', 'delete', 'full_sync', name='sync_action')
    sync_job_status_enum = sa.Enum('pending', 'processing', 'completed', 'failed', name='sync_job_status')

    # --- Local domain ---

    op.create_table(
        'projects',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('name', sa.Text(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('status', sa.String(), nullable=False, server_default='Open'),
        sa.Column('priority', sa.String(), nullable=False, server_default='Medium'),
        sa.Column('source', project_source_enum, nullable=False, server_default='local'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('idx_projects_user_name', 'projects', ['user_id', 'name'])

    op.create_table(
        'tasks',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('project_id', sa.String(), nullable=False),
        sa.Column('name', sa.Text(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('due_date', sa.Date(), nullable=True),
        sa.Column('priority', sa.String(), nullable=False, server_default='Medium'),
        sa.Column('is_completed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['project_id'], ['projects.id'], ),
    )
    op.create_index('idx_tasks_user_project', 'tasks', ['user_id', 'project_id'])
    op.create_index('idx_tasks_user_updated', 'tasks', ['user_id', sa.text('updated_at DESC')])

    # --- Credentials ---

    op.create_table(
        'vault_secrets',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('ciphertext', sa.Text(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        'remote_connections',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('account_email', sa.String(), nullable=True),
        sa.Column('access_token', sa.Text(), nullable=True),
        sa.Column('access_token_expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('refresh_token_secret_id', sa.String(), nullable=True),
        sa.Column('scopes', json_type, nullable=False),
        sa.Column('sync_enabled', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('last_synced_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint('user_id', name='uq_remote_connections_user'),
    )

    # --- Mappings ---

    op.create_table(
        'project_list_mappings',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('project_id', sa.String(), nullable=False),
        sa.Column('remote_container_id', sa.String(), nullable=True),
        sa.Column('remote_etag', sa.String(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('delta_cursor', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint('project_id', name='uq_project_list_mappings_project'),
    )
    op.create_index('idx_project_list_mappings_user_active', 'project_list_mappings', ['user_id', 'is_active'])
    op.create_index('idx_project_list_mappings_container', 'project_list_mappings', ['user_id', 'remote_container_id'])

    op.create_table(
        'task_item_mappings',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('task_id', sa.String(), nullable=False),
        sa.Column('remote_container_id', sa.String(), nullable=False),
        sa.Column('remote_item_id', sa.String(), nullable=False),
        sa.Column('remote_etag', sa.String(), nullable=True),
        sa.Column('last_synced_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_sync_direction', sync_direction_enum, nullable=False, server_default='local'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint('task_id', name='uq_task_item_mappings_task'),
    )
    op.create_index('idx_task_item_mappings_remote_lookup', 'task_item_mappings', ['user_id', 'remote_item_id'])
    op.create_index('idx_task_item_mappings_container', 'task_item_mappings', ['user_id', 'remote_container_id'])

    # --- Queue ---

    op.create_table(
        'sync_jobs',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('task_id', sa.String(), nullable=True),
        sa.Column('action', sync_action_enum, nullable=False),
        sa.Column('payload', json_type, nullable=False),
        sa.Column('status', sync_job_status_enum, nullable=False, server_default='pending'),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('scheduled_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('locked_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('idx_sync_jobs_status_scheduled', 'sync_jobs', ['status', 'scheduled_at'])
    op.create_index('idx_sync_jobs_user_action_status', 'sync_jobs', ['user_id', 'action', 'status'])

    # --- Observability ---

    op.create_table(
        'event_log',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('request_id', sa.String(), nullable=False),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('event_type', sa.String(), nullable=False),
        sa.Column('entity_type', sa.String(), nullable=True),
        sa.Column('entity_id', sa.String(), nullable=True),
        sa.Column('payload_json', json_type, nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('idx_event_log_request', 'event_log', ['request_id'])
    op.create_index('idx_event_log_user_created', 'event_log', ['user_id', sa.text('created_at DESC')])


def downgrade() -> None:
    op.drop_table('event_log')
    op.drop_table('sync_jobs')
    op.drop_table('task_item_mappings')
    op.drop_table('project_list_mappings')
    op.drop_table('remote_connections')
    op.drop_table('vault_secrets')
    op.drop_table('tasks')
    op.drop_table('projects')

    bind = op.get_bind()
    for enum_name in ('sync_job_status', 'sync_action', 'sync_direction', 'project_source'):
        sa.Enum(name=enum_name).drop(bind, checkfirst=True)
