"""Initial room calendar schema

Revision ID: 001_initial_schema
Revises:
Create Date: 2025-03-01

Creates events, locations and users tables with:
- GUID (uuid) columns for API identifiers
- Identity columns on events (external_id, ical_uid, match_key)
- Recurrence linkage (series_master_external_id, exception list, cancellations)
- Workflow columns (status, previous_status, status_history, soft delete)
- Version counter for conditional writes (NULL on legacy rows)
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = '001_initial_schema'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    """
    Create events, locations and users tables.

    Tables:
    - events: Calendar events from every ingestion path
    - locations: Rooms and virtual locations
    - users: Staff and requesters with role tier
    """

    op.create_table(
        'locations',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('uuid', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('display_name', sa.String(length=255), nullable=True),
        sa.Column('building', sa.String(length=255), nullable=True),
        sa.Column('floor', sa.String(length=64), nullable=True),
        sa.Column('capacity', sa.Integer(), nullable=True),
        sa.Column('features', postgresql.JSONB(), nullable=True),
        sa.Column('is_reservable', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('aliases', postgresql.JSONB(), nullable=True),
        sa.Column('is_virtual', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('now()')),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.text('now()')),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_locations_uuid', 'locations', ['uuid'], unique=True)
    op.create_index('ix_locations_name', 'locations', ['name'], unique=True)

    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('uuid', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('display_name', sa.String(length=255), nullable=True),
        sa.Column('role', sa.String(length=32), nullable=False, server_default='viewer'),
        sa.Column('department', sa.String(length=64), nullable=True),
        sa.Column('notification_preferences', postgresql.JSONB(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('now()')),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.text('now()')),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_users_uuid', 'users', ['uuid'], unique=True)
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    op.create_table(
        'events',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('uuid', postgresql.UUID(as_uuid=True), nullable=False),
        # Identity
        sa.Column('external_id', sa.String(length=512), nullable=True),
        sa.Column('ical_uid', sa.String(length=512), nullable=True),
        sa.Column('calendar_id', sa.String(length=255), nullable=True),
        sa.Column('match_key', sa.String(length=1024), nullable=True),
        # Content
        sa.Column('title', sa.String(length=255), nullable=False, server_default=''),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('start_at', sa.DateTime(), nullable=True),
        sa.Column('end_at', sa.DateTime(), nullable=True),
        sa.Column('is_all_day', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('timezone', sa.String(length=64), nullable=True),
        sa.Column('setup_at', sa.DateTime(), nullable=True),
        sa.Column('door_open_at', sa.DateTime(), nullable=True),
        sa.Column('door_close_at', sa.DateTime(), nullable=True),
        sa.Column('teardown_at', sa.DateTime(), nullable=True),
        sa.Column('categories', postgresql.JSONB(), nullable=True),
        sa.Column('location_ids', postgresql.JSONB(), nullable=True),
        sa.Column('location_display', sa.String(length=1024), nullable=True),
        # Provenance
        sa.Column('creation_source', sa.String(length=32), nullable=False, server_default='unknown'),
        sa.Column('created_by_id', sa.String(length=255), nullable=True),
        sa.Column('created_by_email', sa.String(length=255), nullable=True),
        sa.Column('created_by_name', sa.String(length=255), nullable=True),
        sa.Column('source_payload', postgresql.JSONB(), nullable=True),
        # Recurrence
        sa.Column('event_type', sa.String(length=32), nullable=False, server_default='single_instance'),
        sa.Column('series_master_external_id', sa.String(length=512), nullable=True),
        sa.Column('original_start_at', sa.DateTime(), nullable=True),
        sa.Column('recurrence', postgresql.JSONB(), nullable=True),
        sa.Column('cancelled_occurrences', postgresql.JSONB(), nullable=True),
        sa.Column('exception_event_ids', postgresql.JSONB(), nullable=True),
        # Workflow
        sa.Column('status', sa.String(length=32), nullable=False, server_default='draft'),
        sa.Column('previous_status', sa.String(length=32), nullable=True),
        sa.Column('status_history', postgresql.JSONB(), nullable=True),
        sa.Column('deleted_at', sa.DateTime(), nullable=True),
        sa.Column('deleted_by_email', sa.String(length=255), nullable=True),
        # Concurrency
        sa.Column('version', sa.Integer(), nullable=True, server_default='1'),
        sa.Column('last_modified_by', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('now()')),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.text('now()')),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_events_uuid', 'events', ['uuid'], unique=True)
    op.create_index('ix_events_external_id', 'events', ['external_id'])
    op.create_index('ix_events_ical_uid', 'events', ['ical_uid'])
    op.create_index('ix_events_calendar_id', 'events', ['calendar_id'])
    op.create_index('ix_events_match_key', 'events', ['match_key'])
    op.create_index('ix_events_start_at', 'events', ['start_at'])
    op.create_index('ix_events_series_master_external_id', 'events', ['series_master_external_id'])
    op.create_index('ix_events_status', 'events', ['status'])
    op.create_index('idx_events_calendar_start', 'events', ['calendar_id', 'start_at'])
    op.create_index(
        'idx_events_master_original_start', 'events',
        ['series_master_external_id', 'original_start_at'],
    )


def downgrade() -> None:
    """Drop all tables created by this revision."""
    op.drop_table('events')
    op.drop_table('users')
    op.drop_table('locations')
