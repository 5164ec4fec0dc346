"""Create ingestion tables

Revision ID: 20260301_000001
Revises:
Create Date: 2026-03-01

WHAT:
    Creates the ingestion schema:
    - integrations: tenant connections to external providers
    - integration_sync_states: cursor + next_run_at per integration (1:1)
    - ingestion_jobs: persisted job queue (claim via conditional UPDATE)
    - sync_history: append-only audit log of sync attempts
    - campaigns / daily_metrics: rows written by sync handlers

WHY:
    The job queue has to survive process restarts and be shared by several
    worker processes, so it lives in the database instead of Redis.

    uq_ingestion_jobs_in_flight is a partial unique index on integration_id
    for status in (queued, running). The scheduler already checks for an
    in-flight job before enqueuing; the index makes overlapping ticks safe
    at the database level as well.

REFERENCES:
    - adsync/models.py
    - adsync/services/job_queue.py
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = '20260301_000001'
down_revision = None
branch_labels = None
depends_on = None

IN_FLIGHT_WHERE = sa.text("status IN ('queued', 'running')")


def upgrade() -> None:
    # =========================================================================
    # STEP 1: Integration store
    # =========================================================================
    op.create_table(
        'integrations',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('tenant_id', postgresql.UUID(as_uuid=True), nullable=False, index=True),
        sa.Column('provider', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=True),
        sa.Column('credentials', sa.JSON(), nullable=True),
        sa.Column('config', sa.JSON(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('status', sa.String(), nullable=False, server_default='active'),
        sa.Column('last_sync_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
    )

    # =========================================================================
    # STEP 2: Sync state (1:1 with integration)
    # =========================================================================
    op.create_table(
        'integration_sync_states',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('integration_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('integrations.id'), nullable=False, unique=True),
        sa.Column('tenant_id', postgresql.UUID(as_uuid=True), nullable=False, index=True),
        sa.Column('provider', sa.String(), nullable=False),
        sa.Column('cursor', sa.JSON(), nullable=True),
        sa.Column('last_attempt_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_success_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('next_run_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
    )

    # =========================================================================
    # STEP 3: Job queue
    # =========================================================================
    # WHAT: trigger/status stored as short strings (non-native enums)
    # WHY: adding a status later needs no ALTER TYPE
    op.create_table(
        'ingestion_jobs',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('tenant_id', postgresql.UUID(as_uuid=True), nullable=False, index=True),
        sa.Column('integration_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('integrations.id'), nullable=False, index=True),
        sa.Column('provider', sa.String(), nullable=False),
        sa.Column('trigger', sa.String(16), nullable=False, server_default='cron'),
        sa.Column('status', sa.String(16), nullable=False, server_default='queued'),
        sa.Column('run_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('locked_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('locked_by', sa.String(), nullable=True),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_attempts', sa.Integer(), nullable=False, server_default='3'),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('finished_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('payload', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        'uq_ingestion_jobs_in_flight',
        'ingestion_jobs',
        ['integration_id'],
        unique=True,
        postgresql_where=IN_FLIGHT_WHERE,
        sqlite_where=IN_FLIGHT_WHERE,
    )
    op.create_index('ix_ingestion_jobs_claim', 'ingestion_jobs', ['status', 'run_at'])

    # =========================================================================
    # STEP 4: Sync history (append-only)
    # =========================================================================
    op.create_table(
        'sync_history',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('tenant_id', postgresql.UUID(as_uuid=True), nullable=False, index=True),
        sa.Column('integration_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('integrations.id'), nullable=False, index=True),
        sa.Column('provider', sa.String(), nullable=False),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('data', sa.JSON(), nullable=True),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('synced_at', sa.DateTime(timezone=True), nullable=False),
    )

    # =========================================================================
    # STEP 5: Handler-written stores
    # =========================================================================
    op.create_table(
        'campaigns',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('tenant_id', postgresql.UUID(as_uuid=True), nullable=False, index=True),
        sa.Column('integration_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('integrations.id'), nullable=True),
        sa.Column('platform', sa.String(), nullable=False),
        sa.Column('external_id', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('status', sa.String(), nullable=False, server_default='active'),
        sa.Column('objective', sa.String(), nullable=True),
        sa.Column('budget', sa.Numeric(14, 2), nullable=True),
        sa.Column('budget_type', sa.String(), nullable=True),
        sa.Column('currency', sa.String(), nullable=True),
        sa.Column('start_date', sa.Date(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint('tenant_id', 'platform', 'external_id',
                            name='uq_campaign_tenant_platform_external'),
    )

    op.create_table(
        'daily_metrics',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('tenant_id', postgresql.UUID(as_uuid=True), nullable=False, index=True),
        sa.Column('campaign_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('campaigns.id'), nullable=False, index=True),
        sa.Column('date', sa.Date(), nullable=False),
        sa.Column('platform', sa.String(), nullable=False),
        sa.Column('source', sa.String(), nullable=False),
        sa.Column('impressions', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('clicks', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('conversions', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('spend', sa.Numeric(14, 2), nullable=False, server_default='0'),
        sa.Column('revenue', sa.Numeric(14, 2), nullable=False, server_default='0'),
        sa.Column('details', sa.JSON(), nullable=True),
        sa.UniqueConstraint('campaign_id', 'date', 'source',
                            name='uq_daily_metric_campaign_date_source'),
    )


def downgrade() -> None:
    op.drop_table('daily_metrics')
    op.drop_table('campaigns')
    op.drop_table('sync_history')
    op.drop_index('ix_ingestion_jobs_claim', table_name='ingestion_jobs')
    op.drop_index('uq_ingestion_jobs_in_flight', table_name='ingestion_jobs')
    op.drop_table('ingestion_jobs')
    op.drop_table('integration_sync_states')
    op.drop_table('integrations')
