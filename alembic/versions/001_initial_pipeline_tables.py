"""Initial pipeline tables

Revision ID: 001_initial_pipeline
Revises:
Create Date: 2026-10-18

Creates:
- item_batches, items (Item Ledger)
- pipeline_runs (run state)
- stage_log_entries (Metrics & Stage Log)
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '001_initial_pipeline'
down_revision = None
branch_labels = None
depends_on = None

ITEM_STAGE_FIELDS = ('intake', 'triage', 'lexicon', 'pool', 'graph', 'embedding')


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
    ]


def upgrade() -> None:
    # ==========================================================================
    # Create Enums
    # ==========================================================================

    run_status_enum = postgresql.ENUM(
        'initialized', 'running', 'paused', 'retrying', 'failed', 'cancelled', 'completed',
        name='runstatus',
        create_type=False,
    )
    if op.get_bind().dialect.name == 'postgresql':
        run_status_enum.create(op.get_bind(), checkfirst=True)

    # ==========================================================================
    # Item Ledger
    # ==========================================================================

    op.create_table(
        'item_batches',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('source_type', sa.String(length=50), nullable=False, server_default='mixed'),
        sa.Column('statistics', sa.JSON(), nullable=False),
        sa.Column('literacy_score', sa.Float(), nullable=True),
        sa.Column('literacy_gaps', sa.JSON(), nullable=True),
        sa.Column('deliverables_path', sa.String(length=1000), nullable=True),
        sa.Column('fine_tune_dataset_path', sa.String(length=1000), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
    )

    stage_columns = []
    for field in ITEM_STAGE_FIELDS:
        stage_columns.append(
            sa.Column(f'{field}_status', sa.String(length=20), nullable=False, server_default='pending')
        )
        stage_columns.append(sa.Column(f'{field}_metadata', sa.JSON(), nullable=False))

    op.create_table(
        'items',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('batch_id', sa.Uuid(), nullable=False),
        sa.Column('position', sa.Integer(), nullable=False),
        sa.Column('file_path', sa.String(length=1000), nullable=False),
        sa.Column('media_type', sa.String(length=20), nullable=False, server_default='unknown'),
        sa.Column('source_hash', sa.String(length=64), nullable=True),
        sa.Column('size_bytes', sa.Integer(), nullable=True),
        sa.Column('content_sample', sa.Text(), nullable=True),
        *stage_columns,
        *_timestamps(),
        sa.ForeignKeyConstraint(['batch_id'], ['item_batches.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_items_batch_id', 'items', ['batch_id'], unique=False)
    for field in ITEM_STAGE_FIELDS:
        op.create_index(f'ix_items_{field}_status', 'items', [f'{field}_status'], unique=False)

    # ==========================================================================
    # Pipeline Runs
    # ==========================================================================

    op.create_table(
        'pipeline_runs',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('batch_id', sa.Uuid(), nullable=False),
        sa.Column(
            'status',
            sa.Enum(
                'initialized', 'running', 'paused', 'retrying', 'failed', 'cancelled', 'completed',
                name='runstatus',
                create_type=False,
            ),
            nullable=False,
            server_default='initialized',
        ),
        sa.Column('current_stage_number', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('stage_statuses', sa.JSON(), nullable=False),
        sa.Column('stage_metrics', sa.JSON(), nullable=False),
        sa.Column('auto_advance', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('failed_stage', sa.String(length=50), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('retry_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_retries', sa.Integer(), nullable=False, server_default='3'),
        sa.Column('active_dispatch_id', sa.Uuid(), nullable=True),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('stage_started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['batch_id'], ['item_batches.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('batch_id'),
    )
    op.create_index('ix_pipeline_runs_status', 'pipeline_runs', ['status'], unique=False)

    # ==========================================================================
    # Stage Log
    # ==========================================================================

    op.create_table(
        'stage_log_entries',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('pipeline_run_id', sa.Uuid(), nullable=False),
        sa.Column('stage_number', sa.Integer(), nullable=False),
        sa.Column('stage_name', sa.String(length=50), nullable=False),
        sa.Column('event', sa.String(length=30), nullable=False),
        sa.Column('run_status', sa.String(length=20), nullable=False),
        sa.Column('items_processed', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('items_failed', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('counters', sa.JSON(), nullable=False),
        sa.Column('duration_seconds', sa.Float(), nullable=True),
        sa.Column('message', sa.Text(), nullable=True),
        sa.Column('recorded_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['pipeline_run_id'], ['pipeline_runs.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(
        'ix_stage_log_entries_pipeline_run_id', 'stage_log_entries', ['pipeline_run_id'], unique=False
    )


def downgrade() -> None:
    # Drop tables in reverse order
    op.drop_table('stage_log_entries')
    op.drop_table('pipeline_runs')
    op.drop_table('items')
    op.drop_table('item_batches')

    # Drop enums
    if op.get_bind().dialect.name == 'postgresql':
        op.execute("DROP TYPE IF EXISTS runstatus")
