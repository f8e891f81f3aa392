"""Create matching_task and matching_record tables

Revision ID: 003
Revises: 002
Create Date: 2026-09-01 12:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '003'
down_revision = '002'
branch_labels = None
depends_on = None


def upgrade():
    # Create matching_task table
    op.create_table(
        'matching_task',
        sa.Column('id', postgresql.UUID(as_uuid=True), server_default=sa.text('gen_random_uuid()'), nullable=False),
        sa.Column('template_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('status', sa.Text(), nullable=False, server_default='pending'),
        sa.Column('review_threshold', sa.Integer(), nullable=False, server_default='65'),
        sa.Column('auto_confirm_threshold', sa.Integer(), nullable=False, server_default='90'),
        sa.Column('input_items', postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default='[]',
                  comment='Submitted line items'),
        sa.Column('source_filename', sa.Text(), nullable=True),
        sa.Column('source_path', sa.Text(), nullable=True,
                  comment='Temporary input artifact, removed after processing'),
        sa.Column('total_items', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('processed_items', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('confirmed_items', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('pending_items', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('rejected_items', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('exception_items', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('match_rate', sa.Float(), nullable=False, server_default='0'),
        sa.Column('average_confidence', sa.Float(), nullable=False, server_default='0'),
        sa.Column('matching_ms', sa.Integer(), nullable=True),
        sa.Column('total_ms', sa.Integer(), nullable=True),
        sa.Column('started_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('completed_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('retry_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_by', sa.Text(), nullable=True, comment='Opaque actor id'),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['template_id'], ['product_template.id'], ondelete='RESTRICT'),
        sa.CheckConstraint(
            "status IN ('pending', 'processing', 'review', 'completed', 'failed', 'cancelled')",
            name='ck_matching_task_status'
        ),
        sa.CheckConstraint('review_threshold >= 0 AND review_threshold <= 100', name='ck_matching_task_threshold'),
        sa.CheckConstraint(
            'auto_confirm_threshold >= 0 AND auto_confirm_threshold <= 100',
            name='ck_matching_task_auto_threshold'
        )
    )
    op.create_index('ix_matching_task_status', 'matching_task', ['status'])
    op.create_index('ix_matching_task_template', 'matching_task', ['template_id'])

    # Create matching_record table
    op.create_table(
        'matching_record',
        sa.Column('id', postgresql.UUID(as_uuid=True), server_default=sa.text('gen_random_uuid()'), nullable=False),
        sa.Column('task_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('row_index', sa.Integer(), nullable=False),
        sa.Column('original_name', sa.Text(), nullable=False, server_default=''),
        sa.Column('normalized_name', sa.Text(), nullable=False, server_default=''),
        sa.Column('original_price', sa.Numeric(precision=12, scale=2), nullable=True),
        sa.Column('quantity', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('unit', sa.Text(), nullable=True),
        sa.Column('supplier', sa.Text(), nullable=True),
        sa.Column('raw_data', postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default='{}'),
        sa.Column('candidates', postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default='[]'),
        sa.Column('best_score', sa.Float(), nullable=True),
        sa.Column('selected_product_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('selected_confidence', sa.Float(), nullable=True),
        sa.Column('selected_match_type', sa.Text(), nullable=True),
        sa.Column('selected_is_memory_match', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('selected_is_suggestion', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('selected_confirmed_by', sa.Text(), nullable=True),
        sa.Column('selected_confirmed_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('selected_note', sa.Text(), nullable=True),
        sa.Column('status', sa.Text(), nullable=False, server_default='pending'),
        sa.Column('priority', sa.Text(), nullable=False, server_default='medium'),
        sa.Column('exceptions', postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default='[]'),
        sa.Column('review_history', postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default='[]'),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['task_id'], ['matching_task.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['selected_product_id'], ['product.id'], ondelete='SET NULL'),
        sa.CheckConstraint(
            "status IN ('pending', 'confirmed', 'rejected', 'exception')",
            name='ck_matching_record_status'
        ),
        sa.CheckConstraint("priority IN ('high', 'medium', 'low')", name='ck_matching_record_priority')
    )
    op.create_index('ix_matching_record_task_status', 'matching_record', ['task_id', 'status'])
    op.create_index('ix_matching_record_product_status', 'matching_record', ['selected_product_id', 'status'])


def downgrade():
    op.drop_index('ix_matching_record_product_status', table_name='matching_record')
    op.drop_index('ix_matching_record_task_status', table_name='matching_record')
    op.drop_table('matching_record')
    op.drop_index('ix_matching_task_template', table_name='matching_task')
    op.drop_index('ix_matching_task_status', table_name='matching_task')
    op.drop_table('matching_task')
