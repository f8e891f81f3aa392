"""Create matching_memory table

Revision ID: 002
Revises: 001
Create Date: 2026-09-01 11:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '002'
down_revision = '001'
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'matching_memory',
        sa.Column('id', postgresql.UUID(as_uuid=True), server_default=sa.text('gen_random_uuid()'), nullable=False),
        sa.Column('template_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('product_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('normalized_name', sa.Text(), nullable=False),
        sa.Column('original_name', sa.Text(), nullable=False),
        sa.Column('confidence', sa.Float(), nullable=False, server_default='100'),
        sa.Column('source', sa.Text(), nullable=False, server_default='manual'),
        sa.Column('confirm_count', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('weight', sa.Float(), nullable=False, server_default='1.0'),
        sa.Column('is_user_preference', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('status', sa.Text(), nullable=False, server_default='active'),
        sa.Column('last_confirmed_at', sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('confirmed_by', sa.Text(), nullable=True, comment='Opaque actor id'),
        sa.Column('source_task_id', postgresql.UUID(as_uuid=True), nullable=True,
                  comment='Task that first taught this binding'),
        sa.Column('usage_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_used_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('conflicts', postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default='[]'),
        sa.Column('audit_trail', postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default='[]'),
        sa.Column('related_records', postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default='[]'),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['template_id'], ['product_template.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['product_id'], ['product.id'], ondelete='CASCADE'),
        sa.CheckConstraint(
            "status IN ('active', 'deprecated', 'conflicted')",
            name='ck_matching_memory_status'
        ),
        sa.CheckConstraint('confidence >= 0 AND confidence <= 100', name='ck_matching_memory_confidence'),
        sa.CheckConstraint('weight >= 0.1 AND weight <= 10', name='ck_matching_memory_weight'),
        sa.CheckConstraint('confirm_count >= 1', name='ck_matching_memory_confirm_count')
    )

    # One active binding per (normalized name, template)
    op.create_index(
        'uq_matching_memory_active_name',
        'matching_memory',
        ['normalized_name', 'template_id'],
        unique=True,
        postgresql_where=sa.text("status = 'active'")
    )
    op.create_index('ix_matching_memory_template_status', 'matching_memory', ['template_id', 'status'])
    op.create_index('ix_matching_memory_product', 'matching_memory', ['product_id'])


def downgrade():
    op.drop_index('ix_matching_memory_product', table_name='matching_memory')
    op.drop_index('ix_matching_memory_template_status', table_name='matching_memory')
    op.drop_index('uq_matching_memory_active_name', table_name='matching_memory')
    op.drop_table('matching_memory')
