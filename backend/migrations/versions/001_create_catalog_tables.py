"""Create product_template and product tables

Revision ID: 001
Revises:
Create Date: 2026-09-01 10:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    # Create product_template table
    op.create_table(
        'product_template',
        sa.Column('id', postgresql.UUID(as_uuid=True), server_default=sa.text('gen_random_uuid()'), nullable=False),
        sa.Column('name', sa.Text(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('active', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('name', name='uq_product_template_name')
    )

    # Create product table
    op.create_table(
        'product',
        sa.Column('id', postgresql.UUID(as_uuid=True), server_default=sa.text('gen_random_uuid()'), nullable=False),
        sa.Column('template_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('name', sa.Text(), nullable=False),
        sa.Column('brand', sa.Text(), nullable=True),
        sa.Column('product_code', sa.Text(), nullable=True),
        sa.Column('keywords', postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default='[]'),
        sa.Column('company_price', sa.Numeric(precision=12, scale=2), nullable=True,
                  comment='Catalog reference price'),
        sa.Column('active', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('wholesale_name', sa.Text(), nullable=True, comment='Last confirmed wholesale name'),
        sa.Column('wholesale_price', sa.Numeric(precision=12, scale=2), nullable=True),
        sa.Column('wholesale_unit', sa.Text(), nullable=True),
        sa.Column('wholesale_source', sa.Text(), nullable=True),
        sa.Column('wholesale_updated_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('last_matching_record_id', postgresql.UUID(as_uuid=True), nullable=True,
                  comment='Record that last propagated a price'),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['template_id'], ['product_template.id'], ondelete='CASCADE')
    )

    # Create indexes for product table
    op.create_index('ix_product_template_active', 'product', ['template_id', 'active'])
    op.create_index('ix_product_brand', 'product', ['brand'])


def downgrade():
    op.drop_index('ix_product_brand', table_name='product')
    op.drop_index('ix_product_template_active', table_name='product')
    op.drop_table('product')
    op.drop_table('product_template')
