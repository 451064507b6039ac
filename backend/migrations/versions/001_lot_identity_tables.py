"""Create lot identity tables

Revision ID: 001_lot_identity
Revises:
Create Date: 2026-10-18

Counters, minted lot codes, and the canonical job -> lot number mapping
with its usage audit trail.
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '001_lot_identity'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'lot_sequence_counters',
        sa.Column('scope_key', sa.String(255), nullable=False),
        sa.Column('next_value', sa.Integer(), nullable=False, server_default=sa.text('1')),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('scope_key'),
    )

    op.create_table(
        'generated_lot_numbers',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('lot_code', sa.String(100), nullable=False),
        sa.Column('generated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('job_id', sa.String(255), nullable=False),
        sa.Column('task_id', sa.String(255), nullable=False),
        sa.Column('task_name', sa.String(255), nullable=False),
        sa.Column('material_type', sa.String(255), nullable=True),
        sa.Column('sequence', sa.Integer(), nullable=False),
        sa.Column('is_used', sa.Boolean(), nullable=False, server_default=sa.false()),
    )
    op.create_index('ix_generated_lot_numbers_id', 'generated_lot_numbers', ['id'])
    op.create_index('ix_generated_lot_numbers_lot_code', 'generated_lot_numbers', ['lot_code'])
    op.create_index('ix_generated_lot_numbers_job_id', 'generated_lot_numbers', ['job_id'])

    op.create_table(
        'job_lot_mappings',
        sa.Column('job_id', sa.String(255), nullable=False),
        sa.Column('lot_number', sa.String(100), nullable=False),
        sa.Column('part_number', sa.String(255), nullable=True),
        sa.Column('part_name', sa.String(255), nullable=True),
        sa.Column('order_id', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('last_updated', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('job_id'),
    )

    op.create_table(
        'job_lot_usage',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('job_id', sa.String(255), nullable=False),
        sa.Column('component', sa.String(50), nullable=False),
        sa.Column('timestamp', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(['job_id'], ['job_lot_mappings.job_id'],
                                name='fk_job_lot_usage_mapping', ondelete='CASCADE'),
    )
    op.create_index('ix_job_lot_usage_id', 'job_lot_usage', ['id'])
    op.create_index('ix_job_lot_usage_job_id', 'job_lot_usage', ['job_id'])


def downgrade() -> None:
    op.drop_index('ix_job_lot_usage_job_id', table_name='job_lot_usage')
    op.drop_index('ix_job_lot_usage_id', table_name='job_lot_usage')
    op.drop_table('job_lot_usage')
    op.drop_table('job_lot_mappings')
    op.drop_index('ix_generated_lot_numbers_job_id', table_name='generated_lot_numbers')
    op.drop_index('ix_generated_lot_numbers_lot_code', table_name='generated_lot_numbers')
    op.drop_index('ix_generated_lot_numbers_id', table_name='generated_lot_numbers')
    op.drop_table('generated_lot_numbers')
    op.drop_table('lot_sequence_counters')
