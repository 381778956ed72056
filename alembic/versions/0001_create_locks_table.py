"""Add locks table for READ/WRITE resource locks

Revision ID: 0001_create_locks_table
Revises:
Create Date: 2026-10-17

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '0001_create_locks_table'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    """Add locks table."""

    op.create_table(
        'locks',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('lock_key', sa.String(50), nullable=False),
        sa.Column('original_key', sa.String(255), nullable=True),
        sa.Column('level', sa.SmallInteger(), nullable=False),
        sa.Column('pid', sa.Integer(), nullable=True),
        sa.Column('cid', sa.Integer(), nullable=True),
        sa.Column('host', sa.String(255), nullable=True),
        sa.Column('expire', sa.Integer(), nullable=False, server_default=sa.text('0')),
    )

    # The acquire statement filters on lock_key and level
    op.create_index('ix_locks_lock_key', 'locks', ['lock_key'])
    op.create_index('ix_locks_level', 'locks', ['level'])


def downgrade():
    """Remove locks table."""

    op.drop_index('ix_locks_level', 'locks')
    op.drop_index('ix_locks_lock_key', 'locks')
    op.drop_table('locks')
