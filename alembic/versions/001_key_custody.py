"""Initial schema - key shares and key mappings.

Revision ID: 001_key_custody
Revises:
Create Date: 2026-10-18

Creates the two custody tables. owner_id is unique in both: the
store relies on it for strict create and for ON CONFLICT upserts.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001_key_custody'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create key_shares and key_mappings."""

    # key_shares - one encrypted server share per profile
    op.create_table('key_shares',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('owner_id', sa.String(255), nullable=False),
        sa.Column('ciphertext', sa.LargeBinary(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_key_shares_owner_id', 'key_shares', ['owner_id'], unique=True)

    # key_mappings - profile -> key id in the external MPC node
    op.create_table('key_mappings',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('owner_id', sa.String(255), nullable=False),
        sa.Column('key_id', sa.LargeBinary(), nullable=False),
        sa.Column('public_key', sa.String(512), nullable=False),
        sa.Column('key_algorithm', sa.String(32), nullable=False, server_default='ecdsa'),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_key_mappings_owner_id', 'key_mappings', ['owner_id'], unique=True)


def downgrade() -> None:
    """Drop key_mappings and key_shares."""
    op.drop_index('ix_key_mappings_owner_id', table_name='key_mappings')
    op.drop_table('key_mappings')
    op.drop_index('ix_key_shares_owner_id', table_name='key_shares')
    op.drop_table('key_shares')
