"""initial_shopping_bridge_schema

Revision ID: 7a3e91c04b2d
Revises:
Create Date: 2026-10-12 09:41:27.118204

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '7a3e91c04b2d'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # state_blobs
    op.create_table(
        'state_blobs',
        sa.Column('name', sa.String(), primary_key=True),
        sa.Column('value_json', sa.Text(), nullable=False, server_default='{}'),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
    )

    # shopping_lists
    op.create_table(
        'shopping_lists',
        sa.Column('ref', sa.String(), primary_key=True),
        sa.Column('title', sa.Text(), nullable=False, server_default=''),
        sa.Column('metadata_json', postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
    )

    # shopping_list_items
    op.create_table(
        'shopping_list_items',
        sa.Column('list_ref', sa.String(), nullable=False),
        sa.Column('item_id', sa.String(), nullable=False),
        sa.Column('position', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('name', sa.Text(), nullable=False),
        sa.Column('checked', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('category', sa.String(), nullable=True),
        sa.Column('quantity_json', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('per_unit_json', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['list_ref'], ['shopping_lists.ref'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('list_ref', 'item_id'),
    )
    op.create_index(
        'idx_shopping_list_items_list_position', 'shopping_list_items', ['list_ref', 'position'], unique=False
    )


def downgrade() -> None:
    op.drop_index('idx_shopping_list_items_list_position', table_name='shopping_list_items')
    op.drop_table('shopping_list_items')
    op.drop_table('shopping_lists')
    op.drop_table('state_blobs')
