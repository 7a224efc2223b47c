"""Create hosts, labels, label membership, scheduled queries and query results.

Revision ID: 001
Revises:
Create Date: 2026-10-17

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'hosts',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('hostname', sa.String(255), nullable=False),
        sa.Column('platform', sa.String(64), nullable=False, server_default=''),
        sa.Column('os_version', sa.String(255), nullable=False, server_default=''),
        sa.Column('label_updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index('ix_hosts_hostname', 'hosts', ['hostname'])

    op.create_table(
        'labels',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('description', sa.Text(), nullable=False, server_default=''),
        sa.Column('query', sa.Text(), nullable=False, server_default=''),
        sa.Column('platform', sa.String(64), nullable=False, server_default=''),
        sa.Column('label_type', sa.String(32), nullable=False, server_default='regular'),
        sa.Column('label_membership_type', sa.String(32), nullable=False, server_default='dynamic'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint('name', name='uq_labels_name'),
    )

    # No foreign keys: rows may outlive their label or host until the orphan sweep
    op.create_table(
        'label_membership',
        sa.Column('label_id', sa.Integer(), primary_key=True),
        sa.Column('host_id', sa.Integer(), primary_key=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index('ix_label_membership_host_id', 'label_membership', ['host_id'])

    op.create_table(
        'scheduled_queries',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('query', sa.Text(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint('name', name='uq_scheduled_queries_name'),
    )

    op.create_table(
        'query_results',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('query_id', sa.Integer(), nullable=False),
        sa.Column('host_id', sa.Integer(), nullable=False),
        sa.Column('last_fetched', sa.DateTime(timezone=True), nullable=False),
        sa.Column('data', sa.LargeBinary(), nullable=True),
    )
    op.create_index('ix_query_results_query_host', 'query_results', ['query_id', 'host_id'])


def downgrade() -> None:
    op.drop_index('ix_query_results_query_host', table_name='query_results')
    op.drop_table('query_results')
    op.drop_table('scheduled_queries')
    op.drop_index('ix_label_membership_host_id', table_name='label_membership')
    op.drop_table('label_membership')
    op.drop_table('labels')
    op.drop_index('ix_hosts_hostname', table_name='hosts')
    op.drop_table('hosts')
