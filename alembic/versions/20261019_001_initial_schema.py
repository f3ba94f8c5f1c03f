"""initial_schema

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-19

Ledger (bids), referenced entities (users, parties, media), and the cached
aggregate tables: party_media buckets and per-user bucket totals. Bids hold
their references as plain ids: upstream deletions leave orphans for the
sweeper instead of cascading.

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '001_initial_schema'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
    ]


def _top_fields() -> list[sa.Column]:
    return [
        sa.Column('top_bid', sa.BigInteger(), server_default='0', nullable=False),
        sa.Column('top_bid_user_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('top_bid_bid_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('top_bid_at', sa.DateTime(), nullable=True),
        sa.Column('top_user_aggregate', sa.BigInteger(), server_default='0', nullable=False),
        sa.Column('top_user_aggregate_user_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('top_user_aggregate_at', sa.DateTime(), nullable=True),
        sa.Column('top_stale', sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column('revision', sa.BigInteger(), server_default='0', nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        'users',
        sa.Column('user_id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('username', sa.String(100), nullable=False),
        sa.Column('status', sa.String(20), server_default='active', nullable=False),
        *_timestamps(),
    )
    op.create_index('idx_users_status', 'users', ['status'])

    op.create_table(
        'media',
        sa.Column('media_id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('artist', sa.String(255), nullable=True),
        sa.Column('cover_art', sa.String(500), nullable=True),
        sa.Column('duration_seconds', sa.Integer(), nullable=True),
        sa.Column('global_aggregate', sa.BigInteger(), server_default='0', nullable=False),
        sa.Column('global_scope_aggregate', sa.BigInteger(), server_default='0', nullable=False),
        sa.Column('revision', sa.BigInteger(), server_default='0', nullable=False),
        *_timestamps(),
    )
    op.create_index('idx_media_global_aggregate', 'media', ['global_aggregate'])

    op.create_table(
        'parties',
        sa.Column('party_id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('type', sa.String(20), server_default='standard', nullable=False),
        sa.Column('status', sa.String(20), server_default='active', nullable=False),
        sa.Column('top_user_aggregate_media_id', postgresql.UUID(as_uuid=True), nullable=True),
        *_top_fields(),
        *_timestamps(),
    )
    op.create_index('idx_parties_type', 'parties', ['type'])
    op.create_index('idx_parties_top_bid', 'parties', ['top_bid'])
    op.create_index('idx_parties_top_user_aggregate', 'parties', ['top_user_aggregate'])

    op.create_table(
        'party_media',
        sa.Column('bucket_id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('party_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('media_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('aggregate', sa.BigInteger(), server_default='0', nullable=False),
        sa.Column('status', sa.String(20), server_default='queued', nullable=False),
        sa.Column('queued_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.Column('played_at', sa.DateTime(), nullable=True),
        sa.Column('vetoed_at', sa.DateTime(), nullable=True),
        *_top_fields(),
        sa.UniqueConstraint('party_id', 'media_id', name='uq_party_media_bucket'),
    )
    op.create_index('idx_party_media_media', 'party_media', ['media_id'])
    op.create_index('idx_party_media_aggregate', 'party_media', ['party_id', 'aggregate'])

    op.create_table(
        'bucket_user_totals',
        sa.Column('party_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('media_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('total', sa.BigInteger(), server_default='0', nullable=False),
        sa.Column('first_bid_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('party_id', 'media_id', 'user_id', name='pk_bucket_user_totals'),
    )

    op.create_table(
        'bids',
        sa.Column('bid_id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('party_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('media_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('amount', sa.BigInteger(), nullable=False),
        sa.Column('status', sa.String(20), server_default='active', nullable=False),
        sa.Column('bid_scope', sa.String(10), server_default='party', nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.Column('username', sa.String(100), nullable=True),
        sa.Column('party_name', sa.String(100), nullable=True),
        sa.Column('party_type', sa.String(20), nullable=True),
        sa.Column('media_title', sa.String(255), nullable=True),
        sa.Column('media_artist', sa.String(255), nullable=True),
        sa.Column('media_cover_art', sa.String(500), nullable=True),
        sa.Column('media_duration', sa.Integer(), nullable=True),
        sa.Column('day_of_week', sa.SmallInteger(), nullable=True),
        sa.Column('hour_of_day', sa.SmallInteger(), nullable=True),
        sa.Column('is_initial_bid', sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column('party_aggregate_bid_value', sa.BigInteger(), server_default='0', nullable=False),
        sa.Column('global_aggregate_bid_value', sa.BigInteger(), server_default='0', nullable=False),
        sa.CheckConstraint('amount > 0', name='chk_bid_amount_positive'),
        sa.CheckConstraint(
            "status IN ('active', 'played', 'vetoed', 'refunded')", name='chk_bid_status'
        ),
        sa.CheckConstraint("bid_scope IN ('party', 'global')", name='chk_bid_scope'),
    )
    op.create_index('idx_bids_bucket', 'bids', ['party_id', 'media_id', 'status'])
    op.create_index('idx_bids_media_status', 'bids', ['media_id', 'status'])
    op.create_index('idx_bids_user', 'bids', ['user_id'])
    op.create_index('idx_bids_created', 'bids', ['created_at', 'bid_id'])


def downgrade() -> None:
    op.drop_table('bids')
    op.drop_table('bucket_user_totals')
    op.drop_table('party_media')
    op.drop_table('parties')
    op.drop_table('media')
    op.drop_table('users')
