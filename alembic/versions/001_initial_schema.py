"""Initial schema - ledger, custody cache, opening hours

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-17

Tables:
- reservations / reservation_items: model-level bookings (soft-deletable lines)
- checkouts / checkout_items: concrete assets handed out, chained via parent_checkout_id
- custody_cache: snapshot of Snipe-IT assignments, replaced on every sync
- opening_hours_*: defaults, dated schedules, one-off overrides
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

# revision identifiers
revision: str = '001_initial_schema'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'reservations',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_name', sa.String(255), nullable=False),
        sa.Column('user_email', sa.String(255), nullable=False),
        sa.Column('external_user_id', sa.Integer(), nullable=True),
        sa.Column('start_datetime', sa.DateTime(), nullable=False),
        sa.Column('end_datetime', sa.DateTime(), nullable=False),
        sa.Column('status', sa.String(30), nullable=False, server_default='pending'),
        sa.Column('asset_tags_cache', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_reservations_user_email', 'reservations', ['user_email'])
    op.create_index('ix_reservation_window', 'reservations', ['start_datetime', 'end_datetime'])
    op.create_index('ix_reservation_status', 'reservations', ['status'])

    op.create_table(
        'reservation_items',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('reservation_id', sa.String(36),
                  sa.ForeignKey('reservations.id', ondelete='CASCADE'), nullable=False),
        sa.Column('model_id', sa.Integer(), nullable=False),
        sa.Column('model_name_cache', sa.String(255), nullable=True),
        sa.Column('quantity', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('deleted_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_reservation_item_model', 'reservation_items', ['model_id'])
    op.create_index('ix_reservation_item_reservation', 'reservation_items', ['reservation_id'])

    op.create_table(
        'checkouts',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('reservation_id', sa.String(36),
                  sa.ForeignKey('reservations.id', ondelete='SET NULL'), nullable=True),
        sa.Column('parent_checkout_id', sa.String(36),
                  sa.ForeignKey('checkouts.id', ondelete='SET NULL'), nullable=True),
        sa.Column('user_name', sa.String(255), nullable=False),
        sa.Column('user_email', sa.String(255), nullable=False),
        sa.Column('external_user_id', sa.Integer(), nullable=True),
        sa.Column('start_datetime', sa.DateTime(), nullable=False),
        sa.Column('end_datetime', sa.DateTime(), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='open'),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.CheckConstraint(
            'parent_checkout_id IS NULL OR parent_checkout_id <> id',
            name='ck_checkout_not_own_parent'
        ),
    )
    op.create_index('ix_checkouts_user_email', 'checkouts', ['user_email'])
    op.create_index('ix_checkout_status', 'checkouts', ['status'])
    op.create_index('ix_checkout_external_user', 'checkouts', ['external_user_id'])
    op.create_index('ix_checkout_window', 'checkouts', ['start_datetime', 'end_datetime'])

    op.create_table(
        'checkout_items',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('checkout_id', sa.String(36),
                  sa.ForeignKey('checkouts.id', ondelete='CASCADE'), nullable=False),
        sa.Column('asset_id', sa.Integer(), nullable=False),
        sa.Column('asset_tag', sa.String(255), nullable=False),
        sa.Column('asset_name', sa.String(255), nullable=True),
        sa.Column('model_id', sa.Integer(), nullable=False),
        sa.Column('model_name', sa.String(255), nullable=True),
        sa.Column('checked_out_at', sa.DateTime(), nullable=False),
        sa.Column('checked_in_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_checkout_item_asset', 'checkout_items', ['asset_id'])
    op.create_index('ix_checkout_item_model', 'checkout_items', ['model_id'])
    op.create_index('ix_checkout_item_checkout', 'checkout_items', ['checkout_id'])

    op.create_table(
        'custody_cache',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('asset_id', sa.Integer(), nullable=False, unique=True),
        sa.Column('asset_tag', sa.String(255), nullable=False),
        sa.Column('asset_name', sa.String(255), nullable=True),
        sa.Column('model_id', sa.Integer(), nullable=True),
        sa.Column('model_name', sa.String(255), nullable=True),
        sa.Column('assigned_to_id', sa.Integer(), nullable=True),
        sa.Column('assigned_to_name', sa.String(255), nullable=True),
        sa.Column('assigned_to_email', sa.String(255), nullable=True),
        sa.Column('assigned_to_username', sa.String(255), nullable=True),
        sa.Column('status_label', sa.String(255), nullable=True),
        sa.Column('last_checkout', sa.DateTime(), nullable=True),
        sa.Column('expected_checkin', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_custody_cache_model', 'custody_cache', ['model_id'])
    op.create_index('ix_custody_cache_assigned', 'custody_cache', ['assigned_to_id'])
    op.create_index('ix_custody_cache_tag', 'custody_cache', ['asset_tag'])

    op.create_table(
        'opening_hours_default',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('weekday', sa.Integer(), nullable=False, unique=True),
        sa.Column('open_time', sa.Time(), nullable=True),
        sa.Column('close_time', sa.Time(), nullable=True),
        sa.Column('is_closed', sa.Boolean(), nullable=False, server_default=sa.false()),
    )

    op.create_table(
        'opening_hours_schedules',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('start_date', sa.Date(), nullable=False),
        sa.Column('end_date', sa.Date(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_schedule_range', 'opening_hours_schedules', ['start_date', 'end_date'])

    op.create_table(
        'opening_hours_schedule_days',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('schedule_id', sa.Integer(),
                  sa.ForeignKey('opening_hours_schedules.id', ondelete='CASCADE'), nullable=False),
        sa.Column('weekday', sa.Integer(), nullable=False),
        sa.Column('open_time', sa.Time(), nullable=True),
        sa.Column('close_time', sa.Time(), nullable=True),
        sa.Column('is_closed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.UniqueConstraint('schedule_id', 'weekday', name='uq_schedule_weekday'),
    )

    op.create_table(
        'opening_hours_overrides',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('start_datetime', sa.DateTime(), nullable=False),
        sa.Column('end_datetime', sa.DateTime(), nullable=False),
        sa.Column('kind', sa.String(10), nullable=False, server_default='closed'),
        sa.Column('reason', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_override_range', 'opening_hours_overrides', ['start_datetime', 'end_datetime'])


def downgrade() -> None:
    op.drop_table('opening_hours_overrides')
    op.drop_table('opening_hours_schedule_days')
    op.drop_table('opening_hours_schedules')
    op.drop_table('opening_hours_default')
    op.drop_table('custody_cache')
    op.drop_table('checkout_items')
    op.drop_table('checkouts')
    op.drop_table('reservation_items')
    op.drop_table('reservations')
