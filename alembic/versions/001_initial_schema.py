"""initial schema - create all tables

Revision ID: 001
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
    ]


def upgrade() -> None:
    # Create users table (role as VARCHAR, not enum)
    op.create_table(
        'users',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('email', sa.String(255), nullable=False, unique=True),
        sa.Column('name', sa.String(255), nullable=True),
        sa.Column('password_hash', sa.String(255), nullable=False),
        sa.Column('api_key', sa.String(64), nullable=False, unique=True),
        sa.Column('role', sa.String(32), nullable=False, server_default='USER'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )
    op.create_index('ix_users_api_key', 'users', ['api_key'])

    # Durable session records (status as VARCHAR)
    op.create_table(
        'sessions',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('session_id', sa.String(50), nullable=False, unique=True),
        sa.Column('owner_id', sa.String(36), nullable=False, index=True),
        sa.Column('status', sa.String(32), nullable=False, server_default='CONNECTING'),
        sa.Column('qr_code', sa.Text(), nullable=True),
        sa.Column('pairing_code', sa.String(32), nullable=True),
        sa.Column('phone_number', sa.String(32), nullable=True),
        sa.Column('display_name', sa.String(255), nullable=True),
        sa.Column('last_seen', sa.DateTime(timezone=True), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )

    op.create_table(
        'messages',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('message_id', sa.String(128), nullable=False),
        sa.Column('session_id', sa.String(50), nullable=False, index=True),
        sa.Column('chat_id', sa.String(128), nullable=False, index=True),
        sa.Column('from_me', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('from_jid', sa.String(128), nullable=True),
        sa.Column('to_jid', sa.String(128), nullable=True),
        sa.Column('message_type', sa.String(32), nullable=False, server_default='TEXT'),
        sa.Column('content', sa.JSON(), nullable=True),
        sa.Column('status', sa.String(32), nullable=True),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=True),
        sa.Column('quoted_message_id', sa.String(128), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('session_id', 'message_id', name='uq_messages_session_message'),
    )

    # Snapshots keyed by (session_id, jid)
    op.create_table(
        'chats',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('session_id', sa.String(50), nullable=False, index=True),
        sa.Column('jid', sa.String(128), nullable=False),
        sa.Column('name', sa.String(255), nullable=True),
        sa.Column('is_group', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('is_archived', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('is_pinned', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('is_muted', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('unread_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_message', sa.JSON(), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('session_id', 'jid', name='uq_chats_session_jid'),
    )

    op.create_table(
        'contacts',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('session_id', sa.String(50), nullable=False, index=True),
        sa.Column('jid', sa.String(128), nullable=False),
        sa.Column('name', sa.String(255), nullable=True),
        sa.Column('push_name', sa.String(255), nullable=True),
        sa.Column('profile_pic_url', sa.Text(), nullable=True),
        sa.Column('is_blocked', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('metadata', sa.JSON(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('session_id', 'jid', name='uq_contacts_session_jid'),
    )

    op.create_table(
        'groups',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('session_id', sa.String(50), nullable=False, index=True),
        sa.Column('jid', sa.String(128), nullable=False),
        sa.Column('subject', sa.String(255), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('owner', sa.String(128), nullable=True),
        sa.Column('participants', sa.JSON(), nullable=True),
        sa.Column('settings', sa.JSON(), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('session_id', 'jid', name='uq_groups_session_jid'),
    )

    op.create_table(
        'webhooks',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('owner_id', sa.String(36), nullable=False, index=True),
        sa.Column('url', sa.Text(), nullable=False),
        sa.Column('events', sa.JSON(), nullable=False),
        sa.Column('secret', sa.String(255), nullable=True),
        sa.Column('retry_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_retries', sa.Integer(), nullable=False, server_default='3'),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )

    # Delivery history (status as VARCHAR)
    op.create_table(
        'webhook_deliveries',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('webhook_id', sa.String(36), sa.ForeignKey('webhooks.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('event', sa.String(64), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=True),
        sa.Column('status', sa.String(32), nullable=False, server_default='PENDING'),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('next_retry_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('response', sa.JSON(), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_webhook_deliveries_created_at', 'webhook_deliveries', ['created_at'])


def downgrade() -> None:
    op.drop_table('webhook_deliveries')
    op.drop_table('webhooks')
    op.drop_table('groups')
    op.drop_table('contacts')
    op.drop_table('chats')
    op.drop_table('messages')
    op.drop_table('sessions')
    op.drop_table('users')
