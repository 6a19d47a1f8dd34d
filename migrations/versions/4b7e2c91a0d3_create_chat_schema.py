"""create chat schema

Revision ID: 4b7e2c91a0d3
Revises:
Create Date: 2026-10-19 09:12:40.118204

"""
from typing import Sequence, Union

from alembic import op

# revision identifiers, used by Alembic.
revision: str = '4b7e2c91a0d3'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    # Step 1: Create tables (skip if they already exist from init.sql)
    op.execute("""
        CREATE TABLE IF NOT EXISTS conversations (
            id UUID PRIMARY KEY,
            type VARCHAR(20) NOT NULL CHECK (type IN ('direct', 'order-linked', 'support')),
            order_context_id VARCHAR(64),
            participant_key VARCHAR(64) NOT NULL,
            last_message_preview VARCHAR(255),
            created_at TIMESTAMP WITH TIME ZONE DEFAULT NOW(),
            last_activity_at TIMESTAMP WITH TIME ZONE DEFAULT NOW(),
            archived_at TIMESTAMP WITH TIME ZONE,
            CONSTRAINT uq_conversations_participant_key UNIQUE (participant_key),
            CHECK (type <> 'order-linked' OR order_context_id IS NOT NULL)
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS participants (
            id UUID PRIMARY KEY,
            conversation_id UUID NOT NULL REFERENCES conversations(id) ON DELETE CASCADE,
            user_id VARCHAR(64) NOT NULL,
            role VARCHAR(20) NOT NULL CHECK (role IN ('customer', 'driver', 'merchant', 'support', 'admin')),
            unread_count INTEGER NOT NULL DEFAULT 0 CHECK (unread_count >= 0),
            last_read_at TIMESTAMP WITH TIME ZONE,
            joined_at TIMESTAMP WITH TIME ZONE DEFAULT NOW(),
            CONSTRAINT uq_participants_conversation_user UNIQUE (conversation_id, user_id)
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS messages (
            id UUID PRIMARY KEY,
            conversation_id UUID NOT NULL REFERENCES conversations(id) ON DELETE CASCADE,
            sender_id VARCHAR(64) NOT NULL,
            content_type VARCHAR(20) NOT NULL CHECK (content_type IN ('text', 'system', 'location')),
            body TEXT NOT NULL DEFAULT '',
            content JSON NOT NULL,
            client_message_id VARCHAR(64),
            created_at TIMESTAMP WITH TIME ZONE NOT NULL,
            is_edited BOOLEAN NOT NULL DEFAULT FALSE,
            edited_at TIMESTAMP WITH TIME ZONE,
            is_deleted BOOLEAN NOT NULL DEFAULT FALSE,
            deleted_at TIMESTAMP WITH TIME ZONE,
            CONSTRAINT uq_messages_client_message UNIQUE (conversation_id, sender_id, client_message_id)
        )
    """)

    # Step 2: Create indexes (skip if they already exist)
    op.execute('CREATE INDEX IF NOT EXISTS ix_conversations_last_activity_at ON conversations(last_activity_at)')
    op.execute('CREATE INDEX IF NOT EXISTS ix_participants_user_id ON participants(user_id)')
    op.execute('CREATE INDEX IF NOT EXISTS idx_participants_unread ON participants(user_id) WHERE unread_count > 0')
    op.execute('CREATE INDEX IF NOT EXISTS idx_messages_conversation_order ON messages(conversation_id, created_at, id)')
    op.execute('CREATE INDEX IF NOT EXISTS idx_messages_body_lower ON messages(conversation_id, lower(body))')


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_table('messages')
    op.drop_table('participants')
    op.drop_table('conversations')
