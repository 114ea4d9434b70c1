"""create_private_messaging_tables

Revision ID: 0001
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '0001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """
    Create conversations, per-user conversation visibility, private messages
    and the gif catalog.
    """
    op.create_table('conversations',
        sa.Column('id', sa.String(length=255), nullable=False),
        sa.Column('participant_a', sa.String(length=255), nullable=False),
        sa.Column('participant_b', sa.String(length=255), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint('participant_a < participant_b', name='ck_conversation_pair_order'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('participant_a', 'participant_b', name='uq_conversation_pair')
    )
    op.create_index('idx_conversations_participant_b', 'conversations', ['participant_b'], unique=False)
    op.create_index('idx_conversations_updated_at', 'conversations', ['updated_at'], unique=False)

    op.create_table('conversation_visibility',
        sa.Column('conversation_id', sa.String(length=255), nullable=False),
        sa.Column('user_id', sa.String(length=255), nullable=False),
        sa.Column('is_deleted', sa.Boolean(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['conversation_id'], ['conversations.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('conversation_id', 'user_id')
    )
    op.create_index('idx_conversation_visibility_user', 'conversation_visibility', ['user_id', 'is_deleted'], unique=False)

    op.create_table('private_messages',
        sa.Column('id', sa.String(length=255), nullable=False),
        sa.Column('conversation_id', sa.String(length=255), nullable=False),
        sa.Column('sender_id', sa.String(length=255), nullable=False),
        sa.Column('content', sa.Text(), nullable=True),
        sa.Column('attachment_kind', sa.Enum('none', 'image', 'video', 'gif', name='attachment_kind', native_enum=False), nullable=False),
        sa.Column('attachment_ref', sa.String(length=1000), nullable=True),
        sa.Column('reply_to_id', sa.String(length=255), nullable=True),
        sa.Column('is_read', sa.Boolean(), nullable=False),
        sa.Column('visibility', sa.Integer(), nullable=False),
        sa.Column('revision', sa.Integer(), nullable=False),
        sa.Column('edited_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("(attachment_kind = 'none') = (attachment_ref IS NULL)", name='ck_private_message_attachment_ref'),
        sa.ForeignKeyConstraint(['conversation_id'], ['conversations.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['reply_to_id'], ['private_messages.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_private_messages_conversation_id'), 'private_messages', ['conversation_id'], unique=False)
    op.create_index(op.f('ix_private_messages_sender_id'), 'private_messages', ['sender_id'], unique=False)
    op.create_index('idx_private_messages_conversation_created', 'private_messages', ['conversation_id', 'created_at', 'id'], unique=False)
    op.create_index('idx_private_messages_unread', 'private_messages', ['conversation_id', 'is_read'], unique=False)

    op.create_table('gifs',
        sa.Column('id', sa.String(length=255), nullable=False),
        sa.Column('shortcode', sa.String(length=64), nullable=False),
        sa.Column('title', sa.String(length=255), nullable=False),
        sa.Column('preview_url', sa.String(length=1000), nullable=False),
        sa.Column('original_url', sa.String(length=1000), nullable=False),
        sa.Column('usage_count', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('shortcode')
    )
    op.create_index('idx_gifs_usage_count', 'gifs', ['usage_count'], unique=False)

    op.create_table('gif_usage',
        sa.Column('id', sa.String(length=255), nullable=False),
        sa.Column('gif_id', sa.String(length=255), nullable=False),
        sa.Column('user_id', sa.String(length=255), nullable=False),
        sa.Column('used_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['gif_id'], ['gifs.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_gif_usage_gif_id'), 'gif_usage', ['gif_id'], unique=False)


def downgrade() -> None:
    """Drop all messaging tables."""
    op.drop_index(op.f('ix_gif_usage_gif_id'), table_name='gif_usage')
    op.drop_table('gif_usage')
    op.drop_index('idx_gifs_usage_count', table_name='gifs')
    op.drop_table('gifs')
    op.drop_index('idx_private_messages_unread', table_name='private_messages')
    op.drop_index('idx_private_messages_conversation_created', table_name='private_messages')
    op.drop_index(op.f('ix_private_messages_sender_id'), table_name='private_messages')
    op.drop_index(op.f('ix_private_messages_conversation_id'), table_name='private_messages')
    op.drop_table('private_messages')
    op.drop_index('idx_conversation_visibility_user', table_name='conversation_visibility')
    op.drop_table('conversation_visibility')
    op.drop_index('idx_conversations_updated_at', table_name='conversations')
    op.drop_index('idx_conversations_participant_b', table_name='conversations')
    op.drop_table('conversations')
