"""Create_chat_tables

Revision ID: 001
Revises:
Create Date: 2026-10-18 10:00:00.000000

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
    op.create_table('chat_sessions',
    sa.Column('id', sa.String(length=64), nullable=False),
    sa.Column('participant_a', sa.String(length=255), nullable=False),
    sa.Column('participant_b', sa.String(length=255), nullable=False),
    sa.Column('last_activity', sa.DateTime(), nullable=False),
    sa.Column('last_message_id', sa.Integer(), nullable=True),
    sa.Column('last_message_preview', sa.String(length=255), nullable=True),
    sa.Column('last_message_sender_id', sa.String(length=255), nullable=True),
    sa.Column('last_message_at', sa.DateTime(), nullable=True),
    sa.Column('created_at', sa.DateTime(), nullable=False),
    sa.Column('updated_at', sa.DateTime(), nullable=False),
    sa.PrimaryKeyConstraint('id', name='pk_chat_sessions'),
    sa.UniqueConstraint('participant_a', 'participant_b', name='uq_chat_sessions_participants')
    )
    op.create_index('idx_chat_sessions_participant_b', 'chat_sessions', ['participant_b'])
    op.create_index('idx_chat_sessions_last_activity', 'chat_sessions', ['last_activity'])

    op.create_table('chat_messages',
    sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
    sa.Column('session_id', sa.String(length=64), nullable=False),
    sa.Column('sender_id', sa.String(length=255), nullable=False),
    sa.Column('content', sa.Text(), nullable=False),
    sa.Column('message_type', sa.String(length=16), nullable=False),
    sa.Column('is_edited', sa.Boolean(), nullable=False),
    sa.Column('created_at', sa.DateTime(), nullable=False),
    sa.ForeignKeyConstraint(['session_id'], ['chat_sessions.id'], name='fk_chat_messages_session_id_chat_sessions'),
    sa.PrimaryKeyConstraint('id', name='pk_chat_messages')
    )
    op.create_index('idx_chat_messages_session_created', 'chat_messages', ['session_id', 'created_at', 'id'])
    op.create_index('idx_chat_messages_sender', 'chat_messages', ['sender_id'])

    op.create_table('chat_attachments',
    sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
    sa.Column('message_id', sa.Integer(), nullable=False),
    sa.Column('position', sa.Integer(), nullable=False),
    sa.Column('file_name', sa.String(length=255), nullable=False),
    sa.Column('original_name', sa.String(length=255), nullable=False),
    sa.Column('mime_type', sa.String(length=127), nullable=False),
    sa.Column('file_size', sa.Integer(), nullable=False),
    sa.ForeignKeyConstraint(['message_id'], ['chat_messages.id'], name='fk_chat_attachments_message_id_chat_messages', ondelete='CASCADE'),
    sa.PrimaryKeyConstraint('id', name='pk_chat_attachments'),
    sa.UniqueConstraint('file_name', name='uq_chat_attachments_file_name')
    )
    op.create_index('ix_chat_attachments_message_id', 'chat_attachments', ['message_id'])

    op.create_table('chat_message_reads',
    sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
    sa.Column('message_id', sa.Integer(), nullable=False),
    sa.Column('user_id', sa.String(length=255), nullable=False),
    sa.Column('read_at', sa.DateTime(), nullable=False),
    sa.ForeignKeyConstraint(['message_id'], ['chat_messages.id'], name='fk_chat_message_reads_message_id_chat_messages', ondelete='CASCADE'),
    sa.PrimaryKeyConstraint('id', name='pk_chat_message_reads'),
    sa.UniqueConstraint('message_id', 'user_id', name='uq_chat_message_reads_reader')
    )
    op.create_index('idx_chat_message_reads_user', 'chat_message_reads', ['user_id'])


def downgrade() -> None:
    op.drop_table('chat_message_reads')
    op.drop_table('chat_attachments')
    op.drop_table('chat_messages')
    op.drop_table('chat_sessions')
