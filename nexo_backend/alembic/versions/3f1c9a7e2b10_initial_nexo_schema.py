"""Initial Nexo schema

Revision ID: 3f1c9a7e2b10
Revises:
Create Date: 2026-10-19

Creates:
- conversations / messages (per-user chat transcript)
- profiles (refresh bookkeeping)
- canonical_issues (shared issue identities, unique on lower(name))
- user_issues / user_connections (per-user extraction results)
- aggregate_issues / aggregate_connections (global rollups, versioned)
- reflection_prompts
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '3f1c9a7e2b10'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.execute('CREATE EXTENSION IF NOT EXISTS "uuid-ossp"')

    op.create_table(
        'conversations',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True, server_default=sa.text('uuid_generate_v4()')),
        sa.Column('user_id', sa.Text(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text('true')),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index('idx_conversations_user', 'conversations', ['user_id', 'created_at'])

    op.create_table(
        'messages',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True, server_default=sa.text('uuid_generate_v4()')),
        sa.Column('conversation_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('conversations.id', ondelete='CASCADE'), nullable=False),
        sa.Column('role', sa.String(16), nullable=False),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('included_in_refresh', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint("role IN ('user', 'assistant')", name='valid_message_role'),
    )
    op.create_index('idx_messages_conversation', 'messages', ['conversation_id', 'created_at'])
    op.create_index(
        'idx_messages_unprocessed', 'messages', ['conversation_id'],
        postgresql_where=sa.text('NOT included_in_refresh'),
    )

    op.create_table(
        'profiles',
        sa.Column('id', sa.Text(), primary_key=True),
        sa.Column('display_name', sa.Text()),
        sa.Column('last_refresh_at', sa.DateTime(timezone=True)),
        sa.Column('total_refreshes', sa.Integer(), nullable=False, server_default=sa.text('0')),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        'canonical_issues',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True, server_default=sa.text('uuid_generate_v4()')),
        sa.Column('name', sa.Text(), nullable=False),
        sa.Column('description', sa.Text()),
        sa.Column('aliases', postgresql.ARRAY(sa.Text()), nullable=False, server_default=sa.text("'{}'")),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text('true')),
        sa.Column('merged_into_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('canonical_issues.id')),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.execute('CREATE UNIQUE INDEX uq_canonical_issues_name_lower ON canonical_issues (lower(name))')
    op.create_index(
        'idx_canonical_issues_active', 'canonical_issues', ['is_active'],
        postgresql_where=sa.text('merged_into_id IS NULL'),
    )

    op.create_table(
        'user_issues',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True, server_default=sa.text('uuid_generate_v4()')),
        sa.Column('user_id', sa.Text(), nullable=False),
        sa.Column('canonical_issue_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('canonical_issues.id'), nullable=False),
        sa.Column('stance', sa.Text(), nullable=False, server_default=''),
        sa.Column('intensity', sa.Float(), nullable=False),
        sa.Column('confidence', sa.Text()),
        sa.Column('quotes', postgresql.JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint('user_id', 'canonical_issue_id', name='uq_user_issues_user_issue'),
        sa.CheckConstraint('intensity >= 0.0 AND intensity <= 1.0', name='check_user_issue_intensity'),
    )
    op.create_index('idx_user_issues_user', 'user_issues', ['user_id'])

    op.create_table(
        'aggregate_issues',
        sa.Column('canonical_issue_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('canonical_issues.id'), primary_key=True),
        sa.Column('total_users', sa.Integer(), nullable=False, server_default=sa.text('0')),
        sa.Column('energy_score', sa.Float(), nullable=False, server_default=sa.text('0')),
        sa.Column('stance_histogram', postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column('consensus_score', sa.Float(), nullable=False, server_default=sa.text('0')),
        sa.Column('version', sa.Integer(), nullable=False, server_default=sa.text('1')),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint('consensus_score >= 0.0 AND consensus_score <= 1.0', name='check_consensus_score'),
    )
    op.create_index('idx_aggregate_issues_energy', 'aggregate_issues', ['energy_score'])

    op.create_table(
        'aggregate_connections',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True, server_default=sa.text('uuid_generate_v4()')),
        sa.Column('issue_a_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('canonical_issues.id'), nullable=False),
        sa.Column('issue_b_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('canonical_issues.id'), nullable=False),
        sa.Column('total_weight', sa.Integer(), nullable=False, server_default=sa.text('0')),
        sa.Column('user_count', sa.Integer(), nullable=False, server_default=sa.text('0')),
        sa.Column('version', sa.Integer(), nullable=False, server_default=sa.text('1')),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint('issue_a_id', 'issue_b_id', name='uq_aggregate_connections_pair'),
        sa.CheckConstraint('issue_a_id < issue_b_id', name='check_aggregate_connection_order'),
    )

    op.create_table(
        'user_connections',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True, server_default=sa.text('uuid_generate_v4()')),
        sa.Column('user_id', sa.Text(), nullable=False),
        sa.Column('issue_a_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('canonical_issues.id'), nullable=False),
        sa.Column('issue_b_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('canonical_issues.id'), nullable=False),
        sa.Column('connection_type', sa.Text(), nullable=False, server_default='co_occurrence'),
        sa.Column('evidence', sa.Text()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint("connection_type IN ('co_occurrence', 'causal')", name='valid_connection_type'),
        sa.CheckConstraint('issue_a_id < issue_b_id', name='check_user_connection_order'),
    )
    op.create_index('idx_user_connections_user', 'user_connections', ['user_id'])

    op.create_table(
        'reflection_prompts',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True, server_default=sa.text('uuid_generate_v4()')),
        sa.Column('user_id', sa.Text(), nullable=False),
        sa.Column('prompt_text', sa.Text(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index('idx_reflection_prompts_user', 'reflection_prompts', ['user_id', 'created_at'])


def downgrade() -> None:
    op.drop_table('reflection_prompts')
    op.drop_table('user_connections')
    op.drop_table('aggregate_connections')
    op.drop_table('aggregate_issues')
    op.drop_table('user_issues')
    op.drop_table('canonical_issues')
    op.drop_table('profiles')
    op.drop_table('messages')
    op.drop_table('conversations')
