"""
SQLAlchemy models for Nexo.

Conversation data (conversations, messages, profiles) is owned per user.
Canonical issues and the two aggregate tables are shared by every user and
are only ever appended to or merged, never deleted.
"""

from sqlalchemy import (
    Column, String, Integer, Float, Boolean, Text, DateTime,
    ForeignKey, Index, CheckConstraint, UniqueConstraint, ARRAY, text
)
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func
import uuid

Base = declarative_base()


class Conversation(Base):
    """A user's chat session with the debater"""
    __tablename__ = "conversations"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(Text, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index('idx_conversations_user', 'user_id', 'created_at'),
    )


class Message(Base):
    """One conversation turn"""
    __tablename__ = "messages"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    conversation_id = Column(UUID(as_uuid=True), ForeignKey('conversations.id', ondelete='CASCADE'), nullable=False)
    role = Column(String(16), nullable=False)
    content = Column(Text, nullable=False)

    # Flipped once a refresh cycle has analyzed this turn
    included_in_refresh = Column(Boolean, nullable=False, default=False, server_default=text('false'))

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        CheckConstraint("role IN ('user', 'assistant')", name='valid_message_role'),
        Index('idx_messages_conversation', 'conversation_id', 'created_at'),
        Index('idx_messages_unprocessed', 'conversation_id', postgresql_where=text('NOT included_in_refresh')),
    )


class Profile(Base):
    """Per-user profile; id is the auth provider's user id"""
    __tablename__ = "profiles"

    id = Column(Text, primary_key=True)
    display_name = Column(Text)
    last_refresh_at = Column(DateTime(timezone=True))
    total_refreshes = Column(Integer, nullable=False, default=0, server_default=text('0'))
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class CanonicalIssue(Base):
    """System-wide identity for a political topic"""
    __tablename__ = "canonical_issues"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(Text, nullable=False)
    description = Column(Text)
    aliases = Column(ARRAY(Text), nullable=False, default=list, server_default=text("'{}'"))

    # Consolidation
    is_active = Column(Boolean, nullable=False, default=True, server_default=text('true'))
    merged_into_id = Column(UUID(as_uuid=True), ForeignKey('canonical_issues.id'))

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index('uq_canonical_issues_name_lower', text('lower(name)'), unique=True),
        Index('idx_canonical_issues_active', 'is_active', postgresql_where=text('merged_into_id IS NULL')),
    )


class UserIssue(Base):
    """One user's stance on one canonical issue (upserted per refresh)"""
    __tablename__ = "user_issues"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(Text, nullable=False)
    canonical_issue_id = Column(UUID(as_uuid=True), ForeignKey('canonical_issues.id'), nullable=False)

    stance = Column(Text, nullable=False, default='')
    intensity = Column(Float, nullable=False)
    confidence = Column(Text)
    quotes = Column(JSONB, nullable=False, default=list)

    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint('user_id', 'canonical_issue_id', name='uq_user_issues_user_issue'),
        CheckConstraint('intensity >= 0.0 AND intensity <= 1.0', name='check_user_issue_intensity'),
        Index('idx_user_issues_user', 'user_id'),
    )


class AggregateIssue(Base):
    """Global rollup for a canonical issue"""
    __tablename__ = "aggregate_issues"

    canonical_issue_id = Column(UUID(as_uuid=True), ForeignKey('canonical_issues.id'), primary_key=True)
    total_users = Column(Integer, nullable=False, default=0)
    energy_score = Column(Float, nullable=False, default=0.0)
    stance_histogram = Column(JSONB, nullable=False, default=dict)
    consensus_score = Column(Float, nullable=False, default=0.0)

    # Optimistic concurrency token, bumped on every write
    version = Column(Integer, nullable=False, default=1, server_default=text('1'))
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        CheckConstraint('consensus_score >= 0.0 AND consensus_score <= 1.0', name='check_consensus_score'),
        Index('idx_aggregate_issues_energy', 'energy_score'),
    )


class AggregateConnection(Base):
    """Global rollup for an unordered pair of canonical issues"""
    __tablename__ = "aggregate_connections"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    issue_a_id = Column(UUID(as_uuid=True), ForeignKey('canonical_issues.id'), nullable=False)
    issue_b_id = Column(UUID(as_uuid=True), ForeignKey('canonical_issues.id'), nullable=False)
    total_weight = Column(Integer, nullable=False, default=0)
    user_count = Column(Integer, nullable=False, default=0)

    version = Column(Integer, nullable=False, default=1, server_default=text('1'))
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint('issue_a_id', 'issue_b_id', name='uq_aggregate_connections_pair'),
        CheckConstraint('issue_a_id < issue_b_id', name='check_aggregate_connection_order'),
    )


class UserConnection(Base):
    """One user's assertion that two canonical issues are related (append-only)"""
    __tablename__ = "user_connections"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(Text, nullable=False)
    issue_a_id = Column(UUID(as_uuid=True), ForeignKey('canonical_issues.id'), nullable=False)
    issue_b_id = Column(UUID(as_uuid=True), ForeignKey('canonical_issues.id'), nullable=False)
    connection_type = Column(Text, nullable=False, default='co_occurrence')
    evidence = Column(Text)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        CheckConstraint("connection_type IN ('co_occurrence', 'causal')", name='valid_connection_type'),
        CheckConstraint('issue_a_id < issue_b_id', name='check_user_connection_order'),
        Index('idx_user_connections_user', 'user_id'),
    )


class ReflectionPrompt(Base):
    """Probing follow-up question generated after a refresh"""
    __tablename__ = "reflection_prompts"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(Text, nullable=False)
    prompt_text = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index('idx_reflection_prompts_user', 'user_id', 'created_at'),
    )
