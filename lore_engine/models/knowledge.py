"""Database models for knowledge entries, vector mirrors and activation state."""

from datetime import datetime, timezone
from sqlalchemy import Column, String, DateTime, Text, Integer, Boolean, JSON, Index

from lore_engine.db.database import Base


def utc_now() -> datetime:
    """Naive UTC timestamp, the form DateTime columns store and return."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class KnowledgeEntryRecord(Base):
    """
    Stored knowledge entry.

    The full entry (activation, positioning, timing, filtering and budget
    rules) lives in ``data`` as JSON. Only the vectorization status columns
    are written back by the vectorization pipeline.
    """
    __tablename__ = "knowledge_entries"

    id = Column(String(100), primary_key=True)
    tenant_id = Column(String(100), nullable=True, index=True)  # Owning user
    collection_id = Column(String(100), nullable=True, index=True)
    data = Column(JSON, nullable=False)

    # Vectorization status
    is_vectorized = Column(Boolean, nullable=False, default=False)
    chunk_count = Column(Integer, nullable=False, default=0)
    vectorized_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utc_now)
    updated_at = Column(DateTime, nullable=False, default=utc_now, onupdate=utc_now)

    def __repr__(self):
        return f"<KnowledgeEntryRecord(id={self.id}, vectorized={self.is_vectorized}, chunks={self.chunk_count})>"


class KnowledgeVector(Base):
    """
    Durable mirror of one vector index record.

    One row per chunk. The sync check compares these rows (and the index
    itself) against ``KnowledgeEntryRecord.chunk_count``.
    """
    __tablename__ = "knowledge_vectors"

    vector_id = Column(String(200), primary_key=True)
    entry_id = Column(String(100), nullable=False, index=True)
    tenant_id = Column(String(100), nullable=True)
    user_id = Column(String(100), nullable=True)
    source_type = Column(String(50), nullable=False, default="knowledge")

    chunk_index = Column(Integer, nullable=False)
    total_chunks = Column(Integer, nullable=False)
    chunk_text = Column(Text, nullable=False)

    embedding_model = Column(String(200), nullable=True)
    embedding_dimensions = Column(Integer, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utc_now)

    def __repr__(self):
        return f"<KnowledgeVector(vector_id={self.vector_id}, entry={self.entry_id}, chunk={self.chunk_index}/{self.total_chunks})>"


class ActivationStateRecord(Base):
    """
    Timing state for one entry within one conversation.

    Owned by the conversation: rows are removed when the conversation ends,
    never when an entry changes.
    """
    __tablename__ = "activation_states"

    conversation_id = Column(String(100), primary_key=True)
    entry_id = Column(String(100), primary_key=True)

    sticky_remaining = Column(Integer, nullable=False, default=0)
    cooldown_remaining = Column(Integer, nullable=False, default=0)
    last_triggered_turn = Column(Integer, nullable=True)

    # Guards against decrementing counters twice for the same turn
    last_evaluated_turn = Column(Integer, nullable=True)
    last_active = Column(Boolean, nullable=False, default=False)
    last_reason = Column(String(50), nullable=True)

    updated_at = Column(DateTime, nullable=False, default=utc_now, onupdate=utc_now)

    __table_args__ = (
        Index("ix_activation_states_conversation", "conversation_id"),
    )

    def __repr__(self):
        return (
            f"<ActivationStateRecord(conversation={self.conversation_id}, entry={self.entry_id}, "
            f"sticky={self.sticky_remaining}, cooldown={self.cooldown_remaining})>"
        )
