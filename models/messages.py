"""Message model for the conversation tree."""
from sqlalchemy import Column, String, DateTime, Text, ForeignKey, Enum, JSON, Index
from .threads import Base, generate_id, utcnow
import enum


class MessageRole(enum.Enum):
    """Enum for message authorship."""
    USER = "user"
    ASSISTANT = "assistant"


class Message(Base):
    """
    SQLAlchemy model for a node in a thread's message tree.
    
    A null parent_id marks a root message. Siblings share (thread_id, parent_id)
    and are ordered by (created_at, id).
    """
    __tablename__ = "messages"
    
    id = Column(String(40), primary_key=True, default=generate_id, index=True)
    thread_id = Column(String(40), ForeignKey("threads.id", ondelete="CASCADE"), nullable=False, index=True)
    parent_id = Column(String(40), nullable=True, index=True)
    role = Column(Enum(MessageRole), nullable=False)
    content = Column(Text, nullable=False, default="")
    reasoning = Column(Text, nullable=True)
    tool_calls = Column(JSON, nullable=True)  # List of tool call dicts
    attachment_ids = Column(JSON, nullable=True)  # List of attachment ids
    model = Column(String(255), nullable=True)  # Model name as reported by the provider
    provider = Column(String(64), nullable=True)  # Provider key
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)
    
    __table_args__ = (
        Index("ix_messages_thread_parent", "thread_id", "parent_id"),
    )
