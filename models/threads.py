"""Thread model for conversation management."""
from datetime import datetime, timezone
from sqlalchemy import Column, String, DateTime, Integer
from sqlalchemy.orm import declarative_base
import secrets
import threading
import time

Base = declarative_base()

DEFAULT_THREAD_TITLE = "New Chat"

_id_lock = threading.Lock()
_last_stamp = 0


def generate_id() -> str:
    """
    Generate a unique, insertion-ordered identifier.

    The leading part is a zero-padded hex microsecond timestamp that never
    repeats within the process, so sorting ids lexically sorts them by
    creation order even when two rows share a clock tick.
    """
    global _last_stamp
    with _id_lock:
        stamp = max(time.time_ns() // 1000, _last_stamp + 1)
        _last_stamp = stamp
    return f"{stamp:014x}_{secrets.token_hex(4)}"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Thread(Base):
    """
    SQLAlchemy model for conversation threads.
    
    Each thread owns a tree of messages; the active path through that tree
    is selected by the branch overrides stored alongside it.
    """
    __tablename__ = "threads"
    
    id = Column(String(40), primary_key=True, default=generate_id, index=True)
    title = Column(String(255), nullable=False, default=DEFAULT_THREAD_TITLE)
    message_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow, index=True)
