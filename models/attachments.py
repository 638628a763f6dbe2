"""Attachment model for files sent with user messages."""
from sqlalchemy import Column, String, Integer, Text, Boolean, ForeignKey, Enum
from .threads import Base, generate_id
import enum
import os

# Attachments larger than this are recorded without their data
ATTACHMENT_SIZE_LIMIT = int(os.getenv("ATTACHMENT_SIZE_LIMIT", str(5 * 1024 * 1024)))


class AttachmentType(enum.Enum):
    """Enum for attachment kinds."""
    IMAGE = "image"
    FILE = "file"


class Attachment(Base):
    """
    SQLAlchemy model for message attachments.
    
    The payload is kept inline as a data URL; data_url is null when the
    file exceeded ATTACHMENT_SIZE_LIMIT.
    """
    __tablename__ = "attachments"
    
    id = Column(String(64), primary_key=True, default=generate_id, index=True)
    message_id = Column(String(40), nullable=False, index=True)
    thread_id = Column(String(40), ForeignKey("threads.id", ondelete="CASCADE"), nullable=False, index=True)
    type = Column(Enum(AttachmentType), nullable=False, default=AttachmentType.FILE)
    filename = Column(String, nullable=False)
    media_type = Column(String, nullable=False)  # MIME type
    size = Column(Integer, nullable=False)  # Size in bytes
    data_url = Column(Text, nullable=True)
    stored = Column(Boolean, nullable=False, default=True)
