"""Schemas for chat export/import and storage statistics."""
from datetime import datetime
from typing import Optional, Dict, List, Literal
from pydantic import BaseModel, Field

from .threads import ThreadResponse
from .messages import MessageResponse, AttachmentResponse

# Export format version for future compatibility
EXPORT_VERSION = 1


class ExportedThread(BaseModel):
    """One thread with everything needed to rebuild it."""
    thread: ThreadResponse
    messages: List[MessageResponse]
    attachments: List[AttachmentResponse]
    branch_state: Dict[str, str] = Field(default_factory=dict)


class ChatExport(BaseModel):
    """Schema for a full chat backup."""
    version: int = EXPORT_VERSION
    exported_at: datetime
    threads: List[ExportedThread]


class ImportRequest(BaseModel):
    """Schema for an import call."""
    data: ChatExport
    strategy: Literal["merge", "replace"] = "merge"


class ImportResult(BaseModel):
    """Outcome of an import."""
    success: bool
    threads_imported: int = 0
    messages_imported: int = 0
    attachments_imported: int = 0
    error: Optional[str] = None


class StorageStats(BaseModel):
    """Schema for storage statistics."""
    thread_count: int
    message_count: int
    attachment_count: int
    estimated_size_bytes: int
