"""Message schemas: stored records, inputs and the active-conversation view model."""
from datetime import datetime
from typing import Optional, Dict, Any, List, Literal
from pydantic import BaseModel, Field, ConfigDict
from models.messages import MessageRole
from models.attachments import AttachmentType


class ToolCallInfo(BaseModel):
    """A tool invocation recorded on an assistant message."""
    id: str
    name: str
    input: Dict[str, Any] = Field(default_factory=dict)
    status: Literal["pending", "running", "completed", "error"] = "pending"
    result: Optional[Any] = None
    error: Optional[str] = None
    started_at: Optional[int] = None
    completed_at: Optional[int] = None


class ModelInfo(BaseModel):
    """Model that produced an assistant message."""
    model: str
    provider: str


class AttachmentFile(BaseModel):
    """An attachment as supplied by the caller."""
    id: Optional[str] = None
    filename: str
    media_type: str
    type: AttachmentType = AttachmentType.FILE
    size: int = Field(..., ge=0)
    data_url: Optional[str] = None


class AttachmentResponse(BaseModel):
    """Schema for stored attachment responses."""
    id: str
    message_id: str
    thread_id: str
    type: AttachmentType
    filename: str
    media_type: str
    size: int
    data_url: Optional[str]
    stored: bool
    
    model_config = ConfigDict(from_attributes=True)


class MessageResponse(BaseModel):
    """Schema for a persisted message."""
    id: str
    thread_id: str
    parent_id: Optional[str]
    role: MessageRole
    content: str
    reasoning: Optional[str] = None
    tool_calls: Optional[List[Dict[str, Any]]] = None
    attachment_ids: Optional[List[str]] = None
    model: Optional[str] = None
    provider: Optional[str] = None
    created_at: datetime
    
    model_config = ConfigDict(from_attributes=True)


class MessageUpdate(BaseModel):
    """Partial update applied to a streaming assistant message."""
    content: Optional[str] = None
    reasoning: Optional[str] = None
    tool_calls: Optional[List[ToolCallInfo]] = None
    model: Optional[str] = None
    provider: Optional[str] = None

    def changes(self) -> Dict[str, Any]:
        """Return only the fields that were set, ready for persisting."""
        return self.model_dump(exclude_unset=True, mode="json")


class ThreadMessage(BaseModel):
    """
    One entry of the active conversation.

    sibling_count and sibling_index are derived at resolution time from the
    message's sibling group ordered by creation.
    """
    id: str
    thread_id: str
    parent_id: Optional[str]
    role: MessageRole
    content: str
    reasoning: Optional[str] = None
    tool_calls: Optional[List[Dict[str, Any]]] = None
    attachments: Optional[List[AttachmentFile]] = None
    sibling_count: int = 1
    sibling_index: int = 0
    model: Optional[str] = None
    provider: Optional[str] = None
