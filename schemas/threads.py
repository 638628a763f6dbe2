"""Pydantic schemas for thread-related requests and responses."""
from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field, ConfigDict


class ThreadCreate(BaseModel):
    """Schema for creating a thread."""
    seed_content: Optional[str] = Field(
        default=None,
        description="Text the title is derived from; no message is inserted"
    )


class ThreadUpdate(BaseModel):
    """Schema for updating a thread."""
    title: str = Field(..., min_length=1, max_length=255)


class ThreadResponse(BaseModel):
    """Schema for thread responses."""
    id: str
    title: str
    message_count: int
    created_at: datetime
    updated_at: datetime
    
    model_config = ConfigDict(from_attributes=True)
