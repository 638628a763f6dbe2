from pydantic import BaseModel, Field
from typing import List, Optional
from schemas.messages import AttachmentFile, ModelInfo
from services.threads import BranchDirection


class UserMessageRequest(BaseModel):
    content: str
    attachments: Optional[List[AttachmentFile]] = None


class AssistantMessageRequest(BaseModel):
    parent_id: Optional[str] = Field(default=None, description="Defaults to the last message of the active conversation")
    model_info: Optional[ModelInfo] = None


class EditMessageRequest(BaseModel):
    content: str
    attachments: Optional[List[AttachmentFile]] = None


class RegenerateRequest(BaseModel):
    model_info: Optional[ModelInfo] = None


class NavigateRequest(BaseModel):
    direction: BranchDirection
