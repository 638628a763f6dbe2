from .threads import ThreadCreate, ThreadUpdate, ThreadResponse
from .messages import (
    ToolCallInfo, ModelInfo, AttachmentFile, AttachmentResponse,
    MessageResponse, MessageUpdate, ThreadMessage
)
from .content import TextPart, ImagePart, FilePart, ContentPart, ModelMessage
from .export import ChatExport, ExportedThread, ImportRequest, ImportResult, StorageStats, EXPORT_VERSION

__all__ = ["ThreadCreate", "ThreadUpdate", "ThreadResponse",
           "ToolCallInfo", "ModelInfo", "AttachmentFile", "AttachmentResponse",
           "MessageResponse", "MessageUpdate", "ThreadMessage",
           "TextPart", "ImagePart", "FilePart", "ContentPart", "ModelMessage",
           "ChatExport", "ExportedThread", "ImportRequest", "ImportResult", "StorageStats", "EXPORT_VERSION"]
