from .threads import ThreadService, BranchDirection
from .message_store import MessageStore, generate_thread_title
from .branch_state import BranchStateStore
from .attachments import AttachmentStore
from .streaming import UpdateCoalescer
from .export import ChatExportService
from .exceptions import (
    BranchChatError, ThreadNotFound, MessageNotFound, InvalidParent,
    ConcurrentModification, StorageFailure
)

__all__ = ["ThreadService", "BranchDirection", "MessageStore", "generate_thread_title",
           "BranchStateStore", "AttachmentStore", "UpdateCoalescer", "ChatExportService",
           "BranchChatError", "ThreadNotFound", "MessageNotFound", "InvalidParent",
           "ConcurrentModification", "StorageFailure"]
