from .threads import Thread, Base, generate_id, DEFAULT_THREAD_TITLE
from .messages import Message, MessageRole
from .attachments import Attachment, AttachmentType, ATTACHMENT_SIZE_LIMIT
from .branch_state import BranchOverride, ROOT_KEY

__all__ = ["Thread", "Message", "MessageRole", "Attachment", "AttachmentType", "BranchOverride",
           "Base", "generate_id", "DEFAULT_THREAD_TITLE", "ATTACHMENT_SIZE_LIMIT", "ROOT_KEY"]
