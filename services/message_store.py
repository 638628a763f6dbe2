"""Message store: thread rows and the message tree."""
from typing import Any, Dict, List, Mapping, Optional, Sequence
from sqlalchemy import select, delete, desc, func
from sqlalchemy.ext.asyncio import AsyncSession
import logging

from models.threads import Thread, DEFAULT_THREAD_TITLE, utcnow
from models.messages import Message, MessageRole
from models.attachments import Attachment
from models.branch_state import BranchOverride
from schemas.messages import AttachmentFile
from services.attachments import AttachmentStore
from services.exceptions import ThreadNotFound, MessageNotFound, InvalidParent, storage_errors
from services import resolver

logger = logging.getLogger(__name__)

# Only these fields may change after a message is written
UPDATABLE_FIELDS = frozenset({"content", "reasoning", "tool_calls", "model", "provider"})

TITLE_MAX_LENGTH = 50


def generate_thread_title(first_message: str) -> str:
    """Derive a thread title from the first ~50 chars, cut at a word boundary."""
    text = first_message.strip()
    if len(text) <= TITLE_MAX_LENGTH:
        return text or DEFAULT_THREAD_TITLE

    truncated = text[:TITLE_MAX_LENGTH]
    last_space = truncated.rfind(" ")
    return (truncated[:last_space] if last_space > 20 else truncated) + "..."


class MessageStore:
    """Service class for thread and message persistence."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.attachments = AttachmentStore(db)

    # Threads

    async def create_thread(self, seed_content: Optional[str] = None) -> Thread:
        """Create a new, empty thread."""
        thread = Thread(
            title=generate_thread_title(seed_content) if seed_content else DEFAULT_THREAD_TITLE,
            message_count=0,
        )
        with storage_errors("create thread"):
            self.db.add(thread)
            await self.db.flush()

        logger.info(f"Created thread {thread.id}")
        return thread

    async def get_thread(self, thread_id: str) -> Optional[Thread]:
        """Retrieve a thread by ID."""
        with storage_errors("load thread"):
            return await self.db.get(Thread, thread_id)

    async def require_thread(self, thread_id: str) -> Thread:
        thread = await self.get_thread(thread_id)
        if thread is None:
            raise ThreadNotFound(thread_id)
        return thread

    async def list_threads(self) -> List[Thread]:
        """Retrieve all threads, most recently updated first."""
        with storage_errors("list threads"):
            result = await self.db.execute(
                select(Thread).order_by(desc(Thread.updated_at), desc(Thread.id))
            )
            return list(result.scalars().all())

    async def update_thread(self, thread_id: str, title: Optional[str] = None) -> Thread:
        """Rename a thread and bump its last-activity time."""
        thread = await self.require_thread(thread_id)
        if title is not None:
            thread.title = title
        thread.updated_at = utcnow()

        with storage_errors("update thread"):
            await self.db.flush()
        return thread

    async def delete_thread(self, thread_id: str) -> bool:
        """Delete a thread with its messages, attachments and branch state."""
        thread = await self.get_thread(thread_id)
        if thread is None:
            return False

        with storage_errors("delete thread"):
            await self.db.execute(delete(BranchOverride).where(BranchOverride.thread_id == thread_id))
            await self.db.execute(delete(Attachment).where(Attachment.thread_id == thread_id))
            await self.db.execute(delete(Message).where(Message.thread_id == thread_id))
            await self.db.delete(thread)
            await self.db.flush()

        logger.info(f"Deleted thread {thread_id}")
        return True

    async def delete_all(self) -> None:
        """Delete every thread and everything they own."""
        with storage_errors("delete all data"):
            await self.db.execute(delete(BranchOverride))
            await self.db.execute(delete(Attachment))
            await self.db.execute(delete(Message))
            await self.db.execute(delete(Thread))
            await self.db.flush()

        logger.info("Deleted all data")

    # Messages

    async def add_message(
        self,
        thread_id: str,
        role: MessageRole,
        content: str,
        parent_id: Optional[str] = None,
        reasoning: Optional[str] = None,
        tool_calls: Optional[List[Dict[str, Any]]] = None,
        attachments: Optional[Sequence[AttachmentFile]] = None,
        model: Optional[str] = None,
        provider: Optional[str] = None,
    ) -> Message:
        """
        Insert a message into a thread's tree.

        Args:
            thread_id: Owning thread
            role: Author of the message
            content: Message text
            parent_id: Parent message in the same thread, or None for a root

        Returns:
            The stored message with its id and created_at assigned

        Raises:
            ThreadNotFound: The thread does not exist
            InvalidParent: parent_id does not resolve to a message of this thread
        """
        thread = await self.require_thread(thread_id)

        if parent_id is not None:
            parent = await self.get_message(parent_id)
            if parent is None or parent.thread_id != thread_id:
                raise InvalidParent(parent_id, thread_id)

        message = Message(
            thread_id=thread_id,
            parent_id=parent_id,
            role=role,
            content=content,
            reasoning=reasoning,
            tool_calls=tool_calls,
            model=model,
            provider=provider,
        )

        with storage_errors("add message"):
            self.db.add(message)
            await self.db.flush()

        if attachments:
            stored = [
                await self.attachments.store_attachment(thread_id, message.id, att)
                for att in attachments
            ]
            message.attachment_ids = [att.id for att in stored]

        thread.message_count = (thread.message_count or 0) + 1
        thread.updated_at = utcnow()
        if thread.title == DEFAULT_THREAD_TITLE and role == MessageRole.USER and content:
            thread.title = generate_thread_title(content)

        with storage_errors("add message"):
            await self.db.flush()

        logger.info(f"Added {role.value} message {message.id} to thread {thread_id} (parent={parent_id})")
        return message

    async def get_message(self, message_id: str) -> Optional[Message]:
        """Retrieve a message by ID."""
        with storage_errors("load message"):
            return await self.db.get(Message, message_id)

    async def get_messages_for_thread(self, thread_id: str) -> List[Message]:
        """Retrieve every message of a thread in creation order."""
        with storage_errors("load messages"):
            result = await self.db.execute(
                select(Message)
                .where(Message.thread_id == thread_id)
                .order_by(Message.created_at, Message.id)
            )
            return resolver.sort_messages(result.scalars().all())

    async def get_children(self, thread_id: str, parent_id: Optional[str]) -> List[Message]:
        """Retrieve the children of parent_id (roots when None) in creation order."""
        parent_clause = Message.parent_id.is_(None) if parent_id is None else Message.parent_id == parent_id
        with storage_errors("load children"):
            result = await self.db.execute(
                select(Message)
                .where(Message.thread_id == thread_id, parent_clause)
                .order_by(Message.created_at, Message.id)
            )
            return resolver.sort_messages(result.scalars().all())

    async def get_siblings(self, message_id: str) -> List[Message]:
        """Retrieve the sibling group of a message, itself included; empty if it does not exist."""
        message = await self.get_message(message_id)
        if message is None:
            return []
        return await self.get_children(message.thread_id, message.parent_id)

    async def get_sibling_info(self, message_id: str) -> Optional[resolver.SiblingInfo]:
        siblings = await self.get_siblings(message_id)
        if not siblings:
            return None
        return resolver.sibling_position(siblings, message_id)

    async def update_message(self, message_id: str, updates: Mapping[str, Any]) -> Message:
        """
        Update the content fields of a message in place.

        Raises:
            MessageNotFound: No message with this id
            ValueError: updates names a field other than content fields
        """
        unknown = set(updates) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update message fields: {', '.join(sorted(unknown))}")

        message = await self.get_message(message_id)
        if message is None:
            raise MessageNotFound(message_id)

        for field, value in updates.items():
            setattr(message, field, value)

        with storage_errors("update message"):
            await self.db.flush()

        logger.debug(f"Updated message {message_id}: {sorted(updates)}")
        return message

    async def build_active_conversation(
        self,
        thread_id: str,
        branch_state: Mapping[str, str],
        strict: bool = False,
    ) -> List[Message]:
        """Fetch a thread's messages and resolve its active conversation."""
        messages = await self.get_messages_for_thread(thread_id)
        return resolver.build_active_conversation(messages, branch_state, strict=strict)

    async def count(self) -> int:
        with storage_errors("count messages"):
            return (await self.db.execute(select(func.count()).select_from(Message))).scalar_one()

    async def count_threads(self) -> int:
        with storage_errors("count threads"):
            return (await self.db.execute(select(func.count()).select_from(Thread))).scalar_one()
