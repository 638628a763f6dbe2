"""Thread service: the single entry point for reading and mutating conversations."""
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Mapping, NamedTuple, Optional, Sequence, Union
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
import enum
import logging

from models.threads import Thread
from models.messages import Message, MessageRole
from models.attachments import AttachmentType
from schemas.messages import AttachmentFile, MessageUpdate, ModelInfo, ThreadMessage
from schemas.content import ModelMessage, TextPart, ImagePart, FilePart
from schemas.export import ChatExport, ImportResult, StorageStats
from services.message_store import MessageStore
from services.branch_state import BranchStateStore
from services.attachments import to_attachment_file
from services.streaming import UpdateCoalescer, DEFAULT_FLUSH_INTERVAL
from services.export import ChatExportService
from services.exceptions import ThreadNotFound, MessageNotFound, ConcurrentModification, storage_errors
from services import resolver

logger = logging.getLogger(__name__)


class BranchDirection(str, enum.Enum):
    """Direction to move within a sibling group."""
    PREV = "prev"
    NEXT = "next"


class Resolution(NamedTuple):
    branch_state: Dict[str, str]
    view: List[ThreadMessage]
    streaming_message_id: Optional[str]


def _to_thread_message(
    message: Message,
    sibling_count: int = 1,
    sibling_index: int = 0,
    attachments: Optional[List[AttachmentFile]] = None,
) -> ThreadMessage:
    return ThreadMessage(
        id=message.id,
        thread_id=message.thread_id,
        parent_id=message.parent_id,
        role=message.role,
        content=message.content or "",
        reasoning=message.reasoning,
        tool_calls=message.tool_calls,
        attachments=attachments,
        sibling_count=sibling_count,
        sibling_index=sibling_index,
        model=message.model,
        provider=message.provider,
    )


class ThreadService:
    """
    Session-scoped controller over the message tree.

    Holds the current thread, its resolved active conversation and branch
    state. Every mutation runs in its own transaction and is followed by a
    fresh resolution from persisted state; the in-memory view is never
    patched by hand except for streaming updates, which are coalesced.
    """

    def __init__(self, session_factory: async_sessionmaker, flush_interval: float = DEFAULT_FLUSH_INTERVAL):
        self._session_factory = session_factory
        self._updates = UpdateCoalescer(self._persist_update, flush_interval, discard_on=(MessageNotFound,))
        self.threads: List[Thread] = []
        self.current_thread_id: Optional[str] = None
        self.messages: List[ThreadMessage] = []
        self.branch_state: Dict[str, str] = {}
        self.streaming_message_id: Optional[str] = None

    # Sessions

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[AsyncSession]:
        """One unit of work: commit on success, roll back on any error."""
        async with self._session_factory() as db:
            try:
                yield db
                with storage_errors("commit"):
                    await db.commit()
            except BaseException:
                await db.rollback()
                raise

    def _require_thread_id(self, thread_id: Optional[str]) -> str:
        resolved = thread_id or self.current_thread_id
        if not resolved:
            raise ThreadNotFound("(no current thread)")
        return resolved

    def _set_current(self, thread_id: Optional[str]) -> None:
        self.current_thread_id = thread_id
        self.messages = []
        self.branch_state = {}
        self.streaming_message_id = None

    # Resolution

    async def _resolve(self, db: AsyncSession, thread_id: str) -> Resolution:
        """Rebuild the active conversation of a thread as view models."""
        store = MessageStore(db)
        state = await BranchStateStore(db).get_branch_state(thread_id)
        all_messages = await store.get_messages_for_thread(thread_id)
        path = resolver.build_active_conversation(all_messages, state)
        children = resolver.group_children(all_messages)

        view: List[ThreadMessage] = []
        for message in path:
            siblings = children[message.parent_id]
            position = resolver.sibling_position(siblings, message.id)
            attachments = None
            if message.attachment_ids:
                stored = await store.attachments.get_attachments(message.id)
                attachments = [a for a in map(to_attachment_file, stored) if a is not None]
            view.append(_to_thread_message(message, position.total, position.current_index, attachments))

        return Resolution(state, view, resolver.streaming_message_id(all_messages, path))

    async def _rebuild(self, thread_id: str) -> List[ThreadMessage]:
        """Re-resolve a thread and, if it is the current one, replace the in-memory view."""
        async with self._session_factory() as db:
            resolution = await self._resolve(db, thread_id)

        if thread_id == self.current_thread_id:
            self.branch_state = resolution.branch_state
            self.messages = resolution.view
            self.streaming_message_id = resolution.streaming_message_id
        return resolution.view

    async def get_active_conversation(self, thread_id: Optional[str] = None) -> List[ThreadMessage]:
        """Resolve a thread's active conversation without changing the current thread."""
        thread_id = self._require_thread_id(thread_id)
        async with self._session_factory() as db:
            await MessageStore(db).require_thread(thread_id)
            resolution = await self._resolve(db, thread_id)
        return resolution.view

    async def check_branch_state(self, thread_id: Optional[str] = None) -> None:
        """
        Verify every override of a thread names a member of its sibling group.

        Raises:
            ConcurrentModification: The first stale override found
        """
        thread_id = self._require_thread_id(thread_id)
        async with self._session_factory() as db:
            state = await BranchStateStore(db).get_branch_state(thread_id)
            all_messages = await MessageStore(db).get_messages_for_thread(thread_id)

        stale = resolver.find_stale_overrides(all_messages, state)
        if stale:
            key, child_id = stale[0]
            raise ConcurrentModification(thread_id, key, child_id)

    # Threads

    async def create_thread(self, seed_content: Optional[str] = None) -> Thread:
        """Create a thread and make it current. No message is inserted."""
        await self._updates.flush()
        async with self._transaction() as db:
            thread = await MessageStore(db).create_thread(seed_content)

        self.threads.insert(0, thread)
        self._set_current(thread.id)
        return thread

    async def list_threads(self) -> List[Thread]:
        """Load all threads, most recently updated first."""
        async with self._session_factory() as db:
            self.threads = await MessageStore(db).list_threads()
        return self.threads

    async def get_thread(self, thread_id: str) -> Thread:
        async with self._session_factory() as db:
            return await MessageStore(db).require_thread(thread_id)

    async def select_thread(self, thread_id: str) -> List[ThreadMessage]:
        """Make a thread current and resolve its active conversation."""
        await self._updates.flush()
        await self.get_thread(thread_id)
        self._set_current(thread_id)
        logger.info(f"Selected thread {thread_id}")
        return await self._rebuild(thread_id)

    async def rename_thread(self, thread_id: str, title: str) -> Thread:
        async with self._transaction() as db:
            thread = await MessageStore(db).update_thread(thread_id, title=title)

        self.threads = [thread if t.id == thread_id else t for t in self.threads]
        logger.info(f"Renamed thread {thread_id}")
        return thread

    async def delete_thread(self, thread_id: str) -> bool:
        """Delete a thread and everything it owns."""
        await self._updates.flush()
        async with self._transaction() as db:
            deleted = await MessageStore(db).delete_thread(thread_id)

        self.threads = [t for t in self.threads if t.id != thread_id]
        if thread_id == self.current_thread_id:
            self._set_current(None)
        return deleted

    async def delete_current_thread(self) -> None:
        if self.current_thread_id is None:
            return
        await self.delete_thread(self.current_thread_id)

    async def clear_current_thread(self) -> None:
        await self.delete_current_thread()

    async def delete_all_data(self) -> None:
        """Delete every thread, message, attachment and override."""
        await self._updates.flush()
        async with self._transaction() as db:
            await MessageStore(db).delete_all()

        self.threads = []
        self._set_current(None)

    # Read-only projections

    async def get_message(self, message_id: str) -> Message:
        async with self._session_factory() as db:
            message = await MessageStore(db).get_message(message_id)
        if message is None:
            raise MessageNotFound(message_id)
        return message

    async def get_messages(self, thread_id: Optional[str] = None) -> List[Message]:
        """Every message of a thread, active or not, in creation order."""
        thread_id = self._require_thread_id(thread_id)
        async with self._session_factory() as db:
            return await MessageStore(db).get_messages_for_thread(thread_id)

    async def get_siblings(self, message_id: str) -> List[Message]:
        async with self._session_factory() as db:
            return await MessageStore(db).get_siblings(message_id)

    async def get_branch_state(self, thread_id: Optional[str] = None) -> Dict[str, str]:
        thread_id = self._require_thread_id(thread_id)
        async with self._session_factory() as db:
            return await BranchStateStore(db).get_branch_state(thread_id)

    async def get_stats(self) -> StorageStats:
        async with self._session_factory() as db:
            store = MessageStore(db)
            return StorageStats(
                thread_count=await store.count_threads(),
                message_count=await store.count(),
                attachment_count=await store.attachments.count(),
                estimated_size_bytes=await store.attachments.estimated_size(),
            )

    # Appending

    async def add_user_message(
        self,
        content: str,
        attachments: Optional[Sequence[AttachmentFile]] = None,
        thread_id: Optional[str] = None,
    ) -> ThreadMessage:
        """
        Append a user message after the last message of the active conversation.

        Creates a thread titled from the content when there is no current
        thread. Branch state is left alone: the new leaf has no siblings.
        """
        await self._updates.flush()
        thread_id = thread_id or self.current_thread_id
        created = False

        async with self._transaction() as db:
            store = MessageStore(db)
            if thread_id is None:
                thread = await store.create_thread(content)
                thread_id = thread.id
                created = True
            else:
                await store.require_thread(thread_id)

            path = (await self._resolve(db, thread_id)).view
            parent_id = path[-1].id if path else None
            message = await store.add_message(
                thread_id, MessageRole.USER, content, parent_id=parent_id, attachments=attachments
            )

        if created:
            self._set_current(thread_id)
        await self._refresh_thread_row(thread_id)
        return await self._view_of(thread_id, message)

    async def add_assistant_message(
        self,
        thread_id: Optional[str] = None,
        parent_id: Optional[str] = None,
        model_info: Optional[ModelInfo] = None,
    ) -> ThreadMessage:
        """Insert an empty assistant message to be filled by streaming updates."""
        await self._updates.flush()
        thread_id = self._require_thread_id(thread_id)

        async with self._transaction() as db:
            store = MessageStore(db)
            await store.require_thread(thread_id)
            if parent_id is None:
                path = (await self._resolve(db, thread_id)).view
                parent_id = path[-1].id if path else None
            message = await store.add_message(
                thread_id,
                MessageRole.ASSISTANT,
                "",
                parent_id=parent_id,
                tool_calls=[],
                model=model_info.model if model_info else None,
                provider=model_info.provider if model_info else None,
            )

        await self._refresh_thread_row(thread_id)
        return await self._view_of(thread_id, message)

    def update_assistant_message(
        self,
        message_id: str,
        updates: Union[MessageUpdate, Mapping[str, Any]],
    ) -> ThreadMessage:
        """
        Apply a streaming update to the assistant message being generated.

        Only the most recently created assistant message of the current
        thread accepts updates, and only while it is the active leaf. The
        in-memory view changes immediately; the durable write is coalesced
        and happens at most once per flush interval. Must be called from a
        running event loop.

        Raises:
            MessageNotFound: message_id is not the streaming message
        """
        if not isinstance(updates, MessageUpdate):
            updates = MessageUpdate.model_validate(updates)
        changes = updates.changes()

        if self.streaming_message_id is None or message_id != self.streaming_message_id:
            raise MessageNotFound(message_id, "not the streaming assistant message of the current thread")

        updated = self.messages[-1].model_copy(update=changes)
        self.messages = self.messages[:-1] + [updated]
        self._updates.push(message_id, changes)
        return updated

    async def _persist_update(self, message_id: str, changes: Dict[str, Any]) -> None:
        async with self._transaction() as db:
            await MessageStore(db).update_message(message_id, changes)

    async def flush_pending(self) -> None:
        """Persist any coalesced streaming update now."""
        await self._updates.flush()

    async def close(self) -> None:
        await self._updates.aclose()

    # Branching

    async def edit_user_message(
        self,
        message_id: str,
        new_content: str,
        attachments: Optional[Sequence[AttachmentFile]] = None,
    ) -> ThreadMessage:
        """
        Edit a message by creating a new sibling with the same parent.

        The original message and its subtree stay persisted and reachable by
        navigating back; the new sibling becomes the active branch.
        """
        await self._updates.flush()

        async with self._transaction() as db:
            store = MessageStore(db)
            original = await store.get_message(message_id)
            if original is None:
                raise MessageNotFound(message_id)

            thread_id = original.thread_id
            message = await store.add_message(
                thread_id,
                MessageRole.USER,
                new_content,
                parent_id=original.parent_id,
                attachments=attachments,
            )
            await BranchStateStore(db).set_branch_override(
                thread_id, resolver.parent_key(original.parent_id), message.id
            )

        logger.info(f"Edited message {message_id}, created branch {message.id}")
        await self._refresh_thread_row(thread_id)
        return await self._view_of(thread_id, message)

    async def regenerate_assistant(
        self,
        message_id: str,
        model_info: Optional[ModelInfo] = None,
    ) -> Optional[ThreadMessage]:
        """
        Create a new, empty assistant sibling of message_id and make it active.

        Returns None when the message does not exist or is not an assistant
        message.
        """
        await self._updates.flush()

        async with self._transaction() as db:
            store = MessageStore(db)
            original = await store.get_message(message_id)
            if original is None or original.role != MessageRole.ASSISTANT:
                return None

            thread_id = original.thread_id
            message = await store.add_message(
                thread_id,
                MessageRole.ASSISTANT,
                "",
                parent_id=original.parent_id,
                tool_calls=[],
                model=model_info.model if model_info else None,
                provider=model_info.provider if model_info else None,
            )
            await BranchStateStore(db).set_branch_override(
                thread_id, resolver.parent_key(original.parent_id), message.id
            )

        logger.info(f"Regenerated assistant message {message_id}, created branch {message.id}")
        await self._refresh_thread_row(thread_id)
        return await self._view_of(thread_id, message)

    async def navigate_branch(self, message_id: str, direction: Union[BranchDirection, str]) -> Optional[str]:
        """
        Move the active branch to the previous or next sibling of message_id.

        Returns:
            The id of the newly active sibling, or None when nothing changed
            (single-member group, unknown message, or already at the edge)
        """
        direction = BranchDirection(direction)
        await self._updates.flush()

        async with self._transaction() as db:
            store = MessageStore(db)
            info = await store.get_sibling_info(message_id)
            if info is None or info.total <= 1:
                return None

            step = -1 if direction == BranchDirection.PREV else 1
            new_index = min(max(info.current_index + step, 0), info.total - 1)
            if new_index == info.current_index:
                return None

            target = info.siblings[new_index]
            await BranchStateStore(db).set_branch_override(
                target.thread_id, resolver.parent_key(target.parent_id), target.id
            )

        logger.info(f"Navigated branch {direction.value} from {message_id} to {target.id}")
        await self._rebuild(target.thread_id)
        return target.id

    # Model context

    async def build_model_context(
        self,
        thread_id: Optional[str] = None,
        system_prompt: Optional[str] = None,
    ) -> List[ModelMessage]:
        """
        Render the active conversation as model input.

        User messages with stored attachments become part lists; everything
        else is plain text. Empty assistant messages are skipped.
        """
        await self._updates.flush()
        view = await self.get_active_conversation(thread_id)

        out: List[ModelMessage] = []
        if system_prompt:
            out.append(ModelMessage(role="system", content=system_prompt))

        for message in view:
            if message.role == MessageRole.ASSISTANT and not message.content:
                continue
            if message.role == MessageRole.USER and message.attachments:
                parts = [TextPart(text=message.content)]
                for att in message.attachments:
                    if att.type == AttachmentType.IMAGE:
                        parts.append(ImagePart(image=att.data_url, media_type=att.media_type))
                    else:
                        parts.append(FilePart(data=att.data_url, filename=att.filename, media_type=att.media_type))
                out.append(ModelMessage(role="user", content=parts))
            else:
                out.append(ModelMessage(role=message.role.value, content=message.content))
        return out

    # Export / import

    async def export_all_chats(self) -> ChatExport:
        await self._updates.flush()
        async with self._session_factory() as db:
            return await ChatExportService.export_all_chats(db)

    async def import_chats(self, data: Union[ChatExport, Mapping[str, Any]], strategy: str = "merge") -> ImportResult:
        """Import a backup; replace clears existing data first, merge skips known threads."""
        await self._updates.flush()
        async with self._session_factory() as db:
            result = await ChatExportService.import_chats(db, data, strategy)

        if result.success:
            await self.refresh()
        return result

    # Refresh

    async def refresh(self) -> None:
        """Reload the thread list and the current conversation from storage."""
        await self._updates.flush()
        await self.list_threads()
        if self.current_thread_id is None:
            return
        if not any(t.id == self.current_thread_id for t in self.threads):
            self._set_current(None)
            return
        await self._rebuild(self.current_thread_id)

    async def _refresh_thread_row(self, thread_id: str) -> None:
        async with self._session_factory() as db:
            thread = await MessageStore(db).get_thread(thread_id)
        if thread is None:
            return
        others = [t for t in self.threads if t.id != thread_id]
        self.threads = [thread] + others

    async def _view_of(self, thread_id: str, message: Message) -> ThreadMessage:
        """Rebuild the thread and return the view entry for message."""
        view = await self._rebuild(thread_id)
        for entry in view:
            if entry.id == message.id:
                return entry
        # Not on the active path (appended under an inactive parent)
        async with self._session_factory() as db:
            siblings = await MessageStore(db).get_siblings(message.id)
        position = resolver.sibling_position(siblings, message.id)
        return _to_thread_message(message, position.total, max(position.current_index, 0))
