"""Chat export/import: full backups of threads, message trees and branch state."""
from datetime import datetime, timezone
from typing import Any, Mapping, Optional, Union
from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
import logging

from models.threads import Thread
from models.messages import Message
from models.attachments import Attachment
from models.branch_state import ROOT_KEY
from schemas.threads import ThreadResponse
from schemas.messages import MessageResponse, AttachmentResponse
from schemas.export import ChatExport, ExportedThread, ImportResult, EXPORT_VERSION
from services.message_store import MessageStore
from services.branch_state import BranchStateStore
from services.exceptions import StorageFailure, storage_errors

logger = logging.getLogger(__name__)

IMPORT_STRATEGIES = ("merge", "replace")


class ImportRejected(Exception):
    """Raised when an import payload would corrupt existing data."""


class ChatExportService:
    """Service class for exporting and importing chat history."""

    @staticmethod
    async def export_all_chats(db: AsyncSession) -> ChatExport:
        """Dump every thread with its messages, attachments and branch state."""
        store = MessageStore(db)
        branches = BranchStateStore(db)
        exported = []

        for thread in await store.list_threads():
            messages = await store.get_messages_for_thread(thread.id)
            attachments = await store.attachments.get_attachments_by_thread(thread.id)
            exported.append(ExportedThread(
                thread=ThreadResponse.model_validate(thread),
                messages=[MessageResponse.model_validate(m) for m in messages],
                attachments=[AttachmentResponse.model_validate(a) for a in attachments],
                branch_state=await branches.get_branch_state(thread.id),
            ))

        logger.info(f"Exported {len(exported)} threads")
        return ChatExport(
            version=EXPORT_VERSION,
            exported_at=datetime.now(timezone.utc),
            threads=exported,
        )

    @staticmethod
    async def import_chats(
        db: AsyncSession,
        data: Union[ChatExport, Mapping[str, Any]],
        strategy: str = "merge",
    ) -> ImportResult:
        """
        Import a backup.

        Args:
            db: Database session
            data: Export payload, parsed or raw
            strategy: "replace" clears existing data first; "merge" skips
                threads whose id already exists

        Returns:
            ImportResult; invalid payloads, threads whose messages clash with
            existing rows or do not form a tree of that thread, and storage
            failures are reported with success=False and nothing is written
        """
        if strategy not in IMPORT_STRATEGIES:
            return ImportResult(success=False, error=f"Unknown import strategy: {strategy}")

        if not isinstance(data, ChatExport):
            try:
                data = ChatExport.model_validate(data)
            except ValidationError as e:
                logger.warning(f"Rejected import payload: {e.error_count()} validation errors")
                return ImportResult(success=False, error="Invalid import data format")

        if data.version > EXPORT_VERSION:
            return ImportResult(success=False, error=f"Unsupported export version: {data.version}")

        result = ImportResult(success=True)
        try:
            if strategy == "replace":
                await MessageStore(db).delete_all()

            for item in data.threads:
                with storage_errors("check existing thread"):
                    existing = await db.get(Thread, item.thread.id)
                if existing is not None:
                    if strategy == "replace":
                        raise ImportRejected(f"Thread {item.thread.id} appears more than once")
                    logger.debug(f"Skipping existing thread {item.thread.id}")
                    continue

                problem = await ChatExportService._check_thread(db, item)
                if problem:
                    raise ImportRejected(f"Thread {item.thread.id}: {problem}")

                with storage_errors("import thread"):
                    db.add(Thread(**item.thread.model_dump()))
                    db.add_all(Message(**message.model_dump()) for message in item.messages)
                    db.add_all(Attachment(**attachment.model_dump()) for attachment in item.attachments)
                    await db.flush()

                await BranchStateStore(db).replace_branch_state(item.thread.id, item.branch_state)
                result.threads_imported += 1
                result.messages_imported += len(item.messages)
                result.attachments_imported += len(item.attachments)

            with storage_errors("commit import"):
                await db.commit()
        except ImportRejected as e:
            await db.rollback()
            logger.warning(f"Rejected import: {e}")
            return ImportResult(success=False, error=str(e))
        except StorageFailure as e:
            await db.rollback()
            logger.error(f"Import failed: {e}")
            return ImportResult(success=False, error=str(e))

        logger.info(
            f"Imported {result.threads_imported} threads, {result.messages_imported} messages, "
            f"{result.attachments_imported} attachments"
        )
        return result

    @staticmethod
    async def _check_thread(db: AsyncSession, item: ExportedThread) -> Optional[str]:
        """Return why an exported thread cannot be imported as-is, or None."""
        thread_id = item.thread.id
        message_ids = [m.id for m in item.messages]
        known = set(message_ids)
        if len(known) != len(message_ids):
            return "duplicate message ids"

        for message in item.messages:
            if message.thread_id != thread_id:
                return f"message {message.id} belongs to thread {message.thread_id}"
            if message.parent_id is not None and message.parent_id not in known:
                return f"message {message.id} has unknown parent {message.parent_id}"

        for attachment in item.attachments:
            if attachment.thread_id != thread_id or attachment.message_id not in known:
                return f"attachment {attachment.id} does not belong to a message of this thread"

        for key, child_id in item.branch_state.items():
            if (key != ROOT_KEY and key not in known) or child_id not in known:
                return f"branch state {key} -> {child_id} names unknown messages"

        # The thread itself is new, so any existing row with these ids lives elsewhere
        checks = [
            (Message.id, message_ids),
            (Attachment.id, [a.id for a in item.attachments]),
        ]
        for column, ids in checks:
            if not ids:
                continue
            with storage_errors("check existing ids"):
                result = await db.execute(select(column).where(column.in_(ids)).limit(1))
                taken = result.scalar_one_or_none()
            if taken is not None:
                return f"{taken} already exists in another thread"

        return None
