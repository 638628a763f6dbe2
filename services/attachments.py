"""Attachment store for files sent alongside user messages."""
from typing import List, Optional
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession
import logging

from models.attachments import Attachment, ATTACHMENT_SIZE_LIMIT
from schemas.messages import AttachmentFile
from services.exceptions import storage_errors

logger = logging.getLogger(__name__)


class AttachmentStore:
    """Service class for attachment rows."""

    def __init__(self, db: AsyncSession, size_limit: int = ATTACHMENT_SIZE_LIMIT):
        self.db = db
        self.size_limit = size_limit

    async def store_attachment(self, thread_id: str, message_id: str, file: AttachmentFile) -> Attachment:
        """
        Record an attachment for a message.

        Files over the size limit (or without data) are recorded with
        stored=False and no data so the message still lists them.
        """
        should_store = file.size <= self.size_limit and file.data_url is not None
        attachment = Attachment(
            message_id=message_id,
            thread_id=thread_id,
            type=file.type,
            filename=file.filename,
            media_type=file.media_type,
            size=file.size,
            data_url=file.data_url if should_store else None,
            stored=should_store,
        )
        if file.id:
            attachment.id = file.id

        with storage_errors("store attachment"):
            self.db.add(attachment)
            await self.db.flush()

        logger.debug(f"Stored attachment {attachment.id} (stored={should_store})")
        return attachment

    async def get_attachments(self, message_id: str) -> List[Attachment]:
        """Get the attachments of one message."""
        with storage_errors("load attachments"):
            result = await self.db.execute(
                select(Attachment).where(Attachment.message_id == message_id)
            )
            return list(result.scalars().all())

    async def get_attachments_by_thread(self, thread_id: str) -> List[Attachment]:
        """Get every attachment of a thread."""
        with storage_errors("load thread attachments"):
            result = await self.db.execute(
                select(Attachment).where(Attachment.thread_id == thread_id)
            )
            return list(result.scalars().all())

    async def count(self) -> int:
        with storage_errors("count attachments"):
            return (await self.db.execute(select(func.count()).select_from(Attachment))).scalar_one()

    async def estimated_size(self) -> int:
        """Rough byte estimate: inline data plus fixed metadata overhead per row."""
        with storage_errors("estimate attachment size"):
            result = await self.db.execute(
                select(func.count(), func.coalesce(func.sum(func.length(Attachment.data_url)), 0))
                .select_from(Attachment)
            )
            rows, data_bytes = result.one()
        return int(data_bytes) + rows * 200


def to_attachment_file(stored: Attachment) -> Optional[AttachmentFile]:
    """Convert a stored attachment back to caller form; None when its data was not kept."""
    if not stored.stored or not stored.data_url:
        return None

    return AttachmentFile(
        id=stored.id,
        filename=stored.filename,
        media_type=stored.media_type,
        type=stored.type,
        size=stored.size,
        data_url=stored.data_url,
    )
