"""Branch state store: which child is active under each parent."""
from typing import Dict, Mapping
from sqlalchemy import select, delete
from sqlalchemy.ext.asyncio import AsyncSession
import logging

from models.threads import Thread
from models.messages import Message
from models.branch_state import BranchOverride
from services.exceptions import ThreadNotFound, MessageNotFound, storage_errors
from services.resolver import parent_key as key_for_parent

logger = logging.getLogger(__name__)


class BranchStateStore:
    """Service class for per-thread branch overrides."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_branch_state(self, thread_id: str) -> Dict[str, str]:
        """Return the explicit overrides of a thread as parent key -> active child id."""
        with storage_errors("load branch state"):
            result = await self.db.execute(
                select(BranchOverride).where(BranchOverride.thread_id == thread_id)
            )
            return {row.parent_key: row.active_child_id for row in result.scalars().all()}

    async def set_branch_override(self, thread_id: str, parent_key: str, active_child_id: str) -> None:
        """
        Make active_child_id the active child of the sibling group keyed by parent_key.

        Raises:
            ThreadNotFound: The thread does not exist
            MessageNotFound: active_child_id is not a member of that sibling group
        """
        with storage_errors("set branch override"):
            if await self.db.get(Thread, thread_id) is None:
                raise ThreadNotFound(thread_id)

            child = await self.db.get(Message, active_child_id)
            if child is None or child.thread_id != thread_id or key_for_parent(child.parent_id) != parent_key:
                raise MessageNotFound(active_child_id, f"not a child of {parent_key}")

            row = await self.db.get(BranchOverride, (thread_id, parent_key))
            if row is None:
                self.db.add(BranchOverride(
                    thread_id=thread_id,
                    parent_key=parent_key,
                    active_child_id=active_child_id,
                ))
            else:
                row.active_child_id = active_child_id
            await self.db.flush()

        logger.debug(f"Branch override {thread_id}:{parent_key} -> {active_child_id}")

    async def replace_branch_state(self, thread_id: str, branch_state: Mapping[str, str]) -> None:
        """Overwrite a thread's overrides wholesale, as restored from a backup."""
        with storage_errors("save branch state"):
            await self.db.execute(delete(BranchOverride).where(BranchOverride.thread_id == thread_id))
            for key, child_id in branch_state.items():
                self.db.add(BranchOverride(thread_id=thread_id, parent_key=key, active_child_id=child_id))
            await self.db.flush()
