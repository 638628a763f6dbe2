"""Error kinds raised by the storage and thread services."""
from contextlib import contextmanager
from typing import Iterator, Optional
from sqlalchemy.exc import SQLAlchemyError
import logging

logger = logging.getLogger(__name__)


class BranchChatError(Exception):
    """Base class for all service errors."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        if cause is not None:
            self.__cause__ = cause


class ThreadNotFound(BranchChatError):
    """Raised when a thread id does not resolve."""

    def __init__(self, thread_id: str):
        super().__init__(f"Thread not found: {thread_id}")
        self.thread_id = thread_id


class MessageNotFound(BranchChatError):
    """Raised when a message id does not resolve, or is not where the caller says it is."""

    def __init__(self, message_id: str, detail: Optional[str] = None):
        super().__init__(f"Message not found: {message_id}" + (f" ({detail})" if detail else ""))
        self.message_id = message_id


class InvalidParent(BranchChatError):
    """Raised when a parent id is absent or belongs to a different thread."""

    def __init__(self, parent_id: str, thread_id: str):
        super().__init__(f"Invalid parent {parent_id} for thread {thread_id}")
        self.parent_id = parent_id
        self.thread_id = thread_id


class ConcurrentModification(BranchChatError):
    """Raised when a branch override names a child outside its sibling group."""

    def __init__(self, thread_id: str, parent_key: str, active_child_id: str):
        super().__init__(
            f"Stale branch override in thread {thread_id}: "
            f"{active_child_id} is not a child of {parent_key}"
        )
        self.thread_id = thread_id
        self.parent_key = parent_key
        self.active_child_id = active_child_id


class StorageFailure(BranchChatError):
    """Raised when the database layer fails."""


@contextmanager
def storage_errors(action: str) -> Iterator[None]:
    """Translate database errors raised inside the block into StorageFailure."""
    try:
        yield
    except SQLAlchemyError as e:
        logger.error(f"Storage failure while trying to {action}: {e}")
        raise StorageFailure(f"Failed to {action}", cause=e) from e
