"""
Conversation resolver.

Walks a thread's message tree from the root to a leaf, choosing at every
fork the child named by the branch state or, failing that, the most recently
created child. Everything here is pure: callers fetch the messages and the
branch state and pass them in, and must re-run resolution after any mutation.
"""
from collections import defaultdict
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Mapping, NamedTuple, Optional, Sequence, Tuple, TypeVar

from models.branch_state import ROOT_KEY
from models.messages import MessageRole
from services.exceptions import ConcurrentModification

M = TypeVar("M")


class SiblingInfo(NamedTuple):
    siblings: List
    current_index: int
    total: int


def parent_key(parent_id: Optional[str]) -> str:
    """Branch-state key for the sibling group under parent_id."""
    return parent_id if parent_id is not None else ROOT_KEY


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is written in UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def creation_order(message) -> Tuple[datetime, str]:
    """Sort key for siblings: creation time, then insertion-ordered id."""
    return _as_utc(message.created_at), message.id


def sort_messages(messages: Iterable[M]) -> List[M]:
    return sorted(messages, key=creation_order)


def group_children(messages: Iterable[M]) -> Dict[Optional[str], List[M]]:
    """Map each parent id (None for roots) to its children in creation order."""
    children: Dict[Optional[str], List[M]] = defaultdict(list)
    for message in sort_messages(messages):
        children[message.parent_id].append(message)
    return children


def build_active_conversation(
    messages: Iterable[M],
    branch_state: Mapping[str, str],
    strict: bool = False,
) -> List[M]:
    """
    Resolve the active root-to-leaf path.

    Args:
        messages: Every message of one thread, in any order
        branch_state: Mapping of parent key ("root" or a message id) to the
            id of the child that should be active under it
        strict: Raise ConcurrentModification instead of falling back to the
            latest child when an override names a non-member

    Returns:
        The active conversation, each element the parent of the next
    """
    children = group_children(messages)
    path: List[M] = []
    current: Optional[str] = None

    while True:
        candidates = children.get(current)
        if not candidates:
            break

        key = parent_key(current)
        chosen = candidates[-1]
        override = branch_state.get(key)
        if override is not None:
            match = next((m for m in candidates if m.id == override), None)
            if match is not None:
                chosen = match
            elif strict:
                raise ConcurrentModification(getattr(candidates[0], "thread_id", ""), key, override)

        path.append(chosen)
        current = chosen.id

    return path


def find_stale_overrides(messages: Iterable[M], branch_state: Mapping[str, str]) -> List[Tuple[str, str]]:
    """Return (parent_key, active_child_id) pairs whose child is not in that sibling group."""
    children = group_children(messages)
    members = {
        parent_key(parent): {m.id for m in group}
        for parent, group in children.items()
    }
    return [
        (key, child_id)
        for key, child_id in branch_state.items()
        if child_id not in members.get(key, set())
    ]


def sibling_position(siblings: Sequence[M], message_id: str) -> SiblingInfo:
    """Locate message_id within an already ordered sibling group."""
    index = next((i for i, m in enumerate(siblings) if m.id == message_id), -1)
    return SiblingInfo(list(siblings), index, len(siblings))


def streaming_message_id(messages: Iterable[M], path: Sequence[M]) -> Optional[str]:
    """
    Id of the one message that may still take in-place updates.

    That is the most recently created assistant message of the thread, and
    only while it is the leaf of the active path; every other message is
    history.
    """
    assistants = [m for m in messages if m.role == MessageRole.ASSISTANT]
    if not assistants or not path:
        return None

    latest = max(assistants, key=creation_order)
    return latest.id if path[-1].id == latest.id else None
