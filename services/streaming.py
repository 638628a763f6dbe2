"""Coalescing of high-frequency streaming updates to an assistant message."""
import asyncio
import os
from typing import Any, Awaitable, Callable, Dict, Iterable, Mapping, Optional, Tuple, Type
import logging

logger = logging.getLogger(__name__)

# Seconds between durable writes while a message streams (one animation frame)
DEFAULT_FLUSH_INTERVAL = float(os.getenv("STREAM_FLUSH_INTERVAL", "0.016"))

# Retry delay after failed background flushes grows up to interval * 2**6
MAX_BACKOFF_EXPONENT = 6

UpdateWriter = Callable[[str, Dict[str, Any]], Awaitable[None]]


class UpdateCoalescer:
    """
    Merges partial message updates in memory and persists the latest merged
    state at most once per interval.

    push() never blocks; the first push after a flush schedules one delayed
    flush on the running loop. flush() writes immediately and is what callers
    use at end of stream and before reading the tree back.

    Writer errors listed in discard_on mean the target is gone for good: that
    message's updates are dropped and the rest are still written. Any other
    writer error re-queues the unwritten updates; a background flush then
    retries on its own with a growing delay.
    """

    def __init__(
        self,
        writer: UpdateWriter,
        interval: float = DEFAULT_FLUSH_INTERVAL,
        discard_on: Tuple[Type[BaseException], ...] = (),
    ):
        self._writer = writer
        self._interval = interval
        self._discard_on = discard_on
        self._pending: Dict[str, Dict[str, Any]] = {}
        self._timer: Optional[asyncio.Task] = None
        self._lock = asyncio.Lock()
        self._failures = 0

    @property
    def has_pending(self) -> bool:
        return bool(self._pending)

    def push(self, message_id: str, updates: Mapping[str, Any]) -> None:
        """Merge updates for message_id and make sure a flush is scheduled."""
        self._pending.setdefault(message_id, {}).update(updates)
        self._schedule(self._interval)

    def _schedule(self, delay: float) -> None:
        if self._timer is None or self._timer.done():
            self._timer = asyncio.get_running_loop().create_task(self._flush_later(delay))

    async def _flush_later(self, delay: float) -> None:
        await asyncio.sleep(delay)
        try:
            await self.flush()
        except Exception as e:
            self._failures += 1
            logger.exception(f"Background flush of streaming updates failed ({self._failures} in a row): {e}")
        else:
            self._failures = 0
        finally:
            self._timer = None

        # Pushes that arrived during the flush, or updates re-queued by a failure
        if self.has_pending:
            self._schedule(self._interval * 2 ** min(self._failures, MAX_BACKOFF_EXPONENT))

    async def flush(self) -> None:
        """Persist every pending update now, in first-push order."""
        async with self._lock:
            pending, self._pending = self._pending, {}
            done = []
            try:
                for message_id, updates in pending.items():
                    try:
                        await self._writer(message_id, updates)
                    except self._discard_on as e:
                        logger.warning(f"Dropping streaming updates for {message_id}: {e}")
                        self.discard([message_id])
                    done.append(message_id)
            except BaseException:
                for message_id, updates in pending.items():
                    if message_id in done:
                        continue
                    newer = self._pending.get(message_id, {})
                    self._pending[message_id] = {**updates, **newer}
                raise

    def discard(self, message_ids: Iterable[str]) -> None:
        """Drop pending updates for messages that no longer exist."""
        for message_id in message_ids:
            self._pending.pop(message_id, None)

    async def aclose(self) -> None:
        """Cancel the scheduled flush and write whatever is pending."""
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
            try:
                await self._timer
            except asyncio.CancelledError:
                pass
        self._timer = None
        await self.flush()
