"""Bounded write queue between record producers and disk writes.

Entries are drained in FIFO batches through an async batch writer on the
running event loop. The writer reports the index of the last entry it
persisted; everything after that index goes back to the front of the queue.
"""

import asyncio
import logging
from collections import deque

from logstream.errors import DataLossError
from logstream.events import EventEmitter
from logstream.models import EvictionPolicy, QueueEntry

logger = logging.getLogger(__name__)


class LimitedQueue(EventEmitter):
    """Bounded FIFO with edge-triggered ``losingdata`` / ``caughtup`` events.

    - ``losingdata`` fires once when an admission first evicts an entry.
    - ``caughtup`` fires once when a drain next leaves the queue empty.
    - While paused, pushes still accumulate (subject to capacity) but no
      batch is scheduled.
    """

    def __init__(
        self,
        writer,
        capacity: int = 10000,
        batch_size: int = 50,
        eviction: EvictionPolicy = EvictionPolicy.DROP_OLDEST,
        retry_interval: float = 0.1,
    ):
        super().__init__()
        self._writer = writer
        self._capacity = capacity
        self._batch_size = batch_size
        self._eviction = eviction
        self._retry_interval = retry_interval

        self._entries: deque[QueueEntry] = deque()
        self._paused = False
        self._losing_data = False
        self._scheduled: asyncio.Handle | asyncio.TimerHandle | None = None
        self._task: asyncio.Task | None = None
        self._idle = asyncio.Event()
        self._idle.set()
        self._empty = asyncio.Event()
        self._empty.set()

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def paused(self) -> bool:
        return self._paused

    @property
    def losing_data(self) -> bool:
        return self._losing_data

    @property
    def draining(self) -> bool:
        return self._task is not None

    def push(self, data: bytes, callback=None) -> int:
        """Admit one entry without blocking. Returns the length after admission."""
        self._entries.append(QueueEntry(data, callback))
        self._empty.clear()
        self._enforce_capacity()
        self._schedule()
        return len(self._entries)

    def unshift(self, entries) -> None:
        """Put entries back at the front, keeping their relative order."""
        self._entries.extendleft(reversed(list(entries)))
        if self._entries:
            self._empty.clear()
        self._enforce_capacity()

    def pause(self) -> None:
        if self._paused:
            return
        self._paused = True
        if self._scheduled is not None:
            self._scheduled.cancel()
            self._scheduled = None

    def resume(self) -> None:
        if not self._paused:
            return
        self._paused = False
        self._schedule()

    def clear(self) -> int:
        """Discard every queued entry. Returns how many were dropped."""
        dropped = list(self._entries)
        self._entries.clear()
        self._empty.set()
        for entry in dropped:
            self._discard(entry)
        return len(dropped)

    async def wait_idle(self) -> None:
        """Wait until no batch is being written."""
        await self._idle.wait()

    async def join(self) -> None:
        """Wait until every queued entry has been written.

        Producers must not keep pushing while a join is pending.
        """
        while self._entries or self._task is not None:
            await self._empty.wait()
            await self._idle.wait()

    def _enforce_capacity(self) -> None:
        """Evict until the queue fits, signalling the first overload."""
        if len(self._entries) <= self._capacity:
            return
        while len(self._entries) > self._capacity:
            if self._eviction is EvictionPolicy.DROP_NEWEST:
                dropped = self._entries.pop()
            else:
                dropped = self._entries.popleft()
            self._discard(dropped)
        if not self._losing_data:
            self._losing_data = True
            logger.warning("Write queue over capacity (%d), dropping entries", self._capacity)
            self.emit("losingdata")

    def _discard(self, entry: QueueEntry) -> None:
        if entry.callback is not None:
            try:
                entry.callback(DataLossError("Entry discarded before it was written"))
            except Exception:
                logger.exception("Completion callback failed")

    def _schedule(self, delay: float = 0.0) -> None:
        if self._paused or not self._entries:
            return
        if self._scheduled is not None or self._task is not None:
            return
        loop = asyncio.get_running_loop()
        if delay > 0:
            self._scheduled = loop.call_later(delay, self._tick)
        else:
            self._scheduled = loop.call_soon(self._tick)

    def _tick(self) -> None:
        self._scheduled = None
        if self._paused or not self._entries or self._task is not None:
            return
        batch = [self._entries.popleft() for _ in range(min(self._batch_size, len(self._entries)))]
        self._idle.clear()
        self._task = asyncio.get_running_loop().create_task(self._drain(batch))

    async def _drain(self, batch: list[QueueEntry]) -> None:
        written = -1
        try:
            written = await self._writer([entry.data for entry in batch])
        except Exception:
            logger.exception("Batch writer failed for %d entries", len(batch))
        finally:
            written = max(-1, min(written, len(batch) - 1))
            if written < len(batch) - 1:
                self.unshift(batch[written + 1:])
                logger.debug("Rolled back %d of %d entries", len(batch) - written - 1, len(batch))
            self._task = None
            self._idle.set()

        for entry in batch[:written + 1]:
            if entry.callback is not None:
                try:
                    entry.callback(None)
                except Exception:
                    logger.exception("Completion callback failed")

        if not self._entries:
            self._empty.set()
            if self._losing_data:
                self._losing_data = False
                logger.info("Write queue caught up")
                self.emit("caughtup")
            return

        # no progress: back off instead of spinning on a failing writer
        self._schedule(self._retry_interval if written < 0 else 0.0)
