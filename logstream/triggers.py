"""Caller-side rotation triggers: size threshold and fixed interval."""

import asyncio
import logging
import os

from logstream.models import RotationTrigger

logger = logging.getLogger(__name__)


class SizeTrigger:
    """Rotates the stream once the current file reaches ``max_bytes``."""

    def __init__(self, stream, max_bytes: int):
        self._stream = stream
        self._max_bytes = max_bytes
        self._size = 0
        stream.on("newfile", self._on_newfile)
        stream.on("perf-writebatch", self._on_writebatch)

    @property
    def size(self) -> int:
        return self._size

    def detach(self):
        """Stop watching the stream; no further rotations are requested."""
        self._stream.off("newfile", self._on_newfile)
        self._stream.off("perf-writebatch", self._on_writebatch)

    def _on_newfile(self, info):
        try:
            self._size = os.path.getsize(info.path)
        except OSError:
            self._size = 0
        self._check()

    def _on_writebatch(self, bytes_written, _count, _queue_length):
        self._size += bytes_written
        self._check()

    def _check(self):
        if self._size < self._max_bytes or self._stream.rotating:
            return
        logger.debug("Size threshold reached (%d >= %d bytes)", self._size, self._max_bytes)
        self._stream.rotate(
            RotationTrigger("size", {"size": self._size, "threshold": self._max_bytes})
        )


class PeriodicTrigger:
    """Rotates the stream every ``interval`` seconds while started."""

    def __init__(self, stream, interval: float):
        self._stream = stream
        self._interval = interval
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _run(self):
        while True:
            await asyncio.sleep(self._interval)
            self._stream.rotate(RotationTrigger("time", {"interval": self._interval}))
