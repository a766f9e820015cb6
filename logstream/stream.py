"""Rotating file stream. Accepts records and ships them to a rotating file set."""

import asyncio
import logging
import time
from collections.abc import Mapping

from logstream.config import StreamConfig, make_config
from logstream.errors import ConfigurationError, SerializationError
from logstream.events import EventEmitter
from logstream.models import FormatPolicy, RotationTrigger
from logstream.queue import LimitedQueue
from logstream.rotator import FileRotator, RotatorState
from logstream.serializer import make_serializer

logger = logging.getLogger(__name__)


class RotatingFileStream(EventEmitter):
    """Producer-facing stream: ``write`` never blocks and never raises.

    Records are serialized on ``write`` and queued; the queue drains to the
    rotator's current file in batches. While the rotator has no open file the
    queue is paused, so records wait instead of being lost.

    Events: error, newfile, losingdata, caughtup, shutdown, logwrite,
    perf-writebatch, perf-queued, perf-rotation.
    """

    def __init__(self, config: StreamConfig | None = None, **options):
        super().__init__()
        self._config = make_config(config, **options) if options else (config or StreamConfig())
        cfg = self._config

        self._policy = cfg.format_policy
        self._serialize = make_serializer(self._policy, cfg.field_order)
        self._map = cfg.map
        self._config_error_reported = False

        self._rotator = FileRotator(cfg.path, cfg.total_files, cfg.total_size, cfg.gzip)
        self._queue = LimitedQueue(
            self._write_batch,
            capacity=cfg.queue_capacity,
            batch_size=cfg.batch_size,
            eviction=cfg.eviction,
            retry_interval=cfg.retry_interval,
        )
        self._queue.pause()
        self._init_task: asyncio.Task | None = None
        self._rotation: asyncio.Task | None = None
        self._shutting_down = False
        self._closing = False

        self._queue.on("losingdata", lambda: self.emit("losingdata"))
        self._queue.on("caughtup", lambda: self.emit("caughtup"))
        self._rotator.on("error", lambda err: self.emit("error", err))
        self._rotator.on("closefile", self._on_closefile)
        self._rotator.on("newfile", self._on_newfile)

    @property
    def config(self) -> StreamConfig:
        return self._config

    @property
    def shared(self):
        return self._config.shared

    @property
    def rotator(self) -> FileRotator:
        return self._rotator

    @property
    def queue(self) -> LimitedQueue:
        return self._queue

    @property
    def rotating(self) -> bool:
        return self._rotation is not None

    # Lifecycle wiring

    async def _on_closefile(self):
        self._queue.pause()
        await self._queue.wait_idle()

    def _on_newfile(self, info):
        self.emit("newfile", info)
        if not self._shutting_down:
            self._queue.resume()

    # Public API

    def initialise(self) -> asyncio.Task:
        """Open the output file in the background. Completion is the ``newfile`` event."""
        if self._policy is FormatPolicy.RAW and self._config.field_order:
            self._report_config_error()
        self._init_task = asyncio.get_running_loop().create_task(
            self._rotator.initialise(self._config.start_new_file)
        )
        return self._init_task

    def write(self, record, callback=None) -> int:
        """Serialize and queue one record. Returns the queue length."""
        if self._map is not None:
            try:
                record = self._map(record)
            except Exception as e:
                self.emit("error", SerializationError(f"map failed: {e}"))
                return len(self._queue)
            if not record:
                return len(self._queue)

        if isinstance(record, (str, bytes)):
            if self._config.field_order:
                self._report_config_error()
        elif not isinstance(record, Mapping):
            self.emit("error", SerializationError(f"Unsupported record type: {type(record).__name__}"))
            return len(self._queue)

        try:
            data = self._serialize(record)
        except SerializationError as e:
            self.emit("error", e)
            return len(self._queue)

        length = self._queue.push(data, callback)
        self.emit("perf-queued", length)
        return length

    def rotate(self, trigger: RotationTrigger | None = None) -> asyncio.Task | None:
        """Start a rotation. Returns None if one is already running."""
        if self._rotation is not None:
            logger.debug("Rotation requested while another is running, skipped")
            return None
        if self._closing:
            logger.debug("Rotation requested during shutdown, skipped")
            return None
        self._rotation = asyncio.get_running_loop().create_task(
            self._rotate(trigger or RotationTrigger())
        )
        return self._rotation

    async def join(self, callback=None) -> None:
        """Write everything queued, close the file, and emit ``shutdown``."""
        await self._shutdown(drain=True)
        if callback is not None:
            callback()

    async def end(self, callback=None) -> None:
        await self.join(callback)

    def destroy(self) -> asyncio.Task:
        """Drop queued records, emit ``shutdown`` now, and close in the background."""
        self._closing = True
        self._discard_queued("destroy")
        task = asyncio.get_running_loop().create_task(self._close())
        self.emit("shutdown")
        return task

    def destroy_soon(self) -> asyncio.Task:
        """Drop queued records; ``shutdown`` follows once the file is closed."""
        self._discard_queued("destroy_soon")
        return asyncio.get_running_loop().create_task(self._shutdown(drain=False))

    # Internals

    def _discard_queued(self, reason: str) -> None:
        self._queue.pause()
        dropped = self._queue.clear()
        if dropped:
            logger.warning("%s discarded %d queued entries", reason, dropped)

    def _report_config_error(self):
        if self._config_error_reported:
            return
        self._config_error_reported = True
        self.emit(
            "error",
            ConfigurationError("field_order cannot be applied to raw text records"),
        )

    async def _rotate(self, trigger: RotationTrigger) -> None:
        started = time.monotonic()
        try:
            await self._rotator.rotate(trigger)
        finally:
            self._rotation = None
            self.emit("perf-rotation", (time.monotonic() - started) * 1000)

    async def _shutdown(self, drain: bool) -> None:
        self._closing = True
        if drain:
            pending = [t for t in (self._init_task, self._rotation) if t is not None and not t.done()]
            if pending:
                await asyncio.wait(pending)
            await self._rotator.wait_settled()
            if self._rotator.state in (RotatorState.OPEN, RotatorState.ROTATING):
                await self._queue.join()
            else:
                self._discard_queued("shutdown without an open file")
        await self._close()
        logger.info("Stream shut down")
        self.emit("shutdown")

    async def _close(self) -> None:
        self._shutting_down = True
        self._queue.pause()
        try:
            await self._rotator.end()
        except Exception as e:
            logger.exception("Error while closing the rotator")
            self.emit("error", e)
        # a batch still in flight at close may have rolled entries back
        await self._queue.wait_idle()
        self._discard_queued("close")

    async def _write_batch(self, batch: list[bytes]) -> int:
        """Write a batch to the current file. Returns the index of the last write."""
        current = self._rotator.current
        written = -1
        bytes_written = 0
        if current is not None:
            for i, data in enumerate(batch):
                try:
                    await current.stream.write(data)
                except (OSError, ValueError) as e:
                    self.emit("error", e)
                    break
                self.emit("logwrite", {"log_size": len(data), "log_str": data})
                bytes_written += len(data)
                written = i
            if written >= 0:
                try:
                    await current.stream.flush()
                except (OSError, ValueError) as e:
                    self.emit("error", e)

        logger.debug("Wrote %d/%d entries (%d bytes)", written + 1, len(batch), bytes_written)
        self.emit("perf-writebatch", bytes_written, written + 1, len(self._queue))
        return written
