"""File rotator: owns the current output file and the rotated generations.

On-disk layout for ``path``::

    path          current file
    path.1[.gz]   most recently rotated generation
    path.N[.gz]   oldest kept generation (N <= total_files)
"""

import asyncio
import gzip
import logging
import os
import re
import shutil
from datetime import datetime, timezone
from enum import Enum

import aiofiles
import aiofiles.os

from logstream.errors import RotationError, RotatorStateError
from logstream.events import EventEmitter
from logstream.models import FileInfo, RotationTrigger

logger = logging.getLogger(__name__)


class RotatorState(Enum):
    UNINITIALISED = "uninitialised"
    OPENING = "opening"
    OPEN = "open"
    ROTATING = "rotating"
    CLOSED = "closed"


def compress_file(filepath: str) -> str:
    """Gzip-compress a file in place. Returns the .gz path."""
    gz_path = filepath + ".gz"
    try:
        with open(filepath, "rb") as f_in, gzip.open(gz_path, "wb") as f_out:
            shutil.copyfileobj(f_in, f_out)
    except OSError:
        if os.path.exists(gz_path):
            os.remove(gz_path)
        raise
    os.remove(filepath)
    return gz_path


class FileRotator(EventEmitter):
    """State machine: UNINITIALISED -> OPENING -> OPEN -> (ROTATING -> OPEN)* -> CLOSED.

    At most one handle is live: OPENING and ROTATING both refuse overlapping
    ``initialise`` and ``rotate`` calls.

    Events: ``newfile(FileInfo)``, ``closefile()`` (listeners may be async and
    are awaited before the handle is closed), ``error(exc)``.
    """

    def __init__(self, path: str, total_files: int | None = 10, total_size: int | None = None,
                 gzip: bool = False):
        super().__init__()
        self._path = os.path.abspath(path)
        self._dir = os.path.dirname(self._path)
        self._basename = os.path.basename(self._path)
        self._total_files = total_files
        self._total_size = total_size
        self._gzip = gzip

        self._state = RotatorState.UNINITIALISED
        self._stream = None
        self._current: FileInfo | None = None
        self._version = 0
        self._settled = asyncio.Event()
        self._settled.set()
        self._generation_re = re.compile(re.escape(self._basename) + r"\.(\d+)(\.gz)?$")

    @property
    def path(self) -> str:
        return self._path

    @property
    def state(self) -> RotatorState:
        return self._state

    @property
    def current(self) -> FileInfo | None:
        """Snapshot of the live file, or None while no file is writable."""
        return self._current

    def generation_path(self, generation: int, compressed: bool = False) -> str:
        suffix = ".gz" if compressed else ""
        return f"{self._path}.{generation}{suffix}"

    async def rotated_files(self) -> list[tuple[int, str]]:
        """(generation, path) pairs for every rotated file, newest first."""
        try:
            names = await aiofiles.os.listdir(self._dir)
        except FileNotFoundError:
            return []
        found = []
        for name in names:
            match = self._generation_re.match(name)
            if match:
                found.append((int(match.group(1)), os.path.join(self._dir, name)))
        found.sort()
        return found

    async def initialise(self, start_new: bool = False) -> FileInfo | None:
        if self._state is not RotatorState.UNINITIALISED:
            self.emit("error", RotatorStateError(f"Cannot initialise from state {self._state.value}"))
            return None

        self._state = RotatorState.OPENING
        self._settled.clear()
        try:
            await aiofiles.os.makedirs(self._dir, exist_ok=True)
            if start_new and await self._has_content():
                await self._maintain()
            return await self._open(None)
        except OSError as e:
            logger.error("Failed to open %s: %s", self._path, e)
            self._state = RotatorState.UNINITIALISED
            self.emit("error", RotationError(f"Cannot open {self._path}: {e}"))
            return None
        finally:
            self._settled.set()

    async def rotate(self, trigger: RotationTrigger | None = None) -> FileInfo | None:
        """Close the current file, shift generations, and open a fresh file.

        A call made while an open or another rotation is running does nothing. From
        UNINITIALISED (e.g. after a failed reopen) rotation retries the open.
        """
        if self._state in (RotatorState.OPENING, RotatorState.ROTATING):
            logger.debug("Open or rotation already in progress, ignoring trigger %s", trigger)
            return None
        if self._state is RotatorState.CLOSED:
            self.emit("error", RotatorStateError("Cannot rotate a closed rotator"))
            return None

        was_open = self._state is RotatorState.OPEN
        self._state = RotatorState.ROTATING
        self._settled.clear()
        try:
            if was_open:
                await self._close_current()

            try:
                await aiofiles.os.makedirs(self._dir, exist_ok=True)
                await self._maintain()
            except (OSError, RotationError) as e:
                logger.error("Rotation maintenance failed for %s: %s", self._path, e)
                self.emit("error", e if isinstance(e, RotationError) else RotationError(str(e)))

            # If maintenance failed the old file is still at path and is reopened
            try:
                return await self._open(trigger)
            except OSError as e:
                logger.error("No writable file after rotation of %s: %s", self._path, e)
                self._state = RotatorState.UNINITIALISED
                self.emit("error", RotationError(f"Cannot open {self._path}: {e}"))
                return None
        finally:
            self._settled.set()

    async def wait_settled(self) -> None:
        """Wait for any running initialise or rotation to finish."""
        await self._settled.wait()

    async def end(self) -> None:
        """Close the current file without opening another. Terminal."""
        await self._settled.wait()
        if self._state is RotatorState.CLOSED:
            return
        was_open = self._state is RotatorState.OPEN
        self._state = RotatorState.CLOSED
        if was_open:
            await self._close_current()
        logger.info("Rotator closed for %s", self._path)

    async def _close_current(self) -> None:
        stream = self._stream
        self._current = None
        await self.emit_async("closefile")
        self._stream = None
        if stream is None:
            return
        try:
            await stream.close()
        except (OSError, ValueError) as e:
            self.emit("error", RotationError(f"Failed to close {self._path}: {e}"))

    async def _open(self, trigger: RotationTrigger | None) -> FileInfo:
        stream = await aiofiles.open(self._path, mode="ab")
        self._stream = stream
        self._version += 1
        self._state = RotatorState.OPEN
        info = FileInfo(
            path=self._path,
            stream=stream,
            opened_at=datetime.now(timezone.utc),
            version=self._version,
            trigger=trigger,
        )
        self._current = info
        logger.info("Opened %s (version %d)", self._path, self._version)
        self.emit("newfile", info)
        return info

    async def _has_content(self) -> bool:
        try:
            return await aiofiles.os.path.getsize(self._path) > 0
        except OSError:
            return False

    async def _maintain(self) -> None:
        """Shift generations, apply retention, compress, and enforce total_size."""
        if not await aiofiles.os.path.exists(self._path):
            return

        generations = await self.rotated_files()
        limit = self._total_files

        for generation, path in reversed(generations):
            if limit is not None and generation >= limit:
                await aiofiles.os.remove(path)
                logger.info("Purged %s", path)
                continue
            compressed = path.endswith(".gz")
            await aiofiles.os.replace(path, self.generation_path(generation + 1, compressed))

        if limit == 0:
            await aiofiles.os.remove(self._path)
            logger.info("Discarded %s (no generations retained)", self._path)
            return

        newest = self.generation_path(1)
        await aiofiles.os.replace(self._path, newest)
        logger.info("Rotated %s -> %s", self._path, newest)

        if self._gzip:
            try:
                newest = await asyncio.to_thread(compress_file, newest)
                logger.info("Compressed: %s", newest)
            except OSError as e:
                # generation 1 stays uncompressed
                self.emit("error", RotationError(f"Compression failed for {newest}: {e}"))

        await self._enforce_total_size()

    async def _enforce_total_size(self) -> None:
        if self._total_size is None:
            return
        generations = await self.rotated_files()
        sizes = {}
        for _, path in generations:
            sizes[path] = await aiofiles.os.path.getsize(path)
        total = sum(sizes.values())
        while generations and total > self._total_size:
            _, oldest = generations.pop()
            await aiofiles.os.remove(oldest)
            total -= sizes[oldest]
            logger.info("Purged %s to stay within %d bytes", oldest, self._total_size)
