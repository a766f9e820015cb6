"""Counters fed by the stream's diagnostic events."""


class StreamMetrics:
    """Counts what the stream reports through its perf and lifecycle events."""

    def __init__(self, stream=None):
        self._reset()
        if stream is not None:
            self.attach(stream)

    def _reset(self):
        self._queued = 0
        self._written = 0
        self._bytes = 0
        self._batches = 0
        self._rotations = 0
        self._rotation_ms: list[float] = []
        self._max_queue = 0
        self._overloads = 0
        self._errors = 0

    def attach(self, stream):
        stream.on("perf-queued", self.record_queued)
        stream.on("perf-writebatch", self.record_batch)
        stream.on("perf-rotation", self.record_rotation)
        stream.on("losingdata", self.record_overload)
        stream.on("error", self.record_error)

    def record_queued(self, queue_length: int):
        self._queued += 1
        self._max_queue = max(self._max_queue, queue_length)

    def record_batch(self, bytes_written: int, count: int, queue_length: int):
        if count:
            self._batches += 1
        self._written += count
        self._bytes += bytes_written
        self._max_queue = max(self._max_queue, queue_length)

    def record_rotation(self, duration_ms: float):
        self._rotations += 1
        self._rotation_ms.append(duration_ms)

    def record_overload(self):
        self._overloads += 1

    def record_error(self, _err=None):
        self._errors += 1

    def snapshot(self) -> dict:
        """Return a point-in-time snapshot of all counters."""
        durations = self._rotation_ms
        return {
            "queued": self._queued,
            "written": self._written,
            "bytes_written": self._bytes,
            "batches": self._batches,
            "rotations": self._rotations,
            "avg_rotation_ms": sum(durations) / len(durations) if durations else 0.0,
            "max_queue_length": self._max_queue,
            "overloads": self._overloads,
            "errors": self._errors,
        }

    def snapshot_and_reset(self) -> dict:
        snapshot = self.snapshot()
        self._reset()
        return snapshot
