"""Tests for the rotating file stream."""

import asyncio
import dataclasses
import json

import aiofiles
import pytest

from logstream.errors import ConfigurationError, DataLossError, RotationError, SerializationError
from logstream.models import RotationTrigger
from logstream.rotator import RotatorState
from logstream.stream import RotatingFileStream


def _make_stream(tmp_path, **overrides) -> RotatingFileStream:
    defaults = dict(path=str(tmp_path / "app.log"), retry_interval=0.01)
    defaults.update(overrides)
    return RotatingFileStream(**defaults)


def _collect(stream, *events) -> list:
    seen = []
    for name in events:
        stream.on(name, lambda *args, name=name: seen.append((name, args)))
    return seen


def _names(seen) -> list[str]:
    return [name for name, _ in seen]


class FlakyFile:
    """Wraps an open file; write number ``fail_on`` raises OSError after ``delay``."""

    def __init__(self, inner, fail_on, delay=0.0):
        self._inner = inner
        self._fail_on = fail_on
        self._delay = delay
        self.calls = 0

    @property
    def closed(self):
        return self._inner.closed

    async def write(self, data):
        self.calls += 1
        if self.calls == self._fail_on:
            await asyncio.sleep(self._delay)
            raise OSError("disk full")
        return await self._inner.write(data)

    async def flush(self):
        return await self._inner.flush()


def _install_flaky(stream, **kwargs) -> FlakyFile:
    info = stream.rotator.current
    flaky = FlakyFile(info.stream, **kwargs)
    stream.rotator._current = dataclasses.replace(info, stream=flaky)
    return flaky


async def _all_lines(stream) -> list[bytes]:
    """Every line on disk, oldest generation first, then the current file."""
    lines = []
    for _, path in reversed(await stream.rotator.rotated_files()):
        with open(path, "rb") as f:
            lines.extend(f.read().splitlines(keepends=True))
    with open(stream.rotator.path, "rb") as f:
        lines.extend(f.read().splitlines(keepends=True))
    return lines


# ── scenarios ───────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_text_line_on_fresh_file(tmp_path):
    stream = _make_stream(tmp_path, format="text", start_new_file=True)
    seen = _collect(stream, "newfile", "error")

    await stream.initialise()
    assert _names(seen) == ["newfile"]
    assert (tmp_path / "app.log").exists()

    stream.write({"msg": "hi", "level": 30, "name": "svc", "pid": 1, "time": "T"})
    await stream.join()

    assert (tmp_path / "app.log").read_bytes() == b'[T] svc.INFO L=30 E="hi" pid=1\n'


@pytest.mark.asyncio
async def test_rotate_with_undrained_records_writes_to_new_file(tmp_path):
    stream = _make_stream(tmp_path, format="text")
    await stream.initialise()
    stream.write({"msg": "before", "level": 30, "name": "svc", "pid": 1, "time": "T0"})
    await asyncio.wait_for(stream.queue.join(), timeout=2)

    order = []
    stream.rotator.on("closefile", lambda: order.append(("closefile", len(stream.queue))))
    stream.on("newfile", lambda info: order.append(("newfile", len(stream.queue))))

    task = stream.rotate(RotationTrigger("size"))
    stream.write({"msg": "one", "level": 30, "name": "svc", "pid": 1, "time": "T1"})
    stream.write({"msg": "two", "level": 30, "name": "svc", "pid": 1, "time": "T2"})
    await task
    await stream.join()

    assert order == [("closefile", 2), ("newfile", 2)]
    assert (tmp_path / "app.log.1").read_bytes() == b'[T0] svc.INFO L=30 E="before" pid=1\n'
    assert (tmp_path / "app.log").read_bytes() == (
        b'[T1] svc.INFO L=30 E="one" pid=1\n'
        b'[T2] svc.INFO L=30 E="two" pid=1\n'
    )


# ── ordering and atomicity ──────────────────────────────────────


@pytest.mark.asyncio
async def test_output_order_matches_write_order(tmp_path):
    stream = _make_stream(tmp_path, batch_size=7)
    await stream.initialise()
    for i in range(100):
        stream.write({"seq": i})
    await stream.join()

    lines = (tmp_path / "app.log").read_bytes().splitlines()
    assert [json.loads(line)["seq"] for line in lines] == list(range(100))


@pytest.mark.asyncio
async def test_batches_never_span_a_rotation(tmp_path):
    stream = _make_stream(tmp_path, batch_size=5, total_files=50)
    spans = []
    original = stream.queue._writer

    async def checked_writer(batch):
        current = stream.rotator.current
        result = await original(batch)
        # the handle a batch started on must still be open when it finishes
        spans.append(current is not None and not current.stream.closed)
        return result

    stream.queue._writer = checked_writer
    await stream.initialise()

    for i in range(200):
        stream.write({"seq": i})
        if i % 40 == 0:
            stream.rotate(RotationTrigger("manual"))
        await asyncio.sleep(0)
    await stream.join()

    assert spans
    assert all(spans)
    lines = await _all_lines(stream)
    assert [json.loads(line)["seq"] for line in lines] == list(range(200))


@pytest.mark.asyncio
async def test_overlapping_rotate_calls_are_skipped(tmp_path):
    stream = _make_stream(tmp_path)
    seen = _collect(stream, "perf-rotation")
    await stream.initialise()

    first = stream.rotate()
    second = stream.rotate()
    assert first is not None
    assert second is None
    assert stream.rotating

    await first
    assert not stream.rotating
    assert _names(seen) == ["perf-rotation"]
    assert seen[0][1][0] >= 0
    await stream.join()


# ── write path ──────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_writes_before_initialise_wait_for_file(tmp_path):
    stream = _make_stream(tmp_path)
    stream.write({"msg": "early"})
    assert len(stream.queue) == 1

    stream.initialise()
    await stream.join()
    assert json.loads((tmp_path / "app.log").read_bytes()) == {"msg": "early"}


@pytest.mark.asyncio
async def test_map_can_drop_records(tmp_path):
    stream = _make_stream(tmp_path, map=lambda r: r if r.get("level", 0) >= 30 else None)
    queued = _collect(stream, "perf-queued")
    await stream.initialise()

    stream.write({"level": 20, "msg": "debug"})
    stream.write({"level": 40, "msg": "warn"})
    await stream.join()

    assert _names(queued) == ["perf-queued"]
    assert json.loads((tmp_path / "app.log").read_bytes()) == {"level": 40, "msg": "warn"}


@pytest.mark.asyncio
async def test_map_transforms_records(tmp_path):
    stream = _make_stream(tmp_path, map=lambda r: {**r, "env": "test"})
    await stream.initialise()
    stream.write({"msg": "m"})
    await stream.join()
    assert json.loads((tmp_path / "app.log").read_bytes()) == {"msg": "m", "env": "test"}


@pytest.mark.asyncio
async def test_ordered_json_stream(tmp_path):
    stream = _make_stream(tmp_path, field_order=["a", "b"])
    await stream.initialise()
    stream.write({"b": 1, "a": 2, "c": 3})
    await stream.join()
    record = json.loads((tmp_path / "app.log").read_bytes())
    assert list(record.keys()) == ["a", "b", "c"]


@pytest.mark.asyncio
async def test_raw_string_with_field_order_reports_config_error(tmp_path):
    stream = _make_stream(tmp_path, field_order=["a"])
    seen = _collect(stream, "error")
    await stream.initialise()

    stream.write("raw line\n")
    stream.write("raw line 2\n")
    await stream.join()

    assert _names(seen) == ["error"]
    assert isinstance(seen[0][1][0], ConfigurationError)
    assert (tmp_path / "app.log").read_bytes() == b"raw line\nraw line 2\n"


@pytest.mark.asyncio
async def test_raw_format_with_field_order_reported_on_initialise(tmp_path):
    stream = _make_stream(tmp_path, format="raw", field_order=["a"])
    seen = _collect(stream, "error")
    await stream.initialise()
    assert isinstance(seen[0][1][0], ConfigurationError)
    await stream.join()


@pytest.mark.asyncio
async def test_unsafe_cyclic_record_is_dropped_alone(tmp_path):
    stream = _make_stream(tmp_path, no_cycles_check=True)
    seen = _collect(stream, "error")
    await stream.initialise()

    cyclic = {"msg": "bad"}
    cyclic["self"] = cyclic
    stream.write(cyclic)
    stream.write({"msg": "good"})
    await stream.join()

    assert isinstance(seen[0][1][0], SerializationError)
    assert json.loads((tmp_path / "app.log").read_bytes()) == {"msg": "good"}


@pytest.mark.asyncio
async def test_unsupported_record_type_reports_error(tmp_path):
    stream = _make_stream(tmp_path)
    seen = _collect(stream, "error")
    assert stream.write(["not", "a", "record"]) == 0
    assert isinstance(seen[0][1][0], SerializationError)


@pytest.mark.asyncio
async def test_diagnostic_events(tmp_path):
    stream = _make_stream(tmp_path)
    seen = _collect(stream, "perf-queued", "logwrite", "perf-writebatch")
    await stream.initialise()

    assert stream.write({"msg": "x"}) == 1
    await stream.join()

    data = b'{"msg": "x"}\n'
    assert seen == [
        ("perf-queued", (1,)),
        ("logwrite", ({"log_size": len(data), "log_str": data},)),
        ("perf-writebatch", (len(data), 1, 0)),
    ]


@pytest.mark.asyncio
async def test_overload_events_are_relayed(tmp_path):
    stream = _make_stream(tmp_path, queue_capacity=2)
    seen = _collect(stream, "losingdata", "caughtup")
    for i in range(3):
        stream.write({"seq": i})
    assert _names(seen) == ["losingdata"]

    stream.initialise()
    await stream.join()
    assert _names(seen) == ["losingdata", "caughtup"]
    lines = (tmp_path / "app.log").read_bytes().splitlines()
    assert [json.loads(line)["seq"] for line in lines] == [1, 2]


# ── shutdown ────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_end_drains_then_closes(tmp_path):
    stream = _make_stream(tmp_path)
    seen = _collect(stream, "shutdown")
    called = []
    await stream.initialise()
    stream.write({"msg": "last"})

    await stream.end(lambda: called.append(True))

    assert called == [True]
    assert _names(seen) == ["shutdown"]
    assert stream.rotator.state is RotatorState.CLOSED
    assert json.loads((tmp_path / "app.log").read_bytes()) == {"msg": "last"}


@pytest.mark.asyncio
async def test_destroy_discards_queue_and_emits_shutdown_now(tmp_path):
    stream = _make_stream(tmp_path)
    seen = _collect(stream, "shutdown")
    results = []
    await stream.initialise()
    stream.write({"msg": "dropped"}, results.append)

    task = stream.destroy()
    assert _names(seen) == ["shutdown"]
    assert isinstance(results[0], DataLossError)

    await task
    assert stream.rotator.state is RotatorState.CLOSED
    assert (tmp_path / "app.log").read_bytes() == b""


@pytest.mark.asyncio
async def test_destroy_soon_emits_shutdown_after_close(tmp_path):
    stream = _make_stream(tmp_path)
    seen = _collect(stream, "shutdown")
    await stream.initialise()
    stream.write({"msg": "dropped"})

    task = stream.destroy_soon()
    assert seen == []
    await task
    assert _names(seen) == ["shutdown"]
    assert stream.rotator.state is RotatorState.CLOSED
    assert (tmp_path / "app.log").read_bytes() == b""


@pytest.mark.asyncio
async def test_join_without_a_file_still_shuts_down(tmp_path):
    (tmp_path / "blocker").write_text("not a directory")
    stream = RotatingFileStream(path=str(tmp_path / "blocker" / "app.log"))
    seen = _collect(stream, "error", "shutdown")
    results = []

    stream.write({"msg": "stuck"}, results.append)
    stream.initialise()
    await asyncio.wait_for(stream.join(), timeout=2)

    assert _names(seen) == ["error", "shutdown"]
    assert isinstance(seen[0][1][0], RotationError)
    assert isinstance(results[0], DataLossError)


@pytest.mark.asyncio
async def test_shared_is_passed_through(tmp_path):
    marker = object()
    stream = _make_stream(tmp_path, shared=marker)
    assert stream.shared is marker


# ── failures ────────────────────────────────────────────────────


async def _raise_oserror(*args, **kwargs):
    raise OSError("too many open files")


def _deeply_nested(depth=5000) -> dict:
    record = {}
    for _ in range(depth):
        record = {"child": record}
    return record


@pytest.mark.asyncio
async def test_initialise_and_rotate_together_leave_one_handle(tmp_path):
    stream = _make_stream(tmp_path)
    seen = _collect(stream, "newfile")

    init = stream.initialise()
    rotation = stream.rotate(RotationTrigger("manual"))
    await asyncio.gather(init, rotation)
    info = stream.rotator.current

    assert _names(seen) == ["newfile"]
    stream.write({"msg": "only"})
    await stream.join()
    assert info.stream.closed
    assert json.loads((tmp_path / "app.log").read_bytes()) == {"msg": "only"}


@pytest.mark.asyncio
async def test_deeply_nested_record_is_reported_not_raised(tmp_path):
    stream = _make_stream(tmp_path)
    seen = _collect(stream, "error")
    await stream.initialise()

    assert stream.write(_deeply_nested()) == 0
    stream.write({"msg": "after"})
    await stream.join()

    assert isinstance(seen[0][1][0], SerializationError)
    assert json.loads((tmp_path / "app.log").read_bytes()) == {"msg": "after"}


@pytest.mark.asyncio
async def test_write_error_retries_remaining_entries(tmp_path):
    stream = _make_stream(tmp_path)
    seen = _collect(stream, "error")
    await stream.initialise()
    _install_flaky(stream, fail_on=2)

    for i in range(3):
        stream.write({"seq": i})
    await stream.join()

    assert _names(seen) == ["error"]
    assert isinstance(seen[0][1][0], OSError)
    lines = (tmp_path / "app.log").read_bytes().splitlines()
    assert [json.loads(line)["seq"] for line in lines] == [0, 1, 2]


@pytest.mark.asyncio
async def test_writes_wait_for_a_file_after_a_failed_reopen(tmp_path, monkeypatch):
    stream = _make_stream(tmp_path)
    seen = _collect(stream, "error")
    await stream.initialise()
    stream.write({"seq": 0})
    await asyncio.wait_for(stream.queue.join(), timeout=2)

    monkeypatch.setattr(aiofiles, "open", _raise_oserror)
    await stream.rotate()
    assert stream.rotator.state is RotatorState.UNINITIALISED
    assert isinstance(seen[0][1][0], RotationError)

    stream.write({"seq": 1})
    await asyncio.sleep(0.05)
    assert len(stream.queue) == 1

    monkeypatch.undo()
    await stream.rotate()
    await stream.join()

    assert json.loads((tmp_path / "app.log.1").read_bytes()) == {"seq": 0}
    assert json.loads((tmp_path / "app.log").read_bytes()) == {"seq": 1}


@pytest.mark.asyncio
async def test_destroy_soon_discards_entries_rolled_back_by_inflight_batch(tmp_path):
    stream = _make_stream(tmp_path, batch_size=5)
    await stream.initialise()
    flaky = _install_flaky(stream, fail_on=2, delay=0.05)
    results = {}
    for i in range(3):
        stream.write({"seq": i}, lambda err, i=i: results.__setitem__(i, err))

    while flaky.calls < 2:
        await asyncio.sleep(0.001)
    await stream.destroy_soon()

    assert results[0] is None
    assert isinstance(results[1], DataLossError)
    assert isinstance(results[2], DataLossError)
    assert len(stream.queue) == 0
    assert json.loads((tmp_path / "app.log").read_bytes()) == {"seq": 0}


@pytest.mark.asyncio
async def test_rotation_requests_during_join_are_skipped(tmp_path):
    stream = _make_stream(tmp_path)
    await stream.initialise()
    stream.write({"seq": 0})

    joining = asyncio.get_running_loop().create_task(stream.join())
    await asyncio.sleep(0)
    assert stream.rotate(RotationTrigger("size")) is None

    await joining
    assert not (tmp_path / "app.log.1").exists()
    assert json.loads((tmp_path / "app.log").read_bytes()) == {"seq": 0}
