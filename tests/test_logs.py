import asyncio
import io
import os
from pathlib import Path

import pytest

from nginx_testing.logs import LogBuffer, LogTailer, pump_stream


# --- LogBuffer Tests ---


def test_log_buffer_read_drains() -> None:
    buffer = LogBuffer()
    buffer.write(b"GET / 200\n")
    buffer.write(b"GET /test 418\n")

    assert len(buffer) == 24
    assert buffer.read() == "GET / 200\nGET /test 418\n"
    assert buffer.read() == ""
    assert len(buffer) == 0


def test_log_buffer_replaces_invalid_utf8() -> None:
    buffer = LogBuffer()
    buffer.write(b"caf\xc3")
    assert buffer.read() == "caf\ufffd"


@pytest.mark.asyncio
async def test_pump_stream_copies_until_eof() -> None:
    reader = asyncio.StreamReader()
    reader.feed_data(b"nginx: [notice] ")
    reader.feed_data(b"start worker processes\n")
    reader.feed_eof()
    sink = io.BytesIO()

    await pump_stream(reader, sink)

    assert sink.getvalue() == b"nginx: [notice] start worker processes\n"


@pytest.mark.asyncio
async def test_pump_stream_cancellation_propagates() -> None:
    reader = asyncio.StreamReader()
    reader.feed_data(b"partial")
    sink = io.BytesIO()

    task = asyncio.create_task(pump_stream(reader, sink))
    await asyncio.sleep(0.01)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert task.cancelled()
    assert sink.getvalue() == b"partial"


# --- LogTailer Tests ---


@pytest.mark.asyncio
async def test_tailer_reads_appended_data(tmp_path: Path) -> None:
    path = tmp_path / "access.log"
    buffer = LogBuffer()
    tailer = LogTailer(str(path), buffer)

    # File does not exist yet
    assert await tailer.poll() == 0

    with open(path, "ab") as f:
        f.write(b"line 1\n")
    await tailer.poll()
    assert buffer.read() == "line 1\n"

    with open(path, "ab") as f:
        f.write(b"line 2\n")
    await tailer.poll()
    assert buffer.read() == "line 2\n"

    await tailer.stop()


@pytest.mark.asyncio
async def test_tailer_rereads_truncated_file(tmp_path: Path) -> None:
    path = tmp_path / "access.log"
    path.write_bytes(b"old line that is long\n")
    buffer = LogBuffer()
    tailer = LogTailer(str(path), buffer)

    await tailer.poll()
    assert buffer.read() == "old line that is long\n"

    path.write_bytes(b"new\n")
    await tailer.poll()
    assert buffer.read() == "new\n"

    await tailer.stop()


@pytest.mark.asyncio
async def test_tailer_follows_replaced_file(tmp_path: Path) -> None:
    path = tmp_path / "access.log"
    path.write_bytes(b"first\n")
    buffer = LogBuffer()
    tailer = LogTailer(str(path), buffer)
    await tailer.poll()
    buffer.read()

    rotated = tmp_path / "rotated.log"
    rotated.write_bytes(b"second file, longer than the first\n")
    os.replace(rotated, path)

    await tailer.poll()
    assert buffer.read() == "second file, longer than the first\n"

    await tailer.stop()


@pytest.mark.asyncio
async def test_tailer_polls_in_background(tmp_path: Path) -> None:
    path = tmp_path / "access.log"
    buffer = LogBuffer()
    tailer = LogTailer(str(path), buffer, interval=0.01)
    tailer.start()
    assert tailer.running

    path.write_bytes(b"GET /test\n")
    for _ in range(100):
        if len(buffer):
            break
        await asyncio.sleep(0.01)

    assert buffer.read() == "GET /test\n"
    await tailer.stop()
    assert not tailer.running


@pytest.mark.asyncio
async def test_tailer_stop_flushes_and_removes_file(tmp_path: Path) -> None:
    path = tmp_path / "access.log"
    buffer = LogBuffer()
    tailer = LogTailer(str(path), buffer, interval=10)
    tailer.start()

    path.write_bytes(b"last words\n")
    await tailer.stop()

    assert buffer.read() == "last words\n"
    assert not path.exists()


@pytest.mark.asyncio
async def test_tailer_stop_keeps_file(tmp_path: Path) -> None:
    path = tmp_path / "access.log"
    path.write_bytes(b"x\n")
    tailer = LogTailer(str(path), LogBuffer())

    await tailer.stop(remove=False)

    assert path.exists()
