# Copyright 2026 BadCompany
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Log capture.

LogTailer follows a log file by polling (file change notifications are not
portable) and republishes appended bytes to a sink. LogBuffer is an in-memory
sink that hands out what was written since the previous read.
"""

import asyncio
import contextlib
import logging
import os
from typing import BinaryIO, Protocol

__all__ = ["LogBuffer", "LogSink", "LogTailer", "pump_stream"]

_CHUNK_SIZE = 64 * 1024

_logger = logging.getLogger("nginx_testing.logs")


class LogSink(Protocol):
    def write(self, data: bytes, /) -> object: ...


class LogBuffer:
    """Collects bytes; read() drains them."""

    def __init__(self) -> None:
        self._chunks: list[bytes] = []

    def write(self, data: bytes) -> int:
        self._chunks.append(bytes(data))
        return len(data)

    def read(self) -> str:
        """Returns everything written since the previous read."""
        data = b"".join(self._chunks)
        self._chunks.clear()
        return data.decode("utf-8", errors="replace")

    def __len__(self) -> int:
        return sum(len(c) for c in self._chunks)


def _publish(sink: LogSink, data: bytes) -> None:
    sink.write(data)
    flush = getattr(sink, "flush", None)
    if callable(flush):
        flush()


async def pump_stream(stream: asyncio.StreamReader, sink: LogSink) -> None:
    """Copies `stream` into `sink` until EOF."""
    while True:
        data = await stream.read(_CHUNK_SIZE)
        if not data:
            break
        _publish(sink, data)


class LogTailer:
    """Follows the file at `path` from its start and forwards new bytes to `sink`.

    The file doesn't have to exist yet. If it's replaced or truncated, it's
    read again from the start.
    """

    def __init__(
        self,
        path: str,
        sink: LogSink,
        interval: float = 0.01,
        *,
        logger: logging.Logger | None = None,
    ) -> None:
        self.path = path
        self.sink = sink
        self.interval = interval
        self._logger = logger or _logger
        self._file: BinaryIO | None = None
        self._inode: int | None = None
        self._position = 0
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._logger.debug("Begins polling of %s", self.path)
        self._task = asyncio.create_task(self._poll_loop())

    async def poll(self) -> int:
        """Reads what's new in the file now; returns the number of bytes published."""
        try:
            st = os.stat(self.path)
        except FileNotFoundError:
            self._close()
            return 0

        if self._file is None or st.st_ino != self._inode or st.st_size < self._position:
            self._close()
            self._file = open(self.path, "rb")
            self._inode = os.fstat(self._file.fileno()).st_ino
            self._position = 0

        self._file.seek(self._position)
        data = self._file.read()
        if data:
            self._position += len(data)
            _publish(self.sink, data)
        return len(data)

    async def stop(self, remove: bool = True) -> None:
        """Stops polling and deletes the file (unless `remove` is False)."""
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None

        try:
            await self.poll()
        finally:
            self._close()
            if remove:
                # Removed so the next run does not read stale logs
                with contextlib.suppress(FileNotFoundError):
                    os.unlink(self.path)

    async def _poll_loop(self) -> None:
        while True:
            try:
                await self.poll()
            except OSError as e:
                self._logger.warning("Failed to read %s: %s", self.path, e)
            await asyncio.sleep(self.interval)

    def _close(self) -> None:
        if self._file:
            self._file.close()
        self._file = None
        self._inode = None
        self._position = 0
