"""Write companion status updates to the shared status.json file."""
from __future__ import annotations

import asyncio
import logging
import os
import time
from pathlib import Path
from typing import Optional

import aiofiles
import aiofiles.os

from codexpulse import config
from codexpulse.models import PetState, StatusFile, TokenUsage
from codexpulse.observability import record_status_write, start_span

logger = logging.getLogger("codexpulse.status")

_QueuedWrite = tuple[PetState, str, Optional[TokenUsage], "asyncio.Future[bool]"]


def _now_ms() -> int:
    return int(time.time() * 1000)


class StatusPublisher:
    """Serializes status writes through one FIFO queue.

    ``publish`` enqueues immediately and returns a future that resolves to
    True once that write is on disk, or False if it failed. A failed write
    never blocks the writes queued behind it.
    """

    def __init__(self, status_file: Optional[Path] = None):
        self.status_file = Path(status_file) if status_file is not None else config.STATUS_FILE
        self._queue: Optional[asyncio.Queue[_QueuedWrite]] = None
        self._worker: Optional[asyncio.Task] = None

    def publish(
        self,
        status: PetState,
        action: str,
        usage: Optional[TokenUsage] = None,
    ) -> "asyncio.Future[bool]":
        loop = asyncio.get_running_loop()
        done: asyncio.Future[bool] = loop.create_future()
        self._ensure_worker().put_nowait((status, action, usage, done))
        return done

    async def drain(self) -> None:
        """Wait until every queued write has been attempted."""
        if self._queue is not None:
            await self._queue.join()

    async def close(self) -> None:
        await self.drain()
        worker, self._worker = self._worker, None
        if worker is not None:
            worker.cancel()
            try:
                await worker
            except asyncio.CancelledError:
                pass

    def _ensure_worker(self) -> asyncio.Queue[_QueuedWrite]:
        if self._queue is None or self._worker is None or self._worker.done():
            # Anything left in a dead worker's queue is carried over in order.
            pending = self._queue
            self._queue = asyncio.Queue()
            while pending is not None and not pending.empty():
                self._queue.put_nowait(pending.get_nowait())
            self._worker = asyncio.create_task(self._run())
        return self._queue

    async def _run(self) -> None:
        queue = self._queue
        assert queue is not None
        while True:
            status, action, usage, done = await queue.get()
            try:
                try:
                    with start_span("codexpulse.status.write", {"status": status}) as span:
                        ok = await self._write(status, action, usage)
                        if span is not None:
                            span.set_attribute("written", ok)
                except asyncio.CancelledError:
                    raise
                except Exception:
                    logger.exception("Unexpected failure writing status %r", action)
                    ok = False
                if not done.done():
                    done.set_result(ok)
            finally:
                queue.task_done()

    async def _write(self, status: PetState, action: str, usage: Optional[TokenUsage]) -> bool:
        started = time.perf_counter()
        try:
            data = StatusFile(status=status, action=action, timestamp=_now_ms(), usage=usage)
            await aiofiles.os.makedirs(self.status_file.parent, exist_ok=True)
            await self._write_text(data.to_json())
        except (OSError, ValueError) as exc:
            logger.warning("Failed to write status %r to %s: %s", action, self.status_file, exc)
            record_status_write(status, "error", (time.perf_counter() - started) * 1000)
            return False
        record_status_write(status, "ok", (time.perf_counter() - started) * 1000)
        return True

    async def _write_text(self, text: str) -> None:
        """Replace the status file so readers never see a partial write."""
        tmp_path = self.status_file.with_name(f".{self.status_file.name}.{os.getpid()}.tmp")
        try:
            async with aiofiles.open(tmp_path, "w", encoding="utf-8") as fh:
                await fh.write(text)
            await aiofiles.os.replace(tmp_path, self.status_file)
        except OSError:
            try:
                await aiofiles.os.remove(tmp_path)
            except OSError:
                pass
            raise


async def read_status(status_file: Optional[Path] = None) -> Optional[StatusFile]:
    """Load the current status file, or None if it is missing or invalid."""
    path = Path(status_file) if status_file is not None else config.STATUS_FILE
    try:
        async with aiofiles.open(path, "r", encoding="utf-8") as fh:
            text = await fh.read()
    except OSError:
        return None
    try:
        return StatusFile.model_validate_json(text)
    except ValueError:
        return None
