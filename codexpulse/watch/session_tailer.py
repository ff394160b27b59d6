"""Tail a Codex rollout file for new JSONL entries.

Only bytes appended after the tail starts are read. A parallel watch on the
sessions tree switches the tail to a newly created rollout file, starting
that file from offset zero.
"""
from __future__ import annotations

import asyncio
import codecs
import inspect
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional

import aiofiles
import aiofiles.os

from codexpulse import config
from codexpulse.models import RolloutEntry
from codexpulse.observability import (
    record_entries,
    record_parser_failure,
    record_session_rotation,
    start_span,
)
from codexpulse.parsers.jsonl import parse_jsonl_chunk
from codexpulse.session_finder import find_latest_session, is_rollout_name
from codexpulse.watch.file_watcher import ClassifiedChange, FileWatcher

logger = logging.getLogger("codexpulse.tailer")

EventCallback = Callable[[RolloutEntry], Any]
WatcherFactory = Callable[..., FileWatcher]


def _utf8_decoder() -> codecs.IncrementalDecoder:
    return codecs.getincrementaldecoder("utf-8")(errors="replace")


@dataclass
class TailState:
    current_file: Path
    offset: int = 0
    remainder: str = ""
    reading: bool = False
    dirty: bool = False
    # holds a multi-byte character split across two reads
    decoder: codecs.IncrementalDecoder = field(default_factory=_utf8_decoder)

    def retarget(self, path: Path) -> None:
        self.current_file = path
        self.offset = 0
        self.remainder = ""
        self.decoder = _utf8_decoder()


async def _rollout_inside(sessions_dir: Path, directory: Path) -> Optional[Path]:
    """Newest rollout under a freshly created directory.

    Files written into a new directory before the watch on it is armed
    never produce their own event, so the directory is scanned instead.
    """
    if not await aiofiles.os.path.isdir(directory):
        return None
    latest = await find_latest_session(sessions_dir)
    if latest is None:
        return None
    latest = latest.absolute()
    if directory.absolute() not in latest.parents:
        return None
    return latest


class SessionTailer:
    """Follows one rollout file and dispatches each new entry to ``on_event``.

    At most one read pass runs at a time. A growth notification that arrives
    mid-read marks the state dirty and the running pass reads again once it
    finishes, so bursts of notifications collapse into one catch-up read.
    """

    def __init__(
        self,
        session_file: Path,
        on_event: EventCallback,
        *,
        sessions_dir: Optional[Path] = None,
        watcher_factory: WatcherFactory = FileWatcher,
    ):
        self._state = TailState(current_file=Path(session_file).absolute())
        self._on_event = on_event
        root = sessions_dir if sessions_dir is not None else config.SESSIONS_DIR
        self._sessions_dir = Path(root).absolute()
        self._watcher_factory = watcher_factory
        self._file_watcher: Optional[FileWatcher] = None
        self._dir_watcher: Optional[FileWatcher] = None
        self._pending: set[asyncio.Task] = set()
        self._closed = False

    @property
    def current_file(self) -> Path:
        return self._state.current_file

    @property
    def offset(self) -> int:
        return self._state.offset

    @property
    def remainder(self) -> str:
        return self._state.remainder

    @property
    def closed(self) -> bool:
        return self._closed

    async def start(self) -> None:
        # Start from the current end of file; history is not replayed.
        try:
            stat = await aiofiles.os.stat(self._state.current_file)
            self._state.offset = stat.st_size
        except OSError:
            self._state.offset = 0

        logger.info("Tailing session %s from offset %d", self._state.current_file, self._state.offset)
        self._file_watcher = self._watcher_factory(self._state.current_file, self._on_file_change)
        await self._file_watcher.start()
        self._dir_watcher = self._watcher_factory(
            self._sessions_dir,
            self._on_dir_change,
            recursive=True,
            max_depth=config.SESSION_TREE_DEPTH,
        )
        await self._dir_watcher.start()

    async def close(self) -> None:
        """Stop both watches. In-flight reads finish; no new ones start."""
        if self._closed:
            return
        self._closed = True
        for watcher in (self._file_watcher, self._dir_watcher):
            if watcher is not None:
                await watcher.stop()
        current = asyncio.current_task()
        pending = [task for task in self._pending if task is not current]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        logger.info("Stopped tailing %s", self._state.current_file)

    async def read_new_content(self) -> None:
        """Read and dispatch everything appended since the last pass."""
        if self._state.reading:
            self._state.dirty = True
            return
        self._state.reading = True
        try:
            while True:
                self._state.dirty = False
                with start_span(
                    "codexpulse.tail.read",
                    {"session_file": str(self._state.current_file), "offset": self._state.offset},
                ):
                    await self._read_pass()
                if not self._state.dirty or self._closed:
                    break
        finally:
            self._state.reading = False

    async def switch_to(self, path: Path) -> None:
        """Retarget the tail at a new rollout file, reading it from the start."""
        path = Path(path).absolute()
        if path == self._state.current_file or self._closed:
            return
        old_path = self._state.current_file
        self._state.retarget(path)
        record_session_rotation()
        logger.info("Session rotated: %s -> %s", old_path, path)

        old_watcher, self._file_watcher = self._file_watcher, None
        if old_watcher is not None:
            await old_watcher.stop()
        if self._closed:
            return
        self._file_watcher = self._watcher_factory(path, self._on_file_change)
        await self._file_watcher.start()
        # The new file may already hold data by the time we see it.
        await self.read_new_content()

    def _on_file_change(self, changes: list[ClassifiedChange]) -> None:
        if self._closed:
            return
        if any(kind in ("modified", "added") for kind, _ in changes):
            logger.debug("Change detected in %s", self._state.current_file)
            self._schedule_read()

    async def _on_dir_change(self, changes: list[ClassifiedChange]) -> None:
        for kind, path in changes:
            if self._closed:
                return
            if kind != "added":
                continue
            if is_rollout_name(path.name):
                await self.switch_to(path)
                continue
            latest = await _rollout_inside(self._sessions_dir, path)
            if latest is not None:
                await self.switch_to(latest)

    def _schedule_read(self) -> None:
        task = asyncio.create_task(self.read_new_content())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _read_pass(self) -> None:
        state = self._state
        path = state.current_file
        start = state.offset
        try:
            stat = await aiofiles.os.stat(path)
            size = stat.st_size
            if size == start:
                return
            if size < start:
                # Truncated or replaced underneath us; resume at the new end.
                if state.current_file == path:
                    state.offset = size
                    state.remainder = ""
                    state.decoder = _utf8_decoder()
                return
            async with aiofiles.open(path, "rb") as fh:
                await fh.seek(start)
                data = await fh.read(size - start)
        except OSError as exc:
            logger.debug("Read of %s failed, waiting for next change: %s", path, exc)
            return

        if state.current_file != path or state.offset != start:
            # Retargeted while this read was in flight.
            return
        state.offset = start + len(data)
        logger.debug("Read %d new bytes from %s", len(data), path)

        parsed = parse_jsonl_chunk(state.decoder.decode(data), state.remainder)
        state.remainder = parsed.remainder
        record_parser_failure("jsonl", parsed.malformed)
        logger.debug("Parsed %d entries", len(parsed.entries))

        for entry in parsed.entries:
            record_entries(entry.type)
            await self._dispatch(entry)

    async def _dispatch(self, entry: RolloutEntry) -> None:
        try:
            result = self._on_event(entry)
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Event handler failed for %s entry", entry.type)


class FirstSessionWatcher:
    """Waits for the first rollout file to appear, then tails it."""

    def __init__(
        self,
        on_event: EventCallback,
        *,
        sessions_dir: Optional[Path] = None,
        watcher_factory: WatcherFactory = FileWatcher,
    ):
        self._on_event = on_event
        root = sessions_dir if sessions_dir is not None else config.SESSIONS_DIR
        self._sessions_dir = Path(root).absolute()
        self._watcher_factory = watcher_factory
        self._dir_watcher: Optional[FileWatcher] = None
        self._session: Optional[SessionTailer] = None
        self._found = False
        self._closed = False

    @property
    def session(self) -> Optional[SessionTailer]:
        return self._session

    @property
    def current_file(self) -> Optional[Path]:
        return self._session.current_file if self._session is not None else None

    async def start(self) -> None:
        logger.info("No session yet, waiting for a rollout under %s", self._sessions_dir)
        self._dir_watcher = self._watcher_factory(
            self._sessions_dir,
            self._on_dir_change,
            recursive=True,
            max_depth=config.SESSION_TREE_DEPTH,
        )
        await self._dir_watcher.start()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._session is not None:
            await self._session.close()
        elif self._dir_watcher is not None:
            await self._dir_watcher.stop()

    async def _on_dir_change(self, changes: list[ClassifiedChange]) -> None:
        for kind, path in changes:
            if self._found or self._closed:
                return
            if kind != "added":
                continue
            if not is_rollout_name(path.name):
                path = await _rollout_inside(self._sessions_dir, path)
                if path is None or self._found or self._closed:
                    continue
            self._found = True
            logger.info("First session appeared: %s", path)
            if self._dir_watcher is not None:
                await self._dir_watcher.stop()
            session = await watch_session(
                path,
                self._on_event,
                sessions_dir=self._sessions_dir,
                watcher_factory=self._watcher_factory,
            )
            self._session = session
            if self._closed:
                await session.close()
            return


async def watch_session(
    session_file: Path,
    on_event: EventCallback,
    *,
    sessions_dir: Optional[Path] = None,
    watcher_factory: WatcherFactory = FileWatcher,
) -> SessionTailer:
    """Start tailing ``session_file``; call ``on_event`` for each new entry."""
    tailer = SessionTailer(
        session_file,
        on_event,
        sessions_dir=sessions_dir,
        watcher_factory=watcher_factory,
    )
    await tailer.start()
    return tailer


async def watch_for_first_session(
    on_event: EventCallback,
    *,
    sessions_dir: Optional[Path] = None,
    watcher_factory: WatcherFactory = FileWatcher,
) -> FirstSessionWatcher:
    """Wait for the first rollout file under the sessions tree, then tail it."""
    watcher = FirstSessionWatcher(on_event, sessions_dir=sessions_dir, watcher_factory=watcher_factory)
    await watcher.start()
    return watcher
