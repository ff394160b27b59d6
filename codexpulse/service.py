"""Codex watcher service.

Tails the active Codex session and publishes companion status updates.
One instance owns the usage accumulator and the active watch handle.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Literal, Optional, Union

import aiofiles.os

from codexpulse import config
from codexpulse.models import SESSION_META, RolloutEntry, TokenUsage
from codexpulse.parsers.events import classify_entry, extract_usage
from codexpulse.parsers.status_writer import StatusPublisher
from codexpulse.session_finder import find_latest_session
from codexpulse.watch.file_watcher import ClassifiedChange, FileWatcher
from codexpulse.watch.session_tailer import (
    FirstSessionWatcher,
    SessionTailer,
    WatcherFactory,
    watch_for_first_session,
    watch_session,
)

logger = logging.getLogger("codexpulse")

WatcherState = Literal["stopped", "waiting_for_home", "seeking", "tailing"]


class CodexWatcher:
    def __init__(
        self,
        publisher: StatusPublisher,
        *,
        codex_home: Optional[Path] = None,
        sessions_dir: Optional[Path] = None,
        watcher_factory: WatcherFactory = FileWatcher,
    ):
        self.publisher = publisher
        self.codex_home = Path(codex_home) if codex_home is not None else config.CODEX_HOME
        if sessions_dir is not None:
            self.sessions_dir = Path(sessions_dir)
        elif codex_home is not None:
            self.sessions_dir = self.codex_home / "sessions"
        else:
            self.sessions_dir = config.SESSIONS_DIR
        self._watcher_factory = watcher_factory
        self._handle: Optional[Union[SessionTailer, FirstSessionWatcher]] = None
        self._home_watcher: Optional[FileWatcher] = None
        self._latest_usage: Optional[TokenUsage] = None
        self._running = False
        self._sessions_requested = False

    @property
    def latest_usage(self) -> Optional[TokenUsage]:
        return self._latest_usage

    @property
    def state(self) -> WatcherState:
        if not self._running:
            return "stopped"
        if self._handle is None:
            return "waiting_for_home"
        if isinstance(self._handle, FirstSessionWatcher) and self._handle.session is None:
            return "seeking"
        return "tailing"

    @property
    def current_session(self) -> Optional[Path]:
        if self._handle is None:
            return None
        return self._handle.current_file

    def handle_event(self, entry: RolloutEntry) -> None:
        """Classify one rollout entry and publish the resulting status."""
        if logger.isEnabledFor(logging.DEBUG):
            subtype = f" ({entry.payload_type})" if entry.payload_type else ""
            logger.debug("event: %s%s", entry.type, subtype)

        # Usage is cumulative per session; never carry it across sessions.
        if entry.type == SESSION_META:
            self._latest_usage = None

        usage = extract_usage(entry)
        if usage is not None:
            self._latest_usage = usage

        update = classify_entry(entry)
        if update is None:
            return

        logger.debug("-> %s: %s", update.status, update.action)
        self.publisher.publish(update.status, update.action, update.usage or self._latest_usage)

    async def start(self) -> bool:
        """Begin watching. Returns False when there is no Codex home at all."""
        if self._running:
            logger.warning("Codex watcher already running")
            return True
        logger.debug("Starting, sessions dir=%s", self.sessions_dir)

        if await aiofiles.os.path.isdir(self.sessions_dir):
            self._running = True
            await self._start_session_watching()
            return True

        if not await aiofiles.os.path.isdir(self.codex_home):
            logger.info("No Codex home at %s, nothing to watch", self.codex_home)
            return False

        self._running = True
        logger.info("Waiting for %s to be created", self.sessions_dir)
        self._home_watcher = self._watcher_factory(self.codex_home, self._on_home_change, recursive=False)
        await self._home_watcher.start()

        # Re-check after the watch is armed to close the race window.
        if await aiofiles.os.path.isdir(self.sessions_dir):
            await self._sessions_dir_ready()
        return True

    async def stop(self) -> None:
        self._running = False
        self._sessions_requested = False
        home_watcher, self._home_watcher = self._home_watcher, None
        if home_watcher is not None:
            await home_watcher.stop()
        handle, self._handle = self._handle, None
        if handle is not None:
            await handle.close()
        logger.info("Codex watcher stopped")

    async def _on_home_change(self, changes: list[ClassifiedChange]) -> None:
        sessions_dir = self.sessions_dir.absolute()
        for kind, path in changes:
            if kind == "added" and path.absolute() == sessions_dir:
                await self._sessions_dir_ready()
                return

    async def _sessions_dir_ready(self) -> None:
        if self._sessions_requested or not self._running:
            return
        self._sessions_requested = True
        home_watcher, self._home_watcher = self._home_watcher, None
        if home_watcher is not None:
            await home_watcher.stop()
        await self._start_session_watching()

    async def _start_session_watching(self) -> None:
        self._sessions_requested = True
        session_file = await find_latest_session(self.sessions_dir)
        if session_file is not None:
            logger.info("Watching session: %s", session_file)
            self._handle = await watch_session(
                session_file,
                self.handle_event,
                sessions_dir=self.sessions_dir,
                watcher_factory=self._watcher_factory,
            )
        else:
            logger.info("No session found, waiting for first session...")
            self._handle = await watch_for_first_session(
                self.handle_event,
                sessions_dir=self.sessions_dir,
                watcher_factory=self._watcher_factory,
            )
