"""File watcher service using watchfiles.

Watches either a single file for growth or a directory tree, to a bounded
depth, for newly added files, and hands classified changes to a callback.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
from pathlib import Path
from typing import Awaitable, Callable, Optional, Union

from watchfiles import Change, awatch

from codexpulse import config

logger = logging.getLogger("codexpulse.watcher")

ClassifiedChange = tuple[str, Path]
ChangeCallback = Callable[[list[ClassifiedChange]], Union[Awaitable[None], None]]


class FileWatcher:
    """Background watcher that calls ``on_change`` for each batch of changes.

    Uses `watchfiles` (Rust-accelerated) for efficient watching. ``max_depth``
    limits a recursive watch to files at most that many directories below the
    root (``max_depth=3`` accepts ``root/a/b/c/file``).
    """

    def __init__(
        self,
        path: Path,
        on_change: ChangeCallback,
        *,
        recursive: bool = False,
        max_depth: Optional[int] = None,
        force_polling: Optional[bool] = None,
        debounce_ms: Optional[int] = None,
    ):
        self.path = Path(path)
        self._on_change = on_change
        self._recursive = recursive
        self._max_depth = max_depth
        self._force_polling = config.FORCE_POLLING if force_polling is None else force_polling
        self._debounce_ms = config.WATCH_DEBOUNCE_MS if debounce_ms is None else debounce_ms
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self._running = False

    async def start(self) -> None:
        """Start watching in a background task."""
        if self._running:
            logger.warning("File watcher already running for %s", self.path)
            return

        self._running = True
        self._stop_event.clear()
        self._task = asyncio.create_task(self._watch_loop())
        logger.debug("File watcher started for %s", self.path)

    async def stop(self) -> None:
        """Stop the file watcher. Safe to call more than once."""
        self._running = False
        self._stop_event.set()
        task, self._task = self._task, None
        if task and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.debug("File watcher stopped for %s", self.path)

    @property
    def is_running(self) -> bool:
        return self._running

    async def _watch_loop(self) -> None:
        try:
            async for changes in awatch(
                self.path,
                watch_filter=None,
                stop_event=self._stop_event,
                debounce=self._debounce_ms,
                recursive=self._recursive,
                force_polling=self._force_polling,
                poll_delay_ms=config.POLL_INTERVAL_MS,
            ):
                if not self._running:
                    break

                classified = self._classify_changes(changes)
                if not classified:
                    continue
                try:
                    result = self._on_change(classified)
                    if inspect.isawaitable(result):
                        await result
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.error(f"Error handling changes under {self.path}: {e}")
        except asyncio.CancelledError:
            logger.debug("File watcher task cancelled for %s", self.path)
        except FileNotFoundError:
            logger.debug("Watch path %s does not exist", self.path)
        except Exception as e:
            logger.error(f"File watcher error for {self.path}: {e}")
        finally:
            self._running = False

    def _classify_changes(self, changes: set[tuple[Change, str]]) -> list[ClassifiedChange]:
        """Classify raw watchfiles changes into (change_type, path) pairs."""
        result = []
        for change_type, path_str in sorted(changes, key=lambda change: change[1]):
            path = Path(path_str)
            if self._max_depth is not None and not self._within_depth(path):
                continue

            if change_type == Change.deleted:
                result.append(("deleted", path))
            elif change_type == Change.added:
                result.append(("added", path))
            elif change_type == Change.modified:
                result.append(("modified", path))

        return result

    def _within_depth(self, path: Path) -> bool:
        try:
            relative = path.relative_to(self.path)
        except ValueError:
            return False
        return len(relative.parts) <= (self._max_depth or 0) + 1
