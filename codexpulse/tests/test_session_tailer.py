import asyncio
import functools
import inspect
import json
import tempfile
import unittest
from pathlib import Path
from typing import Optional
from unittest.mock import patch

from codexpulse import config
from codexpulse.models import RolloutEntry
from codexpulse.watch.file_watcher import FileWatcher
from codexpulse.watch.session_tailer import watch_for_first_session, watch_session


def _line(payload_type: str, **extra) -> str:
    return json.dumps(
        {
            "timestamp": "2026-02-15T00:00:00.000Z",
            "type": "event_msg",
            "payload": {"type": payload_type, **extra},
        }
    ) + "\n"


class _FakeWatcher:
    def __init__(self, path: Path, on_change, *, recursive: bool = False, max_depth: Optional[int] = None):
        self.path = Path(path)
        self.on_change = on_change
        self.recursive = recursive
        self.max_depth = max_depth
        self.started = False
        self.stopped = False

    async def start(self) -> None:
        self.started = True

    async def stop(self) -> None:
        self.stopped = True

    async def emit(self, kind: str, path: Path) -> None:
        result = self.on_change([(kind, Path(path))])
        if inspect.isawaitable(result):
            await result


class _TailerTestBase(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.tmpdir = tempfile.TemporaryDirectory()
        self.sessions_dir = Path(self.tmpdir.name) / "sessions"
        self.day_dir = self.sessions_dir / "2026" / "02" / "15"
        self.day_dir.mkdir(parents=True)
        self.watchers: list[_FakeWatcher] = []
        self.events: list[RolloutEntry] = []

    async def asyncTearDown(self) -> None:
        self.tmpdir.cleanup()

    def _factory(self, *args, **kwargs) -> _FakeWatcher:
        watcher = _FakeWatcher(*args, **kwargs)
        self.watchers.append(watcher)
        return watcher

    def _watchers_for(self, path: Path) -> list[_FakeWatcher]:
        return [w for w in self.watchers if w.path == path.absolute()]

    def _append(self, path: Path, text) -> None:
        data = text.encode("utf-8") if isinstance(text, str) else text
        with path.open("ab") as fh:
            fh.write(data)

    def _types(self) -> list[Optional[str]]:
        return [entry.payload_type for entry in self.events]

    async def _watch(self, path: Path, on_event=None):
        return await watch_session(
            path,
            on_event or self.events.append,
            sessions_dir=self.sessions_dir,
            watcher_factory=self._factory,
        )


class SessionTailerTests(_TailerTestBase):
    async def test_starts_at_end_of_file_without_replay(self) -> None:
        rollout = self.day_dir / "rollout-a.jsonl"
        rollout.write_text(_line("task_started") + _line("agent_message"), encoding="utf-8")

        tailer = await self._watch(rollout)
        self.assertEqual(tailer.offset, rollout.stat().st_size)

        self._append(rollout, _line("task_complete"))
        await tailer.read_new_content()

        self.assertEqual(self._types(), ["task_complete"])
        self.assertEqual(tailer.offset, rollout.stat().st_size)
        await tailer.close()

    async def test_watches_file_and_bounded_session_tree(self) -> None:
        rollout = self.day_dir / "rollout-a.jsonl"
        rollout.touch()

        tailer = await self._watch(rollout)

        self.assertTrue(self._watchers_for(rollout)[0].started)
        tree = self._watchers_for(self.sessions_dir)[0]
        self.assertTrue(tree.recursive)
        self.assertEqual(tree.max_depth, 3)
        await tailer.close()

    async def test_reconstructs_line_split_across_appends(self) -> None:
        rollout = self.day_dir / "rollout-a.jsonl"
        rollout.touch()
        tailer = await self._watch(rollout)
        line = _line("task_complete", turn_id="t1")

        self._append(rollout, line[:20])
        await tailer.read_new_content()
        self.assertEqual(self.events, [])
        self.assertEqual(tailer.remainder, line[:20])

        self._append(rollout, line[20:])
        await tailer.read_new_content()
        self.assertEqual(self._types(), ["task_complete"])
        self.assertEqual(tailer.remainder, "")
        await tailer.close()

    async def test_multibyte_character_split_across_reads(self) -> None:
        rollout = self.day_dir / "rollout-a.jsonl"
        rollout.touch()
        tailer = await self._watch(rollout)
        data = _line("agent_reasoning", text="café 中文").encode("utf-8")
        split_at = data.index("中".encode("utf-8")) + 1

        self._append(rollout, data[:split_at])
        await tailer.read_new_content()
        self._append(rollout, data[split_at:])
        await tailer.read_new_content()

        self.assertEqual(len(self.events), 1)
        self.assertEqual(self.events[0].payload["text"], "café 中文")
        await tailer.close()

    async def test_malformed_line_does_not_abort_batch(self) -> None:
        rollout = self.day_dir / "rollout-a.jsonl"
        rollout.touch()
        tailer = await self._watch(rollout)

        self._append(rollout, _line("task_started") + "{broken\n" + _line("task_complete"))
        await tailer.read_new_content()

        self.assertEqual(self._types(), ["task_started", "task_complete"])
        await tailer.close()

    async def test_handler_errors_do_not_abort_batch(self) -> None:
        rollout = self.day_dir / "rollout-a.jsonl"
        rollout.touch()

        def on_event(entry: RolloutEntry) -> None:
            self.events.append(entry)
            if entry.payload_type == "task_started":
                raise RuntimeError("boom")

        tailer = await self._watch(rollout, on_event)
        self._append(rollout, _line("task_started") + _line("task_complete"))
        with self.assertLogs("codexpulse.tailer", level="ERROR"):
            await tailer.read_new_content()

        self.assertEqual(self._types(), ["task_started", "task_complete"])
        await tailer.close()

    async def test_missing_file_is_ignored_until_next_change(self) -> None:
        rollout = self.day_dir / "rollout-a.jsonl"
        rollout.write_text(_line("task_started"), encoding="utf-8")
        tailer = await self._watch(rollout)
        offset = tailer.offset

        rollout.unlink()
        await tailer.read_new_content()

        self.assertEqual(self.events, [])
        self.assertEqual(tailer.offset, offset)
        await tailer.close()

    async def test_truncated_file_clamps_offset(self) -> None:
        rollout = self.day_dir / "rollout-a.jsonl"
        rollout.write_text(_line("task_started") * 3, encoding="utf-8")
        tailer = await self._watch(rollout)

        rollout.write_text("", encoding="utf-8")
        await tailer.read_new_content()
        self.assertEqual(tailer.offset, 0)

        self._append(rollout, _line("task_complete"))
        await tailer.read_new_content()
        self.assertEqual(self._types(), ["task_complete"])
        await tailer.close()

    async def test_growth_during_read_is_coalesced_into_one_catch_up(self) -> None:
        rollout = self.day_dir / "rollout-a.jsonl"
        rollout.touch()
        entered = asyncio.Event()
        release = asyncio.Event()

        async def on_event(entry: RolloutEntry) -> None:
            self.events.append(entry)
            if len(self.events) == 1:
                entered.set()
                await release.wait()

        tailer = await self._watch(rollout, on_event)
        self._append(rollout, _line("task_started"))
        first_pass = asyncio.create_task(tailer.read_new_content())
        await asyncio.wait_for(entered.wait(), timeout=5)

        self._append(rollout, _line("agent_message"))
        await tailer.read_new_content()
        await tailer.read_new_content()
        self.assertEqual(len(self.events), 1)

        release.set()
        await asyncio.wait_for(first_pass, timeout=5)

        self.assertEqual(self._types(), ["task_started", "agent_message"])
        self.assertEqual(tailer.offset, rollout.stat().st_size)
        await tailer.close()

    async def test_file_change_notification_schedules_read(self) -> None:
        rollout = self.day_dir / "rollout-a.jsonl"
        rollout.touch()
        tailer = await self._watch(rollout)

        self._append(rollout, _line("task_started"))
        await self._watchers_for(rollout)[0].emit("modified", rollout)
        await tailer.close()

        self.assertEqual(self._types(), ["task_started"])

    async def test_rotation_switches_to_new_file_from_offset_zero(self) -> None:
        first = self.day_dir / "rollout-a.jsonl"
        first.write_text(_line("task_started"), encoding="utf-8")
        tailer = await self._watch(first)
        self._append(first, '{"partial":')
        await tailer.read_new_content()

        second = self.day_dir / "rollout-b.jsonl"
        second.write_text(_line("user_message", message="hi"), encoding="utf-8")
        tree = self._watchers_for(self.sessions_dir)[0]
        await tree.emit("added", second)

        self.assertEqual(tailer.current_file, second.absolute())
        self.assertEqual(self._types(), ["user_message"])
        self.assertEqual(tailer.remainder, "")
        self.assertTrue(self._watchers_for(first)[0].stopped)
        self.assertTrue(self._watchers_for(second)[0].started)

        self._append(first, _line("task_complete"))
        self._append(second, _line("agent_message"))
        await tailer.read_new_content()
        self.assertEqual(self._types(), ["user_message", "agent_message"])
        await tailer.close()

    async def test_rotation_ignores_current_and_unrelated_files(self) -> None:
        rollout = self.day_dir / "rollout-a.jsonl"
        rollout.touch()
        tailer = await self._watch(rollout)
        tree = self._watchers_for(self.sessions_dir)[0]

        await tree.emit("added", rollout)
        await tree.emit("added", self.day_dir / "notes.txt")
        await tree.emit("modified", self.day_dir / "rollout-b.jsonl")

        self.assertEqual(tailer.current_file, rollout.absolute())
        self.assertEqual(len(self._watchers_for(rollout)), 1)
        await tailer.close()

    async def test_new_day_directory_is_scanned_for_rollout(self) -> None:
        first = self.day_dir / "rollout-a.jsonl"
        first.touch()
        tailer = await self._watch(first)

        new_day = self.sessions_dir / "2026" / "02" / "16"
        new_day.mkdir()
        second = new_day / "rollout-b.jsonl"
        second.write_text(_line("user_message", message="morning"), encoding="utf-8")
        # only the directory event arrives; the file landed before its watch
        tree = self._watchers_for(self.sessions_dir)[0]
        await tree.emit("added", new_day)

        self.assertEqual(tailer.current_file, second.absolute())
        self.assertEqual(self._types(), ["user_message"])
        self.assertTrue(self._watchers_for(first)[0].stopped)
        await tailer.close()

    async def test_empty_new_directory_keeps_current_session(self) -> None:
        rollout = self.day_dir / "rollout-a.jsonl"
        rollout.touch()
        tailer = await self._watch(rollout)

        new_day = self.sessions_dir / "2026" / "02" / "16"
        new_day.mkdir()
        await self._watchers_for(self.sessions_dir)[0].emit("added", new_day)

        self.assertEqual(tailer.current_file, rollout.absolute())
        self.assertEqual(len(self._watchers_for(rollout)), 1)
        await tailer.close()

    async def test_close_is_idempotent_and_stops_scheduling(self) -> None:
        rollout = self.day_dir / "rollout-a.jsonl"
        rollout.touch()
        tailer = await self._watch(rollout)

        await tailer.close()
        await tailer.close()

        self.assertTrue(all(w.stopped for w in self.watchers))
        self._append(rollout, _line("task_started"))
        await self._watchers_for(rollout)[0].emit("modified", rollout)
        await asyncio.sleep(0)
        self.assertEqual(self.events, [])


class FirstSessionWatcherTests(_TailerTestBase):
    async def test_switches_to_first_rollout_without_backfill(self) -> None:
        watcher = await watch_for_first_session(
            self.events.append,
            sessions_dir=self.sessions_dir,
            watcher_factory=self._factory,
        )
        tree = self.watchers[0]
        self.assertIsNone(watcher.current_file)

        await tree.emit("added", self.day_dir / "notes.txt")
        self.assertIsNone(watcher.session)

        rollout = self.day_dir / "rollout-first.jsonl"
        rollout.write_text(_line("task_started"), encoding="utf-8")
        await tree.emit("added", rollout)

        self.assertTrue(tree.stopped)
        session = watcher.session
        assert session is not None
        self.assertEqual(watcher.current_file, rollout.absolute())

        self._append(rollout, _line("task_complete"))
        await session.read_new_content()
        self.assertEqual(self._types(), ["task_complete"])
        await watcher.close()
        self.assertTrue(session.closed)

    async def test_only_first_rollout_is_taken(self) -> None:
        watcher = await watch_for_first_session(
            self.events.append,
            sessions_dir=self.sessions_dir,
            watcher_factory=self._factory,
        )
        tree = self.watchers[0]
        first = self.day_dir / "rollout-1.jsonl"
        second = self.day_dir / "rollout-2.jsonl"
        first.touch()
        second.touch()

        await tree.emit("added", first)
        await tree.emit("added", second)

        self.assertEqual(watcher.current_file, first.absolute())
        await watcher.close()

    async def test_first_rollout_found_inside_new_day_directory(self) -> None:
        watcher = await watch_for_first_session(
            self.events.append,
            sessions_dir=self.sessions_dir,
            watcher_factory=self._factory,
        )
        tree = self.watchers[0]
        new_day = self.sessions_dir / "2026" / "02" / "16"
        new_day.mkdir()
        rollout = new_day / "rollout-first.jsonl"
        rollout.write_text(_line("task_started"), encoding="utf-8")

        await tree.emit("added", new_day)

        self.assertTrue(tree.stopped)
        self.assertEqual(watcher.current_file, rollout.absolute())
        self.assertEqual(self.events, [])
        await watcher.close()

    async def test_close_before_first_session_stops_directory_watch(self) -> None:
        watcher = await watch_for_first_session(
            self.events.append,
            sessions_dir=self.sessions_dir,
            watcher_factory=self._factory,
        )
        await watcher.close()
        await watcher.close()
        self.assertTrue(self.watchers[0].stopped)


class SessionTailerWatchfilesTests(_TailerTestBase):
    async def _wait_for(self, predicate, timeout: float = 15.0) -> None:
        deadline = asyncio.get_running_loop().time() + timeout
        while not predicate():
            if asyncio.get_running_loop().time() > deadline:
                self.fail("condition not met before timeout")
            await asyncio.sleep(0.05)

    async def test_real_watcher_picks_up_appended_entries(self) -> None:
        rollout = self.day_dir / "rollout-live.jsonl"
        rollout.write_text(_line("task_started"), encoding="utf-8")
        factory = functools.partial(FileWatcher, force_polling=True, debounce_ms=10)

        with patch.object(config, "POLL_INTERVAL_MS", 50):
            tailer = await watch_session(
                rollout,
                self.events.append,
                sessions_dir=self.sessions_dir,
                watcher_factory=factory,
            )
            try:
                await asyncio.sleep(0.5)
                self._append(rollout, _line("agent_message"))
                await self._wait_for(lambda: len(self.events) >= 1)
                self._append(rollout, _line("task_complete"))
                await self._wait_for(lambda: len(self.events) >= 2)
            finally:
                await tailer.close()

        self.assertEqual(self._types(), ["agent_message", "task_complete"])


if __name__ == "__main__":
    unittest.main()
