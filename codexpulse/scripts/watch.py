#!/usr/bin/env python3
"""Run the Codex watcher without the HTTP server.

Tails the active Codex session and writes status updates until SIGINT or
SIGTERM. Exits cleanly when Codex is not installed.
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from pathlib import Path

from codexpulse import config
from codexpulse.parsers.status_writer import StatusPublisher
from codexpulse.service import CodexWatcher

logger = logging.getLogger("codexpulse")


async def _run(codex_home: Path, status_file: Path) -> int:
    publisher = StatusPublisher(status_file)
    watcher = CodexWatcher(publisher, codex_home=codex_home)
    if not await watcher.start():
        return 0

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops have no signal handlers; Ctrl+C still raises.
            pass

    try:
        await stop.wait()
    finally:
        await watcher.stop()
        await publisher.close()
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Publish live Codex session status")
    parser.add_argument("--codex-home", type=Path, default=config.CODEX_HOME, help="Codex home directory")
    parser.add_argument("--status-file", type=Path, default=config.STATUS_FILE, help="Status file to write")
    parser.add_argument("--debug", action="store_true", default=config.DEBUG, help="Verbose logging")
    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.debug else logging.INFO)
    try:
        return asyncio.run(_run(args.codex_home.expanduser(), args.status_file.expanduser()))
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    raise SystemExit(main())
