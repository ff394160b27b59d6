"""Find the latest active Codex rollout file.

Codex writes session data to <codex home>/sessions/YYYY/MM/DD/rollout-*.jsonl.
This module walks that tree newest-first for the most recently modified file.
"""
from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Optional

import aiofiles.os

from codexpulse import config

logger = logging.getLogger("codexpulse.finder")

_NUMERIC_DIR = re.compile(r"^[0-9]+$")


def is_rollout_name(name: str) -> bool:
    return name.startswith(config.ROLLOUT_PREFIX) and name.endswith(config.ROLLOUT_SUFFIX)


async def _numeric_children_desc(directory: Path) -> list[str]:
    # Date components are zero-padded, so string order is date order.
    names = await aiofiles.os.listdir(directory)
    return sorted((name for name in names if _NUMERIC_DIR.match(name)), reverse=True)


async def _latest_in_day(day_dir: Path) -> Optional[Path]:
    names = await aiofiles.os.listdir(day_dir)
    latest: Optional[Path] = None
    latest_mtime = -1.0
    for name in names:
        if not is_rollout_name(name):
            continue
        path = day_dir / name
        try:
            stat = await aiofiles.os.stat(path)
        except OSError:
            continue
        if stat.st_mtime > latest_mtime:
            latest_mtime = stat.st_mtime
            latest = path
    return latest


async def find_latest_session(sessions_dir: Optional[Path] = None) -> Optional[Path]:
    """Return the newest rollout file, or None when there is none.

    Days are resolved by directory path first: the first (newest) day that
    holds any rollout wins, and mtime only picks between files of that day.
    Filesystem errors are treated as "not found".
    """
    root = Path(sessions_dir) if sessions_dir is not None else config.SESSIONS_DIR
    try:
        if not await aiofiles.os.path.isdir(root):
            return None
        for year in await _numeric_children_desc(root):
            year_dir = root / year
            for month in await _numeric_children_desc(year_dir):
                month_dir = year_dir / month
                for day in await _numeric_children_desc(month_dir):
                    latest = await _latest_in_day(month_dir / day)
                    if latest is not None:
                        return latest
    except OSError as exc:
        logger.debug("Session lookup under %s failed: %s", root, exc)
        return None
    return None
