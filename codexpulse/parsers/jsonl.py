"""Incremental JSONL parsing for rollout files that are still being written."""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from pydantic import ValidationError

from codexpulse.models import RolloutEntry


@dataclass
class ParsedChunk:
    entries: list[RolloutEntry] = field(default_factory=list)
    remainder: str = ""
    # complete lines that were dropped; only used for metrics
    malformed: int = 0


def _parse_entry(line: str) -> RolloutEntry | None:
    try:
        raw: Any = json.loads(line)
    except json.JSONDecodeError:
        return None
    if not isinstance(raw, dict):
        return None
    try:
        return RolloutEntry.model_validate(raw)
    except ValidationError:
        return None


def parse_jsonl_chunk(chunk: str, previous_remainder: str = "") -> ParsedChunk:
    """Parse newly appended JSONL text, carrying incomplete lines forward.

    ``previous_remainder`` is the trailing text returned by the previous call.
    Feeding a file's appended text through this function call by call, each
    time with the last remainder, yields the same entries as parsing the
    whole file at once.
    """
    lines = (previous_remainder + chunk).split("\n")
    remainder = lines.pop()
    result = ParsedChunk()

    for line in lines:
        if not line.strip():
            continue
        entry = _parse_entry(line)
        if entry is None:
            result.malformed += 1
            continue
        result.entries.append(entry)

    # The final line may be complete even without a trailing newline.
    if remainder.strip():
        entry = _parse_entry(remainder)
        if entry is not None:
            result.entries.append(entry)
            remainder = ""

    result.remainder = remainder
    return result
