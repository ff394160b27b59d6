"""Map Codex rollout entries to companion status updates.

Pure functions, no I/O. ``classify_entry`` returns a ``StatusUpdate`` or
None when the entry does not change what the agent is doing.
``extract_usage`` pulls token usage out of ``token_count`` events.
"""
from __future__ import annotations

import json
from typing import Any, Callable, Optional

from codexpulse.models import (
    AGENT_MESSAGE,
    AGENT_REASONING,
    CUSTOM_TOOL_CALL,
    CUSTOM_TOOL_CALL_OUTPUT,
    EVENT_MSG,
    FUNCTION_CALL,
    FUNCTION_CALL_OUTPUT,
    MESSAGE,
    REASONING,
    RESPONSE_ITEM,
    SESSION_META,
    TASK_COMPLETE,
    TASK_STARTED,
    TOKEN_COUNT,
    TURN_CONTEXT,
    USER_MESSAGE,
    RolloutEntry,
    StatusUpdate,
    TokenUsage,
)

_SHELL_TOOLS = {"exec_command", "shell_command"}
_PATCH_TOOL = "apply_patch"
_RESOURCE_TOOL = "read_mcp_resource"
_ESCALATED = "require_escalated"
_FINAL_ANSWER_PHASE = "final_answer"

REASONING_MAX_CHARS = 40

_THINKING = StatusUpdate(status="thinking", action="Thinking...")
_RESPONDING = StatusUpdate(status="thinking", action="Responding...")
_DONE = StatusUpdate(status="done", action="All done!")
_EDITING = StatusUpdate(status="working", action="Editing file...")


def truncate_text(text: str, max_length: int = REASONING_MAX_CHARS) -> str:
    """Cap text at max_length, preferring a word boundary past 60% of it."""
    if len(text) <= max_length:
        return text
    truncated = text[:max_length]
    last_space = truncated.rfind(" ")
    if last_space > max_length * 0.6:
        return truncated[:last_space] + "..."
    return truncated + "..."


def _tool_name(payload: dict[str, Any]) -> str:
    name = payload.get("name")
    return name if isinstance(name, str) and name else "tool"


def _command_head(args: dict[str, Any]) -> str:
    cmd = args.get("cmd")
    if isinstance(cmd, list):
        cmd = " ".join(str(part) for part in cmd)
    if not isinstance(cmd, str):
        return ""
    return cmd.split(" ")[0]


def _map_shell_call(payload: dict[str, Any]) -> StatusUpdate:
    try:
        args = json.loads(payload.get("arguments") or "")
    except (TypeError, json.JSONDecodeError):
        args = None
    if not isinstance(args, dict):
        return StatusUpdate(status="working", action="Running command...")

    command = _command_head(args)
    if args.get("sandbox_permissions") == _ESCALATED:
        if command:
            return StatusUpdate(status="waiting", action=f"Awaiting approval for {command}...")
        return StatusUpdate(status="waiting", action="Awaiting your approval...")
    if command:
        return StatusUpdate(status="working", action=f"Running {command}...")
    return StatusUpdate(status="working", action="Running command...")


def _map_function_call(payload: dict[str, Any]) -> StatusUpdate:
    name = _tool_name(payload)
    if name in _SHELL_TOOLS:
        return _map_shell_call(payload)
    if name == _PATCH_TOOL:
        return _EDITING
    if name == _RESOURCE_TOOL:
        return StatusUpdate(status="reading", action="Reading resource...")
    return StatusUpdate(status="working", action=f"Using {name}...")


def _map_custom_tool_call(payload: dict[str, Any]) -> StatusUpdate:
    name = _tool_name(payload)
    if name == _PATCH_TOOL:
        return _EDITING
    return StatusUpdate(status="working", action=f"Using {name}...")


def _map_message(payload: dict[str, Any]) -> Optional[StatusUpdate]:
    # Developer and user messages are prompt plumbing, not agent activity.
    if payload.get("role") != "assistant":
        return None
    if payload.get("phase") == _FINAL_ANSWER_PHASE:
        return _DONE
    return _RESPONDING


def _map_reasoning_event(payload: dict[str, Any]) -> StatusUpdate:
    text = payload.get("text")
    text = text if isinstance(text, str) else ""
    return StatusUpdate(status="thinking", action=f'Thinking: "{truncate_text(text)}"')


_Mapper = Callable[[dict[str, Any]], Optional[StatusUpdate]]

_EVENT_MSG_MAPPERS: dict[str, _Mapper] = {
    TASK_STARTED: lambda payload: _THINKING,
    USER_MESSAGE: lambda payload: _THINKING,
    TASK_COMPLETE: lambda payload: _DONE,
    AGENT_REASONING: _map_reasoning_event,
    AGENT_MESSAGE: lambda payload: _RESPONDING,
    # usage only, see extract_usage
    TOKEN_COUNT: lambda payload: None,
}

_RESPONSE_ITEM_MAPPERS: dict[str, _Mapper] = {
    FUNCTION_CALL: _map_function_call,
    CUSTOM_TOOL_CALL: _map_custom_tool_call,
    FUNCTION_CALL_OUTPUT: lambda payload: _THINKING,
    CUSTOM_TOOL_CALL_OUTPUT: lambda payload: _THINKING,
    MESSAGE: _map_message,
    REASONING: lambda payload: None,
}


def _dispatch(mappers: dict[str, _Mapper], payload: dict[str, Any]) -> Optional[StatusUpdate]:
    payload_type = payload.get("type")
    if not isinstance(payload_type, str):
        return None
    mapper = mappers.get(payload_type)
    if mapper is None:
        return None
    return mapper(payload)


_ENTRY_MAPPERS: dict[str, _Mapper] = {
    SESSION_META: lambda payload: StatusUpdate(status="idle", action="Codex session started!"),
    TURN_CONTEXT: lambda payload: None,
    EVENT_MSG: lambda payload: _dispatch(_EVENT_MSG_MAPPERS, payload),
    RESPONSE_ITEM: lambda payload: _dispatch(_RESPONSE_ITEM_MAPPERS, payload),
}


def classify_entry(entry: RolloutEntry) -> Optional[StatusUpdate]:
    """Return the status update for a rollout entry, or None to ignore it."""
    mapper = _ENTRY_MAPPERS.get(entry.type)
    if mapper is None:
        return None
    update = mapper(entry.payload)
    # copy, the module-level updates are shared
    return update.model_copy() if update is not None else None


def _as_int(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return int(value)
    return 0


def extract_usage(entry: RolloutEntry) -> Optional[TokenUsage]:
    """Extract token usage from a ``token_count`` event, if present.

    The latest request (``last_token_usage``) is preferred: it already counts
    cached input and reflects the current context window. The cumulative
    ``total_token_usage`` reports cached input separately, so it is added back
    when that snapshot is the only one available.
    """
    if entry.type != EVENT_MSG or entry.payload_type != TOKEN_COUNT:
        return None
    info = entry.payload.get("info")
    if not isinstance(info, dict):
        return None

    last = info.get("last_token_usage")
    if isinstance(last, dict):
        return TokenUsage(
            context=_as_int(last.get("input_tokens")),
            output=_as_int(last.get("output_tokens")),
        )

    total = info.get("total_token_usage")
    if isinstance(total, dict):
        return TokenUsage(
            context=_as_int(total.get("input_tokens")) + _as_int(total.get("cached_input_tokens")),
            output=_as_int(total.get("output_tokens")),
        )
    return None
