"""Pydantic models for Codex rollout entries and companion status."""
from __future__ import annotations

from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

PetState = Literal["idle", "thinking", "working", "reading", "waiting", "done", "error"]

# ── Rollout entry tags ──────────────────────────────────────────────

SESSION_META = "session_meta"
TURN_CONTEXT = "turn_context"
EVENT_MSG = "event_msg"
RESPONSE_ITEM = "response_item"

# event_msg payload types
TASK_STARTED = "task_started"
USER_MESSAGE = "user_message"
TASK_COMPLETE = "task_complete"
AGENT_REASONING = "agent_reasoning"
AGENT_MESSAGE = "agent_message"
TOKEN_COUNT = "token_count"

# response_item payload types
FUNCTION_CALL = "function_call"
CUSTOM_TOOL_CALL = "custom_tool_call"
FUNCTION_CALL_OUTPUT = "function_call_output"
CUSTOM_TOOL_CALL_OUTPUT = "custom_tool_call_output"
MESSAGE = "message"
REASONING = "reasoning"


class RolloutEntry(BaseModel):
    """One line of a Codex rollout JSONL file."""

    model_config = ConfigDict(extra="allow", frozen=True)

    timestamp: Any = ""
    type: str
    payload: dict[str, Any] = Field(default_factory=dict)

    @property
    def payload_type(self) -> Optional[str]:
        value = self.payload.get("type")
        return value if isinstance(value, str) else None


# ── Status models ───────────────────────────────────────────────────

class TokenUsage(BaseModel):
    context: int = 0
    output: int = 0


class StatusUpdate(BaseModel):
    status: PetState
    action: str
    usage: Optional[TokenUsage] = None


class StatusFile(BaseModel):
    """Contents of status.json, rewritten on every publish."""

    status: PetState
    action: str
    timestamp: int  # epoch millis
    usage: Optional[TokenUsage] = None

    def to_json(self) -> str:
        return self.model_dump_json(exclude_none=True, indent=2)
