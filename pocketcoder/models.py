"""Domain records shared across the orchestration core."""

import json
import time
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from pocketcoder.logging import get_logger

log = get_logger(__name__)

MODE_BUILD = "build"
MODE_PLAN = "plan"
SESSION_MODES = (MODE_BUILD, MODE_PLAN)

ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"
ROLE_SYSTEM = "system"
ROLE_TOOL = "tool"


def utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass(frozen=True)
class ToolCall:
    """A tool invocation requested by the model.

    ``arguments`` stays as the serialized JSON string the vendor produced;
    the executor parses it.
    """

    id: str
    name: str
    arguments: str = "{}"

    def parsed_arguments(self) -> dict[str, Any]:
        """Decode arguments; raises ``ValueError`` on malformed JSON."""
        raw = self.arguments.strip() or "{}"
        value = json.loads(raw)
        if not isinstance(value, dict):
            raise ValueError("Tool arguments must be a JSON object")
        return value

    def to_dict(self) -> dict[str, str]:
        return {"id": self.id, "name": self.name, "arguments": self.arguments}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ToolCall":
        arguments = data.get("arguments", "{}")
        if not isinstance(arguments, str):
            arguments = json.dumps(arguments)
        return cls(id=str(data.get("id", "")), name=str(data.get("name", "")), arguments=arguments)


def encode_tool_calls(tool_calls: list[ToolCall]) -> str | None:
    """Serialize tool calls for storage, ``None`` when there are none."""
    if not tool_calls:
        return None
    return json.dumps([tc.to_dict() for tc in tool_calls])


def decode_tool_calls(raw: str | None) -> list[ToolCall]:
    """Parse stored tool calls; malformed payloads decode to an empty list."""
    if not raw:
        return []
    try:
        items = json.loads(raw)
    except json.JSONDecodeError:
        log.warning("Discarding malformed stored tool calls", payload_chars=len(raw))
        return []
    if not isinstance(items, list):
        return []
    return [ToolCall.from_dict(item) for item in items if isinstance(item, dict)]


@dataclass(frozen=True)
class Message:
    """A persisted conversation message. Immutable once written."""

    session_id: str
    role: str  # "user", "assistant", "system", "tool"
    content: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_call_id: str | None = None
    input_tokens: int | None = None
    output_tokens: int | None = None
    id: str = field(default_factory=new_id)
    timestamp: str = field(default_factory=utcnow_iso)


@dataclass
class ProviderConfiguration:
    """Persisted binding of credentials, base URL and default model to one backend family."""

    registry_id: str
    display_name: str
    base_url: str | None = None
    is_oauth: bool = False
    default_model_id: str = ""
    selected_model_id: str | None = None
    is_active: bool = True
    id: str = field(default_factory=new_id)
    created_at: float = field(default_factory=time.time)

    @property
    def effective_model_id(self) -> str:
        return self.selected_model_id or self.default_model_id


@dataclass
class Project:
    """A project directory the tools are confined to."""

    name: str
    path: str
    id: str = field(default_factory=new_id)


@dataclass
class Session:
    """Conversation session metadata."""

    project_id: str | None = None
    title: str = "New chat"
    provider_id: str | None = None
    model_id: str | None = None
    mode: str = MODE_BUILD
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    id: str = field(default_factory=new_id)
    created_at: str = field(default_factory=utcnow_iso)
    updated_at: str = field(default_factory=utcnow_iso)
