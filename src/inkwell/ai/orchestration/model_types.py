"""Internal data classes for the orchestration turn handling."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, Mapping

from .json_fragments import decode_arguments

if TYPE_CHECKING:
    from .envelope import ControlEnvelope


class Role(str, enum.Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


@dataclass(slots=True)
class ToolCallRequest:
    """Tool call directive emitted by the model.

    ``arguments`` stays the raw text assembled from stream fragments; it is
    only decoded once the stream is known to be complete.
    """

    call_id: str
    name: str
    arguments: str = ""

    @property
    def signature(self) -> str:
        return f"{self.name}:{self.arguments}"

    def decode_arguments(self) -> Any:
        return decode_arguments(self.arguments)

    def to_chat_param(self) -> Dict[str, Any]:
        return {
            "id": self.call_id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments or "{}"},
        }


@dataclass(frozen=True, slots=True)
class Message:
    """One committed entry of the conversation log."""

    role: Role
    content: str | None = None
    tool_calls: tuple[ToolCallRequest, ...] = ()
    tool_call_id: str | None = None

    def to_chat_param(self) -> Dict[str, Any]:
        """Return the OpenAI chat-completions representation of this message."""
        payload: Dict[str, Any] = {"role": self.role.value, "content": self.content}
        if self.tool_calls:
            payload["tool_calls"] = [call.to_chat_param() for call in self.tool_calls]
        if self.role is Role.TOOL:
            payload["tool_call_id"] = self.tool_call_id or ""
            payload["content"] = self.content or ""
        return payload


@dataclass(frozen=True, slots=True)
class UsageCounters:
    """Token usage for one turn or an accumulated run.

    ``explicit_total`` records whether the backend reported ``total_tokens``;
    otherwise :attr:`resolved_total` derives it from the two parts.
    """

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    explicit_total: bool = False

    @property
    def resolved_total(self) -> int:
        if self.explicit_total:
            return self.total_tokens
        return self.prompt_tokens + self.completion_tokens

    @property
    def is_empty(self) -> bool:
        return not (self.prompt_tokens or self.completion_tokens or self.resolved_total)

    def resolved(self) -> "UsageCounters":
        return UsageCounters(self.prompt_tokens, self.completion_tokens, self.resolved_total, True)

    def __add__(self, other: "UsageCounters") -> "UsageCounters":
        if not isinstance(other, UsageCounters):
            return NotImplemented
        return UsageCounters(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            total_tokens=self.resolved_total + other.resolved_total,
            explicit_total=True,
        )

    def to_dict(self) -> Dict[str, int]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.resolved_total,
        }


class StreamEventKind(enum.Enum):
    """Closed set of normalized backend stream events."""

    TEXT_DELTA = "text.delta"
    REFUSAL_DELTA = "refusal.delta"
    TOOL_CALL_CREATED = "tool_call.created"
    TOOL_CALL_ARGUMENTS_DELTA = "tool_call.arguments.delta"
    TOOL_CALL_ARGUMENTS_DONE = "tool_call.arguments.done"
    USAGE_DELTA = "usage.delta"
    USAGE_FINAL = "usage.final"
    ERROR = "error"
    INFO = "info"
    UNKNOWN = "unknown"


@dataclass(slots=True)
class StreamEvent:
    """Normalized representation of one backend stream event."""

    kind: StreamEventKind
    text: str | None = None
    role: str = "assistant"
    call_id: str | None = None
    tool_name: str | None = None
    usage: Mapping[str, Any] | None = None
    raw_type: str | None = None


@dataclass(slots=True)
class AssembledTurn:
    """One complete assistant turn reconstructed from a stream."""

    message: Message
    usage: UsageCounters
    refusal: str | None = None
    input_text: str = ""

    @property
    def content(self) -> str:
        return (self.message.content or "").strip()

    @property
    def tool_calls(self) -> tuple[ToolCallRequest, ...]:
        return self.message.tool_calls


@dataclass(slots=True)
class ChatResult:
    """Outcome of one orchestration loop run."""

    response: str
    usage: UsageCounters
    kind: str = "raw"
    envelope: "ControlEnvelope | None" = None
    degraded: bool = False
    reason: str | None = None
    iterations: int = 0
    metadata: Dict[str, Any] = field(default_factory=dict)


__all__ = [
    "Role",
    "ToolCallRequest",
    "Message",
    "UsageCounters",
    "StreamEventKind",
    "StreamEvent",
    "AssembledTurn",
    "ChatResult",
]
