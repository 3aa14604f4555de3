"""Conversation log, cumulative usage and phase tracking for one conversation."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Dict, List, Sequence

from .envelope import Phase
from .model_types import Message, Role, UsageCounters

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class MessageEntry:
    role: str
    tag: str | None
    length: int
    timestamp: float
    kind: str = "message"


@dataclass(frozen=True, slots=True)
class UsageEntry:
    tag: str
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    timestamp: float
    kind: str = "usage"


TrackerEntry = MessageEntry | UsageEntry


class ConversationState:
    """Ordered message log plus cumulative usage for one logical conversation.

    Owned by a single orchestration loop (and the chain driving it); never
    share an instance between concurrent conversations. ``entries`` is a
    diagnostic trail only.
    """

    def __init__(
        self,
        system_prompt: str,
        initial_user_message: str | None = None,
        *,
        context_message: str | None = None,
    ) -> None:
        self.system_prompt = system_prompt
        self.messages: List[Message] = []
        self.usage = UsageCounters()
        self.last_phase: Phase | None = None
        self.created_at = datetime.now(UTC)
        self.entries: List[TrackerEntry] = []
        self.message_chars = 0

        self._append(Message(role=Role.SYSTEM, content=system_prompt), tag="system")
        if context_message:
            self._append(Message(role=Role.USER, content=context_message), tag="ctx")
        if initial_user_message is not None:
            self.add_user_message(initial_user_message)

    @property
    def message_count(self) -> int:
        return len(self.messages)

    def add_user_message(self, content: str) -> None:
        self._append(Message(role=Role.USER, content=content), tag="user")

    def push_system_message(self, content: str) -> None:
        self._append(Message(role=Role.SYSTEM, content=content), tag="system")

    def push_tool_message(self, tool_call_id: str, content: str, *, tag: str | None = None) -> None:
        self._append(Message(role=Role.TOOL, content=content, tool_call_id=tool_call_id), tag=tag or "tool")

    def append_assistant(self, message: Message) -> None:
        if message.role is not Role.ASSISTANT:
            raise ValueError(f"Expected an assistant message, got {message.role.value}")
        self._append(message, tag="assistant")

    def record_usage(self, tag: str, usage: UsageCounters) -> None:
        if usage.is_empty:
            return
        resolved = usage.resolved()
        self.usage = self.usage + resolved
        self.entries.append(
            UsageEntry(
                tag=tag,
                prompt_tokens=resolved.prompt_tokens,
                completion_tokens=resolved.completion_tokens,
                total_tokens=resolved.total_tokens,
                timestamp=time.time(),
            )
        )

    def reset_phase(self) -> None:
        self.last_phase = None

    def summary(self) -> Dict[str, int]:
        data = self.usage.to_dict()
        data["message_chars"] = self.message_chars
        data["message_count"] = self.message_count
        return data

    def to_chat_messages(self) -> List[Dict[str, Any]]:
        """Render the log in the chat-completions input shape."""
        return [message.to_chat_param() for message in self.messages]

    def to_responses_input(self) -> List[Dict[str, Any]]:
        """Render the log in the responses input shape.

        The responses input has no tool-call items, so tool results become
        ``input_text`` user turns naming the tool, and assistant turns that
        only carried tool calls are dropped.
        """

        result: List[Dict[str, Any]] = []
        for index, message in enumerate(self.messages):
            if message.role is Role.TOOL:
                tool_name = self._tool_name_for(message.tool_call_id, self.messages[:index])
                result.append(
                    {
                        "role": Role.USER.value,
                        "content": [{"type": "input_text", "text": f"Result from {tool_name}:\n{message.content or ''}"}],
                    }
                )
                continue
            if not message.content:
                continue
            block_type = "output_text" if message.role is Role.ASSISTANT else "input_text"
            result.append(
                {"role": message.role.value, "content": [{"type": block_type, "text": message.content}]}
            )
        return result

    def _append(self, message: Message, *, tag: str) -> None:
        self.messages.append(message)
        length = len(message.content or "")
        self.message_chars += length
        self.entries.append(MessageEntry(role=message.role.value, tag=tag, length=length, timestamp=time.time()))

    @staticmethod
    def _tool_name_for(call_id: str | None, earlier: Sequence[Message]) -> str:
        for candidate in reversed(earlier):
            if candidate.role is not Role.ASSISTANT or not candidate.tool_calls:
                continue
            match = next((call for call in candidate.tool_calls if call.call_id == call_id), None)
            if match is not None:
                return match.name or "unknown"
            return "unknown"
        return "unknown"


__all__ = ["ConversationState", "MessageEntry", "UsageEntry", "TrackerEntry"]
