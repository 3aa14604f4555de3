"""Shared test helpers and stub classes.

Stub backends replay scripted :class:`StreamEvent` batches, one batch per
backend call; stub dispatchers record every execution.
"""

from __future__ import annotations

import json
from typing import Any, AsyncIterator, Iterable, Mapping, Sequence

from inkwell.ai.orchestration.cancellation import CancellationToken
from inkwell.ai.orchestration.conversation import ConversationState
from inkwell.ai.orchestration.model_types import Message, StreamEvent, StreamEventKind
from inkwell.ai.orchestration.tool_dispatcher import ToolSpec


def envelope(
    phase: str,
    content: str = "",
    *,
    allowed_tools: Sequence[str] = (),
    allow_tool_use: bool | None = None,
    metadata: Mapping[str, Any] | None = None,
) -> str:
    control: dict[str, Any] = {"allowed_tools": list(allowed_tools)}
    if allow_tool_use is not None:
        control["allow_tool_use"] = allow_tool_use
    payload: dict[str, Any] = {"type": "text", "content": content}
    if metadata is not None:
        payload["metadata"] = dict(metadata)
    return json.dumps({"phase": phase, "control": control, "envelope": payload})


def turn(
    text: str | None = None,
    *,
    calls: Iterable[tuple[str, str, str]] = (),
    usage: Mapping[str, Any] | None = None,
    chunk_size: int = 0,
) -> list[StreamEvent]:
    """Build the events of one assistant turn.

    ``calls`` holds ``(call_id, name, arguments)`` tuples; arguments are
    streamed in ``chunk_size`` pieces when it is positive.
    """

    events: list[StreamEvent] = []
    if text:
        pieces = _chunks(text, chunk_size) if chunk_size else [text]
        events.extend(StreamEvent(StreamEventKind.TEXT_DELTA, text=piece) for piece in pieces)
    for call_id, name, arguments in calls:
        events.append(StreamEvent(StreamEventKind.TOOL_CALL_CREATED, call_id=call_id, tool_name=name))
        pieces = _chunks(arguments, chunk_size) if chunk_size else [arguments]
        events.extend(
            StreamEvent(StreamEventKind.TOOL_CALL_ARGUMENTS_DELTA, text=piece, call_id=call_id) for piece in pieces
        )
    if usage is not None:
        events.append(StreamEvent(StreamEventKind.USAGE_FINAL, usage=dict(usage)))
    return events


def _chunks(text: str, size: int) -> list[str]:
    return [text[index : index + size] for index in range(0, len(text), size)] or [""]


class ScriptedBackend:
    """Replays one scripted item per call; the last item repeats once exhausted.

    Items are event lists, exceptions (raised when the stream opens) or
    callables receiving the call index and returning either.
    """

    def __init__(self, turns: Sequence[Any]) -> None:
        self._turns = list(turns) or [[]]
        self.calls: list[dict[str, Any]] = []

    async def stream_turn(self, state: ConversationState, tools: Sequence[ToolSpec]) -> AsyncIterator[StreamEvent]:
        index = len(self.calls)
        self.calls.append({"messages": list(state.messages), "tools": [spec.name for spec in tools]})
        item = self._turns[min(index, len(self._turns) - 1)]
        if callable(item):
            item = item(index)
        if isinstance(item, BaseException):
            raise item
        for event in item:
            yield event

    def messages_for_call(self, index: int) -> list[Message]:
        return self.calls[index]["messages"]


class RecordingDispatcher:
    """Dispatcher stub returning canned results per tool name."""

    def __init__(self, results: Mapping[str, Any] | None = None) -> None:
        self._results = dict(results or {})
        self.calls: list[tuple[str, Any]] = []

    async def execute(self, name: str, arguments: Any, *, cancel_token: CancellationToken | None = None) -> str:
        self.calls.append((name, arguments))
        result = self._results.get(name, "ok")
        if isinstance(result, BaseException):
            raise result
        if callable(result):
            result = result(arguments)
        return str(result)


def make_state(system_prompt: str = "system") -> ConversationState:
    return ConversationState(system_prompt)


def contents(messages: Iterable[Message], role: str) -> list[str]:
    return [message.content or "" for message in messages if message.role.value == role]



def roles(messages: Iterable[Message]) -> list[str]:
    return [message.role.value for message in messages]


def assert_tool_replies_follow_calls(messages: Sequence[Message]) -> None:
    """Every assistant turn with tool calls is followed directly by one reply per call."""

    for index, message in enumerate(messages):
        if message.role.value != "assistant" or not message.tool_calls:
            continue
        expected = [call.call_id for call in message.tool_calls]
        following = messages[index + 1 : index + 1 + len(expected)]
        assert roles(following) == ["tool"] * len(expected), roles(messages)
        assert [reply.tool_call_id for reply in following] == expected
