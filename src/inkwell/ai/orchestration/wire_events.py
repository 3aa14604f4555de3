"""Adapters translating backend wire payloads into :class:`StreamEvent` values.

Two wire shapes are supported: the "responses" event stream, where each
event carries a string ``type`` tag, and chat-completion chunks, where tool
calls are addressed by positional index inside ``choices[0].delta``.
Payloads may be SDK model objects or plain mappings.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping, Protocol

from .model_types import StreamEvent, StreamEventKind

LOGGER = logging.getLogger(__name__)

_INFO_PREFIXES: tuple[str, ...] = (
    "response.created",
    "response.started",
    "response.in_progress",
    "response.queued",
    "response.content_part",
    "response.output_text.done",
    "response.output_text.annotation",
    "response.output_item.done",
    "response.refusal.done",
    "response.reasoning",
)
_TEXT_DELTA_TYPES = frozenset({"response.output_text.delta", "response.input_text.delta"})
_CALL_CREATED_TYPES = frozenset({"response.tool_calls.created", "response.function_call.created"})
_ARGS_DELTA_TYPES = frozenset(
    {"response.tool_calls.arguments.delta", "response.function_call_arguments.delta"}
)
_ARGS_DONE_TYPES = frozenset(
    {"response.tool_calls.arguments.done", "response.function_call_arguments.done"}
)
_COMPLETED_TYPES = frozenset({"response.completed", "response.done"})
_ERROR_TYPES = frozenset({"response.error", "response.failed", "error"})
_CALL_ITEM_TYPES = frozenset({"tool_call", "function_call"})


def field_of(payload: Any, name: str, default: Any = None) -> Any:
    """Read ``name`` from a mapping or an attribute-style SDK object."""

    if payload is None:
        return default
    if isinstance(payload, Mapping):
        value = payload.get(name, default)
    else:
        value = getattr(payload, name, default)
    return default if value is None else value


def _first(payload: Any, *names: str) -> Any:
    for name in names:
        value = field_of(payload, name)
        if value not in (None, ""):
            return value
    return None


class WireAdapter(Protocol):
    def normalize(self, payload: Any) -> list[StreamEvent]:
        ...


class ResponsesEventAdapter:
    """Normalize events from a ``responses`` style stream."""

    def normalize(self, payload: Any) -> list[StreamEvent]:
        event_type = field_of(payload, "type")
        if not isinstance(event_type, str):
            return []

        if event_type in _TEXT_DELTA_TYPES:
            role = "assistant" if event_type == "response.output_text.delta" else "user"
            return [StreamEvent(StreamEventKind.TEXT_DELTA, text=_delta_text(payload), role=role, raw_type=event_type)]
        if event_type == "response.refusal.delta":
            return [StreamEvent(StreamEventKind.REFUSAL_DELTA, text=_delta_text(payload), raw_type=event_type)]
        if event_type == "response.output_item.added":
            return self._item_added(payload, event_type)
        if event_type in _CALL_CREATED_TYPES:
            call = field_of(payload, "tool_call") or payload
            call_id = _first(call, "id") or _first(payload, "item_id", "call_id")
            if not call_id:
                LOGGER.warning("Dropping %s event without a call id", event_type)
                return []
            return [
                StreamEvent(
                    StreamEventKind.TOOL_CALL_CREATED,
                    call_id=str(call_id),
                    tool_name=_call_name(call) or _call_name(payload),
                    raw_type=event_type,
                )
            ]
        if event_type in _ARGS_DELTA_TYPES:
            return [
                StreamEvent(
                    StreamEventKind.TOOL_CALL_ARGUMENTS_DELTA,
                    text=_arguments_delta(payload),
                    call_id=_arguments_call_id(payload),
                    tool_name=_call_name(field_of(payload, "tool_call")) or _call_name(payload),
                    raw_type=event_type,
                )
            ]
        if event_type in _ARGS_DONE_TYPES:
            arguments = field_of(payload, "arguments")
            return [
                StreamEvent(
                    StreamEventKind.TOOL_CALL_ARGUMENTS_DONE,
                    text=arguments if isinstance(arguments, str) else None,
                    call_id=_arguments_call_id(payload),
                    tool_name=_call_name(payload),
                    raw_type=event_type,
                )
            ]
        if event_type == "response.usage.delta":
            return [StreamEvent(StreamEventKind.USAGE_DELTA, usage=_as_mapping(field_of(payload, "delta")), raw_type=event_type)]
        if event_type in _COMPLETED_TYPES:
            usage = field_of(field_of(payload, "response"), "usage") or field_of(payload, "usage")
            return [StreamEvent(StreamEventKind.USAGE_FINAL, usage=_as_mapping(usage), raw_type=event_type)]
        if event_type in _ERROR_TYPES:
            error = field_of(payload, "error") or field_of(field_of(payload, "response"), "error")
            message = field_of(error, "message") or field_of(payload, "message") or "Unknown response stream error"
            return [StreamEvent(StreamEventKind.ERROR, text=str(message), raw_type=event_type)]
        if event_type.startswith(_INFO_PREFIXES):
            return [StreamEvent(StreamEventKind.INFO, raw_type=event_type)]
        return [StreamEvent(StreamEventKind.UNKNOWN, raw_type=event_type)]

    @staticmethod
    def _item_added(payload: Any, event_type: str) -> list[StreamEvent]:
        item = field_of(payload, "item")
        if field_of(item, "type") not in _CALL_ITEM_TYPES:
            return [StreamEvent(StreamEventKind.INFO, raw_type=event_type)]
        call_id = _first(item, "id") or _first(payload, "item_id") or "tool-0"
        return [
            StreamEvent(
                StreamEventKind.TOOL_CALL_CREATED,
                call_id=str(call_id),
                tool_name=_call_name(item) or "unknown",
                raw_type=event_type,
            )
        ]


class ChatDeltaAdapter:
    """Normalize chat-completion chunks.

    Chunks address tool calls by index and usually carry the id only on the
    first fragment. The adapter binds each index to its id on first sight so
    that every emitted event is keyed by id. One adapter per stream.
    """

    def __init__(self) -> None:
        self._ids_by_index: dict[int, str] = {}
        self._role = "assistant"

    def normalize(self, payload: Any) -> list[StreamEvent]:
        events: list[StreamEvent] = []
        error = field_of(payload, "error")
        if error:
            message = field_of(error, "message") or str(error)
            return [StreamEvent(StreamEventKind.ERROR, text=str(message), raw_type="chat.error")]

        choices = field_of(payload, "choices") or []
        delta = field_of(choices[0], "delta") if choices else None
        if delta is not None:
            role = field_of(delta, "role")
            if isinstance(role, str) and role:
                self._role = role
            content = field_of(delta, "content")
            if content:
                events.append(StreamEvent(StreamEventKind.TEXT_DELTA, text=str(content), role=self._role, raw_type="chat.delta"))
            refusal = field_of(delta, "refusal")
            if refusal:
                events.append(StreamEvent(StreamEventKind.REFUSAL_DELTA, text=str(refusal), raw_type="chat.delta"))
            for tool_delta in field_of(delta, "tool_calls") or []:
                events.extend(self._tool_events(tool_delta))

        usage = field_of(payload, "usage")
        if usage:
            events.append(StreamEvent(StreamEventKind.USAGE_FINAL, usage=_as_mapping(usage), raw_type="chat.usage"))
        if not events:
            events.append(StreamEvent(StreamEventKind.INFO, raw_type="chat.chunk"))
        return events

    def _tool_events(self, tool_delta: Any) -> list[StreamEvent]:
        events: list[StreamEvent] = []
        index = field_of(tool_delta, "index", 0)
        function = field_of(tool_delta, "function")
        name = field_of(function, "name") or None
        explicit_id = field_of(tool_delta, "id") or None

        if explicit_id:
            call_id = str(explicit_id)
            if self._ids_by_index.get(index) != call_id:
                self._ids_by_index[index] = call_id
                events.append(StreamEvent(StreamEventKind.TOOL_CALL_CREATED, call_id=call_id, tool_name=name, raw_type="chat.tool_call"))
        elif index in self._ids_by_index:
            call_id = self._ids_by_index[index]
        else:
            call_id = f"call_{index}"
            self._ids_by_index[index] = call_id
            events.append(StreamEvent(StreamEventKind.TOOL_CALL_CREATED, call_id=call_id, tool_name=name, raw_type="chat.tool_call"))

        arguments = field_of(function, "arguments")
        if arguments:
            events.append(
                StreamEvent(
                    StreamEventKind.TOOL_CALL_ARGUMENTS_DELTA,
                    text=str(arguments),
                    call_id=call_id,
                    tool_name=name,
                    raw_type="chat.tool_call",
                )
            )
        return events


def adapter_for(wire_api: str) -> WireAdapter:
    """Return a fresh adapter for ``wire_api`` (``chat`` or ``responses``)."""

    normalized = (wire_api or "chat").strip().lower()
    if normalized == "responses":
        return ResponsesEventAdapter()
    if normalized == "chat":
        return ChatDeltaAdapter()
    raise ValueError(f"Unsupported wire api: {wire_api!r}")


def _delta_text(payload: Any) -> str:
    delta = field_of(payload, "delta", "")
    return delta if isinstance(delta, str) else str(field_of(delta, "text", ""))


def _arguments_delta(payload: Any) -> str:
    delta = field_of(payload, "delta", "")
    if isinstance(delta, str):
        return delta
    arguments = field_of(delta, "arguments", "")
    return arguments if isinstance(arguments, str) else ""


def _arguments_call_id(payload: Any) -> str | None:
    call_id = (
        _first(payload, "tool_call_id")
        or _first(field_of(payload, "tool_call"), "id")
        or _first(payload, "item_id", "call_id", "id")
    )
    return str(call_id) if call_id else None


def _call_name(call: Any) -> str | None:
    if call is None:
        return None
    name = field_of(field_of(call, "function"), "name") or field_of(call, "name")
    return str(name) if name else None


def _as_mapping(value: Any) -> Mapping[str, Any] | None:
    if value is None:
        return None
    if isinstance(value, Mapping):
        return value
    dump = getattr(value, "model_dump", None)
    if callable(dump):
        return dump()
    return {key: getattr(value, key) for key in dir(value) if key.endswith("_tokens")}


__all__ = [
    "WireAdapter",
    "ResponsesEventAdapter",
    "ChatDeltaAdapter",
    "adapter_for",
    "field_of",
]
