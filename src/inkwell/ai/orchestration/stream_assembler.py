"""Reconstruct one assistant turn from a stream of normalized events."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterable, Mapping

from ..errors import StreamProtocolError
from .model_types import (
    AssembledTurn,
    Message,
    Role,
    StreamEvent,
    StreamEventKind,
    ToolCallRequest,
    UsageCounters,
)

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class _PendingCall:
    call_id: str
    name: str = ""
    fragments: list[str] = field(default_factory=list)

    def build(self) -> ToolCallRequest:
        return ToolCallRequest(call_id=self.call_id, name=self.name, arguments="".join(self.fragments))


class StreamAssembler:
    """Accumulate text, tool calls and usage for a single turn.

    Tool-call fragments are keyed by call id, never by position, so
    interleaved or repeated chunks for different calls cannot mix. One
    assembler per turn; it does not retry.
    """

    def __init__(self) -> None:
        self._output: list[str] = []
        self._input: list[str] = []
        self._refusal: list[str] = []
        self._calls: dict[str, _PendingCall] = {}
        self._prompt_delta = 0
        self._completion_delta = 0
        self._total_delta = 0
        self._total_reported = False
        self._final_usage: Mapping[str, Any] | None = None
        self._unrecognized: set[str] = set()

    async def assemble(self, events: AsyncIterable[StreamEvent]) -> AssembledTurn:
        async for event in events:
            self.feed(event)
        return self.finish()

    def feed(self, event: StreamEvent) -> None:
        match event.kind:
            case StreamEventKind.TEXT_DELTA:
                if event.text:
                    target = self._output if event.role == Role.ASSISTANT.value else self._input
                    target.append(event.text)
            case StreamEventKind.REFUSAL_DELTA:
                if event.text:
                    self._refusal.append(event.text)
            case StreamEventKind.TOOL_CALL_CREATED:
                self._open_call(event)
            case StreamEventKind.TOOL_CALL_ARGUMENTS_DELTA:
                self._append_arguments(event)
            case StreamEventKind.TOOL_CALL_ARGUMENTS_DONE:
                self._close_arguments(event)
            case StreamEventKind.USAGE_DELTA:
                self._accumulate_usage(event.usage)
            case StreamEventKind.USAGE_FINAL:
                if event.usage:
                    self._final_usage = event.usage
            case StreamEventKind.ERROR:
                raise StreamProtocolError(event.text or "Unknown response stream error", details={"type": event.raw_type})
            case StreamEventKind.INFO:
                pass
            case StreamEventKind.UNKNOWN:
                self._note_unrecognized(event.raw_type)

    def finish(self) -> AssembledTurn:
        content = "".join(self._output)
        refusal = "".join(self._refusal) or None
        if refusal:
            LOGGER.warning("Assistant refusal: %s", refusal)
        if not content and refusal:
            content = refusal
        calls = tuple(pending.build() for pending in self._calls.values())
        message = Message(role=Role.ASSISTANT, content=content or None, tool_calls=calls)
        return AssembledTurn(
            message=message,
            usage=self._resolve_usage(),
            refusal=refusal,
            input_text="".join(self._input),
        )

    def _open_call(self, event: StreamEvent) -> None:
        if not event.call_id:
            LOGGER.warning("Ignoring tool call creation without an id (tool=%s)", event.tool_name or "unknown")
            return
        pending = self._calls.get(event.call_id)
        if pending is None:
            self._calls[event.call_id] = _PendingCall(call_id=event.call_id, name=event.tool_name or "")
        elif event.tool_name and not pending.name:
            pending.name = event.tool_name

    def _append_arguments(self, event: StreamEvent) -> None:
        if not event.call_id:
            LOGGER.warning("Missing tool call id while streaming arguments delta (%s)", event.raw_type)
            return
        pending = self._calls.get(event.call_id)
        if pending is None:
            LOGGER.warning("Arguments arrived before tool call %s was created; opening it", event.call_id)
            pending = _PendingCall(call_id=event.call_id, name=event.tool_name or "")
            self._calls[event.call_id] = pending
        elif event.tool_name and not pending.name:
            pending.name = event.tool_name
        if event.text:
            pending.fragments.append(event.text)

    def _close_arguments(self, event: StreamEvent) -> None:
        if not event.call_id:
            return
        pending = self._calls.get(event.call_id)
        if pending is None:
            pending = _PendingCall(call_id=event.call_id, name=event.tool_name or "")
            self._calls[event.call_id] = pending
        if event.text and not pending.fragments:
            pending.fragments.append(event.text)

    def _accumulate_usage(self, usage: Mapping[str, Any] | None) -> None:
        if not usage:
            return
        prompt = _token_field(usage, "prompt_tokens", "input_tokens") or 0
        completion = _token_field(usage, "completion_tokens", "output_tokens") or 0
        total = _token_field(usage, "total_tokens")
        self._prompt_delta += prompt
        self._completion_delta += completion
        if total is None:
            self._total_delta += prompt + completion
        else:
            self._total_delta += total
            self._total_reported = True

    def _resolve_usage(self) -> UsageCounters:
        prompt = self._prompt_delta
        completion = self._completion_delta
        total = self._total_delta
        explicit = self._total_reported
        if self._final_usage:
            final_prompt = _token_field(self._final_usage, "prompt_tokens", "input_tokens")
            final_completion = _token_field(self._final_usage, "completion_tokens", "output_tokens")
            final_total = _token_field(self._final_usage, "total_tokens")
            prompt = prompt if final_prompt is None else final_prompt
            completion = completion if final_completion is None else final_completion
            if final_total is not None:
                total, explicit = final_total, True
        if not explicit:
            total = prompt + completion
        return UsageCounters(prompt, completion, total, explicit)

    def _note_unrecognized(self, raw_type: str | None) -> None:
        prefix = ".".join((raw_type or "<untyped>").split(".")[:2])
        if prefix in self._unrecognized:
            return
        self._unrecognized.add(prefix)
        LOGGER.warning("Unhandled stream event type: %s", raw_type)


def _token_field(usage: Mapping[str, Any], *names: str) -> int | None:
    for name in names:
        value = usage.get(name)
        if isinstance(value, bool):
            continue
        if isinstance(value, (int, float)):
            return int(value)
    return None


__all__ = ["StreamAssembler"]
