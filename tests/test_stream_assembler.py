"""Tests for reconstructing assistant turns from normalized events."""

from __future__ import annotations

import asyncio

import pytest

from helpers import turn
from inkwell.ai.errors import StreamProtocolError
from inkwell.ai.orchestration.model_types import StreamEvent, StreamEventKind
from inkwell.ai.orchestration.stream_assembler import StreamAssembler


def _assemble(events: list[StreamEvent]):
    assembler = StreamAssembler()
    for event in events:
        assembler.feed(event)
    return assembler.finish()


def _args(call_id: str, text: str) -> StreamEvent:
    return StreamEvent(StreamEventKind.TOOL_CALL_ARGUMENTS_DELTA, text=text, call_id=call_id)


def _created(call_id: str, name: str) -> StreamEvent:
    return StreamEvent(StreamEventKind.TOOL_CALL_CREATED, call_id=call_id, tool_name=name)


def test_text_deltas_are_concatenated() -> None:
    result = _assemble(turn("Hello, world", chunk_size=3))

    assert result.content == "Hello, world"
    assert result.tool_calls == ()


def test_interleaved_argument_fragments_stay_with_their_call() -> None:
    events = [
        _created("a", "search"),
        _created("b", "read"),
        _args("a", '{"q": '),
        _args("b", '{"id"'),
        _args("a", '"cats"}'),
        _args("b", ": 3}"),
    ]

    calls = _assemble(events).tool_calls

    assert [(call.call_id, call.name, call.arguments) for call in calls] == [
        ("a", "search", '{"q": "cats"}'),
        ("b", "read", '{"id": 3}'),
    ]
    assert calls[0].decode_arguments() == {"q": "cats"}


def test_interleaving_order_does_not_change_result() -> None:
    ordered = [_created("a", "x"), _args("a", "[1,"), _args("a", "2]"), _created("b", "y"), _args("b", "{}")]
    shuffled = [_created("a", "x"), _created("b", "y"), _args("a", "[1,"), _args("b", "{}"), _args("a", "2]")]

    assert _assemble(ordered).tool_calls == _assemble(shuffled).tool_calls


def test_arguments_before_creation_open_the_call() -> None:
    events = [_args("late", '{"a": 1}'), _created("late", "tool")]

    calls = _assemble(events).tool_calls

    assert calls[0].name == "tool"
    assert calls[0].arguments == '{"a": 1}'


def test_arguments_done_fills_missing_fragments_only() -> None:
    events = [
        _created("a", "x"),
        StreamEvent(StreamEventKind.TOOL_CALL_ARGUMENTS_DONE, text='{"full": true}', call_id="a"),
        _created("b", "y"),
        _args("b", '{"k": 1}'),
        StreamEvent(StreamEventKind.TOOL_CALL_ARGUMENTS_DONE, text='{"k": 2}', call_id="b"),
    ]

    calls = _assemble(events).tool_calls

    assert [call.arguments for call in calls] == ['{"full": true}', '{"k": 1}']


def test_final_usage_overrides_deltas() -> None:
    events = [
        StreamEvent(StreamEventKind.USAGE_DELTA, usage={"input_tokens": 5, "output_tokens": 1}),
        StreamEvent(StreamEventKind.USAGE_DELTA, usage={"input_tokens": 5, "output_tokens": 2}),
        StreamEvent(StreamEventKind.USAGE_FINAL, usage={"prompt_tokens": 40, "completion_tokens": 9, "total_tokens": 52}),
    ]

    usage = _assemble(events).usage

    assert (usage.prompt_tokens, usage.completion_tokens, usage.resolved_total) == (40, 9, 52)


def test_usage_deltas_are_summed_without_final() -> None:
    events = [
        StreamEvent(StreamEventKind.USAGE_DELTA, usage={"input_tokens": 5, "output_tokens": 1}),
        StreamEvent(StreamEventKind.USAGE_DELTA, usage={"input_tokens": 2, "output_tokens": 2}),
    ]

    usage = _assemble(events).usage

    assert (usage.prompt_tokens, usage.completion_tokens, usage.resolved_total) == (7, 3, 10)


def test_refusal_becomes_content_when_no_text() -> None:
    result = _assemble([StreamEvent(StreamEventKind.REFUSAL_DELTA, text="I can't help with that.")])

    assert result.refusal == "I can't help with that."
    assert result.content == "I can't help with that."


def test_user_role_text_is_kept_apart() -> None:
    events = [
        StreamEvent(StreamEventKind.TEXT_DELTA, text="echoed input", role="user"),
        StreamEvent(StreamEventKind.TEXT_DELTA, text="answer"),
    ]

    result = _assemble(events)

    assert result.content == "answer"
    assert result.input_text == "echoed input"


def test_error_event_raises_protocol_error() -> None:
    assembler = StreamAssembler()

    with pytest.raises(StreamProtocolError, match="server exploded"):
        assembler.feed(StreamEvent(StreamEventKind.ERROR, text="server exploded", raw_type="response.failed"))


def test_unknown_and_info_events_are_ignored() -> None:
    events = [
        StreamEvent(StreamEventKind.INFO, raw_type="response.created"),
        StreamEvent(StreamEventKind.UNKNOWN, raw_type="response.weird.thing"),
        StreamEvent(StreamEventKind.UNKNOWN, raw_type="response.weird.other"),
        StreamEvent(StreamEventKind.TEXT_DELTA, text="ok"),
    ]

    assert _assemble(events).content == "ok"


def test_assemble_consumes_async_stream() -> None:
    async def _events():
        for event in turn("streamed", calls=[("c1", "tool", '{"a": 1}')], chunk_size=2):
            yield event

    result = asyncio.run(StreamAssembler().assemble(_events()))

    assert result.content == "streamed"
    assert result.tool_calls[0].arguments == '{"a": 1}'
