"""Tests for the wire event adapters."""

from __future__ import annotations

from types import SimpleNamespace

import pytest

from inkwell.ai.orchestration.model_types import StreamEventKind
from inkwell.ai.orchestration.stream_assembler import StreamAssembler
from inkwell.ai.orchestration.wire_events import ChatDeltaAdapter, ResponsesEventAdapter, adapter_for, field_of


def _kinds(events) -> list[StreamEventKind]:
    return [event.kind for event in events]


def test_field_of_reads_mappings_and_objects() -> None:
    assert field_of({"a": 1}, "a") == 1
    assert field_of(SimpleNamespace(a=2), "a") == 2
    assert field_of({"a": None}, "a", "fallback") == "fallback"
    assert field_of(None, "a", 3) == 3


def test_adapter_for_selects_by_name() -> None:
    assert isinstance(adapter_for("responses"), ResponsesEventAdapter)
    assert isinstance(adapter_for(" Chat "), ChatDeltaAdapter)
    with pytest.raises(ValueError):
        adapter_for("grpc")


def test_responses_text_and_refusal_deltas() -> None:
    adapter = ResponsesEventAdapter()

    text = adapter.normalize({"type": "response.output_text.delta", "delta": "Hi"})
    echoed = adapter.normalize({"type": "response.input_text.delta", "delta": "prompt"})
    refusal = adapter.normalize(SimpleNamespace(type="response.refusal.delta", delta="no"))

    assert (text[0].kind, text[0].text, text[0].role) == (StreamEventKind.TEXT_DELTA, "Hi", "assistant")
    assert echoed[0].role == "user"
    assert (refusal[0].kind, refusal[0].text) == (StreamEventKind.REFUSAL_DELTA, "no")


def test_responses_function_call_item_and_arguments() -> None:
    adapter = ResponsesEventAdapter()
    payloads = [
        {"type": "response.output_item.added", "item": {"type": "function_call", "id": "fc_1", "name": "search"}},
        {"type": "response.function_call_arguments.delta", "item_id": "fc_1", "delta": '{"q": "'},
        {"type": "response.function_call_arguments.delta", "item_id": "fc_1", "delta": 'owls"}'},
        {"type": "response.function_call_arguments.done", "item_id": "fc_1", "arguments": '{"q": "owls"}'},
        {"type": "response.completed", "response": {"usage": {"input_tokens": 12, "output_tokens": 4, "total_tokens": 16}}},
    ]

    events = [event for payload in payloads for event in adapter.normalize(payload)]
    assembler = StreamAssembler()
    for event in events:
        assembler.feed(event)
    result = assembler.finish()

    assert _kinds(events) == [
        StreamEventKind.TOOL_CALL_CREATED,
        StreamEventKind.TOOL_CALL_ARGUMENTS_DELTA,
        StreamEventKind.TOOL_CALL_ARGUMENTS_DELTA,
        StreamEventKind.TOOL_CALL_ARGUMENTS_DONE,
        StreamEventKind.USAGE_FINAL,
    ]
    assert result.tool_calls[0].name == "search"
    assert result.tool_calls[0].decode_arguments() == {"q": "owls"}
    assert result.usage.resolved_total == 16


def test_responses_non_call_item_is_info() -> None:
    events = ResponsesEventAdapter().normalize({"type": "response.output_item.added", "item": {"type": "message"}})

    assert _kinds(events) == [StreamEventKind.INFO]


def test_responses_error_and_unknown_events() -> None:
    adapter = ResponsesEventAdapter()

    failed = adapter.normalize({"type": "response.failed", "response": {"error": {"message": "overloaded"}}})
    unknown = adapter.normalize({"type": "response.brand_new"})
    untyped = adapter.normalize({"delta": "x"})

    assert (failed[0].kind, failed[0].text) == (StreamEventKind.ERROR, "overloaded")
    assert unknown[0].kind is StreamEventKind.UNKNOWN
    assert unknown[0].raw_type == "response.brand_new"
    assert untyped == []


def test_responses_lifecycle_events_are_info() -> None:
    events = ResponsesEventAdapter().normalize({"type": "response.in_progress"})

    assert _kinds(events) == [StreamEventKind.INFO]


def test_chat_chunks_bind_index_to_id() -> None:
    adapter = ChatDeltaAdapter()
    chunks = [
        {"choices": [{"delta": {"role": "assistant", "tool_calls": [
            {"index": 0, "id": "call_a", "function": {"name": "read", "arguments": ""}},
            {"index": 1, "id": "call_b", "function": {"name": "write", "arguments": '{"x"'}},
        ]}}]},
        {"choices": [{"delta": {"tool_calls": [{"index": 0, "function": {"arguments": '{"page": 2}'}}]}}]},
        {"choices": [{"delta": {"tool_calls": [{"index": 1, "function": {"arguments": ": 1}"}}]}}]},
        {"choices": [], "usage": {"prompt_tokens": 30, "completion_tokens": 8, "total_tokens": 38}},
    ]

    events = [event for chunk in chunks for event in adapter.normalize(chunk)]
    assembler = StreamAssembler()
    for event in events:
        assembler.feed(event)
    result = assembler.finish()

    assert [(call.call_id, call.name, call.arguments) for call in result.tool_calls] == [
        ("call_a", "read", '{"page": 2}'),
        ("call_b", "write", '{"x": 1}'),
    ]
    assert result.usage.resolved_total == 38


def test_chat_chunk_without_id_gets_positional_id() -> None:
    events = ChatDeltaAdapter().normalize(
        {"choices": [{"delta": {"tool_calls": [{"index": 2, "function": {"name": "x", "arguments": "{}"}}]}}]}
    )

    assert [event.call_id for event in events] == ["call_2", "call_2"]


def test_chat_text_error_and_empty_chunks() -> None:
    adapter = ChatDeltaAdapter()

    text = adapter.normalize(SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content="Hey", role=None, refusal=None, tool_calls=None))], usage=None, error=None))
    error = adapter.normalize({"error": {"message": "bad gateway"}})
    empty = adapter.normalize({"choices": []})

    assert (text[0].kind, text[0].text) == (StreamEventKind.TEXT_DELTA, "Hey")
    assert (error[0].kind, error[0].text) == (StreamEventKind.ERROR, "bad gateway")
    assert _kinds(empty) == [StreamEventKind.INFO]
