"""Tests for streamed tool-argument decoding."""

from __future__ import annotations

import json

import pytest

from inkwell.ai.orchestration.json_fragments import JsonFragmentScanner, complete_prefix, decode_arguments


def test_scanner_tracks_nesting_across_fragments() -> None:
    scanner = JsonFragmentScanner()

    assert not scanner.feed('{"a": {"b": [1, ')
    assert not scanner.feed("2]}")
    assert scanner.feed("}  trailing")
    assert scanner.end == len('{"a": {"b": [1, 2]}}')


def test_braces_inside_strings_are_ignored() -> None:
    assert complete_prefix(['{"text": "}{ \\" ]"', "}junk"]) == '{"text": "}{ \\" ]"}'


def test_incomplete_input_has_no_prefix() -> None:
    assert complete_prefix('{"a": 1') is None
    assert complete_prefix("42") is None


def test_decode_drops_trailing_junk() -> None:
    assert decode_arguments('{"id": 7}\n{"id": 7}') == {"id": 7}


def test_decode_empty_text_is_empty_object() -> None:
    assert decode_arguments("") == {}
    assert decode_arguments(None) == {}
    assert decode_arguments("   ") == {}


def test_decode_scalars_and_arrays() -> None:
    assert decode_arguments("[1, 2]") == [1, 2]
    assert decode_arguments("3") == 3


def test_decode_reports_truncated_json() -> None:
    with pytest.raises(json.JSONDecodeError):
        decode_arguments('{"id": ')
