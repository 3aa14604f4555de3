"""Incremental scanner for tool-call argument JSON streamed in fragments."""

from __future__ import annotations

import json
import logging
from typing import Any, Iterable

LOGGER = logging.getLogger(__name__)

_OPENERS = "{["
_CLOSERS = "}]"


class JsonFragmentScanner:
    """Track nesting over JSON fragments until the first top-level value closes.

    Backends occasionally append whitespace or stray bytes after the arguments
    object. The scanner remembers where the first complete object or array
    ends so callers can keep only that slice.
    """

    __slots__ = ("_depth", "_in_string", "_escape", "_started", "_scalar", "_offset", "end")

    def __init__(self) -> None:
        self._depth = 0
        self._in_string = False
        self._escape = False
        self._started = False
        self._scalar = False
        self._offset = 0
        self.end: int | None = None

    @property
    def complete(self) -> bool:
        return self.end is not None

    def feed(self, fragment: str) -> bool:
        """Consume ``fragment`` and return whether the first value has closed."""

        if self.end is not None or self._scalar:
            self._offset += len(fragment)
            return self.end is not None

        for position, char in enumerate(fragment):
            if not self._started:
                if char.isspace():
                    continue
                if char not in _OPENERS:
                    self._scalar = True
                    break
                self._started = True
                self._depth = 1
                continue

            if self._in_string:
                if self._escape:
                    self._escape = False
                elif char == "\\":
                    self._escape = True
                elif char == '"':
                    self._in_string = False
                continue

            if char == '"':
                self._in_string = True
            elif char in _OPENERS:
                self._depth += 1
            elif char in _CLOSERS:
                self._depth -= 1
                if self._depth == 0:
                    self.end = self._offset + position + 1
                    break

        self._offset += len(fragment)
        return self.end is not None


def complete_prefix(fragments: str | Iterable[str]) -> str | None:
    """Return the first complete JSON object/array in ``fragments`` or ``None``."""

    scanner = JsonFragmentScanner()
    pieces = [fragments] if isinstance(fragments, str) else list(fragments)
    for piece in pieces:
        if scanner.feed(piece):
            break
    if scanner.end is None:
        return None
    return "".join(pieces)[: scanner.end]


def decode_arguments(text: str | None) -> Any:
    """Decode streamed tool arguments, dropping trailing junk after the first value.

    Empty text decodes to an empty object. Text that never closes a top-level
    value is handed to :func:`json.loads` unchanged so the caller sees the real
    decoding error.
    """

    if text is None or not text.strip():
        return {}
    prefix = complete_prefix(text)
    if prefix is None:
        return json.loads(text)
    if len(prefix) != len(text) and text[len(prefix):].strip():
        LOGGER.debug("Dropping %s trailing character(s) after tool arguments", len(text) - len(prefix))
    return json.loads(prefix)


__all__ = ["JsonFragmentScanner", "complete_prefix", "decode_arguments"]
