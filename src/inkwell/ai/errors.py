"""Error taxonomy for the agent orchestration engine.

Errors fall into three groups:

- transient backend failures, retried by :class:`~inkwell.ai.orchestration.retry.RetryPolicy`;
- fatal protocol failures, propagated immediately;
- conversational failures (bad envelopes, illegal phase moves, rejected tool
  calls, repeated tool calls), which the orchestration loop corrects by
  talking back to the model until a shared bound is exceeded.
"""

from __future__ import annotations

from typing import Any, ClassVar


class ErrorKind:
    """Machine-readable identifiers used in logs and degraded results."""

    TRANSIENT_BACKEND = "transient_backend"
    STREAM_PROTOCOL = "stream_protocol"
    MALFORMED_ENVELOPE = "malformed_envelope"
    PHASE_TRANSITION = "phase_transition"
    TOOL_NOT_ALLOWED = "tool_not_allowed"
    TOOL_USE_DISALLOWED = "tool_use_disallowed"
    INFINITE_LOOP = "infinite_loop"
    MISSING_ENVELOPE = "missing_envelope"
    MAX_ITERATIONS = "max_iterations"
    EMPTY_RESPONSE = "empty_response"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"


class OrchestrationError(Exception):
    """Base class for every error raised by the orchestration core."""

    kind: ClassVar[str] = "orchestration"

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details: dict[str, Any] = dict(details or {})

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a dictionary for logging and event traces."""
        payload: dict[str, Any] = {"error": self.kind, "message": self.message}
        if self.details:
            payload["details"] = dict(self.details)
        return payload

    def __str__(self) -> str:
        return f"[{self.kind}] {self.message}"


class TransientBackendError(OrchestrationError):
    """Raised for rate limiting and other failures worth retrying."""

    kind = ErrorKind.TRANSIENT_BACKEND

    def __init__(self, message: str, *, status_code: int | None = 429, details: dict[str, Any] | None = None) -> None:
        super().__init__(message, details=details)
        self.status_code = status_code


class StreamProtocolError(OrchestrationError):
    """Raised when the backend stream reports an error or cannot be decoded."""

    kind = ErrorKind.STREAM_PROTOCOL


class MalformedEnvelopeError(OrchestrationError, ValueError):
    """Raised when assistant content is not a well-formed control envelope."""

    kind = ErrorKind.MALFORMED_ENVELOPE


class CorrectionLimitExceeded(OrchestrationError):
    """Raised once conversational corrections exceed their shared bound."""

    kind = "correction_limit"

    def __init__(self, correction_kind: str, offending: str, *, limit: int) -> None:
        preview = offending if len(offending) <= 200 else offending[:200] + "..."
        super().__init__(
            f"Exceeded {limit} corrections ({correction_kind}): {preview}",
            details={"correction_kind": correction_kind, "offending": preview, "limit": limit},
        )
        self.correction_kind = correction_kind
        self.offending = offending
        self.limit = limit


class PhaseTransitionViolation(CorrectionLimitExceeded):
    """Raised when the model keeps breaking the phase order past the correction bound."""

    kind = ErrorKind.PHASE_TRANSITION

    def __init__(self, transition: str, *, limit: int = 5) -> None:
        super().__init__(ErrorKind.PHASE_TRANSITION, transition, limit=limit)
        self.transition = transition


class ToolNotAllowedError(CorrectionLimitExceeded):
    """Raised when calls outside ``control.allowed_tools`` persist past the correction bound."""

    kind = ErrorKind.TOOL_NOT_ALLOWED

    def __init__(self, tool_names: list[str] | tuple[str, ...], *, limit: int = 5) -> None:
        names = list(tool_names)
        super().__init__(ErrorKind.TOOL_NOT_ALLOWED, ", ".join(names), limit=limit)
        self.details["tools"] = names
        self.tool_names = names


class ToolUseDisallowedError(CorrectionLimitExceeded):
    """Raised when calls under ``control.allow_tool_use=false`` persist past the correction bound."""

    kind = ErrorKind.TOOL_USE_DISALLOWED

    def __init__(self, offending: str, *, limit: int = 5) -> None:
        super().__init__(ErrorKind.TOOL_USE_DISALLOWED, offending, limit=limit)


class InfiniteLoopDetected(CorrectionLimitExceeded):
    """Raised when the model keeps issuing the same tool calls past the correction bound."""

    kind = ErrorKind.INFINITE_LOOP

    def __init__(self, tool_name: str, *, signature: str = "", limit: int = 5) -> None:
        super().__init__(ErrorKind.INFINITE_LOOP, signature or tool_name, limit=limit)
        self.message = f"Assistant stuck in infinite loop calling {tool_name} repeatedly"
        self.args = (self.message,)
        self.details["tool"] = tool_name
        self.tool_name = tool_name


class TurnCancelledError(OrchestrationError):
    """Raised when a caller cancels a conversation in flight."""

    kind = ErrorKind.CANCELLED


class TurnTimeoutError(OrchestrationError):
    """Raised when a single backend turn exceeds its wall-clock budget."""

    kind = ErrorKind.TIMEOUT


class UnknownToolError(OrchestrationError, LookupError):
    """Raised by the registry dispatcher for unregistered tool names."""

    kind = "unknown_tool"

    def __init__(self, name: str) -> None:
        super().__init__(f"Unknown tool: {name}", details={"tool": name})
        self.name = name


class InvalidToolArgumentsError(OrchestrationError, ValueError):
    """Raised when decoded tool arguments do not match the tool's JSON schema."""

    kind = "invalid_tool_arguments"

    def __init__(self, name: str, problems: list[str]) -> None:
        super().__init__(
            f"Arguments for {name} do not match its schema: " + "; ".join(problems),
            details={"tool": name, "problems": list(problems)},
        )
        self.name = name
        self.problems = list(problems)


__all__ = [
    "ErrorKind",
    "OrchestrationError",
    "TransientBackendError",
    "StreamProtocolError",
    "MalformedEnvelopeError",
    "PhaseTransitionViolation",
    "ToolNotAllowedError",
    "ToolUseDisallowedError",
    "InfiniteLoopDetected",
    "CorrectionLimitExceeded",
    "TurnCancelledError",
    "TurnTimeoutError",
    "UnknownToolError",
    "InvalidToolArgumentsError",
]
