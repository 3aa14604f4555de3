"""Permission gate for model-issued tool calls."""

from __future__ import annotations

import json
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Sequence

from ..errors import (
    CorrectionLimitExceeded,
    ErrorKind,
    InfiniteLoopDetected,
    PhaseTransitionViolation,
    ToolNotAllowedError,
    ToolUseDisallowedError,
)
from .envelope import ControlEnvelope, EnvelopeCodec, Phase
from .model_types import ToolCallRequest

LOGGER = logging.getLogger(__name__)

DEFAULT_WINDOW_SIZE = 3
DEFAULT_MAX_CORRECTIONS = 5

SYNTHESIZED_REMINDER = 'Reminder: include a phase="action" envelope that lists your tools before invoking them.'
COERCED_REMINDER = 'Reminder: set phase="action" whenever you invoke tools.'


class RecentToolCallWindow:
    """Bounded FIFO of per-turn tool-call signatures used for loop detection."""

    def __init__(self, size: int = DEFAULT_WINDOW_SIZE) -> None:
        self._entries: deque[str] = deque(maxlen=max(1, size))

    @property
    def size(self) -> int:
        return self._entries.maxlen or 0

    def __len__(self) -> int:
        return len(self._entries)

    def push(self, signature: str) -> None:
        self._entries.append(signature)

    def is_looping(self) -> bool:
        if len(self._entries) < self.size:
            return False
        first = self._entries[0]
        return all(entry == first for entry in self._entries)

    def reset(self) -> None:
        self._entries.clear()


class CorrectionCounter:
    """Shared bound for every conversationally corrected failure kind."""

    def __init__(self, limit: int = DEFAULT_MAX_CORRECTIONS) -> None:
        self.limit = limit
        self.count = 0

    def register(self, kind: str, offending: str, *, tool_name: str | None = None) -> int:
        """Count one correction; raise once the bound is exceeded."""

        self.count += 1
        if self.count <= self.limit:
            return self.count
        if kind == ErrorKind.INFINITE_LOOP:
            raise InfiniteLoopDetected(tool_name or "unknown", signature=offending, limit=self.limit)
        if kind == ErrorKind.PHASE_TRANSITION:
            raise PhaseTransitionViolation(offending, limit=self.limit)
        if kind == ErrorKind.TOOL_NOT_ALLOWED:
            raise ToolNotAllowedError([name for name in offending.split(", ") if name], limit=self.limit)
        if kind == ErrorKind.TOOL_USE_DISALLOWED:
            raise ToolUseDisallowedError(offending, limit=self.limit)
        raise CorrectionLimitExceeded(kind, offending, limit=self.limit)

    def reset(self) -> None:
        self.count = 0


@dataclass(slots=True)
class ToolRejection:
    call: ToolCallRequest
    reason: str

    def tool_message(self) -> str:
        return json.dumps({"success": False, "error": self.reason}, indent=2)


@dataclass(slots=True)
class GateDecision:
    """Verdict for one turn's batch of proposed tool calls."""

    envelope: ControlEnvelope | None
    approved: tuple[ToolCallRequest, ...] = ()
    rejections: list[ToolRejection] = field(default_factory=list)
    corrections: list[str] = field(default_factory=list)
    reminders: list[str] = field(default_factory=list)
    correction_kind: str | None = None
    offending: str = ""
    offending_tool: str | None = None
    synthesized: bool = False
    coerced: bool = False

    @property
    def accepted(self) -> bool:
        return not self.rejections


class ToolGate:
    """Decide whether a turn's tool calls may run.

    Calls without any envelope are admitted under a synthesized ``action``
    envelope when ``lenient_synthesis`` is on; the policy is logged every
    time it applies.
    """

    def __init__(
        self,
        *,
        window: RecentToolCallWindow | None = None,
        lenient_synthesis: bool = True,
    ) -> None:
        self.window = window or RecentToolCallWindow()
        self.lenient_synthesis = lenient_synthesis

    def reset(self) -> None:
        self.window.reset()

    def review(self, envelope: ControlEnvelope | None, calls: Sequence[ToolCallRequest]) -> GateDecision:
        calls = tuple(calls)
        decision = GateDecision(envelope=envelope)
        if not calls:
            return decision

        names = [call.name for call in calls]
        if envelope is None:
            if not self.lenient_synthesis:
                return self._reject(
                    decision,
                    calls,
                    kind=ErrorKind.MISSING_ENVELOPE,
                    reason="Rejected tool call: no control envelope was provided.",
                    correction='Invoke tools only with a phase="action" control envelope that lists them in control.allowed_tools.',
                    offending=", ".join(names),
                )
            LOGGER.warning(
                'Assistant invoked tools without a control envelope; lenient policy synthesizes phase="action" for %s',
                names,
            )
            envelope = EnvelopeCodec.synthesize_action(names)
            decision.envelope = envelope
            decision.synthesized = True
            decision.reminders.append(SYNTHESIZED_REMINDER)
        elif envelope.phase is not Phase.ACTION:
            LOGGER.warning(
                'Assistant invoked tools while in phase="%s"; coercing to phase="action"',
                envelope.phase.value,
            )
            envelope.phase = Phase.ACTION
            decision.coerced = True
            decision.reminders.append(COERCED_REMINDER)

        signature = "|".join(call.signature for call in calls)
        self.window.push(signature)

        if envelope.control.allow_tool_use is False:
            return self._reject(
                decision,
                calls,
                kind=ErrorKind.TOOL_USE_DISALLOWED,
                reason="Rejected tool call: control.allow_tool_use is false.",
                correction="control.allow_tool_use is false; do not invoke tools in the same response. Provide a new envelope.",
                offending=", ".join(names),
            )

        allowed = envelope.control.allowed_tools
        disallowed = [name for name in names if allowed and name not in allowed]
        if disallowed:
            listed = ", ".join(dict.fromkeys(disallowed))
            return self._reject(
                decision,
                calls,
                kind=ErrorKind.TOOL_NOT_ALLOWED,
                reason=f"Rejected tool call: {listed} not listed in control.allowed_tools.",
                correction=f"The tools {listed} are not listed in control.allowed_tools. Update the envelope and resend.",
                offending=listed,
                offending_tool=disallowed[0],
            )

        if self.window.is_looping():
            repeating = calls[0].name or "unknown"
            LOGGER.error(
                "Detected infinite loop: %s called %s times with the same arguments",
                repeating,
                self.window.size,
            )
            return self._reject(
                decision,
                calls,
                kind=ErrorKind.INFINITE_LOOP,
                reason="Infinite loop detected - same tool called repeatedly",
                correction=(
                    f"You have called {repeating} {self.window.size} times with the same arguments. "
                    "Process the tool results before repeating the same call."
                ),
                offending=signature,
                offending_tool=repeating,
            )

        decision.approved = calls
        return decision

    @staticmethod
    def _reject(
        decision: GateDecision,
        calls: Sequence[ToolCallRequest],
        *,
        kind: str,
        reason: str,
        correction: str,
        offending: str,
        offending_tool: str | None = None,
    ) -> GateDecision:
        decision.rejections = [ToolRejection(call=call, reason=reason) for call in calls]
        decision.corrections.append(correction)
        decision.correction_kind = kind
        decision.offending = offending
        decision.offending_tool = offending_tool or (calls[0].name if calls else None)
        decision.reminders.clear()
        return decision


__all__ = [
    "RecentToolCallWindow",
    "CorrectionCounter",
    "ToolRejection",
    "GateDecision",
    "ToolGate",
    "SYNTHESIZED_REMINDER",
    "COERCED_REMINDER",
]
