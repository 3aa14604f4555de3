"""Phase-gated control envelope parsing and validation.

Every assistant turn in envelope mode is exactly one JSON object::

    {"phase": "analysis" | "action" | "final",
     "control": {"allowed_tools": [...], "allow_tool_use": true},
     "envelope": {"type": "text", "content": "...", "metadata": {...}}}

The phase gate separates thinking from acting: tools may only be invoked in
``action`` and only after the permitted tool list has been declared, and a
turn ends only once ``final`` is reached.
"""

from __future__ import annotations

import enum
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Mapping

from ..errors import MalformedEnvelopeError

LOGGER = logging.getLogger(__name__)


class Phase(str, enum.Enum):
    ANALYSIS = "analysis"
    ACTION = "action"
    FINAL = "final"

    @classmethod
    def coerce(cls, value: "Phase | str | None") -> "Phase | None":
        if value is None or isinstance(value, Phase):
            return value
        return cls(str(value).strip().lower())


PHASE_ORDER: tuple[Phase, ...] = (Phase.ANALYSIS, Phase.ACTION, Phase.FINAL)

_ALLOWED_TRANSITIONS: frozenset[tuple[Phase, Phase]] = frozenset(
    {
        (Phase.ANALYSIS, Phase.ACTION),
        (Phase.ANALYSIS, Phase.FINAL),
        (Phase.ACTION, Phase.ANALYSIS),
        (Phase.ACTION, Phase.FINAL),
    }
)

_CONTROL_KEYS = ("allowed_tools", "allow_tool_use", "next_phase", "notes")
_PAYLOAD_KEYS = ("type", "content", "metadata")


@dataclass(slots=True)
class PhaseControl:
    allowed_tools: list[str] = field(default_factory=list)
    allow_tool_use: bool | None = None
    next_phase: Phase | None = None
    notes: str | None = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = dict(self.extra)
        data["allowed_tools"] = list(self.allowed_tools)
        if self.allow_tool_use is not None:
            data["allow_tool_use"] = self.allow_tool_use
        if self.next_phase is not None:
            data["next_phase"] = self.next_phase.value
        if self.notes is not None:
            data["notes"] = self.notes
        return data


@dataclass(slots=True)
class EnvelopePayload:
    content: str
    type: str | None = None
    metadata: Dict[str, Any] | None = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = dict(self.extra)
        if self.type is not None:
            data["type"] = self.type
        data["content"] = self.content
        if self.metadata is not None:
            data["metadata"] = dict(self.metadata)
        return data


@dataclass(slots=True)
class ControlEnvelope:
    """Parsed control envelope. ``phase`` may be coerced in place by the tool gate."""

    phase: Phase
    control: PhaseControl = field(default_factory=PhaseControl)
    envelope: EnvelopePayload = field(default_factory=lambda: EnvelopePayload(content=""))
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def content(self) -> str:
        return self.envelope.content

    @property
    def step_card(self) -> Any | None:
        """Observability-only summary of the active step, when the model sent one."""
        metadata = self.envelope.metadata or {}
        return metadata.get("step_card", metadata.get("stepCard"))

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = dict(self.extra)
        data["phase"] = self.phase.value
        data["control"] = self.control.to_dict()
        data["envelope"] = self.envelope.to_dict()
        return data


@dataclass(slots=True)
class StepCompletion:
    """Structured payload telling the skill chain which step runs next."""

    next_step: str | None = None
    next_prompt: str | None = None
    raw: Dict[str, Any] = field(default_factory=dict)

    def next_prompt_if_ready(self) -> str | None:
        if not isinstance(self.next_step, str) or not self.next_step.strip():
            return None
        if not isinstance(self.next_prompt, str) or not self.next_prompt.strip():
            return None
        return self.next_prompt.strip()


class EnvelopeCodec:
    """Stateless encoder/decoder for control envelopes."""

    @staticmethod
    def parse(raw: str) -> ControlEnvelope:
        if not isinstance(raw, str):
            raise MalformedEnvelopeError("Envelope must be a JSON string.")
        try:
            parsed = json.loads(raw.strip())
        except json.JSONDecodeError as exc:
            raise MalformedEnvelopeError(f"Envelope must be valid JSON: {exc}") from exc
        if not isinstance(parsed, dict):
            raise MalformedEnvelopeError("Envelope must be a JSON object.")

        phase = _parse_phase(parsed.get("phase"))
        control = _parse_control(parsed.get("control"))
        payload = _parse_payload(parsed.get("envelope"))
        extra = {key: value for key, value in parsed.items() if key not in ("phase", "control", "envelope")}
        if extra:
            LOGGER.debug("Ignoring extra envelope keys: %s", sorted(extra))
        return ControlEnvelope(phase=phase, control=control, envelope=payload, extra=extra)

    @staticmethod
    def try_parse(raw: str | None) -> ControlEnvelope | None:
        if not raw:
            return None
        try:
            return EnvelopeCodec.parse(raw)
        except MalformedEnvelopeError:
            return None

    @staticmethod
    def validate_transition(previous: Phase | str | None, next_phase: Phase | str) -> str | None:
        """Return a description of the violation, or ``None`` when the move is legal."""

        prev = Phase.coerce(previous)
        nxt = Phase.coerce(next_phase)
        if prev is None:
            return None
        if (prev, nxt) in _ALLOWED_TRANSITIONS:
            return None
        if prev is Phase.FINAL:
            return f'Cannot transition from "final" to "{nxt.value}"; the "final" phase ends the step.'
        if prev is nxt:
            return (
                f'Cannot repeat phase "{nxt.value}"; move to '
                + ("action or final." if nxt is Phase.ANALYSIS else 'analysis before acting again, or to final.')
            )
        return f'Cannot transition from "{prev.value}" to "{nxt.value}".'

    @staticmethod
    def dumps(envelope: ControlEnvelope) -> str:
        return json.dumps(envelope.to_dict(), ensure_ascii=False, indent=2)

    @staticmethod
    def synthesize_action(tool_names: Iterable[str]) -> ControlEnvelope:
        names = [name for name in tool_names if name]
        return ControlEnvelope(
            phase=Phase.ACTION,
            control=PhaseControl(allowed_tools=names),
            envelope=EnvelopePayload(content="", type="text"),
        )


def parse_step_completion(content: str | None) -> StepCompletion | None:
    """Decode ``envelope.content`` as a step-completion object, if it is one."""

    if not content or not isinstance(content, str):
        return None
    try:
        parsed = json.loads(content)
    except json.JSONDecodeError:
        return None
    if not isinstance(parsed, dict):
        return None
    next_step = parsed.get("next_step")
    if next_step is None:
        next_step = parsed.get("nextStep")
    next_prompt = parsed.get("next_prompt")
    if next_prompt is None:
        next_prompt = parsed.get("nextPrompt")
    return StepCompletion(next_step=next_step, next_prompt=next_prompt, raw=parsed)


def _parse_phase(value: Any) -> Phase:
    if not isinstance(value, str):
        raise MalformedEnvelopeError('Envelope must include a string "phase" field.')
    try:
        return Phase(value.strip().lower())
    except ValueError:
        names = ", ".join(phase.value for phase in PHASE_ORDER)
        raise MalformedEnvelopeError(f'Phase "{value}" is invalid. Use one of: {names}.') from None


def _parse_control(value: Any) -> PhaseControl:
    if not isinstance(value, dict):
        raise MalformedEnvelopeError('Envelope must include a "control" object.')

    allowed = value.get("allowed_tools")
    if allowed is not None and (
        not isinstance(allowed, list) or not all(isinstance(tool, str) for tool in allowed)
    ):
        raise MalformedEnvelopeError('"control.allowed_tools" must be an array of strings when provided.')

    allow_tool_use = value.get("allow_tool_use")
    if allow_tool_use is not None and not isinstance(allow_tool_use, bool):
        raise MalformedEnvelopeError('"control.allow_tool_use" must be a boolean when provided.')

    next_phase = value.get("next_phase")
    if next_phase is not None:
        if not isinstance(next_phase, str):
            raise MalformedEnvelopeError('"control.next_phase" must be a string when provided.')
        try:
            next_phase = Phase(next_phase.strip().lower())
        except ValueError:
            names = ", ".join(phase.value for phase in PHASE_ORDER)
            raise MalformedEnvelopeError(f'"control.next_phase" must be one of: {names}.') from None

    notes = value.get("notes")
    if notes is not None and not isinstance(notes, str):
        raise MalformedEnvelopeError('"control.notes" must be a string when provided.')

    return PhaseControl(
        allowed_tools=list(allowed or []),
        allow_tool_use=allow_tool_use,
        next_phase=next_phase,
        notes=notes,
        extra={key: item for key, item in value.items() if key not in _CONTROL_KEYS},
    )


def _parse_payload(value: Any) -> EnvelopePayload:
    if not isinstance(value, dict):
        raise MalformedEnvelopeError('Envelope must include an "envelope" object with the payload metadata.')
    content = value.get("content")
    if not isinstance(content, str):
        raise MalformedEnvelopeError('"envelope.content" must be a string.')
    payload_type = value.get("type")
    if payload_type is not None and not isinstance(payload_type, str):
        raise MalformedEnvelopeError('"envelope.type" must be a string when provided.')
    metadata = value.get("metadata")
    if metadata is not None and not isinstance(metadata, Mapping):
        raise MalformedEnvelopeError('"envelope.metadata" must be an object when provided.')
    return EnvelopePayload(
        content=content,
        type=payload_type,
        metadata=dict(metadata) if metadata is not None else None,
        extra={key: item for key, item in value.items() if key not in _PAYLOAD_KEYS},
    )


__all__ = [
    "Phase",
    "PHASE_ORDER",
    "PhaseControl",
    "EnvelopePayload",
    "ControlEnvelope",
    "StepCompletion",
    "EnvelopeCodec",
    "parse_step_completion",
]
