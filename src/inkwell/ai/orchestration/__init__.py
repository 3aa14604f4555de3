"""Agent orchestration core: stream assembly, envelope gating, tool loop and skill chains."""

from .cancellation import CancellationToken
from .conversation import ConversationState
from .envelope import ControlEnvelope, EnvelopeCodec, Phase, PhaseControl, StepCompletion, parse_step_completion
from .event_log import EventLogger
from .loop import LoopConfig, OrchestrationLoop, StreamingBackend
from .model_types import (
    AssembledTurn,
    ChatResult,
    Message,
    Role,
    StreamEvent,
    StreamEventKind,
    ToolCallRequest,
    UsageCounters,
)
from .retry import RetryPolicy, is_transient_error
from .skill_chain import ChainResult, ChainStep, SkillChainDriver
from .skills import SkillCatalog, SkillDefinition, SkillStep, register_skill_tool
from .stream_assembler import StreamAssembler
from .tool_dispatcher import RegistryToolDispatcher, ToolDispatcher, ToolSpec
from .tool_gate import GateDecision, RecentToolCallWindow, ToolGate
from .wire_events import ChatDeltaAdapter, ResponsesEventAdapter, adapter_for

__all__ = [
    "AssembledTurn",
    "CancellationToken",
    "ChainResult",
    "ChainStep",
    "ChatDeltaAdapter",
    "ChatResult",
    "ControlEnvelope",
    "ConversationState",
    "EnvelopeCodec",
    "EventLogger",
    "GateDecision",
    "LoopConfig",
    "Message",
    "OrchestrationLoop",
    "Phase",
    "PhaseControl",
    "RecentToolCallWindow",
    "RegistryToolDispatcher",
    "ResponsesEventAdapter",
    "RetryPolicy",
    "Role",
    "SkillCatalog",
    "SkillChainDriver",
    "SkillDefinition",
    "SkillStep",
    "StepCompletion",
    "StreamAssembler",
    "StreamEvent",
    "StreamEventKind",
    "StreamingBackend",
    "ToolCallRequest",
    "ToolDispatcher",
    "ToolGate",
    "ToolSpec",
    "UsageCounters",
    "adapter_for",
    "is_transient_error",
    "parse_step_completion",
    "register_skill_tool",
]
