"""Orchestration loop: drive one agent turn to completion.

The loop sends the conversation to a streaming backend, assembles the reply,
checks it against the phase-gated control envelope protocol, gates and
executes any proposed tool calls, and repeats until the model produces a
terminal answer. Conversational failures are corrected by talking back to the
model; fatal failures propagate.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Protocol, Sequence

from ...utils import logging as logging_utils
from ..errors import (
    ErrorKind,
    MalformedEnvelopeError,
    TurnCancelledError,
    TurnTimeoutError,
)
from .cancellation import CancellationToken
from .conversation import ConversationState
from .envelope import ControlEnvelope, EnvelopeCodec, Phase
from .event_log import EventLogger, EventLogRun, NullEventLogRun
from .model_types import AssembledTurn, ChatResult, StreamEvent, ToolCallRequest, UsageCounters
from .retry import RetryPolicy
from .stream_assembler import StreamAssembler
from .tool_dispatcher import ToolDispatcher, ToolSpec
from .tool_gate import CorrectionCounter, GateDecision, RecentToolCallWindow, ToolGate, ToolRejection

__all__ = [
    "LoopConfig",
    "OrchestrationLoop",
    "StreamingBackend",
    "EventCallback",
    "FINAL_REMINDER",
    "MISSING_ENVELOPE_REMINDER",
    "MAX_ITERATIONS_RESPONSE",
    "EMPTY_RESPONSES_RESPONSE",
]

LOGGER = logging.getLogger(__name__)

FINAL_REMINDER = (
    'Continue working until you can respond with a phase="final" control envelope JSON summarizing the outcome.'
)
MISSING_ENVELOPE_REMINDER = "All responses must include the control envelope JSON. Provide the envelope."
MAX_ITERATIONS_RESPONSE = "Max iterations reached without final response"
EMPTY_RESPONSES_RESPONSE = "Error: Model returned multiple empty responses"

EventCallback = Callable[[StreamEvent], Awaitable[None] | None]


class StreamingBackend(Protocol):
    """Produces the normalized event stream for one assistant turn."""

    def stream_turn(self, state: ConversationState, tools: Sequence[ToolSpec]) -> AsyncIterator[StreamEvent]:
        ...


@dataclass(slots=True, frozen=True)
class LoopConfig:
    """Bounds and policies for one orchestration loop.

    Attributes:
        require_envelope: Demand a control envelope on every assistant turn.
        max_iterations: Backend calls allowed per run before degrading.
        max_corrections: Shared bound for conversational corrections.
        max_empty_responses: Empty replies tolerated in free-form mode.
        turn_timeout: Optional wall-clock budget in seconds per backend turn.
        lenient_synthesis: Admit envelope-less tool calls under a synthesized
            ``action`` envelope instead of rejecting them.
    """

    require_envelope: bool = True
    max_iterations: int = 100
    max_corrections: int = 5
    max_empty_responses: int = 3
    turn_timeout: float | None = None
    lenient_synthesis: bool = True


class OrchestrationLoop:
    """Run assistant turns against a backend until a terminal answer arrives."""

    def __init__(
        self,
        backend: StreamingBackend,
        dispatcher: ToolDispatcher,
        state: ConversationState,
        *,
        tools: Sequence[ToolSpec] | None = None,
        config: LoopConfig | None = None,
        retry_policy: RetryPolicy | None = None,
        gate: ToolGate | None = None,
        event_logger: EventLogger | None = None,
        on_event: EventCallback | None = None,
    ) -> None:
        self.backend = backend
        self.dispatcher = dispatcher
        self.state = state
        self.config = config or LoopConfig()
        self.retry_policy = retry_policy or RetryPolicy()
        self.gate = gate or ToolGate(window=RecentToolCallWindow(), lenient_synthesis=self.config.lenient_synthesis)
        self.event_logger = event_logger
        self.on_event = on_event
        self._tools: tuple[ToolSpec, ...] = tuple(tools) if tools is not None else self._discover_tools(dispatcher)
        self._dispatch_takes_token = _accepts_keyword(getattr(dispatcher, "execute", None), "cancel_token")

    @property
    def tools(self) -> tuple[ToolSpec, ...]:
        return self._tools

    def set_tools(self, tools: Sequence[ToolSpec]) -> None:
        self._tools = tuple(tools)

    async def run(self, user_message: str | None = None, *, cancel_token: CancellationToken | None = None) -> ChatResult:
        """Drive the conversation until a terminal answer or a bound is hit.

        Args:
            user_message: Appended as a user turn before the first backend call.
            cancel_token: Checked before each backend call and tool dispatch.

        Returns:
            The terminal :class:`ChatResult`; ``degraded`` is set when a
            budget ran out instead of the model finishing.

        Raises:
            CorrectionLimitExceeded: Conversational corrections exceeded the bound;
                phase, allow-list and loop failures raise their own subclass.
            StreamProtocolError: The backend stream reported an error.
            TurnCancelledError: ``cancel_token`` was cancelled.
            TurnTimeoutError: A backend turn exceeded ``turn_timeout``.
        """

        if user_message is not None:
            self.state.add_user_message(user_message)
        if self.state.last_phase is Phase.FINAL:
            self.state.reset_phase()
        self.gate.reset()

        corrections = CorrectionCounter(self.config.max_corrections)
        run_id = uuid.uuid4().hex
        log_run = self._start_event_log(run_id, user_message)
        with logging_utils.run_context(run_id), log_run:
            runner = _LoopRun(self, corrections, log_run, cancel_token)
            result = await runner.execute()
            log_run.log_completion(
                response_text=result.response,
                iterations=result.iterations,
                usage=result.usage.to_dict(),
                degraded=result.degraded,
                reason=result.reason,
            )
            return result

    def _start_event_log(self, run_id: str, prompt: str | None) -> EventLogRun | NullEventLogRun:
        if self.event_logger is None:
            return NullEventLogRun()
        return self.event_logger.start_run(
            run_id=run_id,
            prompt=prompt or "",
            require_envelope=self.config.require_envelope,
            tools=[spec.name for spec in self._tools],
        )

    @staticmethod
    def _discover_tools(dispatcher: Any) -> tuple[ToolSpec, ...]:
        specs = getattr(dispatcher, "specs", None)
        if callable(specs):
            return tuple(specs())
        return ()


class _LoopRun:
    """Mutable bookkeeping for a single :meth:`OrchestrationLoop.run` call."""

    def __init__(
        self,
        loop: OrchestrationLoop,
        corrections: CorrectionCounter,
        log_run: EventLogRun | NullEventLogRun,
        cancel_token: CancellationToken | None,
    ) -> None:
        self.loop = loop
        self.state = loop.state
        self.config = loop.config
        self.corrections = corrections
        self.log_run = log_run
        self.cancel_token = cancel_token
        self.iteration = 0
        self.empty_responses = 0
        self.usage = UsageCounters()

    async def execute(self) -> ChatResult:
        while self.iteration < self.config.max_iterations:
            self.iteration += 1
            self._check_cancelled()
            turn = await self._invoke_backend()
            self.state.append_assistant(turn.message)
            self.state.record_usage(f"iteration-{self.iteration}", turn.usage)
            self.usage = self.usage + turn.usage.resolved()

            result = await self._handle_turn(turn)
            if result is not None:
                return result

        LOGGER.warning("Max iterations (%s) reached without a final response", self.config.max_iterations)
        return self._degraded(MAX_ITERATIONS_RESPONSE, ErrorKind.MAX_ITERATIONS)

    async def _handle_turn(self, turn: AssembledTurn) -> ChatResult | None:
        content = turn.content
        calls = turn.tool_calls
        require = self.config.require_envelope

        envelope: ControlEnvelope | None = None
        if content:
            try:
                envelope = EnvelopeCodec.parse(content)
            except MalformedEnvelopeError as exc:
                if require:
                    self._answer_calls(calls, f"Rejected tool call: {exc.message}")
                    self._correct(
                        ErrorKind.MALFORMED_ENVELOPE,
                        content,
                        "Your previous reply was not valid phase-gated control envelope JSON. "
                        f"Error: {exc.message} Respond again using only the required JSON structure.",
                    )
                    return None
                LOGGER.debug("Assistant replied with free-form text")

        self._log_turn(turn, envelope)

        if envelope is not None and require:
            issue = EnvelopeCodec.validate_transition(self.state.last_phase, envelope.phase)
            if issue:
                previous = self.state.last_phase.value if self.state.last_phase else "none"
                self._answer_calls(calls, f"Rejected tool call: {issue}")
                self._correct(
                    ErrorKind.PHASE_TRANSITION,
                    f"{previous}->{envelope.phase.value}",
                    f"Phase transition error: {issue} Respond again with a valid phase-gated control envelope JSON.",
                )
                return None

        if calls:
            await self._handle_tool_calls(envelope, calls)
            return None

        if not require:
            if envelope is not None:
                self.state.last_phase = envelope.phase
            if not content:
                self.empty_responses += 1
                LOGGER.warning(
                    "Assistant returned an empty response (%s/%s)",
                    self.empty_responses,
                    self.config.max_empty_responses,
                )
                if self.empty_responses > self.config.max_empty_responses:
                    return self._degraded(EMPTY_RESPONSES_RESPONSE, ErrorKind.EMPTY_RESPONSE)
                return None
            self.corrections.reset()
            return self._result(content, kind="raw", envelope=envelope)

        if envelope is None:
            self._correct(ErrorKind.MISSING_ENVELOPE, "<empty response>", MISSING_ENVELOPE_REMINDER)
            return None

        self.state.last_phase = envelope.phase
        if envelope.phase is not Phase.FINAL:
            LOGGER.debug('Assistant replied with phase="%s"; asking for a final envelope', envelope.phase.value)
            self.state.push_system_message(FINAL_REMINDER)
            return None

        self.corrections.reset()
        return self._result(envelope.content, kind="envelope", envelope=envelope)

    async def _handle_tool_calls(self, envelope: ControlEnvelope | None, calls: Sequence[ToolCallRequest]) -> None:
        decision = self.loop.gate.review(envelope, calls)
        if not decision.accepted:
            self._reject(decision)
            return

        if decision.envelope is not None:
            self.state.last_phase = decision.envelope.phase
        await self._execute_tools(decision.approved)
        for reminder in decision.reminders:
            self.state.push_system_message(reminder)
        self.corrections.reset()

    def _reject(self, decision: GateDecision) -> None:
        kind = decision.correction_kind or ErrorKind.TOOL_NOT_ALLOWED
        count = self.corrections.register(kind, decision.offending, tool_name=decision.offending_tool)
        for rejection in decision.rejections:
            LOGGER.warning("Rejected tool call %s: %s", rejection.call.name, rejection.reason)
            self.state.push_tool_message(rejection.call.call_id, rejection.tool_message(), tag="tool-rejected")
        for correction in decision.corrections:
            self.state.push_system_message(correction)
            self.log_run.log_correction(iteration=self.iteration, kind=kind, message=correction, count=count)

    async def _execute_tools(self, calls: Sequence[ToolCallRequest]) -> None:
        records: list[dict[str, Any]] = []
        for call in calls:
            self._check_cancelled()
            started = time.perf_counter()
            try:
                arguments = call.decode_arguments()
            except ValueError as exc:
                output = f"Error executing {call.name}: invalid JSON arguments: {exc}"
                LOGGER.warning("Tool %s received undecodable arguments: %s", call.name, exc)
                self.state.push_tool_message(call.call_id, output, tag=f"{call.name}-error")
                records.append({"id": call.call_id, "name": call.name, "status": "error", "output": output})
                continue

            try:
                output = await self._dispatch(call.name, arguments)
                status = "ok"
            except TurnCancelledError:
                raise
            except Exception as exc:
                output = f"Error executing {call.name}: {exc}"
                status = "error"
                LOGGER.warning("Tool %s failed: %s", call.name, exc)

            elapsed_ms = (time.perf_counter() - started) * 1000
            LOGGER.debug("Tool %s finished in %.1fms (%s)", call.name, elapsed_ms, status)
            tag = call.name if status == "ok" else f"{call.name}-error"
            self.state.push_tool_message(call.call_id, output, tag=tag)
            records.append(
                {
                    "id": call.call_id,
                    "name": call.name,
                    "arguments": call.arguments,
                    "status": status,
                    "duration_ms": round(elapsed_ms, 1),
                    "output": output,
                }
            )
        self.log_run.log_tool_batch(iteration=self.iteration, records=records)

    async def _dispatch(self, name: str, arguments: Any) -> str:
        if self.loop._dispatch_takes_token:
            result = self.loop.dispatcher.execute(name, arguments, cancel_token=self.cancel_token)
        else:
            result = self.loop.dispatcher.execute(name, arguments)
        if inspect.isawaitable(result):
            result = await result
        return result if isinstance(result, str) else str(result)

    async def _invoke_backend(self) -> AssembledTurn:
        call = self.loop.retry_policy.run(self._stream_once)
        if self.config.turn_timeout is not None:
            call = self._with_timeout(call, self.config.turn_timeout)
        if self.cancel_token is None:
            return await call
        return await self._race_cancellation(call, self.cancel_token)

    async def _stream_once(self) -> AssembledTurn:
        assembler = StreamAssembler()
        stream = self.loop.backend.stream_turn(self.state, self.loop.tools)
        async for event in stream:
            await self._emit(event)
            assembler.feed(event)
        return assembler.finish()

    async def _with_timeout(self, call: Awaitable[AssembledTurn], seconds: float) -> AssembledTurn:
        try:
            async with asyncio.timeout(seconds):
                return await call
        except TimeoutError as exc:
            raise TurnTimeoutError(
                f"Backend turn exceeded {seconds:.1f}s",
                details={"iteration": self.iteration, "timeout": seconds},
            ) from exc

    async def _race_cancellation(self, call: Awaitable[AssembledTurn], token: CancellationToken) -> AssembledTurn:
        task = asyncio.ensure_future(call)
        waiter = asyncio.ensure_future(token.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
        if task not in done:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
            token.raise_if_cancelled()
        return task.result()

    async def _emit(self, event: StreamEvent) -> None:
        callback = self.loop.on_event
        if callback is None:
            return
        outcome = callback(event)
        if inspect.isawaitable(outcome):
            await outcome

    def _correct(self, kind: str, offending: str, message: str) -> None:
        count = self.corrections.register(kind, offending)
        LOGGER.warning("Correcting assistant (%s, %s/%s)", kind, count, self.corrections.limit)
        self.state.push_system_message(message)
        self.log_run.log_correction(iteration=self.iteration, kind=kind, message=message, count=count)

    def _answer_calls(self, calls: Sequence[ToolCallRequest], reason: str) -> None:
        for call in calls:
            rejection = ToolRejection(call=call, reason=reason)
            self.state.push_tool_message(call.call_id, rejection.tool_message(), tag="tool-rejected")

    def _check_cancelled(self) -> None:
        if self.cancel_token is not None:
            self.cancel_token.raise_if_cancelled()

    def _log_turn(self, turn: AssembledTurn, envelope: ControlEnvelope | None) -> None:
        LOGGER.debug(
            "Iteration %s: %s chars, %s tool call(s), phase=%s",
            self.iteration,
            len(turn.content),
            len(turn.tool_calls),
            envelope.phase.value if envelope else None,
        )
        self.log_run.log_assistant_turn(
            iteration=self.iteration,
            content=turn.content,
            phase=envelope.phase.value if envelope else None,
            tool_calls=[{"id": c.call_id, "name": c.name, "arguments": c.arguments} for c in turn.tool_calls],
            usage=turn.usage.to_dict(),
        )

    def _result(self, response: str, *, kind: str, envelope: ControlEnvelope | None) -> ChatResult:
        return ChatResult(
            response=response,
            usage=self.usage,
            kind=kind,
            envelope=envelope,
            iterations=self.iteration,
            metadata={"conversation": self.state.summary()},
        )

    def _degraded(self, response: str, reason: str) -> ChatResult:
        return ChatResult(
            response=response,
            usage=self.usage,
            kind="degraded",
            degraded=True,
            reason=reason,
            iterations=self.iteration,
            metadata={"conversation": self.state.summary()},
        )


def _accepts_keyword(func: Any, name: str) -> bool:
    if func is None:
        return False
    try:
        parameters = inspect.signature(func).parameters
    except (TypeError, ValueError):
        return False
    return name in parameters or any(p.kind is inspect.Parameter.VAR_KEYWORD for p in parameters.values())