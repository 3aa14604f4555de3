"""Skill chain driver: run successive loop turns while the model names a next step."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Sequence

from .cancellation import CancellationToken
from .conversation import ConversationState
from .envelope import EnvelopeCodec, StepCompletion, parse_step_completion
from .event_log import EventLogger
from .loop import LoopConfig, OrchestrationLoop, StreamingBackend
from .model_types import ChatResult, UsageCounters
from .retry import RetryPolicy
from .skills import SkillCatalog, SkillStep
from .tool_dispatcher import ToolDispatcher, ToolSpec

LOGGER = logging.getLogger(__name__)

DEFAULT_MAX_FOLLOW_UPS = 12


@dataclass(slots=True)
class ChainStep:
    """Record of one loop turn inside a chain."""

    index: int
    prompt: str
    result: ChatResult
    completion: StepCompletion | None = None

    @property
    def next_step(self) -> str | None:
        return self.completion.next_step if self.completion else None


@dataclass(slots=True)
class ChainResult:
    response: str
    usage: UsageCounters
    steps: list[ChainStep] = field(default_factory=list)
    state: ConversationState | None = None

    @property
    def follow_ups(self) -> int:
        return max(0, len(self.steps) - 1)


class SkillChainDriver:
    """Drive up to ``max_follow_ups`` loop turns for one user request.

    After each turn the returned payload is read as a control envelope; when
    its content is a step-completion object naming both a next step and a
    next prompt, the prompt becomes the next user message. The system prompt
    is never re-sent and the phase tracker is reset so each step may start
    over at ``analysis``.
    """

    def __init__(
        self,
        loop: OrchestrationLoop,
        *,
        max_follow_ups: int = DEFAULT_MAX_FOLLOW_UPS,
        catalog: SkillCatalog | None = None,
    ) -> None:
        self.loop = loop
        self.max_follow_ups = max(1, int(max_follow_ups))
        self.catalog = catalog
        self._base_tools: tuple[ToolSpec, ...] = loop.tools

    @classmethod
    def create(
        cls,
        backend: StreamingBackend,
        dispatcher: ToolDispatcher,
        state: ConversationState,
        *,
        tools: Sequence[ToolSpec] | None = None,
        config: LoopConfig | None = None,
        retry_policy: RetryPolicy | None = None,
        event_logger: EventLogger | None = None,
        max_follow_ups: int = DEFAULT_MAX_FOLLOW_UPS,
        catalog: SkillCatalog | None = None,
    ) -> "SkillChainDriver":
        loop = OrchestrationLoop(
            backend,
            dispatcher,
            state,
            tools=tools,
            config=config,
            retry_policy=retry_policy,
            event_logger=event_logger,
        )
        return cls(loop, max_follow_ups=max_follow_ups, catalog=catalog)

    @property
    def state(self) -> ConversationState:
        return self.loop.state

    async def run(self, initial_prompt: str, *, cancel_token: CancellationToken | None = None) -> ChainResult:
        """Run the chain; fatal loop errors propagate to the caller unchanged."""

        started = time.perf_counter()
        prompt = initial_prompt
        usage = UsageCounters()
        steps: list[ChainStep] = []
        response = ""

        for index in range(self.max_follow_ups):
            if index:
                self.state.reset_phase()
            result = await self.loop.run(prompt, cancel_token=cancel_token)
            response = result.response
            usage = usage + result.usage

            completion = self._completion_of(result)
            steps.append(ChainStep(index=index, prompt=prompt, result=result, completion=completion))
            next_prompt = completion.next_prompt_if_ready() if completion else None
            if not next_prompt:
                break

            step = self.catalog.find_step(completion.next_step) if self.catalog else None
            prompt = self._prepare_step(next_prompt, step)
            LOGGER.info("Continuing workflow with next step %s: %s", completion.next_step, next_prompt)
        else:
            LOGGER.warning("Skill chain stopped after %s follow-ups", self.max_follow_ups)

        self.loop.set_tools(self._base_tools)
        summary = self.state.summary()
        LOGGER.info(
            "Skill chain finished: steps=%s elapsed=%.2fs prompt=%s completion=%s total=%s messages=%s chars=%s",
            len(steps),
            time.perf_counter() - started,
            usage.prompt_tokens,
            usage.completion_tokens,
            usage.resolved_total,
            summary["message_count"],
            summary["message_chars"],
        )
        return ChainResult(response=response, usage=usage, steps=steps, state=self.state)

    @staticmethod
    def _completion_of(result: ChatResult) -> StepCompletion | None:
        envelope = result.envelope or EnvelopeCodec.try_parse(result.response)
        if envelope is None:
            return None
        return parse_step_completion(envelope.content)

    def _prepare_step(self, next_prompt: str, step: SkillStep | None) -> str:
        if step is None:
            return next_prompt
        if step.tools:
            available = {spec.name: spec for spec in self._base_tools}
            missing = [name for name in step.tools if name not in available]
            if missing:
                LOGGER.warning("Step %s lists unregistered tools: %s", step.name, missing)
            self.loop.set_tools([available[name] for name in step.tools if name in available])
        if not step.text:
            return next_prompt
        return f"{next_prompt}\n\nStep instructions ({step.name}):\n{step.text}"


__all__ = ["SkillChainDriver", "ChainResult", "ChainStep", "DEFAULT_MAX_FOLLOW_UPS"]
