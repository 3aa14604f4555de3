"""Tests for the skill chain driver."""

from __future__ import annotations

import asyncio
import json

import pytest

from helpers import RecordingDispatcher, ScriptedBackend, contents, envelope, make_state, turn
from inkwell.ai.errors import CorrectionLimitExceeded
from inkwell.ai.orchestration.loop import LoopConfig
from inkwell.ai.orchestration.skill_chain import SkillChainDriver
from inkwell.ai.orchestration.skills import SkillCatalog, SkillDefinition, SkillStep
from inkwell.ai.orchestration.tool_dispatcher import ToolSpec

TOOLS = [ToolSpec(name="read_document"), ToolSpec(name="write_document"), ToolSpec(name="search")]


def _completion(next_step: str | None, next_prompt: str | None) -> str:
    return json.dumps({"next_step": next_step, "next_prompt": next_prompt})


def _driver(backend: ScriptedBackend, **kwargs) -> SkillChainDriver:
    return SkillChainDriver.create(backend, RecordingDispatcher(), make_state("You are a writer."), tools=TOOLS, **kwargs)


def test_step_completion_becomes_next_user_message() -> None:
    backend = ScriptedBackend(
        [
            turn(envelope("final", _completion("draft", "do X")), usage={"prompt_tokens": 10, "completion_tokens": 5}),
            turn(envelope("final", "finished"), usage={"prompt_tokens": 20, "completion_tokens": 7}),
        ]
    )
    driver = _driver(backend)

    result = asyncio.run(driver.run("start"))

    second_call = backend.messages_for_call(1)
    assert contents(second_call, "user") == ["start", "do X"]
    assert contents(second_call, "system") == ["You are a writer."]
    assert result.response == "finished"
    assert result.usage.prompt_tokens == 30
    assert result.usage.completion_tokens == 12
    assert result.usage.resolved_total == 42
    assert [step.next_step for step in result.steps] == ["draft", None]
    assert result.follow_ups == 1


def test_follow_up_may_start_again_at_analysis() -> None:
    backend = ScriptedBackend(
        [
            turn(envelope("final", _completion("review", "check it"))),
            turn(envelope("analysis", "looking")),
            turn(envelope("final", "reviewed")),
        ]
    )
    driver = _driver(backend)

    result = asyncio.run(driver.run("start"))

    assert result.response == "reviewed"
    assert not any(text.startswith("Phase transition error") for text in contents(driver.state.messages, "system"))


@pytest.mark.parametrize(
    "content",
    [
        _completion(None, "do X"),
        _completion("draft", None),
        _completion("draft", "   "),
        "plain final answer",
    ],
)
def test_chain_stops_without_complete_step_payload(content: str) -> None:
    backend = ScriptedBackend([turn(envelope("final", content)), turn(envelope("final", "unexpected"))])
    driver = _driver(backend)

    result = asyncio.run(driver.run("start"))

    assert len(backend.calls) == 1
    assert result.response == content
    assert result.follow_ups == 0


def test_chain_respects_follow_up_bound() -> None:
    backend = ScriptedBackend([turn(envelope("final", _completion("again", "keep going")))])
    driver = _driver(backend, max_follow_ups=3)

    result = asyncio.run(driver.run("start"))

    assert len(backend.calls) == 3
    assert len(result.steps) == 3


def test_catalog_step_narrows_tools_and_adds_instructions() -> None:
    catalog = SkillCatalog(
        [
            SkillDefinition(
                name="editing",
                steps=(
                    SkillStep(name="outline", text="Outline first."),
                    SkillStep(name="revise", text="Apply the edits.", tools=("read_document", "write_document")),
                ),
            )
        ]
    )
    backend = ScriptedBackend(
        [
            turn(envelope("final", _completion("revise", "revise chapter one"))),
            turn(envelope("final", "revised")),
        ]
    )
    driver = _driver(backend, catalog=catalog)

    asyncio.run(driver.run("edit my story"))

    assert backend.calls[0]["tools"] == ["read_document", "write_document", "search"]
    assert backend.calls[1]["tools"] == ["read_document", "write_document"]
    follow_up = contents(backend.messages_for_call(1), "user")[-1]
    assert follow_up == "revise chapter one\n\nStep instructions (revise):\nApply the edits."
    assert driver.loop.tools == tuple(TOOLS)


def test_free_form_chain_follows_envelope_replies() -> None:
    backend = ScriptedBackend([turn(envelope("final", _completion("next", "continue"))), turn("all done")])
    driver = _driver(backend, config=LoopConfig(require_envelope=False))

    result = asyncio.run(driver.run("start"))

    assert result.response == "all done"
    assert [step.result.kind for step in result.steps] == ["raw", "raw"]
    assert contents(backend.messages_for_call(1), "user")[-1] == "continue"


def test_fatal_loop_error_propagates() -> None:
    backend = ScriptedBackend([turn("not an envelope")])
    driver = _driver(backend)

    with pytest.raises(CorrectionLimitExceeded):
        asyncio.run(driver.run("start"))
