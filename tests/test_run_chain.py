"""Tests for the chain CLI."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest

from helpers import ScriptedBackend, envelope, turn
from inkwell.scripts import run_chain


def _install_backend(monkeypatch: pytest.MonkeyPatch, backend: ScriptedBackend) -> list[Any]:
    created: list[Any] = []

    class _Client:
        def __init__(self, settings) -> None:
            created.append(settings)

        def stream_turn(self, state, tools):
            return backend.stream_turn(state, tools)

        async def aclose(self) -> None:
            return None

    monkeypatch.setattr(run_chain, "AIClient", _Client)
    monkeypatch.setattr(run_chain.logging_utils, "setup_logging", lambda *args, **kwargs: None)
    return created


def test_missing_api_key_exits_with_error(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    code = run_chain.main(["hello", "--settings", str(tmp_path / "settings.json")])

    assert code == 2
    assert "No API key configured" in capsys.readouterr().err


def test_runs_chain_and_prints_json(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    monkeypatch.setenv("INKWELL_API_KEY", "sk-test")
    skills = tmp_path / "skills.json"
    skills.write_text(
        json.dumps({"skills": [{"name": "editing", "steps": [{"name": "apply", "text": "Apply."}]}]}),
        encoding="utf-8",
    )
    backend = ScriptedBackend(
        [
            turn(envelope("final", json.dumps({"next_step": "apply", "next_prompt": "apply edits"}))),
            turn(envelope("final", "edited"), usage={"prompt_tokens": 3, "completion_tokens": 1}),
        ]
    )
    created = _install_backend(monkeypatch, backend)

    code = run_chain.main(
        ["fix my text", "--settings", str(tmp_path / "settings.json"), "--skills", str(skills), "--model", "m1", "--json"]
    )

    assert code == 0
    assert created[0].model == "m1"
    output = json.loads(capsys.readouterr().out)
    assert output["response"] == "edited"
    assert [step["next_step"] for step in output["steps"]] == ["apply", None]
    assert output["usage"]["total_tokens"] == 4
    assert backend.calls[0]["tools"] == ["get_skills"]
    assert "Available skills: editing." in backend.messages_for_call(0)[0].content


def test_free_form_flag_uses_plain_prompt(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    monkeypatch.setenv("INKWELL_API_KEY", "sk-test")
    backend = ScriptedBackend([turn("plain reply")])
    _install_backend(monkeypatch, backend)

    code = run_chain.main(["hi", "--settings", str(tmp_path / "settings.json"), "--free-form"])

    assert code == 0
    assert capsys.readouterr().out.startswith("plain reply\n\n[steps=1")
    assert "envelope" not in backend.messages_for_call(0)[0].content


def test_keyword_matched_skill_is_suggested(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    monkeypatch.setenv("INKWELL_API_KEY", "sk-test")
    skills = tmp_path / "skills.json"
    skills.write_text(
        json.dumps(
            [
                {"name": "editing", "keywords": ["edit", "revise"]},
                {"name": "research", "keywords": ["cite", "sources"]},
            ]
        ),
        encoding="utf-8",
    )
    backend = ScriptedBackend([turn(envelope("final", "done"))])
    _install_backend(monkeypatch, backend)

    code = run_chain.main(
        ["Cite sources for chapter 2", "--settings", str(tmp_path / "settings.json"), "--skills", str(skills)]
    )

    assert code == 0
    system_prompt = backend.messages_for_call(0)[0].content
    assert "Available skills: editing, research." in system_prompt
    assert "This request matches the research skill; load it first." in system_prompt
