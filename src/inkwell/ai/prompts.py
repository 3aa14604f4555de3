"""Prompt templates for the phase-gated agent loop."""

from __future__ import annotations

from typing import Sequence


def envelope_system_prompt(
    *,
    tool_names: Sequence[str] = (),
    skill_names: Sequence[str] = (),
    suggested_skill: str | None = None,
) -> str:
    """Return the system prompt describing the control envelope protocol.

    Args:
        tool_names: Tools advertised to the model, listed for reference.
        skill_names: Skills the model may load through ``get_skills``.
        suggested_skill: Skill matched to the request by keyword, named as the
            first one to load.
    """

    sections = [_protocol_section(), _workflow_section()]
    if skill_names:
        sections.append(_skills_section(skill_names, suggested_skill))
    if tool_names:
        sections.append("## Available Tools\n\n" + "\n".join(f"- **{name}**" for name in tool_names))
    return "\n\n".join(sections)


def free_form_system_prompt() -> str:
    return "You are a careful writing assistant. Use the available tools when they help, then answer plainly."


def _protocol_section() -> str:
    return """## Response Format

All assistant replies MUST be a single phase-gated control envelope JSON object and nothing else:

{"phase": "<analysis|action|final>",
 "control": {"allowed_tools": ["<tool>", ...], "allow_tool_use": true},
 "envelope": {"type": "text", "content": "...", "metadata": {}}}

- No markdown fences, no text outside the JSON object.
- Use lowercase phase names.
- List every tool you call in control.allowed_tools and set phase="action" whenever tool calls are present.
- When you are done, send phase="final" with control.allowed_tools = [] and the user-facing answer in envelope.content."""


def _workflow_section() -> str:
    return """## Phase Rules

1. analysis may be followed by action or final.
2. action may be followed by analysis or final. Never send two action envelopes in a row.
3. final ends the step. Do not send anything after it until a new request arrives.
4. Do not repeat an identical tool call; process the previous result first."""


def _skills_section(skill_names: Sequence[str], suggested: str | None = None) -> str:
    listed = ", ".join(skill_names)
    hint = f"\nThis request matches the {suggested} skill; load it first." if suggested else ""
    return f"""## Skills

Available skills: {listed}.
Load a playbook with get_skills({{"name": "<skill>"}}) and a step with get_skills({{"name": "<skill>", "step": "<step>"}}).
When a step completes, send phase="final" whose envelope.content is the JSON
{{"next_step": "<step or null>", "next_prompt": "<instruction for the next step or null>"}}.{hint}"""


__all__ = ["envelope_system_prompt", "free_form_system_prompt"]
