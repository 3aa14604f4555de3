"""Skill definitions: named multi-step pipelines the model walks through.

A skill is a block of instructions plus an ordered list of steps. Each step
carries its own instructions and the tools it needs. The chain driver looks
up the step named in a step-completion payload so the next turn sees only
that step's tools, and the ``get_skills`` tool lets the model pull step
instructions on demand.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Mapping, Sequence

from .tool_dispatcher import RegistryToolDispatcher, ToolSpec

LOGGER = logging.getLogger(__name__)

GET_SKILLS_TOOL = "get_skills"


@dataclass(slots=True, frozen=True)
class SkillStep:
    """One step of a skill pipeline.

    Attributes:
        name: Step identifier referenced by ``next_step``.
        text: Instructions sent to the model when the step starts.
        tools: Names of the tools the step may use.
    """

    name: str
    text: str = ""
    tools: tuple[str, ...] = ()


@dataclass(slots=True, frozen=True)
class SkillDefinition:
    name: str
    text: str = ""
    keywords: tuple[str, ...] = ()
    tools: tuple[str, ...] = ()
    steps: tuple[SkillStep, ...] = ()

    def step(self, name: str) -> SkillStep | None:
        return next((step for step in self.steps if step.name == name), None)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "SkillDefinition":
        """Build a skill from a plain mapping (``steps`` or ``childSkill`` entries)."""

        raw_steps = data.get("steps") or data.get("childSkill") or ()
        steps = tuple(
            SkillStep(
                name=str(entry.get("name") or entry.get("step") or ""),
                text=str(entry.get("text") or "").strip(),
                tools=_tool_names(entry.get("tools")),
            )
            for entry in raw_steps
            if isinstance(entry, Mapping)
        )
        return cls(
            name=str(data["name"]),
            text=str(data.get("text") or "").strip(),
            keywords=tuple(str(keyword) for keyword in data.get("keywords") or ()),
            tools=_tool_names(data.get("tools")),
            steps=steps,
        )


class SkillCatalog:
    """Registry of skills, addressable by skill name or by step name."""

    def __init__(self, skills: Iterable[SkillDefinition] = ()) -> None:
        self._skills: Dict[str, SkillDefinition] = {}
        for skill in skills:
            self.register(skill)

    def __len__(self) -> int:
        return len(self._skills)

    def __contains__(self, name: object) -> bool:
        return name in self._skills

    def register(self, skill: SkillDefinition) -> None:
        if skill.name in self._skills:
            raise ValueError(f"Skill '{skill.name}' is already registered")
        self._skills[skill.name] = skill

    def get(self, name: str) -> SkillDefinition | None:
        return self._skills.get(name)

    def names(self) -> tuple[str, ...]:
        return tuple(self._skills)

    def find_step(self, step_name: str | None, *, skill: str | None = None) -> SkillStep | None:
        """Return the step called ``step_name``, searching one skill or all of them."""

        if not step_name:
            return None
        if skill is not None:
            definition = self._skills.get(skill)
            return definition.step(step_name) if definition else None
        for definition in self._skills.values():
            step = definition.step(step_name)
            if step is not None:
                return step
        return None

    def match(self, prompt: str) -> SkillDefinition | None:
        """Pick the skill whose keywords best match ``prompt`` (most hits wins)."""

        lowered = prompt.lower()
        best: SkillDefinition | None = None
        best_hits = 0
        for definition in self._skills.values():
            hits = sum(1 for keyword in definition.keywords if keyword.lower() in lowered)
            if hits > best_hits:
                best, best_hits = definition, hits
        return best

    def describe(self, name: str, step: str | None = None) -> Dict[str, Any]:
        """Payload returned by the ``get_skills`` tool."""

        definition = self._skills.get(name)
        if definition is None:
            return {"error": f"Unknown skill: {name}", "available": list(self._skills)}
        if step:
            match = definition.step(step)
            if match is None:
                return {
                    "error": f"Unknown step '{step}' for skill {name}",
                    "steps": [entry.name for entry in definition.steps],
                }
            return {"name": name, "step": match.name, "text": match.text, "tools": list(match.tools)}
        return {
            "name": name,
            "text": definition.text,
            "tools": list(definition.tools),
            "steps": [entry.name for entry in definition.steps],
        }


def register_skill_tool(dispatcher: RegistryToolDispatcher, catalog: SkillCatalog) -> ToolSpec:
    """Expose ``catalog`` to the model as the ``get_skills`` tool."""

    spec = ToolSpec(
        name=GET_SKILLS_TOOL,
        description="Return the instructions for a skill, or for one step of a skill.",
        parameters={
            "type": "object",
            "properties": {
                "name": {"type": "string", "description": "Skill name."},
                "step": {"type": "string", "description": "Optional step name."},
            },
            "required": ["name"],
        },
    )

    def _handler(arguments: Any) -> Dict[str, Any]:
        if not isinstance(arguments, Mapping) or not arguments.get("name"):
            return {"error": "get_skills requires a skill name", "available": list(catalog.names())}
        return catalog.describe(str(arguments["name"]), arguments.get("step"))

    dispatcher.register(spec, _handler)
    LOGGER.debug("Registered %s with %s skill(s)", GET_SKILLS_TOOL, len(catalog))
    return spec


def _tool_names(value: Any) -> tuple[str, ...]:
    if not value:
        return ()
    names: list[str] = []
    for entry in value if isinstance(value, Sequence) and not isinstance(value, str) else (value,):
        if isinstance(entry, str):
            names.append(entry)
        elif isinstance(entry, Mapping):
            name = entry.get("name") or (entry.get("function") or {}).get("name")
            if name:
                names.append(str(name))
    return tuple(names)


__all__ = [
    "SkillStep",
    "SkillDefinition",
    "SkillCatalog",
    "GET_SKILLS_TOOL",
    "register_skill_tool",
]
