"""Tool dispatch seam between the orchestration loop and tool implementations.

The loop only depends on :class:`ToolDispatcher`. :class:`RegistryToolDispatcher`
is a small function registry that satisfies it and also produces the OpenAI
function specs advertised to the backend.

Example:
    dispatcher = RegistryToolDispatcher()
    dispatcher.register(
        ToolSpec(name="get_data", description="Fetch data"),
        lambda args: "42",
    )
    result = await dispatcher.execute("get_data", {})
"""

from __future__ import annotations

import inspect
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Mapping, Protocol, runtime_checkable

from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError

from ..errors import InvalidToolArgumentsError, UnknownToolError
from .cancellation import CancellationToken

LOGGER = logging.getLogger(__name__)

MAX_SCHEMA_ERRORS = 5

ToolHandler = Callable[..., Any | Awaitable[Any]]


@runtime_checkable
class ToolDispatcher(Protocol):
    """Executes one named tool with decoded JSON arguments and returns text."""

    async def execute(
        self,
        name: str,
        arguments: Any,
        *,
        cancel_token: CancellationToken | None = None,
    ) -> str:
        ...


@dataclass(slots=True, frozen=True)
class ToolSpec:
    """Specification for a tool's interface.

    Attributes:
        name: Unique identifier for the tool.
        description: Human-readable description of what the tool does.
        parameters: JSON Schema for the tool's parameters.
        strict: Whether to request strict function calling.
    """

    name: str
    description: str = ""
    parameters: Mapping[str, Any] = field(default_factory=dict)
    strict: bool = False

    def to_openai_tool(self) -> Dict[str, Any]:
        """Return the chat-completions function tool definition."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description or f"Tool {self.name}",
                "parameters": dict(self.parameters) or {"type": "object", "properties": {}},
                "strict": self.strict,
            },
        }

    def to_responses_tool(self) -> Dict[str, Any]:
        """Return the responses-API function tool definition."""
        return {
            "type": "function",
            "name": self.name,
            "description": self.description or f"Tool {self.name}",
            "parameters": dict(self.parameters) or {"type": "object", "properties": {}},
        }


@dataclass(slots=True)
class ToolRegistration:
    spec: ToolSpec
    handler: ToolHandler
    accepts_cancel_token: bool = False
    validator: Draft202012Validator | None = None
    calls: int = 0
    total_time_ms: float = 0.0


class RegistryToolDispatcher:
    """Dispatch tool calls to registered handlers.

    Handlers receive the decoded arguments and may be sync or async. A
    handler that declares a ``cancel_token`` keyword receives the caller's
    token. Non-string results are serialized as JSON. When a spec declares
    ``parameters``, arguments are checked against that JSON schema before the
    handler runs.
    """

    def __init__(self, *, validate_arguments: bool = True) -> None:
        self._tools: Dict[str, ToolRegistration] = {}
        self.validate_arguments = validate_arguments

    def register(self, spec: ToolSpec, handler: ToolHandler, *, allow_override: bool = False) -> ToolRegistration:
        if spec.name in self._tools and not allow_override:
            raise ValueError(f"Tool '{spec.name}' is already registered")
        try:
            accepts_token = "cancel_token" in inspect.signature(handler).parameters
        except (TypeError, ValueError):
            accepts_token = False
        registration = ToolRegistration(
            spec=spec,
            handler=handler,
            accepts_cancel_token=accepts_token,
            validator=_build_validator(spec),
        )
        self._tools[spec.name] = registration
        LOGGER.debug("Registered tool %s", spec.name)
        return registration

    def unregister(self, name: str) -> None:
        self._tools.pop(name, None)

    def has(self, name: str) -> bool:
        return name in self._tools

    def names(self) -> tuple[str, ...]:
        return tuple(self._tools)

    def specs(self, names: tuple[str, ...] | list[str] | None = None) -> list[ToolSpec]:
        if names is None:
            return [registration.spec for registration in self._tools.values()]
        return [self._tools[name].spec for name in names if name in self._tools]

    def stats(self, name: str) -> ToolRegistration | None:
        return self._tools.get(name)

    async def execute(
        self,
        name: str,
        arguments: Any,
        *,
        cancel_token: CancellationToken | None = None,
    ) -> str:
        registration = self._tools.get(name)
        if registration is None:
            raise UnknownToolError(name)
        if self.validate_arguments and registration.validator is not None:
            problems = _schema_problems(registration.validator, arguments)
            if problems:
                raise InvalidToolArgumentsError(name, problems)

        started = time.perf_counter()
        try:
            if registration.accepts_cancel_token:
                result = registration.handler(arguments, cancel_token=cancel_token)
            else:
                result = registration.handler(arguments)
            if inspect.isawaitable(result):
                result = await result
        finally:
            elapsed_ms = (time.perf_counter() - started) * 1000
            registration.calls += 1
            registration.total_time_ms += elapsed_ms
            LOGGER.debug("Tool %s finished in %.1fms", name, elapsed_ms)

        if isinstance(result, str):
            return result
        return json.dumps(result, ensure_ascii=False, default=str)


def _build_validator(spec: ToolSpec) -> Draft202012Validator | None:
    if not spec.parameters:
        return None
    schema = dict(spec.parameters)
    try:
        Draft202012Validator.check_schema(schema)
    except SchemaError as exc:
        raise ValueError(f"Tool '{spec.name}' has an invalid parameter schema: {exc.message}") from exc
    return Draft202012Validator(schema)


def _schema_problems(validator: Draft202012Validator, arguments: Any) -> list[str]:
    problems: list[str] = []
    for issue in validator.iter_errors(arguments):
        path = ".".join(str(part) for part in issue.absolute_path)
        problems.append(f"{path}: {issue.message}" if path else issue.message)
        if len(problems) >= MAX_SCHEMA_ERRORS:
            break
    return problems


__all__ = [
    "ToolDispatcher",
    "ToolSpec",
    "ToolHandler",
    "ToolRegistration",
    "RegistryToolDispatcher",
]
