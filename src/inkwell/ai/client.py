"""Async backend client built around OpenAI-compatible endpoints."""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Mapping, Sequence

import httpx
from openai import AsyncOpenAI

from .errors import StreamProtocolError
from .orchestration.conversation import ConversationState
from .orchestration.model_types import StreamEvent
from .orchestration.tool_dispatcher import ToolSpec
from .orchestration.wire_events import adapter_for

LOGGER = logging.getLogger(__name__)

WIRE_APIS = ("chat", "responses")


@dataclass(slots=True)
class ClientSettings:
    """Subset of settings required to configure the AI client."""

    base_url: str
    api_key: str
    model: str
    organization: str | None = None
    wire_api: str = "chat"
    temperature: float | None = 0.2
    request_timeout: float | None = 90.0
    default_headers: Mapping[str, str] | None = None
    metadata: Mapping[str, str] | None = None
    debug_logging: bool = False


class AIClient:
    """Streaming backend for the orchestration loop.

    Renders the conversation for the configured wire API, opens a streamed
    request and yields normalized :class:`StreamEvent` objects. Retries are
    owned by the loop's retry policy, so the SDK's own retries are disabled.
    """

    def __init__(self, settings: ClientSettings, *, client: AsyncOpenAI | None = None) -> None:
        if settings.wire_api not in WIRE_APIS:
            raise ValueError(f"Unsupported wire API '{settings.wire_api}'; expected one of {WIRE_APIS}")
        self._settings = settings
        self._client = client or self._build_client(settings)
        self._models_cache: List[str] | None = None
        self._models_lock = asyncio.Lock()

    @property
    def settings(self) -> ClientSettings:
        return self._settings

    async def stream_turn(self, state: ConversationState, tools: Sequence[ToolSpec]) -> AsyncIterator[StreamEvent]:
        """Stream one assistant turn for ``state`` as normalized events."""

        if self._settings.wire_api == "responses":
            payload = self._build_responses_payload(state, tools)
            LOGGER.debug(
                "Starting streamed response via %s with %s input item(s)",
                self._settings.model,
                len(payload["input"]),
            )
        else:
            payload = self._build_chat_payload(state, tools)
            LOGGER.debug(
                "Starting streamed chat completion via %s with %s message(s)",
                self._settings.model,
                len(payload["messages"]),
            )
        if self._settings.debug_logging:
            self._log_prompt_payload(payload)

        adapter = adapter_for(self._settings.wire_api)
        stream = await self._open_stream(payload)
        try:
            async for raw in stream:
                for event in adapter.normalize(raw):
                    yield event
        except (httpx.DecodingError, json.JSONDecodeError) as exc:
            raise StreamProtocolError(f"Backend stream could not be decoded: {exc}") from exc
        finally:
            await _close_stream(stream)

    async def list_models(self, *, force_refresh: bool = False) -> List[str]:
        """Return a list of supported model identifiers."""

        if self._models_cache is not None and not force_refresh:
            return list(self._models_cache)

        async with self._models_lock:
            if self._models_cache is not None and not force_refresh:
                return list(self._models_cache)

            response = await self._client.models.list()
            models = [item.id for item in response.data if getattr(item, "id", None)]
            self._models_cache = models
            return list(models)

    async def _open_stream(self, payload: Mapping[str, Any]) -> Any:
        if self._settings.wire_api == "responses":
            return await self._client.responses.create(**payload)
        return await self._client.chat.completions.create(**payload)

    def _build_client(self, settings: ClientSettings) -> AsyncOpenAI:
        headers = dict(settings.default_headers) if settings.default_headers else None
        return AsyncOpenAI(
            api_key=settings.api_key,
            base_url=settings.base_url,
            organization=settings.organization,
            timeout=settings.request_timeout,
            default_headers=headers,
            max_retries=0,
        )

    def _build_chat_payload(self, state: ConversationState, tools: Sequence[ToolSpec]) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": self._settings.model,
            "messages": state.to_chat_messages(),
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        if tools:
            payload["tools"] = [spec.to_openai_tool() for spec in tools]
        if self._settings.temperature is not None:
            payload["temperature"] = self._settings.temperature
        if self._settings.metadata:
            payload["metadata"] = dict(self._settings.metadata)
        return payload

    def _build_responses_payload(self, state: ConversationState, tools: Sequence[ToolSpec]) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": self._settings.model,
            "input": state.to_responses_input(),
            "stream": True,
        }
        if tools:
            payload["tools"] = [spec.to_responses_tool() for spec in tools]
        if self._settings.temperature is not None:
            payload["temperature"] = self._settings.temperature
        if self._settings.metadata:
            payload["metadata"] = dict(self._settings.metadata)
        return payload

    def _log_prompt_payload(self, payload: Mapping[str, Any]) -> None:
        try:
            serialized = json.dumps(payload, ensure_ascii=False, indent=2)
        except (TypeError, ValueError):
            LOGGER.debug("AI prompt payload (unserializable): %s", payload)
        else:
            LOGGER.debug("AI prompt payload:\n%s", serialized)

    async def aclose(self) -> None:
        """Close the underlying OpenAI client to release network resources."""

        close = getattr(self._client, "close", None)
        if close is None:
            return
        try:
            result = close()
        except Exception as exc:  # pragma: no cover - defensive guard
            LOGGER.debug("AI client close failed to start: %s", exc)
            return
        if inspect.isawaitable(result):
            try:
                await result
            except Exception as exc:  # pragma: no cover - defensive guard
                LOGGER.debug("AI client close failed: %s", exc)


async def _close_stream(stream: Any) -> None:
    close = getattr(stream, "close", None)
    if close is None:
        return
    result = close()
    if inspect.isawaitable(result):
        await result


__all__ = ["AIClient", "ClientSettings", "WIRE_APIS"]
