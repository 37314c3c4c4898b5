"""Client for OpenAI-compatible ``/chat/completions`` endpoints."""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Sequence

import httpx

from ..concurrency import FairSemaphore, RetryPolicy
from ..config import Settings
from ..errors import ProviderError, QuotaExceededError
from ..models import IOLogEntry
from .io_log import IOLog

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ToolCall:
    """A request from the model to invoke a named tool."""

    id: str
    name: str
    arguments: str


@dataclass(slots=True)
class ChatMessage:
    """Normalised assistant reply: final text and/or tool calls."""

    content: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)

    def to_message(self) -> dict[str, Any]:
        """Return the assistant message to append to the conversation."""

        message: dict[str, Any] = {"role": "assistant", "content": self.content}
        if self.tool_calls:
            message["tool_calls"] = [
                {
                    "id": call.id,
                    "type": "function",
                    "function": {"name": call.name, "arguments": call.arguments},
                }
                for call in self.tool_calls
            ]
        return message


def _content_text(content: object) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict):
                text = part.get("text") or part.get("content")
                if isinstance(text, str):
                    parts.append(text)
        return "".join(parts)
    return ""


def _arguments_text(arguments: object) -> str:
    if isinstance(arguments, str):
        return arguments
    if arguments is None:
        return "{}"
    return json.dumps(arguments, ensure_ascii=False)


def normalize_completion(data: object) -> ChatMessage:
    """Map the reply shapes of OpenAI-compatible providers onto :class:`ChatMessage`."""

    if not isinstance(data, dict):
        raise ValueError("Completion payload is not an object")
    for wrapper in ("result", "data"):
        inner = data.get(wrapper)
        if isinstance(inner, dict) and ("choices" in inner or "output_text" in inner):
            data = inner
            break

    message: Any = {}
    choices = data.get("choices")
    if isinstance(choices, list) and choices:
        first = choices[0] if isinstance(choices[0], dict) else {}
        message = first.get("message") or {"content": first.get("text") or ""}
    elif isinstance(data.get("message"), dict):
        message = data["message"]
    elif "output_text" in data:
        message = {"content": data.get("output_text")}
    if not isinstance(message, dict):
        raise ValueError("Completion message is not an object")

    raw_calls = message.get("tool_calls")
    tool_calls: list[ToolCall] = []
    for index, call in enumerate(raw_calls if isinstance(raw_calls, list) else []):
        if not isinstance(call, dict):
            continue
        function = call.get("function") or {}
        name = function.get("name") if isinstance(function, dict) else None
        if not name:
            continue
        tool_calls.append(
            ToolCall(
                id=str(call.get("id") or f"call_{index}"),
                name=name,
                arguments=_arguments_text(function.get("arguments")),
            )
        )
    legacy = message.get("function_call")
    if not tool_calls and isinstance(legacy, dict) and legacy.get("name"):
        tool_calls.append(
            ToolCall(
                id="call_0",
                name=legacy["name"],
                arguments=_arguments_text(legacy.get("arguments")),
            )
        )

    return ChatMessage(content=_content_text(message.get("content")), tool_calls=tool_calls)


class ChatCompletionClient:
    """Client responsible for talking to the configured ``/chat/completions`` endpoint."""

    def __init__(
        self,
        settings: Settings,
        http_client: httpx.AsyncClient,
        *,
        semaphore: FairSemaphore,
        io_log: IOLog | None = None,
        retry: RetryPolicy | None = None,
    ):
        self._settings = settings
        self._client = http_client
        self._semaphore = semaphore
        self._io_log = io_log
        self._retry = retry or RetryPolicy.from_settings(settings)

    @property
    def enabled(self) -> bool:
        return self._settings.has_ai

    async def complete(
        self,
        messages: Sequence[dict[str, Any]],
        *,
        temperature: float | None = None,
        tools: Sequence[dict[str, Any]] | None = None,
    ) -> ChatMessage:
        if not self._settings.ai_api_key:
            raise ProviderError("ai", "AI API key is not configured")

        payload: dict[str, Any] = {
            "model": self._settings.ai_model,
            "temperature": self._settings.ai_temperature if temperature is None else temperature,
            "messages": list(messages),
        }
        if tools:
            payload["tools"] = list(tools)
            payload["tool_choice"] = "auto"
        headers = {
            "Authorization": f"Bearer {self._settings.ai_api_key}",
            "Content-Type": "application/json",
        }

        async def attempt() -> Any:
            async with self._semaphore:
                response = await self._client.post(
                    "/chat/completions", json=payload, headers=headers
                )
            if response.status_code == 429:
                raise QuotaExceededError("ai", response.text[:200] or "HTTP 429")
            if response.status_code >= 400:
                raise ProviderError(
                    "ai",
                    f"HTTP {response.status_code}: {response.text[:200]}",
                    status_code=response.status_code,
                )
            return response.json()

        started = time.perf_counter()
        data: Any = None
        try:
            data = await self._retry.run(attempt, description="AI completion")
            return normalize_completion(data)
        finally:
            if self._io_log is not None:
                self._io_log.record(
                    IOLogEntry(
                        channel="ai",
                        provider="ai",
                        request=payload,
                        response=data,
                        duration_ms=int((time.perf_counter() - started) * 1000),
                        model=self._settings.ai_model,
                        base_url=self._settings.ai_base_url,
                    )
                )
