"""Chat completion client for OpenAI-compatible APIs."""

import asyncio
import json
import os
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Callable

import httpx

from aido.config import ModelConfig
from aido.exceptions import ConfigError, LLMAPIError, TransportError
from aido.logging import get_logger

log = get_logger(__name__)


DEFAULT_OPENAI_URL = "https://api.openai.com/v1"
OLLAMA_OPENAI_URL = "http://127.0.0.1:11434/v1"
_RETRYABLE_STATUS = {408, 409, 429}


def _utcnow_iso() -> str:
    """Return current UTC timestamp in ISO format."""
    return datetime.now(UTC).isoformat()


def new_call_id() -> str:
    """Generate an identifier for a tool call the service did not label."""
    return f"call_{uuid.uuid4().hex[:24]}"


@dataclass(frozen=True)
class ToolCall:
    """A tool call requested by the model."""

    id: str
    name: str
    arguments: dict[str, Any] | str  # str when the model sent undecodable JSON

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "arguments": self.arguments}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ToolCall":
        return cls(id=data["id"], name=data["name"], arguments=data.get("arguments", {}))


@dataclass(frozen=True)
class Message:
    """A message in the conversation."""

    role: str  # "system", "user", "assistant", "tool"
    content: str = ""
    tool_call_id: str | None = None
    tool_name: str | None = None
    tool_calls: tuple[ToolCall, ...] = ()
    error: str | None = None  # error kind for tool messages reporting a failure
    timestamp: str = field(default_factory=_utcnow_iso)

    @classmethod
    def system(cls, content: str) -> "Message":
        return cls(role="system", content=content)

    @classmethod
    def user(cls, content: str) -> "Message":
        return cls(role="user", content=content)

    @classmethod
    def assistant(cls, content: str = "", tool_calls: list[ToolCall] | tuple[ToolCall, ...] = ()) -> "Message":
        return cls(role="assistant", content=content, tool_calls=tuple(tool_calls))

    @classmethod
    def tool(
        cls,
        call: ToolCall,
        content: str,
        error: str | None = None,
    ) -> "Message":
        return cls(
            role="tool",
            content=content,
            tool_call_id=call.id,
            tool_name=call.name,
            error=error,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "role": self.role,
            "content": self.content,
            "tool_call_id": self.tool_call_id,
            "tool_name": self.tool_name,
            "tool_calls": [call.to_dict() for call in self.tool_calls],
            "error": self.error,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Message":
        """Create from dictionary."""
        return cls(
            role=data["role"],
            content=data.get("content") or "",
            tool_call_id=data.get("tool_call_id"),
            tool_name=data.get("tool_name"),
            tool_calls=tuple(ToolCall.from_dict(item) for item in data.get("tool_calls") or []),
            error=data.get("error"),
            timestamp=data.get("timestamp") or _utcnow_iso(),
        )


@dataclass
class LLMResponse:
    """Response from the LLM."""

    content: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    model: str = ""
    usage: dict[str, int] = field(default_factory=dict)


@dataclass
class ToolDefinition:
    """Definition of a tool for the LLM."""

    name: str
    description: str
    parameters: dict[str, Any]  # JSON Schema


class LLMProvider(ABC):
    """Abstract base class for chat completion providers."""

    @abstractmethod
    async def complete(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None = None,
    ) -> LLMResponse:
        pass

    async def complete_streaming(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None = None,
        on_chunk: Callable[[str], None] | None = None,
    ) -> LLMResponse:
        """Stream a completion, forwarding content deltas to `on_chunk`.

        Providers without native streaming deliver the whole content as one chunk.
        """
        response = await self.complete(messages, tools)
        if on_chunk and response.content:
            on_chunk(response.content)
        return response

    async def close(self) -> None:
        """Release network resources."""
        return None


def decode_arguments(raw: Any) -> dict[str, Any] | str:
    """Decode tool-call arguments; keep the raw text when it is not a JSON object."""
    if isinstance(raw, dict):
        return raw
    if raw is None:
        return {}
    text = str(raw).strip()
    if not text:
        return {}
    try:
        decoded = json.loads(text)
    except json.JSONDecodeError:
        return text
    if isinstance(decoded, dict):
        return decoded
    return text


def _expect_object(value: Any, what: str) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise TransportError(f"Invalid response: {what} is {type(value).__name__}, expected an object")
    return value


def _expect_list(value: Any, what: str) -> list[Any]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise TransportError(f"Invalid response: {what} is {type(value).__name__}, expected a list")
    return value


def content_text(value: Any) -> str:
    """Flatten message content to text.

    Some services send content as a list of parts; the text parts are joined
    and anything else (images, audio) is dropped.
    """
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        parts: list[str] = []
        for part in value:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict) and isinstance(part.get("text"), str):
                parts.append(part["text"])
        return "".join(parts)
    raise TransportError(f"Invalid response: content is {type(value).__name__}")


class OpenAICompatibleProvider(LLMProvider):
    """Provider for any service exposing `/chat/completions`."""

    def __init__(
        self,
        model: str,
        api_url: str = DEFAULT_OPENAI_URL,
        api_key: str | None = None,
        temperature: float = 0.7,
        timeout: float = 120.0,
        retries: int = 2,
        backoff_seconds: float = 0.5,
        client: httpx.AsyncClient | None = None,
    ):
        """Initialize the provider.

        Args:
            model: Model name sent with every request
            api_url: Base URL of the API (without `/chat/completions`)
            api_key: Optional bearer token
            temperature: Sampling temperature
            timeout: Per-request timeout in seconds
            retries: Extra attempts on connection errors, 429 and 5xx
            backoff_seconds: First retry delay, doubled per attempt
            client: Optional preconfigured HTTP client
        """
        self.model = model
        self.api_url = api_url.rstrip("/")
        self.api_key = api_key
        self.temperature = temperature
        self.timeout = timeout
        self.retries = max(0, int(retries))
        self.backoff_seconds = backoff_seconds
        self.client = client or httpx.AsyncClient(
            timeout=timeout,
            follow_redirects=True,
        )

    @property
    def endpoint(self) -> str:
        return f"{self.api_url}/chat/completions"

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _convert_messages(self, messages: list[Message]) -> list[dict[str, Any]]:
        """Convert messages to the chat completions wire format."""
        result: list[dict[str, Any]] = []
        for msg in messages:
            if msg.role == "assistant" and msg.tool_calls:
                result.append({
                    "role": "assistant",
                    "content": msg.content or None,
                    "tool_calls": [
                        {
                            "id": call.id,
                            "type": "function",
                            "function": {
                                "name": call.name,
                                "arguments": (
                                    json.dumps(call.arguments)
                                    if isinstance(call.arguments, dict)
                                    else call.arguments
                                ),
                            },
                        }
                        for call in msg.tool_calls
                    ],
                })
            elif msg.role == "tool":
                result.append({
                    "role": "tool",
                    "content": msg.content,
                    "tool_call_id": msg.tool_call_id,
                })
            else:
                result.append({"role": msg.role, "content": msg.content})
        return result

    def _convert_tools(self, tools: list[ToolDefinition]) -> list[dict[str, Any]]:
        """Convert tools to function-calling format."""
        return [
            {
                "type": "function",
                "function": {
                    "name": tool.name,
                    "description": tool.description or "",
                    "parameters": tool.parameters or {"type": "object", "properties": {}},
                },
            }
            for tool in tools
        ]

    def _build_body(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None,
        stream: bool,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": self.model,
            "messages": self._convert_messages(messages),
            "temperature": self.temperature,
        }
        if tools:
            body["tools"] = self._convert_tools(tools)
        if stream:
            body["stream"] = True
            body["stream_options"] = {"include_usage": True}
        return body

    @staticmethod
    def _is_retryable_status(status_code: int) -> bool:
        return status_code in _RETRYABLE_STATUS or status_code >= 500

    async def _sleep_before_retry(self, attempt: int, error: Exception) -> None:
        delay = self.backoff_seconds * (2**attempt)
        log.warning(
            "Chat completion failed, retrying",
            attempt=attempt + 1,
            retries=self.retries,
            delay=delay,
            error=str(error),
        )
        await asyncio.sleep(delay)

    @staticmethod
    def _parse_usage(raw: Any) -> dict[str, int]:
        if not isinstance(raw, dict):
            return {}
        try:
            prompt = int(raw.get("prompt_tokens") or 0)
            completion = int(raw.get("completion_tokens") or 0)
            total = int(raw.get("total_tokens") or prompt + completion)
        except (TypeError, ValueError):
            log.debug("Ignoring malformed usage", usage=str(raw)[:200])
            return {}
        return {
            "prompt_tokens": prompt,
            "completion_tokens": completion,
            "total_tokens": total,
        }

    def _parse_response(self, data: Any) -> LLMResponse:
        """Parse a non-streaming chat completion payload.

        Raises:
            TransportError if the payload does not have the expected shape
        """
        data = _expect_object(data, "response")
        choices = _expect_list(data.get("choices"), "choices")
        if not choices:
            raise TransportError("Invalid response: no choices in response")
        choice = _expect_object(choices[0], "choice")
        message = _expect_object(choice.get("message") or {}, "message")

        tool_calls = []
        for raw_call in _expect_list(message.get("tool_calls"), "tool_calls"):
            raw_call = _expect_object(raw_call, "tool call")
            function = _expect_object(raw_call.get("function") or {}, "tool call function")
            tool_calls.append(ToolCall(
                id=str(raw_call.get("id") or "") or new_call_id(),
                name=str(function.get("name") or ""),
                arguments=decode_arguments(function.get("arguments")),
            ))

        return LLMResponse(
            content=content_text(message.get("content")),
            tool_calls=tool_calls,
            model=str(data.get("model") or self.model),
            usage=self._parse_usage(data.get("usage")),
        )

    async def complete(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None = None,
    ) -> LLMResponse:
        """Generate a completion."""
        body = self._build_body(messages, tools, stream=False)
        last_error: LLMAPIError | None = None

        for attempt in range(self.retries + 1):
            try:
                log.debug("Calling chat completions", model=self.model, url=self.endpoint, msg_count=len(messages))
                response = await self.client.post(self.endpoint, json=body, headers=self._headers())
            except httpx.HTTPError as e:
                last_error = LLMAPIError(f"Chat completion HTTP error: {e}")
            else:
                log.debug("Chat completion response status", status=response.status_code)
                if response.is_success:
                    try:
                        data = response.json()
                    except json.JSONDecodeError as e:
                        raise TransportError(f"Chat completion response decode error: {e}") from e
                    return self._parse_response(data)

                error = LLMAPIError(
                    f"Chat completion API error {response.status_code}: {response.text}",
                    status_code=response.status_code,
                )
                if not self._is_retryable_status(response.status_code):
                    raise error
                last_error = error

            if attempt < self.retries:
                await self._sleep_before_retry(attempt, last_error)

        assert last_error is not None
        raise last_error

    async def complete_streaming(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None = None,
        on_chunk: Callable[[str], None] | None = None,
    ) -> LLMResponse:
        """Stream a completion, merging content and tool-call deltas."""
        body = self._build_body(messages, tools, stream=True)
        last_error: LLMAPIError | None = None

        for attempt in range(self.retries + 1):
            delivered = False
            try:
                async with self.client.stream(
                    "POST", self.endpoint, json=body, headers=self._headers()
                ) as response:
                    if not response.is_success:
                        error_text = (await response.aread()).decode("utf-8", errors="replace")
                        error = LLMAPIError(
                            f"Chat completion API error {response.status_code}: {error_text}",
                            status_code=response.status_code,
                        )
                        if not self._is_retryable_status(response.status_code):
                            raise error
                        last_error = error
                    else:
                        accumulator = _StreamAccumulator(self.model)
                        async for line in response.aiter_lines():
                            chunk_text = accumulator.feed(line)
                            if chunk_text is None:
                                continue
                            if chunk_text == _STREAM_DONE:
                                break
                            delivered = True
                            if on_chunk:
                                on_chunk(chunk_text)
                        return accumulator.build()
            except httpx.HTTPError as e:
                if delivered:
                    raise LLMAPIError(f"Chat completion stream interrupted: {e}") from e
                last_error = LLMAPIError(f"Chat completion streaming error: {e}")

            if attempt < self.retries:
                await self._sleep_before_retry(attempt, last_error)

        assert last_error is not None
        raise last_error

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()


_STREAM_DONE = "\x00done"


class _StreamAccumulator:
    """Merge server-sent chat completion chunks into one response."""

    def __init__(self, model: str):
        self.model = model
        self.content_parts: list[str] = []
        self.tool_calls: dict[int, dict[str, Any]] = {}
        self.usage: dict[str, int] = {}

    def feed(self, line: str) -> str | None:
        """Consume one SSE line; return content delta, `_STREAM_DONE` or None."""
        line = line.strip()
        if not line.startswith("data:"):
            return None
        payload = line[len("data:"):].strip()
        if payload == "[DONE]":
            return _STREAM_DONE
        try:
            chunk = json.loads(payload)
        except json.JSONDecodeError:
            log.debug("Skipping undecodable stream chunk", payload=payload[:200])
            return None

        chunk = _expect_object(chunk, "stream chunk")
        if chunk.get("model"):
            self.model = str(chunk["model"])
        if chunk.get("usage"):
            self.usage = OpenAICompatibleProvider._parse_usage(chunk["usage"])

        choices = _expect_list(chunk.get("choices"), "choices")
        if not choices:
            return None
        choice = _expect_object(choices[0], "choice")
        delta = _expect_object(choice.get("delta") or {}, "delta")

        for raw_call in _expect_list(delta.get("tool_calls"), "tool_calls"):
            raw_call = _expect_object(raw_call, "tool call")
            index = self._call_index(raw_call)
            entry = self.tool_calls.setdefault(index, {"id": None, "name": None, "arguments": ""})
            if entry["id"] is None and raw_call.get("id"):
                entry["id"] = str(raw_call["id"])
            function = _expect_object(raw_call.get("function") or {}, "tool call function")
            if entry["name"] is None and function.get("name"):
                entry["name"] = str(function["name"])
            arguments = function.get("arguments")
            if isinstance(arguments, str):
                entry["arguments"] += arguments
            elif arguments:
                entry["arguments"] += json.dumps(arguments)

        content = content_text(delta.get("content"))
        if content:
            self.content_parts.append(content)
            return content
        return None

    def _call_index(self, raw_call: dict[str, Any]) -> int:
        """Slot of a tool-call delta; unindexed fragments extend the last call."""
        index = raw_call.get("index")
        if isinstance(index, int) and not isinstance(index, bool):
            return index
        if raw_call.get("id") or not self.tool_calls:
            return max(self.tool_calls, default=-1) + 1
        return max(self.tool_calls)

    def build(self) -> LLMResponse:
        tool_calls = [
            ToolCall(
                id=entry["id"] or new_call_id(),
                name=entry["name"] or "",
                arguments=decode_arguments(entry["arguments"]),
            )
            for _, entry in sorted(self.tool_calls.items())
        ]
        return LLMResponse(
            content="".join(self.content_parts),
            tool_calls=tool_calls,
            model=self.model,
            usage=self.usage,
        )


def create_provider(config: ModelConfig | None = None) -> LLMProvider:
    """Create a chat completion provider.

    Args:
        config: Model section of the configuration (defaults apply when omitted)

    Returns:
        Configured LLMProvider instance
    """
    cfg = config or ModelConfig()
    provider = (cfg.provider or "openai").strip().lower()

    if provider in ("openai", "openai-compatible"):
        api_key = cfg.api_key or os.environ.get("OPENAI_API_KEY", "")
        api_url = cfg.api_url or DEFAULT_OPENAI_URL
    elif provider == "ollama":
        api_key = cfg.api_key
        api_url = cfg.api_url if cfg.api_url and cfg.api_url != DEFAULT_OPENAI_URL else OLLAMA_OPENAI_URL
    else:
        raise ConfigError(f"Provider '{cfg.provider}' not supported. Use 'openai' or 'ollama'.")

    return OpenAICompatibleProvider(
        model=cfg.model,
        api_url=api_url,
        api_key=api_key or None,
        temperature=cfg.temperature,
        timeout=cfg.timeout,
        retries=cfg.retries,
    )
