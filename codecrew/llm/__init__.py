"""LLM provider interface and the Ollama streaming provider."""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Literal

import httpx

from codecrew.exceptions import LLMAPIError, LLMError
from codecrew.logging import get_logger

log = get_logger(__name__)


OLLAMA_NATIVE_BASE_URL = "http://127.0.0.1:11434"

ChunkType = Literal["text", "tool_use_start", "tool_use_end", "done"]


@dataclass
class ToolCall:
    """A tool call requested by the LLM."""

    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass
class Message:
    """A message in the conversation."""

    role: str  # "system", "user", "assistant", "tool"
    content: str
    tool_call_id: str | None = None
    tool_name: str | None = None
    tool_calls: list[ToolCall] = field(default_factory=list)
    is_error: bool = False


@dataclass
class StreamChunk:
    """One event of a streamed completion."""

    type: ChunkType
    text: str = ""
    tool_call: ToolCall | None = None


@dataclass
class ToolDefinition:
    """Definition of a tool for the LLM."""

    name: str
    description: str
    parameters: dict[str, Any]  # JSON Schema


class LLMProvider(ABC):
    """Abstract base class for LLM providers.

    The orchestration core only relies on this shape; it never assumes a
    specific vendor.
    """

    name: str = "provider"

    @abstractmethod
    def stream_with_tools(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[StreamChunk]:
        """Stream a completion as text and tool-use chunks."""

    @abstractmethod
    def count_tokens(self, text: str) -> int:
        pass

    def get_context_window(self) -> int:
        return 65536

    async def is_available(self) -> bool:
        return True


class OllamaProvider(LLMProvider):
    """Direct Ollama API provider."""

    name = "ollama"

    def __init__(
        self,
        model: str = "llama3.2",
        base_url: str = OLLAMA_NATIVE_BASE_URL,
        temperature: float = 0.7,
        max_tokens: int = 4096,
        context_window: int = 65536,
        api_key: str | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        """Initialize Ollama provider.

        Args:
            model: Ollama model name (e.g., 'llama3.2', 'qwen3:32b')
            base_url: Ollama API base URL
            temperature: Sampling temperature
            max_tokens: Max tokens to generate
            context_window: Context size requested from the server
            api_key: Optional API key (Ollama usually doesn't need one locally)
            client: Optional preconfigured HTTP client
        """
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.context_window = context_window
        self.api_key = api_key

        self.client = client or httpx.AsyncClient(
            timeout=120.0,
            follow_redirects=True,
        )

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _convert_messages(self, messages: list[Message]) -> list[dict[str, Any]]:
        """Convert messages to Ollama format."""
        result = []
        for msg in messages:
            entry: dict[str, Any] = {"role": msg.role, "content": msg.content or ""}
            if msg.role == "assistant" and msg.tool_calls:
                entry["tool_calls"] = [
                    {"function": {"name": tc.name, "arguments": tc.arguments}}
                    for tc in msg.tool_calls
                ]
            if msg.role == "tool" and msg.tool_name:
                entry["tool_name"] = msg.tool_name
            result.append(entry)
        return result

    def _convert_tools(self, tools: list[ToolDefinition]) -> list[dict[str, Any]]:
        """Convert tools to Ollama format."""
        return [
            {
                "type": "function",
                "function": {
                    "name": tool.name,
                    "description": tool.description or "",
                    "parameters": tool.parameters or {},
                },
            }
            for tool in tools
            if tool.name
        ]

    async def stream_with_tools(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[StreamChunk]:
        """Stream a completion from ``/api/chat``.

        Ollama emits newline-delimited JSON objects. Text arrives in
        ``message.content``; tool calls arrive complete in
        ``message.tool_calls`` and are reported as a start/end pair.
        """
        url = f"{self.base_url}/api/chat"

        options: dict[str, Any] = {
            "num_ctx": self.context_window,
            "temperature": self.temperature,
        }
        if max_tokens or self.max_tokens:
            options["num_predict"] = max_tokens or self.max_tokens

        body: dict[str, Any] = {
            "model": self.model,
            "messages": self._convert_messages(messages),
            "stream": True,
            "options": options,
        }
        if tools:
            body["tools"] = self._convert_tools(tools)

        call_index = 0
        try:
            async with self.client.stream("POST", url, json=body, headers=self._headers()) as response:
                if not response.is_success:
                    error_text = (await response.aread()).decode("utf-8", errors="replace")
                    raise LLMAPIError(
                        f"Ollama API error {response.status_code}: {error_text}",
                        status_code=response.status_code,
                    )

                async for line in response.aiter_lines():
                    if not line.strip():
                        continue
                    try:
                        chunk = json.loads(line)
                    except json.JSONDecodeError:
                        continue

                    message = chunk.get("message") or {}
                    content = message.get("content")
                    if content:
                        yield StreamChunk(type="text", text=content)

                    for raw_call in message.get("tool_calls") or []:
                        function = raw_call.get("function") or {}
                        arguments = function.get("arguments") or {}
                        if isinstance(arguments, str):
                            try:
                                arguments = json.loads(arguments)
                            except json.JSONDecodeError:
                                arguments = {"raw": arguments}
                        call = ToolCall(
                            id=str(raw_call.get("id") or f"ollama_call_{call_index}"),
                            name=str(function.get("name", "")),
                            arguments=arguments,
                        )
                        call_index += 1
                        yield StreamChunk(
                            type="tool_use_start",
                            tool_call=ToolCall(id=call.id, name=call.name),
                        )
                        yield StreamChunk(type="tool_use_end", tool_call=call)

                    if chunk.get("done"):
                        break
        except httpx.HTTPError as e:
            raise LLMAPIError(f"Ollama streaming error: {e}")

        yield StreamChunk(type="done")

    def count_tokens(self, text: str) -> int:
        """Count tokens (rough estimate for Ollama models)."""
        # ~1 token per 4 characters for English
        return len(text) // 4

    def get_context_window(self) -> int:
        return self.context_window

    async def is_available(self) -> bool:
        """Check that the Ollama server answers the tags endpoint."""
        try:
            response = await self.client.get(f"{self.base_url}/api/tags", headers=self._headers())
        except httpx.HTTPError as e:
            log.debug("Ollama availability check failed", error=str(e))
            return False
        return response.is_success

    async def close(self):
        """Close the HTTP client."""
        await self.client.aclose()


def create_provider(
    provider: str = "ollama",
    model: str = "llama3.2",
    api_key: str | None = None,
    base_url: str | None = None,
    temperature: float = 0.7,
    max_tokens: int = 4096,
    context_window: int = 65536,
) -> LLMProvider:
    """Create an LLM provider.

    Args:
        provider: Provider name (only ``ollama`` ships with codecrew)
        model: Model name
        api_key: Optional API key
        base_url: Optional base URL
        temperature: Default temperature
        max_tokens: Default max tokens
        context_window: Context window size

    Returns:
        Configured LLMProvider instance
    """
    if provider == "ollama":
        return OllamaProvider(
            model=model,
            base_url=base_url or OLLAMA_NATIVE_BASE_URL,
            temperature=temperature,
            max_tokens=max_tokens,
            context_window=context_window,
            api_key=api_key,
        )
    raise LLMError(f"Provider '{provider}' not supported. Use 'ollama' or register one with set_provider().")


# Global provider instance
_provider: LLMProvider | None = None


def get_provider() -> LLMProvider:
    """Get the global LLM provider instance."""
    global _provider
    if _provider is None:
        from codecrew.config import get_config
        cfg = get_config()
        _provider = create_provider(
            provider=cfg.model.provider,
            model=cfg.model.model,
            temperature=cfg.model.temperature,
            max_tokens=cfg.model.max_tokens,
            context_window=cfg.model.context_window,
            api_key=cfg.model.api_key or None,
            base_url=cfg.model.base_url or None,
        )
    return _provider


def set_provider(provider: LLMProvider | None) -> None:
    """Set the global LLM provider instance."""
    global _provider
    _provider = provider
