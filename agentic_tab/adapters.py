"""
Provider adapters for Agentic Tab.

Provides a unified streaming LLM interface with adapters for different providers:
- OpenAI (and OpenAI-compatible like LM Studio and Ollama)
- Anthropic (Claude)
- Google GenAI (Gemini)

Every adapter turns its provider's server-sent events into normalized
StreamEvents. HTTP and protocol failures are yielded as error events rather
than raised so the fallback controller can classify them.
"""

import json
import logging
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Optional

import httpx

from .errors import (
    API_ERROR,
    AUTHENTICATION_ERROR,
    INVALID_REQUEST_ERROR,
    OVERLOADED_ERROR,
    RATE_LIMIT_ERROR,
    classify_status,
)
from .providers import Provider, ProviderConfig
from .types import (
    TEXT_EVENT,
    USAGE_EVENT,
    CancelToken,
    ImageBlock,
    Message,
    StreamEvent,
    TextBlock,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = httpx.Timeout(60.0, connect=10.0)


def parse_sse_line(line: str) -> Optional[dict[str, Any]]:
    """Decode the JSON payload of one SSE ``data:`` line.

    Returns None for comments, ``event:`` lines, blank lines, ``[DONE]``
    and payloads that are not JSON objects.
    """
    line = line.strip()
    if not line.startswith("data:"):
        return None
    payload = line[5:].strip()
    if not payload or payload == "[DONE]":
        return None
    try:
        data = json.loads(payload)
    except json.JSONDecodeError:
        logger.debug(f"Skipping malformed SSE payload: {payload[:100]}")
        return None
    return data if isinstance(data, dict) else None


def normalize_error_type(raw: Any) -> str:
    """Map a provider-specific error code or name to a normalized error type."""
    if isinstance(raw, int):
        return classify_status(raw)
    text = str(raw or "").lower()
    if "rate_limit" in text or "resource_exhausted" in text or "quota" in text:
        return RATE_LIMIT_ERROR
    if "overloaded" in text or "unavailable" in text:
        return OVERLOADED_ERROR
    if text in ("authentication_error", "permission_error", "unauthenticated", "permission_denied"):
        return AUTHENTICATION_ERROR
    if text in ("invalid_request_error", "not_found_error", "request_too_large", "invalid_argument"):
        return INVALID_REQUEST_ERROR
    return API_ERROR


class BackendAdapter(ABC):
    """Abstract base class for streaming LLM provider adapters."""

    def __init__(self, config: ProviderConfig, client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self.endpoint = config.endpoint.rstrip("/")
        self.model = config.effective_model
        self.client = client or httpx.AsyncClient(timeout=DEFAULT_TIMEOUT)

    @abstractmethod
    def format_messages(self, messages: list[Message]) -> list[dict[str, Any]]:
        """Translate provider-agnostic messages into this provider's shape."""
        pass

    @abstractmethod
    def build_request(
        self,
        system_prompt: str,
        messages: list[Message],
    ) -> tuple[str, dict[str, str], dict[str, Any]]:
        """Build the (url, headers, payload) of a streaming request."""
        pass

    @abstractmethod
    def parse_event(self, data: dict[str, Any]) -> list[StreamEvent]:
        """Convert one decoded SSE payload into stream events."""
        pass

    async def create_message(
        self,
        system_prompt: str,
        messages: list[Message],
        cancel_token: Optional[CancelToken] = None,
    ) -> AsyncIterator[StreamEvent]:
        """Stream a response for the given conversation.

        Args:
            system_prompt: System instructions for the model
            messages: Conversation messages, oldest first
            cancel_token: Stops the stream at the next received line once cancelled

        Yields:
            Text, usage and error events
        """
        url, headers, payload = self.build_request(system_prompt, messages)
        try:
            async with self.client.stream("POST", url, json=payload, headers=headers) as response:
                if response.status_code >= 400:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    yield StreamEvent.error(
                        classify_status(response.status_code),
                        self._error_message(body, response.status_code),
                    )
                    return

                async for line in response.aiter_lines():
                    if cancel_token is not None and cancel_token.cancelled:
                        logger.debug("Stream cancelled by caller")
                        return
                    data = parse_sse_line(line)
                    if data is None:
                        continue
                    for event in self.parse_event(data):
                        yield event
                        if event.is_error:
                            return
        except httpx.HTTPError as e:
            logger.warning(f"{self.config.display_name} transport error: {e}")
            yield StreamEvent.error(API_ERROR, str(e) or type(e).__name__)

    @staticmethod
    def _error_message(body: str, status_code: int) -> str:
        try:
            data = json.loads(body)
        except json.JSONDecodeError:
            return body[:200] or f"HTTP {status_code}"
        error = data.get("error") if isinstance(data, dict) else None
        if isinstance(error, dict):
            return error.get("message") or f"HTTP {status_code}"
        if isinstance(error, str):
            return error
        return f"HTTP {status_code}"

    async def close(self) -> None:
        """Close any resources."""
        await self.client.aclose()


class OpenAIAdapter(BackendAdapter):
    """Adapter for OpenAI Chat Completions API.

    Works with OpenAI, LM Studio, Ollama and other OpenAI-compatible APIs.
    """

    def format_messages(self, messages: list[Message]) -> list[dict[str, Any]]:
        formatted = []
        for msg in messages:
            role = msg.role if msg.role in ("user", "assistant", "system") else "user"
            if msg.is_text:
                content: Any = msg.content
            else:
                content = []
                for block in msg.blocks:
                    if isinstance(block, ImageBlock):
                        content.append({
                            "type": "image_url",
                            "image_url": {
                                "url": f"data:{block.media_type};{block.encoding},{block.data}",
                            },
                        })
                    else:
                        content.append({"type": "text", "text": block.text})
            formatted.append({"role": role, "content": content})
        return formatted

    def build_request(self, system_prompt, messages):
        headers = {"Content-Type": "application/json"}
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"

        payload: dict[str, Any] = {
            "model": self.model,
            "messages": [{"role": "system", "content": system_prompt}] + self.format_messages(messages),
            "temperature": 0.1,
            "max_tokens": self.config.max_tokens,
            "stream": True,
        }
        if self.config.provider == Provider.OPENAI:
            payload["stream_options"] = {"include_usage": True}

        return f"{self.endpoint}/chat/completions", headers, payload

    def parse_event(self, data):
        error = data.get("error")
        if error:
            if isinstance(error, dict):
                raw = error.get("type") or error.get("code")
                return [StreamEvent.error(normalize_error_type(raw), error.get("message", ""))]
            return [StreamEvent.error(API_ERROR, str(error))]

        events = []
        for choice in data.get("choices") or []:
            text = (choice.get("delta") or {}).get("content")
            if text:
                events.append(StreamEvent(type=TEXT_EVENT, text=text))

        usage = data.get("usage")
        if usage:
            events.append(StreamEvent(
                type=USAGE_EVENT,
                input_tokens=usage.get("prompt_tokens", 0),
                output_tokens=usage.get("completion_tokens", 0),
            ))
        return events


class AnthropicAdapter(BackendAdapter):
    """Adapter for Anthropic Messages API (Claude).

    Uses the native Anthropic streaming format instead of OpenAI compatibility.
    """

    ANTHROPIC_VERSION = "2023-06-01"

    def format_messages(self, messages: list[Message]) -> list[dict[str, Any]]:
        formatted = []
        for msg in messages:
            # Anthropic only knows "user" and "assistant"
            role = "assistant" if msg.role == "assistant" else "user"
            if msg.is_text:
                content: Any = msg.content
            else:
                content = [block.to_dict() for block in msg.blocks]
            formatted.append({"role": role, "content": content})
        return formatted

    def build_request(self, system_prompt, messages):
        headers = {
            "Content-Type": "application/json",
            "x-api-key": self.config.api_key or "",
            "anthropic-version": self.ANTHROPIC_VERSION,
        }
        payload = {
            "model": self.model,
            "max_tokens": self.config.max_tokens,
            "system": system_prompt,
            "messages": self.format_messages(messages),
            "stream": True,
        }
        return f"{self.endpoint}/messages", headers, payload

    def parse_event(self, data):
        event_type = data.get("type")

        if event_type == "content_block_delta":
            delta = data.get("delta") or {}
            if delta.get("type") == "text_delta" and delta.get("text"):
                return [StreamEvent(type=TEXT_EVENT, text=delta["text"])]
            return []

        if event_type == "message_start":
            usage = (data.get("message") or {}).get("usage") or {}
            return [StreamEvent(type=USAGE_EVENT, input_tokens=usage.get("input_tokens", 0))]

        if event_type == "message_delta":
            # Output tokens are cumulative for the message
            usage = data.get("usage") or {}
            return [StreamEvent(type=USAGE_EVENT, output_tokens=usage.get("output_tokens", 0))]

        if event_type == "error":
            error = data.get("error") or {}
            return [StreamEvent.error(
                normalize_error_type(error.get("type")),
                error.get("message", ""),
            )]

        return []


class GoogleAdapter(BackendAdapter):
    """Adapter for Google GenAI API (Gemini).

    Uses the native Google Generative AI streaming format.
    """

    def format_messages(self, messages: list[Message]) -> list[dict[str, Any]]:
        contents = []
        for msg in messages:
            role = "model" if msg.role == "assistant" else "user"
            parts = []
            for block in msg.blocks:
                if isinstance(block, TextBlock):
                    parts.append({"text": block.text})
                else:
                    parts.append({
                        "inline_data": {"mime_type": block.media_type, "data": block.data},
                    })
            contents.append({"role": role, "parts": parts})
        return contents

    def build_request(self, system_prompt, messages):
        headers = {
            "Content-Type": "application/json",
            "x-goog-api-key": self.config.api_key or "",
        }
        payload = {
            "contents": self.format_messages(messages),
            "systemInstruction": {"parts": [{"text": system_prompt}]},
            "generationConfig": {
                "temperature": 0.1,
                "maxOutputTokens": self.config.max_tokens,
            },
        }
        url = f"{self.endpoint}/models/{self.model}:streamGenerateContent?alt=sse"
        return url, headers, payload

    def parse_event(self, data):
        error = data.get("error")
        if isinstance(error, dict):
            raw = error.get("status") or error.get("code")
            return [StreamEvent.error(normalize_error_type(raw), error.get("message", ""))]

        events = []
        candidates = data.get("candidates") or []
        finished = False
        for candidate in candidates[:1]:
            for part in (candidate.get("content") or {}).get("parts") or []:
                if part.get("text"):
                    events.append(StreamEvent(type=TEXT_EVENT, text=part["text"]))
            finished = bool(candidate.get("finishReason"))

        # Usage metadata is cumulative; only the final chunk is counted
        usage = data.get("usageMetadata")
        if usage and finished:
            events.append(StreamEvent(
                type=USAGE_EVENT,
                input_tokens=usage.get("promptTokenCount", 0),
                output_tokens=usage.get("candidatesTokenCount", 0),
            ))
        return events


def create_adapter(
    provider: Provider,
    config: ProviderConfig,
    client: Optional[httpx.AsyncClient] = None,
) -> BackendAdapter:
    """Create a backend adapter for the specified provider.

    Args:
        provider: The LLM provider type
        config: Provider configuration
        client: Optional preconfigured HTTP client

    Returns:
        Configured backend adapter
    """
    adapters = {
        Provider.LM_STUDIO: OpenAIAdapter,
        Provider.OPENAI: OpenAIAdapter,
        Provider.OLLAMA: OpenAIAdapter,
        Provider.ANTHROPIC: AnthropicAdapter,
        Provider.GOOGLE: GoogleAdapter,
    }

    adapter_class = adapters.get(provider, OpenAIAdapter)
    return adapter_class(config, client=client)
