"""
Type definitions for Agentic Tab.

Provides the provider-agnostic data model shared by the conversation store,
the streaming segmenter, the backend adapters and the orchestrator.
"""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Union

from .errors import InvalidMessage


class Role(str, Enum):
    """Conversation roles understood at rest."""
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


@dataclass(frozen=True)
class TextBlock:
    """A text element of a multi-part message."""
    text: str

    def to_dict(self) -> dict[str, Any]:
        return {"type": "text", "text": self.text}


@dataclass(frozen=True)
class ImageBlock:
    """An image element of a multi-part message.

    Attributes:
        data: Image bytes in transportable form (see ``encoding``)
        media_type: MIME type, e.g. "image/png"
        encoding: Transport encoding tag of ``data`` (always "base64" today)
    """
    data: str
    media_type: str = "image/png"
    encoding: str = "base64"

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": "image",
            "source": {
                "type": self.encoding,
                "media_type": self.media_type,
                "data": self.data,
            },
        }


ContentBlock = Union[TextBlock, ImageBlock]
Content = Union[str, tuple[ContentBlock, ...]]


def block_from_dict(data: Any) -> ContentBlock:
    """Build a content block from its wire dictionary.

    Accepts ``{"type": "text", "text": ...}`` and
    ``{"type": "image", "source": {"type", "media_type", "data"}}``.

    Raises:
        InvalidMessage: If the block is neither
    """
    if isinstance(data, (TextBlock, ImageBlock)):
        return data
    if not isinstance(data, dict):
        raise InvalidMessage(f"Content block must be a dict, got {type(data).__name__}")

    block_type = data.get("type")
    if block_type == "text" and isinstance(data.get("text"), str):
        return TextBlock(data["text"])

    if block_type == "image":
        source = data.get("source") or {}
        if isinstance(source, dict) and isinstance(source.get("data"), str):
            return ImageBlock(
                data=source["data"],
                media_type=source.get("media_type", "image/png"),
                encoding=source.get("type", "base64"),
            )

    raise InvalidMessage(f"Unsupported content block: {block_type!r}")


@dataclass(frozen=True)
class Message:
    """A conversation message.

    ``content`` is either plain text or a tuple of text/image blocks.
    Two messages are structurally equal when role and content are equal.

    Attributes:
        role: Message role ("user", "assistant", or anything an adapter maps)
        content: Text or blocks
        pinned: Pinned messages are skipped by token-budget trimming
    """
    role: str
    content: Content
    pinned: bool = field(default=False, compare=False)

    def __post_init__(self) -> None:
        role = self.role.value if isinstance(self.role, Role) else self.role
        if not isinstance(role, str) or not role:
            raise InvalidMessage(f"Message role must be a non-empty string, got {self.role!r}")
        object.__setattr__(self, "role", role)

        content = self.content
        if isinstance(content, str):
            return
        if isinstance(content, (list, tuple)):
            object.__setattr__(
                self, "content", tuple(block_from_dict(b) for b in content)
            )
            return
        raise InvalidMessage(
            f"Message content must be text or a list of blocks, got {type(content).__name__}"
        )

    @classmethod
    def user(cls, content: Union[str, list, tuple], pinned: bool = False) -> "Message":
        return cls(Role.USER.value, content, pinned=pinned)

    @classmethod
    def assistant(cls, content: Union[str, list, tuple]) -> "Message":
        return cls(Role.ASSISTANT.value, content)

    @classmethod
    def from_dict(cls, data: Any) -> "Message":
        """Create a message from a ``{"role", "content"}`` dictionary.

        Raises:
            InvalidMessage: If the dictionary is malformed
        """
        if isinstance(data, Message):
            return data
        if not isinstance(data, dict) or "role" not in data or "content" not in data:
            raise InvalidMessage(f"Malformed message: {data!r}")
        return cls(data["role"], data["content"], pinned=bool(data.get("pinned", False)))

    @property
    def is_text(self) -> bool:
        return isinstance(self.content, str)

    @property
    def blocks(self) -> tuple[ContentBlock, ...]:
        """Content as blocks, wrapping plain text in a single TextBlock."""
        if isinstance(self.content, str):
            return (TextBlock(self.content),)
        return self.content

    @property
    def text(self) -> str:
        """Concatenated text of all text blocks."""
        if isinstance(self.content, str):
            return self.content
        return "\n".join(b.text for b in self.content if isinstance(b, TextBlock))

    @property
    def images(self) -> list[ImageBlock]:
        return [b for b in self.blocks if isinstance(b, ImageBlock)]

    def to_dict(self) -> dict[str, Any]:
        """Convert to the generic wire dictionary."""
        if isinstance(self.content, str):
            content: Any = self.content
        else:
            content = [b.to_dict() for b in self.content]
        return {"role": self.role, "content": content}


# Stream event types produced by backend adapters
TEXT_EVENT = "text"
USAGE_EVENT = "usage"


@dataclass
class StreamEvent:
    """One normalized event from a backend stream.

    ``type`` is "text", "usage", or an error type such as
    "rate_limit_error" / "overloaded_error".
    """
    type: str
    text: str = ""
    message: str = ""
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def is_error(self) -> bool:
        return self.type.endswith("_error")

    @classmethod
    def error(cls, error_type: str, message: str = "") -> "StreamEvent":
        return cls(type=error_type, message=message)


@dataclass
class TokenUsage:
    """Token usage tracking for LLM cost calculations.

    Accumulates token counts and costs across the prompts of a session.
    """
    input_tokens: float = 0.0
    output_tokens: float = 0.0
    total_tokens: float = 0.0
    total_cost: float = 0.0

    def to_dict(self) -> dict[str, float]:
        """Convert to dictionary for the UI."""
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "total_tokens": self.total_tokens,
            "total_cost": self.total_cost,
        }

    def add(self, input_tokens: int, output_tokens: int, cost: float) -> "TokenUsage":
        """Add usage and return updated instance (immutable pattern)."""
        return TokenUsage(
            input_tokens=self.input_tokens + input_tokens,
            output_tokens=self.output_tokens + output_tokens,
            total_tokens=self.total_tokens + input_tokens + output_tokens,
            total_cost=self.total_cost + cost,
        )


class CancelToken:
    """Cooperative cancellation flag checked at every suspension point."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


@dataclass(frozen=True)
class SessionRef:
    """Reference to a session by tab and/or window.

    The window id wins when both are given; a tab id is resolved to its
    owning window through the session registry.
    """
    tab_id: Optional[int] = None
    window_id: Optional[int] = None
