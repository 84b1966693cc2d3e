"""
UI event channel for Agentic Tab.

Every observable engine event is a UIEvent scoped to a tab/window pair.
Channels are synchronous and must never block the engine.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

# Event actions
UPDATE_OUTPUT = "updateOutput"
UPDATE_STREAMING_CHUNK = "updateStreamingChunk"
FINALIZE_STREAMING_SEGMENT = "finalizeStreamingSegment"
START_NEW_SEGMENT = "startNewSegment"
STREAMING_COMPLETE = "streamingComplete"
PROCESSING_COMPLETE = "processingComplete"
RATE_LIMIT = "rateLimit"
FALLBACK_STARTED = "fallbackStarted"
UPDATE_SCREENSHOT = "updateScreenshot"
REQUEST_APPROVAL = "requestApproval"

# updateOutput content types
OUTPUT_SYSTEM = "system"
OUTPUT_LLM = "llm"
OUTPUT_TOOL = "tool"
OUTPUT_PAGE_CONTEXT = "pageContext"


@dataclass
class UIEvent:
    """One observable event."""
    action: str
    payload: dict[str, Any] = field(default_factory=dict)
    tab_id: Optional[int] = None
    window_id: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        """Flatten into the message shape the UI consumes."""
        return {
            "action": self.action,
            **self.payload,
            "tabId": self.tab_id,
            "windowId": self.window_id,
        }


class EventChannel(ABC):
    """Abstract sink for UI events."""

    @abstractmethod
    def emit(self, event: UIEvent) -> None:
        """Deliver an event. Must not block."""
        pass


class CallbackEventChannel(EventChannel):
    """Delivers events to a plain callable."""

    def __init__(self, callback: Callable[[UIEvent], Any]):
        self.callback = callback

    def emit(self, event: UIEvent) -> None:
        self.callback(event)


class QueueEventChannel(EventChannel):
    """Buffers events in an asyncio queue for a consumer task."""

    def __init__(self, queue: Optional[asyncio.Queue] = None):
        self.queue: asyncio.Queue = queue or asyncio.Queue()

    def emit(self, event: UIEvent) -> None:
        self.queue.put_nowait(event)

    async def get(self) -> UIEvent:
        return await self.queue.get()


class CompositeEventChannel(EventChannel):
    """Fans events out to several channels.

    A failing listener is logged and does not stop delivery to the others.
    """

    def __init__(self, *channels: EventChannel):
        self.channels = list(channels)

    def add(self, channel: EventChannel) -> None:
        self.channels.append(channel)

    def emit(self, event: UIEvent) -> None:
        for channel in self.channels:
            try:
                channel.emit(event)
            except Exception as e:
                logger.warning(f"Event listener {type(channel).__name__} failed: {e}")
