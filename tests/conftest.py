"""
Shared fixtures for Agentic Tab tests.

Provides scripted backend adapters, an in-memory automation backend and an
event recorder so the engine can be exercised without a browser or network.
"""

import asyncio
from typing import Callable, Optional
from unittest.mock import MagicMock

import pytest

from agentic_tab.agent import BrowserAgent
from agentic_tab.config import EngineConfig
from agentic_tab.events import EventChannel, UIEvent
from agentic_tab.providers import Provider, ProviderConfig
from agentic_tab.tools import TOOL_CATALOG, AutomationBackend, PageInfo
from agentic_tab.types import TEXT_EVENT, StreamEvent


def text(*chunks: str) -> list[StreamEvent]:
    """Build a list of text stream events."""
    return [StreamEvent(type=TEXT_EVENT, text=chunk) for chunk in chunks]


class FakeAdapter:
    """Backend adapter that replays one scripted event list per call."""

    def __init__(self, scripts: Optional[list] = None, name: str = "Primary", model: str = "fake-model"):
        self.scripts = list(scripts or [])
        self.calls: list[tuple[str, list]] = []
        self.model = model
        self.config = MagicMock(display_name=name)
        self.closed = False

    async def create_message(self, system_prompt, messages, cancel_token=None):
        self.calls.append((system_prompt, list(messages)))
        events = self.scripts.pop(0) if self.scripts else text("Done.")
        for event in events:
            await asyncio.sleep(0)
            yield event

    async def close(self) -> None:
        self.closed = True


class FakeAutomation(AutomationBackend):
    """Automation backend that records calls and returns canned results."""

    def __init__(self, results: Optional[dict] = None, url: str = "https://example.com/"):
        super().__init__()
        self.results = results or {}
        self.calls: list[tuple[str, str]] = []
        self.url = url
        self.cancelled = False

    @property
    def tool_names(self) -> frozenset[str]:
        return frozenset(name for name in TOOL_CATALOG if name != "lookup_memories")

    async def execute(self, tool_name: str, tool_input: str) -> str:
        self.calls.append((tool_name, tool_input))
        result = self.results.get(tool_name, f"{tool_name} ok")
        if isinstance(result, Exception):
            raise result
        return result

    async def page_info(self) -> Optional[PageInfo]:
        return PageInfo(url=self.url, title="Example")

    async def cancel(self) -> None:
        self.cancelled = True


class RecordingChannel(EventChannel):
    """Collects events and runs optional per-action hooks."""

    def __init__(self):
        self.events: list[UIEvent] = []
        self.hooks: dict[str, Callable[[UIEvent], None]] = {}

    def emit(self, event: UIEvent) -> None:
        self.events.append(event)
        hook = self.hooks.get(event.action)
        if hook is not None:
            hook(event)

    def of(self, action: str) -> list[UIEvent]:
        return [e for e in self.events if e.action == action]

    def outputs(self, output_type: str) -> list[str]:
        return [
            e.payload["content"]["content"]
            for e in self.of("updateOutput")
            if e.payload["content"]["type"] == output_type
        ]


def make_factory(agent: BrowserAgent):
    """Agent factory that always returns the given agent."""
    async def factory(window_id, provider_config, fallback_config):
        return agent
    return factory


@pytest.fixture
def provider_config():
    return ProviderConfig(provider=Provider.LM_STUDIO)


@pytest.fixture
def engine_config(provider_config):
    return EngineConfig(
        provider=provider_config,
        fallback_provider=None,
        retry_base_delay=0.01,
        retry_max_delay=0.05,
        approval_timeout=5.0,
        heartbeat_interval=60.0,
    )


@pytest.fixture
def automation():
    return FakeAutomation()


@pytest.fixture
def channel():
    return RecordingChannel()
