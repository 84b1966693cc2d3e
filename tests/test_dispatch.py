"""
Tests for tool dispatch.

Dispatch never raises: unknown tools, denials and tool failures all come
back as results for the model.
"""

from unittest.mock import MagicMock

import pytest

from conftest import FakeAutomation

from agentic_tab.approval import ApprovalGate
from agentic_tab.dispatch import LOOKUP_MEMORIES, ToolDispatcher, ToolStatus
from agentic_tab.errors import ToolExecutionError
from agentic_tab.memory import MemoryRecord, MemoryStore
from agentic_tab.tools import make_screenshot_ref
from agentic_tab.types import ImageBlock


def make_dispatcher(channel, automation=None, memory=None, auto_approve=False, approve=True):
    gate = ApprovalGate(channel, timeout=1.0)
    channel.hooks["requestApproval"] = lambda e: gate.respond(e.payload["requestId"], approve)
    return ToolDispatcher(
        automation or FakeAutomation(),
        gate,
        memory=memory,
        events=channel,
        auto_approve=auto_approve,
    )


class TestDispatch:
    """Tests for the dispatch flow."""

    @pytest.mark.asyncio
    async def test_read_only_tool_runs_without_approval(self, channel):
        automation = FakeAutomation({"browser_read_text": "Example Domain"})
        dispatcher = make_dispatcher(channel, automation)

        result = await dispatcher.dispatch("browser_read_text", "", window_id=1)

        assert result.status == ToolStatus.OK
        assert result.output == "Example Domain"
        assert channel.of("requestApproval") == []
        assert automation.calls == [("browser_read_text", "")]

    @pytest.mark.asyncio
    async def test_approved_click(self, channel):
        automation = FakeAutomation()
        dispatcher = make_dispatcher(channel, automation)

        result = await dispatcher.dispatch("browser_click", "#submit", window_id=1)

        assert result.success
        assert len(channel.of("requestApproval")) == 1
        assert automation.calls == [("browser_click", "#submit")]

    @pytest.mark.asyncio
    async def test_denied_click_is_a_result(self, channel):
        automation = FakeAutomation()
        dispatcher = make_dispatcher(channel, automation, approve=False)

        result = await dispatcher.dispatch("browser_click", "#delete-account", window_id=1)

        assert result.status == ToolStatus.DENIED
        assert "denied" in result.output
        assert automation.calls == []
        assert 'status="denied"' in result.to_message().text

    @pytest.mark.asyncio
    async def test_auto_approve_skips_low_risk(self, channel):
        dispatcher = make_dispatcher(channel, auto_approve=True)

        result = await dispatcher.dispatch("browser_click", "text=Next", window_id=1)

        assert result.success
        assert channel.of("requestApproval") == []

    @pytest.mark.asyncio
    async def test_unknown_tool(self, channel):
        automation = FakeAutomation()
        dispatcher = make_dispatcher(channel, automation)

        result = await dispatcher.dispatch("browser_fly", "away", window_id=1, tab_id=3)

        assert result.status == ToolStatus.UNKNOWN_TOOL
        assert "browser_click" in result.output
        assert automation.calls == []
        assert channel.outputs("system") == ["Unknown tool: browser_fly"]
        assert channel.of("updateOutput")[0].tab_id == 3

    @pytest.mark.asyncio
    async def test_tool_failure_is_an_error_result(self, channel):
        automation = FakeAutomation({"browser_scroll": ToolExecutionError("page is gone")})
        dispatcher = make_dispatcher(channel, automation)

        result = await dispatcher.dispatch("browser_scroll", "down")

        assert result.status == ToolStatus.ERROR
        assert result.output == "Error: ToolExecutionError: page is gone"

    @pytest.mark.asyncio
    async def test_screenshot_reference_is_resolved(self, channel):
        automation = FakeAutomation()
        entry = automation.screenshots.add(b"\x89PNG", note="login form")
        automation.results["browser_screenshot"] = make_screenshot_ref(entry.id, entry.note)
        dispatcher = make_dispatcher(channel, automation)

        result = await dispatcher.dispatch("browser_screenshot", "", window_id=1)

        assert result.success
        assert result.screenshot is entry
        assert result.output == f"Screenshot captured ({entry.id}): login form"

        event = channel.of("updateScreenshot")[0]
        assert event.payload["screenshotId"] == entry.id
        assert event.payload["content"] == entry.data

        images = result.to_message().images
        assert images == [ImageBlock(data=entry.data, media_type="image/png")]

    @pytest.mark.asyncio
    async def test_evicted_screenshot_is_an_error(self, channel):
        automation = FakeAutomation({"browser_screenshot": make_screenshot_ref("screenshot_99")})
        dispatcher = make_dispatcher(channel, automation)

        result = await dispatcher.dispatch("browser_screenshot", "")

        assert result.status == ToolStatus.ERROR
        assert channel.of("updateScreenshot") == []


class TestMemories:
    """Tests for domain memory writes and lookups."""

    @pytest.mark.asyncio
    async def test_dismiss_popups_stores_memory(self, channel, tmp_path):
        memory = MemoryStore(tmp_path / "memory.json")
        dispatcher = make_dispatcher(channel, memory=memory, auto_approve=True)

        result = await dispatcher.dispatch(
            "browser_dismiss_popups", "", current_url="https://www.example.com/news"
        )

        assert result.success
        records = memory.for_domain("example.com")
        assert len(records) == 1
        assert records[0].tool_sequence == ["browser_dismiss_popups"]

    @pytest.mark.asyncio
    async def test_memory_write_failure_does_not_fail_dispatch(self, channel):
        memory = MagicMock()
        memory.add.side_effect = OSError("disk full")
        dispatcher = make_dispatcher(channel, memory=memory, auto_approve=True)

        result = await dispatcher.dispatch(
            "browser_dismiss_popups", "", current_url="https://example.com/"
        )

        assert result.success
        memory.add.assert_called_once()

    @pytest.mark.asyncio
    async def test_lookup_memories_for_current_page(self, channel, tmp_path):
        memory = MemoryStore(tmp_path / "memory.json")
        memory.add(MemoryRecord(
            domain="example.com",
            task_description="Dismiss cookie consent banners and popups",
            tool_sequence=["browser_dismiss_popups"],
        ))
        dispatcher = make_dispatcher(channel, memory=memory)

        result = await dispatcher.dispatch(
            LOOKUP_MEMORIES, "", current_url="https://www.example.com/a"
        )

        assert result.success
        assert "Memories for example.com" in result.output
        assert "browser_dismiss_popups" in result.output
        assert channel.of("requestApproval") == []

    @pytest.mark.asyncio
    async def test_lookup_memories_without_store(self, channel):
        dispatcher = make_dispatcher(channel)
        result = await dispatcher.dispatch(LOOKUP_MEMORIES, "example.com")
        assert result.output == "No memories found."
