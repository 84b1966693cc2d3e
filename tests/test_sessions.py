"""
Tests for the session/status registry.
"""

import asyncio

import pytest

from agentic_tab.errors import NoWindowError
from agentic_tab.sessions import AgentStatus, SessionRegistry
from agentic_tab.types import SessionRef


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestResolveWindow:
    """Tests for tab/window resolution."""

    def test_window_wins(self):
        registry = SessionRegistry()
        assert registry.resolve_window(SessionRef(tab_id=3, window_id=1)) == 1
        # The pairing is remembered for later tab-only references
        assert registry.resolve_window(SessionRef(tab_id=3)) == 1

    def test_registered_tab(self):
        registry = SessionRegistry()
        registry.register_tab(5, 2)
        assert registry.resolve_window(SessionRef(tab_id=5)) == 2
        assert registry.tab_for_window(2) == 5

    def test_unregistered_tab_is_forgotten(self):
        registry = SessionRegistry()
        registry.register_tab(5, 2)

        assert registry.unregister_tab(5) == 2
        assert registry.unregister_tab(5) is None
        assert registry.tab_for_window(2) is None

    def test_unknown_tab_raises(self):
        with pytest.raises(NoWindowError):
            SessionRegistry().resolve_window(SessionRef(tab_id=5))

    def test_empty_ref_raises(self):
        with pytest.raises(NoWindowError):
            SessionRegistry().resolve_window(SessionRef())


class TestStatus:
    """Tests for status transitions, heartbeats and staleness."""

    def test_unknown_window_is_idle(self):
        assert SessionRegistry().get_status(9).status == AgentStatus.IDLE

    def test_heartbeat_only_while_running(self):
        clock = FakeClock()
        registry = SessionRegistry(clock=clock)
        registry.get_or_create(1)
        assert registry.heartbeat(1) is False

        registry.set_status(1, AgentStatus.RUNNING)
        clock.now += 10
        assert registry.heartbeat(1) is True
        assert registry.get_status(1).last_heartbeat == 1010.0
        assert registry.get_status(1).timestamp == 1000.0

    def test_stale_running_session(self):
        clock = FakeClock()
        registry = SessionRegistry(stale_after=30.0, clock=clock)
        registry.set_status(1, AgentStatus.RUNNING)

        clock.now += 20
        assert registry.is_stale(1) is False
        clock.now += 20
        assert registry.is_stale(1) is True

        registry.set_status(1, AgentStatus.IDLE)
        assert registry.is_stale(1) is False

    def test_status_to_dict(self):
        registry = SessionRegistry(clock=FakeClock(5.0))
        info = registry.set_status(1, AgentStatus.RUNNING)
        assert info.to_dict() == {"status": "running", "timestamp": 5.0, "lastHeartbeat": 5.0}

    @pytest.mark.asyncio
    async def test_heartbeat_task_follows_status(self):
        registry = SessionRegistry(heartbeat_interval=0.01)
        registry.set_status(1, AgentStatus.RUNNING)
        session = registry.get(1)
        assert session.heartbeat_task is not None

        started = session.status.last_heartbeat
        await asyncio.sleep(0.05)
        assert session.status.last_heartbeat > started

        task = session.heartbeat_task
        registry.set_status(1, AgentStatus.IDLE)
        assert session.heartbeat_task is None
        await asyncio.sleep(0.01)
        assert task.cancelled()


class TestUsageAndTeardown:
    """Tests for token usage and session removal."""

    def test_usage_accumulates_and_resets(self):
        registry = SessionRegistry()
        registry.add_usage(1, 100, 50, 0.01)
        usage = registry.add_usage(1, 10, 5, 0.001)

        assert usage.total_tokens == 165
        assert usage.total_cost == pytest.approx(0.011)

        registry.reset_usage(1)
        assert registry.get(1).token_usage.total_tokens == 0

    def test_remove_forgets_tabs(self):
        registry = SessionRegistry()
        registry.register_tab(5, 1)
        registry.get_or_create(1)

        assert registry.remove(1) is not None
        assert registry.get(1) is None
        with pytest.raises(NoWindowError):
            registry.resolve_window(SessionRef(tab_id=5))
