"""
Session and status registry for Agentic Tab.

Tracks one session per browser window: its agent instance, its idle/running
status with heartbeats, and its token usage. Tabs map to their owning window.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

from .errors import NoWindowError
from .types import SessionRef, TokenUsage

logger = logging.getLogger(__name__)


class AgentStatus(str, Enum):
    """Lifecycle status of a session."""
    IDLE = "idle"
    RUNNING = "running"


@dataclass
class AgentStatusInfo:
    """Status snapshot of a session."""
    status: AgentStatus
    timestamp: float
    last_heartbeat: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "timestamp": self.timestamp,
            "lastHeartbeat": self.last_heartbeat,
        }


@dataclass
class Session:
    """Per-window state owned by the orchestrator."""
    window_id: int
    status: AgentStatusInfo
    agent: Optional[Any] = None
    token_usage: TokenUsage = field(default_factory=TokenUsage)
    active_run: Optional[Any] = None
    heartbeat_task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self.status.status == AgentStatus.RUNNING


class SessionRegistry:
    """Keyed registry of sessions by window id."""

    def __init__(
        self,
        heartbeat_interval: float = 5.0,
        stale_after: float = 30.0,
        clock: Callable[[], float] = time.time,
    ):
        self.heartbeat_interval = heartbeat_interval
        self.stale_after = stale_after
        self.clock = clock
        self.sessions: dict[int, Session] = {}
        self._tab_windows: dict[int, int] = {}

    def register_tab(self, tab_id: int, window_id: int) -> None:
        """Record which window owns a tab."""
        self._tab_windows[tab_id] = window_id

    def unregister_tab(self, tab_id: int) -> Optional[int]:
        """Forget a closed tab; returns the window it belonged to."""
        return self._tab_windows.pop(tab_id, None)

    def resolve_window(self, ref: SessionRef) -> int:
        """Resolve a session reference to a window id.

        Raises:
            NoWindowError: If neither a window nor a known tab is given
        """
        if ref.window_id is not None:
            if ref.tab_id is not None:
                self._tab_windows.setdefault(ref.tab_id, ref.window_id)
            return ref.window_id
        if ref.tab_id is not None and ref.tab_id in self._tab_windows:
            return self._tab_windows[ref.tab_id]
        raise NoWindowError(f"No window found for {ref}")

    def tab_for_window(self, window_id: int) -> Optional[int]:
        for tab_id, owner in self._tab_windows.items():
            if owner == window_id:
                return tab_id
        return None

    def get(self, window_id: int) -> Optional[Session]:
        return self.sessions.get(window_id)

    def get_or_create(self, window_id: int) -> Session:
        """Get a window's session, creating an idle one if needed."""
        session = self.sessions.get(window_id)
        if session is None:
            now = self.clock()
            session = Session(window_id, AgentStatusInfo(AgentStatus.IDLE, now, now))
            self.sessions[window_id] = session
            logger.debug(f"Created session for window {window_id}")
        return session

    def set_status(self, window_id: int, status: AgentStatus) -> AgentStatusInfo:
        """Set a session's status, logging the transition.

        Entering RUNNING starts the heartbeat; leaving it stops it.
        """
        session = self.get_or_create(window_id)
        previous = session.status.status
        now = self.clock()
        session.status = AgentStatusInfo(status, now, now)

        if previous != status:
            logger.info(f"Window {window_id} status: {previous.value} -> {status.value}")

        if status == AgentStatus.RUNNING:
            self._start_heartbeat(session)
        else:
            self._stop_heartbeat(session)
        return session.status

    def heartbeat(self, window_id: int) -> bool:
        """Refresh the heartbeat of a running session.

        Returns:
            False if the session is not running
        """
        session = self.sessions.get(window_id)
        if session is None or not session.is_running:
            return False
        session.status.last_heartbeat = self.clock()
        return True

    def get_status(self, window_id: int) -> AgentStatusInfo:
        """Status of a window; unknown windows are idle."""
        session = self.sessions.get(window_id)
        if session is None:
            now = self.clock()
            return AgentStatusInfo(AgentStatus.IDLE, now, now)
        return session.status

    def is_stale(self, window_id: int) -> bool:
        """Whether a running session has missed its heartbeats."""
        session = self.sessions.get(window_id)
        if session is None or not session.is_running:
            return False
        return self.clock() - session.status.last_heartbeat > self.stale_after

    def add_usage(self, window_id: int, input_tokens: int, output_tokens: int, cost: float) -> TokenUsage:
        session = self.get_or_create(window_id)
        session.token_usage = session.token_usage.add(input_tokens, output_tokens, cost)
        return session.token_usage

    def reset_usage(self, window_id: int) -> None:
        session = self.sessions.get(window_id)
        if session is not None:
            session.token_usage = TokenUsage()

    def remove(self, window_id: int) -> Optional[Session]:
        """Destroy a window's session on teardown."""
        session = self.sessions.pop(window_id, None)
        if session is not None:
            self._stop_heartbeat(session)
        for tab_id in [t for t, w in self._tab_windows.items() if w == window_id]:
            self.unregister_tab(tab_id)
        return session

    def _start_heartbeat(self, session: Session) -> None:
        if session.heartbeat_task is not None and not session.heartbeat_task.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        session.heartbeat_task = loop.create_task(self._heartbeat_loop(session.window_id))

    def _stop_heartbeat(self, session: Session) -> None:
        if session.heartbeat_task is not None:
            session.heartbeat_task.cancel()
            session.heartbeat_task = None

    async def _heartbeat_loop(self, window_id: int) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            if not self.heartbeat(window_id):
                return
