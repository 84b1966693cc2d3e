"""
Approval gate for Agentic Tab.

Suspends a tool call until a human approves or rejects it. Each pending
request is an asyncio future resolved by ``respond``; waiting never blocks
other sessions.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from .events import REQUEST_APPROVAL, EventChannel, UIEvent
from .safety import RiskLevel
from .types import CancelToken

logger = logging.getLogger(__name__)


@dataclass
class ApprovalRequest:
    """A pending human decision about a tool call.

    Attributes:
        request_id: Unique ID for this request
        tool_name: Tool awaiting approval
        tool_input: String-encoded tool input
        reason: Why approval is needed
        future: Resolves to True (approved) or False (rejected)
    """
    request_id: str
    tool_name: str
    tool_input: str
    reason: str
    future: asyncio.Future
    risk: RiskLevel = RiskLevel.MEDIUM
    window_id: Optional[int] = None
    tab_id: Optional[int] = None
    created_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict[str, Any]:
        """Convert to the requestApproval payload."""
        return {
            "requestId": self.request_id,
            "toolName": self.tool_name,
            "toolInput": self.tool_input,
            "reason": self.reason,
            "risk": self.risk.value,
        }

    def resolve(self, approved: bool) -> None:
        if not self.future.done():
            self.future.set_result(approved)


class ApprovalGate:
    """Tracks pending approval requests across all sessions."""

    def __init__(self, events: Optional[EventChannel] = None, timeout: float = 300.0):
        self.events = events
        self.timeout = timeout
        self._pending: dict[str, ApprovalRequest] = {}

    async def request(
        self,
        tool_name: str,
        tool_input: str,
        reason: str,
        risk: RiskLevel = RiskLevel.MEDIUM,
        window_id: Optional[int] = None,
        tab_id: Optional[int] = None,
        cancel_token: Optional[CancelToken] = None,
    ) -> bool:
        """Ask for a decision and wait for it.

        Returns:
            True if approved. Rejection, timeout and cancellation all
            return False.
        """
        if cancel_token is not None and cancel_token.cancelled:
            return False

        loop = asyncio.get_running_loop()
        approval = ApprovalRequest(
            request_id=uuid.uuid4().hex,
            tool_name=tool_name,
            tool_input=tool_input,
            reason=reason,
            future=loop.create_future(),
            risk=risk,
            window_id=window_id,
            tab_id=tab_id,
        )
        self._pending[approval.request_id] = approval

        if self.events is not None:
            self.events.emit(UIEvent(REQUEST_APPROVAL, approval.to_dict(), tab_id, window_id))
        logger.info(f"Approval requested for {tool_name} ({approval.request_id}): {reason}")

        try:
            approved = await asyncio.wait_for(approval.future, timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Approval {approval.request_id} timed out after {self.timeout}s")
            approved = False
        finally:
            self._pending.pop(approval.request_id, None)

        logger.info(f"Approval {approval.request_id} {'granted' if approved else 'denied'}")
        return approved

    def respond(self, request_id: str, approved: bool) -> bool:
        """Deliver a decision.

        Returns:
            False if no such request is pending
        """
        approval = self._pending.get(request_id)
        if approval is None:
            logger.warning(f"No pending approval with id {request_id}")
            return False
        approval.resolve(bool(approved))
        return True

    def deny_pending(self, window_id: Optional[int] = None) -> int:
        """Reject every pending request of a window (or of all windows).

        Returns:
            Number of requests denied
        """
        denied = 0
        for approval in list(self._pending.values()):
            if window_id is None or approval.window_id == window_id:
                if not approval.future.done():
                    approval.resolve(False)
                    denied += 1
        if denied:
            logger.info(f"Auto-denied {denied} pending approval(s)")
        return denied

    def pending(self, window_id: Optional[int] = None) -> list[ApprovalRequest]:
        return [
            a for a in self._pending.values()
            if window_id is None or a.window_id == window_id
        ]
