"""
Tool dispatch for Agentic Tab.

Resolves a parsed directive to a tool call, passes it through the approval
gate, executes it and packages the outcome as a ToolResult. Dispatch never
raises: unknown tools, denials and tool failures all become results that are
fed back to the model.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from .approval import ApprovalGate
from .errors import UnknownTool
from .events import (
    OUTPUT_SYSTEM,
    UPDATE_OUTPUT,
    UPDATE_SCREENSHOT,
    EventChannel,
    UIEvent,
)
from .memory import MemoryRecord, MemoryStore
from .safety import ToolRiskClassifier
from .tools import AutomationBackend, ScreenshotEntry, parse_screenshot_ref
from .types import CancelToken, ImageBlock, Message, TextBlock
from .utils import normalize_domain, truncate_text

logger = logging.getLogger(__name__)

LOOKUP_MEMORIES = "lookup_memories"

# Consent-style tools whose success is worth remembering per domain
CONSENT_TOOLS = {
    "browser_dismiss_popups": "Dismiss cookie consent banners and popups",
}

MAX_RESULT_CHARS = 4000


class ToolStatus(str, Enum):
    """Outcome of a dispatched tool call."""
    OK = "ok"
    ERROR = "error"
    DENIED = "denied"
    UNKNOWN_TOOL = "unknown_tool"


@dataclass
class ToolResult:
    """Result of a tool dispatch."""
    status: ToolStatus
    tool_name: str
    tool_input: str
    output: str
    screenshot: Optional[ScreenshotEntry] = None

    @property
    def success(self) -> bool:
        return self.status == ToolStatus.OK

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result = {
            "status": self.status.value,
            "tool": self.tool_name,
            "input": self.tool_input,
            "output": self.output,
        }
        if self.screenshot is not None:
            result["screenshot_id"] = self.screenshot.id
        return result

    def to_message(self) -> Message:
        """Build the user message that reports this result to the model."""
        text = (
            f'<tool_result name="{self.tool_name}" status="{self.status.value}">\n'
            f"{self.output}\n"
            f"</tool_result>"
        )
        if self.screenshot is None:
            return Message.user(text)
        return Message.user((
            TextBlock(text),
            ImageBlock(data=self.screenshot.data, media_type=self.screenshot.media_type),
        ))


class ToolDispatcher:
    """Dispatches tool directives for one window's automation backend."""

    def __init__(
        self,
        automation: AutomationBackend,
        approvals: ApprovalGate,
        classifier: Optional[ToolRiskClassifier] = None,
        memory: Optional[MemoryStore] = None,
        events: Optional[EventChannel] = None,
        auto_approve: bool = False,
    ):
        self.automation = automation
        self.approvals = approvals
        self.classifier = classifier or ToolRiskClassifier()
        self.memory = memory
        self.events = events
        self.auto_approve = auto_approve

    def _emit(self, action: str, payload: dict[str, Any], tab_id, window_id) -> None:
        if self.events is not None:
            self.events.emit(UIEvent(action, payload, tab_id, window_id))

    def is_known(self, tool_name: str) -> bool:
        return tool_name == LOOKUP_MEMORIES or tool_name in self.automation.tool_names

    async def dispatch(
        self,
        tool_name: str,
        tool_input: str,
        requires_approval: bool = False,
        window_id: Optional[int] = None,
        tab_id: Optional[int] = None,
        current_url: str = "",
        cancel_token: Optional[CancelToken] = None,
    ) -> ToolResult:
        """Run one tool call through approval and execution.

        Args:
            tool_name: Tool to run
            tool_input: String-encoded tool input
            requires_approval: Whether the model flagged the call for approval
            window_id: Owning window (scopes events and approvals)
            tab_id: Owning tab
            current_url: Current page URL for risk checks and memories
            cancel_token: Run cancellation token

        Returns:
            The tool result
        """
        if not self.is_known(tool_name):
            return self._unknown_tool(tool_name, tool_input, tab_id, window_id)

        risk, reason = self.classifier.classify(tool_name, tool_input, current_url)
        if self.classifier.should_require_approval(
            tool_name, risk, requires_approval, self.auto_approve
        ):
            approved = await self.approvals.request(
                tool_name,
                tool_input,
                reason,
                risk=risk,
                window_id=window_id,
                tab_id=tab_id,
                cancel_token=cancel_token,
            )
            if not approved:
                return ToolResult(
                    ToolStatus.DENIED,
                    tool_name,
                    tool_input,
                    "The user denied this action. Choose a different approach or ask the user.",
                )

        if tool_name == LOOKUP_MEMORIES:
            return self._lookup_memories(tool_input, current_url)

        try:
            output = await self.automation.execute(tool_name, tool_input)
        except UnknownTool:
            return self._unknown_tool(tool_name, tool_input, tab_id, window_id)
        except Exception as e:
            logger.warning(f"{tool_name} failed: {e}")
            return ToolResult(
                ToolStatus.ERROR, tool_name, tool_input, f"Error: {type(e).__name__}: {e}"
            )

        result = ToolResult(
            ToolStatus.OK, tool_name, tool_input, truncate_text(output, MAX_RESULT_CHARS)
        )

        ref = parse_screenshot_ref(output)
        if ref is not None:
            result = self._resolve_screenshot(result, ref, tab_id, window_id)

        if tool_name in CONSENT_TOOLS:
            self._remember(tool_name, current_url)

        return result

    def _unknown_tool(self, tool_name, tool_input, tab_id, window_id) -> ToolResult:
        error = UnknownTool(tool_name)
        logger.warning(str(error))
        self._emit(UPDATE_OUTPUT, {"content": {"type": OUTPUT_SYSTEM, "content": str(error)}},
                   tab_id, window_id)
        available = ", ".join(sorted(self.automation.tool_names | {LOOKUP_MEMORIES}))
        return ToolResult(
            ToolStatus.UNKNOWN_TOOL,
            tool_name,
            tool_input,
            f"Error: {error}. Available tools: {available}",
        )

    def _resolve_screenshot(self, result: ToolResult, ref: dict, tab_id, window_id) -> ToolResult:
        entry = self.automation.screenshots.get(ref["id"])
        if entry is None:
            result.status = ToolStatus.ERROR
            result.output = f"Error: screenshot {ref['id']} is no longer available"
            return result

        self._emit(UPDATE_SCREENSHOT, {
            "screenshotId": entry.id,
            "content": entry.data,
            "mediaType": entry.media_type,
            "note": entry.note,
        }, tab_id, window_id)

        result.screenshot = entry
        result.output = f"Screenshot captured ({entry.id})"
        if entry.note:
            result.output += f": {entry.note}"
        return result

    def _lookup_memories(self, tool_input: str, current_url: str) -> ToolResult:
        target = tool_input or current_url
        if self.memory is None or not target:
            return ToolResult(ToolStatus.OK, LOOKUP_MEMORIES, tool_input, "No memories found.")

        records = self.memory.for_domain(target)
        if not records:
            output = f"No memories found for {normalize_domain(target)}."
        else:
            lines = [
                f"- {r.task_description}: {' -> '.join(r.tool_sequence)}"
                for r in records
            ]
            output = f"Memories for {normalize_domain(target)}:\n" + "\n".join(lines)
        return ToolResult(ToolStatus.OK, LOOKUP_MEMORIES, tool_input, output)

    def _remember(self, tool_name: str, current_url: str) -> None:
        # Best-effort: a failed write never fails the dispatch
        if self.memory is None or not normalize_domain(current_url):
            return
        try:
            self.memory.add(MemoryRecord(
                domain=current_url,
                task_description=CONSENT_TOOLS[tool_name],
                tool_sequence=[tool_name],
            ))
        except Exception as e:
            logger.warning(f"Could not store memory for {current_url}: {e}")
