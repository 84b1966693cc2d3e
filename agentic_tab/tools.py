"""
Browser tools for Agentic Tab.

Provides the automation backend interface, its Playwright implementation
and the screenshot store. Every tool takes one string input and returns a
string result. A screenshot returns a JSON reference into the store.
"""

import base64
import json
import logging
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from playwright.async_api import Page, TimeoutError as PlaywrightTimeoutError

from .errors import ToolExecutionError, UnknownTool
from .utils import clean_text, format_selector, truncate_text

logger = logging.getLogger(__name__)

# Tool name -> description shown to the model
TOOL_CATALOG = {
    "browser_navigate": "Open a URL. Input: the URL.",
    "browser_click": "Click an element. Input: a CSS selector or the element's visible text.",
    "browser_type": "Type into a field. Input: selector|text",
    "browser_press_key": "Press a keyboard key. Input: key name, e.g. Enter, Tab, Escape.",
    "browser_scroll": "Scroll the page. Input: up, down or a pixel amount.",
    "browser_wait": "Wait. Input: milliseconds (max 30000).",
    "browser_wait_for": "Wait until an element appears. Input: selector.",
    "browser_read_text": "Read visible text. Input: optional selector (empty for the whole page).",
    "browser_query": "List elements matching a selector. Input: selector.",
    "browser_get_attribute": "Read an attribute. Input: selector|attribute",
    "browser_hover": "Hover over an element. Input: selector.",
    "browser_screenshot": "Capture the visible page. Input: optional note.",
    "browser_dismiss_popups": "Dismiss cookie consent banners and popups. Input: empty.",
    "lookup_memories": "Look up saved procedures for a domain. Input: domain (empty for the current page).",
}

# Human-readable names for tool activity in the UI
TOOL_DISPLAY_NAMES = {
    "lookup_memories": "Looking up memories",
    "browser_navigate": "Navigating",
    "browser_click": "Clicking",
    "browser_type": "Typing",
    "browser_press_key": "Pressing key",
    "browser_scroll": "Scrolling",
    "browser_wait": "Waiting",
    "browser_wait_for": "Waiting for element",
    "browser_read_text": "Reading page text",
    "browser_query": "Querying elements",
    "browser_get_attribute": "Reading attribute",
    "browser_hover": "Hovering",
    "browser_screenshot": "Taking screenshot",
    "browser_dismiss_popups": "Dismissing popups",
}

SCREENSHOT_REF_TYPE = "screenshotRef"

MAX_READ_CHARS = 8000
MAX_WAIT_MS = 30000


@dataclass
class ScreenshotEntry:
    """A captured screenshot, base64 encoded."""
    id: str
    data: str
    media_type: str = "image/png"
    note: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.now)


class ScreenshotStore:
    """Keeps the most recent screenshots addressable by id."""

    def __init__(self, max_items: int = 20):
        self.max_items = max_items
        self._entries: OrderedDict[str, ScreenshotEntry] = OrderedDict()
        self._counter = 0

    def add(self, image: bytes, media_type: str = "image/png", note: Optional[str] = None) -> ScreenshotEntry:
        self._counter += 1
        entry = ScreenshotEntry(
            id=f"screenshot_{self._counter}",
            data=base64.b64encode(image).decode("ascii"),
            media_type=media_type,
            note=note,
        )
        self._entries[entry.id] = entry
        while len(self._entries) > self.max_items:
            self._entries.popitem(last=False)
        return entry

    def get(self, screenshot_id: str) -> Optional[ScreenshotEntry]:
        return self._entries.get(screenshot_id)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


def make_screenshot_ref(screenshot_id: str, note: Optional[str] = None) -> str:
    """Encode a screenshot reference tool result."""
    ref: dict[str, Any] = {"type": SCREENSHOT_REF_TYPE, "id": screenshot_id}
    if note:
        ref["note"] = note
    return json.dumps(ref)


def parse_screenshot_ref(result: str) -> Optional[dict[str, Any]]:
    """Decode a screenshot reference, or return None for any other result."""
    if not result.lstrip().startswith("{"):
        return None
    try:
        data = json.loads(result)
    except json.JSONDecodeError:
        return None
    if isinstance(data, dict) and data.get("type") == SCREENSHOT_REF_TYPE and data.get("id"):
        return data
    return None


@dataclass
class PageInfo:
    """URL and title of the current page."""
    url: str
    title: str = ""


class AutomationBackend(ABC):
    """Executes named browser tools for one window."""

    def __init__(self, screenshots: Optional[ScreenshotStore] = None):
        self.screenshots = screenshots or ScreenshotStore()

    @property
    @abstractmethod
    def tool_names(self) -> frozenset[str]:
        """Names of the tools this backend can execute."""
        pass

    @abstractmethod
    async def execute(self, tool_name: str, tool_input: str) -> str:
        """Execute a tool.

        Raises:
            UnknownTool: If the tool is not exposed by this backend
            ToolExecutionError: If the tool could not complete
        """
        pass

    async def page_info(self) -> Optional[PageInfo]:
        """Current page URL and title, if known."""
        return None

    async def cancel(self) -> None:
        """Stop any long-running tool work. Best-effort."""
        return None

    async def close(self) -> None:
        return None


class PlaywrightAutomation(AutomationBackend):
    """Executes browser tools on a Playwright page."""

    CONSENT_SELECTORS = [
        "#onetrust-accept-btn-handler",
        "#CybotCookiebotDialogBodyLevelButtonLevelOptinAllowAll",
        "button[aria-label='Accept all']",
        "button[aria-label='Close']",
        "button:has-text('Accept all')",
        "button:has-text('Accept')",
        "button:has-text('I agree')",
        "button:has-text('Agree')",
        "button:has-text('Allow all')",
        "button:has-text('Got it')",
    ]

    def __init__(
        self,
        page: Page,
        screenshots: Optional[ScreenshotStore] = None,
        default_timeout: int = 10000,
    ):
        """Initialize browser tools.

        Args:
            page: Playwright page instance
            screenshots: Store for captured screenshots
            default_timeout: Default timeout in milliseconds
        """
        super().__init__(screenshots)
        self.page = page
        self.default_timeout = default_timeout
        self._handlers = {
            "browser_navigate": self.navigate,
            "browser_click": self.click,
            "browser_type": self.type_text,
            "browser_press_key": self.press_key,
            "browser_scroll": self.scroll,
            "browser_wait": self.wait,
            "browser_wait_for": self.wait_for,
            "browser_read_text": self.read_text,
            "browser_query": self.query,
            "browser_get_attribute": self.get_attribute,
            "browser_hover": self.hover,
            "browser_screenshot": self.screenshot,
            "browser_dismiss_popups": self.dismiss_popups,
        }

    @property
    def tool_names(self) -> frozenset[str]:
        return frozenset(self._handlers)

    async def execute(self, tool_name: str, tool_input: str) -> str:
        handler = self._handlers.get(tool_name)
        if handler is None:
            raise UnknownTool(tool_name)
        try:
            return await handler(tool_input.strip())
        except PlaywrightTimeoutError as e:
            raise ToolExecutionError(f"Timeout: {e}") from e

    async def page_info(self) -> Optional[PageInfo]:
        return PageInfo(url=self.page.url, title=await self.page.title())

    async def _settle(self) -> None:
        # Navigation after an interaction is optional
        try:
            await self.page.wait_for_load_state("domcontentloaded", timeout=5000)
        except PlaywrightTimeoutError:
            pass

    async def navigate(self, url: str) -> str:
        if not url:
            raise ToolExecutionError("A URL is required")
        if not url.startswith(("http://", "https://", "file://", "about:")):
            url = "https://" + url
        await self.page.goto(url, wait_until="domcontentloaded")
        return f"Navigated to {self.page.url} ({await self.page.title()})"

    async def click(self, target: str) -> str:
        selector = format_selector(target)
        selectors_to_try = [selector]

        # Visible text may belong to a link or button rather than a text node
        if selector.startswith('text="') and selector.endswith('"'):
            text = selector[6:-1]
            selectors_to_try.append(f'a:has-text("{text[:40]}")')
            selectors_to_try.append(f'button:has-text("{text[:40]}")')

        for candidate in selectors_to_try:
            locator = self.page.locator(candidate)
            if await locator.count() > 0:
                await locator.first.click(timeout=self.default_timeout)
                await self._settle()
                return f"Clicked: {candidate}"

        raise ToolExecutionError(f"No element matches {target!r}")

    async def type_text(self, tool_input: str) -> str:
        if "|" not in tool_input:
            raise ToolExecutionError("Input must be 'selector|text'")
        selector, text = tool_input.split("|", 1)
        selector = format_selector(selector)
        await self.page.fill(selector, text, timeout=self.default_timeout)
        return f"Typed {len(text)} characters into {selector}"

    async def press_key(self, key: str) -> str:
        key = key or "Enter"
        await self.page.keyboard.press(key)
        if key in ("Enter", "Return"):
            await self._settle()
        return f"Pressed: {key}"

    async def scroll(self, amount: str) -> str:
        amount = amount.lower() or "down"
        if amount == "down":
            pixels = 800
        elif amount == "up":
            pixels = -800
        else:
            try:
                pixels = int(amount)
            except ValueError:
                raise ToolExecutionError(f"Invalid scroll amount: {amount}")
        await self.page.mouse.wheel(0, pixels)
        direction = "down" if pixels > 0 else "up"
        return f"Scrolled {direction} by {abs(pixels)}px"

    async def wait(self, milliseconds: str) -> str:
        try:
            ms = int(milliseconds or 1000)
        except ValueError:
            raise ToolExecutionError(f"Invalid wait time: {milliseconds}")
        ms = max(0, min(ms, MAX_WAIT_MS))
        await self.page.wait_for_timeout(ms)
        return f"Waited {ms}ms"

    async def wait_for(self, selector: str) -> str:
        selector = format_selector(selector)
        await self.page.wait_for_selector(selector, timeout=self.default_timeout)
        return f"Found element: {selector}"

    async def read_text(self, selector: str) -> str:
        if selector:
            locator = self.page.locator(format_selector(selector))
            if await locator.count() == 0:
                raise ToolExecutionError(f"Element not found: {selector}")
            text = await locator.first.inner_text()
        else:
            text = await self.page.evaluate(
                "() => document.body ? document.body.innerText : document.title"
            )
        return truncate_text(clean_text(text or ""), MAX_READ_CHARS) or "(no visible text)"

    async def query(self, selector: str) -> str:
        if not selector:
            raise ToolExecutionError("A selector is required")
        elements = await self.page.locator(format_selector(selector)).evaluate_all(
            """els => els.slice(0, 20).map(e => ({
                tag: e.tagName.toLowerCase(),
                id: e.id || undefined,
                text: (e.innerText || e.value || '').trim().slice(0, 100),
            }))"""
        )
        return json.dumps({"count": len(elements), "elements": elements})

    async def get_attribute(self, tool_input: str) -> str:
        if "|" not in tool_input:
            raise ToolExecutionError("Input must be 'selector|attribute'")
        selector, attribute = tool_input.split("|", 1)
        locator = self.page.locator(format_selector(selector))
        if await locator.count() == 0:
            raise ToolExecutionError(f"Element not found: {selector}")
        value = await locator.first.get_attribute(attribute.strip())
        return value if value is not None else f"(no {attribute.strip()} attribute)"

    async def hover(self, selector: str) -> str:
        selector = format_selector(selector)
        await self.page.locator(selector).first.hover(timeout=self.default_timeout)
        return f"Hovered: {selector}"

    async def screenshot(self, note: str) -> str:
        image = await self.page.screenshot(full_page=False)
        entry = self.screenshots.add(image, note=note or None)
        return make_screenshot_ref(entry.id, entry.note)

    async def dismiss_popups(self, _: str) -> str:
        dismissed = []
        for selector in self.CONSENT_SELECTORS:
            locator = self.page.locator(selector)
            if await locator.count() > 0 and await locator.first.is_visible():
                await locator.first.click(timeout=3000)
                dismissed.append(selector)
        if not dismissed:
            raise ToolExecutionError("No popup or consent banner found")
        logger.debug(f"Dismissed popups via {dismissed}")
        return f"Dismissed {len(dismissed)} popup(s)"

    async def close(self) -> None:
        await self.page.close()
