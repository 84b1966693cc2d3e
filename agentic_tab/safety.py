"""
Safety classification for Agentic Tab.

Provides risk classification of tool calls and the approval policy that
decides which calls need a human decision.
"""

from enum import Enum

from .utils import (
    contains_high_risk_keywords,
    contains_medium_risk_keywords,
    is_password_field,
    is_payment_domain,
)


class RiskLevel(str, Enum):
    """Risk level for a tool call."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


# Read-only tools that never need a human decision
AUTO_APPROVED_TOOLS = frozenset({
    "browser_read_text",
    "browser_screenshot",
    "browser_scroll",
    "browser_wait",
    "browser_wait_for",
    "browser_query",
    "browser_get_attribute",
    "browser_hover",
    "lookup_memories",
})


class ToolRiskClassifier:
    """Classifies the risk level of tool calls."""

    SUBMIT_SELECTORS = {
        'input[type="submit"]',
        'button[type="submit"]',
        ".submit",
        "#submit",
    }

    SECURITY_PATHS = {
        "/account", "/settings", "/security", "/password", "/profile",
        "/billing", "/payment", "/subscription", "/delete", "/deactivate",
        "/close-account",
    }

    MESSAGE_SELECTORS = {
        "send", "compose", "reply", "message", "email", "tweet",
        "post", "comment", "publish",
    }

    def classify(
        self,
        tool_name: str,
        tool_input: str,
        current_url: str = "",
    ) -> tuple[RiskLevel, str]:
        """Classify the risk level of a tool call.

        Args:
            tool_name: Tool name (browser_click, browser_type, ...)
            tool_input: String-encoded tool input
            current_url: Current page URL, if known

        Returns:
            Tuple of (risk_level, reason)
        """
        if tool_name in AUTO_APPROVED_TOOLS:
            return RiskLevel.LOW, "read-only action"

        if current_url and tool_name != "browser_navigate":
            if is_payment_domain(current_url):
                return RiskLevel.HIGH, "action on a payment page"
            if self._is_security_page(current_url):
                return RiskLevel.HIGH, "action on an account or security page"

        if tool_name == "browser_click":
            return self._classify_click(tool_input)

        if tool_name == "browser_type":
            return self._classify_type(tool_input)

        if tool_name == "browser_press_key":
            if tool_input.strip().lower() == "enter":
                return RiskLevel.MEDIUM, "Enter may submit a form"
            return RiskLevel.LOW, "key press"

        if tool_name == "browser_navigate":
            if is_payment_domain(tool_input):
                return RiskLevel.MEDIUM, "navigation to a payment page"
            if self._is_security_page(tool_input):
                return RiskLevel.MEDIUM, "navigation to an account page"
            return RiskLevel.LOW, "navigation"

        if tool_name == "browser_dismiss_popups":
            return RiskLevel.LOW, "dismissing consent banners"

        return RiskLevel.MEDIUM, "page interaction"

    def _classify_click(self, tool_input: str) -> tuple[RiskLevel, str]:
        selector = tool_input.lower()

        if contains_high_risk_keywords(selector):
            return RiskLevel.HIGH, "click may submit, purchase or delete"

        for pattern in self.SUBMIT_SELECTORS:
            if pattern in selector:
                return RiskLevel.MEDIUM, "click on a submit control"

        for keyword in self.MESSAGE_SELECTORS:
            if keyword in selector:
                return RiskLevel.HIGH, "click may send a message"

        return RiskLevel.LOW, "click"

    def _classify_type(self, tool_input: str) -> tuple[RiskLevel, str]:
        selector = tool_input.split("|", 1)[0].lower()

        if is_password_field(selector):
            return RiskLevel.MEDIUM, "typing into a password field"

        if contains_medium_risk_keywords(selector):
            return RiskLevel.MEDIUM, "typing into a sensitive field"

        for keyword in self.MESSAGE_SELECTORS:
            if keyword in selector:
                return RiskLevel.MEDIUM, "composing a message"

        return RiskLevel.LOW, "typing"

    def _is_security_page(self, url: str) -> bool:
        """Check if URL is a security/account settings page."""
        url_lower = url.lower()
        return any(path in url_lower for path in self.SECURITY_PATHS)

    def should_require_approval(
        self,
        tool_name: str,
        risk_level: RiskLevel,
        model_says_approval: bool,
        auto_approve: bool,
    ) -> bool:
        """Determine if approval is required for a tool call.

        Args:
            tool_name: Tool name
            risk_level: Classified risk level
            model_says_approval: Whether the model flagged the call
            auto_approve: Whether auto-approve mode is enabled

        Returns:
            True if a human decision is required
        """
        if tool_name in AUTO_APPROVED_TOOLS:
            return False

        if not auto_approve:
            return True

        # High risk always requires approval
        if risk_level == RiskLevel.HIGH:
            return True

        return model_says_approval
