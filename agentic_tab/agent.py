"""
Agent instance for Agentic Tab.

A BrowserAgent bundles what one window needs to run prompts: the backend
adapters built from a provider configuration, the automation backend of
the window's tab, and the system prompt describing the available tools.
"""

import logging
from typing import Optional

from .adapters import BackendAdapter, create_adapter
from .providers import ProviderConfig
from .tools import TOOL_CATALOG, AutomationBackend, PageInfo

logger = logging.getLogger(__name__)

ASK_SYSTEM_PROMPT = (
    "You are a helpful AI assistant. Respond to the user's question directly and helpfully."
)

AGENT_SYSTEM_PROMPT = """You are a browser automation agent working in the user's current browser tab.
Accomplish the user's request step by step using the tools below.

To use a tool, write exactly one directive and then stop:
<tool>TOOL_NAME</tool>
<input>TOOL_INPUT</input>
<requires_approval>true or false</requires_approval>

The <requires_approval> line is optional. Set it to true for anything that buys,
sends, deletes, submits personal data or cannot be undone.

After each directive you will receive a <tool_result> message. Use one tool per
message. Briefly say what you are about to do before each directive. When the
task is complete, answer the user in plain text without any directive.

AVAILABLE TOOLS:
{tools}
"""


def build_tool_section(tool_names: Optional[frozenset[str]] = None) -> str:
    """Describe the available tools, one per line."""
    lines = []
    for name, description in TOOL_CATALOG.items():
        if name == "lookup_memories" or tool_names is None or name in tool_names:
            lines.append(f"- {name}: {description}")
    return "\n".join(lines)


class BrowserAgent:
    """Per-window agent instance."""

    def __init__(
        self,
        provider_config: ProviderConfig,
        automation: Optional[AutomationBackend] = None,
        fallback_config: Optional[ProviderConfig] = None,
        adapter: Optional[BackendAdapter] = None,
        fallback_adapter: Optional[BackendAdapter] = None,
    ):
        """Initialize the agent.

        Args:
            provider_config: Primary backend configuration
            automation: Browser automation for the window (None for ask-only agents)
            fallback_config: Optional fallback backend configuration
            adapter: Prebuilt primary adapter (built from the config if None)
            fallback_adapter: Prebuilt fallback adapter
        """
        self.provider_config = provider_config
        self.fallback_config = fallback_config
        self.automation = automation
        self.adapter = adapter or create_adapter(provider_config.provider, provider_config)
        if fallback_adapter is None and fallback_config is not None:
            fallback_adapter = create_adapter(fallback_config.provider, fallback_config)
        self.fallback_adapter = fallback_adapter
        self.page_context: Optional[PageInfo] = None

    @property
    def fingerprint(self) -> tuple:
        fallback = self.fallback_config.fingerprint() if self.fallback_config else None
        return (self.provider_config.fingerprint(), fallback)

    def needs_reinitialization(
        self,
        provider_config: ProviderConfig,
        fallback_config: Optional[ProviderConfig] = None,
    ) -> bool:
        """Whether the configuration changed since this agent was built."""
        fallback = fallback_config.fingerprint() if fallback_config else None
        return self.fingerprint != (provider_config.fingerprint(), fallback)

    def set_page_context(self, page: Optional[PageInfo]) -> None:
        self.page_context = page

    @property
    def current_url(self) -> str:
        return self.page_context.url if self.page_context else ""

    def system_prompt(self, ask_mode: bool = False) -> str:
        """Build the system prompt for a turn."""
        if ask_mode:
            return ASK_SYSTEM_PROMPT

        tool_names = self.automation.tool_names if self.automation else None
        prompt = AGENT_SYSTEM_PROMPT.format(tools=build_tool_section(tool_names))
        if self.page_context is not None:
            title = f" ({self.page_context.title})" if self.page_context.title else ""
            prompt += f"\nCurrent page: {self.page_context.url}{title}\n"
        return prompt

    async def cancel(self) -> None:
        """Best-effort stop of in-flight tool work."""
        if self.automation is not None:
            await self.automation.cancel()

    async def close(self) -> None:
        """Release the adapters. The automation backend belongs to the window."""
        await self.adapter.close()
        if self.fallback_adapter is not None:
            await self.fallback_adapter.close()


def create_browser_agent(
    automation: Optional[AutomationBackend],
    provider_config: ProviderConfig,
    fallback_config: Optional[ProviderConfig] = None,
) -> BrowserAgent:
    """Create an agent for a window.

    Args:
        automation: The window's automation backend
        provider_config: Primary backend configuration
        fallback_config: Optional fallback backend configuration

    Returns:
        Configured BrowserAgent
    """
    logger.info(
        f"Creating agent with {provider_config.display_name} ({provider_config.effective_model})"
        + (f", fallback {fallback_config.display_name}" if fallback_config else "")
    )
    return BrowserAgent(provider_config, automation, fallback_config)
