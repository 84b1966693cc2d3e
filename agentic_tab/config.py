"""
Configuration management for Agentic Tab.

Provides the engine configuration dataclass and environment variable loading.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from .providers import Provider, ProviderConfig

# Load environment variables from .env file if present
load_dotenv()


def get_base_dir() -> Path:
    """Get the base directory for agentic tab data."""
    return Path.home() / ".agentic_tab"


def get_runs_dir() -> Path:
    """Get the directory for run transcripts."""
    return get_base_dir() / "runs"


def get_memory_path() -> Path:
    """Get the path of the domain memory file."""
    return get_base_dir() / "memory.json"


def _env_flag(name: str) -> bool:
    return os.getenv(name, "").lower() in ("1", "true", "yes")


def _provider_from_env(prefix: str) -> Optional[ProviderConfig]:
    """Read a provider configuration from ``<prefix>_PROVIDER`` and friends."""
    provider_name = os.getenv(f"{prefix}_PROVIDER")
    if not provider_name:
        return None
    return ProviderConfig.from_dict({
        "provider": provider_name,
        "api_key": os.getenv(f"{prefix}_API_KEY"),
        "model": os.getenv(f"{prefix}_MODEL"),
        "custom_endpoint": os.getenv(f"{prefix}_ENDPOINT"),
    })


@dataclass
class EngineConfig:
    """Configuration for the agent execution engine."""

    # Conversation history budget
    max_conversation_tokens: int = 100_000

    # Retry/backoff for transient backend errors (seconds)
    retry_base_delay: float = 2.0
    retry_max_delay: float = 30.0

    # Approvals
    approval_timeout: float = 300.0
    auto_approve: bool = False

    # Liveness
    heartbeat_interval: float = 5.0
    stale_after: float = 30.0

    # Loop limits
    max_steps: int = 30
    max_repeat_actions: int = 3

    # LLM settings
    provider: ProviderConfig = field(
        default_factory=lambda: _provider_from_env("AGENTIC_TAB") or ProviderConfig(
            provider=Provider.LM_STUDIO,
        )
    )
    fallback_provider: Optional[ProviderConfig] = field(
        default_factory=lambda: _provider_from_env("AGENTIC_TAB_FALLBACK")
    )

    # Debug mode - enables verbose logging (off by default)
    debug: bool = field(default_factory=lambda: _env_flag("AGENTIC_TAB_DEBUG"))

    def ensure_directories(self) -> None:
        """Ensure all required directories exist."""
        get_base_dir().mkdir(parents=True, exist_ok=True)
        get_runs_dir().mkdir(parents=True, exist_ok=True)

    @classmethod
    def from_cli_args(
        cls,
        provider: Optional[str] = None,
        model: Optional[str] = None,
        api_key: Optional[str] = None,
        endpoint: Optional[str] = None,
        fallback_provider: Optional[str] = None,
        fallback_model: Optional[str] = None,
        auto_approve: bool = False,
        debug: bool = False,
    ) -> "EngineConfig":
        """Create configuration from CLI arguments, falling back to the environment."""
        config = cls(auto_approve=auto_approve)
        config.debug = debug or config.debug

        if provider or model or api_key or endpoint:
            base = config.provider
            config.provider = ProviderConfig(
                provider=Provider(provider) if provider else base.provider,
                api_key=api_key or base.api_key,
                model=model or (None if provider else base.model),
                custom_endpoint=endpoint or (None if provider else base.custom_endpoint),
            )

        if fallback_provider:
            config.fallback_provider = ProviderConfig(
                provider=Provider(fallback_provider),
                api_key=os.getenv("AGENTIC_TAB_FALLBACK_API_KEY"),
                model=fallback_model,
            )

        return config


# Default configuration values for documentation
DEFAULTS = {
    "provider": "lm_studio",
    "max_conversation_tokens": 100_000,
    "retry_base_delay_s": 2.0,
    "retry_max_delay_s": 30.0,
    "approval_timeout_s": 300.0,
    "heartbeat_interval_s": 5.0,
    "max_steps": 30,
    "auto_approve": False,
}
