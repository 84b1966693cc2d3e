"""
LLM Provider configuration for Agentic Tab.

Provides provider-specific endpoints, default models and pricing.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class Provider(str, Enum):
    """Supported LLM providers."""
    LM_STUDIO = "lm_studio"
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GOOGLE = "google"
    OLLAMA = "ollama"


# Default endpoints for each provider
PROVIDER_ENDPOINTS = {
    Provider.LM_STUDIO: "http://127.0.0.1:1234/v1",
    Provider.OPENAI: "https://api.openai.com/v1",
    Provider.ANTHROPIC: "https://api.anthropic.com/v1",
    Provider.GOOGLE: "https://generativelanguage.googleapis.com/v1beta",
    Provider.OLLAMA: "http://127.0.0.1:11434/v1",
}

# Default models for each provider
PROVIDER_DEFAULT_MODELS = {
    Provider.LM_STUDIO: "qwen2.5:7b",
    Provider.OPENAI: "gpt-4o-mini",
    Provider.ANTHROPIC: "claude-sonnet-4-5-20250929",
    Provider.GOOGLE: "gemini-1.5-flash",
    Provider.OLLAMA: "llama3.1:8b",
}

# Provider display names
PROVIDER_DISPLAY_NAMES = {
    Provider.LM_STUDIO: "LM Studio (Local)",
    Provider.OPENAI: "OpenAI",
    Provider.ANTHROPIC: "Anthropic",
    Provider.GOOGLE: "Google AI",
    Provider.OLLAMA: "Ollama (Local)",
}

# Whether provider requires API key
PROVIDER_REQUIRES_API_KEY = {
    Provider.LM_STUDIO: False,
    Provider.OPENAI: True,
    Provider.ANTHROPIC: True,
    Provider.GOOGLE: True,
    Provider.OLLAMA: False,
}

# USD per million tokens (input, output)
MODEL_PRICING = {
    "gpt-4o-mini": (0.15, 0.60),
    "gpt-4o": (2.50, 10.0),
    "claude-sonnet-4-5-20250929": (3.0, 15.0),
    "claude-haiku-4-5-20251001": (1.0, 5.0),
    "claude-3-5-haiku-20241022": (0.8, 4.0),
    "gemini-1.5-flash": (0.075, 0.30),
    "gemini-1.5-pro": (1.25, 5.0),
}


def calculate_cost(model: str, input_tokens: int, output_tokens: int) -> float:
    """Calculate the USD cost of a request; unknown models are free."""
    input_price, output_price = MODEL_PRICING.get(model, (0.0, 0.0))
    return (input_tokens * input_price + output_tokens * output_price) / 1_000_000


@dataclass
class ProviderConfig:
    """Configuration for an LLM provider."""

    provider: Provider = Provider.LM_STUDIO
    api_key: Optional[str] = None
    model: Optional[str] = None
    custom_endpoint: Optional[str] = None
    max_tokens: int = 4096

    @property
    def endpoint(self) -> str:
        """Get the endpoint URL for this provider."""
        if self.custom_endpoint:
            return self.custom_endpoint.rstrip("/")
        return PROVIDER_ENDPOINTS.get(self.provider, PROVIDER_ENDPOINTS[Provider.LM_STUDIO])

    @property
    def effective_model(self) -> str:
        """Get the effective model name."""
        if self.model:
            return self.model
        return PROVIDER_DEFAULT_MODELS.get(self.provider, "qwen2.5:7b")

    @property
    def requires_api_key(self) -> bool:
        """Check if this provider requires an API key."""
        return PROVIDER_REQUIRES_API_KEY.get(self.provider, True)

    @property
    def display_name(self) -> str:
        """Get the display name for this provider."""
        return PROVIDER_DISPLAY_NAMES.get(self.provider, self.provider.value)

    def validate(self) -> tuple[bool, str]:
        """Validate the configuration.

        Returns:
            Tuple of (is_valid, error_message)
        """
        if self.requires_api_key and not self.api_key:
            return False, (
                f"API key not found for {self.display_name}. "
                "Please set your API key in the settings."
            )
        return True, ""

    def fingerprint(self) -> tuple:
        """Identity of the settings an agent instance was built with.

        An agent must be rebuilt when the fingerprint changes.
        """
        return (self.provider.value, self.effective_model, self.endpoint, self.api_key)

    @classmethod
    def from_dict(cls, data: dict) -> "ProviderConfig":
        """Create from dictionary."""
        provider_str = data.get("provider", "lm_studio")
        try:
            provider = Provider(provider_str)
        except ValueError:
            provider = Provider.LM_STUDIO

        return cls(
            provider=provider,
            api_key=data.get("api_key"),
            model=data.get("model"),
            custom_endpoint=data.get("custom_endpoint"),
            max_tokens=data.get("max_tokens", 4096),
        )

    def to_dict(self) -> dict:
        """Convert to dictionary for storage."""
        return {
            "provider": self.provider.value,
            "api_key": self.api_key,
            "model": self.model,
            "custom_endpoint": self.custom_endpoint,
            "max_tokens": self.max_tokens,
        }
