"""
Tests for backend error classification and provider validation.
"""

from agentic_tab.errors import (
    FatalBackendError,
    TransientBackendError,
    classify_error_type,
    classify_status,
    describe_error,
)
from agentic_tab.providers import Provider, ProviderConfig


class TestClassification:
    """Tests for transient vs fatal classification."""

    def test_transient_types(self):
        for error_type in ("rate_limit_error", "overloaded_error"):
            error = classify_error_type(error_type, "slow down")
            assert isinstance(error, TransientBackendError)
            assert error.is_transient

    def test_other_types_are_fatal(self):
        for error_type in ("authentication_error", "invalid_request_error", "api_error", "weird"):
            error = classify_error_type(error_type)
            assert isinstance(error, FatalBackendError)
            assert not error.is_transient

    def test_status_codes(self):
        assert classify_status(429) == "rate_limit_error"
        assert classify_status(529) == "overloaded_error"
        assert classify_status(401) == "authentication_error"
        assert classify_status(400) == "invalid_request_error"
        assert classify_status(500) == "api_error"

    def test_describe_error(self):
        assert describe_error(None) == "Unknown error"
        assert describe_error(FatalBackendError("api_error", "boom")) == "boom"
        assert describe_error(FatalBackendError("api_error")) == "api_error"
        assert describe_error(KeyError()) == "KeyError"


class TestProviderConfig:
    """Tests for provider validation and identity."""

    def test_missing_api_key(self):
        valid, error = ProviderConfig(provider=Provider.OPENAI).validate()
        assert not valid
        assert "API key" in error

    def test_local_provider_needs_no_key(self):
        assert ProviderConfig(provider=Provider.OLLAMA).validate() == (True, "")

    def test_unknown_provider_falls_back(self):
        config = ProviderConfig.from_dict({"provider": "nope"})
        assert config.provider == Provider.LM_STUDIO

    def test_fingerprint_tracks_key(self):
        a = ProviderConfig(provider=Provider.OPENAI, api_key="k1")
        b = ProviderConfig(provider=Provider.OPENAI, api_key="k2")
        assert a.fingerprint() != b.fingerprint()
        assert a.fingerprint() == ProviderConfig(provider=Provider.OPENAI, api_key="k1").fingerprint()
