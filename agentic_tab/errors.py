"""
Error taxonomy for Agentic Tab.

Local errors (invalid messages, unknown tools) never abort a run. Only fatal
backend errors and initialization failures terminate one.
"""

from typing import Optional


class AgentTabError(Exception):
    """Base class for all Agentic Tab errors."""


class InvalidMessage(AgentTabError, ValueError):
    """Message content is neither text nor a list of content blocks."""


class UnknownTool(AgentTabError):
    """A directive named a tool the automation backend does not expose."""

    def __init__(self, tool_name: str):
        super().__init__(f"Unknown tool: {tool_name}")
        self.tool_name = tool_name


class ToolExecutionError(AgentTabError):
    """A tool ran but could not do what was asked."""


class SegmentOrderError(AgentTabError, ValueError):
    """A segment was finalized out of order within one streaming run."""


class NoWindowError(AgentTabError):
    """No window could be resolved for the session reference."""


class NoAgentError(AgentTabError):
    """No automation agent exists for the window and none could be created."""


# Stream error types
RATE_LIMIT_ERROR = "rate_limit_error"
OVERLOADED_ERROR = "overloaded_error"
AUTHENTICATION_ERROR = "authentication_error"
INVALID_REQUEST_ERROR = "invalid_request_error"
API_ERROR = "api_error"

TRANSIENT_ERROR_TYPES = frozenset({RATE_LIMIT_ERROR, OVERLOADED_ERROR})


class BackendError(AgentTabError):
    """An error reported by a model backend.

    Attributes:
        error_type: Normalized error type (e.g. "rate_limit_error")
        message: Provider message, if any
    """

    def __init__(self, error_type: str, message: str = ""):
        super().__init__(f"{error_type}: {message}" if message else error_type)
        self.error_type = error_type
        self.message = message

    @property
    def is_transient(self) -> bool:
        return self.error_type in TRANSIENT_ERROR_TYPES


class TransientBackendError(BackendError):
    """Rate limited or overloaded. Retried automatically."""


class FatalBackendError(BackendError):
    """Authentication, malformed request or unclassified failure. Ends the run."""


def classify_error_type(error_type: str, message: str = "") -> BackendError:
    """Build the right BackendError subclass for a stream error type."""
    if error_type in TRANSIENT_ERROR_TYPES:
        return TransientBackendError(error_type, message)
    return FatalBackendError(error_type, message)


def classify_status(status_code: int) -> str:
    """Map an HTTP status code to a normalized stream error type."""
    if status_code == 429:
        return RATE_LIMIT_ERROR
    if status_code in (503, 529):
        return OVERLOADED_ERROR
    if status_code in (401, 403):
        return AUTHENTICATION_ERROR
    if status_code in (400, 404, 413, 422):
        return INVALID_REQUEST_ERROR
    return API_ERROR


def describe_error(error: Optional[BaseException]) -> str:
    """Short human-readable description of an error."""
    if error is None:
        return "Unknown error"
    if isinstance(error, BackendError):
        return error.message or error.error_type
    return str(error) or type(error).__name__
