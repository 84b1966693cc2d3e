"""
Fallback/retry controller for Agentic Tab.

Wraps one model turn. Transient backend errors (rate limited, overloaded)
are retried indefinitely with exponential backoff, alternating with the
fallback backend when one is configured. Text already streamed is kept and
the model is asked to continue from it.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Callable, Optional

from .errors import FatalBackendError, TransientBackendError, classify_error_type
from .types import TEXT_EVENT, USAGE_EVENT, CancelToken, Message, StreamEvent

logger = logging.getLogger(__name__)

CONTINUE_PROMPT = (
    "Your previous response was interrupted. Continue exactly where you stopped, "
    "without repeating anything you already wrote."
)


@dataclass
class RetryPolicy:
    """Exponential backoff between retries (seconds)."""
    base_delay: float = 2.0
    max_delay: float = 30.0

    def delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based)."""
        return min(self.base_delay * 2 ** (attempt - 1), self.max_delay)


@dataclass
class ExecutionCallbacks:
    """Observer hooks of one turn.

    Attributes:
        on_chunk: Receives each text delta; returns True to stop the stream
        on_transient_error: Called with (error, attempt, delay) before a retry
        on_fallback_started: Called with (from_name, to_name) when switching backends
        on_usage: Called with (usage_event, model) for each usage report
    """
    on_chunk: Callable[[str], bool]
    on_transient_error: Optional[Callable[[TransientBackendError, int, float], None]] = None
    on_fallback_started: Optional[Callable[[str, str], None]] = None
    on_usage: Optional[Callable[[StreamEvent, str], None]] = None


class TurnOutcome(str, Enum):
    """How a turn ended."""
    COMPLETED = "completed"
    STOPPED = "stopped"
    CANCELLED = "cancelled"


_CANCELLED = object()
_END = object()


class FallbackController:
    """Executes model turns with retry and backend fallback."""

    def __init__(self, policy: Optional[RetryPolicy] = None):
        self.policy = policy or RetryPolicy()

    async def execute_with_fallback(
        self,
        agent: Any,
        prompt: str,
        callbacks: ExecutionCallbacks,
        history: list[Message],
        cancel_token: Optional[CancelToken] = None,
    ) -> TurnOutcome:
        """Stream one turn, retrying transient failures.

        Args:
            agent: Provides ``adapter`` and an optional ``fallback_adapter``
            prompt: System prompt of the turn
            callbacks: Observer hooks
            history: Conversation messages for the backend
            cancel_token: Stops streaming and backoff once cancelled

        Returns:
            How the turn ended

        Raises:
            FatalBackendError: On a non-transient backend error
        """
        token = cancel_token or CancelToken()
        primary = agent.adapter
        fallback = getattr(agent, "fallback_adapter", None)
        adapter = primary
        produced = ""
        attempt = 0

        while True:
            messages = list(history)
            if produced:
                messages += [Message.assistant(produced), Message.user(CONTINUE_PROMPT)]

            error: Optional[TransientBackendError] = None
            stream = adapter.create_message(prompt, messages, token)
            cancel_waiter = asyncio.ensure_future(token.wait())
            try:
                while True:
                    event = await self._next_event(stream, cancel_waiter)
                    if event is _CANCELLED:
                        return TurnOutcome.CANCELLED
                    if event is _END:
                        return TurnOutcome.COMPLETED

                    if event.is_error:
                        failure = classify_error_type(event.type, event.message)
                        if isinstance(failure, FatalBackendError):
                            logger.error(f"Fatal backend error: {failure}")
                            raise failure
                        error = failure
                        break

                    if event.type == USAGE_EVENT:
                        if callbacks.on_usage is not None:
                            callbacks.on_usage(event, adapter.model)
                    elif event.type == TEXT_EVENT and event.text:
                        produced += event.text
                        if callbacks.on_chunk(event.text):
                            return TurnOutcome.STOPPED
            finally:
                cancel_waiter.cancel()
                await stream.aclose()

            attempt += 1
            if fallback is not None and adapter is primary:
                # The fallback is tried at once; returning to the primary waits out the backoff
                delay = 0.0
                next_adapter = fallback
            else:
                delay = self.policy.delay(attempt)
                next_adapter = primary

            logger.warning(
                f"Transient error ({error.error_type}) on attempt {attempt}; "
                f"retrying in {delay:.1f}s"
            )
            if callbacks.on_transient_error is not None:
                callbacks.on_transient_error(error, attempt, delay)

            if next_adapter is not adapter:
                from_name = adapter.config.display_name
                to_name = next_adapter.config.display_name
                logger.info(f"Switching backend: {from_name} -> {to_name}")
                if next_adapter is fallback and callbacks.on_fallback_started is not None:
                    callbacks.on_fallback_started(from_name, to_name)
            adapter = next_adapter

            if delay and await self._sleep_or_cancel(delay, token):
                return TurnOutcome.CANCELLED
            if token.cancelled:
                return TurnOutcome.CANCELLED

    @staticmethod
    async def _next_event(stream: AsyncIterator[StreamEvent], cancel_waiter: asyncio.Future):
        """Read the next stream event unless cancellation arrives first."""
        if cancel_waiter.done():
            return _CANCELLED
        read = asyncio.ensure_future(stream.__anext__())
        done, _ = await asyncio.wait({read, cancel_waiter}, return_when=asyncio.FIRST_COMPLETED)
        if read not in done:
            read.cancel()
            try:
                await read
            except (asyncio.CancelledError, StopAsyncIteration):
                pass
            return _CANCELLED
        try:
            return read.result()
        except StopAsyncIteration:
            return _END

    @staticmethod
    async def _sleep_or_cancel(delay: float, token: CancelToken) -> bool:
        """Sleep for ``delay`` seconds. Returns True if cancelled meanwhile."""
        try:
            await asyncio.wait_for(token.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return False
        return True
