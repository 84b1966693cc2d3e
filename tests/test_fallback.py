"""
Tests for the fallback/retry controller.
"""

import asyncio
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from conftest import FakeAdapter, text

from agentic_tab.errors import FatalBackendError
from agentic_tab.fallback import (
    CONTINUE_PROMPT,
    ExecutionCallbacks,
    FallbackController,
    RetryPolicy,
    TurnOutcome,
)
from agentic_tab.types import USAGE_EVENT, CancelToken, Message, StreamEvent


def make_callbacks(stop_on: str = None):
    chunks = []

    def on_chunk(chunk):
        chunks.append(chunk)
        return stop_on is not None and stop_on in chunk

    callbacks = ExecutionCallbacks(
        on_chunk=on_chunk,
        on_transient_error=MagicMock(),
        on_fallback_started=MagicMock(),
        on_usage=MagicMock(),
    )
    return callbacks, chunks


class HangingAdapter(FakeAdapter):
    """Streams one chunk and then never finishes."""

    async def create_message(self, system_prompt, messages, cancel_token=None):
        self.calls.append((system_prompt, list(messages)))
        yield text("thinking")[0]
        await asyncio.sleep(3600)


class TestRetryPolicy:
    """Tests for exponential backoff."""

    def test_delay_doubles_and_caps(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=5.0)
        assert [policy.delay(n) for n in range(1, 5)] == [1.0, 2.0, 4.0, 5.0]


class TestExecuteWithFallback:
    """Tests for one turn with retries."""

    @pytest.mark.asyncio
    async def test_completed_turn(self):
        adapter = FakeAdapter([text("Hello", " world")])
        callbacks, chunks = make_callbacks()

        outcome = await FallbackController().execute_with_fallback(
            SimpleNamespace(adapter=adapter), "sys", callbacks, [Message.user("Hi")]
        )

        assert outcome == TurnOutcome.COMPLETED
        assert chunks == ["Hello", " world"]
        assert adapter.calls == [("sys", [Message.user("Hi")])]

    @pytest.mark.asyncio
    async def test_stop_requested_by_callback(self):
        adapter = FakeAdapter([text("one", "two", "three")])
        callbacks, chunks = make_callbacks(stop_on="two")

        outcome = await FallbackController().execute_with_fallback(
            SimpleNamespace(adapter=adapter), "sys", callbacks, []
        )

        assert outcome == TurnOutcome.STOPPED
        assert chunks == ["one", "two"]

    @pytest.mark.asyncio
    async def test_rate_limit_retries_and_continues_partial_text(self):
        adapter = FakeAdapter([
            text("Partial") + [StreamEvent.error("rate_limit_error", "slow down")],
            text(" answer"),
        ])
        callbacks, chunks = make_callbacks()
        history = [Message.user("Question")]

        outcome = await FallbackController(RetryPolicy(0.01, 0.02)).execute_with_fallback(
            SimpleNamespace(adapter=adapter), "sys", callbacks, history
        )

        assert outcome == TurnOutcome.COMPLETED
        assert "".join(chunks) == "Partial answer"
        retry_messages = adapter.calls[1][1]
        assert retry_messages == [
            Message.user("Question"),
            Message.assistant("Partial"),
            Message.user(CONTINUE_PROMPT),
        ]

        error, attempt, delay = callbacks.on_transient_error.call_args.args
        assert error.error_type == "rate_limit_error"
        assert attempt == 1
        assert delay == 0.01
        callbacks.on_fallback_started.assert_not_called()

    @pytest.mark.asyncio
    async def test_switches_to_fallback_at_once(self):
        primary = FakeAdapter([[StreamEvent.error("overloaded_error")]], name="Primary")
        fallback = FakeAdapter([text("From fallback")], name="Fallback")
        callbacks, chunks = make_callbacks()

        outcome = await FallbackController(RetryPolicy(10.0, 10.0)).execute_with_fallback(
            SimpleNamespace(adapter=primary, fallback_adapter=fallback), "sys", callbacks, []
        )

        assert outcome == TurnOutcome.COMPLETED
        assert chunks == ["From fallback"]
        callbacks.on_fallback_started.assert_called_once_with("Primary", "Fallback")
        assert callbacks.on_transient_error.call_args.args[2] == 0.0

    @pytest.mark.asyncio
    async def test_returns_to_primary_after_fallback_fails(self):
        primary = FakeAdapter([[StreamEvent.error("rate_limit_error")], text("Back")], name="Primary")
        fallback = FakeAdapter([[StreamEvent.error("rate_limit_error")]], name="Fallback")
        callbacks, chunks = make_callbacks()

        outcome = await FallbackController(RetryPolicy(0.01, 0.02)).execute_with_fallback(
            SimpleNamespace(adapter=primary, fallback_adapter=fallback), "sys", callbacks, []
        )

        assert outcome == TurnOutcome.COMPLETED
        assert chunks == ["Back"]
        assert len(primary.calls) == 2
        assert len(fallback.calls) == 1
        assert callbacks.on_fallback_started.call_count == 1

    @pytest.mark.asyncio
    async def test_fatal_error_raises(self):
        adapter = FakeAdapter([[StreamEvent.error("authentication_error", "bad key")]])
        callbacks, _ = make_callbacks()

        with pytest.raises(FatalBackendError) as exc_info:
            await FallbackController().execute_with_fallback(
                SimpleNamespace(adapter=adapter), "sys", callbacks, []
            )

        assert exc_info.value.message == "bad key"
        callbacks.on_transient_error.assert_not_called()

    @pytest.mark.asyncio
    async def test_usage_is_reported_with_model(self):
        usage = StreamEvent(type=USAGE_EVENT, input_tokens=10, output_tokens=4)
        adapter = FakeAdapter([text("ok") + [usage]], model="gpt-4o-mini")
        callbacks, _ = make_callbacks()

        await FallbackController().execute_with_fallback(
            SimpleNamespace(adapter=adapter), "sys", callbacks, []
        )

        callbacks.on_usage.assert_called_once_with(usage, "gpt-4o-mini")


class TestCancellation:
    """Tests for cancellation while streaming and while backing off."""

    @pytest.mark.asyncio
    async def test_cancel_while_streaming(self):
        adapter = HangingAdapter()
        callbacks, chunks = make_callbacks()
        token = CancelToken()
        asyncio.get_running_loop().call_later(0.02, token.cancel)

        outcome = await asyncio.wait_for(
            FallbackController().execute_with_fallback(
                SimpleNamespace(adapter=adapter), "sys", callbacks, [], token
            ),
            timeout=2.0,
        )

        assert outcome == TurnOutcome.CANCELLED
        assert chunks == ["thinking"]

    @pytest.mark.asyncio
    async def test_cancel_during_backoff(self):
        adapter = FakeAdapter([[StreamEvent.error("rate_limit_error")]])
        callbacks, _ = make_callbacks()
        token = CancelToken()
        asyncio.get_running_loop().call_later(0.02, token.cancel)

        outcome = await asyncio.wait_for(
            FallbackController(RetryPolicy(60.0, 60.0)).execute_with_fallback(
                SimpleNamespace(adapter=adapter), "sys", callbacks, [], token
            ),
            timeout=2.0,
        )

        assert outcome == TurnOutcome.CANCELLED
        assert len(adapter.calls) == 1
