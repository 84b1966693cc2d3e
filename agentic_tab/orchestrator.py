"""
Execution orchestrator for Agentic Tab.

Accepts prompts per window and drives each run through its turns:
stream the model's output, split it into segments, dispatch tool
directives, feed results back into the conversation and signal completion.
Every window is an independent session; all state changes happen on the
event loop.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Sequence, Union

from .agent import BrowserAgent, create_browser_agent
from .approval import ApprovalGate
from .config import EngineConfig
from .conversation import ConversationStore
from .dispatch import ToolDispatcher, ToolResult, ToolStatus
from .errors import (
    OVERLOADED_ERROR,
    FatalBackendError,
    NoAgentError,
    NoWindowError,
    TransientBackendError,
    describe_error,
)
from .events import (
    FALLBACK_STARTED,
    FINALIZE_STREAMING_SEGMENT,
    OUTPUT_LLM,
    OUTPUT_PAGE_CONTEXT,
    OUTPUT_SYSTEM,
    OUTPUT_TOOL,
    PROCESSING_COMPLETE,
    RATE_LIMIT,
    START_NEW_SEGMENT,
    STREAMING_COMPLETE,
    UPDATE_OUTPUT,
    UPDATE_STREAMING_CHUNK,
    EventChannel,
    UIEvent,
)
from .fallback import ExecutionCallbacks, FallbackController, RetryPolicy, TurnOutcome
from .memory import MemoryStore
from .providers import ProviderConfig, calculate_cost
from .safety import ToolRiskClassifier
from .segmenter import Directive, Segment, StreamingSegmenter
from .sessions import AgentStatus, AgentStatusInfo, Session, SessionRegistry
from .tools import TOOL_DISPLAY_NAMES, PageInfo
from .types import (
    CancelToken,
    ImageBlock,
    Message,
    SessionRef,
    StreamEvent,
    TextBlock,
    TokenUsage,
    block_from_dict,
)

logger = logging.getLogger(__name__)

AgentFactory = Callable[[int, ProviderConfig, Optional[ProviderConfig]], Awaitable[BrowserAgent]]

ALREADY_RUNNING_MESSAGE = (
    "The agent is already working in this window. Cancel it or wait for it to finish."
)


@dataclass
class StreamingRun:
    """State of one prompt execution. Never outlives the run."""
    window_id: int
    tab_id: Optional[int]
    ask_mode: bool = False
    cancel_token: CancelToken = field(default_factory=CancelToken)
    segmenter: StreamingSegmenter = field(default_factory=StreamingSegmenter)
    completion_signaled: bool = False
    steps: int = 0
    action_counts: dict[tuple[str, str], int] = field(default_factory=dict)

    @property
    def cancelled(self) -> bool:
        return self.cancel_token.cancelled


class Orchestrator:
    """Root of the execution engine."""

    def __init__(
        self,
        events: EventChannel,
        agent_factory: Optional[AgentFactory] = None,
        config: Optional[EngineConfig] = None,
        config_source: Optional[Callable[[], EngineConfig]] = None,
        conversations: Optional[ConversationStore] = None,
        sessions: Optional[SessionRegistry] = None,
        approvals: Optional[ApprovalGate] = None,
        memory: Optional[MemoryStore] = None,
        classifier: Optional[ToolRiskClassifier] = None,
    ):
        """Initialize the orchestrator.

        Args:
            events: Sink for UI events
            agent_factory: Builds the agent of a window; raises NoAgentError when
                the window has no automation backend
            config: Static configuration (ignored when ``config_source`` is given)
            config_source: Returns the current configuration at each prompt
            conversations: Conversation store (created from the config if None)
            sessions: Session registry (created from the config if None)
            approvals: Approval gate (created from the config if None)
            memory: Domain memory store
            classifier: Tool risk classifier
        """
        static_config = config or EngineConfig()
        self.config_source = config_source or (lambda: static_config)
        current = self.config_source()

        self.events = events
        self.agent_factory = agent_factory
        self.conversations = conversations or ConversationStore(current.max_conversation_tokens)
        self.sessions = sessions or SessionRegistry(current.heartbeat_interval, current.stale_after)
        self.approvals = approvals or ApprovalGate(events, timeout=current.approval_timeout)
        self.memory = memory
        self.classifier = classifier or ToolRiskClassifier()
        self._ask_agents: dict[int, BrowserAgent] = {}
        self._tasks: set[asyncio.Task] = set()

    @property
    def config(self) -> EngineConfig:
        return self.config_source()

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def _emit(self, tab_id: Optional[int], window_id: Optional[int], action: str, **payload: Any) -> None:
        self.events.emit(UIEvent(action, payload, tab_id, window_id))

    def _emit_output(
        self,
        tab_id: Optional[int],
        window_id: Optional[int],
        output_type: str,
        content: str,
        **extra: Any,
    ) -> None:
        self._emit(tab_id, window_id, UPDATE_OUTPUT,
                   content={"type": output_type, "content": content, **extra})

    def _fail_before_start(self, tab_id, window_id, message: str) -> None:
        self._emit_output(tab_id, window_id, OUTPUT_SYSTEM, f"Error: {message}")
        self._emit(tab_id, window_id, PROCESSING_COMPLETE)

    # ------------------------------------------------------------------
    # Control surface
    # ------------------------------------------------------------------

    async def execute_prompt(
        self,
        prompt: str,
        session_ref: SessionRef,
        ask_mode: bool = False,
        images: Optional[Sequence[Union[ImageBlock, dict, str]]] = None,
    ) -> None:
        """Execute a prompt in a session until it returns to idle.

        Args:
            prompt: User prompt
            session_ref: Tab and/or window of the session
            ask_mode: Answer directly without browser automation
            images: Optional images attached to the prompt
        """
        try:
            window_id = self.sessions.resolve_window(session_ref)
        except NoWindowError as e:
            logger.warning(str(e))
            self._fail_before_start(session_ref.tab_id, None, str(e))
            return

        tab_id = session_ref.tab_id
        if tab_id is None:
            tab_id = self.sessions.tab_for_window(window_id)

        session = self.sessions.get_or_create(window_id)
        if session.active_run is not None or session.is_running:
            logger.info(f"Rejected prompt for busy window {window_id}")
            self._emit_output(tab_id, window_id, OUTPUT_SYSTEM, ALREADY_RUNNING_MESSAGE)
            return

        config = self.config
        valid, error = config.provider.validate()
        if not valid:
            self._fail_before_start(tab_id, window_id, error)
            return

        try:
            user_message = self._user_message(prompt, images)
        except ValueError as e:
            self._fail_before_start(tab_id, window_id, str(e))
            return

        run = StreamingRun(
            window_id, tab_id, ask_mode=ask_mode, segmenter=StreamingSegmenter(prose_only=ask_mode)
        )
        session.active_run = run
        logger.info(f"Executing {'ask' if ask_mode else 'agent'} prompt in window {window_id}")

        if ask_mode:
            await self._run_ask(run, session, config, user_message)
        else:
            await self._run_agent(run, session, config, user_message)

    def submit_prompt(
        self,
        prompt: str,
        session_ref: SessionRef,
        ask_mode: bool = False,
        images: Optional[Sequence[Union[ImageBlock, dict, str]]] = None,
    ) -> asyncio.Task:
        """Start ``execute_prompt`` as a background task."""
        task = asyncio.get_running_loop().create_task(
            self.execute_prompt(prompt, session_ref, ask_mode, images)
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def cancel_execution(self, session_ref: SessionRef) -> None:
        """Cancel the running prompt of a session.

        Pending approvals are denied and completion is signalled at once,
        regardless of in-flight tool work.
        """
        try:
            window_id = self.sessions.resolve_window(session_ref)
        except NoWindowError as e:
            logger.warning(f"Cannot cancel: {e}")
            return

        session = self.sessions.get(window_id)
        run = session.active_run if session else None
        tab_id = run.tab_id if run else session_ref.tab_id

        if run is not None:
            run.cancel_token.cancel()
        self.approvals.deny_pending(window_id)

        if session is not None and session.agent is not None:
            try:
                await session.agent.cancel()
            except Exception as e:
                logger.warning(f"Agent cancel failed for window {window_id}: {e}")

        self._emit_output(tab_id, window_id, OUTPUT_SYSTEM, "Cancelling execution...")
        logger.info(f"Cancelled execution in window {window_id}")

        if run is not None and session is not None:
            if not run.completion_signaled:
                self._finish_stream(run)
            self._signal_completion(run, session)
        else:
            self.sessions.set_status(window_id, AgentStatus.IDLE)
            self._emit(tab_id, window_id, PROCESSING_COMPLETE)

    def clear_history(self, session_ref: Optional[SessionRef] = None) -> None:
        """Clear one session's conversation, screenshots and usage, or every session's."""
        if session_ref is None:
            self.conversations.clear()
            window_ids = list(self.sessions.sessions)
        else:
            try:
                window_id = self.sessions.resolve_window(session_ref)
            except NoWindowError as e:
                logger.warning(f"Cannot clear history: {e}")
                return
            self.conversations.clear(window_id)
            window_ids = [window_id]

        for window_id in window_ids:
            self.sessions.reset_usage(window_id)
            session = self.sessions.get(window_id)
            if session is not None and session.agent is not None and session.agent.automation:
                session.agent.automation.screenshots.clear()
        logger.info(f"Cleared history for {len(window_ids) or 'all'} window(s)")

    def approval_response(self, request_id: str, approved: bool) -> bool:
        """Deliver a human decision for a pending approval request."""
        return self.approvals.respond(request_id, approved)

    def check_agent_status(self, session_ref: SessionRef) -> AgentStatusInfo:
        """Status of a session; unknown sessions are idle."""
        try:
            window_id = self.sessions.resolve_window(session_ref)
        except NoWindowError:
            return self.sessions.get_status(-1)
        return self.sessions.get_status(window_id)

    def get_token_usage(self, session_ref: SessionRef) -> TokenUsage:
        try:
            window_id = self.sessions.resolve_window(session_ref)
        except NoWindowError:
            return TokenUsage()
        session = self.sessions.get(window_id)
        return session.token_usage if session else TokenUsage()

    async def close_window(self, window_id: int) -> None:
        """Tear down a window's session."""
        session = self.sessions.get(window_id)
        if session is not None and session.active_run is not None:
            await self.cancel_execution(SessionRef(window_id=window_id))
        self.conversations.clear(window_id)
        session = self.sessions.remove(window_id)
        for agent in (session.agent if session else None, self._ask_agents.pop(window_id, None)):
            if agent is not None:
                await agent.close()

    async def close_tab(self, tab_id: int) -> None:
        """Forget a closed tab; its window's session ends with its last tab."""
        window_id = self.sessions.unregister_tab(tab_id)
        if window_id is not None and self.sessions.tab_for_window(window_id) is None:
            await self.close_window(window_id)

    async def close(self) -> None:
        """Cancel every run and release all agents."""
        for window_id in list(self.sessions.sessions):
            await self.close_window(window_id)
        for task in list(self._tasks):
            task.cancel()

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    @staticmethod
    def _user_message(prompt: str, images) -> Message:
        if not images:
            return Message.user(prompt)
        blocks = [TextBlock(prompt)]
        for image in images:
            if isinstance(image, str):
                blocks.append(ImageBlock(data=image))
            else:
                blocks.append(block_from_dict(image))
        return Message.user(tuple(blocks))

    async def _ensure_agent(self, session: Session, config: EngineConfig) -> BrowserAgent:
        """Return the window's agent, rebuilding it if the configuration changed.

        Raises:
            NoAgentError: If no agent could be created
        """
        agent = session.agent
        if agent is not None and agent.needs_reinitialization(config.provider, config.fallback_provider):
            logger.info(f"Provider configuration changed; rebuilding agent for window {session.window_id}")
            await agent.close()
            session.agent = agent = None

        if agent is None:
            if self.agent_factory is None:
                raise NoAgentError(f"No automation agent for window {session.window_id}")
            try:
                agent = await self.agent_factory(
                    session.window_id, config.provider, config.fallback_provider
                )
            except NoAgentError:
                raise
            except Exception as e:
                raise NoAgentError(f"Could not initialize agent: {e}") from e
            if agent is None:
                raise NoAgentError(f"No automation agent for window {session.window_id}")
            session.agent = agent
        return agent

    async def _ask_agent(self, window_id: int, config: EngineConfig) -> BrowserAgent:
        agent = self._ask_agents.get(window_id)
        if agent is not None and agent.needs_reinitialization(config.provider, config.fallback_provider):
            await agent.close()
            agent = None
        if agent is None:
            agent = create_browser_agent(None, config.provider, config.fallback_provider)
            self._ask_agents[window_id] = agent
        return agent

    def _callbacks(self, run: StreamingRun, on_chunk: Callable[[str], bool]) -> ExecutionCallbacks:
        def on_transient_error(error: TransientBackendError, attempt: int, delay: float) -> None:
            label = "Model is overloaded" if error.error_type == OVERLOADED_ERROR else "Rate limit exceeded"
            detail = f" ({error.message})" if error.message else ""
            self._emit_output(run.tab_id, run.window_id, OUTPUT_SYSTEM, f"{label}. Retrying...{detail}")
            self._emit(run.tab_id, run.window_id, RATE_LIMIT, isRetrying=True,
                       errorType=error.error_type, attempt=attempt, delay=delay)

        def on_fallback_started(from_name: str, to_name: str) -> None:
            self._emit(run.tab_id, run.window_id, FALLBACK_STARTED, **{"from": from_name, "to": to_name})
            self._emit(run.tab_id, run.window_id, RATE_LIMIT, isRetrying=True)

        def on_usage(event: StreamEvent, model: str) -> None:
            cost = calculate_cost(model, event.input_tokens, event.output_tokens)
            self.sessions.add_usage(run.window_id, event.input_tokens, event.output_tokens, cost)

        return ExecutionCallbacks(
            on_chunk=on_chunk,
            on_transient_error=on_transient_error,
            on_fallback_started=on_fallback_started,
            on_usage=on_usage,
        )

    def _fallback_controller(self, config: EngineConfig) -> FallbackController:
        return FallbackController(RetryPolicy(config.retry_base_delay, config.retry_max_delay))

    def _on_chunk(self, run: StreamingRun, text: str) -> bool:
        """Feed a delta; returns True once a settled directive is buffered."""
        if run.cancelled:
            return True
        run.segmenter.feed(text)
        self._emit(run.tab_id, run.window_id, UPDATE_STREAMING_CHUNK,
                   content=text, segmentId=run.segmenter.segment_id)
        return run.segmenter.take_directive() is not None

    async def _run_agent(
        self,
        run: StreamingRun,
        session: Session,
        config: EngineConfig,
        user_message: Message,
    ) -> None:
        try:
            agent = await self._ensure_agent(session, config)
        except NoAgentError as e:
            logger.error(str(e))
            session.active_run = None
            self._fail_before_start(run.tab_id, run.window_id, str(e))
            return

        self.sessions.set_status(run.window_id, AgentStatus.RUNNING)
        try:
            if not self.conversations.has_history(run.window_id):
                self.conversations.set_original_request(run.window_id, user_message)
            self.conversations.append_message(run.window_id, user_message)

            await self._update_page_context(run, agent)
            await self._agent_loop(run, agent, config)
        except FatalBackendError as e:
            if not run.cancelled:
                self._emit_output(run.tab_id, run.window_id, OUTPUT_SYSTEM, f"Error: {describe_error(e)}")
        except Exception as e:
            logger.exception(f"Run in window {run.window_id} failed")
            if not run.cancelled:
                self._emit_output(run.tab_id, run.window_id, OUTPUT_SYSTEM, f"Error: {describe_error(e)}")
        finally:
            self._complete_run(run, session)

    async def _agent_loop(self, run: StreamingRun, agent: BrowserAgent, config: EngineConfig) -> None:
        dispatcher = ToolDispatcher(
            agent.automation,
            self.approvals,
            classifier=self.classifier,
            memory=self.memory,
            events=self.events,
            auto_approve=config.auto_approve,
        )
        controller = self._fallback_controller(config)
        callbacks = self._callbacks(run, lambda text: self._on_chunk(run, text))

        while not run.cancelled:
            history = self.conversations.get_messages(run.window_id)
            outcome = await controller.execute_with_fallback(
                agent, agent.system_prompt(), callbacks, history, run.cancel_token
            )
            if outcome == TurnOutcome.CANCELLED or run.cancelled:
                return

            directive = run.segmenter.take_directive(final=True)
            if directive is None:
                # Final answer; finalized as the trailing segment on completion
                answer = run.segmenter.current_buffer()
                if answer.strip():
                    self.conversations.append_message(run.window_id, Message.assistant(answer))
                return

            segment = self._finalize_directive(run, directive)
            self.conversations.append_message(run.window_id, Message.assistant(segment.content))

            if run.steps >= config.max_steps:
                self._emit_output(run.tab_id, run.window_id, OUTPUT_SYSTEM,
                                  f"Reached maximum step limit ({config.max_steps})")
                return
            run.steps += 1

            result = await self._dispatch(run, dispatcher, directive, agent, config)
            if run.cancelled:
                # A denial still answers the directive; late tool output is discarded
                if result.status == ToolStatus.DENIED:
                    self.conversations.append_message(run.window_id, result.to_message())
                return

            self.conversations.append_message(run.window_id, result.to_message())
            self._emit_output(
                run.tab_id, run.window_id, OUTPUT_TOOL, result.output,
                tool=result.tool_name,
                displayName=TOOL_DISPLAY_NAMES.get(result.tool_name, result.tool_name),
                input=result.tool_input,
                status=result.status.value,
            )

            next_id = segment.id + 1
            run.segmenter.start_new_segment(next_id)
            self._emit(run.tab_id, run.window_id, START_NEW_SEGMENT, segmentId=next_id)

    def _finalize_directive(self, run: StreamingRun, directive: Directive) -> Segment:
        content = run.segmenter.current_buffer()[:directive.end]
        segment = run.segmenter.finalize_segment(run.segmenter.segment_id, content)
        self._emit(run.tab_id, run.window_id, FINALIZE_STREAMING_SEGMENT,
                   segmentId=segment.id, content=segment.content)
        return segment

    async def _dispatch(
        self,
        run: StreamingRun,
        dispatcher: ToolDispatcher,
        directive: Directive,
        agent: BrowserAgent,
        config: EngineConfig,
    ) -> ToolResult:
        page = await self._page_info(agent)
        if page is not None:
            agent.set_page_context(page)

        result = await dispatcher.dispatch(
            directive.tool,
            directive.input,
            requires_approval=directive.requires_approval,
            window_id=run.window_id,
            tab_id=run.tab_id,
            current_url=agent.current_url,
            cancel_token=run.cancel_token,
        )

        key = (directive.tool, directive.input)
        run.action_counts[key] = run.action_counts.get(key, 0) + 1
        if run.action_counts[key] >= config.max_repeat_actions:
            logger.warning(f"Repeated action {directive.tool} x{run.action_counts[key]}")
            result.output += (
                f"\nWarning: this exact action has now been repeated {run.action_counts[key]} "
                "times. Try a different approach."
            )
        return result

    async def _page_info(self, agent: BrowserAgent) -> Optional[PageInfo]:
        if agent.automation is None:
            return None
        try:
            return await agent.automation.page_info()
        except Exception as e:
            logger.debug(f"Page info unavailable: {e}")
            return None

    async def _update_page_context(self, run: StreamingRun, agent: BrowserAgent) -> None:
        page = await self._page_info(agent)
        agent.set_page_context(page)
        if page is not None and page.url:
            self._emit_output(run.tab_id, run.window_id, OUTPUT_PAGE_CONTEXT,
                              f"Current page: {page.url}", url=page.url, title=page.title)

    async def _run_ask(
        self,
        run: StreamingRun,
        session: Session,
        config: EngineConfig,
        user_message: Message,
    ) -> None:
        self.sessions.set_status(run.window_id, AgentStatus.RUNNING)
        try:
            agent = await self._ask_agent(run.window_id, config)
            controller = self._fallback_controller(config)
            callbacks = self._callbacks(run, lambda text: self._on_chunk(run, text))

            outcome = await controller.execute_with_fallback(
                agent, agent.system_prompt(ask_mode=True), callbacks, [user_message], run.cancel_token
            )
            answer = run.segmenter.current_buffer()
            if outcome != TurnOutcome.CANCELLED and not run.cancelled and answer.strip():
                self._emit_output(run.tab_id, run.window_id, OUTPUT_LLM, answer)
        except FatalBackendError as e:
            if not run.cancelled:
                self._emit_output(run.tab_id, run.window_id, OUTPUT_SYSTEM, f"Error: {describe_error(e)}")
        except Exception as e:
            logger.exception(f"Ask in window {run.window_id} failed")
            if not run.cancelled:
                self._emit_output(run.tab_id, run.window_id, OUTPUT_SYSTEM, f"Error: {describe_error(e)}")
        finally:
            self._complete_run(run, session)

    def _complete_run(self, run: StreamingRun, session: Session) -> None:
        """Finalize trailing prose, then signal completion."""
        if run.completion_signaled:
            # Cancelled; the window may already belong to a newer run
            return
        self._finish_stream(run)
        self._signal_completion(run, session)

    def _finish_stream(self, run: StreamingRun) -> None:
        trailing = run.segmenter.complete()
        if trailing is not None:
            self._emit(run.tab_id, run.window_id, FINALIZE_STREAMING_SEGMENT,
                       segmentId=trailing.id, content=trailing.content)
        self._emit(run.tab_id, run.window_id, STREAMING_COMPLETE)

    def _signal_completion(self, run: StreamingRun, session: Session) -> None:
        # processingComplete is emitted exactly once per run
        if run.completion_signaled:
            return
        run.completion_signaled = True
        if session.active_run is run:
            session.active_run = None
            self.sessions.set_status(run.window_id, AgentStatus.IDLE)
        self._emit(run.tab_id, run.window_id, PROCESSING_COMPLETE)
