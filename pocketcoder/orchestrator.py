"""Agentic orchestrator: drives one user turn through model rounds and tool calls."""

import asyncio
from contextlib import aclosing
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Callable, assert_never

from pocketcoder.catalog import find_model
from pocketcoder.config import Config, get_config
from pocketcoder.conversation import build_conversation
from pocketcoder.credentials import ProviderConfigStore
from pocketcoder.exceptions import PersistenceError, SessionNotFoundError, TurnInProgressError
from pocketcoder.llm.base import (
    ChatMessage,
    CompletionConfig,
    Done,
    LLMProvider,
    StreamError,
    TextDelta,
    ToolCallComplete,
    ToolDefinition,
    Usage,
)
from pocketcoder.logging import get_logger
from pocketcoder.models import (
    MODE_BUILD,
    ROLE_ASSISTANT,
    ROLE_TOOL,
    ROLE_USER,
    Message,
    Project,
    ProviderConfiguration,
    Session,
    ToolCall,
)
from pocketcoder.prompts import InstructionLoader, SystemPromptBuilder
from pocketcoder.resolver import (
    FailoverRule,
    ProviderResolver,
    ResolvedProvider,
    configured_failover_rules,
    normalize_model_id,
)
from pocketcoder.session import SessionStore
from pocketcoder.tools import ToolExecutor
from pocketcoder.tools.paths import display_path

log = get_logger(__name__)


class TurnStatus(str, Enum):
    IDLE = "idle"
    AWAITING_MODEL_RESPONSE = "awaiting_model_response"
    EXECUTING_TOOLS = "executing_tools"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"


ACTIVE_STATUSES = (TurnStatus.AWAITING_MODEL_RESPONSE, TurnStatus.EXECUTING_TOOLS)


@dataclass
class TurnState:
    """Observable state of the current (or last) turn."""

    status: TurnStatus = TurnStatus.IDLE
    session_id: str | None = None
    round: int = 0
    streaming_text: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    error: str | None = None
    notice: str | None = None
    provider_config_id: str | None = None
    model_id: str | None = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES


TurnListener = Callable[[TurnState], None]


@dataclass
class _RoundResult:
    text: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    input_tokens: int = 0
    output_tokens: int = 0
    error: StreamError | None = None


@dataclass
class _Outcome:
    status: TurnStatus
    error: str | None = None
    notice: str | None = None


class Orchestrator:
    """Runs the agentic loop for one session at a time.

    A turn appends the user message, resolves a live provider, then streams
    rounds until the model answers without tool calls or the round budget
    is spent. Tool calls of a round run sequentially in the order the model
    requested them. Token usage is summed over the turn and written once at
    the end.
    """

    def __init__(
        self,
        session_store: SessionStore,
        resolver: ProviderResolver,
        config_store: ProviderConfigStore,
        project: Project | None = None,
        tool_executor: ToolExecutor | None = None,
        failover_rules: list[FailoverRule] | None = None,
        config: Config | None = None,
        instructions: InstructionLoader | None = None,
    ):
        self.config = config or get_config()
        self.session_store = session_store
        self.resolver = resolver
        self.config_store = config_store
        self.project = project
        if tool_executor is None and project is not None:
            tool_executor = ToolExecutor(project.path, self.config.tools)
        self.tool_executor = tool_executor
        self.failover_rules = (
            configured_failover_rules() if failover_rules is None else list(failover_rules)
        )
        self.instructions = instructions

        self.state = TurnState()
        self.modified_files: list[str] = []
        self._listeners: list[TurnListener] = []
        self._task: asyncio.Task[TurnState] | None = None
        self._adapter: LLMProvider | None = None
        self._abort_event: asyncio.Event | None = None

    # ── Observation ──────────────────────────────────────────────────

    def add_listener(self, listener: TurnListener) -> Callable[[], None]:
        """Subscribe to state transitions; returns an unsubscribe callable."""
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    def _notify(self) -> None:
        snapshot = replace(self.state)
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception as e:
                log.warning("Turn listener raised", error=str(e))

    def _update(self, **changes: object) -> None:
        for key, value in changes.items():
            setattr(self.state, key, value)
        self._notify()

    @property
    def is_busy(self) -> bool:
        return self._task is not None and not self._task.done()

    # ── Control ──────────────────────────────────────────────────────

    def submit(
        self,
        session_id: str,
        text: str,
        open_file_path: str | None = None,
        open_file_content: str | None = None,
    ) -> asyncio.Task[TurnState]:
        """Start a turn as a background task.

        Raises:
            TurnInProgressError: a turn is already running
        """
        if self.is_busy:
            raise TurnInProgressError("A turn is already in progress")

        self._abort_event = asyncio.Event()
        self.state = TurnState(status=TurnStatus.AWAITING_MODEL_RESPONSE, session_id=session_id)
        self._notify()
        self._task = asyncio.create_task(
            self._run_turn(session_id, text, open_file_path, open_file_content)
        )
        self._task.add_done_callback(self._on_turn_finished)
        return self._task

    def cancel(self) -> bool:
        """Cancel the running turn. Returns False when nothing was running."""
        if not self.is_busy:
            return False
        log.info("Cancelling turn", session_id=self.state.session_id, round=self.state.round)
        if self._adapter is not None:
            self._adapter.cancel()
        if self._abort_event is not None:
            self._abort_event.set()
        self._task.cancel()
        return True

    def _on_turn_finished(self, task: asyncio.Task[TurnState]) -> None:
        # A task cancelled before its first step never enters _run_turn.
        if not self.state.is_active:
            return
        if task.cancelled():
            log.info("Turn cancelled before it started", session_id=self.state.session_id)
            self._update(status=TurnStatus.CANCELLED, streaming_text="")
            return
        error = task.exception()
        self._update(status=TurnStatus.FAILED, error=str(error) if error else "Turn ended unexpectedly")

    # ── Turn ─────────────────────────────────────────────────────────

    async def _run_turn(
        self,
        session_id: str,
        text: str,
        open_file_path: str | None,
        open_file_content: str | None,
    ) -> TurnState:
        log.info("Turn started", session_id=session_id)
        persist_usage = True
        try:
            outcome = await self._execute_turn(session_id, text, open_file_path, open_file_content)
        except asyncio.CancelledError:
            if self._adapter is not None:
                self._adapter.cancel()
            await self._release_adapter()
            self._update(status=TurnStatus.CANCELLED, streaming_text="")
            log.info("Turn cancelled", session_id=session_id, round=self.state.round)
            raise
        except PersistenceError as e:
            persist_usage = False
            outcome = _Outcome(TurnStatus.FAILED, error=f"Could not save the conversation: {e}")
        except SessionNotFoundError as e:
            persist_usage = False
            outcome = _Outcome(TurnStatus.FAILED, error=str(e))
        except Exception as e:
            log.error("Turn failed", session_id=session_id, error=str(e), exc_info=True)
            outcome = _Outcome(TurnStatus.FAILED, error=str(e) or e.__class__.__name__)

        if persist_usage:
            try:
                await self._persist_usage(session_id)
            except (PersistenceError, SessionNotFoundError) as e:
                outcome = _Outcome(TurnStatus.FAILED, error=f"Could not save token usage: {e}")

        await self._release_adapter()
        if outcome.status == TurnStatus.DONE:
            self._update(status=outcome.status, notice=outcome.notice, streaming_text="")
        else:
            # Failed turns keep the partial streaming text.
            self._update(status=outcome.status, error=outcome.error, notice=outcome.notice)
        log.info(
            "Turn finished",
            session_id=session_id,
            status=outcome.status.value,
            rounds=self.state.round,
            input_tokens=self.state.input_tokens,
            output_tokens=self.state.output_tokens,
        )
        return replace(self.state)

    async def _execute_turn(
        self,
        session_id: str,
        text: str,
        open_file_path: str | None,
        open_file_content: str | None,
    ) -> _Outcome:
        session = await self.session_store.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)

        await self.session_store.append(Message(session_id=session_id, role=ROLE_USER, content=text))
        conversation = build_conversation(await self.session_store.read_all(session_id))

        configurations = await self.config_store.list_active()
        resolved, model_id = await self._resolve(session, configurations)
        if resolved is None:
            return _Outcome(
                TurnStatus.FAILED,
                error="No provider could be connected. Add or reconnect a provider and try again.",
            )
        configuration = resolved.configuration
        self._adapter = resolved.adapter

        tools = self._offered_tools(session, resolved.adapter)
        completion = CompletionConfig(
            temperature=self.config.agent.temperature,
            max_tokens=self._max_tokens(configuration, model_id),
            system_prompt=await self._system_prompt(session, open_file_path, open_file_content),
        )

        messages = list(conversation)
        max_rounds = max(1, self.config.agent.max_tool_rounds)
        for round_number in range(1, max_rounds + 1):
            self._update(
                status=TurnStatus.AWAITING_MODEL_RESPONSE,
                round=round_number,
                streaming_text="",
            )
            result = await self._stream_round(self._adapter, messages, model_id, tools, completion)

            if result.error is not None:
                return await self._handle_stream_error(session, configuration, configurations, result.error)

            if not result.tool_calls or tools is None:
                if result.text:
                    await self.session_store.append(
                        Message(
                            session_id=session_id,
                            role=ROLE_ASSISTANT,
                            content=result.text,
                            input_tokens=result.input_tokens,
                            output_tokens=result.output_tokens,
                        )
                    )
                return _Outcome(TurnStatus.DONE)

            self._update(status=TurnStatus.EXECUTING_TOOLS)
            tool_messages = await self._run_tools(session_id, result)

            # The assistant message and its results are written together, after every call ran.
            await self.session_store.append(
                Message(
                    session_id=session_id,
                    role=ROLE_ASSISTANT,
                    content=result.text,
                    tool_calls=list(result.tool_calls),
                    input_tokens=result.input_tokens,
                    output_tokens=result.output_tokens,
                )
            )
            for tool_message in tool_messages:
                await self.session_store.append(tool_message)

            messages.append(
                ChatMessage(role=ROLE_ASSISTANT, content=result.text, tool_calls=list(result.tool_calls))
            )
            messages.extend(
                ChatMessage(role=ROLE_TOOL, content=m.content, tool_call_id=m.tool_call_id)
                for m in tool_messages
            )

        log.info("Round budget exhausted", session_id=session_id, rounds=max_rounds)
        return _Outcome(TurnStatus.DONE)

    async def _resolve(
        self,
        session: Session,
        configurations: list[ProviderConfiguration],
    ) -> tuple[ResolvedProvider | None, str | None]:
        """Resolve the session's provider and the model to use with it.

        The selection is persisted on the session when it moved.
        """
        if not configurations:
            log.warning("No active provider configurations", session_id=session.id)
            return None, None

        preferred = next(
            (c for c in configurations if c.id == session.provider_id),
            configurations[0],
        )
        resolved = await self.resolver.resolve(preferred, configurations)
        if resolved is None:
            return None, None

        configuration = resolved.configuration
        model_id = resolved.model_id
        if configuration.id == session.provider_id and session.model_id:
            model_id = normalize_model_id(configuration.registry_id, session.model_id)

        if (configuration.id, model_id) != (session.provider_id, session.model_id):
            await self.session_store.update_provider_selection(session.id, configuration.id, model_id)

        self._update(provider_config_id=configuration.id, model_id=model_id)
        return resolved, model_id

    def _offered_tools(self, session: Session, adapter: LLMProvider) -> list[ToolDefinition] | None:
        if session.mode != MODE_BUILD or self.tool_executor is None:
            return None
        if not adapter.supports_tools:
            log.info("Provider does not support tools", registry=adapter.registry_id)
            return None
        return self.tool_executor.definitions()

    def _max_tokens(self, configuration: ProviderConfiguration, model_id: str) -> int:
        limit = self.config.agent.max_tokens
        model = find_model(configuration.registry_id, model_id)
        if model is not None and model.max_output:
            return min(limit, model.max_output)
        return limit

    async def _system_prompt(
        self,
        session: Session,
        open_file_path: str | None,
        open_file_content: str | None,
    ) -> str:
        file_tree = None
        if self.tool_executor is not None:
            listing = await self.tool_executor.list(".", recursive=True)
            if listing.success:
                file_tree = listing.content

        builder = SystemPromptBuilder(
            mode=session.mode,
            project_name=self.project.name if self.project else None,
            project_path=self.project.path if self.project else None,
            open_file_path=open_file_path,
            open_file_content=open_file_content,
            modified_files=list(self.modified_files),
            file_tree=file_tree,
            custom_instructions=self.config.agent.custom_instructions,
            loader=self.instructions,
        )
        return builder.build()

    async def _stream_round(
        self,
        adapter: LLMProvider,
        messages: list[ChatMessage],
        model_id: str,
        tools: list[ToolDefinition] | None,
        completion: CompletionConfig,
    ) -> _RoundResult:
        result = _RoundResult()
        text_parts: list[str] = []

        async with aclosing(adapter.stream_completion(messages, model_id, tools, completion)) as events:
            async for event in events:
                match event:
                    case TextDelta(text=chunk):
                        text_parts.append(chunk)
                        self._update(streaming_text="".join(text_parts))
                    case ToolCallComplete(tool_call=call):
                        result.tool_calls.append(call)
                    case Usage(input_tokens=input_tokens, output_tokens=output_tokens):
                        result.input_tokens += input_tokens
                        result.output_tokens += output_tokens
                        self._update(
                            input_tokens=self.state.input_tokens + input_tokens,
                            output_tokens=self.state.output_tokens + output_tokens,
                        )
                    case StreamError():
                        result.error = event
                        break
                    case Done():
                        break
                    case _:
                        assert_never(event)

        result.text = "".join(text_parts)
        return result

    async def _run_tools(self, session_id: str, result: _RoundResult) -> list[Message]:
        tool_messages: list[Message] = []
        for call in result.tool_calls:
            if self.config.agent.show_progress_markers:
                marker = f"Running {call.name}..."
                self._update(streaming_text=f"{result.text}\n{marker}" if result.text else marker)

            tool_result = await self.tool_executor.execute(call, abort_event=self._abort_event)
            log.info("Tool call finished", tool=call.name, call_id=call.id, success=tool_result.success)

            changed = tool_result.metadata.get("path")
            if tool_result.success and changed and call.name in ("write_file", "edit_file", "delete_file"):
                self._track_modified(str(changed))

            tool_messages.append(
                Message(
                    session_id=session_id,
                    role=ROLE_TOOL,
                    content=tool_result.output,
                    tool_call_id=call.id,
                )
            )
        return tool_messages

    def _track_modified(self, path: str) -> None:
        if self.tool_executor is not None:
            path = display_path(self.tool_executor.project_root, Path(path))
        if path in self.modified_files:
            self.modified_files.remove(path)
        self.modified_files.insert(0, path)

    async def _handle_stream_error(
        self,
        session: Session,
        configuration: ProviderConfiguration,
        configurations: list[ProviderConfiguration],
        error: StreamError,
    ) -> _Outcome:
        rule = next((r for r in self.failover_rules if r.matches(configuration, error.message)), None)
        if rule is None:
            log.warning("Model stream failed", session_id=session.id, code=error.code)
            return _Outcome(TurnStatus.FAILED, error=error.message)

        log.warning(
            "Provider hard-rejected the request",
            session_id=session.id,
            registry=configuration.registry_id,
            marker=rule.error_marker,
        )
        alternate = await self.resolver.resolve_failover(configuration, configurations, rule)
        if alternate is None:
            suggestions = ", ".join(rule.preferred_registries) or "another provider"
            return _Outcome(
                TurnStatus.FAILED,
                error=error.message,
                notice=(
                    f"{rule.label} rejected this client and no alternate provider is connected. "
                    f"Connect {suggestions} to continue."
                ),
            )

        await self.session_store.update_provider_selection(
            session.id, alternate.configuration.id, alternate.model_id
        )
        await self._release_adapter()
        self._adapter = alternate.adapter
        self._update(provider_config_id=alternate.configuration.id, model_id=alternate.model_id)
        log.info(
            "Failed over to alternate provider",
            session_id=session.id,
            from_config=configuration.id,
            to_config=alternate.configuration.id,
        )
        return _Outcome(
            TurnStatus.DONE,
            notice=(
                f"{rule.label} rejected the request. Switched to "
                f"{alternate.configuration.display_name}; please resend your message."
            ),
        )

    async def _persist_usage(self, session_id: str) -> None:
        if self.state.input_tokens or self.state.output_tokens:
            await self.session_store.update_token_totals(
                session_id, self.state.input_tokens, self.state.output_tokens
            )

    async def _release_adapter(self) -> None:
        adapter, self._adapter = self._adapter, None
        if adapter is not None:
            await adapter.close()
