import asyncio
from pathlib import Path

import aiosqlite
import pytest
import pytest_asyncio

from pocketcoder.config import AgentConfig, Config
from pocketcoder.credentials import ProviderConfigStore
from pocketcoder.exceptions import PersistenceError, TurnInProgressError
from pocketcoder.llm.base import (
    Done,
    LLMProvider,
    StreamError,
    TextDelta,
    ToolCallComplete,
    Usage,
)
from pocketcoder.models import (
    MODE_PLAN,
    ROLE_ASSISTANT,
    ROLE_TOOL,
    ROLE_USER,
    Project,
    ProviderConfiguration,
    ToolCall,
)
from pocketcoder.orchestrator import Orchestrator, TurnStatus
from pocketcoder.prompts import InstructionLoader
from pocketcoder.resolver import FailoverRule, ProviderResolver
from pocketcoder.session import SessionStore

KIMI_REJECTION = 'HTTP 403: {"error":{"type":"access_terminated_error","message":"client not allowed"}}'


class ScriptedProvider(LLMProvider):
    """Replays one scripted event list per round and records every request."""

    def __init__(self, rounds=None, repeat=None, hang_after=None):
        self.rounds = list(rounds or [])
        self.repeat = repeat
        self.hang_after = hang_after
        self.requests: list[dict] = []
        self.cancel_calls = 0
        self.closed = False
        self.started = asyncio.Event()

    async def stream_completion(self, messages, model_id, tools=None, config=None):
        self.requests.append(
            {"messages": list(messages), "model_id": model_id, "tools": tools, "config": config}
        )
        events = self.rounds.pop(0) if self.rounds else list(self.repeat or [Done()])
        for event in events:
            yield event
        if self.hang_after is not None:
            self.started.set()
            await asyncio.Event().wait()

    async def validate_credentials(self) -> bool:
        return True

    def cancel(self) -> None:
        self.cancel_calls += 1

    async def close(self) -> None:
        self.closed = True


class FakeFactory:
    def __init__(self, adapters: dict[str, LLMProvider]):
        self.adapters = adapters

    async def create_with_refresh(self, configuration):
        return self.adapters.get(configuration.id)


class FailingAssistantStore(SessionStore):
    async def append(self, message):
        if message.role == ROLE_ASSISTANT:
            raise PersistenceError("disk full")
        return await super().append(message)


class LockedHistoryStore(SessionStore):
    async def read_all(self, session_id):
        raise aiosqlite.OperationalError("database is locked")


class BrokenStreamProvider(ScriptedProvider):
    async def stream_completion(self, messages, model_id, tools=None, config=None):
        self.requests.append({"messages": list(messages), "model_id": model_id})
        raise RuntimeError("malformed frame")
        yield


KIMI_RULE = FailoverRule(
    registry_id="kimi-coding",
    error_marker="access_terminated_error",
    preferred_registries=("moonshot",),
    label="Kimi For Coding",
)


@pytest.fixture
def project(tmp_path: Path) -> Project:
    root = tmp_path / "project"
    root.mkdir()
    return Project(name="demo", path=str(root))


@pytest_asyncio.fixture
async def sessions(tmp_path: Path):
    store = SessionStore(db_path=tmp_path / "sessions.db")
    yield store
    await store.close()


@pytest_asyncio.fixture
async def providers(tmp_path: Path):
    store = ProviderConfigStore(db_path=tmp_path / "providers.db")
    yield store
    await store.close()


async def _add_configuration(providers, registry_id, display_name, model_id, created_at):
    return await providers.save(
        ProviderConfiguration(
            registry_id=registry_id,
            display_name=display_name,
            default_model_id=model_id,
            created_at=created_at,
        )
    )


def _orchestrator(tmp_path, sessions, providers, adapters, project=None, max_rounds=25, max_tokens=8192):
    config = Config(agent=AgentConfig(max_tool_rounds=max_rounds, max_tokens=max_tokens))
    return Orchestrator(
        session_store=sessions,
        resolver=ProviderResolver(FakeFactory(adapters)),
        config_store=providers,
        project=project,
        failover_rules=[KIMI_RULE],
        config=config,
        instructions=InstructionLoader(personal_dir=tmp_path / "no-overrides"),
    )


@pytest.mark.asyncio
async def test_text_only_turn_persists_reply_and_usage(tmp_path, project, sessions, providers):
    configuration = await _add_configuration(providers, "moonshot", "Moonshot", "kimi-k2", 1.0)
    adapter = ScriptedProvider(rounds=[[TextDelta("Hello"), TextDelta(" world"), Usage(10, 5), Done()]])
    orchestrator = _orchestrator(
        tmp_path, sessions, providers, {configuration.id: adapter}, project=project, max_tokens=100_000
    )
    session = await sessions.create_session(project_id=project.id)

    state = await orchestrator.submit(session.id, "hi")

    assert state.status == TurnStatus.DONE
    assert state.streaming_text == ""
    assert (state.input_tokens, state.output_tokens) == (10, 5)
    messages = await sessions.read_all(session.id)
    assert [(m.role, m.content) for m in messages] == [(ROLE_USER, "hi"), (ROLE_ASSISTANT, "Hello world")]
    assert (messages[1].input_tokens, messages[1].output_tokens) == (10, 5)

    stored = await sessions.get_session(session.id)
    assert (stored.total_input_tokens, stored.total_output_tokens) == (10, 5)
    assert stored.provider_id == configuration.id
    assert stored.model_id == "kimi-k2"

    request = adapter.requests[0]
    assert request["model_id"] == "kimi-k2"
    assert request["config"].max_tokens == 65_536
    assert "## Project Context" in request["config"].system_prompt
    assert [tool.name for tool in request["tools"]][0] == "read_file"
    assert adapter.closed is True
    assert orchestrator.is_busy is False


@pytest.mark.asyncio
async def test_tool_round_trip_sums_usage_and_persists_in_order(tmp_path, project, sessions, providers):
    configuration = await _add_configuration(providers, "moonshot", "Moonshot", "kimi-k2", 1.0)
    write_call = ToolCall(id="call_1", name="write_file", arguments='{"path": "a.txt", "content": "hi"}')
    adapter = ScriptedProvider(
        rounds=[
            [TextDelta("Writing."), ToolCallComplete(write_call), Usage(10, 5), Done()],
            [TextDelta("All done."), Usage(3, 2), Done()],
        ]
    )
    orchestrator = _orchestrator(tmp_path, sessions, providers, {configuration.id: adapter}, project=project)
    texts: list[str] = []
    orchestrator.add_listener(lambda snapshot: texts.append(snapshot.streaming_text))
    session = await sessions.create_session(project_id=project.id)

    state = await orchestrator.submit(session.id, "make a file")

    assert state.status == TurnStatus.DONE
    assert state.round == 2
    assert (Path(project.path) / "a.txt").read_text(encoding="utf-8") == "hi"
    assert "Writing.\nRunning write_file..." in texts
    assert orchestrator.modified_files == ["a.txt"]

    messages = await sessions.read_all(session.id)
    assert [m.role for m in messages] == [ROLE_USER, ROLE_ASSISTANT, ROLE_TOOL, ROLE_ASSISTANT]
    assert messages[1].tool_calls == [write_call]
    assert messages[2].tool_call_id == "call_1"
    assert messages[2].content == "Created file: a.txt (1 lines written)"
    assert messages[3].content == "All done."

    stored = await sessions.get_session(session.id)
    assert (stored.total_input_tokens, stored.total_output_tokens) == (13, 7)

    second_round = adapter.requests[1]["messages"]
    assert [m.role for m in second_round] == [ROLE_USER, ROLE_ASSISTANT, ROLE_TOOL]
    assert second_round[2].tool_call_id == "call_1"


@pytest.mark.asyncio
async def test_failed_tool_is_reported_to_model_and_loop_continues(tmp_path, project, sessions, providers):
    configuration = await _add_configuration(providers, "moonshot", "Moonshot", "kimi-k2", 1.0)
    read_call = ToolCall(id="call_r", name="read_file", arguments='{"path": "missing.txt"}')
    bad_json = ToolCall(id="call_j", name="read_file", arguments="{oops")
    adapter = ScriptedProvider(
        rounds=[
            [ToolCallComplete(read_call), ToolCallComplete(bad_json), Done()],
            [TextDelta("It does not exist."), Done()],
        ]
    )
    orchestrator = _orchestrator(tmp_path, sessions, providers, {configuration.id: adapter}, project=project)
    session = await sessions.create_session(project_id=project.id)

    state = await orchestrator.submit(session.id, "read missing.txt")

    assert state.status == TurnStatus.DONE
    messages = await sessions.read_all(session.id)
    tool_messages = [m for m in messages if m.role == ROLE_TOOL]
    assert [m.tool_call_id for m in tool_messages] == ["call_r", "call_j"]
    assert tool_messages[0].content == "Error: File not found: missing.txt"
    assert tool_messages[1].content.startswith("Error: Invalid tool arguments JSON")
    assert messages[-1].content == "It does not exist."


@pytest.mark.asyncio
async def test_round_budget_stops_after_exactly_n_rounds(tmp_path, project, sessions, providers):
    configuration = await _add_configuration(providers, "moonshot", "Moonshot", "kimi-k2", 1.0)
    listing = ToolCall(id="call_ls", name="list_directory", arguments="{}")
    adapter = ScriptedProvider(repeat=[ToolCallComplete(listing), Usage(1, 1), Done()])
    orchestrator = _orchestrator(
        tmp_path, sessions, providers, {configuration.id: adapter}, project=project, max_rounds=3
    )
    session = await sessions.create_session(project_id=project.id)

    state = await orchestrator.submit(session.id, "loop forever")

    assert state.status == TurnStatus.DONE
    assert len(adapter.requests) == 3
    assert state.round == 3
    messages = await sessions.read_all(session.id)
    assert len(messages) == 1 + 3 * 2
    stored = await sessions.get_session(session.id)
    assert (stored.total_input_tokens, stored.total_output_tokens) == (3, 3)


@pytest.mark.asyncio
async def test_cancel_mid_stream_persists_nothing_for_the_round(tmp_path, project, sessions, providers):
    configuration = await _add_configuration(providers, "moonshot", "Moonshot", "kimi-k2", 1.0)
    adapter = ScriptedProvider(rounds=[[TextDelta("partial"), Usage(4, 1)]], hang_after=True)
    orchestrator = _orchestrator(tmp_path, sessions, providers, {configuration.id: adapter}, project=project)
    session = await sessions.create_session(project_id=project.id)

    task = orchestrator.submit(session.id, "long answer please")
    await asyncio.wait_for(adapter.started.wait(), timeout=5)
    assert orchestrator.state.streaming_text == "partial"

    assert orchestrator.cancel() is True
    with pytest.raises(asyncio.CancelledError):
        await task

    assert orchestrator.state.status == TurnStatus.CANCELLED
    assert orchestrator.state.streaming_text == ""
    assert orchestrator.is_busy is False
    assert orchestrator.cancel() is False
    assert adapter.cancel_calls >= 1
    assert adapter.closed is True

    messages = await sessions.read_all(session.id)
    assert [m.role for m in messages] == [ROLE_USER]
    stored = await sessions.get_session(session.id)
    assert (stored.total_input_tokens, stored.total_output_tokens) == (0, 0)


@pytest.mark.asyncio
async def test_second_submit_while_busy_is_rejected(tmp_path, project, sessions, providers):
    configuration = await _add_configuration(providers, "moonshot", "Moonshot", "kimi-k2", 1.0)
    adapter = ScriptedProvider(rounds=[[TextDelta("...")]], hang_after=True)
    orchestrator = _orchestrator(tmp_path, sessions, providers, {configuration.id: adapter}, project=project)
    session = await sessions.create_session(project_id=project.id)

    task = orchestrator.submit(session.id, "first")
    await asyncio.wait_for(adapter.started.wait(), timeout=5)

    with pytest.raises(TurnInProgressError):
        orchestrator.submit(session.id, "second")

    orchestrator.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    messages = await sessions.read_all(session.id)
    assert [m.content for m in messages] == ["first"]


@pytest.mark.asyncio
async def test_failover_switches_provider_and_asks_to_resend(tmp_path, project, sessions, providers):
    kimi = await _add_configuration(providers, "kimi-coding", "Kimi For Coding", "kimi-for-coding", 2.0)
    moonshot = await _add_configuration(providers, "moonshot", "Moonshot", "kimi-k2", 1.0)
    kimi_adapter = ScriptedProvider(rounds=[[StreamError(KIMI_REJECTION, 403)]])
    moonshot_adapter = ScriptedProvider()
    orchestrator = _orchestrator(
        tmp_path,
        sessions,
        providers,
        {kimi.id: kimi_adapter, moonshot.id: moonshot_adapter},
        project=project,
    )
    session = await sessions.create_session(project_id=project.id, provider_id=kimi.id, model_id="kimi-for-coding")

    state = await orchestrator.submit(session.id, "hello")

    assert state.status == TurnStatus.DONE
    assert state.error is None
    assert state.notice == (
        "Kimi For Coding rejected the request. Switched to Moonshot; please resend your message."
    )
    assert state.provider_config_id == moonshot.id
    assert kimi_adapter.closed is True
    assert moonshot_adapter.requests == []

    stored = await sessions.get_session(session.id)
    assert stored.provider_id == moonshot.id
    assert stored.model_id == "kimi-k2"


@pytest.mark.asyncio
async def test_failover_without_alternate_fails_with_original_error(tmp_path, project, sessions, providers):
    kimi = await _add_configuration(providers, "kimi-coding", "Kimi For Coding", "kimi-for-coding", 1.0)
    adapter = ScriptedProvider(rounds=[[StreamError(KIMI_REJECTION, 403)]])
    orchestrator = _orchestrator(tmp_path, sessions, providers, {kimi.id: adapter}, project=project)
    session = await sessions.create_session(project_id=project.id, provider_id=kimi.id)

    state = await orchestrator.submit(session.id, "hello")

    assert state.status == TurnStatus.FAILED
    assert state.error == KIMI_REJECTION
    assert state.notice == (
        "Kimi For Coding rejected this client and no alternate provider is connected. "
        "Connect moonshot to continue."
    )
    stored = await sessions.get_session(session.id)
    assert stored.provider_id == kimi.id


@pytest.mark.asyncio
async def test_stream_error_fails_turn_and_keeps_partial_text(tmp_path, project, sessions, providers):
    configuration = await _add_configuration(providers, "moonshot", "Moonshot", "kimi-k2", 1.0)
    adapter = ScriptedProvider(rounds=[[TextDelta("half an ans"), Usage(8, 2), StreamError("HTTP 500: boom", 500)]])
    orchestrator = _orchestrator(tmp_path, sessions, providers, {configuration.id: adapter}, project=project)
    session = await sessions.create_session(project_id=project.id)

    state = await orchestrator.submit(session.id, "hello")

    assert state.status == TurnStatus.FAILED
    assert state.error == "HTTP 500: boom"
    assert state.streaming_text == "half an ans"
    messages = await sessions.read_all(session.id)
    assert [m.role for m in messages] == [ROLE_USER]
    stored = await sessions.get_session(session.id)
    assert (stored.total_input_tokens, stored.total_output_tokens) == (8, 2)


@pytest.mark.asyncio
async def test_turn_fails_when_no_provider_is_connected(tmp_path, project, sessions, providers):
    orchestrator = _orchestrator(tmp_path, sessions, providers, {}, project=project)
    session = await sessions.create_session(project_id=project.id)

    state = await orchestrator.submit(session.id, "hello")

    assert state.status == TurnStatus.FAILED
    assert state.error.startswith("No provider could be connected")


@pytest.mark.asyncio
async def test_persistence_failure_fails_turn_without_recording_usage(tmp_path, project, providers):
    sessions = FailingAssistantStore(db_path=tmp_path / "failing.db")
    configuration = await _add_configuration(providers, "moonshot", "Moonshot", "kimi-k2", 1.0)
    adapter = ScriptedProvider(rounds=[[TextDelta("reply"), Usage(10, 5), Done()]])
    orchestrator = _orchestrator(tmp_path, sessions, providers, {configuration.id: adapter}, project=project)
    session = await sessions.create_session(project_id=project.id)

    state = await orchestrator.submit(session.id, "hello")

    assert state.status == TurnStatus.FAILED
    assert state.error == "Could not save the conversation: disk full"
    stored = await sessions.get_session(session.id)
    assert (stored.total_input_tokens, stored.total_output_tokens) == (0, 0)
    await sessions.close()


@pytest.mark.asyncio
async def test_unknown_session_fails_turn(tmp_path, project, sessions, providers):
    orchestrator = _orchestrator(tmp_path, sessions, providers, {}, project=project)

    state = await orchestrator.submit("no-such-session", "hello")

    assert state.status == TurnStatus.FAILED
    assert state.error == "Session not found: no-such-session"


@pytest.mark.asyncio
async def test_plan_mode_offers_no_tools_and_ignores_tool_calls(tmp_path, project, sessions, providers):
    configuration = await _add_configuration(providers, "moonshot", "Moonshot", "kimi-k2", 1.0)
    stray = ToolCall(id="call_x", name="delete_file", arguments='{"path": "a.txt"}')
    adapter = ScriptedProvider(rounds=[[TextDelta("Here is the plan."), ToolCallComplete(stray), Done()]])
    orchestrator = _orchestrator(tmp_path, sessions, providers, {configuration.id: adapter}, project=project)
    session = await sessions.create_session(project_id=project.id, mode=MODE_PLAN)

    state = await orchestrator.submit(session.id, "plan it")

    assert state.status == TurnStatus.DONE
    assert adapter.requests[0]["tools"] is None
    messages = await sessions.read_all(session.id)
    assert [m.role for m in messages] == [ROLE_USER, ROLE_ASSISTANT]
    assert messages[1].tool_calls == []


@pytest.mark.asyncio
async def test_listener_errors_do_not_break_the_turn(tmp_path, project, sessions, providers):
    configuration = await _add_configuration(providers, "moonshot", "Moonshot", "kimi-k2", 1.0)
    adapter = ScriptedProvider(rounds=[[TextDelta("ok"), Done()]])
    orchestrator = _orchestrator(tmp_path, sessions, providers, {configuration.id: adapter}, project=project)
    statuses: list[TurnStatus] = []

    def broken_listener(snapshot):
        raise RuntimeError("listener bug")

    orchestrator.add_listener(broken_listener)
    unsubscribe = orchestrator.add_listener(lambda snapshot: statuses.append(snapshot.status))
    session = await sessions.create_session(project_id=project.id)

    state = await orchestrator.submit(session.id, "hello")
    unsubscribe()

    assert state.status == TurnStatus.DONE
    assert statuses[0] == TurnStatus.AWAITING_MODEL_RESPONSE
    assert statuses[-1] == TurnStatus.DONE


@pytest.mark.asyncio
async def test_legacy_session_model_id_is_normalized(tmp_path, project, sessions, providers):
    kimi = await _add_configuration(providers, "kimi-coding", "Kimi For Coding", "kimi-for-coding", 1.0)
    adapter = ScriptedProvider(rounds=[[TextDelta("hi"), Done()]])
    orchestrator = _orchestrator(tmp_path, sessions, providers, {kimi.id: adapter}, project=project)
    session = await sessions.create_session(
        project_id=project.id, provider_id=kimi.id, model_id="kimi-for-coding/legacy"
    )

    await orchestrator.submit(session.id, "hello")

    stored = await sessions.get_session(session.id)
    assert stored.model_id == "kimi-for-coding"
    assert adapter.requests[0]["model_id"] == "kimi-for-coding"


@pytest.mark.asyncio
async def test_cancel_right_after_submit_ends_cancelled(tmp_path, project, sessions, providers):
    configuration = await _add_configuration(providers, "moonshot", "Moonshot", "kimi-k2", 1.0)
    adapter = ScriptedProvider(rounds=[[TextDelta("never sent"), Done()]])
    orchestrator = _orchestrator(tmp_path, sessions, providers, {configuration.id: adapter}, project=project)
    session = await sessions.create_session(project_id=project.id)
    statuses: list[TurnStatus] = []
    orchestrator.add_listener(lambda state: statuses.append(state.status))

    task = orchestrator.submit(session.id, "hello")
    assert orchestrator.cancel() is True
    with pytest.raises(asyncio.CancelledError):
        await task

    assert orchestrator.state.status == TurnStatus.CANCELLED
    assert orchestrator.state.is_active is False
    assert orchestrator.is_busy is False
    assert statuses[-1] == TurnStatus.CANCELLED
    assert adapter.requests == []
    assert await sessions.read_all(session.id) == []


@pytest.mark.asyncio
async def test_history_read_failure_fails_turn(tmp_path, project, providers):
    sessions = LockedHistoryStore(db_path=tmp_path / "locked.db")
    configuration = await _add_configuration(providers, "moonshot", "Moonshot", "kimi-k2", 1.0)
    adapter = ScriptedProvider(rounds=[[TextDelta("reply"), Done()]])
    orchestrator = _orchestrator(tmp_path, sessions, providers, {configuration.id: adapter}, project=project)
    session = await sessions.create_session(project_id=project.id)

    state = await orchestrator.submit(session.id, "hello")

    assert state.status == TurnStatus.FAILED
    assert state.error == "database is locked"
    assert orchestrator.state.is_active is False
    assert orchestrator.is_busy is False
    assert adapter.requests == []
    await sessions.close()


@pytest.mark.asyncio
async def test_unexpected_adapter_error_fails_turn_and_releases_adapter(tmp_path, project, sessions, providers):
    configuration = await _add_configuration(providers, "moonshot", "Moonshot", "kimi-k2", 1.0)
    adapter = BrokenStreamProvider()
    orchestrator = _orchestrator(tmp_path, sessions, providers, {configuration.id: adapter}, project=project)
    session = await sessions.create_session(project_id=project.id)

    state = await orchestrator.submit(session.id, "hello")

    assert state.status == TurnStatus.FAILED
    assert state.error == "malformed frame"
    assert adapter.closed is True
    assert [m.role for m in await sessions.read_all(session.id)] == [ROLE_USER]


@pytest.mark.asyncio
async def test_session_model_selection_is_used_for_requests(tmp_path, project, sessions, providers):
    configuration = await _add_configuration(providers, "moonshot", "Moonshot", "kimi-k2", 1.0)
    adapter = ScriptedProvider(rounds=[[TextDelta("hi"), Done()]])
    orchestrator = _orchestrator(tmp_path, sessions, providers, {configuration.id: adapter}, project=project)
    session = await sessions.create_session(
        project_id=project.id, provider_id=configuration.id, model_id="kimi-k2-turbo"
    )

    state = await orchestrator.submit(session.id, "hello")

    assert state.model_id == "kimi-k2-turbo"
    assert adapter.requests[0]["model_id"] == "kimi-k2-turbo"
