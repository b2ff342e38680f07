import asyncio
from pathlib import Path
from typing import Any

import httpx
import pytest
import pytest_asyncio

from aido.confirmation import AutoApproveGate, ConfirmationGate, DenyAllGate
from aido.conversation import ConversationStore
from aido.engine import Engine, EngineState, Outcome
from aido.exceptions import ConversationNotFoundError, LLMAPIError
from aido.llm import LLMProvider, LLMResponse, Message, OpenAICompatibleProvider, ToolCall, ToolDefinition
from aido.recipe import Recipe, parse_recipe
from aido.tools.registry import Tool, ToolRegistry, ToolResult, ToolStatus


class ScriptedProvider(LLMProvider):
    """Replays canned responses and records what it was sent."""

    def __init__(self, responses: list[LLMResponse | Exception]):
        self.responses = list(responses)
        self.calls: list[dict[str, Any]] = []

    async def complete(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None = None,
    ) -> LLMResponse:
        self.calls.append({"messages": list(messages), "tools": tools})
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


class LoopingProvider(LLMProvider):
    """Always asks for the same tool call."""

    def __init__(self):
        self.calls = 0

    async def complete(self, messages, tools=None) -> LLMResponse:
        self.calls += 1
        return LLMResponse(
            content="",
            tool_calls=[ToolCall(id=f"call_{self.calls}", name="ls", arguments={"pattern": "*"})],
        )


class SpyTool(Tool):
    def __init__(self, name: str, output: str = "", requires_confirmation: bool = False):
        self.name = name
        self.description = f"{name} spy"
        self.parameters = {
            "type": "object",
            "properties": {"pattern": {"type": "string"}, "command": {"type": "array"}},
            "required": [],
        }
        self.requires_confirmation = requires_confirmation
        self.output = output
        self.calls: list[dict[str, Any]] = []

    async def execute(self, **kwargs: Any) -> ToolResult:
        self.calls.append(kwargs)
        return ToolResult(stdout=self.output)


class RecordingGate(ConfirmationGate):
    def __init__(self, answers: list[bool]):
        self.answers = list(answers)
        self.asked: list[tuple[str, Any]] = []

    async def confirm(self, tool_name: str, arguments) -> bool:
        self.asked.append((tool_name, arguments))
        return self.answers.pop(0)


def _answer(text: str) -> LLMResponse:
    return LLMResponse(content=text, usage={"prompt_tokens": 1, "completion_tokens": 1, "total_tokens": 2})


def _tool_call(name: str, call_id: str = "call_1", **arguments: Any) -> LLMResponse:
    return LLMResponse(content="", tool_calls=[ToolCall(id=call_id, name=name, arguments=arguments)])


@pytest.fixture
def tools() -> dict[str, SpyTool]:
    return {
        "ls": SpyTool("ls", output="my_file.tar.gz"),
        "cat": SpyTool("cat", output="contents"),
        "run": SpyTool("run", output="ran", requires_confirmation=True),
    }


@pytest.fixture
def registry(tools: dict[str, SpyTool]) -> ToolRegistry:
    registry = ToolRegistry()
    for tool in tools.values():
        registry.register(tool)
    return registry


@pytest_asyncio.fixture
async def store(tmp_path: Path):
    conversation_store = ConversationStore(tmp_path / "conversations.db")
    yield conversation_store
    await conversation_store.close()


def _engine(provider, registry, store, gate: ConfirmationGate | None = None, **kwargs) -> Engine:
    return Engine(provider, registry, store, gate or DenyAllGate(), **kwargs)


COMMIT_RECIPE = parse_recipe("---\nname: commit\nallowed_tools: [ls]\n---\nYou suggest shell commands.\n")


@pytest.mark.asyncio
async def test_tool_call_then_answer(registry, store, tools):
    provider = ScriptedProvider([_tool_call("ls", pattern="*.tar.gz"), _answer("tar -xzf my_file.tar.gz")])
    engine = _engine(provider, registry, store)

    result = await engine.run_recipe(COMMIT_RECIPE, "please untar the file")

    assert result.outcome is Outcome.ANSWER
    assert result.answer == "tar -xzf my_file.tar.gz"
    assert result.turns == 2
    assert engine.state is EngineState.FINAL_ANSWER

    messages = result.conversation.messages
    assert [m.role for m in messages[:2]] == ["system", "user"]
    exchange = messages[2:]
    assert len(exchange) == 3
    assert exchange[0].role == "assistant" and exchange[0].tool_calls[0].name == "ls"
    assert exchange[1].role == "tool" and exchange[1].content == "my_file.tar.gz"
    assert exchange[1].tool_call_id == exchange[0].tool_calls[0].id
    assert exchange[2].content == "tar -xzf my_file.tar.gz"
    assert tools["ls"].calls == [{"pattern": "*.tar.gz"}]

    # The second round-trip sees the tool result and only the allowed tool.
    assert [d.name for d in provider.calls[1]["tools"]] == ["ls"]
    assert provider.calls[1]["messages"][-1].role == "tool"

    persisted = await store.load_conversation(result.conversation.id)
    assert persisted.messages == messages


@pytest.mark.asyncio
async def test_disallowed_tool_is_never_executed(registry, store, tools):
    provider = ScriptedProvider([_tool_call("cat", path="secret"), _answer("ok")])
    engine = _engine(provider, registry, store)

    result = await engine.run_recipe(COMMIT_RECIPE, "read it")

    assert result.outcome is Outcome.ANSWER
    assert tools["cat"].calls == []
    denials = [m for m in result.conversation.messages if m.role == "tool"]
    assert len(denials) == 1
    assert denials[0].error == "PermissionDenied"
    assert denials[0].content.startswith("Error: Tool 'cat' denied")


@pytest.mark.asyncio
async def test_unknown_tool_is_a_recoverable_permission_denial(registry, store):
    provider = ScriptedProvider([_tool_call("teleport"), _answer("fine")])
    engine = _engine(provider, registry, store)

    result = await engine.run_recipe(COMMIT_RECIPE, "go")

    assert result.ok
    assert result.conversation.messages[-2].error == "PermissionDenied"


@pytest.mark.asyncio
async def test_one_off_prompt_advertises_no_tools(registry, store, tools):
    provider = ScriptedProvider([_tool_call("ls"), _answer("done")])
    engine = _engine(provider, registry, store)

    result = await engine.run_prompt("hello")

    assert provider.calls[0]["tools"] is None
    first = result.conversation.messages[0]
    assert (first.role, first.content) == ("user", "hello")
    assert tools["ls"].calls == []
    assert result.conversation.messages[2].error == "PermissionDenied"


@pytest.mark.asyncio
async def test_confirmation_required_tool_waits_for_approval(registry, store, tools):
    recipe = Recipe(name="ops", system_prompt="", allowed_tools=["run"])
    provider = ScriptedProvider([_tool_call("run", command=["git", "status"]), _answer("clean")])
    gate = RecordingGate([True])
    engine = _engine(provider, registry, store, gate)

    result = await engine.run_recipe(recipe, "status?")

    assert result.ok
    assert gate.asked == [("run", {"command": ["git", "status"]})]
    assert tools["run"].calls == [{"command": ["git", "status"]}]


@pytest.mark.asyncio
async def test_denied_confirmation_continues_loop(registry, store, tools):
    recipe = Recipe(name="ops", system_prompt="", allowed_tools=["run", "ls"])
    provider = ScriptedProvider(
        [_tool_call("run", command=["rm", "-rf", "build"]), _tool_call("ls", call_id="call_2"), _answer("left it alone")]
    )
    gate = RecordingGate([False])
    engine = _engine(provider, registry, store, gate)

    result = await engine.run_recipe(recipe, "clean up")

    assert result.outcome is Outcome.ANSWER
    assert tools["run"].calls == []
    denied = [m for m in result.conversation.messages if m.error == "ConfirmationDenied"]
    assert len(denied) == 1
    assert tools["ls"].calls == [{}]


@pytest.mark.asyncio
async def test_repeated_denials_abort_the_run(registry, store, tools):
    recipe = Recipe(name="ops", system_prompt="", allowed_tools=["run"])
    provider = ScriptedProvider([_tool_call("run", call_id=f"call_{i}", command=["x"]) for i in range(5)])
    engine = _engine(provider, registry, store, DenyAllGate(), max_confirmation_denials=1)

    result = await engine.run_recipe(recipe, "do it")

    assert result.outcome is Outcome.ABORTED
    assert result.reason == "ConfirmationDenied"
    assert len(provider.calls) == 2
    assert tools["run"].calls == []
    assert result.conversation.pending_tool_calls() == []


@pytest.mark.asyncio
async def test_multiple_calls_in_one_response_are_confirmed_separately(registry, store, tools):
    recipe = Recipe(name="ops", system_prompt="", allowed_tools=["run"])
    response = LLMResponse(
        content="",
        tool_calls=[
            ToolCall(id="call_a", name="run", arguments={"command": ["one"]}),
            ToolCall(id="call_b", name="run", arguments={"command": ["two"]}),
        ],
    )
    provider = ScriptedProvider([response, _answer("did one")])
    gate = RecordingGate([True, False])
    engine = _engine(provider, registry, store, gate)

    result = await engine.run_recipe(recipe, "both")

    assert [asked[1]["command"] for asked in gate.asked] == [["one"], ["two"]]
    assert tools["run"].calls == [{"command": ["one"]}]
    tool_messages = [m for m in result.conversation.messages if m.role == "tool"]
    assert [m.tool_call_id for m in tool_messages] == ["call_a", "call_b"]
    assert [m.error for m in tool_messages] == [None, "ConfirmationDenied"]


@pytest.mark.asyncio
async def test_turn_limit_aborts_exactly_at_bound(registry, store, tools):
    provider = LoopingProvider()
    engine = _engine(provider, registry, store, max_turns=3)

    result = await engine.run_recipe(COMMIT_RECIPE, "loop forever")

    assert result.outcome is Outcome.ABORTED
    assert result.reason == "TurnLimitExceeded"
    assert provider.calls == 3
    assert len(tools["ls"].calls) == 3
    assert result.turns == 3
    assert engine.state is EngineState.ABORTED
    assert result.conversation.pending_tool_calls() == []


@pytest.mark.asyncio
async def test_malformed_arguments_are_reported_back_to_model(registry, store, tools):
    bad = LLMResponse(content="", tool_calls=[ToolCall(id="call_x", name="ls", arguments="{pattern:")])
    unknown_arg = _tool_call("ls", call_id="call_y", colour="red")
    provider = ScriptedProvider([bad, unknown_arg, _answer("gave up")])
    engine = _engine(provider, registry, store)

    result = await engine.run_recipe(COMMIT_RECIPE, "list")

    assert result.ok
    errors = [m.error for m in result.conversation.messages if m.role == "tool"]
    assert errors == ["ToolArgumentError", "ToolArgumentError"]
    assert tools["ls"].calls == []


@pytest.mark.asyncio
async def test_text_alongside_tool_calls_is_not_an_answer(registry, store, tools):
    mixed = LLMResponse(
        content="I think the answer is 42",
        tool_calls=[ToolCall(id="call_1", name="ls", arguments={})],
    )
    provider = ScriptedProvider([mixed, _answer("there it is")])
    engine = _engine(provider, registry, store)

    result = await engine.run_recipe(COMMIT_RECIPE, "find it")

    assert result.answer == "there it is"
    assistant_with_calls = result.conversation.messages[2]
    assert assistant_with_calls.content == ""
    assert len(tools["ls"].calls) == 1


@pytest.mark.asyncio
async def test_duplicate_call_ids_from_model_are_replaced(registry, store):
    provider = ScriptedProvider([_tool_call("ls", call_id="0"), _tool_call("ls", call_id="0"), _answer("ok")])
    engine = _engine(provider, registry, store)

    result = await engine.run_recipe(COMMIT_RECIPE, "twice")

    ids = [call.id for call in result.conversation.issued_tool_calls()]
    assert len(ids) == 2 and len(set(ids)) == 2


@pytest.mark.asyncio
async def test_transport_failure_fails_the_run(registry, store):
    provider = ScriptedProvider([LLMAPIError("Chat completion API error 500", status_code=500)])
    engine = _engine(provider, registry, store)

    result = await engine.run_recipe(COMMIT_RECIPE, "hi")

    assert result.outcome is Outcome.FAILED
    assert result.reason == "TransportError"
    assert engine.state is EngineState.FAILED
    persisted = await store.load_conversation(result.conversation.id)
    assert persisted.messages[-1].role == "user"


@pytest.mark.asyncio
async def test_malformed_service_payload_fails_the_run(registry, store):
    client = httpx.AsyncClient(
        transport=httpx.MockTransport(lambda request: httpx.Response(200, json={"choices": [None]}))
    )
    provider = OpenAICompatibleProvider(model="test-model", api_key="secret", retries=0, client=client)
    engine = _engine(provider, registry, store)

    result = await engine.run_recipe(COMMIT_RECIPE, "hi")
    await client.aclose()

    assert result.outcome is Outcome.FAILED
    assert result.reason == "TransportError"
    assert "Invalid response" in result.detail


@pytest.mark.asyncio
async def test_failed_to_start_tool_is_reported_as_execution_error(registry, store, tools):
    class BrokenLs(SpyTool):
        async def execute(self, **kwargs: Any) -> ToolResult:
            return ToolResult(status=ToolStatus.FAILED_TO_START, error="No such file or directory: 'ls'")

    broken = ToolRegistry()
    broken.register(BrokenLs("ls"))
    provider = ScriptedProvider([_tool_call("ls"), _answer("ls is missing")])
    engine = _engine(provider, broken, store)

    result = await engine.run_recipe(COMMIT_RECIPE, "list")

    tool_message = result.conversation.messages[-2]
    assert tool_message.error == "ToolExecutionError"
    assert tool_message.content.startswith("Error: failed to start")


@pytest.mark.asyncio
async def test_continuation_appends_without_reseeding(registry, store, tools):
    first = _engine(ScriptedProvider([_answer("first answer")]), registry, store)
    initial = await first.run_recipe(COMMIT_RECIPE, "question one")
    seeded = len(initial.conversation.messages)

    provider = ScriptedProvider([_tool_call("ls", call_id="call_c"), _answer("second answer")])
    second = _engine(provider, registry, store)
    result = await second.continue_latest("question two")

    assert result.answer == "second answer"
    assert result.conversation.id == initial.conversation.id
    messages = result.conversation.messages
    assert sum(1 for m in messages if m.role == "system") == 1
    assert messages[seeded].content == "question two"
    assert messages[-1].content == "second answer"
    assert [d.name for d in provider.calls[0]["tools"]] == ["ls"]
    assert provider.calls[0]["messages"][seeded - 1].content == "first answer"


@pytest.mark.asyncio
async def test_continuation_policy_none_advertises_no_tools(registry, store):
    await _engine(ScriptedProvider([_answer("a")]), registry, store).run_recipe(COMMIT_RECIPE, "q")

    provider = ScriptedProvider([_answer("b")])
    await _engine(provider, registry, store, continuation_tools="none").continue_latest("q2")

    assert provider.calls[0]["tools"] is None


@pytest.mark.asyncio
async def test_continuation_policy_all_uses_every_enabled_tool(registry, store):
    await _engine(ScriptedProvider([_answer("a")]), registry, store).run_prompt("q")

    provider = ScriptedProvider([_answer("b")])
    result = await _engine(provider, registry, store, continuation_tools="all").continue_latest("q2")

    assert [d.name for d in provider.calls[0]["tools"]] == ["ls", "cat", "run"]
    assert result.conversation.allowed_tools == ["ls", "cat", "run"]


@pytest.mark.asyncio
async def test_continuation_without_history_raises(registry, store):
    engine = _engine(ScriptedProvider([]), registry, store)

    with pytest.raises(ConversationNotFoundError):
        await engine.continue_latest("anything there?")


@pytest.mark.asyncio
async def test_cancellation_aborts_and_keeps_appended_messages(registry, store):
    class HangingProvider(LLMProvider):
        async def complete(self, messages, tools=None) -> LLMResponse:
            raise asyncio.CancelledError()

    engine = _engine(HangingProvider(), registry, store)

    result = await engine.run_recipe(COMMIT_RECIPE, "wait")

    assert result.outcome is Outcome.ABORTED
    assert result.reason == "Cancelled"
    persisted = await store.load_conversation(result.conversation.id)
    assert persisted.messages[-1].content == "wait"


@pytest.mark.asyncio
async def test_continuation_closes_dangling_tool_calls(registry, store):
    conversation = await store.create_conversation({"recipe": "commit", "allowed_tools": ["ls"]})
    dangling = ToolCall(id="call_lost", name="ls", arguments={})
    await store.append(conversation, Message.user("start"))
    await store.append(conversation, Message.assistant("", [dangling]))

    provider = ScriptedProvider([_answer("resumed")])
    result = await _engine(provider, registry, store).continue_latest("again")

    messages = result.conversation.messages
    assert messages[2].role == "tool"
    assert messages[2].tool_call_id == "call_lost"
    assert messages[2].error == "ToolExecutionError"
    assert messages[3].content == "again"
    assert result.answer == "resumed"


@pytest.mark.asyncio
async def test_usage_and_callbacks_are_reported(registry, store):
    statuses: list[str] = []
    outputs: list[tuple[str, str]] = []
    provider = ScriptedProvider([_tool_call("ls"), _answer("done")])
    engine = _engine(
        provider,
        registry,
        store,
        AutoApproveGate(),
        status_callback=statuses.append,
        tool_output_callback=lambda name, content: outputs.append((name, content)),
    )

    result = await engine.run_recipe(COMMIT_RECIPE, "go")

    assert result.usage == {"prompt_tokens": 1, "completion_tokens": 1, "total_tokens": 2}
    assert statuses == ["thinking", "running ls", "thinking", "done"]
    assert outputs == [("ls", "my_file.tar.gz")]
