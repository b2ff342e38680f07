"""The agent loop: model round-trips, tool dispatch and confirmation."""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterable

from aido.config import EngineConfig
from aido.confirmation import ConfirmationGate
from aido.conversation import Conversation, ConversationStore
from aido.exceptions import (
    ConfirmationDeniedError,
    ConversationError,
    ConversationNotFoundError,
    PermissionDeniedError,
    ToolArgumentError,
    ToolError,
    ToolExecutionError,
    TransportError,
    TurnLimitExceededError,
)
from aido.llm import LLMProvider, LLMResponse, Message, ToolCall, ToolDefinition, new_call_id
from aido.logging import get_logger
from aido.recipe import Recipe
from aido.tools.registry import ToolRegistry, ToolStatus

log = get_logger(__name__)

CONTINUATION_POLICIES = ("inherit", "none", "all")


class EngineState(str, Enum):
    """Where the loop currently is."""

    IDLE = "idle"
    AWAITING_MODEL = "awaiting_model"
    PENDING_TOOL_CALL = "pending_tool_call"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    EXECUTING = "executing"
    FINAL_ANSWER = "final_answer"
    ABORTED = "aborted"
    FAILED = "failed"


class Outcome(str, Enum):
    """How a run ended."""

    ANSWER = "answer"
    ABORTED = "aborted"
    FAILED = "failed"


@dataclass
class TurnResult:
    """Result of one engine run."""

    outcome: Outcome
    conversation: Conversation
    answer: str | None = None
    reason: str | None = None  # TurnLimitExceeded, ConfirmationDenied, Cancelled, TransportError, ...
    detail: str = ""
    turns: int = 0
    usage: dict[str, int] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.outcome is Outcome.ANSWER


class Engine:
    """Runs a conversation until the model answers or a bound is hit.

    Every message is persisted as soon as it is appended, so an aborted or
    failed run leaves a valid conversation behind for inspection and
    continuation.
    """

    def __init__(
        self,
        provider: LLMProvider,
        registry: ToolRegistry,
        store: ConversationStore,
        gate: ConfirmationGate,
        max_turns: int = 10,
        max_confirmation_denials: int = 3,
        continuation_tools: str = "inherit",
        streaming: bool = False,
        on_chunk: Callable[[str], None] | None = None,
        status_callback: Callable[[str], None] | None = None,
        tool_output_callback: Callable[[str, str], None] | None = None,
    ):
        self.provider = provider
        self.registry = registry
        self.store = store
        self.gate = gate
        self.max_turns = max(1, int(max_turns))
        self.max_confirmation_denials = max(0, int(max_confirmation_denials))
        if continuation_tools not in CONTINUATION_POLICIES:
            log.warning("Unknown continuation tool policy, using none", policy=continuation_tools)
            continuation_tools = "none"
        self.continuation_tools = continuation_tools
        self.streaming = streaming
        self.on_chunk = on_chunk
        self.status_callback = status_callback
        self.tool_output_callback = tool_output_callback
        self.state = EngineState.IDLE

    @classmethod
    def from_config(
        cls,
        config: EngineConfig,
        provider: LLMProvider,
        registry: ToolRegistry,
        store: ConversationStore,
        gate: ConfirmationGate,
        **kwargs: Any,
    ) -> "Engine":
        """Build an engine with bounds taken from the `engine` config section."""
        return cls(
            provider,
            registry,
            store,
            gate,
            max_turns=config.max_turns,
            max_confirmation_denials=config.max_confirmation_denials,
            continuation_tools=config.continuation_tools,
            **kwargs,
        )

    def _set_state(self, state: EngineState) -> None:
        log.debug("Engine state", state=state.value)
        self.state = state

    def _set_status(self, status: str) -> None:
        if self.status_callback:
            self.status_callback(status)

    def _emit_tool_output(self, tool_name: str, content: str) -> None:
        if self.tool_output_callback:
            self.tool_output_callback(tool_name, content)

    async def run_recipe(self, recipe: Recipe, user_input: str) -> TurnResult:
        """Start a new conversation seeded from a recipe."""
        allowed = list(recipe.allowed_tools)
        conversation = await self.store.create_conversation(
            {"recipe": recipe.name, "allowed_tools": allowed}
        )
        for message in recipe.seed_messages():
            await self.store.append(conversation, message)
        await self.store.append(conversation, Message.user(user_input))
        return await self.run(conversation, allowed)

    async def run_prompt(self, user_input: str) -> TurnResult:
        """Start a new conversation with no recipe and no tools."""
        conversation = await self.store.create_conversation({"recipe": None, "allowed_tools": []})
        await self.store.append(conversation, Message.user(user_input))
        return await self.run(conversation, [])

    async def continue_latest(self, user_input: str) -> TurnResult:
        """Append a user turn to the latest conversation and re-enter the loop.

        Raises:
            ConversationNotFoundError if there is nothing to continue
        """
        conversation = await self.store.load_latest()
        if conversation is None:
            raise ConversationNotFoundError()

        allowed = self.continuation_allow_list(conversation)
        if allowed != conversation.allowed_tools:
            conversation.metadata["allowed_tools"] = allowed
            await self.store.update_metadata(conversation)

        await self._close_dangling_calls(conversation, "interrupted before completion")
        await self.store.append(conversation, Message.user(user_input))
        log.info("Continuing conversation", conversation_id=conversation.id, allowed_tools=allowed)
        return await self.run(conversation, allowed)

    def continuation_allow_list(self, conversation: Conversation) -> list[str]:
        """Tools available when continuing, per the configured policy."""
        if self.continuation_tools == "all":
            names = [tool.name for tool in self.registry.enabled_tools()]
        elif self.continuation_tools == "inherit":
            names = conversation.allowed_tools or []
        else:
            names = []
        return [name for name in names if self.registry.is_enabled(name)]

    async def _close_dangling_calls(self, conversation: Conversation, reason: str) -> None:
        for call in conversation.pending_tool_calls():
            error = ToolExecutionError(call.name, reason)
            await self.store.append(
                conversation,
                Message.tool(call, f"Error: {error}", error=error.kind),
            )

    async def _complete(self, messages: list[Message], tools: list[ToolDefinition]) -> LLMResponse:
        if self.streaming:
            return await self.provider.complete_streaming(messages, tools or None, on_chunk=self.on_chunk)
        return await self.provider.complete(messages, tools or None)

    @staticmethod
    def _accumulate_usage(total: dict[str, int], usage: dict[str, int]) -> None:
        for key, value in (usage or {}).items():
            total[key] = total.get(key, 0) + int(value or 0)

    @staticmethod
    def _normalize_calls(conversation: Conversation, calls: Iterable[ToolCall]) -> list[ToolCall]:
        """Give every call an id unique within the conversation."""
        seen = {call.id for call in conversation.issued_tool_calls()}
        normalized: list[ToolCall] = []
        for call in calls:
            if not call.id or call.id in seen:
                call = ToolCall(id=new_call_id(), name=call.name, arguments=call.arguments)
            seen.add(call.id)
            normalized.append(call)
        return normalized

    async def run(self, conversation: Conversation, allowed_tools: Iterable[str]) -> TurnResult:
        """Drive the loop on a conversation whose last message is a user turn.

        Args:
            conversation: Conversation to extend; messages are persisted as appended
            allowed_tools: Tool names the model may call in this run

        Returns:
            TurnResult with the answer, or the reason the run stopped
        """
        allowed = [name for name in dict.fromkeys(allowed_tools) if self.registry.is_enabled(name)]
        definitions = self.registry.get_definitions(allowed) if allowed else []
        usage: dict[str, int] = {}
        denials = 0
        turn = 0

        def finish(outcome: Outcome, state: EngineState, **kwargs: Any) -> TurnResult:
            self._set_state(state)
            self._set_status("done")
            return TurnResult(outcome=outcome, conversation=conversation, turns=turn, usage=usage, **kwargs)

        log.info(
            "Run started",
            conversation_id=conversation.id,
            allowed_tools=allowed,
            max_turns=self.max_turns,
        )

        try:
            for turn in range(1, self.max_turns + 1):
                self._set_state(EngineState.AWAITING_MODEL)
                self._set_status("thinking")
                response = await self._complete(conversation.messages, definitions)
                self._accumulate_usage(usage, response.usage)

                if not response.tool_calls:
                    answer = response.content
                    await self.store.append(conversation, Message.assistant(answer))
                    log.info("Run finished", conversation_id=conversation.id, turns=turn)
                    return finish(Outcome.ANSWER, EngineState.FINAL_ANSWER, answer=answer)

                # Text next to tool calls is commentary, not an answer.
                if response.content.strip():
                    log.debug("Discarding commentary alongside tool calls", content=response.content[:200])

                calls = self._normalize_calls(conversation, response.tool_calls)
                await self.store.append(conversation, Message.assistant("", calls))
                self._set_state(EngineState.PENDING_TOOL_CALL)

                for call in calls:
                    message = await self._handle_call(call, allowed)
                    await self.store.append(conversation, message)
                    if message.error != ConfirmationDeniedError.kind:
                        continue
                    denials += 1
                    if denials > self.max_confirmation_denials:
                        await self._close_dangling_calls(conversation, "run aborted")
                        log.info("Too many denied confirmations", denials=denials)
                        return finish(
                            Outcome.ABORTED,
                            EngineState.ABORTED,
                            reason=ConfirmationDeniedError.kind,
                            detail=f"Declined {denials} tool calls",
                        )

            error = TurnLimitExceededError(self.max_turns)
            log.warning("Turn limit exceeded", conversation_id=conversation.id, max_turns=self.max_turns)
            return finish(Outcome.ABORTED, EngineState.ABORTED, reason="TurnLimitExceeded", detail=str(error))

        except TransportError as e:
            log.error("Chat completion failed", conversation_id=conversation.id, error=str(e))
            return finish(Outcome.FAILED, EngineState.FAILED, reason="TransportError", detail=str(e))
        except ConversationError as e:
            log.error("Conversation store rejected write", conversation_id=conversation.id, error=str(e))
            return finish(Outcome.FAILED, EngineState.FAILED, reason=type(e).__name__, detail=str(e))
        except (asyncio.CancelledError, KeyboardInterrupt):
            log.info("Run cancelled", conversation_id=conversation.id, turns=turn)
            return finish(Outcome.ABORTED, EngineState.ABORTED, reason="Cancelled", detail="Interrupted")

    async def _handle_call(self, call: ToolCall, allowed: list[str]) -> Message:
        """Dispatch one tool call and turn its outcome into a tool message."""
        try:
            if call.name not in allowed:
                raise PermissionDeniedError(call.name)
            if isinstance(call.arguments, str):
                raise ToolArgumentError(call.name, f"arguments are not a JSON object: {call.arguments[:200]}")

            tool = self.registry.lookup(call.name)
            arguments = tool.validate_arguments(call.arguments)

            if tool.requires_confirmation:
                self._set_state(EngineState.AWAITING_CONFIRMATION)
                self._set_status("confirming")
                if not await self.gate.confirm(call.name, arguments):
                    raise ConfirmationDeniedError(call.name)

            self._set_state(EngineState.EXECUTING)
            self._set_status(f"running {call.name}")
            result = await self.registry.execute(call.name, arguments)
        except ToolError as e:
            log.info("Tool call not executed", tool=call.name, kind=e.kind, error=str(e))
            content = f"Error: {e}"
            self._emit_tool_output(call.name, content)
            return Message.tool(call, content, error=e.kind)

        content = result.render()
        self._emit_tool_output(call.name, content)
        error = ToolExecutionError.kind if result.status is ToolStatus.FAILED_TO_START else None
        return Message.tool(call, content, error=error)
