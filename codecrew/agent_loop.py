"""Single-agent turn loop: stream the model, gate tool calls, feed results back."""

from __future__ import annotations

import asyncio
import json
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Callable

from codecrew.config import get_config
from codecrew.confirmation import ConfirmationService, ConfirmDecision, requires_confirmation
from codecrew.exceptions import ToolError
from codecrew.llm import LLMProvider, Message, ToolCall
from codecrew.logging import get_logger
from codecrew.session import Session
from codecrew.tools.registry import ToolContext, ToolPolicy, ToolRegistry, ToolResult
from codecrew.trust import TrustScope, TrustStore, get_trust_pattern

log = get_logger(__name__)

ABORT_REASON_USER_CANCEL = "user_cancel"
DECLINED_BY_USER = "User declined"
NO_CONFIRMATION_AVAILABLE = "No confirmation service available"
SKIPPED_ON_ABORT = "Turn aborted"

_TRUST_DECISIONS = {
    ConfirmDecision.TRUST_SESSION: TrustScope.SESSION,
    ConfirmDecision.TRUST_PROJECT: TrustScope.PROJECT,
    ConfirmDecision.TRUST_GLOBAL: TrustScope.GLOBAL,
}


@dataclass
class TurnUsage:
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass(frozen=True)
class ExecutedToolCall:
    """A tool call that reached the registry, with its result."""

    id: str
    name: str
    input: dict[str, Any]
    result: ToolResult
    duration: float


@dataclass(frozen=True)
class SkippedToolCall:
    """A tool call that was declined or never reached because of an abort."""

    id: str
    name: str
    input: dict[str, Any]
    reason: str


@dataclass
class AgentTurnResult:
    content: str
    tool_calls: list[ExecutedToolCall] = field(default_factory=list)
    usage: TurnUsage = field(default_factory=TurnUsage)
    aborted: bool = False
    partial_content: str | None = None
    skipped_calls: list[SkippedToolCall] = field(default_factory=list)
    iterations: int = 0
    abort_reason: str | None = None
    # False when the iteration cap was reached while the model was still calling tools.
    converged: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "content": self.content,
            "tool_calls": [
                {
                    "id": call.id,
                    "name": call.name,
                    "input": call.input,
                    "result": call.result.model_dump(),
                    "duration": call.duration,
                }
                for call in self.tool_calls
            ],
            "usage": asdict(self.usage),
            "aborted": self.aborted,
            "partial_content": self.partial_content,
            "skipped_calls": [asdict(call) for call in self.skipped_calls],
            "iterations": self.iterations,
            "abort_reason": self.abort_reason,
            "converged": self.converged,
        }


@dataclass
class TurnOptions:
    """Per-turn knobs. ``None`` values fall back to the loaded config."""

    abort_event: asyncio.Event | None = None
    skip_confirmation: bool | None = None
    confirmation: ConfirmationService | None = None
    trust_store: TrustStore | None = None
    max_tool_iterations: int | None = None
    max_tokens: int | None = None
    system_prompt: str | None = None
    tool_policy: ToolPolicy | dict[str, Any] | None = None
    tool_context: ToolContext | None = None
    on_text: Callable[[str], None] | None = None
    on_tool_start: Callable[[ToolCall], None] | None = None
    on_tool_end: Callable[[ExecutedToolCall], None] | None = None
    on_tool_skipped: Callable[[ToolCall, str], None] | None = None


class _TurnAborted(Exception):
    """Internal signal: the user chose to abort at a confirmation prompt."""


class _Turn:
    """State for one ``execute_turn`` call."""

    def __init__(
        self,
        session: Session,
        provider: LLMProvider,
        tool_registry: ToolRegistry,
        options: TurnOptions,
    ):
        cfg = get_config()
        self.session = session
        self.provider = provider
        self.registry = tool_registry
        self.options = options
        self.max_iterations = max(
            1,
            options.max_tool_iterations
            if options.max_tool_iterations is not None
            else cfg.agent.max_tool_iterations,
        )
        self.skip_confirmation = (
            options.skip_confirmation
            if options.skip_confirmation is not None
            else cfg.agent.skip_confirmation
        )
        self.tool_context = options.tool_context or ToolContext(
            session_id=session.id,
            project_path=session.project_path,
        )

        self.content = ""
        self.executed: list[ExecutedToolCall] = []
        self.skipped: list[SkippedToolCall] = []
        self.usage = TurnUsage()
        self.iterations = 0

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _abort_requested(self) -> bool:
        event = self.options.abort_event
        return event is not None and event.is_set()

    def _result(self, aborted: bool, converged: bool = True) -> AgentTurnResult:
        return AgentTurnResult(
            content=self.content,
            tool_calls=list(self.executed),
            usage=TurnUsage(self.usage.input_tokens, self.usage.output_tokens),
            aborted=aborted,
            partial_content=(self.content or None) if aborted else None,
            skipped_calls=list(self.skipped),
            iterations=self.iterations,
            abort_reason=ABORT_REASON_USER_CANCEL if aborted else None,
            converged=converged,
        )

    def _skip(self, call: ToolCall, reason: str) -> None:
        self.skipped.append(SkippedToolCall(
            id=call.id,
            name=call.name,
            input=dict(call.arguments),
            reason=reason,
        ))
        if self.options.on_tool_skipped:
            self.options.on_tool_skipped(call, reason)

    def _messages(self) -> list[Message]:
        messages = self.session.get_conversation_context()
        if self.options.system_prompt:
            messages.insert(0, Message(role="system", content=self.options.system_prompt))
        return messages

    def _account(self, messages: list[Message], text: str, calls: list[ToolCall]) -> None:
        input_text = "\n".join(msg.content for msg in messages)
        output_text = text
        if calls:
            output_text += json.dumps(
                [{"id": c.id, "name": c.name, "input": c.arguments} for c in calls],
                default=str,
            )
        self.usage.input_tokens += max(0, int(self.provider.count_tokens(input_text)))
        self.usage.output_tokens += max(0, int(self.provider.count_tokens(output_text)))

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    async def _stream(self, messages: list[Message]) -> tuple[str, list[ToolCall]]:
        """Consume one streamed completion.

        Text chunks are folded into the turn content in arrival order;
        ``tool_use_start``/``tool_use_end`` chunks are paired by id. An end
        chunk without an id closes the oldest open start.
        """
        response_text = ""
        pending: dict[str, ToolCall] = {}
        calls: list[ToolCall] = []
        generated = 0
        tools = self.registry.get_tool_definitions_for_llm(self.options.tool_policy)

        async for chunk in self.provider.stream_with_tools(
            messages,
            tools=tools,
            max_tokens=self.options.max_tokens,
        ):
            if chunk.type == "text" and chunk.text:
                response_text += chunk.text
                self.content += chunk.text
                if self.options.on_text:
                    self.options.on_text(chunk.text)
            elif chunk.type == "tool_use_start" and chunk.tool_call is not None:
                call_id = chunk.tool_call.id
                if not call_id:
                    call_id = f"tool_{generated}"
                    generated += 1
                pending[call_id] = ToolCall(id=call_id, name=chunk.tool_call.name)
            elif chunk.type == "tool_use_end" and chunk.tool_call is not None:
                end_id = chunk.tool_call.id
                if end_id:
                    started = pending.pop(end_id, None)
                elif pending:
                    started = pending.pop(next(iter(pending)))
                else:
                    started = None

                if started is not None:
                    calls.append(ToolCall(
                        id=started.id,
                        name=chunk.tool_call.name or started.name,
                        arguments=dict(chunk.tool_call.arguments or started.arguments),
                    ))
                elif chunk.tool_call.name:
                    if not end_id:
                        end_id = f"tool_{generated}"
                        generated += 1
                    calls.append(ToolCall(
                        id=end_id,
                        name=chunk.tool_call.name,
                        arguments=dict(chunk.tool_call.arguments or {}),
                    ))
            elif chunk.type == "done":
                break

        if pending:
            log.warning("Dropping unterminated tool calls", tool_call_ids=sorted(pending))
        return response_text, calls

    # ------------------------------------------------------------------
    # Gating and execution
    # ------------------------------------------------------------------

    async def _is_trusted(self, pattern: str) -> bool:
        if self.options.trust_store is not None:
            return await self.options.trust_store.is_trusted(pattern, self.session)
        return pattern in self.session.trusted_tools

    async def _trust(self, pattern: str, scope: TrustScope) -> None:
        if self.options.trust_store is not None:
            await self.options.trust_store.trust(pattern, scope, self.session)
        else:
            self.session.trusted_tools.add(pattern)

    def _needs_confirmation(self, call: ToolCall) -> bool:
        service = self.options.confirmation
        if service is not None:
            return service.requires_confirmation(call.name, call.arguments)
        return requires_confirmation(call.name, call.arguments)

    async def _gate(self, call: ToolCall) -> str | None:
        """Return ``None`` to run the call, or a decline reason.

        Raises:
            _TurnAborted if the user aborts the turn at the prompt
        """
        if self.skip_confirmation or not self._needs_confirmation(call):
            return None
        pattern = get_trust_pattern(call.name, call.arguments)
        if await self._is_trusted(pattern):
            return None

        service = self.options.confirmation
        if service is None:
            return NO_CONFIRMATION_AVAILABLE

        decision = await service.confirm_tool_execution(call)
        if decision == ConfirmDecision.YES:
            return None
        if decision == ConfirmDecision.ABORT:
            raise _TurnAborted()
        scope = _TRUST_DECISIONS.get(decision)
        if scope is not None:
            await self._trust(pattern, scope)
            return None
        return DECLINED_BY_USER

    async def _execute(self, call: ToolCall) -> ExecutedToolCall:
        if self.options.on_tool_start:
            self.options.on_tool_start(call)
        started = time.monotonic()
        try:
            result = await self.registry.execute(
                call.name,
                dict(call.arguments),
                context=self.tool_context,
                task_policy=self.options.tool_policy,
            )
        except ToolError as e:
            result = ToolResult(success=False, error=str(e))
        duration = time.monotonic() - started
        result.duration = result.duration or duration
        executed = ExecutedToolCall(
            id=call.id,
            name=call.name,
            input=dict(call.arguments),
            result=result,
            duration=duration,
        )
        if self.options.on_tool_end:
            self.options.on_tool_end(executed)
        return executed

    def _record_round(
        self,
        response_text: str,
        calls: list[ToolCall],
        results: dict[str, tuple[str, bool]],
    ) -> None:
        """Append the assistant tool-use message and one tool message per answered call."""
        answered = [call for call in calls if call.id in results]
        if not answered:
            if response_text:
                self.session.add_message("assistant", response_text)
            return
        self.session.add_message("assistant", response_text, tool_calls=answered)
        for call in answered:
            content, is_error = results[call.id]
            self.session.add_message(
                "tool",
                content,
                tool_call_id=call.id,
                tool_name=call.name,
                is_error=is_error,
            )

    async def _process_calls(self, response_text: str, calls: list[ToolCall]) -> bool:
        """Gate and execute calls in arrival order. Returns True if the turn aborted."""
        results: dict[str, tuple[str, bool]] = {}
        aborted = False
        for index, call in enumerate(calls):
            if self._abort_requested():
                aborted = True
            else:
                try:
                    decline_reason = await self._gate(call)
                except _TurnAborted:
                    aborted = True
                else:
                    if decline_reason is not None:
                        self._skip(call, decline_reason)
                        results[call.id] = (f"Tool execution was declined: {decline_reason}", True)
                        continue
                    if self._abort_requested():
                        aborted = True

            if aborted:
                for remaining in calls[index:]:
                    self._skip(remaining, SKIPPED_ON_ABORT)
                break

            executed = await self._execute(call)
            self.executed.append(executed)
            if executed.result.success:
                results[call.id] = (executed.result.output, False)
            else:
                results[call.id] = (f"Error: {executed.result.error}", True)

        self._record_round(response_text, calls, results)
        return aborted

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    async def run(self, user_message: str) -> AgentTurnResult:
        if self._abort_requested():
            return self._result(aborted=True)

        self.session.add_message("user", user_message)

        while self.iterations < self.max_iterations:
            if self._abort_requested():
                return self._result(aborted=True)

            self.iterations += 1
            messages = self._messages()
            response_text, calls = await self._stream(messages)
            self._account(messages, response_text, calls)

            if not calls:
                self.session.add_message("assistant", response_text)
                return self._result(aborted=False)

            log.debug(
                "Model requested tools",
                iteration=self.iterations,
                tools=[call.name for call in calls],
            )
            if await self._process_calls(response_text, calls):
                return self._result(aborted=True)

        log.info("Tool iteration cap reached", max_tool_iterations=self.max_iterations)
        return self._result(aborted=False, converged=False)


async def execute_turn(
    session: Session,
    user_message: str,
    provider: LLMProvider,
    tool_registry: ToolRegistry,
    options: TurnOptions | None = None,
) -> AgentTurnResult:
    """Run one conversational turn for an agent.

    Streams the model, executes the tool calls it asks for (after trust and
    confirmation gating), feeds the results back and repeats until the
    model answers without tools, the iteration cap is hit, or the turn is
    cancelled.

    Args:
        session: Conversation to extend; history and trusted patterns live here
        user_message: The user's message for this turn
        provider: Streaming LLM provider
        tool_registry: Registry used to advertise and execute tools
        options: Cancellation event, confirmation, trust and callbacks

    Returns:
        AgentTurnResult. Cancellation yields ``aborted=True`` rather than
        an exception; tool failures are fed back to the model.
    """
    turn = _Turn(session, provider, tool_registry, options or TurnOptions())
    return await turn.run(user_message)


def format_abort_summary(executed_tools: list[ExecutedToolCall]) -> str | None:
    """One-line summary of the tools that finished before a cancellation."""
    if not executed_tools:
        return None

    successful = [call for call in executed_tools if call.result.success]
    failed = [call for call in executed_tools if not call.result.success]
    unique_names = list(dict.fromkeys(call.name for call in successful))

    plural = "" if len(successful) == 1 else "s"
    summary = f"Completed {len(successful)} tool{plural} before cancellation"
    if len(unique_names) <= 5:
        summary += f": [{', '.join(unique_names)}]"
    else:
        summary += f": [{', '.join(unique_names[:4])}, +{len(unique_names) - 4} more]"
    if failed:
        summary += f" ({len(failed)} failed)"
    return summary
