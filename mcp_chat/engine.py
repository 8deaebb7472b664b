"""Multi-step tool-use loop against a language model."""

import asyncio
import json
from datetime import UTC, datetime
from enum import Enum
from typing import Any, AsyncIterator

from mcp_chat.abort import raise_if_aborted, run_abortable
from mcp_chat.config import get_config
from mcp_chat.exceptions import AbortedError, LLMError, ToolError
from mcp_chat.ids import message_id
from mcp_chat.llm import LLMProvider, LLMResponse, Message, ToolCall, get_provider
from mcp_chat.logging import get_logger
from mcp_chat.models import StreamEvent, TextPart, ToolInvocationPart, ToolResultPart, Turn
from mcp_chat.pacing import Chunking, smooth_stream
from mcp_chat.tools.registry import ToolRegistry, ToolResult

log = get_logger(__name__)

ABORTED_TOOL_RESULT = "Tool call aborted"


class LoopState(str, Enum):
    """Where the tool-use loop currently is."""

    AWAITING_MODEL = "awaiting-model"
    INVOKING_TOOLS = "invoking-tools"
    DONE = "done"
    TRUNCATED = "truncated"
    ERRORED = "errored"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in _TERMINAL_STATES


_TERMINAL_STATES = {LoopState.DONE, LoopState.TRUNCATED, LoopState.ERRORED, LoopState.CANCELLED}


def _result_text(result: Any) -> str:
    if isinstance(result, str):
        return result
    return json.dumps(result, ensure_ascii=False, default=str)


def turns_to_messages(system_prompt: str, turns: list[Turn]) -> list[Message]:
    """Convert conversation turns into provider messages.

    Assistant turns may carry their tool results inline (as clients replay
    them); those are split out into tool messages after the assistant message.
    Invocations without a result and results without an invocation are left
    out, since providers reject unpaired tool calls.
    """
    invoked = {part.tool_call_id for turn in turns for part in turn.tool_invocations()}
    answered = {part.tool_call_id for turn in turns for part in turn.tool_results()}

    messages: list[Message] = []
    if system_prompt:
        messages.append(Message(role="system", content=system_prompt))

    for turn in turns:
        if turn.role == "user":
            messages.append(Message(role="user", content=turn.text() or turn.content))
        elif turn.role == "assistant":
            calls = [
                ToolCall(id=part.tool_call_id, name=part.tool_name, arguments=dict(part.args))
                for part in turn.tool_invocations()
                if part.tool_call_id in answered
            ]
            text = turn.text()
            if text or calls:
                messages.append(Message(role="assistant", content=text, tool_calls=calls))
            for part in turn.tool_results():
                if part.tool_call_id not in invoked:
                    continue
                messages.append(Message(
                    role="tool",
                    content=_result_text(part.result),
                    tool_call_id=part.tool_call_id,
                    tool_name=part.tool_name,
                ))
        elif turn.role == "tool":
            for part in turn.tool_results():
                if part.tool_call_id not in invoked:
                    continue
                messages.append(Message(
                    role="tool",
                    content=_result_text(part.result),
                    tool_call_id=part.tool_call_id,
                    tool_name=part.tool_name,
                ))
    return messages


class EngineRun:
    """One execution of the tool-use loop. Iterate it to drive the loop."""

    def __init__(
        self,
        provider: LLMProvider,
        system_prompt: str,
        history: list[Turn],
        model: str | None,
        tools: ToolRegistry | None,
        max_steps: int,
        abort_event: asyncio.Event | None,
        smooth_delay_ms: int = 5,
        chunking: Chunking = "line",
    ):
        self.provider = provider
        self.system_prompt = system_prompt
        self.history = list(history)
        self.model = model
        self.tools = tools if tools is not None else ToolRegistry()
        self.max_steps = max(1, int(max_steps))
        self.abort_event = abort_event
        self.smooth_delay_ms = smooth_delay_ms
        self.chunking = chunking

        self.state = LoopState.AWAITING_MODEL
        self.steps = 0
        self.response_turns: list[Turn] = []
        self.usage: dict[str, int] = {"prompt_tokens": 0, "completion_tokens": 0, "total_tokens": 0}
        self.error: str | None = None
        self._pending_calls: list[ToolCall] = []
        self._started = False

    def __aiter__(self) -> AsyncIterator[StreamEvent]:
        if self._started:
            raise RuntimeError("EngineRun can only be iterated once")
        self._started = True
        return self._drive()

    @property
    def has_assistant_content(self) -> bool:
        return any(turn.role == "assistant" and turn.parts for turn in self.response_turns)

    def _add_usage(self, usage: dict[str, int]) -> None:
        for key in self.usage:
            self.usage[key] += int(usage.get(key, 0) or 0)

    async def _call_model(self, messages: list[Message]) -> LLMResponse:
        definitions = self.tools.get_definitions() if len(self.tools) else None
        return await run_abortable(
            self.provider.complete(messages, tools=definitions, model=self.model),
            self.abort_event,
        )

    async def _invoke(self, call: ToolCall) -> ToolResult:
        if not self.tools.has_tool(call.name):
            log.warning("Model requested unknown tool", tool=call.name)
            return ToolResult(success=False, error=f"Tool not found: {call.name}")
        try:
            return await self.tools.execute(call.name, call.arguments, abort_event=self.abort_event)
        except ToolError as e:
            log.warning("Tool call failed", tool=call.name, error=str(e))
            return ToolResult(success=False, error=str(e))

    async def _model_step(self, messages: list[Message]) -> AsyncIterator[StreamEvent]:
        self.steps += 1
        step_id = message_id()
        yield StreamEvent(type="step-start", message_id=step_id)

        response = await self._call_model(messages)
        self._add_usage(response.usage)

        turn = Turn(id=step_id, role="assistant", parts=[])
        if response.content:
            text_part = TextPart(text="")
            turn.parts.append(text_part)
            self.response_turns.append(turn)
            async for chunk in smooth_stream(
                [response.content],
                delay_ms=self.smooth_delay_ms,
                chunking=self.chunking,
                abort_event=self.abort_event,
            ):
                text_part.text += chunk
                turn.content = turn.text()
                yield StreamEvent(type="text-delta", text=chunk)
        raise_if_aborted(self.abort_event)

        messages.append(Message(
            role="assistant",
            content=response.content,
            tool_calls=list(response.tool_calls),
        ))

        if not response.tool_calls:
            yield StreamEvent(
                type="step-finish",
                finish_reason=response.finish_reason or "stop",
                usage=dict(response.usage),
            )
            self.state = LoopState.DONE
            return

        if not turn.parts:
            self.response_turns.append(turn)
        self._pending_calls = list(response.tool_calls)
        for call in response.tool_calls:
            turn.parts.append(ToolInvocationPart(
                tool_call_id=call.id,
                tool_name=call.name,
                args=dict(call.arguments),
            ))
            yield StreamEvent(
                type="tool-call",
                tool_call_id=call.id,
                tool_name=call.name,
                args=dict(call.arguments),
            )
        self.state = LoopState.INVOKING_TOOLS

    def _abandon_pending_calls(self) -> None:
        """Answer tool calls that never ran so every invocation has a result."""
        calls, self._pending_calls = self._pending_calls, []
        if not calls:
            return
        self.response_turns.append(Turn(id=message_id(), role="tool", parts=[
            ToolResultPart(
                tool_call_id=call.id,
                tool_name=call.name,
                result=ABORTED_TOOL_RESULT,
                is_error=True,
            )
            for call in calls
        ]))

    async def _tool_step(self, messages: list[Message]) -> AsyncIterator[StreamEvent]:
        calls = self._pending_calls
        results: list[ToolResult] = await run_abortable(
            asyncio.gather(*(self._invoke(call) for call in calls)),
            self.abort_event,
        )
        self._pending_calls = []

        # gather keeps request order regardless of completion order
        tool_turn = Turn(id=message_id(), role="tool", parts=[])
        for call, result in zip(calls, results):
            tool_turn.parts.append(ToolResultPart(
                tool_call_id=call.id,
                tool_name=call.name,
                result=result.output,
                is_error=not result.success,
            ))
            messages.append(Message(
                role="tool",
                content=result.output,
                tool_call_id=call.id,
                tool_name=call.name,
            ))
        self.response_turns.append(tool_turn)

        for call, result in zip(calls, results):
            yield StreamEvent(
                type="tool-result",
                tool_call_id=call.id,
                tool_name=call.name,
                result=result.output,
                is_error=not result.success,
            )
        yield StreamEvent(type="step-finish", finish_reason="tool-calls", is_continued=False)
        self.state = LoopState.AWAITING_MODEL

    async def _drive(self) -> AsyncIterator[StreamEvent]:
        messages = turns_to_messages(self.system_prompt, self.history)
        try:
            raise_if_aborted(self.abort_event)
            while not self.state.terminal:
                if self.state is LoopState.AWAITING_MODEL:
                    if self.steps >= self.max_steps:
                        log.info("Tool loop reached step limit", max_steps=self.max_steps)
                        self.state = LoopState.TRUNCATED
                        break
                    async for event in self._model_step(messages):
                        yield event
                elif self.state is LoopState.INVOKING_TOOLS:
                    async for event in self._tool_step(messages):
                        yield event
        except AbortedError:
            self._abandon_pending_calls()
            self.state = LoopState.CANCELLED
            log.info("Tool loop aborted", steps=self.steps)
        except asyncio.CancelledError:
            self._abandon_pending_calls()
            self.state = LoopState.CANCELLED
            raise
        except LLMError as e:
            self.state = LoopState.ERRORED
            self.error = str(e) or "Model call failed"
            log.error("Model call failed", error=self.error, steps=self.steps)
            yield StreamEvent(type="error", error=self.error)
        except Exception as e:
            self._abandon_pending_calls()
            self.state = LoopState.ERRORED
            self.error = str(e) or type(e).__name__
            log.error("Tool loop failed", error=self.error, steps=self.steps)
            yield StreamEvent(type="error", error=self.error)

        if self.state in (LoopState.DONE, LoopState.TRUNCATED):
            yield StreamEvent(
                type="finish",
                finish_reason="stop" if self.state is LoopState.DONE else "max-steps",
                usage=dict(self.usage),
            )


class CompletionEngine:
    """Runs the tool-use loop for one request at a time."""

    def __init__(
        self,
        provider: LLMProvider | None = None,
        max_steps: int | None = None,
        smooth_delay_ms: int | None = None,
        chunking: Chunking | None = None,
        system_prompt_template: str | None = None,
    ):
        cfg = get_config().chat
        self._provider = provider
        self.max_steps = max_steps if max_steps is not None else cfg.max_steps
        self.smooth_delay_ms = smooth_delay_ms if smooth_delay_ms is not None else cfg.smooth_delay_ms
        self.chunking: Chunking = chunking or cfg.chunking
        self.system_prompt_template = system_prompt_template or cfg.system_prompt

    @property
    def provider(self) -> LLMProvider:
        if self._provider is None:
            self._provider = get_provider()
        return self._provider

    def system_prompt(self, today: datetime | None = None) -> str:
        """Render the system prompt with today's date."""
        day = (today or datetime.now(UTC)).date().isoformat()
        return self.system_prompt_template.replace("{today}", day)

    def run(
        self,
        system_prompt: str,
        history: list[Turn],
        model: str | None,
        tools: ToolRegistry | None,
        max_steps: int | None = None,
        abort_event: asyncio.Event | None = None,
    ) -> EngineRun:
        return EngineRun(
            provider=self.provider,
            system_prompt=system_prompt,
            history=history,
            model=model,
            tools=tools,
            max_steps=max_steps if max_steps is not None else self.max_steps,
            abort_event=abort_event,
            smooth_delay_ms=self.smooth_delay_ms,
            chunking=self.chunking,
        )
