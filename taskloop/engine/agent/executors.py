from __future__ import annotations

import asyncio
import logging
import time

from ..errors import ToolError, ToolNotFound
from .formatters import cancelled_result, denied_result
from .models import CallState, EventType, Task, Tier, ToolCall, ToolResult
from .validators import normalize_tool_input

logger = logging.getLogger("taskloop.agent")


class _ExecutorMixin:

    def _prepare_call(self, call: ToolCall):
        """Normalize the raw input against the declared schema, then classify."""
        descriptor = self.registry.get(call.name)  # type: ignore[attr-defined]
        if descriptor is not None:
            call.input = normalize_tool_input(descriptor.parameter_schema, call.input)
        elif not isinstance(call.input, dict):
            call.input = normalize_tool_input(None, call.input)
        classification = self.gate.classify(call.name, call.input)  # type: ignore[attr-defined]
        call.tier = classification.tier
        return classification

    async def _execute_calls(self, task: Task, calls: list[ToolCall]) -> list[ToolResult]:
        """Authorize and run every call of one turn; always one result per call."""
        classifications = [self._prepare_call(call) for call in calls]
        coros = [self._run_call(task, call, cls) for call, cls in zip(calls, classifications)]
        outcomes = await asyncio.gather(*coros, return_exceptions=True)

        results: list[ToolResult] = []
        for call, outcome in zip(calls, outcomes):
            if isinstance(outcome, BaseException):
                if isinstance(outcome, asyncio.CancelledError):
                    raise outcome
                logger.error(f"[{task.id}] Tool call {call.name} crashed: {outcome}", exc_info=outcome)
                call.state = CallState.FAILED
                outcome = ToolResult.failure(f"Error executing {call.name}: {outcome}")
                self._emit(task, EventType.TOOL_END, self._tool_end_data(call, outcome))  # type: ignore[attr-defined]
            results.append(outcome)
        return results

    async def _run_call(self, task: Task, call: ToolCall, classification) -> ToolResult:
        if call.name not in self.registry:  # type: ignore[attr-defined]
            err = ToolNotFound(
                call.name,
                f"Unknown tool: '{call.name}'. Available tools: "
                f"{', '.join(self.registry.names()) or 'none'}",  # type: ignore[attr-defined]
            )
            logger.warning(f"[{task.id}] {err}")
            return self._finish_call(task, call, ToolResult.failure(str(err)))

        if task.cancel_requested:
            return self._finish_call(task, call, cancelled_result())

        approved = await self.gate.authorize(  # type: ignore[attr-defined]
            call, task.id, classification,
            notify=lambda req: self._emit(task, EventType.APPROVAL_REQUEST, req.to_dict()),  # type: ignore[attr-defined]
        )
        if not approved:
            return self._finish_call(task, call, denied_result(), state=CallState.DENIED)
        call.state = CallState.APPROVED

        if task.cancel_requested:
            return self._finish_call(task, call, cancelled_result())

        call.state = CallState.RUNNING
        self._emit(task, EventType.TOOL_START, {  # type: ignore[attr-defined]
            "tool_id": call.id,
            "tool": call.name,
            "arguments": call.input,
            "tier": (call.tier or Tier.SENSITIVE).value,
        })
        start_time = time.time()
        try:
            result = await self.registry.dispatch(call.name, call.input)  # type: ignore[attr-defined]
        except ToolError as e:
            logger.warning(f"[{task.id}] {call.name} rejected ({e.code}): {e}")
            result = ToolResult.failure(str(e))
        call.duration = time.time() - start_time
        return self._finish_call(task, call, result)

    def _finish_call(
        self, task: Task, call: ToolCall, result: ToolResult, state: CallState | None = None,
    ) -> ToolResult:
        call.state = state or (CallState.SUCCEEDED if result.success else CallState.FAILED)
        self._emit(task, EventType.TOOL_END, self._tool_end_data(call, result))  # type: ignore[attr-defined]
        return result
