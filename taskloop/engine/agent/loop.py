from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from typing import TYPE_CHECKING, Any, AsyncIterator

from ..config import APPROVAL_TIMEOUT_SECONDS, Config, get_config
from ..errors import ProviderTransportError, TaskCancelled
from .executors import _ExecutorMixin
from .formatters import _FormatterMixin, cancelled_result
from .models import AgentEvent, EventType, Message, Task, TaskStatus, Turn
from .permissions import ApprovalBroker, PermissionGate
from .registry import ToolRegistry
from .window import ConversationWindow

if TYPE_CHECKING:
    from ..llm.client import ModelClient

logger = logging.getLogger("taskloop.agent")

# Finished tasks kept for status lookups before the oldest are dropped
MAX_FINISHED_TASKS = 200


class AgentLoop(_FormatterMixin, _ExecutorMixin):
    """Drives tasks through model calls and tool execution.

    One loop can drive many tasks at once; each task owns its conversation
    and event stream, and the task id is passed explicitly everywhere.
    """

    def __init__(
        self,
        model: ModelClient,
        registry: ToolRegistry,
        gate: PermissionGate | None = None,
        config: Config | None = None,
        window: ConversationWindow | None = None,
        max_finished_tasks: int = MAX_FINISHED_TASKS,
    ) -> None:
        cfg = config or get_config()
        self.config = cfg
        self.model = model
        self.registry = registry
        self.gate = gate or PermissionGate(
            registry,
            ApprovalBroker(timeout=APPROVAL_TIMEOUT_SECONDS),
            auto_approve_sensitive=cfg.auto_approve_sensitive,
            overrides=cfg.permission_overrides,
        )
        self.window = window or ConversationWindow(
            budget_tokens=cfg.context_budget_tokens,
            keep_recent=cfg.context_keep_recent,
            result_max_chars=cfg.tool_result_max_chars,
        )
        self.tasks: dict[str, Task] = {}
        self._queues: dict[str, asyncio.Queue[AgentEvent]] = {}
        self._seq: dict[str, int] = {}
        self._drivers: set[asyncio.Task] = set()
        self._finished: deque[str] = deque()
        self.max_finished_tasks = max_finished_tasks

    @property
    def broker(self) -> ApprovalBroker:
        return self.gate.broker

    def create_task(
        self,
        request: str,
        system_prompt: str = "",
        history: list[Message] | None = None,
        max_turns: int | None = None,
    ) -> Task:
        task = Task.create(
            request, system_prompt=system_prompt, history=history,
            max_turns=max_turns or self.config.agent_max_turns,
        )
        self.tasks[task.id] = task
        return task

    def cancel(self, task_id: str) -> bool:
        task = self.tasks.get(task_id)
        if task is None or task.is_done:
            return False
        logger.warning(f"[{task_id}] Cancellation requested")
        task.cancel_requested = True
        denied = self.broker.cancel_task(task_id)
        if denied:
            logger.info(f"[{task_id}] Denied {denied} pending approval(s)")
        return True

    async def run(self, task: Task) -> AsyncIterator[AgentEvent]:
        """Run a task and yield its events until the terminal one."""
        self.tasks[task.id] = task
        queue: asyncio.Queue[AgentEvent] = asyncio.Queue()
        self._queues[task.id] = queue
        self._seq.setdefault(task.id, 0)

        driver = asyncio.create_task(self._drive(task))
        self._drivers.add(driver)
        driver.add_done_callback(self._drivers.discard)
        try:
            while True:
                event = await queue.get()
                yield event
                if event.type in EventType.TERMINAL:
                    break
        finally:
            self._queues.pop(task.id, None)
            if not driver.done():
                # Consumer went away; let in-flight tools finish in the background
                self.cancel(task.id)

    async def run_to_completion(self, task: Task) -> list[AgentEvent]:
        return [event async for event in self.run(task)]

    def _emit(self, task: Task, event_type: str, data: dict[str, Any] | None = None) -> AgentEvent:
        seq = self._seq.get(task.id, 0)
        self._seq[task.id] = seq + 1
        event = AgentEvent(type=event_type, task_id=task.id, seq=seq, data=data or {})
        queue = self._queues.get(task.id)
        if queue is not None:
            queue.put_nowait(event)
        return event

    def _check_cancel(self, task: Task) -> None:
        if task.cancel_requested:
            raise TaskCancelled(f"Task {task.id} cancelled")

    async def _drive(self, task: Task) -> None:
        self._emit(task, EventType.TASK_START, {
            "request": task.request,
            "provider": self.model.provider,
            "model": self.config.model,
            "max_turns": task.max_turns,
        })
        logger.info(f"[{task.id}] Task started: {task.request[:120]!r}")
        try:
            await self._run_turns(task)
        except TaskCancelled:
            self._cancelled(task)
        except asyncio.CancelledError:
            self._cancelled(task)
            raise
        except ProviderTransportError as e:
            logger.error(f"[{task.id}] Model call failed ({e.provider}, status={e.status}): {e}")
            self._fail(task, str(e))
        except Exception as e:
            logger.error(f"[{task.id}] Fatal agent error: {e}", exc_info=True)
            self._fail(task, f"Fatal agent error: {e}")
        finally:
            self._retire(task)

    def _retire(self, task: Task) -> None:
        """Drop per-task bookkeeping; only the most recent finished tasks stay listed."""
        self._seq.pop(task.id, None)
        self._finished.append(task.id)
        while len(self._finished) > self.max_finished_tasks:
            self.tasks.pop(self._finished.popleft(), None)

    async def _run_turns(self, task: Task) -> None:
        for index in range(task.max_turns):
            self._check_cancel(task)
            turn = Turn(index=index)
            task.turns.append(turn)
            self._emit(task, EventType.TURN_START, {"turn": index})

            context = self.window.prepare(task.conversation, task.system_prompt)
            self._check_cancel(task)
            response = await self._call_model(task, context)
            turn.response = response
            task.conversation.append(response.to_message())

            if not response.tool_calls:
                self._check_cancel(task)
                self._emit(task, EventType.TURN_END, {"turn": index, "tool_calls": 0})
                self._complete(task, response.text)
                return

            calls = response.tool_calls
            self._emit(task, EventType.TOOL_CALLS, {
                "turn": index,
                "calls": [call.to_dict() for call in calls],
            })
            results = await self._execute_calls(task, calls)
            if task.cancel_requested:
                # Keep tool_use/tool_result pairing but drop what actually ran
                results = [cancelled_result() for _ in calls]

            turn.tool_calls = list(calls)
            turn.results = results
            task.conversation.append(Message.tool_results([
                self._result_block(call, result) for call, result in zip(calls, results)
            ]))
            self._emit(task, EventType.TOOL_RESULTS, {
                "turn": index,
                "results": self._results_summary(calls, results),
            })
            failed = sum(1 for r in results if not r.success)
            self._emit(task, EventType.TURN_END, {
                "turn": index, "tool_calls": len(calls), "failed": failed,
            })
            logger.info(f"[{task.id}] Turn {index}: {len(calls)} tool call(s), {failed} failed")

        self._check_cancel(task)
        self._fail(task, f"Maximum turns ({task.max_turns}) reached without a final answer.")

    async def _call_model(self, task: Task, context: list[Message]):
        from ..llm.base import CallOptions

        options = CallOptions(
            on_token=lambda text: self._emit(task, EventType.TOKEN, {"text": text}),
        )
        return await self.model.complete_with_tools(
            task.system_prompt, context, self.registry.descriptors(), options,
        )

    def _complete(self, task: Task, final_text: str) -> None:
        task.status = TaskStatus.COMPLETED
        task.final_text = final_text
        logger.info(
            f"[{task.id}] Task complete after {len(task.turns)} turn(s) "
            f"in {time.time() - task.started_at:.1f}s"
        )
        self._emit(task, EventType.TASK_COMPLETE, {
            "status": task.status.value,
            "final_text": final_text,
            "turns": len(task.turns),
        })

    def _fail(self, task: Task, error: str) -> None:
        task.status = TaskStatus.ERRORED
        task.error = error
        self._emit(task, EventType.TASK_ERROR, {"error": error, "turns": len(task.turns)})

    def _cancelled(self, task: Task) -> None:
        task.status = TaskStatus.CANCELLED
        logger.info(f"[{task.id}] Task cancelled after {len(task.turns)} turn(s)")
        self._emit(task, EventType.TASK_CANCELLED, {"turns": len(task.turns)})

    def get_stats(self) -> dict[str, Any]:
        by_status: dict[str, int] = {}
        for task in self.tasks.values():
            by_status[task.status.value] = by_status.get(task.status.value, 0) + 1
        return {
            "tasks": len(self.tasks),
            "by_status": by_status,
            "pending_approvals": len(self.broker.pending()),
            "tools": len(self.registry),
        }
