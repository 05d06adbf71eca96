from __future__ import annotations

import enum
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Union

DEFAULT_MAX_TURNS = 50


# ─── Canonical message blocks ────────────────────────────────────────

@dataclass
class TextBlock:
    text: str
    type: str = field(default="text", init=False)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "text": self.text}


@dataclass
class ToolUseBlock:
    id: str
    name: str
    input: dict[str, Any]
    type: str = field(default="tool_use", init=False)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "id": self.id, "name": self.name, "input": self.input}


@dataclass
class ToolResultBlock:
    tool_use_id: str
    content: str
    is_error: bool = False
    name: str = ""
    type: str = field(default="tool_result", init=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "tool_use_id": self.tool_use_id,
            "name": self.name,
            "content": self.content,
            "is_error": self.is_error,
        }


Block = Union[TextBlock, ToolUseBlock, ToolResultBlock]


@dataclass
class Message:
    role: str  # "user", "assistant", "tool_result"
    content: list[Block] = field(default_factory=list)

    @classmethod
    def user(cls, text: str) -> Message:
        return cls("user", [TextBlock(text)])

    @classmethod
    def assistant(cls, text: str = "", tool_calls: list[ToolCall] | None = None) -> Message:
        blocks: list[Block] = []
        if text:
            blocks.append(TextBlock(text))
        for tc in tool_calls or []:
            blocks.append(ToolUseBlock(tc.id, tc.name, tc.input))
        return cls("assistant", blocks)

    @classmethod
    def tool_results(cls, results: list[ToolResultBlock]) -> Message:
        return cls("tool_result", list(results))

    @property
    def text(self) -> str:
        return "".join(b.text for b in self.content if isinstance(b, TextBlock))

    @property
    def tool_uses(self) -> list[ToolUseBlock]:
        return [b for b in self.content if isinstance(b, ToolUseBlock)]

    @property
    def results(self) -> list[ToolResultBlock]:
        return [b for b in self.content if isinstance(b, ToolResultBlock)]

    def to_dict(self) -> dict[str, Any]:
        return {"role": self.role, "content": [b.to_dict() for b in self.content]}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Message:
        """Accepts the to_dict() shape, or {"role", "content": str} for seeding."""
        role = data.get("role", "user")
        raw = data.get("content", "")
        if isinstance(raw, str):
            return cls(role, [TextBlock(raw)] if raw else [])
        blocks: list[Block] = []
        for b in raw:
            kind = b.get("type")
            if kind == "text":
                blocks.append(TextBlock(b.get("text", "")))
            elif kind == "tool_use":
                blocks.append(ToolUseBlock(b["id"], b["name"], dict(b.get("input") or {})))
            elif kind == "tool_result":
                blocks.append(ToolResultBlock(
                    b["tool_use_id"], str(b.get("content", "")),
                    bool(b.get("is_error", False)), b.get("name", ""),
                ))
        return cls(role, blocks)


# ─── Tools ───────────────────────────────────────────────────────────

class Tier(str, enum.Enum):
    SAFE = "safe"
    SENSITIVE = "sensitive"
    DANGEROUS = "dangerous"

    @property
    def rank(self) -> int:
        return _TIER_RANK[self]

    def escalate(self, other: Tier) -> Tier:
        return other if other.rank > self.rank else self


_TIER_RANK = {Tier.SAFE: 0, Tier.SENSITIVE: 1, Tier.DANGEROUS: 2}


@dataclass
class ToolResult:
    success: bool
    content: str = ""
    error: str | None = None

    @classmethod
    def failure(cls, error: str, content: str = "") -> ToolResult:
        return cls(success=False, content=content, error=error)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"success": self.success}
        if self.content:
            data["content"] = self.content
        if self.error is not None:
            data["error"] = self.error
        return data


Executor = Callable[[dict[str, Any]], Union[Awaitable[Any], Any]]


@dataclass(frozen=True)
class ToolDescriptor:
    name: str
    description: str
    parameter_schema: dict[str, Any]
    permission_tier: Tier
    executor: Executor
    timeout: float | None = None


class CallState(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class ToolCall:
    id: str
    name: str
    input: dict[str, Any]
    state: CallState = CallState.PENDING
    tier: Tier | None = None
    duration: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "input": self.input}


# ─── Model responses ─────────────────────────────────────────────────

@dataclass
class ModelResponse:
    text: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    stop_reason: str | None = None

    def to_message(self) -> Message:
        return Message.assistant(self.text, self.tool_calls)


# ─── Approvals ───────────────────────────────────────────────────────

class ApprovalState(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"
    TIMED_OUT = "timed_out"


@dataclass
class ApprovalRequest:
    task_id: str
    tool_call: ToolCall
    risk_tier: Tier
    reason: str = ""
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: float = field(default_factory=time.time)
    state: ApprovalState = ApprovalState.PENDING

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "task_id": self.task_id,
            "tool_call": self.tool_call.to_dict(),
            "risk_tier": self.risk_tier.value,
            "reason": self.reason,
            "created_at": self.created_at,
            "state": self.state.value,
        }


# ─── Tasks ───────────────────────────────────────────────────────────

class TaskStatus(str, enum.Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ERRORED = "errored"


@dataclass
class Turn:
    index: int
    response: ModelResponse | None = None
    tool_calls: list[ToolCall] = field(default_factory=list)
    results: list[ToolResult] = field(default_factory=list)


@dataclass
class Task:
    request: str
    system_prompt: str = ""
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    conversation: list[Message] = field(default_factory=list)
    turns: list[Turn] = field(default_factory=list)
    status: TaskStatus = TaskStatus.RUNNING
    max_turns: int = DEFAULT_MAX_TURNS
    final_text: str = ""
    error: str | None = None
    cancel_requested: bool = False
    started_at: float = field(default_factory=time.time)

    @classmethod
    def create(
        cls,
        request: str,
        system_prompt: str = "",
        history: list[Message] | None = None,
        max_turns: int = DEFAULT_MAX_TURNS,
    ) -> Task:
        conversation = list(history or [])
        conversation.append(Message.user(request))
        return cls(
            request=request,
            system_prompt=system_prompt,
            conversation=conversation,
            max_turns=max_turns,
        )

    @property
    def is_done(self) -> bool:
        return self.status is not TaskStatus.RUNNING


# ─── Events ──────────────────────────────────────────────────────────

class EventType:
    TASK_START = "task_start"
    TURN_START = "turn_start"
    TOKEN = "token"
    TOOL_CALLS = "tool_calls"
    APPROVAL_REQUEST = "approval_request"
    TOOL_START = "tool_start"
    TOOL_END = "tool_end"
    TOOL_RESULTS = "tool_results"
    TURN_END = "turn_end"
    TASK_COMPLETE = "task_complete"
    TASK_ERROR = "task_error"
    TASK_CANCELLED = "task_cancelled"

    TERMINAL = frozenset({TASK_COMPLETE, TASK_ERROR, TASK_CANCELLED})


@dataclass(frozen=True)
class AgentEvent:
    type: str
    task_id: str
    seq: int
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "task_id": self.task_id, "seq": self.seq, **self.data}
