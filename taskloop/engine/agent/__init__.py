"""Agent package.

Public API:
    from taskloop.engine.agent import AgentLoop, ToolRegistry, PermissionGate
    from taskloop.engine.agent import AgentEvent, Task, ToolDescriptor

Internal layout:
    models.py      — messages, tools, approvals, tasks, events
    registry.py    — ToolRegistry (register, definitions_for, dispatch)
    validators.py  — normalize_tool_input / validate_tool_input
    permissions.py — PermissionGate, ApprovalBroker, escalation table, audit
    window.py      — ConversationWindow (token budget truncation)
    formatters.py  — _FormatterMixin (result folding, event previews)
    executors.py   — _ExecutorMixin (authorize then run, fan-out per turn)
    loop.py        — AgentLoop (per-task state machine, combines the mixins)
"""

from .loop import AgentLoop
from .models import (
    AgentEvent, ApprovalRequest, EventType, Message, Task, TaskStatus, Tier,
    ToolCall, ToolDescriptor, ToolResult,
)
from .permissions import ApprovalBroker, PermissionGate
from .registry import ToolRegistry
from .window import ConversationWindow

__all__ = [
    "AgentLoop", "AgentEvent", "ApprovalBroker", "ApprovalRequest", "ConversationWindow",
    "EventType", "Message", "PermissionGate", "Task", "TaskStatus", "Tier", "ToolCall",
    "ToolDescriptor", "ToolRegistry", "ToolResult",
]
