"""Permission classification and human-in-the-loop approval.

Tiers: safe, sensitive, dangerous. A call's base tier comes from its
descriptor (or a configured override); the escalation table can only raise
it. Safe calls run immediately, sensitive calls run immediately only when
auto-approval is enabled, everything else waits for an explicit decision
that defaults to "denied" after a fixed timeout.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import re
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, Union

from ..config import APPROVAL_TIMEOUT_SECONDS
from ..errors import ApprovalTimeout
from .models import ApprovalRequest, ApprovalState, Tier, ToolCall
from .registry import ToolRegistry

logger = logging.getLogger("taskloop.agent")
audit_logger = logging.getLogger("taskloop.audit")

REDACTED = "***REDACTED***"
# Matched against whole key segments: "access_token" and "apiKey" match, "max_tokens" and "bypass" do not
_SENSITIVE_KEY_RE = re.compile(
    r"(^|[_.\-])(pass(word|wd)?|pwd|api[_\-]?key|token|secret|credentials?)($|[_.\-])"
)
_CAMEL_BOUNDARY_RE = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")


def is_sensitive_key(key: Any) -> bool:
    return bool(_SENSITIVE_KEY_RE.search(_CAMEL_BOUNDARY_RE.sub("_", str(key)).lower()))


MAX_AUDIT_ENTRIES = 1000


@dataclass(frozen=True)
class EscalationRule:
    tool_pattern: re.Pattern
    input_pattern: re.Pattern
    tier: Tier
    label: str = ""

    @classmethod
    def build(cls, tool: str, pattern: str, tier: Tier = Tier.DANGEROUS, label: str = "") -> EscalationRule:
        return cls(re.compile(tool, re.IGNORECASE), re.compile(pattern, re.IGNORECASE), tier, label)


_SHELL_TOOLS = r"(^|_)(exec|shell|bash|command|run)($|_)"
_WRITE_TOOLS = r"(^|_)(write|edit|append|save|mkdir|create)($|_)"
_TYPING_TOOLS = r"(^|_)(type|fill|input)($|_)"

DEFAULT_ESCALATIONS: tuple[EscalationRule, ...] = (
    EscalationRule.build(_SHELL_TOOLS, r"\brm\s+(-[a-z]*r[a-z]*f?|-rf?|--recursive)", label="recursive delete"),
    EscalationRule.build(_SHELL_TOOLS, r"\bsudo\b", label="privilege escalation"),
    EscalationRule.build(_SHELL_TOOLS, r"\bmkfs\b", label="filesystem format"),
    EscalationRule.build(_SHELL_TOOLS, r"\bdd\b.*of=", label="raw disk write"),
    EscalationRule.build(_SHELL_TOOLS, r"\bformat\b", label="format"),
    EscalationRule.build(_SHELL_TOOLS, r"\b(shutdown|reboot)\b", label="power control"),
    EscalationRule.build(_SHELL_TOOLS, r"\bkill\s+-9", label="force kill"),
    EscalationRule.build(_SHELL_TOOLS, r">\s*/dev/", label="device write"),
    EscalationRule.build(_SHELL_TOOLS, r"\b(curl|wget)\b.*\|\s*(ba|z)?sh\b", label="remote script execution"),
    EscalationRule.build(_SHELL_TOOLS, r"\bchmod\s+(-R\s+)?777", label="world-writable permissions"),
    EscalationRule.build(_SHELL_TOOLS, r"\bpasswd\b", label="password change"),
    EscalationRule.build(_WRITE_TOOLS, r"(^|[\"'\s])/(etc|usr|system|boot|bin|sbin)/", label="system path"),
    EscalationRule.build(_WRITE_TOOLS, r"\.ssh/|\.env\b|\.bashrc|\.zshrc|\.profile", label="credentials or shell profile"),
    EscalationRule.build(_TYPING_TOOLS, r"password|credit.?card|\bssn\b|social.?security|\bcvv\b", label="sensitive form data"),
)


@dataclass(frozen=True)
class Classification:
    tier: Tier
    reason: str


def redact_params(params: Any) -> Any:
    """Replace values under credential-looking keys, recursively."""
    if isinstance(params, dict):
        return {
            k: REDACTED if is_sensitive_key(k) and v not in (None, "") else redact_params(v)
            for k, v in params.items()
        }
    if isinstance(params, list):
        return [redact_params(v) for v in params]
    return params


Publisher = Callable[[ApprovalRequest], Union[Awaitable[None], None]]


@dataclass
class _Pending:
    request: ApprovalRequest
    future: asyncio.Future
    timer: asyncio.TimerHandle


class ApprovalBroker:
    """Pending-request table keyed by request id, one resolver each.

    A request resolves exactly once: by ``resolve``, by ``cancel_task``, or
    by its own timer. Whatever comes second finds no entry and is ignored.
    """

    def __init__(self, timeout: float = APPROVAL_TIMEOUT_SECONDS, publisher: Publisher | None = None) -> None:
        self.timeout = timeout
        self.publisher = publisher
        self._pending: dict[str, _Pending] = {}

    async def request(
        self,
        task_id: str,
        call: ToolCall,
        tier: Tier,
        reason: str = "",
        notify: Publisher | None = None,
    ) -> bool:
        loop = asyncio.get_running_loop()
        req = ApprovalRequest(task_id=task_id, tool_call=call, risk_tier=tier, reason=reason)
        future: asyncio.Future = loop.create_future()
        timer = loop.call_later(self.timeout, self._expire, req.request_id)
        self._pending[req.request_id] = _Pending(req, future, timer)

        logger.info(
            f"[{task_id}] Approval requested for {call.name} ({tier.value}): request {req.request_id}"
        )
        for target in (self.publisher, notify):
            if target is not None:
                await _publish(target, req)

        try:
            return await future
        finally:
            # Caller went away (task torn down): drop the entry and its timer
            entry = self._pending.pop(req.request_id, None)
            if entry is not None:
                entry.timer.cancel()

    def resolve(self, request_id: str, approved: bool) -> bool:
        entry = self._pending.pop(request_id, None)
        if entry is None:
            logger.info(f"Ignoring response for unknown or already resolved approval {request_id}")
            return False
        entry.timer.cancel()
        entry.request.state = ApprovalState.APPROVED if approved else ApprovalState.DENIED
        if not entry.future.done():
            entry.future.set_result(bool(approved))
        logger.info(f"Approval {request_id} resolved: {entry.request.state.value}")
        return True

    def cancel_task(self, task_id: str) -> int:
        """Deny every pending request of a task."""
        ids = [rid for rid, p in self._pending.items() if p.request.task_id == task_id]
        return sum(1 for rid in ids if self.resolve(rid, False))

    def pending(self, task_id: str | None = None) -> list[ApprovalRequest]:
        return [
            p.request for p in self._pending.values()
            if task_id is None or p.request.task_id == task_id
        ]

    def _expire(self, request_id: str) -> None:
        entry = self._pending.pop(request_id, None)
        if entry is None:
            return
        entry.request.state = ApprovalState.TIMED_OUT
        err = ApprovalTimeout(
            f"Approval for {entry.request.tool_call.name} timed out after {self.timeout:g}s; denied"
        )
        logger.warning(f"[{entry.request.task_id}] {err}")
        if not entry.future.done():
            entry.future.set_result(False)


async def _publish(target: Publisher, req: ApprovalRequest) -> None:
    try:
        result = target(req)
        if inspect.isawaitable(result):
            await result
    except Exception as e:
        # The request stays pending and will time out to a denial
        logger.error(f"Failed to publish approval request {req.request_id}: {e}")


class PermissionGate:
    def __init__(
        self,
        registry: ToolRegistry,
        broker: ApprovalBroker | None = None,
        escalations: Iterable[EscalationRule] = DEFAULT_ESCALATIONS,
        auto_approve_sensitive: bool = False,
        overrides: dict[str, str] | None = None,
    ) -> None:
        self.registry = registry
        self.broker = broker or ApprovalBroker()
        self.escalations = tuple(escalations)
        self.auto_approve_sensitive = auto_approve_sensitive
        self.overrides = {name: Tier(level) for name, level in (overrides or {}).items()}
        self.audit_log: deque[dict[str, Any]] = deque(maxlen=MAX_AUDIT_ENTRIES)

    def classify(self, name: str, params: dict[str, Any] | None) -> Classification:
        if name in self.overrides:
            tier = self.overrides[name]
            reason = "configured override"
        else:
            descriptor = self.registry.get(name)
            if descriptor is not None:
                tier = descriptor.permission_tier
                reason = "descriptor tier"
            else:
                tier = Tier.SENSITIVE
                reason = "unregistered tool"

        if params:
            serialized = json.dumps(params, ensure_ascii=False, default=str)
            for rule in self.escalations:
                if rule.tier.rank <= tier.rank:
                    continue
                if rule.tool_pattern.search(name) and rule.input_pattern.search(serialized):
                    tier = tier.escalate(rule.tier)
                    reason = f"escalated: {rule.label or rule.input_pattern.pattern}"

        entry = {
            "tool": name,
            "params": redact_params(params or {}),
            "tier": tier.value,
            "reason": reason,
            "timestamp": time.time(),
        }
        self.audit_log.append(entry)
        audit_logger.info(
            f"classify {name} -> {tier.value} ({reason}) params={json.dumps(entry['params'], default=str)[:500]}"
        )
        return Classification(tier, reason)

    def requires_approval(self, tier: Tier) -> bool:
        if tier is Tier.SAFE:
            return False
        if tier is Tier.SENSITIVE:
            return not self.auto_approve_sensitive
        return True

    async def authorize(
        self,
        call: ToolCall,
        task_id: str,
        classification: Classification | None = None,
        notify: Publisher | None = None,
    ) -> bool:
        cls = classification or self.classify(call.name, call.input)
        if not self.requires_approval(cls.tier):
            # Intent is recorded before the caller dispatches
            audit_logger.info(f"[{task_id}] auto-approved {call.name} ({cls.tier.value}) id={call.id}")
            return True
        approved = await self.broker.request(task_id, call, cls.tier, cls.reason, notify=notify)
        audit_logger.info(
            f"[{task_id}] {'approved' if approved else 'denied'} {call.name} ({cls.tier.value}) id={call.id}"
        )
        return approved

    def recent_audit(self, limit: int = 100) -> list[dict[str, Any]]:
        return list(self.audit_log)[-limit:]
