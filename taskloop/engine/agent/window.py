"""Conversation window: keep what is sent to the model under a token budget.

Retained always: everything up to and including the first user message,
the latest user message (the request being worked on), and the most recent
``keep_recent`` messages (widened so the window never opens on a
tool_result whose tool_use was dropped). Interior messages are
removed oldest first in units, so a tool_use and its tool_result leave
together.
"""

from __future__ import annotations

import json
import logging
import math

from ..errors import ConversationOverflow
from .models import Message, TextBlock, ToolResultBlock, ToolUseBlock

logger = logging.getLogger("taskloop.agent")

CHARS_PER_TOKEN = 3.5
DEFAULT_BUDGET_TOKENS = 80_000
DEFAULT_KEEP_RECENT = 4
DEFAULT_RESULT_MAX_CHARS = 8000
MIN_CAPPED_CHARS = 1000


def cap_result(text: str, limit: int = DEFAULT_RESULT_MAX_CHARS) -> str:
    if limit <= 0 or len(text) <= limit:
        return text
    return f"{text[:limit]}\n\n... [output truncated, {len(text)} chars total]"


def _block_chars(block) -> int:
    if isinstance(block, TextBlock):
        return len(block.text)
    if isinstance(block, ToolUseBlock):
        return len(block.name) + len(json.dumps(block.input, ensure_ascii=False, default=str))
    if isinstance(block, ToolResultBlock):
        return len(block.content)
    return 0


def message_chars(msg: Message) -> int:
    return sum(_block_chars(b) for b in msg.content)


def tokens_for_chars(chars: int) -> int:
    return math.ceil(chars / CHARS_PER_TOKEN)


def estimate_tokens(messages: list[Message]) -> int:
    return tokens_for_chars(sum(message_chars(m) for m in messages))


def _head_end(conversation: list[Message]) -> int:
    for i, msg in enumerate(conversation):
        if msg.role == "user":
            return i + 1
    return 0


def _last_user_message(conversation: list[Message]) -> Message | None:
    for msg in reversed(conversation):
        if msg.role == "user":
            return msg
    return None


def _units(messages: list[Message]) -> list[list[Message]]:
    """Group an assistant message with the tool_result message(s) that follow it."""
    units: list[list[Message]] = []
    for msg in messages:
        if msg.role == "tool_result" and units and units[-1][0].role == "assistant":
            units[-1].append(msg)
        else:
            units.append([msg])
    return units


class ConversationWindow:
    def __init__(
        self,
        budget_tokens: int = DEFAULT_BUDGET_TOKENS,
        keep_recent: int = DEFAULT_KEEP_RECENT,
        result_max_chars: int = DEFAULT_RESULT_MAX_CHARS,
    ) -> None:
        self.budget_tokens = budget_tokens
        self.keep_recent = keep_recent
        self.result_max_chars = result_max_chars

    def cap(self, text: str) -> str:
        return cap_result(text, self.result_max_chars)

    def prepare(self, conversation: list[Message], system_prompt: str = "") -> list[Message]:
        return prepare(
            conversation, self.budget_tokens,
            keep_recent=self.keep_recent, system_prompt=system_prompt,
        )


def prepare(
    conversation: list[Message],
    budget_tokens: int,
    keep_recent: int = DEFAULT_KEEP_RECENT,
    system_prompt: str = "",
) -> list[Message]:
    """Return a new list that fits ``budget_tokens``; the input is not modified."""
    budget_chars = (budget_tokens - tokens_for_chars(len(system_prompt))) * CHARS_PER_TOKEN
    total = sum(message_chars(m) for m in conversation)
    if total <= budget_chars:
        return list(conversation)

    head_end = _head_end(conversation)
    # At least the newest message is kept
    tail_start = max(head_end, len(conversation) - max(1, keep_recent))
    while head_end < tail_start < len(conversation) and conversation[tail_start].role == "tool_result":
        tail_start -= 1

    head = conversation[:head_end]
    tail = conversation[tail_start:]
    units = _units(conversation[head_end:tail_start])
    # The request currently being worked on stays even when history precedes it
    request = _last_user_message(conversation)

    dropped: set[int] = set()
    for unit in units:
        if total <= budget_chars:
            break
        if any(m is request for m in unit):
            continue
        total -= sum(message_chars(m) for m in unit)
        dropped.add(id(unit))

    result = head + [m for unit in units if id(unit) not in dropped for m in unit] + tail
    if dropped:
        logger.info(
            f"Context window: dropped {len(conversation) - len(result)} interior messages, "
            f"~{tokens_for_chars(total)} tokens remain (budget {budget_tokens})"
        )

    if total > budget_chars:
        logger.warning(str(ConversationOverflow(
            f"Conversation still ~{tokens_for_chars(total)} tokens after removing all interior "
            f"messages (budget {budget_tokens}); capping recent tool results"
        )))
        result, total = _cap_recent_results(result, total, budget_chars)
    return result


def _cap_recent_results(
    messages: list[Message], total: float, budget_chars: float,
) -> tuple[list[Message], float]:
    messages = list(messages)
    for i in range(len(messages) - 1, -1, -1):
        if total <= budget_chars:
            break
        msg = messages[i]
        if msg.role != "tool_result":
            continue
        blocks = []
        for block in msg.content:
            if isinstance(block, ToolResultBlock) and total > budget_chars:
                excess = int(math.ceil(total - budget_chars))
                limit = max(MIN_CAPPED_CHARS, len(block.content) - excess)
                capped = cap_result(block.content, limit)
                total -= len(block.content) - len(capped)
                block = ToolResultBlock(block.tool_use_id, capped, block.is_error, block.name)
            blocks.append(block)
        messages[i] = Message(msg.role, blocks)
    return messages, total
