"""Tests for the conversation window: token estimate, truncation units, result capping."""

import random

import pytest

from taskloop.engine.agent import ConversationWindow, Message
from taskloop.engine.agent.models import ToolCall, ToolResultBlock
from taskloop.engine.agent.window import cap_result, estimate_tokens, prepare


def _pair(i: int, result_chars: int) -> list[Message]:
    call = ToolCall(id=f"call_{i}", name="fetch", input={"page": i})
    return [
        Message.assistant("", [call]),
        Message.tool_results([ToolResultBlock(f"call_{i}", "r" * result_chars, name="fetch")]),
    ]


def _conversation(pairs: int, result_chars: int) -> list[Message]:
    conv = [Message.user("Summarize every page.")]
    for i in range(pairs):
        conv.extend(_pair(i, result_chars))
    return conv


def _assert_pairing(messages: list[Message]) -> None:
    """Every tool_use is answered by the next message, every tool_result has its tool_use."""
    for i, msg in enumerate(messages):
        if msg.tool_uses:
            assert i + 1 < len(messages), "tool_use at the end without a result"
            answered = {b.tool_use_id for b in messages[i + 1].results}
            assert {u.id for u in msg.tool_uses} <= answered
        if msg.role == "tool_result":
            assert i > 0
            asked = {u.id for u in messages[i - 1].tool_uses}
            assert {b.tool_use_id for b in msg.results} <= asked


class TestEstimate:

    def test_chars_over_three_and_a_half_rounded_up(self):
        assert estimate_tokens([Message.user("a" * 7)]) == 2
        assert estimate_tokens([Message.user("a" * 8)]) == 3
        assert estimate_tokens([]) == 0

    def test_counts_tool_blocks(self):
        conv = _pair(0, 35)
        assert estimate_tokens(conv) > estimate_tokens([conv[1]]) >= 10


class TestCapResult:

    def test_short_text_untouched(self):
        assert cap_result("hello", 10) == "hello"

    def test_marker(self):
        capped = cap_result("x" * 9000, 8000)
        assert capped.startswith("x" * 8000)
        assert capped.endswith("... [output truncated, 9000 chars total]")

    def test_default_limit(self):
        assert len(cap_result("y" * 8000)) == 8000


class TestPrepare:

    def test_scenario_oldest_pairs_removed_first(self):
        # ~120K tokens: 6 interior pairs plus the 2 most recent turns, 80K budget
        conv = _conversation(pairs=8, result_chars=52_000)
        assert estimate_tokens(conv) > 115_000

        window = ConversationWindow(budget_tokens=80_000, keep_recent=4)
        result = window.prepare(conv)

        assert estimate_tokens(result) <= 80_000
        assert result[0] is conv[0]
        assert result[-4:] == conv[-4:]
        kept_ids = [m.tool_uses[0].id for m in result if m.tool_uses]
        assert kept_ids == ["call_3", "call_4", "call_5", "call_6", "call_7"]
        _assert_pairing(result)

    def test_under_budget_returns_copy(self):
        conv = _conversation(pairs=2, result_chars=100)
        result = prepare(conv, budget_tokens=80_000)
        assert result == conv
        assert result is not conv

    def test_input_not_modified(self):
        conv = _conversation(pairs=6, result_chars=10_000)
        snapshot = list(conv)
        prepare(conv, budget_tokens=5_000)
        assert conv == snapshot

    def test_recent_window_never_starts_with_orphan_result(self):
        conv = _conversation(pairs=6, result_chars=10_000)
        result = prepare(conv, budget_tokens=8_000, keep_recent=3)
        assert result[1].role == "assistant"
        _assert_pairing(result)

    def test_keep_recent_zero_still_keeps_latest_pair(self):
        conv = _conversation(pairs=4, result_chars=5000)
        result = prepare(conv, budget_tokens=1000, keep_recent=0)

        assert result[0] is conv[0]
        assert result[-2].tool_uses[0].id == "call_3"
        assert result[-1].results[0].tool_use_id == "call_3"
        _assert_pairing(result)

    def test_lone_request_over_budget(self):
        conv = [Message.user("x" * 10_000)]
        assert prepare(conv, budget_tokens=100, keep_recent=0) == conv

    def test_first_and_current_request_kept_after_prior_history(self):
        conv = [Message.user("old request"), Message.assistant("old answer")]
        conv += [Message.user("new request")]
        for i in range(5):
            conv.extend(_pair(i, 20_000))
        result = prepare(conv, budget_tokens=15_000)

        assert [m.text for m in result[:2]] == ["old request", "new request"]
        assert "old answer" not in [m.text for m in result]
        assert result[-4:] == conv[-4:]
        _assert_pairing(result)

    def test_system_prompt_counts_against_budget(self):
        conv = _conversation(pairs=3, result_chars=700)
        total = estimate_tokens(conv)
        assert prepare(conv, budget_tokens=total) == conv
        shorter = prepare(conv, budget_tokens=total, system_prompt="s" * 700)
        assert len(shorter) < len(conv)

    def test_overflow_caps_recent_result_instead_of_failing(self):
        conv = [Message.user("go")] + _pair(0, 100_000)
        result = prepare(conv, budget_tokens=2_000)

        assert len(result) == len(conv)
        capped = result[-1].results[0].content
        assert "[output truncated, 100000 chars total]" in capped
        assert len(capped) < 100_000
        # Original message untouched
        assert len(conv[-1].results[0].content) == 100_000

    @pytest.mark.parametrize("seed", range(25))
    def test_invariants_hold_for_random_conversations(self, seed):
        rng = random.Random(seed)
        conv = [Message.user("start")]
        for i in range(rng.randint(0, 12)):
            if rng.random() < 0.3:
                conv.append(Message.assistant("thinking " * rng.randint(1, 500)))
                conv.append(Message.user("continue"))
            else:
                conv.extend(_pair(i, rng.randint(10, 30_000)))
        budget = rng.randint(500, 60_000)

        result = prepare(conv, budget_tokens=budget, keep_recent=rng.randint(1, 6))

        assert result[0] is conv[0]
        _assert_pairing(result)
        # Order preserved: result is a subsequence of the input (capped results are copies)
        positions = [_index_in(conv, msg) for msg in result]
        assert positions == sorted(set(positions))


def _index_in(conv: list[Message], msg: Message) -> int:
    for i, orig in enumerate(conv):
        if orig is msg:
            return i
    ids = [b.tool_use_id for b in msg.results]
    for i, orig in enumerate(conv):
        if orig.role == "tool_result" and [b.tool_use_id for b in orig.results] == ids:
            return i
    raise AssertionError(f"{msg.role} message not found in the original conversation")
