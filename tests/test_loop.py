"""Tests for AgentLoop: turn state machine, approvals, fan-out, cancellation, events."""

import asyncio

import pytest

from taskloop.engine.agent import EventType, TaskStatus, Tier, ToolResult
from taskloop.engine.agent.models import ApprovalState
from taskloop.engine.errors import ProviderTransportError

from conftest import ScriptedModel, build_loop, descriptor, final_turn, make_config, tool_turn


def _types(events):
    return [e.type for e in events]


def _terminal(events):
    terminal = [e for e in events if e.type in EventType.TERMINAL]
    assert len(terminal) == 1
    assert events[-1] is terminal[0]
    return terminal[0]


# ═══════════════════════════════════════════════════════════════
# Scenario A: safe tool, then a plain answer
# ═══════════════════════════════════════════════════════════════

class TestSafeToolRoundTrip:

    @pytest.mark.asyncio
    async def test_echo_then_complete(self, registry):
        model = ScriptedModel([
            tool_turn(("c1", "echo", {"text": "hi"})),
            final_turn("The tool said hi."),
        ])
        agent = build_loop(model, registry)
        task = agent.create_task("say hi through the echo tool")

        events = await agent.run_to_completion(task)

        done = _terminal(events)
        assert done.type == EventType.TASK_COMPLETE
        assert done.data["final_text"] == "The tool said hi."
        assert done.data["status"] == "completed"
        assert task.status is TaskStatus.COMPLETED
        assert EventType.APPROVAL_REQUEST not in _types(events)

        assert task.turns[0].results == [ToolResult(success=True, content="hi")]
        assert len(model.calls) == 2
        folded = model.calls[1]["conversation"][-1]
        assert folded.role == "tool_result"
        assert folded.results[0].tool_use_id == "c1"
        assert folded.results[0].content == "hi"
        assert folded.results[0].is_error is False

    @pytest.mark.asyncio
    async def test_event_order_and_sequence(self, registry):
        model = ScriptedModel([
            tool_turn(("c1", "echo", {"text": "hi"})),
            final_turn("ok"),
        ])
        agent = build_loop(model, registry)
        events = await agent.run_to_completion(agent.create_task("go"))

        assert [e.seq for e in events] == list(range(len(events)))
        assert _types(events) == [
            EventType.TASK_START,
            EventType.TURN_START,
            EventType.TOOL_CALLS,
            EventType.TOOL_START,
            EventType.TOOL_END,
            EventType.TOOL_RESULTS,
            EventType.TURN_END,
            EventType.TURN_START,
            EventType.TOKEN,
            EventType.TURN_END,
            EventType.TASK_COMPLETE,
        ]
        assert all(e.task_id == events[0].task_id for e in events)

    @pytest.mark.asyncio
    async def test_history_is_sent_before_request(self, registry):
        from taskloop.engine.agent import Message

        model = ScriptedModel([final_turn("fine")])
        agent = build_loop(model, registry)
        history = [Message.user("earlier question"), Message.assistant("earlier answer")]
        task = agent.create_task("new question", system_prompt="be brief", history=history)

        await agent.run_to_completion(task)

        sent = model.calls[0]["conversation"]
        assert [m.text for m in sent] == ["earlier question", "earlier answer", "new question"]
        assert model.calls[0]["system_prompt"] == "be brief"
        assert model.calls[0]["tools"] == ["echo"]


# ═══════════════════════════════════════════════════════════════
# Scenario B: dangerous tool and approvals
# ═══════════════════════════════════════════════════════════════

class TestApprovals:

    @pytest.fixture
    def deletions(self):
        return []

    @pytest.fixture
    def dangerous_registry(self, registry, deletions):
        async def delete_file(args):
            deletions.append(args["path"])
            return {"success": True, "content": f"deleted {args['path']}"}

        registry.register(descriptor(
            "delete_file", delete_file, Tier.DANGEROUS,
            properties={"path": {"type": "string"}}, required=["path"],
        ))
        return registry

    @pytest.mark.asyncio
    async def test_unanswered_approval_is_denied_and_loop_continues(self, dangerous_registry, deletions):
        model = ScriptedModel([
            tool_turn(("d1", "delete_file", {"path": "/tmp/x"})),
            final_turn("Could not delete, permission denied."),
        ])
        agent = build_loop(model, dangerous_registry, broker_timeout=0.05)
        task = agent.create_task("delete /tmp/x")

        events = await agent.run_to_completion(task)

        assert deletions == []
        result = task.turns[0].results[0]
        assert result.success is False
        assert result.error == "denied"
        assert len(model.calls) == 2
        assert _terminal(events).type == EventType.TASK_COMPLETE

        approval = next(e for e in events if e.type == EventType.APPROVAL_REQUEST)
        assert approval.data["risk_tier"] == "dangerous"
        assert approval.data["tool_call"]["name"] == "delete_file"
        assert EventType.TOOL_START not in _types(events)
        end = next(e for e in events if e.type == EventType.TOOL_END)
        assert end.data["success"] is False
        assert end.data["state"] == "denied"
        assert agent.broker.pending() == []

    @pytest.mark.asyncio
    async def test_executor_waits_for_approval(self, dangerous_registry, deletions):
        model = ScriptedModel([
            tool_turn(("d1", "delete_file", {"path": "/tmp/x"})),
            final_turn("Deleted."),
        ])
        agent = build_loop(model, dangerous_registry)
        task = agent.create_task("delete /tmp/x")

        events = []
        async for event in agent.run(task):
            events.append(event)
            if event.type == EventType.APPROVAL_REQUEST:
                await asyncio.sleep(0.01)
                assert deletions == []
                assert agent.broker.resolve(event.data["request_id"], True) is True

        assert deletions == ["/tmp/x"]
        assert task.turns[0].results[0].success is True
        assert _terminal(events).type == EventType.TASK_COMPLETE

    @pytest.mark.asyncio
    async def test_explicit_denial(self, dangerous_registry, deletions):
        model = ScriptedModel([
            tool_turn(("d1", "delete_file", {"path": "/tmp/x"})),
            final_turn("Okay, not deleting."),
        ])
        agent = build_loop(model, dangerous_registry)
        task = agent.create_task("delete /tmp/x")

        async for event in agent.run(task):
            if event.type == EventType.APPROVAL_REQUEST:
                agent.broker.resolve(event.data["request_id"], False)

        assert deletions == []
        assert task.turns[0].results[0].error == "denied"
        folded = task.conversation[2].results[0]
        assert folded.is_error is True
        assert "denied" in folded.content

    @pytest.mark.asyncio
    async def test_sensitive_auto_approved_when_configured(self, registry):
        calls = []

        def write_note(args):
            calls.append(args)
            return "saved"

        registry.register(descriptor(
            "write_note", write_note, Tier.SENSITIVE, properties={"text": {"type": "string"}},
        ))
        model = ScriptedModel([
            tool_turn(("w1", "write_note", {"text": "remember"})),
            final_turn("Saved."),
        ])
        agent = build_loop(model, registry, auto_approve_sensitive=True)
        events = await agent.run_to_completion(agent.create_task("note it"))

        assert calls == [{"text": "remember"}]
        assert EventType.APPROVAL_REQUEST not in _types(events)


# ═══════════════════════════════════════════════════════════════
# Fan-out: N calls, M failures
# ═══════════════════════════════════════════════════════════════

class TestToolFanOut:

    @pytest.mark.asyncio
    async def test_every_call_gets_a_result(self, registry):
        async def broken(args):
            raise RuntimeError("disk on fire")

        registry.register(descriptor("broken", broken, Tier.SAFE))
        model = ScriptedModel([
            tool_turn(
                ("c1", "echo", {"text": "one"}),
                ("c2", "broken", {}),
                ("c3", "nonexistent_tool", {"x": 1}),
                ("c4", "echo", {"text": 42}),
            ),
            final_turn("Handled."),
        ])
        agent = build_loop(model, registry)
        task = agent.create_task("do four things")

        events = await agent.run_to_completion(task)

        results = task.turns[0].results
        assert len(results) == 4
        assert [r.success for r in results] == [True, False, False, False]
        assert "disk on fire" in results[1].error
        assert "Unknown tool" in results[2].error
        assert "must be of type string" in results[3].error

        folded = task.conversation[2]
        assert [b.tool_use_id for b in folded.results] == ["c1", "c2", "c3", "c4"]
        assert len(model.calls) == 2
        assert _terminal(events).type == EventType.TASK_COMPLETE
        assert len([e for e in events if e.type == EventType.TOOL_END]) == 4

    @pytest.mark.asyncio
    async def test_approved_calls_run_concurrently(self, registry):
        first_started = asyncio.Event()
        second_started = asyncio.Event()

        async def first(args):
            first_started.set()
            await asyncio.wait_for(second_started.wait(), timeout=1.0)
            return "first"

        async def second(args):
            second_started.set()
            await asyncio.wait_for(first_started.wait(), timeout=1.0)
            return "second"

        registry.register(descriptor("first", first))
        registry.register(descriptor("second", second))
        model = ScriptedModel([
            tool_turn(("a", "first", {}), ("b", "second", {})),
            final_turn("both ran"),
        ])
        agent = build_loop(model, registry)
        task = agent.create_task("run both")
        await agent.run_to_completion(task)

        assert [r.content for r in task.turns[0].results] == ["first", "second"]

    @pytest.mark.asyncio
    async def test_flattened_arguments_are_normalized_before_dispatch(self, registry):
        seen = []

        def tag(args):
            seen.append(args)
            return "tagged"

        registry.register(descriptor(
            "tag", tag, Tier.SAFE,
            properties={
                "labels": {"type": "array", "items": {"type": "string"}},
                "limit": {"type": "integer"},
            },
        ))
        model = ScriptedModel([
            tool_turn(("t1", "tag", {"labels": '["a", "b"]', "limit": "3"})),
            final_turn("done"),
        ], provider="ollama")
        agent = build_loop(model, registry)
        await agent.run_to_completion(agent.create_task("tag it"))

        assert seen == [{"labels": ["a", "b"], "limit": 3}]

    @pytest.mark.asyncio
    async def test_results_are_capped_when_folded(self, registry):
        def big(args):
            return "x" * 20_000

        registry.register(descriptor("big", big))
        model = ScriptedModel([tool_turn(("b1", "big", {})), final_turn("ok")])
        agent = build_loop(model, registry, config=make_config(tool_result_max_chars=1000))
        task = agent.create_task("big output")
        await agent.run_to_completion(task)

        content = task.conversation[2].results[0].content
        assert content.startswith("x" * 1000)
        assert content.endswith("... [output truncated, 20000 chars total]")


# ═══════════════════════════════════════════════════════════════
# Termination: errors, turn limit, cancellation
# ═══════════════════════════════════════════════════════════════

class TestTermination:

    @pytest.mark.asyncio
    async def test_terminal_transport_error_ends_task(self, registry):
        model = ScriptedModel([
            ProviderTransportError("anthropic HTTP 401 (check the API key for this provider): bad key",
                                   provider="anthropic", status=401, retryable=False),
        ])
        agent = build_loop(model, registry)
        task = agent.create_task("hello")
        events = await agent.run_to_completion(task)

        done = _terminal(events)
        assert done.type == EventType.TASK_ERROR
        assert "401" in done.data["error"]
        assert task.status is TaskStatus.ERRORED

    @pytest.mark.asyncio
    async def test_unexpected_exception_ends_task(self, registry):
        model = ScriptedModel([ValueError("boom")])
        agent = build_loop(model, registry)
        events = await agent.run_to_completion(agent.create_task("hello"))

        done = _terminal(events)
        assert done.type == EventType.TASK_ERROR
        assert "boom" in done.data["error"]

    @pytest.mark.asyncio
    async def test_max_turns(self, registry):
        model = ScriptedModel([
            tool_turn(("c1", "echo", {"text": "again"})),
            tool_turn(("c2", "echo", {"text": "again"})),
        ])
        agent = build_loop(model, registry)
        task = agent.create_task("loop forever", max_turns=2)
        events = await agent.run_to_completion(task)

        done = _terminal(events)
        assert done.type == EventType.TASK_ERROR
        assert "Maximum turns (2)" in done.data["error"]
        assert len(model.calls) == 2

    @pytest.mark.asyncio
    async def test_cancel_discards_in_flight_results(self, registry):
        release = asyncio.Event()
        finished = []

        async def slow(args):
            await release.wait()
            finished.append(True)
            return "real output"

        registry.register(descriptor("slow", slow))
        model = ScriptedModel([tool_turn(("s1", "slow", {}))])
        agent = build_loop(model, registry)
        task = agent.create_task("slow work")

        events = []
        async for event in agent.run(task):
            events.append(event)
            if event.type == EventType.TOOL_START:
                assert agent.cancel(task.id) is True
                release.set()

        assert _terminal(events).type == EventType.TASK_CANCELLED
        assert task.status is TaskStatus.CANCELLED
        assert finished == [True]
        assert len(model.calls) == 1
        folded = task.conversation[-1]
        assert folded.role == "tool_result"
        assert folded.results[0].tool_use_id == "s1"
        assert "real output" not in folded.results[0].content
        assert task.turns[0].results[0].error == "cancelled"

    @pytest.mark.asyncio
    async def test_cancel_denies_pending_approval(self, registry):
        ran = []
        registry.register(descriptor("wipe", lambda args: ran.append(1), Tier.DANGEROUS))
        model = ScriptedModel([tool_turn(("w1", "wipe", {}))])
        agent = build_loop(model, registry)
        task = agent.create_task("wipe it")

        requests = []
        events = []
        async for event in agent.run(task):
            events.append(event)
            if event.type == EventType.APPROVAL_REQUEST:
                requests.append(agent.broker.pending(task.id)[0])
                agent.cancel(task.id)

        assert ran == []
        assert requests[0].state is ApprovalState.DENIED
        assert agent.broker.pending() == []
        assert _terminal(events).type == EventType.TASK_CANCELLED
        assert agent.broker.resolve(requests[0].request_id, True) is False

    @pytest.mark.asyncio
    async def test_cancel_unknown_or_finished_task(self, registry):
        agent = build_loop(ScriptedModel([final_turn("hi")]), registry)
        task = agent.create_task("hi")
        await agent.run_to_completion(task)

        assert agent.cancel(task.id) is False
        assert agent.cancel("no-such-task") is False

    @pytest.mark.asyncio
    async def test_concurrent_tasks_keep_separate_streams(self, registry):
        model = ScriptedModel([final_turn("one"), final_turn("two")])
        agent = build_loop(model, registry)
        t1 = agent.create_task("first")
        t2 = agent.create_task("second")

        ev1, ev2 = await asyncio.gather(agent.run_to_completion(t1), agent.run_to_completion(t2))

        assert {e.task_id for e in ev1} == {t1.id}
        assert {e.task_id for e in ev2} == {t2.id}
        assert {t1.final_text, t2.final_text} == {"one", "two"}
        assert agent.get_stats()["by_status"] == {"completed": 2}

    @pytest.mark.asyncio
    async def test_finished_tasks_are_bounded(self, registry):
        model = ScriptedModel([final_turn(f"answer {i}") for i in range(50)])
        agent = build_loop(model, registry)
        agent.max_finished_tasks = 5

        tasks = [agent.create_task(f"request {i}") for i in range(50)]
        for task in tasks:
            await agent.run_to_completion(task)

        assert list(agent.tasks) == [t.id for t in tasks[-5:]]
        assert agent._seq == {}
        assert agent.cancel(tasks[-1].id) is False
        assert agent.get_stats()["tasks"] == 5
