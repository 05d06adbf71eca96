"""Shared fixtures: config without touching ~/.taskloop, a scripted model, tool registries."""

from __future__ import annotations

import pytest

from taskloop.engine.agent import (
    AgentLoop, ApprovalBroker, PermissionGate, Tier, ToolDescriptor, ToolRegistry,
)
from taskloop.engine.agent.models import ModelResponse, ToolCall
from taskloop.engine.config import DEFAULT_CONFIG, Config


def make_config(**overrides) -> Config:
    return Config(**{**DEFAULT_CONFIG, **overrides})


class ScriptedModel:
    """Stands in for ModelClient: returns queued responses and records every call."""

    def __init__(self, responses, provider: str = "anthropic") -> None:
        self.responses = list(responses)
        self.provider = provider
        self.calls: list[dict] = []

    async def complete_with_tools(self, system_prompt, conversation, tools, options=None):
        self.calls.append({
            "system_prompt": system_prompt,
            "conversation": list(conversation),
            "tools": [t.name for t in tools],
        })
        if not self.responses:
            raise AssertionError("model called more times than scripted")
        item = self.responses.pop(0)
        if isinstance(item, BaseException):
            raise item
        if options is not None and options.on_token and item.text:
            options.on_token(item.text)
        return item


def tool_turn(*calls: tuple[str, str, dict], text: str = "") -> ModelResponse:
    return ModelResponse(
        text=text,
        tool_calls=[ToolCall(id=cid, name=name, input=dict(args)) for cid, name, args in calls],
        stop_reason="tool_use",
    )


def final_turn(text: str) -> ModelResponse:
    return ModelResponse(text=text, stop_reason="end_turn")


def descriptor(name, executor, tier=Tier.SAFE, properties=None, required=None, timeout=None):
    return ToolDescriptor(
        name=name,
        description=f"{name} tool",
        parameter_schema={
            "type": "object",
            "properties": properties or {},
            "required": list(required or []),
        },
        permission_tier=tier,
        executor=executor,
        timeout=timeout,
    )


async def echo_tool(args):
    return {"success": True, "content": args["text"]}


@pytest.fixture
def config():
    return make_config()


@pytest.fixture
def registry():
    reg = ToolRegistry(default_timeout=2.0)
    reg.register(descriptor(
        "echo", echo_tool, Tier.SAFE,
        properties={"text": {"type": "string", "description": "Text to echo"}},
        required=["text"],
    ))
    return reg


def build_loop(model, registry, config=None, broker_timeout=300.0, auto_approve_sensitive=False):
    broker = ApprovalBroker(timeout=broker_timeout)
    gate = PermissionGate(registry, broker, auto_approve_sensitive=auto_approve_sensitive)
    return AgentLoop(model, registry, gate=gate, config=config or make_config())
