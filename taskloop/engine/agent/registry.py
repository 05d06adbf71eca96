"""Tool registry: capability descriptors, provider definitions, dispatch by name."""

from __future__ import annotations

import asyncio
import errno
import importlib
import inspect
import json
import logging
import time
from typing import Any, Iterable

from ..errors import ToolExecutionError, ToolNotFound
from .models import Tier, ToolDescriptor, ToolResult
from .validators import validate_tool_input

logger = logging.getLogger("taskloop.agent")

DEFAULT_TOOL_TIMEOUT = 30.0

# Transient executor errors are retried this many times before failing
TOOL_RETRY_LIMIT = 2
TOOL_RETRY_DELAY = 0.3
_TRANSIENT_ERRNOS = frozenset({errno.EBUSY, errno.EAGAIN, errno.ETIMEDOUT})


def is_transient_error(e: BaseException) -> bool:
    if isinstance(e, (TimeoutError, asyncio.TimeoutError, BlockingIOError)):
        return True
    return isinstance(e, OSError) and e.errno in _TRANSIENT_ERRNOS


class ToolRegistry:
    """Descriptors are registered at startup and read-only afterwards."""

    def __init__(self, default_timeout: float = DEFAULT_TOOL_TIMEOUT) -> None:
        self._tools: dict[str, ToolDescriptor] = {}
        self.default_timeout = default_timeout

    def register(self, descriptor: ToolDescriptor) -> ToolDescriptor:
        if not descriptor.name or descriptor.executor is None:
            raise ValueError("Invalid tool: must have a name and an executor")
        if descriptor.name in self._tools:
            raise ValueError(f"Tool '{descriptor.name}' is already registered")
        self._tools[descriptor.name] = descriptor
        return descriptor

    def tool(
        self,
        name: str,
        description: str,
        parameters: dict[str, Any] | None = None,
        tier: Tier | str = Tier.SENSITIVE,
        timeout: float | None = None,
    ):
        """Decorator form of register()."""

        def decorator(fn):
            self.register(ToolDescriptor(
                name=name,
                description=description,
                parameter_schema=parameters or {"type": "object", "properties": {}},
                permission_tier=Tier(tier),
                executor=fn,
                timeout=timeout,
            ))
            return fn

        return decorator

    def get(self, name: str) -> ToolDescriptor | None:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return list(self._tools)

    def descriptors(self) -> list[ToolDescriptor]:
        return list(self._tools.values())

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def definitions_for(self, provider: str) -> list[dict[str, Any]]:
        from ..llm.schemas import tool_definitions

        return tool_definitions(self._tools.values(), provider)

    def list_tools(self) -> list[dict[str, Any]]:
        return [
            {
                "name": d.name,
                "description": d.description,
                "parameters": d.parameter_schema,
                "permission_tier": d.permission_tier.value,
            }
            for d in self._tools.values()
        ]

    async def dispatch(self, name: str, arguments: dict[str, Any]) -> ToolResult:
        """Run one tool.

        Raises ToolNotFound / ToolInputInvalid before anything executes.
        Transient executor errors (EBUSY, EAGAIN, ETIMEDOUT) are retried up to
        TOOL_RETRY_LIMIT times; other failures and the per-tool timeout come
        back as a failed ToolResult.
        """
        descriptor = self._tools.get(name)
        if descriptor is None:
            raise ToolNotFound(
                name,
                f"Unknown tool: '{name}'. Available tools: {', '.join(self._tools) or 'none'}",
            )
        validate_tool_input(name, descriptor.parameter_schema, arguments)

        timeout = descriptor.timeout or self.default_timeout
        start_time = time.time()
        for attempt in range(TOOL_RETRY_LIMIT + 1):
            try:
                raw, error = await asyncio.wait_for(self._attempt(descriptor, arguments), timeout=timeout)
            except asyncio.TimeoutError:
                err = ToolExecutionError(name, f"Tool '{name}' timed out after {timeout:g}s")
                logger.warning(str(err))
                return ToolResult.failure(str(err))
            if error is None:
                break
            if is_transient_error(error) and attempt < TOOL_RETRY_LIMIT:
                logger.warning(
                    f"Transient error in {name} (attempt {attempt + 1}/{TOOL_RETRY_LIMIT + 1}), "
                    f"retrying in {TOOL_RETRY_DELAY:g}s: {error}"
                )
                await asyncio.sleep(TOOL_RETRY_DELAY)
                continue
            err = ToolExecutionError(name, f"Error executing {name}: {error}")
            logger.error(f"Tool exec error ({name}): {error}", exc_info=error)
            return ToolResult.failure(str(err))

        result = coerce_result(raw)
        logger.info(
            f"Tool {name} finished in {time.time() - start_time:.2f}s "
            f"({'ok' if result.success else 'failed'})"
        )
        return result

    async def _attempt(
        self, descriptor: ToolDescriptor, arguments: dict[str, Any],
    ) -> tuple[Any, Exception | None]:
        # Executor errors are returned, so a TimeoutError raised by the tool
        # is not mistaken for the per-tool timeout
        try:
            return await self._invoke(descriptor, arguments), None
        except Exception as e:
            return None, e

    @staticmethod
    async def _invoke(descriptor: ToolDescriptor, arguments: dict[str, Any]) -> Any:
        fn = descriptor.executor
        if inspect.iscoroutinefunction(fn):
            return await fn(arguments)
        result = await asyncio.to_thread(fn, arguments)
        if inspect.isawaitable(result):
            result = await result
        return result


def coerce_result(raw: Any) -> ToolResult:
    """Executors may return a ToolResult, a {success, content?, error?} dict, or a plain value."""
    if isinstance(raw, ToolResult):
        return raw
    if isinstance(raw, dict) and "success" in raw:
        content = raw.get("content", "")
        error = raw.get("error")
        return ToolResult(
            success=bool(raw["success"]),
            content=content if isinstance(content, str) else _stringify(content),
            error=None if error is None else str(error),
        )
    return ToolResult(success=True, content=_stringify(raw))


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    try:
        return json.dumps(value, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return str(value)


def load_tool_modules(registry: ToolRegistry, modules: Iterable[str]) -> list[str]:
    """Import each module and call its ``register(registry)``; returns the loaded names."""
    loaded = []
    for path in modules:
        module = importlib.import_module(path)
        hook = getattr(module, "register", None)
        if not callable(hook):
            raise ValueError(f"Tool module '{path}' has no register(registry) function")
        before = len(registry)
        hook(registry)
        logger.info(f"Loaded {len(registry) - before} tools from {path}")
        loaded.append(path)
    return loaded
