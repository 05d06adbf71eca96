from __future__ import annotations

from typing import Any

from .models import ToolCall, ToolResult, ToolResultBlock

DENIED_ERROR = "denied"
DENIED_MESSAGE = "User denied permission for this operation."
CANCELLED_ERROR = "cancelled"
CANCELLED_MESSAGE = "Task was cancelled before this result could be used."

PREVIEW_CHARS = 300


def denied_result() -> ToolResult:
    return ToolResult.failure(DENIED_ERROR, DENIED_MESSAGE)


def cancelled_result() -> ToolResult:
    return ToolResult.failure(CANCELLED_ERROR, CANCELLED_MESSAGE)


class _FormatterMixin:

    def _result_content(self, result: ToolResult) -> str:
        """Text folded back into the conversation for one call."""
        if result.success:
            return result.content or "(no output)"
        parts = [f"ERROR: {result.error or 'unknown error'}"]
        if result.content:
            parts.append(result.content)
        return "\n".join(parts)

    def _result_block(self, call: ToolCall, result: ToolResult) -> ToolResultBlock:
        content = self.window.cap(self._result_content(result))  # type: ignore[attr-defined]
        return ToolResultBlock(
            tool_use_id=call.id, content=content, is_error=not result.success, name=call.name,
        )

    @staticmethod
    def _truncate_preview(text: str, limit: int = PREVIEW_CHARS) -> str:
        text = text.strip()
        if len(text) <= limit:
            return text
        return text[:limit] + "..."

    def _tool_end_data(self, call: ToolCall, result: ToolResult) -> dict[str, Any]:
        return {
            "tool_id": call.id,
            "tool": call.name,
            "success": result.success,
            "state": call.state.value,
            "duration": round(call.duration, 2),
            "error": result.error,
            "result_preview": self._truncate_preview(result.content or result.error or ""),
        }

    @staticmethod
    def _results_summary(calls: list[ToolCall], results: list[ToolResult]) -> list[dict[str, Any]]:
        return [
            {"tool_use_id": call.id, "tool": call.name, **result.to_dict()}
            for call, result in zip(calls, results)
        ]
