"""
Streaming event parser.

Turns an agent CLI's line-delimited JSON output into canonical event
payloads:

- the initialization record becomes a system event carrying the session id
  (the only place a session id is discovered);
- assistant content splits into text events and tool events, the latter
  tagged with the tool name and a short context string;
- tool results become tool_result events;
- the terminal record becomes a result event;
- lines that are not JSON are side-channel output and pass through
  OutputFilter, which keeps only errors, warnings and milestones (plus any
  line carrying the preview URL).
"""

import json
import re
from pathlib import PurePosixPath
from typing import Any

from ..events.models import (
    AssistantTextPayload,
    AssistantToolPayload,
    EventPayload,
    ResultPayload,
    ResultSource,
    ResultSubtype,
    SystemPayload,
    ToolResultPayload,
)
from ..log_config import get_logger
from .backends import COMPLETION_STOP_REASONS
from .types import AgentBackend

PREVIEW_URL_PATTERN = re.compile(r"exp://[\w\-.]+:\d+")
ANSI_ESCAPE = re.compile(r"\x1B(?:[@-Z\\-_]|\[[0-?]*[ -/]*[@-~])")

FILE_TOOLS = frozenset(
    {"Read", "Write", "Edit", "MultiEdit", "NotebookEdit", "read_file", "write_file", "replace"}
)
SHELL_TOOLS = frozenset({"Bash", "run_shell_command"})
SEARCH_TOOLS = frozenset({"Glob", "Grep", "glob", "search_file_content"})
COMMAND_CONTEXT_LENGTH = 30
MAX_TOOL_RESULT_CHARS = 2000


def extract_preview_url(text: str) -> str | None:
    match = PREVIEW_URL_PATTERN.search(text)
    return match.group(0) if match else None


def tool_context(tool_name: str, tool_input: dict[str, Any]) -> str:
    """Short human-readable hint for a tool invocation."""
    if tool_name in FILE_TOOLS:
        path = tool_input.get("file_path") or tool_input.get("absolute_path") or ""
        return PurePosixPath(path).name if path else ""
    if tool_name in SHELL_TOOLS:
        command = tool_input.get("command") or ""
        if len(command) > COMMAND_CONTEXT_LENGTH:
            return command[:COMMAND_CONTEXT_LENGTH] + "..."
        return command
    if tool_name in SEARCH_TOOLS:
        return tool_input.get("pattern") or ""
    return ""


def _truncate(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


def _content_text(content: Any) -> str:
    """Flatten tool_result content (a string or a list of content blocks)."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, dict) and block.get("type") == "text":
                parts.append(block.get("text", ""))
            elif isinstance(block, str):
                parts.append(block)
        return "\n".join(parts)
    return "" if content is None else str(content)


def _content_blocks(message: Any) -> list[dict[str, Any]]:
    """Content blocks of a message record, skipping anything that is not a block."""
    content = message.get("content") if isinstance(message, dict) else None
    if not isinstance(content, list):
        return []
    return [block for block in content if isinstance(block, dict)]


class OutputFilter:
    """Keeps the side-channel lines worth showing to a user."""

    ERROR_PATTERN = re.compile(r"\b(error|exception|failed|fatal)\b", re.IGNORECASE)
    WARNING_PATTERN = re.compile(r"\bwarn(ing)?\b", re.IGNORECASE)
    MILESTONE_PATTERN = re.compile(
        r"(metro|bundler|tunnel ready|bundled|waiting on|starting project|"
        r"compiled successfully|ready in|listening on)",
        re.IGNORECASE,
    )
    MAX_LINE_CHARS = 500

    def classify(self, line: str, source: str = "stdout") -> ToolResultPayload | None:
        clean = ANSI_ESCAPE.sub("", line).strip()
        if not clean:
            return None

        content = _truncate(clean, self.MAX_LINE_CHARS)
        if extract_preview_url(clean):
            return ToolResultPayload(content=content, source=source)
        if self.ERROR_PATTERN.search(clean):
            return ToolResultPayload(content=content, is_error=True, source=source)
        if self.WARNING_PATTERN.search(clean) or self.MILESTONE_PATTERN.search(clean):
            return ToolResultPayload(content=content, source=source)
        return None


class StreamEventParser:
    """Stateful per-run translator from backend records to event payloads."""

    def __init__(self, backend: AgentBackend, output_filter: OutputFilter | None = None):
        self.backend = backend
        self.output_filter = output_filter or OutputFilter()
        self.log = get_logger("parser", backend=backend.value)
        self._assistant_buffer = ""

    def parse_line(self, line: str) -> list[EventPayload]:
        stripped = line.strip()
        if not stripped:
            return []

        try:
            record = json.loads(stripped)
        except json.JSONDecodeError:
            kept = self.output_filter.classify(stripped)
            return [kept] if kept else []

        if not isinstance(record, dict):
            return []

        if self.backend == AgentBackend.GEMINI:
            return self._parse_gemini(record)
        return self._parse_claude(record)

    def flush(self) -> list[EventPayload]:
        """Emit anything still buffered at end of stream."""
        if not self._assistant_buffer:
            return []
        text, self._assistant_buffer = self._assistant_buffer, ""
        return [AssistantTextPayload(text=text)]

    @staticmethod
    def _init(session_id: str, model: str | None) -> SystemPayload:
        message = f"Session started ({model})" if model else "Session started"
        return SystemPayload(message=message, subtype="init", session_id=session_id)

    @staticmethod
    def _tool(name: str, tool_input: Any) -> AssistantToolPayload:
        tool_input = tool_input if isinstance(tool_input, dict) else {}
        return AssistantToolPayload(
            tool_name=name,
            tool_context=tool_context(name, tool_input),
            raw_input=tool_input,
        )

    def _parse_claude(self, record: dict[str, Any]) -> list[EventPayload]:
        record_type = record.get("type")

        if record_type == "system":
            if record.get("subtype") == "init" and record.get("session_id"):
                return [self._init(record["session_id"], record.get("model"))]
            self.log.debug("parser.system_skipped", subtype=record.get("subtype"))
            return []

        if record_type == "assistant":
            message = record.get("message")
            if not isinstance(message, dict):
                message = {}
            payloads: list[EventPayload] = []
            for block in _content_blocks(message):
                block_type = block.get("type")
                if block_type == "text" and block.get("text"):
                    payloads.append(AssistantTextPayload(text=block["text"]))
                elif block_type == "tool_use":
                    payloads.append(self._tool(block.get("name", ""), block.get("input")))

            stop_reason = message.get("stop_reason") or record.get("stop_reason")
            if stop_reason in COMPLETION_STOP_REASONS:
                payloads.append(
                    ResultPayload(
                        subtype=ResultSubtype.SUCCESS.value,
                        source=ResultSource.ASSISTANT_STOP.value,
                    )
                )
            return payloads

        if record_type == "user":
            # Tool results come back to the model as user content blocks
            payloads = []
            for block in _content_blocks(record.get("message")):
                if block.get("type") == "tool_result":
                    payloads.append(
                        ToolResultPayload(
                            content=_truncate(
                                _content_text(block.get("content")), MAX_TOOL_RESULT_CHARS
                            ),
                            is_error=bool(block.get("is_error")),
                            tool_use_id=block.get("tool_use_id"),
                        )
                    )
            return payloads

        if record_type == "tool_result":
            return [
                ToolResultPayload(
                    content=_truncate(_content_text(record.get("content")), MAX_TOOL_RESULT_CHARS),
                    is_error=bool(record.get("is_error")),
                    tool_use_id=record.get("tool_use_id"),
                )
            ]

        if record_type == "result":
            subtype = record.get("subtype") or (
                ResultSubtype.ERROR.value if record.get("is_error") else ResultSubtype.SUCCESS.value
            )
            result_text = record.get("result")
            return [
                ResultPayload(
                    subtype=subtype,
                    result=_truncate(result_text, MAX_TOOL_RESULT_CHARS) if result_text else None,
                    message=record.get("error"),
                )
            ]

        return []

    def _parse_gemini(self, record: dict[str, Any]) -> list[EventPayload]:
        record_type = record.get("type")

        if record_type == "message" and record.get("role") == "assistant":
            self._assistant_buffer += record.get("content") or ""
            if record.get("delta"):
                return []
            return self.flush()

        # Any other record ends a run of assistant deltas
        payloads = self.flush()

        if record_type == "init" and record.get("session_id"):
            payloads.append(self._init(record["session_id"], record.get("model")))
        elif record_type == "tool_use":
            payloads.append(self._tool(record.get("tool_name", ""), record.get("parameters")))
        elif record_type == "tool_result":
            status = record.get("status", "")
            content = _content_text(record.get("content") or record.get("output")) or status
            payloads.append(
                ToolResultPayload(
                    content=_truncate(content, MAX_TOOL_RESULT_CHARS),
                    is_error=status not in ("", "success"),
                    tool_use_id=record.get("tool_id"),
                )
            )
        elif record_type == "result":
            success = record.get("status") == "success"
            error = record.get("error")
            if isinstance(error, dict):
                error = error.get("message")
            payloads.append(
                ResultPayload(
                    subtype=ResultSubtype.SUCCESS.value if success else ResultSubtype.ERROR.value,
                    message=error,
                )
            )
        return payloads
