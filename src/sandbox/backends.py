"""Command lines for the supported coding-agent CLIs."""

from typing import NamedTuple

from .types import AgentBackend

DEFAULT_GEMINI_MODEL = "gemini-2.5-pro"

# Assistant stop reasons that mean the turn is over
COMPLETION_STOP_REASONS = frozenset({"end_turn", "stop_sequence", "max_tokens", "stop"})


class BackendCommand(NamedTuple):
    argv: list[str]
    stdin: str | None = None


def build_command(
    backend: AgentBackend,
    prompt: str,
    session_id: str | None = None,
    model: str | None = None,
) -> BackendCommand:
    """
    Build the argv for one non-interactive agent turn.

    Both CLIs emit line-delimited JSON on stdout. `session_id` resumes an
    existing conversation.
    """
    if backend == AgentBackend.CLAUDE:
        argv = ["claude"]
        if session_id:
            argv += ["-r", session_id]
        argv += [
            "-p",
            "--output-format",
            "stream-json",
            "--verbose",
            "--dangerously-skip-permissions",
        ]
        if model:
            argv += ["--model", model]
        # Prompt is positional and must come last
        argv.append(prompt)
        return BackendCommand(argv)

    if backend == AgentBackend.GEMINI:
        argv = ["gemini"]
        if session_id:
            argv += ["-r", session_id]
        argv += [
            "--model",
            model or DEFAULT_GEMINI_MODEL,
            "--approval-mode",
            "yolo",
            "--output-format",
            "stream-json",
        ]
        return BackendCommand(argv, stdin=prompt)

    raise ValueError(f"Unsupported agent backend: {backend}")
