"""AI coding agent execution.

Defines the AgentExecutor protocol the core depends on and a Claude Code
implementation that runs the `claude` CLI inside a worktree.
"""

import asyncio
import contextlib
import json
import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any, Protocol

from fixpipe.cancellation import CancellationToken
from fixpipe.models import AgentResult

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str], None]

DEFAULT_ALLOWED_TOOLS = ["Bash", "Read", "Write", "Edit", "Glob", "Grep"]

# stream-json puts whole tool results on one line, far past the 64 KiB default
STREAM_LIMIT = 16 * 1024 * 1024


class AgentExecutor(Protocol):
    """Runs one AI coding session in a working directory."""

    async def execute(
        self,
        prompt: str,
        work_dir: Path,
        model_override: str | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> AgentResult: ...


def format_tool_call(tool_name: str, tool_input: dict) -> str:
    """Format a tool call for human-readable progress display.

    Args:
        tool_name: Name of the tool (Read, Write, Bash, etc.)
        tool_input: Dictionary of tool input parameters

    Returns:
        Formatted string like "→ Reading config.py..."
    """
    if tool_name in ("Read", "Write", "Edit"):
        file_path = tool_input.get("file_path", "")
        filename = Path(file_path).name if file_path else "file"
        verb = {"Read": "Reading", "Write": "Writing", "Edit": "Editing"}[tool_name]
        return f"→ {verb} {filename}..."

    if tool_name == "Bash":
        command = tool_input.get("command", "")
        if len(command) > 50:
            command = command[:50] + "..."
        return f"→ Running: {command}"

    if tool_name == "Grep":
        return f"→ Searching for {tool_input.get('pattern', '')}..."

    if tool_name == "Glob":
        return f"→ Finding {tool_input.get('pattern', '')}..."

    return f"→ {tool_name}..."


def parse_result_event(data: dict[str, Any], exit_code: int | None = 0) -> AgentResult:
    """Convert a Claude Code JSON result object into an AgentResult."""
    usage = data.get("usage") or {}
    is_error = bool(data.get("is_error", False)) or (exit_code not in (0, None))
    response = data.get("result", "") or ""
    return AgentResult(
        success=not is_error,
        response=response,
        input_tokens=int(usage.get("input_tokens", 0)),
        output_tokens=int(usage.get("output_tokens", 0)),
        error=(response or f"Agent exited with code {exit_code}") if is_error else None,
        cost_usd=float(data.get("total_cost_usd", 0.0)),
        duration_ms=int(data.get("duration_ms", 0)),
        session_id=data.get("session_id", ""),
    )


def _kill(process: asyncio.subprocess.Process) -> None:
    with contextlib.suppress(ProcessLookupError):
        process.kill()


class ClaudeCodeExecutor:
    """Invokes the Claude Code CLI in a worktree.

    Attributes:
        command: Agent CLI binary
        max_turns: Maximum conversation turns per session
        allowed_tools: Tools the agent may use
        timeout_seconds: Session deadline; None lets sessions run unbounded
        token: Cancellation token; cancelling it kills running sessions
    """

    def __init__(
        self,
        command: str = "claude",
        max_turns: int = 50,
        allowed_tools: list[str] | None = None,
        timeout_seconds: int | None = None,
        token: CancellationToken | None = None,
    ) -> None:
        self.command = command
        self.max_turns = max_turns
        self.allowed_tools = allowed_tools or list(DEFAULT_ALLOWED_TOOLS)
        self.timeout_seconds = timeout_seconds
        self.token = token

    def build_command(
        self, prompt: str, model: str | None, streaming: bool
    ) -> list[str]:
        cmd = [
            self.command,
            "-p",
            prompt,
            "--output-format",
            "stream-json" if streaming else "json",
        ]
        if streaming:
            cmd.append("--verbose")  # Required for stream-json with -p
        cmd.extend(
            [
                "--dangerously-skip-permissions",
                "--max-turns",
                str(self.max_turns),
                "--allowedTools",
                ",".join(self.allowed_tools),
            ]
        )
        if model:
            cmd.extend(["--model", model])
        return cmd

    async def execute(
        self,
        prompt: str,
        work_dir: Path,
        model_override: str | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> AgentResult:
        """Run one agent session.

        When on_progress is given the session streams, and every tool_use
        event is reported as a formatted string.

        Returns:
            AgentResult; launch failures, timeouts, unreadable and unparseable
            output are reported as unsuccessful results rather than raised. A session
            whose output cannot be read is killed and reaped first
        """
        streaming = on_progress is not None
        cmd = self.build_command(prompt, model_override, streaming)

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=str(work_dir),
                stdout=asyncio.subprocess.PIPE,
                # stderr is not drained while streaming
                stderr=asyncio.subprocess.DEVNULL if streaming else asyncio.subprocess.PIPE,
                limit=STREAM_LIMIT,
            )
        except FileNotFoundError:
            return AgentResult(
                success=False, error=f"Agent command not found: {self.command}"
            )

        cancel_scope = (
            self.token.on_cancel(lambda: _kill(process))
            if self.token is not None
            else contextlib.nullcontext()
        )

        with cancel_scope:
            try:
                if on_progress is not None:
                    return await asyncio.wait_for(
                        self._read_stream(process, on_progress),
                        timeout=self.timeout_seconds,
                    )
                stdout, stderr = await asyncio.wait_for(
                    process.communicate(), timeout=self.timeout_seconds
                )
            except asyncio.TimeoutError:
                _kill(process)
                await process.wait()
                return AgentResult(
                    success=False,
                    error=f"Agent session timeout after {self.timeout_seconds}s",
                    duration_ms=(self.timeout_seconds or 0) * 1000,
                )
            except (OSError, ValueError) as e:
                # An output line past STREAM_LIMIT surfaces as ValueError
                logger.warning(f"Lost agent output in {work_dir}: {e}")
                _kill(process)
                await process.wait()
                return AgentResult(success=False, error=f"Agent output could not be read: {e}")
            except BaseException:
                _kill(process)
                raise

        if self.token is not None and self.token.cancelled:
            return AgentResult(success=False, error="Agent session cancelled")

        try:
            output = json.loads(stdout.decode(errors="replace"))
        except json.JSONDecodeError as e:
            detail = stderr.decode(errors="replace").strip()
            return AgentResult(
                success=False,
                error=f"Failed to parse agent JSON output: {e}. {detail}".strip(),
            )

        return parse_result_event(output, process.returncode)

    async def _read_stream(
        self, process: asyncio.subprocess.Process, on_progress: ProgressCallback
    ) -> AgentResult:
        result_data: dict[str, Any] | None = None

        if process.stdout is None:
            return AgentResult(success=False, error="Agent stdout is not captured")
        async for raw_line in process.stdout:
            line = raw_line.decode(errors="replace").strip()
            if not line:
                continue
            try:
                event = json.loads(line)
            except json.JSONDecodeError:
                # Skip malformed lines
                continue

            event_type = event.get("type")
            if event_type == "assistant":
                # Tool uses are nested in assistant message content
                for item in event.get("message", {}).get("content", []):
                    if item.get("type") == "tool_use":
                        on_progress(
                            format_tool_call(item.get("name", ""), item.get("input", {}))
                        )
            elif event_type == "result":
                result_data = event

        await process.wait()

        if self.token is not None and self.token.cancelled:
            return AgentResult(success=False, error="Agent session cancelled")
        if result_data is None:
            return AgentResult(success=False, error="No result event received")
        return parse_result_event(result_data, process.returncode)
